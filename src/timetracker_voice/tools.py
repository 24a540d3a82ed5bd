"""Bridge between model-issued function calls and the task/contact store.

``ToolDispatcher.execute`` always returns text. Validation problems,
missing sign-in and store failures all become sentences the model can read
back to the user; nothing raised inside a handler reaches the caller.
"""
from __future__ import annotations

from datetime import date
from typing import Any, Awaitable, Callable, Dict, List, Optional

import structlog

from .auth import AuthSession
from .metrics import TOOL_CALLS, TOOL_LATENCY
from .models import (
    Contact,
    CreateContactInput,
    CreateTaskInput,
    Priority,
    RelationshipType,
    Task,
    TaskStatus,
    UpdateTaskInput,
)
from .store.base import DataStore, DataStoreError
from .store.cache import ContactCache, TaskCache

logger = structlog.get_logger(__name__)

NOT_AUTHENTICATED = "Not authenticated - please log in again"
CONTACT_LIST_LIMIT = 15

Arguments = Dict[str, Any]
Handler = Callable[[Arguments], Awaitable[str]]


class ToolError(Exception):
    """A tool call that cannot be satisfied; the message is spoken back."""


def _optional_str(args: Arguments, key: str) -> Optional[str]:
    value = args.get(key)
    if value is None:
        return None
    if not isinstance(value, str):
        raise ToolError(f"Invalid {key}: expected text")
    value = value.strip()
    return value or None


def _optional_date(args: Arguments, key: str) -> Optional[str]:
    value = _optional_str(args, key)
    if value is None:
        return None
    try:
        date.fromisoformat(value)
    except ValueError:
        raise ToolError(f"Invalid {key}: {value} (expected YYYY-MM-DD)") from None
    return value


def _optional_bool(args: Arguments, key: str) -> bool:
    value = args.get(key, False)
    if value is None:
        return False
    if not isinstance(value, bool):
        raise ToolError(f"Invalid {key}: expected true or false")
    return value


def _task_line(task: Task, *, with_date: bool = False) -> str:
    when = f" ({task.date})" if with_date else ""
    time_part = f" at {task.short_start_time}" if task.short_start_time else ""
    return f"{task.status_mark} {task.title}{when}{time_part} - {task.status.value}"


class ToolDispatcher:
    def __init__(
        self,
        store: DataStore,
        tasks: TaskCache,
        contacts: ContactCache,
        auth: AuthSession,
        today: Callable[[], date] = date.today,
    ) -> None:
        self._store = store
        self._tasks = tasks
        self._contacts = contacts
        self._auth = auth
        self._today = today
        self._handlers: Dict[str, Handler] = {
            "get_tasks": self._get_tasks,
            "create_task": self._create_task,
            "update_task": self._update_task,
            "delete_task": self._delete_task,
            "get_contacts": self._get_contacts,
            "create_contact": self._create_contact,
        }

    @property
    def names(self) -> List[str]:
        return list(self._handlers)

    async def execute(self, name: str, args: Optional[Arguments] = None) -> str:
        handler = self._handlers.get(name)
        if handler is None:
            logger.warning("tool.unknown", name=name)
            TOOL_CALLS.labels(name="unknown", outcome="unknown").inc()
            return f"Unknown function: {name}"
        arguments = args or {}
        logger.info("tool.started", name=name, arguments=sorted(arguments))
        with TOOL_LATENCY.labels(name=name).time():
            try:
                result = await handler(arguments)
                outcome = "ok"
            except ToolError as exc:
                result = str(exc)
                outcome = "rejected"
            except Exception as exc:
                logger.exception("tool.failed", name=name)
                result = f"Failed to run {name}: {exc}"
                outcome = "error"
        TOOL_CALLS.labels(name=name, outcome=outcome).inc()
        logger.info("tool.finished", name=name, outcome=outcome)
        return result

    def _require_user_id(self) -> str:
        user = self._auth.current_user
        if not self._auth.is_authenticated or user is None:
            raise ToolError(NOT_AUTHENTICATED)
        return user.id

    async def _tasks_between(self, start: str, end: str) -> List[Task]:
        if self._tasks.covers(start, end):
            return self._tasks.in_range(start, end)
        try:
            return await self._store.list_tasks(date.fromisoformat(start), date.fromisoformat(end))
        except DataStoreError as exc:
            raise ToolError(f"Failed to get tasks: {exc}") from exc

    def _find_task(self, args: Arguments, verb: str) -> Task:
        title = _optional_str(args, "task_title")
        if title is None:
            raise ToolError(f"Please specify which task to {verb}")
        task_date = _optional_date(args, "task_date")
        self._require_user_id()
        task = self._tasks.find_by_title(title, task_date)
        if task is None:
            suffix = f" on {task_date}" if task_date else ""
            raise ToolError(f"Task not found: {title}{suffix}")
        return task

    # Tasks -------------------------------------------------------------------

    async def _get_tasks(self, args: Arguments) -> str:
        single = _optional_date(args, "date")
        start = _optional_date(args, "start_date")
        end = _optional_date(args, "end_date")
        if single is not None:
            tasks = await self._tasks_between(single, single)
            ranged = False
        elif start is not None:
            end = end or start
            if end < start:
                raise ToolError(f"Invalid range: {start} is after {end}")
            tasks = await self._tasks_between(start, end)
            ranged = start != end
        else:
            today = self._today().isoformat()
            tasks = await self._tasks_between(today, today)
            ranged = False
        if not tasks:
            return "No tasks found for the specified date."
        return "\n".join(_task_line(task, with_date=ranged) for task in tasks)

    async def _create_task(self, args: Arguments) -> str:
        title = _optional_str(args, "title")
        task_date = _optional_date(args, "date")
        if title is None or task_date is None:
            raise ToolError("Missing required fields: title and date")
        priority_raw = _optional_str(args, "priority") or Priority.MEDIUM.value
        try:
            priority = Priority(priority_raw)
        except ValueError:
            raise ToolError(f"Invalid priority: {priority_raw} (expected low, medium or high)") from None
        user_id = self._require_user_id()
        payload = CreateTaskInput(
            user_id=user_id,
            title=title,
            date=task_date,
            start_time=_optional_str(args, "start_time"),
            end_time=_optional_str(args, "end_time"),
            description=_optional_str(args, "notes"),
            priority=priority,
        )
        try:
            task = await self._store.create_task(payload)
        except DataStoreError as exc:
            raise ToolError(f"Failed to create task: {exc}") from exc
        self._tasks.upsert(task)
        self._tasks.refresh_in_background()
        time_part = f" at {task.short_start_time}" if task.short_start_time else ""
        return f"Created task: {task.title} for {task.date}{time_part}"

    async def _update_task(self, args: Arguments) -> str:
        task = self._find_task(args, "update")
        status_raw = _optional_str(args, "new_status")
        status = None
        if status_raw is not None:
            try:
                status = TaskStatus(status_raw)
            except ValueError:
                raise ToolError(
                    f"Invalid status: {status_raw} (expected todo, in_progress, done or missed)"
                ) from None
        changes = UpdateTaskInput(
            title=_optional_str(args, "new_title"),
            date=_optional_date(args, "new_date"),
            start_time=_optional_str(args, "new_start_time"),
            status=status,
        )
        if changes.is_empty():
            raise ToolError(f"No changes given for task: {task.title}")
        try:
            updated = await self._store.update_task(task.id, changes)
        except DataStoreError as exc:
            raise ToolError(f"Failed to update task: {exc}") from exc
        self._tasks.upsert(updated)
        message = f"Updated {updated.title} for {updated.date}"
        if status is not None:
            message += f" - status: {status.value}"
        return message

    async def _delete_task(self, args: Arguments) -> str:
        task = self._find_task(args, "delete")
        try:
            await self._store.delete_task(task.id)
        except DataStoreError as exc:
            raise ToolError(f"Failed to delete task: {exc}") from exc
        self._tasks.remove(task.id)
        return f"Deleted task: {task.title} ({task.date})"

    # Contacts ----------------------------------------------------------------

    async def _get_contacts(self, args: Arguments) -> str:
        type_raw = _optional_str(args, "relationship_type") or "all"
        relationship: Optional[RelationshipType] = None
        if type_raw != "all":
            try:
                relationship = RelationshipType(type_raw)
            except ValueError:
                raise ToolError(
                    f"Invalid relationship_type: {type_raw} (expected family, friend, colleague, other or all)"
                ) from None
        include_birthdays = _optional_bool(args, "include_birthdays")
        if not self._contacts.loaded:
            try:
                await self._contacts.refresh()
            except DataStoreError as exc:
                raise ToolError(f"Failed to get contacts: {exc}") from exc
        contacts = self._contacts.by_type(relationship)
        if not contacts:
            return "No contacts found"
        today = self._today()
        lines = [f"Contacts ({len(contacts)}):"]
        for contact in contacts[:CONTACT_LIST_LIMIT]:
            lines.append(self._contact_line(contact, today, include_birthdays))
        if len(contacts) > CONTACT_LIST_LIMIT:
            lines.append(f"...and {len(contacts) - CONTACT_LIST_LIMIT} more")
        return "\n".join(lines)

    @staticmethod
    def _contact_line(contact: Contact, today: date, include_birthdays: bool) -> str:
        line = f"• {contact.full_name} [{contact.relationship_type.value}]"
        if include_birthdays and contact.birthday:
            days = contact.days_until_birthday(today)
            if days is None:
                line += f" - birthday {contact.birthday}"
            elif days == 0:
                line += f" - birthday {contact.birthday} (today)"
            else:
                line += f" - birthday {contact.birthday} (in {days} days)"
        return line

    async def _create_contact(self, args: Arguments) -> str:
        first_name = _optional_str(args, "first_name")
        type_raw = _optional_str(args, "relationship_type")
        if first_name is None or type_raw is None:
            raise ToolError("Missing required fields: first_name and relationship_type")
        try:
            relationship = RelationshipType(type_raw)
        except ValueError:
            raise ToolError(
                f"Invalid relationship_type: {type_raw} (expected family, friend, colleague or other)"
            ) from None
        user_id = self._require_user_id()
        payload = CreateContactInput(
            user_id=user_id,
            first_name=first_name,
            relationship_type=relationship,
            last_name=_optional_str(args, "last_name"),
            nickname=_optional_str(args, "nickname"),
            relationship_detail=_optional_str(args, "relationship_detail"),
            phone=_optional_str(args, "phone"),
            email=_optional_str(args, "email"),
            birthday=_optional_date(args, "birthday"),
            notes=_optional_str(args, "notes"),
        )
        try:
            contact = await self._store.create_contact(payload)
        except DataStoreError as exc:
            raise ToolError(f"Failed to create contact: {exc}") from exc
        self._contacts.add(contact)
        self._contacts.refresh_in_background()
        return f"Contact '{contact.full_name}' created successfully as {contact.relationship_type.value}"


__all__ = ["NOT_AUTHENTICATED", "ToolDispatcher", "ToolError"]
