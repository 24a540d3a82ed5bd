from __future__ import annotations

from datetime import date, datetime, timezone
from typing import Any, List, Optional, Tuple
from uuid import uuid4

from ..models import (
    AIPrompt,
    Contact,
    CreateContactInput,
    CreateTaskInput,
    RelationshipType,
    Task,
    UpdateTaskInput,
)
from .base import DataStore, RequestFailedError


class InMemoryStore(DataStore):
    """Process-local store used for offline runs and tests.

    Every call is appended to ``calls`` as ``(operation, argument)`` so callers
    can assert exactly which mutations happened.
    """

    def __init__(
        self,
        tasks: Optional[List[Task]] = None,
        contacts: Optional[List[Contact]] = None,
        prompts: Optional[List[AIPrompt]] = None,
    ) -> None:
        self.tasks: List[Task] = list(tasks or [])
        self.contacts: List[Contact] = list(contacts or [])
        self.prompts: List[AIPrompt] = list(prompts or [])
        self.calls: List[Tuple[str, Any]] = []
        self.fail_with: Optional[Exception] = None

    def _record(self, operation: str, argument: Any) -> None:
        self.calls.append((operation, argument))
        if self.fail_with is not None:
            raise self.fail_with

    def mutations(self) -> List[Tuple[str, Any]]:
        return [call for call in self.calls if not call[0].startswith("list_")]

    async def list_tasks(self, start: date, end: date) -> list[Task]:
        self._record("list_tasks", (start, end))
        low, high = start.isoformat(), end.isoformat()
        selected = [task for task in self.tasks if low <= task.date <= high]
        return sorted(selected, key=lambda task: (task.date, task.start_time or ""))

    async def create_task(self, task: CreateTaskInput) -> Task:
        self._record("create_task", task)
        now = datetime.now(timezone.utc)
        created = Task(
            id=uuid4().hex,
            title=task.title,
            description=task.description,
            date=task.date,
            start_time=task.start_time,
            end_time=task.end_time,
            priority=task.priority,
            status=task.status,
            task_type=task.task_type,
            created_at=now,
            updated_at=now,
        )
        self.tasks.append(created)
        return created

    async def update_task(self, task_id: str, changes: UpdateTaskInput) -> Task:
        self._record("update_task", (task_id, changes))
        for index, task in enumerate(self.tasks):
            if task.id == task_id:
                updated = task.model_copy(update=changes.model_dump(exclude_none=True))
                self.tasks[index] = updated
                return updated
        raise RequestFailedError("Update task", 404, "no matching row")

    async def delete_task(self, task_id: str) -> None:
        self._record("delete_task", task_id)
        self.tasks = [task for task in self.tasks if task.id != task_id]

    async def list_contacts(self, relationship_type: Optional[RelationshipType] = None) -> list[Contact]:
        self._record("list_contacts", relationship_type)
        contacts = sorted(self.contacts, key=lambda contact: contact.first_name)
        if relationship_type is not None:
            contacts = [c for c in contacts if c.relationship_type is relationship_type]
        return contacts

    async def create_contact(self, contact: CreateContactInput) -> Contact:
        self._record("create_contact", contact)
        created = Contact(id=uuid4().hex, **contact.model_dump(exclude={"user_id"}))
        self.contacts.append(created)
        return created

    async def list_prompts(self) -> list[AIPrompt]:
        self._record("list_prompts", None)
        return list(self.prompts)
