"""Prompt fragments and the live task context woven into session instructions."""
from __future__ import annotations

import json
import time
from datetime import date, timedelta
from pathlib import Path
from typing import Callable, Dict, List, Optional

import structlog

from .models import AIPrompt
from .store.base import DataStore, DataStoreError
from .store.cache import ContactCache, TaskCache

logger = structlog.get_logger(__name__)

CACHE_TTL_SECONDS = 24 * 60 * 60
UPCOMING_DAYS = 7
UPCOMING_LIMIT = 10
BIRTHDAY_DAYS = 30
BIRTHDAY_LIMIT = 5

DEFAULT_PROMPTS: Dict[str, str] = {
    "system_instructions": (
        "You are a friendly and helpful productivity coach. Help the user manage their tasks "
        "and contacts. Be concise and friendly.\n\n"
        "You have access to task management and contacts tools:\n"
        "- get_tasks: Get tasks for a date or date range\n"
        "- create_task: Create a new task\n"
        "- update_task: Update a task\n"
        "- delete_task: Delete a task\n"
        "- get_contacts: Get list of contacts\n"
        "- create_contact: Create a new contact\n\n"
        "IMPORTANT: When user asks about tasks from a specific date, use get_tasks with "
        "appropriate dates!"
    ),
    "context_injection": (
        "[YOUR TASK CONTEXT]\n\n{context}\n\nUse this information when I ask about my tasks."
    ),
    "context_acknowledgment": "Briefly acknowledge you received the task info.",
    "date_context": "Today is: {date} ({day_name})",
    "voice_behavior": "Keep responses concise - this is voice, not text.",
}


class PromptLibrary:
    """Keyed prompt templates with a 24 hour cache.

    Templates come from the store's ``ai_prompts`` table when the user is
    signed in. Any failure, or an empty table, falls back to
    :data:`DEFAULT_PROMPTS`. When ``cache_path`` is set the fetched prompts
    are persisted as JSON together with their fetch time.
    """

    def __init__(
        self,
        store: Optional[DataStore] = None,
        *,
        cache_path: Optional[Path] = None,
        ttl_seconds: float = CACHE_TTL_SECONDS,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self._store = store
        self._cache_path = cache_path
        self._ttl = ttl_seconds
        self._clock = clock
        self._prompts: Dict[str, str] = dict(DEFAULT_PROMPTS)
        self._fetched_at: Optional[float] = None
        self.source = "defaults"

    @property
    def is_stale(self) -> bool:
        return self._fetched_at is None or self._clock() - self._fetched_at > self._ttl

    async def load(self, *, force: bool = False) -> None:
        if not force and not self.is_stale:
            return
        if not force and self._load_cache():
            return
        await self._fetch()

    async def _fetch(self) -> None:
        if self._store is None:
            self._use_defaults()
            return
        try:
            prompts = await self._store.list_prompts()
        except (DataStoreError, ValueError) as exc:
            # ValueError covers undecodable bodies and rows failing validation
            logger.warning("prompts.fetch_failed", error=str(exc))
            self._use_defaults()
            return
        if not prompts:
            logger.warning("prompts.empty")
            self._use_defaults()
            return
        self._apply(prompts, fetched_at=self._clock(), source="remote")
        self._save_cache(prompts)
        logger.info("prompts.fetched", count=len(prompts))

    def _apply(self, prompts: List[AIPrompt], *, fetched_at: float, source: str) -> None:
        merged = dict(DEFAULT_PROMPTS)
        merged.update({prompt.key: prompt.content for prompt in prompts})
        self._prompts = merged
        self._fetched_at = fetched_at
        self.source = source

    def _use_defaults(self) -> None:
        self._prompts = dict(DEFAULT_PROMPTS)
        # retry on the next load
        self._fetched_at = None
        self.source = "defaults"

    def _load_cache(self) -> bool:
        if self._cache_path is None or not self._cache_path.exists():
            return False
        try:
            raw = json.loads(self._cache_path.read_text(encoding="utf-8"))
            fetched_at = float(raw["fetched_at"])
            prompts = [AIPrompt.model_validate(item) for item in raw["prompts"]]
        except (OSError, ValueError, KeyError, TypeError) as exc:
            logger.warning("prompts.cache_unreadable", path=str(self._cache_path), error=str(exc))
            return False
        if self._clock() - fetched_at > self._ttl:
            return False
        self._apply(prompts, fetched_at=fetched_at, source="cache")
        logger.info("prompts.cache_loaded", count=len(prompts))
        return True

    def _save_cache(self, prompts: List[AIPrompt]) -> None:
        if self._cache_path is None:
            return
        payload = {
            "fetched_at": self._fetched_at,
            "prompts": [prompt.model_dump(mode="json") for prompt in prompts],
        }
        try:
            self._cache_path.parent.mkdir(parents=True, exist_ok=True)
            self._cache_path.write_text(json.dumps(payload), encoding="utf-8")
        except OSError as exc:
            logger.warning("prompts.cache_write_failed", error=str(exc))

    def get(self, key: str) -> str:
        if key not in self._prompts:
            logger.warning("prompts.missing", key=key)
            return ""
        return self._prompts[key]

    def render(self, key: str, **variables: str) -> str:
        """Substitute ``{name}`` placeholders; unknown placeholders are left as is."""
        content = self.get(key)
        for name, value in variables.items():
            content = content.replace("{" + name + "}", value)
        return content

    def build_instructions(self, tasks: TaskCache, contacts: ContactCache, today: date) -> str:
        sections = [
            self.get("system_instructions"),
            self.get("voice_behavior"),
            self.render("date_context", date=today.isoformat(), day_name=today.strftime("%A")),
            self.render("context_injection", context=build_task_context(tasks, contacts, today)),
        ]
        return "\n\n".join(section for section in sections if section)


def build_task_context(tasks: TaskCache, contacts: ContactCache, today: date) -> str:
    today_str = today.isoformat()
    lines = [f"Today is {today_str}.", ""]
    todays = tasks.by_date(today_str)
    if todays:
        lines.append("TODAY'S TASKS:")
        for task in todays:
            time_part = f" at {task.short_start_time}" if task.short_start_time else ""
            lines.append(f"{task.status_mark} {task.title}{time_part}")
        lines.append("")
    else:
        lines.extend(["No tasks scheduled for today.", ""])

    horizon = (today + timedelta(days=UPCOMING_DAYS)).isoformat()
    upcoming = [task for task in tasks.in_range(today_str, horizon) if task.date != today_str]
    if upcoming:
        lines.append("UPCOMING TASKS:")
        for task in upcoming[:UPCOMING_LIMIT]:
            lines.append(f"{task.status_mark} {task.title} ({task.date})")
        lines.append("")

    lines.append(f"CONTACTS: {len(contacts.contacts)} saved")
    birthdays = contacts.upcoming_birthdays(today, BIRTHDAY_DAYS)
    if birthdays:
        lines.append("UPCOMING BIRTHDAYS:")
        for contact in birthdays[:BIRTHDAY_LIMIT]:
            lines.append(f"🎂 {contact.display_name} ({contact.birthday})")
    return "\n".join(lines)


__all__ = ["DEFAULT_PROMPTS", "PromptLibrary", "build_task_context"]
