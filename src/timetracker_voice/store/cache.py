"""In-memory task and contact lists backing tool lookups and prompt context."""
from __future__ import annotations

import asyncio
from datetime import date, timedelta
from typing import Callable, List, Optional, Set, Tuple

import structlog

from ..models import Contact, RelationshipType, Task
from .base import DataStore

logger = structlog.get_logger(__name__)

PAST_WINDOW_DAYS = 7
FUTURE_WINDOW_DAYS = 30

Today = Callable[[], date]


class _BackgroundRefresh:
    """Best-effort refresh scheduling shared by both caches."""

    def __init__(self) -> None:
        self._pending: Set[asyncio.Task[None]] = set()

    async def refresh(self) -> None:  # pragma: no cover - overridden
        raise NotImplementedError

    def refresh_in_background(self) -> asyncio.Task[None]:
        """Schedule :meth:`refresh` without awaiting it.

        No ordering is promised relative to the next read; a lookup issued
        right after this call may still see the previous list.
        """
        task = asyncio.create_task(self._refresh_logged())
        self._pending.add(task)
        task.add_done_callback(self._pending.discard)
        return task

    async def _refresh_logged(self) -> None:
        try:
            await self.refresh()
        except Exception as exc:
            logger.warning("cache.refresh_failed", cache=type(self).__name__, error=str(exc))

    async def wait_idle(self) -> None:
        """Await refreshes already scheduled."""
        if self._pending:
            await asyncio.gather(*list(self._pending), return_exceptions=True)


class TaskCache(_BackgroundRefresh):
    def __init__(self, store: DataStore, today: Today = date.today) -> None:
        super().__init__()
        self._store = store
        self._today = today
        self.tasks: List[Task] = []
        self.window: Optional[Tuple[str, str]] = None

    async def refresh(self) -> None:
        today = self._today()
        start = today - timedelta(days=PAST_WINDOW_DAYS)
        end = today + timedelta(days=FUTURE_WINDOW_DAYS)
        self.tasks = await self._store.list_tasks(start, end)
        self.window = (start.isoformat(), end.isoformat())
        logger.debug("cache.tasks_refreshed", count=len(self.tasks))

    def covers(self, start: str, end: str) -> bool:
        """True when the last refresh fetched every task between ``start`` and ``end``."""
        return self.window is not None and self.window[0] <= start and end <= self.window[1]

    def upsert(self, task: Task) -> None:
        for index, existing in enumerate(self.tasks):
            if existing.id == task.id:
                self.tasks[index] = task
                return
        self.tasks.append(task)
        self.tasks.sort(key=lambda item: (item.date, item.start_time or ""))

    def remove(self, task_id: str) -> None:
        self.tasks = [task for task in self.tasks if task.id != task_id]

    def by_date(self, day: str) -> List[Task]:
        return [task for task in self.tasks if task.date == day]

    def in_range(self, start: str, end: str) -> List[Task]:
        return [task for task in self.tasks if start <= task.date <= end]

    def find_by_title(self, title: str, day: Optional[str] = None) -> Optional[Task]:
        """Case-insensitive substring lookup.

        With ``day`` the first match on that date wins. Otherwise a match
        dated today is preferred, then the first match in list order.
        Titles shared across dates can resolve to the wrong task.
        """
        needle = title.lower()
        matching = [task for task in self.tasks if needle in task.title.lower()]
        if day is not None:
            return next((task for task in matching if task.date == day), None)
        today = self._today().isoformat()
        return next((task for task in matching if task.date == today), matching[0] if matching else None)


class ContactCache(_BackgroundRefresh):
    def __init__(self, store: DataStore) -> None:
        super().__init__()
        self._store = store
        self.contacts: List[Contact] = []
        self.loaded = False

    async def refresh(self) -> None:
        self.contacts = await self._store.list_contacts()
        self.loaded = True
        logger.debug("cache.contacts_refreshed", count=len(self.contacts))

    def add(self, contact: Contact) -> None:
        self.contacts.append(contact)
        self.contacts.sort(key=lambda item: item.first_name)

    def by_type(self, relationship_type: Optional[RelationshipType]) -> List[Contact]:
        if relationship_type is None:
            return list(self.contacts)
        return [c for c in self.contacts if c.relationship_type is relationship_type]

    def upcoming_birthdays(self, today: date, days: int = 30) -> List[Contact]:
        dated = [(c.days_until_birthday(today), c) for c in self.contacts]
        soon = [(d, c) for d, c in dated if d is not None and d <= days]
        return [c for _, c in sorted(soon, key=lambda pair: pair[0])]


__all__ = ["ContactCache", "FUTURE_WINDOW_DAYS", "PAST_WINDOW_DAYS", "TaskCache"]
