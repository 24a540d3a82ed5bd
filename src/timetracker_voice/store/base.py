from __future__ import annotations

import abc
from datetime import date
from typing import Optional

from ..models import (
    AIPrompt,
    Contact,
    CreateContactInput,
    CreateTaskInput,
    RelationshipType,
    Task,
    UpdateTaskInput,
)


class DataStoreError(RuntimeError):
    """Base error for task, contact and prompt persistence."""


class NotAuthenticatedError(DataStoreError):
    def __init__(self, message: str = "Not authenticated - please log in again") -> None:
        super().__init__(message)


class RequestFailedError(DataStoreError):
    def __init__(self, operation: str, status_code: Optional[int] = None, detail: str = "") -> None:
        self.operation = operation
        self.status_code = status_code
        message = f"{operation} failed"
        if status_code is not None:
            message += f" (HTTP {status_code})"
        if detail:
            message += f": {detail}"
        super().__init__(message)


class DataStore(abc.ABC):
    """CRUD contract the voice core relies on."""

    @abc.abstractmethod
    async def list_tasks(self, start: date, end: date) -> list[Task]: ...

    @abc.abstractmethod
    async def create_task(self, task: CreateTaskInput) -> Task: ...

    @abc.abstractmethod
    async def update_task(self, task_id: str, changes: UpdateTaskInput) -> Task: ...

    @abc.abstractmethod
    async def delete_task(self, task_id: str) -> None: ...

    @abc.abstractmethod
    async def list_contacts(self, relationship_type: Optional[RelationshipType] = None) -> list[Contact]: ...

    @abc.abstractmethod
    async def create_contact(self, contact: CreateContactInput) -> Contact: ...

    @abc.abstractmethod
    async def list_prompts(self) -> list[AIPrompt]: ...
