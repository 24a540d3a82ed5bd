"""Records exchanged with the data store and transient session objects."""
from __future__ import annotations

from dataclasses import dataclass, field
from datetime import date, datetime
from enum import Enum
from typing import Any, Optional

from pydantic import AliasChoices, BaseModel, ConfigDict, Field


class Priority(str, Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"


class TaskStatus(str, Enum):
    TODO = "todo"
    IN_PROGRESS = "in_progress"
    DONE = "done"
    MISSED = "missed"


class RelationshipType(str, Enum):
    FAMILY = "family"
    FRIEND = "friend"
    COLLEAGUE = "colleague"
    OTHER = "other"


class ConversationState(str, Enum):
    IDLE = "idle"
    LISTENING = "listening"
    PROCESSING = "processing"
    SPEAKING = "speaking"
    ERROR = "error"


class ConnectionState(str, Enum):
    DISCONNECTED = "disconnected"
    CONNECTING = "connecting"
    CONNECTED = "connected"


class Task(BaseModel):
    """A row of the ``tasks`` table. Dates stay ``YYYY-MM-DD`` strings."""

    model_config = ConfigDict(extra="ignore")

    id: str
    title: str
    description: Optional[str] = None
    date: str
    start_time: Optional[str] = None
    end_time: Optional[str] = None
    priority: Priority = Priority.MEDIUM
    status: TaskStatus = TaskStatus.TODO
    task_type: Optional[str] = None
    category_id: Optional[str] = None
    tags: Optional[list[str]] = None
    is_recurring: bool = False
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    @property
    def short_start_time(self) -> Optional[str]:
        """``HH:MM`` prefix of the start time, if any."""
        if not self.start_time:
            return None
        return self.start_time[:5]

    @property
    def status_mark(self) -> str:
        if self.status is TaskStatus.DONE:
            return "✅"
        if self.status is TaskStatus.MISSED:
            return "❌"
        return "⏳"


class Contact(BaseModel):
    """A row of the ``people`` table."""

    model_config = ConfigDict(extra="ignore")

    id: str
    first_name: str
    last_name: Optional[str] = None
    nickname: Optional[str] = None
    relationship_type: RelationshipType = RelationshipType.OTHER
    relationship_detail: Optional[str] = None
    phone: Optional[str] = None
    email: Optional[str] = None
    birthday: Optional[str] = None
    anniversary: Optional[str] = None
    notes: Optional[str] = None
    avatar_url: Optional[str] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    @property
    def full_name(self) -> str:
        if self.last_name:
            return f"{self.first_name} {self.last_name}"
        return self.first_name

    @property
    def display_name(self) -> str:
        return self.nickname or self.full_name

    def days_until_birthday(self, today: date) -> Optional[int]:
        if not self.birthday:
            return None
        try:
            born = date.fromisoformat(self.birthday[:10])
        except ValueError:
            return None
        upcoming = _anniversary_in(born, today.year)
        if upcoming < today:
            upcoming = _anniversary_in(born, today.year + 1)
        return (upcoming - today).days


def _anniversary_in(born: date, year: int) -> date:
    try:
        return born.replace(year=year)
    except ValueError:
        # 29 February outside a leap year
        return date(year, 2, 28)


class User(BaseModel):
    id: str
    email: Optional[str] = None


class AIPrompt(BaseModel):
    model_config = ConfigDict(extra="ignore")

    key: str
    content: str = Field(validation_alias=AliasChoices("content", "content_en"))
    description: Optional[str] = None
    updated_at: Optional[datetime] = None


class CreateTaskInput(BaseModel):
    user_id: str
    title: str
    date: str
    start_time: Optional[str] = None
    end_time: Optional[str] = None
    description: Optional[str] = None
    priority: Priority = Priority.MEDIUM
    status: TaskStatus = TaskStatus.TODO
    task_type: str = "task"


class UpdateTaskInput(BaseModel):
    """Partial update; unset fields are left untouched."""

    title: Optional[str] = None
    date: Optional[str] = None
    start_time: Optional[str] = None
    status: Optional[TaskStatus] = None

    def is_empty(self) -> bool:
        return not self.model_dump(exclude_none=True)


class CreateContactInput(BaseModel):
    user_id: str
    first_name: str
    relationship_type: RelationshipType
    last_name: Optional[str] = None
    nickname: Optional[str] = None
    relationship_detail: Optional[str] = None
    phone: Optional[str] = None
    email: Optional[str] = None
    birthday: Optional[str] = None
    notes: Optional[str] = None


@dataclass(slots=True)
class ToolInvocation:
    call_id: str
    name: str
    arguments: dict[str, Any] = field(default_factory=dict)


@dataclass(slots=True)
class ToolResult:
    call_id: str
    output: str

    def to_item(self) -> dict[str, Any]:
        return {
            "type": "conversation.item.create",
            "item": {
                "type": "function_call_output",
                "call_id": self.call_id,
                "output": self.output,
            },
        }


__all__ = [
    "AIPrompt",
    "ConnectionState",
    "Contact",
    "ConversationState",
    "CreateContactInput",
    "CreateTaskInput",
    "Priority",
    "RelationshipType",
    "Task",
    "TaskStatus",
    "ToolInvocation",
    "ToolResult",
    "UpdateTaskInput",
    "User",
]
