"""Session configuration sent once per realtime connection."""
from __future__ import annotations

from datetime import date
from typing import Any, Callable, Dict, List

import structlog

from .config import RealtimeSettings
from .prompts import PromptLibrary
from .store.cache import ContactCache, TaskCache

logger = structlog.get_logger(__name__)

_DATE = {"type": "string", "description": "Date in YYYY-MM-DD format"}
_TIME = {"type": "string", "description": "Time in HH:MM format"}
_RELATIONSHIPS = ["family", "friend", "colleague", "other"]
_STATUSES = ["todo", "in_progress", "done", "missed"]


def _function(name: str, description: str, properties: Dict[str, Any], required: List[str]) -> Dict[str, Any]:
    return {
        "type": "function",
        "name": name,
        "description": description,
        "parameters": {"type": "object", "properties": properties, "required": required},
    }


TOOL_SPECS: List[Dict[str, Any]] = [
    _function(
        "get_tasks",
        "Get tasks for a specific date or date range. Defaults to today.",
        {
            "date": _DATE,
            "start_date": {"type": "string", "description": "Start date for range (YYYY-MM-DD)"},
            "end_date": {"type": "string", "description": "End date for range (YYYY-MM-DD)"},
        },
        [],
    ),
    _function(
        "create_task",
        "Create a new task",
        {
            "title": {"type": "string", "description": "Task title"},
            "date": _DATE,
            "start_time": _TIME,
            "end_time": _TIME,
            "priority": {"type": "string", "enum": ["low", "medium", "high"]},
            "notes": {"type": "string", "description": "Additional notes"},
        },
        ["title", "date"],
    ),
    _function(
        "update_task",
        "Update an existing task found by (part of) its title",
        {
            "task_title": {"type": "string", "description": "Title of the task to update"},
            "task_date": {"type": "string", "description": "Date of the task, when several share a title"},
            "new_status": {"type": "string", "enum": _STATUSES},
            "new_title": {"type": "string"},
            "new_date": _DATE,
            "new_start_time": _TIME,
        },
        ["task_title"],
    ),
    _function(
        "delete_task",
        "Delete a task found by (part of) its title",
        {
            "task_title": {"type": "string", "description": "Title of the task to delete"},
            "task_date": {"type": "string", "description": "Date of the task, when several share a title"},
        },
        ["task_title"],
    ),
    _function(
        "get_contacts",
        "Get list of contacts, optionally filtered by relationship type",
        {
            "relationship_type": {
                "type": "string",
                "enum": _RELATIONSHIPS + ["all"],
                "description": "Filter by relationship type",
            },
            "include_birthdays": {"type": "boolean", "description": "Include birthdays and days until each"},
        },
        [],
    ),
    _function(
        "create_contact",
        "Create a new contact",
        {
            "first_name": {"type": "string", "description": "First name"},
            "last_name": {"type": "string"},
            "nickname": {"type": "string"},
            "relationship_type": {"type": "string", "enum": _RELATIONSHIPS},
            "relationship_detail": {"type": "string", "description": "e.g. brother, manager"},
            "phone": {"type": "string"},
            "email": {"type": "string"},
            "birthday": _DATE,
            "notes": {"type": "string"},
        },
        ["first_name", "relationship_type"],
    ),
]


class SessionConfigBuilder:
    def __init__(
        self,
        settings: RealtimeSettings,
        prompts: PromptLibrary,
        tasks: TaskCache,
        contacts: ContactCache,
        today: Callable[[], date] = date.today,
    ) -> None:
        self._settings = settings
        self._prompts = prompts
        self._tasks = tasks
        self._contacts = contacts
        self._today = today

    async def build(self) -> Dict[str, Any]:
        """Return the ``session.update`` message for a fresh connection."""
        await self._prompts.load()
        instructions = self._prompts.build_instructions(self._tasks, self._contacts, self._today())
        settings = self._settings
        message = {
            "type": "session.update",
            "session": {
                "modalities": ["text", "audio"],
                "instructions": instructions,
                "voice": settings.voice,
                "input_audio_format": "pcm16",
                "output_audio_format": "pcm16",
                "input_audio_transcription": {"model": settings.transcription_model},
                "turn_detection": {
                    "type": "server_vad",
                    "threshold": settings.vad_threshold,
                    "prefix_padding_ms": settings.prefix_padding_ms,
                    "silence_duration_ms": settings.silence_duration_ms,
                },
                "tools": TOOL_SPECS,
            },
        }
        logger.debug("session.config_built", instructions_chars=len(instructions), tools=len(TOOL_SPECS))
        return message


__all__ = ["SessionConfigBuilder", "TOOL_SPECS"]
