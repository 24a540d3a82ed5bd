"""PostgREST-backed data store for the hosted Supabase project."""
from __future__ import annotations

from datetime import date
from typing import Any, Dict, List, Optional, Sequence, Tuple

import httpx
import structlog

from ..auth import AuthSession
from ..config import SupabaseSettings
from ..models import (
    AIPrompt,
    Contact,
    CreateContactInput,
    CreateTaskInput,
    RelationshipType,
    Task,
    UpdateTaskInput,
)
from .base import DataStore, NotAuthenticatedError, RequestFailedError

logger = structlog.get_logger(__name__)

Params = Sequence[Tuple[str, str]]


class SupabaseStore(DataStore):
    def __init__(
        self,
        settings: SupabaseSettings,
        auth: AuthSession,
        client: Optional[httpx.AsyncClient] = None,
    ) -> None:
        self._settings = settings
        self._auth = auth
        self._client = client or httpx.AsyncClient(timeout=settings.request_timeout)

    async def aclose(self) -> None:
        await self._client.aclose()

    def _url(self, table: str) -> str:
        return f"{self._settings.url.rstrip('/')}/rest/v1/{table}"

    def _headers(self, *, representation: bool = False) -> Dict[str, str]:
        token = self._auth.access_token
        if token is None:
            raise NotAuthenticatedError()
        headers = {
            "apikey": self._settings.anon_key,
            "Authorization": f"Bearer {token}",
            "Content-Type": "application/json",
        }
        if representation:
            headers["Prefer"] = "return=representation"
        return headers

    async def _request(
        self,
        operation: str,
        method: str,
        table: str,
        *,
        params: Optional[Params] = None,
        json: Any = None,
        representation: bool = False,
    ) -> httpx.Response:
        headers = self._headers(representation=representation)
        try:
            response = await self._client.request(
                method, self._url(table), params=params, json=json, headers=headers
            )
        except httpx.HTTPError as exc:
            logger.warning("store.transport_failed", operation=operation, error=str(exc))
            raise RequestFailedError(operation, detail=str(exc)) from exc
        if response.status_code == 401:
            raise NotAuthenticatedError()
        if not response.is_success:
            logger.warning("store.request_failed", operation=operation, status=response.status_code)
            raise RequestFailedError(operation, response.status_code, response.text[:200])
        return response

    @staticmethod
    def _single(operation: str, response: httpx.Response) -> Dict[str, Any]:
        body = response.json()
        rows: List[Dict[str, Any]] = body if isinstance(body, list) else [body]
        if not rows:
            raise RequestFailedError(operation, response.status_code, "no row returned")
        return rows[0]

    async def list_tasks(self, start: date, end: date) -> list[Task]:
        response = await self._request(
            "List tasks",
            "GET",
            "tasks",
            params=[
                ("date", f"gte.{start.isoformat()}"),
                ("date", f"lte.{end.isoformat()}"),
                ("order", "date.asc,start_time.asc"),
            ],
        )
        return [Task.model_validate(row) for row in response.json()]

    async def create_task(self, task: CreateTaskInput) -> Task:
        response = await self._request(
            "Create task",
            "POST",
            "tasks",
            json=task.model_dump(mode="json", exclude_none=True),
            representation=True,
        )
        return Task.model_validate(self._single("Create task", response))

    async def update_task(self, task_id: str, changes: UpdateTaskInput) -> Task:
        response = await self._request(
            "Update task",
            "PATCH",
            "tasks",
            params=[("id", f"eq.{task_id}")],
            json=changes.model_dump(mode="json", exclude_none=True),
            representation=True,
        )
        return Task.model_validate(self._single("Update task", response))

    async def delete_task(self, task_id: str) -> None:
        await self._request("Delete task", "DELETE", "tasks", params=[("id", f"eq.{task_id}")])

    async def list_contacts(self, relationship_type: Optional[RelationshipType] = None) -> list[Contact]:
        params: List[Tuple[str, str]] = [("order", "first_name.asc")]
        if relationship_type is not None:
            params.append(("relationship_type", f"eq.{relationship_type.value}"))
        response = await self._request("List contacts", "GET", "people", params=params)
        return [Contact.model_validate(row) for row in response.json()]

    async def create_contact(self, contact: CreateContactInput) -> Contact:
        response = await self._request(
            "Create contact",
            "POST",
            "people",
            json=contact.model_dump(mode="json", exclude_none=True),
            representation=True,
        )
        return Contact.model_validate(self._single("Create contact", response))

    async def list_prompts(self) -> list[AIPrompt]:
        response = await self._request(
            "List prompts",
            "GET",
            "ai_prompts",
            params=[("select", "*"), ("order", "key")],
        )
        return [AIPrompt.model_validate(row) for row in response.json()]


__all__ = ["SupabaseStore"]
