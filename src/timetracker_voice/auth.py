"""Bearer credential and signed-in identity for the hosted backend."""
from __future__ import annotations

from typing import Optional

import httpx
import structlog

from .config import SupabaseSettings
from .models import User

logger = structlog.get_logger(__name__)


class AuthError(RuntimeError):
    """Sign-in was rejected or the auth endpoint was unreachable."""


class AuthSession:
    """Opaque token source shared by the data store and tool dispatch."""

    def __init__(self, access_token: Optional[str] = None, user: Optional[User] = None) -> None:
        self._access_token = access_token
        self._refresh_token: Optional[str] = None
        self._user = user

    @classmethod
    def from_settings(cls, settings: SupabaseSettings) -> "AuthSession":
        user = None
        if settings.access_token and settings.user_id:
            user = User(id=settings.user_id, email=settings.user_email)
        return cls(access_token=settings.access_token if user else None, user=user)

    @property
    def access_token(self) -> Optional[str]:
        return self._access_token

    @property
    def current_user(self) -> Optional[User]:
        return self._user

    @property
    def is_authenticated(self) -> bool:
        return self._access_token is not None and self._user is not None

    async def sign_in_with_password(
        self,
        settings: SupabaseSettings,
        email: str,
        password: str,
        *,
        client: Optional[httpx.AsyncClient] = None,
    ) -> User:
        url = f"{settings.url.rstrip('/')}/auth/v1/token"
        owns_client = client is None
        http = client or httpx.AsyncClient(timeout=settings.request_timeout)
        try:
            response = await http.post(
                url,
                params={"grant_type": "password"},
                headers={"apikey": settings.anon_key, "Content-Type": "application/json"},
                json={"email": email, "password": password},
            )
        except httpx.HTTPError as exc:
            raise AuthError(f"Sign-in request failed: {exc}") from exc
        finally:
            if owns_client:
                await http.aclose()
        if response.status_code != 200:
            detail = _error_detail(response)
            logger.warning("auth.sign_in_rejected", status=response.status_code, detail=detail)
            raise AuthError(f"Sign-in failed: {detail}")
        body = response.json()
        user_body = body.get("user") or {}
        user = User(id=user_body["id"], email=user_body.get("email") or email)
        self._access_token = body["access_token"]
        self._refresh_token = body.get("refresh_token")
        self._user = user
        logger.info("auth.signed_in", user_id=user.id)
        return user

    def sign_out(self) -> None:
        self._access_token = None
        self._refresh_token = None
        self._user = None
        logger.info("auth.signed_out")


def _error_detail(response: httpx.Response) -> str:
    try:
        body = response.json()
    except ValueError:
        return response.text or f"HTTP {response.status_code}"
    if isinstance(body, dict):
        for key in ("error_description", "msg", "message", "error"):
            if body.get(key):
                return str(body[key])
    return f"HTTP {response.status_code}"


__all__ = ["AuthError", "AuthSession"]
