import json
from datetime import date

import httpx
import pytest

from fakes import TODAY, make_task
from timetracker_voice.auth import AuthError, AuthSession
from timetracker_voice.config import SupabaseSettings
from timetracker_voice.models import Contact, CreateTaskInput, RelationshipType, TaskStatus, UpdateTaskInput, User
from timetracker_voice.store import (
    ContactCache,
    InMemoryStore,
    NotAuthenticatedError,
    RequestFailedError,
    SupabaseStore,
    TaskCache,
)

SETTINGS = SupabaseSettings(url="https://demo.supabase.co/", anon_key="anon")


def _store(handler, *, signed_in: bool = True) -> SupabaseStore:
    auth = AuthSession(access_token="jwt", user=User(id="user-1")) if signed_in else AuthSession()
    client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
    return SupabaseStore(SETTINGS, auth, client=client)


@pytest.mark.asyncio
async def test_list_tasks_queries_the_date_window():
    seen = []

    def handler(request: httpx.Request) -> httpx.Response:
        seen.append(request)
        return httpx.Response(200, json=[{"id": "t1", "title": "Gym", "date": "2025-06-01", "extra_column": 1}])

    store = _store(handler)
    tasks = await store.list_tasks(date(2025, 5, 25), date(2025, 7, 1))
    await store.aclose()

    request = seen[0]
    assert request.method == "GET"
    assert request.url.path == "/rest/v1/tasks"
    assert request.url.params.get_list("date") == ["gte.2025-05-25", "lte.2025-07-01"]
    assert request.url.params["order"] == "date.asc,start_time.asc"
    assert request.headers["apikey"] == "anon"
    assert request.headers["Authorization"] == "Bearer jwt"
    assert [task.title for task in tasks] == ["Gym"]


@pytest.mark.asyncio
async def test_create_task_posts_payload_and_returns_row():
    seen = []

    def handler(request: httpx.Request) -> httpx.Response:
        seen.append(request)
        body = json.loads(request.content)
        return httpx.Response(201, json=[{"id": "new", **body}])

    store = _store(handler)
    task = await store.create_task(CreateTaskInput(user_id="user-1", title="Gym", date="2025-06-01"))
    await store.aclose()

    body = json.loads(seen[0].content)
    assert seen[0].headers["Prefer"] == "return=representation"
    assert body["user_id"] == "user-1"
    assert body["priority"] == "medium"
    assert body["status"] == "todo"
    assert "start_time" not in body
    assert task.id == "new"


@pytest.mark.asyncio
async def test_update_and_delete_target_one_row():
    seen = []

    def handler(request: httpx.Request) -> httpx.Response:
        seen.append(request)
        if request.method == "PATCH":
            return httpx.Response(200, json=[{"id": "t1", "title": "Gym", "date": "2025-06-01", "status": "done"}])
        return httpx.Response(204)

    store = _store(handler)
    updated = await store.update_task("t1", UpdateTaskInput(status=TaskStatus.DONE))
    await store.delete_task("t1")
    await store.aclose()

    assert [r.method for r in seen] == ["PATCH", "DELETE"]
    assert all(r.url.params["id"] == "eq.t1" for r in seen)
    assert json.loads(seen[0].content) == {"status": "done"}
    assert updated.status is TaskStatus.DONE


@pytest.mark.asyncio
async def test_contacts_and_prompts_endpoints():
    def handler(request: httpx.Request) -> httpx.Response:
        if request.url.path.endswith("/people"):
            assert request.url.params["relationship_type"] == "eq.family"
            return httpx.Response(200, json=[{"id": "c1", "first_name": "Ada", "relationship_type": "family"}])
        assert request.url.params["select"] == "*"
        return httpx.Response(200, json=[{"key": "voice_behavior", "content_en": "Be brief."}])

    store = _store(handler)
    contacts = await store.list_contacts(RelationshipType.FAMILY)
    prompts = await store.list_prompts()
    await store.aclose()

    assert contacts[0].relationship_type is RelationshipType.FAMILY
    assert prompts[0].content == "Be brief."


@pytest.mark.asyncio
async def test_missing_token_fails_before_any_request():
    def handler(request: httpx.Request) -> httpx.Response:  # pragma: no cover - must not run
        raise AssertionError("request sent without a token")

    store = _store(handler, signed_in=False)
    with pytest.raises(NotAuthenticatedError):
        await store.list_prompts()
    await store.aclose()


@pytest.mark.asyncio
async def test_http_errors_are_mapped():
    responses = iter([httpx.Response(401), httpx.Response(500, text="boom")])

    def handler(request: httpx.Request) -> httpx.Response:
        return next(responses)

    store = _store(handler)
    with pytest.raises(NotAuthenticatedError):
        await store.list_contacts()
    with pytest.raises(RequestFailedError) as excinfo:
        await store.list_contacts()
    await store.aclose()

    assert excinfo.value.status_code == 500
    assert str(excinfo.value) == "List contacts failed (HTTP 500): boom"


@pytest.mark.asyncio
async def test_transport_errors_are_mapped():
    def handler(request: httpx.Request) -> httpx.Response:
        raise httpx.ConnectError("offline", request=request)

    store = _store(handler)
    with pytest.raises(RequestFailedError):
        await store.delete_task("t1")
    await store.aclose()


@pytest.mark.asyncio
async def test_sign_in_with_password_stores_token():
    def handler(request: httpx.Request) -> httpx.Response:
        assert request.url.path == "/auth/v1/token"
        assert request.url.params["grant_type"] == "password"
        assert json.loads(request.content) == {"email": "me@example.com", "password": "secret"}
        return httpx.Response(
            200, json={"access_token": "jwt", "refresh_token": "r", "user": {"id": "user-1", "email": "me@example.com"}}
        )

    auth = AuthSession()
    async with httpx.AsyncClient(transport=httpx.MockTransport(handler)) as client:
        user = await auth.sign_in_with_password(SETTINGS, "me@example.com", "secret", client=client)

    assert user.id == "user-1"
    assert auth.is_authenticated
    assert auth.access_token == "jwt"
    auth.sign_out()
    assert not auth.is_authenticated


@pytest.mark.asyncio
async def test_rejected_sign_in_raises():
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(400, json={"error_description": "Invalid login credentials"})

    auth = AuthSession()
    async with httpx.AsyncClient(transport=httpx.MockTransport(handler)) as client:
        with pytest.raises(AuthError, match="Invalid login credentials"):
            await auth.sign_in_with_password(SETTINGS, "me@example.com", "wrong", client=client)
    assert not auth.is_authenticated


def test_session_from_settings_requires_user_and_token():
    assert not AuthSession.from_settings(SupabaseSettings(access_token="jwt")).is_authenticated
    session = AuthSession.from_settings(SupabaseSettings(access_token="jwt", user_id="user-1"))
    assert session.is_authenticated
    assert session.current_user.id == "user-1"


@pytest.mark.asyncio
async def test_task_cache_window_and_lookup():
    store = InMemoryStore(
        tasks=[
            make_task("a", "Morning run", "2025-05-20"),
            make_task("b", "Morning run", "2025-06-01"),
            make_task("c", "Call plumber", "2025-06-10"),
        ]
    )
    cache = TaskCache(store, lambda: TODAY)
    await cache.refresh()

    assert cache.window == ("2025-05-25", "2025-07-01")
    assert [task.id for task in cache.tasks] == ["b", "c"]
    assert cache.covers("2025-06-01", "2025-06-30")
    assert not cache.covers("2025-05-01", "2025-06-01")
    assert cache.find_by_title("RUN").id == "b"
    assert cache.find_by_title("plumber", "2025-06-11") is None
    assert cache.find_by_title("dentist") is None


def test_contact_cache_birthdays_sorted_by_proximity():
    store = InMemoryStore()
    cache = ContactCache(store)
    cache.add(Contact(id="1", first_name="Zoe", birthday="1990-06-20"))
    cache.add(Contact(id="2", first_name="Ben", birthday="1985-06-03"))
    cache.add(Contact(id="3", first_name="Ann", birthday="1970-09-01"))
    cache.add(Contact(id="4", first_name="Leap", birthday="2000-02-29"))

    assert [c.first_name for c in cache.contacts] == ["Ann", "Ben", "Leap", "Zoe"]
    assert [c.first_name for c in cache.upcoming_birthdays(TODAY)] == ["Ben", "Zoe"]
    assert cache.contacts[2].days_until_birthday(date(2026, 2, 1)) == 27
