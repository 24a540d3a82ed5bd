import asyncio
import base64
import json

import numpy as np
import pytest
import structlog

from fakes import build_harness, wait_until
from timetracker_voice.events import ConnectionClosed, ErrorEvent
from timetracker_voice.models import ConnectionState, ConversationState


def _audio_payloads(socket):
    return [base64.b64decode(m["audio"]) for m in socket.sent if m["type"] == "input_audio_buffer.append"]


@pytest.mark.asyncio
async def test_audio_while_disconnected_is_dropped(harness):
    client = harness.app.client
    client.send_audio_chunk(b"\x00\x00")
    assert client.pending_sends == 0
    assert harness.connector.calls == []


@pytest.mark.asyncio
async def test_missing_api_key_reports_config_error_without_connecting():
    harness = build_harness(api_key="")
    client = harness.app.client
    events = []
    client.add_listener(events.append)

    await client.connect()

    assert harness.connector.calls == []
    assert client.session.connection.value is ConnectionState.DISCONNECTED
    assert len(events) == 1
    assert isinstance(events[0], ErrorEvent)
    assert events[0].source == "config"


@pytest.mark.asyncio
async def test_connect_sends_session_update_first(harness):
    client = harness.app.client
    await client.connect()

    url, kwargs = harness.connector.calls[0]
    assert url == "wss://api.openai.com/v1/realtime?model=gpt-4o-realtime-preview-2024-12-17"
    assert kwargs["additional_headers"]["Authorization"] == "Bearer sk-test"
    assert kwargs["additional_headers"]["OpenAI-Beta"] == "realtime=v1"
    assert kwargs["subprotocols"] == ["realtime"]
    assert client.is_connected

    update = harness.connector.socket.sent[0]
    assert update["type"] == "session.update"
    session = update["session"]
    assert session["input_audio_format"] == "pcm16"
    assert session["turn_detection"]["type"] == "server_vad"
    assert {tool["name"] for tool in session["tools"]} == {
        "get_tasks",
        "create_task",
        "update_task",
        "delete_task",
        "get_contacts",
        "create_contact",
    }

    await client.connect()
    assert len(harness.connector.calls) == 1
    await harness.app.aclose()


@pytest.mark.asyncio
async def test_failed_handshake_returns_to_disconnected(harness):
    client = harness.app.client
    harness.connector.fail = OSError("network unreachable")
    events = []
    client.add_listener(events.append)

    await client.connect()

    assert client.session.connection.value is ConnectionState.DISCONNECTED
    assert events[0].source == "transport"


@pytest.mark.asyncio
async def test_reconnect_sends_one_session_update_and_no_stale_audio(harness):
    client = harness.app.client
    await client.connect()
    first = harness.connector.socket
    first.gate = asyncio.Event()
    client.send_audio_chunk(b"\x01\x00")
    await client.disconnect()
    client.send_audio_chunk(b"\x02\x00")

    await client.connect()
    second = harness.connector.socket
    client.send_audio_chunk(b"\x03\x00")
    await wait_until(lambda: len(second.sent) == 2)

    assert first.types() == ["session.update"]
    assert first.closed
    assert second.types() == ["session.update", "input_audio_buffer.append"]
    assert _audio_payloads(second) == [b"\x03\x00"]
    await harness.app.aclose()


@pytest.mark.asyncio
async def test_tool_result_is_followed_by_response_create(harness):
    client = harness.app.client
    await client.connect()
    socket = harness.connector.socket
    socket.feed(
        {
            "type": "response.function_call_arguments.done",
            "call_id": "call_1",
            "name": "create_task",
            "arguments": json.dumps({"title": "Gym", "date": "2025-06-01"}),
        }
    )

    await wait_until(lambda: socket.types()[-1:] == ["response.create"])

    item = socket.sent[-2]
    assert item["type"] == "conversation.item.create"
    assert item["item"]["type"] == "function_call_output"
    assert item["item"]["call_id"] == "call_1"
    assert "Gym" in item["item"]["output"]
    assert [op for op, _ in harness.store.mutations()] == ["create_task"]
    await harness.app.aclose()


@pytest.mark.asyncio
async def test_malformed_tool_arguments_still_answer_the_call(harness):
    client = harness.app.client
    await client.connect()
    socket = harness.connector.socket
    socket.feed(
        {"type": "response.function_call_arguments.done", "call_id": "call_9", "name": "create_task", "arguments": "{"}
    )

    await wait_until(lambda: socket.types()[-1:] == ["response.create"])

    assert socket.sent[-2]["item"]["call_id"] == "call_9"
    assert socket.sent[-2]["item"]["output"].startswith("Failed to run create_task")
    assert harness.store.mutations() == []
    await harness.app.aclose()


@pytest.mark.asyncio
async def test_remote_error_keeps_connection_and_moves_to_error(harness):
    app = harness.app
    await app.orchestrator.start_conversation()
    harness.connector.socket.feed({"type": "error", "error": {"message": "Invalid session"}})

    await wait_until(lambda: app.orchestrator.state.value is ConversationState.ERROR)

    assert app.client.is_connected
    assert app.orchestrator.last_error == "Invalid session"
    await app.aclose()


@pytest.mark.asyncio
async def test_transport_drop_disconnects_and_publishes_close(harness):
    app = harness.app
    events = []
    app.client.add_listener(events.append)
    await app.orchestrator.start_conversation()

    harness.connector.socket.drop()
    await wait_until(lambda: app.client.session.connection.value is ConnectionState.DISCONNECTED)

    assert isinstance(events[-1], ConnectionClosed)
    assert app.orchestrator.state.value is ConversationState.ERROR
    assert not app.client.session.conversation_active.value
    app.client.send_audio_chunk(b"\x00\x00")
    assert app.client.pending_sends == 0
    await app.aclose()


@pytest.mark.asyncio
async def test_speech_started_flushes_playback(harness):
    app = harness.app
    await app.client.connect()
    socket = harness.connector.socket
    audio = base64.b64encode(np.full(480, 500, dtype="<i2").tobytes()).decode()
    socket.feed({"type": "response.audio.delta", "delta": audio})
    await wait_until(lambda: app.audio.queued_samples() == 480)

    socket.feed({"type": "input_audio_buffer.speech_started"})
    await wait_until(lambda: app.audio.queued_samples() == 0)

    assert app.audio.playback_drained()
    await app.aclose()


@pytest.mark.asyncio
async def test_slow_socket_grows_queue_without_dropping_audio(harness):
    client = harness.app.client
    await client.connect()
    socket = harness.connector.socket
    socket.gate = asyncio.Event()
    chunks = [bytes([index, 0]) for index in range(60)]

    for chunk in chunks:
        client.send_audio_chunk(chunk)
    await asyncio.sleep(0.01)
    assert client.pending_sends >= len(chunks) - 1

    socket.gate.set()
    await wait_until(lambda: len(_audio_payloads(socket)) == len(chunks))
    assert _audio_payloads(socket) == chunks
    await harness.app.aclose()


@pytest.mark.asyncio
async def test_tool_result_from_previous_connection_is_discarded(harness, monkeypatch):
    client = harness.app.client
    release = asyncio.Event()
    started = asyncio.Event()

    async def slow_execute(name, args=None):
        started.set()
        await release.wait()
        return "Created task: Gym for 2025-06-01"

    monkeypatch.setattr(harness.app.dispatcher, "execute", slow_execute)
    await client.connect()
    first = harness.connector.socket
    first.feed(
        {
            "type": "response.function_call_arguments.done",
            "call_id": "call_1",
            "name": "create_task",
            "arguments": json.dumps({"title": "Gym", "date": "2025-06-01"}),
        }
    )
    await asyncio.wait_for(started.wait(), timeout=2)

    await client.disconnect()
    await client.connect()
    release.set()
    await client.wait_for_tools()
    await asyncio.sleep(0.01)

    assert first.types() == ["session.update"]
    assert harness.connector.socket.types() == ["session.update"]
    await harness.app.aclose()


@pytest.mark.asyncio
async def test_failed_session_setup_closes_socket_and_allows_retry(harness):
    client = harness.app.client
    events = []
    client.add_listener(events.append)
    harness.store.fail_with = RuntimeError("prompt table unavailable")

    await client.connect()

    assert client.session.connection.value is ConnectionState.DISCONNECTED
    assert harness.connector.socket.closed
    assert harness.connector.socket.sent == []
    assert isinstance(events[-1], ErrorEvent)
    assert events[-1].source == "transport"

    harness.store.fail_with = None
    await client.connect()

    assert len(harness.connector.calls) == 2
    assert client.is_connected
    assert harness.connector.socket.types()[0] == "session.update"
    await harness.app.aclose()


@pytest.mark.asyncio
async def test_transcript_accumulates_and_response_done_refreshes_tasks(harness):
    client = harness.app.client
    await client.connect()
    socket = harness.connector.socket
    def refreshes() -> int:
        return sum(1 for call in harness.store.calls if call[0] == "list_tasks")

    before = refreshes()

    socket.feed({"type": "response.audio_transcript.delta", "delta": "Hel"})
    socket.feed({"type": "response.audio_transcript.delta", "delta": "lo"})
    await wait_until(lambda: client.session.last_response.value == "Hello")

    socket.feed({"type": "response.audio_transcript.done", "transcript": "Hello there"})
    await wait_until(lambda: client.session.last_response.value == "Hello there")

    socket.feed({"type": "response.done", "response": {"status": "completed"}})
    await wait_until(lambda: client.session.last_response.value == "")
    await wait_until(lambda: refreshes() == before + 1)
    await harness.app.aclose()


@pytest.mark.asyncio
async def test_stop_discards_audio_not_yet_sent(harness):
    app = harness.app
    await app.orchestrator.start_conversation()
    socket = harness.connector.socket
    socket.gate = asyncio.Event()

    for index in range(5):
        app.client.send_audio_chunk(bytes([index, 0]))
    await asyncio.sleep(0.01)
    assert app.client.pending_sends >= 4

    await app.orchestrator.stop_conversation()
    assert app.client.pending_sends == 0

    socket.gate.set()
    await asyncio.sleep(0.02)
    assert len(_audio_payloads(socket)) <= 1
    await app.aclose()


@pytest.mark.asyncio
async def test_client_disconnect_publishes_close_and_ends_conversation(harness):
    app = harness.app
    events = []
    app.client.add_listener(events.append)
    await app.orchestrator.start_conversation()

    await app.client.disconnect()

    assert isinstance(events[-1], ConnectionClosed)
    assert not app.client.session.conversation_active.value
    closes = len(events)
    await app.client.disconnect()
    assert len(events) == closes
    await app.aclose()


@pytest.mark.asyncio
async def test_connection_context_is_bound_while_connected(harness):
    client = harness.app.client
    await client.connect()

    context = structlog.contextvars.get_contextvars()
    assert context["realtime_model"] == "gpt-4o-realtime-preview-2024-12-17"
    assert context["connection"] == 1

    await client.disconnect()
    assert "realtime_model" not in structlog.contextvars.get_contextvars()
    await harness.app.aclose()
