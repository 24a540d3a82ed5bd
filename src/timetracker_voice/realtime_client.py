from __future__ import annotations

import asyncio
import base64
import contextlib
import json
import logging
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Dict, List, Optional, Set

import structlog
from websockets.asyncio.client import connect
from websockets.exceptions import ConnectionClosed as WebSocketClosed
from websockets.exceptions import WebSocketException

from .audio import AudioEngine
from .config import RealtimeSettings
from .events import (
    AudioDelta,
    ConnectionClosed,
    ErrorEvent,
    FunctionCallDone,
    RealtimeEvent,
    ResponseDone,
    SpeechStarted,
    TranscriptDelta,
    TranscriptDone,
    decode_frame,
    parse_event,
)
from .logging_utils import emit_trace
from .metrics import AUDIO_CHUNKS_SENT, REALTIME_EVENTS, SEND_QUEUE_DEPTH
from .models import ConnectionState, ToolResult
from .observable import Observable
from .session import SessionConfigBuilder
from .store.cache import TaskCache
from .tools import ToolDispatcher

logger = structlog.get_logger(__name__)

Connector = Callable[..., Awaitable[Any]]
Listener = Callable[[RealtimeEvent], None]

_TRANSPORT_ERRORS = (OSError, asyncio.TimeoutError, WebSocketException)


@dataclass
class SessionState:
    """Observable per-conversation state, written only by the client."""

    connection: Observable[ConnectionState] = field(
        default_factory=lambda: Observable(ConnectionState.DISCONNECTED)
    )
    conversation_active: Observable[bool] = field(default_factory=lambda: Observable(False))
    last_response: Observable[str] = field(default_factory=lambda: Observable(""))


class RealtimeClient:
    """Persistent socket to the realtime speech model.

    Outbound messages go through a per-connection queue drained by a send
    task, so capture callbacks never wait on the network. Inbound frames are
    parsed into typed events and handled in wire order by a single receive
    task; tool calls run detached so a slow store never stalls it.
    """

    def __init__(
        self,
        settings: RealtimeSettings,
        audio: AudioEngine,
        dispatcher: ToolDispatcher,
        session_builder: SessionConfigBuilder,
        *,
        task_cache: Optional[TaskCache] = None,
        connector: Connector = connect,
        trace_logger: Optional[logging.Logger] = None,
    ) -> None:
        self._settings = settings
        self._audio = audio
        self._dispatcher = dispatcher
        self._session_builder = session_builder
        self._task_cache = task_cache
        self._connector = connector
        self._trace = trace_logger
        self.session = SessionState()
        self._listeners: List[Listener] = []
        self._ws: Any = None
        self._generation = 0
        self._send_queue: Optional[asyncio.Queue[str]] = None
        self._send_task: Optional[asyncio.Task[None]] = None
        self._receive_task: Optional[asyncio.Task[None]] = None
        self._tool_tasks: Set[asyncio.Task[None]] = set()
        self._queue_warned = False

    @property
    def is_connected(self) -> bool:
        return self.session.connection.value is ConnectionState.CONNECTED

    @property
    def pending_sends(self) -> int:
        return self._send_queue.qsize() if self._send_queue is not None else 0

    def add_listener(self, listener: Listener) -> Callable[[], None]:
        self._listeners.append(listener)

        def remove() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return remove

    def set_conversation_active(self, active: bool) -> None:
        self.session.conversation_active.set(active)

    def _publish(self, event: RealtimeEvent) -> None:
        for listener in list(self._listeners):
            try:
                listener(event)
            except Exception:
                logger.exception("realtime.listener_failed", event=type(event).__name__)

    # Connection lifecycle ------------------------------------------------------

    async def connect(self) -> None:
        if self.session.connection.value is not ConnectionState.DISCONNECTED:
            return
        if not self._settings.api_key:
            logger.error("realtime.missing_api_key")
            emit_trace(self._trace, event="realtime.config_error")
            self._publish(ErrorEvent(message="OpenAI API key is not configured", source="config"))
            return

        self._generation += 1
        generation = self._generation
        self.session.connection.set(ConnectionState.CONNECTING)
        headers = {
            "Authorization": f"Bearer {self._settings.api_key}",
            "OpenAI-Beta": "realtime=v1",
        }
        try:
            ws = await self._connector(
                self._settings.endpoint,
                additional_headers=headers,
                subprotocols=["realtime"],
                open_timeout=self._settings.open_timeout,
            )
        except _TRANSPORT_ERRORS as exc:
            logger.error("realtime.connect_failed", error=str(exc))
            if generation == self._generation:
                self.session.connection.set(ConnectionState.DISCONNECTED)
                self._publish(ErrorEvent(message=f"Connection failed: {exc}", source="transport"))
            return

        if generation != self._generation:
            # disconnect() ran while the handshake was in flight
            await self._close_socket(ws)
            return

        try:
            config = await self._session_builder.build()
            await ws.send(json.dumps(config))
        except Exception as exc:
            # prompt, context or send failure; the socket must not outlive it
            logger.exception("realtime.session_update_failed")
            await self._close_socket(ws)
            if generation == self._generation:
                self.session.connection.set(ConnectionState.DISCONNECTED)
                self._publish(ErrorEvent(message=f"Session setup failed: {exc}", source="transport"))
            return

        structlog.contextvars.bind_contextvars(realtime_model=self._settings.model, connection=generation)
        self._ws = ws
        self._send_queue = asyncio.Queue()
        self._queue_warned = False
        self.session.connection.set(ConnectionState.CONNECTED)
        self._send_task = asyncio.create_task(self._send_loop(ws, self._send_queue))
        self._receive_task = asyncio.create_task(self._receive_loop(ws, generation))
        logger.info("realtime.connected", model=self._settings.model)
        emit_trace(self._trace, event="realtime.connected", model=self._settings.model)
        emit_trace(self._trace, event="realtime.session_update_sent", tools=len(config["session"]["tools"]))

    async def disconnect(self) -> None:
        """Close the socket and reset the session. Safe to call repeatedly."""
        self._generation += 1
        ws, self._ws = self._ws, None
        tasks = [task for task in (self._receive_task, self._send_task) if task is not None]
        self._receive_task = None
        self._send_task = None
        self._drop_queue()
        current = asyncio.current_task()
        for task in tasks:
            task.cancel()
        for task in tasks:
            if task is current:
                continue
            with contextlib.suppress(asyncio.CancelledError):
                await task
        if ws is not None:
            await self._close_socket(ws)
            logger.info("realtime.disconnected")
            emit_trace(self._trace, event="realtime.disconnected")
        structlog.contextvars.unbind_contextvars("realtime_model", "connection")
        self._audio.flush_playback()
        self.session.last_response.set("")
        self.session.connection.set(ConnectionState.DISCONNECTED)
        if ws is not None:
            self._publish(ConnectionClosed(reason="disconnected by client"))
        self.session.conversation_active.set(False)

    @staticmethod
    async def _close_socket(ws: Any) -> None:
        with contextlib.suppress(*_TRANSPORT_ERRORS):
            await ws.close()

    def _drop_queue(self) -> None:
        self._send_queue = None
        SEND_QUEUE_DEPTH.set(0)

    # Outbound ------------------------------------------------------------------

    def send_audio_chunk(self, chunk: bytes) -> None:
        """Queue one captured chunk; a no-op unless connected."""
        if not self.is_connected:
            return
        encoded = base64.b64encode(chunk).decode("ascii")
        if self._enqueue({"type": "input_audio_buffer.append", "audio": encoded}):
            AUDIO_CHUNKS_SENT.inc()

    def cancel_pending_sends(self) -> int:
        """Discard queued outbound messages that have not reached the socket."""
        queue = self._send_queue
        dropped = 0
        if queue is None:
            return dropped
        while True:
            try:
                queue.get_nowait()
            except asyncio.QueueEmpty:
                break
            dropped += 1
        SEND_QUEUE_DEPTH.set(0)
        if dropped:
            logger.info("realtime.sends_cancelled", dropped=dropped)
        return dropped

    def _enqueue(self, payload: Dict[str, Any]) -> bool:
        queue = self._send_queue
        if queue is None:
            return False
        queue.put_nowait(json.dumps(payload))
        depth = queue.qsize()
        SEND_QUEUE_DEPTH.set(depth)
        if depth >= self._settings.send_queue_warn_depth:
            if not self._queue_warned:
                self._queue_warned = True
                logger.warning("realtime.send_queue_backlog", depth=depth)
        else:
            self._queue_warned = False
        return True

    async def _send_loop(self, ws: Any, queue: asyncio.Queue[str]) -> None:
        try:
            while True:
                message = await queue.get()
                await ws.send(message)
                SEND_QUEUE_DEPTH.set(queue.qsize())
        except WebSocketClosed:
            logger.info("realtime.send_loop_closed")
        except _TRANSPORT_ERRORS as exc:
            logger.warning("realtime.send_failed", error=str(exc))

    # Inbound -------------------------------------------------------------------

    async def _receive_loop(self, ws: Any, generation: int) -> None:
        reason = "closed by server"
        try:
            async for raw in ws:
                payload = decode_frame(raw)
                if payload is None:
                    continue
                REALTIME_EVENTS.labels(type=str(payload.get("type", "unknown"))).inc()
                event = parse_event(payload)
                if event is not None:
                    self._dispatch(event, generation)
        except WebSocketClosed as exc:
            reason = str(exc)
        except _TRANSPORT_ERRORS as exc:
            reason = str(exc)
            logger.warning("realtime.receive_failed", error=reason)
        if generation != self._generation:
            return
        logger.info("realtime.connection_closed", reason=reason)
        emit_trace(self._trace, event="realtime.connection_closed", reason=reason)
        self._ws = None
        send_task, self._send_task = self._send_task, None
        self._receive_task = None
        if send_task is not None:
            send_task.cancel()
        self._drop_queue()
        self.session.connection.set(ConnectionState.DISCONNECTED)
        self._publish(ConnectionClosed(reason=reason))
        self.session.conversation_active.set(False)

    def _dispatch(self, event: RealtimeEvent, generation: int) -> None:
        try:
            self._handle(event, generation)
        except Exception:
            logger.exception("realtime.handler_failed", event=type(event).__name__)
        self._publish(event)

    def _handle(self, event: RealtimeEvent, generation: int) -> None:
        last_response = self.session.last_response
        if isinstance(event, SpeechStarted):
            self._audio.flush_playback()
        elif isinstance(event, TranscriptDelta):
            last_response.set(last_response.value + event.delta)
        elif isinstance(event, TranscriptDone):
            last_response.set(event.transcript)
        elif isinstance(event, AudioDelta):
            self._audio.enqueue_playback(event.audio)
        elif isinstance(event, FunctionCallDone):
            task = asyncio.create_task(self._run_tool(event, generation))
            self._tool_tasks.add(task)
            task.add_done_callback(self._tool_tasks.discard)
        elif isinstance(event, ResponseDone):
            last_response.set("")
            if self._task_cache is not None:
                self._task_cache.refresh_in_background()
        elif isinstance(event, ErrorEvent):
            logger.warning("realtime.remote_error", message=event.message)
            emit_trace(self._trace, event="realtime.remote_error", message=event.message)

    async def _run_tool(self, call: FunctionCallDone, generation: int) -> None:
        emit_trace(self._trace, event="tool.started", name=call.name, call_id=call.call_id)
        if call.invocation is None:
            output = f"Failed to run {call.name}: {call.error}"
        else:
            output = await self._dispatcher.execute(call.invocation.name, call.invocation.arguments)
        if generation != self._generation or not self.is_connected:
            logger.info("realtime.tool_result_discarded", name=call.name, call_id=call.call_id)
            emit_trace(self._trace, event="tool.discarded", name=call.name, call_id=call.call_id)
            return
        result = ToolResult(call_id=call.call_id, output=output)
        self._enqueue(result.to_item())
        self._enqueue({"type": "response.create"})
        emit_trace(self._trace, event="tool.finished", name=call.name, call_id=call.call_id)

    async def wait_for_tools(self) -> None:
        """Await tool calls that are still running."""
        if self._tool_tasks:
            await asyncio.gather(*list(self._tool_tasks), return_exceptions=True)


__all__ = ["Connector", "RealtimeClient", "SessionState"]
