"""Conversation state machine sequencing microphone and speaker."""
from __future__ import annotations

import asyncio
import contextlib
from enum import Enum
from typing import Dict, Optional, Tuple

import structlog

from .audio import AudioEngine, AudioEngineError
from .events import (
    AudioDelta,
    AudioDone,
    ConnectionClosed,
    ErrorEvent,
    RealtimeEvent,
    ResponseDone,
    SpeechStarted,
    SpeechStopped,
)
from .models import ConversationState
from .observable import Observable
from .realtime_client import RealtimeClient

logger = structlog.get_logger(__name__)

PLAYBACK_POLL_SECONDS = 0.05
UNFINISHED_STATUSES = ("cancelled", "incomplete", "failed")


class StateEvent(str, Enum):
    START = "start"
    STOP = "stop"
    SPEECH_STARTED = "speech_started"
    SPEECH_STOPPED = "speech_stopped"
    AUDIO_DELTA = "audio_delta"
    RESPONSE_DONE = "response_done"
    PLAYBACK_SETTLED = "playback_settled"
    ERROR = "error"


class IllegalTransition(ValueError):
    def __init__(self, state: ConversationState, event: StateEvent) -> None:
        super().__init__(f"No transition from {state.value} on {event.value}")
        self.state = state
        self.event = event


_S = ConversationState
_E = StateEvent

TRANSITIONS: Dict[Tuple[ConversationState, StateEvent], ConversationState] = {
    (_S.IDLE, _E.START): _S.LISTENING,
    (_S.IDLE, _E.STOP): _S.IDLE,
    (_S.IDLE, _E.ERROR): _S.ERROR,
    (_S.LISTENING, _E.START): _S.LISTENING,
    (_S.LISTENING, _E.SPEECH_STARTED): _S.LISTENING,
    (_S.LISTENING, _E.SPEECH_STOPPED): _S.PROCESSING,
    (_S.LISTENING, _E.AUDIO_DELTA): _S.SPEAKING,
    (_S.LISTENING, _E.RESPONSE_DONE): _S.LISTENING,
    (_S.LISTENING, _E.STOP): _S.IDLE,
    (_S.LISTENING, _E.ERROR): _S.ERROR,
    (_S.PROCESSING, _E.SPEECH_STARTED): _S.LISTENING,
    (_S.PROCESSING, _E.SPEECH_STOPPED): _S.PROCESSING,
    (_S.PROCESSING, _E.AUDIO_DELTA): _S.SPEAKING,
    (_S.PROCESSING, _E.RESPONSE_DONE): _S.LISTENING,
    (_S.PROCESSING, _E.STOP): _S.IDLE,
    (_S.PROCESSING, _E.ERROR): _S.ERROR,
    (_S.SPEAKING, _E.AUDIO_DELTA): _S.SPEAKING,
    (_S.SPEAKING, _E.SPEECH_STARTED): _S.LISTENING,
    (_S.SPEAKING, _E.RESPONSE_DONE): _S.SPEAKING,
    (_S.SPEAKING, _E.PLAYBACK_SETTLED): _S.LISTENING,
    (_S.SPEAKING, _E.STOP): _S.IDLE,
    (_S.SPEAKING, _E.ERROR): _S.ERROR,
    (_S.ERROR, _E.START): _S.LISTENING,
    (_S.ERROR, _E.STOP): _S.IDLE,
    (_S.ERROR, _E.ERROR): _S.ERROR,
}


def next_state(state: ConversationState, event: StateEvent) -> ConversationState:
    try:
        return TRANSITIONS[(state, event)]
    except KeyError:
        raise IllegalTransition(state, event) from None


class ConversationOrchestrator:
    """Owns start/stop and the observable conversation state.

    Capture is paused on entering ``speaking`` and resumed only once the
    response has finished, playback has drained and ``resume_delay`` has
    elapsed. A user barge-in (speech started) resumes capture immediately.
    """

    def __init__(self, client: RealtimeClient, audio: AudioEngine, resume_delay: float = 0.6) -> None:
        self._client = client
        self._audio = audio
        self._resume_delay = resume_delay
        self.state: Observable[ConversationState] = Observable(ConversationState.IDLE)
        self.last_error: Optional[str] = None
        self._audio_done = False
        self._response_done = False
        self._settle_task: Optional[asyncio.Task[None]] = None
        self._remove_listener = client.add_listener(self._on_event)

    def apply(self, event: StateEvent) -> ConversationState:
        """Run one transition; raises :class:`IllegalTransition` when the table has no entry."""
        previous = self.state.value
        state = next_state(previous, event)
        if state is not previous:
            logger.info("conversation.state", previous=previous.value, state=state.value, trigger=event.value)
        self.state.set(state)
        if state is ConversationState.SPEAKING and previous is not ConversationState.SPEAKING:
            self._audio_done = False
            self._response_done = False
            self._audio.pause_capture()
        return state

    def _try_apply(self, event: StateEvent) -> None:
        try:
            self.apply(event)
        except IllegalTransition as exc:
            logger.debug("conversation.event_ignored", reason=str(exc))

    def _on_event(self, event: RealtimeEvent) -> None:
        if isinstance(event, SpeechStarted):
            self._cancel_settle()
            self._try_apply(StateEvent.SPEECH_STARTED)
            if self.state.value is ConversationState.LISTENING:
                self._audio.resume_capture()
        elif isinstance(event, SpeechStopped):
            self._try_apply(StateEvent.SPEECH_STOPPED)
        elif isinstance(event, AudioDelta):
            # a new response is streaming; earlier done flags no longer apply
            self._cancel_settle()
            self._audio_done = False
            self._response_done = False
            self._try_apply(StateEvent.AUDIO_DELTA)
        elif isinstance(event, AudioDone):
            self._audio_done = True
            self._maybe_settle()
        elif isinstance(event, ResponseDone):
            self._try_apply(StateEvent.RESPONSE_DONE)
            self._response_done = True
            if event.response.get("status") in UNFINISHED_STATUSES:
                # no audio.done follows a cancelled or failed response
                self._audio_done = True
            self._maybe_settle()
        elif isinstance(event, ErrorEvent):
            self.last_error = event.message
            self._try_apply(StateEvent.ERROR)
        elif isinstance(event, ConnectionClosed):
            if self._client.session.conversation_active.value:
                self.last_error = f"Connection closed: {event.reason}"
                self._cancel_settle()
                self._try_apply(StateEvent.ERROR)

    def _maybe_settle(self) -> None:
        if self.state.value is not ConversationState.SPEAKING:
            return
        if not (self._audio_done and self._response_done):
            return
        self._cancel_settle()
        self._settle_task = asyncio.create_task(self._settle())

    async def _settle(self) -> None:
        while not self._audio.playback_drained():
            await asyncio.sleep(PLAYBACK_POLL_SECONDS)
        await asyncio.sleep(self._resume_delay)
        if self.state.value is not ConversationState.SPEAKING:
            return
        self._settle_task = None
        self.apply(StateEvent.PLAYBACK_SETTLED)
        self._audio.resume_capture()

    def _cancel_settle(self) -> None:
        task, self._settle_task = self._settle_task, None
        if task is not None and not task.done() and task is not asyncio.current_task():
            task.cancel()

    async def start_conversation(self) -> None:
        """Connect if needed and open the microphone; a no-op mid-conversation."""
        if self._client.session.conversation_active.value and self.state.value not in (
            ConversationState.IDLE,
            ConversationState.ERROR,
        ):
            logger.debug("conversation.already_started", state=self.state.value.value)
            return
        if not self._client.is_connected:
            await self._client.connect()
        if not self._client.is_connected:
            logger.warning("conversation.start_aborted", reason=self.last_error or "not connected")
            return
        try:
            self._audio.start_capture(self._client.send_audio_chunk)
        except AudioEngineError as exc:
            self.last_error = str(exc)
            self._try_apply(StateEvent.ERROR)
            return
        if self.apply(StateEvent.START) is ConversationState.LISTENING:
            self._audio.resume_capture()
        self._client.set_conversation_active(True)

    async def stop_conversation(self) -> None:
        """Stop capture and playback; safe before any start."""
        task, self._settle_task = self._settle_task, None
        if task is not None and not task.done():
            task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await task
        self._audio.stop_capture()
        self._audio.flush_playback()
        self._client.cancel_pending_sends()
        self.apply(StateEvent.STOP)
        self._client.set_conversation_active(False)

    async def shutdown(self) -> None:
        await self.stop_conversation()
        await self._client.disconnect()
        self._audio.close()
        self._remove_listener()


__all__ = [
    "ConversationOrchestrator",
    "IllegalTransition",
    "StateEvent",
    "TRANSITIONS",
    "next_state",
]
