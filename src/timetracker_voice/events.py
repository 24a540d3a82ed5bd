"""Typed inbound realtime events.

Every frame received from the realtime socket is turned into exactly one of
the dataclasses below (or ``None`` when the type is not one we act on), so
the receive loop has a single dispatch point.
"""
from __future__ import annotations

import base64
import binascii
import json
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, Optional, Union

import structlog

from .models import ToolInvocation

logger = structlog.get_logger(__name__)


@dataclass(slots=True)
class SessionCreated:
    session: Dict[str, Any] = field(default_factory=dict)


@dataclass(slots=True)
class SessionUpdated:
    session: Dict[str, Any] = field(default_factory=dict)


@dataclass(slots=True)
class SpeechStarted:
    pass


@dataclass(slots=True)
class SpeechStopped:
    pass


@dataclass(slots=True)
class TranscriptDelta:
    delta: str


@dataclass(slots=True)
class TranscriptDone:
    transcript: str


@dataclass(slots=True)
class AudioDelta:
    audio: bytes


@dataclass(slots=True)
class AudioDone:
    pass


@dataclass(slots=True)
class FunctionCallDone:
    """A completed tool call.

    ``invocation`` is ``None`` when the arguments could not be decoded; in
    that case ``error`` says why and ``call_id`` still identifies the call.
    """

    call_id: str
    name: str
    invocation: Optional[ToolInvocation] = None
    error: Optional[str] = None


@dataclass(slots=True)
class ResponseDone:
    response: Dict[str, Any] = field(default_factory=dict)


@dataclass(slots=True)
class ErrorEvent:
    message: str
    source: str = "remote"


@dataclass(slots=True)
class ConnectionClosed:
    reason: str = ""


RealtimeEvent = Union[
    SessionCreated,
    SessionUpdated,
    SpeechStarted,
    SpeechStopped,
    TranscriptDelta,
    TranscriptDone,
    AudioDelta,
    AudioDone,
    FunctionCallDone,
    ResponseDone,
    ErrorEvent,
    ConnectionClosed,
]


def _audio_delta(payload: Dict[str, Any]) -> Optional[AudioDelta]:
    try:
        audio = base64.b64decode(payload.get("delta") or "", validate=True)
    except (binascii.Error, ValueError) as exc:
        logger.warning("realtime.bad_audio_delta", error=str(exc))
        return None
    return AudioDelta(audio=audio)


def _function_call(payload: Dict[str, Any]) -> FunctionCallDone:
    call_id = str(payload.get("call_id") or "")
    name = str(payload.get("name") or "")
    raw = payload.get("arguments") or "{}"
    try:
        arguments = json.loads(raw)
    except json.JSONDecodeError as exc:
        return FunctionCallDone(call_id=call_id, name=name, error=f"Invalid arguments: {exc.msg}")
    if not isinstance(arguments, dict):
        return FunctionCallDone(call_id=call_id, name=name, error="Invalid arguments: expected an object")
    return FunctionCallDone(
        call_id=call_id,
        name=name,
        invocation=ToolInvocation(call_id=call_id, name=name, arguments=arguments),
    )


def _error(payload: Dict[str, Any]) -> ErrorEvent:
    error = payload.get("error")
    if isinstance(error, dict):
        message = error.get("message") or "Unknown error"
    else:
        message = str(error or "Unknown error")
    return ErrorEvent(message=message, source="remote")


_PARSERS: Dict[str, Callable[[Dict[str, Any]], Optional[RealtimeEvent]]] = {
    "session.created": lambda p: SessionCreated(session=p.get("session") or {}),
    "session.updated": lambda p: SessionUpdated(session=p.get("session") or {}),
    "input_audio_buffer.speech_started": lambda p: SpeechStarted(),
    "input_audio_buffer.speech_stopped": lambda p: SpeechStopped(),
    "response.audio_transcript.delta": lambda p: TranscriptDelta(delta=p.get("delta") or ""),
    "response.audio_transcript.done": lambda p: TranscriptDone(transcript=p.get("transcript") or ""),
    "response.audio.delta": _audio_delta,
    "response.audio.done": lambda p: AudioDone(),
    "response.function_call_arguments.done": _function_call,
    "response.done": lambda p: ResponseDone(response=p.get("response") or {}),
    "error": _error,
}


def parse_event(payload: Dict[str, Any]) -> Optional[RealtimeEvent]:
    parser = _PARSERS.get(payload.get("type", ""))
    if parser is None:
        return None
    return parser(payload)


def decode_frame(raw: Union[str, bytes]) -> Optional[Dict[str, Any]]:
    """Decode one JSON text frame, returning ``None`` for anything unusable."""
    try:
        payload = json.loads(raw)
    except (json.JSONDecodeError, UnicodeDecodeError) as exc:
        logger.warning("realtime.undecodable_frame", error=str(exc))
        return None
    if not isinstance(payload, dict):
        logger.warning("realtime.unexpected_frame", kind=type(payload).__name__)
        return None
    return payload


__all__ = [
    "AudioDelta",
    "AudioDone",
    "ConnectionClosed",
    "ErrorEvent",
    "FunctionCallDone",
    "RealtimeEvent",
    "ResponseDone",
    "SessionCreated",
    "SessionUpdated",
    "SpeechStarted",
    "SpeechStopped",
    "TranscriptDelta",
    "TranscriptDone",
    "decode_frame",
    "parse_event",
]
