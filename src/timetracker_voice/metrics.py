"""Prometheus metrics for the voice session."""
from __future__ import annotations

from prometheus_client import Counter, Gauge, Histogram, start_http_server

REALTIME_EVENTS = Counter(
    "timetracker_voice_realtime_events_total", "Inbound realtime events by type", ["type"]
)
AUDIO_CHUNKS_SENT = Counter(
    "timetracker_voice_audio_chunks_sent_total", "Captured audio chunks forwarded upstream"
)
SEND_QUEUE_DEPTH = Gauge(
    "timetracker_voice_send_queue_depth", "Outbound messages waiting for the socket"
)
TOOL_CALLS = Counter(
    "timetracker_voice_tool_calls_total", "Tool dispatches by function and outcome", ["name", "outcome"]
)
TOOL_LATENCY = Histogram(
    "timetracker_voice_tool_latency_seconds", "Time spent executing a tool call", ["name"]
)
PLAYBACK_FLUSHES = Counter(
    "timetracker_voice_playback_flushes_total", "Playback queue flushes (barge-in or stop)"
)


def start_metrics_server(port: int) -> None:  # pragma: no cover - binds a socket
    start_http_server(port)


__all__ = [
    "AUDIO_CHUNKS_SENT",
    "PLAYBACK_FLUSHES",
    "REALTIME_EVENTS",
    "SEND_QUEUE_DEPTH",
    "TOOL_CALLS",
    "TOOL_LATENCY",
    "start_metrics_server",
]
