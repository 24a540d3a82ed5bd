"""Configuration utilities for the voice core."""
from __future__ import annotations

import os
from functools import lru_cache
from pathlib import Path
from typing import Any, Dict, Optional

from dotenv import load_dotenv
from pydantic import BaseModel, Field


ENV_FILES = [
    Path.cwd() / ".env.local",
    Path.cwd() / ".env",
]


def load_env(env_file: Optional[str] = None) -> None:
    """Load .env files in priority order."""
    candidates = [Path(env_file)] if env_file else ENV_FILES
    for candidate in candidates:
        if candidate.exists():
            load_dotenv(candidate, override=False)


class RealtimeSettings(BaseModel):
    """Settings for the realtime speech model connection."""

    api_key: str = Field(default="")
    url: str = Field(default="wss://api.openai.com/v1/realtime")
    model: str = Field(default="gpt-4o-realtime-preview-2024-12-17")
    voice: str = Field(default="alloy")
    transcription_model: str = Field(default="whisper-1")
    vad_threshold: float = Field(default=0.5, ge=0.0, le=1.0)
    prefix_padding_ms: int = Field(default=300)
    silence_duration_ms: int = Field(default=700)
    resume_delay_seconds: float = Field(default=0.6)
    send_queue_warn_depth: int = Field(default=500)
    open_timeout: float = Field(default=10.0)

    @property
    def endpoint(self) -> str:
        return f"{self.url}?model={self.model}"


class AudioSettings(BaseModel):
    sample_rate: int = Field(default=24_000)
    block_size: int = Field(default=2_400)
    input_device: Optional[int] = None
    output_device: Optional[int] = None
    level_gain: float = Field(default=10.0)


class SupabaseSettings(BaseModel):
    """Hosted backend used for tasks, contacts, prompts and sign-in."""

    url: str = Field(default="")
    anon_key: str = Field(default="")
    access_token: Optional[str] = None
    user_id: Optional[str] = None
    user_email: Optional[str] = None
    request_timeout: float = Field(default=10.0)
    prompt_cache_path: Optional[Path] = None


class ObservabilitySettings(BaseModel):
    log_level: str = Field(default="INFO")
    trace_log_path: Optional[Path] = None
    metrics_port: Optional[int] = None


class VoiceSettings(BaseModel):
    """Top level runtime configuration."""

    realtime: RealtimeSettings = Field(default_factory=RealtimeSettings)
    audio: AudioSettings = Field(default_factory=AudioSettings)
    supabase: SupabaseSettings = Field(default_factory=SupabaseSettings)
    observability: ObservabilitySettings = Field(default_factory=ObservabilitySettings)

    @classmethod
    def from_env(cls, env_file: Optional[str] = None) -> "VoiceSettings":
        load_env(env_file)
        values: Dict[str, Any] = {}
        realtime = values.setdefault("realtime", {})
        if api_key := os.environ.get("OPENAI_API_KEY"):
            realtime["api_key"] = api_key
        if url := os.environ.get("OPENAI_REALTIME_URL"):
            realtime["url"] = url
        if model := os.environ.get("REALTIME_MODEL"):
            realtime["model"] = model
        if voice := os.environ.get("REALTIME_VOICE"):
            realtime["voice"] = voice
        if silence := os.environ.get("VAD_SILENCE_MS"):
            realtime["silence_duration_ms"] = int(silence)
        if threshold := os.environ.get("VAD_THRESHOLD"):
            realtime["vad_threshold"] = float(threshold)
        if resume := os.environ.get("RESUME_DELAY_SECONDS"):
            realtime["resume_delay_seconds"] = float(resume)

        audio = values.setdefault("audio", {})
        if device := os.environ.get("AUDIO_INPUT_DEVICE"):
            audio["input_device"] = int(device)
        if device := os.environ.get("AUDIO_OUTPUT_DEVICE"):
            audio["output_device"] = int(device)
        if block := os.environ.get("AUDIO_BLOCK_SIZE"):
            audio["block_size"] = int(block)

        supabase = values.setdefault("supabase", {})
        if url := os.environ.get("SUPABASE_URL"):
            supabase["url"] = url
        if anon_key := os.environ.get("SUPABASE_ANON_KEY"):
            supabase["anon_key"] = anon_key
        if token := os.environ.get("SUPABASE_ACCESS_TOKEN"):
            supabase["access_token"] = token
        if user_id := os.environ.get("SUPABASE_USER_ID"):
            supabase["user_id"] = user_id
        if email := os.environ.get("SUPABASE_USER_EMAIL"):
            supabase["user_email"] = email
        if cache := os.environ.get("PROMPT_CACHE_PATH"):
            supabase["prompt_cache_path"] = Path(cache)

        observability = values.setdefault("observability", {})
        if level := os.environ.get("VOICE_LOG_LEVEL"):
            observability["log_level"] = level
        if traces := os.environ.get("TRACE_LOG_PATH"):
            observability["trace_log_path"] = Path(traces)
        if metrics_port := os.environ.get("METRICS_PORT"):
            observability["metrics_port"] = int(metrics_port)
        return cls.model_validate(values)


@lru_cache(maxsize=1)
def get_settings() -> VoiceSettings:
    """Return cached voice settings."""
    return VoiceSettings.from_env()


__all__ = [
    "AudioSettings",
    "ObservabilitySettings",
    "RealtimeSettings",
    "SupabaseSettings",
    "VoiceSettings",
    "get_settings",
    "load_env",
]
