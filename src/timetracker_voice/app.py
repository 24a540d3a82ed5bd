"""Explicit wiring of the voice session's collaborators."""
from __future__ import annotations

from dataclasses import dataclass
from datetime import date
from typing import Callable, Optional

import structlog

from .audio import AudioEngine, StreamFactory
from .auth import AuthSession
from .config import VoiceSettings
from .logging_utils import get_trace_logger
from .orchestrator import ConversationOrchestrator
from .prompts import PromptLibrary
from .realtime_client import Connector, RealtimeClient
from .session import SessionConfigBuilder
from .store.base import DataStore, DataStoreError
from .store.cache import ContactCache, TaskCache
from .store.supabase import SupabaseStore
from .tools import ToolDispatcher

logger = structlog.get_logger(__name__)


@dataclass
class VoiceApp:
    settings: VoiceSettings
    auth: AuthSession
    store: DataStore
    tasks: TaskCache
    contacts: ContactCache
    prompts: PromptLibrary
    audio: AudioEngine
    dispatcher: ToolDispatcher
    client: RealtimeClient
    orchestrator: ConversationOrchestrator

    async def warm_up(self) -> None:
        """Load prompts and caches; failures leave empty caches behind."""
        await self.prompts.load()
        for cache in (self.tasks, self.contacts):
            try:
                await cache.refresh()
            except DataStoreError as exc:
                logger.warning("app.warm_up_failed", cache=type(cache).__name__, error=str(exc))

    async def aclose(self) -> None:
        await self.orchestrator.shutdown()
        if isinstance(self.store, SupabaseStore):
            await self.store.aclose()


def build_app(
    settings: VoiceSettings,
    *,
    auth: Optional[AuthSession] = None,
    store: Optional[DataStore] = None,
    connector: Optional[Connector] = None,
    input_stream_factory: Optional[StreamFactory] = None,
    output_stream_factory: Optional[StreamFactory] = None,
    today: Callable[[], date] = date.today,
) -> VoiceApp:
    auth = auth or AuthSession.from_settings(settings.supabase)
    store = store or SupabaseStore(settings.supabase, auth)
    tasks = TaskCache(store, today)
    contacts = ContactCache(store)
    prompts = PromptLibrary(store, cache_path=settings.supabase.prompt_cache_path)
    audio = AudioEngine(
        settings.audio,
        input_stream_factory=input_stream_factory,
        output_stream_factory=output_stream_factory,
    )
    dispatcher = ToolDispatcher(store, tasks, contacts, auth, today)
    builder = SessionConfigBuilder(settings.realtime, prompts, tasks, contacts, today)
    client_kwargs = {"connector": connector} if connector is not None else {}
    client = RealtimeClient(
        settings.realtime,
        audio,
        dispatcher,
        builder,
        task_cache=tasks,
        trace_logger=get_trace_logger(settings.observability.trace_log_path),
        **client_kwargs,
    )
    orchestrator = ConversationOrchestrator(client, audio, settings.realtime.resume_delay_seconds)
    return VoiceApp(
        settings=settings,
        auth=auth,
        store=store,
        tasks=tasks,
        contacts=contacts,
        prompts=prompts,
        audio=audio,
        dispatcher=dispatcher,
        client=client,
        orchestrator=orchestrator,
    )


__all__ = ["VoiceApp", "build_app"]
