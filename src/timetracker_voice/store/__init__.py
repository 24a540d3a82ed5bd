"""Data-store collaborators: contract, backends and in-memory caches."""
from __future__ import annotations

from .base import DataStore, DataStoreError, NotAuthenticatedError, RequestFailedError
from .cache import ContactCache, TaskCache
from .memory import InMemoryStore
from .supabase import SupabaseStore

__all__ = [
    "ContactCache",
    "DataStore",
    "DataStoreError",
    "InMemoryStore",
    "NotAuthenticatedError",
    "RequestFailedError",
    "SupabaseStore",
    "TaskCache",
]
