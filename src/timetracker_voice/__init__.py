"""Realtime voice conversation core for the TimeTracker task app."""
from __future__ import annotations

__version__ = "0.1.0"
