"""Backing store implementations for scoped memory."""

from __future__ import annotations

from .memory_store import InMemoryBackend
from .sqlite_store import SQLiteBackend

__all__ = ["InMemoryBackend", "SQLiteBackend"]
