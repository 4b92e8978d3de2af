"""Scoped memory engine.

Session, project and user scoped memory with hybrid retrieval, promotion,
decay and consolidation behind a single MemoryService.
"""

from .config import MemoryConfig
from .exceptions import (
    ConnectionUnavailable,
    DuplicateConflict,
    EmbeddingFailure,
    MemoryEngineError,
    MemoryTimeout,
    NotFound,
    Timeout,
    ValidationError,
)
from .memory_service import MemoryService
from .models import (
    MemoryRecord,
    MemoryType,
    RecallResult,
    RecordStatus,
    Scope,
    SessionContext,
)
from .scheduler import LifecycleEvent, LifecycleScheduler

__all__ = [
    "ConnectionUnavailable",
    "DuplicateConflict",
    "EmbeddingFailure",
    "LifecycleEvent",
    "LifecycleScheduler",
    "MemoryConfig",
    "MemoryEngineError",
    "MemoryRecord",
    "MemoryService",
    "MemoryTimeout",
    "MemoryType",
    "NotFound",
    "RecallResult",
    "RecordStatus",
    "Scope",
    "SessionContext",
    "Timeout",
    "ValidationError",
]
