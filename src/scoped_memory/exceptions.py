"""
Memory engine exceptions.

Read paths (recall, status) catch these and degrade; write paths either
queue (ConnectionUnavailable) or surface them to the caller.
"""


class MemoryEngineError(Exception):
    """Base exception for the memory engine."""

    pass


class ConnectionUnavailable(MemoryEngineError):
    """The backing store for a scope cannot be reached."""

    def __init__(self, scope: str, reason: str = ""):
        self.scope = scope
        self.reason = reason
        message = f"Backing store unavailable for scope '{scope}'"
        if reason:
            message = f"{message}: {reason}"
        super().__init__(message)


class MemoryTimeout(MemoryEngineError):
    """An operation exceeded its time budget."""

    def __init__(self, operation: str, seconds: float, scope: str | None = None):
        self.operation = operation
        self.seconds = seconds
        self.scope = scope
        super().__init__(f"{operation} timed out after {seconds:.2f}s")


Timeout = MemoryTimeout


class EmbeddingFailure(MemoryEngineError):
    """The embedding provider could not produce a vector."""

    pass


class ValidationError(MemoryEngineError):
    """Invalid input at the API boundary."""

    def __init__(self, field: str, message: str):
        self.field = field
        super().__init__(f"Validation error for '{field}': {message}")


class NotFound(MemoryEngineError):
    """No record with the given id exists in the searched scopes."""

    def __init__(self, record_id: str):
        self.record_id = record_id
        super().__init__(f"Memory record not found: {record_id}")


class DuplicateConflict(MemoryEngineError):
    """A write collided with an existing record that cannot be merged."""

    def __init__(self, record_id: str, existing_id: str):
        self.record_id = record_id
        self.existing_id = existing_id
        super().__init__(
            f"Record {record_id} conflicts with existing record {existing_id}"
        )
