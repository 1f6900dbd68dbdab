"""Exception hierarchy for the memory layer."""

from __future__ import annotations


class MemoryLayerError(Exception):
    """Base class for project-specific exceptions."""


class ConfigError(MemoryLayerError):
    """Raised when configuration loading or validation fails."""


class ValidationError(MemoryLayerError):
    """Raised when a record, filter, patch, or vector is malformed."""


class NotFoundError(MemoryLayerError):
    """Raised when an update or delete targets an id the store does not hold."""

    def __init__(self, memory_id: str) -> None:
        super().__init__(f"Memory with id {memory_id!r} not found")
        self.memory_id = memory_id


class DuplicateError(MemoryLayerError):
    """Raised by insert-enforcing backends when an id is already taken."""

    def __init__(self, memory_id: str) -> None:
        super().__init__(f"Memory with id {memory_id!r} already exists")
        self.memory_id = memory_id


class PersistenceError(MemoryLayerError):
    """Raised when durable storage could not be written; nothing was changed."""


class ProviderError(MemoryLayerError):
    """Raised when the completion/embedding provider fails or returns bad output."""
