"""Core utilities shared by the memory layer."""

from .config import Config  # noqa: F401
from .exceptions import (  # noqa: F401
    ConfigError,
    DuplicateError,
    MemoryLayerError,
    NotFoundError,
    PersistenceError,
    ProviderError,
    ValidationError,
)
from .logger import get_logger, setup_logging  # noqa: F401

__all__ = [
    "Config",
    "ConfigError",
    "DuplicateError",
    "MemoryLayerError",
    "NotFoundError",
    "PersistenceError",
    "ProviderError",
    "ValidationError",
    "get_logger",
    "setup_logging",
]
