"""Configuration loader for the memory layer."""

from __future__ import annotations

import logging
import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Mapping, MutableMapping, Optional

from dotenv import load_dotenv

from .exceptions import ConfigError

SUPPORTED_BACKENDS = ("file", "kv", "sqlite")
SUPPORTED_TAG_MATCH = ("all", "any")

_DEFAULT_STORE_PATHS = {
    "file": "data/memory/memories.json",
    "kv": "data/memory/memories.kv.db",
    "sqlite": "data/memory/memories.db",
}


def _coerce_optional(value: Optional[str]) -> Optional[str]:
    """Return stripped value or ``None`` when the input is empty."""
    if value is None:
        return None
    stripped = value.strip()
    return stripped if stripped else None


def _normalise_gemini_model(value: Optional[str], default: str) -> str:
    model = _coerce_optional(value) or default
    if model.startswith("models/"):
        # GenerativeModel expects the bare model name.
        model = model.split("/", 1)[1]
    return model


def _normalise_embedding_model(value: Optional[str]) -> str:
    model = _coerce_optional(value) or "models/text-embedding-004"
    if not model.startswith("models/"):
        # embed_content expects the prefixed resource name.
        model = f"models/{model}"
    return model


def _mask(value: Optional[str]) -> str:
    if not value:
        return "<empty>"
    if len(value) <= 8:
        return "*" * len(value)
    return f"{value[:4]}***{value[-4:]}"


def _read_float(name: str, default: float, logger: logging.Logger) -> float:
    raw = os.getenv(name)
    if raw is None or not raw.strip():
        return default
    try:
        return float(raw)
    except ValueError:
        logger.warning("Invalid %s %r, defaulting to %s", name, raw, default)
        return default


def _read_bool(name: str, default: bool) -> bool:
    raw = os.getenv(name)
    if raw is None or not raw.strip():
        return default
    return raw.strip().lower() in ("true", "1", "yes")


@dataclass(frozen=True)
class Config:
    """Immutable runtime configuration derived from environment variables."""

    gemini_api_key: Optional[str]
    gemini_model: str
    embedding_model: str
    memory_backend: str
    memory_store_path: Path
    embedding_dimension: Optional[int]
    tag_match: str
    use_vector_index: bool
    dedup_threshold: float
    update_threshold: float
    min_confidence: float
    provider_timeout: float
    log_level: str
    env_path: Optional[str] = field(default=None, repr=False)

    @classmethod
    def load(
        cls,
        env_file: Optional[Path | str] = None,
        *,
        override_env: Optional[MutableMapping[str, str]] = None,
    ) -> "Config":
        """Load configuration from ``.env`` and the current environment."""
        env_path = Path(env_file) if env_file is not None else Path.cwd() / ".env"

        logger = logging.getLogger(__name__)
        env_path_str: Optional[str] = None

        if env_path.exists():
            load_dotenv(dotenv_path=env_path, override=True)
            logger.debug("Loaded .env file", extra={"env_path": str(env_path)})
            env_path_str = str(env_path)
        elif env_file is not None:
            logger.warning(
                "Specified .env file not found; using the process environment",
                extra={"env_path": str(env_path)},
            )

        if override_env:
            for key, value in override_env.items():
                os.environ[key] = value

        backend = (os.getenv("MEMORY_BACKEND") or "file").strip().lower()
        if backend not in SUPPORTED_BACKENDS:
            raise ConfigError(
                f"Unsupported MEMORY_BACKEND '{backend}'. Supported backends: {', '.join(SUPPORTED_BACKENDS)}."
            )

        store_path = Path(_coerce_optional(os.getenv("MEMORY_STORE_PATH")) or _DEFAULT_STORE_PATHS[backend])

        tag_match = (os.getenv("MEMORY_TAG_MATCH") or "all").strip().lower()
        if tag_match not in SUPPORTED_TAG_MATCH:
            raise ConfigError(f"Unsupported MEMORY_TAG_MATCH '{tag_match}'. Use 'all' or 'any'.")

        raw_dimension = _coerce_optional(os.getenv("MEMORY_EMBEDDING_DIMENSION"))
        embedding_dimension: Optional[int] = None
        if raw_dimension is not None:
            try:
                embedding_dimension = int(raw_dimension)
            except ValueError as exc:
                raise ConfigError(f"MEMORY_EMBEDDING_DIMENSION must be an integer, got '{raw_dimension}'.") from exc
            if embedding_dimension <= 0:
                raise ConfigError("MEMORY_EMBEDDING_DIMENSION must be positive.")

        dedup_threshold = _read_float("MEMORY_DEDUP_THRESHOLD", 0.95, logger)
        update_threshold = _read_float("MEMORY_UPDATE_THRESHOLD", 0.85, logger)
        if not -1.0 <= update_threshold < dedup_threshold <= 1.0:
            raise ConfigError(
                "MEMORY_UPDATE_THRESHOLD must be lower than MEMORY_DEDUP_THRESHOLD and both within [-1, 1]."
            )

        min_confidence = _read_float("MEMORY_MIN_CONFIDENCE", 0.5, logger)
        if not 0.0 <= min_confidence <= 1.0:
            raise ConfigError("MEMORY_MIN_CONFIDENCE must be within [0, 1].")

        provider_timeout = _read_float("PROVIDER_TIMEOUT", 30.0, logger)
        if provider_timeout <= 0:
            logger.warning("Invalid PROVIDER_TIMEOUT %s, defaulting to 30", provider_timeout)
            provider_timeout = 30.0

        raw_key = os.getenv("GEMINI_API_KEY")
        gemini_model = _normalise_gemini_model(os.getenv("GEMINI_MODEL"), "gemini-1.5-flash")
        embedding_model = _normalise_embedding_model(os.getenv("GEMINI_EMBEDDING_MODEL"))

        logger.debug(
            "Environment variables resolved",
            extra={
                "gemini_api_key": _mask(raw_key),
                "gemini_model": gemini_model,
                "embedding_model": embedding_model,
                "memory_backend": backend,
                "memory_store_path": str(store_path),
                "tag_match": tag_match,
            },
        )

        return cls(
            gemini_api_key=_coerce_optional(raw_key),
            gemini_model=gemini_model,
            embedding_model=embedding_model,
            memory_backend=backend,
            memory_store_path=store_path,
            embedding_dimension=embedding_dimension,
            tag_match=tag_match,
            use_vector_index=_read_bool("MEMORY_USE_VECTOR_INDEX", True),
            dedup_threshold=dedup_threshold,
            update_threshold=update_threshold,
            min_confidence=min_confidence,
            provider_timeout=provider_timeout,
            log_level=os.getenv("LOG_LEVEL", "INFO").upper(),
            env_path=env_path_str,
        )

    def as_dict(self) -> Mapping[str, Optional[str]]:
        """Expose configuration values for debugging, with the API key masked."""
        return {
            "gemini_api_key": _mask(self.gemini_api_key),
            "gemini_model": self.gemini_model,
            "embedding_model": self.embedding_model,
            "memory_backend": self.memory_backend,
            "memory_store_path": str(self.memory_store_path),
            "embedding_dimension": str(self.embedding_dimension) if self.embedding_dimension else None,
            "tag_match": self.tag_match,
            "use_vector_index": str(self.use_vector_index),
            "dedup_threshold": str(self.dedup_threshold),
            "update_threshold": str(self.update_threshold),
            "min_confidence": str(self.min_confidence),
            "provider_timeout": str(self.provider_timeout),
            "log_level": self.log_level,
        }
