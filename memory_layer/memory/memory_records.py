"""Data contracts for stored memories."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, Iterable, List, Mapping, Optional
from uuid import uuid4

from memory_layer.core.exceptions import ValidationError


class MemoryType(str, Enum):
    """What kind of information a memory holds."""

    PREFERENCE = "preference"
    FACT = "fact"
    TASK = "task"
    PROJECT = "project"
    META = "meta"


class MemoryScope(str, Enum):
    """How broadly a memory applies."""

    USER_GLOBAL = "user_global"
    SESSION = "session"
    SITE = "site"
    CONVERSATION = "conversation"


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def ensure_utc(value: datetime) -> datetime:
    """Attach UTC to naive datetimes and convert aware ones to UTC."""
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def parse_timestamp(value: Any) -> datetime:
    """Accept ISO strings, epoch seconds, or datetimes."""
    if isinstance(value, datetime):
        return ensure_utc(value)
    if isinstance(value, (int, float)):
        return datetime.fromtimestamp(value, tz=timezone.utc)
    if isinstance(value, str):
        return ensure_utc(datetime.fromisoformat(value))
    raise TypeError(f"Unsupported timestamp value: {value!r}")


def normalise_tags(tags: Iterable[str]) -> List[str]:
    """Strip, drop empties, and collapse duplicates keeping first occurrence."""
    seen: Dict[str, None] = {}
    for tag in tags:
        if not isinstance(tag, str):
            continue
        trimmed = tag.strip()
        if trimmed:
            seen.setdefault(trimmed, None)
    return list(seen)


def new_memory_id() -> str:
    return str(uuid4())


def ensure_list(name: str, value: Any) -> List[Any]:
    """Copy a list-valued field, rejecting strings, mappings and scalars."""
    if isinstance(value, (str, bytes, Mapping)) or not isinstance(value, Iterable):
        raise ValidationError(f"{name} must be a list, got {type(value).__name__}")
    return list(value)


@dataclass(slots=True)
class MemorySource:
    """Where a memory was captured."""

    url: str
    platform: Optional[str] = None
    timestamp: datetime = field(default_factory=utcnow)
    page_title: Optional[str] = None
    conversation_id: Optional[str] = None

    def to_document(self) -> Dict[str, Any]:
        return {
            "url": self.url,
            "platform": self.platform,
            "timestamp": ensure_utc(self.timestamp).isoformat(),
            "page_title": self.page_title,
            "conversation_id": self.conversation_id,
        }

    @classmethod
    def from_document(cls, payload: Dict[str, Any]) -> "MemorySource":
        raw_timestamp = payload.get("timestamp")
        return cls(
            url=str(payload.get("url") or ""),
            platform=payload.get("platform"),
            timestamp=parse_timestamp(raw_timestamp) if raw_timestamp is not None else utcnow(),
            page_title=payload.get("page_title"),
            conversation_id=payload.get("conversation_id"),
        )


@dataclass(slots=True)
class MemoryRecord:
    """A single remembered fact together with its embedding."""

    content: str
    type: MemoryType
    scope: MemoryScope
    source: MemorySource
    embedding: List[float]
    user_id: str = "local_user"
    confidence: float = 1.0
    tags: List[str] = field(default_factory=list)
    id: str = field(default_factory=new_memory_id)
    created_at: datetime = field(default_factory=utcnow)
    updated_at: Optional[datetime] = None

    def __post_init__(self) -> None:
        self.type = MemoryType(self.type)
        self.scope = MemoryScope(self.scope)
        self.created_at = ensure_utc(self.created_at)
        self.updated_at = ensure_utc(self.updated_at) if self.updated_at is not None else self.created_at
        self.tags = normalise_tags(ensure_list("tags", self.tags))
        try:
            self.embedding = [float(value) for value in ensure_list("embedding", self.embedding)]
        except (TypeError, ValueError) as exc:
            raise ValidationError(f"embedding must hold numbers: {exc}") from exc
        self.confidence = float(self.confidence)

    def to_document(self) -> Dict[str, Any]:
        """Flatten the record for JSON or database storage."""
        return {
            "id": self.id,
            "user_id": self.user_id,
            "content": self.content,
            "type": self.type.value,
            "scope": self.scope.value,
            "source": self.source.to_document(),
            "created_at": self.created_at.isoformat(),
            "updated_at": self.updated_at.isoformat(),
            "confidence": self.confidence,
            "tags": list(self.tags),
            "embedding": list(self.embedding),
        }

    @classmethod
    def from_document(cls, payload: Dict[str, Any]) -> "MemoryRecord":
        return cls(
            id=payload["id"],
            user_id=payload.get("user_id", "local_user"),
            content=payload["content"],
            type=MemoryType(payload["type"]),
            scope=MemoryScope(payload["scope"]),
            source=MemorySource.from_document(payload.get("source") or {}),
            created_at=parse_timestamp(payload["created_at"]),
            updated_at=parse_timestamp(payload.get("updated_at") or payload["created_at"]),
            confidence=payload.get("confidence", 1.0),
            tags=payload.get("tags") or [],
            embedding=payload.get("embedding") or [],
        )
