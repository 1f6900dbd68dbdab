"""Filter evaluation shared by every storage backend."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import List, Optional

from .memory_records import MemoryRecord, MemoryScope, MemoryType, ensure_utc


class TagMatch(str, Enum):
    """How a tag filter is compared with a memory's tags."""

    ALL = "all"
    ANY = "any"


@dataclass(slots=True)
class MemoryFilter:
    """Conjunctive predicate over memory fields; unset fields impose nothing."""

    type: Optional[MemoryType] = None
    scope: Optional[MemoryScope] = None
    platform: Optional[str] = None
    tags: List[str] = field(default_factory=list)
    start_date: Optional[datetime] = None
    end_date: Optional[datetime] = None
    user_id: Optional[str] = None

    def __post_init__(self) -> None:
        if self.type is not None:
            self.type = MemoryType(self.type)
        if self.scope is not None:
            self.scope = MemoryScope(self.scope)
        if self.start_date is not None:
            self.start_date = ensure_utc(self.start_date)
        if self.end_date is not None:
            self.end_date = ensure_utc(self.end_date)
        self.tags = list(self.tags or [])


def matches_filter(
    memory: MemoryRecord,
    memory_filter: Optional[MemoryFilter],
    *,
    tag_match: TagMatch = TagMatch.ALL,
) -> bool:
    if memory_filter is None:
        return True
    if memory_filter.type is not None and memory.type != memory_filter.type:
        return False
    if memory_filter.scope is not None and memory.scope != memory_filter.scope:
        return False
    if memory_filter.platform is not None and memory.source.platform != memory_filter.platform:
        return False
    if memory_filter.user_id is not None and memory.user_id != memory_filter.user_id:
        return False
    if memory_filter.tags:
        owned = set(memory.tags)
        if tag_match is TagMatch.ALL:
            if not all(tag in owned for tag in memory_filter.tags):
                return False
        elif not any(tag in owned for tag in memory_filter.tags):
            return False
    if memory_filter.start_date is not None and memory.created_at < memory_filter.start_date:
        return False
    if memory_filter.end_date is not None and memory.created_at > memory_filter.end_date:
        return False
    return True
