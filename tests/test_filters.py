"""Tests for memory filter evaluation."""

from __future__ import annotations

from datetime import datetime, timedelta, timezone

import pytest

from memory_layer.memory.filters import MemoryFilter, TagMatch, matches_filter
from memory_layer.memory.memory_records import MemoryRecord, MemoryScope, MemorySource, MemoryType

_CREATED = datetime(2024, 5, 1, 12, 0, tzinfo=timezone.utc)


def _memory(**overrides) -> MemoryRecord:
    fields = dict(
        content="User prefers dark mode",
        type=MemoryType.PREFERENCE,
        scope=MemoryScope.USER_GLOBAL,
        source=MemorySource(url="https://chat.openai.com/c/1", platform="chatgpt"),
        embedding=[0.1, 0.2, 0.3],
        user_id="user-1",
        tags=["a", "b"],
        created_at=_CREATED,
    )
    fields.update(overrides)
    return MemoryRecord(**fields)


def test_missing_filter_matches_everything():
    assert matches_filter(_memory(), None)
    assert matches_filter(_memory(), MemoryFilter())


def test_exact_field_matches():
    memory = _memory()
    assert matches_filter(memory, MemoryFilter(type=MemoryType.PREFERENCE, scope=MemoryScope.USER_GLOBAL))
    assert matches_filter(memory, MemoryFilter(platform="chatgpt", user_id="user-1"))
    assert not matches_filter(memory, MemoryFilter(type=MemoryType.FACT))
    assert not matches_filter(memory, MemoryFilter(scope=MemoryScope.SESSION))
    assert not matches_filter(memory, MemoryFilter(platform="claude"))
    assert not matches_filter(memory, MemoryFilter(user_id="user-2"))


def test_string_values_are_coerced_to_enums():
    assert matches_filter(_memory(), MemoryFilter(type="preference", scope="user_global"))


def test_platform_is_not_fuzzy():
    assert not matches_filter(_memory(), MemoryFilter(platform="chat"))
    assert not matches_filter(_memory(), MemoryFilter(platform="ChatGPT"))


def test_all_conditions_must_hold():
    memory = _memory()
    assert not matches_filter(memory, MemoryFilter(type=MemoryType.PREFERENCE, platform="claude"))


def test_tags_all_match_policy():
    memory = _memory(tags=["a", "b"])
    assert matches_filter(memory, MemoryFilter(tags=["a"]), tag_match=TagMatch.ALL)
    assert matches_filter(memory, MemoryFilter(tags=["b", "a"]), tag_match=TagMatch.ALL)
    assert not matches_filter(memory, MemoryFilter(tags=["a", "c"]), tag_match=TagMatch.ALL)


def test_tags_default_policy_is_all():
    assert not matches_filter(_memory(tags=["a", "b"]), MemoryFilter(tags=["a", "c"]))


def test_tags_any_match_policy():
    memory = _memory(tags=["a", "b"])
    assert matches_filter(memory, MemoryFilter(tags=["a", "c"]), tag_match=TagMatch.ANY)
    assert not matches_filter(memory, MemoryFilter(tags=["c", "d"]), tag_match=TagMatch.ANY)


def test_empty_tag_filter_imposes_nothing():
    assert matches_filter(_memory(tags=[]), MemoryFilter(tags=[]))


def test_date_bounds_are_inclusive():
    memory = _memory()
    assert matches_filter(memory, MemoryFilter(start_date=_CREATED))
    assert matches_filter(memory, MemoryFilter(end_date=_CREATED))
    assert matches_filter(memory, MemoryFilter(start_date=_CREATED, end_date=_CREATED))


def test_date_bounds_exclude_outside_range():
    memory = _memory()
    later = _CREATED + timedelta(seconds=1)
    earlier = _CREATED - timedelta(seconds=1)
    assert not matches_filter(memory, MemoryFilter(start_date=later))
    assert not matches_filter(memory, MemoryFilter(end_date=earlier))
    assert matches_filter(memory, MemoryFilter(start_date=earlier, end_date=later))


def test_naive_dates_are_treated_as_utc():
    memory = _memory()
    assert matches_filter(memory, MemoryFilter(start_date=datetime(2024, 5, 1, 12, 0)))


def test_invalid_enum_value_is_rejected():
    with pytest.raises(ValueError):
        MemoryFilter(type="opinion")
