"""Tests for the ingestion and consolidation pipeline."""

from __future__ import annotations

import json
import math
from datetime import datetime, timezone

import pytest

from memory_layer.core.exceptions import ProviderError, ValidationError
from memory_layer.memory.extraction import ExtractedMemory
from memory_layer.memory.filters import MemoryFilter
from memory_layer.memory.memory_records import MemoryRecord, MemoryScope, MemorySource, MemoryType
from memory_layer.memory.metrics import MemoryMetrics
from memory_layer.memory.pipeline import ConsolidationAction, MemoryPipeline
from memory_layer.memory.storage import FileMemoryStore


class DummyProvider:
    """Returns a fixed embedding per content string."""

    def __init__(self, embeddings=None, completion: str = "[]") -> None:
        self.embeddings = dict(embeddings or {})
        self.completion = completion
        self.failing: set[str] = set()
        self.embedded: list[str] = []

    async def generate_completion(self, prompt: str, model=None) -> str:
        return self.completion

    async def generate_embedding(self, text: str):
        self.embedded.append(text)
        if text in self.failing:
            raise ProviderError(f"embedding failed for {text!r}")
        return list(self.embeddings.get(text, [0.1, 0.2, 0.3]))

    async def generate_embeddings(self, texts):
        return [await self.generate_embedding(text) for text in texts]


class StaticExtractor:
    def __init__(self, candidates) -> None:
        self.candidates = list(candidates)
        self.calls: list[tuple[str, dict]] = []

    async def extract_memories(self, text, context=None):
        self.calls.append((text, context))
        return list(self.candidates)


def _candidate(content: str, *, type="preference", scope="user_global", confidence=0.8, tags=()) -> ExtractedMemory:
    return ExtractedMemory(content=content, type=type, scope=scope, confidence=confidence, tags=list(tags))


def _source() -> MemorySource:
    return MemorySource(
        url="https://chat.example.com/c/42",
        platform="chatgpt",
        timestamp=datetime(2024, 6, 1, tzinfo=timezone.utc),
        conversation_id="42",
    )


def _existing(memory_id: str = "existing", *, type=MemoryType.PREFERENCE, user_id="local_user") -> MemoryRecord:
    created = datetime(2024, 1, 1, tzinfo=timezone.utc)
    return MemoryRecord(
        id=memory_id,
        user_id=user_id,
        content="User likes dark themes",
        type=type,
        scope=MemoryScope.USER_GLOBAL,
        source=MemorySource(url="https://old.example.com", timestamp=created),
        created_at=created,
        confidence=0.6,
        tags=["ui"],
        embedding=[1.0, 0.0],
    )


def _at_similarity(score: float) -> list[float]:
    return [score, math.sqrt(1.0 - score * score)]


@pytest.fixture
def store(tmp_path):
    return FileMemoryStore(tmp_path / "memories.json")


@pytest.mark.asyncio
async def test_end_to_end_dark_mode_capture(store):
    extractor = StaticExtractor(
        [_candidate("User prefers dark mode", type="preference", scope="user_global", confidence=0.9, tags=["ui"])]
    )
    provider = DummyProvider({"User prefers dark mode": [0.1, 0.2, 0.3]})
    pipeline = MemoryPipeline(store, provider, extractor=extractor)

    ids = await pipeline.run("I prefer dark mode and use a MacBook", _source())

    assert len(ids) == 1
    saved = await store.get(ids[0])
    assert saved.content == "User prefers dark mode"
    assert saved.embedding == [0.1, 0.2, 0.3]
    assert saved.type is MemoryType.PREFERENCE
    assert saved.scope is MemoryScope.USER_GLOBAL
    assert saved.confidence == pytest.approx(0.9)
    assert saved.tags == ["ui"]
    assert saved.user_id == "local_user"
    assert saved.source.conversation_id == "42"
    assert extractor.calls[0][0] == "I prefer dark mode and use a MacBook"


@pytest.mark.asyncio
async def test_extraction_through_provider_then_repeat_is_deduplicated(store):
    provider = DummyProvider(
        completion=json.dumps(
            [
                {
                    "content": "User prefers dark mode",
                    "type": "preference",
                    "scope": "user_global",
                    "confidence": 0.9,
                    "tags": ["ui"],
                }
            ]
        )
    )
    pipeline = MemoryPipeline(store, provider)

    ids = await pipeline.run("I prefer dark mode and use a MacBook", _source(), "alice")
    again = await pipeline.run("I prefer dark mode and use a MacBook", _source(), "alice")

    assert len(ids) == 1
    assert again == ids
    assert (await store.get(ids[0])).user_id == "alice"
    assert await store.count() == 1


@pytest.mark.asyncio
async def test_near_identical_candidate_only_touches_timestamp(store):
    await store.save(_existing())
    before = await store.get("existing")
    provider = DummyProvider({"User loves dark themes": _at_similarity(0.97)})
    pipeline = MemoryPipeline(store, provider, extractor=StaticExtractor([_candidate("User loves dark themes")]))

    results = await pipeline.run_detailed("text", _source())

    assert [result.action for result in results] == [ConsolidationAction.DEDUPLICATE]
    assert results[0].memory_id == "existing"
    assert results[0].score == pytest.approx(0.97)
    after = await store.get("existing")
    assert after.content == before.content
    assert after.confidence == pytest.approx(0.6)
    assert after.updated_at > before.updated_at
    assert await store.count() == 1


@pytest.mark.asyncio
async def test_similar_candidate_raises_confidence(store):
    await store.save(_existing())
    provider = DummyProvider({"User enjoys dark UIs": _at_similarity(0.90)})
    pipeline = MemoryPipeline(store, provider, extractor=StaticExtractor([_candidate("User enjoys dark UIs", tags=["theme"])]))

    results = await pipeline.run_detailed("text", _source())

    assert results[0].action is ConsolidationAction.UPDATE
    updated = await store.get("existing")
    assert updated.content == "User likes dark themes"
    assert updated.confidence == pytest.approx(0.8)
    assert updated.tags == ["ui"]
    assert await store.count() == 1


@pytest.mark.asyncio
async def test_update_never_lowers_confidence(store):
    existing = _existing()
    existing.confidence = 0.95
    await store.save(existing)
    provider = DummyProvider({"User enjoys dark UIs": _at_similarity(0.90)})
    pipeline = MemoryPipeline(store, provider, extractor=StaticExtractor([_candidate("User enjoys dark UIs")]))

    await pipeline.run("text", _source())

    assert (await store.get("existing")).confidence == pytest.approx(0.95)


@pytest.mark.asyncio
async def test_merge_tags_is_opt_in(store):
    await store.save(_existing())
    provider = DummyProvider({"User enjoys dark UIs": _at_similarity(0.90)})
    extractor = StaticExtractor([_candidate("User enjoys dark UIs", tags=["theme", "ui"])])
    pipeline = MemoryPipeline(store, provider, extractor=extractor, merge_tags=True)

    await pipeline.run("text", _source())

    assert (await store.get("existing")).tags == ["ui", "theme"]


@pytest.mark.asyncio
async def test_distant_candidate_is_added(store):
    await store.save(_existing())
    provider = DummyProvider({"User owns a cat": _at_similarity(0.50)})
    pipeline = MemoryPipeline(store, provider, extractor=StaticExtractor([_candidate("User owns a cat")]))

    results = await pipeline.run_detailed("text", _source())

    assert results[0].action is ConsolidationAction.ADD
    assert results[0].memory_id != "existing"
    assert results[0].score == pytest.approx(0.50)
    assert await store.count() == 2
    assert (await store.get("existing")).confidence == pytest.approx(0.6)


@pytest.mark.asyncio
async def test_recall_is_scoped_by_type_and_user(store):
    await store.save(_existing("fact", type=MemoryType.FACT))
    await store.save(_existing("other-user", user_id="bob"))
    provider = DummyProvider({"User likes dark themes": [1.0, 0.0]})
    pipeline = MemoryPipeline(store, provider, extractor=StaticExtractor([_candidate("User likes dark themes")]))

    results = await pipeline.run_detailed("text", _source(), "alice")

    assert results[0].action is ConsolidationAction.ADD
    assert results[0].score is None
    assert await store.count(MemoryFilter(user_id="alice")) == 1


@pytest.mark.asyncio
async def test_results_follow_extraction_order(store):
    candidates = [_candidate("first"), _candidate("second"), _candidate("third")]
    provider = DummyProvider({"first": [1.0, 0.0, 0.0], "second": [0.0, 1.0, 0.0], "third": [0.0, 0.0, 1.0]})
    pipeline = MemoryPipeline(store, provider, extractor=StaticExtractor(candidates))

    ids = await pipeline.run("text", _source())

    assert [(await store.get(memory_id)).content for memory_id in ids] == ["first", "second", "third"]
    assert provider.embedded == ["first", "second", "third"]


@pytest.mark.asyncio
async def test_embedding_failure_aborts_but_keeps_earlier_writes(store):
    candidates = [_candidate("first"), _candidate("second"), _candidate("third")]
    provider = DummyProvider({"first": [1.0, 0.0, 0.0], "third": [0.0, 0.0, 1.0]})
    provider.failing.add("second")
    metrics = MemoryMetrics()
    pipeline = MemoryPipeline(store, provider, extractor=StaticExtractor(candidates), metrics=metrics)

    with pytest.raises(ProviderError):
        await pipeline.run("text", _source())

    assert [memory.content for memory in await store.list(10)] == ["first"]
    assert "third" not in provider.embedded
    assert metrics.capture.failures == 1
    assert metrics.capture.added == 1


@pytest.mark.asyncio
async def test_extraction_context_and_empty_result(store):
    extractor = StaticExtractor([])
    pipeline = MemoryPipeline(store, DummyProvider(), extractor=extractor)

    assert await pipeline.run("nothing to see", _source()) == []
    text, context = extractor.calls[0]
    assert text == "nothing to see"
    assert context == {"url": "https://chat.example.com/c/42", "platform": "chatgpt", "conversation_id": "42"}


@pytest.mark.asyncio
async def test_metrics_count_decisions(store):
    await store.save(_existing())
    provider = DummyProvider(
        {
            "dup": _at_similarity(0.99),
            "near": _at_similarity(0.90),
            "new": _at_similarity(0.10),
        }
    )
    # Each candidate is compared with the stored memory, not with earlier candidates.
    extractor = StaticExtractor([_candidate("dup"), _candidate("near"), _candidate("new", type="fact")])
    metrics = MemoryMetrics()
    pipeline = MemoryPipeline(store, provider, extractor=extractor, metrics=metrics)

    await pipeline.run("text", _source())

    capture = metrics.as_dict()["capture"]
    assert capture["runs"] == 1
    assert capture["candidates"] == 3
    assert capture["deduplicated"] == 1
    assert capture["updated"] == 1
    assert capture["added"] == 1
    assert capture["merge_rate"] == pytest.approx(0.667)


def test_thresholds_must_be_ordered(store):
    with pytest.raises(ValidationError):
        MemoryPipeline(store, DummyProvider(), dedup_threshold=0.8, update_threshold=0.9)
