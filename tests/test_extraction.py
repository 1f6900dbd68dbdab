"""Tests for LLM-backed memory extraction."""

from __future__ import annotations

import json

import pytest

from memory_layer.core.exceptions import ProviderError
from memory_layer.memory.extraction import ExtractedMemory, ExtractionService
from memory_layer.memory.memory_records import MemoryScope, MemoryType


class DummyProvider:
    def __init__(self, response: str) -> None:
        self.response = response
        self.prompts: list[str] = []

    async def generate_completion(self, prompt: str, model=None) -> str:
        self.prompts.append(prompt)
        return self.response

    async def generate_embedding(self, text: str):
        raise AssertionError("extraction must not embed")

    async def generate_embeddings(self, texts):
        raise AssertionError("extraction must not embed")


_DARK_MODE = {
    "content": "User prefers dark mode",
    "type": "preference",
    "scope": "user_global",
    "confidence": 0.9,
    "tags": ["ui", " ui ", "theme"],
}


@pytest.mark.asyncio
async def test_parses_plain_json_array():
    provider = DummyProvider(json.dumps([_DARK_MODE]))
    service = ExtractionService(provider)

    memories = await service.extract_memories("I really like dark mode in every app.")

    assert len(memories) == 1
    memory = memories[0]
    assert memory.content == "User prefers dark mode"
    assert memory.type is MemoryType.PREFERENCE
    assert memory.scope is MemoryScope.USER_GLOBAL
    assert memory.tags == ["ui", "theme"]


@pytest.mark.asyncio
async def test_strips_markdown_code_fence():
    provider = DummyProvider("```json\n" + json.dumps([_DARK_MODE]) + "\n```")

    memories = await ExtractionService(provider).extract_memories("dark mode please")

    assert [memory.content for memory in memories] == ["User prefers dark mode"]


@pytest.mark.asyncio
async def test_accepts_wrapped_memories_object():
    provider = DummyProvider(json.dumps({"memories": [_DARK_MODE]}))

    memories = await ExtractionService(provider).extract_memories("dark mode please")

    assert len(memories) == 1


@pytest.mark.asyncio
async def test_drops_candidates_below_min_confidence():
    weak = {**_DARK_MODE, "content": "Maybe likes blue", "confidence": 0.3}
    provider = DummyProvider(json.dumps([_DARK_MODE, weak]))

    memories = await ExtractionService(provider, min_confidence=0.5).extract_memories("colours")

    assert [memory.content for memory in memories] == ["User prefers dark mode"]


@pytest.mark.asyncio
async def test_context_is_rendered_into_prompt():
    provider = DummyProvider("[]")

    memories = await ExtractionService(provider).extract_memories(
        "hello",
        {"url": "https://chat.example.com", "platform": "chatgpt", "conversation_id": None},
    )

    assert memories == []
    prompt = provider.prompts[0]
    assert "- url: https://chat.example.com" in prompt
    assert "- platform: chatgpt" in prompt
    assert "conversation_id" not in prompt


@pytest.mark.asyncio
async def test_blank_text_skips_provider():
    provider = DummyProvider("[]")

    assert await ExtractionService(provider).extract_memories("   ") == []
    assert provider.prompts == []


@pytest.mark.asyncio
@pytest.mark.parametrize(
    "response",
    [
        "I could not find anything.",
        json.dumps({"items": []}),
        json.dumps([{**_DARK_MODE, "type": "opinion"}]),
        json.dumps([{**_DARK_MODE, "confidence": 1.5}]),
        json.dumps([{**_DARK_MODE, "content": ""}]),
        json.dumps([{**_DARK_MODE, "tags": "ui"}]),
        json.dumps([_DARK_MODE, {"content": "missing fields"}]),
    ],
)
async def test_malformed_responses_fail_closed(response):
    service = ExtractionService(DummyProvider(response))

    with pytest.raises(ProviderError):
        await service.extract_memories("some conversation")


def test_extracted_memory_ignores_unknown_keys():
    memory = ExtractedMemory.model_validate({**_DARK_MODE, "reason": "explicitly stated"})

    assert not hasattr(memory, "reason")
    assert memory.confidence == pytest.approx(0.9)
