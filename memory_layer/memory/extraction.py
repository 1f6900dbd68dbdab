"""LLM-backed extraction of candidate memories from conversation text."""

from __future__ import annotations

import json
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field, ValidationError as SchemaError, field_validator

from memory_layer.core.exceptions import ProviderError
from memory_layer.core.logger import get_logger
from memory_layer.llm_provider import LLMProvider

from .memory_records import MemoryScope, MemoryType, normalise_tags

DEFAULT_MIN_CONFIDENCE = 0.5

_PROMPT_TEMPLATE = """You are a personal memory assistant. Extract useful, stable facts, preferences,
tasks, or project details from the following text. Ignore trivial conversation or temporary context.
Each memory should be a single, clear statement worth remembering later.

Return a JSON array of objects with this schema:
{{
  "content": "The fact or memory itself",
  "type": "preference" | "fact" | "task" | "project" | "meta",
  "scope": "user_global" | "session" | "site" | "conversation",
  "confidence": number between 0.0 and 1.0,
  "tags": ["tag1", "tag2"]
}}
{context}
Text:
{text}

JSON Output:
"""


class ExtractedMemory(BaseModel):
    """A candidate memory proposed by the extractor, not yet stored."""

    model_config = ConfigDict(extra="ignore", str_strip_whitespace=True)

    content: str = Field(..., min_length=1)
    type: MemoryType
    scope: MemoryScope
    confidence: float = Field(..., ge=0.0, le=1.0)
    tags: List[str] = Field(default_factory=list)

    @field_validator("tags", mode="before")
    @classmethod
    def _coerce_tags(cls, value: Any) -> List[str]:
        if value is None:
            return []
        if not isinstance(value, list):
            raise ValueError("tags must be a list of strings")
        if not all(isinstance(item, str) for item in value):
            raise ValueError("tags must be a list of strings")
        return normalise_tags(value)


class ExtractionService:
    """Prompt the provider for memories and validate its JSON strictly.

    Any malformed item rejects the whole batch. Candidates below
    ``min_confidence`` are dropped silently.
    """

    def __init__(self, provider: LLMProvider, *, min_confidence: float = DEFAULT_MIN_CONFIDENCE) -> None:
        self._provider = provider
        self._min_confidence = min_confidence
        self._logger = get_logger(self.__class__.__name__)

    async def extract_memories(self, text: str, context: Optional[Dict[str, Any]] = None) -> List[ExtractedMemory]:
        if not text or not text.strip():
            return []
        prompt = self._render_prompt(text, context)
        self._logger.debug("Invoking memory extraction prompt (%d chars)", len(text))
        response = await self._provider.generate_completion(prompt)
        candidates = self._parse_response(response)
        kept = [candidate for candidate in candidates if candidate.confidence >= self._min_confidence]
        if len(kept) != len(candidates):
            self._logger.debug("Dropped %d low-confidence candidates", len(candidates) - len(kept))
        return kept

    def _render_prompt(self, text: str, context: Optional[Dict[str, Any]]) -> str:
        context_block = ""
        if context:
            lines = [f"- {key}: {value}" for key, value in context.items() if value]
            if lines:
                context_block = "\nContext:\n" + "\n".join(lines) + "\n"
        return _PROMPT_TEMPLATE.format(context=context_block, text=text)

    def _parse_response(self, response: str) -> List[ExtractedMemory]:
        cleaned = response.strip()
        if cleaned.startswith("```"):
            lines = cleaned.splitlines()
            if lines and lines[0].startswith("```"):
                lines = lines[1:]
            if lines and lines[-1].strip().startswith("```"):
                lines = lines[:-1]
            cleaned = "\n".join(lines).strip()

        try:
            data = json.loads(cleaned)
        except json.JSONDecodeError as exc:
            self._logger.error("Failed to parse extraction response", extra={"response": response})
            raise ProviderError("Memory extraction did not return JSON.") from exc

        if isinstance(data, dict):
            # JSON-object response modes wrap the array.
            data = data.get("memories")
        if not isinstance(data, list):
            raise ProviderError("Memory extraction response is not a JSON array of memories.")

        try:
            return [ExtractedMemory.model_validate(item) for item in data]
        except SchemaError as exc:
            self._logger.error("Extraction response failed schema validation: %s", exc)
            raise ProviderError(f"Memory extraction returned an invalid memory: {exc}") from exc
