"""Completion and embedding providers consumed by the ingestion pipeline."""

from __future__ import annotations

import asyncio
from abc import ABC, abstractmethod
from typing import Any, Callable, List, Optional, Protocol, Sequence, TypeVar, runtime_checkable

try:
    import google.generativeai as genai
except ImportError as exc:  # pragma: no cover - optional dependency
    genai = None  # type: ignore[assignment]
    _IMPORT_ERROR = exc
else:
    _IMPORT_ERROR = None

from memory_layer.core.config import Config
from memory_layer.core.exceptions import ProviderError
from memory_layer.core.logger import get_logger

EMBEDDING_BATCH_SIZE = 100
DEFAULT_TIMEOUT = 30.0

T = TypeVar("T")


@runtime_checkable
class LLMProvider(Protocol):
    """Contract for anything that can complete prompts and embed text."""

    async def generate_completion(self, prompt: str, model: Optional[str] = None) -> str:
        ...

    async def generate_embedding(self, text: str) -> List[float]:
        ...

    async def generate_embeddings(self, texts: Sequence[str]) -> List[List[float]]:
        ...


class BaseLLMProvider(ABC):
    """Shared timeout handling and batch chunking for concrete providers.

    Subclasses implement the blocking ``_complete`` and ``_embed_batch``
    calls; every call runs in a worker thread bounded by ``timeout``. No
    retries happen here.
    """

    def __init__(self, *, timeout: float = DEFAULT_TIMEOUT, batch_size: int = EMBEDDING_BATCH_SIZE) -> None:
        if batch_size <= 0:
            raise ValueError("batch_size must be positive")
        self._timeout = timeout
        self._batch_size = batch_size
        self._logger = get_logger(self.__class__.__name__)

    async def generate_completion(self, prompt: str, model: Optional[str] = None) -> str:
        return await self._call("completion", self._complete, prompt, model)

    async def generate_embedding(self, text: str) -> List[float]:
        vectors = await self.generate_embeddings([text])
        return vectors[0]

    async def generate_embeddings(self, texts: Sequence[str]) -> List[List[float]]:
        """Embed ``texts`` in chunks of at most ``batch_size``, preserving order."""
        items = list(texts)
        if not items:
            return []
        vectors: List[List[float]] = []
        for start in range(0, len(items), self._batch_size):
            chunk = items[start : start + self._batch_size]
            result = await self._call("embedding", self._embed_batch, chunk)
            if len(result) != len(chunk):
                raise ProviderError(
                    f"Embedding provider returned {len(result)} vectors for {len(chunk)} inputs"
                )
            vectors.extend([float(value) for value in vector] for vector in result)
        return vectors

    async def _call(self, operation: str, func: Callable[..., T], *args: Any) -> T:
        try:
            return await asyncio.wait_for(asyncio.to_thread(func, *args), timeout=self._timeout)
        except asyncio.TimeoutError as exc:
            self._logger.error("%s request timed out after %.1fs", operation, self._timeout)
            raise ProviderError(f"{operation} request timed out after {self._timeout}s") from exc
        except ProviderError:
            raise
        except Exception as exc:  # SDK errors are not part of a stable hierarchy
            self._logger.error("%s request failed: %s", operation, exc, exc_info=True)
            raise ProviderError(f"{operation} request failed: {exc}") from exc

    @abstractmethod
    def _complete(self, prompt: str, model: Optional[str]) -> str:
        """Blocking completion call."""

    @abstractmethod
    def _embed_batch(self, texts: List[str]) -> List[List[float]]:
        """Blocking embedding call for one chunk."""


class GeminiProvider(BaseLLMProvider):
    """Adapter responsible for communicating with the Gemini API."""

    def __init__(self, config: Config) -> None:
        if not config.gemini_api_key:
            raise ProviderError("GEMINI_API_KEY is not set. Check your .env file.")
        if _IMPORT_ERROR is not None or genai is None:
            raise ProviderError("google-generativeai is not installed.") from _IMPORT_ERROR

        super().__init__(timeout=config.provider_timeout)
        self._model_name = config.gemini_model
        self._embedding_model = config.embedding_model
        genai.configure(api_key=config.gemini_api_key)
        self._models: dict[str, Any] = {}
        self._logger.debug(
            "Gemini client configured (model=%s, embedding_model=%s, api_key=%s)",
            self._model_name,
            self._embedding_model,
            self._mask_key(config.gemini_api_key),
        )

    def _complete(self, prompt: str, model: Optional[str]) -> str:
        response = self._model(model or self._model_name).generate_content(
            prompt,
            generation_config={"temperature": 0.3},
        )
        text = self._pick_primary_text(response)
        if not text:
            raise ProviderError("Gemini returned an empty response.")
        return text

    def _embed_batch(self, texts: List[str]) -> List[List[float]]:
        cleaned = [text.replace("\n", " ") for text in texts]
        response = genai.embed_content(
            model=self._embedding_model,
            content=cleaned,
            task_type="retrieval_document",
        )
        embeddings = response.get("embedding") if isinstance(response, dict) else getattr(response, "embedding", None)
        if not isinstance(embeddings, list) or not embeddings:
            raise ProviderError("Gemini embedding response did not contain vectors.")
        if not isinstance(embeddings[0], list):
            # A single input may come back as one flat vector.
            embeddings = [embeddings]
        return embeddings

    def _model(self, name: str) -> Any:
        model = self._models.get(name)
        if model is None:
            model = genai.GenerativeModel(name)
            self._models[name] = model
        return model

    @staticmethod
    def _pick_primary_text(response: Any) -> str:
        try:
            text_attr = getattr(response, "text", None)
        except ValueError:
            # ``text`` raises when the candidate was blocked or empty.
            text_attr = None
        if isinstance(text_attr, str) and text_attr.strip():
            return text_attr.strip()

        for candidate in getattr(response, "candidates", None) or []:
            content = getattr(candidate, "content", None)
            parts = getattr(content, "parts", None) if content else None
            if not parts:
                continue
            chunks = [getattr(part, "text", "") for part in parts]
            joined = "".join(chunk for chunk in chunks if isinstance(chunk, str))
            if joined.strip():
                return joined.strip()
        return ""

    @staticmethod
    def _mask_key(key: str) -> str:
        if len(key) <= 8:
            return "*" * len(key)
        return f"{key[:4]}***{key[-4:]}"
