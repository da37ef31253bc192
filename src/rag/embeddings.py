from __future__ import annotations

"""Embedding providers, vector checks and the cache-backed wrapper."""

import hashlib
import logging
import math
import re
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any, Protocol

if TYPE_CHECKING:
    from src.rag.cache import IntelligentCacheManager

logger = logging.getLogger(__name__)

_WORD_RE = re.compile(r"[a-z0-9]+")

OPENAI_EMBEDDING_DIMENSIONS = {
    "text-embedding-3-small": 1536,
    "text-embedding-3-large": 3072,
    "text-embedding-ada-002": 1536,
}


class EmbeddingError(RuntimeError):
    """Raised when an embedding call fails or returns a bad vector."""
    pass


class EmbeddingConfigError(RuntimeError):
    """Raised when an embedder cannot be built from the given settings."""
    pass


class EmbeddingProvider(Protocol):
    """Anything that turns text into a fixed-size vector."""
    dimension: int
    model: str

    def embed(self, text: str) -> list[float]:
        raise NotImplementedError


def validate_vector(vector: list[float], dimension: int) -> list[float]:
    """Check size and finiteness of a vector and coerce entries to float."""
    if len(vector) != dimension:
        raise EmbeddingError(
            f"Embedding dimension mismatch: expected {dimension}, got {len(vector)}"
        )
    result: list[float] = []
    for item in vector:
        if isinstance(item, bool) or not isinstance(item, (int, float)):
            raise EmbeddingError("Embedding contains a non-numeric value")
        if not math.isfinite(item):
            raise EmbeddingError("Embedding contains a non-finite value")
        result.append(float(item))
    return result


def resolve_openai_dimension(model: str) -> int | None:
    return OPENAI_EMBEDDING_DIMENSIONS.get(model)


def _unit_length(vector: list[float]) -> list[float]:
    magnitude = math.sqrt(sum(item * item for item in vector))
    if magnitude == 0.0:
        return vector
    return [item / magnitude for item in vector]


@dataclass
class HashEmbedder:
    """Offline embedder that buckets hashed words into a unit vector.

    Texts sharing words land close together under cosine similarity, which is
    enough for tests and for running without an embedding service.
    """
    dimension: int = 256

    @property
    def model(self) -> str:
        return f"hash-{self.dimension}"

    def embed(self, text: str) -> list[float]:
        buckets = [0.0] * self.dimension
        for word in _WORD_RE.findall(text.lower()):
            slot = hashlib.sha256(word.encode("utf-8")).digest()[0] % self.dimension
            buckets[slot] += 1.0
        return validate_vector(_unit_length(buckets), self.dimension)


def _require(value: str, message: str) -> None:
    if not value:
        raise EmbeddingConfigError(message)


@dataclass
class OpenAIEmbedder:
    """Embeddings from the OpenAI API. The client is imported lazily."""
    api_key: str
    model: str
    dimension: int
    client: Any = field(init=False, repr=False)

    def __post_init__(self) -> None:
        _require(self.api_key, "OPENAI_API_KEY is required for OpenAIEmbedder")
        _require(self.model, "OPENAI_EMBEDDING_MODEL is required for OpenAIEmbedder")
        known = resolve_openai_dimension(self.model)
        if self.dimension <= 0 and known is None:
            raise EmbeddingConfigError(
                "EMBEDDING_DIMENSION must be set for OpenAI embeddings when model is unknown"
            )
        if self.dimension <= 0:
            self.dimension = known
        elif known is not None and known != self.dimension:
            raise EmbeddingConfigError(
                f"EMBEDDING_DIMENSION should be {known} for model {self.model}"
            )
        try:
            from openai import OpenAI
        except ImportError as exc:
            raise EmbeddingError("openai package is required for OpenAIEmbedder") from exc
        self.client = OpenAI(api_key=self.api_key)

    def embed(self, text: str) -> list[float]:
        try:
            response = self.client.embeddings.create(model=self.model, input=text)
        except Exception as exc:
            logger.warning("embedding_failed", extra={"provider": "openai", "error": str(exc)})
            raise EmbeddingError(str(exc)) from exc
        return validate_vector(list(response.data[0].embedding), self.dimension)


@dataclass
class GeminiEmbedder:
    """Embeddings from the Gemini API via google-generativeai."""
    api_key: str
    model: str
    dimension: int
    client: Any = field(init=False, repr=False)

    def __post_init__(self) -> None:
        _require(self.api_key, "GEMINI_API_KEY is required for GeminiEmbedder")
        _require(self.model, "GEMINI_EMBEDDING_MODEL is required for GeminiEmbedder")
        if self.dimension <= 0:
            raise EmbeddingConfigError("EMBEDDING_DIMENSION must be set for Gemini embeddings")
        try:
            import google.generativeai as genai
        except ImportError as exc:
            raise EmbeddingError(
                "google-generativeai package is required for GeminiEmbedder"
            ) from exc
        genai.configure(api_key=self.api_key)
        self.client = genai

    def embed(self, text: str) -> list[float]:
        try:
            result = self.client.embed_content(model=self.model, content=text)
        except Exception as exc:
            logger.warning("embedding_failed", extra={"provider": "gemini", "error": str(exc)})
            raise EmbeddingError(str(exc)) from exc
        if isinstance(result, dict):
            values = result.get("embedding")
        else:
            values = getattr(result, "embedding", None)
        if values is None:
            raise EmbeddingError("Gemini embedding response missing embedding vector")
        return validate_vector(list(values), self.dimension)


@dataclass
class CachingEmbedder:
    """Wraps a provider so repeated texts are served from the embedding cache."""
    provider: EmbeddingProvider
    cache: IntelligentCacheManager

    @property
    def dimension(self) -> int:
        return self.provider.dimension

    @property
    def model(self) -> str:
        return self.provider.model

    def embed(self, text: str) -> list[float]:
        hit = self.cache.get_cached_embedding(text, self.model)
        if hit is not None:
            return hit
        vector = self.provider.embed(text)
        self.cache.cache_embedding(text, vector, self.model)
        return vector
