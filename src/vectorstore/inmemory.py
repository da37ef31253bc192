from __future__ import annotations

"""In-memory vector store for local testing and small datasets."""

import math
import re
import threading
from dataclasses import dataclass, field
from typing import Iterable

from src.rag.types import DocumentChunk, SearchResult

_TERM_RE = re.compile(r"\w+")
_STOPWORDS = {
    "a",
    "an",
    "and",
    "are",
    "as",
    "at",
    "by",
    "for",
    "from",
    "in",
    "is",
    "of",
    "on",
    "or",
    "the",
    "to",
    "with",
}


class VectorStoreError(RuntimeError):
    """Raised when a vector store operation fails."""
    pass


def cosine_similarity(a: list[float], b: list[float]) -> float:
    """Compute cosine similarity between two vectors."""
    dot = sum(x * y for x, y in zip(a, b))
    norm_a = math.sqrt(sum(x * x for x in a))
    norm_b = math.sqrt(sum(y * y for y in b))
    if norm_a == 0.0 or norm_b == 0.0:
        return 0.0
    return dot / (norm_a * norm_b)


def query_terms(text: str) -> set[str]:
    return {
        term
        for term in _TERM_RE.findall(text.lower())
        if len(term) > 2 and term not in _STOPWORDS
    }


def keyword_score(terms: set[str], content: str) -> float:
    """Share of distinct query terms present in the content."""
    if not terms:
        return 0.0
    present = set(_TERM_RE.findall(content.lower()))
    return len(terms & present) / len(terms)


def spread_across_documents(ranked: list[SearchResult], k: int) -> list[SearchResult]:
    """Take the best results while allowing at most k // 2 (min 1) per document."""
    per_document = max(1, k // 2)
    counts: dict[str, int] = {}
    selected: list[SearchResult] = []
    for result in ranked:
        document_id = str(result.metadata.get("document_id", ""))
        if counts.get(document_id, 0) >= per_document:
            continue
        counts[document_id] = counts.get(document_id, 0) + 1
        selected.append(result)
        if len(selected) >= k:
            break
    return selected


def chunk_metadata(chunk: DocumentChunk) -> dict[str, object]:
    metadata = dict(chunk.metadata)
    metadata.update(
        {
            "chunk_id": chunk.chunk_id,
            "document_id": chunk.document_id,
            "chunk_index": chunk.chunk_index,
            "filename": chunk.metadata.get("filename", ""),
            "uploaded_at": chunk.metadata.get("uploaded_at"),
        }
    )
    return metadata


@dataclass
class InMemoryVectorStore:
    """Simple in-memory vector store with cosine and keyword scoring."""
    dimension: int
    chunks: dict[str, DocumentChunk] = field(default_factory=dict)
    _lock: threading.RLock = field(default_factory=threading.RLock, repr=False)

    def upsert(self, chunks: Iterable[DocumentChunk]) -> int:
        """Insert or replace chunks by chunk id."""
        added = 0
        with self._lock:
            for chunk in chunks:
                if len(chunk.embedding) != self.dimension:
                    raise VectorStoreError(
                        f"Embedding dimension mismatch: expected {self.dimension}, "
                        f"got {len(chunk.embedding)}"
                    )
                self.chunks[chunk.chunk_id] = chunk
                added += 1
        return added

    def query(self, embedding: list[float], k: int) -> list[SearchResult]:
        """Pure semantic nearest-neighbour search."""
        if k <= 0:
            return []
        with self._lock:
            snapshot = list(self.chunks.values())
        scored = []
        for chunk in snapshot:
            similarity = cosine_similarity(embedding, chunk.embedding)
            scored.append(
                SearchResult(
                    content=chunk.content,
                    metadata=chunk_metadata(chunk),
                    relevance_score=max(0.0, min(1.0, similarity)),
                    search_method="semantic",
                    semantic_score=similarity,
                )
            )
        scored.sort(key=lambda item: item.relevance_score, reverse=True)
        return scored[:k]

    def adaptive_search(
        self,
        query_embedding: list[float],
        query_text: str,
        strategy: str,
        k: int,
        semantic_weight: float,
        keyword_weight: float,
    ) -> list[SearchResult]:
        """Blend semantic and keyword scores, selecting candidates by strategy."""
        if k <= 0:
            return []
        terms = query_terms(query_text)
        with self._lock:
            snapshot = list(self.chunks.values())
        candidates: list[SearchResult] = []
        for chunk in snapshot:
            semantic = max(0.0, cosine_similarity(query_embedding, chunk.embedding))
            keyword = keyword_score(terms, chunk.content)
            if strategy == "keyword" and keyword <= 0.0:
                continue
            if strategy in {"hybrid", "multi_step"} and semantic <= 0.0 and keyword <= 0.0:
                continue
            blended = semantic_weight * semantic + keyword_weight * keyword
            candidates.append(
                SearchResult(
                    content=chunk.content,
                    metadata=chunk_metadata(chunk),
                    relevance_score=max(0.0, min(1.0, blended)),
                    search_method=strategy,
                    semantic_score=semantic,
                    keyword_score=keyword,
                )
            )
        candidates.sort(key=lambda item: item.relevance_score, reverse=True)
        if strategy == "multi_step":
            return spread_across_documents(candidates, k)
        return candidates[:k]

    def all_chunks(self) -> list[DocumentChunk]:
        with self._lock:
            return list(self.chunks.values())

    def get_chunk(self, chunk_id: str) -> DocumentChunk | None:
        with self._lock:
            return self.chunks.get(chunk_id)

    def delete_document(self, document_id: str) -> int:
        """Delete every chunk of a document."""
        with self._lock:
            doomed = [key for key, chunk in self.chunks.items() if chunk.document_id == document_id]
            for key in doomed:
                del self.chunks[key]
        return len(doomed)

    def document_names(self) -> list[str]:
        with self._lock:
            names = {chunk.filename for chunk in self.chunks.values() if chunk.filename}
        return sorted(names)

    def stats(self) -> dict[str, int | str]:
        """Return basic stats for the vector store."""
        with self._lock:
            chunk_count = len(self.chunks)
            document_count = len({chunk.document_id for chunk in self.chunks.values()})
        return {
            "backend": "memory",
            "chunk_count": chunk_count,
            "document_count": document_count,
            "embedding_dimension": self.dimension,
        }

    def health(self) -> dict[str, str | bool]:
        """Return health information for the vector store."""
        return {
            "backend": "memory",
            "ok": True,
        }
