from __future__ import annotations

"""Hierarchical (map then reduce) document summarization."""

import asyncio
import hashlib
import logging
import uuid
from collections import Counter
from typing import TYPE_CHECKING, Any, Awaitable, Callable

from src.loaders.chunking import chunk_text
from src.rag.cache import DAY_MS, IntelligentCacheManager, now_ms
from src.rag.llm import LLMError, LLMGateway, parse_json_object
from src.rag.types import (
    DocumentSummary,
    SummarizationMetrics,
    SummarizationRequest,
    SummaryChunk,
)

if TYPE_CHECKING:
    from src.metadata.store import ResultStore

logger = logging.getLogger(__name__)

WORDS_PER_MINUTE = 200
SUMMARY_STYLES = {
    "brief": "brief: an executive summary of a few sentences",
    "detailed": "detailed: cover every major theme proportionally",
    "key_points": "key points: favour a bullet-style list of findings",
}

_CHUNK_SYSTEM_PROMPT = (
    "You analyze one chunk of a larger document. Return JSON only with keys "
    "\"summary\" (2-3 sentences), \"topics\" (list), \"entities\" (people, places, "
    "organizations, concepts) and \"importance\" (0-1, how crucial this chunk is "
    "to understanding the whole document)."
)
_FINAL_SYSTEM_PROMPT = (
    "You write a document summary from analyzed chunks. Return JSON only with keys "
    "\"summary\", \"key_points\" (5-7 items), \"topics\" and \"confidence\" (0-1). "
    "Stay factual and keep the logical flow of the document."
)


class SummarizationValidationError(ValueError):
    """Raised when a summarization request is invalid."""
    pass


def content_hash(content: str) -> str:
    return hashlib.md5(content.encode("utf-8")).hexdigest()


def reading_time(text: str) -> int:
    """Minutes to read at 200 words per minute, at least one."""
    return max(1, round(len(text.split()) / WORDS_PER_MINUTE))


def _string_list(value: Any) -> list[str]:
    if not isinstance(value, list):
        return []
    return [str(item).strip() for item in value if str(item).strip()]


def _unit_float(value: Any, default: float) -> float:
    try:
        number = float(value)
    except (TypeError, ValueError):
        return default
    if number != number:
        return default
    return max(0.0, min(1.0, number))


def fallback_synthesis(chunks: list[SummaryChunk]) -> dict[str, Any]:
    """Stitch the most important chunk summaries when synthesis fails."""
    ranked = sorted(chunks, key=lambda chunk: chunk.importance, reverse=True)
    topic_counts = Counter(topic for chunk in chunks for topic in chunk.topics)
    unique_topics = list(dict.fromkeys(topic for chunk in chunks for topic in chunk.topics))
    return {
        "summary": " ".join(chunk.summary for chunk in ranked[:5]),
        "key_points": [topic for topic, _ in topic_counts.most_common(7)],
        "topics": unique_topics[:5],
        "confidence": 0.6,
    }


class DocumentSummarizer:
    """Summarizes long documents chunk by chunk, then synthesizes the result."""

    def __init__(
        self,
        gateway: LLMGateway,
        cache: IntelligentCacheManager | None = None,
        result_store: ResultStore | None = None,
        chunk_size: int = 3000,
        chunk_overlap: int = 200,
        min_content_length: int = 500,
        importance_threshold: float = 0.7,
        chunk_delay: float = 0.5,
        batch_size: int = 3,
        batch_delay: float = 2.0,
        clock: Callable[[], float] = now_ms,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ) -> None:
        self.gateway = gateway
        self.cache = cache
        self.result_store = result_store
        self.chunk_size = chunk_size
        self.chunk_overlap = chunk_overlap
        self.min_content_length = min_content_length
        self.importance_threshold = importance_threshold
        self.chunk_delay = chunk_delay
        self.batch_size = max(1, batch_size)
        self.batch_delay = batch_delay
        self._clock = clock
        self._sleep = sleep
        self._summaries: dict[str, DocumentSummary] = {}
        self._local_cache: dict[str, DocumentSummary] = {}

    def validate_request(self, request: SummarizationRequest) -> None:
        if not request.document_id or not request.filename:
            raise SummarizationValidationError("document_id and filename are required")
        if not request.content or not request.content.strip():
            raise SummarizationValidationError("Document content is empty")
        if len(request.content) < self.min_content_length:
            raise SummarizationValidationError(
                f"Document content is too short to summarize "
                f"(minimum {self.min_content_length} characters)"
            )
        if request.summary_type not in SUMMARY_STYLES:
            raise SummarizationValidationError(
                f"Unknown summary type: {request.summary_type}"
            )

    async def summarize_document(self, request: SummarizationRequest) -> DocumentSummary:
        """Summarize one document; validation errors surface to the caller."""
        self.validate_request(request)
        started = self._clock()
        key = f"summary:{content_hash(request.content)}"
        cached = self._cached(key)
        if cached is not None:
            logger.info("summary_cache_hit", extra={"document_id": request.document_id})
            return cached

        pieces = chunk_text(request.content, self.chunk_size, self.chunk_overlap)
        chunks = await self._analyze_chunks(pieces, request.filename)
        important = sorted(
            (chunk for chunk in chunks if chunk.importance >= self.importance_threshold),
            key=lambda chunk: chunk.importance,
            reverse=True,
        )
        result = await self._synthesize(request, chunks, important)

        text = result["summary"]
        if request.max_length and len(text) > request.max_length:
            text = text[: request.max_length].rstrip()
        now = self._clock()
        summary = DocumentSummary(
            summary_id=f"summary_{int(now)}_{uuid.uuid4().hex[:9]}",
            document_id=request.document_id,
            filename=request.filename,
            summary=text,
            key_points=result["key_points"],
            topics=result["topics"],
            word_count=len(text.split()),
            reading_time=reading_time(text),
            summary_type=request.summary_type,
            confidence=result["confidence"],
            created_at=now,
            chunks=chunks,
            compression_ratio=len(text) / len(request.content),
            processing_time=now - started,
        )
        self._summaries[summary.summary_id] = summary
        self._store(key, summary)
        self._persist(summary)
        logger.info(
            "document_summarized",
            extra={
                "document_id": request.document_id,
                "chunks": len(chunks),
                "compression_ratio": round(summary.compression_ratio, 3),
            },
        )
        return summary

    async def _analyze_chunks(self, pieces: list[str], filename: str) -> list[SummaryChunk]:
        chunks: list[SummaryChunk] = []
        for index, piece in enumerate(pieces):
            chunks.append(await self._analyze_chunk(index, len(pieces), piece, filename))
            if index < len(pieces) - 1 and self.chunk_delay > 0:
                await self._sleep(self.chunk_delay)
        return chunks

    async def _analyze_chunk(
        self, index: int, total: int, piece: str, filename: str
    ) -> SummaryChunk:
        prompt = (
            f"Document: {filename}\n"
            f"Chunk {index + 1} of {total}\n\n"
            f"Text to analyze:\n{piece}"
        )
        try:
            data = parse_json_object(await self.gateway.generate(prompt, system=_CHUNK_SYSTEM_PROMPT))
        except LLMError as exc:
            logger.warning("chunk_summary_fallback", extra={"chunk_index": index, "error": str(exc)})
            data = {}
        summary = data.get("summary")
        if not isinstance(summary, str) or not summary.strip():
            return SummaryChunk(
                chunk_index=index,
                content=piece,
                summary=piece[:200],
                importance=0.5,
                topics=["general"],
                entities=[],
            )
        return SummaryChunk(
            chunk_index=index,
            content=piece,
            summary=summary.strip(),
            importance=_unit_float(data.get("importance"), 0.5),
            topics=_string_list(data.get("topics")) or ["general"],
            entities=_string_list(data.get("entities")),
        )

    async def _synthesize(
        self,
        request: SummarizationRequest,
        chunks: list[SummaryChunk],
        important: list[SummaryChunk],
    ) -> dict[str, Any]:
        chunk_block = "\n\n".join(
            f"Chunk {chunk.chunk_index + 1} (importance {chunk.importance:.2f}): {chunk.summary}"
            for chunk in chunks
        )
        important_block = "\n".join(f"[High priority] {chunk.summary}" for chunk in important)
        focus = ", ".join(request.focus_areas) if request.focus_areas else "none"
        prompt = (
            f"Document: {request.filename}\n"
            f"Original length: {len(request.content)} characters\n"
            f"Summary style: {SUMMARY_STYLES[request.summary_type]}\n"
            f"Focus areas: {focus}\n\n"
            f"Chunk summaries:\n{chunk_block}\n\n"
            f"High-importance chunks:\n{important_block or 'none'}"
        )
        try:
            data = parse_json_object(await self.gateway.generate(prompt, system=_FINAL_SYSTEM_PROMPT))
        except LLMError as exc:
            logger.warning("summary_synthesis_fallback", extra={"error": str(exc)})
            return fallback_synthesis(chunks)
        summary = data.get("summary")
        if not isinstance(summary, str) or not summary.strip():
            return fallback_synthesis(chunks)
        fallback = fallback_synthesis(chunks)
        return {
            "summary": summary.strip(),
            "key_points": _string_list(data.get("key_points") or data.get("keyPoints"))
            or fallback["key_points"],
            "topics": _string_list(data.get("topics")) or fallback["topics"],
            "confidence": _unit_float(data.get("confidence"), 0.8),
        }

    async def batch_summarize(
        self, requests: list[SummarizationRequest]
    ) -> list[DocumentSummary]:
        """Summarize in paced groups; failed requests are logged and skipped."""
        results: list[DocumentSummary] = []
        for start in range(0, len(requests), self.batch_size):
            group = requests[start : start + self.batch_size]
            outcomes = await asyncio.gather(
                *(self.summarize_document(request) for request in group),
                return_exceptions=True,
            )
            for request, outcome in zip(group, outcomes):
                if isinstance(outcome, BaseException):
                    logger.warning(
                        "batch_summary_failed",
                        extra={"document_id": request.document_id, "error": str(outcome)},
                    )
                    continue
                results.append(outcome)
            if start + self.batch_size < len(requests) and self.batch_delay > 0:
                await self._sleep(self.batch_delay)
        logger.info(
            "batch_summary_complete",
            extra={"requested": len(requests), "succeeded": len(results)},
        )
        return results

    def _cached(self, key: str) -> DocumentSummary | None:
        if self.cache is not None:
            return self.cache.get_cached_artifact(key)
        return self._local_cache.get(key)

    def _store(self, key: str, summary: DocumentSummary) -> None:
        if self.cache is not None:
            self.cache.cache_artifact(key, summary, ttl=7 * DAY_MS, tags=["summary"])
        else:
            self._local_cache[key] = summary

    def _persist(self, summary: DocumentSummary) -> None:
        if self.result_store is None:
            return
        from src.metadata.store import ResultStoreError

        try:
            self.result_store.save_summary(summary)
        except ResultStoreError as exc:
            logger.warning("summary_persist_failed", extra={"error": str(exc)})

    def get_summary_by_document(self, document_id: str) -> DocumentSummary | None:
        """Newest summary for a document, falling back to the result store."""
        matches = [item for item in self._summaries.values() if item.document_id == document_id]
        if matches:
            return max(matches, key=lambda item: item.created_at)
        if self.result_store is None:
            return None
        from src.metadata.store import ResultStoreError

        try:
            stored = self.result_store.latest_summary(document_id)
        except ResultStoreError as exc:
            logger.warning("summary_load_failed", extra={"error": str(exc)})
            return None
        if stored is not None:
            self._summaries[stored.summary_id] = stored
        return stored

    def get_summaries(
        self,
        min_confidence: float | None = None,
        max_compression_ratio: float | None = None,
        topics: list[str] | None = None,
        limit: int | None = None,
    ) -> list[DocumentSummary]:
        summaries = list(self._summaries.values())
        if min_confidence is not None:
            summaries = [item for item in summaries if item.confidence >= min_confidence]
        if max_compression_ratio is not None:
            summaries = [
                item for item in summaries if item.compression_ratio <= max_compression_ratio
            ]
        if topics:
            wanted = set(topics)
            summaries = [item for item in summaries if wanted.intersection(item.topics)]
        summaries.sort(key=lambda item: item.created_at, reverse=True)
        return summaries[:limit] if limit else summaries

    def search_summaries(
        self, query: str, limit: int = 10
    ) -> list[tuple[DocumentSummary, float]]:
        """Rank summaries by substring matches weighted by confidence."""
        needle = query.lower().strip()
        if not needle:
            return []
        scored: list[tuple[DocumentSummary, float]] = []
        for summary in self._summaries.values():
            score = 0.0
            if needle in summary.summary.lower():
                score += 3
            if any(needle in point.lower() for point in summary.key_points):
                score += 2
            if any(needle in topic.lower() for topic in summary.topics):
                score += 2
            if needle in summary.filename.lower():
                score += 1
            score *= summary.confidence
            if score > 0:
                scored.append((summary, score))
        scored.sort(key=lambda pair: pair[1], reverse=True)
        return scored[:limit]

    def get_metrics(self) -> SummarizationMetrics:
        summaries = list(self._summaries.values())
        if not summaries:
            return SummarizationMetrics(
                total_summaries=0,
                avg_compression_ratio=0.0,
                avg_processing_time=0.0,
                avg_confidence=0.0,
                summaries_by_type={},
            )
        count = len(summaries)
        return SummarizationMetrics(
            total_summaries=count,
            avg_compression_ratio=sum(item.compression_ratio for item in summaries) / count,
            avg_processing_time=sum(item.processing_time for item in summaries) / count,
            avg_confidence=sum(item.confidence for item in summaries) / count,
            summaries_by_type=dict(Counter(item.summary_type for item in summaries)),
        )
