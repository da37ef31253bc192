from __future__ import annotations

"""Question answering flow tying analysis, retrieval, generation, evaluation and caching together."""

import asyncio
import logging
from collections import deque
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, AsyncIterator, Callable, Iterable, Protocol

from src.loaders.chunking import chunk_document
from src.rag.analyzer import QueryAnalyzer, QueryValidationError, determine_search_strategy
from src.rag.cache import IntelligentCacheManager, now_ms
from src.rag.clustering import DocumentClusteringEngine
from src.rag.embeddings import EmbeddingProvider
from src.rag.guardrails import DEFAULT_REFUSAL, GENERATION_APOLOGY, require_context
from src.rag.llm import LLMError, LLMGateway
from src.rag.quality import ResponseQualityEvaluator
from src.rag.retriever import HybridRetriever
from src.rag.scheduler import DebouncedTask
from src.rag.summarizer import DocumentSummarizer
from src.rag.types import (
    Document,
    DocumentChunk,
    QueryAnalysis,
    QueryContext,
    ResponseEvaluation,
    RetrievalResult,
    SearchMetrics,
    SearchResult,
)

logger = logging.getLogger(__name__)


_ANSWER_SYSTEM_PROMPT = (
    "You are a document question-answering assistant. "
    "Answer only from the provided context and do not use external knowledge. "
    "If the context is insufficient, say so plainly. "
    "Cite your sources using the [Source: filename] format. "
    "Be concise but comprehensive."
)


class ChunkStore(Protocol):
    def upsert(self, chunks: Iterable[DocumentChunk]) -> int:
        ...

    def delete_document(self, document_id: str) -> int:
        ...

    def document_names(self) -> list[str]:
        ...


@dataclass(frozen=True)
class QAResponse:
    """Answer with the diagnostics that produced it."""
    answer: str
    sources: list[SearchResult]
    analysis: QueryAnalysis | None
    cache_hit: bool
    response_time: float
    search_metrics: SearchMetrics | None = None
    evaluation: ResponseEvaluation | None = None
    followups: list[str] = field(default_factory=list)
    optimized_query: str | None = None
    refusal_reason: str | None = None


@dataclass(frozen=True)
class IngestResult:
    documents: int
    chunks: int
    document_ids: list[str]


@dataclass(frozen=True)
class _Prepared:
    analysis: QueryAnalysis
    retrieval: RetrievalResult
    contexts: tuple[SearchResult, ...]
    optimized_query: str
    documents: list[str]


def build_context_block(contexts: tuple[SearchResult, ...], max_chars: int) -> str:
    """Build a context block annotated with source metadata."""
    chunks: list[str] = []
    total = 0
    for idx, result in enumerate(contexts, start=1):
        filename = result.filename or f"Document {idx}"
        chunk_index = int(result.metadata.get("chunk_index") or 0)
        header = f"--- Source: {filename} (Chunk {chunk_index + 1}) ---\n"
        content = result.content.strip()
        snippet = header + content
        if total + len(snippet) > max_chars:
            remaining = max_chars - total
            if remaining <= len(header):
                break
            snippet = header + content[: remaining - len(header)]
        chunks.append(snippet)
        total += len(snippet)
        if total >= max_chars:
            break
    return "\n\n".join(chunks)


def build_answer_prompt(question: str, contexts: tuple[SearchResult, ...], max_chars: int) -> str:
    return (
        f"Context from documents:\n{build_context_block(contexts, max_chars)}\n\n"
        f"Question: {question}\n\n"
        "Provide a detailed answer based on the context above, and cite your sources."
    )


def source_names(results: Iterable[SearchResult]) -> list[str]:
    return list(dict.fromkeys(result.filename for result in results if result.filename))


class QAService:
    """Owns the per-process Q&A components and their background tasks."""

    def __init__(
        self,
        gateway: LLMGateway,
        embedder: EmbeddingProvider,
        store: ChunkStore,
        cache: IntelligentCacheManager,
        analyzer: QueryAnalyzer,
        retriever: HybridRetriever,
        evaluator: ResponseQualityEvaluator,
        clustering: DocumentClusteringEngine | None = None,
        summarizer: DocumentSummarizer | None = None,
        chunk_size: int = 1000,
        chunk_overlap: int = 200,
        context_max_chars: int = 12000,
        history_size: int = 10,
        query_enhancement: bool = True,
        clustering_debounce: float = 5.0,
        background_tasks: bool = True,
        clock: Callable[[], float] = now_ms,
    ) -> None:
        self.gateway = gateway
        self.embedder = embedder
        self.store = store
        self.cache = cache
        self.analyzer = analyzer
        self.retriever = retriever
        self.evaluator = evaluator
        self.clustering = clustering
        self.summarizer = summarizer
        self.chunk_size = chunk_size
        self.chunk_overlap = chunk_overlap
        self.context_max_chars = context_max_chars
        self.history_size = history_size
        self.query_enhancement = query_enhancement
        self.background_tasks = background_tasks
        self._clock = clock
        self._history: dict[str, deque[str]] = {}
        self._streams: dict[str, asyncio.Event] = {}
        self._reclustering = DebouncedTask(
            "clustering-debounce", clustering_debounce, self._recluster
        )

    async def start(self) -> None:
        if self.background_tasks:
            self.cache.start()
        await asyncio.to_thread(self.evaluator.load_stored_evaluations)
        logger.info("qa_service_started")

    async def shutdown(self) -> None:
        for event in list(self._streams.values()):
            event.set()
        self._streams.clear()
        await self._reclustering.cancel()
        await self.cache.shutdown()
        logger.info("qa_service_shutdown")

    # Stream registry

    def open_stream(self, stream_id: str) -> asyncio.Event:
        """Register a running stream and return the event that cancels it."""
        event = asyncio.Event()
        self._streams[stream_id] = event
        return event

    def close_stream(self, stream_id: str) -> None:
        self._streams.pop(stream_id, None)

    def stop_stream(self, stream_id: str) -> bool:
        event = self._streams.get(stream_id)
        if event is None:
            return False
        event.set()
        return True

    @property
    def active_streams(self) -> list[str]:
        return list(self._streams)

    async def _recluster(self) -> None:
        if self.clustering is not None:
            await self.clustering.perform_document_clustering(force=True)

    @property
    def reclustering_pending(self) -> bool:
        return self._reclustering.pending

    async def wait_for_reclustering(self) -> None:
        await self._reclustering.wait()

    def _schedule_reclustering(self) -> None:
        if self.clustering is not None and self.background_tasks:
            self._reclustering.trigger()

    # Ingestion

    async def ingest(self, documents: Iterable[Document]) -> IngestResult:
        """Chunk, embed and store documents, then schedule a clustering re-run."""
        uploaded_at = datetime.now(timezone.utc).isoformat()
        chunks: list[DocumentChunk] = []
        document_ids: list[str] = []
        for document in documents:
            pieces = chunk_document(document, self.chunk_size, self.chunk_overlap)
            if not pieces:
                logger.warning("ingest_document_empty", extra={"document_id": document.doc_id})
                continue
            document_ids.append(document.doc_id)
            for piece in pieces:
                metadata = dict(piece.metadata)
                metadata.setdefault("filename", document.doc_id)
                metadata.setdefault("uploaded_at", uploaded_at)
                embedding = await asyncio.to_thread(self.embedder.embed, piece.content)
                chunks.append(
                    DocumentChunk(
                        chunk_id=piece.doc_id,
                        document_id=document.doc_id,
                        chunk_index=int(metadata["chunk_index"]),
                        content=piece.content,
                        embedding=embedding,
                        metadata=metadata,
                    )
                )
        stored = await asyncio.to_thread(self.store.upsert, chunks) if chunks else 0
        if stored:
            self.cache.invalidate_by_tags(["query"])
            self._schedule_reclustering()
        logger.info(
            "ingest_complete",
            extra={"documents": len(document_ids), "chunks": stored},
        )
        return IngestResult(documents=len(document_ids), chunks=stored, document_ids=document_ids)

    async def delete_document(self, document_id: str) -> int:
        removed = await asyncio.to_thread(self.store.delete_document, document_id)
        if removed:
            self.cache.invalidate_by_tags(["query"])
            self._schedule_reclustering()
        logger.info("document_deleted", extra={"document_id": document_id, "chunks": removed})
        return removed

    # Sessions

    def session_history(self, session_id: str) -> list[str]:
        return list(self._history.get(session_id, ()))

    def _remember(self, session_id: str, question: str) -> None:
        history = self._history.setdefault(session_id, deque(maxlen=self.history_size))
        history.append(question)

    async def _context(self, session_id: str, expertise: str | None) -> QueryContext:
        documents = await asyncio.to_thread(self.store.document_names)
        return QueryContext(
            previous_questions=self.session_history(session_id),
            session_id=session_id,
            user_expertise_level=expertise,
            available_documents=documents,
        )

    # Answering

    async def _prepare(
        self, question: str, session_id: str, expertise: str | None
    ) -> _Prepared:
        context = await self._context(session_id, expertise)
        analysis = await self.analyzer.analyze_query(question, context)
        optimized = question
        if self.query_enhancement:
            enhanced = await self.analyzer.enhance_query(
                question, analysis, context.available_documents
            )
            optimized = enhanced.optimized_query
        if determine_search_strategy(analysis) == "multi_step":
            retrieval = await self.retriever.multi_step_search(optimized, analysis)
        else:
            retrieval = await self.retriever.hybrid_search(optimized, analysis)
        return _Prepared(
            analysis=analysis,
            retrieval=retrieval,
            contexts=tuple(retrieval.results),
            optimized_query=optimized,
            documents=context.available_documents,
        )

    def _followups(self, question: str, prepared: _Prepared) -> list[str]:
        if prepared.analysis.suggested_followups:
            return prepared.analysis.suggested_followups[:5]
        return self.analyzer.generate_followup_questions(
            question, prepared.analysis, prepared.documents
        )

    async def _finalize(
        self, question: str, answer: str, prepared: _Prepared, started: float
    ) -> tuple[ResponseEvaluation, float]:
        response_time = self._clock() - started
        outcome = await self.evaluator.evaluate_response(
            question,
            answer,
            list(prepared.contexts),
            prepared.analysis,
            response_time,
            cache_hit=False,
            search_strategy=prepared.retrieval.metrics.strategy,
        )
        if outcome.should_cache:
            self.cache.cache_query_response(
                question,
                prepared.analysis,
                list(prepared.contexts),
                answer,
                source_names(prepared.contexts),
                response_time,
                quality=outcome.evaluation.score.overall,
            )
        return outcome.evaluation, response_time

    async def ask(
        self,
        question: str,
        session_id: str = "default",
        user_expertise_level: str | None = None,
    ) -> QAResponse:
        """Answer a question, serving repeated questions from the query cache."""
        if not question or not question.strip():
            raise QueryValidationError("Question must not be empty")
        started = self._clock()
        cached = self.cache.get_cached_query_response(question)
        if cached is not None:
            self._remember(session_id, question)
            logger.info("answer_from_cache", extra={"session_id": session_id})
            return QAResponse(
                answer=cached.response,
                sources=cached.search_results,
                analysis=cached.analysis,
                cache_hit=True,
                response_time=self._clock() - started,
            )

        prepared = await self._prepare(question, session_id, user_expertise_level)
        self._remember(session_id, question)
        guardrail = require_context(prepared.contexts)
        if not guardrail.allowed:
            return QAResponse(
                answer=DEFAULT_REFUSAL,
                sources=[],
                analysis=prepared.analysis,
                cache_hit=False,
                response_time=self._clock() - started,
                search_metrics=prepared.retrieval.metrics,
                optimized_query=prepared.optimized_query,
                refusal_reason=guardrail.reason,
            )

        prompt = build_answer_prompt(question, prepared.contexts, self.context_max_chars)
        try:
            answer = await self.gateway.generate(prompt, system=_ANSWER_SYSTEM_PROMPT)
        except LLMError as exc:
            logger.warning("answer_generation_failed", extra={"error": str(exc)})
            return QAResponse(
                answer=GENERATION_APOLOGY,
                sources=list(prepared.contexts),
                analysis=prepared.analysis,
                cache_hit=False,
                response_time=self._clock() - started,
                search_metrics=prepared.retrieval.metrics,
                optimized_query=prepared.optimized_query,
                refusal_reason="generation_failed",
            )

        evaluation, response_time = await self._finalize(question, answer, prepared, started)
        return QAResponse(
            answer=answer,
            sources=list(prepared.contexts),
            analysis=prepared.analysis,
            cache_hit=False,
            response_time=response_time,
            search_metrics=prepared.retrieval.metrics,
            evaluation=evaluation,
            followups=self._followups(question, prepared),
            optimized_query=prepared.optimized_query,
        )

    async def ask_stream(
        self,
        question: str,
        session_id: str = "default",
        user_expertise_level: str | None = None,
        cancel_event: asyncio.Event | None = None,
    ) -> AsyncIterator[dict[str, Any]]:
        """Stream an answer as events; a set cancel event stops without caching."""
        if not question or not question.strip():
            raise QueryValidationError("Question must not be empty")
        cancel_event = cancel_event or asyncio.Event()
        started = self._clock()
        cached = self.cache.get_cached_query_response(question)
        if cached is not None:
            self._remember(session_id, question)
            yield {"type": "cache_hit", "data": {"response_time": self._clock() - started}}
            yield {"type": "token", "data": cached.response}
            yield {"type": "sources", "data": _source_payload(cached.search_results)}
            yield {"type": "complete", "data": {"cache_hit": True}}
            return

        prepared = await self._prepare(question, session_id, user_expertise_level)
        self._remember(session_id, question)
        yield {
            "type": "analysis",
            "data": {
                "category": prepared.analysis.category,
                "complexity": prepared.analysis.complexity,
                "confidence": prepared.analysis.confidence,
                "keywords": prepared.analysis.keywords,
                "optimized_query": prepared.optimized_query,
            },
        }
        yield {
            "type": "strategy",
            "data": {
                "strategy": prepared.retrieval.metrics.strategy,
                "results": prepared.retrieval.metrics.total_results,
            },
        }
        if not require_context(prepared.contexts).allowed:
            yield {"type": "token", "data": DEFAULT_REFUSAL}
            yield {"type": "complete", "data": {"cache_hit": False}}
            return

        prompt = build_answer_prompt(question, prepared.contexts, self.context_max_chars)
        fragments: list[str] = []
        try:
            async for fragment in self.gateway.generate_stream(prompt, system=_ANSWER_SYSTEM_PROMPT):
                if cancel_event.is_set():
                    break
                fragments.append(fragment)
                yield {"type": "token", "data": fragment}
        except LLMError as exc:
            logger.warning("answer_stream_failed", extra={"error": str(exc)})
            yield {"type": "error", "data": GENERATION_APOLOGY}
            return
        if cancel_event.is_set():
            logger.info("answer_stream_cancelled", extra={"session_id": session_id})
            yield {"type": "cancelled", "data": "".join(fragments)}
            return

        answer = "".join(fragments)
        evaluation, response_time = await self._finalize(question, answer, prepared, started)
        yield {"type": "sources", "data": _source_payload(prepared.contexts)}
        yield {"type": "followups", "data": self._followups(question, prepared)}
        yield {
            "type": "complete",
            "data": {
                "cache_hit": False,
                "response_time": response_time,
                "evaluation_id": evaluation.evaluation_id,
                "quality": evaluation.score.overall,
            },
        }


def _source_payload(results: Iterable[SearchResult]) -> list[dict[str, Any]]:
    return [
        {
            "filename": result.filename,
            "chunk_index": result.metadata.get("chunk_index"),
            "relevance_score": result.relevance_score,
            "search_method": result.search_method,
            "content": result.content[:200],
        }
        for result in results
    ]
