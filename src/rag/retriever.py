from __future__ import annotations

"""Strategy-aware hybrid retrieval with a semantic fallback."""

import asyncio
import base64
import logging
import re
import time
from typing import Protocol

from src.app.metrics import RETRIEVAL_REQUESTS
from src.rag.analyzer import determine_search_strategy, resolve_weights
from src.rag.embeddings import EmbeddingProvider
from src.rag.types import QueryAnalysis, RetrievalResult, SearchMetrics, SearchResult

logger = logging.getLogger(__name__)

_NON_WORD_RE = re.compile(r"[^\w\s]")
_WHITESPACE_RE = re.compile(r"\s+")

MULTI_STEP_WEIGHTS = (0.6, 0.4)


class ChunkSearchBackend(Protocol):
    def query(self, embedding: list[float], k: int) -> list[SearchResult]:
        ...

    def adaptive_search(
        self,
        query_embedding: list[float],
        query_text: str,
        strategy: str,
        k: int,
        semantic_weight: float,
        keyword_weight: float,
    ) -> list[SearchResult]:
        ...


def build_keyword_query(query: str, analysis: QueryAnalysis | None) -> str:
    """Query plus up to three analysis keywords it does not already contain."""
    extra: list[str] = []
    if analysis is not None:
        lowered = query.lower()
        for keyword in analysis.keywords:
            if len(extra) >= 3:
                break
            if keyword and keyword.lower() not in lowered:
                extra.append(keyword)
    combined = " ".join([query, *extra])
    return _WHITESPACE_RE.sub(" ", _NON_WORD_RE.sub(" ", combined)).strip()


def metrics_key(query: str) -> str:
    return base64.b64encode(query.encode("utf-8")).decode("ascii")[:16]


class HybridRetriever:
    """Retrieve chunks with weights and strategy chosen from the query analysis."""

    def __init__(
        self,
        embedder: EmbeddingProvider,
        store: ChunkSearchBackend,
        default_k: int = 6,
        multi_step_k: int = 8,
        max_metrics: int = 100,
    ) -> None:
        self.embedder = embedder
        self.store = store
        self.default_k = default_k
        self.multi_step_k = multi_step_k
        self.max_metrics = max_metrics
        self._metrics: dict[str, SearchMetrics] = {}

    async def hybrid_search(
        self,
        query: str,
        analysis: QueryAnalysis | None = None,
        k: int | None = None,
    ) -> RetrievalResult:
        """Search with the analysis-driven strategy. Never raises."""
        k = k or self.default_k
        strategy = determine_search_strategy(analysis) if analysis else "hybrid"
        semantic_weight, keyword_weight = resolve_weights(analysis.category if analysis else None)
        return await self._search(
            query,
            analysis,
            k,
            strategy,
            semantic_weight,
            keyword_weight,
            optimized=analysis is not None,
        )

    async def multi_step_search(
        self,
        query: str,
        analysis: QueryAnalysis | None = None,
        k: int | None = None,
    ) -> RetrievalResult:
        """Search across several documents with the fixed 0.6/0.4 blend."""
        k = k or self.multi_step_k
        semantic_weight, keyword_weight = MULTI_STEP_WEIGHTS
        return await self._search(
            query,
            analysis,
            k,
            "multi_step",
            semantic_weight,
            keyword_weight,
            optimized=True,
        )

    async def _search(
        self,
        query: str,
        analysis: QueryAnalysis | None,
        k: int,
        strategy: str,
        semantic_weight: float,
        keyword_weight: float,
        optimized: bool,
    ) -> RetrievalResult:
        started = time.perf_counter()
        keyword_query = build_keyword_query(query, analysis)
        try:
            embedding = await asyncio.to_thread(self.embedder.embed, query)
            results = await asyncio.to_thread(
                self.store.adaptive_search,
                embedding,
                keyword_query,
                strategy,
                k,
                semantic_weight,
                keyword_weight,
            )
        except Exception as exc:
            logger.warning(
                "retrieval_fallback",
                extra={"strategy": strategy, "error": type(exc).__name__},
            )
            return await self._fallback_search(query, k, started)

        if strategy == "multi_step":
            results = [_with_method(result, "multi_step") for result in results]
        metrics = SearchMetrics(
            total_results=len(results),
            search_time=(time.perf_counter() - started) * 1000,
            strategy=strategy,
            semantic_weight=semantic_weight,
            keyword_weight=keyword_weight,
            query_optimization=optimized,
        )
        self._record(query, metrics)
        logger.info(
            "retrieval_complete",
            extra={
                "strategy": strategy,
                "results": len(results),
                "search_time_ms": round(metrics.search_time, 2),
            },
        )
        return RetrievalResult(results=results, metrics=metrics)

    async def _fallback_search(self, query: str, k: int, started: float) -> RetrievalResult:
        try:
            embedding = await asyncio.to_thread(self.embedder.embed, query)
            results = await asyncio.to_thread(self.store.query, embedding, k)
        except Exception as exc:
            logger.error("retrieval_failed", extra={"error": type(exc).__name__})
            metrics = SearchMetrics(
                total_results=0,
                search_time=(time.perf_counter() - started) * 1000,
                strategy="failed",
                semantic_weight=0.0,
                keyword_weight=0.0,
                query_optimization=False,
            )
            self._record(query, metrics)
            return RetrievalResult(results=[], metrics=metrics)
        results = [_with_method(result, "fallback_semantic") for result in results]
        metrics = SearchMetrics(
            total_results=len(results),
            search_time=(time.perf_counter() - started) * 1000,
            strategy="fallback_semantic",
            semantic_weight=1.0,
            keyword_weight=0.0,
            query_optimization=False,
        )
        self._record(query, metrics)
        return RetrievalResult(results=results, metrics=metrics)

    def _record(self, query: str, metrics: SearchMetrics) -> None:
        RETRIEVAL_REQUESTS.labels(metrics.strategy).inc()
        key = metrics_key(query)
        self._metrics[key] = metrics
        while len(self._metrics) > self.max_metrics:
            del self._metrics[next(iter(self._metrics))]

    def get_performance_metrics(
        self, query: str | None = None
    ) -> SearchMetrics | dict[str, SearchMetrics] | None:
        if query is not None:
            return self._metrics.get(metrics_key(query))
        return dict(self._metrics)


def _with_method(result: SearchResult, method: str) -> SearchResult:
    return SearchResult(
        content=result.content,
        metadata=result.metadata,
        relevance_score=result.relevance_score,
        search_method=method,
        semantic_score=result.semantic_score,
        keyword_score=result.keyword_score,
    )
