from __future__ import annotations

import pytest

from src.rag.embeddings import HashEmbedder
from src.rag.retriever import HybridRetriever, build_keyword_query
from src.rag.types import DocumentChunk, QueryAnalysis, SearchResult
from src.tests.fakes import FailingStore
from src.vectorstore.inmemory import InMemoryVectorStore

pytestmark = pytest.mark.anyio


def make_analysis(category: str, complexity: str = "moderate", multi: bool = False) -> QueryAnalysis:
    return QueryAnalysis(
        category=category,
        complexity=complexity,
        confidence=0.8,
        keywords=["shipping", "delivery", "courier", "tracking"],
        requires_multiple_docs=multi,
        suggested_followups=[],
        intent="lookup",
        domain="logistics",
        estimated_response_time=3.0,
    )


def build_store(embedder: HashEmbedder, texts: dict[str, list[str]]) -> InMemoryVectorStore:
    store = InMemoryVectorStore(dimension=embedder.dimension)
    chunks = []
    for document_id, contents in texts.items():
        for index, content in enumerate(contents):
            chunks.append(
                DocumentChunk(
                    chunk_id=f"{document_id}-{index}",
                    document_id=document_id,
                    chunk_index=index,
                    content=content,
                    embedding=embedder.embed(content),
                    metadata={"filename": f"{document_id}.pdf"},
                )
            )
    store.upsert(chunks)
    return store


class SemanticOnlyStore:
    """Adaptive search is broken but plain vector search still works."""

    def __init__(self, store: InMemoryVectorStore) -> None:
        self.store = store

    def query(self, embedding: list[float], k: int) -> list[SearchResult]:
        return self.store.query(embedding, k)

    def adaptive_search(self, *args, **kwargs):
        raise RuntimeError("keyword index unavailable")


def test_keyword_query_adds_missing_keywords_only() -> None:
    query = build_keyword_query("Shipping times?", make_analysis("factual"))
    assert query == "Shipping times delivery courier tracking"


def test_keyword_query_without_analysis_strips_punctuation() -> None:
    assert build_keyword_query("What's the ETA?!", None) == "What s the ETA"


async def test_hybrid_search_uses_category_weights() -> None:
    embedder = HashEmbedder(dimension=64)
    store = build_store(embedder, {"ops": ["Shipping takes five days by courier."]})
    retriever = HybridRetriever(embedder, store)

    result = await retriever.hybrid_search("How long does shipping take?", make_analysis("factual"))

    assert result.metrics.strategy == "hybrid"
    assert result.metrics.semantic_weight == 0.4
    assert result.metrics.keyword_weight == 0.6
    assert result.metrics.query_optimization is True
    assert result.results
    top = result.results[0]
    assert 0.0 <= top.relevance_score <= 1.0
    assert top.relevance_score == pytest.approx(0.4 * top.semantic_score + 0.6 * top.keyword_score)


async def test_keyword_strategy_requires_keyword_match() -> None:
    embedder = HashEmbedder(dimension=64)
    store = build_store(
        embedder,
        {"ops": ["Shipping takes five days by courier.", "Invoices are issued monthly."]},
    )
    retriever = HybridRetriever(embedder, store)

    result = await retriever.hybrid_search("shipping", make_analysis("factual", "simple"))

    assert result.metrics.strategy == "keyword"
    assert [item.content for item in result.results] == ["Shipping takes five days by courier."]


async def test_multi_step_search_spreads_across_documents() -> None:
    embedder = HashEmbedder(dimension=64)
    store = build_store(
        embedder,
        {
            "alpha": [f"shipping policy alpha section {n}" for n in range(4)],
            "beta": ["shipping policy beta overview"],
        },
    )
    retriever = HybridRetriever(embedder, store)

    result = await retriever.multi_step_search(
        "shipping policy", make_analysis("comparative", multi=True), k=4
    )

    assert result.metrics.strategy == "multi_step"
    assert (result.metrics.semantic_weight, result.metrics.keyword_weight) == (0.6, 0.4)
    assert all(item.search_method == "multi_step" for item in result.results)
    documents = [item.metadata["document_id"] for item in result.results]
    assert documents.count("alpha") <= 2
    assert "beta" in documents


async def test_adaptive_failure_falls_back_to_semantic() -> None:
    embedder = HashEmbedder(dimension=64)
    store = build_store(embedder, {"ops": ["Shipping takes five days by courier."]})
    retriever = HybridRetriever(embedder, SemanticOnlyStore(store))

    result = await retriever.hybrid_search("shipping courier", make_analysis("factual"))

    assert result.metrics.strategy == "fallback_semantic"
    assert result.metrics.semantic_weight == 1.0
    assert result.metrics.keyword_weight == 0.0
    assert result.metrics.query_optimization is False
    assert result.results[0].search_method == "fallback_semantic"
    assert result.results[0].relevance_score > 0.0


async def test_total_failure_returns_empty_result() -> None:
    retriever = HybridRetriever(HashEmbedder(dimension=64), FailingStore())

    result = await retriever.hybrid_search("anything", None)

    assert result.results == []
    assert result.metrics.strategy == "failed"
    assert result.metrics.total_results == 0


async def test_metrics_history_is_bounded() -> None:
    embedder = HashEmbedder(dimension=64)
    store = build_store(embedder, {"ops": ["Shipping takes five days."]})
    retriever = HybridRetriever(embedder, store, max_metrics=3)

    for word in ("alpha", "bravo", "charlie", "delta", "echo"):
        await retriever.hybrid_search(f"{word} shipping question")

    history = retriever.get_performance_metrics()
    assert len(history) == 3
    assert retriever.get_performance_metrics("alpha shipping question") is None
    assert retriever.get_performance_metrics("echo shipping question").strategy == "hybrid"
