from __future__ import annotations

from types import SimpleNamespace

import pytest

from src.rag.cache import IntelligentCacheManager
from src.rag.embeddings import CachingEmbedder, HashEmbedder
from src.rag.types import DocumentChunk
from src.vectorstore.inmemory import InMemoryVectorStore, VectorStoreError, keyword_score, query_terms
from src.vectorstore.milvus import bm25_relevance, hit_to_result


def make_chunk(embedder: HashEmbedder, chunk_id: str, content: str) -> DocumentChunk:
    document_id = chunk_id.rsplit("-", 1)[0]
    return DocumentChunk(
        chunk_id=chunk_id,
        document_id=document_id,
        chunk_index=int(chunk_id.rsplit("-", 1)[1]),
        content=content,
        embedding=embedder.embed(content),
        metadata={"filename": f"{document_id}.pdf"},
    )


def test_upsert_rejects_wrong_dimension() -> None:
    store = InMemoryVectorStore(dimension=8)
    with pytest.raises(VectorStoreError):
        store.upsert([make_chunk(HashEmbedder(dimension=16), "doc-0", "text")])


def test_semantic_query_ranks_by_cosine() -> None:
    embedder = HashEmbedder(dimension=64)
    store = InMemoryVectorStore(dimension=64)
    store.upsert(
        [
            make_chunk(embedder, "tax-0", "tax filing deadline april"),
            make_chunk(embedder, "menu-0", "lunch menu soup salad"),
        ]
    )

    results = store.query(embedder.embed("tax filing deadline"), k=1)

    assert [item.chunk_id for item in results] == ["tax-0"]
    assert results[0].metadata["document_id"] == "tax"
    assert results[0].search_method == "semantic"


def test_semantic_strategy_keeps_non_matching_candidates() -> None:
    embedder = HashEmbedder(dimension=64)
    store = InMemoryVectorStore(dimension=64)
    store.upsert([make_chunk(embedder, "menu-0", "lunch menu soup salad")])

    semantic = store.adaptive_search(embedder.embed("zzz"), "zzz", "semantic", 5, 0.8, 0.2)
    keyword = store.adaptive_search(embedder.embed("zzz"), "zzz", "keyword", 5, 0.4, 0.6)

    assert len(semantic) == 1
    assert keyword == []


def test_keyword_score_is_share_of_terms() -> None:
    terms = query_terms("refund policy deadline")
    assert keyword_score(terms, "The refund policy changed.") == pytest.approx(2 / 3)
    assert keyword_score(set(), "anything") == 0.0


def test_delete_and_stats() -> None:
    embedder = HashEmbedder(dimension=32)
    store = InMemoryVectorStore(dimension=32)
    store.upsert(
        [
            make_chunk(embedder, "a-0", "first"),
            make_chunk(embedder, "a-1", "second"),
            make_chunk(embedder, "b-0", "third"),
        ]
    )

    assert store.delete_document("a") == 2
    assert store.stats() == {
        "backend": "memory",
        "chunk_count": 1,
        "document_count": 1,
        "embedding_dimension": 32,
    }
    assert store.document_names() == ["b.pdf"]


def test_caching_embedder_reuses_vectors() -> None:
    cache = IntelligentCacheManager()
    embedder = CachingEmbedder(provider=HashEmbedder(dimension=16), cache=cache)

    first = embedder.embed("repeated text")
    second = embedder.embed("repeated text")

    assert first == second
    stats = cache.get_stats()
    assert stats.embedding_entries == 1
    assert stats.total_hits == 1
    assert embedder.model == "hash-16"


def milvus_hit(chunk_id: str, score: float) -> SimpleNamespace:
    entity = {
        "chunk_id": chunk_id,
        "document_id": chunk_id.rsplit("-", 1)[0],
        "chunk_index": 0,
        "content": "refund policy text",
        "metadata": '{"filename": "policy.pdf"}',
    }
    return SimpleNamespace(entity=entity, score=score)


def test_bm25_scores_keep_their_order_after_normalization() -> None:
    strong = hit_to_result(milvus_hit("policy-0", 3.2), "keyword")
    weaker = hit_to_result(milvus_hit("policy-1", 2.1), "keyword")

    assert 0.0 < weaker.relevance_score < strong.relevance_score < 1.0
    assert strong.keyword_score == 3.2
    assert strong.semantic_score is None
    assert strong.metadata["filename"] == "policy.pdf"
    assert strong.metadata["chunk_id"] == "policy-0"
    assert bm25_relevance(0.0) == 0.0
    assert bm25_relevance(-1.0) == 0.0


def test_dense_scores_are_clamped_not_rescaled() -> None:
    result = hit_to_result(milvus_hit("policy-0", 0.82), "semantic")
    negative = hit_to_result(milvus_hit("policy-1", -0.2), "semantic")

    assert result.relevance_score == 0.82
    assert result.semantic_score == 0.82
    assert negative.relevance_score == 0.0
