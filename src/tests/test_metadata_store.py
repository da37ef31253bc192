from __future__ import annotations

import sqlite3

import pytest

from src.metadata.store import ResultStore, ResultStoreError
from src.rag.types import (
    DocumentCluster,
    DocumentSummary,
    QualityFeedback,
    QualityScore,
    ResponseEvaluation,
    SummaryChunk,
)


def make_evaluation(evaluation_id: str, timestamp: float) -> ResponseEvaluation:
    return ResponseEvaluation(
        evaluation_id=evaluation_id,
        question="How long do refunds take?",
        answer="14 days",
        sources=["policy.pdf"],
        score=QualityScore(0.8, 0.8, 0.8, 0.8, 0.8, 0.8, 0.8, 0.7, "ok"),
        category="factual",
        complexity="simple",
        response_time=1200.0,
        cache_hit=False,
        timestamp=timestamp,
    )


def make_cluster(cluster_id: str) -> DocumentCluster:
    return DocumentCluster(
        cluster_id=cluster_id,
        centroid=[0.1, 0.2],
        document_ids=["policy-0"],
        topics=["refunds"],
        name="refunds",
        description="A cluster of 1 documents focused on refunds.",
        coherence_score=0.9,
        size=1,
        created_at=1.0,
        last_updated=1.0,
    )


def test_evaluations_round_trip_with_latest_feedback(tmp_path) -> None:
    store = ResultStore(f"sqlite:///{tmp_path / 'results.db'}")
    store.save_evaluation(make_evaluation("eval_1", 1000.0))
    store.save_evaluation(make_evaluation("eval_2", 2000.0))
    store.save_feedback("eval_1", QualityFeedback(2, "meh", ["Provide more comprehensive answers"], 1.0))
    store.save_feedback("eval_1", QualityFeedback(5, "great", [], 2.0))

    loaded = store.load_evaluations(limit=10)

    assert [item.evaluation_id for item in loaded] == ["eval_2", "eval_1"]
    assert loaded[1].score.reasoning == "ok"
    assert loaded[1].sources == ["policy.pdf"]
    assert loaded[1].user_feedback.rating == 5
    assert loaded[0].user_feedback is None
    assert [item.evaluation_id for item in store.load_evaluations(limit=1)] == ["eval_2"]


def test_latest_summary_by_document(tmp_path) -> None:
    store = ResultStore(f"sqlite:///{tmp_path / 'results.db'}")
    for summary_id, created_at in (("summary_a", 1.0), ("summary_b", 5.0)):
        store.save_summary(
            DocumentSummary(
                summary_id=summary_id,
                document_id="policy",
                filename="policy.pdf",
                summary=f"Summary {summary_id}",
                key_points=["14 days"],
                topics=["refunds"],
                word_count=2,
                reading_time=1,
                summary_type="brief",
                confidence=0.8,
                created_at=created_at,
                chunks=[SummaryChunk(0, "text", "chunk summary", 0.9, ["refunds"], [])],
                compression_ratio=0.1,
                processing_time=12.0,
            )
        )

    latest = store.latest_summary("policy")

    assert latest.summary_id == "summary_b"
    assert latest.chunks[0].summary == "chunk summary"
    assert store.latest_summary("missing") is None


def test_replace_clusters_swaps_the_whole_set(tmp_path) -> None:
    db_path = tmp_path / "results.db"
    store = ResultStore(f"sqlite:///{db_path}")
    store.replace_clusters([make_cluster("cluster_0"), make_cluster("cluster_1")])
    store.replace_clusters([make_cluster("cluster_2")])

    assert [c.cluster_id for c in store.load_clusters()] == ["cluster_2"]
    conn = sqlite3.connect(db_path)
    try:
        count = conn.execute("SELECT COUNT(*) FROM document_clusters").fetchone()[0]
    finally:
        conn.close()
    assert count == 1
    assert store.health() == {"ok": True}


def test_duplicate_evaluation_raises_store_error(tmp_path) -> None:
    store = ResultStore(f"sqlite:///{tmp_path / 'results.db'}")
    store.save_evaluation(make_evaluation("eval_1", 1000.0))
    with pytest.raises(ResultStoreError):
        store.save_evaluation(make_evaluation("eval_1", 1000.0))
