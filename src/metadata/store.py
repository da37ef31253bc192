from __future__ import annotations

"""Relational persistence for evaluations, feedback, summaries and clusters."""

import json
import logging
from dataclasses import asdict
from datetime import datetime, timezone
from typing import Any, Iterable

from sqlalchemy import (
    Boolean,
    Column,
    DateTime,
    Float,
    Integer,
    MetaData,
    String,
    Table,
    Text,
    create_engine,
    select,
)
from sqlalchemy.exc import SQLAlchemyError

from src.rag.types import (
    DocumentCluster,
    DocumentSummary,
    QualityFeedback,
    QualityScore,
    ResponseEvaluation,
    SummaryChunk,
)

logger = logging.getLogger(__name__)


class ResultStoreError(RuntimeError):
    """Raised when result persistence fails."""
    pass


def _dumps(value: Any) -> str:
    return json.dumps(value, ensure_ascii=True, default=str)


def _loads(value: str | None, default: Any) -> Any:
    if not value:
        return default
    try:
        return json.loads(value)
    except json.JSONDecodeError:
        return default


class ResultStore:
    """Store quality, summary and clustering results in a SQL database."""

    def __init__(self, connection_uri: str) -> None:
        """Initialize the store and ensure tables exist."""
        try:
            self._engine = create_engine(connection_uri)
        except SQLAlchemyError as exc:
            raise ResultStoreError(str(exc)) from exc
        self._metadata = MetaData()
        self._evaluations = Table(
            "response_evaluations",
            self._metadata,
            Column("id", String(64), primary_key=True),
            Column("question", Text, nullable=False),
            Column("answer", Text, nullable=False),
            Column("sources", Text, nullable=False),
            Column("scores", Text, nullable=False),
            Column("overall", Float, nullable=False),
            Column("category", String(32), nullable=False),
            Column("complexity", String(32), nullable=False),
            Column("response_time", Float, nullable=False),
            Column("cache_hit", Boolean, nullable=False),
            Column("timestamp", Float, nullable=False),
            Column("created_at", DateTime(timezone=True), nullable=False),
        )
        self._feedback = Table(
            "quality_feedback",
            self._metadata,
            Column("id", Integer, primary_key=True, autoincrement=True),
            Column("evaluation_id", String(64), nullable=False, index=True),
            Column("rating", Integer, nullable=False),
            Column("feedback", Text, nullable=False),
            Column("improvements", Text, nullable=False),
            Column("timestamp", Float, nullable=False),
        )
        self._summaries = Table(
            "document_summaries",
            self._metadata,
            Column("id", String(64), primary_key=True),
            Column("document_id", String(256), nullable=False, index=True),
            Column("filename", String(512), nullable=False),
            Column("summary", Text, nullable=False),
            Column("key_points", Text, nullable=False),
            Column("topics", Text, nullable=False),
            Column("chunks", Text, nullable=False),
            Column("word_count", Integer, nullable=False),
            Column("reading_time", Integer, nullable=False),
            Column("summary_type", String(32), nullable=False),
            Column("confidence", Float, nullable=False),
            Column("compression_ratio", Float, nullable=False),
            Column("processing_time", Float, nullable=False),
            Column("created_at", Float, nullable=False),
        )
        self._clusters = Table(
            "document_clusters",
            self._metadata,
            Column("id", String(64), primary_key=True),
            Column("name", String(256), nullable=False),
            Column("description", Text, nullable=False),
            Column("topics", Text, nullable=False),
            Column("document_ids", Text, nullable=False),
            Column("centroid", Text, nullable=False),
            Column("coherence_score", Float, nullable=False),
            Column("size", Integer, nullable=False),
            Column("created_at", Float, nullable=False),
            Column("last_updated", Float, nullable=False),
        )
        try:
            self._metadata.create_all(self._engine)
        except SQLAlchemyError as exc:
            raise ResultStoreError(str(exc)) from exc

    def save_evaluation(self, evaluation: ResponseEvaluation) -> None:
        row = {
            "id": evaluation.evaluation_id,
            "question": evaluation.question,
            "answer": evaluation.answer,
            "sources": _dumps(evaluation.sources),
            "scores": _dumps(asdict(evaluation.score)),
            "overall": evaluation.score.overall,
            "category": evaluation.category,
            "complexity": evaluation.complexity,
            "response_time": evaluation.response_time,
            "cache_hit": evaluation.cache_hit,
            "timestamp": evaluation.timestamp,
            "created_at": datetime.now(timezone.utc),
        }
        self._execute(self._evaluations.insert().values(**row))

    def load_evaluations(self, limit: int = 1000) -> list[ResponseEvaluation]:
        """Most recent evaluations, newest first, with their latest feedback."""
        query = (
            select(self._evaluations)
            .order_by(self._evaluations.c.timestamp.desc())
            .limit(limit)
        )
        rows = self._fetch(query)
        feedback = self._latest_feedback([row["id"] for row in rows])
        evaluations = []
        for row in rows:
            scores = _loads(row["scores"], {})
            evaluations.append(
                ResponseEvaluation(
                    evaluation_id=row["id"],
                    question=row["question"],
                    answer=row["answer"],
                    sources=_loads(row["sources"], []),
                    score=QualityScore(**scores),
                    category=row["category"],
                    complexity=row["complexity"],
                    response_time=row["response_time"],
                    cache_hit=bool(row["cache_hit"]),
                    timestamp=row["timestamp"],
                    user_feedback=feedback.get(row["id"]),
                )
            )
        return evaluations

    def save_feedback(self, evaluation_id: str, feedback: QualityFeedback) -> None:
        self._execute(
            self._feedback.insert().values(
                evaluation_id=evaluation_id,
                rating=feedback.rating,
                feedback=feedback.feedback,
                improvements=_dumps(feedback.improvements),
                timestamp=feedback.timestamp,
            )
        )

    def _latest_feedback(self, evaluation_ids: list[str]) -> dict[str, QualityFeedback]:
        if not evaluation_ids:
            return {}
        query = (
            select(self._feedback)
            .where(self._feedback.c.evaluation_id.in_(evaluation_ids))
            .order_by(self._feedback.c.timestamp.asc())
        )
        latest: dict[str, QualityFeedback] = {}
        for row in self._fetch(query):
            latest[row["evaluation_id"]] = QualityFeedback(
                rating=row["rating"],
                feedback=row["feedback"],
                improvements=_loads(row["improvements"], []),
                timestamp=row["timestamp"],
            )
        return latest

    def save_summary(self, summary: DocumentSummary) -> None:
        row = {
            "id": summary.summary_id,
            "document_id": summary.document_id,
            "filename": summary.filename,
            "summary": summary.summary,
            "key_points": _dumps(summary.key_points),
            "topics": _dumps(summary.topics),
            "chunks": _dumps([asdict(chunk) for chunk in summary.chunks]),
            "word_count": summary.word_count,
            "reading_time": summary.reading_time,
            "summary_type": summary.summary_type,
            "confidence": summary.confidence,
            "compression_ratio": summary.compression_ratio,
            "processing_time": summary.processing_time,
            "created_at": summary.created_at,
        }
        self._execute(self._summaries.insert().values(**row))

    def latest_summary(self, document_id: str) -> DocumentSummary | None:
        query = (
            select(self._summaries)
            .where(self._summaries.c.document_id == document_id)
            .order_by(self._summaries.c.created_at.desc())
            .limit(1)
        )
        rows = self._fetch(query)
        if not rows:
            return None
        row = rows[0]
        return DocumentSummary(
            summary_id=row["id"],
            document_id=row["document_id"],
            filename=row["filename"],
            summary=row["summary"],
            key_points=_loads(row["key_points"], []),
            topics=_loads(row["topics"], []),
            word_count=row["word_count"],
            reading_time=row["reading_time"],
            summary_type=row["summary_type"],
            confidence=row["confidence"],
            created_at=row["created_at"],
            chunks=[SummaryChunk(**chunk) for chunk in _loads(row["chunks"], [])],
            compression_ratio=row["compression_ratio"],
            processing_time=row["processing_time"],
        )

    def replace_clusters(self, clusters: Iterable[DocumentCluster]) -> int:
        """Swap the stored cluster set for a new clustering run."""
        rows = [
            {
                "id": cluster.cluster_id,
                "name": cluster.name,
                "description": cluster.description,
                "topics": _dumps(cluster.topics),
                "document_ids": _dumps(cluster.document_ids),
                "centroid": _dumps(cluster.centroid),
                "coherence_score": cluster.coherence_score,
                "size": cluster.size,
                "created_at": cluster.created_at,
                "last_updated": cluster.last_updated,
            }
            for cluster in clusters
        ]
        try:
            with self._engine.begin() as conn:
                conn.execute(self._clusters.delete())
                if rows:
                    conn.execute(self._clusters.insert(), rows)
        except SQLAlchemyError as exc:
            raise ResultStoreError(str(exc)) from exc
        return len(rows)

    def load_clusters(self) -> list[DocumentCluster]:
        rows = self._fetch(select(self._clusters).order_by(self._clusters.c.id))
        return [
            DocumentCluster(
                cluster_id=row["id"],
                centroid=_loads(row["centroid"], []),
                document_ids=_loads(row["document_ids"], []),
                topics=_loads(row["topics"], []),
                name=row["name"],
                description=row["description"],
                coherence_score=row["coherence_score"],
                size=row["size"],
                created_at=row["created_at"],
                last_updated=row["last_updated"],
            )
            for row in rows
        ]

    def health(self) -> dict[str, str | bool]:
        try:
            with self._engine.connect() as conn:
                conn.execute(select(1))
        except SQLAlchemyError as exc:
            return {"ok": False, "detail": str(exc)}
        return {"ok": True}

    def _execute(self, statement) -> None:
        try:
            with self._engine.begin() as conn:
                conn.execute(statement)
        except SQLAlchemyError as exc:
            raise ResultStoreError(str(exc)) from exc

    def _fetch(self, query) -> list[dict[str, Any]]:
        try:
            with self._engine.connect() as conn:
                return [dict(row._mapping) for row in conn.execute(query)]
        except SQLAlchemyError as exc:
            raise ResultStoreError(str(exc)) from exc
