from __future__ import annotations

"""Rubric-based answer quality scoring, cache decisions and quality analytics."""

import hashlib
import json
import logging
import math
import uuid
from datetime import datetime, timedelta, timezone
from typing import TYPE_CHECKING, Any, Callable

from src.app.metrics import QUALITY_SCORE
from src.rag.cache import DAY_MS, IntelligentCacheManager, now_ms
from src.rag.llm import LLMError, LLMGateway, parse_json_object
from src.rag.types import (
    EvaluationOutcome,
    QualityFeedback,
    QualityMetrics,
    QualityScore,
    QueryAnalysis,
    ResponseEvaluation,
    SearchResult,
)

if TYPE_CHECKING:
    from src.metadata.store import ResultStore

logger = logging.getLogger(__name__)

CACHE_QUALITY_THRESHOLD = 0.75
CACHE_TIME_THRESHOLD_MS = 5000
TREND_WINDOW = 10
TREND_MIN_ENTRIES = 5
TREND_DELTA = 0.05
IMPROVEMENT_THRESHOLD = 0.7

_DIMENSIONS = {
    "overall": ("overall", "Overall"),
    "relevance": ("relevance", "Relevance"),
    "accuracy": ("accuracy", "Accuracy"),
    "completeness": ("completeness", "Completeness"),
    "clarity": ("clarity", "Clarity"),
    "coherence": ("coherence", "Coherence"),
    "source_utilization": ("source_utilization", "sourceUtilization", "SourceUtilization"),
    "confidence": ("confidence", "Confidence"),
}

_EVALUATION_SYSTEM_PROMPT = (
    "You grade answers produced from retrieved documents. Score each dimension "
    "from 0 to 1: relevance, accuracy (faithfulness to the sources), completeness, "
    "clarity, coherence, source_utilization, plus overall and your confidence. "
    "Return JSON only with those keys and a short \"reasoning\" string."
)


def should_cache_response(score: QualityScore, processing_time: float) -> bool:
    """Cache high-quality answers and answers that were slow to produce."""
    return score.overall >= CACHE_QUALITY_THRESHOLD or processing_time >= CACHE_TIME_THRESHOLD_MS


def clamp_score(value: Any) -> float:
    """Clamp to [0, 1]; missing or non-numeric values become 0.5."""
    if value is None or isinstance(value, bool):
        return 0.5
    try:
        number = float(value)
    except (TypeError, ValueError):
        return 0.5
    if math.isnan(number):
        return 0.5
    return max(0.0, min(1.0, number))


def fallback_quality_score() -> QualityScore:
    return QualityScore(
        overall=0.6,
        relevance=0.6,
        accuracy=0.6,
        completeness=0.6,
        clarity=0.6,
        coherence=0.6,
        source_utilization=0.6,
        confidence=0.3,
        reasoning="Automatic evaluation unavailable",
    )


def validate_quality_score(data: dict[str, Any]) -> QualityScore:
    values: dict[str, float] = {}
    for field_name, aliases in _DIMENSIONS.items():
        raw = next((data[alias] for alias in aliases if data.get(alias) is not None), None)
        values[field_name] = clamp_score(raw)
    reasoning = data.get("reasoning")
    return QualityScore(
        reasoning=reasoning.strip() if isinstance(reasoning, str) else "",
        **values,
    )


def evaluation_hash(question: str, answer: str) -> str:
    return hashlib.md5((question + answer[:200]).encode("utf-8")).hexdigest()


def pearson_correlation(xs: list[float], ys: list[float]) -> float:
    if len(xs) != len(ys) or not xs:
        return 0.0
    mean_x = sum(xs) / len(xs)
    mean_y = sum(ys) / len(ys)
    numerator = sum((x - mean_x) * (y - mean_y) for x, y in zip(xs, ys))
    denominator = math.sqrt(
        sum((x - mean_x) ** 2 for x in xs) * sum((y - mean_y) ** 2 for y in ys)
    )
    return 0.0 if denominator == 0 else numerator / denominator


def _mean(values: list[float]) -> float:
    return sum(values) / len(values) if values else 0.0


class ResponseQualityEvaluator:
    """Scores answers through the gateway and keeps evaluations in insertion order."""

    def __init__(
        self,
        gateway: LLMGateway,
        cache: IntelligentCacheManager | None = None,
        result_store: ResultStore | None = None,
        clock: Callable[[], float] = now_ms,
    ) -> None:
        self.gateway = gateway
        self.cache = cache
        self.result_store = result_store
        self._clock = clock
        self._evaluations: dict[str, ResponseEvaluation] = {}
        self._score_cache: dict[str, QualityScore] = {}

    async def evaluate_response(
        self,
        question: str,
        answer: str,
        sources: list[SearchResult],
        analysis: QueryAnalysis | None,
        processing_time: float,
        cache_hit: bool = False,
        search_strategy: str | None = None,
        response_id: str | None = None,
    ) -> EvaluationOutcome:
        """Score an answer and decide whether it should be cached."""
        key = f"quality:{evaluation_hash(question, answer)}"
        score = self._cached_score(key)
        if score is None:
            score = await self._score(
                question, answer, sources, analysis, processing_time, cache_hit, search_strategy
            )
            self._store_score(key, score)

        now = self._clock()
        evaluation = ResponseEvaluation(
            evaluation_id=response_id or f"eval_{int(now)}_{uuid.uuid4().hex[:9]}",
            question=question,
            answer=answer,
            sources=[result.filename for result in sources],
            score=score,
            category=analysis.category if analysis else "unknown",
            complexity=analysis.complexity if analysis else "unknown",
            response_time=processing_time,
            cache_hit=cache_hit,
            timestamp=now,
        )
        self._evaluations[evaluation.evaluation_id] = evaluation
        QUALITY_SCORE.observe(score.overall)
        self._persist(evaluation)
        decision = should_cache_response(score, processing_time)
        logger.info(
            "response_evaluated",
            extra={
                "evaluation_id": evaluation.evaluation_id,
                "overall": round(score.overall, 3),
                "should_cache": decision,
            },
        )
        return EvaluationOutcome(evaluation=evaluation, should_cache=decision)

    async def _score(
        self,
        question: str,
        answer: str,
        sources: list[SearchResult],
        analysis: QueryAnalysis | None,
        processing_time: float,
        cache_hit: bool,
        search_strategy: str | None,
    ) -> QualityScore:
        source_lines = "\n".join(
            f"{idx}. {result.filename or 'unknown'}: {result.content[:200]}..."
            for idx, result in enumerate(sources, start=1)
        )
        analysis_block = json.dumps(
            {
                "category": analysis.category if analysis else None,
                "complexity": analysis.complexity if analysis else None,
                "confidence": analysis.confidence if analysis else None,
            }
        )
        prompt = (
            f"Question: {question}\n\n"
            f"Answer:\n{answer}\n\n"
            f"Sources:\n{source_lines or 'No sources available'}\n\n"
            f"Query analysis: {analysis_block}\n"
            f"Search strategy: {search_strategy or 'unknown'}\n"
            f"Response time (ms): {round(processing_time)}\n"
            f"Cache hit: {str(cache_hit).lower()}\n\n"
            "Respond with JSON only."
        )
        try:
            content = await self.gateway.generate(prompt, system=_EVALUATION_SYSTEM_PROMPT)
            data = parse_json_object(content)
        except LLMError as exc:
            logger.warning("quality_evaluation_fallback", extra={"error": str(exc)})
            return fallback_quality_score()
        return validate_quality_score(data)

    def _cached_score(self, key: str) -> QualityScore | None:
        if self.cache is not None:
            return self.cache.get_cached_artifact(key)
        return self._score_cache.get(key)

    def _store_score(self, key: str, score: QualityScore) -> None:
        if self.cache is not None:
            self.cache.cache_artifact(key, score, ttl=DAY_MS, tags=["quality"])
        else:
            self._score_cache[key] = score

    def _persist(self, evaluation: ResponseEvaluation) -> None:
        if self.result_store is None:
            return
        from src.metadata.store import ResultStoreError

        try:
            self.result_store.save_evaluation(evaluation)
        except ResultStoreError as exc:
            logger.warning("evaluation_persist_failed", extra={"error": str(exc)})

    def load_stored_evaluations(self, limit: int = 1000) -> int:
        """Warm the in-memory history from the result store."""
        if self.result_store is None:
            return 0
        from src.metadata.store import ResultStoreError

        try:
            stored = self.result_store.load_evaluations(limit=limit)
        except ResultStoreError as exc:
            logger.warning("evaluation_load_failed", extra={"error": str(exc)})
            return 0
        for evaluation in sorted(stored, key=lambda item: item.timestamp):
            self._evaluations.setdefault(evaluation.evaluation_id, evaluation)
        return len(stored)

    def add_user_feedback(self, evaluation_id: str, rating: int, feedback: str = "") -> bool:
        evaluation = self._evaluations.get(evaluation_id)
        if evaluation is None:
            return False
        rating = max(1, min(5, int(rating)))
        evaluation.user_feedback = QualityFeedback(
            rating=rating,
            feedback=feedback,
            improvements=improvement_suggestions(evaluation.score, rating),
            timestamp=self._clock(),
        )
        if self.result_store is not None:
            from src.metadata.store import ResultStoreError

            try:
                self.result_store.save_feedback(evaluation_id, evaluation.user_feedback)
            except ResultStoreError as exc:
                logger.warning("feedback_persist_failed", extra={"error": str(exc)})
        logger.info("user_feedback_added", extra={"evaluation_id": evaluation_id, "rating": rating})
        return True

    def get_evaluation(self, evaluation_id: str) -> ResponseEvaluation | None:
        return self._evaluations.get(evaluation_id)

    def get_recent_evaluations(self, limit: int = 20) -> list[ResponseEvaluation]:
        ordered = sorted(self._evaluations.values(), key=lambda item: item.timestamp, reverse=True)
        return ordered[:limit]

    def get_high_quality_responses(self, threshold: float = 0.8) -> list[ResponseEvaluation]:
        selected = [item for item in self._evaluations.values() if item.score.overall >= threshold]
        return sorted(selected, key=lambda item: item.score.overall, reverse=True)

    def get_quality_metrics(self) -> QualityMetrics:
        evaluations = list(self._evaluations.values())
        if not evaluations:
            return QualityMetrics(
                average_quality=0.0,
                total_evaluations=0,
                quality_trend="stable",
                top_performing_categories=[],
                improvement_areas=[],
                response_time_impact=0.0,
            )
        overall = [item.score.overall for item in evaluations]
        return QualityMetrics(
            average_quality=_mean(overall),
            total_evaluations=len(evaluations),
            quality_trend=quality_trend(overall),
            top_performing_categories=_top_categories(evaluations),
            improvement_areas=_improvement_areas(evaluations),
            response_time_impact=(
                pearson_correlation([item.response_time for item in evaluations], overall)
                if len(evaluations) >= 10
                else 0.0
            ),
        )

    def get_quality_performance_analytics(self, days: int = 7) -> dict[str, Any]:
        evaluations = list(self._evaluations.values())
        by_category: dict[str, list[float]] = {}
        by_complexity: dict[str, list[float]] = {}
        by_time: dict[str, list[float]] = {"fast": [], "medium": [], "slow": []}
        for item in evaluations:
            by_category.setdefault(item.category, []).append(item.score.overall)
            by_complexity.setdefault(item.complexity, []).append(item.score.overall)
            if item.response_time < 3000:
                by_time["fast"].append(item.score.overall)
            elif item.response_time < 8000:
                by_time["medium"].append(item.score.overall)
            else:
                by_time["slow"].append(item.score.overall)

        today = datetime.fromtimestamp(self._clock() / 1000, tz=timezone.utc).date()
        trends = []
        for offset in range(days - 1, -1, -1):
            day = today - timedelta(days=offset)
            scores = [
                item.score.overall
                for item in evaluations
                if datetime.fromtimestamp(item.timestamp / 1000, tz=timezone.utc).date() == day
            ]
            trends.append({"date": day.isoformat(), "quality": _mean(scores)})
        return {
            "quality_by_category": {key: _mean(values) for key, values in by_category.items()},
            "quality_by_complexity": {key: _mean(values) for key, values in by_complexity.items()},
            "quality_by_response_time": {key: _mean(values) for key, values in by_time.items()},
            "quality_trends": trends,
        }

    def get_quality_insights(self) -> dict[str, Any]:
        metrics = self.get_quality_metrics()
        actions = {
            "accuracy": "Improve fact-checking against source documents",
            "completeness": "Provide more comprehensive answers",
            "source_utilization": "Improve source document integration in responses",
            "clarity": "Improve response structure and readability",
        }
        recommendations = [
            {"priority": "high" if index == 0 else "medium", "action": actions[area]}
            for index, area in enumerate(metrics.improvement_areas)
        ]
        return {
            "average_quality": metrics.average_quality,
            "quality_trend": metrics.quality_trend,
            "improvement_areas": metrics.improvement_areas,
            "recommendations": recommendations,
            "benchmarks": {
                "target_quality": 0.85,
                "current_quality": metrics.average_quality,
                "gap": max(0.0, 0.85 - metrics.average_quality),
            },
        }


def quality_trend(overall_scores: list[float]) -> str:
    """Compare the last ten scores with the ten before them."""
    recent = overall_scores[-TREND_WINDOW:]
    previous = overall_scores[-2 * TREND_WINDOW : -TREND_WINDOW]
    if len(recent) < TREND_MIN_ENTRIES or len(previous) < TREND_MIN_ENTRIES:
        return "stable"
    recent_avg = _mean(recent)
    previous_avg = _mean(previous)
    if recent_avg > previous_avg + TREND_DELTA:
        return "improving"
    if recent_avg < previous_avg - TREND_DELTA:
        return "declining"
    return "stable"


def improvement_suggestions(score: QualityScore, rating: int) -> list[str]:
    suggestions: list[str] = []
    if rating / 5 < score.overall - 0.2:
        suggestions.append("Automatic evaluation overestimated quality - review evaluation criteria")
    if score.accuracy < IMPROVEMENT_THRESHOLD:
        suggestions.append("Improve fact-checking against source documents")
    if score.completeness < IMPROVEMENT_THRESHOLD:
        suggestions.append("Provide more comprehensive answers")
    if score.clarity < IMPROVEMENT_THRESHOLD:
        suggestions.append("Improve response structure and readability")
    return suggestions


def _top_categories(evaluations: list[ResponseEvaluation]) -> list[str]:
    grouped: dict[str, list[float]] = {}
    for item in evaluations:
        grouped.setdefault(item.category, []).append(item.score.overall)
    ranked = sorted(grouped.items(), key=lambda pair: _mean(pair[1]), reverse=True)
    return [category for category, _ in ranked[:3]]


def _improvement_areas(evaluations: list[ResponseEvaluation]) -> list[str]:
    areas: list[str] = []
    for name in ("accuracy", "completeness", "source_utilization", "clarity"):
        if _mean([getattr(item.score, name) for item in evaluations]) < IMPROVEMENT_THRESHOLD:
            areas.append(name)
    return areas
