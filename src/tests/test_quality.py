from __future__ import annotations

import math

import pytest

from src.metadata.store import ResultStore
from src.rag.cache import IntelligentCacheManager
from src.rag.quality import (
    ResponseQualityEvaluator,
    clamp_score,
    fallback_quality_score,
    improvement_suggestions,
    quality_trend,
    should_cache_response,
    validate_quality_score,
)
from src.rag.types import QualityScore, QueryAnalysis, SearchResult
from src.tests.fakes import FakeClock, FakeGateway, routed

pytestmark = pytest.mark.anyio

GRADE = {
    "overall": 0.9,
    "relevance": 0.95,
    "accuracy": 0.9,
    "completeness": 0.85,
    "clarity": 0.9,
    "coherence": 0.9,
    "sourceUtilization": 0.8,
    "confidence": 0.85,
    "reasoning": "Grounded and complete.",
}

ANALYSIS = QueryAnalysis(
    category="factual",
    complexity="simple",
    confidence=0.9,
    keywords=["refund"],
    requires_multiple_docs=False,
    suggested_followups=[],
    intent="lookup",
    domain="support",
    estimated_response_time=3.0,
)

SOURCES = [
    SearchResult(
        content="Refunds are issued within 14 days.",
        metadata={"filename": "policy.pdf", "chunk_index": 0},
        relevance_score=0.9,
        search_method="keyword",
    )
]


def score(overall: float, **overrides: float) -> QualityScore:
    values = {
        "overall": overall,
        "relevance": overall,
        "accuracy": overall,
        "completeness": overall,
        "clarity": overall,
        "coherence": overall,
        "source_utilization": overall,
        "confidence": overall,
    }
    values.update(overrides)
    return QualityScore(**values)


@pytest.mark.parametrize(
    "value,expected",
    [(None, 0.5), ("abc", 0.5), (True, 0.5), (math.nan, 0.5), (-0.2, 0.0), (1.7, 1.0), (0, 0.0), ("0.4", 0.4)],
)
def test_clamp_score(value: object, expected: float) -> None:
    assert clamp_score(value) == expected


@pytest.mark.parametrize(
    "overall,elapsed,expected",
    [
        (0.75, 100, True),
        (0.74, 100, False),
        (0.2, 5000, True),
        (0.2, 4999, False),
        (0.9, 9000, True),
    ],
)
def test_should_cache_response(overall: float, elapsed: float, expected: bool) -> None:
    assert should_cache_response(score(overall), elapsed) is expected


def test_validate_quality_score_accepts_camel_case_and_clamps() -> None:
    result = validate_quality_score({"overall": 2, "sourceUtilization": 0.3, "clarity": "n/a"})
    assert result.overall == 1.0
    assert result.source_utilization == 0.3
    assert result.clarity == 0.5
    assert result.relevance == 0.5


def test_quality_trend_windows() -> None:
    assert quality_trend([0.5] * 9) == "stable"
    assert quality_trend([0.5] * 10 + [0.7] * 10) == "improving"
    assert quality_trend([0.8] * 10 + [0.6] * 10) == "declining"
    assert quality_trend([0.7] * 10 + [0.72] * 10) == "stable"


def test_improvement_suggestions_flag_overestimation() -> None:
    suggestions = improvement_suggestions(score(0.9, accuracy=0.5), rating=2)
    assert suggestions[0].startswith("Automatic evaluation overestimated quality")
    assert "Improve fact-checking against source documents" in suggestions


async def test_evaluate_response_scores_and_decides_caching() -> None:
    evaluator = ResponseQualityEvaluator(FakeGateway(routed(grade=GRADE)))

    outcome = await evaluator.evaluate_response(
        "How fast are refunds?", "Within 14 days [Source: policy.pdf]", SOURCES, ANALYSIS, 1200.0
    )

    evaluation = outcome.evaluation
    assert outcome.should_cache is True
    assert evaluation.score.overall == 0.9
    assert evaluation.score.source_utilization == 0.8
    assert evaluation.sources == ["policy.pdf"]
    assert evaluation.category == "factual"
    assert evaluation.evaluation_id.startswith("eval_")
    assert evaluator.get_evaluation(evaluation.evaluation_id) is evaluation


async def test_gateway_failure_yields_neutral_fallback() -> None:
    evaluator = ResponseQualityEvaluator(FakeGateway(fail=True))

    outcome = await evaluator.evaluate_response("q", "a", [], None, 200.0)

    assert outcome.evaluation.score == fallback_quality_score()
    assert outcome.evaluation.score.overall == 0.6
    assert outcome.evaluation.score.confidence == 0.3
    assert outcome.evaluation.category == "unknown"
    assert outcome.should_cache is False


async def test_unparseable_grade_yields_fallback() -> None:
    evaluator = ResponseQualityEvaluator(FakeGateway(lambda prompt, system: "great answer!"))

    outcome = await evaluator.evaluate_response("q", "a", [], None, 200.0)

    assert outcome.evaluation.score.overall == 0.6


async def test_identical_answers_reuse_cached_score() -> None:
    gateway = FakeGateway(routed(grade=GRADE))
    evaluator = ResponseQualityEvaluator(gateway, cache=IntelligentCacheManager())

    first = await evaluator.evaluate_response("q", "a", SOURCES, ANALYSIS, 100.0)
    second = await evaluator.evaluate_response("q", "a", SOURCES, ANALYSIS, 100.0)

    assert len(gateway.calls) == 1
    assert first.evaluation.score == second.evaluation.score
    assert first.evaluation.evaluation_id != second.evaluation.evaluation_id


async def test_user_feedback_is_clamped_and_recorded() -> None:
    evaluator = ResponseQualityEvaluator(FakeGateway(routed(grade=GRADE)))
    outcome = await evaluator.evaluate_response("q", "a", SOURCES, ANALYSIS, 100.0)
    evaluation_id = outcome.evaluation.evaluation_id

    assert evaluator.add_user_feedback(evaluation_id, 9, "perfect") is True
    assert evaluator.add_user_feedback("eval_missing", 3) is False

    feedback = evaluator.get_evaluation(evaluation_id).user_feedback
    assert feedback.rating == 5
    assert feedback.feedback == "perfect"


async def test_quality_metrics_and_analytics() -> None:
    clock = FakeClock()
    grades = iter([0.9, 0.5])
    gateway = FakeGateway(
        routed(grade=lambda prompt: {**GRADE, "overall": next(grades), "accuracy": 0.4})
    )
    evaluator = ResponseQualityEvaluator(gateway, clock=clock)

    await evaluator.evaluate_response("q1", "a1", SOURCES, ANALYSIS, 1000.0)
    clock.advance(1000)
    await evaluator.evaluate_response("q2", "a2", SOURCES, None, 9000.0)

    metrics = evaluator.get_quality_metrics()
    assert metrics.total_evaluations == 2
    assert metrics.average_quality == pytest.approx(0.7)
    assert metrics.quality_trend == "stable"
    assert metrics.top_performing_categories == ["factual", "unknown"]
    assert metrics.improvement_areas == ["accuracy"]
    assert metrics.response_time_impact == 0.0

    analytics = evaluator.get_quality_performance_analytics(days=3)
    assert analytics["quality_by_response_time"]["fast"] == pytest.approx(0.9)
    assert analytics["quality_by_response_time"]["slow"] == pytest.approx(0.5)
    assert len(analytics["quality_trends"]) == 3
    assert analytics["quality_trends"][-1]["quality"] == pytest.approx(0.7)

    insights = evaluator.get_quality_insights()
    assert insights["recommendations"][0] == {
        "priority": "high",
        "action": "Improve fact-checking against source documents",
    }
    assert insights["benchmarks"]["gap"] == pytest.approx(0.15)

    recent = evaluator.get_recent_evaluations(limit=1)
    assert recent[0].question == "q2"
    assert [item.question for item in evaluator.get_high_quality_responses()] == ["q1"]


async def test_evaluations_survive_restart_through_result_store(tmp_path) -> None:
    result_store = ResultStore(f"sqlite:///{tmp_path / 'quality.db'}")
    evaluator = ResponseQualityEvaluator(FakeGateway(routed(grade=GRADE)), result_store=result_store)
    outcome = await evaluator.evaluate_response("q", "a", SOURCES, ANALYSIS, 100.0)
    evaluator.add_user_feedback(outcome.evaluation.evaluation_id, 4, "good")

    restored = ResponseQualityEvaluator(FakeGateway(), result_store=result_store)
    assert restored.load_stored_evaluations() == 1

    evaluation = restored.get_evaluation(outcome.evaluation.evaluation_id)
    assert evaluation.score.overall == 0.9
    assert evaluation.user_feedback.rating == 4
