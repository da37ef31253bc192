from __future__ import annotations

import itertools

import pytest

from src.rag.analyzer import (
    FALLBACK_FOLLOWUPS,
    QueryAnalyzer,
    QueryValidationError,
    determine_search_strategy,
    resolve_weights,
    validate_analysis,
)
from src.rag.cache import HOUR_MS
from src.rag.types import QUERY_CATEGORIES, QUERY_COMPLEXITIES, QueryAnalysis, QueryContext
from src.tests.fakes import FakeClock, FakeGateway, routed

pytestmark = pytest.mark.anyio


def make_analysis(category: str, complexity: str, multi: bool) -> QueryAnalysis:
    return QueryAnalysis(
        category=category,
        complexity=complexity,
        confidence=0.8,
        keywords=["revenue"],
        requires_multiple_docs=multi,
        suggested_followups=[],
        intent="lookup",
        domain="finance",
        estimated_response_time=3.0,
    )


def expected_strategy(category: str, complexity: str, multi: bool) -> str:
    if multi:
        return "multi_step"
    if complexity == "complex":
        return "hybrid"
    if category == "factual" and complexity == "simple":
        return "keyword"
    if category == "conceptual":
        return "semantic"
    return "hybrid"


@pytest.mark.parametrize(
    "category,complexity,multi",
    list(itertools.product(QUERY_CATEGORIES, QUERY_COMPLEXITIES, (False, True))),
)
def test_search_strategy_follows_decision_order(category: str, complexity: str, multi: bool) -> None:
    analysis = make_analysis(category, complexity, multi)
    assert determine_search_strategy(analysis) == expected_strategy(category, complexity, multi)


def test_search_strategy_without_analysis_is_hybrid() -> None:
    assert determine_search_strategy(None) == "hybrid"


def test_category_weights_sum_to_one() -> None:
    assert resolve_weights("factual") == (0.4, 0.6)
    assert resolve_weights("conceptual") == (0.8, 0.2)
    assert resolve_weights(None) == (0.7, 0.3)
    assert resolve_weights("unknown") == (0.7, 0.3)
    for category in QUERY_CATEGORIES:
        assert sum(resolve_weights(category)) == pytest.approx(1.0)


def test_validate_analysis_clamps_and_defaults() -> None:
    analysis = validate_analysis(
        {"category": "Poetic", "complexity": "extreme", "confidence": 7, "keywords": []},
        "What is the refund policy for enterprise customers?",
    )
    assert analysis.category == "factual"
    assert analysis.complexity == "moderate"
    assert analysis.confidence == 1.0
    assert analysis.keywords == ["refund", "policy", "enterprise", "customers"]
    assert analysis.suggested_followups == FALLBACK_FOLLOWUPS


async def test_analyze_query_uses_gateway_json() -> None:
    gateway = FakeGateway(
        routed(
            classify={
                "category": "comparative",
                "complexity": "complex",
                "confidence": 0.9,
                "keywords": ["pricing", "plans"],
                "requires_multiple_docs": True,
                "suggested_followups": ["Which plan is cheaper?"],
                "intent": "compare plans",
                "domain": "sales",
                "estimated_response_time": 6,
            }
        )
    )
    analyzer = QueryAnalyzer(gateway)

    analysis = await analyzer.analyze_query("Compare the pricing plans")

    assert analysis.category == "comparative"
    assert analysis.requires_multiple_docs is True
    assert analysis.keywords == ["pricing", "plans"]
    assert determine_search_strategy(analysis) == "multi_step"


async def test_analyze_query_falls_back_on_invalid_json() -> None:
    analyzer = QueryAnalyzer(FakeGateway(lambda prompt, system: "I think it is factual"))

    analysis = await analyzer.analyze_query("Where is the warehouse located?")

    assert analysis.category == "factual"
    assert analysis.complexity == "moderate"
    assert analysis.confidence == 0.7
    assert analysis.domain == "general"
    assert analysis.suggested_followups == FALLBACK_FOLLOWUPS


async def test_analyze_query_falls_back_when_gateway_fails() -> None:
    analyzer = QueryAnalyzer(FakeGateway(fail=True))

    analysis = await analyzer.analyze_query("Where is the warehouse located?")

    assert analysis.category == "factual"
    assert analysis.estimated_response_time == 5.0


async def test_analyze_query_rejects_empty_question() -> None:
    analyzer = QueryAnalyzer(FakeGateway())
    with pytest.raises(QueryValidationError):
        await analyzer.analyze_query("   ")


async def test_analysis_cache_hits_until_ttl_expires() -> None:
    clock = FakeClock()
    gateway = FakeGateway(routed(classify={"category": "procedural", "complexity": "simple"}))
    analyzer = QueryAnalyzer(gateway, clock=clock)

    await analyzer.analyze_query("How do I reset my password?")
    await analyzer.analyze_query("How do I reset my password?")
    assert len(gateway.calls) == 1

    clock.advance(HOUR_MS + 1)
    await analyzer.analyze_query("How do I reset my password?")
    assert len(gateway.calls) == 2


def test_cache_key_depends_on_session_and_history() -> None:
    base = QueryAnalyzer.cache_key("q", None)
    assert base == QueryAnalyzer.cache_key("q", QueryContext())
    assert base != QueryAnalyzer.cache_key("q", QueryContext(session_id="other"))
    assert base != QueryAnalyzer.cache_key("q", QueryContext(previous_questions=["earlier"]))


async def test_analysis_cache_evicts_oldest_entry() -> None:
    gateway = FakeGateway(routed(classify={"category": "factual"}))
    analyzer = QueryAnalyzer(gateway, max_cache_entries=2)

    await analyzer.analyze_query("first question")
    await analyzer.analyze_query("second question")
    await analyzer.analyze_query("third question")
    assert analyzer.cache_size == 2

    await analyzer.analyze_query("second question")
    assert len(gateway.calls) == 3
    await analyzer.analyze_query("first question")
    assert len(gateway.calls) == 4


async def test_enhance_query_keeps_original_on_failure() -> None:
    analyzer = QueryAnalyzer(FakeGateway(fail=True))
    analysis = make_analysis("conceptual", "moderate", False)

    enhanced = await analyzer.enhance_query("What is churn?", analysis)

    assert enhanced.optimized_query == "What is churn?"
    assert enhanced.search_strategy == "semantic"
    assert enhanced.enhancement_applied is False


async def test_enhance_query_applies_rewrite() -> None:
    gateway = FakeGateway(
        routed(rewrite={"optimized_query": "customer churn  rate attrition", "search_strategy": "hybrid"})
    )
    analyzer = QueryAnalyzer(gateway)

    enhanced = await analyzer.enhance_query(
        "What is churn?", make_analysis("conceptual", "moderate", False), ["report.pdf"]
    )

    assert enhanced.optimized_query == "customer churn rate attrition"
    assert enhanced.search_strategy == "hybrid"
    assert enhanced.enhancement_applied is True
    assert "report.pdf" in gateway.calls[0][0]


def test_followups_for_factual_questions_mention_keywords() -> None:
    analyzer = QueryAnalyzer(FakeGateway())
    followups = analyzer.generate_followup_questions(
        "q", make_analysis("factual", "simple", False), ["a.pdf"]
    )
    assert followups[0] == "Can you provide more details about revenue?"
    assert len(followups) == 5
