from __future__ import annotations

"""Query classification, retrieval strategy selection and query enhancement."""

import hashlib
import json
import logging
import math
import re
import time
from typing import Any, Callable

from src.rag.cache import HOUR_MS, now_ms
from src.rag.llm import LLMError, LLMGateway, parse_json_object
from src.rag.types import (
    QUERY_CATEGORIES,
    QUERY_COMPLEXITIES,
    SEARCH_STRATEGIES,
    EnhancedQuery,
    QueryAnalysis,
    QueryContext,
)

logger = logging.getLogger(__name__)


class QueryValidationError(ValueError):
    """Raised when a question cannot be analyzed."""
    pass


_NON_WORD_RE = re.compile(r"[^\w\s]")
_WHITESPACE_RE = re.compile(r"\s+")
_QUESTION_STOPWORDS = {
    "what",
    "how",
    "why",
    "when",
    "where",
    "which",
    "this",
    "that",
    "they",
    "them",
    "their",
}

CATEGORY_WEIGHTS: dict[str, tuple[float, float]] = {
    "factual": (0.4, 0.6),
    "conceptual": (0.8, 0.2),
    "analytical": (0.6, 0.4),
    "comparative": (0.7, 0.3),
    "procedural": (0.5, 0.5),
}
DEFAULT_WEIGHTS = (0.7, 0.3)

FALLBACK_FOLLOWUPS = [
    "Can you provide more details about this topic?",
    "What are the key points to consider?",
    "Are there any examples available?",
]

_FOLLOWUP_TEMPLATES: dict[str, list[str]] = {
    "analytical": [
        "What are the underlying factors that contribute to this?",
        "How does this compare to industry standards?",
        "What are the potential implications or consequences?",
        "What evidence supports this analysis?",
    ],
    "comparative": [
        "What are the main advantages and disadvantages of each option?",
        "Which factors are most important when making this comparison?",
        "What are the cost implications of each approach?",
        "How do these options perform in different scenarios?",
    ],
    "procedural": [
        "What are the prerequisites or requirements?",
        "What tools or resources are needed?",
        "What are common challenges or pitfalls to avoid?",
        "How long does this process typically take?",
    ],
    "conceptual": [
        "Can you explain this concept in simpler terms?",
        "What are some real-world applications of this concept?",
        "How does this relate to other similar concepts?",
        "What are the historical developments in this area?",
    ],
}

_ANALYSIS_SYSTEM_PROMPT = (
    "You classify questions asked against a private document collection. "
    "Return JSON only with keys: "
    "\"category\" (one of factual, analytical, comparative, procedural, conceptual), "
    "\"complexity\" (one of simple, moderate, complex), "
    "\"confidence\" (number 0-1), \"keywords\" (array of strings), "
    "\"requires_multiple_docs\" (boolean), \"suggested_followups\" (array of strings), "
    "\"intent\" (string), \"domain\" (string), "
    "\"estimated_response_time\" (seconds)."
)

_ENHANCE_SYSTEM_PROMPT = (
    "Rewrite the user question to maximise recall when searching documents. "
    "Preserve intent, add the most useful synonyms, keep it concise. "
    "Return JSON only with keys: \"optimized_query\" (string) and "
    "\"search_strategy\" (one of semantic, keyword, hybrid, multi_step)."
)


def extract_keywords(question: str, limit: int = 5) -> list[str]:
    """Stop-word filtered tokens longer than three characters."""
    cleaned = _NON_WORD_RE.sub(" ", question.lower())
    words = [
        word
        for word in cleaned.split()
        if len(word) > 3 and word not in _QUESTION_STOPWORDS
    ]
    return words[:limit]


def determine_search_strategy(analysis: QueryAnalysis | None) -> str:
    """Pick the retrieval strategy from category, complexity and multi-doc need."""
    if analysis is None:
        return "hybrid"
    if analysis.requires_multiple_docs:
        return "multi_step"
    if analysis.complexity == "complex":
        return "hybrid"
    if analysis.category == "factual" and analysis.complexity == "simple":
        return "keyword"
    if analysis.category == "conceptual":
        return "semantic"
    return "hybrid"


def resolve_weights(category: str | None) -> tuple[float, float]:
    """Return the (semantic, keyword) blend for a query category."""
    if category is None:
        return DEFAULT_WEIGHTS
    return CATEGORY_WEIGHTS.get(category, DEFAULT_WEIGHTS)


def estimate_response_time(category: str, complexity: str, requires_multiple_docs: bool) -> float:
    estimate = 3.0
    if complexity == "complex":
        estimate += 2
    if requires_multiple_docs:
        estimate += 3
    if category == "analytical":
        estimate += 1
    return estimate


def fallback_analysis(question: str) -> QueryAnalysis:
    return QueryAnalysis(
        category="factual",
        complexity="moderate",
        confidence=0.7,
        keywords=extract_keywords(question),
        requires_multiple_docs=False,
        suggested_followups=list(FALLBACK_FOLLOWUPS),
        intent="User seeks information from documents",
        domain="general",
        estimated_response_time=5.0,
    )


def _string_list(value: Any) -> list[str] | None:
    if not isinstance(value, list):
        return None
    return [str(item).strip() for item in value if str(item).strip()]


def _as_float(value: Any) -> float | None:
    if isinstance(value, bool):
        return None
    try:
        number = float(value)
    except (TypeError, ValueError):
        return None
    if math.isnan(number) or math.isinf(number):
        return None
    return number


def _as_bool(value: Any) -> bool:
    if isinstance(value, str):
        return value.strip().lower() in {"true", "yes", "1"}
    return bool(value)


def validate_analysis(data: dict[str, Any], question: str) -> QueryAnalysis:
    """Coerce decoded model output into a bounded QueryAnalysis."""
    category = str(data.get("category", "")).strip().lower()
    if category not in QUERY_CATEGORIES:
        category = "factual"
    complexity = str(data.get("complexity", "")).strip().lower()
    if complexity not in QUERY_COMPLEXITIES:
        complexity = "moderate"
    confidence = _as_float(data.get("confidence"))
    confidence = 0.7 if confidence is None else max(0.0, min(1.0, confidence))
    requires_multiple_docs = _as_bool(data.get("requires_multiple_docs", False))
    keywords = _string_list(data.get("keywords"))
    if not keywords:
        keywords = extract_keywords(question)
    followups = _string_list(data.get("suggested_followups"))
    if followups is None:
        followups = list(FALLBACK_FOLLOWUPS)
    estimated = _as_float(data.get("estimated_response_time"))
    if estimated is None:
        estimated = estimate_response_time(category, complexity, requires_multiple_docs)
    intent = data.get("intent")
    domain = data.get("domain")
    return QueryAnalysis(
        category=category,
        complexity=complexity,
        confidence=confidence,
        keywords=keywords,
        requires_multiple_docs=requires_multiple_docs,
        suggested_followups=followups,
        intent=intent.strip() if isinstance(intent, str) and intent.strip() else "User seeks information from documents",
        domain=domain.strip() if isinstance(domain, str) and domain.strip() else "general",
        estimated_response_time=max(0.0, estimated),
    )


def _format_context(context: QueryContext | None) -> str:
    if context is None:
        return "No additional context."
    lines: list[str] = []
    if context.previous_questions:
        lines.append("Previous questions:")
        lines.extend(f"- {question}" for question in context.previous_questions[-5:])
    if context.user_expertise_level:
        lines.append(f"User expertise: {context.user_expertise_level}")
    if context.available_documents:
        lines.append("Available documents: " + ", ".join(context.available_documents[:20]))
    return "\n".join(lines) or "No additional context."


class QueryAnalyzer:
    """Classify questions through the generation gateway with a deterministic fallback."""

    def __init__(
        self,
        gateway: LLMGateway,
        cache_ttl: float = HOUR_MS,
        max_cache_entries: int = 1000,
        clock: Callable[[], float] = now_ms,
    ) -> None:
        self.gateway = gateway
        self.cache_ttl = cache_ttl
        self.max_cache_entries = max_cache_entries
        self._clock = clock
        self._cache: dict[str, tuple[float, QueryAnalysis]] = {}

    @staticmethod
    def cache_key(question: str, context: QueryContext | None) -> str:
        session_id = context.session_id if context else "default"
        prior = len(context.previous_questions) if context else 0
        raw = f"{question}_{session_id}_{prior}"
        return hashlib.sha256(raw.encode("utf-8")).hexdigest()

    async def analyze_query(
        self, question: str, context: QueryContext | None = None
    ) -> QueryAnalysis:
        """Return the analysis for a question, using the analysis cache."""
        if not question or not question.strip():
            raise QueryValidationError("Question must not be empty")
        key = self.cache_key(question, context)
        now = self._clock()
        cached = self._cache.get(key)
        if cached is not None:
            stored_at, analysis = cached
            if now - stored_at <= self.cache_ttl:
                logger.debug("analysis_cache_hit", extra={"key": key[:12]})
                return analysis
            del self._cache[key]

        analysis = await self._analyze(question, context)
        while len(self._cache) >= self.max_cache_entries:
            oldest = next(iter(self._cache))
            del self._cache[oldest]
        self._cache[key] = (now, analysis)
        return analysis

    async def _analyze(self, question: str, context: QueryContext | None) -> QueryAnalysis:
        prompt = (
            f"Question: {question}\n\n"
            f"Context:\n{_format_context(context)}\n\n"
            "Respond with JSON only."
        )
        try:
            content = await self.gateway.generate(prompt, system=_ANALYSIS_SYSTEM_PROMPT)
            data = parse_json_object(content)
        except LLMError as exc:
            logger.warning("query_analysis_fallback", extra={"error": str(exc)})
            return fallback_analysis(question)
        analysis = validate_analysis(data, question)
        logger.info(
            "query_analyzed",
            extra={
                "category": analysis.category,
                "complexity": analysis.complexity,
                "confidence": analysis.confidence,
            },
        )
        return analysis

    async def enhance_query(
        self,
        original_query: str,
        analysis: QueryAnalysis,
        document_context: list[str] | None = None,
    ) -> EnhancedQuery:
        """Rewrite the query for recall, falling back to the original."""
        started = time.perf_counter()
        strategy = determine_search_strategy(analysis)
        prompt = (
            f"Question: {original_query}\n\n"
            f"Analysis: {json.dumps({'category': analysis.category, 'complexity': analysis.complexity, 'keywords': analysis.keywords})}\n"
        )
        if document_context:
            prompt += "Documents: " + ", ".join(document_context[:20]) + "\n"
        prompt += "\nRespond with JSON only."
        try:
            content = await self.gateway.generate(prompt, system=_ENHANCE_SYSTEM_PROMPT)
            data = parse_json_object(content)
        except LLMError as exc:
            logger.warning("query_enhancement_fallback", extra={"error": str(exc)})
            return EnhancedQuery(
                original_query=original_query,
                analysis=analysis,
                optimized_query=original_query,
                search_strategy=strategy,
                analysis_time=(time.perf_counter() - started) * 1000,
                enhancement_applied=False,
            )
        optimized = data.get("optimized_query")
        if not isinstance(optimized, str) or not optimized.strip():
            optimized = original_query
        optimized = _WHITESPACE_RE.sub(" ", optimized).strip()
        proposed = str(data.get("search_strategy", "")).strip().lower()
        if proposed in SEARCH_STRATEGIES:
            strategy = proposed
        return EnhancedQuery(
            original_query=original_query,
            analysis=analysis,
            optimized_query=optimized,
            search_strategy=strategy,
            analysis_time=(time.perf_counter() - started) * 1000,
            enhancement_applied=optimized != original_query,
        )

    def generate_followup_questions(
        self,
        question: str,
        analysis: QueryAnalysis,
        document_context: list[str] | None = None,
    ) -> list[str]:
        if analysis.category == "factual":
            subject = " and ".join(analysis.keywords[:2]) or "this topic"
            followups = [
                f"Can you provide more details about {subject}?",
                "What are the key characteristics mentioned?",
                "Are there any specific examples or cases discussed?",
            ]
        else:
            followups = list(_FOLLOWUP_TEMPLATES.get(analysis.category, FALLBACK_FOLLOWUPS))
        if document_context:
            followups.extend(
                [
                    "What additional information is available in the uploaded documents?",
                    "Are there related topics covered in the same documents?",
                ]
            )
        return followups[:5]

    def clear_cache(self) -> None:
        self._cache.clear()

    @property
    def cache_size(self) -> int:
        return len(self._cache)
