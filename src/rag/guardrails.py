from __future__ import annotations

from dataclasses import dataclass

from src.rag.types import SearchResult


DEFAULT_REFUSAL = (
    "I couldn't find any relevant information in the uploaded documents to answer "
    "your question. Please make sure you've uploaded relevant PDFs or try rephrasing "
    "your question."
)
GENERATION_APOLOGY = (
    "I apologize, but I encountered an error while generating a response. "
    "Please try again."
)


@dataclass(frozen=True)
class GuardrailResult:
    allowed: bool
    reason: str


def require_context(contexts: tuple[SearchResult, ...]) -> GuardrailResult:
    if not contexts:
        return GuardrailResult(allowed=False, reason="no_context")
    if all(not chunk.content.strip() for chunk in contexts):
        return GuardrailResult(allowed=False, reason="empty_context")
    return GuardrailResult(allowed=True, reason="ok")
