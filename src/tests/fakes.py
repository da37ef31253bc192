from __future__ import annotations

"""Test doubles for the generation gateway, clock and chunk store, plus a wired service."""

import asyncio
import json
from typing import Any, Callable

from src.rag.analyzer import QueryAnalyzer
from src.rag.cache import IntelligentCacheManager
from src.rag.clustering import DocumentClusteringEngine
from src.rag.embeddings import HashEmbedder
from src.rag.llm import LLMError
from src.rag.pipeline import QAService
from src.rag.quality import ResponseQualityEvaluator
from src.rag.retriever import HybridRetriever
from src.rag.summarizer import DocumentSummarizer
from src.vectorstore.inmemory import InMemoryVectorStore

Handler = Callable[[str, "str | None"], str]


class FakeGateway:
    """Gateway that answers from a handler and records every call."""

    def __init__(self, handler: Handler | None = None, fail: bool = False) -> None:
        self.handler = handler or (lambda prompt, system: "")
        self.fail = fail
        self.calls: list[tuple[str, str | None]] = []

    async def generate(self, prompt: str, system: str | None = None) -> str:
        self.calls.append((prompt, system))
        if self.fail:
            raise LLMError("gateway unavailable")
        return self.handler(prompt, system)

    async def generate_stream(self, prompt: str, system: str | None = None):
        text = await self.generate(prompt, system)
        for word in text.split(" "):
            await asyncio.sleep(0)
            yield word + " "

    def calls_with(self, marker: str) -> list[str]:
        return [prompt for prompt, system in self.calls if system and marker in system]


def routed(**replies: Any) -> Handler:
    """Handler picking a reply by a marker found in the system prompt.

    Markers: ``classify``, ``rewrite``, ``grade``, ``topics``, ``chunk``,
    ``summary`` and ``answer``. Dict replies are JSON encoded.
    """
    markers = {
        "classify": "You classify questions",
        "rewrite": "Rewrite the user question",
        "grade": "You grade answers",
        "topics": "Extract the main topics",
        "chunk": "You analyze one chunk",
        "summary": "You write a document summary",
        "answer": "question-answering assistant",
    }

    def handler(prompt: str, system: str | None) -> str:
        for name, marker in markers.items():
            if system and marker in system and name in replies:
                reply = replies[name]
                if callable(reply):
                    reply = reply(prompt)
                return reply if isinstance(reply, str) else json.dumps(reply)
        return "not json"

    return handler


class FakeClock:
    """Millisecond clock advanced by hand."""

    def __init__(self, start: float = 1_700_000_000_000.0) -> None:
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, ms: float) -> None:
        self.now += ms


class FailingStore:
    """Chunk store whose every search raises."""

    def query(self, embedding: list[float], k: int):
        raise RuntimeError("store offline")

    def adaptive_search(self, *args: Any, **kwargs: Any):
        raise RuntimeError("store offline")


async def no_sleep(seconds: float) -> None:
    return None


ANSWER = "Refunds are processed within 14 days [Source: policy.pdf]"
GRADE = {
    "overall": 0.9,
    "relevance": 0.9,
    "accuracy": 0.9,
    "completeness": 0.9,
    "clarity": 0.9,
    "coherence": 0.9,
    "source_utilization": 0.9,
    "confidence": 0.8,
}


def service_handler(clock: FakeClock, answer: Any = ANSWER) -> Handler:
    """Replies for every prompt the Q&A flow sends; answering takes 1.5s of clock time."""

    def respond(prompt: str) -> str:
        clock.advance(1500)
        if isinstance(answer, Exception):
            raise answer
        return answer

    return routed(
        classify={"category": "factual", "complexity": "moderate", "keywords": ["refunds", "days"]},
        rewrite={"optimized_query": "refunds processed days", "search_strategy": "hybrid"},
        grade=GRADE,
        topics={"topics": ["policy"], "keywords": ["refund"], "summary": "Policy.", "confidence": 0.8},
        chunk={"summary": "Refund rules.", "topics": ["refunds"], "entities": [], "importance": 0.8},
        summary={"summary": "Refund policy overview.", "key_points": ["14 days"], "topics": ["refunds"], "confidence": 0.85},
        answer=respond,
    )


def build_service(
    gateway: FakeGateway,
    clock: FakeClock,
    with_clustering: bool = False,
    with_summarizer: bool = False,
    background_tasks: bool = False,
) -> QAService:
    embedder = HashEmbedder(dimension=128)
    store = InMemoryVectorStore(dimension=embedder.dimension)
    cache = IntelligentCacheManager(clock=clock)
    clustering = None
    if with_clustering:
        clustering = DocumentClusteringEngine(
            store=store, gateway=gateway, embedder=embedder, cache=cache, seed=3, sleep=no_sleep
        )
    summarizer = None
    if with_summarizer:
        summarizer = DocumentSummarizer(gateway, cache=cache, clock=clock, sleep=no_sleep)
    return QAService(
        gateway=gateway,
        embedder=embedder,
        store=store,
        cache=cache,
        analyzer=QueryAnalyzer(gateway, clock=clock),
        retriever=HybridRetriever(embedder, store),
        evaluator=ResponseQualityEvaluator(gateway, cache=cache, clock=clock),
        clustering=clustering,
        summarizer=summarizer,
        clustering_debounce=0,
        background_tasks=background_tasks,
        clock=clock,
    )
