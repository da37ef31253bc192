from __future__ import annotations

import pytest

from src.metadata.store import ResultStore
from src.rag.cache import IntelligentCacheManager
from src.rag.summarizer import (
    DocumentSummarizer,
    SummarizationValidationError,
    fallback_synthesis,
    reading_time,
)
from src.rag.types import SummarizationRequest, SummaryChunk
from src.tests.fakes import FakeClock, FakeGateway, no_sleep, routed

pytestmark = pytest.mark.anyio

PARAGRAPH = (
    "The quarterly operations review covers warehouse throughput, carrier performance "
    "and the rollout of the new inventory system across three regions. "
)
LONG_TEXT = "\n\n".join(PARAGRAPH * 3 for _ in range(8))

CHUNK_REPLY = {
    "summary": "Operations improved across regions.",
    "topics": ["operations", "inventory"],
    "entities": ["warehouse"],
    "importance": 0.8,
}
FINAL_REPLY = {
    "summary": "Operations improved after the inventory rollout.",
    "key_points": ["Throughput rose", "Carriers met targets"],
    "topics": ["operations"],
    "confidence": 0.9,
}


def build_summarizer(gateway: FakeGateway, **kwargs) -> DocumentSummarizer:
    kwargs.setdefault("chunk_size", 600)
    kwargs.setdefault("chunk_overlap", 50)
    return DocumentSummarizer(gateway, sleep=no_sleep, clock=FakeClock(), **kwargs)


def make_request(document_id: str = "ops", content: str = LONG_TEXT, **kwargs) -> SummarizationRequest:
    return SummarizationRequest(
        document_id=document_id, filename=f"{document_id}.pdf", content=content, **kwargs
    )


def test_reading_time_has_one_minute_floor() -> None:
    assert reading_time("short text") == 1
    assert reading_time("word " * 1000) == 5


def test_fallback_synthesis_prefers_important_chunks() -> None:
    chunks = [
        SummaryChunk(0, "a", "minor detail", 0.2, ["logistics"], []),
        SummaryChunk(1, "b", "key finding", 0.9, ["logistics", "costs"], []),
    ]
    result = fallback_synthesis(chunks)
    assert result["summary"] == "key finding minor detail"
    assert result["key_points"] == ["logistics", "costs"]
    assert result["topics"] == ["logistics", "costs"]
    assert result["confidence"] == 0.6


@pytest.mark.parametrize(
    "bad_request",
    [
        make_request(content="too short"),
        make_request(content="   "),
        make_request(document_id=""),
        make_request(summary_type="haiku"),
    ],
)
async def test_invalid_requests_are_rejected(bad_request: SummarizationRequest) -> None:
    summarizer = build_summarizer(FakeGateway())
    with pytest.raises(SummarizationValidationError):
        await summarizer.summarize_document(bad_request)


async def test_summarize_document_maps_then_reduces() -> None:
    gateway = FakeGateway(routed(chunk=CHUNK_REPLY, summary=FINAL_REPLY))
    summarizer = build_summarizer(gateway)

    summary = await summarizer.summarize_document(make_request())

    chunk_calls = gateway.calls_with("You analyze one chunk")
    assert len(chunk_calls) == len(summary.chunks) > 1
    assert len(gateway.calls_with("You write a document summary")) == 1
    assert summary.summary == FINAL_REPLY["summary"]
    assert summary.key_points == FINAL_REPLY["key_points"]
    assert summary.confidence == 0.9
    assert summary.compression_ratio == pytest.approx(len(summary.summary) / len(LONG_TEXT))
    assert [chunk.chunk_index for chunk in summary.chunks] == list(range(len(summary.chunks)))
    assert "High-importance chunks" in gateway.calls_with("You write a document summary")[0]


async def test_failed_gateway_still_produces_summary() -> None:
    summarizer = build_summarizer(FakeGateway(fail=True))

    summary = await summarizer.summarize_document(make_request())

    assert summary.confidence == 0.6
    assert all(chunk.importance == 0.5 for chunk in summary.chunks)
    assert all(chunk.topics == ["general"] for chunk in summary.chunks)
    assert summary.chunks[0].summary == summary.chunks[0].content[:200]
    assert summary.topics == ["general"]


async def test_max_length_truncates_summary() -> None:
    gateway = FakeGateway(routed(chunk=CHUNK_REPLY, summary=FINAL_REPLY))
    summarizer = build_summarizer(gateway)

    summary = await summarizer.summarize_document(make_request(max_length=20))

    assert summary.summary == "Operations improved"


async def test_identical_content_is_served_from_cache() -> None:
    gateway = FakeGateway(routed(chunk=CHUNK_REPLY, summary=FINAL_REPLY))
    summarizer = build_summarizer(gateway, cache=IntelligentCacheManager())

    first = await summarizer.summarize_document(make_request())
    calls = len(gateway.calls)
    second = await summarizer.summarize_document(make_request())

    assert second is first
    assert len(gateway.calls) == calls


async def test_batch_continues_after_a_failed_request() -> None:
    gateway = FakeGateway(routed(chunk=CHUNK_REPLY, summary=FINAL_REPLY))
    summarizer = build_summarizer(gateway, batch_size=2)
    requests = [
        make_request("alpha"),
        make_request("broken", content="tiny"),
        make_request("gamma", content=LONG_TEXT + " Appendix."),
    ]

    summaries = await summarizer.batch_summarize(requests)

    assert [item.document_id for item in summaries] == ["alpha", "gamma"]


async def test_search_and_filter_summaries() -> None:
    gateway = FakeGateway(routed(chunk=CHUNK_REPLY, summary=FINAL_REPLY))
    summarizer = build_summarizer(gateway)
    await summarizer.summarize_document(make_request("ops"))

    ranked = summarizer.search_summaries("inventory")
    assert ranked[0][0].document_id == "ops"
    assert ranked[0][1] == pytest.approx(3 * 0.9)
    assert summarizer.search_summaries("payroll") == []
    assert summarizer.get_summaries(min_confidence=0.95) == []
    assert len(summarizer.get_summaries(topics=["operations"])) == 1

    metrics = summarizer.get_metrics()
    assert metrics.total_summaries == 1
    assert metrics.summaries_by_type == {"detailed": 1}


async def test_summary_lookup_falls_back_to_result_store(tmp_path) -> None:
    result_store = ResultStore(f"sqlite:///{tmp_path / 'summaries.db'}")
    gateway = FakeGateway(routed(chunk=CHUNK_REPLY, summary=FINAL_REPLY))
    await build_summarizer(gateway, result_store=result_store).summarize_document(make_request())

    restored = build_summarizer(FakeGateway(), result_store=result_store)
    summary = restored.get_summary_by_document("ops")

    assert summary is not None
    assert summary.summary == FINAL_REPLY["summary"]
    assert restored.get_summary_by_document("unknown") is None
