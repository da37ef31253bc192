from __future__ import annotations

"""FastAPI application entrypoint for the adaptive document Q&A service."""

import asyncio
import json
import logging
import uuid
from contextlib import asynccontextmanager
from dataclasses import asdict
from pathlib import Path

from fastapi import Depends, FastAPI, File, Form, HTTPException, Request, UploadFile
from fastapi.responses import StreamingResponse

from src.app.dependencies import get_service
from src.app.metrics import metrics_middleware, metrics_response
from src.app.schemas import (
    AnalysisPayload,
    BatchSummaryRequest,
    CacheClearRequest,
    CacheInvalidateRequest,
    CacheInvalidateResponse,
    ChatRequest,
    ChatResponse,
    ClusteringRunRequest,
    DeleteDocumentResponse,
    FeedbackRequest,
    FeedbackResponse,
    IngestRequest,
    IngestResponse,
    QualityMetricsResponse,
    RecommendationRequest,
    SearchMetricsPayload,
    SourceChunk,
    StopStreamResponse,
    SummaryRequest,
)
from src.app.settings import settings
from src.loaders.pdf import PDFLoaderError, load_pdf_bytes
from src.rag.analyzer import QueryValidationError
from src.rag.clustering import ClusteringError, DocumentClusteringEngine, DocumentNotFoundError
from src.rag.pipeline import QAResponse, QAService
from src.rag.summarizer import DocumentSummarizer, SummarizationValidationError
from src.rag.types import (
    ClusteredDocument,
    Document,
    DocumentSummary,
    SearchResult,
    SummarizationRequest,
)

logger = logging.getLogger(__name__)


def _configure_logging() -> None:
    """Configure root logging using environment settings."""
    level_name = settings.log_level.strip().upper()
    level = getattr(logging, level_name, logging.INFO)
    root_logger = logging.getLogger()
    if not root_logger.handlers:
        logging.basicConfig(
            level=level,
            format="%(asctime)s %(levelname)s %(name)s %(message)s",
        )
    logger.setLevel(level)


_configure_logging()


@asynccontextmanager
async def lifespan(app: FastAPI):
    service = get_service()
    await service.start()
    try:
        yield
    finally:
        await service.shutdown()


app = FastAPI(title="Adaptive Document Q&A", version="0.1.0", lifespan=lifespan)


async def _read_upload_bytes(upload: UploadFile, max_bytes: int | None) -> bytes:
    """Stream upload bytes with a hard size limit."""
    if not max_bytes or max_bytes <= 0:
        return await upload.read()
    buffer = bytearray()
    while True:
        chunk = await upload.read(65536)
        if not chunk:
            break
        buffer.extend(chunk)
        if len(buffer) > max_bytes:
            raise HTTPException(
                status_code=400,
                detail=f"File exceeds maximum size of {max_bytes} bytes",
            )
    return bytes(buffer)


async def _load_pdf_upload(upload: UploadFile, idx: int) -> Document:
    filename = upload.filename or f"upload-{idx}.pdf"
    if Path(filename).suffix.lower() != ".pdf":
        raise HTTPException(status_code=400, detail=f"Unsupported file type: {filename}")
    data = await _read_upload_bytes(upload, settings.file_max_bytes)
    doc_id = f"{Path(filename).stem}-{uuid.uuid4().hex[:8]}"
    try:
        return await asyncio.to_thread(load_pdf_bytes, data, doc_id, filename)
    except PDFLoaderError as exc:
        logger.warning("pdf_load_failed", extra={"filename": filename, "error": str(exc)})
        raise HTTPException(status_code=400, detail=str(exc)) from exc


def _clustering(service: QAService) -> DocumentClusteringEngine:
    if service.clustering is None:
        raise HTTPException(status_code=503, detail="Clustering is not configured")
    return service.clustering


def _summarizer(service: QAService) -> DocumentSummarizer:
    if service.summarizer is None:
        raise HTTPException(status_code=503, detail="Summarization is not configured")
    return service.summarizer


def _source(result: SearchResult) -> SourceChunk:
    chunk_index = result.metadata.get("chunk_index")
    return SourceChunk(
        filename=result.filename,
        chunk_index=int(chunk_index) if chunk_index is not None else None,
        content=result.content,
        relevance_score=result.relevance_score,
        search_method=result.search_method,
        semantic_score=result.semantic_score,
        keyword_score=result.keyword_score,
    )


def _chat_response(result: QAResponse) -> ChatResponse:
    return ChatResponse(
        answer=result.answer,
        sources=[_source(item) for item in result.sources],
        cache_hit=result.cache_hit,
        response_time=result.response_time,
        analysis=AnalysisPayload(**asdict(result.analysis)) if result.analysis else None,
        search_metrics=(
            SearchMetricsPayload(**asdict(result.search_metrics)) if result.search_metrics else None
        ),
        evaluation_id=result.evaluation.evaluation_id if result.evaluation else None,
        quality=result.evaluation.score.overall if result.evaluation else None,
        followups=result.followups,
        optimized_query=result.optimized_query,
        refusal_reason=result.refusal_reason,
    )


def _clustered(doc: ClusteredDocument) -> dict[str, object]:
    payload = asdict(doc)
    payload.pop("embedding")
    return payload


def _summary_payload(summary: DocumentSummary) -> dict[str, object]:
    payload = asdict(summary)
    for chunk in payload["chunks"]:
        chunk.pop("content")
    return payload


def _summarization_request(request: SummaryRequest) -> SummarizationRequest:
    return SummarizationRequest(
        document_id=request.document_id,
        filename=request.filename,
        content=request.content,
        summary_type=request.summary_type,
        max_length=request.max_length,
        focus_areas=request.focus_areas,
    )


@app.middleware("http")
async def add_request_id(request: Request, call_next):
    """Attach or create a request ID for traceability."""
    request_id = request.headers.get("x-request-id") or str(uuid.uuid4())
    request.state.request_id = request_id
    response = await call_next(request)
    response.headers["X-Request-ID"] = request_id
    return response


@app.middleware("http")
async def record_metrics(request: Request, call_next):
    """Capture request metrics before returning the response."""
    return await metrics_middleware(request, call_next)


@app.get("/metrics")
async def metrics():
    """Expose Prometheus-style metrics."""
    return metrics_response()


@app.get("/health")
async def health() -> dict[str, str]:
    """Simple health probe for uptime checks."""
    return {"status": "ok"}


@app.post("/ingest", response_model=IngestResponse)
async def ingest(
    request: IngestRequest, service: QAService = Depends(get_service)
) -> IngestResponse:
    """Ingest raw text documents."""
    if not request.documents:
        raise HTTPException(status_code=400, detail="No documents provided")
    documents = []
    for idx, item in enumerate(request.documents, start=1):
        doc_id = item.doc_id or f"doc-{uuid.uuid4().hex[:8]}-{idx}"
        metadata = dict(item.metadata)
        metadata["filename"] = item.filename or metadata.get("filename") or doc_id
        documents.append(Document(doc_id=doc_id, content=item.content, metadata=metadata))
    result = await service.ingest(documents)
    if not result.chunks:
        raise HTTPException(status_code=400, detail="No valid document content provided")
    return IngestResponse(
        ingested=result.documents, chunks=result.chunks, document_ids=result.document_ids
    )


@app.post("/ingest/files", response_model=IngestResponse)
async def ingest_files(
    files: list[UploadFile] = File(...),
    service: QAService = Depends(get_service),
) -> IngestResponse:
    """Ingest uploaded PDF files."""
    if not files:
        raise HTTPException(status_code=400, detail="No files provided")
    documents = [await _load_pdf_upload(upload, idx) for idx, upload in enumerate(files, start=1)]
    result = await service.ingest(documents)
    if not result.chunks:
        raise HTTPException(status_code=400, detail="No valid file content provided")
    return IngestResponse(
        ingested=result.documents, chunks=result.chunks, document_ids=result.document_ids
    )


@app.delete("/documents/{document_id}", response_model=DeleteDocumentResponse)
async def delete_document(
    document_id: str, service: QAService = Depends(get_service)
) -> DeleteDocumentResponse:
    deleted = await service.delete_document(document_id)
    if not deleted:
        raise HTTPException(status_code=404, detail="Document not found")
    return DeleteDocumentResponse(deleted=deleted)


@app.post("/chat", response_model=ChatResponse)
async def chat(request: ChatRequest, service: QAService = Depends(get_service)) -> ChatResponse:
    """Answer a question from the ingested documents."""
    try:
        result = await service.ask(
            request.question,
            session_id=request.session_id,
            user_expertise_level=request.user_expertise_level,
        )
    except QueryValidationError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    return _chat_response(result)


@app.post("/chat/stream")
async def chat_stream(
    request: ChatRequest, service: QAService = Depends(get_service)
) -> StreamingResponse:
    """Stream answer events as newline-delimited JSON."""
    if not request.question.strip():
        raise HTTPException(status_code=400, detail="Question must not be empty")
    stream_id = request.stream_id or uuid.uuid4().hex

    async def _events():
        cancel_event = service.open_stream(stream_id)
        try:
            yield json.dumps({"type": "stream", "data": {"stream_id": stream_id}}) + "\n"
            async for event in service.ask_stream(
                request.question,
                session_id=request.session_id,
                user_expertise_level=request.user_expertise_level,
                cancel_event=cancel_event,
            ):
                yield json.dumps(event, default=str) + "\n"
        finally:
            service.close_stream(stream_id)

    return StreamingResponse(
        _events(),
        media_type="application/x-ndjson",
        headers={"X-Stream-ID": stream_id},
    )


@app.post("/chat/stop/{stream_id}", response_model=StopStreamResponse)
async def stop_stream(
    stream_id: str, service: QAService = Depends(get_service)
) -> StopStreamResponse:
    if not service.stop_stream(stream_id):
        raise HTTPException(status_code=404, detail="Stream not found")
    return StopStreamResponse(stream_id=stream_id, stopped=True)


@app.post("/feedback", response_model=FeedbackResponse)
async def feedback(
    request: FeedbackRequest, service: QAService = Depends(get_service)
) -> FeedbackResponse:
    recorded = await asyncio.to_thread(
        service.evaluator.add_user_feedback,
        request.evaluation_id,
        request.rating,
        request.feedback,
    )
    if not recorded:
        raise HTTPException(status_code=404, detail="Evaluation not found")
    return FeedbackResponse(evaluation_id=request.evaluation_id, recorded=True)


@app.get("/quality/metrics", response_model=QualityMetricsResponse)
async def quality_metrics(service: QAService = Depends(get_service)) -> QualityMetricsResponse:
    evaluator = service.evaluator
    metrics = evaluator.get_quality_metrics()
    return QualityMetricsResponse(
        **asdict(metrics),
        analytics=evaluator.get_quality_performance_analytics(),
        insights=evaluator.get_quality_insights(),
    )


@app.get("/quality/evaluations")
async def quality_evaluations(
    limit: int = 20, service: QAService = Depends(get_service)
) -> list[dict[str, object]]:
    limit = max(1, min(limit, 100))
    return [asdict(item) for item in service.evaluator.get_recent_evaluations(limit)]


@app.post("/clustering/run")
async def run_clustering(
    request: ClusteringRunRequest | None = None,
    service: QAService = Depends(get_service),
) -> dict[str, object]:
    engine = _clustering(service)
    try:
        metrics = await engine.perform_document_clustering(
            force=request.force if request else False
        )
    except ClusteringError as exc:
        raise HTTPException(status_code=500, detail=str(exc)) from exc
    return asdict(metrics)


@app.get("/clustering/clusters")
async def list_clusters(service: QAService = Depends(get_service)) -> dict[str, object]:
    engine = _clustering(service)
    clusters = []
    for cluster in engine.get_all_clusters():
        payload = asdict(cluster)
        payload.pop("centroid")
        clusters.append(payload)
    return {"clusters": clusters, "metrics": asdict(engine.metrics())}


@app.get("/clustering/clusters/{cluster_id}")
async def cluster_documents(
    cluster_id: str, service: QAService = Depends(get_service)
) -> dict[str, object]:
    engine = _clustering(service)
    cluster = engine.get_cluster_info(cluster_id)
    if cluster is None:
        raise HTTPException(status_code=404, detail="Cluster not found")
    payload = asdict(cluster)
    payload.pop("centroid")
    payload["documents"] = [_clustered(doc) for doc in engine.get_documents_in_cluster(cluster_id)]
    return payload


@app.get("/clustering/similar/{chunk_id}")
async def similar_documents(
    chunk_id: str,
    limit: int = 5,
    threshold: float = 0.7,
    service: QAService = Depends(get_service),
) -> list[dict[str, object]]:
    engine = _clustering(service)
    try:
        results = engine.find_similar_documents(
            chunk_id,
            limit=max(1, min(limit, 20)),
            threshold=max(0.5, min(threshold, 1.0)),
        )
    except DocumentNotFoundError as exc:
        raise HTTPException(status_code=404, detail=str(exc)) from exc
    return [asdict(item) for item in results]


@app.post("/clustering/recommendations")
async def recommendations(
    request: RecommendationRequest, service: QAService = Depends(get_service)
) -> dict[str, object]:
    engine = _clustering(service)
    result = await engine.get_document_recommendations(request.query, limit=request.limit)
    return {
        "by_content": [_clustered(doc) for doc in result.by_content],
        "by_topic": [_clustered(doc) for doc in result.by_topic],
        "by_cluster": [_clustered(doc) for doc in result.by_cluster],
        "explanation": result.explanation,
    }


@app.post("/summaries")
async def create_summary(
    request: SummaryRequest, service: QAService = Depends(get_service)
) -> dict[str, object]:
    summarizer = _summarizer(service)
    try:
        summary = await summarizer.summarize_document(_summarization_request(request))
    except SummarizationValidationError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    return _summary_payload(summary)


@app.post("/summaries/files")
async def summarize_file(
    file: UploadFile = File(...),
    summary_type: str = Form("detailed"),
    service: QAService = Depends(get_service),
) -> dict[str, object]:
    """Summarize an uploaded PDF."""
    summarizer = _summarizer(service)
    document = await _load_pdf_upload(file, 1)
    request = SummarizationRequest(
        document_id=document.doc_id,
        filename=str(document.metadata.get("filename") or document.doc_id),
        content=document.content,
        summary_type=summary_type,
    )
    try:
        summary = await summarizer.summarize_document(request)
    except SummarizationValidationError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    return _summary_payload(summary)


@app.post("/summaries/batch")
async def batch_summaries(
    request: BatchSummaryRequest, service: QAService = Depends(get_service)
) -> dict[str, object]:
    summarizer = _summarizer(service)
    summaries = await summarizer.batch_summarize(
        [_summarization_request(item) for item in request.requests]
    )
    return {
        "requested": len(request.requests),
        "succeeded": len(summaries),
        "summaries": [_summary_payload(item) for item in summaries],
    }


@app.get("/summaries")
async def list_summaries(
    q: str | None = None,
    min_confidence: float | None = None,
    limit: int = 20,
    service: QAService = Depends(get_service),
) -> dict[str, object]:
    summarizer = _summarizer(service)
    limit = max(1, min(limit, 100))
    if q:
        ranked = summarizer.search_summaries(q, limit=limit)
        return {
            "summaries": [_summary_payload(item) for item, _ in ranked],
            "relevance_scores": [score for _, score in ranked],
        }
    summaries = summarizer.get_summaries(min_confidence=min_confidence, limit=limit)
    return {
        "summaries": [_summary_payload(item) for item in summaries],
        "metrics": asdict(summarizer.get_metrics()),
    }


@app.get("/summaries/{document_id}")
async def get_summary(
    document_id: str, service: QAService = Depends(get_service)
) -> dict[str, object]:
    summarizer = _summarizer(service)
    summary = await asyncio.to_thread(summarizer.get_summary_by_document, document_id)
    if summary is None:
        raise HTTPException(status_code=404, detail="Summary not found")
    return _summary_payload(summary)


@app.get("/cache/stats")
async def cache_stats(service: QAService = Depends(get_service)) -> dict[str, object]:
    return {
        "stats": asdict(service.cache.get_stats()),
        "efficiency": service.cache.get_cache_efficiency(),
    }


@app.post("/cache/invalidate", response_model=CacheInvalidateResponse)
async def cache_invalidate(
    request: CacheInvalidateRequest, service: QAService = Depends(get_service)
) -> CacheInvalidateResponse:
    return CacheInvalidateResponse(invalidated=service.cache.invalidate_by_tags(request.tags))


@app.post("/cache/clear")
async def cache_clear(
    request: CacheClearRequest | None = None, service: QAService = Depends(get_service)
) -> dict[str, str]:
    kind = request.kind if request else None
    service.cache.clear_cache(kind)
    return {"cleared": kind or "all"}
