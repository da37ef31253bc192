from __future__ import annotations

import time

from fastapi import Request
from prometheus_client import CONTENT_TYPE_LATEST, Counter, Histogram, generate_latest
from starlette.responses import Response

from src.app.settings import settings

REQUEST_COUNT = Counter(
    "http_requests_total",
    "Total HTTP requests",
    ["method", "path", "status"],
)
REQUEST_LATENCY = Histogram(
    "http_request_duration_seconds",
    "HTTP request duration in seconds",
    ["method", "path"],
)
CACHE_LOOKUPS = Counter(
    "rag_cache_lookups_total",
    "Cache lookups by cache kind and result",
    ["cache", "result"],
)
CACHE_EVICTIONS = Counter(
    "rag_cache_evictions_total",
    "Cache entries evicted by reason",
    ["reason"],
)
RETRIEVAL_REQUESTS = Counter(
    "rag_retrieval_requests_total",
    "Retrieval calls by strategy actually used",
    ["strategy"],
)
CLUSTERING_RUNS = Counter(
    "rag_clustering_runs_total",
    "Clustering runs by outcome",
    ["status"],
)
QUALITY_SCORE = Histogram(
    "rag_response_quality",
    "Overall quality score of evaluated answers",
    buckets=(0.1, 0.2, 0.3, 0.4, 0.5, 0.6, 0.7, 0.75, 0.8, 0.9, 1.0),
)


def route_label(request: Request) -> str:
    """Route template such as /documents/{document_id}, so ids do not become labels."""
    route = request.scope.get("route")
    return getattr(route, "path", None) or request.url.path


async def metrics_middleware(request: Request, call_next):
    if not settings.metrics_enabled or request.url.path == "/metrics":
        return await call_next(request)
    started = time.perf_counter()
    status_code = 500
    try:
        response = await call_next(request)
        status_code = response.status_code
        return response
    finally:
        label = route_label(request)
        REQUEST_COUNT.labels(request.method, label, str(status_code)).inc()
        REQUEST_LATENCY.labels(request.method, label).observe(time.perf_counter() - started)


def metrics_response() -> Response:
    if not settings.metrics_enabled:
        return Response(status_code=404)
    return Response(generate_latest(), media_type=CONTENT_TYPE_LATEST)
