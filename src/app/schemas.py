from __future__ import annotations

from typing import Any, Literal

from pydantic import BaseModel, Field


class IngestDocument(BaseModel):
    doc_id: str | None = None
    filename: str | None = None
    content: str = Field(min_length=1)
    metadata: dict[str, Any] = Field(default_factory=dict)


class IngestRequest(BaseModel):
    documents: list[IngestDocument]


class IngestResponse(BaseModel):
    ingested: int
    chunks: int
    document_ids: list[str]


class DeleteDocumentResponse(BaseModel):
    deleted: int


class ChatRequest(BaseModel):
    question: str = Field(min_length=1)
    session_id: str = "default"
    user_expertise_level: Literal["beginner", "intermediate", "expert"] | None = None
    stream_id: str | None = None


class SourceChunk(BaseModel):
    filename: str
    chunk_index: int | None = None
    content: str
    relevance_score: float
    search_method: str
    semantic_score: float | None = None
    keyword_score: float | None = None


class AnalysisPayload(BaseModel):
    category: str
    complexity: str
    confidence: float
    keywords: list[str]
    requires_multiple_docs: bool
    intent: str
    domain: str
    estimated_response_time: float


class SearchMetricsPayload(BaseModel):
    total_results: int
    search_time: float
    strategy: str
    semantic_weight: float
    keyword_weight: float
    query_optimization: bool


class ChatResponse(BaseModel):
    answer: str
    sources: list[SourceChunk]
    cache_hit: bool
    response_time: float
    analysis: AnalysisPayload | None = None
    search_metrics: SearchMetricsPayload | None = None
    evaluation_id: str | None = None
    quality: float | None = None
    followups: list[str] = Field(default_factory=list)
    optimized_query: str | None = None
    refusal_reason: str | None = None


class StopStreamResponse(BaseModel):
    stream_id: str
    stopped: bool


class FeedbackRequest(BaseModel):
    evaluation_id: str = Field(min_length=1)
    rating: int = Field(ge=1, le=5)
    feedback: str = ""


class FeedbackResponse(BaseModel):
    evaluation_id: str
    recorded: bool


class QualityMetricsResponse(BaseModel):
    average_quality: float
    total_evaluations: int
    quality_trend: Literal["improving", "stable", "declining"]
    top_performing_categories: list[str]
    improvement_areas: list[str]
    response_time_impact: float
    analytics: dict[str, Any] = Field(default_factory=dict)
    insights: dict[str, Any] = Field(default_factory=dict)


class ClusteringRunRequest(BaseModel):
    force: bool = False


class RecommendationRequest(BaseModel):
    query: str = Field(min_length=1)
    limit: int = Field(default=3, ge=1, le=10)


class SummaryRequest(BaseModel):
    document_id: str = Field(min_length=1)
    filename: str = Field(min_length=1)
    content: str
    summary_type: Literal["brief", "detailed", "key_points"] = "detailed"
    max_length: int | None = Field(default=None, ge=50)
    focus_areas: list[str] = Field(default_factory=list)


class BatchSummaryRequest(BaseModel):
    requests: list[SummaryRequest] = Field(min_length=1, max_length=20)


class CacheInvalidateRequest(BaseModel):
    tags: list[str] = Field(min_length=1)


class CacheInvalidateResponse(BaseModel):
    invalidated: int


class CacheClearRequest(BaseModel):
    kind: Literal["query", "embedding", "artifact"] | None = None
