from __future__ import annotations

"""Core data types for documents, retrieval, clustering, quality and summaries."""

from dataclasses import dataclass, field
from typing import Any, Generic, TypeVar

T = TypeVar("T")

QUERY_CATEGORIES = ("factual", "analytical", "comparative", "procedural", "conceptual")
QUERY_COMPLEXITIES = ("simple", "moderate", "complex")
SEARCH_STRATEGIES = ("semantic", "keyword", "hybrid", "multi_step")
CACHE_PRIORITIES = ("low", "medium", "high")
EXPERTISE_LEVELS = ("beginner", "intermediate", "expert")


@dataclass(frozen=True)
class Document:
    """Raw document submitted for ingestion."""
    doc_id: str
    content: str
    metadata: dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class DocumentChunk:
    """Chunk of a document with its embedding."""
    chunk_id: str
    document_id: str
    chunk_index: int
    content: str
    embedding: list[float]
    metadata: dict[str, Any] = field(default_factory=dict)

    @property
    def filename(self) -> str:
        return str(self.metadata.get("filename", ""))


@dataclass(frozen=True)
class QueryAnalysis:
    """Classification and intent of a user question."""
    category: str
    complexity: str
    confidence: float
    keywords: list[str]
    requires_multiple_docs: bool
    suggested_followups: list[str]
    intent: str
    domain: str
    estimated_response_time: float


@dataclass(frozen=True)
class QueryContext:
    """Conversation context available when analyzing a question."""
    previous_questions: list[str] = field(default_factory=list)
    session_id: str = "default"
    user_expertise_level: str | None = None
    available_documents: list[str] = field(default_factory=list)
    relevant_documents: list[str] = field(default_factory=list)


@dataclass(frozen=True)
class EnhancedQuery:
    """Analysis plus the query rewritten for retrieval."""
    original_query: str
    analysis: QueryAnalysis
    optimized_query: str
    search_strategy: str
    analysis_time: float
    confidence_threshold: float = 0.7
    enhancement_applied: bool = False


@dataclass(frozen=True)
class SearchResult:
    """Retrieved chunk with the blended score that ranked it."""
    content: str
    metadata: dict[str, Any]
    relevance_score: float
    search_method: str
    semantic_score: float | None = None
    keyword_score: float | None = None

    @property
    def chunk_id(self) -> str:
        return str(self.metadata.get("chunk_id", ""))

    @property
    def filename(self) -> str:
        return str(self.metadata.get("filename", ""))


@dataclass(frozen=True)
class SearchMetrics:
    """Diagnostics reported for a retrieval call."""
    total_results: int
    search_time: float
    strategy: str
    semantic_weight: float
    keyword_weight: float
    query_optimization: bool


@dataclass(frozen=True)
class RetrievalResult:
    """Ranked results together with the metrics that produced them."""
    results: list[SearchResult]
    metrics: SearchMetrics


@dataclass(frozen=True)
class TopicExtraction:
    """Topics, keywords and summary extracted from a text."""
    topics: list[str]
    keywords: list[str]
    summary: str
    confidence: float


@dataclass(frozen=True)
class ClusteredDocument:
    """Chunk assigned to a cluster."""
    chunk_id: str
    document_id: str
    filename: str
    content: str
    embedding: list[float]
    cluster_id: str
    similarity_to_centroid: float
    topics: list[str]
    keywords: list[str]
    summary: str


@dataclass(frozen=True)
class DocumentCluster:
    """Group of chunks sharing a centroid."""
    cluster_id: str
    centroid: list[float]
    document_ids: list[str]
    topics: list[str]
    name: str
    description: str
    coherence_score: float
    size: int
    created_at: float
    last_updated: float


@dataclass(frozen=True)
class SimilarityResult:
    """Document similar to a reference chunk."""
    chunk_id: str
    document_id: str
    filename: str
    similarity: float
    cluster_id: str
    reason: str


@dataclass(frozen=True)
class ClusteringMetrics:
    """Aggregate statistics from the last clustering run."""
    total_clusters: int = 0
    total_documents: int = 0
    avg_cluster_size: float = 0.0
    silhouette_score: float = 0.0
    intra_cluster_distance: float = 0.0
    inter_cluster_distance: float = 0.0
    topic_coverage: float = 0.0


@dataclass(frozen=True)
class SimilarityMatrix:
    """Pairwise cosine similarities between clustered chunks."""
    chunk_ids: list[str]
    matrix: list[list[float]]


@dataclass(frozen=True)
class DocumentRecommendations:
    """Recommendation lists for a query."""
    by_content: list[ClusteredDocument]
    by_topic: list[ClusteredDocument]
    by_cluster: list[ClusteredDocument]
    explanation: str


@dataclass(frozen=True)
class QualityScore:
    """Rubric scores for a generated answer."""
    overall: float
    relevance: float
    accuracy: float
    completeness: float
    clarity: float
    coherence: float
    source_utilization: float
    confidence: float
    reasoning: str = ""


@dataclass(frozen=True)
class QualityFeedback:
    """User feedback attached to an evaluation."""
    rating: int
    feedback: str
    improvements: list[str]
    timestamp: float


@dataclass
class ResponseEvaluation:
    """Stored evaluation of one answer."""
    evaluation_id: str
    question: str
    answer: str
    sources: list[str]
    score: QualityScore
    category: str
    complexity: str
    response_time: float
    cache_hit: bool
    timestamp: float
    user_feedback: QualityFeedback | None = None


@dataclass(frozen=True)
class EvaluationOutcome:
    """Evaluation plus the cache decision derived from it."""
    evaluation: ResponseEvaluation
    should_cache: bool


@dataclass(frozen=True)
class QualityMetrics:
    """Aggregate quality statistics."""
    average_quality: float
    total_evaluations: int
    quality_trend: str
    top_performing_categories: list[str]
    improvement_areas: list[str]
    response_time_impact: float


@dataclass
class CacheEntry(Generic[T]):
    """Cached payload with TTL, access tracking, tags and priority."""
    key: str
    data: T
    timestamp: float
    ttl: float
    access_count: int
    last_accessed: float
    tags: list[str]
    priority: str = "medium"

    def is_expired(self, now: float) -> bool:
        return now - self.timestamp > self.ttl


@dataclass(frozen=True)
class QueryCacheEntry:
    """Cached answer for a normalized query."""
    query: str
    query_hash: str
    analysis: QueryAnalysis | None
    search_results: list[SearchResult]
    response: str
    sources: list[str]
    response_time: float
    quality: float


@dataclass(frozen=True)
class EmbeddingCacheEntry:
    """Cached embedding for a text and model."""
    text: str
    embedding: list[float]
    model: str


@dataclass(frozen=True)
class CacheStats:
    """Counters describing cache health."""
    total_entries: int
    query_entries: int
    embedding_entries: int
    artifact_entries: int
    hit_rate: float
    miss_rate: float
    total_hits: int
    total_misses: int
    memory_usage: float
    eviction_count: int


@dataclass(frozen=True)
class SummarizationRequest:
    """Document content to summarize."""
    document_id: str
    filename: str
    content: str
    summary_type: str = "detailed"
    max_length: int | None = None
    focus_areas: list[str] = field(default_factory=list)


@dataclass(frozen=True)
class SummaryChunk:
    """Summary of one chunk of a document."""
    chunk_index: int
    content: str
    summary: str
    importance: float
    topics: list[str]
    entities: list[str]


@dataclass(frozen=True)
class DocumentSummary:
    """Hierarchical summary of a document."""
    summary_id: str
    document_id: str
    filename: str
    summary: str
    key_points: list[str]
    topics: list[str]
    word_count: int
    reading_time: int
    summary_type: str
    confidence: float
    created_at: float
    chunks: list[SummaryChunk]
    compression_ratio: float
    processing_time: float


@dataclass(frozen=True)
class SummarizationMetrics:
    """Aggregate statistics over stored summaries."""
    total_summaries: int
    avg_compression_ratio: float
    avg_processing_time: float
    avg_confidence: float
    summaries_by_type: dict[str, int]
