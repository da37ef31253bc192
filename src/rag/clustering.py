from __future__ import annotations

"""K-means clustering of chunk embeddings over cosine similarity."""

import asyncio
import logging
import math
import threading
from collections import Counter
from typing import TYPE_CHECKING, Any, Awaitable, Callable, Protocol

import numpy as np

from src.app.metrics import CLUSTERING_RUNS
from src.rag.cache import DAY_MS, HOUR_MS, IntelligentCacheManager, now_ms
from src.rag.embeddings import EmbeddingProvider
from src.rag.llm import LLMError, LLMGateway, parse_json_object
from src.rag.types import (
    ClusteredDocument,
    ClusteringMetrics,
    DocumentChunk,
    DocumentCluster,
    DocumentRecommendations,
    SimilarityMatrix,
    SimilarityResult,
    TopicExtraction,
)

if TYPE_CHECKING:
    from src.metadata.store import ResultStore

logger = logging.getLogger(__name__)

MAX_ITERATIONS = 20
CONVERGENCE_TOLERANCE = 0.001
SHARED_TOPIC_RATIO = 0.3
MAX_SHARED_TOPICS = 5
TOPIC_CONTENT_LIMIT = 3000

_TOPIC_SYSTEM_PROMPT = (
    "Extract the main topics of a document excerpt. "
    "Return JSON only with keys: \"topics\" (array of 3-5 short lowercase topics), "
    "\"keywords\" (array of up to 10 keywords), \"summary\" (one or two sentences), "
    "\"confidence\" (number 0-1)."
)


class ClusteringError(RuntimeError):
    """Raised when a clustering run fails."""
    pass


class DocumentNotFoundError(LookupError):
    """Raised when a chunk id is not part of the clustered set."""
    pass


class ChunkSource(Protocol):
    def all_chunks(self) -> list[DocumentChunk]:
        ...


def choose_cluster_count(document_count: int) -> int:
    """Heuristic number of clusters for a collection size."""
    if document_count < 5:
        return 2
    if document_count < 10:
        return 3
    if document_count < 20:
        return math.ceil(document_count / 4)
    return min(math.ceil(document_count / 5), 10)


def cosine_matrix(a: np.ndarray, b: np.ndarray) -> np.ndarray:
    """Pairwise cosine similarity between the rows of two matrices."""
    norms_a = np.linalg.norm(a, axis=1, keepdims=True)
    norms_b = np.linalg.norm(b, axis=1, keepdims=True)
    denom = norms_a @ norms_b.T
    dots = a @ b.T
    with np.errstate(divide="ignore", invalid="ignore"):
        sims = np.where(denom > 0, dots / np.where(denom > 0, denom, 1.0), 0.0)
    return sims


def seed_centroids(vectors: np.ndarray, k: int, rng: np.random.Generator) -> np.ndarray:
    """Farthest-point seeding with ``1 - cosine`` as the distance."""
    count = vectors.shape[0]
    chosen = [int(rng.integers(count))]
    while len(chosen) < k:
        distances = 1.0 - cosine_matrix(vectors, vectors[chosen])
        nearest = distances.min(axis=1)
        nearest[chosen] = -np.inf
        candidate = int(np.argmax(nearest))
        if candidate in chosen:
            candidate = int(rng.integers(count))
        chosen.append(candidate)
    return vectors[chosen].copy()


def kmeans_cosine(
    vectors: np.ndarray,
    k: int,
    rng: np.random.Generator,
    max_iterations: int = MAX_ITERATIONS,
    tolerance: float = CONVERGENCE_TOLERANCE,
) -> tuple[np.ndarray, np.ndarray, int]:
    """Return (centroids, assignments, iterations) for cosine k-means."""
    centroids = seed_centroids(vectors, k, rng)
    iterations = 0
    for iterations in range(1, max_iterations + 1):
        assignments = cosine_matrix(vectors, centroids).argmax(axis=1)
        updated = centroids.copy()
        for index in range(k):
            members = vectors[assignments == index]
            if len(members):
                updated[index] = members.mean(axis=0)
        shift = 1.0 - np.diag(cosine_matrix(centroids, updated))
        centroids = updated
        if np.all(shift < tolerance):
            break
    assignments = cosine_matrix(vectors, centroids).argmax(axis=1)
    return centroids, assignments, iterations


def _fallback_topics(content: str) -> TopicExtraction:
    return TopicExtraction(
        topics=["general"],
        keywords=[],
        summary=content[:200],
        confidence=0.3,
    )


def _validate_topics(data: dict[str, Any], content: str) -> TopicExtraction:
    topics = [str(topic).strip().lower() for topic in data.get("topics") or [] if str(topic).strip()]
    keywords = [str(word).strip() for word in data.get("keywords") or [] if str(word).strip()]
    summary = data.get("summary")
    try:
        confidence = float(data.get("confidence", 0.7))
    except (TypeError, ValueError):
        confidence = 0.7
    if math.isnan(confidence):
        confidence = 0.7
    return TopicExtraction(
        topics=topics or ["general"],
        keywords=keywords,
        summary=summary.strip() if isinstance(summary, str) and summary.strip() else content[:200],
        confidence=max(0.0, min(1.0, confidence)),
    )


class DocumentClusteringEngine:
    """Owns the cluster and clustered-document maps and the clustering schedule."""

    def __init__(
        self,
        store: ChunkSource,
        gateway: LLMGateway,
        embedder: EmbeddingProvider,
        cache: IntelligentCacheManager | None = None,
        result_store: ResultStore | None = None,
        seed: int | None = None,
        skip_window: float = 6 * HOUR_MS,
        topic_batch_size: int = 5,
        topic_batch_delay: float = 1.0,
        clock: Callable[[], float] = now_ms,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ) -> None:
        self.store = store
        self.gateway = gateway
        self.embedder = embedder
        self.cache = cache
        self.result_store = result_store
        self.seed = seed
        self.skip_window = skip_window
        self.topic_batch_size = max(1, topic_batch_size)
        self.topic_batch_delay = topic_batch_delay
        self._clock = clock
        self._sleep = sleep
        self._run_lock = asyncio.Lock()
        self._state_lock = threading.Lock()
        self._clusters: dict[str, DocumentCluster] = {}
        self._documents: dict[str, ClusteredDocument] = {}
        self._topics: dict[str, TopicExtraction] = {}
        self._metrics = ClusteringMetrics()
        self._last_run: float | None = None

    @property
    def last_run(self) -> float | None:
        return self._last_run

    async def perform_document_clustering(self, force: bool = False) -> ClusteringMetrics:
        """Recompute clusters unless a recent run makes it unnecessary."""
        async with self._run_lock:
            now = self._clock()
            if not force and self._last_run is not None and now - self._last_run < self.skip_window:
                logger.info("clustering_skipped", extra={"reason": "recent_run"})
                CLUSTERING_RUNS.labels("skipped").inc()
                return self._metrics
            try:
                chunks = await asyncio.to_thread(self.store.all_chunks)
                chunks = [chunk for chunk in chunks if chunk.embedding]
                if len(chunks) < 2:
                    logger.info("clustering_skipped", extra={"reason": "too_few_documents"})
                    CLUSTERING_RUNS.labels("skipped").inc()
                    return ClusteringMetrics()
                topics = await self._ensure_topics(chunks)
                clusters, documents, iterations = self._cluster(chunks, topics)
            except Exception as exc:
                CLUSTERING_RUNS.labels("failed").inc()
                logger.exception("clustering_failed")
                raise ClusteringError(str(exc)) from exc

            metrics = self._compute_metrics(clusters, documents)
            with self._state_lock:
                self._clusters = clusters
                self._documents = documents
                self._metrics = metrics
            self._last_run = self._clock()
            CLUSTERING_RUNS.labels("completed").inc()
            logger.info(
                "clustering_complete",
                extra={
                    "clusters": metrics.total_clusters,
                    "documents": metrics.total_documents,
                    "iterations": iterations,
                },
            )
            self._persist(list(clusters.values()))
            return metrics

    async def _ensure_topics(self, chunks: list[DocumentChunk]) -> dict[str, TopicExtraction]:
        resolved: dict[str, TopicExtraction] = {}
        pending: list[DocumentChunk] = []
        for chunk in chunks:
            cached = self._cached_topics(chunk.chunk_id)
            if cached is not None:
                resolved[chunk.chunk_id] = cached
            else:
                pending.append(chunk)
        for start in range(0, len(pending), self.topic_batch_size):
            batch = pending[start : start + self.topic_batch_size]
            extractions = await asyncio.gather(
                *(self.extract_topics_from_text(chunk.content) for chunk in batch)
            )
            for chunk, extraction in zip(batch, extractions):
                resolved[chunk.chunk_id] = extraction
                self._store_topics(chunk.chunk_id, extraction)
            if start + self.topic_batch_size < len(pending):
                await self._sleep(self.topic_batch_delay)
        return resolved

    def _cached_topics(self, chunk_id: str) -> TopicExtraction | None:
        if self.cache is not None:
            return self.cache.get_cached_artifact(f"topics:{chunk_id}")
        return self._topics.get(chunk_id)

    def _store_topics(self, chunk_id: str, extraction: TopicExtraction) -> None:
        if self.cache is not None:
            self.cache.cache_artifact(
                f"topics:{chunk_id}",
                extraction,
                ttl=7 * DAY_MS,
                tags=["topics"],
            )
        else:
            self._topics[chunk_id] = extraction

    async def extract_topics_from_text(self, content: str) -> TopicExtraction:
        """Ask the gateway for topics; falls back to ``general``."""
        prompt = f"Excerpt:\n{content[:TOPIC_CONTENT_LIMIT]}\n\nRespond with JSON only."
        try:
            raw = await self.gateway.generate(prompt, system=_TOPIC_SYSTEM_PROMPT)
            data = parse_json_object(raw)
        except LLMError as exc:
            logger.warning("topic_extraction_fallback", extra={"error": str(exc)})
            return _fallback_topics(content)
        return _validate_topics(data, content)

    def _cluster(
        self,
        chunks: list[DocumentChunk],
        topics: dict[str, TopicExtraction],
    ) -> tuple[dict[str, DocumentCluster], dict[str, ClusteredDocument], int]:
        vectors = np.asarray([chunk.embedding for chunk in chunks], dtype=float)
        k = choose_cluster_count(len(chunks))
        rng = np.random.default_rng(self.seed)
        centroids, assignments, iterations = kmeans_cosine(vectors, k, rng)
        similarities = cosine_matrix(vectors, centroids)
        now = self._clock()

        clusters: dict[str, DocumentCluster] = {}
        documents: dict[str, ClusteredDocument] = {}
        for index in range(k):
            member_idx = np.flatnonzero(assignments == index)
            if not len(member_idx):
                continue
            cluster_id = f"cluster_{index}"
            members = [chunks[i] for i in member_idx]
            member_sims = [float(similarities[i, index]) for i in member_idx]
            counts: Counter[str] = Counter()
            for chunk in members:
                counts.update(list(dict.fromkeys(topics[chunk.chunk_id].topics)))
            threshold = math.ceil(len(members) * SHARED_TOPIC_RATIO)
            shared = [topic for topic, count in counts.most_common() if count >= threshold]
            shared = shared[:MAX_SHARED_TOPICS]
            clusters[cluster_id] = DocumentCluster(
                cluster_id=cluster_id,
                centroid=centroids[index].tolist(),
                document_ids=[chunk.chunk_id for chunk in members],
                topics=shared,
                name=" & ".join(shared[:2]) if shared else f"Cluster {index + 1}",
                description=_describe(len(members), shared),
                coherence_score=sum(member_sims) / len(member_sims),
                size=len(members),
                created_at=now,
                last_updated=now,
            )
            for chunk, similarity in zip(members, member_sims):
                extraction = topics[chunk.chunk_id]
                documents[chunk.chunk_id] = ClusteredDocument(
                    chunk_id=chunk.chunk_id,
                    document_id=chunk.document_id,
                    filename=chunk.filename,
                    content=chunk.content,
                    embedding=list(chunk.embedding),
                    cluster_id=cluster_id,
                    similarity_to_centroid=similarity,
                    topics=list(extraction.topics),
                    keywords=list(extraction.keywords),
                    summary=extraction.summary,
                )
        return clusters, documents, iterations

    def _compute_metrics(
        self,
        clusters: dict[str, DocumentCluster],
        documents: dict[str, ClusteredDocument],
    ) -> ClusteringMetrics:
        if not clusters:
            return ClusteringMetrics()
        avg_coherence = sum(c.coherence_score for c in clusters.values()) / len(clusters)
        unique_topics = {topic for doc in documents.values() for topic in doc.topics}
        return ClusteringMetrics(
            total_clusters=len(clusters),
            total_documents=len(documents),
            avg_cluster_size=len(documents) / len(clusters),
            silhouette_score=avg_coherence,
            intra_cluster_distance=1 - avg_coherence,
            inter_cluster_distance=avg_coherence * 0.7,
            topic_coverage=min(len(unique_topics) / 10, 1.0),
        )

    def _persist(self, clusters: list[DocumentCluster]) -> None:
        if self.result_store is None:
            return
        from src.metadata.store import ResultStoreError

        try:
            self.result_store.replace_clusters(clusters)
        except ResultStoreError as exc:
            logger.warning("cluster_persist_failed", extra={"error": str(exc)})

    def find_similar_documents(
        self,
        chunk_id: str,
        limit: int = 5,
        threshold: float = 0.7,
    ) -> list[SimilarityResult]:
        """Same-cluster neighbours first, then relaxed cross-cluster ones."""
        with self._state_lock:
            documents = self._documents
        target = documents.get(chunk_id)
        if target is None:
            raise DocumentNotFoundError(f"Document {chunk_id} is not clustered")
        others = [doc for doc in documents.values() if doc.chunk_id != chunk_id]
        if not others:
            return []
        target_vector = np.asarray([target.embedding], dtype=float)
        other_vectors = np.asarray([doc.embedding for doc in others], dtype=float)
        sims = cosine_matrix(target_vector, other_vectors)[0]

        results: list[SimilarityResult] = []
        for doc, similarity in zip(others, sims):
            if doc.cluster_id != target.cluster_id or similarity < threshold:
                continue
            if similarity > 0.9:
                reason = "Very high content similarity"
            elif similarity > 0.8:
                reason = "High content similarity"
            else:
                reason = "Similar topics and content"
            results.append(_similarity(doc, float(similarity), reason))

        if len(results) < limit:
            relaxed = threshold * 0.9
            cross = [
                _similarity(doc, float(similarity), "Cross-cluster similarity")
                for doc, similarity in zip(others, sims)
                if doc.cluster_id != target.cluster_id and similarity >= relaxed
            ]
            cross.sort(key=lambda item: item.similarity, reverse=True)
            results.extend(cross[: limit - len(results)])

        results.sort(key=lambda item: item.similarity, reverse=True)
        return results[:limit]

    async def get_document_recommendations(
        self, query: str, limit: int = 3
    ) -> DocumentRecommendations:
        """Recommend chunks by content, shared topics and cluster proximity."""
        with self._state_lock:
            documents = list(self._documents.values())
            clusters = list(self._clusters.values())
        if not documents:
            return DocumentRecommendations([], [], [], _explain(0, 0, 0))
        try:
            embedding = await asyncio.to_thread(self.embedder.embed, query)
            query_vector = np.asarray([embedding], dtype=float)
            doc_sims = cosine_matrix(query_vector, np.asarray([d.embedding for d in documents], dtype=float))[0]
            ranked = sorted(zip(documents, doc_sims), key=lambda item: item[1], reverse=True)
            by_content = [doc for doc, _ in ranked[:limit]]

            query_topics = set((await self.extract_topics_from_text(query)).topics)
            topic_scored: list[tuple[float, ClusteredDocument]] = []
            for doc in documents:
                shared = query_topics.intersection(doc.topics)
                if not shared:
                    continue
                score = len(shared) / max(len(query_topics), len(doc.topics))
                topic_scored.append((score, doc))
            topic_scored.sort(key=lambda item: item[0], reverse=True)
            by_topic = [doc for _, doc in topic_scored[:limit]]

            by_cluster: list[ClusteredDocument] = []
            if clusters:
                centroid_sims = cosine_matrix(
                    query_vector, np.asarray([c.centroid for c in clusters], dtype=float)
                )[0]
                closest = sorted(zip(clusters, centroid_sims), key=lambda item: item[1], reverse=True)
                for cluster, _ in closest[:limit]:
                    members = [doc for doc in documents if doc.cluster_id == cluster.cluster_id]
                    if members:
                        by_cluster.append(max(members, key=lambda doc: doc.similarity_to_centroid))
        except Exception as exc:
            logger.warning("recommendations_failed", extra={"error": type(exc).__name__})
            return DocumentRecommendations(
                [], [], [], "Unable to generate recommendations at this time."
            )
        return DocumentRecommendations(
            by_content=by_content,
            by_topic=by_topic,
            by_cluster=by_cluster,
            explanation=_explain(len(by_content), len(by_topic), len(by_cluster)),
        )

    def get_all_clusters(self) -> list[DocumentCluster]:
        with self._state_lock:
            clusters = list(self._clusters.values())
        return sorted(clusters, key=lambda cluster: cluster.size, reverse=True)

    def get_cluster_info(self, cluster_id: str) -> DocumentCluster | None:
        with self._state_lock:
            return self._clusters.get(cluster_id)

    def get_documents_in_cluster(self, cluster_id: str) -> list[ClusteredDocument]:
        with self._state_lock:
            documents = list(self._documents.values())
        members = [doc for doc in documents if doc.cluster_id == cluster_id]
        return sorted(members, key=lambda doc: doc.similarity_to_centroid, reverse=True)

    def similarity_matrix(self) -> SimilarityMatrix:
        with self._state_lock:
            documents = list(self._documents.values())
        if not documents:
            return SimilarityMatrix(chunk_ids=[], matrix=[])
        vectors = np.asarray([doc.embedding for doc in documents], dtype=float)
        return SimilarityMatrix(
            chunk_ids=[doc.chunk_id for doc in documents],
            matrix=cosine_matrix(vectors, vectors).round(6).tolist(),
        )

    def metrics(self) -> ClusteringMetrics:
        with self._state_lock:
            return self._metrics


def _similarity(doc: ClusteredDocument, similarity: float, reason: str) -> SimilarityResult:
    return SimilarityResult(
        chunk_id=doc.chunk_id,
        document_id=doc.document_id,
        filename=doc.filename,
        similarity=similarity,
        cluster_id=doc.cluster_id,
        reason=reason,
    )


def _describe(size: int, topics: list[str]) -> str:
    if topics:
        return (
            f"A cluster of {size} documents focused on {', '.join(topics[:3])}. "
            "This cluster contains related content about these topics."
        )
    return f"A cluster of {size} documents with mixed content."


def _explain(content: int, topic: int, cluster: int) -> str:
    parts: list[str] = []
    if content:
        parts.append(f"{content} documents with high content similarity")
    if topic:
        parts.append(f"{topic} documents with related topics")
    if cluster:
        parts.append(f"{cluster} representative documents from relevant clusters")
    if not parts:
        return "No specific recommendations found based on the current query."
    return f"Found recommendations based on: {', '.join(parts)}."
