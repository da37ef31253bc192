from __future__ import annotations

"""Milvus-backed chunk store with dense, BM25 and weighted hybrid search."""

import json
import logging
import math
from dataclasses import dataclass
from typing import Any, Iterable

from src.rag.embeddings import EmbeddingConfigError
from src.rag.types import DocumentChunk, SearchResult
from src.vectorstore.inmemory import VectorStoreError, spread_across_documents

logger = logging.getLogger(__name__)

_FIELDS = ["chunk_id", "document_id", "chunk_index", "content", "metadata"]
_DENSE_FIELD = "embedding"
_SPARSE_FIELD = "text_sparse"
_BM25_PARAM = {"metric_type": "BM25"}


class MilvusDependencyError(RuntimeError):
    """Raised when pymilvus is not installed."""
    pass


@dataclass
class MilvusConfig:
    uri: str
    token: str | None
    collection: str
    consistency: str
    index_type: str
    metric_type: str
    nlist: int
    nprobe: int
    max_content_length: int = 65535


def _as_metadata(value: Any) -> dict[str, Any]:
    if isinstance(value, dict):
        return dict(value)
    if isinstance(value, str):
        try:
            decoded = json.loads(value)
        except json.JSONDecodeError:
            return {"raw": value}
        return decoded if isinstance(decoded, dict) else {"raw": decoded}
    return {} if value is None else {"raw": value}


def _chunk_schema(dimension: int, max_content_length: int) -> Any:
    """Chunk collection schema; the sparse field is filled by a server-side BM25 function."""
    from pymilvus import CollectionSchema, DataType, FieldSchema, Function, FunctionType

    return CollectionSchema(
        fields=[
            FieldSchema(name="chunk_id", dtype=DataType.VARCHAR, is_primary=True, max_length=256),
            FieldSchema(name="document_id", dtype=DataType.VARCHAR, max_length=256),
            FieldSchema(name="chunk_index", dtype=DataType.INT64),
            FieldSchema(
                name="content",
                dtype=DataType.VARCHAR,
                max_length=max_content_length,
                enable_analyzer=True,
            ),
            FieldSchema(name="metadata", dtype=DataType.JSON),
            FieldSchema(name=_DENSE_FIELD, dtype=DataType.FLOAT_VECTOR, dim=dimension),
            FieldSchema(name=_SPARSE_FIELD, dtype=DataType.SPARSE_FLOAT_VECTOR),
        ],
        functions=[
            Function(
                name="content_bm25",
                input_field_names=["content"],
                output_field_names=[_SPARSE_FIELD],
                function_type=FunctionType.BM25,
            )
        ],
        description="Document chunks",
    )


def bm25_relevance(score: float) -> float:
    """Map an unbounded BM25 score into [0, 1) with the arctan curve Milvus rankers use."""
    return 2.0 / math.pi * math.atan(max(0.0, score))


def hit_to_result(hit: Any, method: str) -> SearchResult:
    """Build a SearchResult from a search hit.

    Keyword hits carry raw BM25 scores, which are kept in ``keyword_score``
    while relevance uses the normalized value. Dense and fused scores are
    already bounded and are only clamped.
    """
    entity = hit.entity
    metadata = _as_metadata(entity.get("metadata"))
    for key in ("chunk_id", "document_id", "chunk_index"):
        metadata[key] = entity.get(key)
    score = float(hit.score)
    relevance = bm25_relevance(score) if method == "keyword" else score
    return SearchResult(
        content=entity.get("content"),
        metadata=metadata,
        relevance_score=max(0.0, min(1.0, relevance)),
        search_method=method,
        semantic_score=score if method == "semantic" else None,
        keyword_score=score if method == "keyword" else None,
    )


@dataclass
class MilvusVectorStore:
    """Chunk store on a Milvus collection holding dense and BM25 sparse vectors."""
    dimension: int
    config: MilvusConfig

    def __post_init__(self) -> None:
        if self.dimension <= 0:
            raise EmbeddingConfigError(
                "Embedding dimension must be set before initializing MilvusVectorStore"
            )
        try:
            from pymilvus import connections
        except ImportError as exc:
            raise MilvusDependencyError("pymilvus is required for MilvusVectorStore") from exc
        connections.connect(alias="default", uri=self.config.uri, token=self.config.token)
        self.collection = self._open_collection()

    def _open_collection(self) -> Any:
        from pymilvus import Collection, utility

        name = self.config.collection
        level = self.config.consistency
        if utility.has_collection(name):
            return Collection(name, consistency_level=level)
        logger.info("milvus_collection_created", extra={"collection": name})
        collection = Collection(
            name,
            _chunk_schema(self.dimension, self.config.max_content_length),
            consistency_level=level,
        )
        collection.create_index(
            field_name=_DENSE_FIELD,
            index_params={
                "index_type": self.config.index_type,
                "metric_type": self.config.metric_type,
                "params": {"nlist": self.config.nlist},
            },
        )
        collection.create_index(
            field_name=_SPARSE_FIELD,
            index_params={"index_type": "SPARSE_INVERTED_INDEX", **_BM25_PARAM},
        )
        return collection

    @property
    def _dense_param(self) -> dict[str, Any]:
        return {"metric_type": self.config.metric_type, "params": {"nprobe": self.config.nprobe}}

    def _row(self, chunk: DocumentChunk) -> dict[str, Any]:
        return {
            "chunk_id": chunk.chunk_id,
            "document_id": chunk.document_id,
            "chunk_index": chunk.chunk_index,
            "content": chunk.content[: self.config.max_content_length],
            "metadata": dict(chunk.metadata),
            _DENSE_FIELD: chunk.embedding,
        }

    def upsert(self, chunks: Iterable[DocumentChunk]) -> int:
        rows = [self._row(chunk) for chunk in chunks]
        if rows:
            try:
                self.collection.upsert(rows)
                self.collection.flush()
            except Exception as exc:
                raise VectorStoreError(str(exc)) from exc
        return len(rows)

    def _search(self, data: Any, field: str, param: dict[str, Any], limit: int) -> list[Any]:
        try:
            self.collection.load()
            found = self.collection.search(
                data=[data], anns_field=field, param=param, limit=limit, output_fields=_FIELDS
            )
        except Exception as exc:
            raise VectorStoreError(str(exc)) from exc
        return list(found[0])

    def _hybrid(
        self,
        embedding: list[float],
        text: str,
        limit: int,
        semantic_weight: float,
        keyword_weight: float,
    ) -> list[Any]:
        from pymilvus import AnnSearchRequest, WeightedRanker

        requests = [
            AnnSearchRequest(
                data=[embedding], anns_field=_DENSE_FIELD, param=self._dense_param, limit=limit
            ),
            AnnSearchRequest(
                data=[text], anns_field=_SPARSE_FIELD, param=_BM25_PARAM, limit=limit
            ),
        ]
        try:
            self.collection.load()
            found = self.collection.hybrid_search(
                requests,
                WeightedRanker(semantic_weight, keyword_weight),
                limit=limit,
                output_fields=_FIELDS,
            )
        except Exception as exc:
            raise VectorStoreError(str(exc)) from exc
        return list(found[0])

    def query(self, embedding: list[float], k: int) -> list[SearchResult]:
        if k <= 0:
            return []
        hits = self._search(embedding, _DENSE_FIELD, self._dense_param, k)
        return [hit_to_result(hit, "semantic") for hit in hits]

    def adaptive_search(
        self,
        query_embedding: list[float],
        query_text: str,
        strategy: str,
        k: int,
        semantic_weight: float,
        keyword_weight: float,
    ) -> list[SearchResult]:
        """Dense for semantic, BM25 for keyword, weighted fusion otherwise.

        multi_step over-fetches three times ``k`` so the per-document cap
        still leaves enough results.
        """
        if k <= 0:
            return []
        limit = k * 3 if strategy == "multi_step" else k
        if strategy == "semantic":
            hits = self._search(query_embedding, _DENSE_FIELD, self._dense_param, limit)
        elif strategy == "keyword":
            hits = self._search(query_text, _SPARSE_FIELD, _BM25_PARAM, limit)
        else:
            hits = self._hybrid(query_embedding, query_text, limit, semantic_weight, keyword_weight)
        ranked = sorted(
            (hit_to_result(hit, strategy) for hit in hits),
            key=lambda item: item.relevance_score,
            reverse=True,
        )
        if strategy == "multi_step":
            return spread_across_documents(ranked, k)
        return ranked[:k]

    def all_chunks(self) -> list[DocumentChunk]:
        chunks: list[DocumentChunk] = []
        try:
            self.collection.load()
            pager = self.collection.query_iterator(
                batch_size=500, expr='chunk_id != ""', output_fields=_FIELDS + [_DENSE_FIELD]
            )
            batch = pager.next()
            while batch:
                chunks.extend(self._chunk(row) for row in batch)
                batch = pager.next()
            pager.close()
        except Exception as exc:
            raise VectorStoreError(str(exc)) from exc
        return chunks

    def get_chunk(self, chunk_id: str) -> DocumentChunk | None:
        try:
            rows = self.collection.query(
                expr=f"chunk_id == {json.dumps(chunk_id)}",
                output_fields=_FIELDS + [_DENSE_FIELD],
            )
        except Exception as exc:
            raise VectorStoreError(str(exc)) from exc
        return self._chunk(rows[0]) if rows else None

    def delete_document(self, document_id: str) -> int:
        try:
            outcome = self.collection.delete(f"document_id == {json.dumps(document_id)}")
            self.collection.flush()
        except Exception as exc:
            raise VectorStoreError(str(exc)) from exc
        return int(getattr(outcome, "delete_count", 0) or 0)

    def document_names(self) -> list[str]:
        return sorted({chunk.filename for chunk in self.all_chunks() if chunk.filename})

    def _chunk(self, row: dict[str, Any]) -> DocumentChunk:
        return DocumentChunk(
            chunk_id=row["chunk_id"],
            document_id=row["document_id"],
            chunk_index=int(row.get("chunk_index") or 0),
            content=row.get("content") or "",
            embedding=[float(value) for value in row.get(_DENSE_FIELD) or []],
            metadata=_as_metadata(row.get("metadata")),
        )

    def stats(self) -> dict[str, int | str]:
        try:
            count = int(self.collection.num_entities)
        except Exception as exc:
            logger.warning("milvus_stats_failed", extra={"error": str(exc)})
            count = 0
        return {
            "backend": "milvus",
            "chunk_count": count,
            "embedding_dimension": self.dimension,
            "collection": self.config.collection,
        }

    def health(self) -> dict[str, str | bool]:
        try:
            self.collection.num_entities
        except Exception as exc:
            return {"backend": "milvus", "ok": False, "detail": str(exc)}
        return {"backend": "milvus", "ok": True, "collection": self.config.collection}
