from __future__ import annotations

import logging
from functools import lru_cache

from src.app.settings import settings
from src.metadata.store import ResultStore, ResultStoreError
from src.rag.analyzer import QueryAnalyzer
from src.rag.cache import HOUR_MS, CacheConfig, IntelligentCacheManager
from src.rag.clustering import DocumentClusteringEngine
from src.rag.embeddings import (
    CachingEmbedder,
    EmbeddingConfigError,
    EmbeddingProvider,
    GeminiEmbedder,
    HashEmbedder,
    OpenAIEmbedder,
)
from src.rag.llm import LLMGateway, build_llm_gateway
from src.rag.pipeline import QAService
from src.rag.quality import ResponseQualityEvaluator
from src.rag.retriever import HybridRetriever
from src.rag.summarizer import DocumentSummarizer
from src.vectorstore.inmemory import InMemoryVectorStore
from src.vectorstore.milvus import MilvusConfig, MilvusVectorStore

logger = logging.getLogger(__name__)


@lru_cache
def get_service() -> QAService:
    cache = get_cache_manager()
    gateway = build_gateway()
    embedder = build_embedder(cache)
    vectorstore = build_vectorstore(embedder)
    result_store = get_result_store()
    clustering = DocumentClusteringEngine(
        store=vectorstore,
        gateway=gateway,
        embedder=embedder,
        cache=cache,
        result_store=result_store,
        seed=settings.clustering_seed,
        skip_window=settings.clustering_skip_hours * HOUR_MS,
        topic_batch_size=settings.topic_batch_size,
        topic_batch_delay=settings.topic_batch_delay,
    )
    summarizer = DocumentSummarizer(
        gateway=gateway,
        cache=cache,
        result_store=result_store,
        chunk_size=settings.summary_chunk_size,
        chunk_overlap=settings.summary_chunk_overlap,
        min_content_length=settings.summary_min_content_length,
        importance_threshold=settings.summary_importance_threshold,
        chunk_delay=settings.summary_chunk_delay,
        batch_size=settings.summary_batch_size,
        batch_delay=settings.summary_batch_delay,
    )
    return QAService(
        gateway=gateway,
        embedder=embedder,
        store=vectorstore,
        cache=cache,
        analyzer=QueryAnalyzer(gateway),
        retriever=HybridRetriever(
            embedder,
            vectorstore,
            default_k=settings.retrieval_k,
            multi_step_k=settings.multi_step_k,
        ),
        evaluator=ResponseQualityEvaluator(gateway, cache=cache, result_store=result_store),
        clustering=clustering,
        summarizer=summarizer,
        chunk_size=settings.chunk_size,
        chunk_overlap=settings.chunk_overlap,
        context_max_chars=settings.llm_context_max_chars,
        history_size=settings.session_history_size,
        query_enhancement=settings.query_enhancement_enabled,
        clustering_debounce=settings.clustering_debounce_seconds,
        background_tasks=settings.background_tasks_enabled,
    )


def reset_pipeline_cache() -> None:
    get_service.cache_clear()
    get_cache_manager.cache_clear()
    get_result_store.cache_clear()


@lru_cache
def get_cache_manager() -> IntelligentCacheManager:
    return IntelligentCacheManager(
        CacheConfig(
            default_ttl=settings.cache_default_ttl_ms,
            max_memory_mb=settings.cache_max_memory_mb,
            cleanup_interval=settings.cache_cleanup_interval,
            enable_metrics=settings.metrics_enabled,
        )
    )


@lru_cache
def get_result_store() -> ResultStore | None:
    if not settings.result_db_uri:
        return None
    try:
        return ResultStore(settings.result_db_uri)
    except ResultStoreError as exc:
        logger.warning("result_store_unavailable", extra={"error": str(exc)})
        return None


def build_gateway() -> LLMGateway:
    return build_llm_gateway(
        settings.llm_provider,
        api_key_openai=settings.openai_api_key,
        api_key_gemini=settings.gemini_api_key,
        openai_base_url=settings.openai_base_url,
        openai_model=settings.openai_chat_model,
        gemini_model=settings.gemini_chat_model,
        ollama_base_url=settings.ollama_base_url,
        ollama_model=settings.ollama_model,
        temperature=settings.ollama_temperature,
        max_tokens=settings.ollama_max_tokens,
        timeout=settings.ollama_timeout,
    )


def build_embedder(cache: IntelligentCacheManager | None = None) -> EmbeddingProvider:
    provider = settings.embedding_provider.lower().strip()
    if provider == "hash":
        embedder: EmbeddingProvider = HashEmbedder(dimension=settings.embedding_dimension)
    elif provider == "openai":
        embedder = OpenAIEmbedder(
            api_key=settings.openai_api_key or "",
            model=settings.openai_embedding_model or "",
            dimension=settings.embedding_dimension,
        )
    elif provider in {"gemini", "google"}:
        embedder = GeminiEmbedder(
            api_key=settings.gemini_api_key or "",
            model=settings.gemini_embedding_model or "",
            dimension=settings.embedding_dimension,
        )
    else:
        raise EmbeddingConfigError(f"Unsupported embedding provider: {provider}")
    if cache is not None and settings.embedding_cache_enabled:
        return CachingEmbedder(provider=embedder, cache=cache)
    return embedder


def build_vectorstore(embedder: EmbeddingProvider) -> InMemoryVectorStore | MilvusVectorStore:
    backend = settings.vectorstore_backend.lower().strip()
    if backend == "milvus":
        config = MilvusConfig(
            uri=settings.milvus_uri,
            token=settings.milvus_token,
            collection=settings.milvus_collection,
            consistency=settings.milvus_consistency,
            index_type=settings.milvus_index_type,
            metric_type=settings.milvus_metric_type,
            nlist=settings.milvus_nlist,
            nprobe=settings.milvus_nprobe,
        )
        return MilvusVectorStore(dimension=embedder.dimension, config=config)
    return InMemoryVectorStore(dimension=embedder.dimension)
