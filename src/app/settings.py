from __future__ import annotations

import os
from dataclasses import dataclass

try:
    from dotenv import load_dotenv
except ImportError:  # pragma: no cover - optional in minimal setups
    load_dotenv = None

if load_dotenv is not None:
    load_dotenv()


def _env_bool(name: str, default: str) -> bool:
    return os.getenv(name, default).lower() in {"1", "true", "yes"}


def _env_optional_int(name: str) -> int | None:
    raw = os.getenv(name, "").strip()
    if not raw:
        return None
    try:
        return int(raw)
    except ValueError:
        return None


@dataclass(frozen=True)
class Settings:
    log_level: str = os.getenv("RAG_LOG_LEVEL", "INFO")
    vectorstore_backend: str = os.getenv("RAG_VECTORSTORE", "memory")
    embedding_provider: str = os.getenv("EMBEDDING_PROVIDER", "hash")
    embedding_dimension: int = int(os.getenv("EMBEDDING_DIMENSION", "256"))
    embedding_cache_enabled: bool = _env_bool("RAG_EMBEDDING_CACHE_ENABLED", "true")
    openai_api_key: str | None = os.getenv("OPENAI_API_KEY")
    openai_base_url: str = os.getenv("OPENAI_BASE_URL", "https://api.openai.com/v1")
    openai_embedding_model: str | None = os.getenv("OPENAI_EMBEDDING_MODEL")
    openai_chat_model: str | None = os.getenv("OPENAI_CHAT_MODEL")
    gemini_api_key: str | None = os.getenv("GEMINI_API_KEY")
    gemini_embedding_model: str | None = os.getenv("GEMINI_EMBEDDING_MODEL")
    gemini_chat_model: str | None = os.getenv("GEMINI_CHAT_MODEL")
    milvus_uri: str = os.getenv("MILVUS_URI", "http://localhost:19530")
    milvus_token: str | None = os.getenv("MILVUS_TOKEN")
    milvus_collection: str = os.getenv("MILVUS_COLLECTION", "document_chunks")
    milvus_consistency: str = os.getenv("MILVUS_CONSISTENCY", "Strong")
    milvus_index_type: str = os.getenv("MILVUS_INDEX_TYPE", "IVF_FLAT")
    milvus_metric_type: str = os.getenv("MILVUS_METRIC_TYPE", "COSINE")
    milvus_nlist: int = int(os.getenv("MILVUS_NLIST", "1024"))
    milvus_nprobe: int = int(os.getenv("MILVUS_NPROBE", "10"))
    retrieval_k: int = int(os.getenv("RAG_RETRIEVAL_K", "6"))
    multi_step_k: int = int(os.getenv("RAG_MULTI_STEP_K", "8"))
    chunk_size: int = int(os.getenv("RAG_CHUNK_SIZE", "1000"))
    chunk_overlap: int = int(os.getenv("RAG_CHUNK_OVERLAP", "200"))
    query_enhancement_enabled: bool = _env_bool("RAG_QUERY_ENHANCEMENT", "true")
    session_history_size: int = int(os.getenv("RAG_SESSION_HISTORY", "10"))
    llm_provider: str = os.getenv("RAG_LLM_PROVIDER", "ollama")
    llm_context_max_chars: int = int(os.getenv("RAG_LLM_CONTEXT_MAX_CHARS", "12000"))
    ollama_base_url: str = os.getenv("OLLAMA_BASE_URL", "http://localhost:11434")
    ollama_model: str = os.getenv("OLLAMA_MODEL", "llama3.1")
    ollama_temperature: float = float(os.getenv("OLLAMA_TEMPERATURE", "0.1"))
    ollama_max_tokens: int = int(os.getenv("OLLAMA_MAX_TOKENS", "1024"))
    ollama_timeout: float = float(os.getenv("OLLAMA_TIMEOUT", "60"))
    cache_max_memory_mb: float = float(os.getenv("RAG_CACHE_MAX_MEMORY_MB", "256"))
    cache_default_ttl_ms: int = int(os.getenv("RAG_CACHE_DEFAULT_TTL_MS", str(12 * 60 * 60 * 1000)))
    cache_cleanup_interval: float = float(os.getenv("RAG_CACHE_CLEANUP_INTERVAL", "300"))
    clustering_skip_hours: float = float(os.getenv("RAG_CLUSTERING_SKIP_HOURS", "6"))
    clustering_debounce_seconds: float = float(os.getenv("RAG_CLUSTERING_DEBOUNCE", "5"))
    clustering_seed: int | None = _env_optional_int("RAG_CLUSTERING_SEED")
    topic_batch_size: int = int(os.getenv("RAG_TOPIC_BATCH_SIZE", "5"))
    topic_batch_delay: float = float(os.getenv("RAG_TOPIC_BATCH_DELAY", "1.0"))
    summary_chunk_size: int = int(os.getenv("RAG_SUMMARY_CHUNK_SIZE", "3000"))
    summary_chunk_overlap: int = int(os.getenv("RAG_SUMMARY_CHUNK_OVERLAP", "200"))
    summary_min_content_length: int = int(os.getenv("RAG_SUMMARY_MIN_CONTENT", "500"))
    summary_importance_threshold: float = float(
        os.getenv("RAG_SUMMARY_IMPORTANCE_THRESHOLD", "0.7")
    )
    summary_chunk_delay: float = float(os.getenv("RAG_SUMMARY_CHUNK_DELAY", "0.5"))
    summary_batch_size: int = int(os.getenv("RAG_SUMMARY_BATCH_SIZE", "3"))
    summary_batch_delay: float = float(os.getenv("RAG_SUMMARY_BATCH_DELAY", "2.0"))
    file_max_bytes: int = int(os.getenv("RAG_FILE_MAX_BYTES", str(20 * 1024 * 1024)))
    result_db_uri: str | None = os.getenv("RAG_RESULT_DB_URI")
    metrics_enabled: bool = _env_bool("RAG_METRICS_ENABLED", "true")
    background_tasks_enabled: bool = _env_bool("RAG_BACKGROUND_TASKS", "true")

    @property
    def llm_model(self) -> str | None:
        provider = self.llm_provider.strip().lower()
        if provider == "openai":
            return self.openai_chat_model
        if provider in {"gemini", "google"}:
            return self.gemini_chat_model
        return self.ollama_model


settings = Settings()
