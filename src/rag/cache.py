from __future__ import annotations

"""TTL, tag and priority aware cache for query responses, embeddings and artifacts."""

import hashlib
import json
import logging
import math
import threading
import time
from dataclasses import asdict, dataclass
from typing import Any, Callable, Iterable

from src.app.metrics import CACHE_EVICTIONS, CACHE_LOOKUPS
from src.rag.scheduler import RecurringTask
from src.rag.types import (
    CacheEntry,
    CacheStats,
    EmbeddingCacheEntry,
    QueryAnalysis,
    QueryCacheEntry,
    SearchResult,
)

logger = logging.getLogger(__name__)

HOUR_MS = 60 * 60 * 1000
DAY_MS = 24 * HOUR_MS
MAX_TTL_MS = 7 * DAY_MS
EMBEDDING_TTL_MS = 7 * DAY_MS
CACHE_KINDS = ("query", "embedding", "artifact")


def now_ms() -> float:
    """Wall clock in milliseconds."""
    return time.time() * 1000.0


@dataclass(frozen=True)
class CacheConfig:
    """Cache sizing and timing."""
    default_ttl: float = 12 * HOUR_MS
    max_memory_mb: float = 256.0
    cleanup_interval: float = 300.0
    enable_metrics: bool = True


def calculate_dynamic_ttl(base_ttl: float, quality: float, response_time: float) -> float:
    """Scale the base TTL by answer quality and latency, capped at seven days."""
    ttl = base_ttl
    if quality > 0.8:
        ttl *= 2
    elif quality < 0.5:
        ttl *= 0.5
    if response_time < 3000:
        ttl *= 1.5
    return min(ttl, MAX_TTL_MS)


def calculate_priority(quality: float, response_time: float) -> str:
    if quality > 0.8 and response_time < 5000:
        return "high"
    if quality > 0.6 and response_time < 10000:
        return "medium"
    return "low"


def hash_query(query: str) -> str:
    return hashlib.md5(query.lower().strip().encode("utf-8")).hexdigest()


def hash_text(text: str) -> str:
    return hashlib.md5(text.encode("utf-8")).hexdigest()


class IntelligentCacheManager:
    """Owned cache state with explicit start, sweep and shutdown."""

    def __init__(
        self,
        config: CacheConfig | None = None,
        clock: Callable[[], float] = now_ms,
    ) -> None:
        self.config = config or CacheConfig()
        self._clock = clock
        self._lock = threading.RLock()
        self._query_cache: dict[str, CacheEntry[QueryCacheEntry]] = {}
        self._embedding_cache: dict[str, CacheEntry[EmbeddingCacheEntry]] = {}
        self._artifact_cache: dict[str, CacheEntry[Any]] = {}
        self._hits = 0
        self._misses = 0
        self._evictions = 0
        self._sweeper = RecurringTask(
            "cache-sweep", self.config.cleanup_interval, self.sweep
        )

    def start(self) -> None:
        """Schedule the periodic sweep on the running event loop."""
        self._sweeper.start()

    async def shutdown(self) -> None:
        """Cancel the sweep and release all entries."""
        await self._sweeper.stop()
        self.clear_cache()
        logger.info("cache_manager_shutdown")

    # Query responses

    def cache_query_response(
        self,
        query: str,
        analysis: QueryAnalysis | None,
        search_results: list[SearchResult],
        response: str,
        sources: list[str],
        response_time: float,
        quality: float = 0.8,
    ) -> str:
        """Store an answer and return its cache key."""
        query_hash = hash_query(query)
        key = f"query:{query_hash}"
        ttl = calculate_dynamic_ttl(self.config.default_ttl, quality, response_time)
        priority = calculate_priority(quality, response_time)
        tags = ["query"]
        if analysis is not None:
            tags.extend([analysis.category, analysis.complexity])
        tags.append(f"quality:{round(quality * 10)}")
        payload = QueryCacheEntry(
            query=query,
            query_hash=query_hash,
            analysis=analysis,
            search_results=list(search_results),
            response=response,
            sources=list(sources),
            response_time=response_time,
            quality=quality,
        )
        now = self._clock()
        with self._lock:
            self._query_cache[key] = CacheEntry(
                key=key,
                data=payload,
                timestamp=now,
                ttl=ttl,
                access_count=0,
                last_accessed=now,
                tags=tags,
                priority=priority,
            )
        logger.info(
            "query_cached",
            extra={"key": key, "ttl_hours": round(ttl / HOUR_MS, 2), "priority": priority},
        )
        return key

    def get_cached_query_response(self, query: str) -> QueryCacheEntry | None:
        key = f"query:{hash_query(query)}"
        entry = self._read(self._query_cache, key, "query")
        return entry.data if entry is not None else None

    # Embeddings

    def cache_embedding(self, text: str, embedding: list[float], model: str) -> str:
        key = f"embedding:{hash_text(text)}"
        now = self._clock()
        with self._lock:
            self._embedding_cache[key] = CacheEntry(
                key=key,
                data=EmbeddingCacheEntry(text=text[:200], embedding=list(embedding), model=model),
                timestamp=now,
                ttl=EMBEDDING_TTL_MS,
                access_count=0,
                last_accessed=now,
                tags=["embedding", model, f"length:{len(text)}"],
                priority="high",
            )
        return key

    def get_cached_embedding(self, text: str, model: str) -> list[float] | None:
        key = f"embedding:{hash_text(text)}"
        with self._lock:
            entry = self._embedding_cache.get(key)
            if entry is not None and entry.data.model != model:
                self._record_miss("embedding")
                return None
        entry = self._read(self._embedding_cache, key, "embedding")
        return list(entry.data.embedding) if entry is not None else None

    # Artifacts (topics, evaluations, summaries)

    def cache_artifact(
        self,
        key: str,
        payload: Any,
        ttl: float | None = None,
        tags: Iterable[str] = (),
        priority: str = "medium",
    ) -> str:
        now = self._clock()
        with self._lock:
            self._artifact_cache[key] = CacheEntry(
                key=key,
                data=payload,
                timestamp=now,
                ttl=min(ttl if ttl is not None else self.config.default_ttl, MAX_TTL_MS),
                access_count=0,
                last_accessed=now,
                tags=list(tags),
                priority=priority,
            )
        return key

    def get_cached_artifact(self, key: str) -> Any | None:
        entry = self._read(self._artifact_cache, key, "artifact")
        return entry.data if entry is not None else None

    # Maintenance

    def invalidate_by_tags(self, tags: Iterable[str]) -> int:
        """Remove query and embedding entries sharing any of ``tags``."""
        wanted = set(tags)
        if not wanted:
            return 0
        removed = 0
        with self._lock:
            for cache in (self._query_cache, self._embedding_cache):
                for key in [k for k, entry in cache.items() if wanted.intersection(entry.tags)]:
                    del cache[key]
                    removed += 1
        logger.info("cache_invalidated", extra={"tags": sorted(wanted), "removed": removed})
        return removed

    def clear_cache(self, kind: str | None = None) -> None:
        with self._lock:
            if kind in (None, "query"):
                self._query_cache.clear()
            if kind in (None, "embedding"):
                self._embedding_cache.clear()
            if kind in (None, "artifact"):
                self._artifact_cache.clear()
            if kind is None:
                self._hits = 0
                self._misses = 0
                self._evictions = 0

    def sweep(self) -> int:
        """Delete expired entries, then relieve memory pressure. Returns removals."""
        now = self._clock()
        expired = 0
        with self._lock:
            for cache in (self._query_cache, self._embedding_cache, self._artifact_cache):
                for key in [k for k, entry in cache.items() if entry.is_expired(now)]:
                    del cache[key]
                    expired += 1
            self._evictions += expired
        if expired:
            CACHE_EVICTIONS.labels("expired").inc(expired)
            logger.info("cache_sweep_expired", extra={"evicted": expired})
        pressure = 0
        if self.memory_usage() > self.config.max_memory_mb * 0.9:
            pressure = self.perform_lru_eviction()
        return expired + pressure

    def perform_lru_eviction(self) -> int:
        """Evict the least recently used 20% of low-priority query entries."""
        with self._lock:
            low = sorted(
                (entry for entry in self._query_cache.values() if entry.priority == "low"),
                key=lambda entry: entry.last_accessed,
            )
            to_evict = math.ceil(len(low) * 0.2)
            for entry in low[:to_evict]:
                del self._query_cache[entry.key]
            self._evictions += to_evict
        if to_evict:
            CACHE_EVICTIONS.labels("memory_pressure").inc(to_evict)
            logger.warning("cache_memory_pressure", extra={"evicted": to_evict})
        return to_evict

    def memory_usage(self) -> float:
        """Rough memory estimate in megabytes."""
        total = 0
        with self._lock:
            for entry in self._query_cache.values():
                total += len(json.dumps(asdict(entry.data), default=str))
            for entry in self._embedding_cache.values():
                total += len(entry.data.embedding) * 8
                total += len(entry.data.text) * 2
        return total / (1024 * 1024)

    def get_stats(self) -> CacheStats:
        with self._lock:
            lookups = self._hits + self._misses
            query_entries = len(self._query_cache)
            embedding_entries = len(self._embedding_cache)
            artifact_entries = len(self._artifact_cache)
            hits, misses, evictions = self._hits, self._misses, self._evictions
        return CacheStats(
            total_entries=query_entries + embedding_entries + artifact_entries,
            query_entries=query_entries,
            embedding_entries=embedding_entries,
            artifact_entries=artifact_entries,
            hit_rate=hits / lookups if lookups else 0.0,
            miss_rate=misses / lookups if lookups else 0.0,
            total_hits=hits,
            total_misses=misses,
            memory_usage=self.memory_usage(),
            eviction_count=evictions,
        )

    def get_cache_efficiency(self) -> dict[str, Any]:
        stats = self.get_stats()
        actions: list[str] = []
        if stats.hit_rate < 0.3:
            actions.append("Consider increasing TTL for high-quality responses")
        if stats.memory_usage > self.config.max_memory_mb * 0.8:
            actions.append("Memory usage high - consider cleaning up low-priority entries")
        if stats.embedding_entries > 1000:
            actions.append("Large embedding cache - consider a shorter embedding TTL")
        return {
            "hit_rate": stats.hit_rate,
            "total_hits": stats.total_hits,
            "estimated_seconds_saved": stats.total_hits * 2.5,
            "recommended_actions": actions,
        }

    def _read(self, cache: dict[str, CacheEntry[Any]], key: str, kind: str) -> CacheEntry[Any] | None:
        now = self._clock()
        with self._lock:
            entry = cache.get(key)
            if entry is None:
                self._record_miss(kind)
                return None
            if entry.is_expired(now):
                del cache[key]
                self._evictions += 1
                self._record_miss(kind)
                return None
            entry.access_count += 1
            entry.last_accessed = now
            self._hits += 1
        if self.config.enable_metrics:
            CACHE_LOOKUPS.labels(kind, "hit").inc()
        return entry

    def _record_miss(self, kind: str) -> None:
        self._misses += 1
        if self.config.enable_metrics:
            CACHE_LOOKUPS.labels(kind, "miss").inc()
