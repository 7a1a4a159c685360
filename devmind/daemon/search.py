"""Hybrid retrieval: semantic similarity fused with structural relevance.

This module implements:
- Cache-backed query and record embeddings
- Exact and sampled cosine similarity
- Metadata relevance (file, project, tags, recency)
- Weighted fusion, thresholding and per-query result caching
- Batch search over a fixed-width worker pool
"""

import asyncio
import hashlib
import json
import os
import time
from collections import defaultdict
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Dict, List, Optional, Sequence, Union

import numpy as np
from loguru import logger

from .bus import Event, EventBus
from .cache import BoundedCache
from .config import EmbeddingConfig, SearchConfig
from .embeddings import EmbeddingProvider
from .error_handling import CircuitBreaker, CollaboratorError, InputError
from .models import Record, days_between
from .query_enhancer import QueryEnhancer, extract_query_files, normalize_query


FILE_MATCH_SCORE = 5
PROJECT_MATCH_SCORE = 3
TAG_MATCH_SCORE = 2
RECENCY_WINDOW_DAYS = 10
METADATA_SCALE = 20.0
UNKNOWN_AGE_DAYS = 365


def cosine_similarity(a: Sequence[float], b: Sequence[float]) -> float:
    """Cosine similarity; raises on length mismatch, 0.0 for a zero vector."""
    va = np.asarray(a, dtype=np.float64)
    vb = np.asarray(b, dtype=np.float64)
    if va.shape != vb.shape:
        raise ValueError(f"Vector length mismatch: {va.shape[0]} vs {vb.shape[0]}")
    norm = float(np.linalg.norm(va) * np.linalg.norm(vb))
    if norm == 0.0:
        return 0.0
    return float(np.dot(va, vb) / norm)


def approximate_similarity(a: Sequence[float], b: Sequence[float], samples: int = 256) -> float:
    """Cosine over every `len // samples`-th dimension."""
    va = np.asarray(a, dtype=np.float64)
    vb = np.asarray(b, dtype=np.float64)
    if va.shape != vb.shape:
        raise ValueError(f"Vector length mismatch: {va.shape[0]} vs {vb.shape[0]}")
    step = max(1, len(va) // max(1, samples))
    return cosine_similarity(va[::step], vb[::step])


def combine(vector_score: float, metadata_score: float, hybrid_weight: float = 0.7) -> float:
    """Fuse vector similarity with a metadata score scaled into [0, 1]."""
    normalized_metadata = min(metadata_score / METADATA_SCALE, 1.0)
    return vector_score * hybrid_weight + normalized_metadata * (1 - hybrid_weight)


def files_match(record_path: str, query_path: str) -> bool:
    """Exact, same basename, or either path containing the other."""
    if not record_path or not query_path:
        return False
    a = record_path.replace("\\", "/")
    b = query_path.replace("\\", "/")
    if a == b:
        return True
    if os.path.basename(a) == os.path.basename(b):
        return True
    return a in b or b in a


def days_since(created_at: Union[datetime, str, None], now: Optional[datetime] = None) -> int:
    """Whole days since creation; unparseable dates count as a year old."""
    if isinstance(created_at, str):
        try:
            created_at = datetime.fromisoformat(created_at)
        except ValueError:
            return UNKNOWN_AGE_DAYS
    if not isinstance(created_at, datetime):
        return UNKNOWN_AGE_DAYS
    return days_between(created_at, now)


def candidate_digest(candidates: Sequence[Record]) -> str:
    """Order-independent digest of candidate ids and contents."""
    parts = sorted(
        f"{r.id}:{hashlib.md5(r.content.encode('utf-8')).hexdigest()[:12]}"
        for r in candidates
    )
    return hashlib.md5("\n".join(parts).encode("utf-8")).hexdigest()


@dataclass
class SearchParams:
    """Filters and tuning for one hybrid search."""
    use_semantic_search: bool = True
    similarity_threshold: float = 0.5
    hybrid_weight: float = 0.7
    limit: int = 20
    project_id: Optional[str] = None
    session_id: Optional[str] = None
    file_path: Optional[str] = None

    def __post_init__(self):
        if not 0 <= self.similarity_threshold <= 1:
            raise InputError("similarity_threshold must be between 0 and 1")
        if not 0 <= self.hybrid_weight <= 1:
            raise InputError("hybrid_weight must be between 0 and 1")
        if self.limit < 1:
            raise InputError("limit must be at least 1")

    @classmethod
    def from_config(cls, config: SearchConfig, **overrides) -> "SearchParams":
        values = {
            'similarity_threshold': config.similarity_threshold,
            'hybrid_weight': config.hybrid_weight,
            'limit': config.limit,
        }
        values.update({k: v for k, v in overrides.items() if v is not None})
        return cls(**values)

    def cache_key(self, query: str, candidates: Sequence[Record] = ()) -> str:
        filters = {
            'project_id': self.project_id,
            'session_id': self.session_id,
            'file_path': self.file_path,
            'limit': self.limit,
            'similarity_threshold': self.similarity_threshold,
            'hybrid_weight': self.hybrid_weight,
        }
        key_str = (
            f"{normalize_query(query)}|{json.dumps(filters, sort_keys=True)}"
            f"|{candidate_digest(candidates)}"
        )
        return hashlib.md5(key_str.encode()).hexdigest()


@dataclass
class ScoredRecord:
    """A candidate with its scores; scores are None when ranking was skipped."""
    record: Record
    similarity: Optional[float] = None
    metadata_score: Optional[float] = None
    score: Optional[float] = None

    @property
    def scored(self) -> bool:
        return self.score is not None

    def to_dict(self) -> Dict:
        return {
            'id': self.record.id,
            'activity_type': self.record.activity_type.value,
            'file_path': self.record.file_path,
            'similarity': self.similarity,
            'metadata_score': self.metadata_score,
            'score': self.score,
        }


@dataclass
class BatchRequest:
    query: str
    candidates: Sequence[Record]
    params: Optional[SearchParams] = None


class HybridRetrievalEngine:
    """
    Ranks candidate records for a free-text query.

    Any failure inside scoring degrades to the candidates in their original
    order without scores; search() never raises for well-typed input.
    """

    def __init__(self,
                 embedder: EmbeddingProvider,
                 config: Optional[SearchConfig] = None,
                 embedding_config: Optional[EmbeddingConfig] = None,
                 event_bus: Optional[EventBus] = None,
                 query_enhancer: Optional[QueryEnhancer] = None,
                 embedding_cache: Optional[BoundedCache] = None,
                 result_cache: Optional[BoundedCache] = None,
                 breaker: Optional[CircuitBreaker] = None,
                 strict_caches: bool = False):
        """
        Initialize retrieval engine.

        Args:
            embedder: text -> vector function, sync or async
            config: Search tuning and cache sizes
            embedding_config: Current embedding version and widths
            event_bus: Receives search.completed / search.degraded
            query_enhancer: Builds the text embedded for a query
            embedding_cache: Shared cache for query and record vectors
            result_cache: Per-query ranked results
            breaker: Circuit breaker around the embedder
            strict_caches: Built caches raise on invariant violations
        """
        self.embedder = embedder
        self.config = config or SearchConfig()
        self.embedding_config = embedding_config or EmbeddingConfig()
        self.event_bus = event_bus
        self.query_enhancer = query_enhancer or QueryEnhancer()
        self.embedding_cache = embedding_cache if embedding_cache is not None else BoundedCache(
            max_size=self.config.embedding_cache_size,
            ttl_seconds=self.config.embedding_cache_ttl_s,
            name="embeddings",
            strict=strict_caches,
        )
        self.result_cache = result_cache if result_cache is not None else BoundedCache(
            max_size=self.config.result_cache_size,
            ttl_seconds=self.config.result_cache_ttl_s,
            name="search_results",
            strict=strict_caches,
        )
        self.breaker = breaker or CircuitBreaker("embedder", failure_threshold=5, recovery_timeout=30)
        self._stats = defaultdict(int)

    async def search(self,
                     query: str,
                     candidates: Sequence[Record],
                     params: Optional[SearchParams] = None) -> List[ScoredRecord]:
        """
        Rank candidates for a query.

        Args:
            query: Free-text query
            candidates: Working set pulled from the store
            params: Filters and tuning, defaults from config

        Returns:
            Scored records sorted by fused score, thresholded on vector
            similarity and capped at `limit`; unscored candidates when
            semantic search is off, the set is empty, or scoring failed
        """
        params = params or SearchParams.from_config(self.config)
        candidates = list(candidates)
        self._stats['searches'] += 1

        if not params.use_semantic_search or not candidates or not (query or "").strip():
            return [ScoredRecord(record=r) for r in candidates]

        cache_key = params.cache_key(query, candidates)
        cached = self.result_cache.get(cache_key)
        if cached is not None:
            self._stats['cache_hits'] += 1
            logger.debug(f"Result cache hit for query: {query}")
            return list(cached)

        start = time.time()
        try:
            ranked = await self._rank(query, candidates, params)
        except Exception as e:
            self._stats['degraded'] += 1
            logger.warning(f"Hybrid search degraded for '{query}': {e}")
            self._emit("search.degraded", {'query': query, 'error': str(e)})
            return [ScoredRecord(record=r) for r in candidates]

        self.result_cache.set(cache_key, ranked)
        latency_ms = (time.time() - start) * 1000
        self._emit("search.completed", {
            'query': query,
            'candidates': len(candidates),
            'results': len(ranked),
            'latency_ms': latency_ms,
        })
        logger.debug(f"Search '{query}': {len(ranked)}/{len(candidates)} in {latency_ms:.1f}ms")
        return list(ranked)

    async def batch_search(self,
                           requests: Sequence[BatchRequest],
                           workers: Optional[int] = None) -> List[List[ScoredRecord]]:
        """Run many searches over a fixed worker pool; output order matches input."""
        if not requests:
            return []

        width = min(workers or self.config.batch_workers, len(requests))
        results: List[Optional[List[ScoredRecord]]] = [None] * len(requests)
        queue: asyncio.Queue = asyncio.Queue()
        for index, request in enumerate(requests):
            queue.put_nowait((index, request))

        async def worker():
            while True:
                try:
                    index, request = queue.get_nowait()
                except asyncio.QueueEmpty:
                    return
                try:
                    results[index] = await self.search(request.query, request.candidates, request.params)
                finally:
                    queue.task_done()

        await asyncio.gather(*(worker() for _ in range(width)))
        self._stats['batches'] += 1
        return [r if r is not None else [] for r in results]

    async def embed_query(self, query: str) -> np.ndarray:
        normalized = normalize_query(query)
        key = f"q:{normalized}"
        cached = self.embedding_cache.get(key)
        if cached is not None:
            return cached

        text = normalized
        if self.config.enhance_queries:
            text = self.query_enhancer.enhance(query).enhanced
        vector = await self._embed(text)
        self.embedding_cache.set(key, vector)
        return vector

    async def embed_record(self, record: Record) -> np.ndarray:
        if self._stored_embedding_usable(record):
            return np.asarray(record.embedding, dtype=np.float64)

        digest = hashlib.md5(record.content.encode("utf-8")).hexdigest()[:12]
        key = f"r:{record.id}:{digest}"
        cached = self.embedding_cache.get(key)
        if cached is not None:
            return cached

        vector = await self._embed(record.content)
        self.embedding_cache.set(key, vector)
        return vector

    def similarity(self, a: np.ndarray, b: np.ndarray) -> float:
        if len(a) > self.config.approximate_threshold:
            return approximate_similarity(a, b, self.config.approximate_samples)
        return cosine_similarity(a, b)

    def metadata_score(self,
                       record: Record,
                       query: str,
                       params: SearchParams,
                       query_files: Optional[List[str]] = None,
                       now: Optional[datetime] = None) -> float:
        score = 0.0

        files = list(query_files if query_files is not None else extract_query_files(query))
        if params.file_path:
            files.append(params.file_path)
        if record.file_path and any(files_match(record.file_path, f) for f in files):
            score += FILE_MATCH_SCORE

        if params.project_id and record.project_id == params.project_id:
            score += PROJECT_MATCH_SCORE

        lowered = (query or "").lower()
        for tag in record.tags:
            if tag and tag.lower() in lowered:
                score += TAG_MATCH_SCORE

        score += max(0, RECENCY_WINDOW_DAYS - days_since(record.created_at, now))
        return score

    def clear_caches(self) -> None:
        self.embedding_cache.clear()
        self.result_cache.clear()

    def invalidate_results(self) -> None:
        """Drop cached rankings, e.g. after new records were stored."""
        self.result_cache.clear()

    def stats(self) -> Dict[str, Any]:
        return {
            **dict(self._stats),
            'embedding_cache': self.embedding_cache.stats(),
            'result_cache': self.result_cache.stats(),
            'embedder': self.breaker.health.to_dict(),
        }

    async def _rank(self,
                    query: str,
                    candidates: List[Record],
                    params: SearchParams) -> List[ScoredRecord]:
        query_vector = await self.embed_query(query)
        query_files = extract_query_files(query)
        now = datetime.now()

        scored: List[ScoredRecord] = []
        for record in candidates:
            record_vector = await self.embed_record(record)
            similarity = self.similarity(query_vector, record_vector)
            if similarity < params.similarity_threshold:
                continue

            metadata = self.metadata_score(record, query, params, query_files, now)
            scored.append(ScoredRecord(
                record=record,
                similarity=similarity,
                metadata_score=metadata,
                score=combine(similarity, metadata, params.hybrid_weight),
            ))

        scored.sort(key=lambda s: s.score, reverse=True)
        return scored[:params.limit]

    async def _embed(self, text: str) -> np.ndarray:
        vector = await self.breaker.call(self.embedder, text)
        arr = np.asarray(vector, dtype=np.float64)
        if arr.ndim != 1 or arr.size == 0 or not np.all(np.isfinite(arr)):
            raise CollaboratorError("Embedder returned an invalid vector")
        self._stats['embeddings_computed'] += 1
        return arr

    def _stored_embedding_usable(self, record: Record) -> bool:
        if record.embedding is None or record.embedding_version != self.embedding_config.version:
            return False
        width = self.embedding_config.widths.get(record.embedding_version)
        return width is not None and len(record.embedding) == width

    def _emit(self, event_type: str, data: Dict[str, Any]) -> None:
        if self.event_bus is not None:
            self.event_bus.emit_nowait(Event(type=event_type, data=data, source="search"))
