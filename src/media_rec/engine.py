"""
RecommendationEngine: the entry point collaborators call.

Interactive requests run under a timeout and walk an ordered fallback chain
(cached or freshly computed -> stale cache -> popularity -> empty list), so
a recommendation request never fails for internal reasons. Maintenance jobs
hold a single-owner lock so corpus rebuilds never overlap.
"""
import logging
import threading
import uuid
from concurrent.futures import ThreadPoolExecutor, TimeoutError as RequestTimeout
from contextlib import contextmanager
from datetime import datetime, timedelta
from typing import Callable

from .cache import RecommendationCache, content_key, personalized_key, hybrid_key
from .catalog import SqliteCatalog
from .collaborative import CollaborativeService
from .config import (
    CACHE_TTL_CONTENT,
    CACHE_TTL_PERSONALIZED,
    CACHE_TTL_HYBRID,
    DEFAULT_MIN_SCORE,
    DEFAULT_HYBRID_DIVERSITY,
    DEFAULT_EXPLORATION_RATE,
    DEFAULT_PRECOMPUTE_TOP_N,
    REQUEST_TIMEOUT_SECONDS,
    REQUEST_WORKERS,
    REBUILD_LOCK_STALE_SECONDS,
)
from .content import ContentSimilarityService
from .hybrid import HybridRanker
from .models import BatchResult, MediaRef, Recommendation, validate_media_type, validate_interaction_kind
from .profile import ProfileBuilder
from .vectorizer import Vectorizer
from . import database

logger = logging.getLogger(__name__)

CORPUS_JOB = "corpus_rebuild"

Strategy = tuple[str, Callable[[], list[Recommendation] | None]]


class RebuildInProgressError(RuntimeError):
    """Another process or thread already holds the rebuild lock."""


class RecommendationEngine:
    def __init__(
        self,
        catalog=None,
        request_timeout: float = REQUEST_TIMEOUT_SECONDS,
        clock=datetime.now,
    ):
        self.catalog = catalog or SqliteCatalog()
        self.clock = clock
        self.request_timeout = request_timeout

        self.vectorizer = Vectorizer(self.catalog)
        self.content = ContentSimilarityService(self.catalog)
        self.profiles = ProfileBuilder(self.catalog, clock=clock)
        self.collaborative = CollaborativeService(self.catalog, self.profiles, clock=clock)
        self.hybrid = HybridRanker(self.catalog, self.content, self.collaborative)
        self.cache = RecommendationCache(clock=clock)

        self._executor = ThreadPoolExecutor(max_workers=REQUEST_WORKERS, thread_name_prefix="media-rec")
        self._job_locks: dict[str, threading.Lock] = {}
        self._job_locks_guard = threading.Lock()

    def close(self):
        self._executor.shutdown(wait=False)

    # -- request plumbing -------------------------------------------------

    def _with_timeout(self, fn: Callable[[], list[Recommendation]]) -> list[Recommendation]:
        future = self._executor.submit(fn)
        # A timed-out computation keeps running and may still fill the cache
        return future.result(timeout=self.request_timeout)

    def _run_chain(self, label: str, strategies: list[Strategy]) -> list[Recommendation]:
        """Try strategies in order; the first one returning a list wins."""
        for name, strategy in strategies:
            try:
                result = strategy()
            except RequestTimeout:
                logger.warning(f"{label}: {name} timed out after {self.request_timeout}s")
                continue
            except Exception as e:
                logger.warning(f"{label}: {name} failed: {e}")
                continue
            if result is not None:
                if name != "computed":
                    logger.info(f"{label}: served from {name}")
                return result
        logger.error(f"{label}: every strategy failed, returning empty list")
        return []

    def _chain(
        self,
        label: str,
        key: str,
        ttl: int,
        kind: str,
        compute: Callable[[], list[Recommendation]],
        popular: Callable[[], list[Recommendation]],
        user_id: str | None = None,
        media_id: str | None = None,
    ) -> list[Recommendation]:
        return self._run_chain(label, [
            ("computed", lambda: self._with_timeout(
                lambda: self.cache.cached(key, ttl, compute, kind, user_id=user_id, media_id=media_id)
            )),
            ("stale cache", lambda: self.cache.get_stale(key)),
            ("popularity", popular),
        ])

    # -- queries ------------------------------------------------------------

    def get_content_based(
        self,
        ref: MediaRef,
        limit: int = 10,
        min_score: float = DEFAULT_MIN_SCORE,
    ) -> list[Recommendation]:
        ref = MediaRef(validate_media_type(ref.media_type), str(ref.media_id))
        return self._chain(
            f"content_based {ref}",
            content_key(ref, limit, min_score),
            CACHE_TTL_CONTENT,
            "content_based",
            lambda: self.content.get_recommendations(ref, limit=limit, min_score=min_score),
            lambda: self.collaborative.get_popular_items(limit, exclude={ref}),
            media_id=ref.media_id,
        )

    def get_personalized(
        self,
        user_id: str,
        limit: int = 10,
        min_score: float = DEFAULT_MIN_SCORE,
        exclude_viewed: bool = True,
    ) -> list[Recommendation]:
        return self._chain(
            f"personalized {user_id}",
            personalized_key(user_id, limit, min_score, exclude_viewed),
            CACHE_TTL_PERSONALIZED,
            "personalized",
            lambda: self.collaborative.get_personalized_recommendations(
                user_id, limit=limit, min_score=min_score, exclude_viewed=exclude_viewed
            ),
            lambda: self.collaborative.get_popular_items(limit),
            user_id=user_id,
        )

    def get_hybrid(
        self,
        user_id: str,
        anchor: MediaRef | str | None = None,
        limit: int = 10,
        content_weight: float | None = None,
        collaborative_weight: float | None = None,
        diversity_factor: float = DEFAULT_HYBRID_DIVERSITY,
        exploration_rate: float = DEFAULT_EXPLORATION_RATE,
        min_score: float = DEFAULT_MIN_SCORE,
        rerank: bool = False,
    ) -> list[Recommendation]:
        """
        Hybrid recommendations. Weights left as None are chosen adaptively from
        the user's interaction count.
        """
        if isinstance(anchor, str) and ":" in anchor:
            anchor = MediaRef.parse(anchor)
        try:
            anchor = self.hybrid.resolve_anchor(anchor)
        except database.StoreUnavailableError as e:
            logger.warning(f"Could not resolve anchor {anchor}: {e}")
            anchor = None

        options = dict(
            limit=limit,
            diversity_factor=diversity_factor,
            exploration_rate=exploration_rate,
            min_score=min_score,
        )

        def compute() -> list[Recommendation]:
            recs = self.hybrid.get_adaptive_hybrid_recommendations(
                user_id,
                anchor,
                content_weight=content_weight,
                collaborative_weight=collaborative_weight,
                **options,
            )
            return self.hybrid.rerank(user_id, recs) if rerank else recs

        # Adaptive weights only move with new interactions, which invalidate the user's entries
        key_params = {k: v for k, v in options.items() if k != 'limit'}
        key_params['content_weight'] = 'adaptive' if content_weight is None else content_weight
        key_params['collaborative_weight'] = 'adaptive' if collaborative_weight is None else collaborative_weight
        return self._chain(
            f"hybrid {user_id}",
            hybrid_key(user_id, anchor, limit, rerank=rerank, **key_params),
            CACHE_TTL_HYBRID,
            "hybrid",
            compute,
            lambda: self.collaborative.get_popular_items(limit, exclude={anchor} if anchor else None),
            user_id=user_id,
            media_id=anchor.media_id if anchor else None,
        )

    # -- feedback -------------------------------------------------------------

    def track_interaction(
        self,
        user_id: str,
        ref: MediaRef,
        kind: str,
        duration_seconds: int = 0,
        progress_percentage: int = 0,
        metadata: dict | None = None,
    ) -> float:
        """Record an interaction and drop every cache entry scoped to the user."""
        value = self.collaborative.track_interaction(
            user_id,
            ref,
            validate_interaction_kind(kind),
            duration_seconds=duration_seconds,
            progress_percentage=progress_percentage,
            metadata=metadata,
        )
        self.cache.invalidate_user(user_id)
        return value

    def track_recommendation_shown(
        self,
        user_id: str,
        recs: list[Recommendation],
        kind: str,
        recommendation_id: str | None = None,
    ) -> str:
        """Log a displayed list (positions from 1). Returns the id to pass back on click."""
        recommendation_id = recommendation_id or uuid.uuid4().hex
        database.insert_recommendation_metrics(
            recommendation_id,
            user_id,
            kind,
            [(r.media_type, r.media_id, r.score) for r in recs],
            shown_at=self.clock(),
        )
        return recommendation_id

    def track_recommendation_click(self, recommendation_id: str, user_id: str, ref: MediaRef) -> bool:
        """Mark a shown recommendation as clicked and record the click as a view."""
        updated = database.mark_recommendation_clicked(
            recommendation_id, user_id, ref.media_id, clicked_at=self.clock()
        )
        if not updated:
            logger.debug(f"No shown recommendation {recommendation_id} for {user_id} -> {ref}")
        self.track_interaction(user_id, ref, "view")
        return updated > 0

    # -- maintenance ----------------------------------------------------------

    @contextmanager
    def job_lock(self, name: str):
        """
        Single-owner lock for long-running jobs: a process-local lock plus a
        job_locks row so separate processes are serialized too.
        """
        with self._job_locks_guard:
            local = self._job_locks.setdefault(name, threading.Lock())
        if not local.acquire(blocking=False):
            raise RebuildInProgressError(f"Job '{name}' is already running in this process")
        try:
            owner = uuid.uuid4().hex
            if not database.acquire_job_lock(name, owner, REBUILD_LOCK_STALE_SECONDS):
                raise RebuildInProgressError(f"Job '{name}' is already running elsewhere")
            try:
                yield
            finally:
                database.release_job_lock(name, owner)
        finally:
            local.release()

    def rebuild_all_vectors(self, show_progress: bool = False) -> BatchResult:
        with self.job_lock(CORPUS_JOB):
            return self.vectorizer.build_corpus_vectors(show_progress=show_progress)

    def rebuild_item_vector(self, ref: MediaRef):
        return self.vectorizer.build_vector_for_item(MediaRef(validate_media_type(ref.media_type), ref.media_id))

    def precompute_similar_items(self, top_n: int = DEFAULT_PRECOMPUTE_TOP_N, show_progress: bool = False) -> BatchResult:
        with self.job_lock(CORPUS_JOB):
            return self.content.precompute_similar_items(top_n, show_progress=show_progress)

    def prune_expired_cache(self) -> int:
        return self.cache.prune_expired()

    def get_metrics(self, days: int = 7) -> dict:
        since = self.clock() - timedelta(days=days)
        return {
            "metrics": database.load_metrics_summary(since),
            "period_days": days,
            "timestamp": self.clock().isoformat(),
        }

    def stats(self) -> dict[str, int]:
        return database.table_counts()
