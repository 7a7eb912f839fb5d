"""TTL cache of ranked recommendation lists, keyed by algorithm, scope and parameters."""
import logging
from datetime import datetime
from typing import Callable

from .models import MediaRef, Recommendation
from . import database

logger = logging.getLogger(__name__)


def _fmt(value) -> str:
    if isinstance(value, float):
        return f"{value:g}"
    if isinstance(value, bool):
        return str(value).lower()
    return str(value)


def content_key(ref: MediaRef, limit: int, min_score: float) -> str:
    return f"content_based:{ref.media_type}:{ref.media_id}:limit:{limit}:min:{_fmt(min_score)}"


def personalized_key(user_id: str, limit: int, min_score: float, exclude_viewed: bool) -> str:
    return (
        f"personalized:user:{user_id}:limit:{limit}:min:{_fmt(min_score)}"
        f":exclude:{_fmt(exclude_viewed)}"
    )


def hybrid_key(user_id: str, anchor: MediaRef | None, limit: int, **params) -> str:
    """Hybrid key; extra parameters are appended in sorted order so equal requests collide."""
    anchor_part = anchor.key if anchor else "none"
    key = f"hybrid:user:{user_id}:media:{anchor_part}:limit:{limit}"
    for name in sorted(params):
        key += f":{name}:{_fmt(params[name])}"
    return key


class RecommendationCache:
    """
    Reads and writes recommendation_cache rows.

    An entry is never served after its expiry, except through get_stale which
    the engine only uses when a fresh computation timed out or failed.
    """

    def __init__(self, clock=datetime.now):
        self.clock = clock

    def get(self, key: str) -> list[Recommendation] | None:
        payload = database.cache_get(key, now=self.clock())
        if payload is None:
            logger.debug(f"Cache miss: {key}")
            return None
        logger.debug(f"Cache hit: {key}")
        return [Recommendation.from_dict(r) for r in payload]

    def get_stale(self, key: str) -> list[Recommendation] | None:
        payload = database.cache_get(key, include_expired=True)
        if payload is None:
            return None
        return [Recommendation.from_dict(r) for r in payload]

    def set(
        self,
        key: str,
        recs: list[Recommendation],
        kind: str,
        ttl_seconds: int,
        user_id: str | None = None,
        media_id: str | None = None,
    ) -> None:
        database.cache_set(
            key,
            kind,
            [r.to_dict() for r in recs],
            ttl_seconds,
            user_id=user_id,
            media_id=media_id,
            now=self.clock(),
        )

    def invalidate_user(self, user_id: str) -> int:
        deleted = database.cache_delete_user(user_id)
        if deleted:
            logger.debug(f"Invalidated {deleted} cache entries for user {user_id}")
        return deleted

    def prune_expired(self) -> int:
        deleted = database.cache_prune(now=self.clock())
        logger.info(f"Pruned {deleted} expired cache entries")
        return deleted

    def cached(
        self,
        key: str,
        ttl_seconds: int,
        compute: Callable[[], list[Recommendation]],
        kind: str,
        user_id: str | None = None,
        media_id: str | None = None,
    ) -> list[Recommendation]:
        """Return the live entry for `key`, or compute, store and return a fresh list."""
        hit = self.get(key)
        if hit is not None:
            return hit
        recs = compute()
        self.set(key, recs, kind, ttl_seconds, user_id=user_id, media_id=media_id)
        return recs
