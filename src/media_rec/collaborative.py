"""
User-based collaborative filtering.

Neighbours are users whose preference vectors are close to the target's;
the items they engaged with recently become scored candidates. Users with no
history, or no neighbours, get the popularity fallback instead.
"""
import logging
import math
from datetime import datetime, timedelta

from .config import (
    INTERACTION_WEIGHTS,
    DEFAULT_INTERACTION_WEIGHT,
    DEFAULT_MIN_SCORE,
    DEFAULT_RECENCY_WEIGHT,
    MIN_NEIGHBOR_INTERACTIONS,
    MIN_NEIGHBOR_SIMILARITY,
    MAX_NEIGHBORS,
    NEIGHBOR_WINDOW_DAYS,
    RECENCY_DECAY_DAYS,
    POPULARITY_BONUS,
    POPULAR_WINDOW_DAYS,
    POPULAR_MIN_USERS,
    POPULAR_SCORE_DIVISOR,
)
from .database import parse_timestamp_naive
from .models import MediaRef, Recommendation, validate_interaction_kind, validate_media_type
from .profile import ProfileBuilder
from .vectorizer import cosine_similarity
from . import database

logger = logging.getLogger(__name__)


class CollaborativeService:
    def __init__(self, catalog, profiles: ProfileBuilder | None = None, clock=datetime.now):
        self.catalog = catalog
        self.clock = clock
        self.profiles = profiles or ProfileBuilder(catalog, clock=clock)

    def interaction_count(self, user_id: str) -> int:
        return database.count_user_interactions(user_id)

    def get_personalized_recommendations(
        self,
        user_id: str,
        limit: int = 10,
        min_score: float = DEFAULT_MIN_SCORE,
        exclude_viewed: bool = True,
        recency_weight: float = DEFAULT_RECENCY_WEIGHT,
    ) -> list[Recommendation]:
        if limit <= 0:
            return []

        if self.interaction_count(user_id) == 0:
            logger.info(f"User {user_id} has no interactions, using popularity fallback")
            return self.get_popular_items(limit)

        profile = self.profiles.get_profile(user_id)
        if profile is None or not profile.vector:
            logger.info(f"No usable profile for {user_id}, using popularity fallback")
            return self.get_popular_items(limit)

        neighbours = self.find_similar_users(user_id, profile.vector, MAX_NEIGHBORS)
        if not neighbours:
            logger.info(f"No similar users for {user_id}, using popularity fallback")
            return self.get_popular_items(limit)

        recs = self._recommend_from_neighbours(user_id, neighbours, exclude_viewed, recency_weight)
        recs = [r for r in recs if r.score >= min_score]
        recs.sort(key=lambda r: (-r.score, r.ref))
        logger.debug(f"Generated {len(recs)} personalized candidates for {user_id} from {len(neighbours)} neighbours")
        return recs[:limit]

    def find_similar_users(
        self,
        user_id: str,
        vector: dict[str, float],
        limit: int = MAX_NEIGHBORS,
    ) -> list[tuple[str, float]]:
        """
        Users with at least MIN_NEIGHBOR_INTERACTIONS interactions whose profile
        cosine to `vector` exceeds MIN_NEIGHBOR_SIMILARITY, best first.
        """
        scored = []
        for other_id in database.load_active_users(MIN_NEIGHBOR_INTERACTIONS, exclude_user=user_id):
            other = self.profiles.get_profile(other_id)
            if other is None or not other.vector:
                continue
            similarity = cosine_similarity(vector, other.vector)
            if similarity > MIN_NEIGHBOR_SIMILARITY:
                scored.append((other_id, similarity))

        scored.sort(key=lambda x: (-x[1], x[0]))
        return scored[:limit]

    def _recommend_from_neighbours(
        self,
        user_id: str,
        neighbours: list[tuple[str, float]],
        exclude_viewed: bool,
        recency_weight: float,
    ) -> list[Recommendation]:
        now = self.clock()
        similarity_by_user = dict(neighbours)
        viewed = database.load_interacted_keys(user_id) if exclude_viewed else set()
        rows = database.load_interactions_for_users(
            list(similarity_by_user), since=now - timedelta(days=NEIGHBOR_WINDOW_DAYS)
        )

        scores: dict[tuple[str, str], float] = {}
        counts: dict[tuple[str, str], int] = {}
        for row in rows:
            key = (row['media_type'], row['media_id'])
            if key in viewed:
                continue
            kind_weight = INTERACTION_WEIGHTS.get(row['kind'], DEFAULT_INTERACTION_WEIGHT)
            days_ago = max(0.0, (now - parse_timestamp_naive(row['created_at'])).total_seconds() / 86400)
            recency_boost = math.exp(-days_ago / RECENCY_DECAY_DAYS) * recency_weight
            score = similarity_by_user.get(row['user_id'], 0.0) * kind_weight * (1 + recency_boost)
            scores[key] = scores.get(key, 0.0) + score
            counts[key] = row['item_interactions']

        recs = []
        for (media_type, media_id), score in scores.items():
            item = self.catalog.get_item(media_type, media_id)
            if item is None:
                continue
            interactions = counts[(media_type, media_id)]
            final = score * (1 + POPULARITY_BONUS * math.log(interactions + 1))
            recs.append(Recommendation.for_item(
                item,
                min(final, 1.0),
                f"{interactions} similar users enjoyed this",
            ))
        return recs

    def get_popular_items(self, limit: int, exclude: set[MediaRef] | None = None) -> list[Recommendation]:
        """
        Items with the most distinct users over the trailing POPULAR_WINDOW_DAYS.

        Requires POPULAR_MIN_USERS distinct users; score is users / 10 capped at 1.
        """
        if limit <= 0:
            return []
        exclude = exclude or set()
        since = self.clock() - timedelta(days=POPULAR_WINDOW_DAYS)
        rows = database.load_popular_items(since, POPULAR_MIN_USERS, limit + len(exclude))

        recs = []
        for row in rows:
            ref = MediaRef(row['media_type'], row['media_id'])
            if ref in exclude:
                continue
            item = self.catalog.get_item(ref.media_type, ref.media_id)
            if item is None:
                continue
            users = row['unique_users']
            recs.append(Recommendation.for_item(
                item,
                min(users / POPULAR_SCORE_DIVISOR, 1.0),
                f"Popular with {users} users",
            ))
            if len(recs) >= limit:
                break
        return recs

    def track_interaction(
        self,
        user_id: str,
        ref: MediaRef,
        kind: str,
        duration_seconds: int = 0,
        progress_percentage: int = 0,
        metadata: dict | None = None,
    ) -> float:
        """
        Append an interaction; its stored value is the kind weight.

        Returns the stored value.
        """
        kind = validate_interaction_kind(kind)
        media_type = validate_media_type(ref.media_type)
        value = INTERACTION_WEIGHTS.get(kind, DEFAULT_INTERACTION_WEIGHT)
        database.insert_interaction(
            user_id,
            media_type,
            ref.media_id,
            kind,
            value,
            duration_seconds=duration_seconds,
            progress_percentage=progress_percentage,
            metadata=metadata,
            created_at=self.clock(),
        )
        logger.info(f"Tracked {kind} interaction: {user_id} -> {ref}")
        return value
