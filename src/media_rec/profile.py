import logging
import math
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from .database import parse_timestamp_naive
from .config import (
    INTERACTION_WEIGHTS,
    DEFAULT_INTERACTION_WEIGHT,
    TEMPORAL_DECAY_DAYS,
    DURATION_BOOST_CAP_HOURS,
    DURATION_BOOST_FACTOR,
    PROFILE_MAX_AGE_HOURS,
)
from . import database

logger = logging.getLogger(__name__)


@dataclass
class UserPreferenceProfile:
    """Aggregated preference vector and coarse summaries for one user."""
    user_id: str
    vector: dict[str, float] = field(default_factory=dict)
    favorite_genres: list[str] = field(default_factory=list)
    favorite_languages: list[str] = field(default_factory=list)
    interaction_count: int = 0
    avg_completion_rate: float = 0.0
    last_updated: datetime = field(default_factory=datetime.now)

    def is_fresh(self, now: datetime | None = None) -> bool:
        now = now or datetime.now()
        return now - self.last_updated <= timedelta(hours=PROFILE_MAX_AGE_HOURS)

    @classmethod
    def from_row(cls, row: dict) -> "UserPreferenceProfile":
        return cls(
            user_id=row['user_id'],
            vector=row.get('vector') or {},
            favorite_genres=list(row.get('favorite_genres') or []),
            favorite_languages=list(row.get('favorite_languages') or []),
            interaction_count=row.get('interaction_count') or 0,
            avg_completion_rate=row.get('avg_completion_rate') or 0.0,
            last_updated=parse_timestamp_naive(row['updated_at']),
        )


def _temporal_decay(created_at: datetime | str, now: datetime) -> float:
    """exp(-days / 90) with fractional days; future timestamps count as now."""
    if isinstance(created_at, str):
        created_at = parse_timestamp_naive(created_at)
    days = max(0.0, (now - created_at).total_seconds() / 86400)
    return math.exp(-days / TEMPORAL_DECAY_DAYS)


def _duration_boost(duration_seconds: int | None) -> float:
    if not duration_seconds or duration_seconds <= 0:
        return 1.0
    hours = min(duration_seconds / 3600, DURATION_BOOST_CAP_HOURS)
    return 1 + DURATION_BOOST_FACTOR * hours


def interaction_weight(
    kind: str,
    value: float,
    created_at: datetime | str,
    duration_seconds: int = 0,
    now: datetime | None = None,
) -> float:
    """
    Weight of one interaction in the user's profile.

    kind weight × explicit value × exp(-days/90) × (1 + 0.5·min(hours, 2))
    """
    now = now or datetime.now()
    weight = INTERACTION_WEIGHTS.get(kind, DEFAULT_INTERACTION_WEIGHT)
    weight *= value if value is not None else 1.0
    weight *= _temporal_decay(created_at, now)
    weight *= _duration_boost(duration_seconds)
    return weight


class ProfileBuilder:
    """Builds user preference profiles from interaction history."""

    def __init__(self, catalog, clock=datetime.now):
        self.catalog = catalog
        self.clock = clock

    def get_profile(self, user_id: str) -> UserPreferenceProfile | None:
        """
        Stored profile if it is less than PROFILE_MAX_AGE_HOURS old, otherwise
        a freshly rebuilt one. None when the user has no recent interactions.
        """
        now = self.clock()
        row = database.load_preference_profile(user_id)
        if row:
            profile = UserPreferenceProfile.from_row(row)
            if profile.is_fresh(now):
                logger.debug(f"Using cached profile for {user_id}")
                return profile
        return self.rebuild_profile(user_id)

    def rebuild_profile(self, user_id: str) -> UserPreferenceProfile | None:
        now = self.clock()
        since = now - timedelta(days=TEMPORAL_DECAY_DAYS)
        interactions = database.load_user_interactions(user_id, since=since)
        if not interactions:
            logger.debug(f"No interactions in the last {TEMPORAL_DECAY_DAYS} days for {user_id}")
            return None

        refs = [(i['media_type'], i['media_id']) for i in interactions]
        vectors = database.load_media_vectors_batch(refs)

        aggregate: dict[str, float] = {}
        total_weight = 0.0
        for interaction in interactions:
            stored = vectors.get((interaction['media_type'], interaction['media_id']))
            if not stored:
                continue
            weight = interaction_weight(
                interaction['kind'],
                interaction['value'],
                interaction['created_at'],
                interaction['duration_seconds'],
                now=now,
            )
            for term, term_weight in stored['vector'].items():
                aggregate[term] = aggregate.get(term, 0.0) + term_weight * weight
            total_weight += weight

        # Weighted mean, not an L2 renormalization
        if total_weight > 0:
            aggregate = {term: w / total_weight for term, w in aggregate.items()}

        genres: dict[str, None] = {}
        languages: dict[str, None] = {}
        for media_type, media_id in dict.fromkeys(refs):
            item = self.catalog.get_item(media_type, media_id)
            if item is None:
                continue
            if item.genre_label:
                genres[item.genre_label] = None
            if item.language:
                languages[item.language] = None

        completes = sum(1 for i in interactions if i['kind'] == 'complete')
        profile = UserPreferenceProfile(
            user_id=user_id,
            vector=aggregate,
            favorite_genres=list(genres),
            favorite_languages=list(languages),
            interaction_count=len(interactions),
            avg_completion_rate=completes / len(interactions),
            last_updated=now,
        )
        database.save_preference_profile(
            user_id,
            profile.vector,
            profile.favorite_genres,
            profile.favorite_languages,
            profile.interaction_count,
            profile.avg_completion_rate,
            updated_at=now,
        )
        logger.debug(
            f"Rebuilt profile for {user_id}: {len(interactions)} interactions, "
            f"{len(aggregate)} terms, {len(genres)} genres"
        )
        return profile

    def favorites(self, user_id: str) -> tuple[list[str], list[str]]:
        """(favorite_genres, favorite_languages), empty when there is no profile."""
        profile = self.get_profile(user_id)
        if profile is None:
            return [], []
        return profile.favorite_genres, profile.favorite_languages
