"""
Hybrid fusion of content-based and collaborative candidates.

Pipeline: gather -> merge -> diversity penalties -> exploration -> sort/truncate,
with optional adaptive weights and favourite-based re-ranking.
"""
from dataclasses import replace
import logging
import math

from .config import (
    MEDIA_TYPES,
    CANDIDATE_MULTIPLIER,
    DEFAULT_MIN_SCORE,
    DEFAULT_CONTENT_WEIGHT,
    DEFAULT_COLLABORATIVE_WEIGHT,
    DEFAULT_HYBRID_DIVERSITY,
    DEFAULT_EXPLORATION_RATE,
    DEFAULT_CONTENT_DIVERSITY,
    DEFAULT_RECENCY_WEIGHT,
    HYBRID_GENRE_BOOST,
    EXPLORATION_SCORE_FACTOR,
    DIVERSITY_RULES,
    ADAPTIVE_WEIGHTS,
    ADAPTIVE_WEIGHTS_MATURE,
    RERANK_GENRE_BOOST,
    RERANK_LANGUAGE_BOOST,
)
from .collaborative import CollaborativeService
from .content import ContentSimilarityService
from .models import MediaRef, Recommendation
from . import database

logger = logging.getLogger(__name__)

CONTENT_REASON = "Similar content"
COLLABORATIVE_REASON = "Users like you enjoyed this"
EXPLORATION_REASON = "Discover something new"


def merge_recommendations(
    content_recs: list[Recommendation],
    collaborative_recs: list[Recommendation],
    content_weight: float,
    collaborative_weight: float,
) -> list[Recommendation]:
    """
    Weighted merge keyed by (type, id).

    The weighted sum is divided by the weights of the lists the item actually
    scored in, so a single-source item is not diluted by the other list's weight.
    Order: content items first, then collaborative-only items.
    """
    merged: dict[MediaRef, list] = {}
    for rec in content_recs:
        merged[rec.ref] = [rec, rec.score, 0.0]
    for rec in collaborative_recs:
        if rec.ref in merged:
            merged[rec.ref][2] = rec.score
        else:
            merged[rec.ref] = [rec, 0.0, rec.score]

    results = []
    for rec, content_score, collaborative_score in merged.values():
        total_weight = (
            (content_weight if content_score > 0 else 0.0)
            + (collaborative_weight if collaborative_score > 0 else 0.0)
        )
        if total_weight <= 0:
            total_weight = 1.0
        score = (content_score * content_weight + collaborative_score * collaborative_weight) / total_weight

        reasons = []
        if content_score > 0:
            reasons.append(CONTENT_REASON)
        if collaborative_score > 0:
            reasons.append(COLLABORATIVE_REASON)
        results.append(replace(rec, score=score, reason=" • ".join(reasons)))
    return results


def _diversity_keys(rec: Recommendation) -> dict[str, str]:
    return {
        'genre': rec.genre or 'unknown',
        'creator': rec.creator or 'unknown',
        'media_type': rec.media_type,
    }


def enforce_diversity(recs: list[Recommendation], diversity_factor: float) -> list[Recommendation]:
    """
    Penalize over-represented genres, creators and media types.

    Walks the list in its current order; an item's penalty depends on how many
    earlier items share its attributes. The raw penalty is blended toward 1.0
    by `diversity_factor` (0 leaves scores untouched).
    """
    if diversity_factor == 0:
        return list(recs)

    seen: dict[str, dict[str, int]] = {dim: {} for dim in DIVERSITY_RULES}
    results = []
    for rec in recs:
        penalty = 1.0
        for dim, value in _diversity_keys(rec).items():
            free, base = DIVERSITY_RULES[dim]
            occurrences = seen[dim].get(value, 0)
            if occurrences > free:
                penalty *= base ** (occurrences - free)
            seen[dim][value] = occurrences + 1

        effective = 1 - (1 - penalty) * diversity_factor
        results.append(replace(rec, score=rec.score * effective))
    return results


def rerank(recs: list[Recommendation], favorite_genres, favorite_languages) -> list[Recommendation]:
    """Boost favourite genres (×1.15) and languages (×1.1), cap at 1.0, re-sort."""
    genres = set(favorite_genres or ())
    languages = set(favorite_languages or ())
    boosted = []
    for rec in recs:
        boost = 1.0
        if rec.genre and rec.genre in genres:
            boost *= RERANK_GENRE_BOOST
        if rec.language and rec.language in languages:
            boost *= RERANK_LANGUAGE_BOOST
        boosted.append(replace(rec, score=min(rec.score * boost, 1.0)))
    boosted.sort(key=lambda r: -r.score)
    return boosted


def adaptive_weights_for(interaction_count: int) -> tuple[float, float]:
    for upper, content_weight, collaborative_weight in ADAPTIVE_WEIGHTS:
        if interaction_count < upper:
            return content_weight, collaborative_weight
    return ADAPTIVE_WEIGHTS_MATURE


class HybridRanker:
    def __init__(self, catalog, content: ContentSimilarityService, collaborative: CollaborativeService):
        self.catalog = catalog
        self.content = content
        self.collaborative = collaborative

    def resolve_anchor(self, anchor: MediaRef | str | None) -> MediaRef | None:
        """
        Accept a MediaRef, 'type:id', or a bare id.

        Bare ids are looked up as book, then audio, then video.
        """
        if anchor is None or isinstance(anchor, MediaRef):
            return anchor
        if ":" in anchor:
            return MediaRef.parse(anchor)
        for media_type in MEDIA_TYPES:
            if self.catalog.get_item(media_type, anchor) is not None:
                return MediaRef(media_type, anchor)
        logger.debug(f"Anchor {anchor} not found in catalog")
        return None

    def get_hybrid_recommendations(
        self,
        user_id: str,
        anchor: MediaRef | str | None = None,
        limit: int = 10,
        content_weight: float = DEFAULT_CONTENT_WEIGHT,
        collaborative_weight: float = DEFAULT_COLLABORATIVE_WEIGHT,
        diversity_factor: float = DEFAULT_HYBRID_DIVERSITY,
        exploration_rate: float = DEFAULT_EXPLORATION_RATE,
        min_score: float = DEFAULT_MIN_SCORE,
    ) -> list[Recommendation]:
        if limit <= 0:
            return []
        anchor = self.resolve_anchor(anchor)
        logger.debug(
            f"Hybrid for {user_id} (anchor={anchor}): content={content_weight}, "
            f"collaborative={collaborative_weight}"
        )

        # A user with no history and no anchor has nothing to personalize on
        if anchor is None and self.collaborative.interaction_count(user_id) == 0:
            logger.info(f"Cold start for {user_id}: returning popular items")
            return self.collaborative.get_popular_items(limit)

        candidate_limit = limit * CANDIDATE_MULTIPLIER
        collaborative_recs: list[Recommendation] = []
        content_recs: list[Recommendation] = []

        if collaborative_weight > 0:
            collaborative_recs = self.collaborative.get_personalized_recommendations(
                user_id,
                limit=candidate_limit,
                min_score=min_score * 0.8,
                exclude_viewed=True,
                recency_weight=DEFAULT_RECENCY_WEIGHT,
            )

        if anchor is not None and content_weight > 0:
            content_recs = self.content.get_recommendations(
                anchor,
                limit=candidate_limit,
                min_score=min_score * 0.8,
                same_language_only=False,
                same_genre_boost=HYBRID_GENRE_BOOST,
                diversity_factor=DEFAULT_CONTENT_DIVERSITY,
            )
            # Never hand back the anchor itself
            content_recs = [r for r in content_recs if r.ref != anchor]

        merged = merge_recommendations(content_recs, collaborative_recs, content_weight, collaborative_weight)
        if not merged:
            logger.info(f"No hybrid candidates for {user_id}, using popular items")
            return self.collaborative.get_popular_items(limit)

        diverse = enforce_diversity(merged, diversity_factor)
        final = self.add_exploration(diverse, exploration_rate, limit, anchor=anchor)
        final.sort(key=lambda r: -r.score)
        logger.debug(
            f"Hybrid for {user_id}: {len(content_recs)} content, {len(collaborative_recs)} collaborative, "
            f"{len(final)} after exploration"
        )
        return [replace(r, score=max(0.0, min(r.score, 1.0))) for r in final[:limit]]

    def add_exploration(
        self,
        recs: list[Recommendation],
        exploration_rate: float,
        limit: int,
        anchor: MediaRef | None = None,
    ) -> list[Recommendation]:
        """Append ceil(limit × rate) popular items not already present, at 70% score."""
        if exploration_rate <= 0:
            return list(recs)
        count = math.ceil(limit * exploration_rate)
        if count == 0:
            return list(recs)

        existing = {r.ref for r in recs}
        if anchor is not None:
            existing.add(anchor)
        popular = self.collaborative.get_popular_items(count, exclude=existing)
        exploration = [
            replace(item, score=item.score * EXPLORATION_SCORE_FACTOR, reason=EXPLORATION_REASON)
            for item in popular[:count]
        ]
        return list(recs) + exploration

    def get_adaptive_weights(self, user_id: str) -> tuple[float, float]:
        """(content_weight, collaborative_weight) by how much history the user has."""
        return adaptive_weights_for(self.collaborative.interaction_count(user_id))

    def get_adaptive_hybrid_recommendations(
        self,
        user_id: str,
        anchor: MediaRef | str | None = None,
        content_weight: float | None = None,
        collaborative_weight: float | None = None,
        **options,
    ) -> list[Recommendation]:
        """Hybrid recommendations where any weight left as None follows the user's history."""
        if content_weight is None or collaborative_weight is None:
            adaptive_content, adaptive_collaborative = self.get_adaptive_weights(user_id)
            if content_weight is None:
                content_weight = adaptive_content
            if collaborative_weight is None:
                collaborative_weight = adaptive_collaborative
        logger.debug(f"Adaptive weights for {user_id}: content={content_weight}, collaborative={collaborative_weight}")
        return self.get_hybrid_recommendations(
            user_id,
            anchor,
            content_weight=content_weight,
            collaborative_weight=collaborative_weight,
            **options,
        )

    def rerank(self, user_id: str, recs: list[Recommendation]) -> list[Recommendation]:
        """Re-rank against the user's stored favourites; unchanged when there is no profile."""
        row = database.load_preference_profile(user_id)
        if not row:
            return recs
        return rerank(recs, row['favorite_genres'], row['favorite_languages'])
