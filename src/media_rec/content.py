"""Content-based similar-item retrieval over TF-IDF vectors."""
import logging

from tqdm import tqdm

from .config import (
    DEFAULT_MIN_SCORE,
    DEFAULT_SAME_GENRE_BOOST,
    DEFAULT_CONTENT_DIVERSITY,
    NEAR_DUPLICATE_THRESHOLD,
    CANDIDATE_MULTIPLIER,
    PRECOMPUTE_MIN_SIMILARITY,
    DEFAULT_PRECOMPUTE_TOP_N,
    SIMILARITY_ALGORITHM,
    HIGH_SIMILARITY_TIER,
    MEDIUM_SIMILARITY_TIER,
    PROGRESS_LOG_EVERY,
)
from .models import BatchResult, MediaItem, MediaRef, Recommendation
from .vectorizer import VectorIndex
from . import database

logger = logging.getLogger(__name__)


def generate_reason(source: MediaItem, target: MediaItem, score: float) -> str:
    """Explain a match from the attributes the two items share."""
    reasons = []
    if target.genre_label and target.genre_label == source.genre_label:
        reasons.append(f"Same genre: {target.genre_label}")
    if target.author and target.author == source.author:
        reasons.append(f"Same author: {target.author}")
    if target.language and target.language == source.language:
        reasons.append("Same language")
    if score > HIGH_SIMILARITY_TIER:
        reasons.append("Highly similar content")
    elif score > MEDIUM_SIMILARITY_TIER:
        reasons.append("Similar content")
    return " • ".join(reasons) if reasons else "Recommended for you"


class ContentSimilarityService:
    """
    Similar items for a source item.

    Reads the precomputed similar_items_cache when it has entries for the
    source, otherwise scans the whole vector corpus.
    """

    def __init__(self, catalog, index_loader=VectorIndex.load):
        self.catalog = catalog
        self._index_loader = index_loader

    def get_recommendations(
        self,
        ref: MediaRef,
        limit: int = 10,
        min_score: float = DEFAULT_MIN_SCORE,
        same_language_only: bool = False,
        same_genre_boost: float = DEFAULT_SAME_GENRE_BOOST,
        diversity_factor: float = DEFAULT_CONTENT_DIVERSITY,
    ) -> list[Recommendation]:
        if limit <= 0:
            return []

        source = self.catalog.get_item(ref.media_type, ref.media_id)
        if source is None:
            logger.debug(f"Content recommendations: {ref} not in catalog")
            return []

        precomputed = self._from_precomputed(source, limit)
        if precomputed:
            logger.debug(f"Found {len(precomputed)} precomputed neighbours for {ref}")
            return precomputed

        return self._compute(
            source,
            limit=limit,
            min_score=min_score,
            same_language_only=same_language_only,
            same_genre_boost=same_genre_boost,
            diversity_factor=diversity_factor,
        )

    def _from_precomputed(self, source: MediaItem, limit: int) -> list[Recommendation]:
        recs = []
        for row in database.load_similar_items(source.media_type, source.media_id, limit):
            target_ref = MediaRef(row['similar_type'], row['similar_id'])
            if target_ref == source.ref:
                continue
            target = self.catalog.get_item(target_ref.media_type, target_ref.media_id)
            if target is None:
                continue
            score = min(float(row['score']), 1.0)
            recs.append(Recommendation.for_item(target, score, generate_reason(source, target, score)))
        return recs

    def _compute(
        self,
        source: MediaItem,
        limit: int,
        min_score: float,
        same_language_only: bool,
        same_genre_boost: float,
        diversity_factor: float,
    ) -> list[Recommendation]:
        index = self._index_loader()
        if source.ref not in index:
            logger.warning(f"No vector found for {source.ref}")
            return []

        neighbours = index.nearest(source.ref, limit * CANDIDATE_MULTIPLIER, min_score)
        recs = []
        for target_ref, similarity in neighbours:
            target = self.catalog.get_item(target_ref.media_type, target_ref.media_id)
            if target is None:
                continue
            if same_language_only and target.language != source.language:
                continue

            score = similarity
            if target.genre_label == source.genre_label:
                score *= same_genre_boost
            # Near-duplicates are pushed down, not removed
            if score > NEAR_DUPLICATE_THRESHOLD:
                score *= (1 - diversity_factor)

            recs.append(Recommendation.for_item(
                target,
                max(0.0, min(score, 1.0)),
                generate_reason(source, target, score),
            ))

        recs.sort(key=lambda r: -r.score)
        return recs[:limit]

    def precompute_similar_items(self, top_n: int = DEFAULT_PRECOMPUTE_TOP_N, show_progress: bool = False) -> BatchResult:
        """
        Clear the similar-items index and recompute top_n neighbours per vector.

        Should run after every corpus rebuild.
        """
        result = BatchResult()
        cleared = database.clear_similar_items()
        index = self._index_loader()
        logger.info(f"Precomputing similar items for {len(index)} items (cleared {cleared} entries)")

        for ref in tqdm(list(index.vectors), desc="Similar items", disable=not show_progress):
            try:
                neighbours = index.nearest(ref, top_n, PRECOMPUTE_MIN_SIMILARITY)
                database.replace_similar_items(
                    ref.media_type,
                    ref.media_id,
                    [(n.media_type, n.media_id, score) for n, score in neighbours],
                    algorithm=SIMILARITY_ALGORITHM,
                )
                result.processed += 1
                if result.processed % PROGRESS_LOG_EVERY == 0:
                    logger.info(f"Processed {result.processed}/{len(index)} items")
            except Exception as e:
                result.errors += 1
                logger.error(f"Error precomputing neighbours for {ref}: {e}")

        logger.info(f"Precomputation complete: {result.processed} processed, {result.errors} errors")
        return result
