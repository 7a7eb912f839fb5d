"""
Configuration constants for the media recommendation engine.

This module centralizes all magic numbers and configurable parameters.
Values can be overridden via environment variables where noted.
"""
import os
import logging
from pathlib import Path
from types import MappingProxyType

logger = logging.getLogger(__name__)


def _get_float_env(key: str, default: float, min_val: float = 0) -> float:
    """
    Safely parse float from environment variable with validation.

    Args:
        key: Environment variable name
        default: Default value if not set or invalid
        min_val: Minimum allowed value

    Returns:
        Validated float value
    """
    try:
        val = float(os.environ.get(key, default))
        if val < min_val:
            logger.warning(f"{key}={val} is below minimum {min_val}, using {min_val}")
            return min_val
        return val
    except ValueError:
        logger.warning(f"Invalid {key}='{os.environ.get(key)}', using default {default}")
        return default


def _get_int_env(key: str, default: int, min_val: int = 1) -> int:
    """
    Safely parse integer from environment variable with validation.

    Args:
        key: Environment variable name
        default: Default value if not set or invalid
        min_val: Minimum allowed value

    Returns:
        Validated integer value
    """
    try:
        val = int(os.environ.get(key, default))
        if val < min_val:
            logger.warning(f"{key}={val} is below minimum {min_val}, using {min_val}")
            return min_val
        return val
    except ValueError:
        logger.warning(f"Invalid {key}='{os.environ.get(key)}', using default {default}")
        return default


# Database Configuration
DB_PATH = Path(os.environ.get("MEDIA_REC_DB", "data/media_rec.db"))

MEDIA_TYPES = ("book", "audio", "video")

# Text preprocessing
MIN_TOKEN_LENGTH = 3
STOPWORDS = frozenset({
    'the', 'a', 'an', 'and', 'or', 'but', 'in', 'on', 'at', 'to', 'for',
    'of', 'with', 'by', 'from', 'up', 'about', 'into', 'through', 'during',
    'is', 'are', 'was', 'were', 'be', 'been', 'being', 'have', 'has', 'had',
    'do', 'does', 'did', 'will', 'would', 'could', 'should', 'may', 'might',
    'this', 'that', 'these', 'those', 'i', 'you', 'he', 'she', 'it', 'we', 'they',
})

# Feature text field repetitions (simulates term-frequency weighting before IDF)
FEATURE_REPETITIONS = MappingProxyType({
    'title': 3,
    'description': 2,
    'creator': 2,
    'genre': 2,
    'tags': 1,
})

# Interaction weights - shared by profile building, neighbor scoring and tracking
INTERACTION_WEIGHTS = MappingProxyType({
    'view': 1.0,
    'like': 2.0,
    'share': 3.0,
    'progress': 2.5,
    'complete': 5.0,
})
DEFAULT_INTERACTION_WEIGHT = 1.0

# Profile configuration
TEMPORAL_DECAY_DAYS = 90           # exp(-days / 90); also the profile query window
DURATION_BOOST_CAP_HOURS = 2.0
DURATION_BOOST_FACTOR = 0.5
PROFILE_MAX_AGE_HOURS = _get_int_env("MEDIA_REC_PROFILE_MAX_AGE_HOURS", 24, min_val=1)

# Increment this when UserPreferenceProfile fields or INTERACTION_WEIGHTS change
PROFILE_SCHEMA_VERSION = 1

# Collaborative filtering
MIN_NEIGHBOR_INTERACTIONS = 5
MIN_NEIGHBOR_SIMILARITY = 0.1
MAX_NEIGHBORS = 10
NEIGHBOR_WINDOW_DAYS = 90
RECENCY_DECAY_DAYS = 30
DEFAULT_RECENCY_WEIGHT = 0.3
POPULARITY_BONUS = 0.1

# Popularity fallback
POPULAR_WINDOW_DAYS = 30
POPULAR_MIN_USERS = 3
POPULAR_SCORE_DIVISOR = 10.0

# Content similarity
DEFAULT_MIN_SCORE = 0.1
DEFAULT_SAME_GENRE_BOOST = 1.2
DEFAULT_CONTENT_DIVERSITY = 0.1
NEAR_DUPLICATE_THRESHOLD = 0.9
CANDIDATE_MULTIPLIER = 3
PRECOMPUTE_MIN_SIMILARITY = 0.05
DEFAULT_PRECOMPUTE_TOP_N = _get_int_env("MEDIA_REC_PRECOMPUTE_TOP_N", 20, min_val=1)
SIMILARITY_ALGORITHM = "cosine_tfidf"

# Similarity tiers used for reason strings
HIGH_SIMILARITY_TIER = 0.7
MEDIUM_SIMILARITY_TIER = 0.5

# Hybrid ranking
DEFAULT_CONTENT_WEIGHT = 0.4
DEFAULT_COLLABORATIVE_WEIGHT = 0.6
DEFAULT_HYBRID_DIVERSITY = 0.15
DEFAULT_EXPLORATION_RATE = 0.1
HYBRID_GENRE_BOOST = 1.3
EXPLORATION_SCORE_FACTOR = 0.7

# Diversity enforcement: (free occurrences, penalty base) per dimension
DIVERSITY_RULES = MappingProxyType({
    'genre': (2, 0.9),
    'creator': (1, 0.85),
    'media_type': (3, 0.95),
})

# Adaptive weights by interaction count: (upper bound exclusive, content, collaborative)
ADAPTIVE_WEIGHTS = (
    (5, 0.7, 0.3),
    (20, 0.5, 0.5),
)
ADAPTIVE_WEIGHTS_MATURE = (0.3, 0.7)

# Personal re-ranking
RERANK_GENRE_BOOST = 1.15
RERANK_LANGUAGE_BOOST = 1.1

# Recommendation cache TTLs (seconds)
CACHE_TTL_CONTENT = _get_int_env("MEDIA_REC_CACHE_TTL_CONTENT", 3600, min_val=0)
CACHE_TTL_PERSONALIZED = _get_int_env("MEDIA_REC_CACHE_TTL_PERSONALIZED", 1800, min_val=0)
CACHE_TTL_HYBRID = _get_int_env("MEDIA_REC_CACHE_TTL_HYBRID", 1200, min_val=0)

# Request handling
REQUEST_TIMEOUT_SECONDS = _get_float_env("MEDIA_REC_REQUEST_TIMEOUT", 2.0, min_val=0.1)
REQUEST_WORKERS = _get_int_env("MEDIA_REC_REQUEST_WORKERS", 4, min_val=1)

# Retry policy for store reads
STORE_MAX_RETRIES = 3
STORE_RETRY_DELAY = 0.1
STORE_RETRY_BACKOFF = 2.0

# Rebuild jobs
REBUILD_LOCK_STALE_SECONDS = _get_int_env("MEDIA_REC_LOCK_STALE_SECONDS", 6 * 3600, min_val=1)

# Batch progress logging interval
PROGRESS_LOG_EVERY = 50

# Notifications (Discord/Slack-style webhook) for finished maintenance jobs
NOTIFICATION_WEBHOOK_URL = os.environ.get("MEDIA_REC_WEBHOOK_URL")
