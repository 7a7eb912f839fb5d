import sqlite3
import json
import logging
import threading
from contextlib import contextmanager
from datetime import datetime, timedelta
from functools import wraps

from .config import (
    DB_PATH,
    STORE_MAX_RETRIES,
    STORE_RETRY_DELAY,
    STORE_RETRY_BACKOFF,
)
from .utils import retry_with_backoff, chunked

logger = logging.getLogger(__name__)

# SQLite caps bound parameters at 999 on older builds
PARAM_CHUNK_SIZE = 900


class StoreUnavailableError(RuntimeError):
    """The persistent store could not be read; callers may retry later."""


def parse_timestamp_naive(timestamp_str: str) -> datetime:
    """
    Parse ISO format timestamp string to naive datetime.

    Always returns a naive datetime regardless of whether the stored
    timestamp carried timezone info, so comparisons never mix naive and aware values.
    """
    dt = datetime.fromisoformat(timestamp_str)
    return dt.replace(tzinfo=None) if dt.tzinfo else dt


def format_timestamp(dt: datetime | None = None) -> str:
    """Serialize a datetime in the single format used for every stored timestamp."""
    dt = dt or datetime.now()
    if dt.tzinfo:
        dt = dt.replace(tzinfo=None)
    return dt.isoformat(timespec="microseconds")


class ConnectionPool:
    """
    One SQLite connection per thread, plus a per-thread transaction depth so
    nested get_db() blocks share a single commit.

    Connections of exited threads are only reclaimed once the pool is full.
    """

    def __init__(self, db_path, max_size: int = 50):
        self._db_path = db_path
        self._max_size = max_size
        self._lock = threading.Lock()
        self._connections: dict[int, sqlite3.Connection] = {}
        self._depth: dict[int, int] = {}

    def _connect(self) -> sqlite3.Connection:
        conn = sqlite3.connect(self._db_path, check_same_thread=False, timeout=5.0)
        conn.row_factory = sqlite3.Row
        conn.execute("PRAGMA journal_mode = WAL")
        conn.execute("PRAGMA synchronous = NORMAL")
        return conn

    def _reclaim_dead(self) -> None:
        alive = {t.ident for t in threading.enumerate()}
        for thread_id in set(self._connections) - alive:
            self._depth.pop(thread_id, None)
            self._connections.pop(thread_id).close()
        logger.debug(f"Connection pool reclaimed, {len(self._connections)} open")

    def get_connection(self) -> sqlite3.Connection:
        thread_id = threading.get_ident()
        with self._lock:
            conn = self._connections.get(thread_id)
            if conn is not None:
                return conn
            if len(self._connections) >= self._max_size:
                self._reclaim_dead()
                if len(self._connections) >= self._max_size:
                    raise StoreUnavailableError(f"Connection pool exhausted ({self._max_size} connections)")
            conn = self._connections[thread_id] = self._connect()
            self._depth[thread_id] = 0
            return conn

    def enter_transaction(self) -> bool:
        """Returns True for the outermost block of the calling thread."""
        thread_id = threading.get_ident()
        with self._lock:
            depth = self._depth.get(thread_id, 0)
            self._depth[thread_id] = depth + 1
            return depth == 0

    def exit_transaction(self) -> None:
        thread_id = threading.get_ident()
        with self._lock:
            self._depth[thread_id] = max(0, self._depth.get(thread_id, 1) - 1)

    def close_all(self) -> None:
        with self._lock:
            for conn in self._connections.values():
                conn.close()
            self._connections.clear()
            self._depth.clear()


_pool: ConnectionPool | None = None
_pool_lock = threading.Lock()


def _get_pool() -> ConnectionPool:
    global _pool
    if _pool is None:
        with _pool_lock:
            if _pool is None:
                DB_PATH.parent.mkdir(exist_ok=True, parents=True)
                _pool = ConnectionPool(DB_PATH)
    return _pool


@contextmanager
def get_db(read_only: bool = False):
    """
    Get database connection with proper transaction handling.

    Args:
        read_only: If True, skip commit on exit

    Nested calls reuse the thread's connection; only the outermost
    context commits or rolls back.
    """
    pool = _get_pool()
    conn = pool.get_connection()
    is_outermost = pool.enter_transaction()

    try:
        yield conn
        if is_outermost and not read_only:
            conn.commit()
    except Exception:
        if is_outermost:
            conn.rollback()
        raise
    finally:
        pool.exit_transaction()


def close_pool():
    """Close the connection pool. Call on application shutdown."""
    global _pool
    if _pool is not None:
        _pool.close_all()
        _pool = None


def store_read(func):
    """
    Retry transient read failures, then surface them as StoreUnavailableError.
    """
    retrying = retry_with_backoff(
        max_retries=STORE_MAX_RETRIES,
        initial_delay=STORE_RETRY_DELAY,
        backoff_factor=STORE_RETRY_BACKOFF,
        exceptions=(sqlite3.OperationalError,),
    )(func)

    @wraps(func)
    def wrapper(*args, **kwargs):
        try:
            return retrying(*args, **kwargs)
        except sqlite3.DatabaseError as e:
            raise StoreUnavailableError(f"{func.__name__}: {e}") from e

    return wrapper


def load_json(val, default=None):
    """Safely load JSON from db field."""
    if default is None:
        default = []
    if val is None or val == "":
        return default
    if isinstance(val, (list, dict)):
        return val
    try:
        return json.loads(val)
    except (json.JSONDecodeError, TypeError) as e:
        logger.warning(f"Failed to parse JSON '{str(val)[:50]}...': {e}")
        return default


def init_db() -> None:
    DB_PATH.parent.mkdir(exist_ok=True, parents=True)
    with get_db() as conn:
        conn.executescript("""
            -- Catalog records (owned by the catalog collaborator, read-only to the engine)
            CREATE TABLE IF NOT EXISTS media_items (
                media_type TEXT NOT NULL CHECK (media_type IN ('book', 'audio', 'video')),
                media_id TEXT NOT NULL,
                title TEXT NOT NULL,
                description TEXT,
                author TEXT,
                narrator TEXT,
                genre TEXT,
                category TEXT,
                language TEXT,
                tags TEXT,          -- JSON list
                image_url TEXT,
                is_active INTEGER DEFAULT 1,
                updated_at TEXT,
                PRIMARY KEY (media_type, media_id)
            );

            CREATE TABLE IF NOT EXISTS media_vectors (
                media_type TEXT NOT NULL,
                media_id TEXT NOT NULL,
                vector TEXT NOT NULL,       -- JSON {term: weight}, L2-normalized
                magnitude REAL NOT NULL DEFAULT 0,
                feature_text TEXT,
                language TEXT,
                genres TEXT,                -- JSON list
                tags TEXT,                  -- JSON list
                updated_at TEXT,
                PRIMARY KEY (media_type, media_id)
            );

            CREATE TABLE IF NOT EXISTS similar_items_cache (
                media_type TEXT NOT NULL,
                media_id TEXT NOT NULL,
                similar_type TEXT NOT NULL,
                similar_id TEXT NOT NULL,
                score REAL NOT NULL,
                rank INTEGER NOT NULL,
                algorithm TEXT DEFAULT 'cosine_tfidf',
                computed_at TEXT,
                PRIMARY KEY (media_type, media_id, similar_type, similar_id)
            );

            CREATE TABLE IF NOT EXISTS user_interactions (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                user_id TEXT NOT NULL,
                media_type TEXT NOT NULL,
                media_id TEXT NOT NULL,
                kind TEXT NOT NULL CHECK (kind IN ('view', 'like', 'share', 'complete', 'progress')),
                value REAL DEFAULT 1.0,
                duration_seconds INTEGER DEFAULT 0,
                progress_percentage INTEGER DEFAULT 0,
                metadata TEXT,              -- JSON object
                created_at TEXT NOT NULL
            );

            CREATE TABLE IF NOT EXISTS user_preference_profiles (
                user_id TEXT PRIMARY KEY,
                vector TEXT NOT NULL,       -- JSON {term: weight}
                favorite_genres TEXT,       -- JSON list
                favorite_languages TEXT,    -- JSON list
                interaction_count INTEGER DEFAULT 0,
                avg_completion_rate REAL DEFAULT 0,
                schema_version INTEGER DEFAULT 0,
                updated_at TEXT NOT NULL
            );

            CREATE TABLE IF NOT EXISTS recommendation_cache (
                cache_key TEXT PRIMARY KEY,
                kind TEXT NOT NULL,
                user_id TEXT,
                media_id TEXT,
                payload TEXT NOT NULL,      -- JSON list of recommendations
                ttl_seconds INTEGER,
                created_at TEXT NOT NULL,
                expires_at TEXT NOT NULL
            );

            CREATE TABLE IF NOT EXISTS recommendation_metrics (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                recommendation_id TEXT NOT NULL,
                user_id TEXT NOT NULL,
                media_type TEXT NOT NULL,
                media_id TEXT NOT NULL,
                kind TEXT NOT NULL,
                position INTEGER NOT NULL,
                score REAL NOT NULL,
                was_clicked INTEGER DEFAULT 0,
                shown_at TEXT NOT NULL,
                clicked_at TEXT
            );

            CREATE TABLE IF NOT EXISTS job_locks (
                name TEXT PRIMARY KEY,
                owner TEXT NOT NULL,
                acquired_at TEXT NOT NULL
            );

            CREATE INDEX IF NOT EXISTS idx_media_items_active ON media_items(is_active);
            CREATE INDEX IF NOT EXISTS idx_media_items_id ON media_items(media_id);
            CREATE INDEX IF NOT EXISTS idx_media_vectors_language ON media_vectors(language);
            CREATE INDEX IF NOT EXISTS idx_media_vectors_updated ON media_vectors(updated_at DESC);
            CREATE INDEX IF NOT EXISTS idx_similar_items_media ON similar_items_cache(media_type, media_id, rank);
            CREATE INDEX IF NOT EXISTS idx_interactions_user ON user_interactions(user_id);
            CREATE INDEX IF NOT EXISTS idx_interactions_media ON user_interactions(media_type, media_id);
            CREATE INDEX IF NOT EXISTS idx_interactions_created ON user_interactions(created_at DESC);
            CREATE INDEX IF NOT EXISTS idx_interactions_user_created ON user_interactions(user_id, created_at);
            CREATE INDEX IF NOT EXISTS idx_profiles_updated ON user_preference_profiles(updated_at DESC);
            CREATE INDEX IF NOT EXISTS idx_cache_user ON recommendation_cache(user_id);
            CREATE INDEX IF NOT EXISTS idx_cache_expires ON recommendation_cache(expires_at);
            CREATE INDEX IF NOT EXISTS idx_metrics_rec ON recommendation_metrics(recommendation_id, user_id, media_id);
            CREATE INDEX IF NOT EXISTS idx_metrics_shown ON recommendation_metrics(shown_at DESC);
        """)


# ---------------------------------------------------------------------------
# Catalog
# ---------------------------------------------------------------------------

def upsert_media_items(items: list[dict]) -> int:
    """Insert or replace catalog rows. Each dict uses media_items column names."""
    if not items:
        return 0
    now = format_timestamp()
    rows = [
        (
            item['media_type'], str(item['media_id']), item.get('title') or '',
            item.get('description'), item.get('author'), item.get('narrator'),
            item.get('genre'), item.get('category'), item.get('language'),
            json.dumps(item.get('tags') or []), item.get('image_url'),
            1 if item.get('is_active', True) else 0, item.get('updated_at') or now,
        )
        for item in items
    ]
    with get_db() as conn:
        conn.executemany("""
            INSERT OR REPLACE INTO media_items
            (media_type, media_id, title, description, author, narrator, genre, category,
             language, tags, image_url, is_active, updated_at)
            VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
        """, rows)
    return len(rows)


def _media_row_to_dict(row) -> dict:
    data = dict(row)
    data['tags'] = load_json(data.get('tags'))
    return data


@store_read
def load_media_items(media_type: str | None = None) -> list[dict]:
    """Load active catalog rows, optionally for a single media type."""
    query = "SELECT * FROM media_items WHERE is_active = 1"
    params: tuple = ()
    if media_type:
        query += " AND media_type = ?"
        params = (media_type,)
    query += " ORDER BY media_type, media_id"
    with get_db(read_only=True) as conn:
        return [_media_row_to_dict(r) for r in conn.execute(query, params)]


@store_read
def load_media_item(media_type: str, media_id: str) -> dict | None:
    with get_db(read_only=True) as conn:
        row = conn.execute(
            "SELECT * FROM media_items WHERE media_type = ? AND media_id = ? AND is_active = 1",
            (media_type, media_id),
        ).fetchone()
        return _media_row_to_dict(row) if row else None


# ---------------------------------------------------------------------------
# Media vectors
# ---------------------------------------------------------------------------

def save_media_vector(
    media_type: str,
    media_id: str,
    vector: dict[str, float],
    magnitude: float,
    feature_text: str,
    language: str | None,
    genres: list[str],
    tags: list[str],
) -> None:
    """Upsert one vector; the stored vector is always replaced whole."""
    with get_db() as conn:
        conn.execute("""
            INSERT INTO media_vectors
            (media_type, media_id, vector, magnitude, feature_text, language, genres, tags, updated_at)
            VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
            ON CONFLICT (media_type, media_id) DO UPDATE SET
                vector = excluded.vector,
                magnitude = excluded.magnitude,
                feature_text = excluded.feature_text,
                language = excluded.language,
                genres = excluded.genres,
                tags = excluded.tags,
                updated_at = excluded.updated_at
        """, (
            media_type, media_id, json.dumps(vector), magnitude, feature_text,
            language, json.dumps(genres), json.dumps(tags), format_timestamp(),
        ))


def _vector_row_to_dict(row) -> dict:
    data = dict(row)
    data['vector'] = load_json(data.get('vector'), default={})
    data['genres'] = load_json(data.get('genres'))
    data['tags'] = load_json(data.get('tags'))
    return data


@store_read
def load_media_vector(media_type: str, media_id: str) -> dict | None:
    with get_db(read_only=True) as conn:
        row = conn.execute(
            "SELECT * FROM media_vectors WHERE media_type = ? AND media_id = ?",
            (media_type, media_id),
        ).fetchone()
        return _vector_row_to_dict(row) if row else None


@store_read
def load_media_vectors_batch(refs: list[tuple[str, str]]) -> dict[tuple[str, str], dict]:
    """Load vectors for many (media_type, media_id) pairs in one pass."""
    result: dict[tuple[str, str], dict] = {}
    unique = list(dict.fromkeys(refs))
    with get_db(read_only=True) as conn:
        for chunk in chunked(unique, PARAM_CHUNK_SIZE // 2):
            clause = " OR ".join("(media_type = ? AND media_id = ?)" for _ in chunk)
            params = [value for ref in chunk for value in ref]
            for row in conn.execute(f"SELECT * FROM media_vectors WHERE {clause}", params):
                data = _vector_row_to_dict(row)
                result[(data['media_type'], data['media_id'])] = data
    return result


@store_read
def load_all_media_vectors() -> list[dict]:
    """All stored vectors, most recently updated first."""
    with get_db(read_only=True) as conn:
        rows = conn.execute("SELECT * FROM media_vectors ORDER BY updated_at DESC, media_type, media_id")
        return [_vector_row_to_dict(r) for r in rows]


# ---------------------------------------------------------------------------
# Similar items index
# ---------------------------------------------------------------------------

def clear_similar_items() -> int:
    with get_db() as conn:
        return conn.execute("DELETE FROM similar_items_cache").rowcount


def replace_similar_items(
    media_type: str,
    media_id: str,
    entries: list[tuple[str, str, float]],
    algorithm: str = "cosine_tfidf",
) -> None:
    """
    Replace the neighbour list of one source item.

    entries: (similar_type, similar_id, score) ordered by descending score;
    ranks are assigned densely from 1.
    """
    computed_at = format_timestamp()
    with get_db() as conn:
        conn.execute(
            "DELETE FROM similar_items_cache WHERE media_type = ? AND media_id = ?",
            (media_type, media_id),
        )
        conn.executemany("""
            INSERT INTO similar_items_cache
            (media_type, media_id, similar_type, similar_id, score, rank, algorithm, computed_at)
            VALUES (?, ?, ?, ?, ?, ?, ?, ?)
        """, [
            (media_type, media_id, s_type, s_id, float(score), rank, algorithm, computed_at)
            for rank, (s_type, s_id, score) in enumerate(entries, start=1)
        ])


@store_read
def load_similar_items(media_type: str, media_id: str, limit: int) -> list[dict]:
    with get_db(read_only=True) as conn:
        rows = conn.execute("""
            SELECT similar_type, similar_id, score, rank
            FROM similar_items_cache
            WHERE media_type = ? AND media_id = ? AND rank <= ?
            ORDER BY rank ASC
        """, (media_type, media_id, limit))
        return [dict(r) for r in rows]


# ---------------------------------------------------------------------------
# User interactions (append-only)
# ---------------------------------------------------------------------------

def insert_interaction(
    user_id: str,
    media_type: str,
    media_id: str,
    kind: str,
    value: float,
    duration_seconds: int = 0,
    progress_percentage: int = 0,
    metadata: dict | None = None,
    created_at: datetime | None = None,
) -> int:
    with get_db() as conn:
        cursor = conn.execute("""
            INSERT INTO user_interactions
            (user_id, media_type, media_id, kind, value, duration_seconds,
             progress_percentage, metadata, created_at)
            VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
        """, (
            user_id, media_type, media_id, kind, value, int(duration_seconds or 0),
            int(progress_percentage or 0), json.dumps(metadata) if metadata else None,
            format_timestamp(created_at),
        ))
        return cursor.lastrowid


@store_read
def count_user_interactions(user_id: str) -> int:
    with get_db(read_only=True) as conn:
        row = conn.execute(
            "SELECT COUNT(*) AS count FROM user_interactions WHERE user_id = ?", (user_id,)
        ).fetchone()
        return int(row['count'])


@store_read
def load_user_interactions(user_id: str, since: datetime | None = None) -> list[dict]:
    """A user's interactions, newest first, optionally limited to those after `since`."""
    query = """
        SELECT user_id, media_type, media_id, kind, value, duration_seconds,
               progress_percentage, created_at
        FROM user_interactions
        WHERE user_id = ?
    """
    params: list = [user_id]
    if since is not None:
        query += " AND created_at > ?"
        params.append(format_timestamp(since))
    query += " ORDER BY created_at DESC, id DESC"
    with get_db(read_only=True) as conn:
        return [dict(r) for r in conn.execute(query, params)]


@store_read
def load_interactions_for_users(user_ids: list[str], since: datetime) -> list[dict]:
    """
    Interactions of several users after `since`, each row annotated with
    item_interactions: the number of those rows touching the same item.
    """
    if not user_ids:
        return []
    rows: list[dict] = []
    with get_db(read_only=True) as conn:
        for chunk in chunked(list(user_ids), PARAM_CHUNK_SIZE):
            placeholders = ",".join("?" * len(chunk))
            cursor = conn.execute(f"""
                SELECT user_id, media_type, media_id, kind, value, created_at
                FROM user_interactions
                WHERE user_id IN ({placeholders}) AND created_at > ?
                ORDER BY created_at DESC, id DESC
            """, (*chunk, format_timestamp(since)))
            rows.extend(dict(r) for r in cursor)

    counts: dict[tuple[str, str], int] = {}
    for row in rows:
        key = (row['media_type'], row['media_id'])
        counts[key] = counts.get(key, 0) + 1
    for row in rows:
        row['item_interactions'] = counts[(row['media_type'], row['media_id'])]
    return rows


@store_read
def load_interacted_keys(user_id: str) -> set[tuple[str, str]]:
    with get_db(read_only=True) as conn:
        rows = conn.execute(
            "SELECT DISTINCT media_type, media_id FROM user_interactions WHERE user_id = ?",
            (user_id,),
        )
        return {(r['media_type'], r['media_id']) for r in rows}


@store_read
def load_active_users(min_interactions: int, exclude_user: str | None = None) -> list[str]:
    """Users with at least `min_interactions` recorded interactions."""
    with get_db(read_only=True) as conn:
        rows = conn.execute("""
            SELECT user_id FROM user_interactions
            WHERE user_id != ?
            GROUP BY user_id
            HAVING COUNT(*) >= ?
            ORDER BY user_id
        """, (exclude_user or "", min_interactions))
        return [r['user_id'] for r in rows]


@store_read
def load_popular_items(since: datetime, min_users: int, limit: int) -> list[dict]:
    """
    Items ranked by distinct interacting users since `since`,
    ties broken by average interaction value.
    """
    with get_db(read_only=True) as conn:
        rows = conn.execute("""
            SELECT media_type, media_id,
                   COUNT(DISTINCT user_id) AS unique_users,
                   AVG(value) AS avg_value,
                   MAX(created_at) AS last_interaction
            FROM user_interactions
            WHERE created_at > ?
            GROUP BY media_type, media_id
            HAVING COUNT(DISTINCT user_id) >= ?
            ORDER BY unique_users DESC, avg_value DESC, last_interaction DESC
            LIMIT ?
        """, (format_timestamp(since), min_users, limit))
        return [dict(r) for r in rows]


# ---------------------------------------------------------------------------
# User preference profiles
# ---------------------------------------------------------------------------

def save_preference_profile(
    user_id: str,
    vector: dict[str, float],
    favorite_genres: list[str],
    favorite_languages: list[str],
    interaction_count: int,
    avg_completion_rate: float,
    updated_at: datetime | None = None,
) -> None:
    """Replace a user's profile wholesale."""
    from .config import PROFILE_SCHEMA_VERSION

    with get_db() as conn:
        conn.execute("""
            INSERT OR REPLACE INTO user_preference_profiles
            (user_id, vector, favorite_genres, favorite_languages, interaction_count,
             avg_completion_rate, schema_version, updated_at)
            VALUES (?, ?, ?, ?, ?, ?, ?, ?)
        """, (
            user_id, json.dumps(vector), json.dumps(favorite_genres), json.dumps(favorite_languages),
            interaction_count, avg_completion_rate, PROFILE_SCHEMA_VERSION, format_timestamp(updated_at),
        ))


def _profile_row_to_dict(row) -> dict:
    data = dict(row)
    data['vector'] = load_json(data.get('vector'), default={})
    data['favorite_genres'] = load_json(data.get('favorite_genres'))
    data['favorite_languages'] = load_json(data.get('favorite_languages'))
    return data


@store_read
def load_preference_profile(user_id: str) -> dict | None:
    """
    Load a stored profile regardless of age.

    Profiles written under another PROFILE_SCHEMA_VERSION are treated as missing.
    """
    from .config import PROFILE_SCHEMA_VERSION

    with get_db(read_only=True) as conn:
        row = conn.execute(
            "SELECT * FROM user_preference_profiles WHERE user_id = ?", (user_id,)
        ).fetchone()
    if not row:
        return None
    if row['schema_version'] != PROFILE_SCHEMA_VERSION:
        logger.debug(f"Profile for {user_id} ignored - schema version {row['schema_version']}")
        return None
    return _profile_row_to_dict(row)


def purge_stale_profiles() -> int:
    """Delete profiles with an outdated schema version."""
    from .config import PROFILE_SCHEMA_VERSION

    with get_db() as conn:
        return conn.execute(
            "DELETE FROM user_preference_profiles WHERE schema_version IS NULL OR schema_version != ?",
            (PROFILE_SCHEMA_VERSION,),
        ).rowcount


# ---------------------------------------------------------------------------
# Recommendation cache
# ---------------------------------------------------------------------------

@store_read
def cache_get(cache_key: str, now: datetime | None = None, include_expired: bool = False) -> list | None:
    """
    Read a cache payload and its expiry in one statement.

    Expired entries are never returned unless include_expired is set.
    """
    query = "SELECT payload, expires_at FROM recommendation_cache WHERE cache_key = ?"
    params: list = [cache_key]
    if not include_expired:
        query += " AND expires_at > ?"
        params.append(format_timestamp(now))
    with get_db(read_only=True) as conn:
        row = conn.execute(query, params).fetchone()
    if not row:
        return None
    return load_json(row['payload'])


def cache_set(
    cache_key: str,
    kind: str,
    payload: list,
    ttl_seconds: int,
    user_id: str | None = None,
    media_id: str | None = None,
    now: datetime | None = None,
) -> None:
    """Upsert a cache entry (last write wins)."""
    now = now or datetime.now()
    expires_at = now + timedelta(seconds=ttl_seconds)
    with get_db() as conn:
        conn.execute("""
            INSERT INTO recommendation_cache
            (cache_key, kind, user_id, media_id, payload, ttl_seconds, created_at, expires_at)
            VALUES (?, ?, ?, ?, ?, ?, ?, ?)
            ON CONFLICT (cache_key) DO UPDATE SET
                kind = excluded.kind,
                user_id = excluded.user_id,
                media_id = excluded.media_id,
                payload = excluded.payload,
                ttl_seconds = excluded.ttl_seconds,
                created_at = excluded.created_at,
                expires_at = excluded.expires_at
        """, (
            cache_key, kind, user_id, media_id, json.dumps(payload), ttl_seconds,
            format_timestamp(now), format_timestamp(expires_at),
        ))


def cache_delete_user(user_id: str) -> int:
    """Delete every entry scoped to a user (by column or by key pattern)."""
    escaped = user_id.replace("\\", "\\\\").replace("%", "\\%").replace("_", "\\_")
    pattern = f"%user:{escaped}:%"
    with get_db() as conn:
        return conn.execute(
            "DELETE FROM recommendation_cache WHERE user_id = ? OR cache_key LIKE ? ESCAPE '\\'",
            (user_id, pattern),
        ).rowcount


def cache_prune(now: datetime | None = None) -> int:
    with get_db() as conn:
        return conn.execute(
            "DELETE FROM recommendation_cache WHERE expires_at <= ?",
            (format_timestamp(now),),
        ).rowcount


# ---------------------------------------------------------------------------
# Recommendation metrics (feedback loop)
# ---------------------------------------------------------------------------

def insert_recommendation_metrics(
    recommendation_id: str,
    user_id: str,
    kind: str,
    items: list[tuple[str, str, float]],
    shown_at: datetime | None = None,
) -> int:
    """Record a shown list; items are (media_type, media_id, score) in display order."""
    if not items:
        return 0
    shown = format_timestamp(shown_at)
    with get_db() as conn:
        conn.executemany("""
            INSERT INTO recommendation_metrics
            (recommendation_id, user_id, media_type, media_id, kind, position, score, shown_at)
            VALUES (?, ?, ?, ?, ?, ?, ?, ?)
        """, [
            (recommendation_id, user_id, media_type, media_id, kind, position, float(score), shown)
            for position, (media_type, media_id, score) in enumerate(items, start=1)
        ])
    return len(items)


def mark_recommendation_clicked(
    recommendation_id: str,
    user_id: str,
    media_id: str,
    clicked_at: datetime | None = None,
) -> int:
    with get_db() as conn:
        return conn.execute("""
            UPDATE recommendation_metrics
            SET was_clicked = 1, clicked_at = ?
            WHERE recommendation_id = ? AND user_id = ? AND media_id = ?
        """, (format_timestamp(clicked_at), recommendation_id, user_id, media_id)).rowcount


@store_read
def load_metrics_summary(since: datetime) -> list[dict]:
    """Shown/click counts and click-through rate per recommendation kind."""
    with get_db(read_only=True) as conn:
        rows = conn.execute("""
            SELECT kind,
                   COUNT(*) AS shown_count,
                   SUM(was_clicked) AS clicked_count,
                   AVG(CASE WHEN was_clicked = 1
                       THEN (julianday(clicked_at) - julianday(shown_at)) * 86400 END) AS avg_time_to_click,
                   AVG(position) AS avg_position
            FROM recommendation_metrics
            WHERE shown_at > ?
            GROUP BY kind
            ORDER BY kind
        """, (format_timestamp(since),))
        summary = []
        for r in rows:
            data = dict(r)
            shown = data['shown_count'] or 0
            clicked = data['clicked_count'] or 0
            data['clicked_count'] = clicked
            data['click_through_rate'] = round(clicked / shown * 100, 2) if shown else 0.0
            data['avg_position'] = round(data['avg_position'] or 0.0, 2)
            if data['avg_time_to_click'] is not None:
                data['avg_time_to_click'] = round(data['avg_time_to_click'], 2)
            summary.append(data)
        return summary


# ---------------------------------------------------------------------------
# Job locks
# ---------------------------------------------------------------------------

def acquire_job_lock(name: str, owner: str, stale_after_seconds: int) -> bool:
    """
    Take the named lock unless another owner holds a non-stale one.
    """
    now = datetime.now()
    stale_before = format_timestamp(now - timedelta(seconds=stale_after_seconds))
    with get_db() as conn:
        conn.execute(
            "DELETE FROM job_locks WHERE name = ? AND acquired_at < ?",
            (name, stale_before),
        )
        cursor = conn.execute(
            "INSERT OR IGNORE INTO job_locks (name, owner, acquired_at) VALUES (?, ?, ?)",
            (name, owner, format_timestamp(now)),
        )
        return cursor.rowcount == 1


def release_job_lock(name: str, owner: str) -> None:
    with get_db() as conn:
        conn.execute("DELETE FROM job_locks WHERE name = ? AND owner = ?", (name, owner))


@store_read
def table_counts() -> dict[str, int]:
    tables = (
        "media_items", "media_vectors", "similar_items_cache", "user_interactions",
        "user_preference_profiles", "recommendation_cache", "recommendation_metrics",
    )
    with get_db(read_only=True) as conn:
        return {
            table: conn.execute(f"SELECT COUNT(*) FROM {table}").fetchone()[0]
            for table in tables
        }
