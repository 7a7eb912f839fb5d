import importlib
import sys
from datetime import datetime, timedelta
from pathlib import Path

import pytest

# Ensure the package under test is importable without installation
PROJECT_ROOT = Path(__file__).resolve().parents[1]
SRC_PATH = PROJECT_ROOT / "src"
if str(SRC_PATH) not in sys.path:
    sys.path.insert(0, str(SRC_PATH))

from media_rec.catalog import InMemoryCatalog  # noqa: E402
from media_rec.models import MediaItem  # noqa: E402


@pytest.fixture
def fresh_config(monkeypatch, tmp_path):
    """
    Reload config with a temporary database path to keep tests isolated.
    """
    db_path = tmp_path / "test.db"
    monkeypatch.setenv("MEDIA_REC_DB", str(db_path))
    import media_rec.config as config

    importlib.reload(config)
    return config


@pytest.fixture
def fresh_db(monkeypatch, tmp_path):
    """
    Reload config/database modules with a temp DB, create the schema and
    cleanly close the pool after use.
    """
    db_path = tmp_path / "test.db"
    monkeypatch.setenv("MEDIA_REC_DB", str(db_path))

    import media_rec.config as config
    import media_rec.database as database

    importlib.reload(config)
    importlib.reload(database)
    database.init_db()

    yield database
    database.close_pool()


def make_item(media_type, media_id, title, **fields):
    return MediaItem(media_type=media_type, media_id=str(media_id), title=title, **fields)


@pytest.fixture
def adventure_catalog():
    """Two overlapping adventure books and one unrelated romance."""
    return InMemoryCatalog([
        make_item(
            "book", "adv1", "Adventure 1",
            description="A daring quest across mountains and jungles searching for lost treasure",
            author="Jane Explorer", genre="Adventure", language="en",
        ),
        make_item(
            "book", "adv2", "Adventure 2",
            description="Another daring quest through jungles and mountains hunting hidden treasure",
            author="Jane Explorer", genre="Adventure", language="en",
        ),
        make_item(
            "book", "rom1", "Romance Book",
            description="Lovers meet at a seaside café during summer holidays",
            author="Paul Heart", genre="Romance", language="fr",
        ),
    ])


@pytest.fixture
def seeded_interactions(fresh_db):
    """
    Insert interactions at fixed ages relative to now.

    Usage: seeded_interactions([(user, type, id, kind, days_ago), ...])
    """
    from media_rec.config import INTERACTION_WEIGHTS

    def seed(rows):
        now = datetime.now()
        for user_id, media_type, media_id, kind, days_ago in rows:
            fresh_db.insert_interaction(
                user_id, media_type, media_id, kind, INTERACTION_WEIGHTS[kind],
                created_at=now - timedelta(days=days_ago),
            )

    return seed
