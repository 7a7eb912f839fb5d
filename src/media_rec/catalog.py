"""
Catalog read interface.

The engine never writes catalog records; it only lists and fetches them.
SqliteCatalog reads the media_items table, InMemoryCatalog wraps a plain
list for embedding and tests.
"""
import json
import logging
from pathlib import Path
from typing import Iterable, Protocol

from .config import MEDIA_TYPES
from .models import MediaItem, MediaRef, validate_media_type
from . import database

logger = logging.getLogger(__name__)


class Catalog(Protocol):
    def list_items(self, media_type: str | None = None) -> list[MediaItem]:
        ...

    def get_item(self, media_type: str, media_id: str) -> MediaItem | None:
        ...


class SqliteCatalog:
    """Catalog backed by the media_items table."""

    def list_items(self, media_type: str | None = None) -> list[MediaItem]:
        if media_type is not None:
            media_type = validate_media_type(media_type)
        return [MediaItem.from_dict(row) for row in database.load_media_items(media_type)]

    def get_item(self, media_type: str, media_id: str) -> MediaItem | None:
        row = database.load_media_item(validate_media_type(media_type), str(media_id))
        return MediaItem.from_dict(row) if row else None


class InMemoryCatalog:
    def __init__(self, items: Iterable[MediaItem] = ()):
        self._items: dict[MediaRef, MediaItem] = {}
        for item in items:
            self.add(item)

    def add(self, item: MediaItem) -> None:
        self._items[item.ref] = item

    def list_items(self, media_type: str | None = None) -> list[MediaItem]:
        if media_type is not None:
            media_type = validate_media_type(media_type)
        return [
            item for ref, item in sorted(self._items.items())
            if media_type is None or ref.media_type == media_type
        ]

    def get_item(self, media_type: str, media_id: str) -> MediaItem | None:
        return self._items.get(MediaRef(validate_media_type(media_type), str(media_id)))


def list_all_items(catalog: Catalog) -> list[MediaItem]:
    """Every item across all media types, in type order."""
    items: list[MediaItem] = []
    for media_type in MEDIA_TYPES:
        items.extend(catalog.list_items(media_type))
    return items


def import_catalog_file(path: Path) -> int:
    """
    Load catalog records from a JSON file into media_items.

    Accepts either a list of records or an object mapping media type to a
    list of records ({"book": [...], "video": [...]}). Invalid records are
    skipped with a warning.
    """
    with open(path, encoding="utf-8") as f:
        payload = json.load(f)

    if isinstance(payload, dict):
        records = []
        for media_type, entries in payload.items():
            for entry in entries:
                records.append({"media_type": media_type, **entry})
    else:
        records = list(payload)

    rows = []
    for record in records:
        try:
            item = MediaItem.from_dict(record)
        except (KeyError, ValueError, TypeError) as e:
            logger.warning(f"Skipping invalid catalog record {str(record)[:80]}: {e}")
            continue
        rows.append({
            "media_type": item.media_type,
            "media_id": item.media_id,
            "title": item.title,
            "description": item.description,
            "author": item.author,
            "narrator": item.narrator,
            "genre": item.genre,
            "category": item.category,
            "language": item.language,
            "tags": item.tags,
            "image_url": item.image_url,
            "is_active": record.get("is_active", True),
        })

    count = database.upsert_media_items(rows)
    logger.info(f"Imported {count} catalog records from {path}")
    return count
