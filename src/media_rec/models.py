"""Core value types shared across the recommendation engine."""

from __future__ import annotations

import json
from dataclasses import asdict, dataclass, field
from typing import Any

from .config import MEDIA_TYPES, INTERACTION_WEIGHTS


def validate_media_type(media_type: str) -> str:
    """Return the lowercased media type or raise ValueError."""
    cleaned = (media_type or "").strip().lower()
    if cleaned not in MEDIA_TYPES:
        raise ValueError(f"Invalid media_type '{media_type}'. Must be one of: {', '.join(MEDIA_TYPES)}")
    return cleaned


def validate_interaction_kind(kind: str) -> str:
    cleaned = (kind or "").strip().lower()
    if cleaned not in INTERACTION_WEIGHTS:
        raise ValueError(
            f"Invalid interaction kind '{kind}'. Must be one of: {', '.join(INTERACTION_WEIGHTS)}"
        )
    return cleaned


@dataclass(frozen=True, order=True)
class MediaRef:
    """Natural identity of a catalog item."""
    media_type: str
    media_id: str

    @property
    def key(self) -> str:
        return f"{self.media_type}:{self.media_id}"

    @classmethod
    def parse(cls, value: str) -> "MediaRef":
        """Parse 'type:id' into a MediaRef."""
        if ":" not in value:
            raise ValueError(f"Expected TYPE:ID, got '{value}'")
        media_type, media_id = value.split(":", 1)
        if not media_id:
            raise ValueError(f"Missing media id in '{value}'")
        return cls(validate_media_type(media_type), media_id)

    def __str__(self) -> str:
        return self.key


@dataclass
class MediaItem:
    """Catalog record as seen by the engine (read-only)."""
    media_type: str
    media_id: str
    title: str
    description: str | None = None
    author: str | None = None
    narrator: str | None = None
    genre: str | None = None
    category: str | None = None
    language: str | None = None
    tags: list[str] = field(default_factory=list)
    image_url: str | None = None

    @property
    def ref(self) -> MediaRef:
        return MediaRef(self.media_type, self.media_id)

    @property
    def creator(self) -> str | None:
        return self.author or self.narrator

    @property
    def genre_label(self) -> str | None:
        """Genre for books/audio, category for videos."""
        return self.genre or self.category

    def to_metadata(self) -> dict[str, Any]:
        """Denormalized display metadata attached to recommendations."""
        return {
            "id": self.media_id,
            "type": self.media_type,
            "title": self.title,
            "author": self.author,
            "narrator": self.narrator,
            "description": self.description,
            "image_url": self.image_url,
            "genre": self.genre_label,
            "language": self.language,
        }

    @classmethod
    def from_dict(cls, payload: dict[str, Any]) -> "MediaItem":
        tags = payload.get("tags") or []
        if isinstance(tags, str):
            tags = json.loads(tags)
        return cls(
            media_type=validate_media_type(payload.get("media_type") or payload.get("type", "")),
            media_id=str(payload.get("media_id") or payload["id"]),
            title=payload.get("title") or "",
            description=payload.get("description"),
            author=payload.get("author"),
            narrator=payload.get("narrator"),
            genre=payload.get("genre"),
            category=payload.get("category"),
            language=payload.get("language"),
            tags=list(tags),
            image_url=payload.get("image_url") or payload.get("cover_image_url") or payload.get("thumbnail_url"),
        )


@dataclass
class Recommendation:
    """A single ranked recommendation (transient output)."""
    media_type: str
    media_id: str
    title: str
    score: float
    reason: str = ""
    metadata: dict[str, Any] = field(default_factory=dict)

    @property
    def ref(self) -> MediaRef:
        return MediaRef(self.media_type, self.media_id)

    @property
    def genre(self) -> str | None:
        return self.metadata.get("genre")

    @property
    def creator(self) -> str | None:
        return self.metadata.get("author") or self.metadata.get("narrator")

    @property
    def language(self) -> str | None:
        return self.metadata.get("language")

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, payload: dict[str, Any]) -> "Recommendation":
        return cls(
            media_type=payload["media_type"],
            media_id=str(payload["media_id"]),
            title=payload.get("title", ""),
            score=float(payload.get("score", 0.0)),
            reason=payload.get("reason", ""),
            metadata=dict(payload.get("metadata") or {}),
        )

    @classmethod
    def for_item(cls, item: MediaItem, score: float, reason: str) -> "Recommendation":
        return cls(
            media_type=item.media_type,
            media_id=item.media_id,
            title=item.title,
            score=score,
            reason=reason,
            metadata=item.to_metadata(),
        )


@dataclass
class BatchResult:
    """Outcome of a batch job: partial success is reported, not raised."""
    processed: int = 0
    errors: int = 0
