"""Record types shared by the crawl, merge and catalog layers."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any


def normalize_url(url: str | None) -> str:
    """Strip the query string; the result is the URL identity key."""
    return (url or "").split("?", 1)[0]


@dataclass
class ImageRecord:
    id: str
    message_id: int
    url: str
    width: int = 0
    height: int = 0
    date: int = 0
    thumbnail_url: str | None = None
    caption: str | None = None

    @property
    def normalized_url(self) -> str:
        return normalize_url(self.url)

    @property
    def area(self) -> int:
        return (self.width or 0) * (self.height or 0)

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {
            "id": self.id,
            "messageId": self.message_id,
            "url": self.url,
        }
        if self.thumbnail_url:
            data["thumbnailUrl"] = self.thumbnail_url
        data["width"] = self.width
        data["height"] = self.height
        data["date"] = self.date
        if self.caption:
            data["caption"] = self.caption
        return data

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> ImageRecord:
        return cls(
            id=str(data["id"]),
            message_id=int(data.get("messageId") or 0),
            url=data.get("url") or "",
            width=int(data.get("width") or 0),
            height=int(data.get("height") or 0),
            date=int(data.get("date") or 0),
            thumbnail_url=data.get("thumbnailUrl") or None,
            caption=data.get("caption") or None,
        )


@dataclass
class Catalog:
    images: list[ImageRecord] = field(default_factory=list)
    last_sync: int = 0

    def to_dict(self) -> dict[str, Any]:
        return {
            "images": [img.to_dict() for img in self.images],
            "lastSync": self.last_sync,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> Catalog:
        return cls(
            images=[ImageRecord.from_dict(img) for img in data.get("images") or []],
            last_sync=int(data.get("lastSync") or 0),
        )

    def known_message_ids(self) -> set[int]:
        return {img.message_id for img in self.images if img.message_id}

    def known_urls(self) -> set[str]:
        return {img.normalized_url for img in self.images if img.url}


@dataclass(frozen=True)
class StopBoundary:
    """Bounds an incremental crawl to content newer than what the catalog holds."""
    timestamp: int | None = None
    message_ids: frozenset[int] = frozenset()
    urls: frozenset[str] = frozenset()

    @classmethod
    def build(
        cls,
        timestamp: int | None = None,
        message_ids: set[int] | frozenset[int] | None = None,
        urls: set[str] | frozenset[str] | None = None,
    ) -> StopBoundary:
        return cls(
            timestamp=timestamp or None,
            message_ids=frozenset(message_ids or ()),
            urls=frozenset(normalize_url(u) for u in urls or ()),
        )

    @property
    def is_empty(self) -> bool:
        return self.timestamp is None and not self.message_ids and not self.urls


@dataclass
class ImageCandidate:
    url: str
    width: int = 0
    height: int = 0
    index: int = 0

    @property
    def normalized_url(self) -> str:
        return normalize_url(self.url)


@dataclass
class MessageRecord:
    message_id: int
    date: int
    images: list[ImageCandidate] = field(default_factory=list)
    caption: str | None = None
