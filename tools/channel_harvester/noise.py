"""Decorative-image classification (avatars, icons, logos, thumbnails).

The same rule runs in two strengths: ``CRAWL`` while extracting from live
markup, where metadata is often partial, and ``CLEANUP`` over the stored
catalog, where every record is expected to carry real dimensions.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Iterable

from .models import ImageRecord, normalize_url


@dataclass(frozen=True)
class FilterProfile:
    name: str
    url_markers: tuple[str, ...]
    min_side: int = 200
    drop_unknown_size: bool = False
    square_tolerance: int | None = None
    square_min_side: int = 300


_BASE_MARKERS = ("avatar", "icon", "logo", "profile", "channel_", "_64", "_128")

CRAWL = FilterProfile(name="crawl", url_markers=_BASE_MARKERS)

CLEANUP = FilterProfile(
    name="cleanup",
    url_markers=_BASE_MARKERS + ("thumb",),
    drop_unknown_size=True,
    square_tolerance=50,
)


def is_decorative(url: str | None, width: int | None, height: int | None, profile: FilterProfile = CRAWL) -> bool:
    """Return True if the image should be dropped under *profile*."""
    w = width or 0
    h = height or 0
    key = normalize_url(url).lower()

    if any(marker in key for marker in profile.url_markers):
        return True
    if profile.drop_unknown_size and w == 0 and h == 0:
        return True
    if (0 < w < profile.min_side) or (0 < h < profile.min_side):
        return True
    if (
        profile.square_tolerance is not None
        and w > 0
        and h > 0
        and abs(w - h) < profile.square_tolerance
        and (w < profile.square_min_side or h < profile.square_min_side)
    ):
        return True
    return False


def filter_records(records: Iterable[ImageRecord], profile: FilterProfile = CLEANUP) -> list[ImageRecord]:
    return [r for r in records if not is_decorative(r.url, r.width, r.height, profile)]
