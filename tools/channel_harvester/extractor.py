"""Markup extraction – turn a loaded feed snapshot into message records."""

from __future__ import annotations

import logging
import re
import time
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Iterable
from urllib.parse import urljoin

from bs4 import BeautifulSoup, Tag

from .models import ImageCandidate, ImageRecord, MessageRecord, StopBoundary
from .noise import CRAWL, is_decorative

logger = logging.getLogger("harvester.extract")

FEED_ORIGIN = "https://t.me/"
MESSAGE_SELECTOR = ".tgme_widget_message, .message, .msg"
IMAGE_SELECTOR = (
    ".tgme_widget_message_photo_wrap, .tgme_widget_message_document_wrap, "
    ".photo, .media-photo, img"
)
CAPTION_SELECTOR = ".tgme_widget_message_text, .message-text, .text"
RECORD_PREFIX = "mobile"

_BG_RE = re.compile(r"background-image\s*:\s*url\(\s*['\"]?([^'\")]+)")
_PERMALINK_RE = re.compile(r"/(\d+)$")
_LEADING_INT_RE = re.compile(r"\s*(\d+)")
_EPOCH = datetime(1970, 1, 1, tzinfo=timezone.utc)


@dataclass
class ExtractionResult:
    messages: list[MessageRecord] = field(default_factory=list)
    scanned: int = 0
    found_existing: bool = False
    reached_boundary: bool = False

    @property
    def image_count(self) -> int:
        return sum(len(m.images) for m in self.messages)


def _to_int(value: str | None) -> int | None:
    m = _LEADING_INT_RE.match(value or "")
    return int(m.group(1)) if m else None


def _now_ms() -> int:
    return int(time.time() * 1000)


# ── per-message resolution ──────────────────────────────────────


def resolve_message_id(msg: Tag) -> int | None:
    """Post reference attribute first, permalink tail as fallback."""
    ref = msg.get("data-post") or msg.get("data-id")
    if not ref:
        inner = msg.select_one("[data-post]")
        ref = inner.get("data-post") if inner else None

    if ref:
        parts = str(ref).split("/")
        return _to_int(parts[1]) if len(parts) >= 2 else None

    link = msg.select_one('a[href*="/"]')
    if link:
        m = _PERMALINK_RE.search(str(link.get("href", "")))
        if m:
            return int(m.group(1))
    return None


def resolve_date(msg: Tag, now_ms: int | None = None) -> int:
    """Epoch millis from the first machine-readable datetime, else now."""
    node = msg.select_one("time[datetime]") or msg.select_one("[datetime]")
    raw = str(node.get("datetime", "")).strip() if node else ""
    if raw:
        try:
            dt = datetime.fromisoformat(raw.replace("Z", "+00:00"))
        except ValueError:
            logger.debug("Unparsable datetime %r", raw)
        else:
            if dt.tzinfo is None:
                dt = dt.replace(tzinfo=timezone.utc)
            return (dt - _EPOCH) // timedelta(milliseconds=1)
    return now_ms if now_ms is not None else _now_ms()


def _style_dimension(style: str, name: str) -> int | None:
    m = re.search(rf"(?<![-\w]){name}\s*:\s*(\d+)", style)
    return int(m.group(1)) if m else None


def resolve_image(node: Tag) -> ImageCandidate | None:
    """URL + dimensions for one image-bearing element, or None if it has no URL."""
    style = str(node.get("style") or "")
    bg = _BG_RE.search(style)
    raw = bg.group(1) if bg else (node.get("src") or node.get("data-src"))
    if not raw:
        return None
    url = urljoin(FEED_ORIGIN, str(raw).strip())

    width = _style_dimension(style, "width")
    if width is None:
        width = _to_int(node.get("width")) or 0
    height = _style_dimension(style, "height")
    if height is None:
        height = _to_int(node.get("height")) or 0
    return ImageCandidate(url=url, width=width, height=height)


def extract_candidates(msg: Tag) -> list[ImageCandidate]:
    """Content images of one message, crawl-filtered, first occurrence per URL."""
    seen: set[str] = set()
    out: list[ImageCandidate] = []
    for node in msg.select(IMAGE_SELECTOR):
        cand = resolve_image(node)
        if cand is None:
            continue
        key = cand.normalized_url
        if key in seen:
            continue
        if is_decorative(cand.url, cand.width, cand.height, CRAWL):
            continue
        seen.add(key)
        cand.index = len(out)
        out.append(cand)
    return out


def resolve_caption(msg: Tag) -> str | None:
    text = "".join(node.get_text() for node in msg.select(CAPTION_SELECTOR)).strip()
    return text or None


# ── whole-page extraction ───────────────────────────────────────


def extract_messages(
    html: str,
    boundary: StopBoundary | None = None,
    limit: int = 3000,
    *,
    now_ms: int | None = None,
) -> ExtractionResult:
    """Parse the loaded feed markup into message records.

    Without a boundary the feed is walked top to bottom (oldest first).
    With one it is walked bottom to top (newest first) and parsing stops at
    the first message older than the boundary timestamp, or at the first
    message the catalog already holds.
    """
    boundary = boundary or StopBoundary()
    incremental = not boundary.is_empty
    soup = BeautifulSoup(html, "html.parser")
    elements = soup.select(MESSAGE_SELECTOR)
    if incremental:
        elements.reverse()

    logger.info(
        "Parsing %d messages %s",
        len(elements),
        "from bottom to top (newest first)" if incremental else "from top to bottom",
    )

    result = ExtractionResult()
    for msg in elements:
        if len(result.messages) >= limit:
            break
        result.scanned += 1

        message_id = resolve_message_id(msg)
        if not message_id:
            logger.debug("[%d] Skipping message without ID", result.scanned)
            continue

        date = resolve_date(msg, now_ms)
        if boundary.timestamp is not None and date < boundary.timestamp:
            logger.info("Message %d is older than the stop boundary, stopping", message_id)
            result.reached_boundary = True
            break

        candidates = extract_candidates(msg)
        fresh = [c for c in candidates if c.normalized_url not in boundary.urls]

        if message_id in boundary.message_ids:
            # A known message still contributes rotated URLs before the crawl stops.
            result.found_existing = True
            if fresh:
                logger.info("Message %d already known, %d rotated image(s), stopping", message_id, len(fresh))
                result.messages.append(_message(msg, message_id, date, fresh))
            else:
                logger.info("Message %d already exists in catalog, stopping", message_id)
            break

        if incremental and candidates and not fresh:
            logger.info("Message %d: all images already exist, stopping", message_id)
            result.found_existing = True
            break

        if not fresh:
            continue

        result.messages.append(_message(msg, message_id, date, fresh))
        logger.debug("[%d] Message %d: %d new image(s)", result.scanned, message_id, len(fresh))

    logger.info(
        "Finished parsing: scanned %d messages, %d with new images",
        result.scanned,
        len(result.messages),
    )
    return result


def _message(msg: Tag, message_id: int, date: int, images: list[ImageCandidate]) -> MessageRecord:
    return MessageRecord(message_id=message_id, date=date, images=images, caption=resolve_caption(msg))


def record_id(message_id: int, index: int) -> str:
    return f"{RECORD_PREFIX}_{message_id}_{index}"


def build_records(messages: Iterable[MessageRecord]) -> list[ImageRecord]:
    """Flatten messages into catalog records, one per image."""
    records: list[ImageRecord] = []
    for message in messages:
        for img in message.images:
            records.append(
                ImageRecord(
                    id=record_id(message.message_id, img.index),
                    message_id=message.message_id,
                    url=img.url,
                    width=img.width,
                    height=img.height,
                    date=message.date,
                    caption=message.caption,
                )
            )
    return records
