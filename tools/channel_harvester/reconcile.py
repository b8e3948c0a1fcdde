"""Catalog reconciliation – merge fresh crawl output into the stored catalog.

Records carry two identities that can each change independently between
syncs: the synthetic record id (derived from the message) and the
normalized content URL.  ``DualKeyIndex`` keeps one mapping per key and
re-points both together on every write.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Iterable

from .models import ImageRecord, normalize_url
from .noise import CLEANUP, filter_records

logger = logging.getLogger("harvester.reconcile")


class IndexInvariantError(AssertionError):
    """The id and URL mappings fell out of lockstep."""


class DualKeyIndex:
    """Records indexed by id and by normalized URL, kept in lockstep."""

    def __init__(self, records: Iterable[ImageRecord] = ()) -> None:
        self._by_id: dict[str, ImageRecord] = {}
        self._by_url: dict[str, str] = {}
        for rec in records:
            self._by_id[rec.id] = rec
        # First writer wins per URL.
        for rec in self._by_id.values():
            key = rec.normalized_url
            if key and key not in self._by_url:
                self._by_url[key] = rec.id
        self.check()

    def __len__(self) -> int:
        return len(self._by_id)

    def __contains__(self, record_id: object) -> bool:
        return record_id in self._by_id

    def get(self, record_id: str) -> ImageRecord | None:
        return self._by_id.get(record_id)

    def id_for_url(self, url: str) -> str | None:
        return self._by_url.get(normalize_url(url))

    def values(self) -> list[ImageRecord]:
        return list(self._by_id.values())

    def remove(self, record_id: str) -> ImageRecord | None:
        rec = self._by_id.pop(record_id, None)
        if rec is not None:
            key = rec.normalized_url
            if self._by_url.get(key) == record_id:
                del self._by_url[key]
        return rec

    def put(self, rec: ImageRecord) -> ImageRecord | None:
        """Store *rec* under its id and URL, evicting whatever held either key.

        Returns the record previously stored under the URL or the id, if any.
        """
        key = rec.normalized_url
        replaced: ImageRecord | None = None

        touched = [key]
        holder = self._by_url.get(key)
        if holder is not None and holder != rec.id:
            replaced = self.remove(holder)
            if replaced is not None:
                touched.append(replaced.normalized_url)

        previous = self._by_id.get(rec.id)
        if previous is not None:
            old_key = previous.normalized_url
            touched.append(old_key)
            if old_key != key and self._by_url.get(old_key) == rec.id:
                del self._by_url[old_key]
            replaced = replaced or previous

        self._by_id[rec.id] = rec
        if key:
            self._by_url[key] = rec.id
        self._check_keys(*touched)
        return replaced

    def check(self) -> None:
        self._check_keys(*self._by_url)

    def _check_keys(self, *keys: str) -> None:
        for key in keys:
            record_id = self._by_url.get(key)
            if record_id is None:
                continue
            rec = self._by_id.get(record_id)
            if rec is None:
                raise IndexInvariantError(f"URL {key} points at missing id {record_id}")
            if rec.normalized_url != key:
                raise IndexInvariantError(f"URL {key} points at {record_id} which holds {rec.normalized_url}")


@dataclass
class MergeResult:
    images: list[ImageRecord] = field(default_factory=list)
    new_count: int = 0
    updated_count: int = 0


def sort_newest_first(records: Iterable[ImageRecord]) -> list[ImageRecord]:
    return sorted(records, key=lambda r: r.date, reverse=True)


def merge_records(existing: Iterable[ImageRecord], new: Iterable[ImageRecord]) -> MergeResult:
    """Merge *new* crawl records into *existing* catalog records."""
    index = DualKeyIndex(existing)
    result = MergeResult()

    for rec in new:
        url_known = index.id_for_url(rec.url) is not None
        id_known = rec.id in index
        replaced = index.put(rec)
        if not url_known and not id_known:
            result.new_count += 1
        elif replaced is not None and replaced != rec:
            result.updated_count += 1
            if replaced.id != rec.id:
                logger.debug("Re-keyed %s -> %s for %s", replaced.id, rec.id, rec.normalized_url)

    merged = filter_records(index.values(), CLEANUP)
    dropped = len(index) - len(merged)
    if dropped:
        logger.debug("Strict filter dropped %d record(s) during merge", dropped)
    result.images = sort_newest_first(merged)
    logger.info(
        "Merged catalog: %d total, %d new, %d updated",
        len(result.images),
        result.new_count,
        result.updated_count,
    )
    return result


def _best_of(group: list[ImageRecord]) -> ImageRecord:
    """Largest area wins, most recent date breaks ties."""
    return max(group, key=lambda r: (r.area, r.date))


def canonicalize(records: Iterable[ImageRecord]) -> list[ImageRecord]:
    """Elect one canonical record per message (and per URL) from scratch."""
    records = list(records)
    filtered = filter_records(records, CLEANUP)

    by_message: dict[int, list[ImageRecord]] = {}
    orphans: list[ImageRecord] = []
    for rec in filtered:
        if rec.message_id > 0:
            by_message.setdefault(rec.message_id, []).append(rec)
        else:
            orphans.append(rec)

    final: list[ImageRecord] = []
    seen_urls: set[str] = set()

    for group in by_message.values():
        latest: dict[str, ImageRecord] = {}
        for rec in group:
            key = rec.normalized_url
            if not key:
                continue
            current = latest.get(key)
            if current is None or rec.date > current.date:
                latest[key] = rec
        if not latest:
            continue
        best = _best_of(list(latest.values()))
        if best.normalized_url not in seen_urls:
            seen_urls.add(best.normalized_url)
            final.append(best)

    for rec in orphans:
        key = rec.normalized_url
        if key and key not in seen_urls:
            seen_urls.add(key)
            final.append(rec)

    out = sort_newest_first(final)
    logger.info("Cleanup: %d -> %d images", len(records), len(out))
    return out
