"""Core harvesting logic – orchestrates Feed → Extract → Merge → Catalog."""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass
from typing import Any

from .catalog import CatalogStore
from .config import DeviceProfile, HarvesterConfig, get_device
from .extractor import build_records, extract_messages
from .loader import FeedLoader
from .models import Catalog, ImageRecord, StopBoundary
from .probe import ImageProber
from .reconcile import canonicalize, merge_records

logger = logging.getLogger("harvester.core")


def _now_ms() -> int:
    return int(time.time() * 1000)


@dataclass
class SyncResult:
    mode: str
    new: int
    updated: int
    total: int
    removed: int = 0
    written: bool = False

    def to_dict(self) -> dict[str, Any]:
        return {
            "success": True,
            "mode": self.mode,
            "new": self.new,
            "updated": self.updated,
            "removed": self.removed,
            "total": self.total,
        }


class Harvester:
    """Runs crawl, reconcile and cleanup as one in-process pipeline."""

    def __init__(
        self,
        cfg: HarvesterConfig | None = None,
        *,
        loader: FeedLoader | None = None,
        store: CatalogStore | None = None,
        prober: ImageProber | None = None,
    ) -> None:
        self.cfg = cfg or HarvesterConfig()
        self.loader = loader or FeedLoader(
            self.cfg.browser,
            full_policy=self.cfg.full_policy,
            incremental_policy=self.cfg.incremental_policy,
        )
        self.store = store or CatalogStore(self.cfg.catalog)
        self.prober = prober or ImageProber(self.cfg.probe)
        self.stats = {"messages": 0, "images": 0, "new": 0, "updated": 0, "removed": 0, "errors": 0}

    # ── crawl ────────────────────────────────────────────────────

    async def crawl(
        self,
        channel: str,
        limit: int,
        device: DeviceProfile | str,
        stop_timestamp: int | None = None,
        known_message_ids: set[int] | None = None,
        known_urls: set[str] | None = None,
    ) -> list[ImageRecord]:
        """Load the channel feed and extract image records.

        Omitting all three stop parameters crawls the whole feed; giving any
        of them crawls only content newer than that boundary.
        """
        if isinstance(device, str):
            device = get_device(device)
        boundary = StopBoundary.build(stop_timestamp, known_message_ids, known_urls)
        incremental = not boundary.is_empty

        feed = await self.loader.load(channel, limit, device, incremental=incremental)
        extraction = extract_messages(feed.html, boundary, limit)
        records = build_records(extraction.messages)

        self.stats["messages"] += len(extraction.messages)
        self.stats["images"] += len(records)
        logger.info(
            "Crawl of %s found %d image(s) in %d message(s)%s",
            channel,
            len(records),
            len(extraction.messages),
            " (caught up with catalog)" if extraction.found_existing else "",
        )
        return records

    # ── sync ─────────────────────────────────────────────────────

    async def sync(
        self,
        *,
        full: bool = False,
        limit: int | None = None,
        probe: bool | None = None,
        dry_run: bool | None = None,
    ) -> SyncResult:
        """Crawl, merge into the stored catalog, clean up and rewrite it once.

        Any failure propagates before the write, so the previous catalog
        stays intact.
        """
        sc = self.cfg.sync
        probe = sc.probe_dimensions if probe is None else probe
        dry_run = self.cfg.dry_run if dry_run is None else dry_run
        started = _now_ms()

        catalog = self.store.load()
        try:
            if catalog is None or full:
                mode = "full"
                records = await self.crawl(sc.channel, limit or sc.full_limit, sc.device)
            else:
                mode = "incremental"
                records = await self.crawl(
                    sc.channel,
                    limit or sc.incremental_limit,
                    sc.device,
                    stop_timestamp=catalog.last_sync or None,
                    known_message_ids=catalog.known_message_ids(),
                    known_urls=catalog.known_urls(),
                )
        except Exception:
            self.stats["errors"] += 1
            raise

        if probe and records:
            await self.prober.probe_dimensions(records)

        existing = catalog.images if catalog else []
        merged = merge_records(existing, records)
        final = canonicalize(merged.images)

        result = SyncResult(
            mode=mode,
            new=merged.new_count,
            updated=merged.updated_count,
            total=len(final),
            removed=len(merged.images) - len(final),
        )
        self.stats["new"] += result.new
        self.stats["updated"] += result.updated
        self.stats["removed"] += result.removed

        if catalog is None and not final:
            logger.warning("No images found on first sync, not creating a catalog")
        elif dry_run:
            logger.info("Dry run: catalog left untouched")
        else:
            self.store.save(Catalog(images=final, last_sync=started))
            result.written = True

        logger.info(
            "%s sync complete: %d new, %d updated, %d total",
            mode.capitalize(),
            result.new,
            result.updated,
            result.total,
        )
        return result

    # ── catalog maintenance ─────────────────────────────────────

    def cleanup(self) -> int:
        """Re-elect canonical records over the stored catalog. Returns the number removed."""
        catalog = self.store.load()
        if catalog is None:
            logger.info("Catalog does not exist yet, skipping cleanup")
            return 0
        final = canonicalize(catalog.images)
        removed = len(catalog.images) - len(final)
        self.store.save(Catalog(images=final, last_sync=catalog.last_sync or _now_ms()))
        self.stats["removed"] += removed
        logger.info("Removed %d duplicates and logos", removed)
        return removed

    async def check_images(self) -> int:
        """Drop records whose image no longer resolves. Returns the number removed."""
        catalog = self.store.load()
        if catalog is None:
            logger.info("Catalog does not exist yet, nothing to check")
            return 0
        valid, broken = await self.prober.check_images(catalog.images)
        self.store.save(Catalog(images=valid, last_sync=catalog.last_sync or _now_ms()))
        self.stats["removed"] += len(broken)
        return len(broken)

    # ── lifecycle ────────────────────────────────────────────────

    async def close(self) -> None:
        await self.prober.close()

    async def __aenter__(self) -> Harvester:
        return self

    async def __aexit__(self, *args: object) -> None:
        await self.close()
