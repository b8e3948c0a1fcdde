"""Image host probes – dimension lookup and link validity, in small batches."""

from __future__ import annotations

import asyncio
import io
import logging
from typing import Awaitable, Callable, Iterable, TypeVar

import httpx
from PIL import Image

from .config import ProbeConfig
from .models import ImageRecord

logger = logging.getLogger("harvester.probe")

T = TypeVar("T")
R = TypeVar("R")


def get_dimensions(data: bytes) -> tuple[int, int] | None:
    try:
        img = Image.open(io.BytesIO(data))
        return img.width, img.height
    except Exception:
        return None


class ImageProber:
    """Bounded-concurrency HTTP probes against the image host."""

    def __init__(
        self,
        cfg: ProbeConfig | None = None,
        *,
        client: httpx.AsyncClient | None = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        self.cfg = cfg or ProbeConfig()
        self._owns_client = client is None
        self._client = client or httpx.AsyncClient(
            timeout=self.cfg.timeout,
            headers={"User-Agent": self.cfg.user_agent},
            follow_redirects=True,
        )
        self._sleep = sleep

    # ── batching ─────────────────────────────────────────────────

    async def _batched(self, items: list[T], fn: Callable[[T], Awaitable[R]]) -> list[R]:
        results: list[R] = []
        size = max(self.cfg.batch_size, 1)
        for start in range(0, len(items), size):
            batch = items[start:start + size]
            results.extend(await asyncio.gather(*(fn(item) for item in batch)))
            if start + size < len(items):
                await self._sleep(self.cfg.batch_pause)
        return results

    # ── single-item probes ──────────────────────────────────────

    async def fetch_dimensions(self, url: str) -> tuple[int, int] | None:
        try:
            resp = await self._client.get(url)
            resp.raise_for_status()
        except httpx.HTTPError as exc:
            logger.debug("Dimension probe failed for %s: %s", url, exc)
            return None
        return get_dimensions(resp.content)

    async def is_reachable(self, url: str) -> bool:
        try:
            resp = await self._client.head(url)
        except httpx.HTTPError as exc:
            logger.debug("HEAD %s failed: %s", url, exc)
            return False
        return resp.is_success

    # ── batch operations ────────────────────────────────────────

    async def probe_dimensions(self, records: Iterable[ImageRecord]) -> int:
        """Fill in width/height for records whose size is unknown. Returns how many were resolved."""
        targets = [r for r in records if not r.width and not r.height and r.url.startswith("http")]
        if not targets:
            return 0
        logger.info("Probing dimensions for %d image(s)", len(targets))
        sizes = await self._batched(targets, lambda r: self.fetch_dimensions(r.url))
        resolved = 0
        for rec, size in zip(targets, sizes):
            if size:
                rec.width, rec.height = size
                resolved += 1
        logger.info("Resolved dimensions for %d/%d image(s)", resolved, len(targets))
        return resolved

    async def check_images(self, records: list[ImageRecord]) -> tuple[list[ImageRecord], list[ImageRecord]]:
        """Split records into (valid, broken) by probing thumbnail or full URL."""
        valid: list[ImageRecord] = []
        broken: list[ImageRecord] = []

        async def _check(rec: ImageRecord) -> bool:
            url = rec.thumbnail_url or rec.url
            return bool(url) and await self.is_reachable(url)

        results = await self._batched(records, _check)
        for rec, ok in zip(records, results):
            if ok:
                valid.append(rec)
            else:
                broken.append(rec)
                logger.info("Broken image: %s - %s", rec.id, rec.url[:80])
        logger.info("Checked %d images: %d valid, %d broken", len(records), len(valid), len(broken))
        return valid, broken

    # ── lifecycle ────────────────────────────────────────────────

    async def close(self) -> None:
        if self._owns_client:
            await self._client.aclose()

    async def __aenter__(self) -> ImageProber:
        return self

    async def __aexit__(self, *args: object) -> None:
        await self.close()
