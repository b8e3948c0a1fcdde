"""Catalog persistence – the JSON document the gallery serves from."""

from __future__ import annotations

import json
import logging
import os
import tempfile
from pathlib import Path
from typing import Any

from .config import CatalogConfig
from .models import Catalog, ImageRecord

logger = logging.getLogger("harvester.catalog")

IMAGES_PER_PAGE = 20


class CatalogError(Exception):
    """The catalog file exists but cannot be read as a catalog."""


class CatalogStore:
    """Whole-document reads and atomic whole-document rewrites."""

    def __init__(self, cfg: CatalogConfig | None = None) -> None:
        self.cfg = cfg or CatalogConfig.from_env()
        self.path = Path(self.cfg.path)

    def exists(self) -> bool:
        return self.path.is_file()

    def load(self) -> Catalog | None:
        """Return the stored catalog, or None if none has been written yet."""
        try:
            raw = self.path.read_text(encoding="utf-8")
        except FileNotFoundError:
            logger.info("No catalog at %s yet", self.path)
            return None
        except UnicodeDecodeError as exc:
            raise CatalogError(f"Malformed catalog {self.path}: {exc}") from exc
        except OSError as exc:
            raise CatalogError(f"Cannot read catalog {self.path}: {exc}") from exc

        try:
            data = json.loads(raw)
        except json.JSONDecodeError as exc:
            raise CatalogError(f"Malformed catalog {self.path}: {exc}") from exc
        if not isinstance(data, dict) or not isinstance(data.get("images", []), list):
            raise CatalogError(f"Malformed catalog {self.path}: expected an object with an images list")

        try:
            catalog = Catalog.from_dict(data)
        except (KeyError, TypeError, ValueError) as exc:
            raise CatalogError(f"Malformed image record in {self.path}: {exc}") from exc
        logger.debug("Loaded %d images from %s", len(catalog.images), self.path)
        return catalog

    def save(self, catalog: Catalog) -> None:
        """Replace the catalog file in one step; a failed write leaves the old one."""
        self.path.parent.mkdir(parents=True, exist_ok=True)
        payload = json.dumps(catalog.to_dict(), ensure_ascii=False, indent=2)
        fd, tmp = tempfile.mkstemp(prefix=f".{self.path.name}.", suffix=".tmp", dir=self.path.parent)
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as fh:
                fh.write(payload)
                fh.flush()
                os.fsync(fh.fileno())
            os.replace(tmp, self.path)
        except BaseException:
            if os.path.exists(tmp):
                os.unlink(tmp)
            raise
        logger.info("Wrote %d images to %s", len(catalog.images), self.path)


def paginate(images: list[ImageRecord], page: int = 1, limit: int = IMAGES_PER_PAGE) -> dict[str, Any]:
    """Offset page over a newest-first catalog, shaped like the gallery API response."""
    page = max(page, 1)
    limit = max(limit, 1)
    start = (page - 1) * limit
    end = start + limit
    return {
        "images": [img.to_dict() for img in images[start:end]],
        "total": len(images),
        "page": page,
        "limit": limit,
        "hasMore": end < len(images),
    }
