"""Registry of uploaded original images.

Originals are stored as `{originals_dir}/{image_id}{ext}`; registrations are
kept in SQLite through `dal.image_dal.ImageDAL`. The directory is the source
of truth for listing, the registry supplies upload timestamps and a fast path
for resolution.
"""

from __future__ import annotations

import asyncio
import logging
import os
import re
from datetime import datetime, timezone
from pathlib import Path
from typing import Dict, List, Optional, TYPE_CHECKING

from dal.image_dal import ImageDAL
from models.errors import ImageIdConflictError, NotFoundError, TileServerError, ValidationError
from models.image_record import ImageMetadata, ImageRecord

if TYPE_CHECKING:
    from services.metadata_cache import MetadataCache

LOGGER = logging.getLogger(__name__)

IMAGE_ID_PATTERN = re.compile(r"^[A-Za-z0-9_-]{1,128}$")
DEFAULT_EXTENSION = ".tif"


def iso_timestamp(ts: Optional[float] = None) -> str:
    """UTC ISO-8601 timestamp with millisecond precision and a 'Z' suffix."""
    moment = datetime.now(timezone.utc) if ts is None else datetime.fromtimestamp(ts, timezone.utc)
    return moment.isoformat(timespec="milliseconds").replace("+00:00", "Z")


def validate_image_id(image_id: str) -> str:
    """Return `image_id` unchanged, or raise ValidationError if it is not a safe file stem."""
    if not image_id or not IMAGE_ID_PATTERN.match(image_id):
        raise ValidationError(f"Invalid image id: {image_id!r}")
    return image_id


def _file_created_at(path: Path) -> float:
    st = path.stat()
    return getattr(st, "st_birthtime", None) or st.st_mtime


class ImageStore:
    """Translate image ids to original files and enumerate known images.

    Args:
        originals_dir: Directory holding `{image_id}{ext}` files.
        image_dal: Registry table access.
        scan_limit: Maximum directory entries examined by the fallback scan.
    """

    def __init__(self, originals_dir: str | os.PathLike, image_dal: ImageDAL, scan_limit: int = 100_000) -> None:
        self.originals_dir = Path(originals_dir)
        self._dal = image_dal
        self._scan_limit = scan_limit
        self.metadata_cache: Optional["MetadataCache"] = None

    def bind_metadata_cache(self, cache: "MetadataCache") -> None:
        """Attach the metadata cache used by `list_images`."""
        self.metadata_cache = cache

    def original_path(self, image_id: str, extension: str) -> Path:
        """Return where the original for `image_id` with `extension` is stored."""
        return self.originals_dir / f"{validate_image_id(image_id)}{extension.lower()}"

    async def resolve(self, image_id: str) -> Path:
        """Return the original file for `image_id`.

        Resolution order: registry row, exact `{image_id}.tif`, then a bounded
        scan of the originals directory for files whose stem is `image_id`.

        Raises:
            ValidationError: If `image_id` is not a safe file stem.
            NotFoundError: If no file matches.
            ImageIdConflictError: If several files share the id.
        """
        validate_image_id(image_id)

        record = await self._dal.get_image_by_id(image_id)
        if record is not None and await asyncio.to_thread(record.source_path.is_file):
            return record.source_path

        exact = self.originals_dir / f"{image_id}{DEFAULT_EXTENSION}"
        if await asyncio.to_thread(exact.is_file):
            return exact

        matches = await asyncio.to_thread(self._scan_for, image_id)
        if not matches:
            raise NotFoundError(f"Image not found: {image_id}")
        if len(matches) > 1:
            names = ", ".join(sorted(p.name for p in matches))
            raise ImageIdConflictError(f"Image id {image_id} matches several originals: {names}")
        return matches[0]

    def _scan_for(self, image_id: str) -> List[Path]:
        matches: List[Path] = []
        if not self.originals_dir.is_dir():
            return matches
        with os.scandir(self.originals_dir) as entries:
            for examined, entry in enumerate(entries):
                if examined >= self._scan_limit:
                    LOGGER.warning("Stopped scanning %s after %d entries", self.originals_dir, self._scan_limit)
                    break
                if entry.is_file() and Path(entry.name).stem == image_id:
                    matches.append(Path(entry.path))
                    if len(matches) > 1:
                        break
        return matches

    async def register(
        self,
        image_id: str,
        path: str | os.PathLike,
        metadata: ImageMetadata,
        uploaded_at: Optional[str] = None,
    ) -> ImageRecord:
        """Record a newly stored original.

        Raises:
            ImageIdConflictError: If `image_id` is already registered.
        """
        record = ImageRecord(
            image_id=validate_image_id(image_id),
            source_path=Path(path),
            width=metadata.width,
            height=metadata.height,
            format=metadata.format,
            page_count=metadata.page_count,
            uploaded_at=uploaded_at or iso_timestamp(),
        )
        await self._dal.create_image(record)
        return record

    async def list_images(self) -> List[ImageRecord]:
        """Return a record for every readable original, newest first.

        Files that cannot be resolved or probed are logged and skipped.
        """
        if self.metadata_cache is None:
            raise RuntimeError("ImageStore has no metadata cache bound. Call bind_metadata_cache() first.")

        registered: Dict[str, ImageRecord] = {r.image_id: r for r in await self._dal.list_images()}
        files = await asyncio.to_thread(self._list_original_files)

        images: List[ImageRecord] = []
        for path in files:
            image_id = path.stem
            try:
                metadata = await self.metadata_cache.get_metadata(image_id)
                known = registered.get(image_id)
                uploaded_at = known.uploaded_at if known else iso_timestamp(await asyncio.to_thread(_file_created_at, path))
            except (TileServerError, OSError) as exc:
                LOGGER.error("Error reading %s: %s", path.name, exc)
                continue
            images.append(
                ImageRecord(
                    image_id=image_id,
                    source_path=path,
                    width=metadata.width,
                    height=metadata.height,
                    format=metadata.format,
                    page_count=metadata.page_count,
                    uploaded_at=uploaded_at,
                )
            )

        images.sort(key=lambda r: r.uploaded_at or "", reverse=True)
        return images

    def _list_original_files(self) -> List[Path]:
        if not self.originals_dir.is_dir():
            return []
        return sorted(
            p for p in self.originals_dir.iterdir()
            if p.is_file() and not p.name.startswith(".")
        )
