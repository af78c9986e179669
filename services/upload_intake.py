"""Intake of newly uploaded original images.

`UploadIntake.ingest` probes the uploaded file, moves it into the originals
directory under its freshly minted id, registers it and returns the
descriptor the viewer needs to open it.
"""

from __future__ import annotations

import asyncio
import logging
import os
import shutil
import time
import uuid
from pathlib import Path
from typing import Optional

from models.errors import ImageIdConflictError, StorageError
from models.image_record import ImageDescriptor
from services.codec import ImageCodec
from services.image_store import ImageStore, iso_timestamp
from services.pyramid import DEFAULT_TILE_SIZE, level_count

LOGGER = logging.getLogger(__name__)


def new_image_id() -> str:
    """Mint an id for a new upload."""
    return str(uuid.uuid4())


class UploadIntake:
    """Accept uploaded originals into the image store.

    Args:
        image_store: Destination store and registry.
        codec: Object exposing a blocking `probe(path)`.
        tile_size: Tile size reported in descriptors.
        temp_dir: Upload staging directory swept after successful uploads.
        temp_max_age_seconds: Staged files older than this are removed by the sweep.
    """

    def __init__(
        self,
        image_store: ImageStore,
        codec: Optional[ImageCodec] = None,
        tile_size: int = DEFAULT_TILE_SIZE,
        temp_dir: Optional[Path] = None,
        temp_max_age_seconds: int = 86_400,
    ) -> None:
        self.image_store = image_store
        self.codec = codec or ImageCodec()
        self.tile_size = tile_size
        self.temp_dir = Path(temp_dir) if temp_dir else None
        self.temp_max_age_seconds = temp_max_age_seconds

    async def ingest(self, image_id: str, temp_path: str | os.PathLike) -> ImageDescriptor:
        """Store the uploaded file at `temp_path` as image `image_id`.

        Args:
            image_id: Fresh id for the image, see `new_image_id`.
            temp_path: Location of the fully received upload.

        Returns:
            ImageDescriptor for the stored image.

        Raises:
            CodecError: If the file cannot be probed; it is left at `temp_path`.
            ImageIdConflictError: If an original for `image_id` already exists.
            StorageError: If moving the file fails.
        """
        temp_path = Path(temp_path)
        # First probe of a new file, so the shared metadata cache is bypassed.
        metadata = await asyncio.to_thread(self.codec.probe, temp_path)

        destination = self.image_store.original_path(image_id, temp_path.suffix)
        if await asyncio.to_thread(destination.exists):
            raise ImageIdConflictError(f"An original already exists for image {image_id}")

        try:
            await asyncio.to_thread(destination.parent.mkdir, parents=True, exist_ok=True)
            await asyncio.to_thread(shutil.move, str(temp_path), str(destination))
        except OSError as exc:
            raise StorageError(f"Failed to move upload into {destination}: {exc}") from exc

        uploaded_at = iso_timestamp()
        try:
            await self.image_store.register(image_id, destination, metadata, uploaded_at=uploaded_at)
        except Exception:
            # No original without a registration.
            await asyncio.to_thread(destination.unlink, missing_ok=True)
            raise

        LOGGER.info(
            "Stored image %s (%dx%d %s, %d page(s))",
            image_id, metadata.width, metadata.height, metadata.format, metadata.page_count,
        )

        return ImageDescriptor(
            image_id=image_id,
            width=metadata.width,
            height=metadata.height,
            tile_size=self.tile_size,
            levels=level_count(metadata.width, metadata.height, self.tile_size),
            original_format=metadata.format,
            uploaded_at=uploaded_at,
        )

    async def sweep_temp_dir(self) -> int:
        """Remove stale staged uploads and return how many were deleted.

        Best effort: failures are logged and skipped.
        """
        if self.temp_dir is None:
            return 0
        return await asyncio.to_thread(self._sweep_temp_dir)

    def _sweep_temp_dir(self) -> int:
        if not self.temp_dir.is_dir():
            return 0
        cutoff = time.time() - self.temp_max_age_seconds
        removed = 0
        for entry in self.temp_dir.iterdir():
            try:
                if entry.is_file() and entry.stat().st_mtime < cutoff:
                    entry.unlink()
                    removed += 1
            except OSError as exc:
                LOGGER.debug("Temp cleanup skipped for %s: %s", entry.name, exc)
        return removed
