"""Process-lifetime cache of per-image metadata.

Probing a gigapixel file is cheap compared with decoding it, but not free,
and the tile route needs width/height on every cache miss. Entries are never
evicted or invalidated: originals are immutable once uploaded and every
upload mints a fresh image id.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Dict, Optional, TYPE_CHECKING

from models.image_record import ImageMetadata
from services.codec import ImageCodec

if TYPE_CHECKING:
    from services.image_store import ImageStore

LOGGER = logging.getLogger(__name__)


class MetadataCache:
    """Get-or-populate mapping of image id to `ImageMetadata`.

    Concurrent misses for the same id share a single in-flight lookup, run as
    its own task so that a cancelled caller does not cancel it for the others.
    A failed lookup is not cached, so the next caller tries again.

    Args:
        image_store: Resolves image ids to source paths.
        codec: Object exposing a blocking `probe(path)`.
    """

    def __init__(self, image_store: "ImageStore", codec: Optional[ImageCodec] = None) -> None:
        self._store = image_store
        self._codec = codec or ImageCodec()
        self._entries: Dict[str, ImageMetadata] = {}
        self._pending: Dict[str, asyncio.Task] = {}

    def __len__(self) -> int:
        return len(self._entries)

    def peek(self, image_id: str) -> Optional[ImageMetadata]:
        """Return cached metadata without probing."""
        return self._entries.get(image_id)

    async def get_metadata(self, image_id: str) -> ImageMetadata:
        """Return metadata for `image_id`, probing the source file on first use.

        Raises:
            NotFoundError: If no original file exists for `image_id`.
            CodecError: If the file cannot be probed.
        """
        cached = self._entries.get(image_id)
        if cached is not None:
            return cached

        task = self._pending.get(image_id)
        if task is None:
            task = asyncio.create_task(self._populate(image_id))
            self._pending[image_id] = task
            task.add_done_callback(lambda done, key=image_id: self._forget(key, done))
        return await asyncio.shield(task)

    async def _populate(self, image_id: str) -> ImageMetadata:
        source_path = await self._store.resolve(image_id)
        metadata = await asyncio.to_thread(self._codec.probe, source_path)
        self._entries[image_id] = metadata
        LOGGER.debug("Cached metadata for %s: %dx%d %s", image_id, metadata.width, metadata.height, metadata.format)
        return metadata

    def _forget(self, image_id: str, task: asyncio.Task) -> None:
        if self._pending.get(image_id) is task:
            del self._pending[image_id]
        # Mark retrieved so a failure nobody awaited does not log a warning.
        if not task.cancelled() and task.exception() is not None:
            LOGGER.debug("Metadata lookup for %s failed: %s", image_id, task.exception())
