"""On-demand tile generation.

`TileGenerator.get_tile` serves a tile from the disk cache when present and
otherwise renders it from the original image:

    cache check -> resolve source + metadata -> pyramid region
        -> gate -> codec render -> atomic cache write

Only the codec render is gated; cache hits never wait on it. Concurrent
requests for the same coordinate share one generation.
"""

from __future__ import annotations

import asyncio
import logging
import time
from pathlib import Path
from typing import Dict, Optional

from models.errors import CodecError, OutOfBoundsError
from models.image_record import TileCoordinate
from services.codec import ImageCodec
from services.concurrency_gate import ConcurrencyGate
from services.image_store import ImageStore, validate_image_id
from services.metadata_cache import MetadataCache
from services.pyramid import DEFAULT_TILE_SIZE, PyramidGeometry
from services.tile_cache import TileCache

LOGGER = logging.getLogger(__name__)


class TileGenerator:
    """Produce and cache Deep Zoom tiles for registered images.

    Args:
        image_store: Resolves image ids to original files.
        metadata_cache: Supplies image dimensions.
        tile_cache: Disk store for encoded tiles.
        gate: Bounds simultaneous codec renders.
        codec: Object exposing a blocking `render(...)`.
        tile_size: Edge length of a tile in pixels.
        quality: Encoder quality for tiles.
        kernel: Resample kernel name used when downscaling.
        output_format: Pillow format name for encoded tiles.
    """

    def __init__(
        self,
        image_store: ImageStore,
        metadata_cache: MetadataCache,
        tile_cache: TileCache,
        gate: ConcurrencyGate,
        codec: Optional[ImageCodec] = None,
        tile_size: int = DEFAULT_TILE_SIZE,
        quality: int = 75,
        kernel: str = "nearest",
        output_format: str = "JPEG",
    ) -> None:
        self.image_store = image_store
        self.metadata_cache = metadata_cache
        self.tile_cache = tile_cache
        self.gate = gate
        self.codec = codec or ImageCodec()
        self.tile_size = tile_size
        self.quality = quality
        self.kernel = kernel
        self.output_format = output_format
        self._inflight: Dict[TileCoordinate, asyncio.Task] = {}

    @property
    def inflight_count(self) -> int:
        return len(self._inflight)

    async def get_tile(self, image_id: str, level: int, x: int, y: int) -> Path:
        """Return the path of the encoded tile, generating it on a cache miss.

        Raises:
            ValidationError: If `image_id` is not a safe file stem.
            NotFoundError: If the image is unknown.
            OutOfBoundsError: If the coordinate lies outside the pyramid.
            CodecError: If rendering fails.
            StorageError: If the tile cannot be written.
        """
        coord = TileCoordinate(validate_image_id(image_id), int(level), int(x), int(y))

        if await self.tile_cache.has(coord):
            LOGGER.debug("Tile cache hit %s", coord)
            return self.tile_cache.path_for(coord)

        task = self._inflight.get(coord)
        if task is None:
            task = asyncio.create_task(self._generate(coord))
            self._inflight[coord] = task
            task.add_done_callback(lambda t, key=coord: self._forget(key, t))
        # A caller giving up must not cancel a generation others may be awaiting.
        return await asyncio.shield(task)

    def _forget(self, coord: TileCoordinate, task: asyncio.Task) -> None:
        self._inflight.pop(coord, None)
        if not task.cancelled() and task.exception() is not None:
            LOGGER.debug("Tile generation failed for %s: %s", coord, task.exception())

    async def get_tile_bytes(self, image_id: str, level: int, x: int, y: int) -> bytes:
        """Same as `get_tile` but return the encoded bytes."""
        path = await self.get_tile(image_id, level, x, y)
        return await asyncio.to_thread(path.read_bytes)

    async def _generate(self, coord: TileCoordinate) -> Path:
        # Another request may have finished this tile between our check and now.
        if await self.tile_cache.has(coord):
            return self.tile_cache.path_for(coord)

        source_path = await self.image_store.resolve(coord.image_id)
        metadata = await self.metadata_cache.get_metadata(coord.image_id)
        geometry = PyramidGeometry(metadata.width, metadata.height, self.tile_size)

        region = geometry.tile_region(coord.level, coord.x, coord.y)
        if region is None:
            raise OutOfBoundsError(
                f"Tile {coord.level}/{coord.x}_{coord.y} is outside image {coord.image_id} "
                f"({geometry.level_count} levels)"
            )
        source_region = geometry.to_source_region(region, coord.level)

        started = time.perf_counter()
        async with self.gate:
            try:
                data = await asyncio.to_thread(
                    self.codec.render,
                    source_path,
                    source_region,
                    region.width,
                    region.height,
                    self.kernel,
                    self.output_format,
                    self.quality,
                )
            except CodecError:
                raise
            except Exception as exc:
                raise CodecError(f"Failed to render tile {coord}: {exc}") from exc

        path = await self.tile_cache.put(coord, data)
        LOGGER.debug(
            "Generated tile %s from %s in %.3fs (%d bytes)",
            coord, source_region, time.perf_counter() - started, len(data),
        )
        return path
