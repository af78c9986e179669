"""Disk-backed store for encoded tiles.

Tiles live at `{tiles_dir}/{image_id}/{level}/{x}_{y}.{ext}`. That layout is
the cache key space: a tile exists iff its file exists. Writes go to a
temporary file in the same directory and are renamed into place, so readers
see either no file or a complete one.
"""

from __future__ import annotations

import os
import uuid
from pathlib import Path
from typing import Optional

import aiofiles
import aiofiles.os

from models.errors import StorageError
from models.image_record import TileCoordinate


class TileCache:
    """Append-only tile store rooted at `tiles_dir`.

    Args:
        tiles_dir: Root directory for tile files.
        extension: File extension of stored tiles, without the dot.
    """

    def __init__(self, tiles_dir: str | os.PathLike, extension: str = "jpg") -> None:
        self.tiles_dir = Path(tiles_dir)
        self.extension = extension

    def path_for(self, coord: TileCoordinate) -> Path:
        """Return the stable on-disk path for `coord`."""
        return self.tiles_dir / coord.image_id / str(coord.level) / f"{coord.x}_{coord.y}.{self.extension}"

    async def has(self, coord: TileCoordinate) -> bool:
        return await aiofiles.os.path.isfile(self.path_for(coord))

    async def get(self, coord: TileCoordinate) -> Optional[bytes]:
        """Return the stored tile bytes, or None on a cache miss."""
        try:
            async with aiofiles.open(self.path_for(coord), "rb") as f:
                return await f.read()
        except FileNotFoundError:
            return None

    async def put(self, coord: TileCoordinate, data: bytes) -> Path:
        """Atomically store `data` for `coord` and return the final path.

        Raises:
            StorageError: If the directory, temp file or rename fails.
        """
        final_path = self.path_for(coord)
        tmp_path = final_path.with_name(f".{final_path.name}.{uuid.uuid4().hex}.tmp")
        try:
            await aiofiles.os.makedirs(final_path.parent, exist_ok=True)
            async with aiofiles.open(tmp_path, "wb") as f:
                await f.write(data)
            await aiofiles.os.replace(tmp_path, final_path)
        except OSError as exc:
            try:
                await aiofiles.os.remove(tmp_path)
            except OSError:
                pass
            raise StorageError(f"Failed to write tile {final_path}: {exc}") from exc
        return final_path
