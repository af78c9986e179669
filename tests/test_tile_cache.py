import asyncio

import pytest

from models.errors import StorageError
from models.image_record import TileCoordinate
from services.tile_cache import TileCache


def test_path_layout(tmp_path):
    cache = TileCache(tmp_path / "tiles")
    coord = TileCoordinate("abc", 3, 4, 5)
    assert cache.path_for(coord) == tmp_path / "tiles" / "abc" / "3" / "4_5.jpg"


def test_put_then_get(tmp_path):
    cache = TileCache(tmp_path / "tiles")
    coord = TileCoordinate("abc", 0, 0, 0)

    async def main():
        assert not await cache.has(coord)
        assert await cache.get(coord) is None
        path = await cache.put(coord, b"tile-bytes")
        return path, await cache.has(coord), await cache.get(coord)

    path, present, data = asyncio.run(main())
    assert present
    assert data == b"tile-bytes"
    assert path.read_bytes() == b"tile-bytes"
    # No temporary files left behind next to the tile.
    assert [p.name for p in path.parent.iterdir()] == ["0_0.jpg"]


def test_put_failure_raises_storage_error(tmp_path):
    blocker = tmp_path / "tiles"
    blocker.write_text("not a directory")
    cache = TileCache(blocker)

    with pytest.raises(StorageError):
        asyncio.run(cache.put(TileCoordinate("abc", 0, 0, 0), b"x"))
