import asyncio

import pytest

from models.errors import CodecError, NotFoundError


def test_concurrent_misses_share_one_probe(services):
    (services.originals / "img1.tif").touch()
    services.codec.probe_delay = 0.05

    async def main():
        return await asyncio.gather(*(services.metadata_cache.get_metadata("img1") for _ in range(5)))

    results = asyncio.run(main())
    assert services.codec.probe_calls == 1
    assert all(r == results[0] for r in results)
    assert results[0].width == 10000


def test_cached_entry_is_reused(services):
    (services.originals / "img1.tif").touch()

    async def main():
        first = await services.metadata_cache.get_metadata("img1")
        second = await services.metadata_cache.get_metadata("img1")
        return first, second

    first, second = asyncio.run(main())
    assert first is second
    assert services.codec.probe_calls == 1
    assert services.metadata_cache.peek("img1") is first
    assert len(services.metadata_cache) == 1


def test_failed_probe_is_not_cached(services):
    (services.originals / "bad.tif").touch()
    services.codec.fail_probe_for.add("bad")

    async def main():
        with pytest.raises(CodecError):
            await services.metadata_cache.get_metadata("bad")
        services.codec.fail_probe_for.clear()
        return await services.metadata_cache.get_metadata("bad")

    meta = asyncio.run(main())
    assert meta.height == 8000
    assert services.codec.probe_calls == 2


def test_unknown_image(services):
    with pytest.raises(NotFoundError):
        asyncio.run(services.metadata_cache.get_metadata("missing"))
    assert services.metadata_cache.peek("missing") is None


def test_lookup_survives_its_only_caller_being_cancelled(services):
    (services.originals / "img1.tif").touch()
    services.codec.probe_delay = 0.05

    async def main():
        caller = asyncio.create_task(services.metadata_cache.get_metadata("img1"))
        await asyncio.sleep(0.01)
        caller.cancel()
        with pytest.raises(asyncio.CancelledError):
            await caller
        return await services.metadata_cache.get_metadata("img1")

    meta = asyncio.run(main())
    assert meta.width == 10000
    assert services.codec.probe_calls == 1
