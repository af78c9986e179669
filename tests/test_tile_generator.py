import asyncio

import pytest

from models.errors import CodecError, NotFoundError, OutOfBoundsError
from models.image_record import Region
from tests.conftest import FakeCodec, build_services


@pytest.fixture
def image(services):
    (services.originals / "slide.tif").touch()
    return "slide"


def test_cache_miss_renders_and_stores(services, image):
    path = asyncio.run(services.generator.get_tile(image, 6, 0, 0))

    assert path == services.tile_cache.tiles_dir / "slide" / "6" / "0_0.jpg"
    assert path.read_bytes() == b"0,0,256,256->256x256"
    name, region, width, height, kernel, quality = services.codec.render_calls[0]
    assert (name, region, width, height) == ("slide.tif", Region(0, 0, 256, 256), 256, 256)
    assert (kernel, quality) == ("nearest", 75)


def test_second_request_is_a_cache_hit(services, image):
    async def main():
        first = await services.generator.get_tile_bytes(image, 6, 0, 0)
        second = await services.generator.get_tile_bytes(image, 6, 0, 0)
        return first, second

    first, second = asyncio.run(main())
    assert first == second
    assert len(services.codec.render_calls) == 1


def test_coarse_level_downsamples_clipped_region(services, image):
    asyncio.run(services.generator.get_tile(image, 0, 0, 0))
    _, region, width, height, _, _ = services.codec.render_calls[0]
    assert region == Region(0, 0, 10000, 8000)
    assert (width, height) == (157, 125)


def test_out_of_bounds_tile(services, image):
    with pytest.raises(OutOfBoundsError):
        asyncio.run(services.generator.get_tile(image, 0, 1, 0))
    with pytest.raises(OutOfBoundsError):
        asyncio.run(services.generator.get_tile(image, 7, 0, 0))
    assert services.codec.render_calls == []
    assert not (services.tile_cache.tiles_dir / "slide" / "0" / "1_0.jpg").exists()


def test_unknown_image(services):
    with pytest.raises(NotFoundError):
        asyncio.run(services.generator.get_tile("ghost", 0, 0, 0))


def test_gate_serialises_renders(tmp_path):
    codec = FakeCodec(render_delay=0.02)
    svc = build_services(tmp_path, codec, capacity=1)
    (svc.originals / "slide.tif").touch()

    async def main():
        coords = [(6, x, y) for x in range(4) for y in range(3)]
        return await asyncio.gather(*(svc.generator.get_tile("slide", *c) for c in coords))

    paths = asyncio.run(main())
    assert len(set(paths)) == 12
    assert all(p.exists() for p in paths)
    assert len(codec.render_calls) == 12
    assert codec.max_active == 1


def test_wider_gate_allows_parallel_renders(tmp_path):
    codec = FakeCodec(render_delay=0.05)
    svc = build_services(tmp_path, codec, capacity=3)
    (svc.originals / "slide.tif").touch()

    async def main():
        return await asyncio.gather(*(svc.generator.get_tile("slide", 6, x, 0) for x in range(6)))

    asyncio.run(main())
    assert 1 < codec.max_active <= 3


def test_duplicate_requests_share_one_render(tmp_path):
    codec = FakeCodec(render_delay=0.05)
    svc = build_services(tmp_path, codec)
    (svc.originals / "slide.tif").touch()

    async def main():
        return await asyncio.gather(*(svc.generator.get_tile("slide", 5, 1, 1) for _ in range(5)))

    paths = asyncio.run(main())
    assert len(set(paths)) == 1
    assert len(codec.render_calls) == 1
    assert svc.generator.inflight_count == 0


def test_codec_failure_is_reported_and_retryable(services, image):
    services.codec.fail_render = True

    async def main():
        with pytest.raises(CodecError):
            await services.generator.get_tile(image, 6, 1, 1)
        assert services.gate.in_use == 0
        services.codec.fail_render = False
        return await services.generator.get_tile(image, 6, 1, 1)

    path = asyncio.run(main())
    assert path.exists()
    assert len(services.codec.render_calls) == 2


def test_cancelled_caller_does_not_stop_generation(tmp_path):
    codec = FakeCodec(render_delay=0.05)
    svc = build_services(tmp_path, codec)
    (svc.originals / "slide.tif").touch()

    async def main():
        waiter = asyncio.create_task(svc.generator.get_tile("slide", 6, 2, 2))
        await asyncio.sleep(0.01)
        waiter.cancel()
        with pytest.raises(asyncio.CancelledError):
            await waiter
        # The generation keeps running and later requests reuse its result.
        return await svc.generator.get_tile("slide", 6, 2, 2)

    path = asyncio.run(main())
    assert path.exists()
    assert len(codec.render_calls) == 1


def test_cancelled_metadata_caller_does_not_fail_concurrent_tile(services, image):
    services.codec.probe_delay = 0.2

    async def main():
        lookup = asyncio.create_task(services.metadata_cache.get_metadata(image))
        await asyncio.sleep(0.05)
        tile = asyncio.create_task(services.generator.get_tile(image, 6, 0, 0))
        await asyncio.sleep(0.05)
        lookup.cancel()
        path = await tile
        return lookup, path

    lookup, path = asyncio.run(main())
    assert lookup.cancelled()
    assert path.read_bytes() == b"0,0,256,256->256x256"
    assert services.codec.probe_calls == 1
    assert services.metadata_cache.peek(image) is not None
