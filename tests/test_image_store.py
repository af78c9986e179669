import asyncio

import pytest

from models.errors import ImageIdConflictError, NotFoundError, ValidationError
from models.image_record import ImageMetadata
from services.image_store import iso_timestamp


def test_resolve_exact_tif(services):
    path = services.originals / "img1.tif"
    path.touch()
    assert asyncio.run(services.store.resolve("img1")) == path


def test_resolve_by_scan_for_other_extension(services):
    path = services.originals / "img2.scn"
    path.touch()
    (services.originals / "img22.tif").touch()
    assert asyncio.run(services.store.resolve("img2")) == path


def test_resolve_prefers_registry(services):
    registered = services.originals / "img3.tiff"
    registered.touch()
    meta = ImageMetadata(width=10, height=20, format="tiff")

    async def main():
        await services.store.register("img3", registered, meta)
        return await services.store.resolve("img3")

    assert asyncio.run(main()) == registered


def test_resolve_missing(services):
    with pytest.raises(NotFoundError):
        asyncio.run(services.store.resolve("nope"))


def test_resolve_rejects_unsafe_ids(services):
    with pytest.raises(ValidationError):
        asyncio.run(services.store.resolve("../etc/passwd"))


def test_resolve_conflicting_extensions(services):
    (services.originals / "dup.tiff").touch()
    (services.originals / "dup.scn").touch()
    with pytest.raises(ImageIdConflictError):
        asyncio.run(services.store.resolve("dup"))


def test_register_twice_is_rejected(services):
    path = services.originals / "img4.tif"
    path.touch()
    meta = ImageMetadata(width=10, height=20, format="tiff")

    async def main():
        await services.store.register("img4", path, meta)
        await services.store.register("img4", path, meta)

    with pytest.raises(ImageIdConflictError):
        asyncio.run(main())


def test_list_images_skips_unreadable_files(services, caplog):
    (services.originals / "good.tif").touch()
    (services.originals / "broken.tif").touch()
    (services.originals / ".hidden").touch()
    services.codec.fail_probe_for.add("broken")

    with caplog.at_level("ERROR"):
        records = asyncio.run(services.store.list_images())

    assert [r.image_id for r in records] == ["good"]
    assert records[0].width == 10000
    assert records[0].uploaded_at.endswith("Z")
    assert "broken.tif" in caplog.text


def test_list_images_uses_registered_upload_time(services):
    path = services.originals / "img5.tif"
    path.touch()
    meta = ImageMetadata(width=10000, height=8000, format="tiff")

    async def main():
        await services.store.register("img5", path, meta, uploaded_at="2020-01-01T00:00:00.000Z")
        return await services.store.list_images()

    records = asyncio.run(main())
    assert records[0].uploaded_at == "2020-01-01T00:00:00.000Z"
    assert records[0].to_json() == {
        "id": "img5",
        "width": 10000,
        "height": 8000,
        "originalFormat": "tiff",
        "uploadedAt": "2020-01-01T00:00:00.000Z",
    }


def test_iso_timestamp_format():
    assert iso_timestamp(0) == "1970-01-01T00:00:00.000Z"
