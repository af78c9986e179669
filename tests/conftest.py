import threading
import time
from pathlib import Path
from types import SimpleNamespace

import pytest
from PIL import Image

from dal.image_dal import ImageDAL
from models.errors import CodecError
from models.image_record import ImageMetadata
from services.concurrency_gate import ConcurrencyGate
from services.image_store import ImageStore
from services.metadata_cache import MetadataCache
from services.tile_cache import TileCache
from services.tile_generator import TileGenerator
from services.upload_intake import UploadIntake
from utils.database_init import AsyncDatabaseInitializer


class FakeCodec:
    """Codec double that counts calls and tracks concurrent renders."""

    def __init__(self, width=10000, height=8000, render_delay=0.0, probe_delay=0.0):
        self.metadata = ImageMetadata(width=width, height=height, format="tiff", page_count=1)
        self.render_delay = render_delay
        self.probe_delay = probe_delay
        self.probe_calls = 0
        self.render_calls = []
        self.active = 0
        self.max_active = 0
        self.fail_render = False
        self.fail_probe_for = set()
        self._lock = threading.Lock()

    def probe(self, path):
        with self._lock:
            self.probe_calls += 1
        if self.probe_delay:
            time.sleep(self.probe_delay)
        if Path(path).stem in self.fail_probe_for:
            raise CodecError(f"cannot read {path}")
        return self.metadata

    def render(self, path, region, output_width, output_height, kernel="nearest", format="JPEG", quality=75):
        with self._lock:
            self.active += 1
            self.max_active = max(self.max_active, self.active)
            self.render_calls.append((Path(path).name, region, output_width, output_height, kernel, quality))
        try:
            if self.render_delay:
                time.sleep(self.render_delay)
            if self.fail_render:
                raise CodecError("decode failed")
            return f"{region.left},{region.top},{region.width},{region.height}->{output_width}x{output_height}".encode()
        finally:
            with self._lock:
                self.active -= 1


def build_services(root: Path, codec, capacity: int = 1, tile_size: int = 256) -> SimpleNamespace:
    originals = root / "original"
    originals.mkdir(parents=True, exist_ok=True)
    db = AsyncDatabaseInitializer(root / "db")
    store = ImageStore(originals, ImageDAL(db))
    metadata_cache = MetadataCache(store, codec)
    store.bind_metadata_cache(metadata_cache)
    gate = ConcurrencyGate(capacity)
    tile_cache = TileCache(root / "tiles")
    generator = TileGenerator(store, metadata_cache, tile_cache, gate, codec=codec, tile_size=tile_size)
    intake = UploadIntake(store, codec=codec, tile_size=tile_size, temp_dir=root / "temp")
    return SimpleNamespace(
        originals=originals,
        db=db,
        store=store,
        metadata_cache=metadata_cache,
        gate=gate,
        tile_cache=tile_cache,
        generator=generator,
        intake=intake,
        codec=codec,
    )


def write_tiff(path: Path, size=(600, 400), pages=1) -> Path:
    """Write a small gradient TIFF (optionally multi-page) for real-codec tests."""
    width, height = size
    first = Image.linear_gradient("L").resize((width, height)).convert("RGB")
    extra = [Image.new("RGB", (32, 32), (255, 0, 0)) for _ in range(pages - 1)]
    path.parent.mkdir(parents=True, exist_ok=True)
    first.save(path, format="TIFF", save_all=bool(extra), append_images=extra)
    return path


@pytest.fixture
def fake_codec():
    return FakeCodec()


@pytest.fixture
def services(tmp_path, fake_codec):
    return build_services(tmp_path, fake_codec)
