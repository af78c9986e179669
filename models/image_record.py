from __future__ import annotations

from dataclasses import dataclass
from pathlib import Path
from typing import Any, Dict, Optional


@dataclass(frozen=True)
class ImageMetadata:
    """Dimensions and format of a source image, as reported by a header probe.

    Attributes:
        width: Full-resolution width in pixels.
        height: Full-resolution height in pixels.
        format: Lower-case source format name (e.g. "tiff").
        page_count: Number of pages/frames; tiles are always cut from page 0.
        mode: Pixel interpretation of page 0 (TIFF photometric or Pillow mode), informational.
        bands: Number of channels, informational.
        has_alpha: Whether page 0 carries an alpha channel.
    """

    width: int
    height: int
    format: str
    page_count: int = 1
    mode: Optional[str] = None
    bands: Optional[int] = None
    has_alpha: bool = False


@dataclass(frozen=True)
class ImageRecord:
    """A registered original image.

    Attributes:
        image_id: Opaque unique id minted at upload.
        source_path: Location of the original file.
        width: Full-resolution width in pixels.
        height: Full-resolution height in pixels.
        format: Lower-case source format name.
        page_count: Number of pages in the source file.
        uploaded_at: ISO-8601 UTC timestamp.
    """

    image_id: str
    source_path: Path
    width: int
    height: int
    format: str
    page_count: int = 1
    uploaded_at: Optional[str] = None

    def to_json(self) -> Dict[str, Any]:
        """Shape used by the image listing endpoint."""
        return {
            "id": self.image_id,
            "width": self.width,
            "height": self.height,
            "originalFormat": self.format,
            "uploadedAt": self.uploaded_at,
        }


@dataclass(frozen=True)
class ImageDescriptor:
    """Summary returned to the viewer right after an upload."""

    image_id: str
    width: int
    height: int
    tile_size: int
    levels: int
    original_format: str
    uploaded_at: str
    format: str = "jpeg"

    def to_json(self) -> Dict[str, Any]:
        return {
            "id": self.image_id,
            "width": self.width,
            "height": self.height,
            "tileSize": self.tile_size,
            "format": self.format,
            "levels": self.levels,
            "originalFormat": self.original_format,
            "uploadedAt": self.uploaded_at,
        }


@dataclass(frozen=True)
class TileCoordinate:
    """Address of one tile in an image pyramid; also the tile cache key."""

    image_id: str
    level: int
    x: int
    y: int


@dataclass(frozen=True)
class Region:
    """Axis-aligned pixel rectangle."""

    left: int
    top: int
    width: int
    height: int

    @property
    def right(self) -> int:
        return self.left + self.width

    @property
    def bottom(self) -> int:
        return self.top + self.height

    def as_box(self) -> tuple:
        """Return `(left, top, right, bottom)` as Pillow's crop expects."""
        return (self.left, self.top, self.right, self.bottom)


@dataclass(frozen=True)
class PyramidLevelSpec:
    level: int
    scale: int
    scaled_width: int
    scaled_height: int
