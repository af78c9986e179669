"""Deep Zoom pyramid geometry.

Level 0 is the coarsest level and `max_level` is native resolution; each
level halves the one above it. All methods are pure integer arithmetic, so a
given (image size, tile size, coordinate) always maps to the same source
region, which is what makes tiles safe to cache forever.

Example:
    geo = PyramidGeometry(10000, 8000, 256)
    geo.max_level            # 6
    geo.tile_region(0, 1, 0) # None, level 0 is only 157 px wide
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Optional, Tuple

from models.image_record import PyramidLevelSpec, Region

DEFAULT_TILE_SIZE = 256


def compute_max_level(width: int, height: int, tile_size: int = DEFAULT_TILE_SIZE) -> int:
    """Return `ceil(log2(max(width, height) / tile_size))`, never below 0.

    Computed by doubling instead of `math.log2` so exact powers of two do not
    suffer from float rounding.
    """
    longest = max(width, height)
    level = 0
    while tile_size << level < longest:
        level += 1
    return level


def level_count(width: int, height: int, tile_size: int = DEFAULT_TILE_SIZE) -> int:
    return compute_max_level(width, height, tile_size) + 1


def scaled_dim(dim: int, scale: int) -> int:
    """Ceiling division of a full-resolution dimension by a level scale."""
    return -(-dim // scale)


@dataclass(frozen=True)
class PyramidGeometry:
    """Tile pyramid for one image.

    Args:
        width: Full-resolution width in pixels.
        height: Full-resolution height in pixels.
        tile_size: Edge length of a square tile.

    Raises:
        ValueError: If any dimension is not positive.
    """

    width: int
    height: int
    tile_size: int = DEFAULT_TILE_SIZE

    def __post_init__(self) -> None:
        if self.width <= 0 or self.height <= 0:
            raise ValueError(f"Image dimensions must be positive, got {self.width}x{self.height}")
        if self.tile_size <= 0:
            raise ValueError(f"Tile size must be positive, got {self.tile_size}")

    @property
    def max_level(self) -> int:
        return compute_max_level(self.width, self.height, self.tile_size)

    @property
    def level_count(self) -> int:
        return self.max_level + 1

    def has_level(self, level: int) -> bool:
        return 0 <= level <= self.max_level

    def scale(self, level: int) -> int:
        """Downsampling factor of `level` relative to full resolution."""
        return 1 << (self.max_level - level)

    def level_spec(self, level: int) -> PyramidLevelSpec:
        scale = self.scale(level)
        return PyramidLevelSpec(
            level=level,
            scale=scale,
            scaled_width=scaled_dim(self.width, scale),
            scaled_height=scaled_dim(self.height, scale),
        )

    def tile_counts(self, level: int) -> Tuple[int, int]:
        """Return `(columns, rows)` of tiles at `level`."""
        spec = self.level_spec(level)
        return (
            scaled_dim(spec.scaled_width, self.tile_size),
            scaled_dim(spec.scaled_height, self.tile_size),
        )

    def tile_region(self, level: int, x: int, y: int) -> Optional[Region]:
        """Return the tile's rectangle in level coordinates, or None if no such tile exists."""
        if not self.has_level(level) or x < 0 or y < 0:
            return None
        spec = self.level_spec(level)
        left = x * self.tile_size
        top = y * self.tile_size
        if left >= spec.scaled_width or top >= spec.scaled_height:
            return None
        return Region(
            left=left,
            top=top,
            width=min(self.tile_size, spec.scaled_width - left),
            height=min(self.tile_size, spec.scaled_height - top),
        )

    def to_source_region(self, region: Region, level: int) -> Region:
        """Map a level-space rectangle to full-resolution pixels.

        The result is clipped to the image bounds: the last row and column of
        a coarse level cover fewer source pixels than `scale` suggests, since
        `scaled_dim` rounds up.
        """
        scale = self.scale(level)
        left = min(region.left * scale, self.width)
        top = min(region.top * scale, self.height)
        right = min(region.right * scale, self.width)
        bottom = min(region.bottom * scale, self.height)
        return Region(left=left, top=top, width=right - left, height=bottom - top)
