"""Codec for probing source images and rendering tiles.

TIFF-family sources (TIFF, BigTIFF, SCN, OME-TIFF) are read through
tifffile's zarr view, so a render only decodes the TIFF tiles or strips that
overlap the requested region and only keeps the subsampled pixels in memory.
Pillow does the final resize and encode, and reads the few non-TIFF formats
directly.

* `probe(path)` reads the header only and reports dimensions and format.
* `render(...)` extracts a source rectangle from page 0, resizes it to the
  tile size and encodes it.

Both are blocking and are meant to be called through `asyncio.to_thread`.

Example:
    codec = ImageCodec()
    meta = codec.probe("slide.tif")
    jpeg = codec.render("slide.tif", Region(0, 0, 512, 512), 256, 256)
"""

from __future__ import annotations

import io
import os
from typing import Dict, Tuple

import numpy as np
import tifffile
import zarr
from PIL import Image, UnidentifiedImageError

from models.errors import CodecError
from models.image_record import ImageMetadata, Region

# Non-TIFF sources still go through Pillow and may be large.
Image.MAX_IMAGE_PIXELS = None

RESAMPLE_KERNELS: Dict[str, Image.Resampling] = {
    "nearest": Image.Resampling.NEAREST,
    "box": Image.Resampling.BOX,
    "bilinear": Image.Resampling.BILINEAR,
    "hamming": Image.Resampling.HAMMING,
    "bicubic": Image.Resampling.BICUBIC,
    "lanczos": Image.Resampling.LANCZOS,
}

_READ_ERRORS = (OSError, UnidentifiedImageError, ValueError, EOFError, KeyError, IndexError)


def resolve_kernel(name: str) -> Image.Resampling:
    """Return the Pillow resampling filter for `name`.

    Raises:
        ValueError: If the kernel name is unknown.
    """
    try:
        return RESAMPLE_KERNELS[name.lower()]
    except KeyError as exc:
        raise ValueError(f"Unknown resample kernel: {name!r}") from exc


def _to_uint8(arr: np.ndarray) -> np.ndarray:
    if arr.dtype == np.uint8:
        return arr
    if arr.dtype == np.bool_:
        return arr.astype(np.uint8) * 255
    if np.issubdtype(arr.dtype, np.integer):
        shift = max(arr.dtype.itemsize * 8 - 8, 0)
        return (arr.astype(np.uint64) >> shift).astype(np.uint8)
    return (np.clip(arr, 0.0, 1.0) * 255).astype(np.uint8)


def _array_to_image(arr: np.ndarray) -> Image.Image:
    """Build a Pillow image from a (Y, X) or (Y, X, S) array."""
    arr = _to_uint8(arr)
    if arr.ndim == 3:
        samples = arr.shape[2]
        if samples == 1 or samples == 2:
            arr = arr[:, :, 0]
        elif samples > 4:
            arr = arr[:, :, :3]
    return Image.fromarray(np.ascontiguousarray(arr))


class ImageCodec:
    """Decode, crop, resize and encode images with tifffile and Pillow."""

    def probe(self, path: str | os.PathLike) -> ImageMetadata:
        """Read dimensions and format without decoding pixel data.

        Args:
            path: Path to the source image file.

        Returns:
            ImageMetadata for page 0 of the file.

        Raises:
            CodecError: If the file is missing, unreadable, or not an image.
        """
        try:
            with tifffile.TiffFile(path) as tif:
                page = tif.pages[0]
                return ImageMetadata(
                    width=int(page.imagewidth),
                    height=int(page.imagelength),
                    format="tiff",
                    page_count=len(tif.pages),
                    mode=page.photometric.name.lower(),
                    bands=int(page.samplesperpixel),
                    has_alpha=bool(page.extrasamples),
                )
        except tifffile.TiffFileError:
            pass
        except _READ_ERRORS as exc:
            raise CodecError(f"Cannot read image header from {path}: {exc}") from exc

        try:
            with Image.open(path) as img:
                width, height = img.size
                bands = img.getbands()
                return ImageMetadata(
                    width=int(width),
                    height=int(height),
                    format=(img.format or "unknown").lower(),
                    page_count=int(getattr(img, "n_frames", 1) or 1),
                    mode=img.mode,
                    bands=len(bands),
                    has_alpha="A" in bands,
                )
        except _READ_ERRORS as exc:
            raise CodecError(f"Cannot read image header from {path}: {exc}") from exc

    def render(
        self,
        path: str | os.PathLike,
        region: Region,
        output_width: int,
        output_height: int,
        kernel: str = "nearest",
        format: str = "JPEG",
        quality: int = 75,
    ) -> bytes:
        """Extract `region` from page 0 of `path`, resize it and encode it.

        Args:
            path: Path to the source image file.
            region: Rectangle in full-resolution source pixels.
            output_width: Width of the encoded tile.
            output_height: Height of the encoded tile.
            kernel: Resample kernel name, see `RESAMPLE_KERNELS`.
            format: Pillow output format name.
            quality: Encoder quality (JPEG/WebP).

        Returns:
            Encoded image bytes.

        Raises:
            CodecError: If decoding, resizing or encoding fails.
        """
        if region.width <= 0 or region.height <= 0:
            raise CodecError(f"Empty source region {region} for {path}")
        try:
            resample = resolve_kernel(kernel)
            try:
                tile = self._read_tiff_region(path, region, output_width, output_height)
            except tifffile.TiffFileError:
                tile = self._read_image_region(path, region)
            if tile.size != (output_width, output_height):
                tile = tile.resize((output_width, output_height), resample)
            if format.upper() in ("JPEG", "JPG") and tile.mode != "RGB":
                tile = tile.convert("RGB")
            out_io = io.BytesIO()
            tile.save(out_io, format=format, quality=quality, optimize=False, progressive=False)
            return out_io.getvalue()
        except CodecError:
            raise
        except _READ_ERRORS as exc:
            raise CodecError(f"Failed to render {region} from {path}: {exc}") from exc

    def _read_tiff_region(
        self, path: str | os.PathLike, region: Region, output_width: int, output_height: int
    ) -> Image.Image:
        """Read `region` from the first series, subsampled towards the output size.

        Uses the coarsest pyramid level that still has at least the requested
        resolution, then strides within it. Only the overlapping chunks are
        decoded, one at a time.
        """
        step = max(1, min(region.width // output_width, region.height // output_height))
        with tifffile.TiffFile(path) as tif:
            series = tif.series[0]
            full_width = self._axis_size(series.levels[0], "X")
            level_index, downsample = 0, 1
            for index, level in enumerate(series.levels):
                factor = full_width // max(self._axis_size(level, "X"), 1)
                if factor <= step and factor >= downsample:
                    level_index, downsample = index, factor
            level = series.levels[level_index]

            left, top = region.left // downsample, region.top // downsample
            right = min(-(-region.right // downsample), self._axis_size(level, "X"))
            bottom = min(-(-region.bottom // downsample), self._axis_size(level, "Y"))
            stride = max(1, step // downsample)

            store = series.aszarr(level=level_index)
            try:
                arr = zarr.open(store, mode="r")
                selection, order = self._selection(level.axes, (top, bottom), (left, right), stride)
                data = np.asarray(arr[selection])
            finally:
                store.close()

        if order:
            data = np.transpose(data, order)
        return _array_to_image(data)

    @staticmethod
    def _axis_size(level, axis: str) -> int:
        return int(level.shape[level.axes.index(axis)])

    @staticmethod
    def _selection(axes: str, rows: Tuple[int, int], cols: Tuple[int, int], stride: int):
        """Index tuple for (Y, X[, S]) on page 0, plus the transpose needed to reach that order."""
        selection = []
        kept = []
        for axis in axes:
            if axis == "Y":
                selection.append(slice(rows[0], rows[1], stride))
                kept.append(axis)
            elif axis == "X":
                selection.append(slice(cols[0], cols[1], stride))
                kept.append(axis)
            elif axis == "S":
                selection.append(slice(None))
                kept.append(axis)
            else:
                selection.append(0)
        target = [axis for axis in "YXS" if axis in kept]
        order = tuple(kept.index(axis) for axis in target)
        return tuple(selection), (order if order != tuple(range(len(kept))) else ())

    @staticmethod
    def _read_image_region(path: str | os.PathLike, region: Region) -> Image.Image:
        with Image.open(path) as img:
            img.seek(0)
            return img.crop(region.as_box())
