"""Typed failures raised by the tiling services.

Controllers translate these into HTTP status codes; the services never retry.
"""

from __future__ import annotations


class TileServerError(Exception):
    """Base class for every error the tiling core reports upward."""


class ValidationError(TileServerError):
    """Malformed input such as a bad tile name or a missing upload payload."""


class NotFoundError(TileServerError):
    """Unknown image id, or no original file matches it."""


class OutOfBoundsError(TileServerError):
    """Tile coordinate lies outside the pyramid extent for the image."""


class CodecError(TileServerError):
    """Probe, extract, resize or encode failed (corrupt or unsupported source)."""


class StorageError(TileServerError):
    """Disk write, rename or move failed."""


class ImageIdConflictError(TileServerError):
    """More than one original file, or registry row, claims the same image id."""
