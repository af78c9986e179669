"""Validation helpers for uploads and Deep Zoom tile URLs."""

from __future__ import annotations

import re
import uuid
from pathlib import Path
from typing import Tuple

import aiofiles
import aiofiles.os
from fastapi import HTTPException, UploadFile

ALLOWED_UPLOAD_EXTENSIONS = {".tif", ".tiff", ".scn"}

UPLOAD_CHUNK_SIZE = 8 * 1024 * 1024

_TILE_NAME = re.compile(r"^(\d+)_(\d+)\.(jpg|jpeg)$")
_LEVEL = re.compile(r"^\d+$")
_FILES_SUFFIX = "_files"


def validate_upload_file(upload: UploadFile | None) -> str:
    """Return the lower-cased extension of an acceptable upload.

    Raises:
        HTTPException(400): If no file was sent or its extension is not allowed.
    """
    if upload is None or not upload.filename:
        raise HTTPException(status_code=400, detail="No file uploaded")
    ext = Path(upload.filename).suffix.lower()
    if ext not in ALLOWED_UPLOAD_EXTENSIONS:
        raise HTTPException(status_code=400, detail="Only TIFF and SCN files are allowed")
    return ext


async def save_upload_to_temp(upload: UploadFile, temp_dir: Path, ext: str, max_bytes: int) -> Path:
    """Stream `upload` into `temp_dir` under a random name and return its path.

    Raises:
        HTTPException(400): If the upload is empty.
        HTTPException(413): If the upload exceeds `max_bytes`; the partial file is removed.
    """
    await aiofiles.os.makedirs(temp_dir, exist_ok=True)
    temp_path = temp_dir / f"{uuid.uuid4()}{ext}"
    written = 0
    try:
        async with aiofiles.open(temp_path, "wb") as f:
            while True:
                chunk = await upload.read(UPLOAD_CHUNK_SIZE)
                if not chunk:
                    break
                written += len(chunk)
                if written > max_bytes:
                    raise HTTPException(status_code=413, detail="Uploaded file is too large")
                await f.write(chunk)
        if written == 0:
            raise HTTPException(status_code=400, detail="Uploaded file is empty")
    except BaseException:
        try:
            await aiofiles.os.remove(temp_path)
        except OSError:
            pass
        raise
    return temp_path


def parse_tile_request(image_dir: str, level: str, tile_name: str) -> Tuple[str, int, int, int]:
    """Parse the `{image_id}_files/{level}/{x}_{y}.jpg` path segments.

    Returns:
        `(image_id, level, x, y)`.

    Raises:
        HTTPException(400): If any segment is malformed.
    """
    image_id = image_dir[: -len(_FILES_SUFFIX)] if image_dir.endswith(_FILES_SUFFIX) else image_dir
    if not image_id:
        raise HTTPException(status_code=400, detail="Invalid image id")
    if not _LEVEL.match(level):
        raise HTTPException(status_code=400, detail="Invalid level")
    match = _TILE_NAME.match(tile_name)
    if not match:
        raise HTTPException(status_code=400, detail="Invalid tile format")
    return image_id, int(level), int(match.group(1)), int(match.group(2))
