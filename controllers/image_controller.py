from fastapi import HTTPException, Request, UploadFile
from fastapi.responses import FileResponse
from typing import Any, Dict, List, Optional
import logging

from models.errors import (
    CodecError,
    ImageIdConflictError,
    NotFoundError,
    OutOfBoundsError,
    StorageError,
    TileServerError,
    ValidationError,
)
from services.image_store import ImageStore
from services.tile_generator import TileGenerator
from services.upload_intake import UploadIntake, new_image_id
from utils.app_config import AppConfig
from utils.media_validation import parse_tile_request, save_upload_to_temp, validate_upload_file

LOGGER = logging.getLogger(__name__)

TILE_CACHE_HEADERS = {"Cache-Control": "public, max-age=31536000, immutable"}

_STATUS_BY_ERROR = (
    (ValidationError, 400),
    (NotFoundError, 404),
    (OutOfBoundsError, 404),
    (ImageIdConflictError, 409),
    (CodecError, 500),
    (StorageError, 500),
)


def http_error_for(exc: TileServerError, detail: Optional[str] = None) -> HTTPException:
    """Translate a typed service failure into an HTTPException."""
    for error_type, status in _STATUS_BY_ERROR:
        if isinstance(exc, error_type):
            return HTTPException(status_code=status, detail=detail or str(exc))
    return HTTPException(status_code=500, detail=detail or str(exc))


async def upload_image(request: Request, file: Optional[UploadFile]) -> Dict[str, Any]:
    """Handle a multipart upload: stage, ingest, and describe the new image.

    Args:
        request: FastAPI Request object (used to access app.state for shared services).
        file: Uploaded TIFF/SCN file, or None if the form had no file.

    Returns:
        A dict containing: success, imageId, info (the image descriptor).
    """
    ext = validate_upload_file(file)
    config: AppConfig = request.app.state.config
    intake: UploadIntake = request.app.state.upload_intake

    temp_path = await save_upload_to_temp(file, config.temp_dir, ext, config.max_upload_bytes)

    image_id = new_image_id()
    try:
        descriptor = await intake.ingest(image_id, temp_path)
    except CodecError as exc:
        LOGGER.error("Upload rejected, cannot read %s: %s", file.filename, exc)
        raise HTTPException(status_code=422, detail="Unsupported or corrupt image file") from exc
    except TileServerError as exc:
        LOGGER.error("Upload error for %s: %s", file.filename, exc)
        raise http_error_for(exc) from exc

    await intake.sweep_temp_dir()

    return {"success": True, "imageId": image_id, "info": descriptor.to_json()}


async def get_tile(request: Request, image_dir: str, level: str, tile_name: str) -> FileResponse:
    """Controller serving one Deep Zoom tile, generating it on first request.

    Returns:
        FileResponse streaming the cached JPEG.

    Raises:
        HTTPException(400) for malformed coordinates, 404 when the image or
        tile does not exist, 500 on render or disk failures.
    """
    image_id, level_num, x, y = parse_tile_request(image_dir, level, tile_name)
    generator: TileGenerator = request.app.state.tile_generator

    try:
        tile_path = await generator.get_tile(image_id, level_num, x, y)
    except (NotFoundError, OutOfBoundsError) as exc:
        LOGGER.debug("Tile not found %s/%s/%s: %s", image_id, level, tile_name, exc)
        raise http_error_for(exc, "Tile not found") from exc
    except TileServerError as exc:
        LOGGER.error("Tile error %s/%s/%s: %s", image_id, level, tile_name, exc)
        raise http_error_for(exc) from exc

    return FileResponse(tile_path, media_type="image/jpeg", headers=TILE_CACHE_HEADERS)


async def list_images(request: Request) -> List[Dict[str, Any]]:
    """Return every stored image in the listing JSON shape."""
    store: ImageStore = request.app.state.image_store
    records = await store.list_images()
    return [record.to_json() for record in records]
