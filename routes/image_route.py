from typing import Optional

from fastapi import APIRouter, File, HTTPException, Request, UploadFile

from controllers.image_controller import get_tile, list_images, upload_image

router = APIRouter(prefix="/api")


@router.post("/upload")
async def upload_route(request: Request, image: Optional[UploadFile] = File(None)):
	"""Accept a TIFF/SCN upload and return its id and pyramid descriptor."""
	try:
		return await upload_image(request, image)
	except HTTPException:
		raise
	except Exception as exc:
		raise HTTPException(status_code=500, detail=str(exc))


@router.get("/image/{image_dir}/{level}/{tile_name}")
async def tile_route(request: Request, image_dir: str, level: str, tile_name: str):
	"""Serve a Deep Zoom tile: `{image_id}_files/{level}/{x}_{y}.jpg`."""
	try:
		return await get_tile(request, image_dir, level, tile_name)
	except HTTPException:
		raise
	except Exception as exc:
		raise HTTPException(status_code=500, detail=str(exc))


@router.get("/images")
async def images_route(request: Request):
	"""List stored images, newest first."""
	try:
		return await list_images(request)
	except HTTPException:
		raise
	except Exception as exc:
		raise HTTPException(status_code=500, detail=str(exc))


@router.get("/health")
async def health_route(request: Request):
	"""Liveness check including the codec gate occupancy."""
	gate = request.app.state.gate
	return {
		"status": "ok",
		"message": "Server is running",
		"codec": {"capacity": gate.capacity, "in_use": gate.in_use},
	}
