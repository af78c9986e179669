import logging
from contextlib import asynccontextmanager
from pathlib import Path
from typing import Optional

from dotenv import load_dotenv
from fastapi import FastAPI, HTTPException, Request
from fastapi.responses import FileResponse, JSONResponse
from fastapi.staticfiles import StaticFiles
from starlette.exceptions import HTTPException as StarletteHTTPException

from dal.image_dal import ImageDAL
from routes.image_route import router as image_router
from services.codec import ImageCodec
from services.concurrency_gate import ConcurrencyGate
from services.image_store import ImageStore
from services.metadata_cache import MetadataCache
from services.tile_cache import TileCache
from services.tile_generator import TileGenerator
from services.upload_intake import UploadIntake
from utils.app_config import AppConfig
from utils.database_init import AsyncDatabaseInitializer
from utils.logging_setup import setup_logging

BASE_DIR = Path(__file__).resolve().parent
PUBLIC_DIR = BASE_DIR / "public"

load_dotenv()  # Load environment variables from .env file if present

LOGGER = logging.getLogger(__name__)


def build_lifespan(config: Optional[AppConfig] = None):
    """Return a lifespan that wires the tiling services onto `app.state`."""

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        """
        Lifespan manager to initialize:
          - the upload, original and tile directories
          - the SQLite image registry (kept across restarts)
          - the metadata cache, codec gate, tile cache, tile generator and upload intake
        and attach them to `app.state`.
        """
        cfg = config or AppConfig.from_env()
        setup_logging(cfg.log_level)
        cfg.ensure_directories()

        db_initializer = AsyncDatabaseInitializer(cfg.database_dir)
        await db_initializer.ensure_database()

        codec = ImageCodec()
        image_store = ImageStore(cfg.originals_dir, ImageDAL(db_initializer))
        metadata_cache = MetadataCache(image_store, codec)
        image_store.bind_metadata_cache(metadata_cache)
        gate = ConcurrencyGate(cfg.codec_concurrency)

        app.state.config = cfg
        app.state.db_initializer = db_initializer
        app.state.image_store = image_store
        app.state.metadata_cache = metadata_cache
        app.state.gate = gate
        app.state.tile_generator = TileGenerator(
            image_store,
            metadata_cache,
            TileCache(cfg.tiles_dir),
            gate,
            codec=codec,
            tile_size=cfg.tile_size,
            quality=cfg.tile_quality,
            kernel=cfg.tile_resample,
        )
        app.state.upload_intake = UploadIntake(
            image_store, codec=codec, tile_size=cfg.tile_size, temp_dir=cfg.temp_dir
        )

        LOGGER.info(
            "Serving tiles from %s (tile size %d, codec concurrency %d)",
            cfg.uploads_dir, cfg.tile_size, cfg.codec_concurrency,
        )
        yield

    return lifespan


def create_app(config: Optional[AppConfig] = None) -> FastAPI:
    """
    Create and configure the FastAPI application instance.
    """
    app = FastAPI(title="Deep Zoom Tile Server", lifespan=build_lifespan(config))

    @app.exception_handler(StarletteHTTPException)
    async def http_error_handler(request: Request, exc: StarletteHTTPException):
        """Report HTTP errors as `{"error": message}`."""
        return JSONResponse(status_code=exc.status_code, content={"error": exc.detail}, headers=exc.headers)

    # Serve static assets from the public directory, if it exists.
    if PUBLIC_DIR.exists():
        app.mount("/public", StaticFiles(directory=PUBLIC_DIR), name="public")

    @app.get("/", include_in_schema=False)
    async def serve_index():
        """
        Serve the viewer index page from the public directory.
        """
        index_path = PUBLIC_DIR / "index.html"
        if not index_path.exists():
            raise HTTPException(status_code=404, detail="Frontend not found")
        return FileResponse(index_path)

    app.include_router(image_router)

    return app


app = create_app()
