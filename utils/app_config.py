"""Application settings read from environment variables.

Values may come from a `.env` file (loaded by `main.py` via python-dotenv).
Every setting has a default so a bare `uvicorn main:app` works locally.

| Variable | Default |
|---|---|
| UPLOADS_DIR | ./uploads |
| DATABASE_DIR | UPLOADS_DIR |
| TILE_SIZE | 256 |
| TILE_QUALITY | 75 |
| TILE_RESAMPLE | nearest |
| CODEC_CONCURRENCY | 1 |
| MAX_UPLOAD_BYTES | 15 GiB |
| LOG_LEVEL | INFO |
"""

from __future__ import annotations

import os
from dataclasses import dataclass
from pathlib import Path
from typing import Mapping, Optional

from services.codec import RESAMPLE_KERNELS

DEFAULT_MAX_UPLOAD_BYTES = 15 * 1024 * 1024 * 1024


def _int_env(env: Mapping[str, str], name: str, default: int, minimum: int = 1, maximum: Optional[int] = None) -> int:
    raw = env.get(name)
    if raw is None or not raw.strip():
        return default
    try:
        value = int(raw)
    except ValueError as exc:
        raise RuntimeError(f"{name}={raw!r} is not an integer") from exc
    if value < minimum or (maximum is not None and value > maximum):
        bound = f"between {minimum} and {maximum}" if maximum is not None else f">= {minimum}"
        raise RuntimeError(f"{name}={value} must be {bound}")
    return value


@dataclass(frozen=True)
class AppConfig:
    """Resolved configuration for one server process."""

    uploads_dir: Path
    database_dir: Path
    tile_size: int = 256
    tile_quality: int = 75
    tile_resample: str = "nearest"
    codec_concurrency: int = 1
    max_upload_bytes: int = DEFAULT_MAX_UPLOAD_BYTES
    log_level: str = "INFO"

    @property
    def originals_dir(self) -> Path:
        return self.uploads_dir / "original"

    @property
    def tiles_dir(self) -> Path:
        return self.uploads_dir / "tiles"

    @property
    def temp_dir(self) -> Path:
        return self.uploads_dir / "temp"

    @classmethod
    def from_env(cls, env: Optional[Mapping[str, str]] = None) -> "AppConfig":
        """Build the configuration from `env` (defaults to `os.environ`).

        Raises:
            RuntimeError: If a variable is present but invalid.
        """
        env = os.environ if env is None else env

        uploads_dir = Path(env.get("UPLOADS_DIR") or "uploads").expanduser()
        database_dir = Path(env.get("DATABASE_DIR") or uploads_dir).expanduser()

        resample = (env.get("TILE_RESAMPLE") or "nearest").strip().lower()
        if resample not in RESAMPLE_KERNELS:
            raise RuntimeError(
                f"TILE_RESAMPLE={resample!r} is not one of {', '.join(sorted(RESAMPLE_KERNELS))}"
            )

        return cls(
            uploads_dir=uploads_dir,
            database_dir=database_dir,
            tile_size=_int_env(env, "TILE_SIZE", 256, minimum=16, maximum=4096),
            tile_quality=_int_env(env, "TILE_QUALITY", 75, minimum=1, maximum=100),
            tile_resample=resample,
            codec_concurrency=_int_env(env, "CODEC_CONCURRENCY", 1),
            max_upload_bytes=_int_env(env, "MAX_UPLOAD_BYTES", DEFAULT_MAX_UPLOAD_BYTES),
            log_level=(env.get("LOG_LEVEL") or "INFO").strip().upper(),
        )

    def ensure_directories(self) -> None:
        for directory in (self.uploads_dir, self.originals_dir, self.tiles_dir, self.temp_dir):
            directory.mkdir(parents=True, exist_ok=True)
