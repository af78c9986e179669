"""Async data access layer for the `images` registry table.

Provides ImageDAL with the insert/lookup/list operations the image store
needs, on top of `utils.database_init.AsyncDatabaseInitializer`.
"""

from __future__ import annotations

from pathlib import Path
from typing import List, Optional, Sequence

import aiosqlite

from models.errors import ImageIdConflictError
from models.image_record import ImageRecord
from utils.database_init import AsyncDatabaseInitializer


class ImageDAL:
    """Data access layer for registered original images.

    The constructor accepts an `AsyncDatabaseInitializer` (or any object
    exposing an async `connection()` context manager that yields an
    `aiosqlite.Connection`).
    """

    _COLUMNS = (
        "image_id",
        "source_path",
        "width",
        "height",
        "format",
        "page_count",
        "uploaded_at",
    )
    _COLUMN_LIST = ", ".join(_COLUMNS)

    def __init__(self, db_initializer: AsyncDatabaseInitializer) -> None:
        self._db = db_initializer

    async def create_image(self, record: ImageRecord) -> str:
        """Insert a registry row and return its image id.

        Raises:
            ImageIdConflictError: If a row with the same image id already exists.
        """
        async with self._db.connection() as conn:
            try:
                await conn.execute(
                    f"INSERT INTO images ({self._COLUMN_LIST}) VALUES (?, ?, ?, ?, ?, ?, ?)",
                    (
                        record.image_id,
                        str(record.source_path),
                        record.width,
                        record.height,
                        record.format,
                        record.page_count,
                        record.uploaded_at,
                    ),
                )
            except aiosqlite.IntegrityError as exc:
                raise ImageIdConflictError(f"Image {record.image_id} is already registered") from exc
            await conn.commit()
        return record.image_id

    async def get_image_by_id(self, image_id: str) -> Optional[ImageRecord]:
        """Return the ImageRecord for `image_id`, or None if not registered."""
        async with self._db.connection() as conn:
            cur = await conn.execute(
                f"SELECT {self._COLUMN_LIST} FROM images WHERE image_id = ?",
                (image_id,),
            )
            row = await cur.fetchone()
            return self._row_to_record(row) if row else None

    async def list_images(self) -> List[ImageRecord]:
        """Return every registered image, newest first."""
        async with self._db.connection() as conn:
            cur = await conn.execute(
                f"SELECT {self._COLUMN_LIST} FROM images ORDER BY uploaded_at DESC"
            )
            rows = await cur.fetchall()
            return [self._row_to_record(r) for r in rows]

    @staticmethod
    def _row_to_record(row: Sequence[object]) -> ImageRecord:
        """Convert a DB row tuple into an ImageRecord."""
        return ImageRecord(
            image_id=row[0],
            source_path=Path(row[1]),
            width=row[2],
            height=row[3],
            format=row[4],
            page_count=row[5],
            uploaded_at=row[6],
        )
