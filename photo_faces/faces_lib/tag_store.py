"""Metadata store contract for identities and face tags, plus a SQLite implementation."""
from __future__ import annotations

import asyncio
import functools
import logging
import sqlite3
import threading
from typing import Any, Callable, List, Optional, Protocol, TypeVar

from .errors import PersistenceError, TagNotFoundError
from .face_tags import FaceTag, Identity, utc_timestamp
from .geometry import Rect, validate_rect

T = TypeVar("T")


class MetadataStore(Protocol):
    """Asynchronous persistence consumed by the tag lifecycle coordinator."""

    async def get_identities(self) -> List[Identity]:
        ...

    async def create_tag(
        self,
        photo_ref: str,
        box: Rect,
        identity_id: Optional[int],
        confidence: float,
        is_manual: bool,
    ) -> int:
        ...

    async def update_tag(self, tag_id: int, box: Rect, identity_id: Optional[int], confidence: float) -> None:
        ...

    async def delete_tag(self, tag_id: int) -> None:
        ...

    async def get_tags_for_photo(self, photo_ref: str) -> List[FaceTag]:
        ...

    async def set_reference_descriptors(self, identity_id: int, descriptors_text: str) -> None:
        ...


class SqliteTagStore:
    """SQLite-backed people + face tag storage.

    Statements run on the loop's default executor and are serialized with a
    lock; each write commits immediately. Any ``sqlite3.Error`` surfaces as
    :class:`PersistenceError`.
    """

    def __init__(self, conn: sqlite3.Connection, *, logger: Optional[logging.Logger] = None) -> None:
        self.conn = conn
        self.lock = threading.Lock()
        self.logger = logger or logging.getLogger(__name__)

    # -- identities -------------------------------------------------------

    async def get_identities(self) -> List[Identity]:
        rows = await self._query("SELECT id, name, face_encodings, created_at FROM people ORDER BY id")
        return [_identity_from_row(row) for row in rows]

    async def get_identity(self, identity_id: int) -> Optional[Identity]:
        rows = await self._query(
            "SELECT id, name, face_encodings, created_at FROM people WHERE id = ?",
            (identity_id,),
        )
        return _identity_from_row(rows[0]) if rows else None

    async def create_identity(self, name: str) -> Identity:
        clean_name = (name or "").strip()
        if not clean_name:
            raise ValueError("name is required")
        created_at = utc_timestamp()
        cursor = await self._execute(
            "INSERT INTO people (name, created_at) VALUES (?, ?)",
            (clean_name, created_at),
        )
        self.logger.info("Created identity %s (%s)", cursor.lastrowid, clean_name)
        return Identity(id=int(cursor.lastrowid), name=clean_name, created_at=created_at)

    async def rename_identity(self, identity_id: int, name: str) -> None:
        clean_name = (name or "").strip()
        if not clean_name:
            raise ValueError("name is required")
        cursor = await self._execute("UPDATE people SET name = ? WHERE id = ?", (clean_name, identity_id))
        if cursor.rowcount == 0:
            raise PersistenceError(f"Unknown identity: {identity_id}")

    async def delete_identity(self, identity_id: int) -> None:
        """Delete an identity; its tags stay on their photos, unassigned."""
        deleted = await self._run(self._delete_identity_sync, identity_id)
        if deleted == 0:
            raise PersistenceError(f"Unknown identity: {identity_id}")

    async def set_reference_descriptors(self, identity_id: int, descriptors_text: str) -> None:
        cursor = await self._execute(
            "UPDATE people SET face_encodings = ? WHERE id = ?",
            (descriptors_text, identity_id),
        )
        if cursor.rowcount == 0:
            raise PersistenceError(f"Unknown identity: {identity_id}")

    # -- face tags --------------------------------------------------------

    async def create_tag(
        self,
        photo_ref: str,
        box: Rect,
        identity_id: Optional[int],
        confidence: float,
        is_manual: bool,
    ) -> int:
        clean_ref = (photo_ref or "").strip()
        if not clean_ref:
            raise ValueError("photo_ref is required")
        validate_rect(box)
        _check_confidence(confidence)
        cursor = await self._execute(
            """
            INSERT INTO face_tags (photo_ref, person_id, x, y, width, height, confidence, is_manual, created_at)
            VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
            """,
            (
                clean_ref,
                identity_id,
                box.x,
                box.y,
                box.width,
                box.height,
                float(confidence),
                int(bool(is_manual)),
                utc_timestamp(),
            ),
        )
        self.logger.debug("Stored face tag %s on %s", cursor.lastrowid, clean_ref)
        return int(cursor.lastrowid)

    async def update_tag(self, tag_id: int, box: Rect, identity_id: Optional[int], confidence: float) -> None:
        validate_rect(box)
        _check_confidence(confidence)
        cursor = await self._execute(
            """
            UPDATE face_tags
            SET person_id = ?, x = ?, y = ?, width = ?, height = ?, confidence = ?
            WHERE id = ?
            """,
            (identity_id, box.x, box.y, box.width, box.height, float(confidence), tag_id),
        )
        if cursor.rowcount == 0:
            raise TagNotFoundError(f"Unknown face tag: {tag_id}", details={"tag_id": tag_id})

    async def delete_tag(self, tag_id: int) -> None:
        cursor = await self._execute("DELETE FROM face_tags WHERE id = ?", (tag_id,))
        if cursor.rowcount == 0:
            raise TagNotFoundError(f"Unknown face tag: {tag_id}", details={"tag_id": tag_id})

    async def get_tags_for_photo(self, photo_ref: str) -> List[FaceTag]:
        rows = await self._query(
            """
            SELECT t.id, t.photo_ref, t.person_id, t.x, t.y, t.width, t.height,
                   t.confidence, t.is_manual, t.created_at, p.name AS person_name
            FROM face_tags AS t
            LEFT JOIN people AS p ON p.id = t.person_id
            WHERE t.photo_ref = ?
            ORDER BY t.id
            """,
            (photo_ref,),
        )
        return [
            FaceTag(
                id=int(row["id"]),
                photo_ref=row["photo_ref"],
                box=Rect(
                    x=float(row["x"]),
                    y=float(row["y"]),
                    width=float(row["width"]),
                    height=float(row["height"]),
                ),
                identity_id=row["person_id"],
                identity_name=row["person_name"] or "",
                confidence=float(row["confidence"]),
                is_manual=bool(row["is_manual"]),
                created_at=row["created_at"],
            )
            for row in rows
        ]

    # -- internal ---------------------------------------------------------

    async def _run(self, func: Callable[..., T], *args: Any) -> T:
        """Run a blocking sqlite call on the default executor."""
        loop = asyncio.get_running_loop()
        return await loop.run_in_executor(None, functools.partial(func, *args))

    async def _execute(self, sql: str, params: tuple = ()) -> sqlite3.Cursor:
        return await self._run(self._execute_sync, sql, params)

    async def _query(self, sql: str, params: tuple = ()) -> List[sqlite3.Row]:
        return await self._run(self._query_sync, sql, params)

    def _delete_identity_sync(self, identity_id: int) -> int:
        with self.lock:
            try:
                self.conn.execute("UPDATE face_tags SET person_id = NULL WHERE person_id = ?", (identity_id,))
                cursor = self.conn.execute("DELETE FROM people WHERE id = ?", (identity_id,))
                self.conn.commit()
            except sqlite3.Error as exc:
                self.conn.rollback()
                raise PersistenceError(f"Failed to delete identity {identity_id}") from exc
        return cursor.rowcount

    def _execute_sync(self, sql: str, params: tuple = ()) -> sqlite3.Cursor:
        with self.lock:
            try:
                cursor = self.conn.execute(sql, params)
                self.conn.commit()
            except sqlite3.Error as exc:
                self.conn.rollback()
                raise PersistenceError(str(exc)) from exc
        return cursor

    def _query_sync(self, sql: str, params: tuple = ()) -> List[sqlite3.Row]:
        with self.lock:
            try:
                return self.conn.execute(sql, params).fetchall()
            except sqlite3.Error as exc:
                raise PersistenceError(str(exc)) from exc


def _identity_from_row(row: sqlite3.Row) -> Identity:
    return Identity(
        id=int(row["id"]),
        name=row["name"],
        descriptors_text=row["face_encodings"],
        created_at=row["created_at"],
    )


def _check_confidence(confidence: float) -> None:
    if not 0.0 <= float(confidence) <= 1.0:
        raise ValueError("confidence must be between 0 and 1")
