"""SQLite helpers for the face tag database."""
from __future__ import annotations

import sqlite3
from pathlib import Path
from typing import Iterable, Sequence, Union


PRAGMAS: Sequence[tuple[str, str]] = (
    ("foreign_keys", "ON"),
    ("journal_mode", "WAL"),
    ("synchronous", "NORMAL"),
)

CREATE_STATEMENTS = [
    """
    CREATE TABLE IF NOT EXISTS people (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        name TEXT NOT NULL,
        face_encodings TEXT,
        created_at TEXT NOT NULL
    );
    """,
    """
    CREATE TABLE IF NOT EXISTS face_tags (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        photo_ref TEXT NOT NULL,
        person_id INTEGER,
        x REAL NOT NULL,
        y REAL NOT NULL,
        width REAL NOT NULL,
        height REAL NOT NULL,
        confidence REAL NOT NULL DEFAULT 1.0,
        is_manual INTEGER NOT NULL DEFAULT 1,
        created_at TEXT NOT NULL,
        FOREIGN KEY (person_id) REFERENCES people (id) ON DELETE SET NULL
    );
    """,
    "CREATE INDEX IF NOT EXISTS idx_face_tags_photo_ref ON face_tags (photo_ref);",
    "CREATE INDEX IF NOT EXISTS idx_face_tags_person_id ON face_tags (person_id);",
]


def connect(db_path: Union[Path, str]) -> sqlite3.Connection:
    """Open the database, creating parent directories for file paths.

    ``":memory:"`` is accepted for tests.
    """
    if str(db_path) != ":memory:":
        Path(db_path).parent.mkdir(parents=True, exist_ok=True)
    conn = sqlite3.connect(str(db_path), check_same_thread=False)
    conn.row_factory = sqlite3.Row
    _apply_pragmas(conn)
    return conn


def init_schema(conn: sqlite3.Connection) -> None:
    execute_script(conn, CREATE_STATEMENTS)


def _apply_pragmas(conn: sqlite3.Connection) -> None:
    cursor = conn.cursor()
    for name, value in PRAGMAS:
        cursor.execute(f"PRAGMA {name} = {value};")
    cursor.close()


def execute_script(conn: sqlite3.Connection, statements: Iterable[str]) -> None:
    cursor = conn.cursor()
    try:
        for statement in statements:
            cursor.execute(statement)
    finally:
        cursor.close()
    conn.commit()
