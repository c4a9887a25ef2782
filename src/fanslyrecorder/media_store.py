"""
Media store: content-hash registry of saved files, backed by SQLite.
"""

import hashlib
import sqlite3
import threading
import time
from dataclasses import dataclass
from enum import Enum
from pathlib import Path
from typing import List, Optional, Union

from .logger import get_logger


class FileKind(Enum):
    LIVESTREAM = "livestream"
    CONTACT_SHEET = "contact_sheet"


@dataclass(frozen=True)
class RecordedFile:
    """A finished artifact. Written once, never updated."""
    creator_name: str
    content_hash: str
    path: str
    kind: FileKind


def hash_file(path: Union[str, Path], chunk_size: int = 1024 * 1024) -> str:
    """SHA-256 hex digest of a file, read in chunks."""
    digest = hashlib.sha256()
    with open(path, 'rb') as f:
        for chunk in iter(lambda: f.read(chunk_size), b''):
            digest.update(chunk)
    return digest.hexdigest()


class MediaStore:
    """
    SQLite-backed file registry.

    Tables:
      - files
    """

    def __init__(self, db_path: Union[str, Path] = "./data/media.db"):
        self._path = Path(db_path)
        self._path.parent.mkdir(parents=True, exist_ok=True)
        self._lock = threading.Lock()
        self._logger = get_logger('media_store')
        self._init_schema()

    def _connect(self) -> sqlite3.Connection:
        conn = sqlite3.connect(self._path)
        conn.row_factory = sqlite3.Row
        return conn

    def _init_schema(self) -> None:
        with self._lock, self._connect() as conn:
            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS files (
                    content_hash TEXT NOT NULL,
                    kind TEXT NOT NULL,
                    creator_name TEXT NOT NULL,
                    path TEXT NOT NULL,
                    saved_at INTEGER NOT NULL,
                    PRIMARY KEY (content_hash, kind)
                )
                """
            )
            conn.execute(
                "CREATE INDEX IF NOT EXISTS idx_files_creator ON files (creator_name)"
            )

    def save(self, record: RecordedFile) -> bool:
        """
        Register a file.

        Returns:
            False if the same content was already registered under this kind.
        """
        with self._lock, self._connect() as conn:
            cursor = conn.execute(
                """
                INSERT OR IGNORE INTO files (content_hash, kind, creator_name, path, saved_at)
                VALUES (?, ?, ?, ?, ?)
                """,
                (
                    record.content_hash,
                    record.kind.value,
                    record.creator_name,
                    record.path,
                    int(time.time()),
                ),
            )
            inserted = cursor.rowcount > 0

        if inserted:
            self._logger.debug(f"Registered {record.kind.value} {record.path}")
        else:
            self._logger.info(f"Already registered: {record.path}")
        return inserted

    def exists(self, content_hash: str) -> bool:
        with self._lock, self._connect() as conn:
            row = conn.execute(
                "SELECT 1 FROM files WHERE content_hash = ? LIMIT 1",
                (content_hash,),
            ).fetchone()
        return row is not None

    def files_for_creator(
        self,
        creator_name: str,
        kind: Optional[FileKind] = None
    ) -> List[RecordedFile]:
        query = "SELECT * FROM files WHERE creator_name = ?"
        params: list = [creator_name]
        if kind is not None:
            query += " AND kind = ?"
            params.append(kind.value)
        query += " ORDER BY saved_at, path"

        with self._lock, self._connect() as conn:
            rows = conn.execute(query, params).fetchall()

        return [
            RecordedFile(
                creator_name=row["creator_name"],
                content_hash=row["content_hash"],
                path=row["path"],
                kind=FileKind(row["kind"]),
            )
            for row in rows
        ]
