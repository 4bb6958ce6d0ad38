from __future__ import annotations

import sqlite3
import threading
from abc import ABC, abstractmethod
from datetime import datetime, timezone
from pathlib import Path

_DEFAULT_DB_PATH = Path.home() / ".agentpulse" / "agentpulse.db"

_SCHEMA = """
CREATE TABLE IF NOT EXISTS state (
    path       TEXT PRIMARY KEY,
    data       BLOB NOT NULL,
    updated_at TEXT NOT NULL
);
"""


def _now() -> str:
    return datetime.now(timezone.utc).isoformat()


class StateBackend(ABC):
    """Key/value document storage. Each call is atomic for its single path."""

    @abstractmethod
    def read(self, path: str) -> bytes | None:
        """Return the stored document, or None when nothing was written yet."""

    @abstractmethod
    def write(self, path: str, data: bytes) -> None:
        """Replace the document stored at ``path``."""


class MemoryStateBackend(StateBackend):
    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._docs: dict[str, bytes] = {}

    def read(self, path: str) -> bytes | None:
        with self._lock:
            return self._docs.get(path)

    def write(self, path: str, data: bytes) -> None:
        with self._lock:
            self._docs[path] = bytes(data)

    def paths(self) -> list[str]:
        with self._lock:
            return sorted(self._docs)


class SqliteStateBackend(StateBackend):
    def __init__(self, db_path: Path | None = None) -> None:
        self.db_path = db_path or _DEFAULT_DB_PATH
        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        self._lock = threading.Lock()
        self._conn = sqlite3.connect(str(self.db_path), check_same_thread=False)
        self._conn.execute("PRAGMA journal_mode=WAL")
        self._conn.executescript(_SCHEMA)

    def read(self, path: str) -> bytes | None:
        with self._lock:
            cur = self._conn.execute("SELECT data FROM state WHERE path = ?", (path,))
            row = cur.fetchone()
        if row is None:
            return None
        data = row[0]
        return data.encode() if isinstance(data, str) else bytes(data)

    def write(self, path: str, data: bytes) -> None:
        with self._lock:
            self._conn.execute(
                "INSERT OR REPLACE INTO state (path, data, updated_at) VALUES (?, ?, ?)",
                (path, sqlite3.Binary(data), _now()),
            )
            self._conn.commit()

    def close(self) -> None:
        with self._lock:
            self._conn.close()
