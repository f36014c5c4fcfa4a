import logging
import os
import sqlite3
import threading
from typing import Any, List, Optional, Sequence

from ..config import get_settings

logger = logging.getLogger(__name__)

Row = sqlite3.Row

SCHEMA_VERSION = 1


DDL = """
-- Generated image history, one row per successful generation
CREATE TABLE IF NOT EXISTS history (
  id              INTEGER PRIMARY KEY,
  owner_id        TEXT NOT NULL,
  image_url       TEXT NOT NULL,
  prompt          TEXT NOT NULL,
  model           TEXT NOT NULL,
  created_at      TEXT NOT NULL DEFAULT (strftime('%Y-%m-%d %H:%M:%f', 'now'))
);

CREATE INDEX IF NOT EXISTS idx_history_owner_time ON history(owner_id, created_at);
"""

class StorageService:
    def __init__(self, db_path: str):
        self.db_path = db_path
        self._local = threading.local()
        # Initialize the schema using a temporary connection
        conn = sqlite3.connect(db_path)
        conn.execute("PRAGMA journal_mode = WAL;")
        conn.execute("PRAGMA synchronous = NORMAL;")
        conn.row_factory = sqlite3.Row
        self._ensure_schema_with_connection(conn)
        conn.close()

    @property
    def connection(self) -> sqlite3.Connection:
        """Get a thread-local connection to the database."""
        if not hasattr(self._local, 'connection') or self._local.connection is None:
            self._local.connection = sqlite3.connect(self.db_path)
            self._local.connection.execute("PRAGMA journal_mode = WAL;")
            self._local.connection.execute("PRAGMA synchronous = NORMAL;")
            self._local.connection.row_factory = sqlite3.Row
        return self._local.connection

    # ---------- internal ----------
    def _ensure_schema_with_connection(self, conn: sqlite3.Connection) -> None:
        """Ensure schema exists using the provided connection."""
        cur = conn.execute("PRAGMA user_version;")
        version = cur.fetchone()[0]
        if version < 1:
            conn.executescript(DDL)
            conn.execute(f"PRAGMA user_version = {SCHEMA_VERSION};")
            conn.commit()

    def close(self) -> None:
        """Close the thread-local connection if it exists."""
        if hasattr(self._local, 'connection') and self._local.connection is not None:
            self._local.connection.commit()
            self._local.connection.close()
            self._local.connection = None

    def _one(self, sql: str, params: Sequence[Any] = ()) -> Optional[Row]:
        cur = self.connection.execute(sql, params)
        return cur.fetchone()

    def _all(self, sql: str, params: Sequence[Any] = ()) -> List[Row]:
        cur = self.connection.execute(sql, params)
        return cur.fetchall()

    # ---------- history ----------
    def add_history_record(self, owner_id: str, image_url: str, prompt: str, model: str) -> int:
        cur = self.connection.execute(
            "INSERT INTO history (owner_id, image_url, prompt, model) VALUES (?, ?, ?, ?)",
            (owner_id, image_url, prompt, model)
        )
        self.connection.commit()
        return cur.lastrowid

    def get_history_record(self, record_id: int) -> Optional[Row]:
        return self._one("SELECT * FROM history WHERE id = ?", (record_id,))

    def list_history(self, owner_id: str, limit: Optional[int] = None) -> List[Row]:
        """Return the owner's records, newest first."""
        sql = "SELECT * FROM history WHERE owner_id = ? ORDER BY created_at DESC, id DESC"
        if limit is None:
            return self._all(sql, (owner_id,))
        return self._all(sql + " LIMIT ?", (owner_id, limit))

    def delete_history_record(self, record_id: int) -> bool:
        cur = self.connection.execute("DELETE FROM history WHERE id = ?", (record_id,))
        self.connection.commit()
        return cur.rowcount > 0

_SERVICE: Optional[StorageService] = None
_SERVICE_LOCK = threading.Lock()

def get_database_service() -> StorageService:
    """Return a singleton StorageService instance.

    The instance is created lazily on first call and is protected by a
    module-level lock. Without a configured ``database_path`` the file lives
    next to this module so callers from other working directories share it.
    """
    global _SERVICE
    if _SERVICE is not None:
        return _SERVICE
    with _SERVICE_LOCK:
        if _SERVICE is None:
            db_path = get_settings().database_path
            if not db_path:
                db_path = os.path.join(os.path.dirname(__file__), 'imagegen.db')
            logger.info("Opening history database at %s", db_path)
            _SERVICE = StorageService(db_path)
    return _SERVICE
