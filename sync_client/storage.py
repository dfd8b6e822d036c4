"""Device-side SQLite storage: shared connection, local entity copies and the delta cursor."""
from __future__ import annotations

import json
import logging
import sqlite3
import threading
from contextlib import contextmanager
from typing import Any, Dict, Optional

logger = logging.getLogger(__name__)


class LocalDatabase:
    """One SQLite connection shared by the queue and the stores, guarded by a re-entrant lock."""

    def __init__(self, path: str = ":memory:"):
        self.path = str(path)
        self.lock = threading.RLock()
        self.conn = sqlite3.connect(self.path, check_same_thread=False)
        self.conn.row_factory = sqlite3.Row
        if self.path != ":memory:":
            self.conn.execute("PRAGMA journal_mode=WAL")

    @contextmanager
    def transaction(self):
        with self.lock:
            with self.conn:
                yield self.conn

    def query(self, sql: str, params=()):
        with self.lock:
            return self.conn.execute(sql, params).fetchall()

    def close(self) -> None:
        with self.lock:
            self.conn.close()


class EntityStore:
    """Local copy of business entities, fed by delta sync and id mapping."""

    def upsert(self, entity_type: str, entity_id: str, data: Dict[str, Any]) -> None:
        raise NotImplementedError

    def delete(self, entity_type: str, entity_id: str) -> None:
        raise NotImplementedError

    def get(self, entity_type: str, entity_id: str) -> Optional[Dict[str, Any]]:
        raise NotImplementedError

    def rekey(self, entity_type: str, old_id: str, new_id: str) -> None:
        data = self.get(entity_type, old_id)
        if data is None:
            return
        data["id"] = new_id
        self.upsert(entity_type, new_id, data)
        self.delete(entity_type, old_id)


class SQLiteEntityStore(EntityStore):
    def __init__(self, db: LocalDatabase):
        self.db = db
        with self.db.transaction() as conn:
            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS local_entities (
                    entity_type TEXT NOT NULL,
                    entity_id TEXT NOT NULL,
                    data TEXT NOT NULL,
                    PRIMARY KEY (entity_type, entity_id)
                )
                """
            )

    def upsert(self, entity_type, entity_id, data):
        with self.db.transaction() as conn:
            conn.execute(
                "INSERT INTO local_entities (entity_type, entity_id, data) VALUES (?, ?, ?) "
                "ON CONFLICT (entity_type, entity_id) DO UPDATE SET data = excluded.data",
                (entity_type, str(entity_id), json.dumps(data)),
            )

    def delete(self, entity_type, entity_id):
        with self.db.transaction() as conn:
            conn.execute(
                "DELETE FROM local_entities WHERE entity_type = ? AND entity_id = ?",
                (entity_type, str(entity_id)),
            )

    def get(self, entity_type, entity_id):
        rows = self.db.query(
            "SELECT data FROM local_entities WHERE entity_type = ? AND entity_id = ?",
            (entity_type, str(entity_id)),
        )
        return json.loads(rows[0]["data"]) if rows else None

    def rekey(self, entity_type, old_id, new_id):
        with self.db.lock:
            super().rekey(entity_type, old_id, new_id)

    def count(self, entity_type: Optional[str] = None) -> int:
        if entity_type:
            rows = self.db.query("SELECT COUNT(*) AS n FROM local_entities WHERE entity_type = ?", (entity_type,))
        else:
            rows = self.db.query("SELECT COUNT(*) AS n FROM local_entities")
        return rows[0]["n"]


class CursorStore:
    """Delta sync watermark (the server_time of the last fully applied page)."""

    KEY = "delta_cursor"

    def __init__(self, db: LocalDatabase):
        self.db = db
        with self.db.transaction() as conn:
            conn.execute("CREATE TABLE IF NOT EXISTS sync_meta (key TEXT PRIMARY KEY, value TEXT)")

    def get(self) -> Optional[str]:
        rows = self.db.query("SELECT value FROM sync_meta WHERE key = ?", (self.KEY,))
        return rows[0]["value"] if rows else None

    def advance(self, value: str) -> None:
        with self.db.transaction() as conn:
            conn.execute(
                "INSERT INTO sync_meta (key, value) VALUES (?, ?) "
                "ON CONFLICT (key) DO UPDATE SET value = excluded.value",
                (self.KEY, value),
            )
        logger.debug("Delta cursor advanced to %s", value)

    def reset(self) -> None:
        with self.db.transaction() as conn:
            conn.execute("DELETE FROM sync_meta WHERE key = ?", (self.KEY,))
