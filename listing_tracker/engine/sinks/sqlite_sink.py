"""Upsert ingest envelopes into a SQLite table."""

from __future__ import annotations

import json
import sqlite3
from pathlib import Path
from threading import Lock

from ..collaborators import BaseSink, IngestPayload


class SQLiteSink(BaseSink):
    """Keep the latest envelope per (portal, portal_id)."""

    def __init__(self, path: Path, table: str = "properties") -> None:
        self.path = path
        self.table = table
        self.path.parent.mkdir(parents=True, exist_ok=True)
        self.conn = sqlite3.connect(self.path, check_same_thread=False)
        self._lock = Lock()
        self.conn.execute(
            f"""
            CREATE TABLE IF NOT EXISTS {self.table} (
                portal TEXT NOT NULL,
                portal_id TEXT NOT NULL,
                status TEXT NOT NULL,
                payload TEXT NOT NULL,
                updated_at TEXT NOT NULL DEFAULT (datetime('now')),
                PRIMARY KEY (portal, portal_id)
            )
            """
        )
        self.conn.commit()

    def ingest(self, payload: IngestPayload) -> None:
        with self._lock:
            self.conn.execute(
                f"INSERT OR REPLACE INTO {self.table}(portal, portal_id, status, payload, updated_at) "
                "VALUES (?, ?, ?, ?, datetime('now'))",
                (
                    payload.portal,
                    payload.portal_id,
                    payload.status,
                    json.dumps(payload.model_dump(mode="json"), ensure_ascii=False),
                ),
            )
            self.conn.commit()

    def close(self) -> None:
        with self._lock:
            self.conn.commit()
            self.conn.close()


__all__ = ["SQLiteSink"]
