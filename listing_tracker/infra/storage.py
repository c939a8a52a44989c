"""SQLite-backed audit trail of per-listing outcomes.

The audit store is append-only and is never consulted for coordination;
all queue state lives in Redis.
"""

from __future__ import annotations

import sqlite3
from datetime import datetime, timezone
from pathlib import Path
from threading import Lock
from typing import Any, Dict, List


class SQLiteManager:
    """Manage SQLite connections with basic schema guarantees."""

    def __init__(self) -> None:
        self._connections: Dict[Path, sqlite3.Connection] = {}
        self._lock = Lock()

    def connect(self, path: Path) -> sqlite3.Connection:
        path = Path(path)
        path.parent.mkdir(parents=True, exist_ok=True)
        with self._lock:
            if path not in self._connections:
                conn = sqlite3.connect(path, check_same_thread=False)
                conn.row_factory = sqlite3.Row
                self._connections[path] = conn
                self._ensure_schema(conn)
            return self._connections[path]

    def _ensure_schema(self, conn: sqlite3.Connection) -> None:
        conn.execute(
            """
            CREATE TABLE IF NOT EXISTS listing_history (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                portal TEXT NOT NULL,
                listing_id TEXT NOT NULL,
                event TEXT NOT NULL,
                digest TEXT,
                detail TEXT,
                recorded_at TEXT NOT NULL
            )
            """
        )
        conn.execute(
            "CREATE INDEX IF NOT EXISTS idx_listing_history_lookup "
            "ON listing_history (portal, listing_id)"
        )
        conn.commit()

    def reset(self, path: Path) -> None:
        path = Path(path)
        with self._lock:
            if path in self._connections:
                self._connections[path].close()
                del self._connections[path]
        if path.exists():
            path.unlink()

    def close_all(self) -> None:
        with self._lock:
            for conn in self._connections.values():
                conn.close()
            self._connections.clear()


class AuditLog:
    """Record and query processing events for listings."""

    def __init__(self, manager: SQLiteManager, path: Path) -> None:
        self.manager = manager
        self.path = Path(path)
        self._conn = manager.connect(self.path)
        self._lock = Lock()

    def record(
        self,
        portal: str,
        listing_id: str,
        event: str,
        *,
        digest: str | None = None,
        detail: str | None = None,
    ) -> None:
        recorded_at = datetime.now(timezone.utc).isoformat()
        with self._lock:
            self._conn.execute(
                "INSERT INTO listing_history (portal, listing_id, event, digest, detail, recorded_at) "
                "VALUES (?, ?, ?, ?, ?, ?)",
                (portal, listing_id, event, digest, detail, recorded_at),
            )
            self._conn.commit()

    def history(self, portal: str, listing_id: str | None = None, limit: int = 20) -> List[Dict[str, Any]]:
        """Most recent events first."""

        query = "SELECT portal, listing_id, event, digest, detail, recorded_at FROM listing_history WHERE portal = ?"
        params: list[Any] = [portal]
        if listing_id is not None:
            query += " AND listing_id = ?"
            params.append(listing_id)
        query += " ORDER BY id DESC LIMIT ?"
        params.append(limit)
        with self._lock:
            rows = self._conn.execute(query, params).fetchall()
        return [dict(row) for row in rows]


__all__ = ["AuditLog", "SQLiteManager"]
