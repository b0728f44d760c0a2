"""SQLite cache for Places search responses and the API usage ledger."""
from __future__ import annotations

import hashlib
import json
import sqlite3
import threading
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, Optional


def utc_now() -> datetime:
    return datetime.now(timezone.utc).replace(microsecond=0)


def utc_now_iso() -> str:
    return utc_now().isoformat()


def make_request_cache_key(endpoint: str, params: Dict[str, Any]) -> str:
    # Callers must not pass the API key in params.
    payload = json.dumps(params, sort_keys=True, separators=(",", ":"))
    raw = f"{endpoint}|{payload}".encode("utf-8")
    return hashlib.sha256(raw).hexdigest()


class Cache:
    def __init__(self, db_path: str, commit_every: int = 50) -> None:
        self.db_path = db_path
        self.conn = sqlite3.connect(self.db_path, check_same_thread=False)
        self.conn.row_factory = sqlite3.Row
        self._lock = threading.RLock()
        self._pending_writes = 0
        self._commit_every = max(1, int(commit_every))
        self._configure_conn()
        self._init_db()

    def _configure_conn(self) -> None:
        cur = self.conn.cursor()
        try:
            cur.execute("PRAGMA journal_mode=WAL")
            cur.fetchone()
        except sqlite3.DatabaseError:
            pass
        try:
            cur.execute("PRAGMA synchronous=NORMAL")
        except sqlite3.DatabaseError:
            pass

    def _init_db(self) -> None:
        cur = self.conn.cursor()
        cur.execute(
            """
            CREATE TABLE IF NOT EXISTS places_search_cache (
                key TEXT PRIMARY KEY,
                endpoint TEXT,
                response_json TEXT,
                created_at TEXT
            )
            """
        )
        cur.execute(
            """
            CREATE TABLE IF NOT EXISTS api_usage (
                day TEXT NOT NULL,
                endpoint TEXT NOT NULL,
                calls INTEGER NOT NULL DEFAULT 0,
                cost REAL NOT NULL DEFAULT 0,
                PRIMARY KEY (day, endpoint)
            )
            """
        )
        self.conn.commit()

    def _mark_dirty(self) -> None:
        self._pending_writes += 1
        if self._pending_writes >= self._commit_every:
            self.commit()

    def commit(self) -> None:
        with self._lock:
            if self._pending_writes:
                self.conn.commit()
                self._pending_writes = 0

    def close(self) -> None:
        self.commit()
        self.conn.close()

    def get_search_cache(
        self, key: str, max_age_seconds: Optional[int] = None
    ) -> Optional[Dict[str, Any]]:
        with self._lock:
            cur = self.conn.cursor()
            cur.execute(
                "SELECT response_json, created_at FROM places_search_cache WHERE key = ?", (key,)
            )
            row = cur.fetchone()
        if not row:
            return None
        if max_age_seconds is not None:
            created_at = datetime.fromisoformat(row["created_at"])
            if utc_now() - created_at > timedelta(seconds=max_age_seconds):
                return None
        return json.loads(row["response_json"])

    def set_search_cache(self, key: str, endpoint: str, response: Dict[str, Any]) -> None:
        with self._lock:
            cur = self.conn.cursor()
            cur.execute(
                """
                INSERT OR REPLACE INTO places_search_cache (key, endpoint, response_json, created_at)
                VALUES (?, ?, ?, ?)
                """,
                (key, endpoint, json.dumps(response), utc_now_iso()),
            )
            self._mark_dirty()

    def add_usage(self, day: str, endpoint: str, calls: int, cost: float) -> None:
        with self._lock:
            cur = self.conn.cursor()
            cur.execute(
                """
                INSERT INTO api_usage (day, endpoint, calls, cost)
                VALUES (?, ?, ?, ?)
                ON CONFLICT(day, endpoint) DO UPDATE SET
                    calls = calls + excluded.calls,
                    cost = cost + excluded.cost
                """,
                (day, endpoint, int(calls), float(cost)),
            )
            self._mark_dirty()

    def get_monthly_usage(self, month: str) -> Dict[str, Any]:
        """Sum usage for a ``YYYY-MM`` month."""
        with self._lock:
            cur = self.conn.cursor()
            cur.execute(
                """
                SELECT endpoint, SUM(calls) AS calls, SUM(cost) AS cost
                FROM api_usage WHERE day LIKE ? GROUP BY endpoint
                """,
                (f"{month}-%",),
            )
            rows = cur.fetchall()
        by_endpoint = {row["endpoint"]: int(row["calls"] or 0) for row in rows}
        return {
            "total_calls": sum(by_endpoint.values()),
            "total_cost": float(sum(row["cost"] or 0.0 for row in rows)),
            "calls_by_endpoint": by_endpoint,
        }
