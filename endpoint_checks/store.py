from __future__ import annotations

import sqlite3
import time
from pathlib import Path
from typing import Any, Callable

from endpoint_checks.models import MaintenanceWindow


SCHEMA_VERSION = 1


def _utc_ts() -> float:
    return float(time.time())


def _connect(path: str) -> sqlite3.Connection:
    p = str(path or "").strip()
    if not p:
        raise ValueError("Missing db_path")
    Path(p).parent.mkdir(parents=True, exist_ok=True)
    conn = sqlite3.connect(p, timeout=30, isolation_level=None, check_same_thread=False)
    conn.row_factory = sqlite3.Row
    conn.execute("PRAGMA busy_timeout = 5000;")
    # Best-effort: WAL improves concurrency for a single-host service.
    try:
        conn.execute("PRAGMA journal_mode = WAL;")
    except Exception:
        pass
    return conn


def _ensure_schema_conn(conn: sqlite3.Connection) -> None:
    conn.execute("CREATE TABLE IF NOT EXISTS schema_meta (k TEXT PRIMARY KEY, v TEXT NOT NULL);")
    row = conn.execute("SELECT v FROM schema_meta WHERE k='version'").fetchone()
    cur = int(row["v"]) if row and row["v"] else 0
    if cur >= SCHEMA_VERSION:
        return

    if cur == 0:
        _apply_v1(conn)
        conn.execute("INSERT OR REPLACE INTO schema_meta (k, v) VALUES ('version', ?)", (str(SCHEMA_VERSION),))
        return

    raise RuntimeError(f"Unsupported schema version upgrade path cur={cur} target={SCHEMA_VERSION}")


def _apply_v1(conn: sqlite3.Connection) -> None:
    conn.execute(
        """
        CREATE TABLE IF NOT EXISTS incidents (
          id INTEGER PRIMARY KEY AUTOINCREMENT,
          check_id TEXT NOT NULL,
          kind TEXT NOT NULL,
          started_at_ts REAL NOT NULL,
          resolved_at_ts REAL,
          duration_s INTEGER,
          trigger_error TEXT
        );
        """
    )
    conn.execute(
        """
        CREATE TABLE IF NOT EXISTS maintenance_windows (
          id INTEGER PRIMARY KEY AUTOINCREMENT,
          check_id TEXT, -- NULL matches every check
          group_id TEXT, -- NULL matches every group
          starts_at_ts REAL NOT NULL,
          ends_at_ts REAL NOT NULL,
          skip_checks INTEGER NOT NULL DEFAULT 0,
          suppress_alerts INTEGER NOT NULL DEFAULT 1,
          reason TEXT
        );
        """
    )
    conn.execute(
        """
        CREATE TABLE IF NOT EXISTS check_results (
          id INTEGER PRIMARY KEY AUTOINCREMENT,
          ts REAL NOT NULL,
          check_id TEXT NOT NULL,
          name TEXT NOT NULL,
          status TEXT NOT NULL, -- healthy|degraded|unhealthy
          error TEXT,
          elapsed_ms REAL,
          status_code INTEGER
        );
        """
    )
    conn.execute("CREATE INDEX IF NOT EXISTS idx_incidents_check_open ON incidents(check_id, resolved_at_ts);")
    conn.execute("CREATE INDEX IF NOT EXISTS idx_maintenance_window ON maintenance_windows(starts_at_ts, ends_at_ts);")
    conn.execute("CREATE INDEX IF NOT EXISTS idx_check_results_ts ON check_results(ts);")


class SqliteMonitorStore:
    """
    Incident log, maintenance windows and per-check result metrics in one SQLite file.
    """

    def __init__(self, db_path: str, *, clock: Callable[[], float] = _utc_ts) -> None:
        self.db_path = str(db_path)
        self._clock = clock

    def _conn(self) -> sqlite3.Connection:
        conn = _connect(self.db_path)
        try:
            _ensure_schema_conn(conn)
        except Exception:
            conn.close()
            raise
        return conn

    def ensure_schema(self) -> None:
        self._conn().close()

    # -- incidents --

    def open_incident(self, check_id: str, kind: str, error: str | None) -> int:
        conn = self._conn()
        try:
            cur = conn.execute(
                "INSERT INTO incidents (check_id, kind, started_at_ts, trigger_error) VALUES (?, ?, ?, ?)",
                (check_id, kind, self._clock(), (str(error)[:5_000] if error else None)),
            )
            return int(cur.lastrowid)
        finally:
            conn.close()

    def resolve_open_incidents(self, check_id: str) -> int:
        now = self._clock()
        conn = self._conn()
        try:
            cur = conn.execute(
                """
                UPDATE incidents
                SET resolved_at_ts = ?,
                    duration_s = CAST(? - started_at_ts AS INTEGER)
                WHERE check_id = ? AND resolved_at_ts IS NULL
                """,
                (now, now, check_id),
            )
            return int(cur.rowcount or 0)
        finally:
            conn.close()

    def list_incidents(
        self,
        *,
        check_id: str | None = None,
        status: str | None = None,
        limit: int = 50,
    ) -> list[dict[str, Any]]:
        conditions: list[str] = []
        params: list[Any] = []
        if check_id:
            conditions.append("check_id = ?")
            params.append(check_id)
        if status == "open":
            conditions.append("resolved_at_ts IS NULL")
        elif status == "resolved":
            conditions.append("resolved_at_ts IS NOT NULL")
        where = f"WHERE {' AND '.join(conditions)}" if conditions else ""

        conn = self._conn()
        try:
            rows = conn.execute(
                f"SELECT * FROM incidents {where} ORDER BY started_at_ts DESC, id DESC LIMIT ?",
                (*params, max(1, min(int(limit), 500))),
            ).fetchall()
            return [dict(r) for r in rows]
        finally:
            conn.close()

    # -- maintenance windows --

    def add_maintenance_window(
        self,
        *,
        starts_at_ts: float,
        ends_at_ts: float,
        check_id: str | None = None,
        group_id: str | None = None,
        skip_checks: bool = False,
        suppress_alerts: bool = True,
        reason: str | None = None,
    ) -> int:
        if float(ends_at_ts) <= float(starts_at_ts):
            raise ValueError("ends_at_ts must be after starts_at_ts")
        conn = self._conn()
        try:
            cur = conn.execute(
                """
                INSERT INTO maintenance_windows (
                  check_id, group_id, starts_at_ts, ends_at_ts, skip_checks, suppress_alerts, reason
                )
                VALUES (?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    check_id,
                    group_id,
                    float(starts_at_ts),
                    float(ends_at_ts),
                    int(bool(skip_checks)),
                    int(bool(suppress_alerts)),
                    reason,
                ),
            )
            return int(cur.lastrowid)
        finally:
            conn.close()

    def active_window_for(self, check_id: str, group_id: str | None) -> MaintenanceWindow | None:
        now = self._clock()
        conn = self._conn()
        try:
            row = conn.execute(
                """
                SELECT * FROM maintenance_windows
                WHERE ? BETWEEN starts_at_ts AND ends_at_ts
                  AND (check_id IS NULL OR check_id = ?)
                  AND (group_id IS NULL OR group_id = ?)
                ORDER BY skip_checks DESC, id ASC
                LIMIT 1
                """,
                (now, check_id, group_id),
            ).fetchone()
        finally:
            conn.close()
        if not row:
            return None
        return MaintenanceWindow(
            id=int(row["id"]),
            skip_checks=bool(row["skip_checks"]),
            suppress_alerts=bool(row["suppress_alerts"]),
            reason=row["reason"],
            starts_at_ts=float(row["starts_at_ts"]),
            ends_at_ts=float(row["ends_at_ts"]),
        )

    # -- metrics --

    def write(
        self,
        check_id: str,
        name: str,
        health_label: str,
        error: str | None,
        elapsed_ms: float | None,
        status_code: int | None,
    ) -> None:
        conn = self._conn()
        try:
            conn.execute(
                """
                INSERT INTO check_results (ts, check_id, name, status, error, elapsed_ms, status_code)
                VALUES (?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    self._clock(),
                    check_id,
                    name,
                    health_label,
                    (str(error)[:2_000] if error else None),
                    (float(elapsed_ms) if elapsed_ms is not None else None),
                    (int(status_code) if status_code is not None else None),
                ),
            )
        finally:
            conn.close()

    def list_results(self, *, check_id: str | None = None, limit: int = 100) -> list[dict[str, Any]]:
        conn = self._conn()
        try:
            if check_id:
                rows = conn.execute(
                    "SELECT * FROM check_results WHERE check_id = ? ORDER BY ts DESC, id DESC LIMIT ?",
                    (check_id, max(1, int(limit))),
                ).fetchall()
            else:
                rows = conn.execute(
                    "SELECT * FROM check_results ORDER BY ts DESC, id DESC LIMIT ?",
                    (max(1, int(limit)),),
                ).fetchall()
            return [dict(r) for r in rows]
        finally:
            conn.close()

    def prune_history(self, before_ts: float) -> int:
        """
        Drops result rows and resolved incidents older than `before_ts`; open incidents are kept.
        """
        cutoff = float(before_ts)
        conn = self._conn()
        try:
            removed = conn.execute("DELETE FROM check_results WHERE ts < ?", (cutoff,)).rowcount or 0
            removed += (
                conn.execute(
                    "DELETE FROM incidents WHERE resolved_at_ts IS NOT NULL AND resolved_at_ts < ?",
                    (cutoff,),
                ).rowcount
                or 0
            )
            conn.execute("DELETE FROM maintenance_windows WHERE ends_at_ts < ?", (cutoff,))
            return int(removed)
        finally:
            conn.close()
