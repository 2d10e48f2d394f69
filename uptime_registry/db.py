from __future__ import annotations

import json
import sqlite3
import time
import uuid
from pathlib import Path
from typing import Any, Iterable

from uptime_checks.targets import Target, parse_target_type
from uptime_registry.models import (
    Heartbeat,
    Incident,
    IncidentStatus,
    MaintenanceWindow,
    NotificationChannel,
    Status,
)
from uptime_registry.settings import RegistrySettings


SCHEMA_VERSION = 1


def _utc_ts() -> float:
    return float(time.time())


def _uuid() -> str:
    return str(uuid.uuid4())


def _json_dumps(obj: Any) -> str:
    return json.dumps(obj, ensure_ascii=False, sort_keys=True)


def _json_loads(s: Any) -> Any:
    if s is None:
        return None
    if isinstance(s, (dict, list)):
        return s
    try:
        return json.loads(str(s))
    except Exception:
        return None


def _connect(path: str) -> sqlite3.Connection:
    p = str(path or "").strip()
    if not p:
        raise ValueError("Missing db_path")
    Path(p).parent.mkdir(parents=True, exist_ok=True)
    conn = sqlite3.connect(p, timeout=30, isolation_level=None, check_same_thread=False)
    conn.row_factory = sqlite3.Row
    conn.execute("PRAGMA foreign_keys = ON;")
    conn.execute("PRAGMA busy_timeout = 5000;")
    # Best-effort: WAL lets concurrent checks read while one of them writes.
    try:
        conn.execute("PRAGMA journal_mode = WAL;")
    except Exception:
        pass
    return conn


def ensure_schema(settings: RegistrySettings) -> None:
    conn = _connect(settings.db_path)
    try:
        _ensure_schema_conn(conn)
    finally:
        conn.close()


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
        CREATE TABLE IF NOT EXISTS targets (
          id TEXT PRIMARY KEY,
          owner_id TEXT NOT NULL,
          name TEXT NOT NULL,
          type TEXT NOT NULL,
          url TEXT,
          hostname TEXT,
          port INTEGER,
          method TEXT NOT NULL DEFAULT 'GET',
          headers_json TEXT NOT NULL DEFAULT '{}',
          body TEXT,
          keyword TEXT,
          interval_seconds INTEGER NOT NULL DEFAULT 60,
          timeout_seconds REAL NOT NULL DEFAULT 48,
          max_retries INTEGER NOT NULL DEFAULT 0,
          active INTEGER NOT NULL DEFAULT 1,
          upside_down INTEGER NOT NULL DEFAULT 0,
          created_at_ts REAL NOT NULL,
          updated_at_ts REAL NOT NULL
        );
        """
    )
    conn.execute(
        """
        CREATE TABLE IF NOT EXISTS heartbeats (
          id TEXT PRIMARY KEY,
          target_id TEXT NOT NULL REFERENCES targets(id) ON DELETE CASCADE,
          status INTEGER NOT NULL, -- 0=down 1=up 2=pending 3=maintenance
          message TEXT NOT NULL DEFAULT '',
          ping_ms REAL,
          duration_ms REAL NOT NULL DEFAULT 0,
          down_count INTEGER NOT NULL DEFAULT 0,
          time_ts REAL NOT NULL
        );
        """
    )
    conn.execute(
        """
        CREATE TABLE IF NOT EXISTS incidents (
          id TEXT PRIMARY KEY,
          target_id TEXT REFERENCES targets(id) ON DELETE SET NULL,
          title TEXT NOT NULL,
          content TEXT NOT NULL DEFAULT '',
          status INTEGER NOT NULL DEFAULT 0, -- 0=open 1=resolved 2=investigating
          started_at_ts REAL NOT NULL,
          resolved_at_ts REAL
        );
        """
    )
    conn.execute(
        """
        CREATE TABLE IF NOT EXISTS channels (
          id TEXT PRIMARY KEY,
          owner_id TEXT NOT NULL,
          name TEXT NOT NULL,
          type TEXT NOT NULL,
          config_json TEXT NOT NULL DEFAULT '{}',
          active INTEGER NOT NULL DEFAULT 1,
          created_at_ts REAL NOT NULL,
          updated_at_ts REAL NOT NULL
        );
        """
    )
    conn.execute(
        """
        CREATE TABLE IF NOT EXISTS maintenance (
          id TEXT PRIMARY KEY,
          title TEXT NOT NULL,
          active INTEGER NOT NULL DEFAULT 1,
          start_ts REAL NOT NULL,
          end_ts REAL NOT NULL,
          created_at_ts REAL NOT NULL,
          updated_at_ts REAL NOT NULL
        );
        """
    )
    conn.execute(
        """
        CREATE TABLE IF NOT EXISTS maintenance_targets (
          maintenance_id TEXT NOT NULL REFERENCES maintenance(id) ON DELETE CASCADE,
          target_id TEXT NOT NULL,
          PRIMARY KEY (maintenance_id, target_id)
        );
        """
    )
    conn.execute(
        """
        CREATE TABLE IF NOT EXISTS target_leases (
          target_id TEXT PRIMARY KEY,
          lease_id TEXT NOT NULL,
          acquired_at_ts REAL NOT NULL
        );
        """
    )
    conn.execute("CREATE INDEX IF NOT EXISTS idx_targets_active ON targets(active);")
    conn.execute("CREATE INDEX IF NOT EXISTS idx_heartbeats_target_time ON heartbeats(target_id, time_ts DESC);")
    conn.execute("CREATE INDEX IF NOT EXISTS idx_incidents_target_status ON incidents(target_id, status);")
    conn.execute("CREATE INDEX IF NOT EXISTS idx_channels_owner_active ON channels(owner_id, active);")
    conn.execute("CREATE INDEX IF NOT EXISTS idx_maintenance_targets_target ON maintenance_targets(target_id);")


# -----------------
# Targets
# -----------------
def _row_to_target(row: sqlite3.Row) -> Target:
    headers = _json_loads(row["headers_json"])
    return Target(
        id=str(row["id"]),
        name=str(row["name"]),
        type=parse_target_type(row["type"]),
        owner_id=str(row["owner_id"]),
        url=row["url"],
        hostname=row["hostname"],
        port=int(row["port"]) if row["port"] is not None else None,
        method=str(row["method"] or "GET"),
        headers=headers if isinstance(headers, dict) else {},
        body=row["body"],
        keyword=row["keyword"],
        interval=int(row["interval_seconds"] or 60),
        timeout=float(row["timeout_seconds"] or 0),
        max_retries=int(row["max_retries"] or 0),
        active=bool(int(row["active"] or 0)),
        upside_down=bool(int(row["upside_down"] or 0)),
    )


def upsert_target(settings: RegistrySettings, target: Target) -> None:
    conn = _connect(settings.db_path)
    try:
        _ensure_schema_conn(conn)
        now = _utc_ts()
        conn.execute(
            """
            INSERT INTO targets (
              id, owner_id, name, type, url, hostname, port, method, headers_json, body, keyword,
              interval_seconds, timeout_seconds, max_retries, active, upside_down, created_at_ts, updated_at_ts
            ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            ON CONFLICT(id) DO UPDATE SET
              owner_id=excluded.owner_id,
              name=excluded.name,
              type=excluded.type,
              url=excluded.url,
              hostname=excluded.hostname,
              port=excluded.port,
              method=excluded.method,
              headers_json=excluded.headers_json,
              body=excluded.body,
              keyword=excluded.keyword,
              interval_seconds=excluded.interval_seconds,
              timeout_seconds=excluded.timeout_seconds,
              max_retries=excluded.max_retries,
              active=excluded.active,
              upside_down=excluded.upside_down,
              updated_at_ts=excluded.updated_at_ts
            """,
            (
                target.id,
                target.owner_id,
                target.name.strip(),
                target.type.value,
                target.url,
                target.hostname,
                int(target.port) if target.port is not None else None,
                (target.method or "GET").upper(),
                _json_dumps(dict(target.headers or {})),
                target.body,
                target.keyword,
                int(target.interval),
                float(target.timeout),
                int(target.max_retries),
                1 if target.active else 0,
                1 if target.upside_down else 0,
                now,
                now,
            ),
        )
    finally:
        conn.close()


def get_target(settings: RegistrySettings, *, target_id: str) -> Target | None:
    conn = _connect(settings.db_path)
    try:
        _ensure_schema_conn(conn)
        row = conn.execute("SELECT * FROM targets WHERE id=?", (target_id,)).fetchone()
        return _row_to_target(row) if row else None
    finally:
        conn.close()


def list_active_targets(settings: RegistrySettings) -> list[Target]:
    conn = _connect(settings.db_path)
    try:
        _ensure_schema_conn(conn)
        rows = conn.execute("SELECT * FROM targets WHERE active=1 ORDER BY created_at_ts ASC").fetchall()
        return [_row_to_target(r) for r in rows]
    finally:
        conn.close()


def last_check_times(settings: RegistrySettings, *, target_ids: Iterable[str]) -> dict[str, float]:
    """
    Most recent heartbeat timestamp per target (targets without heartbeats are absent).
    """
    ids = [str(t) for t in target_ids]
    if not ids:
        return {}
    conn = _connect(settings.db_path)
    try:
        _ensure_schema_conn(conn)
        placeholders = ", ".join("?" for _ in ids)
        rows = conn.execute(
            f"""
            SELECT target_id, MAX(time_ts) AS last_ts
            FROM heartbeats
            WHERE target_id IN ({placeholders})
            GROUP BY target_id
            """,
            tuple(ids),
        ).fetchall()
        return {str(r["target_id"]): float(r["last_ts"]) for r in rows if r["last_ts"] is not None}
    finally:
        conn.close()


# -----------------
# Heartbeats
# -----------------
def _row_to_heartbeat(row: sqlite3.Row) -> Heartbeat:
    return Heartbeat(
        id=str(row["id"]),
        target_id=str(row["target_id"]),
        status=Status(int(row["status"])),
        message=str(row["message"] or ""),
        ping_ms=float(row["ping_ms"]) if row["ping_ms"] is not None else None,
        duration_ms=float(row["duration_ms"] or 0),
        down_count=int(row["down_count"] or 0),
        time_ts=float(row["time_ts"]),
    )


def get_latest_heartbeat(settings: RegistrySettings, *, target_id: str) -> Heartbeat | None:
    conn = _connect(settings.db_path)
    try:
        _ensure_schema_conn(conn)
        row = conn.execute(
            "SELECT * FROM heartbeats WHERE target_id=? ORDER BY time_ts DESC, rowid DESC LIMIT 1",
            (target_id,),
        ).fetchone()
        return _row_to_heartbeat(row) if row else None
    finally:
        conn.close()


def insert_heartbeat(
    settings: RegistrySettings,
    *,
    target_id: str,
    status: Status,
    message: str,
    ping_ms: float | None,
    duration_ms: float,
    down_count: int,
    time_ts: float | None = None,
) -> Heartbeat:
    hb = Heartbeat(
        id=_uuid(),
        target_id=target_id,
        status=Status(status),
        message=str(message or "")[:2000],
        ping_ms=float(ping_ms) if ping_ms is not None else None,
        duration_ms=float(duration_ms),
        down_count=int(down_count),
        time_ts=float(time_ts) if time_ts is not None else _utc_ts(),
    )
    conn = _connect(settings.db_path)
    try:
        _ensure_schema_conn(conn)
        conn.execute(
            """
            INSERT INTO heartbeats (id, target_id, status, message, ping_ms, duration_ms, down_count, time_ts)
            VALUES (?, ?, ?, ?, ?, ?, ?, ?)
            """,
            (
                hb.id,
                hb.target_id,
                int(hb.status),
                hb.message,
                hb.ping_ms,
                hb.duration_ms,
                hb.down_count,
                hb.time_ts,
            ),
        )
        return hb
    finally:
        conn.close()


def list_heartbeats(settings: RegistrySettings, *, target_id: str, limit: int = 50) -> list[Heartbeat]:
    conn = _connect(settings.db_path)
    try:
        _ensure_schema_conn(conn)
        rows = conn.execute(
            "SELECT * FROM heartbeats WHERE target_id=? ORDER BY time_ts DESC, rowid DESC LIMIT ?",
            (target_id, max(1, min(int(limit), 1000))),
        ).fetchall()
        return [_row_to_heartbeat(r) for r in rows]
    finally:
        conn.close()


# -----------------
# Incidents
# -----------------
def _row_to_incident(row: sqlite3.Row) -> Incident:
    return Incident(
        id=str(row["id"]),
        target_id=str(row["target_id"]) if row["target_id"] is not None else None,
        title=str(row["title"]),
        content=str(row["content"] or ""),
        status=IncidentStatus(int(row["status"])),
        started_at_ts=float(row["started_at_ts"]),
        resolved_at_ts=float(row["resolved_at_ts"]) if row["resolved_at_ts"] is not None else None,
    )


def find_open_incident(settings: RegistrySettings, *, target_id: str) -> Incident | None:
    conn = _connect(settings.db_path)
    try:
        _ensure_schema_conn(conn)
        row = conn.execute(
            "SELECT * FROM incidents WHERE target_id=? AND status=? ORDER BY started_at_ts DESC LIMIT 1",
            (target_id, int(IncidentStatus.OPEN)),
        ).fetchone()
        return _row_to_incident(row) if row else None
    finally:
        conn.close()


def insert_incident(
    settings: RegistrySettings,
    *,
    target_id: str | None,
    title: str,
    content: str,
    started_at_ts: float | None = None,
) -> Incident:
    incident = Incident(
        id=_uuid(),
        target_id=target_id,
        title=title.strip()[:300],
        content=str(content or "")[:5000],
        status=IncidentStatus.OPEN,
        started_at_ts=float(started_at_ts) if started_at_ts is not None else _utc_ts(),
    )
    conn = _connect(settings.db_path)
    try:
        _ensure_schema_conn(conn)
        conn.execute(
            """
            INSERT INTO incidents (id, target_id, title, content, status, started_at_ts, resolved_at_ts)
            VALUES (?, ?, ?, ?, ?, ?, NULL)
            """,
            (
                incident.id,
                incident.target_id,
                incident.title,
                incident.content,
                int(incident.status),
                incident.started_at_ts,
            ),
        )
        return incident
    finally:
        conn.close()


def resolve_open_incidents(settings: RegistrySettings, *, target_id: str, resolved_at_ts: float | None = None) -> int:
    conn = _connect(settings.db_path)
    try:
        _ensure_schema_conn(conn)
        res = conn.execute(
            "UPDATE incidents SET status=?, resolved_at_ts=? WHERE target_id=? AND status=?",
            (
                int(IncidentStatus.RESOLVED),
                float(resolved_at_ts) if resolved_at_ts is not None else _utc_ts(),
                target_id,
                int(IncidentStatus.OPEN),
            ),
        )
        return int(res.rowcount or 0)
    finally:
        conn.close()


def list_incidents(
    settings: RegistrySettings,
    *,
    target_id: str | None = None,
    status: IncidentStatus | None = None,
    limit: int = 100,
) -> list[Incident]:
    where: list[str] = []
    params: list[Any] = []
    if target_id is not None:
        where.append("target_id=?")
        params.append(target_id)
    if status is not None:
        where.append("status=?")
        params.append(int(status))
    sql = "SELECT * FROM incidents"
    if where:
        sql += " WHERE " + " AND ".join(where)
    sql += " ORDER BY started_at_ts DESC LIMIT ?"
    params.append(max(1, min(int(limit), 1000)))

    conn = _connect(settings.db_path)
    try:
        _ensure_schema_conn(conn)
        rows = conn.execute(sql, tuple(params)).fetchall()
        return [_row_to_incident(r) for r in rows]
    finally:
        conn.close()


# -----------------
# Maintenance windows
# -----------------
def upsert_maintenance(settings: RegistrySettings, window: MaintenanceWindow) -> None:
    conn = _connect(settings.db_path)
    try:
        _ensure_schema_conn(conn)
        now = _utc_ts()
        conn.execute("BEGIN IMMEDIATE;")
        try:
            conn.execute(
                """
                INSERT INTO maintenance (id, title, active, start_ts, end_ts, created_at_ts, updated_at_ts)
                VALUES (?, ?, ?, ?, ?, ?, ?)
                ON CONFLICT(id) DO UPDATE SET
                  title=excluded.title,
                  active=excluded.active,
                  start_ts=excluded.start_ts,
                  end_ts=excluded.end_ts,
                  updated_at_ts=excluded.updated_at_ts
                """,
                (
                    window.id,
                    window.title.strip(),
                    1 if window.active else 0,
                    float(window.start_ts),
                    float(window.end_ts),
                    now,
                    now,
                ),
            )
            conn.execute("DELETE FROM maintenance_targets WHERE maintenance_id=?", (window.id,))
            for target_id in sorted(set(window.target_ids)):
                conn.execute(
                    "INSERT INTO maintenance_targets (maintenance_id, target_id) VALUES (?, ?)",
                    (window.id, target_id),
                )
            conn.execute("COMMIT;")
        except Exception:
            conn.execute("ROLLBACK;")
            raise
    finally:
        conn.close()


def is_under_maintenance(settings: RegistrySettings, *, target_id: str, now_ts: float | None = None) -> bool:
    now = float(now_ts) if now_ts is not None else _utc_ts()
    conn = _connect(settings.db_path)
    try:
        _ensure_schema_conn(conn)
        row = conn.execute(
            """
            SELECT 1
            FROM maintenance m
            JOIN maintenance_targets mt ON mt.maintenance_id=m.id
            WHERE mt.target_id=? AND m.active=1 AND m.start_ts <= ? AND m.end_ts >= ?
            LIMIT 1
            """,
            (target_id, now, now),
        ).fetchone()
        return row is not None
    finally:
        conn.close()


# -----------------
# Notification channels
# -----------------
def _row_to_channel(row: sqlite3.Row) -> NotificationChannel:
    config = _json_loads(row["config_json"])
    return NotificationChannel(
        id=str(row["id"]),
        owner_id=str(row["owner_id"]),
        name=str(row["name"]),
        type=str(row["type"]),
        config=config if isinstance(config, dict) else {},
        active=bool(int(row["active"] or 0)),
    )


def upsert_channel(settings: RegistrySettings, channel: NotificationChannel) -> None:
    conn = _connect(settings.db_path)
    try:
        _ensure_schema_conn(conn)
        now = _utc_ts()
        conn.execute(
            """
            INSERT INTO channels (id, owner_id, name, type, config_json, active, created_at_ts, updated_at_ts)
            VALUES (?, ?, ?, ?, ?, ?, ?, ?)
            ON CONFLICT(id) DO UPDATE SET
              owner_id=excluded.owner_id,
              name=excluded.name,
              type=excluded.type,
              config_json=excluded.config_json,
              active=excluded.active,
              updated_at_ts=excluded.updated_at_ts
            """,
            (
                channel.id,
                channel.owner_id,
                channel.name.strip(),
                str(channel.type).strip().lower(),
                _json_dumps(dict(channel.config or {})),
                1 if channel.active else 0,
                now,
                now,
            ),
        )
    finally:
        conn.close()


def get_channel(settings: RegistrySettings, *, channel_id: str) -> NotificationChannel | None:
    conn = _connect(settings.db_path)
    try:
        _ensure_schema_conn(conn)
        row = conn.execute("SELECT * FROM channels WHERE id=?", (channel_id,)).fetchone()
        return _row_to_channel(row) if row else None
    finally:
        conn.close()


def list_active_channels(settings: RegistrySettings, *, owner_id: str) -> list[NotificationChannel]:
    conn = _connect(settings.db_path)
    try:
        _ensure_schema_conn(conn)
        rows = conn.execute(
            "SELECT * FROM channels WHERE owner_id=? AND active=1 ORDER BY created_at_ts ASC",
            (owner_id,),
        ).fetchall()
        return [_row_to_channel(r) for r in rows]
    finally:
        conn.close()


# -----------------
# Per-target leases
# -----------------
def acquire_target_lease(settings: RegistrySettings, *, target_id: str, now_ts: float | None = None) -> str | None:
    """
    Claim the right to evaluate a target. Returns a lease id, or None while another
    evaluation holds a lease younger than lease_timeout_seconds.
    """
    now = float(now_ts) if now_ts is not None else _utc_ts()
    lock_cutoff = now - float(max(10, int(settings.lease_timeout_seconds)))
    lease_id = _uuid()

    conn = _connect(settings.db_path)
    try:
        _ensure_schema_conn(conn)
        conn.execute("BEGIN IMMEDIATE;")
        try:
            row = conn.execute(
                "SELECT lease_id, acquired_at_ts FROM target_leases WHERE target_id=?",
                (target_id,),
            ).fetchone()
            if row is not None and float(row["acquired_at_ts"] or 0) >= lock_cutoff:
                conn.execute("ROLLBACK;")
                return None
            conn.execute(
                "INSERT OR REPLACE INTO target_leases (target_id, lease_id, acquired_at_ts) VALUES (?, ?, ?)",
                (target_id, lease_id, now),
            )
            conn.execute("COMMIT;")
        except Exception:
            conn.execute("ROLLBACK;")
            raise
        return lease_id
    finally:
        conn.close()


def release_target_lease(settings: RegistrySettings, *, target_id: str, lease_id: str) -> bool:
    conn = _connect(settings.db_path)
    try:
        _ensure_schema_conn(conn)
        res = conn.execute(
            "DELETE FROM target_leases WHERE target_id=? AND lease_id=?",
            (target_id, lease_id),
        )
        return int(res.rowcount or 0) > 0
    finally:
        conn.close()
