from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path
from typing import Any

import structlog
import yaml

from uptime_checks.targets import DEFAULT_TIMEOUT_SECONDS, Target, parse_target_type
from uptime_registry import db as dbm
from uptime_registry.models import MaintenanceWindow, NotificationChannel
from uptime_registry.settings import RegistrySettings


logger = structlog.get_logger(__name__)


class SeedError(ValueError):
    pass


@dataclass(frozen=True)
class SeedResult:
    targets: int = 0
    channels: int = 0
    maintenance: int = 0


def _parse_ts(value: Any, *, field_name: str) -> float:
    # Unix seconds, or an ISO-8601 date/datetime (naive values are UTC).
    if isinstance(value, datetime):
        dt = value if value.tzinfo else value.replace(tzinfo=timezone.utc)
        return dt.timestamp()
    if isinstance(value, (int, float)):
        return float(value)
    s = str(value or "").strip()
    if not s:
        raise SeedError(f"missing {field_name}")
    try:
        return float(s)
    except ValueError:
        pass
    try:
        dt = datetime.fromisoformat(s[:-1] + "+00:00" if s.endswith("Z") else s)
    except ValueError as exc:
        raise SeedError(f"invalid {field_name}: {s!r}") from exc
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt.timestamp()


def _required(item: dict[str, Any], key: str, *, kind: str) -> str:
    value = str(item.get(key) or "").strip()
    if not value:
        raise SeedError(f"{kind} entry missing '{key}': {item!r}")
    return value


def parse_target(item: dict[str, Any]) -> Target:
    try:
        target_type = parse_target_type(item.get("type"))
    except ValueError as exc:
        raise SeedError(str(exc)) from exc
    headers = item.get("headers") or {}
    if not isinstance(headers, dict):
        raise SeedError(f"target headers must be a mapping: {item.get('id')!r}")
    port = item.get("port")
    return Target(
        id=_required(item, "id", kind="target"),
        name=_required(item, "name", kind="target"),
        type=target_type,
        owner_id=_required(item, "owner_id", kind="target"),
        url=item.get("url") or None,
        hostname=item.get("hostname") or None,
        port=int(port) if port not in (None, "") else None,
        method=str(item.get("method") or "GET").upper(),
        headers={str(k): str(v) for k, v in headers.items()},
        body=item.get("body") or None,
        keyword=item.get("keyword") or None,
        interval=int(item.get("interval") or 60),
        timeout=float(item.get("timeout") or DEFAULT_TIMEOUT_SECONDS),
        max_retries=int(item.get("max_retries") or 0),
        active=bool(item.get("active", True)),
        upside_down=bool(item.get("upside_down", False)),
    )


def parse_channel(item: dict[str, Any]) -> NotificationChannel:
    config = item.get("config") or {}
    if not isinstance(config, dict):
        raise SeedError(f"channel config must be a mapping: {item.get('id')!r}")
    return NotificationChannel(
        id=_required(item, "id", kind="channel"),
        owner_id=_required(item, "owner_id", kind="channel"),
        name=_required(item, "name", kind="channel"),
        type=_required(item, "type", kind="channel").lower(),
        config=dict(config),
        active=bool(item.get("active", True)),
    )


def parse_maintenance(item: dict[str, Any]) -> MaintenanceWindow:
    start_ts = _parse_ts(item.get("start"), field_name="maintenance start")
    end_ts = _parse_ts(item.get("end"), field_name="maintenance end")
    if end_ts <= start_ts:
        raise SeedError(f"maintenance end must be after start: {item.get('id')!r}")
    target_ids = item.get("targets") or []
    if not isinstance(target_ids, list):
        raise SeedError(f"maintenance targets must be a list: {item.get('id')!r}")
    return MaintenanceWindow(
        id=_required(item, "id", kind="maintenance"),
        title=_required(item, "title", kind="maintenance"),
        start_ts=start_ts,
        end_ts=end_ts,
        active=bool(item.get("active", True)),
        target_ids=tuple(str(t) for t in target_ids),
    )


def _entries(cfg: dict[str, Any], key: str) -> list[dict[str, Any]]:
    raw = cfg.get(key) or []
    if not isinstance(raw, list) or not all(isinstance(x, dict) for x in raw):
        raise SeedError(f"'{key}' must be a list of mappings")
    return raw


def load_seed_file(path: Path) -> dict[str, Any]:
    try:
        data = yaml.safe_load(path.read_text(encoding="utf-8")) or {}
    except FileNotFoundError as exc:
        raise SeedError(f"seed file not found: {path}") from exc
    except yaml.YAMLError as exc:
        raise SeedError(f"invalid YAML in {path}: {exc}") from exc
    if not isinstance(data, dict):
        raise SeedError(f"seed file must contain a mapping: {path}")
    return data


def apply_seed(settings: RegistrySettings, cfg: dict[str, Any]) -> SeedResult:
    """Upsert everything in the config. All entries are parsed before anything is written."""
    targets = [parse_target(x) for x in _entries(cfg, "targets")]
    channels = [parse_channel(x) for x in _entries(cfg, "channels")]
    windows = [parse_maintenance(x) for x in _entries(cfg, "maintenance")]

    dbm.ensure_schema(settings)
    for target in targets:
        dbm.upsert_target(settings, target)
    for channel in channels:
        dbm.upsert_channel(settings, channel)
    for window in windows:
        dbm.upsert_maintenance(settings, window)

    logger.info("Seed applied", targets=len(targets), channels=len(channels), maintenance=len(windows))
    return SeedResult(targets=len(targets), channels=len(channels), maintenance=len(windows))


def seed_from_file(settings: RegistrySettings, path: str | Path) -> SeedResult:
    return apply_seed(settings, load_seed_file(Path(path)))
