from __future__ import annotations

from dataclasses import dataclass, field
from enum import IntEnum
from typing import Any


class Status(IntEnum):
    DOWN = 0
    UP = 1
    PENDING = 2
    MAINTENANCE = 3


class IncidentStatus(IntEnum):
    OPEN = 0
    RESOLVED = 1
    INVESTIGATING = 2


@dataclass(frozen=True)
class Heartbeat:
    id: str
    target_id: str
    status: Status
    message: str
    ping_ms: float | None
    duration_ms: float
    down_count: int
    time_ts: float

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "target_id": self.target_id,
            "status": int(self.status),
            "message": self.message,
            "ping": self.ping_ms,
            "duration": self.duration_ms,
            "down_count": self.down_count,
            "time_ts": self.time_ts,
        }


@dataclass(frozen=True)
class Incident:
    id: str
    target_id: str | None
    title: str
    content: str
    status: IncidentStatus
    started_at_ts: float
    resolved_at_ts: float | None = None


@dataclass(frozen=True)
class MaintenanceWindow:
    id: str
    title: str
    start_ts: float
    end_ts: float
    active: bool = True
    target_ids: tuple[str, ...] = ()


@dataclass(frozen=True)
class NotificationChannel:
    id: str
    owner_id: str
    name: str
    type: str
    config: dict[str, Any] = field(default_factory=dict)
    active: bool = True
