from __future__ import annotations

from dataclasses import dataclass
from enum import Enum

from uptime_checks.probes import ProbeResult
from uptime_registry.models import Heartbeat, Status


class Transition(str, Enum):
    NONE = "none"
    DOWN = "down"
    RECOVERY = "recovery"


@dataclass(frozen=True)
class Evaluation:
    status: Status
    down_count: int
    message: str
    ping_ms: float | None = None


def maintenance_evaluation() -> Evaluation:
    """Targets inside an active maintenance window are recorded without probing."""
    return Evaluation(status=Status.MAINTENANCE, down_count=0, message="Under maintenance", ping_ms=None)


def _carried_status(previous: Heartbeat | None) -> Status:
    if previous is None or previous.status is Status.MAINTENANCE:
        return Status.PENDING
    return previous.status


def evaluate_probe_result(raw: ProbeResult, previous: Heartbeat | None, max_retries: int) -> Evaluation:
    """
    Turn a raw probe result into the effective status for the new heartbeat.

    A DOWN result only becomes DOWN once the consecutive failure count exceeds
    max_retries; until then the previous effective status is carried forward.
    """
    if raw.ok:
        return Evaluation(status=Status.UP, down_count=0, message=raw.message, ping_ms=raw.ping_ms)

    prev_down = previous.down_count if previous is not None else 0
    down_count = max(0, int(prev_down)) + 1
    if down_count <= max(0, int(max_retries or 0)):
        status = _carried_status(previous)
    else:
        status = Status.DOWN
    return Evaluation(status=status, down_count=down_count, message=raw.message, ping_ms=raw.ping_ms)


def classify_transition(previous_status: Status | None, status: Status) -> Transition:
    if status is Status.DOWN and previous_status is not Status.DOWN:
        return Transition.DOWN
    if status is Status.UP and previous_status is Status.DOWN:
        return Transition.RECOVERY
    return Transition.NONE
