from __future__ import annotations

import asyncio
import time
from dataclasses import dataclass
from typing import Mapping

import httpx
import structlog

from uptime_checks.probes import Probe, run_probe
from uptime_checks.targets import Target, TargetType
from uptime_registry import db as dbm
from uptime_registry import incidents
from uptime_registry.evaluator import (
    Transition,
    classify_transition,
    evaluate_probe_result,
    maintenance_evaluation,
)
from uptime_registry.models import Status
from uptime_registry.notifications import NotificationSummary, build_transition_payload, notify_owner
from uptime_registry.settings import RegistrySettings


logger = structlog.get_logger(__name__)


@dataclass(frozen=True)
class CheckContext:
    settings: RegistrySettings
    http_client: httpx.AsyncClient
    probes: Mapping[TargetType, Probe]


@dataclass(frozen=True)
class CheckOutcome:
    target_id: str
    status: Status | None = None
    transition: Transition = Transition.NONE
    skipped: bool = False
    message: str = ""
    notifications: NotificationSummary | None = None


async def _notify(ctx: CheckContext, target: Target, transition: Transition, message: str, now_ts: float):
    payload = build_transition_payload(target, transition, message, now_ts)
    if payload is None:
        return None
    try:
        return await notify_owner(ctx.http_client, ctx.settings, target.owner_id, payload)
    except Exception as e:
        logger.error("Notification fan-out failed", target_id=target.id, error=str(e))
        return NotificationSummary(failed=1, errors=[f"fan-out: {e}"])


async def check_target(ctx: CheckContext, target: Target, now_ts: float | None = None) -> CheckOutcome:
    """
    Run one full check for a target and persist its heartbeat.

    Holds the target's lease for the whole evaluation; if another evaluation owns it the
    check is skipped without writing anything. Heartbeat write failures propagate.
    """
    settings = ctx.settings
    now = float(now_ts) if now_ts is not None else time.time()

    lease_id = await asyncio.to_thread(dbm.acquire_target_lease, settings, target_id=target.id, now_ts=now)
    if lease_id is None:
        logger.info("Check skipped, lease held", target_id=target.id)
        return CheckOutcome(target_id=target.id, skipped=True, message="Check already in progress")

    try:
        previous = await asyncio.to_thread(dbm.get_latest_heartbeat, settings, target_id=target.id)
        started = time.perf_counter()

        in_maintenance = await asyncio.to_thread(dbm.is_under_maintenance, settings, target_id=target.id, now_ts=now)
        if in_maintenance:
            evaluation = maintenance_evaluation()
            transition = Transition.NONE
        else:
            raw = await run_probe(ctx.probes, target)
            evaluation = evaluate_probe_result(raw, previous, target.max_retries)
            transition = classify_transition(previous.status if previous else None, evaluation.status)

        duration_ms = round((time.perf_counter() - started) * 1000.0, 3)
        recorded_at = float(now_ts) if now_ts is not None else time.time()
        heartbeat = await asyncio.to_thread(
            dbm.insert_heartbeat,
            settings,
            target_id=target.id,
            status=evaluation.status,
            message=evaluation.message,
            ping_ms=evaluation.ping_ms,
            duration_ms=duration_ms,
            down_count=evaluation.down_count,
            time_ts=recorded_at,
        )
        logger.info(
            "Heartbeat recorded",
            target_id=target.id,
            status=heartbeat.status.name,
            down_count=heartbeat.down_count,
            ping_ms=heartbeat.ping_ms,
        )

        summary = None
        if transition is not Transition.NONE:
            await asyncio.to_thread(
                incidents.apply_transition, settings, target, transition, evaluation.message, recorded_at
            )
            summary = await _notify(ctx, target, transition, evaluation.message, recorded_at)

        return CheckOutcome(
            target_id=target.id,
            status=heartbeat.status,
            transition=transition,
            message=heartbeat.message,
            notifications=summary,
        )
    finally:
        try:
            await asyncio.to_thread(dbm.release_target_lease, settings, target_id=target.id, lease_id=lease_id)
        except Exception as e:
            logger.warning("Failed to release target lease", target_id=target.id, error=str(e))
