from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Mapping

import structlog

from uptime_checks.targets import Target
from uptime_registry import db as dbm
from uptime_registry.evaluator import Transition
from uptime_registry.models import Incident
from uptime_registry.settings import RegistrySettings


logger = structlog.get_logger(__name__)

SCHEDULER_FAILURE_TITLE = "Cron Job Failure"


def incident_title(target: Target) -> str:
    return f"{target.name} is down"


def open_incident(settings: RegistrySettings, target: Target, message: str, now_ts: float | None = None) -> Incident:
    """Return the target's OPEN incident, creating one only when none exists."""
    existing = dbm.find_open_incident(settings, target_id=target.id)
    if existing is not None:
        return existing
    return dbm.insert_incident(
        settings,
        target_id=target.id,
        title=incident_title(target),
        content=message,
        started_at_ts=now_ts,
    )


def resolve_incidents(settings: RegistrySettings, target_id: str, now_ts: float | None = None) -> int:
    return dbm.resolve_open_incidents(settings, target_id=target_id, resolved_at_ts=now_ts)


@dataclass(frozen=True)
class IncidentChange:
    opened: Incident | None = None
    resolved: int = 0
    error: str | None = None


def apply_transition(
    settings: RegistrySettings,
    target: Target,
    transition: Transition,
    message: str,
    now_ts: float | None = None,
) -> IncidentChange:
    """
    Incident bookkeeping for one status change.

    Storage errors are logged and reported in the result, never raised: the heartbeat
    for this check has already been written.
    """
    if transition is Transition.NONE:
        return IncidentChange()
    try:
        if transition is Transition.DOWN:
            incident = open_incident(settings, target, message, now_ts)
            logger.info("Incident open", target_id=target.id, incident_id=incident.id)
            return IncidentChange(opened=incident)
        resolved = resolve_incidents(settings, target.id, now_ts)
        logger.info("Incidents resolved", target_id=target.id, count=resolved)
        return IncidentChange(resolved=resolved)
    except Exception as e:
        logger.error("Incident update failed", target_id=target.id, transition=transition.value, error=str(e))
        return IncidentChange(error=str(e) or type(e).__name__)


def _header(details: Mapping[str, Any], key: str) -> str:
    value = details.get(key)
    if value is None or str(value).strip() == "":
        return "unknown"
    return str(value).strip()


def scheduler_failure_content(details: Mapping[str, Any]) -> str:
    return (
        f"Monitor check cron job failed after {_header(details, 'retried')} retries.\n\n"
        f"URL: {_header(details, 'failed_url')}\n"
        f"Status: {_header(details, 'failed_status')}\n"
        f"Message: {_header(details, 'failed_message')}\n"
        f"Message ID: {_header(details, 'message_id')}"
    )


def record_scheduler_failure(
    settings: RegistrySettings, details: Mapping[str, Any], now_ts: float | None = None
) -> Incident | None:
    try:
        incident = dbm.insert_incident(
            settings,
            target_id=None,
            title=SCHEDULER_FAILURE_TITLE,
            content=scheduler_failure_content(details),
            started_at_ts=now_ts,
        )
    except Exception as e:
        logger.error("Failed to record scheduler failure", error=str(e))
        return None
    logger.warning("Scheduler failure recorded", incident_id=incident.id, message_id=details.get("message_id"))
    return incident
