from __future__ import annotations

import asyncio
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Mapping

import httpx
import structlog

from uptime_checks.channels import ChannelResult, NotificationPayload, send_notification
from uptime_checks.targets import Target
from uptime_registry import db as dbm
from uptime_registry.evaluator import Transition
from uptime_registry.models import NotificationChannel
from uptime_registry.settings import RegistrySettings


logger = structlog.get_logger(__name__)

RECOVERY_MESSAGE = "Service has recovered and is operational"
TEST_TITLE = "Test Notification"
TEST_MESSAGE = "This is a test notification from your Uptime Monitor."


@dataclass
class NotificationSummary:
    sent: int = 0
    failed: int = 0
    errors: list[str] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return {"sent": self.sent, "failed": self.failed, "errors": list(self.errors)}


def _iso(ts: float | None) -> str:
    dt = datetime.fromtimestamp(ts, tz=timezone.utc) if ts is not None else datetime.now(timezone.utc)
    return dt.isoformat()


def build_transition_payload(
    target: Target, transition: Transition, message: str, now_ts: float | None = None
) -> NotificationPayload | None:
    if transition is Transition.DOWN:
        title, text, status = f"🔴 {target.name} is Down", message, "down"
    elif transition is Transition.RECOVERY:
        title, text, status = f"✅ {target.name} is Back Online", RECOVERY_MESSAGE, "up"
    else:
        return None
    return NotificationPayload(
        title=title,
        message=text,
        monitor_name=target.name,
        monitor_url=target.display_address or None,
        status=status,
        timestamp=_iso(now_ts),
    )


async def _send_one(
    http_client: httpx.AsyncClient,
    channel: NotificationChannel,
    payload: NotificationPayload,
    timeout_seconds: float,
) -> ChannelResult:
    try:
        return await asyncio.wait_for(
            send_notification(http_client, channel.type, channel.config, payload),
            timeout=timeout_seconds,
        )
    except asyncio.TimeoutError:
        return ChannelResult(success=False, error=f"Timed out after {timeout_seconds:g}s")
    except asyncio.CancelledError:
        raise
    except Exception as e:
        return ChannelResult(success=False, error=str(e) or type(e).__name__)


async def notify_owner(
    http_client: httpx.AsyncClient,
    settings: RegistrySettings,
    owner_id: str,
    payload: NotificationPayload,
) -> NotificationSummary:
    """
    Deliver one payload to every active channel of the owner.

    Sends run concurrently and independently; a failing or slow channel only shows
    up as an entry in the returned summary.
    """
    channels = await asyncio.to_thread(dbm.list_active_channels, settings, owner_id=owner_id)
    summary = NotificationSummary()
    if not channels:
        return summary

    timeout_seconds = max(1.0, float(settings.notification_timeout_seconds))
    results = await asyncio.gather(
        *(_send_one(http_client, ch, payload, timeout_seconds) for ch in channels),
        return_exceptions=True,
    )
    for channel, result in zip(channels, results):
        if isinstance(result, BaseException):
            result = ChannelResult(success=False, error=str(result) or type(result).__name__)
        if result.success:
            summary.sent += 1
            continue
        summary.failed += 1
        summary.errors.append(f"{channel.name}: {result.error or 'Unknown error'}")

    logger.info(
        "Notifications dispatched",
        owner_id=owner_id,
        sent=summary.sent,
        failed=summary.failed,
        title=payload.title,
    )
    return summary


def build_test_payload(now_ts: float | None = None) -> NotificationPayload:
    return NotificationPayload(title=TEST_TITLE, message=TEST_MESSAGE, status="up", timestamp=_iso(now_ts))


async def send_test_notification(
    http_client: httpx.AsyncClient,
    channel_type: str,
    config: Mapping[str, Any] | None,
) -> ChannelResult:
    return await send_notification(http_client, channel_type, config, build_test_payload())
