"""Local stand-in for the external trigger: calls the check endpoint on a cadence."""

from __future__ import annotations

import asyncio
from typing import Any

import httpx
import structlog
from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.cron import CronTrigger
from apscheduler.triggers.interval import IntervalTrigger

from uptime_registry.scheduler import split_cron_timezone


logger = structlog.get_logger(__name__)

JOB_ID = "uptime-check-trigger"

_WEEKDAYS = ("sun", "mon", "tue", "wed", "thu", "fri", "sat")


def _weekday_number(token: str) -> int:
    t = token.strip().lower()
    if t[:3] in _WEEKDAYS and not t.isdigit():
        return _WEEKDAYS.index(t[:3])
    n = int(t)
    if not 0 <= n <= 7:
        raise ValueError(f"day of week out of range: {token}")
    return n


def cron_day_of_week(field: str) -> str:
    """
    Standard cron weekdays (0 and 7 are Sunday) as APScheduler weekday names.

    APScheduler numbers Monday as 0, so numeric fields are expanded to names.
    """
    s = field.strip()
    if s in ("*", "?"):
        return "*"
    days: set[int] = set()
    for part in s.split(","):
        base, _, step_raw = part.partition("/")
        step = int(step_raw) if step_raw else 1
        if step < 1:
            raise ValueError(f"invalid day of week step: {field}")
        if base == "*":
            lo, hi = 0, 6
        elif "-" in base:
            a, b = base.split("-", 1)
            lo, hi = _weekday_number(a), _weekday_number(b)
        else:
            lo = _weekday_number(base)
            hi = 6 if step_raw else lo
        if lo > hi:
            raise ValueError(f"invalid day of week range: {field}")
        days.update(d % 7 for d in range(lo, hi + 1, step))
    return ",".join(_WEEKDAYS[d] for d in sorted(days))


def build_trigger(*, cron: str | None = None, interval_seconds: int | None = None):
    if cron:
        tz, expr = split_cron_timezone(cron)
        parts = expr.split()
        if len(parts) != 5:
            raise ValueError(f"Invalid cron expression: {cron}")
        return CronTrigger(
            minute=parts[0],
            hour=parts[1],
            day=parts[2],
            month=parts[3],
            day_of_week=cron_day_of_week(parts[4]),
            timezone=tz or "UTC",
        )
    seconds = int(interval_seconds or 60)
    if seconds < 1:
        raise ValueError("interval_seconds must be >= 1")
    return IntervalTrigger(seconds=seconds)


class LocalTrigger:
    def __init__(
        self,
        *,
        url: str,
        cron_secret: str,
        cron: str | None = None,
        interval_seconds: int | None = None,
        timeout_seconds: float = 90.0,
        http_client: httpx.AsyncClient | None = None,
    ) -> None:
        self.url = url
        self.cron_secret = cron_secret
        self.trigger = build_trigger(cron=cron, interval_seconds=interval_seconds)
        self.timeout_seconds = timeout_seconds
        self._client = http_client
        self.scheduler = AsyncIOScheduler()

    async def fire(self) -> dict[str, Any] | None:
        """One trigger call. Errors are logged; the next tick tries again."""
        headers = {"Authorization": f"Bearer {self.cron_secret}"}
        try:
            if self._client is not None:
                resp = await self._client.get(self.url, headers=headers, timeout=self.timeout_seconds)
            else:
                async with httpx.AsyncClient() as client:
                    resp = await client.get(self.url, headers=headers, timeout=self.timeout_seconds)
        except httpx.HTTPError as e:
            logger.error("Trigger request failed", url=self.url, error=f"{type(e).__name__}: {e}")
            return None

        if not resp.is_success:
            logger.error("Trigger rejected", url=self.url, status=resp.status_code, body=(resp.text or "")[:500])
            return None
        try:
            data = resp.json()
        except ValueError:
            data = None
        if not isinstance(data, dict):
            logger.warning("Trigger returned a non-object body", url=self.url, status=resp.status_code)
            return None
        logger.info(
            "Trigger completed",
            checked=data.get("checked"),
            failed=data.get("failed"),
            skipped=data.get("skipped"),
            request_id=data.get("request_id"),
        )
        return data

    def start(self) -> None:
        self.scheduler.add_job(self.fire, trigger=self.trigger, id=JOB_ID, name=JOB_ID, max_instances=1, coalesce=True)
        self.scheduler.start()
        logger.info("Local trigger started", url=self.url, trigger=str(self.trigger))

    def stop(self) -> None:
        if self.scheduler.running:
            self.scheduler.shutdown(wait=False)
        logger.info("Local trigger stopped")

    async def run_forever(self, *, run_immediately: bool = True) -> None:
        self.start()
        try:
            if run_immediately:
                await self.fire()
            while True:
                await asyncio.sleep(3600)
        finally:
            self.stop()
