from __future__ import annotations

from dataclasses import dataclass
from typing import Any
from urllib.parse import quote

import httpx
import structlog


logger = structlog.get_logger(__name__)

EVERY_MINUTE = "* * * * *"
DAILY = "0 0 * * *"
DEFAULT_RETRIES = 3
_CRON_TZ_PREFIX = "CRON_TZ="


def interval_to_cron(minutes: float | int, timezone: str | None = None) -> str:
    """
    Cadence for a check interval. One-way: only whole-minute, whole-hour and daily
    shapes are produced.
    """
    m = float(minutes or 0)
    if m <= 1:
        cron = EVERY_MINUTE
    elif m < 60:
        cron = f"*/{int(m)} * * * *"
    elif m % 60 == 0 and m / 60 < 24:
        cron = f"0 */{int(m // 60)} * * *"
    else:
        cron = DAILY

    tz = (timezone or "").strip()
    if tz and tz.upper() != "UTC":
        return f"{_CRON_TZ_PREFIX}{tz} {cron}"
    return cron


def split_cron_timezone(cron: str) -> tuple[str | None, str]:
    s = (cron or "").strip()
    if s.startswith(_CRON_TZ_PREFIX):
        head, _, rest = s.partition(" ")
        return head[len(_CRON_TZ_PREFIX) :] or None, rest.strip()
    return None, s


def cron_to_timezone(cron: str) -> str:
    tz, _ = split_cron_timezone(cron)
    return tz or "UTC"


def cron_to_interval(cron: str) -> int:
    """Approximate interval in minutes; anything but `*/N * * * *` or `* * * * *` maps to 1."""
    _, expr = split_cron_timezone(cron)
    parts = expr.split()
    if len(parts) != 5:
        return 1
    minute = parts[0]
    if minute.startswith("*/"):
        try:
            n = int(minute[2:])
        except ValueError:
            return 1
        return n if n > 0 else 1
    return 1


class ScheduleAPIError(RuntimeError):
    def __init__(self, message: str, *, status_code: int | None = None) -> None:
        super().__init__(message)
        self.status_code = status_code


@dataclass(frozen=True)
class Schedule:
    schedule_id: str
    cron: str
    destination: str
    method: str = "POST"
    created_at: int | None = None
    is_paused: bool = False
    retries: int = DEFAULT_RETRIES
    callback: str | None = None
    failure_callback: str | None = None

    @classmethod
    def from_api(cls, data: dict[str, Any]) -> "Schedule":
        retries = data.get("retries")
        return cls(
            schedule_id=str(data.get("scheduleId") or ""),
            cron=str(data.get("cron") or ""),
            destination=str(data.get("destination") or ""),
            method=str(data.get("method") or "POST"),
            created_at=int(data["createdAt"]) if data.get("createdAt") is not None else None,
            is_paused=bool(data.get("isPaused") or False),
            retries=int(retries) if retries is not None else DEFAULT_RETRIES,
            callback=data.get("callback") or None,
            failure_callback=data.get("failureCallback") or None,
        )

    @property
    def interval_minutes(self) -> int:
        return cron_to_interval(self.cron)

    @property
    def timezone(self) -> str:
        return cron_to_timezone(self.cron)

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.schedule_id,
            "cron": self.cron,
            "interval_minutes": self.interval_minutes,
            "destination": self.destination,
            "is_paused": self.is_paused,
            "created_at": self.created_at,
            "retries": self.retries,
            "failure_callback": self.failure_callback,
            "timezone": self.timezone,
        }


class QStashScheduleClient:
    """Thin client for the QStash schedules REST API."""

    def __init__(self, client: httpx.AsyncClient, *, base_url: str, token: str, timeout_seconds: float = 20.0) -> None:
        self._client = client
        self._base_url = base_url.rstrip("/")
        self._token = token
        self._timeout = timeout_seconds

    async def _request(self, method: str, path: str, *, headers: dict[str, str] | None = None) -> Any:
        if not self._token:
            raise ScheduleAPIError("QSTASH_TOKEN is not configured")
        merged = {"Authorization": f"Bearer {self._token}"}
        merged.update(headers or {})
        url = f"{self._base_url}{path}"
        try:
            resp = await self._client.request(method, url, headers=merged, timeout=self._timeout)
        except httpx.HTTPError as e:
            raise ScheduleAPIError(f"Schedule API request failed: {type(e).__name__}: {e}") from e

        if not resp.is_success:
            detail = ""
            try:
                data = resp.json()
                if isinstance(data, dict):
                    detail = str(data.get("error") or "")
            except ValueError:
                detail = (resp.text or "")[:300]
            raise ScheduleAPIError(
                f"Schedule API error {resp.status_code}: {detail or resp.reason_phrase}".strip(),
                status_code=resp.status_code,
            )
        if not resp.content:
            return None
        try:
            return resp.json()
        except ValueError:
            return None

    async def list_schedules(self) -> list[Schedule]:
        data = await self._request("GET", "/v2/schedules")
        if not isinstance(data, list):
            return []
        return [Schedule.from_api(item) for item in data if isinstance(item, dict)]

    async def get_schedule(self, schedule_id: str) -> Schedule | None:
        try:
            data = await self._request("GET", f"/v2/schedules/{quote(schedule_id, safe='')}")
        except ScheduleAPIError as e:
            if e.status_code == 404:
                return None
            raise
        return Schedule.from_api(data) if isinstance(data, dict) else None

    async def find_schedule(self, path: str) -> Schedule | None:
        for schedule in await self.list_schedules():
            if path in schedule.destination:
                return schedule
        return None

    async def create_schedule(
        self,
        destination: str,
        cron: str,
        *,
        retries: int | None = None,
        failure_callback: str | None = None,
    ) -> str:
        headers = {"Upstash-Cron": cron}
        if retries is not None:
            headers["Upstash-Retries"] = str(int(retries))
        if failure_callback:
            headers["Upstash-Failure-Callback"] = failure_callback
        data = await self._request("POST", f"/v2/schedules/{destination}", headers=headers)
        schedule_id = str((data or {}).get("scheduleId") or "") if isinstance(data, dict) else ""
        if not schedule_id:
            raise ScheduleAPIError("Schedule API returned no scheduleId")
        logger.info("Schedule created", schedule_id=schedule_id, cron=cron, destination=destination)
        return schedule_id

    async def delete_schedule(self, schedule_id: str) -> None:
        await self._request("DELETE", f"/v2/schedules/{quote(schedule_id, safe='')}")
        logger.info("Schedule deleted", schedule_id=schedule_id)

    async def pause_schedule(self, schedule_id: str) -> None:
        await self._request("PATCH", f"/v2/schedules/{quote(schedule_id, safe='')}/pause")
        logger.info("Schedule paused", schedule_id=schedule_id)

    async def resume_schedule(self, schedule_id: str) -> None:
        await self._request("PATCH", f"/v2/schedules/{quote(schedule_id, safe='')}/resume")
        logger.info("Schedule resumed", schedule_id=schedule_id)

    async def update_schedule(
        self,
        schedule_id: str,
        *,
        cron: str | None = None,
        retries: int | None = None,
        failure_callback: str | None = None,
    ) -> str:
        """
        QStash has no in-place update: the schedule is deleted and recreated with the
        merged settings. Returns the new schedule id.
        """
        existing = await self.get_schedule(schedule_id)
        if existing is None:
            raise ScheduleAPIError(f"Schedule not found: {schedule_id}", status_code=404)

        await self.delete_schedule(schedule_id)
        return await self.create_schedule(
            existing.destination,
            cron or existing.cron or EVERY_MINUTE,
            retries=retries if retries is not None else existing.retries,
            failure_callback=failure_callback or existing.failure_callback,
        )
