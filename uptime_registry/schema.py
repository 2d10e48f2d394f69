from __future__ import annotations

from typing import Any, Literal

from pydantic import BaseModel, Field


# Interval and retry ranges are checked in the handlers (400, not 422).
class CreateScheduleRequest(BaseModel):
    interval_minutes: int
    timezone: str | None = Field(None, max_length=100)


class PatchScheduleRequest(BaseModel):
    schedule_id: str = Field(..., min_length=1, max_length=200)
    action: Literal["pause", "resume"] | None = None
    interval_minutes: int | None = None
    timezone: str | None = Field(None, max_length=100)
    retries: int | None = None
    failure_callback: str | None = Field(None, max_length=2000)


class NotificationTestRequest(BaseModel):
    channel_id: str | None = Field(None, max_length=200)
    type: str | None = Field(None, max_length=40)
    config: dict[str, Any] | None = None
