from __future__ import annotations

import httpx
import pytest

from uptime_registry.scheduler import (
    QStashScheduleClient,
    ScheduleAPIError,
    cron_to_interval,
    cron_to_timezone,
    interval_to_cron,
)


@pytest.mark.parametrize(
    ("minutes", "cron"),
    [
        (0, "* * * * *"),
        (1, "* * * * *"),
        (5, "*/5 * * * *"),
        (59, "*/59 * * * *"),
        (60, "0 */1 * * *"),
        (180, "0 */3 * * *"),
        (90, "0 0 * * *"),
        (1440, "0 0 * * *"),
    ],
)
def test_interval_to_cron(minutes: int, cron: str) -> None:
    assert interval_to_cron(minutes) == cron


def test_interval_to_cron_with_timezone() -> None:
    assert interval_to_cron(5, "Europe/Amsterdam") == "CRON_TZ=Europe/Amsterdam */5 * * * *"
    assert interval_to_cron(5, "UTC") == "*/5 * * * *"


@pytest.mark.parametrize(
    ("cron", "minutes"),
    [
        ("*/5 * * * *", 5),
        ("* * * * *", 1),
        ("*/0 * * * *", 1),
        ("*/x * * * *", 1),
        ("0 */3 * * *", 1),
        ("garbage", 1),
        ("CRON_TZ=Europe/Amsterdam */15 * * * *", 15),
    ],
)
def test_cron_to_interval(cron: str, minutes: int) -> None:
    assert cron_to_interval(cron) == minutes


def test_every_n_minutes_round_trip() -> None:
    assert cron_to_interval(interval_to_cron(5)) == 5


def test_cron_to_timezone() -> None:
    assert cron_to_timezone("CRON_TZ=America/New_York 0 0 * * *") == "America/New_York"
    assert cron_to_timezone("*/5 * * * *") == "UTC"


def _client(http_client: httpx.AsyncClient, token: str = "qs-token") -> QStashScheduleClient:
    return QStashScheduleClient(http_client, base_url="https://qstash.test/", token=token)


@pytest.mark.asyncio
async def test_list_find_and_get(fake_qstash) -> None:
    async with httpx.AsyncClient(transport=httpx.MockTransport(fake_qstash.handler)) as http_client:
        qs = _client(http_client)
        schedules = await qs.list_schedules()
        found = await qs.find_schedule("/api/cron/check-monitors")
        missing = await qs.get_schedule("scd_nope")

    assert [s.schedule_id for s in schedules] == ["scd_1"]
    assert found is not None
    assert found.to_dict()["interval_minutes"] == 5
    assert found.to_dict()["timezone"] == "UTC"
    assert found.retries == 2
    assert missing is None


@pytest.mark.asyncio
async def test_create_sends_cron_headers(fake_qstash) -> None:
    async with httpx.AsyncClient(transport=httpx.MockTransport(fake_qstash.handler)) as http_client:
        qs = _client(http_client)
        sid = await qs.create_schedule(
            "https://uptime.example.test/api/cron/check-monitors",
            "*/10 * * * *",
            retries=1,
            failure_callback="https://uptime.example.test/api/cron/failure-callback",
        )

    req = fake_qstash.requests[-1]
    assert req.method == "POST"
    assert req.headers["Upstash-Cron"] == "*/10 * * * *"
    assert req.headers["Upstash-Retries"] == "1"
    assert fake_qstash.schedules[sid]["destination"] == "https://uptime.example.test/api/cron/check-monitors"


@pytest.mark.asyncio
async def test_update_recreates_with_merged_settings(fake_qstash) -> None:
    async with httpx.AsyncClient(transport=httpx.MockTransport(fake_qstash.handler)) as http_client:
        qs = _client(http_client)
        new_id = await qs.update_schedule("scd_1", cron="*/15 * * * *")

    assert new_id != "scd_1"
    assert "scd_1" not in fake_qstash.schedules
    recreated = fake_qstash.schedules[new_id]
    assert recreated["cron"] == "*/15 * * * *"
    assert recreated["retries"] == 2
    assert recreated["failureCallback"] == "https://uptime.example.test/api/cron/failure-callback"
    assert recreated["destination"] == "https://uptime.example.test/api/cron/check-monitors"


@pytest.mark.asyncio
async def test_pause_and_resume(fake_qstash) -> None:
    async with httpx.AsyncClient(transport=httpx.MockTransport(fake_qstash.handler)) as http_client:
        qs = _client(http_client)
        await qs.pause_schedule("scd_1")
        paused = fake_qstash.schedules["scd_1"]["isPaused"]
        await qs.resume_schedule("scd_1")

    assert paused is True
    assert fake_qstash.schedules["scd_1"]["isPaused"] is False


@pytest.mark.asyncio
async def test_api_errors_raise_schedule_api_error(fake_qstash) -> None:
    async with httpx.AsyncClient(transport=httpx.MockTransport(fake_qstash.handler)) as http_client:
        with pytest.raises(ScheduleAPIError) as exc:
            await _client(http_client, token="wrong").list_schedules()
        assert exc.value.status_code == 401

        with pytest.raises(ScheduleAPIError):
            await _client(http_client, token="").list_schedules()

        with pytest.raises(ScheduleAPIError):
            await _client(http_client).update_schedule("scd_missing", cron="* * * * *")

    def broken(request: httpx.Request) -> httpx.Response:
        raise httpx.ConnectError("connection refused", request=request)

    async with httpx.AsyncClient(transport=httpx.MockTransport(broken)) as http_client:
        with pytest.raises(ScheduleAPIError):
            await _client(http_client).pause_schedule("scd_1")
