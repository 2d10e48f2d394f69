from __future__ import annotations

import asyncio
import json
import time
from pathlib import Path

import httpx
import pytest
from fastapi.testclient import TestClient

from uptime_checks.probes import ProbeResult, RawStatus
from uptime_checks.targets import Target, TargetType
from uptime_registry import db as dbm
from uptime_registry.app import ClientDisconnected, create_app, run_while_connected
from uptime_registry.checker import CheckContext
from uptime_registry.dispatcher import run_dispatch_pass
from uptime_registry.models import IncidentStatus, NotificationChannel
from uptime_registry.scheduler import QStashScheduleClient
from uptime_registry.settings import RegistrySettings


CRON = "cron-s3cret"
ADMIN = "admin-t0ken"
CURRENT_KEY = "sig_current_key"
NEXT_KEY = "sig_next_key"


class UpProbe:
    async def probe(self, target: Target, timeout_seconds: float) -> ProbeResult:
        return ProbeResult(raw_status=RawStatus.UP, ping_ms=2.0, message="HTTP 200")


class HookSink:
    def __init__(self) -> None:
        self.bodies: list[dict] = []

    def handler(self, request: httpx.Request) -> httpx.Response:
        if request.url.path == "/broken":
            return httpx.Response(503)
        self.bodies.append(json.loads(request.content or b"{}"))
        return httpx.Response(200)


@pytest.fixture()
def settings(tmp_path: Path) -> RegistrySettings:
    return RegistrySettings(
        db_path=str(tmp_path / "uptime.db"),
        cron_secret=CRON,
        admin_token=ADMIN,
        qstash_url="https://qstash.test",
        qstash_token="qs-token",
        qstash_current_signing_key=CURRENT_KEY,
        qstash_next_signing_key=NEXT_KEY,
        public_base_url="uptime.example.test",
    )


@pytest.fixture()
def hooks() -> HookSink:
    return HookSink()


@pytest.fixture()
def client(settings: RegistrySettings, fake_qstash, hooks: HookSink):
    http_client = httpx.AsyncClient(transport=httpx.MockTransport(hooks.handler))
    schedule_http = httpx.AsyncClient(transport=httpx.MockTransport(fake_qstash.handler))
    app = create_app(
        settings,
        http_client=http_client,
        probes={t: UpProbe() for t in TargetType},
        schedule_client=QStashScheduleClient(schedule_http, base_url=settings.qstash_url, token=settings.qstash_token),
    )
    with TestClient(app) as c:
        yield c


def _seed_target(settings: RegistrySettings) -> None:
    dbm.upsert_target(
        settings,
        Target(id="api", name="API", type=TargetType.HTTP, owner_id="o", url="https://api.example.test"),
    )


def test_health(client: TestClient) -> None:
    assert client.get("/health").json() == {"ok": True}


def test_trigger_liveness_needs_no_auth(client: TestClient) -> None:
    r = client.get("/api/cron/check-monitors", params={"health": "true"})
    assert r.status_code == 200
    assert r.json()["status"] == "healthy"


def test_trigger_rejects_missing_or_wrong_bearer(client: TestClient) -> None:
    r = client.get("/api/cron/check-monitors")
    assert r.status_code == 401
    body = r.json()
    assert body["error"] == "Unauthorized"
    assert body["request_id"].startswith("cron_")

    r2 = client.post("/api/cron/check-monitors", headers={"Authorization": "Bearer nope"})
    assert r2.status_code == 401


def test_trigger_with_bearer_runs_a_pass(client: TestClient, settings: RegistrySettings) -> None:
    _seed_target(settings)
    r = client.get("/api/cron/check-monitors", headers={"Authorization": f"Bearer {CRON}"})

    assert r.status_code == 200
    body = r.json()
    assert body["source"] == "bearer"
    assert body["total"] == 1
    assert body["checked"] == 1
    assert body["successful"] == 1
    assert body["failures"] == []
    assert "duration_ms" in body and "timestamp" in body
    assert dbm.get_latest_heartbeat(settings, target_id="api") is not None


def test_trigger_with_signature(client: TestClient, settings: RegistrySettings, sign_qstash) -> None:
    _seed_target(settings)
    payload = b'{"source":"qstash"}'

    ok = client.post(
        "/api/cron/check-monitors",
        content=payload,
        headers={"Upstash-Signature": sign_qstash(CURRENT_KEY, payload)},
    )
    rotated = client.post(
        "/api/cron/check-monitors",
        content=payload,
        headers={"Upstash-Signature": sign_qstash(NEXT_KEY, payload)},
    )

    assert ok.status_code == 200
    assert ok.json()["source"] == "qstash"
    assert rotated.status_code == 200


def test_trigger_signature_failures(client: TestClient, sign_qstash) -> None:
    payload = b"{}"
    cases = [
        sign_qstash("someone-else", payload),
        sign_qstash(CURRENT_KEY, b"different body"),
        sign_qstash(CURRENT_KEY, payload, issuer="Mallory"),
        sign_qstash(CURRENT_KEY, payload, now=time.time() - 3600),
        "not-a-jwt",
    ]
    for sig in cases:
        r = client.post(
            "/api/cron/check-monitors",
            content=payload,
            # A valid bearer does not rescue a bad signature.
            headers={"Upstash-Signature": sig, "Authorization": f"Bearer {CRON}"},
        )
        assert r.status_code == 401, sig


def test_failure_callback(client: TestClient, settings: RegistrySettings, sign_qstash) -> None:
    payload = b'{"sourceMessageId":"msg_1"}'
    headers = {
        "Upstash-Failed-Url": "https://uptime.example.test/api/cron/check-monitors",
        "Upstash-Failed-Status": "500",
        "Upstash-Failed-Message": "boom",
        "Upstash-Message-Id": "msg_1",
        "Upstash-Retried": "3",
    }

    denied = client.post("/api/cron/failure-callback", content=payload, headers=headers)
    assert denied.status_code == 401
    assert denied.json() == {"error": "Unauthorized"}

    headers["Upstash-Signature"] = sign_qstash(CURRENT_KEY, payload)
    r = client.post("/api/cron/failure-callback", content=payload, headers=headers)
    assert r.status_code == 200
    assert r.json()["success"] is True

    incidents = dbm.list_incidents(settings, status=IncidentStatus.OPEN)
    assert len(incidents) == 1
    assert incidents[0].title == "Cron Job Failure"
    assert incidents[0].target_id is None
    assert "failed after 3 retries" in incidents[0].content
    assert "Status: 500" in incidents[0].content
    assert "Message ID: msg_1" in incidents[0].content

    assert client.get("/api/cron/failure-callback").json()["status"] == "healthy"


def test_schedule_requires_admin(client: TestClient) -> None:
    assert client.get("/api/settings/schedule").status_code == 401
    assert client.get("/api/settings/schedule", headers={"Authorization": "Bearer wrong"}).status_code == 403
    # Latin-1 header bytes decode to non-ASCII text; still a plain mismatch.
    non_ascii = {"Authorization": "Bearer t\u00f6ken".encode("latin-1")}
    assert client.get("/api/settings/schedule", headers=non_ascii).status_code == 403


def _admin() -> dict[str, str]:
    return {"Authorization": f"Bearer {ADMIN}"}


def test_get_schedule(client: TestClient) -> None:
    r = client.get("/api/settings/schedule", headers=_admin())
    assert r.status_code == 200
    schedule = r.json()["schedule"]
    assert schedule["id"] == "scd_1"
    assert schedule["interval_minutes"] == 5
    assert schedule["timezone"] == "UTC"
    assert schedule["is_paused"] is False


def test_create_schedule_when_absent(client: TestClient, fake_qstash) -> None:
    fake_qstash.schedules.clear()
    assert client.get("/api/settings/schedule", headers=_admin()).json()["schedule"] is None

    bad = client.post("/api/settings/schedule", headers=_admin(), json={"interval_minutes": 0})
    assert bad.status_code == 400

    r = client.post("/api/settings/schedule", headers=_admin(), json={"interval_minutes": 10})
    assert r.status_code == 200
    body = r.json()
    assert body["created"] is True
    assert body["cron"] == "*/10 * * * *"
    created = fake_qstash.schedules[body["schedule_id"]]
    assert created["destination"] == "https://uptime.example.test/api/cron/check-monitors"
    assert created["failureCallback"] == "https://uptime.example.test/api/cron/failure-callback"

    again = client.post("/api/settings/schedule", headers=_admin(), json={"interval_minutes": 3})
    assert again.json()["created"] is False
    assert again.json()["schedule_id"] == body["schedule_id"]


def test_patch_schedule_pause_and_update(client: TestClient, fake_qstash) -> None:
    paused = client.patch("/api/settings/schedule", headers=_admin(), json={"schedule_id": "scd_1", "action": "pause"})
    assert paused.json() == {"success": True, "action": "paused"}
    assert fake_qstash.schedules["scd_1"]["isPaused"] is True

    r = client.patch(
        "/api/settings/schedule",
        headers=_admin(),
        json={"schedule_id": "scd_1", "interval_minutes": 15, "timezone": "Europe/Amsterdam", "retries": 4},
    )
    assert r.status_code == 200
    body = r.json()
    new_id = body["new_schedule_id"]
    assert new_id != "scd_1"
    assert body["cron"] == "CRON_TZ=Europe/Amsterdam */15 * * * *"
    assert fake_qstash.schedules[new_id]["retries"] == 4


def test_patch_schedule_validation(client: TestClient) -> None:
    def patch(payload: dict) -> httpx.Response:
        return client.patch("/api/settings/schedule", headers=_admin(), json=payload)

    assert patch({"schedule_id": "scd_1", "retries": 7}).status_code == 400
    assert patch({"schedule_id": "scd_1", "interval_minutes": 0}).status_code == 400
    assert patch({"schedule_id": "scd_1"}).status_code == 400
    missing = patch({"schedule_id": "scd_missing", "retries": 1})
    assert missing.status_code == 502
    assert "not found" in missing.json()["detail"]


def test_notification_test_endpoint(client: TestClient, settings: RegistrySettings, hooks: HookSink) -> None:
    dbm.upsert_channel(
        settings,
        NotificationChannel(id="ch1", owner_id="o", name="Hook", type="webhook", config={"url": "https://h.test/in"}),
    )

    by_id = client.post("/api/notifications/test", headers=_admin(), json={"channel_id": "ch1"})
    assert by_id.json() == {"success": True, "message": "Test notification sent!"}
    assert hooks.bodies[-1]["title"] == "Test Notification"

    inline = client.post(
        "/api/notifications/test",
        headers=_admin(),
        json={"type": "webhook", "config": {"url": "https://h.test/broken"}},
    )
    assert inline.status_code == 400
    assert inline.json() == {"success": False, "error": "Webhook error: 503"}

    assert client.post("/api/notifications/test", headers=_admin(), json={"channel_id": "nope"}).status_code == 404
    assert client.post("/api/notifications/test", headers=_admin(), json={}).status_code == 400


class SleepyProbe:
    def __init__(self, delay: float) -> None:
        self.delay = delay
        self.started: list[str] = []

    async def probe(self, target: Target, timeout_seconds: float) -> ProbeResult:
        self.started.append(target.id)
        await asyncio.sleep(self.delay)
        return ProbeResult(raw_status=RawStatus.UP, ping_ms=1.0, message="HTTP 200")


class DropsAfter:
    """Request stand-in whose caller hangs up after `seconds`."""

    def __init__(self, seconds: float) -> None:
        self.deadline = time.monotonic() + seconds

    async def is_disconnected(self) -> bool:
        return time.monotonic() >= self.deadline


@pytest.mark.asyncio
async def test_disconnect_cancels_running_pass(tmp_path: Path) -> None:
    settings = RegistrySettings(db_path=str(tmp_path / "uptime.db"), check_concurrency=1)
    for tid in ("a", "b", "c"):
        dbm.upsert_target(
            settings,
            Target(id=tid, name=tid.upper(), type=TargetType.HTTP, owner_id="o", url=f"https://{tid}.test"),
        )

    probe = SleepyProbe(delay=0.5)
    async with httpx.AsyncClient() as http_client:
        ctx = CheckContext(settings=settings, http_client=http_client, probes={TargetType.HTTP: probe})
        with pytest.raises(ClientDisconnected):
            await run_while_connected(DropsAfter(0.2), run_dispatch_pass(ctx), poll_seconds=0.05)
        # Give any leaked check time to finish writing.
        await asyncio.sleep(0.8)

    assert probe.started == ["a"]
    for tid in ("a", "b", "c"):
        assert dbm.get_latest_heartbeat(settings, target_id=tid) is None
    # The interrupted check released its lease.
    assert dbm.acquire_target_lease(settings, target_id="a") is not None


@pytest.mark.asyncio
async def test_connected_caller_gets_the_result() -> None:
    async def work() -> str:
        await asyncio.sleep(0.1)
        return "done"

    assert await run_while_connected(DropsAfter(10.0), work(), poll_seconds=0.02) == "done"
