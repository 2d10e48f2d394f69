from __future__ import annotations

import base64
import hashlib
import hmac
import json
import time
from typing import Callable

import httpx
import pytest


def _b64url(data: bytes) -> str:
    return base64.urlsafe_b64encode(data).rstrip(b"=").decode("ascii")


def make_qstash_signature(
    key: str,
    body: bytes,
    *,
    issuer: str = "Upstash",
    expires_in: float = 300.0,
    now: float | None = None,
) -> str:
    ts = time.time() if now is None else now
    header = {"alg": "HS256", "typ": "JWT"}
    claims = {
        "iss": issuer,
        "sub": "https://uptime.example.test/api/cron/check-monitors",
        "exp": int(ts + expires_in),
        "nbf": int(ts) - 1,
        "iat": int(ts),
        "jti": "jwt_test",
        "body": _b64url(hashlib.sha256(body).digest()),
    }
    signing_input = f"{_b64url(json.dumps(header).encode())}.{_b64url(json.dumps(claims).encode())}"
    sig = hmac.new(key.encode("utf-8"), signing_input.encode("ascii"), hashlib.sha256).digest()
    return f"{signing_input}.{_b64url(sig)}"


@pytest.fixture()
def sign_qstash() -> Callable[..., str]:
    return make_qstash_signature


class FakeQStash:
    """In-memory stand-in for the QStash schedules API, served through httpx.MockTransport."""

    token = "qs-token"

    def __init__(self, *, with_schedule: bool = True) -> None:
        self.schedules: dict[str, dict] = {}
        if with_schedule:
            self.schedules["scd_1"] = {
                "scheduleId": "scd_1",
                "cron": "*/5 * * * *",
                "destination": "https://uptime.example.test/api/cron/check-monitors",
                "method": "POST",
                "createdAt": 1700000000000,
                "isPaused": False,
                "retries": 2,
                "failureCallback": "https://uptime.example.test/api/cron/failure-callback",
            }
        self.requests: list[httpx.Request] = []
        self.counter = 1

    def handler(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        if request.headers.get("Authorization") != f"Bearer {self.token}":
            return httpx.Response(401, json={"error": "unauthorized"})
        path = request.url.raw_path.decode("ascii").split("?", 1)[0]
        prefix = "/v2/schedules"
        if request.method == "GET" and path == prefix:
            return httpx.Response(200, json=list(self.schedules.values()))
        if request.method == "POST" and path.startswith(prefix + "/"):
            self.counter += 1
            sid = f"scd_{self.counter}"
            self.schedules[sid] = {
                "scheduleId": sid,
                "cron": request.headers["Upstash-Cron"],
                "destination": path[len(prefix) + 1 :],
                "retries": int(request.headers.get("Upstash-Retries", "3")),
                "failureCallback": request.headers.get("Upstash-Failure-Callback"),
                "createdAt": 1700000001000,
            }
            return httpx.Response(201, json={"scheduleId": sid})
        sid, _, action = path[len(prefix) + 1 :].partition("/")
        if sid not in self.schedules:
            return httpx.Response(404, json={"error": "schedule not found"})
        if request.method == "GET":
            return httpx.Response(200, json=self.schedules[sid])
        if request.method == "DELETE":
            del self.schedules[sid]
            return httpx.Response(200)
        if request.method == "PATCH" and action in ("pause", "resume"):
            self.schedules[sid]["isPaused"] = action == "pause"
            return httpx.Response(200)
        return httpx.Response(405)


@pytest.fixture()
def fake_qstash() -> FakeQStash:
    return FakeQStash()
