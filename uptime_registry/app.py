from __future__ import annotations

import asyncio
import secrets
import time
from datetime import datetime, timezone
from typing import Any, Awaitable, Mapping, TypeVar

import httpx
import structlog
from fastapi import Depends, FastAPI, HTTPException, Request
from fastapi.responses import JSONResponse

from uptime_checks.probes import Probe, build_probes
from uptime_checks.targets import TargetType
from uptime_registry import db as dbm
from uptime_registry import incidents
from uptime_registry.auth import require_admin, verify_cron_bearer, verify_qstash_signature
from uptime_registry.checker import CheckContext
from uptime_registry.dispatcher import run_dispatch_pass
from uptime_registry.notifications import send_test_notification
from uptime_registry.scheduler import (
    QStashScheduleClient,
    ScheduleAPIError,
    cron_to_interval,
    cron_to_timezone,
    interval_to_cron,
)
from uptime_registry.schema import CreateScheduleRequest, NotificationTestRequest, PatchScheduleRequest
from uptime_registry.settings import FAILURE_CALLBACK_PATH, TRIGGER_PATH, RegistrySettings


logger = structlog.get_logger(__name__)

INVALID_INTERVAL = "Invalid interval. Minimum is 1 minute."
DISCONNECT_POLL_SECONDS = 0.5

T = TypeVar("T")


class ClientDisconnected(Exception):
    pass


async def run_while_connected(
    req: Any,
    aw: Awaitable[T],
    *,
    poll_seconds: float = DISCONNECT_POLL_SECONDS,
) -> T:
    """
    Await `aw` as a task, cancelling it as soon as the caller of `req` goes away.

    `req` needs an async `is_disconnected()` (a Starlette Request).
    """
    task = asyncio.ensure_future(aw)
    try:
        while True:
            done, _ = await asyncio.wait({task}, timeout=poll_seconds)
            if done:
                return task.result()
            if await req.is_disconnected():
                task.cancel()
                await asyncio.wait({task})
                raise ClientDisconnected()
    finally:
        if not task.done():
            task.cancel()


def _request_id(prefix: str) -> str:
    return f"{prefix}_{int(time.time() * 1000)}_{secrets.token_hex(3)}"


def _now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


def create_app(
    settings: RegistrySettings | None = None,
    *,
    http_client: httpx.AsyncClient | None = None,
    probes: Mapping[TargetType, Probe] | None = None,
    schedule_client: QStashScheduleClient | None = None,
) -> FastAPI:
    app = FastAPI(title="Uptime Monitor", version="0.1.0")
    app.state.settings = settings or RegistrySettings()
    app.state.http_client = http_client
    app.state.owns_http_client = http_client is None
    app.state.probes = probes
    app.state.schedule_client = schedule_client
    app.state.check_context = None

    @app.on_event("startup")
    async def _startup() -> None:
        settings2: RegistrySettings = app.state.settings
        await asyncio.to_thread(dbm.ensure_schema, settings2)
        if app.state.http_client is None:
            app.state.http_client = httpx.AsyncClient(headers={"User-Agent": settings2.user_agent})
        if app.state.probes is None:
            app.state.probes = build_probes(
                app.state.http_client,
                resolvers=list(settings2.dns_resolvers),
                user_agent=settings2.user_agent,
            )
        if app.state.schedule_client is None:
            app.state.schedule_client = QStashScheduleClient(
                app.state.http_client,
                base_url=settings2.qstash_url,
                token=settings2.qstash_token,
            )
        app.state.check_context = CheckContext(
            settings=settings2,
            http_client=app.state.http_client,
            probes=app.state.probes,
        )
        logger.info("Uptime service started", db_path=settings2.db_path)

    @app.on_event("shutdown")
    async def _shutdown() -> None:
        if app.state.owns_http_client and app.state.http_client is not None:
            await app.state.http_client.aclose()
            app.state.http_client = None
        logger.info("Uptime service stopped")

    @app.get("/health")
    async def health() -> dict[str, Any]:
        return {"ok": True}

    # -----------------
    # Trigger endpoint
    # -----------------
    async def _run_pass(req: Request, *, source: str, request_id: str, started: float) -> JSONResponse:
        logger.info("Starting monitor checks", request_id=request_id, source=source)
        try:
            summary = await run_while_connected(req, run_dispatch_pass(app.state.check_context))
        except ClientDisconnected:
            logger.warning("Trigger caller disconnected, pass cancelled", request_id=request_id, source=source)
            return JSONResponse({"error": "Client disconnected", "request_id": request_id}, status_code=499)
        except Exception as e:
            logger.exception("Dispatch pass failed", request_id=request_id)
            return JSONResponse(
                {"error": str(e) or "Internal server error", "request_id": request_id},
                status_code=500,
            )
        body = summary.to_dict()
        body.update(
            {
                "request_id": request_id,
                "duration_ms": round((time.monotonic() - started) * 1000.0, 1),
                "source": source,
                "timestamp": _now_iso(),
            }
        )
        return JSONResponse(body)

    def _unauthorized(request_id: str) -> JSONResponse:
        return JSONResponse({"error": "Unauthorized", "request_id": request_id}, status_code=401)

    @app.get(TRIGGER_PATH)
    async def trigger_get(req: Request, health: str | None = None) -> JSONResponse:
        started = time.monotonic()
        request_id = _request_id("cron")
        if (health or "").strip().lower() == "true":
            return JSONResponse({"status": "healthy", "timestamp": _now_iso(), "request_id": request_id})
        if not verify_cron_bearer(req, app.state.settings):
            logger.warning("Unauthorized trigger request", request_id=request_id, method="GET")
            return _unauthorized(request_id)
        return await _run_pass(req, source="bearer", request_id=request_id, started=started)

    @app.post(TRIGGER_PATH)
    async def trigger_post(req: Request) -> JSONResponse:
        started = time.monotonic()
        request_id = _request_id("cron")
        signature = req.headers.get("upstash-signature")
        if signature is not None:
            body = await req.body()
            source = "qstash" if verify_qstash_signature(app.state.settings, signature, body) else ""
        else:
            source = "bearer" if verify_cron_bearer(req, app.state.settings) else ""
        if not source:
            logger.warning("Unauthorized trigger request", request_id=request_id, method="POST")
            return _unauthorized(request_id)
        return await _run_pass(req, source=source, request_id=request_id, started=started)

    # -----------------
    # Scheduler failure callback
    # -----------------
    @app.post(FAILURE_CALLBACK_PATH)
    async def failure_callback(req: Request) -> JSONResponse:
        request_id = _request_id("failure")
        body = await req.body()
        if not verify_qstash_signature(app.state.settings, req.headers.get("upstash-signature"), body):
            return JSONResponse({"error": "Unauthorized"}, status_code=401)

        details = {
            "failed_url": req.headers.get("upstash-failed-url") or "unknown",
            "failed_status": req.headers.get("upstash-failed-status") or "unknown",
            "failed_message": req.headers.get("upstash-failed-message") or "",
            "message_id": req.headers.get("upstash-message-id") or "",
            "retried": req.headers.get("upstash-retried") or "0",
        }
        logger.error("Scheduler failure callback received", request_id=request_id, **details)
        await asyncio.to_thread(incidents.record_scheduler_failure, app.state.settings, details)
        return JSONResponse({"success": True, "message": "Failure logged", "request_id": request_id})

    @app.get(FAILURE_CALLBACK_PATH)
    async def failure_callback_health() -> dict[str, Any]:
        return {"status": "healthy", "endpoint": "failure-callback", "timestamp": _now_iso()}

    # -----------------
    # Schedule management (admin)
    # -----------------
    def _schedules() -> QStashScheduleClient:
        client = app.state.schedule_client
        if client is None:
            raise HTTPException(status_code=503, detail="schedule_client_not_configured")
        return client

    @app.get("/api/settings/schedule")
    async def get_schedule(_auth: None = Depends(require_admin)) -> dict[str, Any]:
        try:
            schedule = await _schedules().find_schedule(TRIGGER_PATH)
        except ScheduleAPIError as e:
            raise HTTPException(status_code=502, detail=str(e)) from e
        if schedule is None:
            return {"schedule": None, "message": "No monitor check schedule found"}
        return {"schedule": schedule.to_dict()}

    @app.post("/api/settings/schedule")
    async def create_schedule(req: CreateScheduleRequest, _auth: None = Depends(require_admin)) -> dict[str, Any]:
        if req.interval_minutes < 1:
            raise HTTPException(status_code=400, detail=INVALID_INTERVAL)
        settings2: RegistrySettings = app.state.settings
        destination = settings2.public_url(TRIGGER_PATH)
        if not destination:
            raise HTTPException(status_code=500, detail="Public base URL not configured")

        client = _schedules()
        try:
            existing = await client.find_schedule(TRIGGER_PATH)
            if existing is not None:
                return {
                    "success": True,
                    "created": False,
                    "schedule_id": existing.schedule_id,
                    "cron": existing.cron,
                    "interval_minutes": existing.interval_minutes,
                }
            cron = interval_to_cron(req.interval_minutes, req.timezone)
            schedule_id = await client.create_schedule(
                destination,
                cron,
                failure_callback=settings2.public_url(FAILURE_CALLBACK_PATH) or None,
            )
        except ScheduleAPIError as e:
            raise HTTPException(status_code=502, detail=str(e)) from e
        return {
            "success": True,
            "created": True,
            "schedule_id": schedule_id,
            "cron": cron,
            "interval_minutes": req.interval_minutes,
        }

    @app.patch("/api/settings/schedule")
    async def patch_schedule(req: PatchScheduleRequest, _auth: None = Depends(require_admin)) -> dict[str, Any]:
        client = _schedules()
        try:
            if req.action == "pause":
                await client.pause_schedule(req.schedule_id)
                return {"success": True, "action": "paused"}
            if req.action == "resume":
                await client.resume_schedule(req.schedule_id)
                return {"success": True, "action": "resumed"}

            update: dict[str, Any] = {}
            if req.interval_minutes is not None or req.timezone is not None:
                if req.interval_minutes is not None and req.interval_minutes < 1:
                    raise HTTPException(status_code=400, detail=INVALID_INTERVAL)
                current = await client.get_schedule(req.schedule_id)
                interval = req.interval_minutes
                if interval is None:
                    interval = cron_to_interval(current.cron) if current else 1
                tz = req.timezone
                if tz is None:
                    tz = cron_to_timezone(current.cron) if current else "UTC"
                update["cron"] = interval_to_cron(interval, tz)

            if req.retries is not None:
                if req.retries < 0 or req.retries > 5:
                    raise HTTPException(status_code=400, detail="Retries must be between 0 and 5.")
                update["retries"] = req.retries

            if req.failure_callback is not None:
                update["failure_callback"] = req.failure_callback or None

            if not update:
                raise HTTPException(status_code=400, detail="No valid update parameters provided")

            new_id = await client.update_schedule(req.schedule_id, **update)
        except ScheduleAPIError as e:
            raise HTTPException(status_code=502, detail=str(e)) from e

        out: dict[str, Any] = {"success": True, "new_schedule_id": new_id}
        out.update(update)
        if "cron" in update:
            out["interval_minutes"] = req.interval_minutes
        return out

    # -----------------
    # Notification test (admin)
    # -----------------
    @app.post("/api/notifications/test")
    async def notifications_test(req: NotificationTestRequest, _auth: None = Depends(require_admin)) -> JSONResponse:
        if req.channel_id:
            channel = await asyncio.to_thread(dbm.get_channel, app.state.settings, channel_id=req.channel_id)
            if channel is None:
                return JSONResponse({"success": False, "error": "Channel not found"}, status_code=404)
            channel_type, config = channel.type, channel.config
        elif req.type and req.config is not None:
            channel_type, config = req.type, req.config
        else:
            return JSONResponse(
                {"success": False, "error": "Either channel_id or type+config required"},
                status_code=400,
            )

        result = await send_test_notification(app.state.http_client, channel_type, config)
        if result.success:
            return JSONResponse({"success": True, "message": "Test notification sent!"})
        return JSONResponse({"success": False, "error": result.error}, status_code=400)

    return app
