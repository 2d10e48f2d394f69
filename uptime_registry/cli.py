from __future__ import annotations

import argparse
import asyncio
import json
import logging
import os
import sys

import httpx
import structlog

from uptime_checks.probes import build_probes
from uptime_registry import db as dbm
from uptime_registry.checker import CheckContext
from uptime_registry.dispatcher import run_dispatch_pass
from uptime_registry.seed import SeedError, seed_from_file
from uptime_registry.settings import TRIGGER_PATH, RegistrySettings


_LEVELS = {"debug": 10, "info": 20, "warning": 30, "error": 40}


def configure_logging(level: str = "info") -> None:
    structlog.configure(
        processors=[
            structlog.processors.add_log_level,
            structlog.processors.TimeStamper(fmt="ISO"),
            structlog.dev.ConsoleRenderer(),
        ],
        wrapper_class=structlog.make_filtering_bound_logger(_LEVELS.get(level.strip().lower(), 20)),
        logger_factory=structlog.PrintLoggerFactory(),
        cache_logger_on_first_use=True,
    )
    # httpx INFO lines carry full URLs, Telegram bot tokens included.
    for name in ("httpx", "httpcore"):
        logging.getLogger(name).setLevel(logging.WARNING)


async def _run_once(settings: RegistrySettings) -> dict:
    await asyncio.to_thread(dbm.ensure_schema, settings)
    async with httpx.AsyncClient(headers={"User-Agent": settings.user_agent}) as client:
        ctx = CheckContext(
            settings=settings,
            http_client=client,
            probes=build_probes(client, resolvers=list(settings.dns_resolvers), user_agent=settings.user_agent),
        )
        summary = await run_dispatch_pass(ctx)
    return summary.to_dict()


def _cmd_serve(args: argparse.Namespace) -> int:
    import uvicorn

    from uptime_registry.app import create_app

    uvicorn.run(create_app(RegistrySettings()), host=args.host, port=args.port, log_level=args.log_level)
    return 0


def _cmd_run_once(args: argparse.Namespace) -> int:
    result = asyncio.run(_run_once(RegistrySettings()))
    print(json.dumps(result, indent=2, ensure_ascii=False))
    return 1 if result.get("failed") else 0


def _cmd_seed(args: argparse.Namespace) -> int:
    try:
        result = seed_from_file(RegistrySettings(), args.path)
    except SeedError as e:
        print(f"seed failed: {e}", file=sys.stderr)
        return 2
    print(f"seeded targets={result.targets} channels={result.channels} maintenance={result.maintenance}")
    return 0


def _cmd_local_trigger(args: argparse.Namespace) -> int:
    from uptime_registry.local_trigger import LocalTrigger

    settings = RegistrySettings()
    secret = args.secret or settings.cron_secret
    if not secret:
        print("CRON_SECRET (or --secret) is required", file=sys.stderr)
        return 2
    url = args.url or f"http://127.0.0.1:{args.port}{TRIGGER_PATH}"
    trigger = LocalTrigger(url=url, cron_secret=secret, cron=args.cron, interval_seconds=args.interval)
    try:
        asyncio.run(trigger.run_forever())
    except KeyboardInterrupt:
        pass
    return 0


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="uptime-monitor", description="Uptime monitor service")
    parser.add_argument("--log-level", default=os.getenv("UPTIME_LOG_LEVEL", "info"), choices=sorted(_LEVELS))
    sub = parser.add_subparsers(dest="command", required=True)

    serve = sub.add_parser("serve", help="Run the HTTP API")
    serve.add_argument("--host", default=os.getenv("UPTIME_HOST", "0.0.0.0"))
    serve.add_argument("--port", type=int, default=int(os.getenv("UPTIME_PORT", "8112")))
    serve.set_defaults(func=_cmd_serve)

    once = sub.add_parser("run-once", help="Run one dispatch pass in-process and print the summary")
    once.set_defaults(func=_cmd_run_once)

    seed = sub.add_parser("seed", help="Upsert targets, channels and maintenance windows from YAML")
    seed.add_argument("path")
    seed.set_defaults(func=_cmd_seed)

    local = sub.add_parser("local-trigger", help="Call the check endpoint periodically (development)")
    local.add_argument("--url", default="")
    local.add_argument("--port", type=int, default=int(os.getenv("UPTIME_PORT", "8112")))
    local.add_argument("--secret", default="")
    cadence = local.add_mutually_exclusive_group()
    cadence.add_argument("--cron", default=None)
    cadence.add_argument("--interval", type=int, default=30, help="Seconds between calls")
    local.set_defaults(func=_cmd_local_trigger)
    return parser


def main(argv: list[str] | None = None) -> int:
    args = build_parser().parse_args(argv)
    configure_logging(args.log_level)
    return int(args.func(args))


if __name__ == "__main__":
    raise SystemExit(main())
