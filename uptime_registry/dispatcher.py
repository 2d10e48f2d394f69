from __future__ import annotations

import asyncio
import time
from dataclasses import dataclass, field
from typing import Any, Iterable, Mapping

import structlog

from uptime_checks.targets import Target
from uptime_registry import db as dbm
from uptime_registry.checker import CheckContext, CheckOutcome, check_target


logger = structlog.get_logger(__name__)


@dataclass(frozen=True)
class FailureDetail:
    target_id: str
    target_name: str
    error: str

    def to_dict(self) -> dict[str, Any]:
        return {"target_id": self.target_id, "target_name": self.target_name, "error": self.error}


@dataclass
class PassSummary:
    message: str
    total: int = 0
    due: int = 0
    checked: int = 0
    successful: int = 0
    failed: int = 0
    skipped: int = 0
    timed_out: bool = False
    failures: list[FailureDetail] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return {
            "message": self.message,
            "total": self.total,
            "due": self.due,
            "checked": self.checked,
            "successful": self.successful,
            "failed": self.failed,
            "skipped": self.skipped,
            "timed_out": self.timed_out,
            "failures": [f.to_dict() for f in self.failures],
        }


def select_due_targets(
    targets: Iterable[Target],
    last_check_ts_by_id: Mapping[str, float],
    now_ts: float,
) -> list[Target]:
    """Active targets whose interval has elapsed, longest-waiting first."""
    due: list[tuple[float, int, Target]] = []
    for idx, target in enumerate(targets):
        if not target.active:
            continue
        last = last_check_ts_by_id.get(target.id)
        waited = float("inf") if last is None else float(now_ts) - float(last)
        if last is None or waited >= max(0, int(target.interval)):
            due.append((waited, idx, target))
    due.sort(key=lambda item: (-item[0], item[1]))
    return [t for _, _, t in due]


def _chunks(items: list[Target], size: int) -> Iterable[list[Target]]:
    for i in range(0, len(items), size):
        yield items[i : i + size]


async def run_dispatch_pass(ctx: CheckContext, now_ts: float | None = None) -> PassSummary:
    """
    Check every due target once.

    Targets run in fixed-size concurrent chunks. A failing check is recorded in the
    summary and never aborts the pass; once the pass exceeds max_pass_seconds the
    remaining targets are skipped.
    """
    settings = ctx.settings
    started = time.monotonic()
    now = float(now_ts) if now_ts is not None else time.time()

    targets = await asyncio.to_thread(dbm.list_active_targets, settings)
    if not targets:
        return PassSummary(message="No active monitors")

    last_checks = await asyncio.to_thread(dbm.last_check_times, settings, target_ids=[t.id for t in targets])
    due = select_due_targets(targets, last_checks, now)
    summary = PassSummary(message="Monitor checks completed", total=len(targets), due=len(due))
    if not due:
        summary.message = "No monitors due for check"
        return summary

    logger.info("Dispatch pass started", due=len(due), total=len(targets))

    chunk_size = max(1, int(settings.check_concurrency))
    offset = 0
    for chunk in _chunks(due, chunk_size):
        if time.monotonic() - started > float(settings.max_pass_seconds):
            remaining = len(due) - offset
            summary.skipped += remaining
            summary.timed_out = True
            logger.warning("Pass budget exhausted, skipping remaining targets", skipped=remaining)
            break
        offset += len(chunk)

        # Each check stamps its own heartbeat; `now` only decides which targets are due.
        results = await asyncio.gather(*(check_target(ctx, t) for t in chunk), return_exceptions=True)
        for target, result in zip(chunk, results):
            if isinstance(result, asyncio.CancelledError):
                raise result
            if isinstance(result, BaseException):
                error = str(result) or type(result).__name__
                summary.checked += 1
                summary.failed += 1
                summary.failures.append(FailureDetail(target_id=target.id, target_name=target.name, error=error))
                logger.error("Target check failed", target_id=target.id, target_name=target.name, error=error)
                continue
            outcome: CheckOutcome = result
            if outcome.skipped:
                summary.skipped += 1
                continue
            summary.checked += 1
            summary.successful += 1

    if summary.timed_out:
        summary.message = "Monitor checks partially completed (timeout)"
    logger.info(
        "Dispatch pass finished",
        checked=summary.checked,
        successful=summary.successful,
        failed=summary.failed,
        skipped=summary.skipped,
        timed_out=summary.timed_out,
    )
    return summary
