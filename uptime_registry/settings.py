from __future__ import annotations

import os
from dataclasses import dataclass, field


def _env_int(name: str, default: int) -> int:
    raw = os.getenv(name)
    if raw is None:
        return int(default)
    try:
        return int(str(raw).strip())
    except Exception:
        return int(default)


def _env_float(name: str, default: float) -> float:
    raw = os.getenv(name)
    if raw is None:
        return float(default)
    try:
        return float(str(raw).strip())
    except Exception:
        return float(default)


def _env_str(name: str, default: str) -> str:
    raw = os.getenv(name)
    if raw is None:
        return str(default)
    s = str(raw).strip()
    return s if s else str(default)


def _env_csv(name: str, default: tuple[str, ...] = ()) -> tuple[str, ...]:
    raw = os.getenv(name)
    if raw is None:
        return tuple(default)
    out: list[str] = []
    for part in str(raw).split(","):
        item = part.strip()
        if item:
            out.append(item)
    return tuple(out) or tuple(default)


TRIGGER_PATH = "/api/cron/check-monitors"
FAILURE_CALLBACK_PATH = "/api/cron/failure-callback"


@dataclass(frozen=True)
class RegistrySettings:
    db_path: str = field(default_factory=lambda: _env_str("UPTIME_DB_PATH", "/data/uptime.db"))

    # Shared secret used by the periodic trigger (Authorization: Bearer ...).
    cron_secret: str = field(default_factory=lambda: os.getenv("CRON_SECRET", "").strip())
    # Admin token guards schedule management and test notifications.
    admin_token: str = field(default_factory=lambda: os.getenv("UPTIME_ADMIN_TOKEN", "").strip())

    # External scheduler (QStash).
    qstash_url: str = field(default_factory=lambda: _env_str("QSTASH_URL", "https://qstash.upstash.io"))
    qstash_token: str = field(default_factory=lambda: os.getenv("QSTASH_TOKEN", "").strip())
    qstash_current_signing_key: str = field(default_factory=lambda: os.getenv("QSTASH_CURRENT_SIGNING_KEY", "").strip())
    qstash_next_signing_key: str = field(default_factory=lambda: os.getenv("QSTASH_NEXT_SIGNING_KEY", "").strip())

    # Used to build the trigger/failure-callback destinations registered with the scheduler.
    public_base_url: str = field(default_factory=lambda: os.getenv("UPTIME_PUBLIC_BASE_URL", "").strip())

    # Dispatch pass.
    check_concurrency: int = field(default_factory=lambda: _env_int("UPTIME_CHECK_CONCURRENCY", 10))
    max_pass_seconds: float = field(default_factory=lambda: _env_float("UPTIME_MAX_PASS_SECONDS", 55.0))
    lease_timeout_seconds: int = field(default_factory=lambda: _env_int("UPTIME_LEASE_TIMEOUT_SECONDS", 5 * 60))

    # Probes.
    dns_resolvers: tuple[str, ...] = field(default_factory=lambda: _env_csv("UPTIME_DNS_RESOLVERS", ("8.8.8.8", "1.1.1.1")))
    user_agent: str = field(default_factory=lambda: _env_str("UPTIME_USER_AGENT", "Uptime-Monitor/1.0"))

    # Upper bound for a single channel delivery.
    notification_timeout_seconds: float = field(
        default_factory=lambda: _env_float("UPTIME_NOTIFICATION_TIMEOUT_SECONDS", 20.0)
    )

    def public_url(self, path: str) -> str:
        base = (self.public_base_url or "").rstrip("/")
        if not base:
            return ""
        if not base.startswith(("http://", "https://")):
            base = f"https://{base}"
        if not path.startswith("/"):
            path = "/" + path
        return base + path
