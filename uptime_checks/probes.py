from __future__ import annotations

import asyncio
import time
from dataclasses import dataclass
from enum import Enum
from typing import Mapping, Protocol

import httpx

from uptime_checks import dns_probe
from uptime_checks.targets import Target, TargetType


DEFAULT_USER_AGENT = "Uptime-Monitor/1.0"


class RawStatus(str, Enum):
    UP = "up"
    DOWN = "down"


@dataclass(frozen=True)
class ProbeResult:
    raw_status: RawStatus
    ping_ms: float | None
    message: str

    @property
    def ok(self) -> bool:
        return self.raw_status is RawStatus.UP


class Probe(Protocol):
    async def probe(self, target: Target, timeout_seconds: float) -> ProbeResult: ...


def _elapsed_ms(started: float) -> float:
    return round((time.perf_counter() - started) * 1000.0, 3)


def _result(success: bool, *, upside_down: bool, ping_ms: float | None, message: str) -> ProbeResult:
    if upside_down:
        success = not success
    return ProbeResult(
        raw_status=RawStatus.UP if success else RawStatus.DOWN,
        ping_ms=ping_ms,
        message=message,
    )


def _timeout_result(started: float, timeout_seconds: float) -> ProbeResult:
    return ProbeResult(
        raw_status=RawStatus.DOWN,
        ping_ms=_elapsed_ms(started),
        message=f"Timeout after {float(timeout_seconds):g}s",
    )


def _error_text(exc: BaseException) -> str:
    text = str(exc or "").strip()
    return f"{type(exc).__name__}: {text}" if text else type(exc).__name__


def _with_scheme(address: str) -> str:
    s = address.strip()
    if s.startswith(("http://", "https://")):
        return s
    return f"https://{s}"


class HttpProbe:
    """
    HTTP and keyword targets.

    Any 2xx/3xx final status counts as success; keyword targets additionally need the
    keyword to appear in the response body.
    """

    def __init__(self, client: httpx.AsyncClient, *, user_agent: str = DEFAULT_USER_AGENT) -> None:
        self._client = client
        self._user_agent = user_agent

    async def probe(self, target: Target, timeout_seconds: float) -> ProbeResult:
        if not target.url:
            raise ValueError("HTTP target has no url")

        headers = {"User-Agent": self._user_agent}
        headers.update({str(k): str(v) for k, v in (target.headers or {}).items()})
        content = target.body.encode("utf-8") if target.body else None

        started = time.perf_counter()
        try:
            resp = await self._client.request(
                (target.method or "GET").upper(),
                target.url,
                headers=headers,
                content=content,
                timeout=timeout_seconds,
                follow_redirects=True,
            )
        except httpx.TimeoutException:
            return _timeout_result(started, timeout_seconds)
        except httpx.HTTPError as e:
            return _result(False, upside_down=target.upside_down, ping_ms=_elapsed_ms(started), message=_error_text(e))

        ping_ms = _elapsed_ms(started)
        status_ok = 200 <= resp.status_code < 400

        if target.type is TargetType.KEYWORD and target.keyword:
            if target.keyword not in (resp.text or ""):
                return _result(
                    False,
                    upside_down=target.upside_down,
                    ping_ms=ping_ms,
                    message=f'Keyword "{target.keyword}" not found in response',
                )

        if status_ok:
            message = f"HTTP {resp.status_code}"
        else:
            message = f"HTTP {resp.status_code} {resp.reason_phrase}".strip()
        return _result(status_ok, upside_down=target.upside_down, ping_ms=ping_ms, message=message)


class TcpProbe:
    async def probe(self, target: Target, timeout_seconds: float) -> ProbeResult:
        host = dns_probe.normalize_hostname(target.hostname)
        if not host or not target.port:
            raise ValueError("TCP target needs hostname and port")

        started = time.perf_counter()
        try:
            _reader, writer = await asyncio.wait_for(
                asyncio.open_connection(host, int(target.port)),
                timeout=timeout_seconds,
            )
        except asyncio.TimeoutError:
            return _timeout_result(started, timeout_seconds)
        except OSError as e:
            message = str(e).strip() or "Port is closed or unreachable"
            return _result(False, upside_down=target.upside_down, ping_ms=_elapsed_ms(started), message=message)

        ping_ms = _elapsed_ms(started)
        writer.close()
        try:
            await writer.wait_closed()
        except OSError:
            pass
        return _result(True, upside_down=target.upside_down, ping_ms=ping_ms, message="Port is open")


class ReachabilityProbe:
    """Lightweight HEAD request; anything below 500 means the host answered."""

    def __init__(self, client: httpx.AsyncClient, *, user_agent: str = DEFAULT_USER_AGENT) -> None:
        self._client = client
        self._user_agent = user_agent

    async def probe(self, target: Target, timeout_seconds: float) -> ProbeResult:
        address = target.hostname or target.url
        if not address:
            raise ValueError("Reachability target has no hostname")

        started = time.perf_counter()
        try:
            resp = await self._client.head(
                _with_scheme(address),
                headers={"User-Agent": self._user_agent},
                timeout=timeout_seconds,
                follow_redirects=True,
            )
        except httpx.TimeoutException:
            return _timeout_result(started, timeout_seconds)
        except httpx.HTTPError as e:
            return _result(False, upside_down=target.upside_down, ping_ms=_elapsed_ms(started), message=_error_text(e))

        ping_ms = _elapsed_ms(started)
        reachable = resp.status_code < 500
        message = f"Reachable ({ping_ms:.0f}ms)" if reachable else f"HTTP {resp.status_code} {resp.reason_phrase}".strip()
        return _result(reachable, upside_down=target.upside_down, ping_ms=ping_ms, message=message)


class DnsProbe:
    def __init__(self, resolvers: list[str] | None = None) -> None:
        self._resolvers = list(resolvers) if resolvers else list(dns_probe.DEFAULT_PUBLIC_RESOLVERS)

    async def probe(self, target: Target, timeout_seconds: float) -> ProbeResult:
        hostname = dns_probe.normalize_hostname(target.hostname or target.url)
        if not hostname:
            raise ValueError("DNS target has no hostname")

        started = time.perf_counter()
        try:
            records = await asyncio.to_thread(
                dns_probe._dns_query_sync,
                hostname=hostname,
                record_type="A",
                resolvers=self._resolvers,
                timeout_seconds=float(timeout_seconds),
            )
        except Exception as e:
            return _result(False, upside_down=target.upside_down, ping_ms=_elapsed_ms(started), message=_error_text(e))

        ping_ms = _elapsed_ms(started)
        if records:
            return _result(True, upside_down=target.upside_down, ping_ms=ping_ms, message=f"Resolved to {records[0]}")
        return _result(False, upside_down=target.upside_down, ping_ms=ping_ms, message="DNS resolution failed")


def build_probes(
    client: httpx.AsyncClient,
    *,
    resolvers: list[str] | None = None,
    user_agent: str = DEFAULT_USER_AGENT,
) -> dict[TargetType, Probe]:
    http = HttpProbe(client, user_agent=user_agent)
    return {
        TargetType.HTTP: http,
        TargetType.KEYWORD: http,
        TargetType.TCP: TcpProbe(),
        TargetType.REACHABILITY: ReachabilityProbe(client, user_agent=user_agent),
        TargetType.DNS: DnsProbe(resolvers),
    }


async def run_probe(probes: Mapping[TargetType, Probe], target: Target) -> ProbeResult:
    """
    Run the probe registered for the target's type within the target's timeout budget.

    Never raises (except for cancellation): every failure becomes a DOWN result.
    """
    probe = probes.get(target.type)
    if probe is None:
        return ProbeResult(raw_status=RawStatus.DOWN, ping_ms=None, message=f"Unsupported target type: {target.type.value}")

    timeout_seconds = target.timeout_seconds
    started = time.perf_counter()
    try:
        return await asyncio.wait_for(probe.probe(target, timeout_seconds), timeout=timeout_seconds)
    except asyncio.TimeoutError:
        return _timeout_result(started, timeout_seconds)
    except asyncio.CancelledError:
        raise
    except Exception as e:
        return ProbeResult(raw_status=RawStatus.DOWN, ping_ms=_elapsed_ms(started), message=_error_text(e))
