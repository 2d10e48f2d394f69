from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Any


DEFAULT_TIMEOUT_SECONDS = 48.0


class TargetType(str, Enum):
    HTTP = "http"
    KEYWORD = "keyword"
    TCP = "tcp"
    REACHABILITY = "reachability"
    DNS = "dns"


_TYPE_ALIASES = {
    "http": TargetType.HTTP,
    "https": TargetType.HTTP,
    "keyword": TargetType.KEYWORD,
    "tcp": TargetType.TCP,
    "port": TargetType.TCP,
    "reachability": TargetType.REACHABILITY,
    "ping": TargetType.REACHABILITY,
    "dns": TargetType.DNS,
}


def parse_target_type(value: Any) -> TargetType:
    if isinstance(value, TargetType):
        return value
    s = str(value or "").strip().lower()
    if s not in _TYPE_ALIASES:
        raise ValueError(f"Unsupported target type: {value!r}")
    return _TYPE_ALIASES[s]


@dataclass(frozen=True)
class Target:
    id: str
    name: str
    type: TargetType
    owner_id: str
    url: str | None = None
    hostname: str | None = None
    port: int | None = None
    method: str = "GET"
    headers: dict[str, str] = field(default_factory=dict)
    body: str | None = None
    keyword: str | None = None
    interval: int = 60
    timeout: float = DEFAULT_TIMEOUT_SECONDS
    max_retries: int = 0
    active: bool = True
    upside_down: bool = False

    @property
    def timeout_seconds(self) -> float:
        t = float(self.timeout or 0)
        return t if t > 0 else DEFAULT_TIMEOUT_SECONDS

    @property
    def display_address(self) -> str | None:
        if self.url:
            return self.url
        if self.hostname and self.port:
            return f"{self.hostname}:{self.port}"
        return self.hostname
