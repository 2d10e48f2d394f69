from __future__ import annotations


DEFAULT_PUBLIC_RESOLVERS = ["8.8.8.8", "1.1.1.1"]


def _dns_query_sync(
    *,
    hostname: str,
    record_type: str,
    resolvers: list[str] | None,
    timeout_seconds: float,
) -> list[str]:
    # Lazy import: only DNS targets need dnspython.
    import dns.resolver  # type: ignore

    r = dns.resolver.Resolver(configure=not resolvers)
    if resolvers:
        r.nameservers = list(resolvers)
    r.timeout = max(0.5, float(timeout_seconds))
    r.lifetime = max(0.5, float(timeout_seconds))
    try:
        ans = r.resolve(hostname, record_type)
    except (dns.resolver.NoAnswer, dns.resolver.NXDOMAIN):
        # Empty answer; the probe decides whether that is a failure.
        return []
    out: list[str] = []
    for rr in ans:
        s = str(rr or "").strip()
        if s:
            out.append(s)
    return out


def normalize_hostname(value: str | None) -> str:
    s = str(value or "").strip().lower()
    if "://" in s:
        s = s.split("://", 1)[1]
    s = s.split("/", 1)[0]
    if s.count(":") == 1:
        s = s.split(":", 1)[0]
    return s.rstrip(".")
