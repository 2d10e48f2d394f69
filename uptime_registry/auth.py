from __future__ import annotations

import base64
import hashlib
import hmac
import json
import time
from typing import Any

from fastapi import Depends, HTTPException, Request

from uptime_registry.settings import RegistrySettings


SIGNATURE_ISSUER = "Upstash"


def _auth_header_token(req: Request) -> str:
    raw = req.headers.get("authorization") or ""
    if not raw:
        return ""
    parts = raw.split(None, 1)
    if len(parts) != 2:
        return ""
    scheme, rest = parts[0].strip().lower(), parts[1].strip()
    if scheme != "bearer":
        return ""
    return rest


def get_settings(req: Request) -> RegistrySettings:
    settings: Any = getattr(req.app.state, "settings", None)
    if not isinstance(settings, RegistrySettings):
        raise RuntimeError("Registry settings not configured")
    return settings


def verify_cron_bearer(req: Request, settings: RegistrySettings) -> bool:
    token = _auth_header_token(req)
    if not token or not settings.cron_secret:
        return False
    return hmac.compare_digest(token.encode("utf-8"), settings.cron_secret.encode("utf-8"))


def require_admin(req: Request, settings: RegistrySettings = Depends(get_settings)) -> None:
    token = _auth_header_token(req)
    if not token:
        raise HTTPException(status_code=401, detail="missing_bearer_token")
    if not settings.admin_token:
        raise HTTPException(status_code=503, detail="admin_token_not_configured")
    if not hmac.compare_digest(token.strip().encode("utf-8"), settings.admin_token.strip().encode("utf-8")):
        raise HTTPException(status_code=403, detail="invalid_admin_token")


def _b64url_decode(segment: str) -> bytes:
    padded = segment + "=" * (-len(segment) % 4)
    return base64.urlsafe_b64decode(padded.encode("ascii"))


def _b64url_encode(data: bytes) -> str:
    return base64.urlsafe_b64encode(data).rstrip(b"=").decode("ascii")


def body_digest(body: bytes) -> str:
    return _b64url_encode(hashlib.sha256(body).digest())


def _verify_with_key(token: str, key: str, body: bytes, *, now_ts: float, leeway_seconds: float) -> bool:
    parts = token.split(".")
    if len(parts) != 3:
        return False
    header_b64, payload_b64, sig_b64 = parts
    try:
        header = json.loads(_b64url_decode(header_b64))
        claims = json.loads(_b64url_decode(payload_b64))
        signature = _b64url_decode(sig_b64)
    except (ValueError, UnicodeDecodeError):
        return False
    if not isinstance(header, dict) or not isinstance(claims, dict):
        return False
    if str(header.get("alg") or "") != "HS256":
        return False

    expected = hmac.new(key.encode("utf-8"), f"{header_b64}.{payload_b64}".encode("ascii"), hashlib.sha256).digest()
    if not hmac.compare_digest(signature, expected):
        return False

    if claims.get("iss") != SIGNATURE_ISSUER:
        return False
    try:
        exp = float(claims["exp"])
    except (KeyError, TypeError, ValueError):
        return False
    if now_ts > exp + leeway_seconds:
        return False
    nbf = claims.get("nbf")
    if nbf is not None:
        try:
            if now_ts + leeway_seconds < float(nbf):
                return False
        except (TypeError, ValueError):
            return False

    claimed = str(claims.get("body") or "").rstrip("=")
    return hmac.compare_digest(claimed.encode("utf-8"), body_digest(body).encode("ascii"))


def verify_qstash_signature(
    settings: RegistrySettings,
    signature: str | None,
    body: bytes,
    *,
    now_ts: float | None = None,
    leeway_seconds: float = 5.0,
) -> bool:
    """
    Check an Upstash-Signature JWT against the current signing key, falling back to the
    next key during rotation.
    """
    token = (signature or "").strip()
    if not token:
        return False
    now = float(now_ts) if now_ts is not None else time.time()
    for key in (settings.qstash_current_signing_key, settings.qstash_next_signing_key):
        if key and _verify_with_key(token, key, body, now_ts=now, leeway_seconds=leeway_seconds):
            return True
    return False
