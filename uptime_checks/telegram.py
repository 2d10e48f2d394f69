from __future__ import annotations

import re
from dataclasses import dataclass

import httpx


@dataclass(frozen=True)
class TelegramConfig:
    bot_token: str
    chat_id: str


TELEGRAM_API_BASE = "https://api.telegram.org"

_MARKDOWN_V2_SPECIAL_RE = re.compile(r"([_*\[\]()~`>#+\-=|{}.!\\])")


def escape_markdown_v2(text: str) -> str:
    return _MARKDOWN_V2_SPECIAL_RE.sub(r"\\\1", text or "")


async def send_telegram_message(
    client: httpx.AsyncClient,
    config: TelegramConfig,
    text: str,
    *,
    parse_mode: str | None = "MarkdownV2",
    timeout_seconds: float = 15.0,
) -> tuple[bool, dict]:
    url = f"{TELEGRAM_API_BASE}/bot{config.bot_token}/sendMessage"
    payload: dict = {"chat_id": config.chat_id, "text": text, "disable_web_page_preview": True}
    if parse_mode:
        payload["parse_mode"] = parse_mode
    try:
        resp = await client.post(url, json=payload, timeout=timeout_seconds)
        data = resp.json()
    except Exception as e:
        msg = f"{type(e).__name__}: {e}"
        if config.bot_token:
            msg = msg.replace(config.bot_token, "<redacted>")
        return False, {"ok": False, "error": msg}
    if not isinstance(data, dict):
        return False, {"ok": False, "error": f"Unexpected Telegram response (HTTP {resp.status_code})"}
    return bool(resp.is_success and data.get("ok")), data
