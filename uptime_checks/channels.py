from __future__ import annotations

from dataclasses import asdict, dataclass
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Mapping

import httpx

from uptime_checks.telegram import TelegramConfig, escape_markdown_v2, send_telegram_message


PUSHOVER_API_URL = "https://api.pushover.net/1/messages.json"
DEFAULT_SEND_TIMEOUT_SECONDS = 15.0


class ChannelType(str, Enum):
    TELEGRAM = "telegram"
    DISCORD = "discord"
    SLACK = "slack"
    TEAMS = "teams"
    WEBHOOK = "webhook"
    PUSHOVER = "pushover"
    EMAIL = "email"


@dataclass(frozen=True)
class NotificationPayload:
    title: str
    message: str
    monitor_name: str | None = None
    monitor_url: str | None = None
    status: str | None = None  # up|down|degraded
    timestamp: str | None = None

    def to_json(self) -> dict[str, Any]:
        return {k: v for k, v in asdict(self).items() if v is not None}


@dataclass(frozen=True)
class ChannelResult:
    success: bool
    error: str | None = None


def _now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


def _status_emoji(status: str | None) -> str:
    if status == "up":
        return "✅"
    if status == "down":
        return "🔴"
    return "⚠️"


def _error_text(exc: BaseException) -> str:
    text = str(exc or "").strip()
    return text or type(exc).__name__


def _require(config: Mapping[str, Any], *keys: str) -> list[str]:
    values: list[str] = []
    for key in keys:
        value = str(config.get(key) or "").strip()
        if not value:
            raise ValueError(f"missing config value: {key}")
        values.append(value)
    return values


def build_telegram_text(payload: NotificationPayload) -> str:
    text = f"{_status_emoji(payload.status)} *{escape_markdown_v2(payload.title)}*\n\n{escape_markdown_v2(payload.message)}"
    if payload.monitor_name:
        text += f"\n\n📍 *Monitor:* {escape_markdown_v2(payload.monitor_name)}"
    if payload.monitor_url:
        text += f"\n🔗 *URL:* {escape_markdown_v2(payload.monitor_url)}"
    if payload.timestamp:
        text += f"\n🕐 *Time:* {escape_markdown_v2(payload.timestamp)}"
    return text


async def send_telegram(
    client: httpx.AsyncClient, config: Mapping[str, Any], payload: NotificationPayload
) -> ChannelResult:
    bot_token, chat_id = _require(config, "bot_token", "chat_id")
    ok, data = await send_telegram_message(
        client,
        TelegramConfig(bot_token=bot_token, chat_id=chat_id),
        build_telegram_text(payload),
        timeout_seconds=DEFAULT_SEND_TIMEOUT_SECONDS,
    )
    if ok:
        return ChannelResult(success=True)
    return ChannelResult(
        success=False,
        error=str(data.get("description") or data.get("error") or "Failed to send Telegram message"),
    )


def _color_for(status: str | None, *, up: Any, down: Any, other: Any) -> Any:
    if status == "up":
        return up
    if status == "down":
        return down
    return other


def build_discord_body(payload: NotificationPayload) -> dict[str, Any]:
    fields = []
    if payload.monitor_name:
        fields.append({"name": "Monitor", "value": payload.monitor_name, "inline": True})
    if payload.monitor_url:
        fields.append({"name": "URL", "value": payload.monitor_url, "inline": True})
    return {
        "embeds": [
            {
                "title": payload.title,
                "description": payload.message,
                "color": _color_for(payload.status, up=0x00FF00, down=0xFF0000, other=0xFFFF00),
                "fields": fields,
                "timestamp": payload.timestamp or _now_iso(),
            }
        ]
    }


def build_slack_body(payload: NotificationPayload) -> dict[str, Any]:
    fields = []
    if payload.monitor_name:
        fields.append({"title": "Monitor", "value": payload.monitor_name, "short": True})
    if payload.monitor_url:
        fields.append({"title": "URL", "value": payload.monitor_url, "short": True})
    ts = datetime.now(timezone.utc).timestamp()
    if payload.timestamp:
        try:
            ts = datetime.fromisoformat(payload.timestamp.replace("Z", "+00:00")).timestamp()
        except ValueError:
            pass
    return {
        "attachments": [
            {
                "color": _color_for(payload.status, up="good", down="danger", other="warning"),
                "title": payload.title,
                "text": payload.message,
                "fields": fields,
                "ts": ts,
            }
        ]
    }


def build_teams_body(payload: NotificationPayload) -> dict[str, Any]:
    facts = []
    if payload.monitor_name:
        facts.append({"name": "Monitor", "value": payload.monitor_name})
    if payload.monitor_url:
        facts.append({"name": "URL", "value": payload.monitor_url})
    if payload.timestamp:
        facts.append({"name": "Time", "value": payload.timestamp})
    return {
        "@type": "MessageCard",
        "@context": "http://schema.org/extensions",
        "themeColor": _color_for(payload.status, up="00FF00", down="FF0000", other="FFFF00"),
        "summary": payload.title,
        "sections": [
            {
                "activityTitle": payload.title,
                "activitySubtitle": payload.message,
                "facts": facts,
                "markdown": True,
            }
        ],
    }


async def _post_json(
    client: httpx.AsyncClient,
    url: str,
    body: dict[str, Any],
    *,
    label: str,
    method: str = "POST",
    headers: Mapping[str, str] | None = None,
) -> ChannelResult:
    merged = {"Content-Type": "application/json"}
    merged.update({str(k): str(v) for k, v in (headers or {}).items()})
    try:
        resp = await client.request(method, url, json=body, headers=merged, timeout=DEFAULT_SEND_TIMEOUT_SECONDS)
    except httpx.HTTPError as e:
        return ChannelResult(success=False, error=_error_text(e))
    if not resp.is_success:
        return ChannelResult(success=False, error=f"{label} error: {resp.status_code}")
    return ChannelResult(success=True)


async def send_discord(client: httpx.AsyncClient, config: Mapping[str, Any], payload: NotificationPayload) -> ChannelResult:
    (url,) = _require(config, "webhook_url")
    return await _post_json(client, url, build_discord_body(payload), label="Discord API")


async def send_slack(client: httpx.AsyncClient, config: Mapping[str, Any], payload: NotificationPayload) -> ChannelResult:
    (url,) = _require(config, "webhook_url")
    return await _post_json(client, url, build_slack_body(payload), label="Slack API")


async def send_teams(client: httpx.AsyncClient, config: Mapping[str, Any], payload: NotificationPayload) -> ChannelResult:
    (url,) = _require(config, "webhook_url")
    return await _post_json(client, url, build_teams_body(payload), label="Teams API")


async def send_webhook(client: httpx.AsyncClient, config: Mapping[str, Any], payload: NotificationPayload) -> ChannelResult:
    (url,) = _require(config, "url")
    method = str(config.get("method") or "POST").strip().upper() or "POST"
    headers = config.get("headers") if isinstance(config.get("headers"), dict) else {}
    return await _post_json(client, url, payload.to_json(), label="Webhook", method=method, headers=headers)


async def send_pushover(client: httpx.AsyncClient, config: Mapping[str, Any], payload: NotificationPayload) -> ChannelResult:
    user_key, token = _require(config, "user_key", "token")
    form: dict[str, str] = {
        "user": user_key,
        "token": token,
        "title": payload.title,
        "message": payload.message,
    }
    if config.get("priority"):
        form["priority"] = str(config["priority"])
    if config.get("sound"):
        form["sound"] = str(config["sound"])
    if payload.monitor_url:
        form["url"] = payload.monitor_url
    if payload.monitor_name:
        form["url_title"] = payload.monitor_name
    if payload.timestamp:
        try:
            form["timestamp"] = str(int(datetime.fromisoformat(payload.timestamp.replace("Z", "+00:00")).timestamp()))
        except ValueError:
            pass

    try:
        resp = await client.post(PUSHOVER_API_URL, data=form, timeout=DEFAULT_SEND_TIMEOUT_SECONDS)
    except httpx.HTTPError as e:
        return ChannelResult(success=False, error=_error_text(e))
    try:
        data = resp.json()
    except ValueError:
        data = {}
    if not resp.is_success or not isinstance(data, dict) or data.get("status") != 1:
        errors = data.get("errors") if isinstance(data, dict) else None
        if isinstance(errors, list) and errors:
            return ChannelResult(success=False, error=", ".join(str(e) for e in errors))
        return ChannelResult(success=False, error=f"Pushover API error: {resp.reason_phrase or resp.status_code}")
    return ChannelResult(success=True)


async def send_email(client: httpx.AsyncClient, config: Mapping[str, Any], payload: NotificationPayload) -> ChannelResult:
    return ChannelResult(success=False, error="Email notifications not yet implemented")


_SENDERS = {
    ChannelType.TELEGRAM: send_telegram,
    ChannelType.DISCORD: send_discord,
    ChannelType.SLACK: send_slack,
    ChannelType.TEAMS: send_teams,
    ChannelType.WEBHOOK: send_webhook,
    ChannelType.PUSHOVER: send_pushover,
    ChannelType.EMAIL: send_email,
}


async def send_notification(
    client: httpx.AsyncClient,
    channel_type: str,
    config: Mapping[str, Any] | None,
    payload: NotificationPayload,
) -> ChannelResult:
    """Send one payload to one channel. Never raises; failures come back as ChannelResult."""
    try:
        kind = ChannelType(str(channel_type or "").strip().lower())
    except ValueError:
        return ChannelResult(success=False, error=f"Unknown notification type: {channel_type}")

    try:
        return await _SENDERS[kind](client, config or {}, payload)
    except ValueError as e:
        return ChannelResult(success=False, error=str(e))
    except httpx.HTTPError as e:
        return ChannelResult(success=False, error=_error_text(e))
