"""
Operator alerts: Telegram messages with throttle.

Env:
  TELEGRAM_BOT_TOKEN, TELEGRAM_CHAT_ID

Throttle: same (title) not sent more than once per 15 minutes.
Alerts never raise: a broken alert channel must not fail a pipeline stage.
"""
from __future__ import annotations

import html
import logging
import time
from typing import Any

from reel_factory.integrations.graph_api import sanitize
from reel_factory.integrations.telegram_api import TelegramAPIError, TelegramBotClient
from reel_factory.settings import get_settings

logger = logging.getLogger(__name__)

_throttle: dict[str, float] = {}
THROTTLE_SEC = 15 * 60


def _should_send(key: str) -> bool:
    now = time.monotonic()
    last = _throttle.get(key)
    if last is not None and now - last < THROTTLE_SEC:
        return False
    _throttle[key] = now
    return True


async def _send_telegram(text: str) -> bool:
    settings = get_settings()
    if not settings.telegram_bot_token or not settings.telegram_chat_id:
        logger.debug("[notify] Telegram not configured, skipping")
        return False
    client = TelegramBotClient(settings.telegram_bot_token)
    try:
        await client.send_message(settings.telegram_chat_id, text)
        return True
    except TelegramAPIError as e:
        logger.warning(f"[notify] Telegram send failed: {e}")
    return False


def _format(icon: str, title: str, payload: Any) -> str:
    body = f"{icon} <b>{html.escape(title)}</b>"
    if payload:
        body += f"\n<pre>{html.escape(sanitize(str(payload)) or '')[:500]}</pre>"
    return body


async def notify_error(title: str, payload: Any = None) -> bool:
    """Send error-level alert (throttled by title)."""
    if not _should_send(f"error:{title}"):
        logger.debug(f"[notify] throttled error: {title}")
        return False
    return await _send_telegram(_format("🔴", title, payload))


async def notify_warn(title: str, payload: Any = None) -> bool:
    """Send warning-level alert (throttled by title)."""
    if not _should_send(f"warn:{title}"):
        logger.debug(f"[notify] throttled warn: {title}")
        return False
    return await _send_telegram(_format("🟡", title, payload))


async def notify_content_failed(content_id: str, layer: str, error: str | None) -> bool:
    return await notify_error(f"Content {content_id} failed at {layer}", error)


async def notify_content_posted(content_id: str, account_slug: str, post_url: str | None) -> bool:
    if not _should_send(f"posted:{content_id}"):
        return False
    return await _send_telegram(_format("🟢", f"Content {content_id} posted to {account_slug}", post_url))


async def notify_credential_failure(account_slug: str, error: str | None) -> bool:
    return await notify_error(f"Token refresh failed for {account_slug}", error)
