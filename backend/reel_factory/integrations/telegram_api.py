"""
Minimal Telegram Bot API client (sendMessage / editMessageText / answerCallbackQuery).
"""
from __future__ import annotations

import logging
from typing import Any

import httpx

from reel_factory.integrations.graph_api import sanitize

logger = logging.getLogger(__name__)

API_URL = "https://api.telegram.org"


class TelegramAPIError(Exception):
    """Telegram returned ok=false or the request failed."""


class TelegramBotClient:
    def __init__(
        self,
        bot_token: str,
        *,
        timeout: float = 10,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        self.bot_token = bot_token
        self.timeout = timeout
        self._transport = transport

    async def _call(self, method: str, payload: dict[str, Any]) -> dict[str, Any]:
        url = f"{API_URL}/bot{self.bot_token}/{method}"
        try:
            async with httpx.AsyncClient(timeout=self.timeout, transport=self._transport) as client:
                resp = await client.post(url, json=payload)
        except httpx.HTTPError as exc:
            raise TelegramAPIError(sanitize(f"Telegram {method} failed: {exc}").replace(self.bot_token, "***")) from exc

        try:
            data = resp.json()
        except ValueError:
            data = {}
        if resp.status_code != 200 or not data.get("ok", False):
            description = data.get("description") or resp.text[:200]
            raise TelegramAPIError(f"Telegram {method} error {resp.status_code}: {description}")
        return data.get("result") or {}

    async def send_message(
        self,
        chat_id: str | int,
        text: str,
        *,
        parse_mode: str = "HTML",
        reply_markup: dict | None = None,
    ) -> dict[str, Any]:
        payload: dict[str, Any] = {
            "chat_id": chat_id,
            "text": text[:4000],
            "parse_mode": parse_mode,
            "disable_web_page_preview": True,
        }
        if reply_markup:
            payload["reply_markup"] = reply_markup
        return await self._call("sendMessage", payload)

    async def edit_message_text(self, chat_id: str | int, message_id: int, text: str, *, parse_mode: str = "HTML") -> None:
        await self._call(
            "editMessageText",
            {"chat_id": chat_id, "message_id": message_id, "text": text[:4000], "parse_mode": parse_mode},
        )

    async def answer_callback_query(self, callback_query_id: str, text: str | None = None) -> None:
        payload: dict[str, Any] = {"callback_query_id": callback_query_id}
        if text:
            payload["text"] = text
        await self._call("answerCallbackQuery", payload)
