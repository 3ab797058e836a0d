"""
Human review through a Telegram chat.

Outbound: a review message with Approve / Reject buttons (callback data
`approve:<content_id>` / `reject:<content_id>`).
Inbound: the bot webhook delivers button presses; each press is recorded once
(by callback query id) and routed to on_decision().

Review is a one-shot gate: the first decision wins and any later decision for
the same item is refused with DecisionAlreadyRecorded.
"""
from __future__ import annotations

import html
import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Callable

from reel_factory.integrations.telegram_api import TelegramAPIError, TelegramBotClient
from reel_factory.models import Content, ContentStatus, ReviewDecision
from reel_factory.services.repository import PipelineRepository, utcnow
from reel_factory.services.status_machine import InvalidStatusTransition
from reel_factory.settings import get_settings

logger = logging.getLogger(__name__)

DECIDED_STATUSES = frozenset({ContentStatus.approved.value, ContentStatus.rejected.value, ContentStatus.posted.value})


class DecisionAlreadyRecorded(Exception):
    """A review decision already exists for this content item."""

    def __init__(self, content_id: str, status: str):
        super().__init__(f"Review decision already recorded for content {content_id} ({status})")
        self.content_id = content_id
        self.status = status


class ReviewChannelUnavailable(Exception):
    """The review chat is not configured or the message could not be delivered."""


@dataclass
class ReviewReceipt:
    message_id: int | None
    chat_id: str


def parse_callback_data(data: str) -> tuple[str, str]:
    """`approve:<id>` -> ("approve", "<id>")."""
    action, sep, content_id = (data or "").partition(":")
    if not sep or not content_id:
        raise ValueError(f"Invalid callback data format: {data!r}")
    if action not in ("approve", "reject", "edit"):
        raise ValueError(f"Unknown action: {action}")
    return action, content_id


class ReviewGateway:
    def __init__(
        self,
        repo: PipelineRepository,
        bot: TelegramBotClient | None = None,
        *,
        chat_id: str | None = None,
        authorized_user_ids: list[int] | None = None,
        clock: Callable[[], datetime] = utcnow,
    ):
        settings = get_settings()
        self.repo = repo
        if bot is None and settings.telegram_bot_token:
            bot = TelegramBotClient(settings.telegram_bot_token)
        self.bot = bot
        self.chat_id = chat_id or settings.telegram_chat_id
        self.authorized_user_ids = (
            authorized_user_ids if authorized_user_ids is not None else settings.telegram_authorized_user_ids
        )
        self.clock = clock

    # ── Outbound ─────────────────────────────────────────────

    def format_review_message(self, content: Content, video_ref: str) -> str:
        idea = content.idea_data or {}
        lines = [
            "🎬 <b>New content ready for review</b>",
            "",
            f"📋 <b>Content ID:</b> <code>{content.id}</code>",
        ]
        if idea.get("idea"):
            lines += ["", "💡 <b>Idea:</b>", html.escape(str(idea["idea"]))]
        if content.caption:
            lines += ["", "📝 <b>Caption:</b>", html.escape(content.caption)]
        lines += ["", f"🎥 <b>Video:</b> {html.escape(video_ref)}"]
        return "\n".join(lines)

    @staticmethod
    def build_keyboard(content_id: str) -> dict:
        return {
            "inline_keyboard": [
                [
                    {"text": "✅ Approve", "callback_data": f"approve:{content_id}"},
                    {"text": "❌ Reject", "callback_data": f"reject:{content_id}"},
                ]
            ]
        }

    async def send_review_request(self, content: Content, video_ref: str) -> ReviewReceipt:
        if self.bot is None or not self.chat_id:
            raise ReviewChannelUnavailable("Telegram review channel not configured (TELEGRAM_BOT_TOKEN / TELEGRAM_CHAT_ID)")
        try:
            result = await self.bot.send_message(
                self.chat_id,
                self.format_review_message(content, video_ref),
                reply_markup=self.build_keyboard(content.id),
            )
        except TelegramAPIError as exc:
            raise ReviewChannelUnavailable(str(exc)) from exc

        message_id = result.get("message_id")
        logger.info(f"[review] Review request sent for content={content.id} (message_id={message_id})")
        return ReviewReceipt(message_id=message_id, chat_id=str(self.chat_id))

    # ── Inbound ──────────────────────────────────────────────

    async def on_decision(
        self,
        content_id: str,
        decision: ReviewDecision | str,
        reviewer: str,
        notes: str | None = None,
    ) -> Content:
        decision = ReviewDecision(decision)
        content = await self.repo.require_content(content_id)
        if content.status in DECIDED_STATUSES or content.reviewed_at is not None:
            raise DecisionAlreadyRecorded(content_id, content.status)
        if content.status != ContentStatus.review_pending.value:
            raise InvalidStatusTransition(
                content.status,
                ContentStatus.approved.value if decision == ReviewDecision.approve else ContentStatus.rejected.value,
            )

        new_status = ContentStatus.approved if decision == ReviewDecision.approve else ContentStatus.rejected
        recorded = await self.repo.record_review_decision(
            content_id,
            new_status,
            reviewed_by=reviewer,
            review_notes=notes,
            reviewed_at=self.clock(),
        )
        if not recorded:
            current = await self.repo.require_content(content_id)
            raise DecisionAlreadyRecorded(content_id, current.status)

        logger.info(f"[review] content={content_id} {new_status.value} by {reviewer}")
        return await self.repo.require_content(content_id)

    async def handle_update(self, update: dict[str, Any]) -> dict[str, Any]:
        """Process one Telegram webhook update."""
        callback = update.get("callback_query")
        if not callback:
            return {"ok": True, "handled": False}

        query_id = str(callback.get("id"))
        from_user = callback.get("from") or {}
        user_id = from_user.get("id")
        reviewer = from_user.get("username") or from_user.get("first_name") or str(user_id)
        message = callback.get("message") or {}

        if self.authorized_user_ids and user_id not in self.authorized_user_ids:
            logger.warning(f"[review] Unauthorized callback from user_id={user_id}")
            await self._answer(query_id, "❌ Unauthorized")
            return {"ok": False, "handled": True, "error": "unauthorized"}

        try:
            action, content_id = parse_callback_data(callback.get("data", ""))
        except ValueError as exc:
            logger.warning(f"[review] {exc}")
            await self._answer(query_id, "❌ Error processing action")
            return {"ok": False, "handled": True, "error": str(exc)}

        if action == "edit":
            await self._answer(query_id, "✏️ Caption editing is not supported, approve or reject as-is")
            return {"ok": True, "handled": True, "action": action, "content_id": content_id}

        fresh = await self.repo.save_review_interaction(
            callback_query_id=query_id,
            content_id=content_id,
            action=action,
            user_id=user_id,
            username=reviewer,
            message_id=message.get("message_id"),
            chat_id=(message.get("chat") or {}).get("id"),
        )
        if not fresh:
            logger.warning(f"[review] Duplicate callback query {query_id}, ignoring")
            return {"ok": True, "handled": True, "duplicate": True, "content_id": content_id}

        notes = "Approved via Telegram" if action == "approve" else "Rejected via Telegram"
        try:
            content = await self.on_decision(content_id, action, reviewer, notes)
        except DecisionAlreadyRecorded as exc:
            await self._answer(query_id, f"Already decided: {exc.status}")
            return {"ok": False, "handled": True, "error": "decision_already_recorded", "content_id": content_id}
        except (LookupError, InvalidStatusTransition) as exc:
            logger.warning(f"[review] Cannot apply {action} to {content_id}: {exc}")
            await self._answer(query_id, "❌ Error processing action")
            return {"ok": False, "handled": True, "error": str(exc), "content_id": content_id}

        await self._answer(query_id, "✅ Approved" if action == "approve" else "❌ Rejected")
        if message.get("message_id") and (message.get("chat") or {}).get("id") is not None:
            await self._mark_message(message, content.status, reviewer)
        return {"ok": True, "handled": True, "action": action, "content_id": content_id, "status": content.status}

    async def _answer(self, query_id: str, text: str) -> None:
        if self.bot is None:
            return
        try:
            await self.bot.answer_callback_query(query_id, text)
        except TelegramAPIError as exc:
            # Expired or already answered queries come back as 400.
            logger.debug(f"[review] answerCallbackQuery failed: {exc}")

    async def _mark_message(self, message: dict, status: str, reviewer: str) -> None:
        if self.bot is None:
            return
        label = "✅ APPROVED" if status == ContentStatus.approved.value else "❌ REJECTED"
        text = f"{html.escape(message.get('text') or '')}\n\n<b>{label}</b> by {html.escape(reviewer)}"
        try:
            await self.bot.edit_message_text(message["chat"]["id"], message["message_id"], text)
        except TelegramAPIError as exc:
            logger.warning(f"[review] Failed to edit review message: {exc}")
