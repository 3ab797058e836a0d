"""
Content pipeline driver.

run() asks the resume controller where an item stopped and walks the
remaining layers in fixed order:

    idea -> prompt_engineering -> video_generation -> composition -> review || -> distribution

`||` is the human gate: the driver stops once the review request is out and
picks the item up again only after it has been approved.

Generation work (idea, prompts, video, composition+upload) is done by
external collaborators registered in StageHandlers; review and distribution
are owned here.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone, tzinfo
from typing import Awaitable, Callable
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from reel_factory.models import Account, Content, ContentStatus, PipelineLayer
from reel_factory.services.layer_runner import LayerResult, LayerRunner, StageExecutionFailed
from reel_factory.services.publishing import PublishingCoordinator
from reel_factory.services.repository import AccountNotFound, PipelineRepository, as_utc
from reel_factory.services.resume import ContentNotResumable, ResumeController
from reel_factory.services.review_gateway import ReviewGateway
from reel_factory.settings import get_settings

logger = logging.getLogger(__name__)

StageHandler = Callable[[Content, "Account | None"], Awaitable[LayerResult]]

POSTING_WINDOW = timedelta(minutes=30)


class StageNotConfigured(Exception):
    """No handler registered for a generation layer."""


@dataclass
class StageHandlers:
    idea: StageHandler | None = None
    prompt_engineering: StageHandler | None = None
    video_generation: StageHandler | None = None
    composition: StageHandler | None = None

    def for_layer(self, layer: PipelineLayer) -> StageHandler:
        handler = getattr(self, layer.value, None)
        if handler is None:
            raise StageNotConfigured(f"No handler registered for layer '{layer.value}'")
        return handler


@dataclass
class PipelineRunResult:
    content_id: str
    status: str
    completed_layers: list[str] = field(default_factory=list)
    stopped_reason: str | None = None
    error: str | None = None
    post_url: str | None = None

    def to_dict(self) -> dict:
        return {
            "content_id": self.content_id,
            "status": self.status,
            "completed_layers": self.completed_layers,
            "stopped_reason": self.stopped_reason,
            "error": self.error,
            "post_url": self.post_url,
        }


class ContentPipeline:
    def __init__(
        self,
        repo: PipelineRepository,
        handlers: StageHandlers,
        review: ReviewGateway,
        publisher: PublishingCoordinator,
        *,
        runner: LayerRunner | None = None,
        resume: ResumeController | None = None,
    ):
        self.repo = repo
        self.handlers = handlers
        self.review = review
        self.publisher = publisher
        self.runner = runner or LayerRunner(repo)
        self.resume_controller = resume or ResumeController(repo)

    async def start_for_account(self, account_id: str) -> PipelineRunResult:
        account = await self.repo.get_account_by_id(account_id)
        if account is None:
            raise AccountNotFound(f"Account {account_id} not found")
        if not account.is_active:
            raise ValueError(f"Account {account.slug} is not active")
        content = await self.repo.create_content(account_id=account.id)
        logger.info(f"[pipeline] Started content={content.id} for account={account.slug}")
        return await self.run(content.id)

    async def run(self, content_id: str) -> PipelineRunResult:
        result = PipelineRunResult(content_id=content_id, status="")
        while True:
            content = await self.repo.require_content(content_id)
            result.status = content.status

            if content.status in (ContentStatus.posted.value, ContentStatus.rejected.value):
                result.stopped_reason = "terminal"
                return result
            if content.status == ContentStatus.failed.value:
                raise ContentNotResumable(
                    f"Content {content_id} is failed ({content.error_message}); reopen it before running"
                )

            point = await self.resume_controller.find_resume_point(content_id)
            if point.next_layer is None:
                result.stopped_reason = "complete"
                return result

            layer = PipelineLayer(point.next_layer)
            account = await self.repo.get_account_by_id(content.account_id) if content.account_id else None

            if layer == PipelineLayer.distribution:
                return await self._distribute(content, account, result)

            try:
                await self.runner.run(content_id, layer, self._work_for(layer, content, account))
            except StageExecutionFailed as exc:
                result.status = ContentStatus.failed.value
                result.error = exc.error
                result.stopped_reason = f"failed:{layer.value}"
                return result
            result.completed_layers.append(layer.value)

    def _work_for(self, layer: PipelineLayer, content: Content, account: Account | None):
        if layer == PipelineLayer.review:
            async def send_review() -> LayerResult:
                video_ref = content.storage_url or content.final_video_path or "(no video reference)"
                receipt = await self.review.send_review_request(content, video_ref)
                return LayerResult(
                    artifacts={"review_message_id": receipt.message_id, "review_chat_id": receipt.chat_id},
                    metadata={"chat_id": receipt.chat_id},
                )
            return send_review

        async def generate() -> LayerResult:
            handler = self.handlers.for_layer(layer)
            return await handler(content, account)
        return generate

    async def _distribute(
        self, content: Content, account: Account | None, result: PipelineRunResult,
    ) -> PipelineRunResult:
        if content.status == ContentStatus.review_pending.value:
            result.stopped_reason = "awaiting_review"
            return result
        if content.status != ContentStatus.approved.value:
            result.stopped_reason = f"not_approved:{content.status}"
            return result
        if not get_settings().distribution_enabled:
            result.stopped_reason = "distribution_disabled"
            return result
        if account is None:
            result.stopped_reason = "no_account"
            return result

        outcome = await self.publisher.publish(content, account)
        result.status = outcome.status
        result.error = outcome.error
        result.post_url = outcome.post_url
        if outcome.success:
            result.completed_layers.append(PipelineLayer.distribution.value)
            result.stopped_reason = "complete"
        else:
            result.stopped_reason = "failed:distribution"
        return result

    async def resume(self, content_id: str) -> PipelineRunResult:
        """Operator: reopen a failed item (if needed) and continue it."""
        content = await self.repo.require_content(content_id)
        if content.status == ContentStatus.failed.value:
            await self.resume_controller.reopen(content_id)
        return await self.run(content_id)

    async def retry_last_failed(self) -> PipelineRunResult | None:
        content_id = await self.resume_controller.find_last_failed_content()
        if content_id is None:
            logger.info("[pipeline] No failed content to retry")
            return None
        logger.info(f"[pipeline] Retrying last failed content={content_id}")
        return await self.resume(content_id)


# ── Account scheduling ───────────────────────────────────────

def _parse_hhmm(value: str) -> tuple[int, int] | None:
    try:
        hours, minutes = (int(p) for p in str(value).split(":", 1))
    except ValueError:
        return None
    if not (0 <= hours < 24 and 0 <= minutes < 60):
        return None
    return hours, minutes


def schedule_timezone(account: Account) -> tzinfo | None:
    """Timezone of the account's posting schedule; None when the name is unknown."""
    tz_name = (account.posting_schedule or {}).get("timezone")
    if not tz_name:
        return timezone.utc
    try:
        return ZoneInfo(tz_name)
    except (ZoneInfoNotFoundError, ValueError):
        logger.warning(f"[schedule] {getattr(account, 'slug', '?')}: unknown timezone '{tz_name}'")
        return None


def local_day_start(account: Account, now: datetime) -> datetime:
    """Midnight of the account's local day containing `now`, as UTC."""
    tz = schedule_timezone(account) or timezone.utc
    local_now = as_utc(now).astimezone(tz)
    return local_now.replace(hour=0, minute=0, second=0, microsecond=0).astimezone(timezone.utc)


def is_account_due(
    account: Account,
    now: datetime,
    posts_today: int,
    *,
    max_consecutive_failures: int | None = None,
) -> bool:
    """Whether an account should get a new post at `now`.

    posting_schedule keys: posting_times ["HH:MM", ...], active_days (0=Sunday),
    posts_per_day, timezone (IANA name, default UTC). Each slot takes at most
    one post: an account that already posted since the slot opened is not due.
    """
    if not account.is_active:
        return False
    limit = max_consecutive_failures if max_consecutive_failures is not None else get_settings().max_consecutive_failures
    if (account.consecutive_failures or 0) >= limit:
        return False

    schedule = account.posting_schedule or {}
    times = [t for t in (_parse_hhmm(v) for v in schedule.get("posting_times") or []) if t]
    if not times:
        return False
    if posts_today >= int(schedule.get("posts_per_day") or 1):
        return False

    tz = schedule_timezone(account)
    if tz is None:
        return False
    local_now = as_utc(now).astimezone(tz)
    active_days = schedule.get("active_days")
    if active_days:
        sunday_based = (local_now.weekday() + 1) % 7
        if sunday_based not in {int(d) for d in active_days}:
            return False

    last_post_at = as_utc(account.last_post_at)
    for hours, minutes in times:
        slot = local_now.replace(hour=hours, minute=minutes, second=0, microsecond=0)
        if slot <= local_now < slot + POSTING_WINDOW:
            return last_post_at is None or last_post_at < slot
    return False
