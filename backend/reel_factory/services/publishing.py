"""
Reels publishing for one approved content item on one account.

Flow:
    duplicate check -> approved check -> valid token -> container (created
    once, id persisted) -> bounded status poll -> media_publish -> record

A successful PlatformPost row for (content, platform) makes every later
publish call a no-op that reports the stored post. Every failure after the
approved check moves the content to `failed` with the platform's message.
"""
from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass, field
from datetime import datetime
from typing import Awaitable, Callable

from reel_factory.integrations.graph_api import GraphAPIClient, GraphAPIError, sanitize
from reel_factory.models import (
    Account,
    Content,
    ContainerStatus,
    ContentStatus,
    PipelineLayer,
    PostStatus,
    ProcessingStatus,
)
from reel_factory.services.notify import notify_content_failed, notify_content_posted, notify_error
from reel_factory.services.repository import PipelineRepository, utcnow
from reel_factory.services.token_manager import CredentialRefreshFailed, TokenManager
from reel_factory.settings import get_settings

logger = logging.getLogger(__name__)

MAX_CAPTION_LENGTH = 2200


# ── Errors ───────────────────────────────────────────────────

class ContainerNotReady(Exception):
    """Container still IN_PROGRESS; handled inside the poll loop."""


class ContainerStatusUnexpected(Exception):
    def __init__(self, container_id: str, status_code: str, detail: str | None = None):
        message = f"Container {container_id} status {status_code or 'UNKNOWN'}"
        if detail:
            message += f": {detail}"
        super().__init__(message)
        self.container_id = container_id
        self.status_code = status_code


class ContainerPollTimeout(Exception):
    def __init__(self, container_id: str, attempts: int):
        super().__init__(f"Container {container_id} not ready after {attempts} status checks")
        self.container_id = container_id
        self.attempts = attempts


# ── Result ───────────────────────────────────────────────────

@dataclass
class PublishOutcome:
    """Result of a publish attempt."""
    status: str
    post_id: str | None = None
    post_url: str | None = None
    error: str | None = None
    already_posted: bool = False

    @property
    def success(self) -> bool:
        return self.status == ContentStatus.posted.value

    def to_dict(self) -> dict:
        return {
            "status": self.status,
            "post_id": self.post_id,
            "post_url": self.post_url,
            "error": self.error,
            "already_posted": self.already_posted,
        }


@dataclass
class ContainerPoll:
    """State of one bounded wait on a media container."""
    container_id: str
    max_attempts: int
    deadline: float
    attempts: int = 0
    history: list[str] = field(default_factory=list)

    def exhausted(self, now: float) -> bool:
        return self.attempts >= self.max_attempts or now >= self.deadline


# ── Captions ─────────────────────────────────────────────────

def _content_type_for(account: Account, content: Content) -> dict | None:
    types = [t for t in (account.content_types or []) if isinstance(t, dict)]
    if not types:
        return None
    niche = (content.idea_data or {}).get("niche")
    for entry in types:
        if niche and entry.get("niche") == niche:
            return entry
    return types[0]


def build_caption(content: Content, account: Account) -> str:
    """Content caption followed by the account's hashtags for the content type."""
    base = (content.caption or "").strip()
    entry = _content_type_for(account, content) or {}
    tags = []
    for tag in entry.get("hashtags") or []:
        tag = str(tag).strip()
        if not tag:
            continue
        if not tag.startswith("#"):
            tag = f"#{tag}"
        if tag.lower() not in base.lower() and tag not in tags:
            tags.append(tag)

    caption = f"{base}\n\n{' '.join(tags)}" if tags and base else (base or " ".join(tags))
    return caption[:MAX_CAPTION_LENGTH]


# ── Coordinator ──────────────────────────────────────────────

class PublishingCoordinator:
    platform = "instagram"

    def __init__(
        self,
        repo: PipelineRepository,
        tokens: TokenManager,
        graph: GraphAPIClient | None = None,
        *,
        poll_interval: float | None = None,
        max_poll_attempts: int | None = None,
        poll_timeout: float | None = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
        monotonic: Callable[[], float] = time.monotonic,
        clock: Callable[[], datetime] = utcnow,
    ):
        settings = get_settings()
        self.repo = repo
        self.tokens = tokens
        self.graph = graph or tokens.graph
        self.poll_interval = poll_interval if poll_interval is not None else settings.publish_poll_interval_sec
        self.max_poll_attempts = max_poll_attempts or settings.publish_poll_max_attempts
        self.poll_timeout = poll_timeout if poll_timeout is not None else settings.publish_poll_timeout_sec
        self.sleep = sleep
        self.monotonic = monotonic
        self.clock = clock

    async def publish(self, content: Content | str, account: Account | str) -> PublishOutcome:
        content_id = content if isinstance(content, str) else content.id
        content = await self.repo.require_content(content_id)
        if isinstance(account, str):
            account_id = account
            account = await self.repo.get_account_by_id(account_id)
            if account is None:
                return PublishOutcome(status=ContentStatus.failed.value, error=f"Account {account_id} not found")

        existing = await self.repo.get_successful_post(content.id, self.platform)
        if existing is not None:
            logger.info(f"[publish] content={content.id} already posted as {existing.post_id}, skipping")
            if content.status == ContentStatus.approved.value:
                # Success row written but the status update was lost.
                await self.repo.update_content(
                    content.id, status=ContentStatus.posted, posted_at=existing.created_at or self.clock(),
                )
            return PublishOutcome(
                status=ContentStatus.posted.value,
                post_id=existing.post_id,
                post_url=existing.post_url,
                already_posted=True,
            )

        if content.status != ContentStatus.approved.value:
            logger.warning(f"[publish] content={content.id} is '{content.status}', not approved")
            return PublishOutcome(
                status=ContentStatus.failed.value,
                error=f"Content must be approved before publishing (status={content.status})",
            )
        if not account.business_account_id:
            return await self._fail(content, account, None, "Account has no business_account_id")
        if not content.storage_url:
            return await self._fail(content, account, None, "Content has no public video URL (storage_url)")

        log = await self.repo.append_log(content.id, PipelineLayer.distribution.value, ProcessingStatus.running)
        logger.info(f"[publish] content={content.id} -> {account.slug} (attempt={log.attempt})")

        try:
            token = await self.tokens.get_valid_token(account.id)
            container_id = content.container_id
            if not container_id:
                container_id = await self.graph.create_reel_container(
                    account.business_account_id, content.storage_url, build_caption(content, account), token,
                )
                await self.repo.update_content(content.id, container_id=container_id)
                logger.info(f"[publish] content={content.id} container {container_id} created")
            else:
                logger.info(f"[publish] content={content.id} reusing container {container_id}")

            poll = await self.wait_for_container(container_id, token)
            media_id = await self.graph.publish_container(account.business_account_id, container_id, token)
            post_url = await self._permalink(media_id, token)
        except (GraphAPIError, CredentialRefreshFailed, ContainerStatusUnexpected, ContainerPollTimeout) as exc:
            return await self._fail(content, account, log.id, str(exc))

        # The reel is live; the success row is written before any other bookkeeping.
        posted_at = self.clock()
        try:
            await self.repo.insert_platform_post(
                content.id,
                self.platform,
                PostStatus.success,
                account_id=account.id,
                post_id=media_id,
                post_url=post_url,
            )
            await self.repo.update_content(content.id, status=ContentStatus.posted, posted_at=posted_at)
            await self.repo.finish_log(
                log.id,
                ProcessingStatus.completed,
                metadata={
                    "account_id": account.id,
                    "container_id": container_id,
                    "post_id": media_id,
                    "poll_attempts": poll.attempts,
                },
            )
            await self.repo.record_successful_post(account.id, posted_at)
        except Exception as exc:
            logger.exception(f"[publish] content={content.id} is live as {media_id} but bookkeeping failed")
            await notify_error(
                f"Content {content.id} posted as {media_id}, bookkeeping failed",
                f"{type(exc).__name__}: {exc}",
            )
            return PublishOutcome(
                status=ContentStatus.posted.value,
                post_id=media_id,
                post_url=post_url,
                error=sanitize(f"bookkeeping failed: {exc}"),
            )
        logger.info(f"[publish] content={content.id} posted to {account.slug}: {post_url or media_id}")
        await notify_content_posted(content.id, account.slug, post_url)
        return PublishOutcome(status=ContentStatus.posted.value, post_id=media_id, post_url=post_url)

    async def wait_for_container(self, container_id: str, token: str) -> ContainerPoll:
        poll = ContainerPoll(
            container_id=container_id,
            max_attempts=self.max_poll_attempts,
            deadline=self.monotonic() + self.poll_timeout,
        )
        while not poll.exhausted(self.monotonic()):
            poll.attempts += 1
            try:
                await self._check_container(poll, token)
                return poll
            except ContainerNotReady:
                logger.debug(f"[publish] container {container_id} in progress (check {poll.attempts})")
                await self.sleep(self.poll_interval)
        raise ContainerPollTimeout(container_id, poll.attempts)

    async def _check_container(self, poll: ContainerPoll, token: str) -> None:
        status_code, detail = await self.graph.get_container_status(poll.container_id, token)
        poll.history.append(status_code)
        if status_code == ContainerStatus.finished.value:
            return
        if status_code == ContainerStatus.in_progress.value:
            raise ContainerNotReady(poll.container_id)
        raise ContainerStatusUnexpected(poll.container_id, status_code, detail)

    async def _permalink(self, media_id: str, token: str) -> str | None:
        try:
            return await self.graph.get_permalink(media_id, token)
        except GraphAPIError as exc:
            # The post is live; a missing permalink is not a publish failure.
            logger.warning(f"[publish] permalink lookup for {media_id} failed: {exc}")
            return None

    async def _fail(self, content: Content, account: Account, log_id: int | None, error: str) -> PublishOutcome:
        error = sanitize(error) or "publish failed"
        logger.error(f"[publish] content={content.id} account={account.slug} failed: {error}")
        await self.repo.insert_platform_post(
            content.id, self.platform, PostStatus.failure, account_id=account.id, error=error,
        )
        await self.repo.update_content(content.id, status=ContentStatus.failed, error_message=error)
        if log_id is None:
            await self.repo.append_log(
                content.id, PipelineLayer.distribution.value, ProcessingStatus.failed, error=error,
            )
        else:
            await self.repo.finish_log(log_id, ProcessingStatus.failed, error=error)
        await self.repo.record_failed_post(account.id, error)
        await notify_content_failed(content.id, PipelineLayer.distribution.value, error)
        return PublishOutcome(status=ContentStatus.failed.value, error=error)
