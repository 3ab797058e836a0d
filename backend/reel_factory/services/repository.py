"""
Persistence contract for the content pipeline.

Every public method opens its own session and commits before returning, so
each call is atomic on its own and callers can run concurrently (one item per
coroutine) without sharing an AsyncSession.
"""
from __future__ import annotations

import logging
from datetime import datetime, timezone
from typing import Any

import sqlalchemy as sa
from sqlalchemy import select, update, func
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from reel_factory.models import (
    Account,
    Content,
    ContentStatus,
    PlatformPost,
    PostStatus,
    ProcessingLog,
    ProcessingStatus,
    ReviewInteraction,
)
from reel_factory.services.status_machine import validate_transition

logger = logging.getLogger(__name__)


class ContentNotFound(LookupError):
    """Raised when a content id does not exist."""


class AccountNotFound(LookupError):
    """Raised when an account id or slug does not exist."""


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def as_utc(value: datetime | None) -> datetime | None:
    """Normalize DB datetimes (some drivers hand back naive UTC values)."""
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


class PipelineRepository:
    def __init__(self, session_factory: async_sessionmaker):
        self._session_factory = session_factory

    def _session(self) -> AsyncSession:
        return self._session_factory()

    # ── Content ──────────────────────────────────────────────

    async def create_content(self, account_id: str | None = None, **fields: Any) -> Content:
        async with self._session() as session:
            content = Content(account_id=account_id, status=ContentStatus.created.value, **fields)
            session.add(content)
            await session.commit()
            await session.refresh(content)
            logger.info(f"[repo] Content {content.id} created (account={account_id})")
            return content

    async def get_content(self, content_id: str) -> Content | None:
        async with self._session() as session:
            return await session.get(Content, content_id)

    async def require_content(self, content_id: str) -> Content:
        content = await self.get_content(content_id)
        if content is None:
            raise ContentNotFound(f"Content {content_id} not found")
        return content

    async def update_content(self, content_id: str, **fields: Any) -> Content:
        """Apply a partial update; a status change must follow the transition table."""
        async with self._session() as session:
            content = await session.get(Content, content_id)
            if content is None:
                raise ContentNotFound(f"Content {content_id} not found")
            if "status" in fields:
                fields["status"] = validate_transition(content.status, fields["status"]).value
            for key, value in fields.items():
                if not hasattr(Content, key):
                    raise AttributeError(f"Content has no field '{key}'")
                setattr(content, key, value)
            session.add(content)
            await session.commit()
            await session.refresh(content)
            return content

    async def force_status(self, content_id: str, status: ContentStatus, **fields: Any) -> Content:
        """Operator-only status write that bypasses the transition table (used by reopen)."""
        async with self._session() as session:
            content = await session.get(Content, content_id)
            if content is None:
                raise ContentNotFound(f"Content {content_id} not found")
            content.status = status.value
            for key, value in fields.items():
                setattr(content, key, value)
            session.add(content)
            await session.commit()
            await session.refresh(content)
            logger.warning(f"[repo] Content {content_id} status forced to {status.value}")
            return content

    async def record_review_decision(
        self,
        content_id: str,
        status: ContentStatus,
        *,
        reviewed_by: str,
        review_notes: str | None,
        reviewed_at: datetime,
    ) -> bool:
        """Conditional write: only an item still awaiting review can be decided.

        Returns False when another decision got there first.
        """
        validate_transition(ContentStatus.review_pending, status)
        async with self._session() as session:
            result = await session.execute(
                update(Content)
                .where(
                    Content.id == content_id,
                    Content.status == ContentStatus.review_pending.value,
                    Content.reviewed_at.is_(None),
                )
                .values(
                    status=status.value,
                    reviewed_by=reviewed_by,
                    review_notes=review_notes,
                    reviewed_at=reviewed_at,
                    updated_at=utcnow(),
                )
            )
            await session.commit()
            return result.rowcount == 1

    async def find_last_failed_content(self) -> str | None:
        async with self._session() as session:
            return await session.scalar(
                select(Content.id)
                .where(Content.status == ContentStatus.failed.value)
                .order_by(Content.created_at.desc())
                .limit(1)
            )

    async def list_contents_by_status(
        self, status: ContentStatus, *, account_id: str | None = None, limit: int = 50,
    ) -> list[Content]:
        async with self._session() as session:
            query = select(Content).where(Content.status == status.value)
            if account_id is not None:
                query = query.where(Content.account_id == account_id)
            result = await session.execute(query.order_by(Content.created_at.asc()).limit(limit))
            return list(result.scalars().all())

    # ── Accounts ─────────────────────────────────────────────

    async def create_account(self, slug: str, name: str, **fields: Any) -> Account:
        async with self._session() as session:
            account = Account(slug=slug, name=name, **fields)
            session.add(account)
            await session.commit()
            await session.refresh(account)
            logger.info(f"[repo] Account {account.id} created (slug={slug})")
            return account

    async def get_account_by_id(self, account_id: str) -> Account | None:
        async with self._session() as session:
            return await session.get(Account, account_id)

    async def get_account_by_slug(self, slug: str) -> Account | None:
        async with self._session() as session:
            return await session.scalar(select(Account).where(Account.slug == slug))

    async def list_accounts(self, *, active_only: bool = False) -> list[Account]:
        async with self._session() as session:
            query = select(Account).order_by(Account.name)
            if active_only:
                query = query.where(Account.is_active.is_(True))
            result = await session.execute(query)
            return list(result.scalars().all())

    async def list_active_accounts(self) -> list[Account]:
        return await self.list_accounts(active_only=True)

    async def update_account(self, account_id: str, **fields: Any) -> Account:
        if ("access_token" in fields) != ("token_expires_at" in fields):
            raise ValueError("access_token and token_expires_at must be updated together")
        async with self._session() as session:
            account = await session.get(Account, account_id)
            if account is None:
                raise AccountNotFound(f"Account {account_id} not found")
            for key, value in fields.items():
                if not hasattr(Account, key):
                    raise AttributeError(f"Account has no field '{key}'")
                setattr(account, key, value)
            session.add(account)
            await session.commit()
            await session.refresh(account)
            return account

    async def update_credential(self, account_id: str, access_token: str, expires_at: datetime) -> None:
        """Write the (token, expiry) pair in a single statement, last writer wins."""
        if expires_at is None:
            raise ValueError("credential expiry is required")
        async with self._session() as session:
            result = await session.execute(
                update(Account)
                .where(Account.id == account_id)
                .values(access_token=access_token, token_expires_at=expires_at, updated_at=utcnow())
            )
            if result.rowcount == 0:
                raise AccountNotFound(f"Account {account_id} not found")
            await session.commit()

    async def get_accounts_with_expiring_tokens(self, before: datetime) -> list[Account]:
        async with self._session() as session:
            result = await session.execute(
                select(Account).where(
                    Account.is_active.is_(True),
                    Account.access_token.is_not(None),
                    sa.or_(Account.token_expires_at.is_(None), Account.token_expires_at < before),
                )
            )
            return list(result.scalars().all())

    async def record_successful_post(self, account_id: str, posted_at: datetime | None = None) -> None:
        async with self._session() as session:
            await session.execute(
                update(Account)
                .where(Account.id == account_id)
                .values(last_post_at=posted_at or utcnow(), last_error=None, consecutive_failures=0)
            )
            await session.commit()

    async def record_failed_post(self, account_id: str, error: str) -> None:
        async with self._session() as session:
            await session.execute(
                update(Account)
                .where(Account.id == account_id)
                .values(last_error=error, consecutive_failures=Account.consecutive_failures + 1)
            )
            await session.commit()

    async def count_posts_since(self, account_id: str, since: datetime) -> int:
        async with self._session() as session:
            count = await session.scalar(
                select(func.count(PlatformPost.id)).where(
                    PlatformPost.account_id == account_id,
                    PlatformPost.status == PostStatus.success.value,
                    PlatformPost.created_at >= since,
                )
            )
            return int(count or 0)

    # ── Processing logs ──────────────────────────────────────

    async def append_log(
        self,
        content_id: str,
        layer: str,
        status: ProcessingStatus = ProcessingStatus.running,
        error: str | None = None,
        metadata: dict | None = None,
    ) -> ProcessingLog:
        """Add a new attempt row for (content, layer)."""
        async with self._session() as session:
            last_attempt = await session.scalar(
                select(func.max(ProcessingLog.attempt)).where(
                    ProcessingLog.content_id == content_id,
                    ProcessingLog.layer == layer,
                )
            )
            now = utcnow()
            log = ProcessingLog(
                content_id=content_id,
                layer=layer,
                attempt=(last_attempt or 0) + 1,
                status=status.value,
                started_at=now,
                completed_at=None if status == ProcessingStatus.running else now,
                error_message=error,
                metadata_json=metadata,
            )
            session.add(log)
            await session.commit()
            await session.refresh(log)
            return log

    async def finish_log(
        self,
        log_id: int,
        status: ProcessingStatus,
        error: str | None = None,
        metadata: dict | None = None,
    ) -> ProcessingLog:
        """Close a running attempt (the row is updated, never replaced)."""
        async with self._session() as session:
            log = await session.get(ProcessingLog, log_id)
            if log is None:
                raise LookupError(f"ProcessingLog {log_id} not found")
            log.status = status.value
            log.completed_at = utcnow()
            log.error_message = error
            if metadata is not None:
                log.metadata_json = metadata
            session.add(log)
            await session.commit()
            await session.refresh(log)
            return log

    async def latest_completed_log(self, content_id: str) -> ProcessingLog | None:
        async with self._session() as session:
            return await session.scalar(
                select(ProcessingLog)
                .where(
                    ProcessingLog.content_id == content_id,
                    ProcessingLog.status == ProcessingStatus.completed.value,
                )
                .order_by(ProcessingLog.completed_at.desc(), ProcessingLog.id.desc())
                .limit(1)
            )

    async def list_logs(self, content_id: str) -> list[ProcessingLog]:
        async with self._session() as session:
            result = await session.execute(
                select(ProcessingLog)
                .where(ProcessingLog.content_id == content_id)
                .order_by(ProcessingLog.started_at.asc(), ProcessingLog.id.asc())
            )
            return list(result.scalars().all())

    async def list_running_logs_older_than(self, cutoff: datetime) -> list[ProcessingLog]:
        async with self._session() as session:
            result = await session.execute(
                select(ProcessingLog).where(
                    ProcessingLog.status == ProcessingStatus.running.value,
                    ProcessingLog.started_at < cutoff,
                )
            )
            return list(result.scalars().all())

    # ── Platform posts ───────────────────────────────────────

    async def get_successful_post(self, content_id: str, platform: str) -> PlatformPost | None:
        async with self._session() as session:
            return await session.scalar(
                select(PlatformPost).where(
                    PlatformPost.content_id == content_id,
                    PlatformPost.platform == platform,
                    PlatformPost.status == PostStatus.success.value,
                )
            )

    async def insert_platform_post(
        self,
        content_id: str,
        platform: str,
        status: PostStatus,
        *,
        account_id: str | None = None,
        post_id: str | None = None,
        post_url: str | None = None,
        error: str | None = None,
    ) -> PlatformPost:
        """Duplicate-safe insert keyed by (content, platform).

        An existing success row is returned untouched. An existing failure row
        is overwritten by the new attempt's outcome.
        """
        async with self._session() as session:
            existing = await session.scalar(
                select(PlatformPost).where(
                    PlatformPost.content_id == content_id,
                    PlatformPost.platform == platform,
                )
            )
            if existing is not None and existing.status == PostStatus.success.value:
                logger.info(f"[repo] PlatformPost for content={content_id} platform={platform} already successful")
                return existing

            row = existing or PlatformPost(content_id=content_id, platform=platform)
            row.account_id = account_id
            row.status = status.value
            row.post_id = post_id
            row.post_url = post_url
            row.error_message = error
            session.add(row)
            try:
                await session.commit()
            except IntegrityError:
                # Lost an insert race on the unique key: the winner's row stands.
                await session.rollback()
                winner = await session.scalar(
                    select(PlatformPost).where(
                        PlatformPost.content_id == content_id,
                        PlatformPost.platform == platform,
                    )
                )
                if winner is None:
                    raise
                return winner
            await session.refresh(row)
            return row

    async def count_platform_posts(self, content_id: str, platform: str | None = None) -> int:
        async with self._session() as session:
            query = select(func.count(PlatformPost.id)).where(PlatformPost.content_id == content_id)
            if platform:
                query = query.where(PlatformPost.platform == platform)
            return int(await session.scalar(query) or 0)

    # ── Review interactions ──────────────────────────────────

    async def get_review_interaction(self, callback_query_id: str) -> ReviewInteraction | None:
        async with self._session() as session:
            return await session.scalar(
                select(ReviewInteraction).where(ReviewInteraction.callback_query_id == callback_query_id)
            )

    async def save_review_interaction(self, **fields: Any) -> bool:
        """Store a button press; False when the callback id was already recorded."""
        async with self._session() as session:
            session.add(ReviewInteraction(**fields))
            try:
                await session.commit()
            except IntegrityError:
                await session.rollback()
                return False
            return True
