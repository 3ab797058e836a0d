"""
Celery tasks for the content pipeline.

Each task runs its async counterpart with asyncio.run() over a fresh engine.
Content tasks hold the per-content Redis lock for their whole run.
Nothing here retries automatically: a failed stage leaves the content
`failed` and the operator decides whether to resume it.
"""
from __future__ import annotations

import asyncio
import logging
from contextlib import asynccontextmanager
from typing import AsyncIterator

from reel_factory.worker.celery_app import celery_app

logger = logging.getLogger(__name__)


def _get_async_db_url() -> str:
    from reel_factory.settings import get_settings
    return get_settings().async_database_url


@asynccontextmanager
async def _services() -> AsyncIterator:
    from sqlalchemy.ext.asyncio import create_async_engine, async_sessionmaker
    from reel_factory.services.factory import build_services

    engine = create_async_engine(_get_async_db_url(), echo=False)
    try:
        yield build_services(async_sessionmaker(engine, expire_on_commit=False))
    finally:
        await engine.dispose()


async def _run_content_async(content_id: str, *, resume: bool = False) -> dict:
    from reel_factory.services.content_lock import ContentLocked, content_lock
    from reel_factory.services.resume import ContentNotResumable

    async with _services() as services:
        try:
            async with content_lock(content_id):
                if resume:
                    result = await services.pipeline.resume(content_id)
                else:
                    result = await services.pipeline.run(content_id)
        except ContentLocked as e:
            logger.warning(f"[worker] {e}")
            return {"content_id": content_id, "error": "locked"}
        except ContentNotResumable as e:
            return {"content_id": content_id, "error": str(e)}
        logger.info(f"[worker] content={content_id} -> {result.status} ({result.stopped_reason})")
        return result.to_dict()


async def _start_for_account_async(account_id: str) -> dict:
    async with _services() as services:
        result = await services.pipeline.start_for_account(account_id)
        return result.to_dict()


async def _publish_content_async(content_id: str) -> dict:
    from reel_factory.services.content_lock import ContentLocked, content_lock

    async with _services() as services:
        content = await services.repo.require_content(content_id)
        if not content.account_id:
            return {"content_id": content_id, "error": "content has no account"}
        try:
            async with content_lock(content_id):
                outcome = await services.publisher.publish(content_id, content.account_id)
        except ContentLocked as e:
            logger.warning(f"[worker] {e}")
            return {"content_id": content_id, "error": "locked"}
        return {"content_id": content_id, **outcome.to_dict()}


async def _refresh_tokens_async() -> dict:
    async with _services() as services:
        return await services.tokens.refresh_expiring_tokens()


@celery_app.task(bind=True, name="pipeline.run_content", queue="pipeline")
def run_content(self, content_id: str) -> dict:
    """Run the remaining layers of one content item."""
    logger.info(f"[worker] Starting content {content_id} (celery_id={self.request.id})")
    return asyncio.run(_run_content_async(content_id))


@celery_app.task(bind=True, name="pipeline.resume_content", queue="pipeline")
def resume_content(self, content_id: str) -> dict:
    """Operator resume: reopen a failed item and continue it."""
    logger.info(f"[worker] Resuming content {content_id} (celery_id={self.request.id})")
    return asyncio.run(_run_content_async(content_id, resume=True))


@celery_app.task(bind=True, name="pipeline.start_for_account", queue="pipeline")
def start_for_account(self, account_id: str) -> dict:
    logger.info(f"[worker] New content for account {account_id} (celery_id={self.request.id})")
    return asyncio.run(_start_for_account_async(account_id))


@celery_app.task(bind=True, name="pipeline.publish_content", queue="pipeline")
def publish_content(self, content_id: str) -> dict:
    logger.info(f"[worker] Publishing content {content_id} (celery_id={self.request.id})")
    return asyncio.run(_publish_content_async(content_id))


@celery_app.task(name="tokens.refresh_expiring", queue="pipeline")
def refresh_expiring_tokens() -> dict:
    return asyncio.run(_refresh_tokens_async())
