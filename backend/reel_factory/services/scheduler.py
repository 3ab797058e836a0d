"""
Scheduler Service

Periodic jobs:
- token_refresh: renew account tokens inside the expiry margin
- watchdog: fail layer attempts stuck in `running`
- auto_distribute: publish the oldest approved item of each account whose
  posting slot is open

Single-leader election via Postgres advisory locks:
- Only the instance that acquires the lock executes the tick
- Other instances silently skip
- Controlled by SCHEDULER_ENABLED env (default: true)
"""
from __future__ import annotations

import logging
from datetime import datetime
from typing import Any

from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.interval import IntervalTrigger
from sqlalchemy import text
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from reel_factory.models import ContentStatus
from reel_factory.services.content_lock import ContentLocked
from reel_factory.services.factory import PipelineServices, build_services
from reel_factory.services.pipeline import is_account_due, local_day_start
from reel_factory.services.repository import utcnow
from reel_factory.services.watchdog_service import run_watchdog
from reel_factory.settings import get_settings

logger = logging.getLogger("scheduler")

# Advisory lock keys (arbitrary int64, unique per job type)
LOCK_TOKEN_REFRESH = 910_001
LOCK_WATCHDOG = 910_002
LOCK_AUTO_DISTRIBUTE = 910_003


async def distribute_due_content(
    services: PipelineServices, now: datetime | None = None, *, lock=None,
) -> dict[str, Any]:
    """Publish one approved item for every account whose posting slot is open.

    Accounts are independent: an error on one is logged and the loop moves on.
    """
    now = now or utcnow()
    lock = lock or services.lock
    published: list[dict] = []
    skipped = 0
    errors: list[dict] = []

    for account in await services.repo.list_active_accounts():
        try:
            posts_today = await services.repo.count_posts_since(account.id, local_day_start(account, now))
            if not is_account_due(account, now, posts_today):
                skipped += 1
                continue
            queue = await services.repo.list_contents_by_status(ContentStatus.approved, account_id=account.id, limit=1)
            if not queue:
                logger.info(f"[auto_distribute] {account.slug} is due but has no approved content")
                continue
            try:
                async with lock(queue[0].id):
                    outcome = await services.publisher.publish(queue[0].id, account)
            except ContentLocked:
                logger.info(f"[auto_distribute] content={queue[0].id} is being processed elsewhere, skipping")
                continue
            published.append({"account": account.slug, "content_id": queue[0].id, **outcome.to_dict()})
        except Exception as e:
            logger.exception(f"[auto_distribute] {account.slug} failed: {e}")
            skipped += 1
            errors.append({"account": account.slug, "error": str(e)})

    return {"published": published, "skipped_accounts": skipped, "errors": errors}


class SchedulerService:
    """Runs the periodic jobs.

    Uses Postgres pg_try_advisory_lock on each tick so that only
    one backend instance (the leader) executes the job while
    other instances skip silently.
    """

    _instance: "SchedulerService | None" = None

    def __init__(self):
        self.scheduler = AsyncIOScheduler()
        self._session_factory: async_sessionmaker | None = None
        self._services: PipelineServices | None = None
        self._running = False

    @classmethod
    def get_instance(cls) -> "SchedulerService":
        if cls._instance is None:
            cls._instance = cls()
        return cls._instance

    def configure(self, session_factory: async_sessionmaker, services: PipelineServices | None = None):
        self._session_factory = session_factory
        self._services = services or build_services(session_factory)

    async def _try_advisory_lock(self, session: AsyncSession, lock_key: int) -> bool:
        """Try to acquire a Postgres session-level advisory lock (non-blocking).

        The lock is automatically released when the session/connection closes.
        """
        result = await session.execute(text(f"SELECT pg_try_advisory_lock({lock_key})"))
        return bool(result.scalar())

    async def _release_advisory_lock(self, session: AsyncSession, lock_key: int):
        await session.execute(text(f"SELECT pg_advisory_unlock({lock_key})"))

    def start(self):
        """Start the scheduler (respects SCHEDULER_ENABLED env)."""
        settings = get_settings()
        if not settings.scheduler_enabled:
            logger.info("Scheduler DISABLED by SCHEDULER_ENABLED=false, skipping start")
            return
        if self._running:
            return
        if self._services is None:
            raise RuntimeError("SchedulerService.configure() must be called before start()")

        self.scheduler.add_job(
            self._run_token_refresh,
            IntervalTrigger(hours=settings.token_refresh_interval_hours),
            id="token_refresh",
            name="Refresh expiring account tokens",
            replace_existing=True,
        )

        if settings.watchdog_enabled:
            self.scheduler.add_job(
                self._run_watchdog,
                IntervalTrigger(minutes=settings.watchdog_interval_minutes),
                id="watchdog",
                name="Fail stuck layer attempts",
                replace_existing=True,
            )

        if settings.distribution_enabled:
            self.scheduler.add_job(
                self._run_auto_distribute,
                IntervalTrigger(minutes=settings.auto_distribute_interval_minutes),
                id="auto_distribute",
                name="Publish approved content at posting times",
                replace_existing=True,
            )

        self.scheduler.start()
        self._running = True
        logger.info("Scheduler started (single-leader mode via advisory locks)")

    def stop(self):
        if not self._running:
            return
        self.scheduler.shutdown(wait=False)
        self._running = False
        logger.info("Scheduler stopped")

    def is_running(self) -> bool:
        return self._running

    async def _locked(self, lock_key: int, job_name: str, job):
        async with self._session_factory() as session:
            acquired = await self._try_advisory_lock(session, lock_key)
            if not acquired:
                logger.debug(f"[{job_name}] Advisory lock not acquired, another instance is leader, skipping tick")
                return None
            try:
                logger.info(f"[{job_name}] LEADER, running")
                return await job()
            finally:
                await self._release_advisory_lock(session, lock_key)

    async def _run_token_refresh(self):
        result = await self._locked(LOCK_TOKEN_REFRESH, "token_refresh", self._services.tokens.refresh_expiring_tokens)
        if result:
            logger.info(f"[token_refresh] refreshed={len(result['refreshed'])} failed={len(result['failed'])}")
        return result

    async def _run_watchdog(self):
        async def job():
            return await run_watchdog(self._services.repo)
        return await self._locked(LOCK_WATCHDOG, "watchdog", job)

    async def _run_auto_distribute(self):
        async def job():
            return await distribute_due_content(self._services)
        result = await self._locked(LOCK_AUTO_DISTRIBUTE, "auto_distribute", job)
        if result:
            logger.info(f"[auto_distribute] published={len(result['published'])}")
        return result

    def get_jobs(self) -> list[dict]:
        jobs = []
        for job in self.scheduler.get_jobs():
            next_run = job.next_run_time
            jobs.append({
                "id": job.id,
                "name": job.name,
                "next_run": next_run.isoformat() if next_run else None,
                "trigger": str(job.trigger),
            })
        return jobs


# Global instance
scheduler_service = SchedulerService.get_instance()
