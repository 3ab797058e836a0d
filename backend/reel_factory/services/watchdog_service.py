"""
Watchdog: finds layer attempts stuck in `running` and fails them.

Stuck criteria:
- ProcessingLog.status == "running" and started_at < now - STUCK_LAYER_MINUTES

The attempt is closed as failed and its content moved to `failed`, so the
operator resume path can pick it up.
"""
from __future__ import annotations

import logging
from datetime import datetime, timedelta
from typing import Any

from reel_factory.models import ContentStatus, ProcessingStatus
from reel_factory.services.notify import notify_warn
from reel_factory.services.repository import PipelineRepository, as_utc, utcnow
from reel_factory.services.status_machine import is_terminal
from reel_factory.settings import get_settings

logger = logging.getLogger(__name__)


async def run_watchdog(
    repo: PipelineRepository, *, dry_run: bool = False, now: datetime | None = None,
) -> dict[str, Any]:
    """Find stuck layer attempts and mark them failed.

    Returns a report dict.
    """
    settings = get_settings()
    now = now or utcnow()
    cutoff = now - timedelta(minutes=settings.stuck_layer_minutes)

    stuck = await repo.list_running_logs_older_than(cutoff)
    report_items: list[dict] = []

    for log in stuck:
        age_minutes = (now - as_utc(log.started_at)).total_seconds() / 60
        error_msg = f"watchdog: layer {log.layer} running > {settings.stuck_layer_minutes}m (age={age_minutes:.0f}m)"
        item = {
            "log_id": log.id,
            "content_id": log.content_id,
            "layer": log.layer,
            "attempt": log.attempt,
            "age_minutes": round(age_minutes),
            "error_message": error_msg,
        }

        if dry_run:
            item["action"] = "would_mark_failed"
            report_items.append(item)
            continue

        await repo.finish_log(log.id, ProcessingStatus.failed, error=error_msg)
        content = await repo.get_content(log.content_id)
        if content is not None and not is_terminal(content.status):
            await repo.update_content(content.id, status=ContentStatus.failed, error_message=error_msg)
            item["content_status"] = ContentStatus.failed.value
        item["action"] = "marked_failed"
        report_items.append(item)

    if not dry_run and report_items:
        summary = ", ".join(f"{it['content_id'][:8]}({it['layer']} {it['age_minutes']}m)" for it in report_items[:10])
        await notify_warn(f"Watchdog: {len(report_items)} stuck layers", summary)

    if report_items:
        logger.warning(f"[watchdog] {len(report_items)} stuck layer attempts (dry_run={dry_run})")
    else:
        logger.debug("[watchdog] No stuck layer attempts")

    return {
        "dry_run": dry_run,
        "stuck_count": len(report_items),
        "items": report_items,
        "checked_at": now.isoformat(),
    }
