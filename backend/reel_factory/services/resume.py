"""
Pipeline resume: where did a content item stop, and what runs next.

The latest *completed* ProcessingLog entry is the only source of truth for
progress. Artifacts on the Content row are never used to infer a stage since
they may come from a partial or stale run.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass

from reel_factory.models import Content, ContentStatus, PipelineLayer
from reel_factory.services.repository import PipelineRepository
from reel_factory.services.status_machine import next_layer, reopen_status

logger = logging.getLogger(__name__)


class ContentNotResumable(Exception):
    """Raised when an operator asks to reopen content that is not `failed`."""


@dataclass
class ResumePoint:
    content_id: str
    status: str
    last_completed_layer: str | None
    next_layer: str | None

    def to_dict(self) -> dict:
        return {
            "content_id": self.content_id,
            "status": self.status,
            "last_completed_layer": self.last_completed_layer,
            "next_layer": self.next_layer,
        }


class ResumeController:
    def __init__(self, repo: PipelineRepository):
        self.repo = repo

    async def find_resume_point(self, content_id: str) -> ResumePoint:
        content = await self.repo.require_content(content_id)
        log = await self.repo.latest_completed_log(content_id)
        last = log.layer if log else None
        nxt = next_layer(last)
        return ResumePoint(
            content_id=content_id,
            status=content.status,
            last_completed_layer=last,
            next_layer=nxt.value if nxt else None,
        )

    async def find_last_failed_content(self) -> str | None:
        return await self.repo.find_last_failed_content()

    async def reopen(self, content_id: str) -> Content:
        """Operator action: put a failed item back at the status of its last completed layer."""
        point = await self.find_resume_point(content_id)
        if point.status != ContentStatus.failed.value:
            raise ContentNotResumable(f"Content {content_id} is '{point.status}', only failed content can be reopened")

        restored = reopen_status(point.last_completed_layer)
        logger.info(
            f"[resume] Reopening content={content_id} at {restored.value} "
            f"(last_completed={point.last_completed_layer}, next={point.next_layer})"
        )
        fields: dict = {"error_message": None}
        if point.next_layer == PipelineLayer.distribution.value:
            # A container that failed processing cannot be published; start a fresh one.
            fields["container_id"] = None
        return await self.repo.force_status(content_id, restored, **fields)
