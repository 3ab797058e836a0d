"""
Executes one pipeline layer for one content item.

    running log -> work() -> artifacts + status advance -> completed log
                          or -> failed log + content failed -> StageExecutionFailed

The runner never retries; retry policy belongs to the operator/scheduler.
"""
from __future__ import annotations

import logging
import time
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable

from reel_factory.models import Content, ContentStatus, PipelineLayer, ProcessingStatus
from reel_factory.services.notify import notify_content_failed
from reel_factory.services.repository import PipelineRepository
from reel_factory.services.status_machine import LAYER_TARGET_STATUS, validate_transition

logger = logging.getLogger(__name__)

# Content columns a layer is allowed to fill in.
ARTIFACT_FIELDS = frozenset({
    "idea_data",
    "caption",
    "prompt_data",
    "raw_video_paths",
    "final_video_path",
    "storage_url",
    "container_id",
    "review_message_id",
    "review_chat_id",
})


@dataclass
class LayerResult:
    """Output of a layer's external work."""
    artifacts: dict[str, Any] = field(default_factory=dict)
    metadata: dict[str, Any] = field(default_factory=dict)


LayerWork = Callable[[], Awaitable[LayerResult]]


class StageExecutionFailed(Exception):
    """A layer's work raised; the content has been moved to `failed`."""

    def __init__(self, content_id: str, layer: str, cause: BaseException | str):
        message = str(cause) or type(cause).__name__
        super().__init__(f"Layer '{layer}' failed for content {content_id}: {message}")
        self.content_id = content_id
        self.layer = layer
        self.error = message


class LayerRunner:
    def __init__(self, repo: PipelineRepository):
        self.repo = repo

    async def run(self, content_id: str, layer: PipelineLayer | str, work: LayerWork) -> Content:
        layer = PipelineLayer(layer)
        target = LAYER_TARGET_STATUS[layer]

        content = await self.repo.require_content(content_id)
        # Out-of-order stage: refuse before touching anything.
        validate_transition(content.status, target)

        log = await self.repo.append_log(content_id, layer.value, ProcessingStatus.running)
        logger.info(f"[layer:{layer.value}] content={content_id} attempt={log.attempt} started")
        started = time.monotonic()

        try:
            result = await work()
            if result is None:
                result = LayerResult()
            unknown = set(result.artifacts) - ARTIFACT_FIELDS
            if unknown:
                raise ValueError(f"unknown artifact fields: {sorted(unknown)}")
            content = await self.repo.update_content(content_id, status=target, **result.artifacts)
        except Exception as exc:
            error = str(exc) or type(exc).__name__
            await self._record_failure(content_id, layer, log.id, error)
            raise StageExecutionFailed(content_id, layer.value, exc) from exc

        duration_ms = int((time.monotonic() - started) * 1000)
        await self.repo.finish_log(
            log.id,
            ProcessingStatus.completed,
            metadata={**result.metadata, "duration_ms": duration_ms},
        )
        logger.info(f"[layer:{layer.value}] content={content_id} completed in {duration_ms}ms -> {target.value}")
        return content

    async def _record_failure(self, content_id: str, layer: PipelineLayer, log_id: int, error: str) -> None:
        logger.error(f"[layer:{layer.value}] content={content_id} failed: {error}")
        await self.repo.finish_log(log_id, ProcessingStatus.failed, error=error)
        await self.repo.update_content(content_id, status=ContentStatus.failed, error_message=error)
        await notify_content_failed(content_id, layer.value, error)
