from __future__ import annotations

import logging

from fastapi import APIRouter, HTTPException, status

from .deps import ServicesDep
from .schemas import (
    ContentRead,
    PipelineRunRead,
    ProcessingLogRead,
    PublishOutcomeRead,
    QueuedTaskRead,
    ResumePointRead,
)
from .services.repository import ContentNotFound
from .services.resume import ContentNotResumable
from .settings import get_settings

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/contents", tags=["contents"])


async def _require(services, content_id: str):
    content = await services.repo.get_content(content_id)
    if content is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Content not found")
    return content


@router.get("/last-failed", response_model=ContentRead)
async def last_failed(services: ServicesDep):
    content_id = await services.resume.find_last_failed_content()
    if content_id is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="No failed content")
    return await _require(services, content_id)


@router.post("/retry-last-failed", response_model=PipelineRunRead | QueuedTaskRead)
async def retry_last_failed(services: ServicesDep):
    content_id = await services.resume.find_last_failed_content()
    if content_id is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="No failed content")
    return await _resume(services, content_id)


@router.get("/{content_id}", response_model=ContentRead)
async def get_content(content_id: str, services: ServicesDep):
    return await _require(services, content_id)


@router.get("/{content_id}/logs", response_model=list[ProcessingLogRead])
async def get_logs(content_id: str, services: ServicesDep):
    await _require(services, content_id)
    return await services.repo.list_logs(content_id)


@router.get("/{content_id}/resume-point", response_model=ResumePointRead)
async def get_resume_point(content_id: str, services: ServicesDep):
    try:
        point = await services.resume.find_resume_point(content_id)
    except ContentNotFound:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Content not found")
    return point.to_dict()


@router.post("/{content_id}/resume", response_model=PipelineRunRead | QueuedTaskRead)
async def resume_content(content_id: str, services: ServicesDep):
    await _require(services, content_id)
    return await _resume(services, content_id)


@router.post("/{content_id}/publish", response_model=PublishOutcomeRead | QueuedTaskRead)
async def publish_content(content_id: str, services: ServicesDep):
    content = await _require(services, content_id)
    if not content.account_id:
        raise HTTPException(status_code=status.HTTP_422_UNPROCESSABLE_ENTITY, detail="Content has no account")

    if get_settings().celery_enabled:
        from .worker.tasks import publish_content as publish_task
        task = publish_task.delay(content_id)
        return {"queued": True, "task_id": task.id, "content_id": content_id}

    async with services.lock(content_id):
        outcome = await services.publisher.publish(content_id, content.account_id)
    return outcome.to_dict()


async def _resume(services, content_id: str) -> dict:
    if get_settings().celery_enabled:
        from .worker.tasks import resume_content as resume_task
        task = resume_task.delay(content_id)
        logger.info(f"[contents] Resume of {content_id} queued as {task.id}")
        return {"queued": True, "task_id": task.id, "content_id": content_id}

    try:
        async with services.lock(content_id):
            result = await services.pipeline.resume(content_id)
    except ContentNotResumable as exc:
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail=str(exc))
    return result.to_dict()
