from __future__ import annotations

from datetime import datetime
from typing import Any

from pydantic import BaseModel, field_validator

from .models import ReviewDecision


class ContentRead(BaseModel):
    id: str
    account_id: str | None = None
    status: str
    idea_data: dict | None = None
    caption: str | None = None
    prompt_data: dict | None = None
    raw_video_paths: list | None = None
    final_video_path: str | None = None
    storage_url: str | None = None
    container_id: str | None = None
    review_message_id: int | None = None
    reviewed_at: datetime | None = None
    reviewed_by: str | None = None
    review_notes: str | None = None
    posted_at: datetime | None = None
    error_message: str | None = None
    created_at: datetime | None = None
    updated_at: datetime | None = None

    class Config:
        from_attributes = True


class ProcessingLogRead(BaseModel):
    id: int
    content_id: str
    layer: str
    attempt: int
    status: str
    started_at: datetime
    completed_at: datetime | None = None
    error_message: str | None = None
    metadata_json: dict | None = None

    class Config:
        from_attributes = True


class AccountRead(BaseModel):
    # Credentials are never returned.
    id: str
    slug: str
    name: str
    description: str | None = None
    platform: str
    business_account_id: str | None = None
    is_active: bool
    content_types: list | None = None
    posting_schedule: dict | None = None
    token_expires_at: datetime | None = None
    last_post_at: datetime | None = None
    last_error: str | None = None
    consecutive_failures: int = 0

    class Config:
        from_attributes = True


class CredentialUpdate(BaseModel):
    access_token: str
    expires_at: datetime

    @field_validator("access_token")
    @classmethod
    def strip_token(cls, value: str) -> str:
        value = value.strip()
        if not value:
            raise ValueError("access_token must not be empty")
        return value


class DecisionRequest(BaseModel):
    decision: ReviewDecision
    reviewer: str
    notes: str | None = None

    @field_validator("reviewer")
    @classmethod
    def normalize_reviewer(cls, value: str) -> str:
        value = value.strip()
        if not value:
            raise ValueError("reviewer must not be empty")
        return value


class ResumePointRead(BaseModel):
    content_id: str
    status: str
    last_completed_layer: str | None = None
    next_layer: str | None = None


class PipelineRunRead(BaseModel):
    content_id: str
    status: str
    completed_layers: list[str] = []
    stopped_reason: str | None = None
    error: str | None = None
    post_url: str | None = None


class QueuedTaskRead(BaseModel):
    queued: bool = True
    task_id: str
    content_id: str | None = None


class PublishOutcomeRead(BaseModel):
    status: str
    post_id: str | None = None
    post_url: str | None = None
    error: str | None = None
    already_posted: bool = False


class WebhookAck(BaseModel):
    ok: bool
    detail: dict[str, Any] | None = None
