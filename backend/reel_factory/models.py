from __future__ import annotations

import uuid
from datetime import datetime
from enum import Enum

import sqlalchemy as sa
from sqlalchemy.orm import Mapped, mapped_column

from .db import Base


def _uuid() -> str:
    return str(uuid.uuid4())


class ContentStatus(str, Enum):
    created = "created"
    idea_ready = "idea_ready"
    prompts_ready = "prompts_ready"
    video_generated = "video_generated"
    composed = "composed"
    review_pending = "review_pending"
    approved = "approved"
    rejected = "rejected"
    posted = "posted"
    failed = "failed"


class PipelineLayer(str, Enum):
    idea = "idea"
    prompt_engineering = "prompt_engineering"
    video_generation = "video_generation"
    composition = "composition"
    review = "review"
    distribution = "distribution"


class ProcessingStatus(str, Enum):
    running = "running"
    completed = "completed"
    failed = "failed"


class PostStatus(str, Enum):
    success = "success"
    failure = "failure"


class ReviewDecision(str, Enum):
    approve = "approve"
    reject = "reject"


class ContainerStatus(str, Enum):
    in_progress = "IN_PROGRESS"
    finished = "FINISHED"


class Account(Base):
    __tablename__ = "accounts"

    id: Mapped[str] = mapped_column(sa.String(36), primary_key=True, default=_uuid)
    slug: Mapped[str] = mapped_column(sa.String(128), unique=True, nullable=False)
    name: Mapped[str] = mapped_column(sa.String(255), nullable=False)
    description: Mapped[str | None] = mapped_column(sa.Text(), nullable=True)
    platform: Mapped[str] = mapped_column(sa.String(32), nullable=False, server_default="instagram")
    business_account_id: Mapped[str | None] = mapped_column(sa.String(255), nullable=True)
    # Credential pair: always written together
    access_token: Mapped[str | None] = mapped_column(sa.Text(), nullable=True)
    token_expires_at: Mapped[datetime | None] = mapped_column(sa.DateTime(timezone=True), nullable=True)
    app_id: Mapped[str | None] = mapped_column(sa.String(255), nullable=True)
    app_secret: Mapped[str | None] = mapped_column(sa.Text(), nullable=True)
    is_active: Mapped[bool] = mapped_column(sa.Boolean(), nullable=False, server_default=sa.true())
    content_types: Mapped[list | None] = mapped_column(sa.JSON(), nullable=True)
    posting_schedule: Mapped[dict | None] = mapped_column(sa.JSON(), nullable=True)
    last_post_at: Mapped[datetime | None] = mapped_column(sa.DateTime(timezone=True), nullable=True)
    last_error: Mapped[str | None] = mapped_column(sa.Text(), nullable=True)
    consecutive_failures: Mapped[int] = mapped_column(sa.Integer(), nullable=False, server_default="0")
    created_at: Mapped[datetime] = mapped_column(
        sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False
    )
    updated_at: Mapped[datetime] = mapped_column(
        sa.DateTime(timezone=True), server_default=sa.func.now(), onupdate=sa.func.now(), nullable=False
    )


class Content(Base):
    __tablename__ = "contents"

    id: Mapped[str] = mapped_column(sa.String(36), primary_key=True, default=_uuid)
    account_id: Mapped[str | None] = mapped_column(
        sa.ForeignKey("accounts.id", ondelete="SET NULL"), nullable=True, index=True
    )
    status: Mapped[str] = mapped_column(sa.String(32), nullable=False, server_default=ContentStatus.created.value, index=True)
    # Artifacts, each filled in by the stage that produces it
    idea_data: Mapped[dict | None] = mapped_column(sa.JSON(), nullable=True)
    caption: Mapped[str | None] = mapped_column(sa.Text(), nullable=True)
    prompt_data: Mapped[dict | None] = mapped_column(sa.JSON(), nullable=True)
    raw_video_paths: Mapped[list | None] = mapped_column(sa.JSON(), nullable=True)
    final_video_path: Mapped[str | None] = mapped_column(sa.Text(), nullable=True)
    storage_url: Mapped[str | None] = mapped_column(sa.Text(), nullable=True)
    container_id: Mapped[str | None] = mapped_column(sa.String(255), nullable=True)
    # Review
    review_message_id: Mapped[int | None] = mapped_column(sa.BigInteger(), nullable=True)
    review_chat_id: Mapped[str | None] = mapped_column(sa.String(64), nullable=True)
    reviewed_at: Mapped[datetime | None] = mapped_column(sa.DateTime(timezone=True), nullable=True)
    reviewed_by: Mapped[str | None] = mapped_column(sa.String(255), nullable=True)
    review_notes: Mapped[str | None] = mapped_column(sa.Text(), nullable=True)
    posted_at: Mapped[datetime | None] = mapped_column(sa.DateTime(timezone=True), nullable=True)
    error_message: Mapped[str | None] = mapped_column(sa.Text(), nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False, index=True
    )
    updated_at: Mapped[datetime] = mapped_column(
        sa.DateTime(timezone=True), server_default=sa.func.now(), onupdate=sa.func.now(), nullable=False
    )


class ProcessingLog(Base):
    """One execution attempt of one pipeline layer for one content item."""
    __tablename__ = "processing_logs"
    __table_args__ = (
        sa.UniqueConstraint("content_id", "layer", "attempt", name="uq_processing_logs_content_layer_attempt"),
    )

    id: Mapped[int] = mapped_column(primary_key=True, autoincrement=True)
    content_id: Mapped[str] = mapped_column(
        sa.ForeignKey("contents.id", ondelete="CASCADE"), nullable=False, index=True
    )
    layer: Mapped[str] = mapped_column(sa.String(32), nullable=False)
    attempt: Mapped[int] = mapped_column(sa.Integer(), nullable=False, server_default="1")
    status: Mapped[str] = mapped_column(sa.String(16), nullable=False, server_default=ProcessingStatus.running.value)
    started_at: Mapped[datetime] = mapped_column(sa.DateTime(timezone=True), nullable=False)
    completed_at: Mapped[datetime | None] = mapped_column(sa.DateTime(timezone=True), nullable=True)
    error_message: Mapped[str | None] = mapped_column(sa.Text(), nullable=True)
    metadata_json: Mapped[dict | None] = mapped_column("metadata", sa.JSON(), nullable=True)


class PlatformPost(Base):
    __tablename__ = "platform_posts"
    __table_args__ = (
        sa.UniqueConstraint("content_id", "platform", name="uq_platform_posts_content_platform"),
    )

    id: Mapped[int] = mapped_column(primary_key=True, autoincrement=True)
    content_id: Mapped[str] = mapped_column(
        sa.ForeignKey("contents.id", ondelete="CASCADE"), nullable=False, index=True
    )
    account_id: Mapped[str | None] = mapped_column(
        sa.ForeignKey("accounts.id", ondelete="SET NULL"), nullable=True
    )
    platform: Mapped[str] = mapped_column(sa.String(32), nullable=False)
    post_id: Mapped[str | None] = mapped_column(sa.String(255), nullable=True)
    post_url: Mapped[str | None] = mapped_column(sa.Text(), nullable=True)
    status: Mapped[str] = mapped_column(sa.String(16), nullable=False)
    error_message: Mapped[str | None] = mapped_column(sa.Text(), nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False
    )
    updated_at: Mapped[datetime] = mapped_column(
        sa.DateTime(timezone=True), server_default=sa.func.now(), onupdate=sa.func.now(), nullable=False
    )


class ReviewInteraction(Base):
    """A button press received from the review channel."""
    __tablename__ = "review_interactions"

    id: Mapped[int] = mapped_column(primary_key=True, autoincrement=True)
    callback_query_id: Mapped[str] = mapped_column(sa.String(128), unique=True, nullable=False)
    content_id: Mapped[str] = mapped_column(sa.String(36), nullable=False, index=True)
    action: Mapped[str] = mapped_column(sa.String(16), nullable=False)
    user_id: Mapped[int | None] = mapped_column(sa.BigInteger(), nullable=True)
    username: Mapped[str | None] = mapped_column(sa.String(255), nullable=True)
    message_id: Mapped[int | None] = mapped_column(sa.BigInteger(), nullable=True)
    chat_id: Mapped[int | None] = mapped_column(sa.BigInteger(), nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False
    )
