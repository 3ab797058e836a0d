"""Builds the pipeline object graph for API handlers, workers and the scheduler."""
from __future__ import annotations

import importlib
import logging
from dataclasses import dataclass
from typing import Any, Callable

from sqlalchemy.ext.asyncio import async_sessionmaker

from reel_factory.integrations.graph_api import GraphAPIClient
from reel_factory.integrations.telegram_api import TelegramBotClient
from reel_factory.services.content_lock import content_lock
from reel_factory.services.pipeline import ContentPipeline, StageHandlers
from reel_factory.services.publishing import PublishingCoordinator
from reel_factory.services.repository import PipelineRepository
from reel_factory.services.resume import ResumeController
from reel_factory.services.review_gateway import ReviewGateway
from reel_factory.services.token_manager import TokenManager
from reel_factory.settings import get_settings

logger = logging.getLogger(__name__)


@dataclass
class PipelineServices:
    repo: PipelineRepository
    tokens: TokenManager
    review: ReviewGateway
    publisher: PublishingCoordinator
    resume: ResumeController
    pipeline: ContentPipeline
    # content_id -> async context manager holding the per-content lock
    lock: Callable[[str], Any] = content_lock


def load_stage_handlers(path: str | None = None) -> StageHandlers:
    """Resolve STAGE_HANDLERS ("package.module:attribute") to a StageHandlers instance."""
    path = path or get_settings().stage_handlers
    if not path:
        return StageHandlers()
    module_name, _, attr = path.partition(":")
    handlers = getattr(importlib.import_module(module_name), attr or "STAGE_HANDLERS")
    if callable(handlers) and not isinstance(handlers, StageHandlers):
        handlers = handlers()
    if not isinstance(handlers, StageHandlers):
        raise TypeError(f"{path} did not resolve to StageHandlers")
    logger.info(f"[factory] Stage handlers loaded from {path}")
    return handlers


def build_services(
    session_factory: async_sessionmaker,
    *,
    handlers: StageHandlers | None = None,
    graph: GraphAPIClient | None = None,
    bot: TelegramBotClient | None = None,
) -> PipelineServices:
    repo = PipelineRepository(session_factory)
    graph = graph or GraphAPIClient()
    tokens = TokenManager(repo, graph)
    review = ReviewGateway(repo, bot)
    publisher = PublishingCoordinator(repo, tokens, graph)
    resume = ResumeController(repo)
    pipeline = ContentPipeline(
        repo,
        handlers if handlers is not None else load_stage_handlers(),
        review,
        publisher,
        resume=resume,
    )
    return PipelineServices(
        repo=repo, tokens=tokens, review=review, publisher=publisher, resume=resume, pipeline=pipeline,
    )
