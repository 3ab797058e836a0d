from __future__ import annotations

import logging
from typing import Any

from fastapi import APIRouter, Body

from .deps import ServicesDep
from .schemas import ContentRead, DecisionRequest, WebhookAck

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/review", tags=["review"])


@router.post("/telegram/webhook", response_model=WebhookAck)
async def telegram_webhook(services: ServicesDep, update: dict[str, Any] = Body(...)):
    """Telegram bot webhook. Always 200 so Telegram does not redeliver."""
    result = await services.review.handle_update(update)
    return {"ok": bool(result.get("ok")), "detail": result}


@router.post("/{content_id}/decision", response_model=ContentRead)
async def record_decision(content_id: str, payload: DecisionRequest, services: ServicesDep):
    logger.info(f"[review] Manual {payload.decision.value} for {content_id} by {payload.reviewer}")
    return await services.review.on_decision(content_id, payload.decision, payload.reviewer, payload.notes)
