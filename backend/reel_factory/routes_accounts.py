from __future__ import annotations

from fastapi import APIRouter, HTTPException, Query, status

from .deps import ServicesDep
from .schemas import AccountRead, CredentialUpdate, PipelineRunRead, QueuedTaskRead
from .settings import get_settings

router = APIRouter(prefix="/api/accounts", tags=["accounts"])


async def _by_slug(services, slug: str):
    account = await services.repo.get_account_by_slug(slug)
    if account is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Account not found")
    return account


@router.get("", response_model=list[AccountRead])
async def list_accounts(services: ServicesDep, active_only: bool = Query(False)):
    return await services.repo.list_accounts(active_only=active_only)


@router.get("/{slug}", response_model=AccountRead)
async def get_account(slug: str, services: ServicesDep):
    return await _by_slug(services, slug)


@router.get("/{slug}/token")
async def get_token_info(slug: str, services: ServicesDep):
    account = await _by_slug(services, slug)
    return services.tokens.token_info(account).to_dict()


@router.put("/{account_id}/credential", response_model=AccountRead)
async def update_credential(account_id: str, payload: CredentialUpdate, services: ServicesDep):
    """Admin override: replace the (token, expiry) pair as a whole."""
    await services.repo.update_credential(account_id, payload.access_token, payload.expires_at)
    return await services.repo.get_account_by_id(account_id)


@router.post("/{account_id}/token/refresh")
async def refresh_token(account_id: str, services: ServicesDep):
    await services.tokens.force_refresh(account_id)
    account = await services.repo.get_account_by_id(account_id)
    return services.tokens.token_info(account).to_dict()


@router.post("/{account_id}/contents", response_model=PipelineRunRead | QueuedTaskRead)
async def start_content(account_id: str, services: ServicesDep):
    """Create a new content item for the account and run it up to the review gate."""
    if get_settings().celery_enabled:
        from .worker.tasks import start_for_account
        task = start_for_account.delay(account_id)
        return {"queued": True, "task_id": task.id}
    try:
        result = await services.pipeline.start_for_account(account_id)
    except ValueError as exc:
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail=str(exc))
    return result.to_dict()
