"""
Per-account access token lifecycle.

Each account carries its own (token, expiry) pair. get_valid_token() returns
the stored token while it is more than the safety margin away from expiry and
otherwise exchanges it for a new long-lived token, persisting the new pair on
that account only. There is no process-wide token cache: every read goes
through the repository scoped by account id.
"""
from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Callable

from reel_factory.integrations.graph_api import GraphAPIClient, GraphAPIError
from reel_factory.models import Account
from reel_factory.services.notify import notify_credential_failure
from reel_factory.services.repository import AccountNotFound, PipelineRepository, as_utc, utcnow
from reel_factory.settings import get_settings

logger = logging.getLogger(__name__)


class CredentialRefreshFailed(Exception):
    """Token exchange failed or the account has no usable credential."""

    def __init__(self, account_id: str, reason: str):
        super().__init__(f"Credential refresh failed for account {account_id}: {reason}")
        self.account_id = account_id
        self.reason = reason


@dataclass
class TokenInfo:
    account_id: str
    has_token: bool
    expires_at: datetime | None
    days_remaining: float | None
    needs_refresh: bool

    def to_dict(self) -> dict:
        return {
            "account_id": self.account_id,
            "has_token": self.has_token,
            "expires_at": self.expires_at.isoformat() if self.expires_at else None,
            "days_remaining": round(self.days_remaining, 2) if self.days_remaining is not None else None,
            "needs_refresh": self.needs_refresh,
        }


class TokenManager:
    def __init__(
        self,
        repo: PipelineRepository,
        graph: GraphAPIClient | None = None,
        *,
        margin: timedelta | None = None,
        exchange_timeout: float | None = None,
        clock: Callable[[], datetime] = utcnow,
    ):
        settings = get_settings()
        self.repo = repo
        self.graph = graph or GraphAPIClient()
        self.margin = margin if margin is not None else timedelta(days=settings.token_refresh_margin_days)
        self.exchange_timeout = exchange_timeout if exchange_timeout is not None else settings.token_exchange_timeout_sec
        self.clock = clock
        self._default_app_id = settings.facebook_app_id
        self._default_app_secret = settings.facebook_app_secret
        self._locks: dict[str, asyncio.Lock] = {}

    def _lock_for(self, account_id: str) -> asyncio.Lock:
        lock = self._locks.get(account_id)
        if lock is None:
            lock = self._locks[account_id] = asyncio.Lock()
        return lock

    def needs_refresh(self, account: Account) -> bool:
        if not account.access_token:
            return True
        expires_at = as_utc(account.token_expires_at)
        if expires_at is None:
            # A credential without expiry violates the account invariant; renew it.
            logger.warning(f"[tokens] Account {account.slug} has no token expiry set, forcing refresh")
            return True
        return expires_at - self.clock() <= self.margin

    def token_info(self, account: Account) -> TokenInfo:
        expires_at = as_utc(account.token_expires_at)
        days_remaining = None
        if expires_at is not None:
            days_remaining = (expires_at - self.clock()).total_seconds() / 86400
        return TokenInfo(
            account_id=account.id,
            has_token=bool(account.access_token),
            expires_at=expires_at,
            days_remaining=days_remaining,
            needs_refresh=self.needs_refresh(account),
        )

    async def _load(self, account_id: str) -> Account:
        account = await self.repo.get_account_by_id(account_id)
        if account is None:
            raise AccountNotFound(f"Account {account_id} not found")
        if not account.access_token:
            raise CredentialRefreshFailed(account_id, "account has no access token")
        return account

    async def get_valid_token(self, account_id: str) -> str:
        account = await self._load(account_id)
        if not self.needs_refresh(account):
            return account.access_token

        async with self._lock_for(account_id):
            # Another coroutine may have refreshed while we waited.
            account = await self._load(account_id)
            if not self.needs_refresh(account):
                return account.access_token
            info = self.token_info(account).to_dict()
            logger.info(f"[tokens] Token for {account.slug} expiring (days_remaining={info['days_remaining']}), refreshing")
            return await self._refresh(account)

    async def force_refresh(self, account_id: str) -> str:
        async with self._lock_for(account_id):
            account = await self._load(account_id)
            logger.info(f"[tokens] Force refreshing token for {account.slug}")
            return await self._refresh(account)

    async def _refresh(self, account: Account) -> str:
        app_id = account.app_id or self._default_app_id
        app_secret = account.app_secret or self._default_app_secret
        if not app_id or not app_secret:
            raise CredentialRefreshFailed(account.id, "missing app credentials (FACEBOOK_APP_ID/FACEBOOK_APP_SECRET)")

        try:
            new_token, expires_in = await self.graph.exchange_token(
                account.access_token, app_id, app_secret, timeout=self.exchange_timeout,
            )
        except GraphAPIError as exc:
            reason = "token exchange timed out" if exc.timeout else str(exc)
            logger.error(f"[tokens] Refresh failed for {account.slug}: {reason}")
            await notify_credential_failure(account.slug, reason)
            raise CredentialRefreshFailed(account.id, reason) from exc

        expires_at = self.clock() + timedelta(seconds=expires_in)
        await self.repo.update_credential(account.id, new_token, expires_at)
        logger.info(
            f"[tokens] Token refreshed for {account.slug} "
            f"(expires_at={expires_at.isoformat()}, days={expires_in / 86400:.2f})"
        )
        return new_token

    async def refresh_expiring_tokens(self) -> dict:
        """Refresh every active account whose token is inside the safety margin."""
        cutoff = self.clock() + self.margin
        accounts = await self.repo.get_accounts_with_expiring_tokens(cutoff)
        logger.info(f"[tokens] {len(accounts)} accounts with expiring tokens")

        refreshed: list[str] = []
        failed: list[dict] = []
        for account in accounts:
            try:
                await self.force_refresh(account.id)
                refreshed.append(account.id)
            except CredentialRefreshFailed as exc:
                failed.append({"account_id": account.id, "error": exc.reason})
        return {"refreshed": refreshed, "failed": failed}
