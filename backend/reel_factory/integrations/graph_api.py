"""
Thin async client for the Graph API endpoints used by Reels publishing.

Container model:
    exchange token -> create container -> poll container status -> media_publish

Every failure is raised as GraphAPIError carrying the platform's own message,
with credentials stripped out.
"""
from __future__ import annotations

import logging
import re
from typing import Any

import httpx

from reel_factory.settings import get_settings

logger = logging.getLogger(__name__)


# ── Credential sanitization ──────────────────────────────────

_SENSITIVE_PATTERNS = [
    (re.compile(r"Bearer\s+[A-Za-z0-9\-_\.]+", re.IGNORECASE), "Bearer ***"),
    (re.compile(r"access_token=[A-Za-z0-9\-_\.%]+", re.IGNORECASE), "access_token=***"),
    (re.compile(r"fb_exchange_token=[A-Za-z0-9\-_\.%]+", re.IGNORECASE), "fb_exchange_token=***"),
    (re.compile(r"client_secret=[A-Za-z0-9\-_\.%]+", re.IGNORECASE), "client_secret=***"),
    # Generic long tokens (40+ chars)
    (re.compile(r"[A-Za-z0-9\-_]{40,}"), "***TOKEN***"),
]


def sanitize(text: str | None) -> str | None:
    """Strip credentials and tokens from error messages / response text."""
    if not text:
        return text
    for pattern, replacement in _SENSITIVE_PATTERNS:
        text = pattern.sub(replacement, text)
    return text


class GraphAPIError(Exception):
    """Graph API call failed (HTTP error, platform error payload or network)."""

    def __init__(self, message: str, *, status_code: int | None = None, timeout: bool = False):
        super().__init__(sanitize(message))
        self.status_code = status_code
        self.timeout = timeout


class GraphAPIClient:
    def __init__(
        self,
        *,
        base_url: str | None = None,
        timeout: float | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        settings = get_settings()
        self.base_url = (base_url or settings.graph_api_url).rstrip("/")
        self.timeout = timeout if timeout is not None else settings.graph_api_timeout_sec
        self._transport = transport

    async def _call(
        self,
        method: str,
        path: str,
        *,
        params: dict | None = None,
        data: dict | None = None,
        timeout: float | None = None,
    ) -> dict[str, Any]:
        url = f"{self.base_url}/{path.lstrip('/')}"
        try:
            async with httpx.AsyncClient(timeout=timeout or self.timeout, transport=self._transport) as client:
                resp = await client.request(method, url, params=params, data=data)
        except httpx.TimeoutException as exc:
            raise GraphAPIError(f"Graph API timeout on {path}: {exc}", timeout=True) from exc
        except httpx.HTTPError as exc:
            raise GraphAPIError(f"Graph API request to {path} failed: {exc}") from exc

        try:
            payload = resp.json()
        except ValueError:
            payload = {}

        if resp.status_code >= 400 or "error" in payload:
            error = payload.get("error") if isinstance(payload, dict) else None
            if isinstance(error, dict):
                message = error.get("error_user_msg") or error.get("message") or str(error)
            else:
                message = resp.text[:500] or f"HTTP {resp.status_code}"
            raise GraphAPIError(message, status_code=resp.status_code)
        return payload

    async def exchange_token(
        self, token: str, app_id: str, app_secret: str, *, timeout: float | None = None,
    ) -> tuple[str, int]:
        """Exchange a token for a long-lived one. Returns (token, lifetime seconds)."""
        data = await self._call(
            "GET",
            "oauth/access_token",
            params={
                "grant_type": "fb_exchange_token",
                "client_id": app_id,
                "client_secret": app_secret,
                "fb_exchange_token": token,
            },
            timeout=timeout,
        )
        new_token = data.get("access_token")
        expires_in = data.get("expires_in")
        if not new_token or expires_in is None:
            raise GraphAPIError("Token exchange response missing access_token/expires_in")
        return new_token, int(expires_in)

    async def create_reel_container(self, business_account_id: str, video_url: str, caption: str, token: str) -> str:
        data = await self._call(
            "POST",
            f"{business_account_id}/media",
            data={
                "media_type": "REELS",
                "video_url": video_url,
                "caption": caption,
                "access_token": token,
            },
        )
        container_id = data.get("id")
        if not container_id:
            raise GraphAPIError("Container create response missing id")
        return str(container_id)

    async def get_container_status(self, container_id: str, token: str) -> tuple[str, str | None]:
        """Returns (status_code, status detail)."""
        data = await self._call(
            "GET",
            container_id,
            params={"fields": "status_code,status", "access_token": token},
        )
        return str(data.get("status_code") or ""), data.get("status")

    async def publish_container(self, business_account_id: str, container_id: str, token: str) -> str:
        data = await self._call(
            "POST",
            f"{business_account_id}/media_publish",
            data={"creation_id": container_id, "access_token": token},
        )
        media_id = data.get("id")
        if not media_id:
            raise GraphAPIError("media_publish response missing id")
        return str(media_id)

    async def get_permalink(self, media_id: str, token: str) -> str | None:
        data = await self._call(
            "GET",
            media_id,
            params={"fields": "permalink", "access_token": token},
        )
        return data.get("permalink")
