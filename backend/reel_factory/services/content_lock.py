"""
Redis lock that keeps one worker per content item.

key:   content-lock:{content_id}
value: owner token (UUID), so only the holder can release
ttl:   content_lock_ttl_sec, the lock expires on its own if a worker dies
"""
from __future__ import annotations

import logging
import uuid
from contextlib import asynccontextmanager
from typing import AsyncIterator

import redis.asyncio as aioredis

from reel_factory.settings import get_settings

logger = logging.getLogger(__name__)

_redis_client: aioredis.Redis | None = None

# Delete only if the key still holds our token.
_RELEASE_SCRIPT = """
if redis.call("get", KEYS[1]) == ARGV[1] then
    return redis.call("del", KEYS[1])
end
return 0
"""


class ContentLocked(Exception):
    """Another worker is already processing this content item."""

    def __init__(self, content_id: str):
        super().__init__(f"Content {content_id} is locked by another worker")
        self.content_id = content_id


def _get_redis() -> aioredis.Redis:
    global _redis_client
    if _redis_client is None:
        _redis_client = aioredis.from_url(get_settings().redis_url, decode_responses=True)
    return _redis_client


def _lock_key(content_id: str) -> str:
    return f"content-lock:{content_id}"


async def acquire(content_id: str, *, ttl_sec: int | None = None, client: aioredis.Redis | None = None) -> str:
    """Take the lock or raise ContentLocked. Returns the owner token."""
    r = client or _get_redis()
    ttl_sec = ttl_sec or get_settings().content_lock_ttl_sec
    token = str(uuid.uuid4())
    acquired = await r.set(_lock_key(content_id), token, nx=True, px=ttl_sec * 1000)
    if not acquired:
        raise ContentLocked(content_id)
    logger.info(f"[lock] Acquired content={content_id} (token={token[:8]}…, ttl={ttl_sec}s)")
    return token


async def release(content_id: str, token: str, *, client: aioredis.Redis | None = None) -> bool:
    r = client or _get_redis()
    removed = await r.eval(_RELEASE_SCRIPT, 1, _lock_key(content_id), token)
    if removed:
        logger.info(f"[lock] Released content={content_id} (token={token[:8]}…)")
    else:
        logger.warning(f"[lock] Release content={content_id}: token {token[:8]}… no longer holds the lock")
    return bool(removed)


@asynccontextmanager
async def content_lock(
    content_id: str, *, ttl_sec: int | None = None, client: aioredis.Redis | None = None,
) -> AsyncIterator[str]:
    token = await acquire(content_id, ttl_sec=ttl_sec, client=client)
    try:
        yield token
    finally:
        await release(content_id, token, client=client)
