from __future__ import annotations

import json
import os
from datetime import datetime, timedelta, timezone
from urllib.parse import parse_qs

os.environ["DATABASE_URL"] = "sqlite+aiosqlite:///./reel_factory_unused.db"
os.environ["CELERY_ENABLED"] = "false"
os.environ["SCHEDULER_ENABLED"] = "false"
os.environ["TELEGRAM_BOT_TOKEN"] = ""
os.environ["TELEGRAM_CHAT_ID"] = ""
os.environ["FACEBOOK_APP_ID"] = "app-id"
os.environ["FACEBOOK_APP_SECRET"] = "app-secret"
os.environ["DISTRIBUTION_ENABLED"] = "true"

import httpx
import pytest
from sqlalchemy.ext.asyncio import async_sessionmaker, create_async_engine
from sqlalchemy.pool import AsyncAdaptedQueuePool

from reel_factory.db import Base
from reel_factory.integrations.graph_api import GraphAPIClient
from reel_factory.integrations.telegram_api import TelegramBotClient
from reel_factory.models import ContentStatus
from reel_factory.services.repository import PipelineRepository

NOW = datetime(2026, 10, 18, 12, 0, tzinfo=timezone.utc)
GRAPH_URL = "https://graph.test/v18.0"


class FakeGraph:
    """Graph API double behind httpx.MockTransport."""

    def __init__(self, statuses: list[str] | None = None, *, expires_in: int = 60 * 86400):
        self.statuses = list(statuses or ["FINISHED"])
        self.expires_in = expires_in
        self.calls: list[tuple[str, str, dict]] = []
        self.exchange_error: str | None = None
        self.publish_error: str | None = None
        self._containers = 0
        self._tokens = 0

    def count(self, kind: str) -> int:
        return sum(1 for c in self.calls if c[0] == kind)

    def handler(self, request: httpx.Request) -> httpx.Response:
        path = request.url.path.removeprefix("/v18.0/")
        params = dict(request.url.params)
        if request.method == "POST":
            params.update({k: v[0] for k, v in parse_qs(request.content.decode()).items()})

        if path == "oauth/access_token":
            self.calls.append(("exchange", path, params))
            if self.exchange_error:
                return httpx.Response(400, json={"error": {"message": self.exchange_error}})
            self._tokens += 1
            return httpx.Response(
                200,
                json={"access_token": f"{params['fb_exchange_token']}-renewed-{self._tokens}", "expires_in": self.expires_in},
            )
        if request.method == "POST" and path.endswith("/media"):
            self.calls.append(("create", path, params))
            self._containers += 1
            return httpx.Response(200, json={"id": f"container-{self._containers}"})
        if request.method == "POST" and path.endswith("/media_publish"):
            self.calls.append(("publish", path, params))
            if self.publish_error:
                return httpx.Response(400, json={"error": {"message": self.publish_error}})
            return httpx.Response(200, json={"id": "media-1"})
        if params.get("fields") == "status_code,status":
            self.calls.append(("status", path, params))
            code = self.statuses.pop(0) if len(self.statuses) > 1 else self.statuses[0]
            return httpx.Response(200, json={"status_code": code, "status": f"{code} detail", "id": path})
        if params.get("fields") == "permalink":
            self.calls.append(("permalink", path, params))
            return httpx.Response(200, json={"permalink": f"https://instagram.test/reel/{path}/"})
        return httpx.Response(404, json={"error": {"message": f"unexpected {request.method} {path}"}})

    def client(self) -> GraphAPIClient:
        return GraphAPIClient(base_url=GRAPH_URL, transport=httpx.MockTransport(self.handler))


class FakeTelegram:
    def __init__(self):
        self.calls: list[tuple[str, dict]] = []

    def methods(self) -> list[str]:
        return [m for m, _ in self.calls]

    def handler(self, request: httpx.Request) -> httpx.Response:
        method = request.url.path.rsplit("/", 1)[-1]
        payload = json.loads(request.content or b"{}")
        self.calls.append((method, payload))
        if method == "sendMessage":
            return httpx.Response(200, json={"ok": True, "result": {"message_id": 42, "chat": {"id": payload["chat_id"]}}})
        return httpx.Response(200, json={"ok": True, "result": True})

    def client(self) -> TelegramBotClient:
        return TelegramBotClient("123:test-token", transport=httpx.MockTransport(self.handler))


class FakeRedis:
    """Just enough of redis.asyncio for the content lock."""

    def __init__(self):
        self.store: dict[str, str] = {}
        self.ttls: dict[str, int] = {}

    async def set(self, key, value, nx=False, px=None):
        if nx and key in self.store:
            return None
        self.store[key] = value
        self.ttls[key] = px
        return True

    async def eval(self, script, numkeys, key, token):
        if self.store.get(key) == token:
            del self.store[key]
            return 1
        return 0


@pytest.fixture
async def session_factory(tmp_path):
    # One pooled connection: sessions queue for it instead of racing SQLite file locks.
    engine = create_async_engine(
        f"sqlite+aiosqlite:///{tmp_path / 'test.db'}", poolclass=AsyncAdaptedQueuePool, pool_size=1, max_overflow=0,
    )
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield async_sessionmaker(engine, expire_on_commit=False)
    await engine.dispose()


@pytest.fixture
def repo(session_factory) -> PipelineRepository:
    return PipelineRepository(session_factory)


@pytest.fixture
def graph() -> FakeGraph:
    return FakeGraph()


@pytest.fixture
def telegram() -> FakeTelegram:
    return FakeTelegram()


@pytest.fixture
def clock():
    return lambda: NOW


@pytest.fixture
def make_account(repo):
    counter = {"n": 0}

    async def _make(slug: str | None = None, *, days_left: float | None = 30, token: str | None = None, **fields):
        counter["n"] += 1
        slug = slug or f"acct-{counter['n']}"
        expires_at = NOW + timedelta(days=days_left) if days_left is not None else None
        return await repo.create_account(
            slug,
            slug.title(),
            business_account_id=fields.pop("business_account_id", f"biz-{slug}"),
            access_token=token or f"token-{slug}",
            token_expires_at=expires_at,
            **fields,
        )

    return _make


@pytest.fixture
def make_content(repo):
    async def _make(status: ContentStatus = ContentStatus.created, *, account_id: str | None = None, **fields):
        content = await repo.create_content(account_id=account_id, **fields)
        if status != ContentStatus.created:
            content = await repo.force_status(content.id, status)
        return content

    return _make


@pytest.fixture
def fake_redis() -> FakeRedis:
    return FakeRedis()
