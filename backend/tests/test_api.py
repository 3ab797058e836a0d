from functools import partial

import httpx
import pytest

from reel_factory.deps import get_services
from reel_factory.main import app
from reel_factory.models import ContentStatus
from reel_factory.services import content_lock
from reel_factory.services.factory import build_services


async def _noop_sleep(_):
    return None


@pytest.fixture
async def services(session_factory, graph, telegram, fake_redis):
    services = build_services(session_factory, graph=graph.client(), bot=telegram.client())
    services.lock = partial(content_lock.content_lock, client=fake_redis)
    services.review.chat_id = "-100"
    services.review.authorized_user_ids = []
    services.publisher.sleep = _noop_sleep
    app.dependency_overrides[get_services] = lambda: services
    yield services
    app.dependency_overrides.clear()


@pytest.fixture
async def client(services):
    transport = httpx.ASGITransport(app=app)
    async with httpx.AsyncClient(transport=transport, base_url="http://test") as client:
        yield client


async def test_ping(client):
    resp = await client.get("/ping")
    assert resp.json() == {"status": "ok"}


async def test_content_not_found(client):
    assert (await client.get("/api/contents/missing")).status_code == 404
    assert (await client.get("/api/contents/missing/resume-point")).status_code == 404


async def test_last_failed(client, make_content):
    assert (await client.get("/api/contents/last-failed")).status_code == 404
    failed = await make_content(ContentStatus.failed)

    resp = await client.get("/api/contents/last-failed")

    assert resp.status_code == 200
    assert resp.json()["id"] == failed.id


async def test_resume_point_and_logs(client, repo, make_content):
    content = await make_content()
    await repo.append_log(content.id, "idea")

    point = (await client.get(f"/api/contents/{content.id}/resume-point")).json()
    logs = (await client.get(f"/api/contents/{content.id}/logs")).json()

    assert point["next_layer"] == "idea"
    assert [log["status"] for log in logs] == ["running"]


async def test_manual_decision_conflict(client, make_content):
    content = await make_content(ContentStatus.review_pending)
    body = {"decision": "approve", "reviewer": "ann"}

    first = await client.post(f"/api/review/{content.id}/decision", json=body)
    second = await client.post(f"/api/review/{content.id}/decision", json={**body, "decision": "reject"})

    assert first.status_code == 200
    assert first.json()["status"] == "approved"
    assert second.status_code == 409


async def test_decision_for_content_not_in_review(client, make_content):
    content = await make_content(ContentStatus.composed)
    resp = await client.post(f"/api/review/{content.id}/decision", json={"decision": "approve", "reviewer": "ann"})
    assert resp.status_code == 409


async def test_telegram_webhook(client, repo, make_content):
    content = await make_content(ContentStatus.review_pending)
    update = {
        "update_id": 10,
        "callback_query": {
            "id": "cb-9",
            "from": {"id": 1, "username": "ann"},
            "data": f"reject:{content.id}",
            "message": {"message_id": 42, "chat": {"id": -100}, "text": "review"},
        },
    }

    resp = await client.post("/api/review/telegram/webhook", json=update)

    assert resp.status_code == 200
    assert resp.json()["ok"] is True
    assert (await repo.require_content(content.id)).status == "rejected"


async def test_publish_inline(client, graph, make_account, make_content):
    account = await make_account("alpha")
    content = await make_content(ContentStatus.approved, account_id=account.id, storage_url="u", caption="c")

    resp = await client.post(f"/api/contents/{content.id}/publish")

    assert resp.status_code == 200
    assert resp.json()["status"] == "posted"
    assert graph.count("publish") == 1


async def test_publish_inline_refuses_locked_content(client, graph, fake_redis, make_account, make_content):
    account = await make_account("alpha")
    content = await make_content(ContentStatus.approved, account_id=account.id, storage_url="u", caption="c")
    await content_lock.acquire(content.id, ttl_sec=60, client=fake_redis)

    resp = await client.post(f"/api/contents/{content.id}/publish")

    assert resp.status_code == 409
    assert graph.calls == []
    assert (await client.get(f"/api/contents/{content.id}")).json()["status"] == "approved"


async def test_resume_inline_refuses_locked_content(client, fake_redis, make_content):
    content = await make_content(ContentStatus.failed)
    await content_lock.acquire(content.id, ttl_sec=60, client=fake_redis)

    resp = await client.post(f"/api/contents/{content.id}/resume")

    assert resp.status_code == 409
    assert (await client.get(f"/api/contents/{content.id}")).json()["status"] == "failed"


async def test_publish_inline_releases_lock(client, fake_redis, make_account, make_content):
    account = await make_account("alpha")
    content = await make_content(ContentStatus.approved, account_id=account.id, storage_url="u", caption="c")

    await client.post(f"/api/contents/{content.id}/publish")

    assert fake_redis.store == {}


async def test_accounts_never_expose_tokens(client, make_account):
    await make_account("alpha")

    listed = (await client.get("/api/accounts")).json()
    single = (await client.get("/api/accounts/alpha")).json()

    assert [a["slug"] for a in listed] == ["alpha"]
    assert "access_token" not in single
    assert "app_secret" not in single
    assert (await client.get("/api/accounts/nope")).status_code == 404


async def test_token_info_and_credential_override(client, repo, make_account):
    account = await make_account("alpha", days_left=3)

    info = (await client.get("/api/accounts/alpha/token")).json()
    assert info["needs_refresh"] is True

    resp = await client.put(
        f"/api/accounts/{account.id}/credential",
        json={"access_token": "manual", "expires_at": "2030-01-01T00:00:00Z"},
    )
    assert resp.status_code == 200
    assert (await repo.get_account_by_id(account.id)).access_token == "manual"


async def test_token_refresh_failure_maps_to_502(client, graph, make_account):
    account = await make_account("alpha")
    graph.exchange_error = "Invalid OAuth access token"

    resp = await client.post(f"/api/accounts/{account.id}/token/refresh")

    assert resp.status_code == 502
