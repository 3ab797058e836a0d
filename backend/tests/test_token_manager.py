import asyncio
from datetime import timedelta

import pytest

from reel_factory.services.repository import as_utc
from reel_factory.services.token_manager import CredentialRefreshFailed, TokenManager

from conftest import NOW


@pytest.fixture
def tokens(repo, graph, clock):
    return TokenManager(repo, graph.client(), clock=clock)


async def test_token_expiring_in_three_days_is_refreshed(tokens, graph, make_account, repo):
    account = await make_account("alpha", days_left=3)

    token = await tokens.get_valid_token(account.id)

    assert token == "token-alpha-renewed-1"
    assert graph.count("exchange") == 1
    reloaded = await repo.get_account_by_id(account.id)
    assert reloaded.access_token == token
    assert as_utc(reloaded.token_expires_at) == NOW + timedelta(days=60)


async def test_token_expiring_in_thirty_days_is_kept(tokens, graph, make_account):
    account = await make_account("alpha", days_left=30)

    assert await tokens.get_valid_token(account.id) == "token-alpha"
    assert graph.count("exchange") == 0


async def test_token_without_expiry_is_refreshed(tokens, graph, make_account):
    account = await make_account("alpha", days_left=None)

    assert await tokens.get_valid_token(account.id) == "token-alpha-renewed-1"
    assert graph.count("exchange") == 1


async def test_exchange_failure_keeps_stored_credential(tokens, graph, make_account, repo):
    graph.exchange_error = "Error validating access token"
    account = await make_account("alpha", days_left=1)

    with pytest.raises(CredentialRefreshFailed) as exc_info:
        await tokens.get_valid_token(account.id)

    assert "Error validating access token" in exc_info.value.reason
    reloaded = await repo.get_account_by_id(account.id)
    assert reloaded.access_token == "token-alpha"


async def test_concurrent_refresh_of_two_accounts_is_isolated(tokens, graph, make_account, repo):
    a = await make_account("alpha", days_left=2)
    b = await make_account("beta", days_left=2)

    token_a, token_b = await asyncio.gather(tokens.get_valid_token(a.id), tokens.get_valid_token(b.id))

    assert token_a.startswith("token-alpha-renewed")
    assert token_b.startswith("token-beta-renewed")
    assert (await repo.get_account_by_id(a.id)).access_token == token_a
    assert (await repo.get_account_by_id(b.id)).access_token == token_b
    exchanged = sorted(params["fb_exchange_token"] for kind, _, params in graph.calls if kind == "exchange")
    assert exchanged == ["token-alpha", "token-beta"]


async def test_concurrent_calls_for_one_account_refresh_once(tokens, graph, make_account):
    account = await make_account("alpha", days_left=1)

    results = await asyncio.gather(*[tokens.get_valid_token(account.id) for _ in range(3)])

    assert graph.count("exchange") == 1
    assert set(results) == {"token-alpha-renewed-1"}


async def test_account_without_token(tokens, repo):
    account = await repo.create_account("empty", "Empty")
    with pytest.raises(CredentialRefreshFailed):
        await tokens.get_valid_token(account.id)


async def test_refresh_expiring_tokens_report(tokens, make_account):
    soon = await make_account("alpha", days_left=2)
    await make_account("beta", days_left=40)

    report = await tokens.refresh_expiring_tokens()

    assert report == {"refreshed": [soon.id], "failed": []}


async def test_token_info(tokens, make_account):
    account = await make_account("alpha", days_left=10)
    info = tokens.token_info(account).to_dict()
    assert info["days_remaining"] == 10
    assert info["needs_refresh"] is False
    assert "access_token" not in info
