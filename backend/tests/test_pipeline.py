from datetime import datetime, timedelta, timezone

import pytest

from reel_factory.models import ContentStatus
from reel_factory.services.layer_runner import LayerResult
from reel_factory.services.pipeline import ContentPipeline, StageHandlers, is_account_due, local_day_start
from reel_factory.services.publishing import PublishingCoordinator
from reel_factory.services.resume import ContentNotResumable
from reel_factory.services.review_gateway import ReviewGateway
from reel_factory.services.token_manager import TokenManager


class Handlers:
    def __init__(self, fail_on: str | None = None):
        self.fail_on = fail_on
        self.seen: list[str] = []

    async def _stage(self, name, artifacts):
        self.seen.append(name)
        if name == self.fail_on:
            raise RuntimeError(f"{name} backend unavailable")
        return LayerResult(artifacts=artifacts)

    async def idea(self, content, account):
        return await self._stage("idea", {"idea_data": {"idea": "cat naps"}, "caption": "Sleepy cat"})

    async def prompts(self, content, account):
        return await self._stage("prompt_engineering", {"prompt_data": {"prompts": ["a cat"]}})

    async def video(self, content, account):
        return await self._stage("video_generation", {"raw_video_paths": ["/tmp/a.mp4"]})

    async def compose(self, content, account):
        return await self._stage(
            "composition", {"final_video_path": "/tmp/final.mp4", "storage_url": "https://cdn.test/final.mp4"},
        )

    def registry(self) -> StageHandlers:
        return StageHandlers(
            idea=self.idea, prompt_engineering=self.prompts, video_generation=self.video, composition=self.compose,
        )


async def _noop_sleep(_):
    return None


@pytest.fixture
def build(repo, graph, telegram, clock):
    def _build(handlers: Handlers) -> ContentPipeline:
        client = graph.client()
        tokens = TokenManager(repo, client, clock=clock)
        review = ReviewGateway(repo, telegram.client(), chat_id="-100", authorized_user_ids=[], clock=clock)
        publisher = PublishingCoordinator(repo, tokens, client, sleep=_noop_sleep, clock=clock)
        return ContentPipeline(repo, handlers.registry(), review, publisher)
    return _build


async def test_runs_to_review_gate_then_publishes_after_approval(build, repo, graph, telegram, make_account):
    account = await make_account("alpha")
    handlers = Handlers()
    pipeline = build(handlers)

    result = await pipeline.start_for_account(account.id)

    assert result.status == "review_pending"
    assert result.stopped_reason == "awaiting_review"
    assert result.completed_layers == ["idea", "prompt_engineering", "video_generation", "composition", "review"]
    assert telegram.methods() == ["sendMessage"]
    content = await repo.require_content(result.content_id)
    assert content.review_message_id == 42

    # Nothing moves while the decision is pending.
    again = await pipeline.run(content.id)
    assert again.stopped_reason == "awaiting_review"
    assert graph.calls == []

    await pipeline.review.on_decision(content.id, "approve", "ann")
    final = await pipeline.run(content.id)

    assert final.status == "posted"
    assert final.completed_layers == ["distribution"]
    assert graph.count("publish") == 1
    layers = [log.layer for log in await repo.list_logs(content.id)]
    assert layers == ["idea", "prompt_engineering", "video_generation", "composition", "review", "distribution"]


async def test_rejected_content_is_terminal(build, repo, graph, make_account):
    account = await make_account("alpha")
    pipeline = build(Handlers())
    result = await pipeline.start_for_account(account.id)
    await pipeline.review.on_decision(result.content_id, "reject", "ann")

    final = await pipeline.run(result.content_id)

    assert final.status == "rejected"
    assert final.stopped_reason == "terminal"
    assert graph.calls == []


async def test_stage_failure_stops_and_resume_continues(build, repo, make_account):
    account = await make_account("alpha")
    failing = Handlers(fail_on="video_generation")

    result = await build(failing).start_for_account(account.id)

    assert result.status == "failed"
    assert result.stopped_reason == "failed:video_generation"
    assert "backend unavailable" in result.error
    with pytest.raises(ContentNotResumable):
        await build(failing).run(result.content_id)

    healthy = Handlers()
    resumed = await build(healthy).resume(result.content_id)

    assert healthy.seen == ["video_generation", "composition"]
    assert resumed.status == "review_pending"


async def test_retry_last_failed(build, make_account):
    account = await make_account("alpha")
    failed = await build(Handlers(fail_on="idea")).start_for_account(account.id)

    retried = await build(Handlers()).retry_last_failed()

    assert retried.content_id == failed.content_id
    assert retried.status == "review_pending"


async def test_retry_last_failed_without_failures(build):
    assert await build(Handlers()).retry_last_failed() is None


async def test_missing_handler_fails_the_stage(build, make_account):
    account = await make_account("alpha")
    pipeline = build(Handlers())
    pipeline.handlers = StageHandlers(idea=Handlers().idea)

    result = await pipeline.start_for_account(account.id)

    assert result.stopped_reason == "failed:prompt_engineering"
    assert "No handler registered" in result.error


async def test_review_delivery_failure_fails_review_stage(repo, graph, clock, make_account):
    account = await make_account("alpha")
    client = graph.client()
    tokens = TokenManager(repo, client, clock=clock)
    pipeline = ContentPipeline(
        repo,
        Handlers().registry(),
        ReviewGateway(repo, None, chat_id=None),
        PublishingCoordinator(repo, tokens, client, sleep=_noop_sleep),
    )

    result = await pipeline.start_for_account(account.id)

    assert result.stopped_reason == "failed:review"
    assert (await repo.require_content(result.content_id)).status == "failed"


class _Account:
    def __init__(self, schedule, *, failures=0, active=True, last_post_at=None):
        self.slug = "acct"
        self.posting_schedule = schedule
        self.consecutive_failures = failures
        self.is_active = active
        self.last_post_at = last_post_at


# 2026-10-19 is a Monday.
MONDAY_0910 = datetime(2026, 10, 19, 9, 10, tzinfo=timezone.utc)


@pytest.mark.parametrize(
    "schedule,posts_today,due",
    [
        ({"posting_times": ["09:00"], "posts_per_day": 1}, 0, True),
        ({"posting_times": ["09:00"], "posts_per_day": 1}, 1, False),
        ({"posting_times": ["08:00", "18:00"], "posts_per_day": 2}, 0, False),
        ({"posting_times": ["09:00"], "active_days": [1, 2, 3]}, 0, True),
        ({"posting_times": ["09:00"], "active_days": [0, 6]}, 0, False),
        ({}, 0, False),
    ],
)
def test_is_account_due(schedule, posts_today, due):
    assert is_account_due(_Account(schedule), MONDAY_0910, posts_today, max_consecutive_failures=5) is due


def test_account_with_too_many_failures_is_not_due():
    account = _Account({"posting_times": ["09:00"]}, failures=5)
    assert not is_account_due(account, MONDAY_0910, 0, max_consecutive_failures=5)
    assert not is_account_due(_Account({"posting_times": ["09:00"]}, active=False), MONDAY_0910, 0)


def test_slot_takes_one_post():
    schedule = {"posting_times": ["09:00", "18:00"], "posts_per_day": 2}
    posted_in_slot = _Account(schedule, last_post_at=MONDAY_0910 - timedelta(minutes=8))
    posted_yesterday = _Account(schedule, last_post_at=MONDAY_0910 - timedelta(days=1))

    assert not is_account_due(posted_in_slot, MONDAY_0910 + timedelta(minutes=15), 1, max_consecutive_failures=5)
    assert is_account_due(posted_yesterday, MONDAY_0910, 0, max_consecutive_failures=5)
    assert is_account_due(posted_in_slot, MONDAY_0910.replace(hour=18, minute=5), 1, max_consecutive_failures=5)


def test_unknown_timezone_is_never_due():
    account = _Account({"posting_times": ["09:00"], "timezone": "Mars/Olympus"})

    assert is_account_due(account, MONDAY_0910, 0, max_consecutive_failures=5) is False
    assert local_day_start(account, MONDAY_0910) == datetime(2026, 10, 19, tzinfo=timezone.utc)


def test_local_day_start_follows_schedule_timezone():
    account = _Account({"posting_times": ["21:00"], "timezone": "America/New_York"})
    # 02:00 UTC on the 19th is still the evening of the 18th in New York (EDT, UTC-4).
    now = datetime(2026, 10, 19, 2, 0, tzinfo=timezone.utc)

    assert local_day_start(account, now) == datetime(2026, 10, 18, 4, 0, tzinfo=timezone.utc)
