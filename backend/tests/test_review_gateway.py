import pytest

from reel_factory.models import ContentStatus
from reel_factory.services.review_gateway import (
    DecisionAlreadyRecorded,
    ReviewChannelUnavailable,
    ReviewGateway,
    parse_callback_data,
)



@pytest.fixture
def gateway(repo, telegram, clock):
    return ReviewGateway(repo, telegram.client(), chat_id="-100", authorized_user_ids=[7], clock=clock)


def _callback(query_id, data, user_id=7):
    return {
        "update_id": 1,
        "callback_query": {
            "id": query_id,
            "from": {"id": user_id, "username": "reviewer"},
            "data": data,
            "message": {"message_id": 42, "chat": {"id": -100}, "text": "New content ready for review"},
        },
    }


def test_parse_callback_data():
    assert parse_callback_data("approve:abc") == ("approve", "abc")
    with pytest.raises(ValueError):
        parse_callback_data("approve")
    with pytest.raises(ValueError):
        parse_callback_data("publish:abc")


async def test_send_review_request(gateway, telegram, make_content):
    content = await make_content(ContentStatus.composed, caption="Cat <3", idea_data={"idea": "cat naps"})

    receipt = await gateway.send_review_request(content, "https://cdn.test/v.mp4")

    assert (receipt.message_id, receipt.chat_id) == (42, "-100")
    [(method, payload)] = telegram.calls
    assert method == "sendMessage"
    assert "Cat &lt;3" in payload["text"]
    buttons = payload["reply_markup"]["inline_keyboard"][0]
    assert [b["callback_data"] for b in buttons] == [f"approve:{content.id}", f"reject:{content.id}"]


async def test_send_review_request_without_channel(repo, make_content):
    content = await make_content(ContentStatus.composed)
    with pytest.raises(ReviewChannelUnavailable):
        await ReviewGateway(repo, None, chat_id=None).send_review_request(content, "x")


async def test_approve_records_reviewer(gateway, repo, make_content):
    content = await make_content(ContentStatus.review_pending)

    updated = await gateway.on_decision(content.id, "approve", "ann", "looks good")

    assert updated.status == "approved"
    assert updated.reviewed_by == "ann"
    assert updated.review_notes == "looks good"
    assert updated.reviewed_at is not None


async def test_second_decision_is_refused_and_changes_nothing(gateway, repo, make_content):
    content = await make_content(ContentStatus.review_pending)
    await gateway.on_decision(content.id, "reject", "ann", "off brand")

    with pytest.raises(DecisionAlreadyRecorded):
        await gateway.on_decision(content.id, "approve", "bob", "changed my mind")

    reloaded = await repo.require_content(content.id)
    assert reloaded.status == "rejected"
    assert reloaded.reviewed_by == "ann"
    assert reloaded.review_notes == "off brand"


async def test_callback_approves_and_edits_message(gateway, repo, telegram, make_content):
    content = await make_content(ContentStatus.review_pending)

    result = await gateway.handle_update(_callback("cb-1", f"approve:{content.id}"))

    assert result["ok"] is True
    assert (await repo.require_content(content.id)).status == "approved"
    assert telegram.methods() == ["answerCallbackQuery", "editMessageText"]
    assert "APPROVED" in telegram.calls[-1][1]["text"]


async def test_redelivered_callback_is_ignored(gateway, repo, telegram, make_content):
    content = await make_content(ContentStatus.review_pending)
    await gateway.handle_update(_callback("cb-1", f"reject:{content.id}"))

    result = await gateway.handle_update(_callback("cb-1", f"reject:{content.id}"))

    assert result["duplicate"] is True
    assert telegram.methods().count("answerCallbackQuery") == 1


async def test_second_button_press_reports_existing_decision(gateway, repo, telegram, make_content):
    content = await make_content(ContentStatus.review_pending)
    await gateway.handle_update(_callback("cb-1", f"approve:{content.id}"))

    result = await gateway.handle_update(_callback("cb-2", f"reject:{content.id}"))

    assert result["error"] == "decision_already_recorded"
    assert (await repo.require_content(content.id)).status == "approved"


async def test_unauthorized_user(gateway, repo, make_content):
    content = await make_content(ContentStatus.review_pending)

    result = await gateway.handle_update(_callback("cb-1", f"approve:{content.id}", user_id=99))

    assert result["error"] == "unauthorized"
    assert (await repo.require_content(content.id)).status == "review_pending"


async def test_non_callback_update_is_ignored(gateway):
    assert await gateway.handle_update({"update_id": 5, "message": {"text": "/start"}}) == {
        "ok": True,
        "handled": False,
    }
