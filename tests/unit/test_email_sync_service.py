import pytest

from crm_sync.features.email_sync.services.sync_service import IngestionError
from crm_sync.features.matching import Requirement

REACT_ROLE = Requirement(id="req-1", title="Senior React Developer", description="React, Redux")
REACT_BODY = "Hi Jane, sharing a Senior React Developer opening. Strong React and Redux skills required."


@pytest.fixture
def seeded(add_mailbox, requirement_repo, fake_gmail, gmail_message):
    add_mailbox("user-123")
    requirement_repo.by_user["user-123"] = [REACT_ROLE]
    fake_gmail.set_page(["m2", "m1"])
    fake_gmail.add_message(
        gmail_message("m2", "Senior React Developer", REACT_BODY, to="Jane <jane@acme.com>, bob@globex.com")
    )
    fake_gmail.add_message(gmail_message("m1", "Lunch", "See you at noon"))


@pytest.mark.asyncio
async def test_tick_links_matching_message_per_recipient(seeded, sync_service, match_repo, mailbox_repo):
    outcome = await sync_service.sync_mailbox("user-123")

    assert outcome.status == "completed"
    assert outcome.emails_fetched == 2
    assert outcome.emails_processed == 2
    assert outcome.emails_created == 2
    assert outcome.emails_matched == 1
    assert outcome.cursor == "id:m2"
    assert mailbox_repo.mailboxes["user-123"].last_sync_message_id == "id:m2"

    assert {r.recipient_email for r in match_repo.records} == {"jane@acme.com", "bob@globex.com"}
    record = match_repo.records[0]
    assert record.requirement_id == "req-1"
    assert record.match_confidence == 80
    assert record.needs_user_confirmation is False
    assert record.sent_via == "gmail_synced"


@pytest.mark.asyncio
async def test_second_tick_creates_nothing(seeded, sync_service, match_repo, sync_run_repo):
    await sync_service.sync_mailbox("user-123")
    outcome = await sync_service.sync_mailbox("user-123")

    assert outcome.emails_fetched == 0
    assert outcome.emails_created == 0
    assert len(match_repo.records) == 2
    # An empty tick does not move the cursor
    assert sync_run_repo.completed[-1][1] is False


@pytest.mark.asyncio
async def test_already_recorded_messages_are_skipped(seeded, sync_service, fake_gmail, match_repo, mailbox_repo):
    await sync_service.sync_mailbox("user-123")
    mailbox_repo.mailboxes["user-123"].last_sync_message_id = None
    fake_gmail.get_calls.clear()

    outcome = await sync_service.sync_mailbox("user-123")

    assert outcome.emails_skipped == 1
    assert "m2" not in fake_gmail.get_calls
    assert len(match_repo.records) == 2


@pytest.mark.asyncio
async def test_empty_page_leaves_cursor(add_mailbox, sync_service, sync_run_repo, mailbox_repo):
    add_mailbox("user-123", last_sync_message_id="id:m0")

    outcome = await sync_service.sync_mailbox("user-123")

    assert outcome.emails_fetched == 0
    assert mailbox_repo.mailboxes["user-123"].last_sync_message_id == "id:m0"
    assert sync_run_repo.completed[0][1] is False


@pytest.mark.asyncio
async def test_next_page_token_becomes_cursor(seeded, sync_service, fake_gmail, mailbox_repo):
    fake_gmail.set_page(["m2", "m1"], next_page_token="PAGE-2")
    fake_gmail.set_page(["m0"], page_token="PAGE-2")
    fake_gmail.add_message({"id": "m0", "payload": {}})

    await sync_service.sync_mailbox("user-123")
    assert mailbox_repo.mailboxes["user-123"].last_sync_message_id == "PAGE-2"

    await sync_service.sync_mailbox("user-123")
    assert fake_gmail.list_calls[-1]["page_token"] == "PAGE-2"
    assert mailbox_repo.mailboxes["user-123"].last_sync_message_id == "id:m0"


@pytest.mark.asyncio
async def test_failed_message_is_recorded_and_tick_continues(seeded, sync_service, fake_gmail, match_repo):
    fake_gmail.failing_ids.add("m1")

    outcome = await sync_service.sync_mailbox("user-123")

    assert outcome.status == "completed"
    assert outcome.failed_message_ids == ["m1"]
    assert len(match_repo.records) == 2


@pytest.mark.asyncio
async def test_failed_message_is_retried_on_next_tick(seeded, sync_service, fake_gmail, sync_run_repo, mailbox_repo):
    fake_gmail.failing_ids.add("m1")
    await sync_service.sync_mailbox("user-123")
    fake_gmail.failing_ids.clear()
    fake_gmail.get_calls.clear()

    outcome = await sync_service.sync_mailbox("user-123")

    assert outcome.emails_fetched == 0
    assert outcome.retried_message_ids == ["m1"]
    assert outcome.emails_processed == 1
    assert outcome.failed_message_ids == []
    assert fake_gmail.get_calls == ["m1"]
    # Retries alone do not move the cursor
    assert sync_run_repo.completed[-1][1] is False
    assert mailbox_repo.mailboxes["user-123"].last_sync_message_id == "id:m2"


@pytest.mark.asyncio
async def test_message_failing_its_retry_is_abandoned(seeded, sync_service, fake_gmail):
    fake_gmail.failing_ids.add("m1")
    await sync_service.sync_mailbox("user-123")

    retried = await sync_service.sync_mailbox("user-123")
    fake_gmail.get_calls.clear()
    third = await sync_service.sync_mailbox("user-123")

    assert retried.abandoned_message_ids == ["m1"]
    assert retried.failed_message_ids == []
    assert third.retried_message_ids == []
    assert fake_gmail.get_calls == []


@pytest.mark.asyncio
async def test_auth_failure_fails_run_without_moving_cursor(
    seeded, sync_service, fake_gmail, fake_oauth, sync_run_repo, mailbox_repo
):
    fake_gmail.rejected_tokens.update({"access-1", "fresh-access-token"})

    with pytest.raises(IngestionError) as exc_info:
        await sync_service.sync_mailbox("user-123")

    assert exc_info.value.recoverable is False
    assert exc_info.value.run_id == "run-1"
    assert sync_run_repo.failed[0][0] == "run-1"
    assert sync_run_repo.completed == []
    assert mailbox_repo.mailboxes["user-123"].last_sync_message_id is None
    assert len(fake_oauth.calls) == 1


@pytest.mark.asyncio
async def test_missing_mailbox_is_not_recoverable(sync_service):
    with pytest.raises(IngestionError) as exc_info:
        await sync_service.sync_mailbox("nobody")

    assert exc_info.value.recoverable is False


@pytest.mark.asyncio
async def test_high_tier_records_pending_confirmation(
    add_mailbox, requirement_repo, fake_gmail, gmail_message, sync_service, match_repo
):
    add_mailbox("user-123", confidence_level="high")
    requirement_repo.by_user["user-123"] = [REACT_ROLE]
    fake_gmail.set_page(["m2"])
    fake_gmail.add_message(gmail_message("m2", "Senior React Developer", REACT_BODY))

    outcome = await sync_service.sync_mailbox("user-123")

    assert outcome.emails_created == 1
    assert outcome.emails_matched == 0
    assert match_repo.records[0].link_status == "pending_confirmation"
