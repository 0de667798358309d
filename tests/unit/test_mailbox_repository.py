import pytest

from crm_sync.config import Settings
from crm_sync.features.email_sync.jobs.gmail_sync_job import build_sync_service
from crm_sync.features.email_sync.repository import mailbox_repository
from crm_sync.features.email_sync.repository.mailbox_repository import MailboxRepository
from crm_sync.services.infrastructure.encryption_service import generate_new_key


def _row(user_id, frequency=None):
    return {
        "user_id": user_id,
        "gmail_email": f"{user_id}@agency.com",
        "access_token": "enc-access",
        "refresh_token": "enc-refresh",
        "sync_frequency_minutes": frequency,
        "auto_link_confidence_level": "low",
    }


@pytest.mark.asyncio
async def test_buckets_use_configured_default_frequency(monkeypatch):
    seen = {}

    async def fake_fetch_all(pool, query, params=()):
        seen["params"] = params
        return [{"user_id": "u1", "frequency": 30}, {"user_id": "u2", "frequency": 5}, {"user_id": "u3", "frequency": 30}]

    monkeypatch.setattr(mailbox_repository, "fetch_all", fake_fetch_all)
    repo = MailboxRepository(pool=None, default_frequency_minutes=30)

    buckets = await repo.list_frequency_buckets()

    assert seen["params"] == (30,)
    assert buckets == {30: ["u1", "u3"], 5: ["u2"]}


@pytest.mark.asyncio
async def test_mailbox_without_frequency_gets_configured_default(monkeypatch):
    async def fake_fetch_one(pool, query, params=()):
        return _row("u1")

    monkeypatch.setattr(mailbox_repository, "fetch_one", fake_fetch_one)
    repo = MailboxRepository(pool=None, default_frequency_minutes=45)

    mailbox = await repo.get_active("u1")

    assert mailbox.sync_frequency_minutes == 45
    assert mailbox.confidence_level.value == "low"


def test_sync_service_repository_reads_frequency_setting():
    config = Settings(
        DEFAULT_SYNC_FREQUENCY_MINUTES=7,
        ENCRYPTION_KEY=generate_new_key(),
        GOOGLE_CLIENT_ID="client-id",
        GOOGLE_CLIENT_SECRET="client-secret",
    )

    service = build_sync_service(config, pool=None, gmail=None)

    assert service.mailboxes.default_frequency_minutes == 7
