import base64
from datetime import UTC, datetime

import pytest
import pytest_asyncio
from redis.exceptions import ConnectionError as RedisConnectionError

from crm_sync.features.email_sync.domain.models import MailboxConnection, SyncRunOutcome
from crm_sync.features.email_sync.services.sync_service import EmailSyncService
from crm_sync.features.matching import ConfidenceTier, Requirement
from crm_sync.features.offline_sync.errors import ConflictSyncError
from crm_sync.features.offline_sync.payloads import EntityType, is_temp_id
from crm_sync.features.offline_sync.queue import MutationQueue, QueueOperation
from crm_sync.services.google_gmail_service import GoogleGmailError
from crm_sync.services.google_oauth_service import GoogleOAuthError, TokenResponse
from crm_sync.services.infrastructure.encryption_service import TokenCipher, generate_new_key


class FakeRedis:
    """In-memory stand-in for RedisClient (TTLs are recorded, never expired)."""

    def __init__(self):
        self.store: dict[str, str] = {}
        self.ttls: dict[str, int] = {}
        self.published: list[tuple[str, str]] = []
        self.fail = False

    def _check(self):
        if self.fail:
            raise RedisConnectionError("redis down")

    async def ping(self) -> bool:
        self._check()
        return True

    async def get(self, key: str) -> str | None:
        self._check()
        return self.store.get(key)

    async def set_if_absent(self, key: str, value: str, ttl_s: int) -> bool:
        self._check()
        if key in self.store:
            return False
        self.store[key] = value
        self.ttls[key] = ttl_s
        return True

    async def delete_if_value(self, key: str, expected: str) -> bool:
        self._check()
        if self.store.get(key) != expected:
            return False
        del self.store[key]
        return True

    async def publish(self, channel: str, message: str) -> int:
        self._check()
        self.published.append((channel, message))
        return 0


class FakeGmail:
    """
    Gmail client double. Tokens in `rejected_tokens` get a 401; pages are
    keyed by page token (None for the first page).
    """

    def __init__(self):
        self.pages: dict[str | None, dict] = {None: {"messages": []}}
        self.messages: dict[str, dict] = {}
        self.rejected_tokens: set[str] = set()
        self.failing_ids: set[str] = set()
        self.list_calls: list[dict] = []
        self.get_calls: list[str] = []

    def _authorize(self, access_token: str) -> None:
        if access_token in self.rejected_tokens:
            raise GoogleGmailError("Gmail authorization expired. Please reconnect.", status_code=401)

    async def list_messages(self, access_token, max_results=100, query=None, page_token=None):
        self._authorize(access_token)
        self.list_calls.append({"token": access_token, "query": query, "page_token": page_token})
        return self.pages.get(page_token, {"messages": []})

    async def get_message(self, access_token, message_id, format="full"):
        self._authorize(access_token)
        self.get_calls.append(message_id)
        if message_id in self.failing_ids:
            raise GoogleGmailError("Gmail service temporarily unavailable.", status_code=500)
        return self.messages[message_id]

    async def close(self):
        return None

    def add_message(self, raw: dict) -> None:
        self.messages[raw["id"]] = raw

    def set_page(self, ids: list[str], next_page_token: str | None = None, page_token: str | None = None):
        page = {"messages": [{"id": mid, "threadId": f"t-{mid}"} for mid in ids]}
        if next_page_token:
            page["nextPageToken"] = next_page_token
        self.pages[page_token] = page


class FakeOAuth:
    def __init__(self, new_token: str = "fresh-access-token"):
        self.new_token = new_token
        self.calls: list[str] = []
        self.error: GoogleOAuthError | None = None

    async def refresh_access_token(self, refresh_token: str) -> TokenResponse:
        self.calls.append(refresh_token)
        if self.error is not None:
            raise self.error
        return TokenResponse({"access_token": self.new_token, "expires_in": 3600})


class FakeMailboxRepository:
    def __init__(self):
        self.mailboxes: dict[str, MailboxConnection] = {}
        self.token_updates: list[tuple[str, str]] = []

    async def get_active(self, user_id: str) -> MailboxConnection | None:
        return self.mailboxes.get(user_id)

    async def list_frequency_buckets(self) -> dict[int, list[str]]:
        buckets: dict[int, list[str]] = {}
        for mailbox in self.mailboxes.values():
            buckets.setdefault(mailbox.sync_frequency_minutes, []).append(mailbox.user_id)
        return buckets

    async def update_access_token(self, user_id: str, encrypted: str, expires_at) -> None:
        self.token_updates.append((user_id, encrypted))
        self.mailboxes[user_id].access_token = encrypted


class FakeRequirementRepository:
    def __init__(self):
        self.by_user: dict[str, list[Requirement]] = {}

    async def list_open(self, user_id: str) -> list[Requirement]:
        return [r for r in self.by_user.get(user_id, []) if r.is_open]


class FakeMatchRecordRepository:
    def __init__(self):
        self.records = []

    def _keys(self):
        return {(r.message_id, r.recipient_email) for r in self.records}

    async def exists(self, message_id: str) -> bool:
        return any(r.message_id == message_id for r in self.records)

    async def existing_message_ids(self, message_ids: list[str]) -> set[str]:
        return {r.message_id for r in self.records if r.message_id in message_ids}

    async def insert(self, record) -> bool:
        if (record.message_id, record.recipient_email) in self._keys():
            return False
        self.records.append(record)
        return True


class FakeSyncRunRepository:
    def __init__(self, mailboxes: FakeMailboxRepository):
        self.mailboxes = mailboxes
        self.completed: list[tuple[SyncRunOutcome, bool]] = []
        self.failed: list[tuple[str, str]] = []
        self._next = 0

    async def start_run(self, user_id: str) -> str:
        self._next += 1
        return f"run-{self._next}"

    async def last_failed_message_ids(self, user_id: str) -> list[str]:
        for outcome, _ in reversed(self.completed):
            if outcome.user_id == user_id:
                return list(outcome.failed_message_ids)
        return []

    async def complete_run(self, outcome: SyncRunOutcome, advance_cursor: bool) -> None:
        self.completed.append((outcome, advance_cursor))
        if advance_cursor:
            mailbox = self.mailboxes.mailboxes[outcome.user_id]
            mailbox.last_sync_message_id = outcome.cursor
            mailbox.last_sync_at = datetime.now(UTC)

    async def fail_run(self, run_id: str, error: str, details: dict) -> None:
        self.failed.append((run_id, error))


def _b64(text: str) -> str:
    return base64.urlsafe_b64encode(text.encode("utf-8")).decode("ascii").rstrip("=")


def make_gmail_message(
    message_id: str,
    subject: str,
    body: str,
    to: str = "Jane Doe <jane@acme.com>",
    internal_date_ms: int = 1_700_000_000_000,
) -> dict:
    """A messages.get(format=full) resource with a multipart body."""
    return {
        "id": message_id,
        "threadId": f"t-{message_id}",
        "internalDate": str(internal_date_ms),
        "snippet": body[:50],
        "payload": {
            "mimeType": "multipart/alternative",
            "headers": [
                {"name": "Subject", "value": subject},
                {"name": "From", "value": "Recruiter <me@agency.com>"},
                {"name": "To", "value": to},
            ],
            "parts": [
                {"mimeType": "text/plain", "body": {"data": _b64(body)}},
                {"mimeType": "text/html", "body": {"data": _b64(f"<p>{body}</p>")}},
            ],
        },
    }


@pytest.fixture
def fake_redis():
    return FakeRedis()


@pytest.fixture
def cipher():
    return TokenCipher(generate_new_key())


@pytest.fixture
def fake_gmail():
    return FakeGmail()


@pytest.fixture
def fake_oauth():
    return FakeOAuth()


@pytest.fixture
def mailbox_repo():
    return FakeMailboxRepository()


@pytest.fixture
def requirement_repo():
    return FakeRequirementRepository()


@pytest.fixture
def match_repo():
    return FakeMatchRecordRepository()


@pytest.fixture
def sync_run_repo(mailbox_repo):
    return FakeSyncRunRepository(mailbox_repo)


@pytest.fixture
def add_mailbox(mailbox_repo, cipher):
    def _add(user_id: str = "user-123", access_token: str = "access-1", **fields) -> MailboxConnection:
        mailbox = MailboxConnection(
            user_id=user_id,
            gmail_email=f"{user_id}@agency.com",
            access_token=cipher.encrypt(access_token),
            refresh_token=cipher.encrypt("refresh-1"),
            confidence_level=fields.pop("confidence_level", ConfidenceTier.MEDIUM),
            **fields,
        )
        mailbox_repo.mailboxes[user_id] = mailbox
        return mailbox

    return _add


@pytest.fixture
def sync_service(mailbox_repo, requirement_repo, match_repo, sync_run_repo, fake_gmail, fake_oauth, cipher):
    return EmailSyncService(
        mailboxes=mailbox_repo,
        requirements=requirement_repo,
        match_records=match_repo,
        sync_runs=sync_run_repo,
        gmail=fake_gmail,
        oauth=fake_oauth,
        cipher=cipher,
    )


@pytest.fixture
def gmail_message():
    return make_gmail_message


class FakeClock:
    """Manually advanced wall clock (seconds since epoch)."""

    def __init__(self, start: float = 1_700_000_000.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class InMemoryRemoteStore:
    """
    RemoteStore double keyed by (entity_type, id). Errors queued in
    `fail_next` are raised by the next apply calls, in order.
    """

    def __init__(self, clock: FakeClock):
        self.clock = clock
        self.rows: dict[tuple[str, str], dict] = {}
        self.fail_next: list[Exception] = []
        self.applied: list[tuple[str, str, str, bool]] = []
        self._next_id = 0

    def _key(self, entity_type, entity_id):
        return (EntityType(entity_type).value, entity_id)

    def put(self, entity_type, entity_id, **row) -> dict:
        stored = {"id": entity_id, "updated_at": self.clock(), **row}
        self.rows[self._key(entity_type, entity_id)] = stored
        return stored

    async def fetch(self, entity_type, entity_id):
        row = self.rows.get(self._key(entity_type, entity_id))
        return dict(row) if row else None

    async def apply(self, operation, entity_type, entity_id, row, *, force=False):
        operation = QueueOperation(operation)
        self.applied.append((operation.value, EntityType(entity_type).value, entity_id, force))
        if self.fail_next:
            raise self.fail_next.pop(0)

        values = {k: v for k, v in row.items() if k != "id"}
        key = self._key(entity_type, entity_id)

        if operation == QueueOperation.DELETE:
            self.rows.pop(key, None)
            return None

        if is_temp_id(entity_id):
            self._next_id += 1
            return self.put(entity_type, f"srv-{self._next_id}", **values)

        if operation == QueueOperation.CREATE and key in self.rows and not force:
            raise ConflictSyncError("duplicate key value violates unique constraint")
        if operation == QueueOperation.UPDATE and key not in self.rows and not force:
            raise ConflictSyncError("row no longer exists")

        existing = self.rows.get(key, {})
        merged = {k: v for k, v in existing.items() if k not in ("id", "updated_at")}
        merged.update(values)
        return self.put(entity_type, entity_id, **merged)


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def remote_store(clock):
    return InMemoryRemoteStore(clock)


@pytest_asyncio.fixture
async def mutation_queue(tmp_path, clock):
    queue = MutationQueue(tmp_path / "queue.db", clock=clock)
    await queue.open()
    yield queue
    await queue.close()
