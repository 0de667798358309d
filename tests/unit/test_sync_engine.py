import pytest

from crm_sync.features.offline_sync.engine import CONFLICT_NOTE, SyncEngine, compute_backoff
from crm_sync.features.offline_sync.errors import PayloadValidationError, TransientSyncError
from crm_sync.features.offline_sync.events import SyncEventBus, SyncEventKind
from crm_sync.features.offline_sync.queue import QueueStatus


class StubElector:
    def __init__(self, is_leader: bool):
        self.is_leader = is_leader
        self.listeners = []

    def add_listener(self, listener):
        self.listeners.append(listener)
        return lambda: self.listeners.remove(listener)


@pytest.fixture
def events():
    return SyncEventBus()


@pytest.fixture
def recorded(events):
    seen = []
    events.subscribe(seen.append)
    return seen


@pytest.fixture
def engine(mutation_queue, remote_store, events, clock):
    return SyncEngine(
        mutation_queue,
        remote_store,
        events=events,
        max_retries=3,
        base_backoff_s=1.0,
        max_backoff_s=60.0,
        clock=clock,
    )


def test_compute_backoff_doubles_up_to_ceiling():
    assert compute_backoff(1, 1.0, 60.0) == 2.0
    assert compute_backoff(3, 1.0, 60.0) == 8.0
    assert compute_backoff(10, 1.0, 60.0) == 60.0


@pytest.mark.asyncio
async def test_successful_items_are_synced_once(engine, mutation_queue, remote_store, recorded):
    remote_store.put("requirement", "req-1", title="Old")
    item_id = await mutation_queue.enqueue("UPDATE", "requirement", "req-1", {"title": "New"})

    first = await engine.sync_pending_items()
    second = await engine.sync_pending_items()

    assert first.processed == 1
    assert second.processed == 0
    assert (await mutation_queue.get(item_id)).status == QueueStatus.SYNCED
    assert remote_store.rows[("requirement", "req-1")]["title"] == "New"
    assert len(remote_store.applied) == 1
    assert [e.kind for e in recorded] == [SyncEventKind.STARTED, SyncEventKind.COMPLETED]
    assert recorded[-1].data == {"processed": 1, "failed": 0, "conflicts": 0}


@pytest.mark.asyncio
async def test_transient_failure_backs_off(engine, mutation_queue, remote_store, clock):
    item_id = await mutation_queue.enqueue("DELETE", "document", "doc-1")
    remote_store.fail_next.append(TransientSyncError("connection reset"))

    result = await engine.sync_pending_items()
    item = await mutation_queue.get(item_id)

    assert result.failed == 1
    assert item.status == QueueStatus.FAILED
    assert item.retries == 1
    assert item.next_attempt_at == clock.now + 2.0
    assert item.last_error == "connection reset"


@pytest.mark.asyncio
async def test_item_not_yet_due_is_not_processed(engine, mutation_queue, remote_store, clock):
    await mutation_queue.enqueue("DELETE", "document", "doc-1")
    remote_store.fail_next.append(TransientSyncError("timeout"))
    await engine.sync_pending_items()

    result = await engine.sync_pending_items()
    assert result.processed == 0
    assert result.failed == 0

    clock.advance(2.0)
    result = await engine.sync_pending_items()
    assert result.processed == 1


@pytest.mark.asyncio
async def test_retry_ceiling_fails_permanently(engine, mutation_queue, remote_store, clock):
    item_id = await mutation_queue.enqueue("DELETE", "document", "doc-1")
    remote_store.fail_next.extend(TransientSyncError("down") for _ in range(3))

    for _ in range(3):
        await engine.sync_pending_items()
        clock.advance(3600)

    item = await mutation_queue.get(item_id)
    assert item.retries == 3
    assert item.is_permanently_failed
    assert await mutation_queue.select_due(10) == []


@pytest.mark.asyncio
async def test_invalid_payload_fails_permanently_without_calling_remote(engine, mutation_queue, remote_store):
    item_id = await mutation_queue.enqueue("CREATE", "consultant", "temp-1", {"email": "a@b.com"})

    result = await engine.sync_pending_items()
    item = await mutation_queue.get(item_id)

    assert result.failed == 1
    assert item.is_permanently_failed
    assert item.retries == 0
    assert "name" in item.last_error
    assert remote_store.applied == []


@pytest.mark.asyncio
async def test_remote_validation_error_is_permanent(engine, mutation_queue, remote_store):
    item_id = await mutation_queue.enqueue("DELETE", "document", "doc-1")
    remote_store.fail_next.append(PayloadValidationError("violates check constraint"))

    await engine.sync_pending_items()

    assert (await mutation_queue.get(item_id)).is_permanently_failed


@pytest.mark.asyncio
async def test_temp_id_create_rewrites_follow_up_items(engine, mutation_queue, remote_store):
    create = await mutation_queue.enqueue("CREATE", "requirement", "temp-1", {"title": "Lead"})
    update = await mutation_queue.enqueue("UPDATE", "requirement", "temp-1", {"title": "Lead dev"})
    interview = await mutation_queue.enqueue("CREATE", "interview", "temp-2", {"requirement_id": "temp-1"})

    result = await engine.sync_pending_items()

    assert result.processed == 3
    assert (await mutation_queue.get(create)).entity_id == "srv-1"
    assert (await mutation_queue.get(update)).entity_id == "srv-1"
    assert remote_store.rows[("requirement", "srv-1")]["title"] == "Lead dev"
    assert remote_store.rows[("interview", "srv-2")]["requirement_id"] == "srv-1"
    assert (await mutation_queue.get(interview)).status == QueueStatus.SYNCED


@pytest.mark.asyncio
async def test_conflict_resolved_with_local_version(engine, mutation_queue, remote_store, clock, recorded):
    item_id = await mutation_queue.enqueue("UPDATE", "requirement", "req-1", {"title": "Mine"})
    clock.advance(5)
    remote_store.put("requirement", "req-1", title="Theirs")

    result = await engine.sync_pending_items()

    assert result.conflicts == 1
    assert result.processed == 0
    item = await mutation_queue.get(item_id)
    assert item.status == QueueStatus.SYNCED
    assert item.last_error == CONFLICT_NOTE
    assert remote_store.rows[("requirement", "req-1")]["title"] == "Mine"

    conflicts = await mutation_queue.list_conflicts()
    assert conflicts[0].local_version == {"title": "Mine"}
    assert conflicts[0].remote_version["title"] == "Theirs"
    assert SyncEventKind.CONFLICTS in [e.kind for e in recorded]


@pytest.mark.asyncio
async def test_update_of_missing_row_is_forced(engine, mutation_queue, remote_store):
    await mutation_queue.enqueue("UPDATE", "requirement", "req-9", {"title": "Recreated"})

    result = await engine.sync_pending_items()

    assert result.conflicts == 1
    assert remote_store.applied[-1] == ("UPDATE", "requirement", "req-9", True)
    assert remote_store.rows[("requirement", "req-9")]["title"] == "Recreated"


@pytest.mark.asyncio
async def test_failure_holds_later_items_for_same_entity(engine, mutation_queue, remote_store):
    remote_store.put("requirement", "req-1", title="A")
    first = await mutation_queue.enqueue("UPDATE", "requirement", "req-1", {"title": "B"})
    second = await mutation_queue.enqueue("UPDATE", "requirement", "req-1", {"title": "C"})
    remote_store.fail_next.append(TransientSyncError("timeout"))

    result = await engine.sync_pending_items()

    assert result.failed == 1
    assert result.processed == 0
    assert (await mutation_queue.get(first)).status == QueueStatus.FAILED
    assert (await mutation_queue.get(second)).status == QueueStatus.PENDING


@pytest.mark.asyncio
async def test_permanent_failure_releases_later_items_for_same_entity(engine, mutation_queue, remote_store):
    remote_store.put("requirement", "req-1", title="A")
    first = await mutation_queue.enqueue("UPDATE", "requirement", "req-1", {"title": "B"})
    second = await mutation_queue.enqueue("UPDATE", "requirement", "req-1", {"title": "C"})
    remote_store.fail_next.append(PayloadValidationError("value too long for column"))

    result = await engine.sync_pending_items()

    assert result.failed == 1
    assert result.processed == 1
    assert (await mutation_queue.get(first)).next_attempt_at is None
    assert (await mutation_queue.get(second)).status == QueueStatus.SYNCED
    assert remote_store.rows[("requirement", "req-1")]["title"] == "C"


@pytest.mark.asyncio
async def test_follower_and_offline_engines_do_not_drain(mutation_queue, remote_store, clock):
    await mutation_queue.enqueue("DELETE", "document", "doc-1")

    follower = SyncEngine(mutation_queue, remote_store, elector=StubElector(False), clock=clock)
    assert await follower.handle_focus() is None

    leader = SyncEngine(mutation_queue, remote_store, elector=StubElector(True), clock=clock)
    leader.handle_offline()
    assert await leader.handle_focus() is None
    assert remote_store.applied == []

    result = await leader.handle_online()
    assert result.processed == 1


@pytest.mark.asyncio
async def test_request_retry_resets_and_drains(engine, mutation_queue, remote_store):
    item_id = await mutation_queue.enqueue("CREATE", "consultant", "temp-1", {"email": "a@b.com"})
    await engine.sync_pending_items()

    result = await engine.request_retry(item_id)

    # Still invalid, so it fails again, but it was attempted with a fresh budget
    assert result.failed == 1
    assert (await mutation_queue.get(item_id)).retries == 0


@pytest.mark.asyncio
async def test_batch_storage_error_emits_error_event(engine, mutation_queue, recorded):
    await mutation_queue.enqueue("DELETE", "document", "doc-1")
    await mutation_queue.close()

    result = await engine.sync_pending_items()

    assert result.processed == 0
    assert recorded[-1].kind == SyncEventKind.ERROR


@pytest.mark.asyncio
async def test_maintenance_prunes_and_caps(mutation_queue, remote_store, clock):
    engine = SyncEngine(
        mutation_queue, remote_store, synced_retention_s=3600, max_entries=1, clock=clock
    )
    synced = await mutation_queue.enqueue("DELETE", "document", "doc-1")
    await mutation_queue.mark_synced(synced)
    await mutation_queue.enqueue("DELETE", "document", "doc-2")
    await mutation_queue.enqueue("DELETE", "document", "doc-3")

    clock.advance(7200)
    summary = await engine.run_maintenance()

    assert summary == {"pruned_synced": 1, "pruned_failed": 0, "evicted": 0}
    assert len(await mutation_queue.list_items()) == 2
