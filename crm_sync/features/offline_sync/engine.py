"""
Sync engine: drains the offline mutation queue into the remote store.

Only the elected leader drains, and only while the device reports online.
Drains are triggered by coming online, regaining focus, an explicit retry
request or a new queue entry; concurrent triggers coalesce into one drain
plus at most one follow-up pass.

Item transitions:
    pending → syncing → synced
    syncing → failed (next_attempt_at = now + backoff) → syncing when due
    syncing → failed permanently (retry ceiling reached, or invalid payload)

Conflicts are resolved with the local version winning: the value is forced
onto the remote, the conflict is recorded and the item is marked synced.
"""

import asyncio
import time
from collections.abc import Callable
from dataclasses import dataclass
from datetime import datetime
from typing import Any

from crm_sync.features.offline_sync.errors import (
    ConflictSyncError,
    PayloadValidationError,
    QueueStorageError,
    SyncError,
)
from crm_sync.features.offline_sync.events import SyncEventBus, SyncEventKind
from crm_sync.features.offline_sync.leader import LeaderElector
from crm_sync.features.offline_sync.payloads import is_temp_id, validate_payload
from crm_sync.features.offline_sync.queue import (
    ChangeKind,
    MutationQueue,
    QueueChange,
    QueueItem,
    QueueOperation,
)
from crm_sync.features.offline_sync.remote_store import RemoteStore
from crm_sync.infrastructure.observability.logging import get_logger

logger = get_logger(__name__)

CONFLICT_NOTE = "Conflict resolved: local version applied"
MAX_ERROR_LENGTH = 500

_OUTCOME_SYNCED = "synced"
_OUTCOME_CONFLICT = "conflict"
_OUTCOME_FAILED = "failed"


@dataclass(slots=True)
class SyncBatchResult:
    processed: int = 0
    failed: int = 0
    conflicts: int = 0
    skipped: int = 0

    def to_dict(self) -> dict[str, int]:
        return {
            "processed": self.processed,
            "failed": self.failed,
            "conflicts": self.conflicts,
            "skipped": self.skipped,
        }


def compute_backoff(retries: int, base_s: float, max_s: float) -> float:
    return min(max_s, base_s * (2**retries))


def _as_timestamp(value: Any) -> float | None:
    if value is None:
        return None
    if isinstance(value, datetime):
        return value.timestamp()
    if isinstance(value, (int, float)):
        return float(value)
    try:
        return datetime.fromisoformat(str(value).replace("Z", "+00:00")).timestamp()
    except ValueError:
        return None


class SyncEngine:
    def __init__(
        self,
        queue: MutationQueue,
        remote: RemoteStore,
        events: SyncEventBus | None = None,
        elector: LeaderElector | None = None,
        batch_size: int = 20,
        max_retries: int = 5,
        base_backoff_s: float = 1.0,
        max_backoff_s: float = 3600.0,
        synced_retention_s: float = 24 * 3600,
        failed_retention_s: float = 7 * 24 * 3600,
        max_entries: int = 1000,
        max_total_bytes: int = 5 * 1024 * 1024,
        online: bool = True,
        clock: Callable[[], float] = time.time,
    ):
        self.queue = queue
        self.remote = remote
        self.events = events or SyncEventBus()
        self.elector = elector
        self.batch_size = batch_size
        self.max_retries = max_retries
        self.base_backoff_s = base_backoff_s
        self.max_backoff_s = max_backoff_s
        self.synced_retention_s = synced_retention_s
        self.failed_retention_s = failed_retention_s
        self.max_entries = max_entries
        self.max_total_bytes = max_total_bytes
        self._online = online
        self._clock = clock

        self._drain_lock = asyncio.Lock()
        self._rerun = False
        self._tasks: set[asyncio.Task] = set()
        self._detach: list[Callable[[], None]] = []

    # ------------------------------------------------------------------
    # Wiring
    # ------------------------------------------------------------------

    def attach(self) -> None:
        """Subscribe to queue changes and leadership changes."""
        self._detach.append(self.queue.add_listener(self._on_queue_change))
        if self.elector is not None:
            self._detach.append(self.elector.add_listener(self._on_leadership_change))

    async def stop(self) -> None:
        for detach in self._detach:
            detach()
        self._detach.clear()
        tasks = list(self._tasks)
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)

    @property
    def is_online(self) -> bool:
        return self._online

    @property
    def is_leader(self) -> bool:
        return self.elector is None or self.elector.is_leader

    def can_sync(self) -> bool:
        return self._online and self.is_leader

    def _spawn(self, reason: str) -> None:
        task = asyncio.create_task(self._trigger(reason), name=f"sync-{reason}")
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

    def _on_queue_change(self, change: QueueChange) -> None:
        if change.kind in (ChangeKind.ENQUEUED, ChangeKind.RETRY_REQUESTED) and self.can_sync():
            self._spawn(f"queue-{change.kind.value}")

    def _on_leadership_change(self, is_leader: bool) -> None:
        if is_leader and self._online:
            self._spawn("leadership")

    # ------------------------------------------------------------------
    # Triggers
    # ------------------------------------------------------------------

    async def handle_online(self) -> SyncBatchResult | None:
        self._online = True
        logger.info("Device online, syncing queue")
        return await self._trigger("online")

    def handle_offline(self) -> None:
        self._online = False
        logger.info("Device offline, queue drains paused")

    async def handle_focus(self) -> SyncBatchResult | None:
        return await self._trigger("focus")

    async def request_retry(self, item_id: str | None = None) -> SyncBatchResult | None:
        """Reset failed items (one or all) and drain if allowed."""
        await self.queue.reset_for_retry(item_id)
        return await self._trigger("retry")

    async def _trigger(self, reason: str) -> SyncBatchResult | None:
        if not self.can_sync():
            logger.debug("Sync trigger ignored", reason=reason, online=self._online, leader=self.is_leader)
            return None
        if self._drain_lock.locked():
            self._rerun = True
            return None

        result = await self.sync_pending_items()
        while self._rerun and self.can_sync():
            self._rerun = False
            result = await self.sync_pending_items()
        return result

    # ------------------------------------------------------------------
    # Batch runner
    # ------------------------------------------------------------------

    async def sync_pending_items(self) -> SyncBatchResult:
        """Replay one batch of due items. Never raises."""
        async with self._drain_lock:
            result = SyncBatchResult()
            try:
                await self._run_batch(result)
            except Exception as e:
                logger.error("Sync batch failed", error=str(e), error_type=type(e).__name__, **result.to_dict())
                self.events.emit(SyncEventKind.ERROR, error=str(e))
            return result

    async def _run_batch(self, result: SyncBatchResult) -> None:
        items = await self.queue.select_due(self.batch_size, now=self._clock())
        if not items:
            return

        self.events.emit(SyncEventKind.STARTED, item_count=len(items))
        logger.info("Sync batch started", item_count=len(items))

        blocked: set[tuple[str, str]] = set()
        ids_rewritten = False

        for item in items:
            if ids_rewritten:
                # Entity ids or payload references may now point at server ids
                item = await self.queue.get(item.id) or item

            key = (item.entity_type.value, item.entity_id)
            if key in blocked:
                result.skipped += 1
                continue

            outcome, rewritten = await self._replay(item)
            ids_rewritten = ids_rewritten or rewritten

            if outcome == _OUTCOME_SYNCED:
                result.processed += 1
            elif outcome == _OUTCOME_CONFLICT:
                result.conflicts += 1
            else:
                result.failed += 1
                # Later operations on this entity wait while this one is still retrying
                failed = await self.queue.get(item.id)
                if failed is not None and failed.next_attempt_at is not None:
                    blocked.add(key)

        await self.queue.set_last_sync_time(self._clock())

        logger.info("Sync batch completed", **result.to_dict())
        self.events.emit(
            SyncEventKind.COMPLETED,
            processed=result.processed,
            failed=result.failed,
            conflicts=result.conflicts,
        )
        if result.conflicts:
            self.events.emit(SyncEventKind.CONFLICTS, conflict_count=result.conflicts)

    async def _replay(self, item: QueueItem) -> tuple[str, bool]:
        """Apply one item and move it to its next state. Returns (outcome, ids_rewritten)."""
        await self.queue.mark_syncing(item.id)

        row: dict[str, Any] = {}
        try:
            row = validate_payload(item.operation.value, item.entity_type, item.payload).to_row()
            applied = await self._apply_checked(item, row)
            rewritten = await self._adopt_server_id(item, applied)
            await self.queue.mark_synced(item.id)
            logger.debug("Queue item synced", item_id=item.id, entity_type=item.entity_type.value)
            return _OUTCOME_SYNCED, rewritten

        except PayloadValidationError as e:
            await self._fail_permanently(item, e, item.retries)
            return _OUTCOME_FAILED, False

        except ConflictSyncError as e:
            return await self._resolve_conflict(item, row, e)

        except (SyncError, QueueStorageError) as e:
            await self._fail_transient(item, e)
            return _OUTCOME_FAILED, False

        except Exception as e:
            logger.error("Unexpected error replaying item", item_id=item.id, error_type=type(e).__name__)
            await self._fail_transient(item, e)
            return _OUTCOME_FAILED, False

    async def _apply_checked(self, item: QueueItem, row: dict[str, Any]) -> dict[str, Any] | None:
        if item.operation == QueueOperation.UPDATE:
            remote = await self.remote.fetch(item.entity_type, item.entity_id)
            if remote is None:
                raise ConflictSyncError(f"{item.entity_type.value} {item.entity_id} missing on remote")
            remote_updated = _as_timestamp(remote.get("updated_at"))
            if remote_updated is not None and remote_updated > item.created_at:
                raise ConflictSyncError("Remote changed after local edit", remote_version=remote)
        return await self.remote.apply(item.operation, item.entity_type, item.entity_id, row)

    async def _adopt_server_id(self, item: QueueItem, applied: dict[str, Any] | None) -> bool:
        if item.operation != QueueOperation.CREATE or not is_temp_id(item.entity_id):
            return False
        if not applied or applied.get("id") is None:
            return False
        server_id = str(applied["id"])
        await self.queue.rewrite_entity_id(item.entity_type, item.entity_id, server_id)
        return True

    async def _resolve_conflict(
        self, item: QueueItem, row: dict[str, Any], conflict: ConflictSyncError
    ) -> tuple[str, bool]:
        remote_version = conflict.remote_version
        try:
            if remote_version is None:
                remote_version = await self.remote.fetch(item.entity_type, item.entity_id)
            await self.queue.record_conflict(
                item.entity_type,
                item.entity_id,
                local_version=row,
                remote_version=remote_version,
                strategy="local",
                queue_item_id=item.id,
            )
            applied = await self.remote.apply(
                item.operation, item.entity_type, item.entity_id, row, force=True
            )
            rewritten = await self._adopt_server_id(item, applied)
            await self.queue.mark_synced(item.id, note=CONFLICT_NOTE)
        except (ConflictSyncError, PayloadValidationError) as e:
            # Forcing the local version still collides; retrying will not help
            await self._fail_permanently(item, e, item.retries)
            return _OUTCOME_FAILED, False
        except (SyncError, QueueStorageError) as e:
            await self._fail_transient(item, e)
            return _OUTCOME_FAILED, False

        logger.warning(
            "Sync conflict resolved with local version",
            item_id=item.id,
            entity_type=item.entity_type.value,
            entity_id=item.entity_id,
            reason=str(conflict),
        )
        return _OUTCOME_CONFLICT, rewritten

    async def _fail_transient(self, item: QueueItem, error: Exception) -> None:
        retries = item.retries + 1
        message = str(error)[:MAX_ERROR_LENGTH]
        if retries >= self.max_retries:
            await self.queue.mark_failed_permanently(item.id, message, retries)
            logger.error(
                "Queue item hit retry ceiling",
                item_id=item.id,
                retries=retries,
                error=message,
            )
            return

        delay = compute_backoff(retries, self.base_backoff_s, self.max_backoff_s)
        await self.queue.mark_failed(item.id, message, retries, self._clock() + delay)
        logger.warning(
            "Queue item failed, will retry",
            item_id=item.id,
            retries=retries,
            retry_in_s=delay,
            error=message,
        )

    async def _fail_permanently(self, item: QueueItem, error: Exception, retries: int) -> None:
        message = str(error)[:MAX_ERROR_LENGTH]
        await self.queue.mark_failed_permanently(item.id, message, retries)
        logger.error("Queue item rejected", item_id=item.id, error=message)

    # ------------------------------------------------------------------
    # Maintenance (run by the leader on its maintenance interval)
    # ------------------------------------------------------------------

    async def run_maintenance(self) -> dict[str, int]:
        now = self._clock()
        pruned_synced = await self.queue.prune_synced(now - self.synced_retention_s)
        pruned_failed = await self.queue.prune_failed(now - self.failed_retention_s)
        evicted = await self.queue.enforce_storage_limits(self.max_entries, self.max_total_bytes)
        summary = {"pruned_synced": pruned_synced, "pruned_failed": pruned_failed, "evicted": evicted}
        logger.info("Queue maintenance completed", **summary)
        return summary
