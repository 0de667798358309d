"""
Durable local queue of pending mutations, stored in SQLite.

Tables:
- sync_queue: one row per queued mutation with its sync state
- sync_conflicts: conflicts detected (and auto-resolved) during replay
- sync_metadata: small key/value facts such as the last sync time

Status state machine: pending → syncing → synced, or syncing → failed
(next_attempt_at set, retried when due) and finally failed with no
next_attempt_at once the retry ceiling is hit or the payload is invalid.

All blocking sqlite calls run in a worker thread; a lock serialises them.
"""

import asyncio
import json
import sqlite3
import threading
import time
import uuid
from collections.abc import Callable
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Any

from crm_sync.features.offline_sync.errors import QueueStorageError
from crm_sync.features.offline_sync.payloads import EntityType
from crm_sync.infrastructure.observability.logging import get_logger

logger = get_logger(__name__)


class QueueOperation(str, Enum):
    CREATE = "CREATE"
    UPDATE = "UPDATE"
    DELETE = "DELETE"


class QueueStatus(str, Enum):
    PENDING = "pending"
    SYNCING = "syncing"
    SYNCED = "synced"
    FAILED = "failed"


class ChangeKind(str, Enum):
    ENQUEUED = "enqueued"
    UPDATED = "updated"
    RETRY_REQUESTED = "retry_requested"
    PRUNED = "pruned"


@dataclass(slots=True)
class QueueItem:
    id: str
    seq: int
    operation: QueueOperation
    entity_type: EntityType
    entity_id: str
    payload: dict[str, Any]
    created_at: float
    updated_at: float
    status: QueueStatus = QueueStatus.PENDING
    retries: int = 0
    last_error: str | None = None
    next_attempt_at: float | None = None
    synced_at: float | None = None

    @property
    def is_permanently_failed(self) -> bool:
        return self.status == QueueStatus.FAILED and self.next_attempt_at is None

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "operation": self.operation.value,
            "entity_type": self.entity_type.value,
            "entity_id": self.entity_id,
            "payload": self.payload,
            "status": self.status.value,
            "retries": self.retries,
            "last_error": self.last_error,
            "next_attempt_at": self.next_attempt_at,
            "created_at": self.created_at,
            "updated_at": self.updated_at,
            "synced_at": self.synced_at,
            "permanently_failed": self.is_permanently_failed,
        }


@dataclass(slots=True, frozen=True)
class QueueChange:
    kind: ChangeKind
    item_id: str | None = None


@dataclass(slots=True)
class ConflictRecord:
    id: str
    entity_type: str
    entity_id: str
    strategy: str
    local_version: dict[str, Any]
    remote_version: dict[str, Any] | None
    detected_at: float
    queue_item_id: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "entity_type": self.entity_type,
            "entity_id": self.entity_id,
            "strategy": self.strategy,
            "local_version": self.local_version,
            "remote_version": self.remote_version,
            "detected_at": self.detected_at,
            "queue_item_id": self.queue_item_id,
        }


@dataclass(slots=True)
class SyncStatus:
    is_syncing: bool
    items_remaining: int
    failed_items: int
    total_items: int
    progress: int
    last_sync_time: float | None
    counts: dict[str, int] = field(default_factory=dict)


# An item is due when pending without a scheduled attempt, or its attempt time has passed
_DUE = """(
    ({t}.status = 'pending' AND ({t}.next_attempt_at IS NULL OR {t}.next_attempt_at <= :now))
    OR ({t}.status = 'failed' AND {t}.next_attempt_at IS NOT NULL AND {t}.next_attempt_at <= :now)
)"""

_SCHEMA = """
    CREATE TABLE IF NOT EXISTS sync_queue (
        seq INTEGER PRIMARY KEY AUTOINCREMENT,
        id TEXT NOT NULL UNIQUE,
        operation TEXT NOT NULL,
        entity_type TEXT NOT NULL,
        entity_id TEXT NOT NULL,
        payload TEXT NOT NULL,
        status TEXT NOT NULL DEFAULT 'pending',
        retries INTEGER NOT NULL DEFAULT 0,
        last_error TEXT,
        next_attempt_at REAL,
        created_at REAL NOT NULL,
        updated_at REAL NOT NULL,
        synced_at REAL
    );

    CREATE INDEX IF NOT EXISTS idx_sync_queue_status ON sync_queue(status);
    CREATE INDEX IF NOT EXISTS idx_sync_queue_entity ON sync_queue(entity_type, entity_id);

    CREATE TABLE IF NOT EXISTS sync_conflicts (
        id TEXT PRIMARY KEY,
        entity_type TEXT NOT NULL,
        entity_id TEXT NOT NULL,
        strategy TEXT NOT NULL,
        local_version TEXT NOT NULL,
        remote_version TEXT,
        queue_item_id TEXT,
        detected_at REAL NOT NULL
    );

    CREATE TABLE IF NOT EXISTS sync_metadata (
        key TEXT PRIMARY KEY,
        value TEXT NOT NULL,
        updated_at REAL NOT NULL
    );
"""

Listener = Callable[[QueueChange], None]


class MutationQueue:
    """
    Usage:
        queue = MutationQueue(Path("data/offline_queue.db"))
        await queue.open()
        item_id = await queue.enqueue("UPDATE", "requirement", req_id, {"title": "..."})
        ...
        await queue.close()
    """

    def __init__(self, db_path: Path, clock: Callable[[], float] = time.time):
        self._db_path = Path(db_path)
        self._clock = clock
        self._conn: sqlite3.Connection | None = None
        self._lock = threading.Lock()
        self._listeners: list[Listener] = []

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def open(self) -> None:
        await asyncio.to_thread(self._connect)
        logger.info("Offline queue opened", path=str(self._db_path))

    def _connect(self) -> None:
        if self._conn is not None:
            return
        try:
            self._db_path.parent.mkdir(parents=True, exist_ok=True)
            conn = sqlite3.connect(str(self._db_path), check_same_thread=False)
            conn.row_factory = sqlite3.Row
            conn.execute("PRAGMA journal_mode=WAL")
            conn.executescript(_SCHEMA)
            conn.commit()
        except sqlite3.Error as e:
            raise QueueStorageError(f"Cannot open queue store: {e}", operation="open") from e
        self._conn = conn

    async def close(self) -> None:
        def _close() -> None:
            with self._lock:
                if self._conn is not None:
                    self._conn.close()
                    self._conn = None

        await asyncio.to_thread(_close)
        logger.info("Offline queue closed", path=str(self._db_path))

    @property
    def is_open(self) -> bool:
        return self._conn is not None

    async def _run(self, operation: str, fn: Callable[[sqlite3.Connection], Any]) -> Any:
        def _locked() -> Any:
            with self._lock:
                if self._conn is None:
                    raise QueueStorageError("Queue store not open", operation=operation)
                try:
                    with self._conn:
                        return fn(self._conn)
                except sqlite3.Error as e:
                    logger.error("Queue store error", operation=operation, error=str(e))
                    raise QueueStorageError(f"{operation} failed: {e}", operation=operation) from e

        return await asyncio.to_thread(_locked)

    # ------------------------------------------------------------------
    # Change notifications
    # ------------------------------------------------------------------

    def add_listener(self, listener: Listener) -> Callable[[], None]:
        self._listeners.append(listener)

        def _remove() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return _remove

    def _notify(self, kind: ChangeKind, item_id: str | None = None) -> None:
        change = QueueChange(kind, item_id)
        for listener in list(self._listeners):
            try:
                listener(change)
            except Exception as e:
                logger.error("Queue listener failed", kind=kind.value, error=str(e))

    # ------------------------------------------------------------------
    # Items
    # ------------------------------------------------------------------

    @staticmethod
    def _row_to_item(row: sqlite3.Row | None) -> QueueItem | None:
        if row is None:
            return None
        return QueueItem(
            id=row["id"],
            seq=row["seq"],
            operation=QueueOperation(row["operation"]),
            entity_type=EntityType(row["entity_type"]),
            entity_id=row["entity_id"],
            payload=json.loads(row["payload"]),
            created_at=row["created_at"],
            updated_at=row["updated_at"],
            status=QueueStatus(row["status"]),
            retries=row["retries"],
            last_error=row["last_error"],
            next_attempt_at=row["next_attempt_at"],
            synced_at=row["synced_at"],
        )

    async def enqueue(
        self,
        operation: QueueOperation | str,
        entity_type: EntityType | str,
        entity_id: str,
        payload: dict[str, Any] | None = None,
    ) -> str:
        """Append a mutation and return its id. Never touches the network."""
        operation = QueueOperation(operation)
        entity_type = EntityType(entity_type)
        item_id = uuid.uuid4().hex
        now = self._clock()
        body = json.dumps(payload or {}, default=str)

        def _insert(conn: sqlite3.Connection) -> None:
            conn.execute(
                """INSERT INTO sync_queue
                   (id, operation, entity_type, entity_id, payload, status, retries, created_at, updated_at)
                   VALUES (?, ?, ?, ?, ?, 'pending', 0, ?, ?)""",
                (item_id, operation.value, entity_type.value, entity_id, body, now, now),
            )

        await self._run("enqueue", _insert)
        logger.info(
            "Mutation queued",
            item_id=item_id,
            operation=operation.value,
            entity_type=entity_type.value,
            entity_id=entity_id,
        )
        self._notify(ChangeKind.ENQUEUED, item_id)
        return item_id

    async def get(self, item_id: str) -> QueueItem | None:
        row = await self._run(
            "get", lambda conn: conn.execute("SELECT * FROM sync_queue WHERE id = ?", (item_id,)).fetchone()
        )
        return self._row_to_item(row)

    async def list_items(self, status: QueueStatus | str | None = None, limit: int | None = None) -> list[QueueItem]:
        query = "SELECT * FROM sync_queue"
        params: list[Any] = []
        if status is not None:
            query += " WHERE status = ?"
            params.append(QueueStatus(status).value)
        query += " ORDER BY seq"
        if limit is not None:
            query += " LIMIT ?"
            params.append(limit)

        rows = await self._run("list_items", lambda conn: conn.execute(query, params).fetchall())
        return [self._row_to_item(row) for row in rows]

    async def select_due(self, limit: int, now: float | None = None) -> list[QueueItem]:
        """
        Items eligible for replay, oldest first.

        An item is held back while an earlier item for the same entity is
        still waiting to be retried, so per-entity order is preserved. A
        permanently failed predecessor does not hold later items.
        """
        now = self._clock() if now is None else now
        query = f"""
            SELECT q.* FROM sync_queue q
            WHERE {_DUE.format(t="q")}
              AND NOT EXISTS (
                SELECT 1 FROM sync_queue prior
                WHERE prior.entity_type = q.entity_type
                  AND prior.entity_id = q.entity_id
                  AND prior.seq < q.seq
                  AND prior.status <> 'synced'
                  AND NOT (prior.status = 'failed' AND prior.next_attempt_at IS NULL)
                  AND NOT {_DUE.format(t="prior")}
              )
            ORDER BY q.seq
            LIMIT :limit
        """
        rows = await self._run(
            "select_due", lambda conn: conn.execute(query, {"now": now, "limit": limit}).fetchall()
        )
        return [self._row_to_item(row) for row in rows]

    async def _update(self, operation: str, item_id: str, assignments: str, params: tuple) -> bool:
        now = self._clock()

        def _apply(conn: sqlite3.Connection) -> int:
            cursor = conn.execute(
                f"UPDATE sync_queue SET {assignments}, updated_at = ? WHERE id = ?",
                (*params, now, item_id),
            )
            return cursor.rowcount

        changed = await self._run(operation, _apply) > 0
        if changed:
            self._notify(ChangeKind.UPDATED, item_id)
        return changed

    async def mark_syncing(self, item_id: str) -> bool:
        return await self._update("mark_syncing", item_id, "status = 'syncing'", ())

    async def mark_synced(self, item_id: str, note: str | None = None) -> bool:
        return await self._update(
            "mark_synced",
            item_id,
            "status = 'synced', synced_at = ?, next_attempt_at = NULL, last_error = ?",
            (self._clock(), note),
        )

    async def mark_failed(self, item_id: str, error: str, retries: int, next_attempt_at: float) -> bool:
        return await self._update(
            "mark_failed",
            item_id,
            "status = 'failed', last_error = ?, retries = ?, next_attempt_at = ?",
            (error, retries, next_attempt_at),
        )

    async def mark_failed_permanently(self, item_id: str, error: str, retries: int | None = None) -> bool:
        if retries is None:
            return await self._update(
                "mark_failed_permanently",
                item_id,
                "status = 'failed', last_error = ?, next_attempt_at = NULL",
                (error,),
            )
        return await self._update(
            "mark_failed_permanently",
            item_id,
            "status = 'failed', last_error = ?, retries = ?, next_attempt_at = NULL",
            (error, retries),
        )

    async def reset_for_retry(self, item_id: str | None = None) -> int:
        """Return failed items (one, or all) to pending with a fresh retry budget."""
        now = self._clock()
        query = """UPDATE sync_queue
                   SET status = 'pending', retries = 0, next_attempt_at = NULL, updated_at = ?
                   WHERE status = 'failed'"""
        params: tuple = (now,)
        if item_id is not None:
            query += " AND id = ?"
            params = (now, item_id)

        count = await self._run("reset_for_retry", lambda conn: conn.execute(query, params).rowcount)
        logger.info("Queue items reset for retry", item_id=item_id, count=count)
        self._notify(ChangeKind.RETRY_REQUESTED, item_id)
        return count

    async def recover_interrupted(self) -> int:
        """Items left in 'syncing' by a crashed leader go back to pending."""
        now = self._clock()
        count = await self._run(
            "recover_interrupted",
            lambda conn: conn.execute(
                "UPDATE sync_queue SET status = 'pending', updated_at = ? WHERE status = 'syncing'",
                (now,),
            ).rowcount,
        )
        if count:
            logger.warning("Recovered interrupted queue items", count=count)
            self._notify(ChangeKind.UPDATED)
        return count

    async def rewrite_entity_id(self, entity_type: EntityType | str, old_id: str, new_id: str) -> int:
        """
        Point unsynced items at a server-assigned id.

        Rewrites entity_id on items for the entity itself, and any payload
        field equal to old_id (``id``, ``requirement_id``...) on every
        unsynced item, so dependent rows follow the new id.
        """
        entity_type = EntityType(entity_type)
        now = self._clock()

        def _rewrite(conn: sqlite3.Connection) -> int:
            rows = conn.execute(
                "SELECT id, entity_type, entity_id, payload FROM sync_queue WHERE status <> 'synced'"
            ).fetchall()
            changed = 0
            for row in rows:
                payload = json.loads(row["payload"])
                new_payload = {
                    key: (new_id if (key == "id" or key.endswith("_id")) and value == old_id else value)
                    for key, value in payload.items()
                }
                owns = row["entity_type"] == entity_type.value and row["entity_id"] == old_id
                if not owns and new_payload == payload:
                    continue
                conn.execute(
                    "UPDATE sync_queue SET entity_id = ?, payload = ?, updated_at = ? WHERE id = ?",
                    (new_id if owns else row["entity_id"], json.dumps(new_payload), now, row["id"]),
                )
                changed += 1
            return changed

        changed = await self._run("rewrite_entity_id", _rewrite)
        if changed:
            logger.info(
                "Rewrote temporary entity id",
                entity_type=entity_type.value,
                old_id=old_id,
                new_id=new_id,
                items=changed,
            )
            self._notify(ChangeKind.UPDATED)
        return changed

    async def status_counts(self) -> dict[str, int]:
        rows = await self._run(
            "status_counts",
            lambda conn: conn.execute(
                "SELECT status, COUNT(*) AS n FROM sync_queue GROUP BY status"
            ).fetchall(),
        )
        counts = {status.value: 0 for status in QueueStatus}
        counts.update({row["status"]: row["n"] for row in rows})
        return counts

    # ------------------------------------------------------------------
    # Maintenance (leader only)
    # ------------------------------------------------------------------

    async def prune_synced(self, before: float) -> int:
        count = await self._run(
            "prune_synced",
            lambda conn: conn.execute(
                "DELETE FROM sync_queue WHERE status = 'synced' AND COALESCE(synced_at, updated_at) < ?",
                (before,),
            ).rowcount,
        )
        if count:
            logger.info("Pruned synced queue items", count=count)
            self._notify(ChangeKind.PRUNED)
        return count

    async def prune_failed(self, before: float) -> int:
        """Drop permanently failed items last touched before the cutoff."""
        count = await self._run(
            "prune_failed",
            lambda conn: conn.execute(
                """DELETE FROM sync_queue
                   WHERE status = 'failed' AND next_attempt_at IS NULL AND updated_at < ?""",
                (before,),
            ).rowcount,
        )
        if count:
            logger.info("Pruned permanently failed queue items", count=count)
            self._notify(ChangeKind.PRUNED)
        return count

    async def enforce_storage_limits(self, max_entries: int, max_total_bytes: int) -> int:
        """
        Evict oldest synced items, then oldest permanently failed ones, until
        the queue fits. Pending and retrying work is never evicted.
        """

        def _enforce(conn: sqlite3.Connection) -> tuple[int, int, int]:
            total, size = conn.execute(
                "SELECT COUNT(*), COALESCE(SUM(LENGTH(payload)), 0) FROM sync_queue"
            ).fetchone()
            candidates = conn.execute(
                """SELECT id, LENGTH(payload) AS size FROM sync_queue
                   WHERE status = 'synced'
                      OR (status = 'failed' AND next_attempt_at IS NULL)
                   ORDER BY CASE status WHEN 'synced' THEN 0 ELSE 1 END, seq"""
            ).fetchall()

            evicted = 0
            for row in candidates:
                if total <= max_entries and size <= max_total_bytes:
                    break
                conn.execute("DELETE FROM sync_queue WHERE id = ?", (row["id"],))
                total -= 1
                size -= row["size"]
                evicted += 1
            return evicted, total, size

        evicted, total, size = await self._run("enforce_storage_limits", _enforce)
        if evicted:
            logger.info("Evicted queue items over storage caps", evicted=evicted)
            self._notify(ChangeKind.PRUNED)
        if total > max_entries or size > max_total_bytes:
            logger.warning(
                "Queue still over storage caps with only live items left",
                entries=total,
                total_bytes=size,
                max_entries=max_entries,
                max_total_bytes=max_total_bytes,
            )
        return evicted

    # ------------------------------------------------------------------
    # Conflicts
    # ------------------------------------------------------------------

    async def record_conflict(
        self,
        entity_type: EntityType | str,
        entity_id: str,
        local_version: dict[str, Any],
        remote_version: dict[str, Any] | None,
        strategy: str = "local",
        queue_item_id: str | None = None,
    ) -> str:
        entity_type = EntityType(entity_type)
        now = self._clock()
        conflict_id = f"{entity_type.value}-{entity_id}-{int(now * 1000)}-{uuid.uuid4().hex[:6]}"

        def _insert(conn: sqlite3.Connection) -> None:
            conn.execute(
                """INSERT INTO sync_conflicts
                   (id, entity_type, entity_id, strategy, local_version, remote_version, queue_item_id, detected_at)
                   VALUES (?, ?, ?, ?, ?, ?, ?, ?)""",
                (
                    conflict_id,
                    entity_type.value,
                    entity_id,
                    strategy,
                    json.dumps(local_version, default=str),
                    json.dumps(remote_version, default=str) if remote_version is not None else None,
                    queue_item_id,
                    now,
                ),
            )

        await self._run("record_conflict", _insert)
        logger.warning(
            "Sync conflict recorded",
            conflict_id=conflict_id,
            entity_type=entity_type.value,
            entity_id=entity_id,
            strategy=strategy,
        )
        return conflict_id

    async def list_conflicts(self) -> list[ConflictRecord]:
        rows = await self._run(
            "list_conflicts",
            lambda conn: conn.execute("SELECT * FROM sync_conflicts ORDER BY detected_at").fetchall(),
        )
        return [
            ConflictRecord(
                id=row["id"],
                entity_type=row["entity_type"],
                entity_id=row["entity_id"],
                strategy=row["strategy"],
                local_version=json.loads(row["local_version"]),
                remote_version=json.loads(row["remote_version"]) if row["remote_version"] else None,
                detected_at=row["detected_at"],
                queue_item_id=row["queue_item_id"],
            )
            for row in rows
        ]

    async def clear_conflicts(self) -> int:
        return await self._run(
            "clear_conflicts", lambda conn: conn.execute("DELETE FROM sync_conflicts").rowcount
        )

    # ------------------------------------------------------------------
    # Sync status
    # ------------------------------------------------------------------

    async def set_last_sync_time(self, at: float | None = None) -> None:
        at = self._clock() if at is None else at
        await self._run(
            "set_last_sync_time",
            lambda conn: conn.execute(
                """INSERT INTO sync_metadata (key, value, updated_at) VALUES ('last_sync_time', ?, ?)
                   ON CONFLICT(key) DO UPDATE SET value = excluded.value, updated_at = excluded.updated_at""",
                (str(at), at),
            ),
        )

    async def get_last_sync_time(self) -> float | None:
        row = await self._run(
            "get_last_sync_time",
            lambda conn: conn.execute(
                "SELECT value FROM sync_metadata WHERE key = 'last_sync_time'"
            ).fetchone(),
        )
        return float(row["value"]) if row else None

    async def get_sync_status(self) -> SyncStatus:
        counts = await self.status_counts()
        last_sync = await self.get_last_sync_time()

        # Synced rows are kept for a while but are not part of the user's backlog
        total = counts[QueueStatus.PENDING.value] + counts[QueueStatus.SYNCING.value] + counts[QueueStatus.FAILED.value]
        syncing = counts[QueueStatus.SYNCING.value]
        progress = round((total - syncing) / total * 100) if total else 100
        return SyncStatus(
            is_syncing=syncing > 0,
            items_remaining=syncing,
            failed_items=counts[QueueStatus.FAILED.value],
            total_items=total,
            progress=progress,
            last_sync_time=last_sync,
            counts=counts,
        )
