"""
Leader election between execution contexts sharing one offline queue.

Only the leader drains the queue and runs maintenance. Two modes:

Broadcast mode (a BroadcastChannel is available):
    On start a context sends ``whois`` and waits the claim window. A leader
    answers with ``i-am``; silence means the context claims leadership. The
    leader repeats ``i-am`` every heartbeat, which also answers late
    joiners. Followers take over once the last heartbeat is older than the
    lease TTL. A stopping leader sends ``release`` so followers can claim at
    once. If two leaders ever hear each other, the lower context id keeps
    the role.

Lease mode (no channel):
    A shared timestamped record in SQLite with the same claim, renew and
    expiry rules, polled every heartbeat interval.
"""

import asyncio
import sqlite3
import time
import uuid
from collections.abc import Awaitable, Callable
from pathlib import Path
from typing import Any

from crm_sync.features.offline_sync.channels import BroadcastChannel
from crm_sync.features.offline_sync.errors import QueueStorageError
from crm_sync.infrastructure.observability.logging import get_logger

logger = get_logger(__name__)

MSG_WHOIS = "whois"
MSG_I_AM = "i-am"
MSG_RELEASE = "release"

LeaderListener = Callable[[bool], None]
MaintenanceCallback = Callable[[], Awaitable[Any]]


class SqliteLeaseStore:
    """Shared leader record for contexts that cannot message each other."""

    def __init__(self, db_path: Path, key: str = "offline_leader_v1", clock: Callable[[], float] = time.time):
        self._db_path = Path(db_path)
        self.key = key
        self._clock = clock

    def _connect(self) -> sqlite3.Connection:
        self._db_path.parent.mkdir(parents=True, exist_ok=True)
        try:
            # Autocommit mode so BEGIN IMMEDIATE controls the transaction
            conn = sqlite3.connect(str(self._db_path), timeout=5.0, isolation_level=None)
            conn.row_factory = sqlite3.Row
            conn.execute(
                """CREATE TABLE IF NOT EXISTS leader_lease (
                       key TEXT PRIMARY KEY,
                       holder_id TEXT NOT NULL,
                       heartbeat_at REAL NOT NULL
                   )"""
            )
        except sqlite3.Error as e:
            raise QueueStorageError(f"Cannot open lease store: {e}", operation="lease_open") from e
        return conn

    def _try_acquire(self, holder_id: str, ttl_s: float) -> bool:
        now = self._clock()
        conn = self._connect()
        try:
            conn.execute("BEGIN IMMEDIATE")
            row = conn.execute(
                "SELECT holder_id, heartbeat_at FROM leader_lease WHERE key = ?", (self.key,)
            ).fetchone()
            if row is None or row["holder_id"] == holder_id or now - row["heartbeat_at"] > ttl_s:
                conn.execute(
                    """INSERT INTO leader_lease (key, holder_id, heartbeat_at) VALUES (?, ?, ?)
                       ON CONFLICT(key) DO UPDATE SET holder_id = excluded.holder_id,
                                                      heartbeat_at = excluded.heartbeat_at""",
                    (self.key, holder_id, now),
                )
                conn.execute("COMMIT")
                return True
            conn.execute("COMMIT")
            return False
        except sqlite3.Error as e:
            if conn.in_transaction:
                conn.execute("ROLLBACK")
            raise QueueStorageError(f"Lease update failed: {e}", operation="lease_acquire") from e
        finally:
            conn.close()

    def _release(self, holder_id: str) -> bool:
        conn = self._connect()
        try:
            cursor = conn.execute(
                "DELETE FROM leader_lease WHERE key = ? AND holder_id = ?", (self.key, holder_id)
            )
            return cursor.rowcount > 0
        except sqlite3.Error as e:
            raise QueueStorageError(f"Lease release failed: {e}", operation="lease_release") from e
        finally:
            conn.close()

    def _current(self) -> dict | None:
        conn = self._connect()
        try:
            row = conn.execute(
                "SELECT holder_id, heartbeat_at FROM leader_lease WHERE key = ?", (self.key,)
            ).fetchone()
            return dict(row) if row else None
        except sqlite3.Error as e:
            raise QueueStorageError(f"Lease read failed: {e}", operation="lease_current") from e
        finally:
            conn.close()

    async def try_acquire(self, holder_id: str, ttl_s: float) -> bool:
        """Claim, renew or take over an expired lease in one transaction."""
        return await asyncio.to_thread(self._try_acquire, holder_id, ttl_s)

    async def release(self, holder_id: str) -> bool:
        return await asyncio.to_thread(self._release, holder_id)

    async def current(self) -> dict | None:
        return await asyncio.to_thread(self._current)


class LeaderElector:
    def __init__(
        self,
        context_id: str | None = None,
        channel: BroadcastChannel | None = None,
        lease_store: SqliteLeaseStore | None = None,
        claim_window_s: float = 0.25,
        heartbeat_interval_s: float = 5.0,
        lease_ttl_s: float = 10.0,
        maintenance: MaintenanceCallback | None = None,
        maintenance_interval_s: float = 3600.0,
        clock: Callable[[], float] = time.time,
    ):
        if channel is None and lease_store is None:
            raise ValueError("LeaderElector needs a broadcast channel or a lease store")

        self.context_id = context_id or uuid.uuid4().hex
        self._channel = channel
        self._lease_store = lease_store
        self.claim_window_s = claim_window_s
        self.heartbeat_interval_s = heartbeat_interval_s
        self.lease_ttl_s = lease_ttl_s
        self._maintenance = maintenance
        self.maintenance_interval_s = maintenance_interval_s
        self._clock = clock

        self._is_leader = False
        self.leader_id: str | None = None
        self._last_heartbeat_seen: float | None = None
        self._last_maintenance: float | None = None
        self._listeners: list[LeaderListener] = []
        self._task: asyncio.Task | None = None
        self._running = False

    # ------------------------------------------------------------------
    # State
    # ------------------------------------------------------------------

    @property
    def is_leader(self) -> bool:
        return self._is_leader

    @property
    def mode(self) -> str:
        return "broadcast" if self._channel is not None else "lease"

    def add_listener(self, listener: LeaderListener) -> Callable[[], None]:
        self._listeners.append(listener)

        def _remove() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return _remove

    def _set_leader(self, value: bool) -> None:
        if value == self._is_leader:
            return
        self._is_leader = value
        if value:
            self.leader_id = self.context_id
            self._last_maintenance = None
        logger.info("Leadership changed", context_id=self.context_id, is_leader=value, mode=self.mode)
        for listener in list(self._listeners):
            try:
                listener(value)
            except Exception as e:
                logger.error("Leader listener failed", error=str(e))

    def status(self) -> dict:
        return {
            "context_id": self.context_id,
            "is_leader": self._is_leader,
            "leader_id": self.leader_id,
            "mode": self.mode,
            "last_heartbeat_seen": self._last_heartbeat_seen,
        }

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def start(self) -> None:
        if self._running:
            return
        self._running = True

        if self._channel is not None:
            await self._channel.subscribe(self._on_message)
            await self._send(MSG_WHOIS)
            await asyncio.sleep(self.claim_window_s)
            if self.leader_id is None:
                await self._claim()
        else:
            await self._poll_lease()

        self._task = asyncio.create_task(self._heartbeat_loop(), name=f"leader-{self.context_id[:8]}")

    async def stop(self) -> None:
        if not self._running:
            return
        self._running = False

        if self._task is not None:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None

        was_leader = self._is_leader
        self._set_leader(False)
        if self._channel is not None:
            if was_leader:
                await self._send(MSG_RELEASE, id=self.context_id)
            await self._channel.close()
        elif was_leader:
            await self._lease_store.release(self.context_id)
        logger.info("Leader elector stopped", context_id=self.context_id, released=was_leader)

    # ------------------------------------------------------------------
    # Broadcast mode
    # ------------------------------------------------------------------

    async def _send(self, kind: str, **fields: Any) -> None:
        await self._channel.publish({"type": kind, "sender": self.context_id, **fields})

    async def _claim(self) -> None:
        self._set_leader(True)
        await self._send(MSG_I_AM, id=self.context_id, ts=self._clock())

    async def _on_message(self, message: dict[str, Any]) -> None:
        if message.get("sender") == self.context_id:
            return

        kind = message.get("type")
        if kind == MSG_WHOIS:
            if self._is_leader:
                await self._send(MSG_I_AM, id=self.context_id, ts=self._clock())

        elif kind == MSG_I_AM:
            other = message.get("id")
            if not other or other == self.context_id:
                return
            if self._is_leader:
                if other < self.context_id:
                    logger.info("Yielding leadership to lower id", context_id=self.context_id, leader_id=other)
                    self._set_leader(False)
                else:
                    # Reassert so the other leader steps down
                    await self._send(MSG_I_AM, id=self.context_id, ts=self._clock())
                    return
            self.leader_id = other
            self._last_heartbeat_seen = self._clock()

        elif kind == MSG_RELEASE:
            if message.get("id") == self.leader_id and not self._is_leader:
                self.leader_id = None
                self._last_heartbeat_seen = None
                if self._running:
                    await self._claim()

    def _leader_is_stale(self) -> bool:
        if self.leader_id is None or self._last_heartbeat_seen is None:
            return True
        return self._clock() - self._last_heartbeat_seen > self.lease_ttl_s

    async def _broadcast_tick(self) -> None:
        if self._is_leader:
            await self._send(MSG_I_AM, id=self.context_id, ts=self._clock())
        elif self._leader_is_stale():
            logger.info("Leader heartbeat expired, taking over", stale_leader=self.leader_id)
            await self._claim()

    # ------------------------------------------------------------------
    # Lease mode
    # ------------------------------------------------------------------

    async def _poll_lease(self) -> None:
        try:
            acquired = await self._lease_store.try_acquire(self.context_id, self.lease_ttl_s)
            current = None if acquired else await self._lease_store.current()
        except QueueStorageError as e:
            logger.warning("Lease poll failed", error=str(e))
            self._set_leader(False)
            return
        if not acquired:
            self.leader_id = current["holder_id"] if current else None
        self._set_leader(acquired)

    # ------------------------------------------------------------------
    # Heartbeat + maintenance
    # ------------------------------------------------------------------

    async def _heartbeat_loop(self) -> None:
        while True:
            await asyncio.sleep(self.heartbeat_interval_s)
            try:
                if self._channel is not None:
                    await self._broadcast_tick()
                else:
                    await self._poll_lease()
                await self._maybe_run_maintenance()
            except asyncio.CancelledError:
                raise
            except Exception as e:
                logger.error("Leader heartbeat failed", error=str(e), error_type=type(e).__name__)

    async def _maybe_run_maintenance(self) -> None:
        if not self._is_leader or self._maintenance is None:
            return
        now = self._clock()
        if self._last_maintenance is not None and now - self._last_maintenance < self.maintenance_interval_s:
            return
        self._last_maintenance = now
        try:
            await self._maintenance()
        except Exception as e:
            logger.error("Queue maintenance failed", error=str(e), error_type=type(e).__name__)
