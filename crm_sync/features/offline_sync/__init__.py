"""
Offline-first mutation sync.

Writes are queued locally in SQLite, a single elected leader replays them
against Postgres, and observers are told how each batch went.
"""

from crm_sync.features.offline_sync.channels import (
    BroadcastChannel,
    InMemoryBroadcastHub,
    RedisBroadcastChannel,
)
from crm_sync.features.offline_sync.engine import SyncBatchResult, SyncEngine, compute_backoff
from crm_sync.features.offline_sync.errors import (
    ConflictSyncError,
    PayloadValidationError,
    QueueStorageError,
    SyncError,
    TransientSyncError,
)
from crm_sync.features.offline_sync.events import SyncEvent, SyncEventBus, SyncEventKind
from crm_sync.features.offline_sync.leader import LeaderElector, SqliteLeaseStore
from crm_sync.features.offline_sync.payloads import EntityType, is_temp_id, validate_payload
from crm_sync.features.offline_sync.queue import (
    MutationQueue,
    QueueItem,
    QueueOperation,
    QueueStatus,
)
from crm_sync.features.offline_sync.remote_store import PostgresRemoteStore, RemoteStore

__all__ = [
    "BroadcastChannel",
    "ConflictSyncError",
    "EntityType",
    "InMemoryBroadcastHub",
    "LeaderElector",
    "MutationQueue",
    "PayloadValidationError",
    "PostgresRemoteStore",
    "QueueItem",
    "QueueOperation",
    "QueueStatus",
    "QueueStorageError",
    "RedisBroadcastChannel",
    "RemoteStore",
    "SqliteLeaseStore",
    "SyncBatchResult",
    "SyncEngine",
    "SyncError",
    "SyncEvent",
    "SyncEventBus",
    "SyncEventKind",
    "TransientSyncError",
    "compute_backoff",
    "is_temp_id",
    "validate_payload",
]
