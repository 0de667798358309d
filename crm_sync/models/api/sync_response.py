"""
Offline sync API response models.
"""

from typing import Any

from pydantic import BaseModel, Field


class QueueItemResponse(BaseModel):
    id: str
    operation: str
    entity_type: str
    entity_id: str
    payload: dict[str, Any]
    status: str
    retries: int
    last_error: str | None = None
    next_attempt_at: float | None = None
    created_at: float
    updated_at: float
    synced_at: float | None = None
    permanently_failed: bool = False


class QueueListResponse(BaseModel):
    items: list[QueueItemResponse]
    counts: dict[str, int] = Field(..., description="Item count per status")
    is_syncing: bool
    progress: int = Field(..., description="Percent of backlog not in flight")
    last_sync_time: float | None = None


class EnqueueMutationResponse(BaseModel):
    id: str
    status: str = "pending"


class RetryResponse(BaseModel):
    reset: int = Field(..., description="Items moved back to pending")
    result: dict[str, int] | None = Field(None, description="Batch outcome when a drain ran")


class ConflictResponse(BaseModel):
    id: str
    entity_type: str
    entity_id: str
    strategy: str
    local_version: dict[str, Any]
    remote_version: dict[str, Any] | None = None
    detected_at: float
    queue_item_id: str | None = None


class LeaderStatusResponse(BaseModel):
    context_id: str | None = None
    is_leader: bool
    leader_id: str | None = None
    mode: str
    online: bool
    last_heartbeat_seen: float | None = None
