"""
sync.py
-------
Purpose:
    Inspect and drive the offline mutation queue.

Usage:
    1. GET /sync/queue - Queue items and per-status counts
    2. POST /sync/queue - Queue a mutation captured while offline
    3. POST /sync/queue/{item_id}/retry - Reset one failed item and drain
    4. POST /sync/retry - Reset every failed item and drain
    5. GET /sync/conflicts - Conflicts resolved with the local version
    6. DELETE /sync/conflicts - Clear the conflict log
    7. GET /sync/leader - Leader election state of this process
"""

from fastapi import APIRouter, Depends, HTTPException, Query, Request, status

from crm_sync.features.offline_sync.engine import SyncEngine
from crm_sync.features.offline_sync.errors import QueueStorageError
from crm_sync.features.offline_sync.queue import MutationQueue, QueueStatus
from crm_sync.infrastructure.observability.logging import get_logger
from crm_sync.models.api.sync_request import EnqueueMutationRequest
from crm_sync.models.api.sync_response import (
    ConflictResponse,
    EnqueueMutationResponse,
    LeaderStatusResponse,
    QueueItemResponse,
    QueueListResponse,
    RetryResponse,
)

router = APIRouter(prefix="/sync", tags=["offline-sync"])
logger = get_logger(__name__)


def get_queue(request: Request) -> MutationQueue:
    return request.app.state.queue


def get_engine(request: Request) -> SyncEngine:
    return request.app.state.sync_engine


def _storage_unavailable(e: QueueStorageError) -> HTTPException:
    logger.error("Offline queue unavailable", error=str(e), operation=e.operation)
    return HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail="Offline queue unavailable")


@router.get("/queue", response_model=QueueListResponse)
async def list_queue(
    status_filter: QueueStatus | None = Query(default=None, alias="status"),
    limit: int = Query(default=100, ge=1, le=1000),
    queue: MutationQueue = Depends(get_queue),
):
    try:
        items = await queue.list_items(status_filter, limit)
        sync_status = await queue.get_sync_status()
    except QueueStorageError as e:
        raise _storage_unavailable(e) from e

    return QueueListResponse(
        items=[QueueItemResponse(**item.to_dict()) for item in items],
        counts=sync_status.counts,
        is_syncing=sync_status.is_syncing,
        progress=sync_status.progress,
        last_sync_time=sync_status.last_sync_time,
    )


@router.post("/queue", response_model=EnqueueMutationResponse, status_code=status.HTTP_202_ACCEPTED)
async def enqueue_mutation(request: EnqueueMutationRequest, queue: MutationQueue = Depends(get_queue)):
    """Queue a mutation. Replay happens later on the leader; payload errors surface on the item."""
    try:
        item_id = await queue.enqueue(request.operation, request.entity_type, request.entity_id, request.payload)
    except QueueStorageError as e:
        raise _storage_unavailable(e) from e
    return EnqueueMutationResponse(id=item_id)


@router.post("/queue/{item_id}/retry", response_model=RetryResponse)
async def retry_item(
    item_id: str,
    queue: MutationQueue = Depends(get_queue),
    engine: SyncEngine = Depends(get_engine),
):
    try:
        item = await queue.get(item_id)
        if item is None:
            raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Queue item not found")
        if item.status != QueueStatus.FAILED:
            raise HTTPException(
                status_code=status.HTTP_409_CONFLICT,
                detail=f"Only failed items can be retried (item is {item.status.value})",
            )
        result = await engine.request_retry(item_id)
    except QueueStorageError as e:
        raise _storage_unavailable(e) from e

    logger.info("Queue item retry requested", item_id=item_id, drained=result is not None)
    return RetryResponse(reset=1, result=result.to_dict() if result else None)


@router.post("/retry", response_model=RetryResponse)
async def retry_all(queue: MutationQueue = Depends(get_queue), engine: SyncEngine = Depends(get_engine)):
    try:
        failed = len(await queue.list_items(QueueStatus.FAILED))
        result = await engine.request_retry()
    except QueueStorageError as e:
        raise _storage_unavailable(e) from e

    logger.info("Retry of all failed items requested", reset=failed)
    return RetryResponse(reset=failed, result=result.to_dict() if result else None)


@router.get("/conflicts", response_model=list[ConflictResponse])
async def list_conflicts(queue: MutationQueue = Depends(get_queue)):
    try:
        conflicts = await queue.list_conflicts()
    except QueueStorageError as e:
        raise _storage_unavailable(e) from e
    return [ConflictResponse(**conflict.to_dict()) for conflict in conflicts]


@router.delete("/conflicts")
async def clear_conflicts(queue: MutationQueue = Depends(get_queue)):
    try:
        cleared = await queue.clear_conflicts()
    except QueueStorageError as e:
        raise _storage_unavailable(e) from e
    return {"cleared": cleared}


@router.get("/leader", response_model=LeaderStatusResponse)
async def leader_status(engine: SyncEngine = Depends(get_engine)):
    if engine.elector is None:
        return LeaderStatusResponse(is_leader=True, mode="standalone", online=engine.is_online)
    return LeaderStatusResponse(**engine.elector.status(), online=engine.is_online)
