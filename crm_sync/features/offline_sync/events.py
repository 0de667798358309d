"""
Fire-and-forget notifications from the sync engine to observers.
"""

import asyncio
import time
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from enum import Enum
from typing import Any

from crm_sync.infrastructure.observability.logging import get_logger

logger = get_logger(__name__)


class SyncEventKind(str, Enum):
    STARTED = "sync-started"
    COMPLETED = "sync-completed"
    ERROR = "sync-error"
    CONFLICTS = "sync-conflicts"


@dataclass(slots=True, frozen=True)
class SyncEvent:
    kind: SyncEventKind
    data: dict[str, Any] = field(default_factory=dict)
    at: float = field(default_factory=time.time)


EventListener = Callable[[SyncEvent], Awaitable[None] | None]


class SyncEventBus:
    """Listeners are never awaited by the emitter and cannot break it."""

    def __init__(self):
        self._listeners: list[tuple[SyncEventKind | None, EventListener]] = []
        self._pending: set[asyncio.Task] = set()

    def subscribe(self, listener: EventListener, kind: SyncEventKind | None = None) -> Callable[[], None]:
        entry = (kind, listener)
        self._listeners.append(entry)

        def _unsubscribe() -> None:
            if entry in self._listeners:
                self._listeners.remove(entry)

        return _unsubscribe

    def emit(self, kind: SyncEventKind, **data: Any) -> SyncEvent:
        event = SyncEvent(kind, data)
        logger.debug("Sync event", event_kind=kind.value, **data)

        for wanted, listener in list(self._listeners):
            if wanted is not None and wanted != kind:
                continue
            try:
                result = listener(event)
            except Exception as e:
                logger.error("Sync event listener failed", event_kind=kind.value, error=str(e))
                continue
            if asyncio.iscoroutine(result):
                task = asyncio.ensure_future(result)
                self._pending.add(task)
                task.add_done_callback(self._on_listener_done)
        return event

    def _on_listener_done(self, task: asyncio.Task) -> None:
        self._pending.discard(task)
        if task.cancelled():
            return
        error = task.exception()
        if error is not None:
            logger.error("Async sync event listener failed", error=str(error))
