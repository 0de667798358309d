"""
Interval scheduler for Gmail ingestion.

Mailboxes are grouped by their sync frequency; each frequency bucket runs
its own loop, and every bucket tick is guarded by a distributed lock so only
one deployed instance syncs that bucket per interval.
"""

import asyncio
from collections.abc import Callable
from datetime import UTC, datetime

from crm_sync.features.email_sync.repository.mailbox_repository import MailboxRepository
from crm_sync.features.email_sync.services.sync_service import EmailSyncService, IngestionError
from crm_sync.infrastructure.observability.logging import get_logger
from crm_sync.services.infrastructure.distributed_lock import DistributedLock, make_instance_id
from crm_sync.services.infrastructure.redis_client import RedisClient

logger = get_logger(__name__)

LOCK_KEY_PREFIX = "gmail_sync_lock"
BUCKET_REFRESH_SECONDS = 300
ERROR_RETRY_SECONDS = 60


def lock_ttl_seconds(frequency_minutes: int, margin_seconds: int = 60) -> int:
    return max(60, frequency_minutes * 60 + margin_seconds)


class GmailSyncMetrics:
    """Counts for one bucket tick."""

    def __init__(self, frequency_minutes: int):
        self.frequency_minutes = frequency_minutes
        self.start_time = datetime.now(UTC)
        self.users_synced = 0
        self.users_failed = 0
        self.emails_created = 0
        self.skipped = False
        self.errors: list[dict] = []

    def record_success(self, user_id: str, emails_created: int) -> None:
        self.users_synced += 1
        self.emails_created += emails_created

    def record_failure(self, user_id: str, error: str, recoverable: bool = True) -> None:
        self.users_failed += 1
        self.errors.append(
            {
                "user_id": user_id,
                "error": error,
                "recoverable": recoverable,
                "timestamp": datetime.now(UTC).isoformat(),
            }
        )
        logger.warning(
            "Failed to sync user",
            user_id=user_id,
            error=error,
            recoverable=recoverable,
            frequency_minutes=self.frequency_minutes,
        )

    def to_dict(self) -> dict:
        return {
            "job_run": "gmail_sync",
            "frequency_minutes": self.frequency_minutes,
            "skipped": self.skipped,
            "duration_seconds": round((datetime.now(UTC) - self.start_time).total_seconds(), 2),
            "users_synced": self.users_synced,
            "users_failed": self.users_failed,
            "emails_created": self.emails_created,
            "errors_count": len(self.errors),
        }


class GmailSyncScheduler:
    def __init__(
        self,
        service: EmailSyncService,
        mailboxes: MailboxRepository,
        redis_client: RedisClient | None,
        lock_margin_seconds: int = 60,
        instance_id: str | None = None,
        sleep: Callable = asyncio.sleep,
    ):
        self.service = service
        self.mailboxes = mailboxes
        self.redis = redis_client
        self.lock_margin_seconds = lock_margin_seconds
        self.instance_id = instance_id or make_instance_id()
        self._sleep = sleep
        self._bucket_tasks: dict[int, asyncio.Task] = {}

    async def run_bucket_once(self, frequency_minutes: int, user_ids: list[str]) -> dict:
        """One tick for one frequency bucket; never raises for per-user failures."""
        metrics = GmailSyncMetrics(frequency_minutes)

        lock = None
        if self.redis is not None:
            lock = DistributedLock(
                self.redis,
                f"{LOCK_KEY_PREFIX}:{frequency_minutes}",
                lock_ttl_seconds(frequency_minutes, self.lock_margin_seconds),
                instance_id=self.instance_id,
            )
            if not await lock.acquire():
                metrics.skipped = True
                return metrics.to_dict()
        else:
            logger.warning("No Redis configured, scheduler may run on every instance")

        try:
            logger.info("Running Gmail sync", user_count=len(user_ids), frequency_minutes=frequency_minutes)
            for user_id in user_ids:
                try:
                    outcome = await self.service.sync_mailbox(user_id)
                    metrics.record_success(user_id, outcome.emails_created)
                except IngestionError as e:
                    metrics.record_failure(user_id, str(e), e.recoverable)
                except Exception as e:
                    metrics.record_failure(user_id, f"Unexpected error: {type(e).__name__}: {e}")
        finally:
            if lock is not None:
                await lock.release()

        result = metrics.to_dict()
        logger.info("Gmail sync cycle completed", **result)
        return result

    async def _bucket_loop(self, frequency_minutes: int) -> None:
        logger.info("Starting Gmail sync bucket", frequency_minutes=frequency_minutes)
        while True:
            await self._sleep(frequency_minutes * 60)
            try:
                buckets = await self.mailboxes.list_frequency_buckets()
                user_ids = buckets.get(frequency_minutes, [])
                if user_ids:
                    await self.run_bucket_once(frequency_minutes, user_ids)
            except asyncio.CancelledError:
                raise
            except Exception as e:
                logger.error(
                    "Error in Gmail sync bucket loop",
                    frequency_minutes=frequency_minutes,
                    error=str(e),
                    error_type=type(e).__name__,
                )

    async def refresh_buckets(self) -> set[int]:
        """Start a loop for every frequency that has active mailboxes."""
        buckets = await self.mailboxes.list_frequency_buckets()
        for frequency in buckets:
            task = self._bucket_tasks.get(frequency)
            if task is None or task.done():
                self._bucket_tasks[frequency] = asyncio.create_task(
                    self._bucket_loop(frequency), name=f"gmail-sync-{frequency}m"
                )
        return set(self._bucket_tasks)

    async def run_forever(self) -> None:
        logger.info("Gmail sync scheduler started", instance_id=self.instance_id)
        try:
            while True:
                try:
                    await self.refresh_buckets()
                    await self._sleep(BUCKET_REFRESH_SECONDS)
                except asyncio.CancelledError:
                    raise
                except Exception as e:
                    logger.error("Error in Gmail sync scheduler", error=str(e), error_type=type(e).__name__)
                    await self._sleep(ERROR_RETRY_SECONDS)
        finally:
            await self.stop()

    async def stop(self) -> None:
        tasks = list(self._bucket_tasks.values())
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)
        self._bucket_tasks.clear()
        logger.info("Gmail sync scheduler stopped")
