"""
Gmail sync job runner.

Builds the pool, Redis client, Google clients and repositories from
settings, runs the frequency-bucket scheduler until cancelled, and closes
everything on the way out.
"""

import asyncio

from crm_sync.config import Settings, settings
from crm_sync.db.pool import DatabasePoolManager
from crm_sync.features.email_sync.repository.mailbox_repository import MailboxRepository
from crm_sync.features.email_sync.repository.match_record_repository import MatchRecordRepository
from crm_sync.features.email_sync.repository.requirement_repository import RequirementRepository
from crm_sync.features.email_sync.repository.sync_run_repository import SyncRunRepository
from crm_sync.features.email_sync.services.scheduler import GmailSyncScheduler
from crm_sync.features.email_sync.services.sync_service import EmailSyncService
from crm_sync.infrastructure.observability.logging import get_logger, setup_logging
from crm_sync.services.google_gmail_service import GoogleGmailService
from crm_sync.services.google_oauth_service import GoogleOAuthService
from crm_sync.services.infrastructure.encryption_service import TokenCipher
from crm_sync.services.infrastructure.redis_client import RedisClient

logger = get_logger(__name__)


def build_sync_service(config: Settings, pool: DatabasePoolManager, gmail: GoogleGmailService) -> EmailSyncService:
    mailboxes = MailboxRepository(pool, config.DEFAULT_SYNC_FREQUENCY_MINUTES)
    return EmailSyncService(
        mailboxes=mailboxes,
        requirements=RequirementRepository(pool),
        match_records=MatchRecordRepository(pool),
        sync_runs=SyncRunRepository(pool),
        gmail=gmail,
        oauth=GoogleOAuthService(
            config.GOOGLE_CLIENT_ID, config.GOOGLE_CLIENT_SECRET, token_url=config.GOOGLE_TOKEN_URL
        ),
        cipher=TokenCipher(config.ENCRYPTION_KEY),
        query=config.GMAIL_SYNC_QUERY,
        page_size=config.GMAIL_PAGE_SIZE,
        fetch_concurrency=config.GMAIL_FETCH_CONCURRENCY,
    )


async def start_gmail_sync_scheduler(config: Settings | None = None) -> None:
    """Entry point for the gmail_sync worker job."""
    config = config or settings
    setup_logging(config.LOG_LEVEL)

    pool = DatabasePoolManager(config.SUPABASE_DB_URL, config.get_db_pool_config(), "crm-sync-worker")
    redis_client = RedisClient(config.REDIS_URL) if config.REDIS_ENABLED else None
    gmail = GoogleGmailService()

    await pool.initialize()
    try:
        if redis_client is not None:
            await redis_client.initialize()

        service = build_sync_service(config, pool, gmail)
        scheduler = GmailSyncScheduler(
            service,
            service.mailboxes,
            redis_client,
            lock_margin_seconds=config.SYNC_LOCK_TTL_MARGIN_SECONDS,
        )
        await scheduler.run_forever()
    finally:
        await gmail.close()
        if redis_client is not None:
            await redis_client.close()
        await pool.close()
        logger.info("Gmail sync worker shut down")


if __name__ == "__main__":
    asyncio.run(start_gmail_sync_scheduler())
