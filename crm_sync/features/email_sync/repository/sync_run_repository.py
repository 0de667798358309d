"""
Postgres repository for email_sync_logs plus the terminal tick update.

The run outcome and the mailbox cursor are written in one transaction so a
crash mid-tick leaves the cursor where it was.
"""

from psycopg.types.json import Jsonb

from crm_sync.db.helpers import execute_query, execute_transaction, fetch_val
from crm_sync.db.pool import DatabasePoolManager
from crm_sync.features.email_sync.domain.models import SyncRunOutcome
from crm_sync.infrastructure.observability.logging import get_logger

logger = get_logger(__name__)

MAX_ERROR_LENGTH = 500


class SyncRunRepository:
    def __init__(self, pool: DatabasePoolManager):
        self.pool = pool

    async def start_run(self, user_id: str) -> str:
        query = """
            INSERT INTO email_sync_logs (user_id, status, sync_started_at)
            VALUES (%s, 'in_progress', NOW())
            RETURNING id
        """
        run_id = await fetch_val(self.pool, query, (user_id,))
        return str(run_id)

    async def last_failed_message_ids(self, user_id: str) -> list[str]:
        """Message ids the latest completed run could not process."""
        query = """
            SELECT details->'failed_message_ids'
            FROM email_sync_logs
            WHERE user_id = %s AND status = 'completed'
            ORDER BY sync_started_at DESC
            LIMIT 1
        """
        failed = await fetch_val(self.pool, query, (user_id,))
        return [str(mid) for mid in failed or []]

    async def complete_run(self, outcome: SyncRunOutcome, advance_cursor: bool) -> None:
        """Mark the run completed and, when requested, advance the mailbox cursor."""
        statements = [
            (
                """
                UPDATE email_sync_logs
                SET sync_completed_at = NOW(),
                    emails_fetched = %s,
                    emails_processed = %s,
                    emails_matched = %s,
                    emails_created = %s,
                    status = 'completed',
                    details = %s
                WHERE id = %s
                """,
                (
                    outcome.emails_fetched,
                    outcome.emails_processed,
                    outcome.emails_matched,
                    outcome.emails_created,
                    Jsonb(outcome.to_details()),
                    outcome.run_id,
                ),
            )
        ]
        if advance_cursor:
            statements.append(
                (
                    """
                    UPDATE gmail_sync_tokens
                    SET last_sync_at = NOW(),
                        last_sync_message_id = %s,
                        updated_at = NOW()
                    WHERE user_id = %s
                    """,
                    (outcome.cursor, outcome.user_id),
                )
            )
        await execute_transaction(self.pool, statements)

    async def fail_run(self, run_id: str, error_message: str, details: dict | None = None) -> None:
        truncated_error = (error_message or "")[:MAX_ERROR_LENGTH]
        query = """
            UPDATE email_sync_logs
            SET sync_completed_at = NOW(),
                status = 'failed',
                error_message = %s,
                details = %s
            WHERE id = %s
        """
        await execute_query(self.pool, query, (truncated_error, Jsonb(details or {}), run_id))
        logger.warning("Sync run marked failed", run_id=run_id, error=truncated_error)
