"""
Postgres repository for requirement_emails (match records).

Idempotency is enforced twice: the sync service checks message ids before
fetching detail, and inserts are no-ops on (message_id, recipient_email).
"""

from collections.abc import Iterable

from crm_sync.db.helpers import fetch_all, fetch_one
from crm_sync.db.pool import DatabasePoolManager
from crm_sync.features.email_sync.domain.models import MatchRecord
from crm_sync.infrastructure.observability.logging import get_logger

logger = get_logger(__name__)


class MatchRecordRepository:
    def __init__(self, pool: DatabasePoolManager):
        self.pool = pool

    async def exists(self, message_id: str) -> bool:
        query = "SELECT 1 AS found FROM requirement_emails WHERE message_id = %s LIMIT 1"
        return await fetch_one(self.pool, query, (message_id,)) is not None

    async def existing_message_ids(self, message_ids: Iterable[str]) -> set[str]:
        """Subset of message_ids that already have at least one match record."""
        ids = list(message_ids)
        if not ids:
            return set()
        query = """
            SELECT DISTINCT message_id
            FROM requirement_emails
            WHERE message_id = ANY(%s)
        """
        rows = await fetch_all(self.pool, query, (ids,))
        return {row["message_id"] for row in rows}

    async def insert(self, record: MatchRecord) -> bool:
        """Insert a match record; False when the (message, recipient) pair already exists."""
        query = """
            INSERT INTO requirement_emails (
                requirement_id, recipient_email, recipient_name, sent_via,
                subject, body_preview, message_id, sent_date, status,
                match_confidence, needs_user_confirmation, created_by
            )
            VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s)
            ON CONFLICT (message_id, recipient_email) DO NOTHING
            RETURNING id
        """
        row = await fetch_one(
            self.pool,
            query,
            (
                record.requirement_id,
                record.recipient_email,
                record.recipient_name,
                record.sent_via,
                record.subject,
                record.body_preview,
                record.message_id,
                record.sent_date,
                record.status,
                record.match_confidence,
                record.needs_user_confirmation,
                record.user_id,
            ),
        )
        if row is None:
            logger.debug(
                "Match record already present",
                message_id=record.message_id,
                recipient=record.recipient_email,
            )
            return False
        return True
