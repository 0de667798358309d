"""
Postgres repository for gmail_sync_tokens (connected mailboxes).
"""

from datetime import datetime

from crm_sync.db.helpers import execute_query, fetch_all, fetch_one
from crm_sync.db.pool import DatabasePoolManager
from crm_sync.features.email_sync.domain.models import MailboxConnection
from crm_sync.features.matching import ConfidenceTier
from crm_sync.infrastructure.observability.logging import get_logger

logger = get_logger(__name__)


class MailboxRepository:
    """Reads active mailboxes and persists refreshed access tokens."""

    SELECT_COLUMNS = """
        user_id, gmail_email, access_token, refresh_token, token_expires_at,
        sync_frequency_minutes, auto_link_confidence_level,
        last_sync_message_id, last_sync_at
    """

    def __init__(self, pool: DatabasePoolManager, default_frequency_minutes: int):
        self.pool = pool
        self.default_frequency_minutes = default_frequency_minutes

    def _row_to_mailbox(self, row: dict | None) -> MailboxConnection | None:
        if not row:
            return None

        return MailboxConnection(
            user_id=str(row["user_id"]),
            gmail_email=row["gmail_email"],
            access_token=row["access_token"],
            refresh_token=row["refresh_token"],
            token_expires_at=row.get("token_expires_at"),
            sync_frequency_minutes=row.get("sync_frequency_minutes") or self.default_frequency_minutes,
            confidence_level=ConfidenceTier.parse(row.get("auto_link_confidence_level")),
            last_sync_message_id=row.get("last_sync_message_id"),
            last_sync_at=row.get("last_sync_at"),
        )

    async def get_active(self, user_id: str) -> MailboxConnection | None:
        query = f"""
            SELECT {self.SELECT_COLUMNS}
            FROM gmail_sync_tokens
            WHERE user_id = %s AND is_active = true
        """
        return self._row_to_mailbox(await fetch_one(self.pool, query, (user_id,)))

    async def list_frequency_buckets(self) -> dict[int, list[str]]:
        """Active user ids grouped by their sync frequency in minutes."""
        query = """
            SELECT user_id, COALESCE(sync_frequency_minutes, %s) AS frequency
            FROM gmail_sync_tokens
            WHERE is_active = true
            ORDER BY user_id
        """
        rows = await fetch_all(self.pool, query, (self.default_frequency_minutes,))

        buckets: dict[int, list[str]] = {}
        for row in rows:
            buckets.setdefault(int(row["frequency"]), []).append(str(row["user_id"]))
        return buckets

    async def update_access_token(
        self, user_id: str, encrypted_access_token: str, expires_at: datetime | None
    ) -> None:
        query = """
            UPDATE gmail_sync_tokens
            SET access_token = %s,
                token_expires_at = COALESCE(%s, token_expires_at),
                updated_at = NOW()
            WHERE user_id = %s
        """
        await execute_query(self.pool, query, (encrypted_access_token, expires_at, user_id))
        logger.info("Mailbox access token updated", user_id=user_id)
