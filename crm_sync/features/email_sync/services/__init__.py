"""
Service layer for Gmail ingestion.
"""

from .mailbox_session import MailboxAuthError, MailboxSession
from .scheduler import GmailSyncScheduler, lock_ttl_seconds
from .sync_service import EmailSyncService, IngestionError

__all__ = [
    "EmailSyncService",
    "GmailSyncScheduler",
    "IngestionError",
    "MailboxAuthError",
    "MailboxSession",
    "lock_ttl_seconds",
]
