"""
Gmail ingestion feature package.

Sent mail is pulled on a per-mailbox schedule, scored against the user's
open requirements and linked as requirement_emails rows. Domain models,
repositories, services and the job entry point live together here.
"""

from .domain import InboundMessage, MailboxConnection, MatchRecord, SyncRunOutcome  # noqa: F401
from .jobs.gmail_sync_job import start_gmail_sync_scheduler  # noqa: F401
from .services import EmailSyncService, GmailSyncScheduler, IngestionError, MailboxAuthError  # noqa: F401
