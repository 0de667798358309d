"""
Gmail ingestion tick for one mailbox.

Lists sent messages from the stored cursor, fetches detail with bounded
concurrency, matches each message against the user's open requirements and
records match records. The run outcome and cursor are persisted together at
the end of the tick; nothing is written to the cursor mid-tick.
"""

import asyncio
import time
from datetime import UTC, datetime

from crm_sync.db.helpers import DatabaseError
from crm_sync.features.email_sync.domain.models import (
    InboundMessage,
    MailboxConnection,
    MatchRecord,
    SyncCursor,
    SyncRunOutcome,
)
from crm_sync.features.email_sync.domain.parser import parse_inbound_message
from crm_sync.features.email_sync.repository.mailbox_repository import MailboxRepository
from crm_sync.features.email_sync.repository.match_record_repository import MatchRecordRepository
from crm_sync.features.email_sync.repository.requirement_repository import RequirementRepository
from crm_sync.features.email_sync.repository.sync_run_repository import SyncRunRepository
from crm_sync.features.email_sync.services.mailbox_session import MailboxAuthError, MailboxSession
from crm_sync.features.matching import MatchResult, Requirement, resolve_match
from crm_sync.infrastructure.observability.logging import get_logger
from crm_sync.services.google_gmail_service import GoogleGmailError, GoogleGmailService
from crm_sync.services.google_oauth_service import GoogleOAuthService
from crm_sync.services.infrastructure.encryption_service import TokenCipher

logger = get_logger(__name__)


class IngestionError(Exception):
    """A tick failed for one mailbox; details are on the run row."""

    def __init__(self, message: str, user_id: str, run_id: str | None = None, recoverable: bool = True):
        super().__init__(message)
        self.user_id = user_id
        self.run_id = run_id
        self.recoverable = recoverable


class EmailSyncService:
    def __init__(
        self,
        mailboxes: MailboxRepository,
        requirements: RequirementRepository,
        match_records: MatchRecordRepository,
        sync_runs: SyncRunRepository,
        gmail: GoogleGmailService,
        oauth: GoogleOAuthService,
        cipher: TokenCipher,
        query: str = "from:me",
        page_size: int = 100,
        fetch_concurrency: int = 5,
    ):
        self.mailboxes = mailboxes
        self.requirements = requirements
        self.match_records = match_records
        self.sync_runs = sync_runs
        self.gmail = gmail
        self.oauth = oauth
        self.cipher = cipher
        self.query = query
        self.page_size = page_size
        self.fetch_concurrency = fetch_concurrency

    def _session(self, mailbox: MailboxConnection) -> MailboxSession:
        return MailboxSession(mailbox, self.cipher, self.oauth, self.gmail, self.mailboxes)

    async def sync_mailbox(self, user_id: str) -> SyncRunOutcome:
        """
        Run one ingestion tick for a user.

        Raises:
            IngestionError: when the tick fails; the run row carries the reason
        """
        mailbox = await self.mailboxes.get_active(user_id)
        if mailbox is None:
            raise IngestionError("No active mailbox", user_id=user_id, recoverable=False)

        outcome = SyncRunOutcome(user_id=user_id)
        outcome.run_id = await self.sync_runs.start_run(user_id)
        started = time.monotonic()

        try:
            await self._run_tick(mailbox, outcome, started)
        except Exception as e:
            outcome.status = "failed"
            outcome.error_message = str(e)
            outcome.duration_ms = int((time.monotonic() - started) * 1000)
            logger.error(
                "Gmail sync tick failed",
                user_id=user_id,
                run_id=outcome.run_id,
                error=str(e),
                error_type=type(e).__name__,
            )
            try:
                await self.sync_runs.fail_run(outcome.run_id, str(e), outcome.to_details())
            except DatabaseError as log_error:
                logger.error("Could not record failed sync run", run_id=outcome.run_id, error=str(log_error))
            recoverable = not isinstance(e, MailboxAuthError) and getattr(e, "recoverable", True)
            raise IngestionError(str(e), user_id=user_id, run_id=outcome.run_id, recoverable=recoverable) from e

        return outcome

    async def _run_tick(self, mailbox: MailboxConnection, outcome: SyncRunOutcome, started: float) -> None:
        session = self._session(mailbox)
        cursor = SyncCursor.parse(mailbox.last_sync_message_id)

        page = await session.list_messages(self.query, cursor.page_token, self.page_size)
        listed_ids = [m["id"] for m in page.get("messages", []) if m.get("id")]
        message_ids = cursor.new_ids(listed_ids)
        outcome.emails_fetched = len(message_ids)

        # Messages that failed last tick get one more attempt
        previously_failed = await self.sync_runs.last_failed_message_ids(mailbox.user_id)
        retry_ids = [mid for mid in previously_failed if mid not in message_ids]
        outcome.retried_message_ids = retry_ids

        if not message_ids and not retry_ids:
            outcome.status = "completed"
            outcome.duration_ms = int((time.monotonic() - started) * 1000)
            await self.sync_runs.complete_run(outcome, advance_cursor=False)
            logger.info("No new emails to sync", user_id=mailbox.user_id)
            return

        candidates = message_ids + retry_ids
        already_synced = await self.match_records.existing_message_ids(candidates)
        outcome.emails_skipped = len(already_synced)
        pending = [mid for mid in candidates if mid not in already_synced]
        retrying = set(retry_ids)

        requirements = await self.requirements.list_open(mailbox.user_id) if pending else []

        semaphore = asyncio.Semaphore(self.fetch_concurrency)

        async def process(message_id: str) -> None:
            async with semaphore:
                await self._process_message(
                    session, mailbox, requirements, message_id, outcome, retry=message_id in retrying
                )

        results = await asyncio.gather(*(process(mid) for mid in pending), return_exceptions=True)

        # Per-message faults are recorded in _process_message; anything that escaped ends the tick
        errors = [r for r in results if isinstance(r, BaseException)]
        if errors:
            raise next((e for e in errors if isinstance(e, MailboxAuthError)), errors[0])

        if message_ids:
            outcome.cursor = SyncCursor.after_page(page.get("nextPageToken"), listed_ids[0]).serialize()
        outcome.status = "completed"
        outcome.duration_ms = int((time.monotonic() - started) * 1000)
        await self.sync_runs.complete_run(outcome, advance_cursor=bool(message_ids))

        logger.info(
            "Gmail sync completed",
            user_id=mailbox.user_id,
            run_id=outcome.run_id,
            fetched=outcome.emails_fetched,
            processed=outcome.emails_processed,
            skipped=outcome.emails_skipped,
            matched=outcome.emails_matched,
            created=outcome.emails_created,
            duration_ms=outcome.duration_ms,
        )

    async def _process_message(
        self,
        session: MailboxSession,
        mailbox: MailboxConnection,
        requirements: list[Requirement],
        message_id: str,
        outcome: SyncRunOutcome,
        retry: bool = False,
    ) -> None:
        try:
            # Re-check in case a concurrent tick recorded it since the batch check
            if await self.match_records.exists(message_id):
                outcome.emails_skipped += 1
                return

            raw = await session.get_message(message_id)
            message = parse_inbound_message(raw)
            outcome.emails_processed += 1

            result = await asyncio.to_thread(
                resolve_match, requirements, message.to_candidate(), mailbox.confidence_level
            )
            if not result.should_link:
                return

            created = await self._record_matches(mailbox.user_id, message, result)
            outcome.emails_created += created
            if created and not result.needs_confirmation:
                outcome.emails_matched += 1

        except MailboxAuthError:
            raise
        except (GoogleGmailError, DatabaseError, KeyError, ValueError) as e:
            if retry:
                outcome.abandoned_message_ids.append(message_id)
            else:
                outcome.failed_message_ids.append(message_id)
            logger.warning(
                "Failed to process message",
                user_id=mailbox.user_id,
                message_id=message_id,
                retry=retry,
                error=str(e),
                error_type=type(e).__name__,
            )

    async def _record_matches(self, user_id: str, message: InboundMessage, result: MatchResult) -> int:
        created = 0
        sent_date = message.internal_date or datetime.now(UTC)
        for recipient in message.recipients:
            record = MatchRecord(
                requirement_id=result.requirement.id,
                user_id=user_id,
                message_id=message.id,
                recipient_email=recipient.email,
                recipient_name=recipient.name,
                subject=message.subject,
                body_preview=message.body_preview,
                sent_date=sent_date,
                match_confidence=result.score,
                needs_user_confirmation=result.needs_confirmation,
            )
            if await self.match_records.insert(record):
                created += 1

        logger.info(
            "Email linked to requirement",
            user_id=user_id,
            message_id=message.id,
            requirement_id=result.requirement.id,
            score=result.score,
            status=result.match_status,
            records_created=created,
        )
        return created
