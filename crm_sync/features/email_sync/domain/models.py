"""
Domain models for the Gmail ingestion feature.

Plain dataclasses shared by the parser, repositories and sync service.
"""

from dataclasses import dataclass, field
from datetime import datetime

from crm_sync.features.matching import ConfidenceTier, EmailCandidate

BODY_PREVIEW_LENGTH = 500
SENT_VIA_GMAIL = "gmail_synced"

# Cursors that name a message rather than a list page carry this prefix
MESSAGE_CURSOR_PREFIX = "id:"


@dataclass(slots=True, frozen=True)
class SyncCursor:
    """
    Resumption point stored in gmail_sync_tokens.last_sync_message_id.

    Either a Gmail nextPageToken (resume listing from that page) or the id of
    the newest message already processed (list from the top and stop there).
    """

    page_token: str | None = None
    last_message_id: str | None = None

    @classmethod
    def parse(cls, value: str | None) -> "SyncCursor":
        if not value:
            return cls()
        if value.startswith(MESSAGE_CURSOR_PREFIX):
            return cls(last_message_id=value[len(MESSAGE_CURSOR_PREFIX) :])
        return cls(page_token=value)

    @classmethod
    def after_page(cls, next_page_token: str | None, newest_message_id: str) -> "SyncCursor":
        if next_page_token:
            return cls(page_token=next_page_token)
        return cls(last_message_id=newest_message_id)

    def serialize(self) -> str | None:
        if self.page_token:
            return self.page_token
        if self.last_message_id:
            return f"{MESSAGE_CURSOR_PREFIX}{self.last_message_id}"
        return None

    def new_ids(self, listed_ids: list[str]) -> list[str]:
        """Ids listed ahead of the stop marker (Gmail lists newest first)."""
        if not self.last_message_id or self.last_message_id not in listed_ids:
            return listed_ids
        return listed_ids[: listed_ids.index(self.last_message_id)]


@dataclass(slots=True, frozen=True)
class Recipient:
    email: str
    name: str = ""

    @property
    def domain(self) -> str:
        return self.email.rsplit("@", 1)[1].lower() if "@" in self.email else ""


@dataclass(slots=True)
class InboundMessage:
    """A sent message as read from the mail provider."""

    id: str
    thread_id: str | None
    subject: str
    body: str
    recipients: list[Recipient]
    sender: Recipient | None = None
    internal_date: datetime | None = None
    snippet: str = ""

    @property
    def primary_recipient(self) -> Recipient | None:
        return self.recipients[0] if self.recipients else None

    @property
    def body_preview(self) -> str:
        return (self.body or self.snippet)[:BODY_PREVIEW_LENGTH]

    def to_candidate(self) -> EmailCandidate:
        """Only the first recipient takes part in domain scoring."""
        primary = self.primary_recipient
        return EmailCandidate(
            subject=self.subject,
            body=self.body,
            recipient=primary.email if primary else "",
        )


@dataclass(slots=True)
class MailboxConnection:
    """Represents an active gmail_sync_tokens row (tokens still encrypted)."""

    user_id: str
    gmail_email: str
    access_token: str
    refresh_token: str
    token_expires_at: datetime | None = None
    sync_frequency_minutes: int = 15
    confidence_level: ConfidenceTier = ConfidenceTier.MEDIUM
    last_sync_message_id: str | None = None
    last_sync_at: datetime | None = None


@dataclass(slots=True)
class MatchRecord:
    """One requirement_emails row linking a sent message to a requirement."""

    requirement_id: str
    user_id: str
    message_id: str
    recipient_email: str
    recipient_name: str
    subject: str
    body_preview: str
    sent_date: datetime
    match_confidence: int
    needs_user_confirmation: bool
    sent_via: str = SENT_VIA_GMAIL
    status: str = "sent"

    @property
    def link_status(self) -> str:
        return "pending_confirmation" if self.needs_user_confirmation else "linked"


@dataclass(slots=True)
class SyncRunOutcome:
    """Counts and terminal state of one ingestion tick for one mailbox."""

    user_id: str
    run_id: str | None = None
    status: str = "in_progress"
    emails_fetched: int = 0
    emails_processed: int = 0
    emails_skipped: int = 0
    emails_matched: int = 0
    emails_created: int = 0
    cursor: str | None = None
    duration_ms: int = 0
    error_message: str | None = None
    failed_message_ids: list[str] = field(default_factory=list)
    # Failures from the previous tick retried here, and those that failed again
    retried_message_ids: list[str] = field(default_factory=list)
    abandoned_message_ids: list[str] = field(default_factory=list)

    def to_details(self) -> dict:
        return {
            "skipped_existing": self.emails_skipped,
            "failed_message_ids": self.failed_message_ids,
            "retried_message_ids": self.retried_message_ids,
            "abandoned_message_ids": self.abandoned_message_ids,
            "duration_ms": self.duration_ms,
        }
