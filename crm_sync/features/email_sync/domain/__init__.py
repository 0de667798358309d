"""
Domain layer for Gmail ingestion: message/mailbox models and the message parser.
"""

from .models import InboundMessage, MailboxConnection, MatchRecord, Recipient, SyncRunOutcome
from .parser import parse_inbound_message

__all__ = [
    "InboundMessage",
    "MailboxConnection",
    "MatchRecord",
    "Recipient",
    "SyncRunOutcome",
    "parse_inbound_message",
]
