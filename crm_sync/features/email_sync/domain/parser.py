"""
Parse Gmail API message resources into InboundMessage.

Handles header lookup, URL-safe base64 body decoding (text/plain preferred
over text/html, nested multiparts walked depth-first) and recipient lists
with display names.
"""

import base64
import binascii
import re
from datetime import UTC, datetime
from email.utils import getaddresses

from bs4 import BeautifulSoup

from crm_sync.features.email_sync.domain.models import InboundMessage, Recipient

_WHITESPACE_RE = re.compile(r"\s+")


def decode_base64url(data: str | None) -> str:
    """Decode Gmail's URL-safe base64 without padding; undecodable input yields ''."""
    if not data:
        return ""
    try:
        decoded = base64.urlsafe_b64decode(data + "=" * (-len(data) % 4))
    except (binascii.Error, ValueError):
        return ""
    return decoded.decode("utf-8", errors="ignore")


def _headers(payload: dict) -> dict[str, str]:
    return {h["name"].lower(): h.get("value", "") for h in payload.get("headers", []) if "name" in h}


def parse_addresses(value: str) -> list[Recipient]:
    """Parse a To/Cc header like 'Jane <jane@x.com>, bob@y.com'."""
    if not value:
        return []
    recipients = []
    for name, address in getaddresses([value]):
        address = address.strip()
        if address and "@" in address:
            recipients.append(Recipient(email=address, name=name.strip().strip('"')))
    return recipients


def html_to_text(html: str) -> str:
    """Visible text of an HTML body; script, style and head content is dropped."""
    if not html:
        return ""

    soup = BeautifulSoup(html, "html.parser")
    for tag in soup(["script", "style", "head"]):
        tag.decompose()

    return _WHITESPACE_RE.sub(" ", soup.get_text(separator=" ")).strip()


def _collect_bodies(part: dict, found: dict[str, str]) -> None:
    mime_type = part.get("mimeType", "")
    data = part.get("body", {}).get("data")

    if part.get("filename"):
        return

    if data and mime_type in ("text/plain", "text/html") and mime_type not in found:
        found[mime_type] = decode_base64url(data)
    elif data and not mime_type and "text/plain" not in found:
        # Bare payload body with no declared type
        found["text/plain"] = decode_base64url(data)

    for child in part.get("parts", []) or []:
        _collect_bodies(child, found)


def extract_body(payload: dict) -> str:
    if not payload:
        return ""
    found: dict[str, str] = {}
    _collect_bodies(payload, found)
    if found.get("text/plain"):
        return found["text/plain"]
    if found.get("text/html"):
        return html_to_text(found["text/html"])
    return ""


def _internal_date(value) -> datetime | None:
    if value is None:
        return None
    try:
        return datetime.fromtimestamp(int(value) / 1000, tz=UTC)
    except (TypeError, ValueError, OverflowError, OSError):
        return None


def parse_inbound_message(raw: dict) -> InboundMessage:
    """Build an InboundMessage from a messages.get(format=full) response."""
    payload = raw.get("payload") or {}
    headers = _headers(payload)
    senders = parse_addresses(headers.get("from", ""))

    return InboundMessage(
        id=raw["id"],
        thread_id=raw.get("threadId"),
        subject=headers.get("subject", ""),
        body=extract_body(payload),
        recipients=parse_addresses(headers.get("to", "")),
        sender=senders[0] if senders else None,
        internal_date=_internal_date(raw.get("internalDate")),
        snippet=raw.get("snippet", ""),
    )
