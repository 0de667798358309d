"""
Authenticated Gmail access for one mailbox during one tick.

Every API call may refresh the access token at most once: a 401 triggers a
refresh and a single retry, and a second 401 (or a rejected refresh) raises
MailboxAuthError so the tick fails with "reconnect mailbox".
"""

import asyncio
from collections.abc import Awaitable, Callable
from typing import Any

from crm_sync.features.email_sync.domain.models import MailboxConnection
from crm_sync.features.email_sync.repository.mailbox_repository import MailboxRepository
from crm_sync.infrastructure.observability.logging import get_logger
from crm_sync.services.google_gmail_service import GoogleGmailError, GoogleGmailService
from crm_sync.services.google_oauth_service import GoogleOAuthError, GoogleOAuthService
from crm_sync.services.infrastructure.encryption_service import EncryptionError, TokenCipher

logger = get_logger(__name__)

RECONNECT_MESSAGE = "Gmail authorization failed. Please reconnect your mailbox."


class MailboxAuthError(Exception):
    """Credentials are unusable for this tick; the user must reconnect."""

    def __init__(self, message: str = RECONNECT_MESSAGE, user_id: str | None = None):
        super().__init__(message)
        self.user_id = user_id
        self.recoverable = False


class MailboxSession:
    def __init__(
        self,
        mailbox: MailboxConnection,
        cipher: TokenCipher,
        oauth: GoogleOAuthService,
        gmail: GoogleGmailService,
        mailboxes: MailboxRepository,
    ):
        self.mailbox = mailbox
        self._cipher = cipher
        self._oauth = oauth
        self._gmail = gmail
        self._mailboxes = mailboxes
        self._access_token: str | None = None
        self._refresh_lock = asyncio.Lock()
        self.refresh_count = 0

    @property
    def user_id(self) -> str:
        return self.mailbox.user_id

    def _current_token(self) -> str:
        if self._access_token is None:
            try:
                self._access_token = self._cipher.decrypt(self.mailbox.access_token)
            except EncryptionError as e:
                raise MailboxAuthError(user_id=self.user_id) from e
        return self._access_token

    async def _refresh(self, stale_token: str) -> str:
        async with self._refresh_lock:
            # Another concurrent call already refreshed past the token we used
            if self._access_token is not None and self._access_token != stale_token:
                return self._access_token

            try:
                refresh_token = self._cipher.decrypt(self.mailbox.refresh_token)
                token = await self._oauth.refresh_access_token(refresh_token)
                encrypted = self._cipher.encrypt(token.access_token)
            except (GoogleOAuthError, EncryptionError) as e:
                logger.error("Mailbox token refresh failed", user_id=self.user_id, error=str(e))
                raise MailboxAuthError(user_id=self.user_id) from e

            await self._mailboxes.update_access_token(self.user_id, encrypted, token.expires_at)
            self.mailbox.access_token = encrypted
            self._access_token = token.access_token
            self.refresh_count += 1
            logger.info("Mailbox access token refreshed", user_id=self.user_id)
            return self._access_token

    async def _call(self, operation: Callable[[str], Awaitable[Any]]) -> Any:
        token = self._current_token()
        try:
            return await operation(token)
        except GoogleGmailError as e:
            if not e.is_unauthorized:
                raise

        token = await self._refresh(token)
        try:
            return await operation(token)
        except GoogleGmailError as e:
            if e.is_unauthorized:
                raise MailboxAuthError(user_id=self.user_id) from e
            raise

    async def list_messages(
        self, query: str | None, page_token: str | None, max_results: int
    ) -> dict[str, Any]:
        return await self._call(
            lambda token: self._gmail.list_messages(
                token, max_results=max_results, query=query, page_token=page_token
            )
        )

    async def get_message(self, message_id: str) -> dict:
        return await self._call(lambda token: self._gmail.get_message(token, message_id))
