"""
Google OAuth service for mailbox token refresh.
Exchanges a stored refresh token for a fresh Gmail access token.
"""

import asyncio
from datetime import datetime, timedelta, timezone

import httpx

from crm_sync.infrastructure.observability.logging import get_logger

logger = get_logger(__name__)

# Request timeouts and retry configuration
REQUEST_TIMEOUT = 10  # seconds
MAX_RETRIES = 3
BACKOFF_FACTOR = 2  # 2, 4, 8 seconds
RETRY_STATUS_CODES = {429, 500, 502, 503, 504}


class GoogleOAuthError(Exception):
    """Custom exception for Google OAuth-related errors."""

    def __init__(
        self,
        message: str,
        error_code: str | None = None,
        response_data: dict | None = None,
        recoverable: bool = True,
    ):
        super().__init__(message)
        self.error_code = error_code
        self.response_data = response_data or {}
        self.recoverable = recoverable


class TokenResponse:
    """Structured representation of OAuth token response."""

    def __init__(self, data: dict):
        self.access_token = data.get("access_token")
        self.refresh_token = data.get("refresh_token")
        self.token_type = data.get("token_type", "Bearer")
        self.expires_in = data.get("expires_in")
        self.scope = data.get("scope", "")

        if self.expires_in:
            self.expires_at = datetime.now(timezone.utc) + timedelta(seconds=int(self.expires_in))
        else:
            self.expires_at = None

    def is_valid(self) -> bool:
        """Check if token response contains required fields."""
        return bool(self.access_token and self.token_type)


class GoogleOAuthService:
    """Refresh-token exchange against Google's token endpoint."""

    def __init__(
        self,
        client_id: str | None,
        client_secret: str | None,
        token_url: str = "https://oauth2.googleapis.com/token",
        http_client: httpx.AsyncClient | None = None,
    ):
        if not client_id:
            raise GoogleOAuthError("GOOGLE_CLIENT_ID not configured", recoverable=False)
        if not client_secret:
            raise GoogleOAuthError("GOOGLE_CLIENT_SECRET not configured", recoverable=False)

        self.client_id = client_id
        self.client_secret = client_secret
        self.token_url = token_url
        self._http = http_client

    async def _post_with_retry(self, data: dict, operation: str) -> httpx.Response:
        """POST form data with retry/backoff on transient statuses and transport errors."""
        headers = {"Content-Type": "application/x-www-form-urlencoded"}
        client = self._http or httpx.AsyncClient(timeout=REQUEST_TIMEOUT)

        try:
            for attempt in range(1, MAX_RETRIES + 1):
                try:
                    response = await client.post(self.token_url, data=data, headers=headers)
                except httpx.RequestError as exc:
                    if attempt == MAX_RETRIES:
                        raise GoogleOAuthError(f"{operation} failed: {exc}") from exc
                    wait_time = BACKOFF_FACTOR**attempt
                    logger.warning(
                        "Google OAuth request error, retrying",
                        operation=operation,
                        attempt=attempt,
                        wait_time=wait_time,
                        error=str(exc),
                    )
                    await asyncio.sleep(wait_time)
                    continue

                if response.status_code in RETRY_STATUS_CODES and attempt < MAX_RETRIES:
                    wait_time = BACKOFF_FACTOR**attempt
                    logger.warning(
                        "Google OAuth transient status",
                        operation=operation,
                        status_code=response.status_code,
                        attempt=attempt,
                        wait_time=wait_time,
                    )
                    await asyncio.sleep(wait_time)
                    continue

                return response
        finally:
            if self._http is None:
                await client.aclose()

        raise GoogleOAuthError(f"{operation} failed: retries exhausted")

    async def refresh_access_token(self, refresh_token: str) -> TokenResponse:
        """
        Exchange a refresh token for a new access token.

        Raises:
            GoogleOAuthError: recoverable=False when Google rejects the grant
                (revoked or expired refresh token), True for service faults.
        """
        if not refresh_token:
            raise GoogleOAuthError("Refresh token is required", recoverable=False)

        response = await self._post_with_retry(
            {
                "client_id": self.client_id,
                "client_secret": self.client_secret,
                "refresh_token": refresh_token,
                "grant_type": "refresh_token",
            },
            operation="refresh_token",
        )

        try:
            payload = response.json()
        except ValueError:
            payload = {}

        if response.status_code != 200:
            error_code = payload.get("error", "unknown_error")
            logger.error(
                "Token refresh rejected",
                status_code=response.status_code,
                error_code=error_code,
            )
            raise GoogleOAuthError(
                f"Failed to refresh Gmail access token: {payload.get('error_description', error_code)}",
                error_code=error_code,
                response_data=payload,
                recoverable=response.status_code >= 500,
            )

        token = TokenResponse(payload)
        if not token.is_valid():
            raise GoogleOAuthError("Token refresh returned no access token", response_data=payload)

        logger.info("Access token refreshed", expires_in=token.expires_in)
        return token
