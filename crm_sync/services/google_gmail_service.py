"""
Google Gmail API client for listing and reading messages.
Pure API client: HTTP, auth headers and error mapping. Parsing lives in
crm_sync.features.email_sync.domain.parser.
"""

from typing import Any

import httpx

from crm_sync.infrastructure.observability.logging import get_logger

logger = get_logger(__name__)

GMAIL_API_BASE_URL = "https://gmail.googleapis.com/gmail/v1"
GMAIL_USER_ID = "me"

REQUEST_TIMEOUT = 30  # seconds
GMAIL_MAX_PAGE_SIZE = 500


class GoogleGmailError(Exception):
    """Custom exception for Google Gmail API errors."""

    def __init__(
        self,
        message: str,
        error_code: str | None = None,
        status_code: int | None = None,
        response_data: dict | None = None,
    ):
        super().__init__(message)
        self.error_code = error_code
        self.status_code = status_code
        self.response_data = response_data or {}

    @property
    def is_unauthorized(self) -> bool:
        return self.status_code == 401


def _map_gmail_error(status_code: int, error_message: str) -> str:
    """Map Gmail API status codes to user-facing messages."""
    error_mappings = {
        400: "Invalid Gmail request format.",
        401: "Gmail authorization expired. Please reconnect.",
        403: "Gmail access denied. Please check permissions.",
        404: "Email message not found.",
        429: "Too many Gmail requests. Please try again later.",
        500: "Gmail service temporarily unavailable.",
    }
    return error_mappings.get(status_code, f"Gmail error: {error_message}")


class GoogleGmailService:
    """Async Gmail REST client sharing one httpx.AsyncClient."""

    def __init__(self, http_client: httpx.AsyncClient | None = None):
        self._http = http_client or httpx.AsyncClient(
            base_url=GMAIL_API_BASE_URL, timeout=REQUEST_TIMEOUT
        )

    async def close(self) -> None:
        await self._http.aclose()

    @staticmethod
    def _auth_headers(access_token: str) -> dict:
        return {
            "Authorization": f"Bearer {access_token}",
            "Accept": "application/json",
        }

    def _handle_api_response(self, response: httpx.Response, operation: str) -> dict:
        """
        Validate a Gmail API response and return its JSON body.

        Raises:
            GoogleGmailError: If the response is not successful or not JSON
        """
        if response.is_success:
            try:
                return response.json() if response.content else {}
            except ValueError as e:
                raise GoogleGmailError(f"Invalid response format: {e}") from e

        try:
            error_info = response.json().get("error", {})
        except ValueError:
            error_info = {}

        error_message = error_info.get("message", f"HTTP {response.status_code}")
        logger.warning(
            f"Gmail API {operation} failed",
            status_code=response.status_code,
            error_message=error_message,
        )
        raise GoogleGmailError(
            _map_gmail_error(response.status_code, error_message),
            error_code=str(error_info.get("code", response.status_code)),
            status_code=response.status_code,
            response_data=error_info,
        )

    async def _get(self, path: str, access_token: str, params: dict, operation: str) -> dict:
        try:
            response = await self._http.get(
                path, headers=self._auth_headers(access_token), params=params
            )
        except httpx.RequestError as e:
            logger.warning(f"Gmail API {operation} transport error", error=str(e))
            raise GoogleGmailError(f"Gmail request failed: {e}") from e
        return self._handle_api_response(response, operation)

    async def list_messages(
        self,
        access_token: str,
        max_results: int = 100,
        query: str | None = None,
        page_token: str | None = None,
    ) -> dict[str, Any]:
        """
        List message ids.

        Returns the raw page: {"messages": [{"id", "threadId"}], "nextPageToken", ...}
        """
        params: dict[str, Any] = {"maxResults": min(max_results, GMAIL_MAX_PAGE_SIZE)}
        if query:
            params["q"] = query
        if page_token:
            params["pageToken"] = page_token

        data = await self._get(
            f"/users/{GMAIL_USER_ID}/messages", access_token, params, "list_messages"
        )
        logger.debug(
            "Gmail messages listed",
            message_count=len(data.get("messages", [])),
            has_next_page=bool(data.get("nextPageToken")),
        )
        return data

    async def get_message(self, access_token: str, message_id: str, format: str = "full") -> dict:
        """Fetch one message with headers, payload parts and internalDate."""
        return await self._get(
            f"/users/{GMAIL_USER_ID}/messages/{message_id}",
            access_token,
            {"format": format},
            "get_message",
        )
