"""
Client for the messaging provider's HTTP API.

Every outbound call goes through RateLimitedClient, which applies the
RetryPolicy: 429 responses back off exponentially, transport failures wait
a fixed interval, and any other response is handed back unchanged.
"""

import logging
from typing import Any, Optional

import httpx
from pydantic import ValidationError

from chatsync.metrics import record_provider_request, record_provider_retry
from chatsync.retry import RetryPolicy
from chatsync.schemas import MediaLocation, RemoteConversation

logger = logging.getLogger(__name__)


class ProviderError(Exception):
    """Raised when the provider answers with a non-success status."""

    def __init__(self, endpoint: str, status_code: Optional[int], detail: str = "") -> None:
        self.endpoint = endpoint
        self.status_code = status_code
        self.detail = detail
        super().__init__(f"Provider error on {endpoint}: {status_code} {detail}".strip())


class RateLimitExceeded(ProviderError):
    """Raised when a call is still rate limited after every retry."""

    def __init__(self, endpoint: str, response: httpx.Response) -> None:
        self.response = response
        super().__init__(endpoint, response.status_code, "rate limit retries exhausted")


class RateLimitedClient:
    """Sends single requests with the retry policy applied."""

    def __init__(self, http: httpx.Client, policy: RetryPolicy) -> None:
        self.http = http
        self.policy = policy

    def send(self, request: httpx.Request, endpoint: str = "unknown") -> httpx.Response:
        """
        Send a request, retrying on rate limiting and network failure.

        Args:
            request: Prepared request; re-sent as-is on retry
            endpoint: Short name used in logs and metrics (never the URL,
                which carries the API token)

        Returns:
            The first response that is not a rate-limit signal

        Raises:
            RateLimitExceeded: every attempt was rate limited
            httpx.TransportError: the last attempt failed without a response
        """
        policy = self.policy
        last_error: Optional[Exception] = None

        for attempt in range(1, policy.max_attempts + 1):
            try:
                response = self.http.send(request)
            except httpx.TransportError as e:
                last_error = e
                record_provider_request(endpoint, "network_error")
                logger.warning(f"{endpoint}: attempt {attempt}/{policy.max_attempts} failed: {e!r}")
                if attempt < policy.max_attempts:
                    record_provider_retry("network")
                    policy.sleep(policy.network_delay)
                continue

            record_provider_request(endpoint, str(response.status_code))

            if policy.rate_limited(response):
                last_error = RateLimitExceeded(endpoint, response)
                if attempt < policy.max_attempts:
                    delay = policy.rate_limit_backoff(attempt)
                    logger.warning(
                        f"{endpoint}: rate limited (attempt {attempt}/{policy.max_attempts}), "
                        f"waiting {delay:.1f}s"
                    )
                    record_provider_retry("rate_limited")
                    policy.sleep(delay)
                continue

            return response

        logger.error(f"{endpoint}: giving up after {policy.max_attempts} attempts")
        raise last_error


class ProviderClient:
    """Provider endpoints for one connected instance."""

    def __init__(self, instance_id: str, token: str, requester: RateLimitedClient, base_url: str) -> None:
        self.instance_id = instance_id
        self._token = token
        self.requester = requester
        self.base_url = f"{base_url.rstrip('/')}/waInstance{instance_id}"

    def _call(self, method: str, endpoint: str, json: Optional[dict] = None) -> Any:
        url = f"{self.base_url}/{endpoint}/{self._token}"
        request = self.requester.http.build_request(method, url, json=json)
        response = self.requester.send(request, endpoint)
        if not response.is_success:
            raise ProviderError(endpoint, response.status_code, response.text[:200])
        try:
            return response.json()
        except ValueError:
            raise ProviderError(endpoint, response.status_code, "response is not JSON")

    def list_conversations(self) -> list[RemoteConversation]:
        """List the instance's chats. Malformed entries are logged and dropped."""
        payload = self._call("GET", "getChats")
        if not isinstance(payload, list):
            raise ProviderError("getChats", 200, "expected a list of chats")

        conversations = []
        for item in payload:
            try:
                conversations.append(RemoteConversation.model_validate(item))
            except ValidationError as e:
                logger.warning(f"Ignoring malformed chat entry: {e.error_count()} validation error(s)")
        logger.info(f"Fetched {len(conversations)} chats for instance {self.instance_id}")
        return conversations

    def get_history(self, chat_id: str, count: int) -> list[dict]:
        """
        Fetch the latest `count` messages of a chat.

        Returns raw message dicts; the importer validates them one by one so a
        single bad message does not sink the batch.
        """
        payload = self._call("POST", "getChatHistory", json={"chatId": chat_id, "count": count})
        if not isinstance(payload, list):
            raise ProviderError("getChatHistory", 200, "expected a list of messages")
        return payload

    def resolve_media(self, chat_id: str, message_id: str) -> Optional[str]:
        """Ask the provider for a download URL of a media message."""
        payload = self._call("POST", "downloadFile", json={"chatId": chat_id, "idMessage": message_id})
        if not isinstance(payload, dict):
            return None
        return MediaLocation.model_validate(payload).download_url
