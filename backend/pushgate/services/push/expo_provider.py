"""
Expo Push Service Provider.

Sends push notifications to Expo push tokens through Expo's relay, which
forwards them to APNS or FCM.

Delivery is two-phase: the send call returns a ticket per message, and the
final receipt is fetched later with get_receipts.
"""

import logging
import time
from typing import Any, Dict, List, Optional

import httpx

from pushgate.core.logging_config import mask_token
from pushgate.core.metrics import record_send_duration
from pushgate.services.push.apns_provider import parse_retry_after
from pushgate.services.push.constants import (
    EXPO_MAX_MESSAGES_PER_REQUEST,
    EXPO_MAX_RECEIPT_IDS_PER_REQUEST,
    EXPO_RECEIPTS_URL,
    EXPO_SEND_URL,
    EXPO_TOKEN_PREFIXES,
    HTTP_CONNECT_TIMEOUT_SECONDS,
    HTTP_TIMEOUT_SECONDS,
    PROVIDER_EXPO,
)
from pushgate.services.push.credentials import CredentialManager
from pushgate.services.push.exceptions import (
    PermanentOther,
    PushTimeout,
    RateLimited,
    TransientNetworkError,
)
from pushgate.services.push.models import (
    ExpoConfig,
    NotificationContent,
    ProviderError,
    ProviderResult,
)

logger = logging.getLogger(__name__)


class ExpoProvider:
    """
    Expo push provider.

    Usage:
        manager = CredentialManager({"expo": ExpoTokenGenerator(access_token)})
        provider = ExpoProvider(ExpoConfig(), manager)
        results = await provider.send_batch(tokens, content)
        receipts = await provider.get_receipts([r.message_id for r in results if r.success])
    """

    name = PROVIDER_EXPO

    def __init__(
        self,
        config: Optional[ExpoConfig] = None,
        credentials: Optional[CredentialManager] = None,
        timeout: float = HTTP_TIMEOUT_SECONDS,
    ):
        self.config = config or ExpoConfig()
        self._credentials = credentials
        self._timeout = timeout
        self._client: Optional[httpx.AsyncClient] = None

        logger.info(
            "Expo provider initialized",
            extra={
                "authenticated": bool(self.config.access_token),
                "batch_size": self.config.batch_size,
            }
        )

    async def _get_client(self) -> httpx.AsyncClient:
        if self._client is None or self._client.is_closed:
            self._client = httpx.AsyncClient(
                timeout=httpx.Timeout(self._timeout, connect=HTTP_CONNECT_TIMEOUT_SECONDS),
                limits=httpx.Limits(max_connections=20, max_keepalive_connections=10),
            )
        return self._client

    @staticmethod
    def is_valid_token(token: Any) -> bool:
        """True for ExponentPushToken[...] / ExpoPushToken[...] values."""
        if not isinstance(token, str) or not token.endswith("]"):
            return False
        for prefix in EXPO_TOKEN_PREFIXES:
            if token.startswith(prefix) and len(token) > len(prefix) + 1:
                return True
        return False

    def build_message(self, token: str, content: NotificationContent) -> Dict[str, Any]:
        """Build one Expo message. Silent content drops title and body."""
        message: Dict[str, Any] = {
            "to": token,
            "priority": "high" if content.priority.value == "high" else "default",
        }
        if content.silent:
            message["_contentAvailable"] = True
        else:
            message["title"] = content.title
            message["body"] = content.body
            if content.sound:
                message["sound"] = content.sound
            if content.badge is not None:
                message["badge"] = content.badge
            if content.category:
                message["categoryId"] = content.category
            if content.channel_id:
                message["channelId"] = content.channel_id
        if content.data:
            message["data"] = dict(content.data)
        if content.ttl is not None:
            message["ttl"] = content.ttl
        return message

    async def _headers(self) -> Dict[str, str]:
        headers = {
            "Accept": "application/json",
            "Accept-Encoding": "gzip, deflate",
            "Content-Type": "application/json",
        }
        access_token = self.config.access_token
        if self._credentials is not None and self._credentials.has_provider(PROVIDER_EXPO):
            access_token = await self._credentials.get_credential(PROVIDER_EXPO)
        if access_token:
            headers["Authorization"] = f"Bearer {access_token}"
        return headers

    async def _post(self, url: str, body: Any) -> httpx.Response:
        client = await self._get_client()
        headers = await self._headers()
        try:
            return await client.post(url, json=body, headers=headers)
        except httpx.TimeoutException as e:
            raise PushTimeout(f"Expo request timed out: {e}", PROVIDER_EXPO) from e
        except httpx.HTTPError as e:
            raise TransientNetworkError(f"Expo transport error: {e}", PROVIDER_EXPO) from e

    @staticmethod
    def _request_error(response: httpx.Response) -> ProviderError:
        """Error for a whole request ({"errors": [{"code", "message"}]})."""
        reason = None
        message = None
        try:
            errors = response.json().get("errors") or []
        except (ValueError, AttributeError):
            errors = []
        if errors and isinstance(errors[0], dict):
            reason = errors[0].get("code")
            message = errors[0].get("message")
        return ProviderError(
            provider=PROVIDER_EXPO,
            status_code=response.status_code,
            reason=reason,
            message=message or (response.text[:200] if response.content else None),
            retry_after=parse_retry_after(response.headers.get("retry-after")),
        )

    @staticmethod
    def _ticket_result(token: str, ticket: Dict[str, Any], pending: bool = True) -> ProviderResult:
        if ticket.get("status") == "ok":
            return ProviderResult.ok(PROVIDER_EXPO, token, ticket.get("id") or token, 200, receipt_pending=pending)
        details = ticket.get("details") or {}
        return ProviderResult.failed(PROVIDER_EXPO, token, ProviderError(
            provider=PROVIDER_EXPO,
            status_code=200,
            reason=details.get("error"),
            message=ticket.get("message"),
        ))

    async def send(self, device_token: str, content: NotificationContent) -> ProviderResult:
        """
        Send to a single Expo token.

        Raises:
            PushTimeout: Request timed out
            TransientNetworkError: Connection-level failure
        """
        results = await self.send_batch([device_token], content)
        return results[0]

    async def send_batch(
        self,
        device_tokens: List[str],
        content: NotificationContent,
    ) -> List[ProviderResult]:
        """
        Send one notification to many Expo tokens.

        Tokens are posted as JSON arrays of at most batch_size messages. An
        accepted ticket is a provisional success with receipt_pending set.
        Malformed tokens fail without a request.

        Returns:
            One ProviderResult per token, in input order

        Raises:
            PushTimeout: Request timed out
            TransientNetworkError: Connection-level failure
        """
        if not device_tokens:
            return []

        results: Dict[int, ProviderResult] = {}
        valid: List[int] = []
        for idx, token in enumerate(device_tokens):
            if self.is_valid_token(token):
                valid.append(idx)
            else:
                logger.info(
                    "Rejected malformed Expo token",
                    extra={"device_token": mask_token(token if isinstance(token, str) else repr(token))},
                )
                results[idx] = ProviderResult.failed(PROVIDER_EXPO, token, ProviderError(
                    provider=PROVIDER_EXPO,
                    reason="InvalidPushToken",
                    message="Not an Expo push token",
                ))

        size = min(self.config.batch_size, EXPO_MAX_MESSAGES_PER_REQUEST)
        for start in range(0, len(valid), size):
            chunk = valid[start:start + size]
            body = [self.build_message(device_tokens[i], content) for i in chunk]

            start_time = time.time()
            response = await self._post(EXPO_SEND_URL, body)
            record_send_duration(PROVIDER_EXPO, time.time() - start_time)

            if response.status_code != 200:
                error = self._request_error(response)
                logger.warning(
                    "Expo push request failed",
                    extra={
                        "status_code": response.status_code,
                        "reason": error.reason,
                        "batch_size": len(chunk),
                    }
                )
                for i in chunk:
                    results[i] = ProviderResult.failed(PROVIDER_EXPO, device_tokens[i], error)
                continue

            try:
                tickets = response.json().get("data") or []
            except (ValueError, AttributeError):
                tickets = []

            for position, i in enumerate(chunk):
                if position < len(tickets) and isinstance(tickets[position], dict):
                    results[i] = self._ticket_result(device_tokens[i], tickets[position])
                else:
                    results[i] = ProviderResult.from_exception(
                        PROVIDER_EXPO,
                        device_tokens[i],
                        TransientNetworkError("Expo response is missing a ticket", PROVIDER_EXPO),
                    )

        ordered = [results[i] for i in range(len(device_tokens))]
        success_count = sum(1 for r in ordered if r.success)
        logger.info(
            "Expo batch send complete",
            extra={
                "total": len(device_tokens),
                "accepted": success_count,
                "failed": len(device_tokens) - success_count,
            }
        )
        return ordered

    async def get_receipts(self, ticket_ids: List[str]) -> Dict[str, ProviderResult]:
        """
        Fetch delivery receipts for previously accepted tickets.

        Receipts that Expo has not produced yet are absent from the result.

        Args:
            ticket_ids: Ticket ids from send/send_batch

        Returns:
            Mapping of ticket id to ProviderResult (token field holds the ticket id)

        Raises:
            RateLimited: Expo returned 429
            TransientNetworkError: Timeout, transport failure or 5xx
            PermanentOther: Any other rejected request
        """
        receipts: Dict[str, ProviderResult] = {}
        for start in range(0, len(ticket_ids), EXPO_MAX_RECEIPT_IDS_PER_REQUEST):
            chunk = ticket_ids[start:start + EXPO_MAX_RECEIPT_IDS_PER_REQUEST]
            response = await self._post(EXPO_RECEIPTS_URL, {"ids": chunk})

            if response.status_code != 200:
                error = self._request_error(response)
                if response.status_code == 429:
                    raise RateLimited("Expo receipts rate limited", PROVIDER_EXPO, error.retry_after)
                if response.status_code >= 500:
                    raise TransientNetworkError(f"Expo receipts unavailable ({response.status_code})", PROVIDER_EXPO)
                raise PermanentOther(
                    f"Expo receipts request rejected: {error.message}", PROVIDER_EXPO, error.reason
                )

            try:
                data = response.json().get("data") or {}
            except (ValueError, AttributeError):
                data = {}

            for ticket_id, receipt in data.items():
                if isinstance(receipt, dict):
                    receipts[ticket_id] = self._ticket_result(ticket_id, receipt, pending=False)

        logger.info(
            "Expo receipts fetched",
            extra={"requested": len(ticket_ids), "returned": len(receipts)},
        )
        return receipts

    async def close(self) -> None:
        if self._client and not self._client.is_closed:
            await self._client.aclose()
            self._client = None
            logger.debug("Expo provider closed")

    async def __aenter__(self) -> "ExpoProvider":
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb) -> None:
        await self.close()
