"""
FCM (Firebase Cloud Messaging) Provider.

Sends Android (and FCM-routed iOS) push notifications through the FCM
HTTP v1 API.

Features:
- OAuth2 bearer token from the service account via the CredentialManager
- HTTP/2 client shared across concurrent sends
- Multicast as concurrent per-token v1 calls with a per-token envelope
- Topic messaging
- One token refresh and resend on 401
"""

import asyncio
import logging
import time
from typing import Any, Dict, List, Optional

import httpx

from pushgate.core.logging_config import mask_token
from pushgate.core.metrics import record_send_duration
from pushgate.services.push.apns_provider import parse_retry_after
from pushgate.services.push.constants import (
    APNS_PRIORITY_CONSERVE_POWER,
    APNS_PRIORITY_IMMEDIATE,
    DEFAULT_TTL_SECONDS,
    FCM_ERROR_TYPE,
    FCM_MAX_MULTICAST_TOKENS,
    FCM_SEND_URL,
    HTTP_CONNECT_TIMEOUT_SECONDS,
    HTTP_TIMEOUT_SECONDS,
    PROVIDER_FCM,
)
from pushgate.services.push.credentials import CredentialManager
from pushgate.services.push.exceptions import (
    ConfigurationError,
    PushError,
    PushTimeout,
    TransientNetworkError,
)
from pushgate.services.push.models import (
    FCMConfig,
    MulticastResponse,
    NotificationContent,
    ProviderError,
    ProviderResult,
)

logger = logging.getLogger(__name__)


class FCMProvider:
    """
    FCM provider using the HTTP v1 API.

    Usage:
        config = FCMConfig(
            project_id="example-12345",
            credentials_path="/path/to/service-account.json",
        )
        manager = CredentialManager({"fcm": FCMTokenGenerator(config)})
        provider = FCMProvider(config, manager)
        result = await provider.send(device_token, content)

    Attributes:
        config: FCM configuration
        _client: httpx AsyncClient with HTTP/2 enabled
    """

    name = PROVIDER_FCM

    def __init__(
        self,
        config: FCMConfig,
        credentials: CredentialManager,
        concurrency: int = 10,
        timeout: float = HTTP_TIMEOUT_SECONDS,
    ):
        """
        Initialize FCM provider.

        Args:
            config: FCM configuration with project and service account
            credentials: Credential manager holding an FCM token generator
            concurrency: Parallel requests in send_multicast
            timeout: Per-request timeout in seconds
        """
        self.config = config
        self._credentials = credentials
        self._concurrency = max(1, concurrency)
        self._timeout = timeout
        self._url = FCM_SEND_URL.format(project_id=config.project_id)
        self._client: Optional[httpx.AsyncClient] = None

        logger.info(
            "FCM provider created",
            extra={"project_id": config.project_id}
        )

    async def _get_client(self) -> httpx.AsyncClient:
        if self._client is None or self._client.is_closed:
            self._client = httpx.AsyncClient(
                http2=True,
                timeout=httpx.Timeout(self._timeout, connect=HTTP_CONNECT_TIMEOUT_SECONDS),
                limits=httpx.Limits(max_connections=100, max_keepalive_connections=20),
            )
        return self._client

    def build_message(
        self,
        content: NotificationContent,
        token: Optional[str] = None,
        topic: Optional[str] = None,
    ) -> Dict[str, Any]:
        """
        Build the v1 request body for one target.

        Silent content produces a data-only message.

        Args:
            content: Notification content
            token: Device registration token
            topic: Topic name (instead of token)

        Returns:
            {"message": {...}} ready for JSON serialization
        """
        high = content.priority.value == "high"
        ttl = content.ttl if content.ttl is not None else DEFAULT_TTL_SECONDS

        android: Dict[str, Any] = {
            "priority": "HIGH" if high else "NORMAL",
            "ttl": f"{ttl}s",
        }
        if content.collapse_key:
            android["collapse_key"] = content.collapse_key

        aps: Dict[str, Any] = {}
        message: Dict[str, Any] = {}

        if content.silent:
            aps["content-available"] = 1
        else:
            notification = {"title": content.title, "body": content.body}
            if content.image_url:
                notification["image"] = content.image_url
            message["notification"] = notification

            android_notification: Dict[str, Any] = {}
            if content.sound:
                android_notification["sound"] = content.sound
                aps["sound"] = content.sound
            if content.thread_id:
                android_notification["tag"] = content.thread_id
                aps["thread-id"] = content.thread_id
            if content.category:
                android_notification["click_action"] = content.category
                aps["category"] = content.category
            if android_notification:
                android["notification"] = android_notification
            if content.badge is not None:
                aps["badge"] = content.badge

        if content.data:
            message["data"] = dict(content.data)

        message["android"] = android
        message["apns"] = {
            "headers": {
                "apns-priority": APNS_PRIORITY_IMMEDIATE if content.is_high_priority else APNS_PRIORITY_CONSERVE_POWER,
            },
            "payload": {"aps": aps},
        }

        if token is not None:
            message["token"] = token
        elif topic is not None:
            message["topic"] = topic
        else:
            raise ValueError("FCM message needs a token or a topic")

        return {"message": message}

    @staticmethod
    def _parse_error(response: httpx.Response) -> ProviderError:
        """
        Extract the FCM error code.

        The specific FcmError errorCode (UNREGISTERED, QUOTA_EXCEEDED, ...)
        is preferred over the generic canonical status.
        """
        reason = None
        message = None
        try:
            error = response.json().get("error", {})
        except (ValueError, AttributeError):
            error = {}
        if isinstance(error, dict):
            message = error.get("message")
            reason = error.get("status")
            for detail in error.get("details") or []:
                if isinstance(detail, dict) and detail.get("@type") == FCM_ERROR_TYPE and detail.get("errorCode"):
                    reason = detail["errorCode"]
                    break
        return ProviderError(
            provider=PROVIDER_FCM,
            status_code=response.status_code,
            reason=reason,
            message=message,
            retry_after=parse_retry_after(response.headers.get("retry-after")),
        )

    async def _post(self, body: Dict[str, Any], access_token: str) -> httpx.Response:
        client = await self._get_client()
        try:
            return await client.post(
                self._url,
                json=body,
                headers={"Authorization": f"Bearer {access_token}"},
            )
        except httpx.TimeoutException as e:
            raise PushTimeout(f"FCM request timed out: {e}", PROVIDER_FCM) from e
        except httpx.HTTPError as e:
            raise TransientNetworkError(f"FCM transport error: {e}", PROVIDER_FCM) from e

    async def _send_message(self, body: Dict[str, Any], target: str) -> ProviderResult:
        start_time = time.time()

        response: Optional[httpx.Response] = None
        for auth_attempt in range(2):
            access_token = await self._credentials.get_credential(PROVIDER_FCM)
            response = await self._post(body, access_token)
            if response.status_code != 401:
                break
            logger.warning(
                "FCM rejected access token",
                extra={"auth_attempt": auth_attempt + 1, "project_id": self.config.project_id},
            )
            self._credentials.invalidate(PROVIDER_FCM, access_token)

        record_send_duration(PROVIDER_FCM, time.time() - start_time)

        if response.status_code == 200:
            try:
                message_id = response.json().get("name")
            except ValueError:
                message_id = None
            logger.debug(
                "FCM message accepted",
                extra={"target": mask_token(target), "message_id": message_id},
            )
            return ProviderResult.ok(PROVIDER_FCM, target, message_id, response.status_code)

        error = self._parse_error(response)
        if response.status_code == 401:
            error.message = f"{error.reason or 'UNAUTHENTICATED'}: access token rejected twice"
            error.reason = "auth_rejected"
        log = logger.error if response.status_code == 400 else logger.debug
        log(
            "FCM error response",
            extra={
                "status_code": response.status_code,
                "reason": error.reason,
                "error": error.message,
                "target": mask_token(target),
            },
        )
        return ProviderResult.failed(PROVIDER_FCM, target, error)

    async def send(
        self,
        device_token: str,
        content: NotificationContent,
    ) -> ProviderResult:
        """
        Send a push notification to a single device.

        Args:
            device_token: FCM device registration token
            content: Notification content

        Returns:
            ProviderResult with the FCM message name on success

        Raises:
            ConfigurationError: Access token could not be minted
            PushTimeout: Request timed out
            TransientNetworkError: Connection-level failure
        """
        return await self._send_message(self.build_message(content, token=device_token), device_token)

    async def send_to_topic(self, topic: str, content: NotificationContent) -> ProviderResult:
        """Send to every device subscribed to an FCM topic."""
        result = await self._send_message(self.build_message(content, topic=topic), topic)
        logger.info(
            "FCM topic send complete",
            extra={"topic": topic, "success": result.success},
        )
        return result

    async def send_multicast(
        self,
        device_tokens: List[str],
        content: NotificationContent,
    ) -> MulticastResponse:
        """
        Send one notification to up to 500 devices.

        The v1 API has no multi-token endpoint, so per-token requests run
        concurrently over the shared HTTP/2 connection.

        Returns:
            MulticastResponse with one sub-result per token, in input order.
            A token-level failure inside the envelope does not fail the others.

        Raises:
            ValueError: More than 500 tokens
            ConfigurationError: Access token could not be minted
        """
        if len(device_tokens) > FCM_MAX_MULTICAST_TOKENS:
            raise ValueError(f"FCM multicast accepts at most {FCM_MAX_MULTICAST_TOKENS} tokens")
        if not device_tokens:
            return MulticastResponse()

        semaphore = asyncio.Semaphore(self._concurrency)

        async def send_with_semaphore(token: str) -> ProviderResult:
            async with semaphore:
                return await self.send(token, content)

        results = await asyncio.gather(
            *[send_with_semaphore(token) for token in device_tokens],
            return_exceptions=True,
        )

        responses: List[ProviderResult] = []
        for token, result in zip(device_tokens, results):
            if isinstance(result, ConfigurationError):
                raise result
            if isinstance(result, PushError):
                responses.append(ProviderResult.from_exception(PROVIDER_FCM, token, result))
            elif isinstance(result, BaseException):
                logger.error(f"FCM multicast exception for token: {result}", exc_info=result)
                responses.append(ProviderResult.from_exception(PROVIDER_FCM, token, result))
            else:
                responses.append(result)

        envelope = MulticastResponse(responses=responses)
        logger.info(
            "FCM multicast complete",
            extra={
                "total": len(device_tokens),
                "success": envelope.success_count,
                "failed": envelope.failure_count,
            }
        )
        return envelope

    async def send_batch(
        self,
        device_tokens: List[str],
        content: NotificationContent,
    ) -> List[ProviderResult]:
        """Per-token results of send_multicast, aligned with device_tokens."""
        envelope = await self.send_multicast(device_tokens, content)
        return envelope.responses

    async def close(self) -> None:
        """Close the HTTP client and release resources."""
        if self._client and not self._client.is_closed:
            await self._client.aclose()
            self._client = None
            logger.debug("FCM provider closed")

    async def __aenter__(self) -> "FCMProvider":
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb) -> None:
        await self.close()
