"""
APNS (Apple Push Notification Service) Provider.

Sends iOS push notifications over HTTP/2 with token-based (JWT) auth.

Features:
- HTTP/2 connection with persistent connection pooling
- Provider token obtained from the CredentialManager
- One regenerate-and-retry on 403 (stale or revoked provider token)
- Single attempt per call; backoff belongs to the RetryController
"""

import asyncio
import json
import logging
import time
from typing import List, Optional

import httpx

from pushgate.core.logging_config import mask_token
from pushgate.core.metrics import record_send_duration
from pushgate.services.push.constants import (
    APNS_DEVICE_PATH,
    APNS_ERROR_CODES,
    APNS_PRIORITY_CONSERVE_POWER,
    APNS_PRIORITY_IMMEDIATE,
    APNS_PRODUCTION_HOST,
    APNS_SANDBOX_HOST,
    HTTP_CONNECT_TIMEOUT_SECONDS,
    HTTP_TIMEOUT_SECONDS,
    PROVIDER_APNS,
)
from pushgate.services.push.credentials import CredentialManager
from pushgate.services.push.exceptions import (
    ConfigurationError,
    PushError,
    PushTimeout,
    TransientNetworkError,
)
from pushgate.services.push.models import (
    APNSConfig,
    APNSPayload,
    NotificationContent,
    ProviderError,
    ProviderResult,
)

logger = logging.getLogger(__name__)


def parse_retry_after(value: Optional[str]) -> Optional[float]:
    """Retry-After in seconds; HTTP-date values are ignored."""
    if not value:
        return None
    try:
        seconds = float(value)
    except ValueError:
        return None
    return seconds if seconds >= 0 else None


class APNSProvider:
    """
    APNS provider for sending push notifications to Apple devices.

    Usage:
        config = APNSConfig(
            key_file="path/to/AuthKey.p8",
            key_id="XXXXXXXXXX",
            team_id="YYYYYYYYYY",
            bundle_id="com.example.app",
        )
        manager = CredentialManager({"apns": APNsTokenGenerator(config)})
        provider = APNSProvider(config, manager)
        result = await provider.send(device_token, content)

    Attributes:
        config: APNS configuration
        _client: httpx AsyncClient with HTTP/2 enabled
    """

    name = PROVIDER_APNS

    def __init__(
        self,
        config: APNSConfig,
        credentials: CredentialManager,
        concurrency: int = 10,
        timeout: float = HTTP_TIMEOUT_SECONDS,
    ):
        """
        Initialize APNS provider.

        Args:
            config: APNS configuration with auth key details
            credentials: Credential manager holding an APNS token generator
            concurrency: Parallel requests in send_batch
            timeout: Per-request timeout in seconds
        """
        self.config = config
        self._credentials = credentials
        self._concurrency = max(1, concurrency)
        self._timeout = timeout

        self._client: Optional[httpx.AsyncClient] = None

        self._host = APNS_SANDBOX_HOST if config.use_sandbox else APNS_PRODUCTION_HOST
        self._base_url = f"https://{self._host}"

        logger.info(
            "APNS provider initialized",
            extra={
                "host": self._host,
                "bundle_id": config.bundle_id,
                "sandbox": config.use_sandbox,
            }
        )

    async def _get_client(self) -> httpx.AsyncClient:
        """Get or create HTTP/2 client with connection pooling."""
        if self._client is None or self._client.is_closed:
            self._client = httpx.AsyncClient(
                http2=True,
                timeout=httpx.Timeout(self._timeout, connect=HTTP_CONNECT_TIMEOUT_SECONDS),
                limits=httpx.Limits(max_connections=100, max_keepalive_connections=20),
            )
        return self._client

    def _build_headers(self, content: NotificationContent, jwt_token: str) -> dict:
        """Build request headers for APNS."""
        headers = {
            "authorization": f"bearer {jwt_token}",
            "apns-topic": self.config.bundle_id,
            "apns-push-type": "alert",
            "apns-priority": APNS_PRIORITY_IMMEDIATE if content.is_high_priority else APNS_PRIORITY_CONSERVE_POWER,
            "apns-expiration": str(int(time.time()) + content.ttl) if content.ttl else "0",
        }

        if content.silent:
            headers["apns-push-type"] = "background"
            headers["apns-priority"] = APNS_PRIORITY_CONSERVE_POWER

        if content.collapse_key:
            headers["apns-collapse-id"] = content.collapse_key

        return headers

    def build_payload(self, content: NotificationContent) -> dict:
        return APNSPayload.from_content(content).to_apns_dict()

    async def _post(self, url: str, body: str, headers: dict) -> httpx.Response:
        client = await self._get_client()
        try:
            return await client.post(url, content=body, headers=headers)
        except httpx.TimeoutException as e:
            raise PushTimeout(f"APNS request timed out: {e}", PROVIDER_APNS) from e
        except httpx.HTTPError as e:
            raise TransientNetworkError(f"APNS transport error: {e}", PROVIDER_APNS) from e

    @staticmethod
    def _parse_error(response: httpx.Response) -> ProviderError:
        reason = None
        if response.content:
            try:
                reason = response.json().get("reason")
            except (ValueError, AttributeError):
                reason = None
        return ProviderError(
            provider=PROVIDER_APNS,
            status_code=response.status_code,
            reason=reason,
            message=APNS_ERROR_CODES.get(reason or "", response.text[:200] if response.content else None),
            retry_after=parse_retry_after(response.headers.get("retry-after")),
        )

    async def send(
        self,
        device_token: str,
        content: NotificationContent,
    ) -> ProviderResult:
        """
        Send a push notification to a single device.

        Makes one delivery attempt. A 403 invalidates the provider token and
        the request is repeated once with a freshly generated one.

        Args:
            device_token: APNS device token (hex string)
            content: Notification content

        Returns:
            ProviderResult with the apns-id on success or the APNS error

        Raises:
            ConfigurationError: Provider token could not be generated
            PushTimeout: Request timed out
            TransientNetworkError: Connection-level failure
        """
        url = f"{self._base_url}{APNS_DEVICE_PATH.format(device_token=device_token)}"
        body = json.dumps(self.build_payload(content))
        start_time = time.time()

        response: Optional[httpx.Response] = None
        for auth_attempt in range(2):
            jwt_token = await self._credentials.get_credential(PROVIDER_APNS)
            response = await self._post(url, body, self._build_headers(content, jwt_token))

            if response.status_code != 403:
                break

            logger.warning(
                "APNS rejected provider token",
                extra={
                    "status_code": response.status_code,
                    "auth_attempt": auth_attempt + 1,
                    "device_token": mask_token(device_token),
                }
            )
            self._credentials.invalidate(PROVIDER_APNS, jwt_token)

        duration = time.time() - start_time
        status_code = response.status_code

        if status_code == 200:
            apns_id = response.headers.get("apns-id")
            record_send_duration(PROVIDER_APNS, duration)
            logger.info(
                "APNS notification sent",
                extra={
                    "device_token": mask_token(device_token),
                    "apns_id": apns_id,
                    "duration_ms": int(duration * 1000),
                }
            )
            return ProviderResult.ok(PROVIDER_APNS, device_token, apns_id, status_code)

        error = self._parse_error(response)
        if status_code == 403:
            # Still rejected after regenerating; nothing more to try with this key
            error.message = f"{error.reason or 'Forbidden'}: provider token rejected twice"
            error.reason = "auth_rejected"
            logger.error(
                "APNS authentication error",
                extra={"status_code": status_code, "reason": error.message},
            )
        elif status_code == 400:
            logger.error(
                "APNS rejected malformed request",
                extra={
                    "status_code": status_code,
                    "reason": error.reason,
                    "device_token": mask_token(device_token),
                }
            )
        else:
            logger.debug(
                "APNS error response",
                extra={
                    "status_code": status_code,
                    "reason": error.reason,
                    "device_token": mask_token(device_token),
                }
            )

        return ProviderResult.failed(PROVIDER_APNS, device_token, error)

    async def send_batch(
        self,
        device_tokens: List[str],
        content: NotificationContent,
    ) -> List[ProviderResult]:
        """
        Send a notification to multiple devices concurrently.

        APNS has no multi-token endpoint; requests share the HTTP/2 connection
        and are bounded by the provider's concurrency.

        Returns:
            One ProviderResult per token, in input order. Network errors are
            carried in ProviderResult.exception.

        Raises:
            ConfigurationError: Provider token could not be generated
        """
        if not device_tokens:
            return []

        semaphore = asyncio.Semaphore(self._concurrency)

        async def send_with_semaphore(token: str) -> ProviderResult:
            async with semaphore:
                return await self.send(token, content)

        results = await asyncio.gather(
            *[send_with_semaphore(token) for token in device_tokens],
            return_exceptions=True,
        )

        delivery_results: List[ProviderResult] = []
        for token, result in zip(device_tokens, results):
            if isinstance(result, ConfigurationError):
                raise result
            if isinstance(result, PushError):
                delivery_results.append(ProviderResult.from_exception(PROVIDER_APNS, token, result))
            elif isinstance(result, BaseException):
                logger.error(f"APNS batch send exception for token: {result}", exc_info=result)
                delivery_results.append(ProviderResult.from_exception(PROVIDER_APNS, token, result))
            else:
                delivery_results.append(result)

        success_count = sum(1 for r in delivery_results if r.success)
        logger.info(
            "APNS batch send complete",
            extra={
                "total": len(device_tokens),
                "success": success_count,
                "failed": len(device_tokens) - success_count,
            }
        )

        return delivery_results

    async def close(self) -> None:
        """Close the HTTP client and release resources."""
        if self._client and not self._client.is_closed:
            await self._client.aclose()
            self._client = None
            logger.debug("APNS provider closed")

    async def __aenter__(self) -> "APNSProvider":
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb) -> None:
        await self.close()
