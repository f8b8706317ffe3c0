"""
Retry controller for provider sends.

Provider clients make exactly one attempt per call. This module decides,
from the classifier's verdict alone, whether and when to try again, and
produces the terminal DeliveryAttempt for every token.
"""

import asyncio
import logging
from typing import Awaitable, Callable, Dict, List, Optional

import httpx

from pushgate.core.logging_config import mask_token
from pushgate.core.metrics import record_push_attempt, record_push_retry
from pushgate.core.retry import RETRY_PUSH_SEND, RetryConfig, calculate_delay
from pushgate.services.push.constants import HTTP_TIMEOUT_SECONDS
from pushgate.services.push.error_classifier import classify, error_code_for
from pushgate.services.push.exceptions import ConfigurationError, PushError, PushTimeout
from pushgate.services.push.models import (
    AttemptStatus,
    DeliveryAttempt,
    ProviderResult,
    Verdict,
)

logger = logging.getLogger(__name__)

SendOne = Callable[[], Awaitable[ProviderResult]]
SendMany = Callable[[List[str]], Awaitable[List[ProviderResult]]]
OnFinal = Callable[[DeliveryAttempt], None]


class RetryController:
    """
    Drives send -> classify -> backoff for one token or a batch of tokens.

    transient and rate_limited verdicts are retried with exponential backoff
    (rate_limited honours Retry-After); permanent verdicts stop immediately.
    After max_attempts the attempt is failed, never left retrying.

    ConfigurationError is not a delivery failure and propagates to the caller.
    """

    def __init__(
        self,
        config: RetryConfig = RETRY_PUSH_SEND,
        send_timeout: float = HTTP_TIMEOUT_SECONDS,
    ):
        self.config = config
        self.send_timeout = send_timeout

    async def _call_once(self, provider: str, token: str, send: SendOne) -> ProviderResult:
        try:
            return await asyncio.wait_for(send(), timeout=self.send_timeout)
        except ConfigurationError:
            raise
        except asyncio.TimeoutError:
            return ProviderResult.from_exception(
                provider, token, PushTimeout(f"{provider} send exceeded {self.send_timeout}s", provider)
            )
        except Exception as e:
            if not _is_expected(e):
                logger.error(
                    f"{provider} send raised unexpected error: {e}",
                    exc_info=True,
                    extra={"provider": provider, "device_token": mask_token(token)},
                )
            return ProviderResult.from_exception(provider, token, e)

    async def _call_batch(self, provider: str, tokens: List[str], send_batch: SendMany) -> List[ProviderResult]:
        try:
            results = await asyncio.wait_for(send_batch(list(tokens)), timeout=self.send_timeout)
        except ConfigurationError:
            raise
        except asyncio.TimeoutError:
            timeout_error = PushTimeout(f"{provider} batch exceeded {self.send_timeout}s", provider)
            return [ProviderResult.from_exception(provider, t, timeout_error) for t in tokens]
        except Exception as e:
            if not _is_expected(e):
                logger.error(
                    f"{provider} batch send raised unexpected error: {e}",
                    exc_info=True,
                    extra={"provider": provider, "batch_size": len(tokens)},
                )
            return [ProviderResult.from_exception(provider, t, e) for t in tokens]

        for result in results:
            if isinstance(result.exception, ConfigurationError):
                raise result.exception

        if len(results) != len(tokens):
            logger.error(
                f"{provider} batch returned {len(results)} results for {len(tokens)} tokens",
                extra={"provider": provider},
            )
            by_token = {r.token: r for r in results}
            missing = PushTimeout(f"{provider} returned no result for token", provider)
            results = [
                by_token.get(t) or ProviderResult.from_exception(provider, t, missing)
                for t in tokens
            ]
        return results

    def _verdict(self, provider: str, result: ProviderResult) -> Verdict:
        verdict = classify(provider, result.raw_error)
        record_push_attempt(provider, verdict.value)
        return verdict

    def _terminal(
        self,
        provider: str,
        result: ProviderResult,
        verdict: Optional[Verdict],
        retries: int,
    ) -> DeliveryAttempt:
        if result.success:
            return DeliveryAttempt(
                device_token_id=None,
                provider=provider,
                status=AttemptStatus.SENT,
                token=result.token,
                provider_message_id=result.message_id,
                retry_count=retries,
                receipt_pending=result.receipt_pending,
            )
        return DeliveryAttempt(
            device_token_id=None,
            provider=provider,
            status=AttemptStatus.FAILED,
            token=result.token,
            error_code=error_code_for(result.raw_error),
            verdict=verdict,
            retry_count=retries,
        )

    async def execute(
        self,
        provider: str,
        token: str,
        send: SendOne,
        on_final: Optional[OnFinal] = None,
    ) -> DeliveryAttempt:
        """
        Deliver to one token, retrying per the verdict.

        Args:
            provider: apns, fcm or expo
            token: Device token (for logging and the resulting attempt)
            send: Zero-argument coroutine factory performing one provider call
            on_final: Called with the terminal attempt as soon as it is decided

        Returns:
            Terminal DeliveryAttempt (sent or failed)
        """
        attempt = 0
        while True:
            result = await self._call_once(provider, token, send)
            if result.success:
                record_push_attempt(provider, "success")
                return _publish(self._terminal(provider, result, None, attempt), on_final)

            verdict = self._verdict(provider, result)
            if not verdict.retryable or attempt + 1 >= self.config.max_attempts:
                self._log_failure(provider, token, verdict, result, attempt)
                return _publish(self._terminal(provider, result, verdict, attempt), on_final)

            retry_after = result.error.retry_after if result.error else getattr(result.exception, "retry_after", None)
            delay = calculate_delay(attempt, self.config, retry_after if verdict == Verdict.RATE_LIMITED else None)
            record_push_retry(provider, verdict.value)
            logger.warning(
                f"{provider} send {verdict.value}, retrying in {delay:.1f}s "
                f"(attempt {attempt + 1}/{self.config.max_attempts})",
                extra={
                    "event_type": "push_retry",
                    "provider": provider,
                    "device_token": mask_token(token),
                    "verdict": verdict.value,
                    "error_code": error_code_for(result.raw_error),
                    "delay_seconds": delay,
                },
            )
            await asyncio.sleep(delay)
            attempt += 1

    async def execute_batch(
        self,
        provider: str,
        tokens: List[str],
        send_batch: SendMany,
        on_final: Optional[OnFinal] = None,
    ) -> List[DeliveryAttempt]:
        """
        Deliver to a group of tokens; only the retryable subset is resent.

        Args:
            provider: apns, fcm or expo
            tokens: Distinct device tokens
            send_batch: Coroutine function performing one provider call for a
                list of tokens and returning results aligned with it
            on_final: Called with each terminal attempt as soon as it is decided,
                so tokens that finished early survive a cancelled batch

        Returns:
            Terminal DeliveryAttempts aligned with tokens
        """
        if not tokens:
            return []

        final: Dict[str, DeliveryAttempt] = {}
        pending = list(tokens)
        attempt = 0

        while pending:
            results = await self._call_batch(provider, pending, send_batch)

            retry_next: List[str] = []
            retry_after: Optional[float] = None
            for token, result in zip(pending, results):
                if result.success:
                    record_push_attempt(provider, "success")
                    final[token] = _publish(self._terminal(provider, result, None, attempt), on_final)
                    continue

                verdict = self._verdict(provider, result)
                if verdict.retryable and attempt + 1 < self.config.max_attempts:
                    retry_next.append(token)
                    record_push_retry(provider, verdict.value)
                    if verdict == Verdict.RATE_LIMITED:
                        hint = result.error.retry_after if result.error else getattr(result.exception, "retry_after", None)
                        if hint is not None:
                            retry_after = hint if retry_after is None else max(retry_after, hint)
                    continue

                self._log_failure(provider, token, verdict, result, attempt)
                final[token] = _publish(self._terminal(provider, result, verdict, attempt), on_final)

            if not retry_next:
                break

            delay = calculate_delay(attempt, self.config, retry_after)
            logger.warning(
                f"{provider} batch: {len(retry_next)}/{len(pending)} tokens retrying in {delay:.1f}s "
                f"(attempt {attempt + 1}/{self.config.max_attempts})",
                extra={
                    "event_type": "push_retry",
                    "provider": provider,
                    "retrying": len(retry_next),
                    "delay_seconds": delay,
                },
            )
            await asyncio.sleep(delay)
            pending = retry_next
            attempt += 1

        return [final[t] for t in tokens]

    def _log_failure(self, provider: str, token: str, verdict: Verdict, result: ProviderResult, attempt: int) -> None:
        log = logger.info if verdict == Verdict.PERMANENT_TOKEN_INVALID else logger.warning
        log(
            f"{provider} delivery failed: {verdict.value}",
            extra={
                "event_type": "push_failed",
                "provider": provider,
                "device_token": mask_token(token),
                "verdict": verdict.value,
                "error_code": error_code_for(result.raw_error),
                "status_code": result.status_code,
                "attempts": attempt + 1,
            },
        )


def _publish(attempt: DeliveryAttempt, on_final: Optional[OnFinal]) -> DeliveryAttempt:
    if on_final is not None:
        on_final(attempt)
    return attempt


def _is_expected(exc: BaseException) -> bool:
    """Exceptions the classifier understands without a stack trace."""
    return isinstance(exc, (PushError, httpx.HTTPError, ConnectionError))
