"""
Error classification for push providers.

Maps provider reason strings, HTTP status codes and transport exceptions to a
single Verdict. Adding a provider error code only touches the tables here
(or a register_reason call), never the retry controller or dispatcher.
"""

import asyncio
import logging
from typing import Dict, Optional, Union

import httpx

from pushgate.services.push.constants import PROVIDER_APNS, PROVIDER_EXPO, PROVIDER_FCM
from pushgate.services.push.exceptions import (
    PermanentOther,
    PermanentTokenInvalid,
    PushTimeout,
    RateLimited,
    TransientNetworkError,
)
from pushgate.services.push.models import ProviderError, Verdict

logger = logging.getLogger(__name__)

RawError = Union[ProviderError, BaseException]

# =============================================================================
# Reason tables
# =============================================================================

_APNS_REASONS: Dict[str, Verdict] = {
    # Token no longer usable for this app
    "BadDeviceToken": Verdict.PERMANENT_TOKEN_INVALID,
    "Unregistered": Verdict.PERMANENT_TOKEN_INVALID,
    "DeviceTokenNotForTopic": Verdict.PERMANENT_TOKEN_INVALID,
    # Throttling
    "TooManyRequests": Verdict.RATE_LIMITED,
    "TooManyProviderTokenUpdates": Verdict.RATE_LIMITED,
    # Apple side trouble
    "InternalServerError": Verdict.TRANSIENT,
    "ServiceUnavailable": Verdict.TRANSIENT,
    "Shutdown": Verdict.TRANSIENT,
    "IdleTimeout": Verdict.TRANSIENT,
    # Request or credential problems
    "ExpiredProviderToken": Verdict.PERMANENT_OTHER,
    "InvalidProviderToken": Verdict.PERMANENT_OTHER,
    "MissingProviderToken": Verdict.PERMANENT_OTHER,
    "PayloadTooLarge": Verdict.PERMANENT_OTHER,
    "PayloadEmpty": Verdict.PERMANENT_OTHER,
    "BadTopic": Verdict.PERMANENT_OTHER,
    "MissingTopic": Verdict.PERMANENT_OTHER,
    "TopicDisallowed": Verdict.PERMANENT_OTHER,
    "BadCollapseId": Verdict.PERMANENT_OTHER,
    "BadExpirationDate": Verdict.PERMANENT_OTHER,
    "BadMessageId": Verdict.PERMANENT_OTHER,
    "BadPriority": Verdict.PERMANENT_OTHER,
    "InvalidPushType": Verdict.PERMANENT_OTHER,
    "DuplicateHeaders": Verdict.PERMANENT_OTHER,
    "MissingDeviceToken": Verdict.PERMANENT_OTHER,
    "BadCertificate": Verdict.PERMANENT_OTHER,
    "BadCertificateEnvironment": Verdict.PERMANENT_OTHER,
    "Forbidden": Verdict.PERMANENT_OTHER,
    "BadPath": Verdict.PERMANENT_OTHER,
    "MethodNotAllowed": Verdict.PERMANENT_OTHER,
    "auth_rejected": Verdict.PERMANENT_OTHER,
}

_FCM_REASONS: Dict[str, Verdict] = {
    "UNREGISTERED": Verdict.PERMANENT_TOKEN_INVALID,
    "SENDER_ID_MISMATCH": Verdict.PERMANENT_TOKEN_INVALID,
    "QUOTA_EXCEEDED": Verdict.RATE_LIMITED,
    "UNAVAILABLE": Verdict.TRANSIENT,
    "INTERNAL": Verdict.TRANSIENT,
    "INVALID_ARGUMENT": Verdict.PERMANENT_OTHER,
    "THIRD_PARTY_AUTH_ERROR": Verdict.PERMANENT_OTHER,
    "UNAUTHENTICATED": Verdict.PERMANENT_OTHER,
    "PERMISSION_DENIED": Verdict.PERMANENT_OTHER,
    "UNSPECIFIED_ERROR": Verdict.PERMANENT_OTHER,
    "auth_rejected": Verdict.PERMANENT_OTHER,
}

_EXPO_REASONS: Dict[str, Verdict] = {
    "DeviceNotRegistered": Verdict.PERMANENT_TOKEN_INVALID,
    "InvalidPushToken": Verdict.PERMANENT_TOKEN_INVALID,
    "MessageRateExceeded": Verdict.RATE_LIMITED,
    "TOO_MANY_REQUESTS": Verdict.RATE_LIMITED,
    "MessageTooBig": Verdict.PERMANENT_OTHER,
    "InvalidCredentials": Verdict.PERMANENT_OTHER,
    "MismatchSenderId": Verdict.PERMANENT_OTHER,
    "PUSH_TOO_MANY_EXPERIENCE_IDS": Verdict.PERMANENT_OTHER,
    "PUSH_TOO_MANY_NOTIFICATIONS": Verdict.PERMANENT_OTHER,
    "PUSH_TOO_MANY_RECEIPTS": Verdict.PERMANENT_OTHER,
}

_REASONS: Dict[str, Dict[str, Verdict]] = {
    PROVIDER_APNS: _APNS_REASONS,
    PROVIDER_FCM: _FCM_REASONS,
    PROVIDER_EXPO: _EXPO_REASONS,
}

# =============================================================================
# Status tables
# =============================================================================

_APNS_STATUSES: Dict[int, Verdict] = {
    400: Verdict.PERMANENT_OTHER,
    403: Verdict.PERMANENT_OTHER,
    404: Verdict.PERMANENT_TOKEN_INVALID,
    405: Verdict.PERMANENT_OTHER,
    410: Verdict.PERMANENT_TOKEN_INVALID,
    413: Verdict.PERMANENT_OTHER,
    429: Verdict.RATE_LIMITED,
    500: Verdict.TRANSIENT,
    503: Verdict.TRANSIENT,
}

_FCM_STATUSES: Dict[int, Verdict] = {
    400: Verdict.PERMANENT_OTHER,
    401: Verdict.PERMANENT_OTHER,
    403: Verdict.PERMANENT_OTHER,
    404: Verdict.PERMANENT_TOKEN_INVALID,
    429: Verdict.RATE_LIMITED,
    500: Verdict.TRANSIENT,
    503: Verdict.TRANSIENT,
}

_EXPO_STATUSES: Dict[int, Verdict] = {
    400: Verdict.PERMANENT_OTHER,
    401: Verdict.PERMANENT_OTHER,
    403: Verdict.PERMANENT_OTHER,
    413: Verdict.PERMANENT_OTHER,
    429: Verdict.RATE_LIMITED,
    500: Verdict.TRANSIENT,
    502: Verdict.TRANSIENT,
    503: Verdict.TRANSIENT,
    504: Verdict.TRANSIENT,
}

_STATUSES: Dict[str, Dict[int, Verdict]] = {
    PROVIDER_APNS: _APNS_STATUSES,
    PROVIDER_FCM: _FCM_STATUSES,
    PROVIDER_EXPO: _EXPO_STATUSES,
}


def register_reason(provider: str, reason: str, verdict: Verdict) -> None:
    """Teach the classifier a new provider reason string."""
    _REASONS.setdefault(provider, {})[reason] = Verdict(verdict)
    logger.debug(
        f"Registered {provider} reason {reason} -> {verdict}",
        extra={"provider": provider, "reason": reason, "verdict": str(verdict)},
    )


def known_reason(provider: str, reason: Optional[str]) -> bool:
    return bool(reason) and reason in _REASONS.get(provider, {})


def _classify_exception(provider: str, exc: BaseException) -> Optional[Verdict]:
    if isinstance(exc, RateLimited):
        return Verdict.RATE_LIMITED
    if isinstance(exc, TransientNetworkError):
        return Verdict.TRANSIENT
    if isinstance(exc, PermanentTokenInvalid):
        return Verdict.PERMANENT_TOKEN_INVALID
    if isinstance(exc, PermanentOther):
        return Verdict.PERMANENT_OTHER
    if isinstance(exc, (httpx.TimeoutException, httpx.TransportError, asyncio.TimeoutError, ConnectionError)):
        return Verdict.TRANSIENT
    return None


def classify(provider: str, raw_error: RawError) -> Verdict:
    """
    Classify a failed provider call.

    Rules, first match wins:
    1. transport-level exceptions and PushTimeout are transient
    2. provider reason lookup
    3. HTTP status lookup (any other 5xx is transient)
    4. everything else is permanent_other and logged as unclassified

    Args:
        provider: apns, fcm or expo
        raw_error: ProviderError from a response, or the raised exception

    Returns:
        Verdict for the retry controller
    """
    if isinstance(raw_error, BaseException):
        verdict = _classify_exception(provider, raw_error)
        if verdict is not None:
            return verdict
        logger.warning(
            f"Unclassified {provider} exception treated as permanent: {type(raw_error).__name__}: {raw_error}",
            extra={
                "event_type": "push_unclassified_error",
                "provider": provider,
                "error_type": type(raw_error).__name__,
                "error": str(raw_error),
            },
        )
        return Verdict.PERMANENT_OTHER

    if not isinstance(raw_error, ProviderError):
        logger.warning(
            f"Unclassified {provider} error value: {raw_error!r}",
            extra={"event_type": "push_unclassified_error", "provider": provider},
        )
        return Verdict.PERMANENT_OTHER

    if raw_error.reason:
        verdict = _REASONS.get(provider, {}).get(raw_error.reason)
        if verdict is not None:
            return verdict

    if raw_error.status_code is not None:
        verdict = _STATUSES.get(provider, {}).get(raw_error.status_code)
        if verdict is not None:
            return verdict
        if raw_error.status_code >= 500:
            return Verdict.TRANSIENT

    logger.warning(
        f"Unclassified {provider} error treated as permanent: "
        f"status={raw_error.status_code} reason={raw_error.reason}",
        extra={
            "event_type": "push_unclassified_error",
            "provider": provider,
            "status_code": raw_error.status_code,
            "reason": raw_error.reason,
            "error": raw_error.message,
        },
    )
    return Verdict.PERMANENT_OTHER


def error_code_for(raw_error: Optional[RawError]) -> Optional[str]:
    """Value stored in DeliveryAttempt.error_code for a failure."""
    if raw_error is None:
        return None
    if isinstance(raw_error, ProviderError):
        return raw_error.code
    if isinstance(raw_error, PermanentOther) and raw_error.reason:
        return raw_error.reason
    if isinstance(raw_error, (PushTimeout, asyncio.TimeoutError, httpx.TimeoutException)):
        return "timeout"
    return type(raw_error).__name__
