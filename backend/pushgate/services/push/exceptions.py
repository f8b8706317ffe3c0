"""
Exception taxonomy for push delivery.

Provider clients translate httpx errors and provider responses into these
types; the retry controller and dispatcher only ever see this hierarchy.
"""

from typing import Optional


class PushError(Exception):
    """Base class for all push delivery errors."""

    def __init__(self, message: str = "", provider: Optional[str] = None):
        super().__init__(message)
        self.provider = provider


class ConfigurationError(PushError):
    """Provider credentials are missing or cannot be generated.

    Fatal for the affected provider only; never retried.
    """


class TransientNetworkError(PushError):
    """Connection reset, DNS failure, or another error worth retrying."""


class PushTimeout(TransientNetworkError):
    """A single provider call exceeded the per-send timeout."""


class RateLimited(PushError):
    """Provider asked us to slow down."""

    def __init__(
        self,
        message: str = "",
        provider: Optional[str] = None,
        retry_after: Optional[float] = None,
    ):
        super().__init__(message, provider)
        self.retry_after = retry_after


class PermanentTokenInvalid(PushError):
    """The device token is no longer valid and must be removed."""

    def __init__(self, message: str = "", provider: Optional[str] = None, token: Optional[str] = None):
        super().__init__(message, provider)
        self.token = token


class PermanentOther(PushError):
    """Permanent failure that is not about the token (payload, topic, auth)."""

    def __init__(self, message: str = "", provider: Optional[str] = None, reason: Optional[str] = None):
        super().__init__(message, provider)
        self.reason = reason


class InvalidUserError(PushError):
    """Dispatch target is not a usable user identifier."""
