"""
Data models shared by the push providers, retry controller and dispatcher.

NotificationContent and the provider configs are pydantic models (validated
at the edge); results flowing between components are plain dataclasses.
"""

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class Verdict(str, Enum):
    """Classifier verdict for a failed provider call."""

    TRANSIENT = "transient"
    PERMANENT_TOKEN_INVALID = "permanent_token_invalid"
    PERMANENT_OTHER = "permanent_other"
    RATE_LIMITED = "rate_limited"

    @property
    def retryable(self) -> bool:
        return self in (Verdict.TRANSIENT, Verdict.RATE_LIMITED)


class AttemptStatus(str, Enum):
    """Status of a delivery attempt for one device."""

    SENT = "sent"
    FAILED = "failed"
    RETRYING = "retrying"


class DeliveryStatus(str, Enum):
    """Aggregate status persisted against a notification."""

    DELIVERED = "delivered"
    PARTIAL = "partial"
    FAILED = "failed"


class Priority(str, Enum):
    HIGH = "high"
    NORMAL = "normal"


# =============================================================================
# Notification content
# =============================================================================


class NotificationContent(BaseModel):
    """Provider-agnostic notification value.

    Immutable once built. Data values are coerced to strings because FCM and
    Expo only carry string maps reliably.
    """

    model_config = ConfigDict(frozen=True)

    title: str = Field(default="", max_length=500)
    body: str = Field(default="", max_length=4000)
    data: Dict[str, str] = Field(default_factory=dict)
    priority: Priority = Priority.HIGH
    badge: Optional[int] = Field(None, ge=0)
    sound: Optional[str] = "default"
    collapse_key: Optional[str] = Field(None, max_length=64)
    thread_id: Optional[str] = None
    category: Optional[str] = None
    channel_id: Optional[str] = Field(None, description="Android notification channel (Expo channelId)")
    image_url: Optional[str] = None
    ttl: Optional[int] = Field(None, ge=0, description="Seconds the provider may hold the message")
    silent: bool = False

    @field_validator("data", mode="before")
    @classmethod
    def coerce_data_values(cls, v: Any) -> Dict[str, str]:
        if v is None:
            return {}
        if not isinstance(v, dict):
            raise ValueError("data must be a mapping")
        return {
            str(key): value if isinstance(value, str) else str(value)
            for key, value in v.items()
            if value is not None
        }

    @property
    def is_high_priority(self) -> bool:
        return self.priority == Priority.HIGH and not self.silent

    def with_priority(self, priority: Priority) -> "NotificationContent":
        return self.model_copy(update={"priority": priority})


@dataclass
class DispatchOptions:
    """Per-call dispatch options.

    Attributes:
        exclude_device_ids: DeviceToken ids or app device ids to skip
        platforms: Only target these providers (None means all)
        notification_id: Notification row to persist the outcome against
        timeout: Caller-level deadline in seconds for the whole dispatch
        urgent: Force high priority and jump the admission queue
    """

    exclude_device_ids: List[str] = field(default_factory=list)
    platforms: Optional[List[str]] = None
    notification_id: Optional[str] = None
    timeout: Optional[float] = None
    urgent: bool = False


@dataclass
class DeviceTarget:
    """Detached view of a DeviceToken row used during a dispatch."""

    id: str
    user_id: str
    platform: str
    token: str
    device_id: Optional[str] = None


# =============================================================================
# Provider results
# =============================================================================


@dataclass
class ProviderError:
    """Raw error reported by a provider for one token.

    Attributes:
        provider: apns, fcm or expo
        status_code: HTTP status of the response, if any
        reason: Provider reason string (APNS reason, FCM errorCode, Expo details.error)
        message: Human-readable message from the provider
        retry_after: Seconds from a Retry-After header
    """

    provider: str
    status_code: Optional[int] = None
    reason: Optional[str] = None
    message: Optional[str] = None
    retry_after: Optional[float] = None

    @property
    def code(self) -> str:
        """Stable identifier stored in DeliveryAttempt.error_code."""
        if self.reason:
            return self.reason
        if self.status_code is not None:
            return f"http_{self.status_code}"
        return "unknown"


@dataclass
class ProviderResult:
    """Outcome of one provider call for one token.

    Exactly one of message_id (on success), error or exception is meaningful.
    """

    token: str
    success: bool
    provider: str
    message_id: Optional[str] = None
    error: Optional[ProviderError] = None
    exception: Optional[BaseException] = None
    receipt_pending: bool = False
    status_code: Optional[int] = None

    @classmethod
    def ok(cls, provider: str, token: str, message_id: Optional[str] = None,
           status_code: Optional[int] = 200, receipt_pending: bool = False) -> "ProviderResult":
        return cls(
            token=token,
            success=True,
            provider=provider,
            message_id=message_id,
            status_code=status_code,
            receipt_pending=receipt_pending,
        )

    @classmethod
    def failed(cls, provider: str, token: str, error: ProviderError) -> "ProviderResult":
        return cls(
            token=token,
            success=False,
            provider=provider,
            error=error,
            status_code=error.status_code,
        )

    @classmethod
    def from_exception(cls, provider: str, token: str, exc: BaseException) -> "ProviderResult":
        return cls(token=token, success=False, provider=provider, exception=exc)

    @property
    def raw_error(self):
        """What the classifier should look at."""
        return self.exception if self.exception is not None else self.error


@dataclass
class MulticastResponse:
    """FCM multicast envelope: one sub-result per token, in input order."""

    responses: List[ProviderResult] = field(default_factory=list)

    @property
    def success_count(self) -> int:
        return sum(1 for r in self.responses if r.success)

    @property
    def failure_count(self) -> int:
        return len(self.responses) - self.success_count


# =============================================================================
# Delivery attempts and outcomes
# =============================================================================


@dataclass
class DeliveryAttempt:
    """Terminal record for one device in one dispatch."""

    device_token_id: Optional[str]
    provider: str
    status: AttemptStatus
    token: str = ""
    provider_message_id: Optional[str] = None
    error_code: Optional[str] = None
    verdict: Optional[Verdict] = None
    retry_count: int = 0
    receipt_pending: bool = False
    attempted_at: datetime = field(default_factory=utcnow)

    @property
    def sent(self) -> bool:
        return self.status == AttemptStatus.SENT

    @property
    def token_invalid(self) -> bool:
        return self.verdict == Verdict.PERMANENT_TOKEN_INVALID

    def for_device(self, device: DeviceTarget) -> "DeliveryAttempt":
        """Copy of this attempt attributed to another device sharing the token."""
        return DeliveryAttempt(
            device_token_id=device.id,
            provider=self.provider,
            status=self.status,
            token=device.token,
            provider_message_id=self.provider_message_id,
            error_code=self.error_code,
            verdict=self.verdict,
            retry_count=self.retry_count,
            receipt_pending=self.receipt_pending,
            attempted_at=self.attempted_at,
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "device_token_id": self.device_token_id,
            "provider": self.provider,
            "status": self.status.value,
            "provider_message_id": self.provider_message_id,
            "error_code": self.error_code,
            "verdict": self.verdict.value if self.verdict else None,
            "retry_count": self.retry_count,
            "receipt_pending": self.receipt_pending,
            "attempted_at": self.attempted_at.isoformat(),
        }


@dataclass
class DeliveryOutcome:
    """Aggregated result of one dispatch call.

    Attributes:
        user_id: Target user
        per_device: One terminal DeliveryAttempt per targeted device
        error: Set when nothing was attempted (no_devices, invalid_user, push_disabled)
        invalid_token_ids: DeviceToken ids removed because of this dispatch
        timed_out: The caller-level timeout fired before every device finished
        duration_ms: Wall time of the dispatch
    """

    user_id: Optional[str] = None
    per_device: List[DeliveryAttempt] = field(default_factory=list)
    error: Optional[str] = None
    invalid_token_ids: List[str] = field(default_factory=list)
    timed_out: bool = False
    duration_ms: float = 0.0
    timestamp: datetime = field(default_factory=utcnow)

    @property
    def sent(self) -> int:
        return sum(1 for a in self.per_device if a.status == AttemptStatus.SENT)

    @property
    def failed(self) -> int:
        return sum(1 for a in self.per_device if a.status == AttemptStatus.FAILED)

    @property
    def delivery_status(self) -> Optional[DeliveryStatus]:
        """delivered / partial / failed, or None when nothing was attempted."""
        if not self.per_device:
            return None
        if self.failed == 0:
            return DeliveryStatus.DELIVERED
        if self.sent == 0:
            return DeliveryStatus.FAILED
        return DeliveryStatus.PARTIAL

    def to_summary(self) -> Dict[str, int]:
        return {"sent": self.sent, "failed": self.failed}

    def to_dict(self) -> Dict[str, Any]:
        status = self.delivery_status
        return {
            "user_id": self.user_id,
            "sent": self.sent,
            "failed": self.failed,
            "delivery_status": status.value if status else None,
            "error": self.error,
            "invalid_token_ids": list(self.invalid_token_ids),
            "timed_out": self.timed_out,
            "duration_ms": round(self.duration_ms, 2),
            "per_device": [a.to_dict() for a in self.per_device],
        }


@dataclass
class ProviderCredential:
    """Cached credential for one provider.

    Attributes:
        provider: apns, fcm or expo
        material: The bearer value placed in the Authorization header
        issued_at: When it was generated
        expires_at: Hard expiry, None for static credentials
        refresh_at: Point after which the manager regenerates it
    """

    provider: str
    material: str
    issued_at: datetime = field(default_factory=utcnow)
    expires_at: Optional[datetime] = None
    refresh_at: Optional[datetime] = None

    def is_stale(self, now: Optional[datetime] = None) -> bool:
        if self.refresh_at is None:
            return False
        return (now or utcnow()) >= self.refresh_at


# =============================================================================
# Provider configuration
# =============================================================================


class APNSConfig(BaseModel):
    """Configuration for APNS provider.

    Attributes:
        key_file: Path to the .p8 auth key file
        key_id: 10-character key identifier from Apple Developer Portal
        team_id: 10-character team identifier
        bundle_id: App bundle identifier, used as apns-topic
        use_sandbox: Whether to use sandbox environment (development)
    """

    key_file: str = Field(..., description="Path to .p8 auth key file")
    key_id: str = Field(..., min_length=10, max_length=10, description="10-character key ID")
    team_id: str = Field(..., min_length=10, max_length=10, description="10-character team ID")
    bundle_id: str = Field(..., min_length=1, description="App bundle identifier")
    use_sandbox: bool = Field(default=False, description="Use sandbox environment")

    @field_validator("key_id", "team_id")
    @classmethod
    def validate_identifier(cls, v: str) -> str:
        """Validate that identifiers are alphanumeric."""
        if not v.isalnum():
            raise ValueError("Must be alphanumeric")
        return v.upper()


class FCMConfig(BaseModel):
    """Configuration for FCM provider.

    Attributes:
        project_id: Firebase project ID
        credentials_path: Path to the service account JSON file
    """

    project_id: str = Field(..., min_length=1, description="Firebase project ID")
    credentials_path: str = Field(..., description="Path to service account JSON file")

    @field_validator("credentials_path")
    @classmethod
    def validate_credentials_path(cls, v: str) -> str:
        if not v or not v.strip():
            raise ValueError("credentials_path cannot be empty")
        return v


class ExpoConfig(BaseModel):
    """Configuration for the Expo push relay.

    Attributes:
        access_token: Optional access token (enhanced push security)
        batch_size: Messages per request, Expo accepts at most 100
    """

    access_token: Optional[str] = None
    batch_size: int = Field(default=100, ge=1, le=100)


# =============================================================================
# APNS payload
# =============================================================================


class APNSAlert(BaseModel):
    """APNS alert dictionary."""

    title: str
    body: str
    subtitle: Optional[str] = None


class APNSPayload(BaseModel):
    """APNS notification payload.

    See: https://developer.apple.com/documentation/usernotifications/generating-a-remote-notification
    """

    alert: Optional[APNSAlert] = None
    badge: Optional[int] = Field(None, ge=0)
    sound: Optional[str] = None
    mutable_content: bool = False
    category: Optional[str] = None
    thread_id: Optional[str] = None
    content_available: bool = False
    custom_data: Dict[str, Any] = Field(default_factory=dict)

    @classmethod
    def from_content(cls, content: NotificationContent) -> "APNSPayload":
        if content.silent:
            return cls(content_available=True, custom_data=dict(content.data))
        custom_data: Dict[str, Any] = dict(content.data)
        if content.image_url:
            # Read by the Notification Service Extension
            custom_data.setdefault("image_url", content.image_url)
        return cls(
            alert=APNSAlert(title=content.title, body=content.body),
            badge=content.badge,
            sound=content.sound,
            mutable_content=content.image_url is not None,
            category=content.category,
            thread_id=content.thread_id,
            custom_data=custom_data,
        )

    def to_apns_dict(self) -> Dict[str, Any]:
        """Dictionary ready for JSON serialization to APNS."""
        aps: Dict[str, Any] = {}
        if self.alert is not None:
            alert = {"title": self.alert.title, "body": self.alert.body}
            if self.alert.subtitle:
                alert["subtitle"] = self.alert.subtitle
            aps["alert"] = alert
        if self.sound:
            aps["sound"] = self.sound
        if self.badge is not None:
            aps["badge"] = self.badge
        if self.mutable_content:
            aps["mutable-content"] = 1
        if self.content_available:
            aps["content-available"] = 1
        if self.category:
            aps["category"] = self.category
        if self.thread_id:
            aps["thread-id"] = self.thread_id

        payload: Dict[str, Any] = {"aps": aps}
        # Custom data lives at the root, next to aps
        for key, value in self.custom_data.items():
            if key != "aps":
                payload[key] = value
        return payload
