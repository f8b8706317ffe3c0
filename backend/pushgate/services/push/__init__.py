"""
Push notification delivery for mobile platforms.

This package contains:
- APNS (Apple Push Notification Service) provider - iOS, iPadOS
- FCM (Firebase Cloud Messaging) provider - Android
- Expo push relay provider, with receipt reconciliation
- CredentialManager - cached, single-flight provider credentials
- Error classifier and RetryController - verdict-driven retry policy
- PushDispatchService - unified dispatch to all of a user's devices
"""

from pushgate.services.push.apns_provider import APNSProvider
from pushgate.services.push.batch_planner import BatchLimits, BatchPlan, plan
from pushgate.services.push.credentials import (
    APNsTokenGenerator,
    CredentialManager,
    ExpoTokenGenerator,
    FCMTokenGenerator,
)
from pushgate.services.push.dispatch_service import (
    BroadcastResult,
    DispatchGate,
    InvalidTokenBlocklist,
    PushDispatchService,
)
from pushgate.services.push.error_classifier import classify, register_reason
from pushgate.services.push.exceptions import (
    ConfigurationError,
    InvalidUserError,
    PermanentOther,
    PermanentTokenInvalid,
    PushError,
    PushTimeout,
    RateLimited,
    TransientNetworkError,
)
from pushgate.services.push.expo_provider import ExpoProvider
from pushgate.services.push.fcm_provider import FCMProvider
from pushgate.services.push.models import (
    APNSConfig,
    APNSPayload,
    DeliveryAttempt,
    DeliveryOutcome,
    DeliveryStatus,
    DispatchOptions,
    ExpoConfig,
    FCMConfig,
    NotificationContent,
    Priority,
    Verdict,
)
from pushgate.services.push.retry_controller import RetryController

__all__ = [
    # Dispatch Service
    "PushDispatchService",
    "BroadcastResult",
    "DispatchGate",
    "InvalidTokenBlocklist",
    "DispatchOptions",
    "DeliveryOutcome",
    "DeliveryAttempt",
    "DeliveryStatus",
    "NotificationContent",
    "Priority",
    # Providers
    "APNSProvider",
    "APNSConfig",
    "APNSPayload",
    "FCMProvider",
    "FCMConfig",
    "ExpoProvider",
    "ExpoConfig",
    # Credentials
    "CredentialManager",
    "APNsTokenGenerator",
    "FCMTokenGenerator",
    "ExpoTokenGenerator",
    # Policy
    "classify",
    "register_reason",
    "Verdict",
    "RetryController",
    "BatchLimits",
    "BatchPlan",
    "plan",
    # Errors
    "PushError",
    "ConfigurationError",
    "TransientNetworkError",
    "PushTimeout",
    "RateLimited",
    "PermanentTokenInvalid",
    "PermanentOther",
    "InvalidUserError",
]
