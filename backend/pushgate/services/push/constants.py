"""
Constants for the APNS, FCM and Expo push providers.
"""

# Provider identifiers
PROVIDER_APNS = "apns"
PROVIDER_FCM = "fcm"
PROVIDER_EXPO = "expo"
PLATFORM_WEB = "web"

SUPPORTED_PROVIDERS = (PROVIDER_APNS, PROVIDER_FCM, PROVIDER_EXPO)
KNOWN_PLATFORMS = SUPPORTED_PROVIDERS + (PLATFORM_WEB,)

# Registration aliases accepted from mobile apps
PLATFORM_ALIASES = {
    "ios": PROVIDER_APNS,
    "android": PROVIDER_FCM,
}

# =============================================================================
# APNS
# =============================================================================

APNS_PRODUCTION_HOST = "api.push.apple.com"
APNS_SANDBOX_HOST = "api.sandbox.push.apple.com"
APNS_DEVICE_PATH = "/3/device/{device_token}"

JWT_ALGORITHM = "ES256"
JWT_TOKEN_LIFETIME_SECONDS = 3600  # Apple rejects tokens older than 1 hour
JWT_REFRESH_MARGIN_SECONDS = 600  # Refresh at 50 minutes

APNS_PRIORITY_IMMEDIATE = "10"
APNS_PRIORITY_CONSERVE_POWER = "5"

# APNS Error Codes (from reason body)
APNS_ERROR_CODES = {
    # Client errors
    "BadCollapseId": "The collapse identifier exceeds the maximum allowed size",
    "BadDeviceToken": "The specified device token is invalid",
    "BadExpirationDate": "The apns-expiration value is invalid",
    "BadMessageId": "The apns-id value is invalid",
    "BadPriority": "The apns-priority value is invalid",
    "BadTopic": "The apns-topic value is invalid",
    "DeviceTokenNotForTopic": "The device token doesn't match the specified topic",
    "DuplicateHeaders": "One or more headers are repeated",
    "IdleTimeout": "Idle timeout",
    "InvalidPushType": "The apns-push-type value is invalid",
    "MissingDeviceToken": "The device token is not specified in the request path",
    "MissingTopic": "The apns-topic header is missing from the request",
    "PayloadEmpty": "The message payload is empty",
    "PayloadTooLarge": "The message payload is too large",
    "TopicDisallowed": "Pushing to this topic is not allowed",

    # Token errors
    "BadCertificate": "The certificate is invalid",
    "BadCertificateEnvironment": "The client certificate is for the wrong environment",
    "ExpiredProviderToken": "The provider token is stale and a new token should be generated",
    "Forbidden": "The specified action is not allowed",
    "InvalidProviderToken": "The provider token is not valid or the token signature cannot be verified",
    "MissingProviderToken": "No provider certificate was used to connect to APNs",

    # Device token errors
    "Unregistered": "The device token is no longer active for the topic",

    # Server errors
    "TooManyProviderTokenUpdates": "The provider token has been updated too often",
    "TooManyRequests": "Too many requests were made consecutively to the same device token",
    "InternalServerError": "An internal server error occurred",
    "ServiceUnavailable": "The service is unavailable",
    "Shutdown": "The server is shutting down",
}

# =============================================================================
# FCM
# =============================================================================

FCM_SEND_URL = "https://fcm.googleapis.com/v1/projects/{project_id}/messages:send"
FCM_SCOPE = "https://www.googleapis.com/auth/firebase.messaging"
FCM_TOKEN_REFRESH_MARGIN_SECONDS = 300
FCM_MAX_MULTICAST_TOKENS = 500
FCM_ERROR_TYPE = "type.googleapis.com/google.firebase.fcm.v1.FcmError"

# =============================================================================
# Expo
# =============================================================================

EXPO_SEND_URL = "https://exp.host/--/api/v2/push/send"
EXPO_RECEIPTS_URL = "https://exp.host/--/api/v2/push/getReceipts"
EXPO_MAX_MESSAGES_PER_REQUEST = 100
EXPO_MAX_RECEIPT_IDS_PER_REQUEST = 1000
EXPO_TOKEN_PREFIXES = ("ExponentPushToken[", "ExpoPushToken[")

# =============================================================================
# Shared
# =============================================================================

HTTP_TIMEOUT_SECONDS = 30.0
HTTP_CONNECT_TIMEOUT_SECONDS = 10.0
DEFAULT_TTL_SECONDS = 86400
