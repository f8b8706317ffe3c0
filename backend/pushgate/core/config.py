"""Application configuration using Pydantic Settings"""
from pydantic_settings import BaseSettings, SettingsConfigDict
from pydantic import field_validator
from typing import Optional
import os


class Settings(BaseSettings):
    """Application settings loaded from environment variables"""

    # Database
    DATABASE_URL: str = "sqlite:///./data/pushgate.db"

    # Application
    DEBUG: bool = False
    LOG_LEVEL: str = "INFO"
    LOG_DIR: Optional[str] = None  # Rotating log files are written here when set

    # API
    API_V1_PREFIX: str = "/api/v1"

    # Master switch. When disabled, dispatch is a logged no-op (offline/test environments)
    PUSH_ENABLED: bool = True

    # APNS Configuration
    APNS_KEY_FILE: Optional[str] = None  # Path to .p8 auth key file
    APNS_KEY_ID: Optional[str] = None  # 10-character key identifier
    APNS_TEAM_ID: Optional[str] = None  # 10-character team identifier
    APNS_BUNDLE_ID: Optional[str] = None  # App bundle ID (e.g., com.example.app)
    APNS_USE_SANDBOX: bool = False  # Use sandbox for development

    @property
    def apns_ready(self) -> bool:
        """Check if APNS is properly configured and ready to use."""
        return (
            self.APNS_KEY_FILE is not None
            and self.APNS_KEY_ID is not None
            and self.APNS_TEAM_ID is not None
            and self.APNS_BUNDLE_ID is not None
            and os.path.exists(self.APNS_KEY_FILE)
        )

    # FCM Configuration
    FCM_PROJECT_ID: Optional[str] = None  # Firebase project ID
    FCM_CREDENTIALS_FILE: Optional[str] = None  # Path to service account JSON

    @property
    def fcm_ready(self) -> bool:
        """Check if FCM is properly configured and ready to use."""
        return (
            self.FCM_PROJECT_ID is not None
            and self.FCM_CREDENTIALS_FILE is not None
            and os.path.exists(self.FCM_CREDENTIALS_FILE)
        )

    # Expo Configuration. The access token is optional (only needed with enhanced push security)
    EXPO_ENABLED: bool = True
    EXPO_ACCESS_TOKEN: Optional[str] = None

    # Retry / timeout policy shared by all providers
    PUSH_MAX_ATTEMPTS: int = 3
    PUSH_RETRY_BASE_DELAY: float = 2.0  # 2s, 4s, 8s ...
    PUSH_RETRY_MAX_DELAY: float = 30.0
    PUSH_RETRY_MAX_RETRY_AFTER: float = 60.0  # Upper bound for provider Retry-After hints
    PUSH_SEND_TIMEOUT_SECONDS: float = 30.0

    # Concurrency
    PUSH_PROVIDER_CONCURRENCY: int = 10  # Parallel sends within one provider group
    PUSH_MAX_CONCURRENT_DISPATCHES: int = 50

    # Batch ceilings
    PUSH_FCM_BATCH_SIZE: int = 500
    PUSH_EXPO_BATCH_SIZE: int = 100
    PUSH_BROADCAST_CHUNK_SIZE: int = 500

    # Scheduled jobs (0 disables the job)
    PUSH_CREDENTIAL_REFRESH_MINUTES: int = 10
    PUSH_RECEIPT_CHECK_MINUTES: int = 15

    @field_validator('PUSH_MAX_ATTEMPTS', 'PUSH_PROVIDER_CONCURRENCY', 'PUSH_MAX_CONCURRENT_DISPATCHES', mode='after')
    @classmethod
    def validate_positive(cls, v: int) -> int:
        """Counts and bounds must be at least 1."""
        if v < 1:
            raise ValueError("Must be >= 1")
        return v

    @field_validator('PUSH_EXPO_BATCH_SIZE', mode='after')
    @classmethod
    def validate_expo_batch_size(cls, v: int) -> int:
        """Expo accepts at most 100 messages per request."""
        if not 1 <= v <= 100:
            raise ValueError("PUSH_EXPO_BATCH_SIZE must be between 1 and 100")
        return v

    @field_validator('PUSH_FCM_BATCH_SIZE', mode='after')
    @classmethod
    def validate_fcm_batch_size(cls, v: int) -> int:
        """FCM multicast is limited to 500 tokens."""
        if not 1 <= v <= 500:
            raise ValueError("PUSH_FCM_BATCH_SIZE must be between 1 and 500")
        return v

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=True,
    )


# Global settings instance
settings = Settings()
