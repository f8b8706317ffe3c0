"""DeviceToken SQLAlchemy ORM model for push notification registrations"""
from sqlalchemy import Column, String, Text, DateTime, Index, UniqueConstraint
from pushgate.core.database import Base
import uuid
from datetime import datetime, timezone


class DeviceToken(Base):
    """
    A push token registered by one of a user's devices.

    Attributes:
        id: UUID primary key
        user_id: Owning user identifier
        platform: Provider the token belongs to ('apns', 'fcm', 'expo', 'web')
        token: Provider-issued push token
        device_id: Optional device identifier reported by the app
        registered_at: First registration timestamp (UTC)
        last_used_at: Last registration refresh timestamp (UTC)
    """

    __tablename__ = "device_tokens"

    id = Column(String(36), primary_key=True, default=lambda: str(uuid.uuid4()))
    user_id = Column(String(64), nullable=False, index=True)
    platform = Column(String(20), nullable=False)  # 'apns', 'fcm', 'expo', 'web'
    token = Column(Text, nullable=False)
    device_id = Column(String(255), nullable=True)
    registered_at = Column(
        DateTime(timezone=True),
        nullable=False,
        default=lambda: datetime.now(timezone.utc)
    )
    last_used_at = Column(
        DateTime(timezone=True),
        nullable=True,
        default=lambda: datetime.now(timezone.utc)
    )

    __table_args__ = (
        UniqueConstraint('user_id', 'token', name='uq_device_tokens_user_token'),
        Index('idx_device_tokens_platform', 'platform'),
        Index('idx_device_tokens_token', 'token'),
    )

    def __repr__(self):
        return f"<DeviceToken(id={self.id}, token={self.token[:20]}..., platform={self.platform})>"

    def touch(self) -> None:
        """Update last_used_at to current time."""
        self.last_used_at = datetime.now(timezone.utc)

    def to_dict(self) -> dict:
        """Dictionary for API responses. The raw token is never included."""
        return {
            "id": self.id,
            "user_id": self.user_id,
            "platform": self.platform,
            "device_id": self.device_id,
            "registered_at": self.registered_at.isoformat() if self.registered_at else None,
            "last_used_at": self.last_used_at.isoformat() if self.last_used_at else None,
        }
