"""Notification SQLAlchemy ORM model carrying the push delivery summary"""
from sqlalchemy import Column, String, Integer, Text, DateTime, Index
from pushgate.core.database import Base
import uuid
from datetime import datetime, timezone


class Notification(Base):
    """
    Originating notification row.

    The dispatcher writes the aggregate delivery result back here once per
    dispatch call.

    Attributes:
        id: UUID primary key
        user_id: Recipient user identifier
        title: Notification title as sent
        body: Notification body as sent
        delivery_status: pending, delivered, partial or failed
        delivered_at: Set when at least one device accepted the push
        sent_count: Devices the push was accepted for
        failed_count: Devices that could not be reached
        created_at: Row creation timestamp (UTC)
    """

    __tablename__ = "notifications"

    id = Column(String(36), primary_key=True, default=lambda: str(uuid.uuid4()))
    user_id = Column(String(64), nullable=False, index=True)
    title = Column(String(200), nullable=True)
    body = Column(Text, nullable=True)

    delivery_status = Column(String(20), nullable=False, default="pending")
    delivered_at = Column(DateTime(timezone=True), nullable=True)
    sent_count = Column(Integer, nullable=False, default=0)
    failed_count = Column(Integer, nullable=False, default=0)

    created_at = Column(DateTime(timezone=True), nullable=False, default=lambda: datetime.now(timezone.utc))

    __table_args__ = (
        Index('idx_notifications_delivery_status', 'delivery_status'),
        Index('idx_notifications_created', 'created_at'),
    )

    def __repr__(self):
        return f"<Notification(id={self.id}, status={self.delivery_status}, sent={self.sent_count}, failed={self.failed_count})>"

    def to_dict(self):
        """Convert notification to dictionary for API responses."""
        return {
            "id": self.id,
            "user_id": self.user_id,
            "title": self.title,
            "delivery_status": self.delivery_status,
            "delivered_at": self.delivered_at.isoformat() if self.delivered_at else None,
            "sent_count": self.sent_count,
            "failed_count": self.failed_count,
            "created_at": self.created_at.isoformat() if self.created_at else None,
        }
