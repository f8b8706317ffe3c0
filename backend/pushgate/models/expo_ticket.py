"""ExpoTicket SQLAlchemy ORM model for tickets awaiting receipt reconciliation"""
from sqlalchemy import Column, String, Text, DateTime, Index
from pushgate.core.database import Base
from datetime import datetime, timezone


class ExpoTicket(Base):
    """
    A push ticket returned by Expo for an accepted message.

    Expo only confirms delivery to APNs/FCM through a receipt fetched later;
    rows live here until that receipt has been read.

    Attributes:
        ticket_id: Expo ticket identifier (primary key)
        device_token_id: DeviceToken row the message was sent to
        token: The Expo push token, kept so cleanup survives token deletion
        notification_id: Originating notification, if any
        created_at: When the ticket was issued (UTC)
    """

    __tablename__ = "expo_tickets"

    ticket_id = Column(String(64), primary_key=True)
    device_token_id = Column(String(36), nullable=True)
    token = Column(Text, nullable=False)
    notification_id = Column(String(36), nullable=True)
    created_at = Column(DateTime(timezone=True), nullable=False, default=lambda: datetime.now(timezone.utc))

    __table_args__ = (
        Index('idx_expo_tickets_created', 'created_at'),
    )

    def __repr__(self):
        return f"<ExpoTicket(ticket_id={self.ticket_id}, token={self.token[:20]}...)>"
