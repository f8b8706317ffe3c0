"""
Persistence adapters for push delivery.

Thin SQLAlchemy repositories used by the dispatcher and the receipt checker.
Each call opens its own short session through get_db_session so the async
dispatch path never holds a session across an await.
"""

import logging
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Dict, Iterable, List, Optional, Sequence, Tuple

from sqlalchemy import func

from pushgate.core.database import get_db_session
from pushgate.models.device_token import DeviceToken
from pushgate.models.expo_ticket import ExpoTicket
from pushgate.models.notification import Notification
from pushgate.services.push.constants import KNOWN_PLATFORMS, PLATFORM_ALIASES
from pushgate.services.push.models import DeviceTarget

logger = logging.getLogger(__name__)


def normalize_platform(platform: str) -> str:
    """
    Map app-reported platform names onto provider names.

    ios -> apns, android -> fcm; provider names pass through.

    Raises:
        ValueError: Unknown platform
    """
    value = (platform or "").strip().lower()
    value = PLATFORM_ALIASES.get(value, value)
    if value not in KNOWN_PLATFORMS:
        raise ValueError(f"Unsupported platform: {platform}")
    return value


def _to_target(row: DeviceToken) -> DeviceTarget:
    return DeviceTarget(
        id=row.id,
        user_id=row.user_id,
        platform=row.platform,
        token=row.token,
        device_id=row.device_id,
    )


class DeviceTokenRepository:
    """Device token lookup, registration and removal."""

    def __init__(self, session_factory=None):
        self._session_factory = session_factory

    def list_for_user(
        self,
        user_id: str,
        platforms: Optional[Iterable[str]] = None,
        exclude_device_ids: Optional[Iterable[str]] = None,
    ) -> List[DeviceTarget]:
        """
        Devices registered for a user.

        Args:
            user_id: Owner
            platforms: Restrict to these providers
            exclude_device_ids: Skip rows whose id or device_id is listed
        """
        excluded = set(exclude_device_ids or [])
        with get_db_session(self._session_factory) as db:
            query = db.query(DeviceToken).filter(DeviceToken.user_id == user_id)
            if platforms is not None:
                query = query.filter(DeviceToken.platform.in_(list(platforms)))
            rows = query.order_by(DeviceToken.registered_at).all()
            return [
                _to_target(row) for row in rows
                if row.id not in excluded and (row.device_id is None or row.device_id not in excluded)
            ]

    def list_registrations(self, user_id: str) -> List[dict]:
        """Registrations for display, newest first. Tokens are not included."""
        with get_db_session(self._session_factory) as db:
            rows = db.query(DeviceToken).filter(
                DeviceToken.user_id == user_id
            ).order_by(DeviceToken.registered_at.desc()).all()
            return [row.to_dict() for row in rows]

    def list_for_users(self, user_ids: Sequence[str]) -> Dict[str, List[DeviceTarget]]:
        """Devices for many users at once, keyed by user id."""
        grouped: Dict[str, List[DeviceTarget]] = {uid: [] for uid in user_ids}
        if not user_ids:
            return grouped
        with get_db_session(self._session_factory) as db:
            rows = db.query(DeviceToken).filter(DeviceToken.user_id.in_(list(user_ids))).all()
            for row in rows:
                grouped.setdefault(row.user_id, []).append(_to_target(row))
        return grouped

    def register(
        self,
        user_id: str,
        token: str,
        platform: str,
        device_id: Optional[str] = None,
    ) -> Tuple[DeviceToken, bool]:
        """
        Register or refresh a token for a user.

        Idempotent per (user_id, token): a repeat refreshes last_used_at and
        device_id. The same token registered under another user is removed
        from that user first (device changed hands).

        Returns:
            (row, is_new). The row is detached; read its attributes only.

        Raises:
            ValueError: Unknown platform or empty token
        """
        platform = normalize_platform(platform)
        token = (token or "").strip()
        if not token:
            raise ValueError("token cannot be empty")

        with get_db_session(self._session_factory) as db:
            moved = db.query(DeviceToken).filter(
                DeviceToken.token == token,
                DeviceToken.user_id != user_id,
            ).delete(synchronize_session=False)
            if moved:
                logger.info(
                    "Push token moved to a new user",
                    extra={"user_id": user_id, "previous_owners": moved, "platform": platform},
                )

            existing = db.query(DeviceToken).filter(
                DeviceToken.user_id == user_id,
                DeviceToken.token == token,
            ).first()

            if existing:
                existing.platform = platform
                if device_id is not None:
                    existing.device_id = device_id
                existing.touch()
                row, is_new = existing, False
            else:
                row = DeviceToken(
                    user_id=user_id,
                    token=token,
                    platform=platform,
                    device_id=device_id,
                )
                db.add(row)
                is_new = True

            db.commit()
            db.refresh(row)
            db.expunge(row)

        logger.info(
            "Device token registered" if is_new else "Device token refreshed",
            extra={"user_id": user_id, "platform": platform, "device_token_id": row.id},
        )
        return row, is_new

    def unregister(self, token_id: str, user_id: Optional[str] = None) -> bool:
        """Delete one registration by id, optionally scoped to an owner."""
        with get_db_session(self._session_factory) as db:
            query = db.query(DeviceToken).filter(DeviceToken.id == token_id)
            if user_id is not None:
                query = query.filter(DeviceToken.user_id == user_id)
            deleted = query.delete(synchronize_session=False)
            db.commit()
        return deleted > 0

    def remove_tokens(self, token_ids: Iterable[str]) -> int:
        """Delete registrations by id. Returns the number of rows removed."""
        ids = list(token_ids)
        if not ids:
            return 0
        with get_db_session(self._session_factory) as db:
            deleted = db.query(DeviceToken).filter(DeviceToken.id.in_(ids)).delete(synchronize_session=False)
            db.commit()
        if deleted:
            logger.info(f"Removed {deleted} invalid device tokens", extra={"removed": deleted})
        return deleted

    def remove_token_values(self, tokens: Iterable[str]) -> int:
        values = list(tokens)
        if not values:
            return 0
        with get_db_session(self._session_factory) as db:
            deleted = db.query(DeviceToken).filter(DeviceToken.token.in_(values)).delete(synchronize_session=False)
            db.commit()
        return deleted

    def count_by_platform(self) -> Dict[str, int]:
        with get_db_session(self._session_factory) as db:
            rows = db.query(DeviceToken.platform, func.count(DeviceToken.id)).group_by(DeviceToken.platform).all()
        return {platform: count for platform, count in rows}


class NotificationRepository:
    """Writes dispatch outcomes back to the originating notification row."""

    def __init__(self, session_factory=None):
        self._session_factory = session_factory

    def create(self, user_id: str, title: Optional[str] = None, body: Optional[str] = None) -> str:
        with get_db_session(self._session_factory) as db:
            notification = Notification(user_id=user_id, title=title, body=body)
            db.add(notification)
            db.commit()
            return notification.id

    def get(self, notification_id: str) -> Optional[dict]:
        with get_db_session(self._session_factory) as db:
            row = db.query(Notification).filter(Notification.id == notification_id).first()
            return row.to_dict() if row else None

    def update_delivery_status(
        self,
        notification_id: str,
        delivery_status: str,
        delivered_at: Optional[datetime],
        sent_count: int,
        failed_count: int,
    ) -> bool:
        """
        Persist the aggregate delivery result.

        Returns:
            False when the notification row does not exist
        """
        with get_db_session(self._session_factory) as db:
            row = db.query(Notification).filter(Notification.id == notification_id).first()
            if row is None:
                logger.warning(
                    "Notification not found for delivery update",
                    extra={"notification_id": notification_id},
                )
                return False
            row.delivery_status = delivery_status
            if delivered_at is not None:
                row.delivered_at = delivered_at
            row.sent_count = sent_count
            row.failed_count = failed_count
            db.commit()
        return True


@dataclass
class PendingTicket:
    ticket_id: str
    token: str
    device_token_id: Optional[str] = None
    notification_id: Optional[str] = None
    created_at: Optional[datetime] = None


class ExpoTicketRepository:
    """Expo tickets waiting for their receipt."""

    def __init__(self, session_factory=None):
        self._session_factory = session_factory

    def add(self, tickets: Iterable[PendingTicket]) -> int:
        rows = [
            ExpoTicket(
                ticket_id=t.ticket_id,
                token=t.token,
                device_token_id=t.device_token_id,
                notification_id=t.notification_id,
            )
            for t in tickets
        ]
        if not rows:
            return 0
        with get_db_session(self._session_factory) as db:
            for row in rows:
                db.merge(row)
            db.commit()
        return len(rows)

    def pending(self, limit: int = 1000, min_age_seconds: int = 0) -> List[PendingTicket]:
        """Oldest tickets first; min_age_seconds skips tickets Expo has not processed yet."""
        cutoff = datetime.now(timezone.utc) - timedelta(seconds=min_age_seconds)
        with get_db_session(self._session_factory) as db:
            query = db.query(ExpoTicket)
            if min_age_seconds > 0:
                query = query.filter(ExpoTicket.created_at <= cutoff)
            rows = query.order_by(ExpoTicket.created_at).limit(limit).all()
            return [
                PendingTicket(
                    ticket_id=row.ticket_id,
                    token=row.token,
                    device_token_id=row.device_token_id,
                    notification_id=row.notification_id,
                    created_at=row.created_at,
                )
                for row in rows
            ]

    def delete(self, ticket_ids: Iterable[str]) -> int:
        ids = list(ticket_ids)
        if not ids:
            return 0
        with get_db_session(self._session_factory) as db:
            deleted = db.query(ExpoTicket).filter(ExpoTicket.ticket_id.in_(ids)).delete(synchronize_session=False)
            db.commit()
        return deleted

    def count(self) -> int:
        with get_db_session(self._session_factory) as db:
            return db.query(func.count(ExpoTicket.ticket_id)).scalar() or 0
