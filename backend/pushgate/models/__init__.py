"""SQLAlchemy ORM models"""
from pushgate.models.device_token import DeviceToken
from pushgate.models.notification import Notification
from pushgate.models.expo_ticket import ExpoTicket

__all__ = [
    "DeviceToken",
    "Notification",
    "ExpoTicket",
]
