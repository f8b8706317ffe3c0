"""Pydantic schemas for request/response validation"""
from pushgate.schemas.device import (
    DevicePlatform,
    DeviceRegister,
    DeviceResponse,
    DeviceListResponse,
    DeviceRegistrationResponse,
)

__all__ = [
    "DevicePlatform",
    "DeviceRegister",
    "DeviceResponse",
    "DeviceListResponse",
    "DeviceRegistrationResponse",
]
