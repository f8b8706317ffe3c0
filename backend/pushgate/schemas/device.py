"""Device token Pydantic schemas for request/response validation"""
from pydantic import BaseModel, ConfigDict, Field, field_validator
from datetime import datetime
from typing import Optional, List
from enum import Enum


class DevicePlatform(str, Enum):
    """Platforms accepted at registration. ios/android are aliases for apns/fcm."""
    IOS = "ios"
    ANDROID = "android"
    APNS = "apns"
    FCM = "fcm"
    EXPO = "expo"
    WEB = "web"


class DeviceRegister(BaseModel):
    """Schema for device token registration request."""
    user_id: str = Field(
        ...,
        min_length=1,
        max_length=64,
        description="Owner of the device"
    )
    token: str = Field(
        ...,
        min_length=1,
        max_length=4096,
        description="Push token issued by APNS, FCM or Expo"
    )
    platform: DevicePlatform = Field(
        ...,
        description="Device platform (ios, android, apns, fcm, expo, web)"
    )
    device_id: Optional[str] = Field(
        None,
        max_length=255,
        description="Device identifier reported by the mobile app"
    )

    @field_validator('user_id', 'token')
    @classmethod
    def validate_not_blank(cls, v: str) -> str:
        v = v.strip()
        if not v:
            raise ValueError("cannot be empty")
        return v

    model_config = ConfigDict(
        json_schema_extra={
            "example": {
                "user_id": "user-123",
                "token": "ExponentPushToken[xxxxxxxxxxxxxxxxxxxxxx]",
                "platform": "expo",
                "device_id": "A1B2C3D4-E5F6",
            }
        }
    )


class DeviceResponse(BaseModel):
    """Schema for device response (excludes the push token)."""
    id: str = Field(..., description="DeviceToken UUID")
    user_id: str = Field(..., description="Owner user id")
    platform: str = Field(..., description="Provider the token belongs to")
    device_id: Optional[str] = Field(None, description="Device identifier")
    registered_at: Optional[datetime] = Field(None, description="Registration timestamp")
    last_used_at: Optional[datetime] = Field(None, description="Last refresh timestamp")

    model_config = ConfigDict(from_attributes=True)


class DeviceListResponse(BaseModel):
    """Schema for listing a user's devices."""
    devices: List[DeviceResponse] = Field(
        default_factory=list,
        description="Registered devices"
    )
    total: int = Field(..., description="Total number of devices")


class DeviceRegistrationResponse(BaseModel):
    """Schema for device registration response."""
    id: str = Field(..., description="DeviceToken UUID")
    platform: str = Field(..., description="Normalized provider name")
    device_id: Optional[str] = Field(None, description="Device identifier")
    registered_at: datetime = Field(..., description="Registration timestamp")
    is_new: bool = Field(..., description="True if new registration, False if refreshed")

    model_config = ConfigDict(from_attributes=True)
