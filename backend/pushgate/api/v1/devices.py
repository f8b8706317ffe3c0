"""
Device Registration API endpoints

Endpoints for push token registration:
- POST /api/v1/devices - Register or refresh a device token
- GET /api/v1/devices?user_id= - List a user's devices
- DELETE /api/v1/devices/{token_id} - Remove a registration
"""
import logging
from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, Query, Request, status

from pushgate.core.logging_config import mask_token
from pushgate.schemas.device import (
    DeviceListResponse,
    DeviceRegister,
    DeviceRegistrationResponse,
    DeviceResponse,
)
from pushgate.services.push.repository import DeviceTokenRepository

logger = logging.getLogger(__name__)

router = APIRouter(
    prefix="/devices",
    tags=["devices"]
)


def get_device_repository() -> DeviceTokenRepository:
    return DeviceTokenRepository()


@router.post(
    "",
    response_model=DeviceRegistrationResponse,
    status_code=status.HTTP_201_CREATED,
    summary="Register a device",
    description="Register a push token for a user. Upserts on (user_id, token).",
    responses={
        400: {"description": "Unsupported platform"},
    },
)
async def register_device(
    device_data: DeviceRegister,
    request: Request,
    repo: DeviceTokenRepository = Depends(get_device_repository),
) -> DeviceRegistrationResponse:
    """
    Register a device token for push notifications.

    Registering the same token again refreshes last_used_at. A token that was
    previously registered under another user moves to this one.

    Args:
        device_data: Registration payload
        request: Incoming request (used to reach the dispatch service)
        repo: Device token repository

    Returns:
        DeviceRegistrationResponse with the is_new flag
    """
    try:
        row, is_new = repo.register(
            user_id=device_data.user_id,
            token=device_data.token,
            platform=device_data.platform.value,
            device_id=device_data.device_id,
        )
    except ValueError as e:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail=str(e),
        )

    # The app vouches for the token again; let dispatch use it
    service = getattr(request.app.state, "dispatch_service", None)
    if service is not None:
        service.blocklist.discard(row.token)

    logger.info(
        "Device registration accepted",
        extra={
            "user_id": device_data.user_id,
            "platform": row.platform,
            "device_token": mask_token(row.token),
            "is_new": is_new,
        }
    )

    return DeviceRegistrationResponse(
        id=row.id,
        platform=row.platform,
        device_id=row.device_id,
        registered_at=row.registered_at,
        is_new=is_new,
    )


@router.get(
    "",
    response_model=DeviceListResponse,
    summary="List user's devices",
    description="Get all devices registered for a user. Push tokens are excluded.",
)
async def list_devices(
    user_id: str = Query(..., min_length=1, max_length=64),
    repo: DeviceTokenRepository = Depends(get_device_repository),
) -> DeviceListResponse:
    devices = [DeviceResponse(**row) for row in repo.list_registrations(user_id)]
    return DeviceListResponse(devices=devices, total=len(devices))


@router.delete(
    "/{token_id}",
    status_code=status.HTTP_204_NO_CONTENT,
    summary="Remove a device",
    description="Delete a device token registration.",
    responses={
        404: {"description": "Device not found"},
    },
)
async def unregister_device(
    token_id: str,
    user_id: Optional[str] = Query(None, description="Only delete if owned by this user"),
    repo: DeviceTokenRepository = Depends(get_device_repository),
):
    """
    Delete a device token registration.

    Raises:
        HTTPException: 404 if the registration does not exist (or is not owned by user_id)
    """
    if not repo.unregister(token_id, user_id=user_id):
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail="Device not found",
        )

    logger.info(
        "Device unregistered",
        extra={"device_token_id": token_id, "user_id": user_id}
    )
