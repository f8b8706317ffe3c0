"""
Push Notification API endpoints

- POST /api/v1/push/test - Send a test notification to a user's devices
- GET /api/v1/push/stats - Delivery totals, token and credential state
- POST /api/v1/push/receipts/check - Reconcile pending Expo receipts now
"""
import logging
from typing import Dict, List, Optional

from fastapi import APIRouter, Depends, HTTPException, Request, status
from pydantic import BaseModel, Field

from pushgate.services.push.dispatch_service import PushDispatchService
from pushgate.services.push.models import DispatchOptions, NotificationContent, Priority

logger = logging.getLogger(__name__)

router = APIRouter(
    prefix="/push",
    tags=["push-notifications"]
)


def get_push_service(request: Request) -> PushDispatchService:
    service = getattr(request.app.state, "dispatch_service", None)
    if service is None:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Push dispatch service is not running",
        )
    return service


# ============================================================================
# Pydantic Schemas
# ============================================================================


class TestNotificationRequest(BaseModel):
    """Request body for a test notification."""
    user_id: str = Field(..., min_length=1, max_length=64, description="User whose devices receive the test")
    title: str = Field("Test Notification", max_length=500)
    body: str = Field("If you see this, push notifications are working correctly!", max_length=4000)
    data: Dict[str, str] = Field(default_factory=lambda: {"type": "test"})
    platforms: Optional[List[str]] = Field(None, description="Restrict to these platforms")
    urgent: bool = Field(False, description="Send at high priority ahead of queued dispatches")

    class Config:
        json_schema_extra = {
            "example": {
                "user_id": "user-123",
                "title": "Test Notification",
                "body": "If you see this, push notifications are working correctly!",
                "platforms": ["ios", "expo"],
            }
        }


class TestNotificationResult(BaseModel):
    """Result for a single device in the test."""
    device_token_id: Optional[str] = None
    provider: str
    status: str
    error_code: Optional[str] = None


class TestNotificationResponse(BaseModel):
    """Response from test notification endpoint."""
    success: bool
    message: str
    sent: int = 0
    failed: int = 0
    delivery_status: Optional[str] = None
    results: List[TestNotificationResult] = Field(default_factory=list)


class ReceiptCheckResponse(BaseModel):
    checked: int
    delivered: int
    failed: int
    still_pending: int
    tokens_removed: int
    errors: Dict[str, int] = Field(default_factory=dict)


# ============================================================================
# Endpoints
# ============================================================================


@router.post("/test", response_model=TestNotificationResponse)
async def send_test_notification(
    request_data: TestNotificationRequest,
    service: PushDispatchService = Depends(get_push_service),
):
    """
    Send a test push notification to every device of a user.

    **Status Codes:**
    - 200: Test completed (check individual results for delivery status)
    - 400: Unknown platform in the filter
    - 503: Dispatch service not running
    """
    content = NotificationContent(
        title=request_data.title,
        body=request_data.body,
        data=request_data.data,
        priority=Priority.HIGH,
        collapse_key="test-notification",
    )
    options = DispatchOptions(platforms=request_data.platforms, urgent=request_data.urgent)

    try:
        outcome = await service.dispatch(request_data.user_id, content, options)
    except ValueError as e:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail=str(e),
        )

    if outcome.error:
        messages = {
            "no_devices": "No devices registered for this user. Register a device first.",
            "push_disabled": "Push notifications are disabled on this server.",
        }
        return TestNotificationResponse(
            success=False,
            message=messages.get(outcome.error, f"Test notification not sent: {outcome.error}"),
        )

    results = [
        TestNotificationResult(
            device_token_id=a.device_token_id,
            provider=a.provider,
            status=a.status.value,
            error_code=a.error_code,
        )
        for a in outcome.per_device
    ]

    return TestNotificationResponse(
        success=outcome.sent > 0,
        message=f"Test notification sent to {outcome.sent}/{len(results)} devices",
        sent=outcome.sent,
        failed=outcome.failed,
        delivery_status=outcome.delivery_status.value,
        results=results,
    )


@router.get("/stats")
async def get_push_stats(
    service: PushDispatchService = Depends(get_push_service),
) -> dict:
    """Running delivery totals by provider since process start."""
    return service.get_stats()


@router.post("/receipts/check", response_model=ReceiptCheckResponse)
async def check_receipts(
    service: PushDispatchService = Depends(get_push_service),
):
    """Fetch receipts for pending Expo tickets and remove dead tokens."""
    try:
        result = await service.check_receipts()
    except Exception as e:
        logger.error(f"Error checking Expo receipts: {e}", exc_info=True)
        raise HTTPException(
            status_code=status.HTTP_502_BAD_GATEWAY,
            detail="Failed to fetch receipts from Expo",
        )
    return ReceiptCheckResponse(**result.to_dict())
