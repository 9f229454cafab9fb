"""
Notification inbox API endpoints.
"""

from fastapi import APIRouter, Depends, Query, Path
import logging

from marketplace.api.dependencies import get_authenticated_user
from marketplace.schemas.common import NotificationResponse, NotificationListResponse, SuccessResponse
from marketplace.services.notification_service import notification_service

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/notifications", tags=["notifications"])


@router.get("/", response_model=NotificationListResponse)
async def list_notifications(
    unread_only: bool = Query(False),
    page: int = Query(1, ge=1),
    page_size: int = Query(20, ge=1, le=100),
    user_info: dict = Depends(get_authenticated_user)
):
    """The caller's notifications that have not expired, newest first."""
    return await notification_service.list_notifications(user_info["user_id"], unread_only, page, page_size)


@router.get("/unread-count")
async def get_unread_count(user_info: dict = Depends(get_authenticated_user)):
    count = await notification_service.get_unread_count(user_info["user_id"])
    return {"unread_count": count}


@router.post("/read-all", response_model=SuccessResponse)
async def mark_all_as_read(user_info: dict = Depends(get_authenticated_user)):
    updated = await notification_service.mark_all_as_read(user_info["user_id"])
    return SuccessResponse(message=f"Marked {updated} notifications as read", data={"updated": updated})


@router.post("/{notification_id}/read", response_model=NotificationResponse)
async def mark_as_read(
    notification_id: int = Path(..., gt=0),
    user_info: dict = Depends(get_authenticated_user)
):
    return await notification_service.mark_as_read(notification_id, user_info["user_id"])


@router.delete("/{notification_id}", response_model=SuccessResponse)
async def delete_notification(
    notification_id: int = Path(..., gt=0),
    user_info: dict = Depends(get_authenticated_user)
):
    await notification_service.delete_notification(notification_id, user_info["user_id"])
    return SuccessResponse(message="Notification deleted successfully")
