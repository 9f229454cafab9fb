"""
Shared response schemas.
"""

from pydantic import BaseModel, Field
from typing import Optional, List, Any, Dict
from datetime import datetime


class ErrorResponse(BaseModel):
    """Error envelope returned by every exception handler."""

    error_code: str
    error_message: str
    details: Optional[Dict[str, Any]] = None
    timestamp: datetime = Field(default_factory=datetime.now)


class SuccessResponse(BaseModel):
    success: bool = True
    message: str
    data: Optional[Dict[str, Any]] = None


class NotificationResponse(BaseModel):
    id: int
    recipient_id: int
    type: str
    title: str
    message: str
    related_event_id: Optional[int] = None
    related_booking_id: Optional[int] = None
    related_user_id: Optional[int] = None
    action_url: Optional[str] = None
    priority: str
    is_read: bool
    read_at: Optional[datetime] = None
    sent_via: List[str] = []
    created_at: datetime
    expires_at: datetime


class NotificationListResponse(BaseModel):
    notifications: List[NotificationResponse]
    total: int
    page: int
    page_size: int


class HealthCheckResponse(BaseModel):
    status: str
    version: str
    database: str
    redis: str
