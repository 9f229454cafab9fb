"""
Booking API endpoints.
Handles booking requests, lifecycle transitions and payment recording.
"""

from fastapi import APIRouter, Depends, Query, Path, status
from typing import List, Optional
import logging

from marketplace.api.dependencies import get_authenticated_user
from marketplace.models.booking import BookingStatus, PaymentStatus
from marketplace.schemas.booking import (
    BookingCreate,
    BookingUpdate,
    BookingCancel,
    BookingRefund,
    PaymentCreate,
    BookingResponse,
    BookingListResponse,
    BookingStatsResponse,
    BookingAuditLogResponse,
)
from marketplace.services.booking_service import booking_service

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/bookings", tags=["bookings"])


@router.post("/", response_model=BookingResponse, status_code=status.HTTP_201_CREATED)
async def create_booking(
    booking_data: BookingCreate,
    user_info: dict = Depends(get_authenticated_user)
):
    """
    Request a vendor service for one of the caller's events.

    Returns:
        The pending booking
    """
    return await booking_service.create_booking(
        organizer_id=user_info["user_id"],
        event_id=booking_data.event_id,
        service_id=booking_data.service_id,
        price_agreed=booking_data.price_agreed,
        event_date=booking_data.event_date,
        notes=booking_data.notes,
        requirements=booking_data.requirements
    )


@router.get("/", response_model=BookingListResponse)
async def list_my_bookings(
    role: str = Query("any", pattern="^(organizer|vendor|any)$", description="Which side of the booking the caller is on"),
    status_filter: Optional[BookingStatus] = Query(None, alias="status"),
    payment_status: Optional[PaymentStatus] = Query(None),
    page: int = Query(1, ge=1),
    page_size: int = Query(20, ge=1, le=100),
    user_info: dict = Depends(get_authenticated_user)
):
    """List bookings where the caller is organizer, vendor or either."""
    return await booking_service.list_bookings(
        user_id=user_info["user_id"],
        role=role,
        status=status_filter,
        payment_status=payment_status,
        page=page,
        page_size=page_size
    )


@router.get("/stats", response_model=BookingStatsResponse)
async def get_booking_stats(
    role: str = Query("vendor", pattern="^(organizer|vendor)$"),
    user_info: dict = Depends(get_authenticated_user)
):
    return await booking_service.get_booking_stats(user_info["user_id"], role)


@router.get("/vendor/upcoming", response_model=List[BookingResponse])
async def get_vendor_upcoming(
    limit: int = Query(20, ge=1, le=100),
    user_info: dict = Depends(get_authenticated_user)
):
    """Pending and confirmed bookings of the calling vendor that are still ahead."""
    return await booking_service.get_vendor_upcoming(user_info["user_id"], limit)


@router.get("/event/{event_id}", response_model=List[BookingResponse])
async def get_event_bookings(
    event_id: int = Path(..., gt=0),
    user_info: dict = Depends(get_authenticated_user)
):
    return await booking_service.get_event_bookings(event_id, user_info["user_id"], user_info["is_admin"])


@router.get("/{booking_id}", response_model=BookingResponse)
async def get_booking(
    booking_id: int = Path(..., gt=0),
    user_info: dict = Depends(get_authenticated_user)
):
    return await booking_service.get_booking(booking_id, user_info["user_id"], user_info["is_admin"])


@router.put("/{booking_id}", response_model=BookingResponse)
async def update_booking(
    update_data: BookingUpdate,
    booking_id: int = Path(..., gt=0),
    user_info: dict = Depends(get_authenticated_user)
):
    """Edit a pending booking (organizer only)."""
    return await booking_service.update_booking(
        booking_id,
        user_info["user_id"],
        price_agreed=update_data.price_agreed,
        notes=update_data.notes,
        requirements=update_data.requirements
    )


@router.post("/{booking_id}/confirm", response_model=BookingResponse)
async def confirm_booking(
    booking_id: int = Path(..., gt=0),
    user_info: dict = Depends(get_authenticated_user)
):
    return await booking_service.confirm_booking(booking_id, user_info["user_id"])


@router.post("/{booking_id}/start", response_model=BookingResponse)
async def start_booking(
    booking_id: int = Path(..., gt=0),
    user_info: dict = Depends(get_authenticated_user)
):
    return await booking_service.start_booking(booking_id, user_info["user_id"])


@router.post("/{booking_id}/cancel", response_model=BookingResponse)
async def cancel_booking(
    cancel_data: BookingCancel,
    booking_id: int = Path(..., gt=0),
    user_info: dict = Depends(get_authenticated_user)
):
    return await booking_service.cancel_booking(booking_id, user_info["user_id"], cancel_data.reason)


@router.post("/{booking_id}/complete", response_model=BookingResponse)
async def complete_booking(
    booking_id: int = Path(..., gt=0),
    user_info: dict = Depends(get_authenticated_user)
):
    return await booking_service.complete_booking(booking_id, user_info["user_id"])


@router.post("/{booking_id}/refund", response_model=BookingResponse)
async def refund_booking(
    refund_data: BookingRefund,
    booking_id: int = Path(..., gt=0),
    user_info: dict = Depends(get_authenticated_user)
):
    return await booking_service.refund_booking(
        booking_id, user_info["user_id"], refund_data.reason, is_admin=user_info["is_admin"]
    )


@router.post("/{booking_id}/payments", response_model=BookingResponse, status_code=status.HTTP_201_CREATED)
async def record_payment(
    payment_data: PaymentCreate,
    booking_id: int = Path(..., gt=0),
    user_info: dict = Depends(get_authenticated_user)
):
    """Record a payment that was confirmed outside the platform."""
    return await booking_service.record_payment(
        booking_id,
        user_info["user_id"],
        amount=payment_data.amount,
        method=payment_data.method,
        transaction_id=payment_data.transaction_id,
        notes=payment_data.notes
    )


@router.get("/{booking_id}/audit-log", response_model=List[BookingAuditLogResponse])
async def get_booking_audit_log(
    booking_id: int = Path(..., gt=0),
    user_info: dict = Depends(get_authenticated_user)
):
    return await booking_service.get_audit_log(booking_id, user_info["user_id"], user_info["is_admin"])
