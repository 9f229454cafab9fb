"""
Admin API endpoints.
Handles review moderation, refunds and aggregate repair.
"""

from fastapi import APIRouter, Depends, Query, Path
import logging

from marketplace.api.dependencies import get_admin_user
from marketplace.db.database import db_manager
from marketplace.schemas.booking import BookingRefund, BookingResponse
from marketplace.schemas.common import SuccessResponse
from marketplace.schemas.review import ReviewModeration, ReviewResponse, ReviewListResponse
from marketplace.services import ledger_service
from marketplace.services.booking_service import booking_service
from marketplace.services.cache_service import cache_service
from marketplace.services.notification_service import notification_service
from marketplace.services.review_service import review_service

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/admin", tags=["admin"])


@router.get("/reviews/flagged", response_model=ReviewListResponse)
async def get_flagged_reviews(
    page: int = Query(1, ge=1),
    page_size: int = Query(20, ge=1, le=100),
    admin_user: dict = Depends(get_admin_user)
):
    """Reviews waiting for moderation (Admin only)."""
    return await review_service.get_flagged_reviews(page, page_size)


@router.post("/reviews/{review_id}/moderate", response_model=ReviewResponse)
async def moderate_review(
    moderation: ReviewModeration,
    review_id: int = Path(..., gt=0),
    admin_user: dict = Depends(get_admin_user)
):
    """
    Approve or reject a review (Admin only).
    Rejected reviews stop counting towards the service and vendor ratings.
    """
    return await review_service.moderate_review(
        review_id,
        admin_user["user_id"],
        is_approved=moderation.is_approved,
        reason=moderation.reason,
        is_admin=True
    )


@router.post("/bookings/{booking_id}/refund", response_model=BookingResponse)
async def refund_booking(
    refund_data: BookingRefund,
    booking_id: int = Path(..., gt=0),
    admin_user: dict = Depends(get_admin_user)
):
    return await booking_service.refund_booking(
        booking_id, admin_user["user_id"], refund_data.reason, is_admin=True
    )


@router.post("/recount/events/{event_id}", response_model=SuccessResponse)
async def recount_event(
    event_id: int = Path(..., gt=0),
    admin_user: dict = Depends(get_admin_user)
):
    """Recompute an event's attendance and rating from its RSVPs (Admin only)."""
    with db_manager.get_session() as session:
        attendance = ledger_service.recount_event_attendance(session, event_id)
        rating = ledger_service.recount_event_rating(session, event_id)

    await cache_service.invalidate(cache_service.event_rsvp_stats_key(event_id))
    logger.info(f"Admin {admin_user['user_id']} recounted event {event_id}")
    return SuccessResponse(message="Event aggregates recounted", data={**attendance, **rating})


@router.post("/recount/services/{service_id}", response_model=SuccessResponse)
async def recount_service(
    service_id: int = Path(..., gt=0),
    admin_user: dict = Depends(get_admin_user)
):
    """Recompute a service's booking counters and rating, then its vendor's rating (Admin only)."""
    with db_manager.get_session() as session:
        counters = ledger_service.rebuild_service_booking_counters(session, service_id)
        rating = ledger_service.recount_service_rating(session, service_id)

    await cache_service.invalidate(cache_service.service_review_stats_key(service_id))
    logger.info(f"Admin {admin_user['user_id']} recounted service {service_id}")
    return SuccessResponse(message="Service aggregates recounted", data={**counters, **rating})


@router.post("/recount/all", response_model=SuccessResponse)
async def recount_all(admin_user: dict = Depends(get_admin_user)):
    """Rebuild every derived counter and rating (Admin only)."""
    with db_manager.get_session() as session:
        summary = ledger_service.rebuild_all_aggregates(session)

    logger.info(f"Admin {admin_user['user_id']} rebuilt all aggregates")
    return SuccessResponse(message="All aggregates rebuilt", data=summary)


@router.post("/notifications/cleanup", response_model=SuccessResponse)
async def cleanup_expired_notifications(admin_user: dict = Depends(get_admin_user)):
    removed = await notification_service.cleanup_expired()
    return SuccessResponse(message=f"Removed {removed} expired notifications", data={"removed": removed})
