"""
RSVP API endpoints.
"""

from fastapi import APIRouter, Depends, Query, Path
from typing import List, Optional
import logging

from marketplace.api.dependencies import get_authenticated_user
from marketplace.models.event import RSVPStatus
from marketplace.schemas.rsvp import (
    RSVPUpsert,
    RSVPUpdate,
    CheckInByCode,
    EventRating,
    RSVPResponse,
    RSVPListResponse,
    RSVPStatsResponse,
)
from marketplace.services.rsvp_service import rsvp_service

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/rsvps", tags=["rsvps"])


@router.post("/", response_model=RSVPResponse)
async def upsert_rsvp(
    rsvp_data: RSVPUpsert,
    user_info: dict = Depends(get_authenticated_user)
):
    """Create or update the caller's RSVP; rejected when it would overfill the event."""
    return await rsvp_service.upsert_rsvp(
        event_id=rsvp_data.event_id,
        attendee_id=user_info["user_id"],
        status=rsvp_data.status,
        guests_count=rsvp_data.guests_count
    )


@router.get("/my", response_model=RSVPListResponse)
async def get_my_rsvps(
    status_filter: Optional[RSVPStatus] = Query(None, alias="status"),
    upcoming: bool = Query(True),
    page: int = Query(1, ge=1),
    page_size: int = Query(20, ge=1, le=100),
    user_info: dict = Depends(get_authenticated_user)
):
    return await rsvp_service.get_my_rsvps(
        user_info["user_id"], status=status_filter, upcoming=upcoming, page=page, page_size=page_size
    )


@router.post("/check-in-code", response_model=RSVPResponse)
async def check_in_by_code(
    check_in_data: CheckInByCode,
    user_info: dict = Depends(get_authenticated_user)
):
    return await rsvp_service.check_in_by_code(check_in_data.event_id, check_in_data.code, user_info["user_id"])


@router.get("/event/{event_id}", response_model=List[RSVPResponse])
async def get_event_rsvps(
    event_id: int = Path(..., gt=0),
    status_filter: Optional[RSVPStatus] = Query(None, alias="status"),
    user_info: dict = Depends(get_authenticated_user)
):
    return await rsvp_service.get_event_rsvps(
        event_id, user_info["user_id"], status=status_filter, is_admin=user_info["is_admin"]
    )


@router.get("/event/{event_id}/mine", response_model=RSVPResponse)
async def get_my_event_rsvp(
    event_id: int = Path(..., gt=0),
    user_info: dict = Depends(get_authenticated_user)
):
    return await rsvp_service.get_my_rsvp(event_id, user_info["user_id"])


@router.get("/event/{event_id}/stats", response_model=RSVPStatsResponse)
async def get_rsvp_stats(
    event_id: int = Path(..., gt=0),
    user_info: dict = Depends(get_authenticated_user)
):
    return await rsvp_service.get_rsvp_stats(event_id)


@router.put("/{rsvp_id}", response_model=RSVPResponse)
async def update_rsvp(
    update_data: RSVPUpdate,
    rsvp_id: int = Path(..., gt=0),
    user_info: dict = Depends(get_authenticated_user)
):
    return await rsvp_service.update_rsvp(
        rsvp_id, user_info["user_id"], status=update_data.status, guests_count=update_data.guests_count
    )


@router.post("/{rsvp_id}/cancel", response_model=RSVPResponse)
async def cancel_rsvp(
    rsvp_id: int = Path(..., gt=0),
    user_info: dict = Depends(get_authenticated_user)
):
    return await rsvp_service.cancel_rsvp(rsvp_id, user_info["user_id"])


@router.post("/{rsvp_id}/check-in", response_model=RSVPResponse)
async def check_in(
    rsvp_id: int = Path(..., gt=0),
    user_info: dict = Depends(get_authenticated_user)
):
    return await rsvp_service.check_in(rsvp_id, user_info["user_id"])


@router.post("/{rsvp_id}/attended", response_model=RSVPResponse)
async def mark_attended(
    rsvp_id: int = Path(..., gt=0),
    user_info: dict = Depends(get_authenticated_user)
):
    return await rsvp_service.mark_attended(rsvp_id, user_info["user_id"])


@router.post("/{rsvp_id}/rate", response_model=RSVPResponse)
async def rate_event(
    rating_data: EventRating,
    rsvp_id: int = Path(..., gt=0),
    user_info: dict = Depends(get_authenticated_user)
):
    return await rsvp_service.rate_event(rsvp_id, user_info["user_id"], rating_data.rating, rating_data.review)
