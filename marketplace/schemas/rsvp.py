"""
Pydantic schemas for RSVPs.
"""

from pydantic import BaseModel, Field
from typing import Optional, List, Dict
from datetime import datetime

from marketplace.models.event import RSVPStatus, MAX_GUESTS_PER_RSVP


class RSVPUpsert(BaseModel):
    """Create or update the caller's RSVP for an event."""

    event_id: int = Field(..., gt=0)
    status: RSVPStatus = Field(RSVPStatus.GOING)
    guests_count: int = Field(0, ge=0, le=MAX_GUESTS_PER_RSVP, description="Additional guests")


class RSVPUpdate(BaseModel):
    status: Optional[RSVPStatus] = None
    guests_count: Optional[int] = Field(None, ge=0, le=MAX_GUESTS_PER_RSVP)


class CheckInByCode(BaseModel):
    event_id: int = Field(..., gt=0)
    code: str = Field(..., min_length=1, max_length=20)


class EventRating(BaseModel):
    rating: int = Field(..., ge=1, le=5)
    review: Optional[str] = Field(None, max_length=1000)


class RSVPResponse(BaseModel):
    id: int
    event_id: int
    attendee_id: int
    status: RSVPStatus
    guests_count: int
    checked_in: bool
    checked_in_at: Optional[datetime] = None
    check_in_code: str
    attended: bool
    event_rating: Optional[int] = None
    event_review: Optional[str] = None
    created_at: datetime
    updated_at: datetime

    class Config:
        from_attributes = True


class RSVPListResponse(BaseModel):
    rsvps: List[RSVPResponse]
    total: int
    page: int
    page_size: int


class RSVPStatusStats(BaseModel):
    count: int
    guests: int


class RSVPStatsResponse(BaseModel):
    event_id: int
    by_status: Dict[str, RSVPStatusStats]
    checked_in: int
    current_attendees: int
    max_attendees: Optional[int] = None
