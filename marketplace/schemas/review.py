"""
Pydantic schemas for reviews.
"""

from pydantic import BaseModel, Field, field_validator
from typing import Optional, List, Dict
from datetime import datetime

from marketplace.models.review import REVIEW_TEXT_MIN_LENGTH, REVIEW_TEXT_MAX_LENGTH


class DetailedRatings(BaseModel):
    """Optional per-category ratings."""

    quality: Optional[int] = Field(None, ge=1, le=5)
    punctuality: Optional[int] = Field(None, ge=1, le=5)
    professionalism: Optional[int] = Field(None, ge=1, le=5)
    value_for_money: Optional[int] = Field(None, ge=1, le=5)


class ReviewCreate(BaseModel):
    booking_id: int = Field(..., gt=0)
    rating: int = Field(..., ge=1, le=5)
    review_text: str = Field(..., min_length=REVIEW_TEXT_MIN_LENGTH, max_length=REVIEW_TEXT_MAX_LENGTH)
    ratings: Optional[DetailedRatings] = None

    @field_validator('review_text')
    @classmethod
    def validate_text(cls, v):
        if len(v.strip()) < REVIEW_TEXT_MIN_LENGTH:
            raise ValueError(f'Review must be at least {REVIEW_TEXT_MIN_LENGTH} characters')
        return v


class ReviewUpdate(BaseModel):
    rating: Optional[int] = Field(None, ge=1, le=5)
    review_text: Optional[str] = Field(None, min_length=REVIEW_TEXT_MIN_LENGTH, max_length=REVIEW_TEXT_MAX_LENGTH)
    ratings: Optional[DetailedRatings] = None


class VendorResponseCreate(BaseModel):
    response: str = Field(..., min_length=1, max_length=REVIEW_TEXT_MAX_LENGTH)


class ReviewFlag(BaseModel):
    reason: str = Field(..., min_length=1, max_length=500)


class ReviewModeration(BaseModel):
    is_approved: bool
    reason: Optional[str] = Field(None, max_length=500)


class ReviewResponse(BaseModel):
    id: int
    booking_id: int
    service_id: int
    vendor_id: int
    reviewer_id: int
    event_id: int
    rating: int
    review_text: str
    detailed_ratings: Dict[str, int] = {}
    vendor_response: Optional[str] = None
    responded_at: Optional[datetime] = None
    is_approved: bool
    is_flagged: bool
    helpful_count: int
    created_at: datetime
    updated_at: datetime

    class Config:
        from_attributes = True


class ReviewListResponse(BaseModel):
    reviews: List[ReviewResponse]
    total: int
    page: int
    page_size: int


class HelpfulVoteResponse(BaseModel):
    review_id: int
    helpful_count: int
    voted: bool


class ReviewReportResponse(BaseModel):
    review_id: int
    report_count: int
    is_flagged: bool


class ReviewStatsResponse(BaseModel):
    service_id: int
    total_reviews: int
    average_rating: float
    detailed_averages: Dict[str, Optional[float]]
    distribution: Dict[str, int]
