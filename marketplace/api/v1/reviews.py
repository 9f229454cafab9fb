"""
Review API endpoints.
"""

from fastapi import APIRouter, Depends, Query, Path, status
import logging

from marketplace.api.dependencies import get_authenticated_user
from marketplace.schemas.common import SuccessResponse
from marketplace.schemas.review import (
    ReviewCreate,
    ReviewUpdate,
    VendorResponseCreate,
    ReviewFlag,
    ReviewResponse,
    ReviewListResponse,
    HelpfulVoteResponse,
    ReviewReportResponse,
    ReviewStatsResponse,
)
from marketplace.services.review_service import review_service

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/reviews", tags=["reviews"])

SORT_PATTERN = "^(recent|helpful|rating_high|rating_low)$"


@router.post("/", response_model=ReviewResponse, status_code=status.HTTP_201_CREATED)
async def create_review(
    review_data: ReviewCreate,
    user_info: dict = Depends(get_authenticated_user)
):
    """Review a completed booking (booking organizer only)."""
    ratings = review_data.ratings.model_dump(exclude_none=True) if review_data.ratings else None
    return await review_service.create_review(
        booking_id=review_data.booking_id,
        reviewer_id=user_info["user_id"],
        rating=review_data.rating,
        review_text=review_data.review_text,
        ratings=ratings
    )


@router.get("/my", response_model=ReviewListResponse)
async def get_my_reviews(
    page: int = Query(1, ge=1),
    page_size: int = Query(20, ge=1, le=100),
    user_info: dict = Depends(get_authenticated_user)
):
    return await review_service.get_my_reviews(user_info["user_id"], page, page_size)


@router.get("/service/{service_id}", response_model=ReviewListResponse)
async def get_service_reviews(
    service_id: int = Path(..., gt=0),
    page: int = Query(1, ge=1),
    page_size: int = Query(20, ge=1, le=100),
    sort: str = Query("recent", pattern=SORT_PATTERN)
):
    return await review_service.get_service_reviews(service_id, page, page_size, sort)


@router.get("/service/{service_id}/stats", response_model=ReviewStatsResponse)
async def get_service_review_stats(service_id: int = Path(..., gt=0)):
    return await review_service.get_service_review_stats(service_id)


@router.get("/vendor/{vendor_id}", response_model=ReviewListResponse)
async def get_vendor_reviews(
    vendor_id: int = Path(..., gt=0),
    page: int = Query(1, ge=1),
    page_size: int = Query(20, ge=1, le=100),
    sort: str = Query("recent", pattern=SORT_PATTERN)
):
    return await review_service.get_vendor_reviews(vendor_id, page, page_size, sort)


@router.get("/{review_id}", response_model=ReviewResponse)
async def get_review(review_id: int = Path(..., gt=0)):
    return await review_service.get_review(review_id)


@router.put("/{review_id}", response_model=ReviewResponse)
async def update_review(
    update_data: ReviewUpdate,
    review_id: int = Path(..., gt=0),
    user_info: dict = Depends(get_authenticated_user)
):
    ratings = update_data.ratings.model_dump(exclude_none=True) if update_data.ratings else None
    return await review_service.update_review(
        review_id,
        user_info["user_id"],
        rating=update_data.rating,
        review_text=update_data.review_text,
        ratings=ratings
    )


@router.delete("/{review_id}", response_model=SuccessResponse)
async def delete_review(
    review_id: int = Path(..., gt=0),
    user_info: dict = Depends(get_authenticated_user)
):
    await review_service.delete_review(review_id, user_info["user_id"], is_admin=user_info["is_admin"])
    return SuccessResponse(message="Review deleted successfully")


@router.post("/{review_id}/response", response_model=ReviewResponse)
async def add_vendor_response(
    response_data: VendorResponseCreate,
    review_id: int = Path(..., gt=0),
    user_info: dict = Depends(get_authenticated_user)
):
    return await review_service.add_vendor_response(review_id, user_info["user_id"], response_data.response)


@router.post("/{review_id}/helpful", response_model=HelpfulVoteResponse)
async def add_helpful_vote(
    review_id: int = Path(..., gt=0),
    user_info: dict = Depends(get_authenticated_user)
):
    return await review_service.add_helpful_vote(review_id, user_info["user_id"])


@router.delete("/{review_id}/helpful", response_model=HelpfulVoteResponse)
async def remove_helpful_vote(
    review_id: int = Path(..., gt=0),
    user_info: dict = Depends(get_authenticated_user)
):
    return await review_service.remove_helpful_vote(review_id, user_info["user_id"])


@router.post("/{review_id}/helpful/toggle", response_model=HelpfulVoteResponse)
async def toggle_helpful_vote(
    review_id: int = Path(..., gt=0),
    user_info: dict = Depends(get_authenticated_user)
):
    return await review_service.toggle_helpful_vote(review_id, user_info["user_id"])


@router.post("/{review_id}/flag", response_model=ReviewResponse)
async def flag_review(
    flag_data: ReviewFlag,
    review_id: int = Path(..., gt=0),
    user_info: dict = Depends(get_authenticated_user)
):
    return await review_service.flag_review(review_id, user_info["user_id"], flag_data.reason)


@router.post("/{review_id}/report", response_model=ReviewReportResponse)
async def report_review(
    report_data: ReviewFlag,
    review_id: int = Path(..., gt=0),
    user_info: dict = Depends(get_authenticated_user)
):
    return await review_service.report_review(review_id, user_info["user_id"], report_data.reason)
