"""
Review Service: the review attribution pipeline.

A review is written by the organizer of a completed booking. Its rating is
attributed to the booked service and, through the service, to the vendor;
both aggregates are recounted in the same transaction as every change that
can move them (create, edit, delete, moderation).
"""

import logging
from datetime import timedelta
from typing import Optional, List, Dict, Any

from sqlalchemy import func
from sqlalchemy.orm import Session

from marketplace.core.config import config
from marketplace.core.exceptions import (
    NotFoundError, ForbiddenError, InvalidStateError, ConflictError, ValidationError
)
from marketplace.core.locking import get_entity_lock
from marketplace.db.database import db_manager, translate_write_conflicts
from marketplace.models.base import utcnow, as_utc, round_rating
from marketplace.models.booking import Booking, BookingStatus
from marketplace.models.notification import NotificationType
from marketplace.models.review import (
    Review, ReviewHelpfulVote, ReviewReport,
    REVIEW_TEXT_MIN_LENGTH, REVIEW_TEXT_MAX_LENGTH, DETAIL_RATING_FIELDS
)
from marketplace.models.service import Service
from marketplace.models.user import XPReward
from marketplace.services import ledger_service
from marketplace.services.cache_service import cache_service
from marketplace.services.notification_service import NotificationDispatcher, notification_service

logger = logging.getLogger(__name__)


def _validate_rating(value, field: str = "rating"):
    if value is None or isinstance(value, bool) or not isinstance(value, int) or value < 1 or value > 5:
        raise ValidationError(f"{field} must be between 1 and 5")


def _validate_text(review_text: str):
    length = len((review_text or "").strip())
    if length < REVIEW_TEXT_MIN_LENGTH or length > REVIEW_TEXT_MAX_LENGTH:
        raise ValidationError(
            f"Review must be between {REVIEW_TEXT_MIN_LENGTH} and {REVIEW_TEXT_MAX_LENGTH} characters"
        )


def _validate_detailed(ratings: Optional[Dict[str, int]]) -> Dict[str, int]:
    ratings = ratings or {}
    unknown = set(ratings) - set(DETAIL_RATING_FIELDS)
    if unknown:
        raise ValidationError(f"Unknown rating categories: {', '.join(sorted(unknown))}")
    for field, value in ratings.items():
        if value is not None:
            _validate_rating(value, f"{field} rating")
    return ratings


class ReviewService:
    """
    Review creation, vendor responses, helpful votes, reporting and moderation.
    """

    def __init__(self, dispatcher: Optional[NotificationDispatcher] = None):
        self.dispatcher = dispatcher or notification_service
        self.consistency_config = None
        self.review_config = None

    async def _get_configs(self):
        if not self.consistency_config:
            self.consistency_config = await config.get_consistency_config()
        if not self.review_config:
            self.review_config = await config.get_review_config()

    def _lock(self, lock_key: str):
        return get_entity_lock(lock_key, self.consistency_config)

    def _get_review(self, session: Session, review_id: int) -> Review:
        review = session.get(Review, review_id)
        if not review:
            raise NotFoundError("Review not found")
        return review

    async def _notify(
        self,
        recipient_id: int,
        title: str,
        message: str,
        review: Dict[str, Any],
        actor_id: Optional[int] = None
    ):
        try:
            await self.dispatcher.notify(
                recipient_id=recipient_id,
                type=NotificationType.REVIEW,
                title=title,
                message=message,
                related_event_id=review["event_id"],
                related_booking_id=review["booking_id"],
                related_user_id=actor_id,
                action_url=f"/reviews/{review['id']}"
            )
        except Exception as e:
            logger.error(f"Failed to send review notification to user {recipient_id}: {e}")

    async def create_review(
        self,
        booking_id: int,
        reviewer_id: int,
        rating: int,
        review_text: str,
        ratings: Optional[Dict[str, int]] = None
    ) -> Dict[str, Any]:
        """
        Review a completed booking.

        Args:
            booking_id: Booking being reviewed
            reviewer_id: Caller, must be the booking organizer
            rating: Overall rating 1 to 5
            review_text: 10 to 1000 characters
            ratings: Optional detailed ratings keyed by quality, punctuality,
                professionalism and value_for_money

        Returns:
            The created review

        Raises:
            ValidationError: Rating, text or detailed ratings out of range
            NotFoundError: Booking does not exist
            ForbiddenError: Caller is not the booking organizer
            InvalidStateError: Booking is not completed
            ConflictError: The booking already has a review
        """
        _validate_rating(rating)
        _validate_text(review_text)
        detailed = _validate_detailed(ratings)
        await self._get_configs()

        async with self._lock(f"review:booking:{booking_id}"):
            with translate_write_conflicts("review"):
                with db_manager.get_session() as session:
                    booking = session.get(Booking, booking_id)
                    if not booking:
                        raise NotFoundError("Booking not found")
                    if booking.organizer_id != reviewer_id:
                        raise ForbiddenError("Only the organizer of this booking can review it")
                    if booking.status != BookingStatus.COMPLETED:
                        raise InvalidStateError("Can only review completed bookings")

                    existing = session.query(Review.id).filter(Review.booking_id == booking_id).first()
                    if existing:
                        raise ConflictError("You have already reviewed this booking", details={"review_id": existing.id})

                    review = Review(
                        booking_id=booking_id,
                        service_id=booking.service_id,
                        vendor_id=booking.vendor_id,
                        reviewer_id=reviewer_id,
                        event_id=booking.event_id,
                        rating=rating,
                        review_text=review_text.strip(),
                        is_approved=True,
                        is_flagged=False,
                        helpful_count=0,
                        **{f"{field}_rating": value for field, value in detailed.items()}
                    )
                    session.add(review)
                    session.flush()

                    ledger_service.recount_service_rating(session, booking.service_id)
                    ledger_service.award_xp(session, reviewer_id, XPReward.REVIEW_GIVEN)
                    result = review.to_dict()

        await cache_service.invalidate(cache_service.service_review_stats_key(result["service_id"]))
        logger.info(f"Review {result['id']} created for booking {booking_id} with rating {rating}")

        await self._notify(
            result["vendor_id"],
            "New review received",
            f"You received a {rating}-star review",
            result,
            actor_id=reviewer_id
        )
        return result

    async def update_review(
        self,
        review_id: int,
        caller_id: int,
        rating: Optional[int] = None,
        review_text: Optional[str] = None,
        ratings: Optional[Dict[str, int]] = None
    ) -> Dict[str, Any]:
        """
        Edit a review within the edit window. Reviewer only.

        Raises:
            NotFoundError: Review does not exist
            ForbiddenError: Caller is not the reviewer
            InvalidStateError: The edit window has closed
        """
        if rating is not None:
            _validate_rating(rating)
        if review_text is not None:
            _validate_text(review_text)
        detailed = _validate_detailed(ratings)
        await self._get_configs()

        async with self._lock(f"review:{review_id}"):
            with translate_write_conflicts("review"):
                with db_manager.get_session() as session:
                    review = self._get_review(session, review_id)
                    if review.reviewer_id != caller_id:
                        raise ForbiddenError("Not authorized to update this review")

                    window = timedelta(days=self.review_config["edit_window_days"])
                    if utcnow() - as_utc(review.created_at) > window:
                        raise InvalidStateError(
                            f"Reviews can only be edited within {self.review_config['edit_window_days']} days"
                        )

                    if rating is not None:
                        review.rating = rating
                    if review_text is not None:
                        review.review_text = review_text.strip()
                    for field, value in detailed.items():
                        setattr(review, f"{field}_rating", value)
                    review.updated_at = utcnow()
                    session.flush()

                    ledger_service.recount_service_rating(session, review.service_id)
                    result = review.to_dict()

        await cache_service.invalidate(cache_service.service_review_stats_key(result["service_id"]))
        return result

    async def delete_review(self, review_id: int, caller_id: int, is_admin: bool = False) -> bool:
        """
        Delete a review. Reviewer or admin.

        Raises:
            NotFoundError: Review does not exist
            ForbiddenError: Caller is neither the reviewer nor an admin
        """
        await self._get_configs()

        async with self._lock(f"review:{review_id}"):
            with db_manager.get_session() as session:
                review = self._get_review(session, review_id)
                if review.reviewer_id != caller_id and not is_admin:
                    raise ForbiddenError("Not authorized to delete this review")

                service_id = review.service_id
                session.delete(review)
                session.flush()
                ledger_service.recount_service_rating(session, service_id)

        await cache_service.invalidate(cache_service.service_review_stats_key(service_id))
        logger.info(f"Review {review_id} deleted by user {caller_id}")
        return True

    async def add_vendor_response(self, review_id: int, caller_id: int, response: str) -> Dict[str, Any]:
        """
        Vendor replies to a review, once.

        Raises:
            ValidationError: Empty response
            NotFoundError: Review does not exist
            ForbiddenError: Caller is not the reviewed vendor
            ConflictError: A response already exists
        """
        response = (response or "").strip()
        if not response or len(response) > REVIEW_TEXT_MAX_LENGTH:
            raise ValidationError(f"Response must be between 1 and {REVIEW_TEXT_MAX_LENGTH} characters")
        await self._get_configs()

        async with self._lock(f"review:{review_id}"):
            with translate_write_conflicts("review"):
                with db_manager.get_session() as session:
                    review = self._get_review(session, review_id)
                    if review.vendor_id != caller_id:
                        raise ForbiddenError("Only the reviewed vendor can respond")
                    if review.vendor_response:
                        raise ConflictError("You have already responded to this review")

                    review.vendor_response = response
                    review.responded_at = utcnow()
                    session.flush()
                    result = review.to_dict()

        await self._notify(
            result["reviewer_id"],
            "Vendor responded to your review",
            "The vendor has responded to your review",
            result,
            actor_id=caller_id
        )
        return result

    def _sync_helpful_count(self, session: Session, review: Review):
        session.flush()
        review.helpful_count = session.query(func.count(ReviewHelpfulVote.id)).filter(
            ReviewHelpfulVote.review_id == review.id
        ).scalar()

    async def add_helpful_vote(self, review_id: int, user_id: int) -> Dict[str, Any]:
        """
        Mark a review helpful.

        Raises:
            NotFoundError: Review does not exist
            ConflictError: The user already marked it helpful
        """
        await self._get_configs()

        async with self._lock(f"review:{review_id}"):
            with translate_write_conflicts("helpful vote"):
                with db_manager.get_session() as session:
                    review = self._get_review(session, review_id)
                    if any(vote.user_id == user_id for vote in review.helpful_votes):
                        raise ConflictError("Already marked as helpful")

                    review.helpful_votes.append(ReviewHelpfulVote(user_id=user_id))
                    self._sync_helpful_count(session, review)
                    return {"review_id": review_id, "helpful_count": review.helpful_count, "voted": True}

    async def remove_helpful_vote(self, review_id: int, user_id: int) -> Dict[str, Any]:
        """
        Withdraw a helpful mark.

        Raises:
            NotFoundError: Review does not exist or the user had not voted
        """
        await self._get_configs()

        async with self._lock(f"review:{review_id}"):
            with db_manager.get_session() as session:
                review = self._get_review(session, review_id)
                vote = next((v for v in review.helpful_votes if v.user_id == user_id), None)
                if not vote:
                    raise NotFoundError("You have not marked this review as helpful")

                review.helpful_votes.remove(vote)
                self._sync_helpful_count(session, review)
                return {"review_id": review_id, "helpful_count": review.helpful_count, "voted": False}

    async def toggle_helpful_vote(self, review_id: int, user_id: int) -> Dict[str, Any]:
        """Add the user's helpful mark if absent, otherwise remove it."""
        await self._get_configs()

        async with self._lock(f"review:{review_id}"):
            with translate_write_conflicts("helpful vote"):
                with db_manager.get_session() as session:
                    review = self._get_review(session, review_id)
                    vote = next((v for v in review.helpful_votes if v.user_id == user_id), None)
                    if vote:
                        review.helpful_votes.remove(vote)
                    else:
                        review.helpful_votes.append(ReviewHelpfulVote(user_id=user_id))
                    self._sync_helpful_count(session, review)
                    return {"review_id": review_id, "helpful_count": review.helpful_count, "voted": vote is None}

    async def flag_review(self, review_id: int, caller_id: int, reason: str) -> Dict[str, Any]:
        """Flag a review for moderation. The reviewed vendor or the reviewer only."""
        await self._get_configs()

        async with self._lock(f"review:{review_id}"):
            with db_manager.get_session() as session:
                review = self._get_review(session, review_id)
                if caller_id not in (review.vendor_id, review.reviewer_id):
                    raise ForbiddenError("Not authorized to flag this review")

                review.is_flagged = True
                review.flag_reason = (reason or "").strip()[:500] or None
                session.flush()
                result = review.to_dict()

        logger.info(f"Review {review_id} flagged by user {caller_id}")
        return result

    async def report_review(self, review_id: int, reporter_id: int, reason: str) -> Dict[str, Any]:
        """
        Report a review as abusive. One report per user; the review is
        flagged automatically once the report threshold is reached.

        Raises:
            ValidationError: Empty reason
            NotFoundError: Review does not exist
            ConflictError: The user already reported this review
        """
        reason = (reason or "").strip()
        if not reason:
            raise ValidationError("A reason is required to report a review")
        await self._get_configs()
        threshold = self.review_config["auto_flag_report_threshold"]

        async with self._lock(f"review:{review_id}"):
            with translate_write_conflicts("report"):
                with db_manager.get_session() as session:
                    review = self._get_review(session, review_id)
                    if any(report.reporter_id == reporter_id for report in review.reports):
                        raise ConflictError("You have already reported this review")

                    review.reports.append(ReviewReport(reporter_id=reporter_id, reason=reason[:500]))
                    session.flush()

                    report_count = len(review.reports)
                    if report_count >= threshold and not review.is_flagged:
                        review.is_flagged = True
                        review.flag_reason = f"Auto-flagged after {report_count} reports"
                        logger.warning(f"Review {review_id} auto-flagged after {report_count} reports")

                    session.flush()
                    return {"review_id": review_id, "report_count": report_count, "is_flagged": review.is_flagged}

    async def moderate_review(
        self,
        review_id: int,
        moderator_id: int,
        is_approved: bool,
        reason: Optional[str] = None,
        is_admin: bool = False
    ) -> Dict[str, Any]:
        """
        Approve or reject a review. Admin only.
        Clears the flag and recounts the service and vendor ratings, since
        only approved reviews count.

        Raises:
            ForbiddenError: Caller is not an admin
            NotFoundError: Review does not exist
        """
        if not is_admin:
            raise ForbiddenError("Admin access required")
        await self._get_configs()

        async with self._lock(f"review:{review_id}"):
            with db_manager.get_session() as session:
                review = self._get_review(session, review_id)

                review.is_approved = is_approved
                review.is_flagged = False
                review.moderated_by = moderator_id
                review.moderated_at = utcnow()
                if reason:
                    review.flag_reason = reason[:500]
                session.flush()

                ledger_service.recount_service_rating(session, review.service_id)
                result = review.to_dict()

        await cache_service.invalidate(cache_service.service_review_stats_key(result["service_id"]))
        logger.info(f"Review {review_id} moderated by {moderator_id}: approved={is_approved}")

        if not is_approved:
            message = "Your review was removed by a moderator"
            if reason:
                message = f"{message}: {reason}"
            await self._notify(result["reviewer_id"], "Review not approved", message, result, actor_id=moderator_id)
        return result

    # Read operations

    def _page(self, query, page: int, page_size: int, sort: str) -> Dict[str, Any]:
        if sort == "helpful":
            order = (Review.helpful_count.desc(), Review.created_at.desc())
        elif sort == "rating_high":
            order = (Review.rating.desc(), Review.created_at.desc())
        elif sort == "rating_low":
            order = (Review.rating.asc(), Review.created_at.desc())
        else:
            order = (Review.created_at.desc(), Review.id.desc())

        total = query.count()
        reviews = query.order_by(*order).offset((page - 1) * page_size).limit(page_size).all()
        return {
            "reviews": [r.to_dict() for r in reviews],
            "total": total,
            "page": page,
            "page_size": page_size,
        }

    async def get_review(self, review_id: int) -> Dict[str, Any]:
        with db_manager.get_session() as session:
            return self._get_review(session, review_id).to_dict()

    async def get_service_reviews(
        self,
        service_id: int,
        page: int = 1,
        page_size: int = 20,
        sort: str = "recent"
    ) -> Dict[str, Any]:
        """Approved reviews of a service."""
        with db_manager.get_session() as session:
            if not session.get(Service, service_id):
                raise NotFoundError("Service not found")
            query = session.query(Review).filter(
                Review.service_id == service_id,
                Review.is_approved.is_(True)
            )
            return self._page(query, page, page_size, sort)

    async def get_vendor_reviews(
        self,
        vendor_id: int,
        page: int = 1,
        page_size: int = 20,
        sort: str = "recent"
    ) -> Dict[str, Any]:
        """Approved reviews across all of a vendor's services."""
        with db_manager.get_session() as session:
            query = session.query(Review).filter(
                Review.vendor_id == vendor_id,
                Review.is_approved.is_(True)
            )
            return self._page(query, page, page_size, sort)

    async def get_my_reviews(self, reviewer_id: int, page: int = 1, page_size: int = 20) -> Dict[str, Any]:
        with db_manager.get_session() as session:
            query = session.query(Review).filter(Review.reviewer_id == reviewer_id)
            return self._page(query, page, page_size, "recent")

    async def get_flagged_reviews(self, page: int = 1, page_size: int = 20) -> Dict[str, Any]:
        with db_manager.get_session() as session:
            query = session.query(Review).filter(Review.is_flagged.is_(True))
            return self._page(query, page, page_size, "recent")

    async def get_service_review_stats(self, service_id: int) -> Dict[str, Any]:
        """Average overall and detailed ratings plus the 1 to 5 star distribution."""
        cache_key = cache_service.service_review_stats_key(service_id)
        cached = await cache_service.get(cache_key)
        if cached is not None:
            return cached

        with db_manager.get_session() as session:
            if not session.get(Service, service_id):
                raise NotFoundError("Service not found")

            approved = (Review.service_id == service_id, Review.is_approved.is_(True))
            averages = session.query(
                func.count(Review.id),
                func.avg(Review.rating),
                func.avg(Review.quality_rating),
                func.avg(Review.punctuality_rating),
                func.avg(Review.professionalism_rating),
                func.avg(Review.value_for_money_rating)
            ).filter(*approved).one()

            distribution_rows = session.query(
                Review.rating, func.count(Review.id)
            ).filter(*approved).group_by(Review.rating).all()

        total = int(averages[0])
        distribution = {str(star): 0 for star in range(1, 6)}
        for star, count in distribution_rows:
            distribution[str(star)] = int(count)

        stats = {
            "service_id": service_id,
            "total_reviews": total,
            "average_rating": round_rating(averages[1]) if total else 0.0,
            "detailed_averages": {
                field: round_rating(value) if value is not None else None
                for field, value in zip(DETAIL_RATING_FIELDS, averages[2:])
            },
            "distribution": distribution,
        }

        await cache_service.set(cache_key, stats, "review_stats_ttl")
        return stats


# Global review service instance
review_service = ReviewService()
