"""
Tests for ReviewService: attribution to service and vendor, helpful votes,
reports and moderation.
"""

import pytest
from datetime import timedelta
from decimal import Decimal

from marketplace.core.exceptions import (
    NotFoundError, ForbiddenError, InvalidStateError, ConflictError, ValidationError
)
from marketplace.db.database import db_manager
from marketplace.models.base import utcnow
from marketplace.models.notification import NotificationType
from marketplace.models.review import Review
from marketplace.models.service import Service
from marketplace.models.user import User

REVIEW_TEXT = "Food was fresh and the team was on time."


@pytest.fixture
def completed_booking(booking_service, seed):
    """Factory: a completed booking of ``service_id`` for a fresh event of the seed organizer."""

    async def _create(service_id=None, event_id=None):
        booking = await booking_service.create_booking(
            seed.organizer, event_id or seed.event, service_id or seed.service, Decimal("800.00")
        )
        await booking_service.confirm_booking(booking["id"], seed.vendor)
        return await booking_service.complete_booking(booking["id"], seed.organizer)

    return _create


class TestCreateReview:
    @pytest.mark.asyncio
    async def test_review_updates_service_vendor_and_xp(
        self, review_service, completed_booking, seed, load, dispatcher
    ):
        booking = await completed_booking()

        review = await review_service.create_review(
            booking["id"], seed.organizer, 4, REVIEW_TEXT, {"quality": 5, "punctuality": 3}
        )

        assert review["service_id"] == seed.service
        assert review["vendor_id"] == seed.vendor
        assert review["detailed_ratings"] == {"quality": 5, "punctuality": 3}

        service = load(Service, seed.service)
        assert service.rating_average == 4.0
        assert service.total_ratings == 1

        vendor = load(User, seed.vendor)
        assert vendor.rating_average == 4.0
        assert vendor.total_ratings == 1

        assert load(User, seed.organizer).xp_points == 10

        notes = [n for n in dispatcher.for_user(seed.vendor) if n["type"] == NotificationType.REVIEW]
        assert len(notes) == 1

    @pytest.mark.asyncio
    async def test_booking_must_be_completed(self, review_service, booking_service, seed):
        booking = await booking_service.create_booking(seed.organizer, seed.event, seed.service, Decimal("100"))
        with pytest.raises(InvalidStateError):
            await review_service.create_review(booking["id"], seed.organizer, 5, REVIEW_TEXT)

    @pytest.mark.asyncio
    async def test_only_organizer_reviews(self, review_service, completed_booking, seed):
        booking = await completed_booking()
        with pytest.raises(ForbiddenError):
            await review_service.create_review(booking["id"], seed.vendor, 5, REVIEW_TEXT)

    @pytest.mark.asyncio
    async def test_one_review_per_booking(self, review_service, completed_booking, seed):
        booking = await completed_booking()
        await review_service.create_review(booking["id"], seed.organizer, 5, REVIEW_TEXT)

        with pytest.raises(ConflictError):
            await review_service.create_review(booking["id"], seed.organizer, 3, REVIEW_TEXT)

    @pytest.mark.asyncio
    async def test_unknown_booking(self, review_service, seed):
        with pytest.raises(NotFoundError):
            await review_service.create_review(404, seed.organizer, 5, REVIEW_TEXT)

    @pytest.mark.asyncio
    @pytest.mark.parametrize("rating, text, ratings", [
        (0, REVIEW_TEXT, None),
        (6, REVIEW_TEXT, None),
        (True, REVIEW_TEXT, None),
        (4.5, REVIEW_TEXT, None),
        ("5", REVIEW_TEXT, None),
        (5, "too short", None),
        (5, "x" * 1001, None),
        (5, REVIEW_TEXT, {"quality": 9}),
        (5, REVIEW_TEXT, {"ambience": 4}),
        (5, REVIEW_TEXT, {"quality": True}),
    ])
    async def test_validation(self, review_service, seed, rating, text, ratings):
        with pytest.raises(ValidationError):
            await review_service.create_review(1, seed.organizer, rating, text, ratings)

    @pytest.mark.asyncio
    async def test_vendor_average_spans_services(
        self, review_service, completed_booking, create_service, create_event, seed, load
    ):
        photo = create_service(seed.vendor, "Photography")
        first = await completed_booking()
        second = await completed_booking(service_id=photo, event_id=create_event(seed.organizer))

        await review_service.create_review(first["id"], seed.organizer, 5, REVIEW_TEXT)
        await review_service.create_review(second["id"], seed.organizer, 4, REVIEW_TEXT)

        assert load(Service, seed.service).rating_average == 5.0
        assert load(Service, photo).rating_average == 4.0
        vendor = load(User, seed.vendor)
        assert vendor.rating_average == 4.5
        assert vendor.total_ratings == 2


class TestEditAndDelete:
    @pytest.mark.asyncio
    async def test_update_recounts(self, review_service, completed_booking, seed, load):
        booking = await completed_booking()
        review = await review_service.create_review(booking["id"], seed.organizer, 2, REVIEW_TEXT)

        updated = await review_service.update_review(review["id"], seed.organizer, rating=5)

        assert updated["rating"] == 5
        assert load(Service, seed.service).rating_average == 5.0

    @pytest.mark.asyncio
    async def test_edit_window(self, review_service, completed_booking, seed):
        booking = await completed_booking()
        review = await review_service.create_review(booking["id"], seed.organizer, 2, REVIEW_TEXT)

        with db_manager.get_session() as session:
            session.get(Review, review["id"]).created_at = utcnow() - timedelta(days=8)

        with pytest.raises(InvalidStateError):
            await review_service.update_review(review["id"], seed.organizer, rating=5)

    @pytest.mark.asyncio
    async def test_delete_resets_rating(self, review_service, completed_booking, seed, load):
        booking = await completed_booking()
        review = await review_service.create_review(booking["id"], seed.organizer, 3, REVIEW_TEXT)

        with pytest.raises(ForbiddenError):
            await review_service.delete_review(review["id"], seed.vendor)

        assert await review_service.delete_review(review["id"], seed.organizer) is True
        service = load(Service, seed.service)
        assert service.rating_average == 0.0
        assert service.total_ratings == 0
        assert load(User, seed.vendor).total_ratings == 0


class TestVendorResponse:
    @pytest.mark.asyncio
    async def test_respond_once(self, review_service, completed_booking, seed, dispatcher):
        booking = await completed_booking()
        review = await review_service.create_review(booking["id"], seed.organizer, 4, REVIEW_TEXT)

        with pytest.raises(ForbiddenError):
            await review_service.add_vendor_response(review["id"], seed.organizer, "Thanks!")

        responded = await review_service.add_vendor_response(review["id"], seed.vendor, "Thank you for the kind words")
        assert responded["vendor_response"] == "Thank you for the kind words"
        assert responded["responded_at"] is not None
        assert dispatcher.for_user(seed.organizer)[-1]["title"] == "Vendor responded to your review"

        with pytest.raises(ConflictError):
            await review_service.add_vendor_response(review["id"], seed.vendor, "Again")


class TestHelpfulVotes:
    @pytest.mark.asyncio
    async def test_vote_set_membership(self, review_service, completed_booking, seed, create_user):
        booking = await completed_booking()
        review = await review_service.create_review(booking["id"], seed.organizer, 4, REVIEW_TEXT)
        reader = create_user()

        result = await review_service.add_helpful_vote(review["id"], seed.attendee)
        assert result == {"review_id": review["id"], "helpful_count": 1, "voted": True}

        with pytest.raises(ConflictError):
            await review_service.add_helpful_vote(review["id"], seed.attendee)

        toggled = await review_service.toggle_helpful_vote(review["id"], reader)
        assert toggled["helpful_count"] == 2
        assert toggled["voted"] is True

        removed = await review_service.remove_helpful_vote(review["id"], seed.attendee)
        assert removed["helpful_count"] == 1

        with pytest.raises(NotFoundError):
            await review_service.remove_helpful_vote(review["id"], seed.attendee)

        toggled_off = await review_service.toggle_helpful_vote(review["id"], reader)
        assert toggled_off == {"review_id": review["id"], "helpful_count": 0, "voted": False}


class TestModeration:
    @pytest.mark.asyncio
    async def test_reports_auto_flag(self, review_service, completed_booking, seed, create_user):
        booking = await completed_booking()
        review = await review_service.create_review(booking["id"], seed.organizer, 1, REVIEW_TEXT)
        reporters = [create_user() for _ in range(3)]

        first = await review_service.report_review(review["id"], reporters[0], "Offensive")
        assert first == {"review_id": review["id"], "report_count": 1, "is_flagged": False}

        with pytest.raises(ConflictError):
            await review_service.report_review(review["id"], reporters[0], "Offensive")

        await review_service.report_review(review["id"], reporters[1], "Spam")
        third = await review_service.report_review(review["id"], reporters[2], "Fake")
        assert third["is_flagged"] is True

        flagged = await review_service.get_flagged_reviews()
        assert [r["id"] for r in flagged["reviews"]] == [review["id"]]

    @pytest.mark.asyncio
    async def test_rejection_removes_rating(self, review_service, completed_booking, seed, load, dispatcher):
        booking = await completed_booking()
        review = await review_service.create_review(booking["id"], seed.organizer, 1, REVIEW_TEXT)
        await review_service.flag_review(review["id"], seed.vendor, "Not a real customer")

        with pytest.raises(ForbiddenError):
            await review_service.moderate_review(review["id"], seed.vendor, is_approved=False)

        moderated = await review_service.moderate_review(
            review["id"], seed.admin, is_approved=False, reason="Violates guidelines", is_admin=True
        )

        assert moderated["is_approved"] is False
        assert moderated["is_flagged"] is False
        assert load(Service, seed.service).total_ratings == 0
        assert load(User, seed.vendor).rating_average == 0.0
        assert "Violates guidelines" in dispatcher.for_user(seed.organizer)[-1]["message"]

        public = await review_service.get_service_reviews(seed.service)
        assert public["total"] == 0

    @pytest.mark.asyncio
    async def test_flag_by_outsider(self, review_service, completed_booking, seed):
        booking = await completed_booking()
        review = await review_service.create_review(booking["id"], seed.organizer, 1, REVIEW_TEXT)
        with pytest.raises(ForbiddenError):
            await review_service.flag_review(review["id"], seed.attendee, "Dislike")


class TestStats:
    @pytest.mark.asyncio
    async def test_service_review_stats(self, review_service, completed_booking, create_event, seed, mock_redis):
        first = await completed_booking()
        second = await completed_booking(event_id=create_event(seed.organizer))
        await review_service.create_review(first["id"], seed.organizer, 5, REVIEW_TEXT, {"quality": 5})
        await review_service.create_review(second["id"], seed.organizer, 4, REVIEW_TEXT, {"quality": 4})

        stats = await review_service.get_service_review_stats(seed.service)

        assert stats["total_reviews"] == 2
        assert stats["average_rating"] == 4.5
        assert stats["detailed_averages"]["quality"] == 4.5
        assert stats["detailed_averages"]["punctuality"] is None
        assert stats["distribution"] == {"1": 0, "2": 0, "3": 0, "4": 1, "5": 1}
        mock_redis.set_json.assert_awaited()

    @pytest.mark.asyncio
    async def test_stats_served_from_cache(self, review_service, seed, mock_redis):
        cached = {"service_id": seed.service, "total_reviews": 7}
        mock_redis.get_json.return_value = cached

        assert await review_service.get_service_review_stats(seed.service) == cached
