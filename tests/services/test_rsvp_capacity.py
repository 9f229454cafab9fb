"""
Tests for RSVPService: capacity control, check-in and attendance.
"""

import pytest
import asyncio

from marketplace.core.exceptions import (
    NotFoundError, ForbiddenError, InvalidStateError, AlreadyCheckedInError,
    CapacityExceededError, ValidationError
)
from marketplace.models.event import Event, RSVPStatus
from marketplace.models.user import User, UserRole, UserLevel


class TestCapacity:
    """current_attendees never exceeds max_attendees after a successful upsert."""

    @pytest.mark.asyncio
    async def test_two_seat_event(self, rsvp_service, seed, create_user, create_event, load):
        event_id = create_event(seed.organizer, max_attendees=2)
        first, second, third = (create_user() for _ in range(3))

        await rsvp_service.upsert_rsvp(event_id, first, RSVPStatus.GOING, 0)
        await rsvp_service.upsert_rsvp(event_id, second, RSVPStatus.GOING, 0)

        with pytest.raises(CapacityExceededError) as exc_info:
            await rsvp_service.upsert_rsvp(event_id, third, RSVPStatus.GOING, 0)
        assert exc_info.value.details["max_attendees"] == 2

        event = load(Event, event_id)
        assert event.current_attendees == 2
        assert event.rsvp_count == 2

    @pytest.mark.asyncio
    async def test_guests_count_towards_capacity(self, rsvp_service, seed, create_event, load):
        event_id = create_event(seed.organizer, max_attendees=3)

        with pytest.raises(CapacityExceededError):
            await rsvp_service.upsert_rsvp(event_id, seed.attendee, RSVPStatus.GOING, 3)

        rsvp = await rsvp_service.upsert_rsvp(event_id, seed.attendee, RSVPStatus.GOING, 2)
        assert rsvp["guests_count"] == 2
        assert load(Event, event_id).current_attendees == 3

    @pytest.mark.asyncio
    async def test_shrinking_never_fails_on_full_event(self, rsvp_service, seed, create_event, load):
        event_id = create_event(seed.organizer, max_attendees=3)
        rsvp = await rsvp_service.upsert_rsvp(event_id, seed.attendee, RSVPStatus.GOING, 2)

        updated = await rsvp_service.update_rsvp(rsvp["id"], seed.attendee, guests_count=1)
        assert updated["guests_count"] == 1

        maybe = await rsvp_service.update_rsvp(rsvp["id"], seed.attendee, status=RSVPStatus.MAYBE)
        assert maybe["status"] == "maybe"
        assert load(Event, event_id).current_attendees == 0

    @pytest.mark.asyncio
    async def test_cancel_releases_seats(self, rsvp_service, seed, create_user, create_event, load):
        event_id = create_event(seed.organizer, max_attendees=1)
        other = create_user()
        rsvp = await rsvp_service.upsert_rsvp(event_id, seed.attendee)

        await rsvp_service.cancel_rsvp(rsvp["id"], seed.attendee)
        assert load(Event, event_id).current_attendees == 0

        taken = await rsvp_service.upsert_rsvp(event_id, other)
        assert taken["status"] == "going"

    @pytest.mark.asyncio
    async def test_concurrent_upserts_respect_capacity(self, rsvp_service, seed, create_user, create_event, load):
        event_id = create_event(seed.organizer, max_attendees=5)
        attendees = [create_user() for _ in range(12)]

        results = await asyncio.gather(
            *(rsvp_service.upsert_rsvp(event_id, attendee_id) for attendee_id in attendees),
            return_exceptions=True
        )

        accepted = [r for r in results if isinstance(r, dict)]
        rejected = [r for r in results if isinstance(r, CapacityExceededError)]
        assert len(accepted) == 5
        assert len(rejected) == 7

        event = load(Event, event_id)
        assert event.current_attendees == 5
        assert event.rsvp_count == 5

    @pytest.mark.asyncio
    async def test_unlimited_event(self, rsvp_service, seed, create_user, load):
        for _ in range(4):
            await rsvp_service.upsert_rsvp(seed.event, create_user(), RSVPStatus.GOING, 10)
        assert load(Event, seed.event).current_attendees == 44


class TestUpsertRules:
    @pytest.mark.asyncio
    async def test_upsert_updates_existing_rsvp(self, rsvp_service, seed):
        first = await rsvp_service.upsert_rsvp(seed.event, seed.attendee, RSVPStatus.MAYBE)
        second = await rsvp_service.upsert_rsvp(seed.event, seed.attendee, RSVPStatus.GOING, 1)

        assert first["id"] == second["id"]
        assert second["status"] == "going"
        assert second["check_in_code"] == first["check_in_code"]

    @pytest.mark.asyncio
    async def test_new_going_rsvp_notifies_organizer(self, rsvp_service, seed, dispatcher):
        await rsvp_service.upsert_rsvp(seed.event, seed.attendee)
        await rsvp_service.upsert_rsvp(seed.event, seed.attendee, RSVPStatus.GOING, 2)

        assert len(dispatcher.for_user(seed.organizer)) == 1

    @pytest.mark.asyncio
    async def test_invalid_guest_counts(self, rsvp_service, seed):
        with pytest.raises(ValidationError):
            await rsvp_service.upsert_rsvp(seed.event, seed.attendee, RSVPStatus.GOING, 11)
        with pytest.raises(ValidationError):
            await rsvp_service.upsert_rsvp(seed.event, seed.attendee, RSVPStatus.GOING, -1)

    @pytest.mark.asyncio
    async def test_cancelled_is_not_settable(self, rsvp_service, seed):
        with pytest.raises(ValidationError):
            await rsvp_service.upsert_rsvp(seed.event, seed.attendee, RSVPStatus.CANCELLED)

    @pytest.mark.asyncio
    async def test_unknown_event(self, rsvp_service, seed):
        with pytest.raises(NotFoundError):
            await rsvp_service.upsert_rsvp(999, seed.attendee)

    @pytest.mark.asyncio
    async def test_cancel_twice(self, rsvp_service, seed):
        rsvp = await rsvp_service.upsert_rsvp(seed.event, seed.attendee)
        await rsvp_service.cancel_rsvp(rsvp["id"], seed.attendee)

        with pytest.raises(InvalidStateError):
            await rsvp_service.cancel_rsvp(rsvp["id"], seed.attendee)

    @pytest.mark.asyncio
    async def test_only_attendee_updates(self, rsvp_service, seed):
        rsvp = await rsvp_service.upsert_rsvp(seed.event, seed.attendee)
        with pytest.raises(ForbiddenError):
            await rsvp_service.update_rsvp(rsvp["id"], seed.organizer, guests_count=1)


class TestCheckIn:
    @pytest.mark.asyncio
    async def test_check_in_by_code(self, rsvp_service, seed):
        rsvp = await rsvp_service.upsert_rsvp(seed.event, seed.attendee)
        assert rsvp["check_in_code"] == f"{seed.event:06d}-{seed.attendee:06d}"

        checked = await rsvp_service.check_in_by_code(seed.event, rsvp["check_in_code"], seed.organizer)
        assert checked["checked_in"] is True
        assert checked["checked_in_at"] is not None

        with pytest.raises(AlreadyCheckedInError):
            await rsvp_service.check_in(rsvp["id"], seed.organizer)

    @pytest.mark.asyncio
    async def test_unknown_code(self, rsvp_service, seed):
        with pytest.raises(NotFoundError):
            await rsvp_service.check_in_by_code(seed.event, "000000-000000", seed.organizer)

    @pytest.mark.asyncio
    async def test_only_managers_check_in(self, rsvp_service, seed, create_user, database):
        rsvp = await rsvp_service.upsert_rsvp(seed.event, seed.attendee)
        helper = create_user(UserRole.ORGANIZER)

        with pytest.raises(ForbiddenError):
            await rsvp_service.check_in(rsvp["id"], helper)

        with database.get_session() as session:
            event = session.get(Event, seed.event)
            event.co_organizers.append(session.get(User, helper))

        checked = await rsvp_service.check_in(rsvp["id"], helper)
        assert checked["checked_in"] is True

    @pytest.mark.asyncio
    async def test_cancelled_rsvp_cannot_check_in(self, rsvp_service, seed):
        rsvp = await rsvp_service.upsert_rsvp(seed.event, seed.attendee)
        await rsvp_service.cancel_rsvp(rsvp["id"], seed.attendee)

        with pytest.raises(InvalidStateError):
            await rsvp_service.check_in(rsvp["id"], seed.organizer)

    @pytest.mark.asyncio
    async def test_stats(self, rsvp_service, seed, create_user):
        rsvp = await rsvp_service.upsert_rsvp(seed.event, seed.attendee, RSVPStatus.GOING, 2)
        await rsvp_service.upsert_rsvp(seed.event, create_user(), RSVPStatus.MAYBE)
        await rsvp_service.check_in(rsvp["id"], seed.organizer)

        stats = await rsvp_service.get_rsvp_stats(seed.event)
        assert stats["by_status"]["going"] == {"count": 1, "guests": 2}
        assert stats["by_status"]["maybe"]["count"] == 1
        assert stats["checked_in"] == 1
        assert stats["current_attendees"] == 3


class TestAttendanceAndRating:
    @pytest.mark.asyncio
    async def test_mark_attended_awards_xp(self, rsvp_service, seed, load):
        rsvp = await rsvp_service.upsert_rsvp(seed.past_event, seed.attendee)

        marked = await rsvp_service.mark_attended(rsvp["id"], seed.organizer)
        assert marked["attended"] is True

        attendee = load(User, seed.attendee)
        assert attendee.events_attended == 1
        assert attendee.xp_points == 20
        assert attendee.level == UserLevel.BRONZE

        with pytest.raises(InvalidStateError):
            await rsvp_service.mark_attended(rsvp["id"], seed.organizer)

    @pytest.mark.asyncio
    async def test_only_organizer_marks_attendance(self, rsvp_service, seed):
        rsvp = await rsvp_service.upsert_rsvp(seed.past_event, seed.attendee)
        with pytest.raises(ForbiddenError):
            await rsvp_service.mark_attended(rsvp["id"], seed.attendee)

    @pytest.mark.asyncio
    async def test_rate_past_event(self, rsvp_service, seed, create_user, load):
        first = await rsvp_service.upsert_rsvp(seed.past_event, seed.attendee)
        other = create_user()
        second = await rsvp_service.upsert_rsvp(seed.past_event, other)

        await rsvp_service.rate_event(first["id"], seed.attendee, 5, "Great evening")
        await rsvp_service.rate_event(second["id"], other, 4)

        event = load(Event, seed.past_event)
        assert event.overall_rating == 4.5
        assert event.total_reviews == 2

        # Re-rating replaces the earlier rating
        await rsvp_service.rate_event(second["id"], other, 5)
        assert load(Event, seed.past_event).overall_rating == 5.0

    @pytest.mark.asyncio
    async def test_cannot_rate_future_event(self, rsvp_service, seed):
        rsvp = await rsvp_service.upsert_rsvp(seed.event, seed.attendee)
        with pytest.raises(InvalidStateError):
            await rsvp_service.rate_event(rsvp["id"], seed.attendee, 5)

    @pytest.mark.asyncio
    async def test_only_attendee_rates(self, rsvp_service, seed):
        rsvp = await rsvp_service.upsert_rsvp(seed.past_event, seed.attendee)
        with pytest.raises(ForbiddenError):
            await rsvp_service.rate_event(rsvp["id"], seed.organizer, 5)

    @pytest.mark.asyncio
    @pytest.mark.parametrize("rating", [0, 6, True, 4.5])
    async def test_rating_must_be_whole_star(self, rsvp_service, seed, rating):
        rsvp = await rsvp_service.upsert_rsvp(seed.past_event, seed.attendee)
        with pytest.raises(ValidationError):
            await rsvp_service.rate_event(rsvp["id"], seed.attendee, rating)
