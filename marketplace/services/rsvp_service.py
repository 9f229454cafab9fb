"""
RSVP Service: capacity control, check-in and post-event attendance.

Every write that can change an event's headcount runs under the per-event
lock ``rsvp:event:{event_id}`` and checks capacity against a headcount
recounted from the RSVP rows inside the same transaction, so two concurrent
RSVPs can never both take the last seat.
"""

import logging
from typing import Optional, List, Dict, Any

from sqlalchemy import func
from sqlalchemy.orm import Session

from marketplace.core.config import config
from marketplace.core.exceptions import (
    NotFoundError, ForbiddenError, InvalidStateError, AlreadyCheckedInError,
    CapacityExceededError, ValidationError
)
from marketplace.core.locking import get_entity_lock
from marketplace.db.database import db_manager, translate_write_conflicts
from marketplace.models.base import utcnow
from marketplace.models.event import Event, RSVP, RSVPStatus, MAX_GUESTS_PER_RSVP
from marketplace.models.notification import NotificationType
from marketplace.models.user import User, XPReward
from marketplace.services import ledger_service
from marketplace.services.cache_service import cache_service
from marketplace.services.notification_service import NotificationDispatcher, notification_service

logger = logging.getLogger(__name__)

# Statuses an attendee may set directly; cancellation has its own operation
SETTABLE_STATUSES = (RSVPStatus.GOING, RSVPStatus.MAYBE, RSVPStatus.NOT_GOING)


def _validate_guests(guests_count: int):
    if guests_count is None or guests_count < 0 or guests_count > MAX_GUESTS_PER_RSVP:
        raise ValidationError(f"guests_count must be between 0 and {MAX_GUESTS_PER_RSVP}")


def _validate_rating(rating: int):
    if rating is None or isinstance(rating, bool) or not isinstance(rating, int) or rating < 1 or rating > 5:
        raise ValidationError("Rating must be between 1 and 5")


class RSVPService:
    """
    RSVP capacity controller.
    """

    def __init__(self, dispatcher: Optional[NotificationDispatcher] = None):
        self.dispatcher = dispatcher or notification_service
        self.consistency_config = None

    async def _get_configs(self):
        if not self.consistency_config:
            self.consistency_config = await config.get_consistency_config()

    def _event_lock(self, event_id: int):
        return get_entity_lock(f"rsvp:event:{event_id}", self.consistency_config)

    def _get_event(self, session: Session, event_id: int) -> Event:
        event = session.get(Event, event_id)
        if not event:
            raise NotFoundError("Event not found")
        return event

    def _get_rsvp(self, session: Session, rsvp_id: int) -> RSVP:
        rsvp = session.get(RSVP, rsvp_id)
        if not rsvp:
            raise NotFoundError("RSVP not found")
        return rsvp

    def _event_id_for(self, rsvp_id: int) -> int:
        with db_manager.get_session() as session:
            return self._get_rsvp(session, rsvp_id).event_id

    def _check_capacity_and_apply(
        self,
        session: Session,
        event: Event,
        rsvp: RSVP,
        status: RSVPStatus,
        guests_count: int
    ):
        """
        Check capacity for a status/guests change, then apply it.

        The headcount delta is ``new_total - old_total``; only growth is
        checked, so shrinking or leaving never fails.
        """
        old_total = rsvp.headcount
        new_total = RSVP.headcount_for(status, guests_count)
        delta = new_total - old_total

        if delta > 0 and event.max_attendees is not None:
            current = ledger_service.going_headcount(session, event.id)["current_attendees"]
            if current + delta > event.max_attendees:
                raise CapacityExceededError(
                    "Event has reached maximum capacity",
                    details={
                        "max_attendees": event.max_attendees,
                        "current_attendees": current,
                        "requested": delta,
                    }
                )

        rsvp.status = status
        rsvp.guests_count = guests_count

    async def _notify(self, recipient_id: int, title: str, message: str, event_id: int, actor_id: Optional[int] = None):
        try:
            await self.dispatcher.notify(
                recipient_id=recipient_id,
                type=NotificationType.RSVP,
                title=title,
                message=message,
                related_event_id=event_id,
                related_user_id=actor_id,
                action_url=f"/events/{event_id}"
            )
        except Exception as e:
            logger.error(f"Failed to send RSVP notification to user {recipient_id}: {e}")

    async def upsert_rsvp(
        self,
        event_id: int,
        attendee_id: int,
        status: RSVPStatus = RSVPStatus.GOING,
        guests_count: int = 0
    ) -> Dict[str, Any]:
        """
        Create or update the caller's RSVP for an event.

        Args:
            event_id: Event to RSVP to
            attendee_id: Caller
            status: going, maybe or not_going
            guests_count: Additional guests, 0 to 10

        Returns:
            The RSVP

        Raises:
            ValidationError: Invalid status or guests count
            NotFoundError: Event does not exist
            CapacityExceededError: The change would exceed max_attendees
        """
        if status not in SETTABLE_STATUSES:
            raise ValidationError("Use the cancel operation to cancel an RSVP")
        _validate_guests(guests_count)
        await self._get_configs()

        async with self._event_lock(event_id):
            with translate_write_conflicts("RSVP"):
                with db_manager.get_session() as session:
                    event = self._get_event(session, event_id)
                    rsvp = session.query(RSVP).filter(
                        RSVP.event_id == event_id,
                        RSVP.attendee_id == attendee_id
                    ).first()

                    created = rsvp is None
                    if created:
                        rsvp = RSVP(
                            event_id=event_id,
                            attendee_id=attendee_id,
                            check_in_code=RSVP.build_check_in_code(event_id, attendee_id)
                        )

                    self._check_capacity_and_apply(session, event, rsvp, status, guests_count)
                    if created:
                        session.add(rsvp)
                    session.flush()
                    ledger_service.recount_event_attendance(session, event_id)

                    result = rsvp.to_dict()
                    organizer_id = event.organizer_id
                    event_title = event.title

        await cache_service.invalidate(cache_service.event_rsvp_stats_key(event_id))
        logger.info(f"RSVP {result['id']} for event {event_id} is {result['status']} (+{result['guests_count']} guests)")

        if created and status == RSVPStatus.GOING:
            await self._notify(
                organizer_id,
                "New RSVP",
                f"Someone is going to {event_title}",
                event_id,
                actor_id=attendee_id
            )
        return result

    async def update_rsvp(
        self,
        rsvp_id: int,
        caller_id: int,
        status: Optional[RSVPStatus] = None,
        guests_count: Optional[int] = None
    ) -> Dict[str, Any]:
        """
        Change status and/or guests on an existing RSVP. Attendee only.

        Raises:
            NotFoundError: RSVP does not exist
            ForbiddenError: Caller is not the attendee
            CapacityExceededError: The change would exceed max_attendees
        """
        if status is not None and status not in SETTABLE_STATUSES:
            raise ValidationError("Use the cancel operation to cancel an RSVP")
        if guests_count is not None:
            _validate_guests(guests_count)
        await self._get_configs()

        event_id = self._event_id_for(rsvp_id)
        async with self._event_lock(event_id):
            with translate_write_conflicts("RSVP"):
                with db_manager.get_session() as session:
                    rsvp = self._get_rsvp(session, rsvp_id)
                    if rsvp.attendee_id != caller_id:
                        raise ForbiddenError("Not authorized to update this RSVP")

                    event = self._get_event(session, rsvp.event_id)
                    self._check_capacity_and_apply(
                        session, event, rsvp,
                        status if status is not None else rsvp.status,
                        guests_count if guests_count is not None else rsvp.guests_count
                    )
                    session.flush()
                    ledger_service.recount_event_attendance(session, event_id)
                    result = rsvp.to_dict()

        await cache_service.invalidate(cache_service.event_rsvp_stats_key(event_id))
        return result

    async def cancel_rsvp(self, rsvp_id: int, caller_id: int) -> Dict[str, Any]:
        """
        Cancel an RSVP and release its seats. Attendee only.

        Raises:
            NotFoundError: RSVP does not exist
            ForbiddenError: Caller is not the attendee
            InvalidStateError: RSVP is already cancelled
        """
        await self._get_configs()

        event_id = self._event_id_for(rsvp_id)
        async with self._event_lock(event_id):
            with translate_write_conflicts("RSVP"):
                with db_manager.get_session() as session:
                    rsvp = self._get_rsvp(session, rsvp_id)
                    if rsvp.attendee_id != caller_id:
                        raise ForbiddenError("Not authorized to cancel this RSVP")
                    if rsvp.status == RSVPStatus.CANCELLED:
                        raise InvalidStateError("RSVP is already cancelled")

                    rsvp.status = RSVPStatus.CANCELLED
                    session.flush()
                    ledger_service.recount_event_attendance(session, event_id)
                    result = rsvp.to_dict()

        await cache_service.invalidate(cache_service.event_rsvp_stats_key(event_id))
        logger.info(f"RSVP {rsvp_id} cancelled")
        return result

    def _check_in(self, rsvp: RSVP):
        if rsvp.status == RSVPStatus.CANCELLED:
            raise InvalidStateError("Cannot check in a cancelled RSVP")
        if rsvp.checked_in:
            raise AlreadyCheckedInError("Attendee already checked in")
        rsvp.checked_in = True
        rsvp.checked_in_at = utcnow()

    async def check_in(self, rsvp_id: int, caller_id: int) -> Dict[str, Any]:
        """
        Check in an attendee by RSVP id. Organizer or co-organizer.

        Raises:
            NotFoundError: RSVP does not exist
            ForbiddenError: Caller does not manage the event
            InvalidStateError: RSVP is cancelled
            AlreadyCheckedInError: Attendee already checked in
        """
        await self._get_configs()

        event_id = self._event_id_for(rsvp_id)
        async with self._event_lock(event_id):
            with translate_write_conflicts("RSVP"):
                with db_manager.get_session() as session:
                    rsvp = self._get_rsvp(session, rsvp_id)
                    event = self._get_event(session, rsvp.event_id)
                    if not event.is_manager(caller_id):
                        raise ForbiddenError("Not authorized to check in attendees")

                    self._check_in(rsvp)
                    session.flush()
                    result = rsvp.to_dict()

        await cache_service.invalidate(cache_service.event_rsvp_stats_key(event_id))
        logger.info(f"RSVP {rsvp_id} checked in by user {caller_id}")
        return result

    async def check_in_by_code(self, event_id: int, code: str, caller_id: int) -> Dict[str, Any]:
        """
        Check in an attendee by the code on their ticket. Organizer or co-organizer.

        Raises:
            NotFoundError: Event does not exist or the code is unknown
            ForbiddenError: Caller does not manage the event
            AlreadyCheckedInError: Attendee already checked in
        """
        await self._get_configs()

        async with self._event_lock(event_id):
            with translate_write_conflicts("RSVP"):
                with db_manager.get_session() as session:
                    event = self._get_event(session, event_id)
                    if not event.is_manager(caller_id):
                        raise ForbiddenError("Not authorized to check in attendees")

                    rsvp = session.query(RSVP).filter(
                        RSVP.event_id == event_id,
                        RSVP.check_in_code == code.strip().upper()
                    ).first()
                    if not rsvp:
                        raise NotFoundError("Invalid check-in code")

                    self._check_in(rsvp)
                    session.flush()
                    result = rsvp.to_dict()

        await cache_service.invalidate(cache_service.event_rsvp_stats_key(event_id))
        return result

    async def mark_attended(self, rsvp_id: int, caller_id: int) -> Dict[str, Any]:
        """
        Record post-event attendance. Organizer only.
        Awards the attendee XP and increments their attended events.

        Raises:
            NotFoundError: RSVP does not exist
            ForbiddenError: Caller is not the organizer
            InvalidStateError: Already marked attended, or RSVP cancelled
        """
        await self._get_configs()

        event_id = self._event_id_for(rsvp_id)
        async with self._event_lock(event_id):
            with translate_write_conflicts("RSVP"):
                with db_manager.get_session() as session:
                    rsvp = self._get_rsvp(session, rsvp_id)
                    event = self._get_event(session, rsvp.event_id)
                    if event.organizer_id != caller_id:
                        raise ForbiddenError("Only the organizer can mark attendance")
                    if rsvp.status == RSVPStatus.CANCELLED:
                        raise InvalidStateError("Cannot mark a cancelled RSVP as attended")
                    if rsvp.attended:
                        raise InvalidStateError("Attendance already recorded")

                    rsvp.attended = True
                    rsvp.attended_marked_at = utcnow()

                    attendee = session.get(User, rsvp.attendee_id)
                    attendee.events_attended = (attendee.events_attended or 0) + 1
                    ledger_service.award_xp(session, attendee.id, XPReward.EVENT_ATTENDED)
                    session.flush()
                    result = rsvp.to_dict()

        logger.info(f"RSVP {rsvp_id} marked attended")
        return result

    async def rate_event(
        self,
        rsvp_id: int,
        caller_id: int,
        rating: int,
        review: Optional[str] = None
    ) -> Dict[str, Any]:
        """
        Rate an event after it happened. Attendee only; re-rating replaces
        the previous rating.

        Raises:
            ValidationError: Rating outside 1 to 5
            NotFoundError: RSVP does not exist
            ForbiddenError: Caller is not the attendee
            InvalidStateError: Event date is still ahead
        """
        _validate_rating(rating)
        await self._get_configs()

        event_id = self._event_id_for(rsvp_id)
        async with self._event_lock(event_id):
            with translate_write_conflicts("RSVP"):
                with db_manager.get_session() as session:
                    rsvp = self._get_rsvp(session, rsvp_id)
                    if rsvp.attendee_id != caller_id:
                        raise ForbiddenError("Not authorized to rate with this RSVP")

                    event = self._get_event(session, rsvp.event_id)
                    if not event.has_passed:
                        raise InvalidStateError("Cannot rate an event that has not happened yet")

                    rsvp.event_rating = rating
                    rsvp.event_review = review
                    rsvp.rated_at = utcnow()
                    session.flush()
                    ledger_service.recount_event_rating(session, event_id)
                    result = rsvp.to_dict()

        logger.info(f"Event {event_id} rated {rating} via RSVP {rsvp_id}")
        return result

    # Read operations

    async def get_event_rsvps(
        self,
        event_id: int,
        caller_id: int,
        status: Optional[RSVPStatus] = None,
        is_admin: bool = False
    ) -> List[Dict[str, Any]]:
        """Attendee list for the event's organizers or an admin."""
        with db_manager.get_session() as session:
            event = self._get_event(session, event_id)
            if not event.is_manager(caller_id) and not is_admin:
                raise ForbiddenError("Not authorized to view RSVPs for this event")

            query = session.query(RSVP).filter(RSVP.event_id == event_id)
            if status:
                query = query.filter(RSVP.status == status)
            return [r.to_dict() for r in query.order_by(RSVP.created_at.asc(), RSVP.id.asc()).all()]

    async def get_my_rsvp(self, event_id: int, attendee_id: int) -> Dict[str, Any]:
        with db_manager.get_session() as session:
            rsvp = session.query(RSVP).filter(
                RSVP.event_id == event_id,
                RSVP.attendee_id == attendee_id
            ).first()
            if not rsvp:
                raise NotFoundError("RSVP not found")
            return rsvp.to_dict()

    async def get_my_rsvps(
        self,
        attendee_id: int,
        status: Optional[RSVPStatus] = None,
        upcoming: bool = True,
        page: int = 1,
        page_size: int = 20
    ) -> Dict[str, Any]:
        """The caller's RSVPs, optionally only for events still ahead."""
        with db_manager.get_session() as session:
            query = session.query(RSVP).join(Event, RSVP.event_id == Event.id).filter(
                RSVP.attendee_id == attendee_id
            )
            if status:
                query = query.filter(RSVP.status == status)
            if upcoming:
                query = query.filter(Event.date >= utcnow())

            total = query.count()
            rsvps = query.order_by(Event.date.asc()).offset((page - 1) * page_size).limit(page_size).all()
            return {
                "rsvps": [r.to_dict() for r in rsvps],
                "total": total,
                "page": page,
                "page_size": page_size,
            }

    async def get_rsvp_stats(self, event_id: int) -> Dict[str, Any]:
        """RSVP counts and guests by status plus the checked-in count."""
        cache_key = cache_service.event_rsvp_stats_key(event_id)
        cached = await cache_service.get(cache_key)
        if cached is not None:
            return cached

        with db_manager.get_session() as session:
            event = self._get_event(session, event_id)
            rows = session.query(
                RSVP.status,
                func.count(RSVP.id),
                func.coalesce(func.sum(RSVP.guests_count), 0)
            ).filter(RSVP.event_id == event_id).group_by(RSVP.status).all()

            checked_in = session.query(func.count(RSVP.id)).filter(
                RSVP.event_id == event_id,
                RSVP.checked_in.is_(True)
            ).scalar()

            stats = {
                "event_id": event_id,
                "by_status": {
                    status.value: {"count": int(count), "guests": int(guests)}
                    for status, count, guests in rows
                },
                "checked_in": int(checked_in),
                "current_attendees": event.current_attendees,
                "max_attendees": event.max_attendees,
            }

        await cache_service.set(cache_key, stats, "rsvp_stats_ttl")
        return stats


# Global RSVP service instance
rsvp_service = RSVPService()
