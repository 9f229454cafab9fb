"""
Ledger / counter updater.

Denormalized aggregates (attendance, ratings, booking counters, XP) are
recomputed here from their source rows. Every function runs inside the
caller's session so the aggregate commits or rolls back with the mutation
that triggered it, and every recount is idempotent.
"""

import logging
from typing import Dict, Any

from sqlalchemy import func, case
from sqlalchemy.orm import Session

from marketplace.core.exceptions import NotFoundError
from marketplace.models.base import round_rating
from marketplace.models.booking import Booking, BookingStatus
from marketplace.models.event import Event, RSVP, RSVPStatus
from marketplace.models.review import Review
from marketplace.models.service import Service
from marketplace.models.user import User, level_for_xp

logger = logging.getLogger(__name__)

SERVICE_BOOKING_COUNTERS = ("total_bookings", "completed_bookings")


def going_headcount(session: Session, event_id: int) -> Dict[str, int]:
    """
    Count going RSVPs straight from the source rows.

    Returns:
        Dict with ``rsvp_count`` and ``current_attendees`` (attendees plus guests)
    """
    session.flush()
    rsvp_count, attendees = session.query(
        func.count(RSVP.id),
        func.coalesce(func.sum(1 + RSVP.guests_count), 0)
    ).filter(
        RSVP.event_id == event_id,
        RSVP.status == RSVPStatus.GOING
    ).one()
    return {"rsvp_count": int(rsvp_count), "current_attendees": int(attendees)}


def recount_event_attendance(session: Session, event_id: int) -> Dict[str, int]:
    """Recompute Event.rsvp_count and Event.current_attendees."""
    event = session.get(Event, event_id)
    if not event:
        raise NotFoundError("Event not found")

    counts = going_headcount(session, event_id)
    event.rsvp_count = counts["rsvp_count"]
    event.current_attendees = counts["current_attendees"]
    logger.debug(f"Event {event_id} attendance recounted: {counts}")
    return counts


def recount_event_rating(session: Session, event_id: int) -> Dict[str, Any]:
    """Recompute Event.overall_rating and Event.total_reviews from rated RSVPs."""
    event = session.get(Event, event_id)
    if not event:
        raise NotFoundError("Event not found")

    session.flush()
    average, total = session.query(
        func.avg(RSVP.event_rating),
        func.count(RSVP.event_rating)
    ).filter(
        RSVP.event_id == event_id,
        RSVP.event_rating.isnot(None)
    ).one()

    event.overall_rating = round_rating(average) if total else 0.0
    event.total_reviews = int(total)
    return {"overall_rating": event.overall_rating, "total_reviews": event.total_reviews}


def recount_vendor_rating(session: Session, vendor_id: int) -> Dict[str, Any]:
    """Recompute User.rating_average and User.total_ratings across all the vendor's approved reviews."""
    vendor = session.get(User, vendor_id)
    if not vendor:
        raise NotFoundError("Vendor not found")

    session.flush()
    average, total = session.query(
        func.avg(Review.rating),
        func.count(Review.id)
    ).filter(
        Review.vendor_id == vendor_id,
        Review.is_approved.is_(True)
    ).one()

    vendor.rating_average = round_rating(average) if total else 0.0
    vendor.total_ratings = int(total)
    return {"rating_average": vendor.rating_average, "total_ratings": vendor.total_ratings}


def recount_service_rating(session: Session, service_id: int) -> Dict[str, Any]:
    """
    Recompute Service.rating_average and Service.total_ratings from approved
    reviews, then cascade to the providing vendor.
    """
    service = session.get(Service, service_id)
    if not service:
        raise NotFoundError("Service not found")

    session.flush()
    average, total = session.query(
        func.avg(Review.rating),
        func.count(Review.id)
    ).filter(
        Review.service_id == service_id,
        Review.is_approved.is_(True)
    ).one()

    service.rating_average = round_rating(average) if total else 0.0
    service.total_ratings = int(total)
    recount_vendor_rating(session, service.provider_id)

    logger.debug(f"Service {service_id} rating recounted: {service.rating_average} over {service.total_ratings}")
    return {"rating_average": service.rating_average, "total_ratings": service.total_ratings}


def increment_service_booking_counter(session: Session, service_id: int, field: str) -> None:
    """
    Atomically add one to a Service booking counter.

    Args:
        session: Active session
        service_id: Service to update
        field: ``total_bookings`` or ``completed_bookings``
    """
    if field not in SERVICE_BOOKING_COUNTERS:
        raise ValueError(f"Unknown service counter: {field}")

    column = getattr(Service, field)
    updated = session.query(Service).filter(Service.id == service_id).update(
        {column: column + 1},
        synchronize_session=False
    )
    if not updated:
        raise NotFoundError("Service not found")


def rebuild_service_booking_counters(session: Session, service_id: int) -> Dict[str, int]:
    """Repair: recompute both Service booking counters from the bookings table."""
    service = session.get(Service, service_id)
    if not service:
        raise NotFoundError("Service not found")

    session.flush()
    total, completed = session.query(
        func.count(Booking.id),
        func.coalesce(func.sum(case((Booking.status == BookingStatus.COMPLETED, 1), else_=0)), 0)
    ).filter(Booking.service_id == service_id).one()

    service.total_bookings = int(total)
    service.completed_bookings = int(completed)
    return {"total_bookings": service.total_bookings, "completed_bookings": service.completed_bookings}


def award_xp(session: Session, user_id: int, points: int) -> Dict[str, Any]:
    """Add XP to a user and re-derive their level."""
    user = session.get(User, user_id)
    if not user:
        raise NotFoundError("User not found")

    user.xp_points = (user.xp_points or 0) + points
    user.level = level_for_xp(user.xp_points)
    logger.info(f"Awarded {points} XP to user {user_id}, now {user.xp_points} ({user.level.value})")
    return {"xp_points": user.xp_points, "level": user.level.value}


def rebuild_all_aggregates(session: Session) -> Dict[str, int]:
    """Run every recount over every entity. Used by the admin repair endpoint."""
    event_ids = [row[0] for row in session.query(Event.id).all()]
    service_ids = [row[0] for row in session.query(Service.id).all()]

    for event_id in event_ids:
        recount_event_attendance(session, event_id)
        recount_event_rating(session, event_id)
    for service_id in service_ids:
        rebuild_service_booking_counters(session, service_id)
        recount_service_rating(session, service_id)

    logger.info(f"Rebuilt aggregates for {len(event_ids)} events and {len(service_ids)} services")
    return {"events": len(event_ids), "services": len(service_ids)}
