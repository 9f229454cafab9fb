"""
Booking Service implementing the booking state machine.

pending -> confirmed -> in_progress -> completed, with cancelled and refunded
as side exits from every non-terminal state. Each mutation runs under the
booking's entity lock, in one transaction together with its audit row and
counter updates; parties are notified after commit.
"""

import logging
from datetime import datetime
from decimal import Decimal, InvalidOperation
from typing import Optional, List, Dict, Any

from sqlalchemy import func
from sqlalchemy.orm import Session

from marketplace.core.config import config
from marketplace.core.exceptions import (
    NotFoundError, ForbiddenError, InvalidStateError, ConflictError, ValidationError
)
from marketplace.core.locking import get_entity_lock
from marketplace.db.database import db_manager, translate_write_conflicts
from marketplace.models.base import utcnow
from marketplace.models.booking import (
    Booking, BookingPayment, BookingAuditLog, BookingStatus, PaymentStatus, PaymentMethod,
    INACTIVE_STATUSES, audit_value
)
from marketplace.models.event import Event
from marketplace.models.notification import NotificationType, NotificationPriority
from marketplace.models.service import Service, ServiceAvailability
from marketplace.services import ledger_service
from marketplace.services.notification_service import NotificationDispatcher, notification_service

logger = logging.getLogger(__name__)

# Verb used in error messages and audit rows for each target state
TRANSITION_ACTIONS = {
    BookingStatus.CONFIRMED: "CONFIRM",
    BookingStatus.IN_PROGRESS: "START",
    BookingStatus.COMPLETED: "COMPLETE",
    BookingStatus.CANCELLED: "CANCEL",
    BookingStatus.REFUNDED: "REFUND",
}


def _to_amount(value, field: str) -> Decimal:
    try:
        amount = Decimal(str(value))
    except (InvalidOperation, TypeError, ValueError):
        raise ValidationError(f"{field} must be a number") from None
    if amount.as_tuple().exponent < -2:
        raise ValidationError(f"{field} cannot have more than 2 decimal places")
    return amount


class BookingService:
    """
    Booking lifecycle and payment accounting.
    Notification delivery goes through the injected dispatcher.
    """

    def __init__(self, dispatcher: Optional[NotificationDispatcher] = None):
        self.dispatcher = dispatcher or notification_service
        self.consistency_config = None

    async def _get_configs(self):
        """Get configuration settings."""
        if not self.consistency_config:
            self.consistency_config = await config.get_consistency_config()

    def _lock(self, lock_key: str):
        return get_entity_lock(lock_key, self.consistency_config)

    def _create_audit_log(
        self,
        session: Session,
        booking: Booking,
        action: str,
        field_name: Optional[str] = None,
        old_value=None,
        new_value=None,
        changed_by: Optional[int] = None,
        reason: Optional[str] = None
    ):
        """Create audit log entry."""
        session.add(BookingAuditLog(
            booking=booking,
            action=action,
            field_name=field_name,
            old_value=audit_value(old_value),
            new_value=audit_value(new_value),
            changed_by=changed_by,
            reason=reason
        ))

    def _get_booking(self, session: Session, booking_id: int) -> Booking:
        booking = session.get(Booking, booking_id)
        if not booking:
            raise NotFoundError("Booking not found")
        return booking

    def _apply_transition(
        self,
        session: Session,
        booking: Booking,
        new_status: BookingStatus,
        caller_id: int,
        reason: Optional[str] = None
    ):
        """Move a booking to ``new_status`` or raise InvalidStateError."""
        action = TRANSITION_ACTIONS[new_status]
        if not booking.can_transition_to(new_status):
            raise InvalidStateError(
                f"Cannot {action.lower()} a booking that is {booking.status.value}",
                details={"status": booking.status.value, "requested": new_status.value}
            )

        old_status = booking.status
        booking.status = new_status
        self._create_audit_log(
            session, booking, action,
            field_name="status", old_value=old_status, new_value=new_status,
            changed_by=caller_id, reason=reason
        )

    async def _notify(
        self,
        recipient_id: int,
        title: str,
        message: str,
        booking: Dict[str, Any],
        actor_id: Optional[int] = None,
        type: NotificationType = NotificationType.BOOKING,
        priority: NotificationPriority = NotificationPriority.MEDIUM
    ):
        """Best-effort notification; failures are logged, never raised."""
        try:
            await self.dispatcher.notify(
                recipient_id=recipient_id,
                type=type,
                title=title,
                message=message,
                related_event_id=booking["event_id"],
                related_booking_id=booking["id"],
                related_user_id=actor_id,
                action_url=f"/bookings/{booking['id']}",
                priority=priority
            )
        except Exception as e:
            logger.error(f"Failed to send booking notification to user {recipient_id}: {e}")

    async def create_booking(
        self,
        organizer_id: int,
        event_id: int,
        service_id: int,
        price_agreed,
        event_date: Optional[datetime] = None,
        notes: Optional[str] = None,
        requirements: Optional[str] = None
    ) -> Dict[str, Any]:
        """
        Create a pending booking of a vendor service for an event.

        Args:
            organizer_id: Caller, must organize the event
            event_id: Event the service is booked for
            service_id: Booked service; its provider becomes the vendor
            price_agreed: Agreed price, non-negative
            event_date: Defaults to the event's date
            notes: Free-form notes
            requirements: Organizer requirements for the vendor

        Returns:
            The created booking

        Raises:
            NotFoundError: Event or service does not exist
            ForbiddenError: Caller does not organize the event
            InvalidStateError: Service is not taking orders
            ConflictError: An active booking already exists for the event and service
        """
        await self._get_configs()
        price = _to_amount(price_agreed, "price_agreed")
        if price < 0:
            raise ValidationError("price_agreed cannot be negative")

        lock_key = f"booking:event:{event_id}:service:{service_id}"

        async with self._lock(lock_key):
            with translate_write_conflicts("booking"):
                with db_manager.get_session() as session:
                    event = session.get(Event, event_id)
                    if not event:
                        raise NotFoundError("Event not found")

                    service = session.get(Service, service_id)
                    if not service:
                        raise NotFoundError("Service not found")

                    if event.organizer_id != organizer_id:
                        raise ForbiddenError("Only the event organizer can book services for this event")

                    if service.availability == ServiceAvailability.NOT_TAKING_ORDERS:
                        raise InvalidStateError("This service is not taking orders")

                    existing = session.query(Booking.id).filter(
                        Booking.event_id == event_id,
                        Booking.service_id == service_id,
                        Booking.status.notin_(list(INACTIVE_STATUSES))
                    ).first()
                    if existing:
                        raise ConflictError(
                            "This service is already booked for the event",
                            details={"booking_id": existing.id}
                        )

                    booking = Booking(
                        event_id=event_id,
                        service_id=service_id,
                        organizer_id=organizer_id,
                        vendor_id=service.provider_id,
                        event_date=event_date or event.date,
                        status=BookingStatus.PENDING,
                        price_agreed=price,
                        total_paid=Decimal("0.00"),
                        payment_status=PaymentStatus.UNPAID,
                        notes=notes,
                        requirements=requirements
                    )
                    session.add(booking)
                    session.flush()

                    self._create_audit_log(
                        session, booking, "CREATE",
                        changed_by=organizer_id, reason="Booking requested"
                    )
                    ledger_service.increment_service_booking_counter(session, service_id, "total_bookings")
                    session.flush()

                    result = booking.to_dict()
                    service_name = service.service_name
                    event_title = event.title

        logger.info(f"Booking {result['id']} created for event {event_id} and service {service_id}")

        await self._notify(
            result["vendor_id"],
            "New booking request",
            f"You have a new booking request for {service_name} at {event_title}",
            result,
            actor_id=organizer_id
        )
        return result

    async def update_booking(
        self,
        booking_id: int,
        caller_id: int,
        price_agreed=None,
        notes: Optional[str] = None,
        requirements: Optional[str] = None
    ) -> Dict[str, Any]:
        """
        Edit a pending booking. Organizer only.

        Raises:
            NotFoundError: Booking does not exist
            ForbiddenError: Caller is not the organizer
            InvalidStateError: Booking is no longer pending
        """
        await self._get_configs()
        changes = {}
        if price_agreed is not None:
            changes["price_agreed"] = _to_amount(price_agreed, "price_agreed")
            if changes["price_agreed"] < 0:
                raise ValidationError("price_agreed cannot be negative")
        if notes is not None:
            changes["notes"] = notes
        if requirements is not None:
            changes["requirements"] = requirements

        async with self._lock(f"booking:{booking_id}"):
            with translate_write_conflicts("booking"):
                with db_manager.get_session() as session:
                    booking = self._get_booking(session, booking_id)

                    if booking.organizer_id != caller_id:
                        raise ForbiddenError("Only the organizer can edit this booking")
                    if booking.status != BookingStatus.PENDING:
                        raise InvalidStateError(f"Cannot edit a booking that is {booking.status.value}")

                    for field, value in changes.items():
                        old_value = getattr(booking, field)
                        if old_value == value:
                            continue
                        setattr(booking, field, value)
                        self._create_audit_log(
                            session, booking, "UPDATE",
                            field_name=field, old_value=old_value, new_value=value,
                            changed_by=caller_id
                        )

                    if "price_agreed" in changes:
                        booking.recalculate_payments()

                    session.flush()
                    result = booking.to_dict()

        if "price_agreed" in changes:
            await self._notify(
                result["vendor_id"],
                "Booking updated",
                f"The organizer changed the agreed price to {result['price_agreed']:.2f}",
                result,
                actor_id=caller_id
            )
        return result

    async def confirm_booking(self, booking_id: int, caller_id: int) -> Dict[str, Any]:
        """
        Vendor accepts a pending booking.

        Raises:
            NotFoundError: Booking does not exist
            ForbiddenError: Caller is not the vendor
            InvalidStateError: Booking is not pending
        """
        await self._get_configs()

        async with self._lock(f"booking:{booking_id}"):
            with translate_write_conflicts("booking"):
                with db_manager.get_session() as session:
                    booking = self._get_booking(session, booking_id)

                    if booking.vendor_id != caller_id:
                        raise ForbiddenError("Only the vendor can confirm this booking")

                    self._apply_transition(session, booking, BookingStatus.CONFIRMED, caller_id)
                    booking.confirmed_at = utcnow()
                    session.flush()
                    result = booking.to_dict()

        logger.info(f"Booking {booking_id} confirmed by vendor {caller_id}")
        await self._notify(
            result["organizer_id"],
            "Booking confirmed",
            "Your booking has been confirmed by the vendor",
            result,
            actor_id=caller_id
        )
        return result

    async def start_booking(self, booking_id: int, caller_id: int) -> Dict[str, Any]:
        """
        Vendor marks a confirmed booking as being delivered.

        Raises:
            NotFoundError: Booking does not exist
            ForbiddenError: Caller is not the vendor
            InvalidStateError: Booking is not confirmed
        """
        await self._get_configs()

        async with self._lock(f"booking:{booking_id}"):
            with translate_write_conflicts("booking"):
                with db_manager.get_session() as session:
                    booking = self._get_booking(session, booking_id)

                    if booking.vendor_id != caller_id:
                        raise ForbiddenError("Only the vendor can start this booking")

                    self._apply_transition(session, booking, BookingStatus.IN_PROGRESS, caller_id)
                    booking.started_at = utcnow()
                    session.flush()
                    result = booking.to_dict()

        logger.info(f"Booking {booking_id} started by vendor {caller_id}")
        await self._notify(
            result["organizer_id"],
            "Booking in progress",
            "The vendor has started working on your booking",
            result,
            actor_id=caller_id
        )
        return result

    async def cancel_booking(self, booking_id: int, caller_id: int, reason: Optional[str] = None) -> Dict[str, Any]:
        """
        Cancel a booking from any non-terminal state. Organizer or vendor.

        Raises:
            NotFoundError: Booking does not exist
            ForbiddenError: Caller is neither organizer nor vendor
            InvalidStateError: Booking is completed, cancelled or refunded
        """
        await self._get_configs()

        async with self._lock(f"booking:{booking_id}"):
            with translate_write_conflicts("booking"):
                with db_manager.get_session() as session:
                    booking = self._get_booking(session, booking_id)

                    if not booking.is_party(caller_id):
                        raise ForbiddenError("Not authorized to cancel this booking")

                    self._apply_transition(session, booking, BookingStatus.CANCELLED, caller_id, reason=reason)
                    booking.cancelled_at = utcnow()
                    booking.cancelled_by = caller_id
                    booking.cancellation_reason = reason
                    session.flush()
                    result = booking.to_dict()
                    recipient_id = booking.counterparty_of(caller_id)

        logger.info(f"Booking {booking_id} cancelled by user {caller_id}")
        message = "A booking has been cancelled"
        if reason:
            message = f"{message}: {reason}"
        await self._notify(
            recipient_id,
            "Booking cancelled",
            message,
            result,
            actor_id=caller_id,
            priority=NotificationPriority.HIGH
        )
        return result

    async def complete_booking(self, booking_id: int, caller_id: int) -> Dict[str, Any]:
        """
        Organizer marks a confirmed or in-progress booking as delivered.
        Increments the service's completed counter and enables reviewing.

        Raises:
            NotFoundError: Booking does not exist
            ForbiddenError: Caller is not the organizer
            InvalidStateError: Booking is neither confirmed nor in progress
        """
        await self._get_configs()

        async with self._lock(f"booking:{booking_id}"):
            with translate_write_conflicts("booking"):
                with db_manager.get_session() as session:
                    booking = self._get_booking(session, booking_id)

                    if booking.organizer_id != caller_id:
                        raise ForbiddenError("Only the organizer can mark this booking as completed")

                    self._apply_transition(session, booking, BookingStatus.COMPLETED, caller_id)
                    booking.completed_at = utcnow()
                    ledger_service.increment_service_booking_counter(session, booking.service_id, "completed_bookings")
                    session.flush()
                    result = booking.to_dict()

        logger.info(f"Booking {booking_id} completed")
        await self._notify(
            result["vendor_id"],
            "Booking completed",
            "The organizer marked your booking as completed",
            result,
            actor_id=caller_id
        )
        return result

    async def refund_booking(
        self,
        booking_id: int,
        caller_id: int,
        reason: Optional[str] = None,
        is_admin: bool = False
    ) -> Dict[str, Any]:
        """
        Refund a booking from any non-terminal state. Vendor or admin.

        Raises:
            NotFoundError: Booking does not exist
            ForbiddenError: Caller is neither the vendor nor an admin
            InvalidStateError: Booking is completed, cancelled or refunded
        """
        await self._get_configs()

        async with self._lock(f"booking:{booking_id}"):
            with translate_write_conflicts("booking"):
                with db_manager.get_session() as session:
                    booking = self._get_booking(session, booking_id)

                    if booking.vendor_id != caller_id and not is_admin:
                        raise ForbiddenError("Only the vendor or an admin can refund this booking")

                    self._apply_transition(session, booking, BookingStatus.REFUNDED, caller_id, reason=reason)
                    old_payment_status = booking.payment_status
                    booking.payment_status = PaymentStatus.REFUNDED
                    booking.refunded_at = utcnow()
                    self._create_audit_log(
                        session, booking, "REFUND",
                        field_name="payment_status",
                        old_value=old_payment_status, new_value=PaymentStatus.REFUNDED,
                        changed_by=caller_id, reason=reason
                    )
                    session.flush()
                    result = booking.to_dict()

        logger.info(f"Booking {booking_id} refunded by user {caller_id}")
        await self._notify(
            result["organizer_id"],
            "Booking refunded",
            f"Your booking has been refunded ({result['total_paid']:.2f} paid)",
            result,
            actor_id=caller_id,
            type=NotificationType.PAYMENT,
            priority=NotificationPriority.HIGH
        )
        return result

    async def record_payment(
        self,
        booking_id: int,
        caller_id: int,
        amount,
        method: PaymentMethod = PaymentMethod.OTHER,
        transaction_id: Optional[str] = None,
        notes: Optional[str] = None
    ) -> Dict[str, Any]:
        """
        Record an externally confirmed payment against a booking.

        total_paid is recomputed from all payments and payment_status is
        re-derived; paying more than the agreed price yields ``paid``.

        Raises:
            ValidationError: Amount is not positive
            NotFoundError: Booking does not exist
            ForbiddenError: Caller is neither organizer nor vendor
            InvalidStateError: Booking is cancelled or refunded
            ConflictError: The transaction id was already recorded
        """
        await self._get_configs()
        payment_amount = _to_amount(amount, "amount")
        if payment_amount <= 0:
            raise ValidationError("Payment amount must be greater than 0")

        async with self._lock(f"booking:{booking_id}"):
            with translate_write_conflicts("booking"):
                with db_manager.get_session() as session:
                    booking = self._get_booking(session, booking_id)

                    if not booking.is_party(caller_id):
                        raise ForbiddenError("Not authorized to record payments for this booking")
                    if booking.status in INACTIVE_STATUSES:
                        raise InvalidStateError(f"Cannot record a payment on a {booking.status.value} booking")
                    if transaction_id and any(p.transaction_id == transaction_id for p in booking.payments):
                        raise ConflictError("This transaction has already been recorded")

                    old_total = booking.total_paid
                    booking.payments.append(BookingPayment(
                        amount=payment_amount,
                        method=method,
                        transaction_id=transaction_id,
                        notes=notes,
                        recorded_by=caller_id
                    ))
                    booking.recalculate_payments()

                    self._create_audit_log(
                        session, booking, "PAYMENT",
                        field_name="total_paid", old_value=old_total, new_value=booking.total_paid,
                        changed_by=caller_id, reason=f"{method.value} payment of {payment_amount}"
                    )
                    session.flush()
                    result = booking.to_dict()
                    recipient_id = booking.counterparty_of(caller_id)

        logger.info(f"Payment of {payment_amount} recorded on booking {booking_id}, status {result['payment_status']}")
        await self._notify(
            recipient_id,
            "Payment recorded",
            f"A payment of {payment_amount:.2f} was recorded. Total paid: {result['total_paid']:.2f}",
            result,
            actor_id=caller_id,
            type=NotificationType.PAYMENT
        )
        return result

    # Read operations

    async def get_booking(self, booking_id: int, user_id: int, is_admin: bool = False) -> Dict[str, Any]:
        """Get a booking visible to its organizer, its vendor or an admin."""
        with db_manager.get_session() as session:
            booking = self._get_booking(session, booking_id)
            if not booking.is_party(user_id) and not is_admin:
                raise ForbiddenError("Not authorized to view this booking")
            return booking.to_dict()

    async def list_bookings(
        self,
        user_id: int,
        role: str = "any",
        status: Optional[BookingStatus] = None,
        payment_status: Optional[PaymentStatus] = None,
        page: int = 1,
        page_size: int = 20
    ) -> Dict[str, Any]:
        """
        List the caller's bookings.

        Args:
            user_id: Caller
            role: ``organizer``, ``vendor`` or ``any``
            status: Optional status filter
            payment_status: Optional payment status filter
            page: 1-based page number
            page_size: Items per page
        """
        with db_manager.get_session() as session:
            query = session.query(Booking)
            if role == "organizer":
                query = query.filter(Booking.organizer_id == user_id)
            elif role == "vendor":
                query = query.filter(Booking.vendor_id == user_id)
            elif role == "any":
                query = query.filter((Booking.organizer_id == user_id) | (Booking.vendor_id == user_id))
            else:
                raise ValidationError("role must be one of organizer, vendor, any")

            if status:
                query = query.filter(Booking.status == status)
            if payment_status:
                query = query.filter(Booking.payment_status == payment_status)

            total = query.count()
            bookings = query.order_by(Booking.created_at.desc(), Booking.id.desc()).offset(
                (page - 1) * page_size
            ).limit(page_size).all()

            return {
                "bookings": [b.to_dict() for b in bookings],
                "total": total,
                "page": page,
                "page_size": page_size,
                "total_pages": (total + page_size - 1) // page_size,
            }

    async def get_event_bookings(self, event_id: int, user_id: int, is_admin: bool = False) -> List[Dict[str, Any]]:
        """All bookings for an event, for its organizers or an admin."""
        with db_manager.get_session() as session:
            event = session.get(Event, event_id)
            if not event:
                raise NotFoundError("Event not found")
            if not event.is_manager(user_id) and not is_admin:
                raise ForbiddenError("Not authorized to view bookings for this event")

            bookings = session.query(Booking).filter(
                Booking.event_id == event_id
            ).order_by(Booking.created_at.desc(), Booking.id.desc()).all()
            return [b.to_dict() for b in bookings]

    async def get_vendor_upcoming(self, vendor_id: int, limit: int = 20) -> List[Dict[str, Any]]:
        """Pending and confirmed bookings of a vendor whose event date is still ahead."""
        with db_manager.get_session() as session:
            bookings = session.query(Booking).filter(
                Booking.vendor_id == vendor_id,
                Booking.status.in_([BookingStatus.PENDING, BookingStatus.CONFIRMED]),
                Booking.event_date >= utcnow()
            ).order_by(Booking.event_date.asc()).limit(limit).all()
            return [b.to_dict() for b in bookings]

    async def get_booking_stats(self, user_id: int, role: str = "vendor") -> Dict[str, Any]:
        """Count, agreed value and paid amount per status for the caller's bookings."""
        if role not in ("organizer", "vendor"):
            raise ValidationError("role must be organizer or vendor")

        owner_column = Booking.vendor_id if role == "vendor" else Booking.organizer_id
        with db_manager.get_session() as session:
            rows = session.query(
                Booking.status,
                func.count(Booking.id),
                func.coalesce(func.sum(Booking.price_agreed), 0),
                func.coalesce(func.sum(Booking.total_paid), 0)
            ).filter(owner_column == user_id).group_by(Booking.status).all()

        by_status = {
            status.value: {
                "count": int(count),
                "total_value": float(total_value),
                "total_paid": float(total_paid),
            }
            for status, count, total_value, total_paid in rows
        }
        return {
            "role": role,
            "by_status": by_status,
            "total_bookings": sum(s["count"] for s in by_status.values()),
            "total_value": sum(s["total_value"] for s in by_status.values()),
            "total_paid": sum(s["total_paid"] for s in by_status.values()),
        }

    async def get_audit_log(self, booking_id: int, user_id: int, is_admin: bool = False) -> List[Dict[str, Any]]:
        with db_manager.get_session() as session:
            booking = self._get_booking(session, booking_id)
            if not booking.is_party(user_id) and not is_admin:
                raise ForbiddenError("Not authorized to view this booking")
            return [log.to_dict() for log in booking.audit_logs]


# Global booking service instance
booking_service = BookingService()
