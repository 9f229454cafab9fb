"""
Booking models for the Marketplace Bookings Service.
A booking is the contract between an event organizer and a vendor service;
it carries the state machine, the payment ledger and the audit trail.
"""

from sqlalchemy import (
    Column, Integer, String, DateTime, Enum, Numeric,
    ForeignKey, Index, CheckConstraint, Text, text
)
from sqlalchemy.orm import relationship, validates
from enum import Enum as PyEnum
from decimal import Decimal
from typing import Optional

from marketplace.models.base import Base, utcnow, isoformat


class BookingStatus(PyEnum):
    """Booking status enumeration."""
    PENDING = "pending"           # Requested by the organizer
    CONFIRMED = "confirmed"       # Accepted by the vendor
    IN_PROGRESS = "in_progress"   # Vendor is delivering the service
    COMPLETED = "completed"       # Delivered, reviews allowed
    CANCELLED = "cancelled"       # Withdrawn by either party
    REFUNDED = "refunded"         # Money returned to the organizer


class PaymentStatus(PyEnum):
    """Payment status enumeration, derived from the payment ledger."""
    UNPAID = "unpaid"
    PARTIAL = "partial"
    PAID = "paid"
    REFUNDED = "refunded"


class PaymentMethod(PyEnum):
    """How a payment was settled outside the platform."""
    CASH = "cash"
    UPI = "upi"
    CARD = "card"
    NETBANKING = "netbanking"
    OTHER = "other"


TERMINAL_STATUSES = frozenset({
    BookingStatus.COMPLETED,
    BookingStatus.CANCELLED,
    BookingStatus.REFUNDED,
})

# Statuses that release the (event, service) slot for a new booking
INACTIVE_STATUSES = frozenset({BookingStatus.CANCELLED, BookingStatus.REFUNDED})

ALLOWED_TRANSITIONS = {
    BookingStatus.PENDING: {BookingStatus.CONFIRMED, BookingStatus.CANCELLED, BookingStatus.REFUNDED},
    BookingStatus.CONFIRMED: {
        BookingStatus.IN_PROGRESS, BookingStatus.COMPLETED,
        BookingStatus.CANCELLED, BookingStatus.REFUNDED,
    },
    BookingStatus.IN_PROGRESS: {BookingStatus.COMPLETED, BookingStatus.CANCELLED, BookingStatus.REFUNDED},
    BookingStatus.COMPLETED: set(),
    BookingStatus.CANCELLED: set(),
    BookingStatus.REFUNDED: set(),
}


def derive_payment_status(total_paid: Decimal, price_agreed: Decimal) -> PaymentStatus:
    """
    Payment status as a pure function of the amount paid and the agreed price.

    Overpayment counts as paid.
    """
    total_paid = Decimal(total_paid or 0)
    price_agreed = Decimal(price_agreed or 0)
    if total_paid <= 0:
        return PaymentStatus.UNPAID
    if total_paid < price_agreed:
        return PaymentStatus.PARTIAL
    return PaymentStatus.PAID


class Booking(Base):
    """
    Booking of a vendor service for an event.
    Uses a version column for optimistic locking and is never hard-deleted.
    """

    __tablename__ = "bookings"

    id = Column(Integer, primary_key=True, index=True)

    # Parties and subject, immutable after creation
    event_id = Column(Integer, ForeignKey("events.id"), nullable=False, index=True)
    service_id = Column(Integer, ForeignKey("services.id"), nullable=False, index=True)
    organizer_id = Column(Integer, ForeignKey("users.id"), nullable=False, index=True)
    vendor_id = Column(Integer, ForeignKey("users.id"), nullable=False, index=True)

    event_date = Column(DateTime(timezone=True), nullable=False)
    status = Column(Enum(BookingStatus), default=BookingStatus.PENDING, nullable=False, index=True)

    # Money
    price_agreed = Column(Numeric(12, 2), nullable=False)
    total_paid = Column(Numeric(12, 2), default=Decimal("0.00"), nullable=False)
    payment_status = Column(Enum(PaymentStatus), default=PaymentStatus.UNPAID, nullable=False, index=True)

    notes = Column(Text, nullable=True)
    requirements = Column(Text, nullable=True)

    # Lifecycle timestamps
    confirmed_at = Column(DateTime(timezone=True), nullable=True)
    started_at = Column(DateTime(timezone=True), nullable=True)
    completed_at = Column(DateTime(timezone=True), nullable=True)
    refunded_at = Column(DateTime(timezone=True), nullable=True)

    # Cancellation metadata
    cancelled_at = Column(DateTime(timezone=True), nullable=True)
    cancelled_by = Column(Integer, ForeignKey("users.id"), nullable=True)
    cancellation_reason = Column(Text, nullable=True)

    created_at = Column(DateTime(timezone=True), default=utcnow, nullable=False)
    updated_at = Column(DateTime(timezone=True), default=utcnow, onupdate=utcnow, nullable=False)
    version = Column(Integer, nullable=False)

    event = relationship("Event")
    service = relationship("Service")
    payments = relationship(
        "BookingPayment",
        back_populates="booking",
        cascade="all, delete-orphan",
        order_by="BookingPayment.id",
        lazy="selectin"
    )
    audit_logs = relationship(
        "BookingAuditLog",
        back_populates="booking",
        cascade="all, delete-orphan",
        order_by="BookingAuditLog.id"
    )

    __mapper_args__ = {"version_id_col": version}

    __table_args__ = (
        CheckConstraint('price_agreed >= 0', name='check_price_agreed_non_negative'),
        CheckConstraint('total_paid >= 0', name='check_total_paid_non_negative'),
        # One active booking per (event, service); enum columns store member names
        Index(
            'uq_booking_active_event_service',
            'event_id', 'service_id',
            unique=True,
            postgresql_where=text("status NOT IN ('CANCELLED', 'REFUNDED')"),
            sqlite_where=text("status NOT IN ('CANCELLED', 'REFUNDED')"),
        ),
        Index('idx_booking_vendor_status', 'vendor_id', 'status'),
        Index('idx_booking_organizer_status', 'organizer_id', 'status'),
    )

    @validates("event_id", "service_id", "organizer_id", "vendor_id")
    def _validate_immutable_refs(self, key, value):
        current = getattr(self, key)
        if current is not None and current != value:
            raise ValueError(f"{key} cannot be changed after the booking is created")
        return value

    def __repr__(self):
        return f"<Booking(id={self.id}, event_id={self.event_id}, service_id={self.service_id}, status='{self.status.value}')>"

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES

    @property
    def is_active(self) -> bool:
        return self.status not in INACTIVE_STATUSES

    def can_transition_to(self, new_status: BookingStatus) -> bool:
        return new_status in ALLOWED_TRANSITIONS[self.status]

    def is_party(self, user_id: int) -> bool:
        return user_id in (self.organizer_id, self.vendor_id)

    def counterparty_of(self, user_id: int) -> int:
        """The other side of the contract from ``user_id``."""
        return self.vendor_id if user_id == self.organizer_id else self.organizer_id

    def recalculate_payments(self):
        """Recompute total_paid from the payment rows and re-derive payment_status."""
        self.total_paid = sum((Decimal(p.amount) for p in self.payments), Decimal("0.00"))
        if self.payment_status != PaymentStatus.REFUNDED:
            self.payment_status = derive_payment_status(self.total_paid, self.price_agreed)

    def to_dict(self) -> dict:
        """Convert booking to dictionary representation."""
        return {
            "id": self.id,
            "event_id": self.event_id,
            "service_id": self.service_id,
            "organizer_id": self.organizer_id,
            "vendor_id": self.vendor_id,
            "event_date": isoformat(self.event_date),
            "status": self.status.value,
            "price_agreed": float(self.price_agreed),
            "total_paid": float(self.total_paid or 0),
            "payment_status": self.payment_status.value,
            "payments": [p.to_dict() for p in self.payments],
            "notes": self.notes,
            "requirements": self.requirements,
            "confirmed_at": isoformat(self.confirmed_at),
            "started_at": isoformat(self.started_at),
            "completed_at": isoformat(self.completed_at),
            "refunded_at": isoformat(self.refunded_at),
            "cancelled_at": isoformat(self.cancelled_at),
            "cancelled_by": self.cancelled_by,
            "cancellation_reason": self.cancellation_reason,
            "created_at": isoformat(self.created_at),
            "updated_at": isoformat(self.updated_at),
            "version": self.version,
        }


class BookingPayment(Base):
    """
    A payment fact recorded against a booking.
    Only recorded after the external gateway or the vendor has confirmed it.
    """

    __tablename__ = "booking_payments"

    id = Column(Integer, primary_key=True, index=True)
    booking_id = Column(Integer, ForeignKey("bookings.id", ondelete="CASCADE"), nullable=False, index=True)

    amount = Column(Numeric(12, 2), nullable=False)
    method = Column(Enum(PaymentMethod), default=PaymentMethod.OTHER, nullable=False)
    transaction_id = Column(String(100), nullable=True, index=True)
    notes = Column(Text, nullable=True)
    recorded_by = Column(Integer, ForeignKey("users.id"), nullable=False)
    paid_at = Column(DateTime(timezone=True), default=utcnow, nullable=False)

    booking = relationship("Booking", back_populates="payments")

    __table_args__ = (
        CheckConstraint('amount > 0', name='check_payment_amount_positive'),
    )

    def __repr__(self):
        return f"<BookingPayment(id={self.id}, booking_id={self.booking_id}, amount={self.amount})>"

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "amount": float(self.amount),
            "method": self.method.value,
            "transaction_id": self.transaction_id,
            "notes": self.notes,
            "recorded_by": self.recorded_by,
            "paid_at": isoformat(self.paid_at),
        }


class BookingAuditLog(Base):
    """
    Audit trail for booking changes.
    One row per mutation, written in the same transaction as the change.
    """

    __tablename__ = "booking_audit_logs"

    id = Column(Integer, primary_key=True, index=True)
    booking_id = Column(Integer, ForeignKey("bookings.id", ondelete="CASCADE"), nullable=False, index=True)

    action = Column(String(50), nullable=False)  # CREATE, CONFIRM, START, CANCEL, COMPLETE, REFUND, PAYMENT, UPDATE
    field_name = Column(String(100), nullable=True)
    old_value = Column(Text, nullable=True)
    new_value = Column(Text, nullable=True)

    changed_by = Column(Integer, nullable=True)
    changed_at = Column(DateTime(timezone=True), default=utcnow, nullable=False)
    reason = Column(Text, nullable=True)

    booking = relationship("Booking", back_populates="audit_logs")

    __table_args__ = (
        Index('idx_audit_action_date', 'action', 'changed_at'),
    )

    def __repr__(self):
        return f"<BookingAuditLog(id={self.id}, booking_id={self.booking_id}, action='{self.action}')>"

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "booking_id": self.booking_id,
            "action": self.action,
            "field_name": self.field_name,
            "old_value": self.old_value,
            "new_value": self.new_value,
            "changed_by": self.changed_by,
            "changed_at": isoformat(self.changed_at),
            "reason": self.reason,
        }


def audit_value(value) -> Optional[str]:
    """Render a field value for the audit log."""
    if value is None:
        return None
    if isinstance(value, PyEnum):
        return value.value
    return str(value)
