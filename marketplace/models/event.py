"""
Event and RSVP models.
Attendance counters on Event are derived from RSVPs by the ledger.
"""

from sqlalchemy import (
    Column, Integer, String, Boolean, DateTime, Enum, Float,
    ForeignKey, Index, CheckConstraint, UniqueConstraint, Table, Text
)
from sqlalchemy.orm import relationship
from enum import Enum as PyEnum

from marketplace.models.base import Base, utcnow, as_utc, isoformat


event_co_organizers = Table(
    "event_co_organizers",
    Base.metadata,
    Column("event_id", Integer, ForeignKey("events.id", ondelete="CASCADE"), primary_key=True),
    Column("user_id", Integer, ForeignKey("users.id", ondelete="CASCADE"), primary_key=True),
)


class Event(Base):
    """Event hosted by an organizer."""

    __tablename__ = "events"

    id = Column(Integer, primary_key=True, index=True)
    organizer_id = Column(Integer, ForeignKey("users.id"), nullable=False, index=True)
    title = Column(String(200), nullable=False)
    description = Column(Text, nullable=True)
    location = Column(String(255), nullable=True)
    date = Column(DateTime(timezone=True), nullable=False, index=True)

    # Unlimited when null
    max_attendees = Column(Integer, nullable=True)

    # Derived by the ledger
    current_attendees = Column(Integer, default=0, nullable=False)
    rsvp_count = Column(Integer, default=0, nullable=False)
    overall_rating = Column(Float, default=0.0, nullable=False)
    total_reviews = Column(Integer, default=0, nullable=False)

    created_at = Column(DateTime(timezone=True), default=utcnow, nullable=False)
    updated_at = Column(DateTime(timezone=True), default=utcnow, onupdate=utcnow, nullable=False)

    organizer = relationship("User", foreign_keys=[organizer_id])
    co_organizers = relationship("User", secondary=event_co_organizers, lazy="selectin")
    rsvps = relationship("RSVP", back_populates="event")

    __table_args__ = (
        CheckConstraint('max_attendees IS NULL OR max_attendees > 0', name='check_event_capacity_positive'),
        CheckConstraint('current_attendees >= 0', name='check_event_attendees_non_negative'),
    )

    def __repr__(self):
        return f"<Event(id={self.id}, title='{self.title}')>"

    def is_manager(self, user_id: int) -> bool:
        """Organizer or co-organizer."""
        if self.organizer_id == user_id:
            return True
        return any(user.id == user_id for user in self.co_organizers)

    @property
    def has_passed(self) -> bool:
        return as_utc(self.date) < utcnow()

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "organizer_id": self.organizer_id,
            "title": self.title,
            "date": isoformat(self.date),
            "max_attendees": self.max_attendees,
            "current_attendees": self.current_attendees,
            "rsvp_count": self.rsvp_count,
            "overall_rating": self.overall_rating,
            "total_reviews": self.total_reviews,
        }


class RSVPStatus(PyEnum):
    """RSVP status enumeration."""
    GOING = "going"
    MAYBE = "maybe"
    NOT_GOING = "not_going"
    CANCELLED = "cancelled"


MAX_GUESTS_PER_RSVP = 10


class RSVP(Base):
    """
    Attendance intent of one user for one event.
    Guarded by a version column so concurrent writers cannot overwrite each other.
    """

    __tablename__ = "rsvps"

    id = Column(Integer, primary_key=True, index=True)
    event_id = Column(Integer, ForeignKey("events.id", ondelete="CASCADE"), nullable=False, index=True)
    attendee_id = Column(Integer, ForeignKey("users.id"), nullable=False, index=True)

    status = Column(Enum(RSVPStatus), default=RSVPStatus.GOING, nullable=False, index=True)
    guests_count = Column(Integer, default=0, nullable=False)

    checked_in = Column(Boolean, default=False, nullable=False)
    checked_in_at = Column(DateTime(timezone=True), nullable=True)
    check_in_code = Column(String(20), unique=True, nullable=False, index=True)

    attended = Column(Boolean, default=False, nullable=False)
    attended_marked_at = Column(DateTime(timezone=True), nullable=True)

    event_rating = Column(Integer, nullable=True)
    event_review = Column(Text, nullable=True)
    rated_at = Column(DateTime(timezone=True), nullable=True)

    created_at = Column(DateTime(timezone=True), default=utcnow, nullable=False)
    updated_at = Column(DateTime(timezone=True), default=utcnow, onupdate=utcnow, nullable=False)
    version = Column(Integer, nullable=False)

    event = relationship("Event", back_populates="rsvps")
    attendee = relationship("User")

    __mapper_args__ = {"version_id_col": version}

    __table_args__ = (
        UniqueConstraint('event_id', 'attendee_id', name='uq_rsvp_event_attendee'),
        CheckConstraint('guests_count >= 0 AND guests_count <= 10', name='check_rsvp_guests_range'),
        CheckConstraint('event_rating IS NULL OR (event_rating >= 1 AND event_rating <= 5)', name='check_rsvp_rating_range'),
        Index('idx_rsvp_event_status', 'event_id', 'status'),
    )

    def __repr__(self):
        return f"<RSVP(id={self.id}, event_id={self.event_id}, attendee_id={self.attendee_id}, status='{self.status.value}')>"

    @staticmethod
    def build_check_in_code(event_id: int, attendee_id: int) -> str:
        """Deterministic code printed on the attendee's ticket."""
        return f"{event_id:06d}-{attendee_id:06d}"

    @staticmethod
    def headcount_for(status: RSVPStatus, guests_count: int) -> int:
        """Seats a reservation occupies: the attendee plus guests, only while going."""
        if status == RSVPStatus.GOING:
            return 1 + (guests_count or 0)
        return 0

    @property
    def headcount(self) -> int:
        return self.headcount_for(self.status, self.guests_count)

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "event_id": self.event_id,
            "attendee_id": self.attendee_id,
            "status": self.status.value,
            "guests_count": self.guests_count,
            "checked_in": self.checked_in,
            "checked_in_at": isoformat(self.checked_in_at),
            "check_in_code": self.check_in_code,
            "attended": self.attended,
            "event_rating": self.event_rating,
            "event_review": self.event_review,
            "created_at": isoformat(self.created_at),
            "updated_at": isoformat(self.updated_at),
        }
