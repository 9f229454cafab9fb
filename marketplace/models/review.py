"""
Review models.
A review is attached to exactly one completed booking and attributes a rating
to the booked service and, through it, to the vendor.
"""

from sqlalchemy import (
    Column, Integer, String, Boolean, DateTime, Text,
    ForeignKey, Index, CheckConstraint, UniqueConstraint
)
from sqlalchemy.orm import relationship

from marketplace.models.base import Base, utcnow, isoformat


REVIEW_TEXT_MIN_LENGTH = 10
REVIEW_TEXT_MAX_LENGTH = 1000
DETAIL_RATING_FIELDS = ("quality", "punctuality", "professionalism", "value_for_money")


class Review(Base):
    """Organizer review of a completed booking."""

    __tablename__ = "reviews"

    id = Column(Integer, primary_key=True, index=True)
    booking_id = Column(Integer, ForeignKey("bookings.id"), unique=True, nullable=False, index=True)
    service_id = Column(Integer, ForeignKey("services.id"), nullable=False, index=True)
    vendor_id = Column(Integer, ForeignKey("users.id"), nullable=False, index=True)
    reviewer_id = Column(Integer, ForeignKey("users.id"), nullable=False, index=True)
    event_id = Column(Integer, ForeignKey("events.id"), nullable=False)

    rating = Column(Integer, nullable=False)
    review_text = Column(Text, nullable=False)

    # Optional detailed ratings
    quality_rating = Column(Integer, nullable=True)
    punctuality_rating = Column(Integer, nullable=True)
    professionalism_rating = Column(Integer, nullable=True)
    value_for_money_rating = Column(Integer, nullable=True)

    vendor_response = Column(Text, nullable=True)
    responded_at = Column(DateTime(timezone=True), nullable=True)

    # Moderation
    is_approved = Column(Boolean, default=True, nullable=False, index=True)
    is_flagged = Column(Boolean, default=False, nullable=False)
    flag_reason = Column(String(500), nullable=True)
    moderated_by = Column(Integer, nullable=True)
    moderated_at = Column(DateTime(timezone=True), nullable=True)

    # Mirrors len(helpful_votes)
    helpful_count = Column(Integer, default=0, nullable=False)

    created_at = Column(DateTime(timezone=True), default=utcnow, nullable=False)
    updated_at = Column(DateTime(timezone=True), default=utcnow, onupdate=utcnow, nullable=False)

    helpful_votes = relationship("ReviewHelpfulVote", back_populates="review", cascade="all, delete-orphan")
    reports = relationship("ReviewReport", back_populates="review", cascade="all, delete-orphan")

    __table_args__ = (
        CheckConstraint('rating >= 1 AND rating <= 5', name='check_review_rating_range'),
        CheckConstraint('helpful_count >= 0', name='check_review_helpful_non_negative'),
        Index('idx_review_service_approved', 'service_id', 'is_approved'),
        Index('idx_review_vendor_approved', 'vendor_id', 'is_approved'),
    )

    def __repr__(self):
        return f"<Review(id={self.id}, booking_id={self.booking_id}, rating={self.rating})>"

    @property
    def detailed_ratings(self) -> dict:
        return {
            field: getattr(self, f"{field}_rating")
            for field in DETAIL_RATING_FIELDS
            if getattr(self, f"{field}_rating") is not None
        }

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "booking_id": self.booking_id,
            "service_id": self.service_id,
            "vendor_id": self.vendor_id,
            "reviewer_id": self.reviewer_id,
            "event_id": self.event_id,
            "rating": self.rating,
            "review_text": self.review_text,
            "detailed_ratings": self.detailed_ratings,
            "vendor_response": self.vendor_response,
            "responded_at": isoformat(self.responded_at),
            "is_approved": self.is_approved,
            "is_flagged": self.is_flagged,
            "helpful_count": self.helpful_count,
            "created_at": isoformat(self.created_at),
            "updated_at": isoformat(self.updated_at),
        }


class ReviewHelpfulVote(Base):
    """Membership of a user in a review's helpful set."""

    __tablename__ = "review_helpful_votes"

    id = Column(Integer, primary_key=True, index=True)
    review_id = Column(Integer, ForeignKey("reviews.id", ondelete="CASCADE"), nullable=False, index=True)
    user_id = Column(Integer, ForeignKey("users.id"), nullable=False)
    created_at = Column(DateTime(timezone=True), default=utcnow, nullable=False)

    review = relationship("Review", back_populates="helpful_votes")

    __table_args__ = (
        UniqueConstraint('review_id', 'user_id', name='uq_helpful_vote_review_user'),
    )


class ReviewReport(Base):
    """Abuse report filed against a review."""

    __tablename__ = "review_reports"

    id = Column(Integer, primary_key=True, index=True)
    review_id = Column(Integer, ForeignKey("reviews.id", ondelete="CASCADE"), nullable=False, index=True)
    reporter_id = Column(Integer, ForeignKey("users.id"), nullable=False)
    reason = Column(String(500), nullable=False)
    created_at = Column(DateTime(timezone=True), default=utcnow, nullable=False)

    review = relationship("Review", back_populates="reports")

    __table_args__ = (
        UniqueConstraint('review_id', 'reporter_id', name='uq_review_report_reporter'),
    )
