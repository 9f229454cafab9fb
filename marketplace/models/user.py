"""
User aggregate model.

Identity and authentication live in the auth service; this table only holds
the profile fields the marketplace derives (ratings, XP and attendance).
"""

from sqlalchemy import Column, Integer, String, Float, DateTime, Enum, CheckConstraint
from enum import Enum as PyEnum

from marketplace.models.base import Base, utcnow, isoformat


class UserRole(PyEnum):
    """User role enumeration."""
    ORGANIZER = "organizer"
    VENDOR = "vendor"
    ATTENDEE = "attendee"
    ADMIN = "admin"


class UserLevel(PyEnum):
    """Experience level derived from XP points."""
    BRONZE = "Bronze"
    SILVER = "Silver"
    GOLD = "Gold"
    PLATINUM = "Platinum"


# Highest threshold first
LEVEL_THRESHOLDS = (
    (1501, UserLevel.PLATINUM),
    (501, UserLevel.GOLD),
    (101, UserLevel.SILVER),
    (0, UserLevel.BRONZE),
)


class XPReward:
    """XP awarded per activity."""
    REVIEW_GIVEN = 10
    EVENT_ATTENDED = 20


def level_for_xp(xp_points: int) -> UserLevel:
    for threshold, level in LEVEL_THRESHOLDS:
        if xp_points >= threshold:
            return level
    return UserLevel.BRONZE


class User(Base):
    """Marketplace user with denormalized reputation fields."""

    __tablename__ = "users"

    id = Column(Integer, primary_key=True, index=True)
    name = Column(String(100), nullable=False)
    email = Column(String(255), unique=True, nullable=False, index=True)
    role = Column(Enum(UserRole), default=UserRole.ATTENDEE, nullable=False)

    # Derived by the ledger, never client settable
    rating_average = Column(Float, default=0.0, nullable=False)
    total_ratings = Column(Integer, default=0, nullable=False)
    xp_points = Column(Integer, default=0, nullable=False)
    level = Column(Enum(UserLevel), default=UserLevel.BRONZE, nullable=False)
    events_attended = Column(Integer, default=0, nullable=False)

    created_at = Column(DateTime(timezone=True), default=utcnow, nullable=False)

    __table_args__ = (
        CheckConstraint('xp_points >= 0', name='check_user_xp_non_negative'),
        CheckConstraint('rating_average >= 0 AND rating_average <= 5', name='check_user_rating_range'),
    )

    def __repr__(self):
        return f"<User(id={self.id}, email='{self.email}', role='{self.role.value}')>"

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "name": self.name,
            "email": self.email,
            "role": self.role.value,
            "rating_average": self.rating_average,
            "total_ratings": self.total_ratings,
            "xp_points": self.xp_points,
            "level": self.level.value,
            "events_attended": self.events_attended,
            "created_at": isoformat(self.created_at),
        }
