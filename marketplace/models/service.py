"""
Vendor service listing model.
"""

from sqlalchemy import (
    Column, Integer, String, Boolean, DateTime, Enum, Float, Numeric,
    ForeignKey, CheckConstraint, Text
)
from sqlalchemy.orm import relationship
from enum import Enum as PyEnum

from marketplace.models.base import Base, utcnow, isoformat


class ServiceAvailability(PyEnum):
    """Whether the vendor currently accepts bookings."""
    AVAILABLE = "available"
    BUSY = "busy"
    NOT_TAKING_ORDERS = "not_taking_orders"


class Service(Base):
    """A service offered by a vendor (the provider)."""

    __tablename__ = "services"

    id = Column(Integer, primary_key=True, index=True)
    provider_id = Column(Integer, ForeignKey("users.id"), nullable=False, index=True)
    service_name = Column(String(200), nullable=False)
    category = Column(String(50), nullable=True)
    description = Column(Text, nullable=True)
    base_price = Column(Numeric(12, 2), nullable=True)
    availability = Column(Enum(ServiceAvailability), default=ServiceAvailability.AVAILABLE, nullable=False)
    is_active = Column(Boolean, default=True, nullable=False)

    # Derived by the ledger
    rating_average = Column(Float, default=0.0, nullable=False)
    total_ratings = Column(Integer, default=0, nullable=False)
    total_bookings = Column(Integer, default=0, nullable=False)
    completed_bookings = Column(Integer, default=0, nullable=False)

    created_at = Column(DateTime(timezone=True), default=utcnow, nullable=False)
    updated_at = Column(DateTime(timezone=True), default=utcnow, onupdate=utcnow, nullable=False)

    provider = relationship("User")

    __table_args__ = (
        CheckConstraint('total_bookings >= 0', name='check_service_bookings_non_negative'),
        CheckConstraint('completed_bookings >= 0', name='check_service_completed_non_negative'),
    )

    def __repr__(self):
        return f"<Service(id={self.id}, name='{self.service_name}', provider_id={self.provider_id})>"

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "provider_id": self.provider_id,
            "service_name": self.service_name,
            "category": self.category,
            "availability": self.availability.value,
            "rating_average": self.rating_average,
            "total_ratings": self.total_ratings,
            "total_bookings": self.total_bookings,
            "completed_bookings": self.completed_bookings,
            "created_at": isoformat(self.created_at),
        }
