"""
Pydantic schemas for bookings.
Handles request/response validation and serialization.
"""

from pydantic import BaseModel, Field, field_validator
from typing import Optional, List, Dict
from datetime import datetime
from decimal import Decimal

from marketplace.models.booking import BookingStatus, PaymentStatus, PaymentMethod


def _two_decimals(v: Optional[Decimal]) -> Optional[Decimal]:
    if v is not None and v.as_tuple().exponent < -2:
        raise ValueError('Amount cannot have more than 2 decimal places')
    return v


# Request schemas
class BookingCreate(BaseModel):
    """Schema for requesting a vendor service for an event."""

    event_id: int = Field(..., gt=0, description="Event the service is booked for")
    service_id: int = Field(..., gt=0, description="Service being booked")
    price_agreed: Decimal = Field(..., ge=0, description="Price agreed with the vendor")
    event_date: Optional[datetime] = Field(None, description="Defaults to the event date")
    notes: Optional[str] = Field(None, max_length=1000)
    requirements: Optional[str] = Field(None, max_length=2000)

    @field_validator('price_agreed')
    @classmethod
    def validate_price(cls, v):
        """Validate price has at most 2 decimal places."""
        return _two_decimals(v)


class BookingUpdate(BaseModel):
    """Schema for editing a pending booking."""

    price_agreed: Optional[Decimal] = Field(None, ge=0)
    notes: Optional[str] = Field(None, max_length=1000)
    requirements: Optional[str] = Field(None, max_length=2000)

    @field_validator('price_agreed')
    @classmethod
    def validate_price(cls, v):
        return _two_decimals(v)


class BookingCancel(BaseModel):
    """Schema for cancelling a booking."""

    reason: Optional[str] = Field(None, max_length=500, description="Reason for cancellation")


class BookingRefund(BaseModel):
    reason: Optional[str] = Field(None, max_length=500)


class PaymentCreate(BaseModel):
    """Schema for recording a confirmed payment."""

    amount: Decimal = Field(..., gt=0, description="Amount received")
    method: PaymentMethod = Field(PaymentMethod.OTHER, description="How the payment was made")
    transaction_id: Optional[str] = Field(None, max_length=100)
    notes: Optional[str] = Field(None, max_length=500)

    @field_validator('amount')
    @classmethod
    def validate_amount(cls, v):
        return _two_decimals(v)


# Response schemas
class PaymentResponse(BaseModel):
    id: int
    amount: float
    method: PaymentMethod
    transaction_id: Optional[str] = None
    notes: Optional[str] = None
    recorded_by: int
    paid_at: Optional[datetime] = None


class BookingResponse(BaseModel):
    """Schema for booking response."""

    id: int
    event_id: int
    service_id: int
    organizer_id: int
    vendor_id: int
    event_date: datetime
    status: BookingStatus
    price_agreed: float
    total_paid: float
    payment_status: PaymentStatus
    payments: List[PaymentResponse] = []
    notes: Optional[str] = None
    requirements: Optional[str] = None
    confirmed_at: Optional[datetime] = None
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    refunded_at: Optional[datetime] = None
    cancelled_at: Optional[datetime] = None
    cancelled_by: Optional[int] = None
    cancellation_reason: Optional[str] = None
    created_at: datetime
    updated_at: datetime
    version: int

    class Config:
        from_attributes = True


class BookingListResponse(BaseModel):
    bookings: List[BookingResponse]
    total: int
    page: int
    page_size: int
    total_pages: int


class BookingStatusStats(BaseModel):
    count: int
    total_value: float
    total_paid: float


class BookingStatsResponse(BaseModel):
    role: str
    by_status: Dict[str, BookingStatusStats]
    total_bookings: int
    total_value: float
    total_paid: float


class BookingAuditLogResponse(BaseModel):
    id: int
    booking_id: int
    action: str
    field_name: Optional[str] = None
    old_value: Optional[str] = None
    new_value: Optional[str] = None
    changed_by: Optional[int] = None
    changed_at: datetime
    reason: Optional[str] = None
