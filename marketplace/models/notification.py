"""
In-app notification model.
"""

from sqlalchemy import Column, Integer, String, Boolean, DateTime, Enum, ForeignKey, Index
from enum import Enum as PyEnum

from marketplace.models.base import Base, utcnow, isoformat


class NotificationType(PyEnum):
    BOOKING = "booking"
    MESSAGE = "message"
    REVIEW = "review"
    EVENT_REMINDER = "event_reminder"
    PAYMENT = "payment"
    SYSTEM = "system"
    RSVP = "rsvp"
    TASK_ASSIGNED = "task_assigned"


class NotificationPriority(PyEnum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"


TITLE_MAX_LENGTH = 100
MESSAGE_MAX_LENGTH = 500


class Notification(Base):
    """Notification addressed to one user; expires after a retention window."""

    __tablename__ = "notifications"

    id = Column(Integer, primary_key=True, index=True)
    recipient_id = Column(Integer, ForeignKey("users.id"), nullable=False, index=True)
    type = Column(Enum(NotificationType), nullable=False)
    title = Column(String(TITLE_MAX_LENGTH), nullable=False)
    message = Column(String(MESSAGE_MAX_LENGTH), nullable=False)

    related_event_id = Column(Integer, nullable=True)
    related_booking_id = Column(Integer, nullable=True)
    related_user_id = Column(Integer, nullable=True)
    action_url = Column(String(255), nullable=True)
    priority = Column(Enum(NotificationPriority), default=NotificationPriority.MEDIUM, nullable=False)

    is_read = Column(Boolean, default=False, nullable=False)
    read_at = Column(DateTime(timezone=True), nullable=True)

    # Comma separated channels the notification was handed to, e.g. "in_app,push"
    sent_via = Column(String(100), default="in_app", nullable=False)

    created_at = Column(DateTime(timezone=True), default=utcnow, nullable=False)
    expires_at = Column(DateTime(timezone=True), nullable=False, index=True)

    __table_args__ = (
        Index('idx_notification_recipient_read', 'recipient_id', 'is_read', 'created_at'),
    )

    def __repr__(self):
        return f"<Notification(id={self.id}, recipient_id={self.recipient_id}, type='{self.type.value}')>"

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "recipient_id": self.recipient_id,
            "type": self.type.value,
            "title": self.title,
            "message": self.message,
            "related_event_id": self.related_event_id,
            "related_booking_id": self.related_booking_id,
            "related_user_id": self.related_user_id,
            "action_url": self.action_url,
            "priority": self.priority.value,
            "is_read": self.is_read,
            "read_at": isoformat(self.read_at),
            "sent_via": self.sent_via.split(",") if self.sent_via else [],
            "created_at": isoformat(self.created_at),
            "expires_at": isoformat(self.expires_at),
        }
