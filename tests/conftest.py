"""
Test configuration and fixtures for the Marketplace Bookings Service.
Every test runs against a fresh in-memory SQLite database; Redis is mocked.
"""

import os

os.environ.setdefault("JWT_SECRET", "marketplace-test-secret-at-least-32-bytes")
os.environ.setdefault("ENABLE_EMAIL_NOTIFICATIONS", "false")

import pytest
import jwt
from datetime import timedelta
from decimal import Decimal
from types import SimpleNamespace
from unittest.mock import AsyncMock, patch

from marketplace.db.database import db_manager
from marketplace.db.redis_client import redis_manager
from marketplace.models.base import utcnow
from marketplace.models.event import Event
from marketplace.models.service import Service, ServiceAvailability
from marketplace.models.user import User, UserRole
from marketplace.services.booking_service import BookingService
from marketplace.services.notification_service import NotificationDispatcher
from marketplace.services.review_service import ReviewService
from marketplace.services.rsvp_service import RSVPService


class RecordingDispatcher(NotificationDispatcher):
    """Dispatcher that keeps every notification in memory."""

    def __init__(self):
        self.sent = []

    async def notify(self, recipient_id, type, title, message, **kwargs):
        self.sent.append({"recipient_id": recipient_id, "type": type, "title": title, "message": message, **kwargs})
        return None

    def for_user(self, user_id):
        return [n for n in self.sent if n["recipient_id"] == user_id]


class FailingDispatcher(NotificationDispatcher):
    async def notify(self, recipient_id, type, title, message, **kwargs):
        raise RuntimeError("notification backend down")


@pytest.fixture(autouse=True)
def database():
    """Fresh schema per test on a shared in-memory connection."""
    db_manager.setup("sqlite://")
    db_manager.create_tables()
    yield db_manager
    db_manager.drop_tables()
    db_manager.engine.dispose()


@pytest.fixture(autouse=True)
def mock_redis():
    """Redis is never reached from tests."""
    with patch.object(redis_manager, "publish", AsyncMock(return_value=1)) as publish, \
         patch.object(redis_manager, "get_json", AsyncMock(return_value=None)) as get_json, \
         patch.object(redis_manager, "set_json", AsyncMock(return_value=True)) as set_json, \
         patch.object(redis_manager, "delete", AsyncMock(return_value=True)) as delete, \
         patch.object(redis_manager, "health_check", AsyncMock(return_value=True)):
        yield SimpleNamespace(publish=publish, get_json=get_json, set_json=set_json, delete=delete)


@pytest.fixture
def dispatcher():
    return RecordingDispatcher()


@pytest.fixture
def booking_service(dispatcher):
    return BookingService(dispatcher=dispatcher)


@pytest.fixture
def failing_booking_service():
    return BookingService(dispatcher=FailingDispatcher())


@pytest.fixture
def rsvp_service(dispatcher):
    return RSVPService(dispatcher=dispatcher)


@pytest.fixture
def review_service(dispatcher):
    return ReviewService(dispatcher=dispatcher)


@pytest.fixture
def create_user():
    """Factory for users; returns the new id."""
    counter = {"n": 0}

    def _create(role=UserRole.ATTENDEE, name=None):
        counter["n"] += 1
        with db_manager.get_session() as session:
            user = User(
                name=name or f"{role.value.title()} {counter['n']}",
                email=f"{role.value}{counter['n']}@example.com",
                role=role
            )
            session.add(user)
            session.flush()
            return user.id

    return _create


@pytest.fixture
def create_event():
    """Factory for events; returns the new id."""

    def _create(organizer_id, max_attendees=None, days_ahead=30, title="Community Meetup"):
        with db_manager.get_session() as session:
            event = Event(
                organizer_id=organizer_id,
                title=title,
                location="Town Hall",
                date=utcnow() + timedelta(days=days_ahead),
                max_attendees=max_attendees
            )
            session.add(event)
            session.flush()
            return event.id

    return _create


@pytest.fixture
def create_service():
    """Factory for vendor services; returns the new id."""

    def _create(provider_id, service_name="Catering", availability=ServiceAvailability.AVAILABLE):
        with db_manager.get_session() as session:
            service = Service(
                provider_id=provider_id,
                service_name=service_name,
                category="food",
                base_price=Decimal("500.00"),
                availability=availability
            )
            session.add(service)
            session.flush()
            return service.id

    return _create


@pytest.fixture
def seed(create_user, create_event, create_service):
    """An organizer with a future and a past event, a vendor with one service, an attendee and an admin."""
    organizer = create_user(UserRole.ORGANIZER)
    vendor = create_user(UserRole.VENDOR)
    attendee = create_user(UserRole.ATTENDEE)
    admin = create_user(UserRole.ADMIN)
    return SimpleNamespace(
        organizer=organizer,
        vendor=vendor,
        attendee=attendee,
        admin=admin,
        event=create_event(organizer),
        past_event=create_event(organizer, days_ahead=-2, title="Last Week's Meetup"),
        service=create_service(vendor),
    )


@pytest.fixture
def load():
    """Read a row back in its own session."""

    def _load(model, entity_id):
        with db_manager.get_session() as session:
            return session.get(model, entity_id)

    return _load


@pytest.fixture
def auth_headers():
    """Bearer headers for a user id and role."""

    def _headers(user_id, role="organizer"):
        token = jwt.encode({"user_id": user_id, "role": role}, os.environ["JWT_SECRET"], algorithm="HS256")
        return {"Authorization": f"Bearer {token}"}

    return _headers
