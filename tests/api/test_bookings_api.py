"""
Tests for the HTTP surface: authentication, error envelope and a booking
flow driven end to end through the API.
"""

import pytest
from fastapi.testclient import TestClient

from marketplace.main import app


class TestAuthentication:
    """Requests without a valid bearer token are rejected."""

    @pytest.fixture
    def client(self):
        return TestClient(app)

    def test_unauthorized_booking_creation(self, client):
        response = client.post("/api/v1/bookings/", json={"event_id": 1, "service_id": 1, "price_agreed": "10"})
        assert response.status_code in (401, 403)

    def test_unauthorized_rsvp_listing(self, client):
        response = client.get("/api/v1/rsvps/my")
        assert response.status_code in (401, 403)

    def test_invalid_token(self, client):
        response = client.get("/api/v1/bookings/", headers={"Authorization": "Bearer not-a-jwt"})
        assert response.status_code == 401
        body = response.json()
        assert body["error_code"] == "HTTP_ERROR"
        assert body["error_message"] == "Invalid token"
        assert "timestamp" in body

    def test_admin_routes_require_admin(self, client, seed, auth_headers):
        response = client.post("/api/v1/admin/recount/all", headers=auth_headers(seed.organizer, "organizer"))
        assert response.status_code == 403


class TestBookingFlow:
    @pytest.fixture
    def client(self):
        return TestClient(app)

    def test_booking_lifecycle_over_http(self, client, seed, auth_headers):
        organizer = auth_headers(seed.organizer, "organizer")
        vendor = auth_headers(seed.vendor, "vendor")

        created = client.post(
            "/api/v1/bookings/",
            json={"event_id": seed.event, "service_id": seed.service, "price_agreed": "1000.00"},
            headers=organizer
        )
        assert created.status_code == 201
        booking_id = created.json()["id"]
        assert created.json()["status"] == "pending"

        duplicate = client.post(
            "/api/v1/bookings/",
            json={"event_id": seed.event, "service_id": seed.service, "price_agreed": "900.00"},
            headers=organizer
        )
        assert duplicate.status_code == 409
        assert duplicate.json()["error_code"] == "CONFLICT"

        premature = client.post(f"/api/v1/bookings/{booking_id}/complete", headers=organizer)
        assert premature.status_code == 409
        assert premature.json()["error_code"] == "INVALID_STATE"

        forbidden = client.post(f"/api/v1/bookings/{booking_id}/confirm", headers=organizer)
        assert forbidden.status_code == 403
        assert forbidden.json()["error_code"] == "FORBIDDEN"

        confirmed = client.post(f"/api/v1/bookings/{booking_id}/confirm", headers=vendor)
        assert confirmed.status_code == 200
        assert confirmed.json()["status"] == "confirmed"

        paid = client.post(
            f"/api/v1/bookings/{booking_id}/payments",
            json={"amount": "1000.00", "method": "upi", "transaction_id": "UPI-42"},
            headers=organizer
        )
        assert paid.status_code == 201
        assert paid.json()["payment_status"] == "paid"

        completed = client.post(f"/api/v1/bookings/{booking_id}/complete", headers=organizer)
        assert completed.json()["status"] == "completed"

        review = client.post(
            "/api/v1/reviews/",
            json={"booking_id": booking_id, "rating": 5, "review_text": "Excellent catering, guests loved it."},
            headers=organizer
        )
        assert review.status_code == 201

        stats = client.get(f"/api/v1/reviews/service/{seed.service}/stats")
        assert stats.json()["average_rating"] == 5.0

        audit = client.get(f"/api/v1/bookings/{booking_id}/audit-log", headers=vendor)
        assert [entry["action"] for entry in audit.json()] == ["CREATE", "CONFIRM", "PAYMENT", "COMPLETE"]

        inbox = client.get("/api/v1/notifications/", headers=vendor)
        assert inbox.status_code == 200
        assert inbox.json()["total"] >= 3

    def test_validation_error_envelope(self, client, seed, auth_headers):
        response = client.post(
            "/api/v1/bookings/",
            json={"event_id": seed.event, "service_id": seed.service, "price_agreed": "-5"},
            headers=auth_headers(seed.organizer)
        )
        assert response.status_code == 422
        assert response.json()["error_code"] == "VALIDATION_ERROR"

    def test_rsvp_capacity_over_http(self, client, seed, create_user, create_event, auth_headers):
        event_id = create_event(seed.organizer, max_attendees=1)
        first, second = create_user(), create_user()

        accepted = client.post("/api/v1/rsvps/", json={"event_id": event_id}, headers=auth_headers(first, "attendee"))
        assert accepted.status_code == 200

        rejected = client.post("/api/v1/rsvps/", json={"event_id": event_id}, headers=auth_headers(second, "attendee"))
        assert rejected.status_code == 409
        assert rejected.json()["error_code"] == "CAPACITY_EXCEEDED"

    def test_admin_recount(self, client, seed, auth_headers):
        response = client.post("/api/v1/admin/recount/all", headers=auth_headers(seed.admin, "admin"))
        assert response.status_code == 200
        assert response.json()["data"] == {"events": 2, "services": 1}

    def test_health(self, client):
        response = client.get("/api/v1/health")
        assert response.status_code == 200
        assert response.json()["database"] == "healthy"
