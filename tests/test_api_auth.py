"""
Tests for cleanbook/api/deps.py - JWT identity and the admin gate, exercised
through the real routes.
"""
import uuid
from datetime import datetime, timedelta, timezone
from unittest.mock import AsyncMock, MagicMock, patch

import jwt as pyjwt
import pytest
from fastapi.testclient import TestClient

from cleanbook.api.deps import TokenPayload, create_access_token
from cleanbook.config import get_settings
from cleanbook.database import get_db
from cleanbook.main import create_app


async def _override_db():
    yield AsyncMock()


@pytest.fixture
def client():
    app = create_app()
    app.dependency_overrides[get_db] = _override_db
    return TestClient(app, raise_server_exceptions=False)


def _auth(role="user", user_id=None):
    token = create_access_token(user_id or uuid.uuid4(), role=role)
    return {"Authorization": f"Bearer {token}"}


class TestTokenPayload:
    def test_is_admin(self):
        assert TokenPayload(uuid.uuid4(), "admin").is_admin is True
        assert TokenPayload(uuid.uuid4(), "user").is_admin is False

    def test_create_access_token_claims(self):
        user_id = uuid.uuid4()
        settings = get_settings()
        decoded = pyjwt.decode(
            create_access_token(user_id, role="admin"),
            settings.jwt_secret, algorithms=[settings.jwt_algorithm],
        )
        assert decoded["user_id"] == str(user_id)
        assert decoded["role"] == "admin"


class TestAuthentication:
    def test_missing_token_401(self, client):
        response = client.get("/api/CleaningSubscription/GetUserSubscription")
        assert response.status_code == 401
        assert response.json() == {"detail": "Not authenticated"}

    def test_garbage_token_401(self, client):
        response = client.get(
            "/api/CleaningSubscription/GetUserSubscription",
            headers={"Authorization": "Bearer not.a.jwt"},
        )
        assert response.status_code == 401
        assert response.json()["detail"] == "Invalid token"

    def test_expired_token_401(self, client):
        settings = get_settings()
        token = pyjwt.encode(
            {"user_id": str(uuid.uuid4()), "exp": datetime.now(timezone.utc) - timedelta(minutes=1)},
            settings.jwt_secret, algorithm=settings.jwt_algorithm,
        )
        response = client.get(
            "/api/CleaningSubscription/GetUserSubscription",
            headers={"Authorization": f"Bearer {token}"},
        )
        assert response.status_code == 401
        assert response.json()["detail"] == "Token expired"

    def test_token_without_user_401(self, client):
        settings = get_settings()
        token = pyjwt.encode({"role": "admin"}, settings.jwt_secret, algorithm=settings.jwt_algorithm)
        response = client.get(
            "/api/CleaningSubscription/GetUserSubscription",
            headers={"Authorization": f"Bearer {token}"},
        )
        assert response.status_code == 401
        assert response.json()["detail"] == "Invalid token payload"

    def test_wrong_secret_401(self, client):
        token = pyjwt.encode({"user_id": str(uuid.uuid4())}, "someone-else", algorithm="HS256")
        response = client.get(
            "/api/CleaningSubscription/GetUserSubscription",
            headers={"Authorization": f"Bearer {token}"},
        )
        assert response.status_code == 401

    def test_valid_token_reaches_service(self, client):
        user_id = uuid.uuid4()
        with patch(
            "cleanbook.services.subscriptions.get_user_subscription",
            new_callable=AsyncMock, return_value=[],
        ) as mock_service:
            response = client.get(
                "/api/CleaningSubscription/GetUserSubscription", headers=_auth(user_id=user_id),
            )

        assert response.status_code == 200
        assert response.json() == {"message": "User subscriptions", "data": []}
        assert mock_service.await_args.args[1] == user_id


class TestAdminGate:
    @pytest.mark.parametrize("path", [
        "/api/CleaningBooking/GetTopBookingUsers",
        "/api/CleaningBooking/GetTotalEarnings",
        "/api/CleaningSubscription/GetAll",
        f"/api/CleaningSubscription/GetById/{uuid.uuid4()}",
    ])
    def test_customer_refused(self, client, path):
        response = client.get(path, headers=_auth("user"))
        assert response.status_code == 403
        assert response.json() == {"detail": "Admin access required"}

    def test_admin_allowed(self, client):
        with patch(
            "cleanbook.services.reporting.get_total_booking_earnings",
            new_callable=AsyncMock, return_value=305.0,
        ):
            response = client.get("/api/CleaningBooking/GetTotalEarnings", headers=_auth("admin"))

        assert response.status_code == 200
        assert response.json()["data"] == {"total_earnings": 305.0}


class TestPublicEndpoints:
    def test_webhook_needs_no_token(self, client):
        with patch(
            "cleanbook.services.payment_events.handle_webhook",
            new_callable=AsyncMock,
            return_value={"received": True, "event_type": "payment_intent.succeeded", "status": "completed"},
        ) as mock_handle:
            response = client.post(
                "/api/PaymentReceive/WebhookEvent",
                content=b'{"id": "evt_1"}',
                headers={"stripe-signature": "t=1,v1=abc"},
            )

        assert response.status_code == 200
        assert response.json() == {"received": True, "event_type": "payment_intent.succeeded"}
        args = mock_handle.await_args.args
        assert args[1] == b'{"id": "evt_1"}'
        assert args[2] == "t=1,v1=abc"

    def test_unverified_webhook_still_acknowledged(self, client):
        with patch(
            "cleanbook.services.payment_events.handle_webhook",
            new_callable=AsyncMock,
            return_value={"received": True, "event_type": None, "status": "unverified"},
        ):
            response = client.post("/api/PaymentReceive/WebhookEvent", content=b"junk")

        assert response.status_code == 200
        assert response.json() == {"received": True, "event_type": None}

    def test_add_subscription_needs_no_token(self, client):
        with patch(
            "cleanbook.services.subscriptions.add_subscription",
            new_callable=AsyncMock,
            return_value={"subscription": {}, "booking": {}},
        ):
            response = client.post("/api/CleaningSubscription/AddSubscription", json={
                "email": "jane@example.com",
                "full_name": "Jane Doe",
                "cleaning_price": 100,
            })

        assert response.status_code == 201
        assert response.json()["message"] == "Subscription added successfully"

    def test_add_subscription_rejects_bad_payload(self, client):
        response = client.post("/api/CleaningSubscription/AddSubscription", json={
            "email": "not-an-email",
            "full_name": "Jane Doe",
            "cleaning_price": 100,
        })
        assert response.status_code == 422
