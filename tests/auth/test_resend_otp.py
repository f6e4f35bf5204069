"""Tests for code resends and their cooldown."""

from datetime import datetime, timedelta, timezone

from httpx import AsyncClient

from coinquest.auth.otp import hash_code
from coinquest.auth.pending import PendingRegistrationCache
from tests.conftest import PASSWORD, backdate_login_challenge, last_code, sent_codes

OLD_CODE = "1234567"


async def _stale_pending_signup(cache: PendingRegistrationCache, email: str = "learner@example.com") -> None:
    """A live pending signup whose code was issued two minutes ago."""
    await cache.put(
        email,
        {"name": "Ada", "password": PASSWORD, "age": 14},
        hash_code(OLD_CODE),
        timedelta(minutes=10),
        now=datetime.now(timezone.utc) - timedelta(minutes=2),
    )


class TestSignupResend:
    async def test_resend_inside_cooldown(self, client: AsyncClient, mock_email_service):
        await client.post("/api/v1/auth/signup", json={
            "name": "Ada", "email": "learner@example.com", "password": PASSWORD,
        })
        response = await client.post("/api/v1/auth/resend-otp", json={
            "email": "learner@example.com", "flow": "signup",
        })
        assert response.status_code == 429
        wait = response.json()["waitSeconds"]
        assert 1 <= wait <= 60
        assert response.headers["Retry-After"] == str(wait)
        assert len(sent_codes(mock_email_service)) == 1

    async def test_resend_after_cooldown_replaces_code(
        self, client: AsyncClient, mock_email_service, pending_cache: PendingRegistrationCache
    ):
        await _stale_pending_signup(pending_cache)

        response = await client.post("/api/v1/auth/resend-otp", json={
            "email": "learner@example.com", "flow": "signup",
        })
        assert response.status_code == 200
        assert response.json() == {"ok": True}
        new_code = last_code(mock_email_service)

        response = await client.post("/api/v1/auth/verify-otp", json={
            "email": "learner@example.com", "otp": OLD_CODE, "flow": "signup",
        })
        assert response.status_code == 400
        assert response.json()["detail"] == "Invalid verification code"

        response = await client.post("/api/v1/auth/verify-otp", json={
            "email": "learner@example.com", "otp": new_code, "flow": "signup",
        })
        assert response.status_code == 201
        assert response.json()["user"]["name"] == "Ada"

    async def test_resend_without_pending_signup(self, client: AsyncClient, mock_email_service):
        response = await client.post("/api/v1/auth/resend-otp", json={
            "email": "nobody@example.com", "flow": "signup",
        })
        assert response.status_code == 400
        assert response.json()["detail"] == "No pending signup found. Please sign up again."

    async def test_unknown_flow_is_a_validation_error(self, client: AsyncClient, mock_email_service):
        response = await client.post("/api/v1/auth/resend-otp", json={
            "email": "learner@example.com", "flow": "bogus",
        })
        assert response.status_code == 400
        assert response.json()["detail"] == "Validation error"
        assert sent_codes(mock_email_service) == []

    async def test_delivery_failure_restores_previous_code(
        self, client: AsyncClient, mock_email_service, pending_cache: PendingRegistrationCache
    ):
        await _stale_pending_signup(pending_cache)
        mock_email_service.send_template.return_value = False

        response = await client.post("/api/v1/auth/resend-otp", json={
            "email": "learner@example.com", "flow": "signup",
        })
        assert response.status_code == 500

        entry = await pending_cache.get("learner@example.com")
        assert entry is not None
        assert entry.code_hash == hash_code(OLD_CODE)

        response = await client.post("/api/v1/auth/verify-otp", json={
            "email": "learner@example.com", "otp": OLD_CODE, "flow": "signup",
        })
        assert response.status_code == 201


class TestLoginResend:
    async def test_cooldown_then_resend(self, client: AsyncClient, registered_user, mock_email_service):
        await client.post("/api/v1/auth/login", json={"email": "learner@example.com", "password": PASSWORD})
        first_code = last_code(mock_email_service)
        resend = {"email": "learner@example.com", "flow": "login", "password": PASSWORD}

        response = await client.post("/api/v1/auth/resend-otp", json=resend)
        assert response.status_code == 429
        assert 55 <= response.json()["waitSeconds"] <= 60

        await backdate_login_challenge("learner@example.com", 61)
        response = await client.post("/api/v1/auth/resend-otp", json=resend)
        assert response.status_code == 200
        second_code = last_code(mock_email_service)
        assert len(sent_codes(mock_email_service)) == 2

        response = await client.post("/api/v1/auth/verify-otp", json={
            "email": "learner@example.com", "otp": first_code, "flow": "login",
        })
        if first_code != second_code:
            assert response.status_code == 400
            assert response.json()["detail"] == "Invalid verification code"

        response = await client.post("/api/v1/auth/verify-otp", json={
            "email": "learner@example.com", "otp": second_code, "flow": "login",
        })
        assert response.status_code == 200

    async def test_resend_requires_password(self, client: AsyncClient, registered_user, mock_email_service):
        response = await client.post("/api/v1/auth/resend-otp", json={
            "email": "learner@example.com", "flow": "login",
        })
        assert response.status_code == 400
        assert response.json()["detail"] == "Password is required to resend a login code"

    async def test_resend_wrong_password(self, client: AsyncClient, registered_user, mock_email_service):
        response = await client.post("/api/v1/auth/resend-otp", json={
            "email": "learner@example.com", "flow": "login", "password": "WrongP@ss1",
        })
        assert response.status_code == 401
        assert response.json() == {"detail": "Invalid credentials"}
        assert sent_codes(mock_email_service) == []

    async def test_delivery_failure_restores_previous_challenge(
        self, client: AsyncClient, registered_user, mock_email_service
    ):
        await client.post("/api/v1/auth/login", json={"email": "learner@example.com", "password": PASSWORD})
        first_code = last_code(mock_email_service)
        await backdate_login_challenge("learner@example.com", 61)

        mock_email_service.send_template.return_value = False
        response = await client.post("/api/v1/auth/resend-otp", json={
            "email": "learner@example.com", "flow": "login", "password": PASSWORD,
        })
        assert response.status_code == 500

        response = await client.post("/api/v1/auth/verify-otp", json={
            "email": "learner@example.com", "otp": first_code, "flow": "login",
        })
        assert response.status_code == 200
