"""Tests for signup: pending registration, verification, account creation."""

import asyncio
from datetime import timedelta

from httpx import AsyncClient
from sqlalchemy import func, select

from coinquest.auth.otp import hash_code
from coinquest.auth.pending import PendingRegistrationCache
from coinquest.db.models import Progress, User, Wallet
from tests.conftest import PASSWORD, last_code, open_session, sent_codes

SIGNUP_BODY = {
    "name": "Ada",
    "email": "learner@example.com",
    "password": PASSWORD,
    "age": 14,
    "grade": "8th",
    "school": "Lincoln Middle",
}


async def _count(model, **filters) -> int:
    async with open_session() as session:
        stmt = select(func.count()).select_from(model)
        for column, value in filters.items():
            stmt = stmt.where(getattr(model, column) == value)
        return (await session.execute(stmt)).scalar_one()


class TestSignup:
    async def test_signup_sends_code_and_creates_nothing(self, client: AsyncClient, mock_email_service):
        response = await client.post("/api/v1/auth/signup", json=SIGNUP_BODY)
        assert response.status_code == 200
        assert response.json() == {"requiresOtp": True, "flow": "signup"}

        code = last_code(mock_email_service)
        assert len(code) == 7
        assert code.isdigit()

        kwargs = mock_email_service.send_template.call_args.kwargs
        assert kwargs["to"] == "learner@example.com"
        assert kwargs["context"]["flow"] == "signup"
        assert await _count(User) == 0

    async def test_signup_normalizes_email(self, client: AsyncClient, mock_email_service, pending_cache):
        body = {**SIGNUP_BODY, "email": "  Learner@Example.COM "}
        response = await client.post("/api/v1/auth/signup", json=body)
        assert response.status_code == 200
        assert await pending_cache.get("learner@example.com") is not None

    async def test_second_signup_while_pending_sends_nothing(self, client: AsyncClient, mock_email_service):
        first = await client.post("/api/v1/auth/signup", json=SIGNUP_BODY)
        second = await client.post("/api/v1/auth/signup", json={**SIGNUP_BODY, "name": "Someone Else"})
        assert first.status_code == 200
        assert second.status_code == 200
        assert len(sent_codes(mock_email_service)) == 1

    async def test_concurrent_signups_send_one_code(
        self, client: AsyncClient, mock_email_service, pending_cache: PendingRegistrationCache
    ):
        responses = await asyncio.gather(
            client.post("/api/v1/auth/signup", json=SIGNUP_BODY),
            client.post("/api/v1/auth/signup", json={**SIGNUP_BODY, "name": "Someone Else"}),
        )
        assert [r.status_code for r in responses] == [200, 200]
        assert len(sent_codes(mock_email_service)) == 1

        pending = await pending_cache.get("learner@example.com")
        assert pending.code_hash == hash_code(last_code(mock_email_service))

    async def test_signup_existing_email_conflicts(self, client: AsyncClient, registered_user):
        response = await client.post("/api/v1/auth/signup", json=SIGNUP_BODY)
        assert response.status_code == 409
        assert response.json()["detail"] == "Email already in use"

    async def test_signup_weak_password(self, client: AsyncClient, mock_email_service):
        response = await client.post("/api/v1/auth/signup", json={**SIGNUP_BODY, "password": "weakpass"})
        assert response.status_code == 400
        assert "uppercase" in response.json()["detail"]
        assert sent_codes(mock_email_service) == []

    async def test_signup_rejects_bad_fields(self, client: AsyncClient, mock_email_service):
        for bad in ({"email": "not-an-email"}, {"age": 3}, {"name": "   "}, {"name": "x" * 51}):
            response = await client.post("/api/v1/auth/signup", json={**SIGNUP_BODY, **bad})
            assert response.status_code == 400, bad
        assert sent_codes(mock_email_service) == []

    async def test_malformed_signup_is_a_validation_error(self, client: AsyncClient, mock_email_service):
        response = await client.post("/api/v1/auth/signup", json={**SIGNUP_BODY, "email": "not-an-email", "age": 40})
        assert response.status_code == 400
        data = response.json()
        assert data["detail"] == "Validation error"
        assert {tuple(e["loc"])[-1] for e in data["errors"]} == {"email", "age"}
        assert sent_codes(mock_email_service) == []

    async def test_delivery_failure_removes_pending_entry(
        self, client: AsyncClient, mock_email_service, pending_cache: PendingRegistrationCache
    ):
        mock_email_service.send_template.return_value = False
        response = await client.post("/api/v1/auth/signup", json=SIGNUP_BODY)
        assert response.status_code == 500
        assert response.json()["detail"] == "Error sending email. Please try again later."
        assert await pending_cache.get("learner@example.com") is None

        # The user can simply try again.
        mock_email_service.send_template.return_value = True
        response = await client.post("/api/v1/auth/signup", json=SIGNUP_BODY)
        assert response.status_code == 200
        assert len(sent_codes(mock_email_service)) == 2


class TestSignupVerification:
    async def test_verify_creates_account_and_session(self, client: AsyncClient, mock_email_service):
        await client.post("/api/v1/auth/signup", json=SIGNUP_BODY)
        response = await client.post("/api/v1/auth/verify-otp", json={
            "email": "learner@example.com",
            "otp": last_code(mock_email_service),
            "flow": "signup",
        })
        assert response.status_code == 201
        data = response.json()
        assert data["tokenType"] == "bearer"
        assert data["expiresIn"] > 0
        user = data["user"]
        assert user["email"] == "learner@example.com"
        assert user["name"] == "Ada"
        assert user["grade"] == "8th"
        assert user["level"] == 1
        assert user["xp"] == 0
        assert user["currentStreak"] == 1
        assert user["longestStreak"] == 1
        assert user["lastLoginAt"] is not None
        assert "passwordHash" not in user
        assert "password" not in user
        assert "loginCode" not in user

        me = await client.get("/api/v1/auth/me", headers={"Authorization": f"Bearer {data['token']}"})
        assert me.status_code == 200
        assert me.json()["id"] == user["id"]

    async def test_password_is_stored_hashed(self, client: AsyncClient, registered_user):
        async with open_session() as session:
            user = (await session.execute(select(User))).scalar_one()
        assert user.password_hash != PASSWORD
        assert user.password_hash.startswith("$argon2id$")

    async def test_companions_created_exactly_once(self, client: AsyncClient, registered_user):
        user_id = registered_user["user"]["id"]
        assert await _count(Wallet, user_id=user_id) == 1
        assert await _count(Progress, user_id=user_id) == 1

        async with open_session() as session:
            wallet = await session.get(Wallet, user_id)
        assert wallet.coin_balance == 0
        assert wallet.discretionary_balance == 500

    async def test_code_accepted_only_once(self, client: AsyncClient, mock_email_service):
        await client.post("/api/v1/auth/signup", json=SIGNUP_BODY)
        body = {"email": "learner@example.com", "otp": last_code(mock_email_service), "flow": "signup"}

        first = await client.post("/api/v1/auth/verify-otp", json=body)
        second = await client.post("/api/v1/auth/verify-otp", json=body)
        assert first.status_code == 201
        assert second.status_code == 400
        assert second.json()["detail"] == "No pending signup found. Please sign up again."
        assert await _count(User) == 1

    async def test_concurrent_verification_creates_one_account(self, client: AsyncClient, mock_email_service):
        await client.post("/api/v1/auth/signup", json=SIGNUP_BODY)
        body = {"email": "learner@example.com", "otp": last_code(mock_email_service), "flow": "signup"}

        responses = await asyncio.gather(
            client.post("/api/v1/auth/verify-otp", json=body),
            client.post("/api/v1/auth/verify-otp", json=body),
        )
        statuses = sorted(r.status_code for r in responses)
        assert statuses == [201, 400]
        assert await _count(User) == 1
        assert await _count(Wallet) == 1

    async def test_wrong_code_changes_nothing(
        self, client: AsyncClient, mock_email_service, pending_cache: PendingRegistrationCache
    ):
        await client.post("/api/v1/auth/signup", json=SIGNUP_BODY)
        code = last_code(mock_email_service)
        wrong = "0000000" if code != "0000000" else "1111111"
        before = await pending_cache.get("learner@example.com")

        response = await client.post("/api/v1/auth/verify-otp", json={
            "email": "learner@example.com", "otp": wrong, "flow": "signup",
        })
        assert response.status_code == 400
        assert response.json()["detail"] == "Invalid verification code"
        assert await pending_cache.get("learner@example.com") == before
        assert await _count(User) == 0

        response = await client.post("/api/v1/auth/verify-otp", json={
            "email": "learner@example.com", "otp": code, "flow": "signup",
        })
        assert response.status_code == 201

    async def test_verify_without_signup(self, client: AsyncClient, mock_email_service):
        response = await client.post("/api/v1/auth/verify-otp", json={
            "email": "nobody@example.com", "otp": "1234567", "flow": "signup",
        })
        assert response.status_code == 400
        assert response.json()["detail"] == "No pending signup found. Please sign up again."

    async def test_expired_code_is_rejected_and_entry_dropped(
        self, client: AsyncClient, mock_email_service, pending_cache: PendingRegistrationCache
    ):
        await pending_cache.put(
            "learner@example.com",
            {"name": "Ada", "password": PASSWORD},
            hash_code("1234567"),
            timedelta(seconds=-1),
        )
        response = await client.post("/api/v1/auth/verify-otp", json={
            "email": "learner@example.com", "otp": "1234567", "flow": "signup",
        })
        assert response.status_code == 400
        assert response.json()["detail"] == "Verification code has expired. Please sign up again."
        assert await pending_cache.get("learner@example.com") is None
        assert await _count(User) == 0

        # An expired entry no longer blocks a fresh signup.
        response = await client.post("/api/v1/auth/signup", json=SIGNUP_BODY)
        assert response.status_code == 200
        assert len(sent_codes(mock_email_service)) == 1

    async def test_malformed_code_rejected_by_validation(self, client: AsyncClient, mock_email_service):
        for otp in ("123456", "12345678", "abcdefg"):
            response = await client.post("/api/v1/auth/verify-otp", json={
                "email": "learner@example.com", "otp": otp, "flow": "signup",
            })
            assert response.status_code == 400, otp
