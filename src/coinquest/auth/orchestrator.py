"""
Two-step authentication flow.

signup/login → code sent → verify-otp → session token.

Signups wait in the pending cache until their code is verified; login
challenges live on the account row. Every issuance is an atomic
conditional write, and every issuance whose email cannot be delivered is
rolled back before ``DeliveryFailed`` is raised.
"""

from __future__ import annotations

from datetime import datetime, timedelta, timezone
from typing import TYPE_CHECKING, Any, Literal, NamedTuple

import structlog
from sqlalchemy.exc import SQLAlchemyError

from coinquest.auth import service
from coinquest.auth.jwt import create_access_token
from coinquest.auth.otp import codes_match, hash_code, issue_code
from coinquest.auth.password import burn_verification, validate_password_strength, verify_password
from coinquest.auth.pending import Cooldown
from coinquest.config import Settings, get_settings
from coinquest.errors import (
    Conflict,
    DeliveryFailed,
    Expired,
    InvalidCode,
    InvalidCredentials,
    InvalidState,
    ValidationError,
)
from coinquest.rewards.ledger import ensure_companions

if TYPE_CHECKING:
    from sqlalchemy.ext.asyncio import AsyncSession

    from coinquest.auth.pending import PendingRegistrationCache
    from coinquest.db.models import User
    from coinquest.email.service import EmailService

logger = structlog.get_logger()

Flow = Literal["signup", "login"]

SIGNUP_EXPIRED = "Verification code has expired. Please sign up again."
LOGIN_EXPIRED = "Verification code has expired. Please log in again."


class VerifiedSession(NamedTuple):
    user: User
    token: str
    created: bool


class AuthOrchestrator:
    """Drives one request through the OTP state machine."""

    def __init__(
        self,
        db: AsyncSession,
        pending: PendingRegistrationCache,
        email_service: EmailService,
        settings: Settings | None = None,
    ) -> None:
        self.db = db
        self.pending = pending
        self.email_service = email_service
        self.settings = settings or get_settings()

    @property
    def code_ttl(self) -> timedelta:
        return timedelta(minutes=self.settings.otp_ttl_minutes)

    @property
    def cooldown(self) -> timedelta:
        return timedelta(seconds=self.settings.otp_resend_cooldown_seconds)

    async def _deliver(self, email: str, name: str | None, code: str, flow: Flow) -> bool:
        sent = await self.email_service.send_template(
            to=email,
            template_name="otp_code",
            context={
                "name": name,
                "code": code,
                "flow": flow,
                "ttl_minutes": self.settings.otp_ttl_minutes,
            },
        )
        if sent:
            logger.info("otp_issued", flow=flow, email=email)
        else:
            logger.warning("otp_delivery_failed", flow=flow, email=email)
        return sent

    async def _authenticate(self, email: str, password: str) -> User:
        """Check email + password. Both failure cases raise the same error."""
        user = await service.get_user_by_email(self.db, email)
        if user is None:
            burn_verification(password)
            raise InvalidCredentials
        if not verify_password(password, user.password_hash):
            raise InvalidCredentials
        return user

    # ------------------------------------------------------------------
    # signup
    # ------------------------------------------------------------------

    async def signup(self, data: dict[str, Any], now: datetime | None = None) -> None:
        """
        Start a signup.

        A second call while a signup for the same email is still live changes
        nothing and sends nothing.

        Raises:
            Conflict: An account with this email already exists.
            ValidationError: The password is too weak.
            DeliveryFailed: The code could not be sent (the pending entry is removed).
        """
        now = now or datetime.now(timezone.utc)
        email = service.normalize_email(data["email"])
        validate_password_strength(data["password"])

        if await service.email_exists(self.db, email):
            raise Conflict

        issued = issue_code(self.settings.otp_length)
        inserted = await self.pending.put(email, {**data, "email": email}, issued.code_hash, self.code_ttl, now)
        if not inserted:
            logger.info("signup_already_pending", email=email)
            return

        if not await self._deliver(email, data.get("name"), issued.code, "signup"):
            await self.pending.consume(email, issued.code_hash)
            raise DeliveryFailed

    # ------------------------------------------------------------------
    # login
    # ------------------------------------------------------------------

    async def login(self, email: str, password: str, now: datetime | None = None) -> None:
        """
        Check the password and open a login challenge.

        If a live challenge already exists no new code is issued.

        Raises:
            InvalidCredentials: Unknown email or wrong password.
            DeliveryFailed: The code could not be sent (the challenge is cleared).
        """
        now = now or datetime.now(timezone.utc)
        email = service.normalize_email(email)
        user = await self._authenticate(email, password)
        await service.upgrade_password_hash(self.db, user, password)

        issued = issue_code(self.settings.otp_length)
        opened = await service.open_login_challenge(self.db, user.id, issued.code_hash, self.code_ttl, now)
        await self.db.commit()
        if not opened:
            logger.info("login_challenge_already_live", user_id=user.id)
            return

        if not await self._deliver(email, user.name, issued.code, "login"):
            await service.restore_login_challenge(
                self.db, user.id, issued.code_hash, service.LoginChallenge(None, None, None)
            )
            await self.db.commit()
            raise DeliveryFailed

    # ------------------------------------------------------------------
    # resend
    # ------------------------------------------------------------------

    async def resend(
        self,
        email: str,
        flow: Flow,
        password: str | None = None,
        now: datetime | None = None,
    ) -> None:
        """
        Issue a replacement code once the cooldown has elapsed.

        The previous code stops working as soon as the new one is stored.

        Raises:
            TooManyRequests: Cooldown not yet elapsed (``waitSeconds`` attached).
            InvalidState: No pending signup for this email.
            InvalidCredentials: Login resend with a wrong or unknown password.
            DeliveryFailed: The new code could not be sent (the previous code is restored).
        """
        now = now or datetime.now(timezone.utc)
        email = service.normalize_email(email)
        if flow == "signup":
            await self._resend_signup(email, now)
        else:
            if not password:
                msg = "Password is required to resend a login code"
                raise ValidationError(msg)
            await self._resend_login(email, password, now)

    async def _resend_signup(self, email: str, now: datetime) -> None:
        issued = issue_code(self.settings.otp_length)
        previous = await self.pending.replace_code(email, issued.code_hash, self.code_ttl, now)
        if previous is None:
            raise InvalidState

        if not await self._deliver(email, previous.name, issued.code, "signup"):
            await self.pending.restore(email, issued.code_hash, previous, now)
            raise DeliveryFailed

    async def _resend_login(self, email: str, password: str, now: datetime) -> None:
        user = await self._authenticate(email, password)

        previous = await service.read_login_challenge(self.db, user.id)
        issued = issue_code(self.settings.otp_length)
        wait = await service.reissue_login_challenge(
            self.db, user.id, issued.code_hash, self.code_ttl, self.cooldown, now
        )
        if wait > 0:
            await self.db.rollback()
            raise Cooldown(wait)
        await self.db.commit()

        if not await self._deliver(email, user.name, issued.code, "login"):
            await service.restore_login_challenge(self.db, user.id, issued.code_hash, previous)
            await self.db.commit()
            raise DeliveryFailed

    # ------------------------------------------------------------------
    # verify
    # ------------------------------------------------------------------

    async def verify(self, email: str, otp: str, flow: Flow, now: datetime | None = None) -> VerifiedSession:
        """
        Check a submitted code and issue a session.

        A wrong code changes nothing. A right code is accepted exactly once.

        Raises:
            InvalidState: No pending signup (never started or already verified).
            Expired: The code has expired or was consumed concurrently.
            InvalidCode: The code does not match.
        """
        now = now or datetime.now(timezone.utc)
        email = service.normalize_email(email)
        submitted = hash_code(otp)
        if flow == "signup":
            return await self._verify_signup(email, submitted, now)
        return await self._verify_login(email, submitted, now)

    async def _verify_signup(self, email: str, submitted: str, now: datetime) -> VerifiedSession:
        entry = await self.pending.get(email)
        if entry is None:
            raise InvalidState
        if not entry.is_live(now):
            await self.pending.consume(email, entry.code_hash)
            raise Expired(SIGNUP_EXPIRED)
        if not codes_match(entry.code_hash, submitted):
            raise InvalidCode

        # Only the request that removes the entry may materialize it.
        consumed = await self.pending.consume(email, entry.code_hash)
        if consumed is None:
            raise InvalidState

        try:
            user = await service.create_user_from_pending(self.db, consumed, now)
            await ensure_companions(self.db, user.id, now)
            await self.db.commit()
        except Conflict:
            raise
        except SQLAlchemyError:
            await self.db.rollback()
            await self.pending.store.insert_if_absent(consumed, now)
            raise

        logger.info("signup_verified", user_id=user.id, email=email)
        return VerifiedSession(user=user, token=create_access_token(user.id), created=True)

    async def _verify_login(self, email: str, submitted: str, now: datetime) -> VerifiedSession:
        user = await service.get_user_by_email(self.db, email)
        if (
            user is None
            or user.login_code is None
            or user.login_code_expires_at is None
            or user.login_code_expires_at <= now
        ):
            raise Expired(LOGIN_EXPIRED)
        if not codes_match(user.login_code, submitted):
            raise InvalidCode

        await service.consume_login_challenge(self.db, user.id, submitted, now)
        await service.record_login(self.db, user, now=now)
        await ensure_companions(self.db, user.id, now)
        await self.db.commit()

        logger.info(
            "login_verified",
            user_id=user.id,
            current_streak=user.current_streak,
            longest_streak=user.longest_streak,
        )
        return VerifiedSession(user=user, token=create_access_token(user.id), created=False)
