"""Authentication endpoints under /api/v1/auth."""

from __future__ import annotations

import structlog
from fastapi import APIRouter, Depends, Request, Response
from sqlalchemy.ext.asyncio import AsyncSession

from coinquest.auth.dependencies import get_current_user
from coinquest.auth.orchestrator import AuthOrchestrator
from coinquest.auth.password import validate_password_strength, verify_password
from coinquest.auth.pending import get_pending_cache
from coinquest.auth.schemas import (
    ChangePasswordRequest,
    ForgotPasswordRequest,
    LoginRequest,
    OtpSentResponse,
    ProfileUpdateRequest,
    ResendOtpRequest,
    ResetPasswordRequest,
    SignupRequest,
    TokenResponse,
    UserResponse,
    VerifyOtpRequest,
    XpRequest,
    XpResponse,
)
from coinquest.auth.service import (
    consume_reset_token,
    create_reset_token,
    delete_reset_token,
    get_user_by_email,
    get_user_by_id,
    set_password,
    update_profile,
)
from coinquest.config import get_settings
from coinquest.database import get_session
from coinquest.db.models import User
from coinquest.email.service import EmailService, get_email_service
from coinquest.errors import Expired, InvalidCredentials
from coinquest.redis_client import get_redis, redis_initialized
from coinquest.rewards.ledger import add_xp
from coinquest.rewards.levels import compute_level
from coinquest.schemas import OkResponse

logger = structlog.get_logger()

router = APIRouter(prefix="/api/v1/auth", tags=["Authentication"])


def _email_service() -> EmailService:
    return get_email_service(get_redis() if redis_initialized() else None)


def get_orchestrator(db: AsyncSession = Depends(get_session)) -> AuthOrchestrator:
    """Per-request orchestrator bound to the request's session."""
    return AuthOrchestrator(db, get_pending_cache(), _email_service())


def _user_response(user: User) -> UserResponse:
    return UserResponse.model_validate(user)


async def _notify_password_changed(user: User) -> None:
    sent = await _email_service().send_template(
        to=user.email,
        template_name="password_changed",
        context={"name": user.name},
    )
    if not sent:
        logger.warning("password_changed_email_failed", user_id=user.id)


# ---------------------------------------------------------------------------
# OTP flow
# ---------------------------------------------------------------------------


@router.post("/signup", response_model=OtpSentResponse)
async def signup(
    body: SignupRequest,
    auth: AuthOrchestrator = Depends(get_orchestrator),
) -> OtpSentResponse:
    """Start a signup and email a verification code."""
    await auth.signup(body.model_dump())
    return OtpSentResponse(flow="signup")


@router.post("/login", response_model=OtpSentResponse)
async def login(
    body: LoginRequest,
    auth: AuthOrchestrator = Depends(get_orchestrator),
) -> OtpSentResponse:
    """Check email + password and email a login code."""
    await auth.login(body.email, body.password)
    return OtpSentResponse(flow="login")


@router.post("/resend-otp", response_model=OkResponse)
async def resend_otp(
    body: ResendOtpRequest,
    auth: AuthOrchestrator = Depends(get_orchestrator),
) -> OkResponse:
    """Issue a replacement code after the cooldown."""
    await auth.resend(body.email, body.flow, body.password)
    return OkResponse()


@router.post("/verify-otp", response_model=TokenResponse)
async def verify_otp(
    body: VerifyOtpRequest,
    response: Response,
    auth: AuthOrchestrator = Depends(get_orchestrator),
) -> TokenResponse:
    """Verify a code. 201 when a new account was created, 200 for a login."""
    session = await auth.verify(body.email, body.otp, body.flow)
    response.status_code = 201 if session.created else 200
    return TokenResponse(
        token=session.token,
        expires_in=get_settings().jwt_access_token_expire_minutes * 60,
        user=_user_response(session.user),
    )


@router.post("/logout", response_model=OkResponse)
async def logout(_user: User = Depends(get_current_user)) -> OkResponse:
    """Tokens are stateless; the client discards its copy."""
    return OkResponse()


# ---------------------------------------------------------------------------
# Current user
# ---------------------------------------------------------------------------


@router.get("/me", response_model=UserResponse)
async def me(user: User = Depends(get_current_user)) -> UserResponse:
    return _user_response(user)


@router.patch("/me", response_model=UserResponse)
async def update_me(
    body: ProfileUpdateRequest,
    user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_session),
) -> UserResponse:
    """Update profile fields."""
    await update_profile(db, user, body.model_dump(exclude_unset=True, exclude_none=True))
    await db.commit()
    return _user_response(user)


@router.post("/xp", response_model=XpResponse)
async def grant_xp(
    body: XpRequest,
    user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_session),
) -> XpResponse:
    """Add XP to the current account and recompute its level."""
    old_level = user.level
    updated = await add_xp(db, user.id, body.amount)
    await db.commit()
    info = compute_level(updated.xp)
    return XpResponse(
        xp=updated.xp,
        level=updated.level,
        title=info["title"],
        leveled_up=updated.level > old_level,
    )


# ---------------------------------------------------------------------------
# Passwords
# ---------------------------------------------------------------------------


@router.post("/forgot-password", response_model=OkResponse)
async def forgot_password(
    body: ForgotPasswordRequest,
    request: Request,
    db: AsyncSession = Depends(get_session),
) -> OkResponse:
    """Email a reset link. Always returns 200, whether or not the account exists."""
    user = await get_user_by_email(db, body.email)
    if user is None:
        return OkResponse()

    raw_token, token_id = await create_reset_token(
        db,
        user.id,
        ip_address=request.client.host if request.client else None,
    )
    await db.commit()

    settings = get_settings()
    reset_url = f"{settings.frontend_base_url}/reset-password/{raw_token}"
    sent = await _email_service().send_template(
        to=user.email,
        template_name="password_reset",
        context={"name": user.name, "reset_url": reset_url},
    )
    if not sent:
        await delete_reset_token(db, token_id)
        await db.commit()
        logger.warning("password_reset_email_failed", user_id=user.id)
    return OkResponse()


@router.post("/reset-password/{token}", response_model=OkResponse)
async def reset_password(
    token: str,
    body: ResetPasswordRequest,
    db: AsyncSession = Depends(get_session),
) -> OkResponse:
    """Set a new password with a single-use emailed token."""
    validate_password_strength(body.password)

    user_id = await consume_reset_token(db, token)
    user = await get_user_by_id(db, user_id)
    if user is None:
        msg = "Invalid or expired reset token"
        raise Expired(msg)

    await set_password(db, user, body.password)
    await db.commit()
    logger.info("password_reset_complete", user_id=user.id)
    await _notify_password_changed(user)
    return OkResponse()


@router.post("/change-password", response_model=OkResponse)
async def change_password(
    body: ChangePasswordRequest,
    user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_session),
) -> OkResponse:
    """Change password after re-checking the current one."""
    if not verify_password(body.current_password, user.password_hash):
        msg = "Current password is incorrect"
        raise InvalidCredentials(msg)
    validate_password_strength(body.new_password)

    await set_password(db, user, body.new_password)
    await db.commit()
    logger.info("password_changed", user_id=user.id)
    await _notify_password_changed(user)
    return OkResponse()
