"""Request/response schemas for authentication endpoints."""

from __future__ import annotations

from datetime import datetime
from typing import Literal

from pydantic import EmailStr, Field, field_validator

from coinquest.schemas import CamelModel


def _normalize_email(v: str) -> str:
    v = v.strip().lower()
    if len(v) > 100:
        msg = "Email must be at most 100 characters"
        raise ValueError(msg)
    return v


# ---------------------------------------------------------------------------
# OTP flow
# ---------------------------------------------------------------------------


class SignupRequest(CamelModel):
    """Start a signup. Nothing is persisted until the code is verified."""

    name: str = Field(..., min_length=1, max_length=50)
    email: EmailStr
    password: str = Field(..., min_length=1, max_length=128)
    age: int | None = Field(None, ge=5, le=25)
    grade: str | None = Field(None, max_length=20)
    school: str | None = Field(None, max_length=100)

    @field_validator("name")
    @classmethod
    def strip_name(cls, v: str) -> str:
        v = v.strip()
        if not v:
            msg = "Name cannot be blank"
            raise ValueError(msg)
        return v

    @field_validator("email", mode="before")
    @classmethod
    def normalize_email(cls, v: str) -> str:
        return _normalize_email(v) if isinstance(v, str) else v


class LoginRequest(CamelModel):
    """Login with email + password; a code is sent on success."""

    email: EmailStr
    password: str = Field(..., min_length=1, max_length=128)

    @field_validator("email", mode="before")
    @classmethod
    def normalize_email(cls, v: str) -> str:
        return _normalize_email(v) if isinstance(v, str) else v


class ResendOtpRequest(CamelModel):
    """Ask for a fresh code. Login resends must re-supply the password."""

    email: EmailStr
    flow: Literal["signup", "login"]
    password: str | None = Field(None, max_length=128)

    @field_validator("email", mode="before")
    @classmethod
    def normalize_email(cls, v: str) -> str:
        return _normalize_email(v) if isinstance(v, str) else v


class VerifyOtpRequest(CamelModel):
    """Submit the emailed code."""

    email: EmailStr
    otp: str = Field(..., pattern=r"^[0-9]{7}$")
    flow: Literal["signup", "login"]

    @field_validator("email", mode="before")
    @classmethod
    def normalize_email(cls, v: str) -> str:
        return _normalize_email(v) if isinstance(v, str) else v

    @field_validator("otp", mode="before")
    @classmethod
    def strip_otp(cls, v: str) -> str:
        return v.strip() if isinstance(v, str) else v


class OtpSentResponse(CamelModel):
    requires_otp: bool = True
    flow: Literal["signup", "login"]


# ---------------------------------------------------------------------------
# Users
# ---------------------------------------------------------------------------


class UserResponse(CamelModel):
    """Sanitized account. Never carries the password hash or the login challenge."""

    id: int
    email: str
    name: str
    age: int | None = None
    grade: str | None = None
    school: str | None = None
    knowledge_level: str = "Beginner"
    level: int = 1
    xp: int = 0
    current_streak: int = 1
    longest_streak: int = 1
    last_login_at: datetime | None = None
    created_at: datetime | None = None


class TokenResponse(CamelModel):
    """Session issued after a verified code."""

    token: str
    token_type: str = "bearer"
    expires_in: int
    user: UserResponse


class ProfileUpdateRequest(CamelModel):
    """Partial profile update; omitted fields are left alone."""

    name: str | None = Field(None, min_length=1, max_length=50)
    age: int | None = Field(None, ge=5, le=25)
    grade: str | None = Field(None, max_length=20)
    school: str | None = Field(None, max_length=100)
    knowledge_level: Literal["Beginner", "Intermediate", "Advanced"] | None = None


class XpRequest(CamelModel):
    amount: int = Field(..., ge=1, le=1000)


class XpResponse(CamelModel):
    xp: int
    level: int
    title: str
    leveled_up: bool


# ---------------------------------------------------------------------------
# Passwords
# ---------------------------------------------------------------------------


class ForgotPasswordRequest(CamelModel):
    email: EmailStr

    @field_validator("email", mode="before")
    @classmethod
    def normalize_email(cls, v: str) -> str:
        return _normalize_email(v) if isinstance(v, str) else v


class ResetPasswordRequest(CamelModel):
    """New password; the token travels in the URL path."""

    password: str = Field(..., min_length=1, max_length=128)


class ChangePasswordRequest(CamelModel):
    """Change password (requires current password)."""

    current_password: str = Field(..., min_length=1, max_length=128)
    new_password: str = Field(..., min_length=1, max_length=128)
