"""
Password hashing and validation using argon2id.

Passwords of pending signups stay unhashed until the account is
materialized; everything persisted goes through ``hash_password``.
"""

from __future__ import annotations

import argon2

from coinquest.config import get_settings
from coinquest.errors import ValidationError

_hasher = argon2.PasswordHasher(
    time_cost=2,
    memory_cost=65536,  # 64 MB
    parallelism=1,
    hash_len=32,
    salt_len=16,
    type=argon2.Type.ID,
)


class PasswordStrengthError(ValidationError):
    """Raised when a password does not meet strength requirements."""


def hash_password(password: str) -> str:
    """Hash a password using argon2id. Returns the full encoded hash."""
    return _hasher.hash(password)


def verify_password(password: str, password_hash: str) -> bool:
    """
    Verify a password against its argon2id hash.

    Returns True if the password matches. Never raises on mismatch.
    """
    try:
        return _hasher.verify(password_hash, password)
    except argon2.exceptions.VerifyMismatchError:
        return False
    except argon2.exceptions.InvalidHashError:
        return False


def check_needs_rehash(password_hash: str) -> bool:
    """Check if the hash was produced with outdated parameters."""
    return _hasher.check_needs_rehash(password_hash)


# Hash of a throwaway value; verified against when the account does not exist
# so unknown-email and wrong-password logins cost the same.
_DUMMY_HASH = _hasher.hash("coinquest-timing-equalizer")


def burn_verification(password: str) -> None:
    """Spend one argon2 verification without a real account."""
    verify_password(password, _DUMMY_HASH)


def validate_password_strength(password: str) -> None:
    """
    Validate password meets minimum strength requirements.

    Raises PasswordStrengthError if the password is too weak.

    Requirements:
    - Minimum 8 characters
    - Maximum 128 characters
    - At least one uppercase letter, one lowercase letter, one digit
    - At least one character that is not a letter or digit
    """
    settings = get_settings()
    if not password or not password.strip():
        msg = "Password cannot be empty"
        raise PasswordStrengthError(msg)
    if len(password) < settings.password_min_length:
        msg = f"Password must be at least {settings.password_min_length} characters"
        raise PasswordStrengthError(msg)
    if len(password) > settings.password_max_length:
        msg = f"Password must not exceed {settings.password_max_length} characters"
        raise PasswordStrengthError(msg)
    if not any(c.isupper() for c in password):
        msg = "Password must contain at least one uppercase letter"
        raise PasswordStrengthError(msg)
    if not any(c.islower() for c in password):
        msg = "Password must contain at least one lowercase letter"
        raise PasswordStrengthError(msg)
    if not any(c.isdigit() for c in password):
        msg = "Password must contain at least one digit"
        raise PasswordStrengthError(msg)
    if all(c.isalnum() for c in password):
        msg = "Password must contain at least one special character"
        raise PasswordStrengthError(msg)
