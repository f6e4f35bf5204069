"""One-time code issuing and comparison."""

from __future__ import annotations

import hashlib
import hmac
import secrets
from typing import NamedTuple

from coinquest.config import get_settings


class IssuedCode(NamedTuple):
    """A freshly generated code: the plaintext goes to the user, the hash is stored."""

    code: str
    code_hash: str


def hash_code(code: str) -> str:
    """SHA-256 hex digest of a code."""
    return hashlib.sha256(code.encode("ascii")).hexdigest()


def issue_code(length: int | None = None) -> IssuedCode:
    """Draw a uniformly random numeric code (leading zeros allowed)."""
    if length is None:
        length = get_settings().otp_length
    code = str(secrets.randbelow(10**length)).zfill(length)
    return IssuedCode(code=code, code_hash=hash_code(code))


def codes_match(stored_hash: str | None, submitted_hash: str) -> bool:
    """Constant-time comparison of two code hashes."""
    if not stored_hash:
        return False
    return hmac.compare_digest(stored_hash, submitted_hash)
