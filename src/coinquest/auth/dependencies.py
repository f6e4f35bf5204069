"""FastAPI authentication dependencies."""

from __future__ import annotations

import jwt
from fastapi import Depends, Security
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from sqlalchemy.ext.asyncio import AsyncSession

from coinquest.auth.jwt import verify_token
from coinquest.auth.service import get_user_by_id
from coinquest.database import get_session
from coinquest.db.models import User
from coinquest.errors import Unauthorized

_bearer = HTTPBearer(auto_error=False)


async def get_current_user(
    credentials: HTTPAuthorizationCredentials | None = Security(_bearer),
    db: AsyncSession = Depends(get_session),
) -> User:
    """
    Extract and verify the bearer token, return the User model.

    Raises Unauthorized (401) on a missing, invalid or expired token, or
    when the account no longer exists.
    """
    if credentials is None:
        raise Unauthorized
    try:
        payload = verify_token(credentials.credentials)
    except jwt.InvalidTokenError as e:
        raise Unauthorized(str(e)) from e

    user = await get_user_by_id(db, int(payload["sub"]))
    if user is None:
        msg = "User not found"
        raise Unauthorized(msg)
    return user
