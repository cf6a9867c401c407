"""Authentication helpers and FastAPI security dependency.

`decode_token` verifies a bearer JWT and `get_current_user` resolves it
to an active `User` loaded in the request's database session. Token
problems surface as `AuthError` (401); role and ownership decisions are
left to `policy.enforce`.
"""

import jwt
from fastapi import Depends, Security
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from sqlmodel import Session

from . import models, repositories
from .config import settings
from .database import get_session
from .errors import AuthError

bearer_scheme = HTTPBearer(auto_error=False)


def decode_token(token: str) -> dict:
    """Decode and verify a JWT token, raising AuthError on failure."""
    try:
        return jwt.decode(token, settings.JWT_SECRET, algorithms=[settings.JWT_ALGORITHM])
    except jwt.ExpiredSignatureError:
        raise AuthError("Token expired")
    except jwt.InvalidTokenError:
        raise AuthError("Invalid token")


def get_current_user(
    credentials: HTTPAuthorizationCredentials = Security(bearer_scheme),
    db: Session = Depends(get_session),
) -> models.User:
    """FastAPI dependency that returns the authenticated, active user."""
    if credentials is None or not credentials.credentials:
        raise AuthError("Not authorized, no token")
    payload = decode_token(credentials.credentials)
    user_id = payload.get("user_id")
    if not user_id:
        raise AuthError("Invalid token payload")
    user = repositories.UserRepository(db).get(user_id)
    if not user:
        raise AuthError("User not found")
    if not user.is_active:
        raise AuthError("Account is deactivated")
    return user
