"""Authentication helpers and FastAPI security dependencies.

`get_current_user` validates the bearer token and returns the
corresponding `User` from the request's database session.
`require_admin` narrows that to the admin and superadmin roles.

Failures raise `AuthenticationError` / `AuthorizationError`; the
exception handler in `main.py` renders them as 401 / 403.
"""

from typing import Optional
from fastapi import Depends, Security
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from sqlmodel import Session
from .database import get_session
from .errors import AuthenticationError, AuthorizationError
from . import models, services

# auto_error is off so a missing header goes through our own 401 envelope
bearer_scheme = HTTPBearer(auto_error=False)


def get_current_user(
    credentials: Optional[HTTPAuthorizationCredentials] = Security(bearer_scheme),
    session: Session = Depends(get_session),
) -> models.User:
    """FastAPI dependency that returns the authenticated user."""
    if credentials is None or not credentials.credentials:
        raise AuthenticationError("authentication required")
    return services.AuthService(session).user_from_token(credentials.credentials)


def require_admin(user: models.User = Depends(get_current_user)) -> models.User:
    if not user.is_privileged:
        raise AuthorizationError("admin role required")
    return user
