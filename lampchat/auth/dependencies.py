"""
FastAPI dependencies for authentication.

The session token is read from an ``Authorization: Bearer`` header or,
failing that, from the session cookie.
"""

from typing import Annotated

from fastapi import Depends, Request
from sqlalchemy.orm import Session

from lampchat.auth.session import validate_session
from lampchat.config import get_settings
from lampchat.core import SessionExpiredError, UnauthorizedError
from lampchat.db import get_db
from lampchat.db.models import User


def get_session_token(request: Request) -> str | None:
    """Extract the session token from the request."""
    authorization = request.headers.get("authorization", "")
    scheme, _, credentials = authorization.partition(" ")
    if scheme.lower() == "bearer" and credentials.strip():
        return credentials.strip()
    settings = get_settings()
    return request.cookies.get(settings.session_cookie_name)


async def require_auth(
    request: Request,
    db: Annotated[Session, Depends(get_db)],
) -> User:
    """
    Require authentication - raises if not authenticated.

    Raises:
        UnauthorizedError: If no token was sent.
        SessionExpiredError: If the token is unknown or expired.
    """
    token = get_session_token(request)
    if not token:
        raise UnauthorizedError()

    result = validate_session(db, token)
    if not result:
        raise SessionExpiredError()

    _, user = result
    return user


RequireAuth = Annotated[User, Depends(require_auth)]
