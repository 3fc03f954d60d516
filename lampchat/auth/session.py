"""
Session verification.

Sessions are stored server-side with the token hashed (never in plain
text). Issuing sessions belongs to the external auth service; the
``create_session`` helper exists for scripts and tests.
"""

import hashlib
import secrets
from datetime import timedelta

from sqlalchemy import select
from sqlalchemy.orm import Session

from lampchat.core.time import utcnow
from lampchat.db.models import User, UserSession

DEFAULT_SESSION_TTL_SECONDS = 7 * 24 * 3600


def _hash_token(token: str) -> str:
    """SHA-256 hex digest of a session token."""
    return hashlib.sha256(token.encode()).hexdigest()


def generate_session_token() -> str:
    """Generate a URL-safe random token (32 bytes of entropy)."""
    return secrets.token_urlsafe(32)


def create_session(
    db: Session,
    user: User,
    ttl_seconds: int = DEFAULT_SESSION_TTL_SECONDS,
) -> str:
    """Create a session for ``user`` and return the plain token."""
    token = generate_session_token()
    db.add(
        UserSession(
            user_id=user.id,
            token_hash=_hash_token(token),
            expires_at=utcnow() + timedelta(seconds=ttl_seconds),
        )
    )
    db.commit()
    return token


def validate_session(db: Session, token: str) -> tuple[UserSession, User] | None:
    """
    Validate a session token and return session + user.

    Returns:
        Tuple of (UserSession, User) if valid, None otherwise.
    """
    stmt = (
        select(UserSession)
        .where(UserSession.token_hash == _hash_token(token))
        .where(UserSession.expires_at > utcnow())
    )
    session = db.execute(stmt).scalar_one_or_none()
    if not session:
        return None

    user = db.get(User, session.user_id)
    if not user:
        return None

    return session, user
