"""Session verification and auth dependencies."""

from lampchat.auth.dependencies import RequireAuth, get_session_token, require_auth
from lampchat.auth.session import create_session, generate_session_token, validate_session

__all__ = [
    "RequireAuth",
    "create_session",
    "generate_session_token",
    "get_session_token",
    "require_auth",
    "validate_session",
]
