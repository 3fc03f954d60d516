"""Database models, engine, and session management."""

from lampchat.db.base import Base, TimestampMixin
from lampchat.db.engine import dispose_engine, get_engine, verify_database_connection
from lampchat.db.models import Chat, Message, User, UserSession
from lampchat.db.session import get_db, get_session_factory

__all__ = [
    # Base
    "Base",
    "TimestampMixin",
    # Engine
    "get_engine",
    "verify_database_connection",
    "dispose_engine",
    # Session
    "get_db",
    "get_session_factory",
    # Models
    "Chat",
    "Message",
    "User",
    "UserSession",
]
