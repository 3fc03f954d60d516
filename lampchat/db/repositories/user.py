"""Repository helpers for users."""

from sqlalchemy import select
from sqlalchemy.orm import Session

from lampchat.db.models import User


def get_user_by_id(db: Session, user_id: str) -> User | None:
    """Get user by ID."""
    return db.get(User, user_id)


def get_user_by_email(db: Session, email: str) -> User | None:
    """Get user by email (case-insensitive)."""
    stmt = select(User).where(User.email == email.strip().lower())
    return db.execute(stmt).scalar_one_or_none()


def create_user(db: Session, email: str, name: str = "") -> User:
    """Create a new user."""
    user = User(email=email.strip().lower(), name=name)
    db.add(user)
    db.commit()
    db.refresh(user)
    return user
