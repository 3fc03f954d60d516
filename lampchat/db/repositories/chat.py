"""Repository helpers for chats."""

from sqlalchemy import select, update
from sqlalchemy.orm import Session

from lampchat.core.time import utcnow
from lampchat.db.models import Chat


def create_chat(db: Session, user_id: str, title: str | None = None) -> Chat:
    """Create a new chat for the given user."""
    chat = Chat(
        user_id=user_id,
        title=title.strip() if title and title.strip() else "New Chat",
    )
    db.add(chat)
    db.commit()
    db.refresh(chat)
    return chat


def get_user_chat(db: Session, user_id: str, chat_id: str) -> Chat | None:
    """Fetch chat owned by user."""
    stmt = select(Chat).where(Chat.id == chat_id, Chat.user_id == user_id)
    return db.execute(stmt).scalar_one_or_none()


def list_user_chats(db: Session, user_id: str) -> list[Chat]:
    """List chats belonging to the user, most recently active first."""
    stmt = (
        select(Chat)
        .where(Chat.user_id == user_id)
        .order_by(Chat.updated_at.desc())
    )
    return list(db.execute(stmt).scalars().all())


def touch_chat(db: Session, chat_id: str) -> None:
    """Bump a chat's updated_at without committing."""
    db.execute(update(Chat).where(Chat.id == chat_id).values(updated_at=utcnow()))


def delete_chat(db: Session, user_id: str, chat_id: str) -> bool:
    """Delete a chat and cascade its messages."""
    chat = get_user_chat(db, user_id, chat_id)
    if not chat:
        return False
    db.delete(chat)
    db.commit()
    return True
