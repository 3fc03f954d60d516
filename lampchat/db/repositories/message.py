"""Repository helpers for messages.

These helpers never commit; callers own the transaction so an insert or
update and the parent chat touch land together.
"""

from datetime import datetime

from sqlalchemy import func, select
from sqlalchemy.orm import Session

from lampchat.db.models import Chat, Message


def insert_message(
    db: Session,
    chat_id: str,
    role: str,
    content: str,
    *,
    message_id: str | None = None,
    created_at: datetime | None = None,
    model: str | None = None,
    attachments: str | None = None,
) -> Message:
    """Stage a new message; id and created_at fall back to column defaults."""
    message = Message(
        chat_id=chat_id,
        role=role,
        content=content,
        model=model,
        attachments=attachments,
    )
    if message_id is not None:
        message.id = message_id
    if created_at is not None:
        message.created_at = created_at
    db.add(message)
    db.flush()
    return message


def get_owned_message(
    db: Session, user_id: str, chat_id: str, message_id: str
) -> Message | None:
    """Fetch a message only if its chat is owned by the user (single join)."""
    stmt = (
        select(Message)
        .join(Chat, Chat.id == Message.chat_id)
        .where(
            Message.id == message_id,
            Chat.id == chat_id,
            Chat.user_id == user_id,
        )
    )
    return db.execute(stmt).scalar_one_or_none()


def count_chat_messages(db: Session, chat_id: str) -> int:
    """Count messages stored for a chat."""
    stmt = select(func.count()).select_from(Message).where(Message.chat_id == chat_id)
    return int(db.execute(stmt).scalar_one())


def get_recent_messages(
    db: Session, chat_id: str, limit: int, offset: int
) -> list[Message]:
    """Get a page of messages, newest first."""
    stmt = (
        select(Message)
        .where(Message.chat_id == chat_id)
        .order_by(Message.created_at.desc())
        .limit(limit)
        .offset(offset)
    )
    return list(db.execute(stmt).scalars().all())


def get_chat_messages(db: Session, chat_id: str) -> list[Message]:
    """Get all messages for a chat ordered by creation time."""
    stmt = (
        select(Message)
        .where(Message.chat_id == chat_id)
        .order_by(Message.created_at.asc())
    )
    return list(db.execute(stmt).scalars().all())
