"""Database repositories for data access."""

from lampchat.db.repositories.chat import (
    create_chat,
    delete_chat,
    get_user_chat,
    list_user_chats,
    touch_chat,
)
from lampchat.db.repositories.message import (
    count_chat_messages,
    get_chat_messages,
    get_owned_message,
    get_recent_messages,
    insert_message,
)
from lampchat.db.repositories.user import (
    create_user,
    get_user_by_email,
    get_user_by_id,
)

__all__ = [
    # User
    "create_user",
    "get_user_by_email",
    "get_user_by_id",
    # Chats
    "create_chat",
    "delete_chat",
    "get_user_chat",
    "list_user_chats",
    "touch_chat",
    # Messages
    "count_chat_messages",
    "get_chat_messages",
    "get_owned_message",
    "get_recent_messages",
    "insert_message",
]
