"""API routers."""

from lampchat.api.chat import router as chat_router
from lampchat.api.chats import router as chats_router
from lampchat.api.health import router as health_router

__all__ = [
    "chat_router",
    "chats_router",
    "health_router",
]
