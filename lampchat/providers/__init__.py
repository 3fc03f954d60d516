"""Token stream sources."""

from lampchat.providers.base import (
    ChatMessage,
    ChatRequest,
    GenerationStats,
    StreamCompleted,
    StreamEvent,
    StreamFailed,
    TextChunk,
    TokenStreamSource,
)
from lampchat.providers.openrouter import OpenRouterSource

__all__ = [
    "ChatMessage",
    "ChatRequest",
    "GenerationStats",
    "StreamCompleted",
    "StreamEvent",
    "StreamFailed",
    "TextChunk",
    "TokenStreamSource",
    "OpenRouterSource",
]
