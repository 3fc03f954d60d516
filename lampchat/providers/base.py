"""
Token stream source interface.

A source turns a ``ChatRequest`` into a lazy sequence of events: any number
of ``TextChunk`` values followed by exactly one terminal event, either
``StreamCompleted`` or ``StreamFailed``. Raising an ``AppError`` from the
iterator is equivalent to yielding ``StreamFailed``. Closing the iterator
(``aclose``) must stop further delivery.
"""

from abc import ABC, abstractmethod
from collections.abc import AsyncIterator
from dataclasses import dataclass, field
from typing import Any, Union


@dataclass
class ChatMessage:
    """A single message of model context."""

    role: str  # "system", "user", "assistant"
    content: str
    attachments: list[dict[str, Any]] = field(default_factory=list)


@dataclass
class ChatRequest:
    """Request for a streamed completion."""

    messages: list[ChatMessage]
    model: str
    stream: bool = True


@dataclass
class GenerationStats:
    """Statistics reported when a stream completes."""

    completion_tokens: int = 0
    prompt_tokens: int = 0
    tokens_per_second: float = 0.0
    time_to_first_token: float = 0.0
    total_tokens: int | None = None
    total_time: float | None = None

    def to_dict(self) -> dict[str, Any]:
        """Serialize using the camelCase keys stored with messages."""
        data: dict[str, Any] = {
            "completionTokens": self.completion_tokens,
            "promptTokens": self.prompt_tokens,
            "tokensPerSecond": self.tokens_per_second,
            "timeToFirstToken": self.time_to_first_token,
        }
        if self.total_tokens is not None:
            data["totalTokens"] = self.total_tokens
        if self.total_time is not None:
            data["totalTime"] = self.total_time
        return data


@dataclass
class TextChunk:
    """A piece of generated text."""

    text: str


@dataclass
class StreamCompleted:
    """Terminal success event."""

    stats: GenerationStats = field(default_factory=GenerationStats)
    images: list[dict[str, Any]] = field(default_factory=list)


@dataclass
class StreamFailed:
    """Terminal error event."""

    message: str
    details: dict[str, Any] | None = None


StreamEvent = Union[TextChunk, StreamCompleted, StreamFailed]


class TokenStreamSource(ABC):
    """Abstract base class for model token stream sources."""

    async def aclose(self) -> None:
        """Close any underlying resources (optional)."""
        return None

    @abstractmethod
    def stream(self, request: ChatRequest) -> AsyncIterator[StreamEvent]:
        """
        Stream a completion for ``request``.

        Yields:
            TextChunk events, then one StreamCompleted or StreamFailed.
        """
        ...
