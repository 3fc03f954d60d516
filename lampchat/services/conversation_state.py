"""In-memory view of chat messages with an observer interface.

The store holds the process-resident copy of each loaded chat. Streaming
deltas mutate it without touching the database; committed records from the
gateway replace whatever is held for that id. Subscribers are called
synchronously on every mutation; nothing is buffered or replayed.
"""

from __future__ import annotations

from collections.abc import Callable
from dataclasses import dataclass, field, replace
from typing import Any

from lampchat.core import get_logger
from lampchat.services.messages import MessageRecord

logger = get_logger(__name__)

WILDCARD = "*"

MESSAGE_ADDED = "messageAdded"
MESSAGE_UPDATED = "messageUpdated"
MESSAGE_COMMITTED = "messageCommitted"
STREAMING_CHANGED = "streamingChanged"
CHAT_LOADED = "chatLoaded"

EVENT_NAMES = frozenset(
    {MESSAGE_ADDED, MESSAGE_UPDATED, MESSAGE_COMMITTED, STREAMING_CHANGED, CHAT_LOADED}
)


@dataclass
class ChatState:
    """Snapshot of one chat held in memory."""

    chat_id: str
    messages: list[MessageRecord] = field(default_factory=list)
    streaming: bool = False
    streaming_message_id: str | None = None


@dataclass
class StateEvent:
    name: str
    state: ChatState
    message: MessageRecord | None = None


Listener = Callable[[StateEvent], Any]


class ConversationStateStore:
    """Canonical in-memory message list per chat."""

    def __init__(self) -> None:
        self._chats: dict[str, ChatState] = {}
        self._chat_by_message: dict[str, str] = {}
        self._listeners: dict[str, list[Listener]] = {}

    def subscribe(self, event_name: str, callback: Listener) -> Callable[[], None]:
        """Register ``callback`` for ``event_name`` (or ``"*"``).

        Returns:
            A function that removes the subscription. Calling it twice is a no-op.
        """
        if event_name != WILDCARD and event_name not in EVENT_NAMES:
            raise ValueError(f"Unknown state event: {event_name}")
        self._listeners.setdefault(event_name, []).append(callback)

        def unsubscribe() -> None:
            listeners = self._listeners.get(event_name, [])
            if callback in listeners:
                listeners.remove(callback)

        return unsubscribe

    def _emit(self, name: str, state: ChatState, message: MessageRecord | None = None) -> None:
        event = StateEvent(name=name, state=state, message=message)
        for callback in [*self._listeners.get(name, []), *self._listeners.get(WILDCARD, [])]:
            try:
                callback(event)
            except Exception as exc:
                logger.exception(
                    "State listener failed",
                    exc_info=exc,
                    data={"event": name, "chat_id": state.chat_id},
                )

    def _state(self, chat_id: str) -> ChatState:
        state = self._chats.get(chat_id)
        if state is None:
            state = ChatState(chat_id=chat_id)
            self._chats[chat_id] = state
        return state

    def _index_of(self, state: ChatState, message_id: str) -> int | None:
        for index, message in enumerate(state.messages):
            if message.id == message_id:
                return index
        return None

    def get_state(self, chat_id: str) -> ChatState | None:
        return self._chats.get(chat_id)

    def messages(self, chat_id: str) -> list[MessageRecord]:
        state = self._chats.get(chat_id)
        return list(state.messages) if state else []

    def get_message(self, message_id: str) -> MessageRecord | None:
        chat_id = self._chat_by_message.get(message_id)
        if chat_id is None:
            return None
        state = self._chats[chat_id]
        index = self._index_of(state, message_id)
        return state.messages[index] if index is not None else None

    def load_chat(self, chat_id: str, messages: list[MessageRecord]) -> ChatState:
        """Replace the held messages for a chat with a fresh durable read."""
        state = self._state(chat_id)
        for message in state.messages:
            self._chat_by_message.pop(message.id, None)
        state.messages = list(messages)
        for message in state.messages:
            self._chat_by_message[message.id] = chat_id
        self._emit(CHAT_LOADED, state)
        return state

    def add_message(self, message: MessageRecord) -> None:
        state = self._state(message.chat_id)
        index = self._index_of(state, message.id)
        if index is not None:
            state.messages[index] = message
        else:
            state.messages.append(message)
        self._chat_by_message[message.id] = message.chat_id
        self._emit(MESSAGE_ADDED, state, message)

    def apply_streaming_delta(self, message_id: str, full_text: str) -> None:
        """Set a message's content to the full accumulated text. Memory only."""
        chat_id = self._chat_by_message.get(message_id)
        if chat_id is None:
            logger.debug("Delta for unknown message ignored", data={"message_id": message_id})
            return
        state = self._chats[chat_id]
        index = self._index_of(state, message_id)
        if index is None:
            return
        updated = replace(state.messages[index], content=full_text)
        state.messages[index] = updated
        self._emit(MESSAGE_UPDATED, state, updated)

    def apply_committed(self, message: MessageRecord) -> None:
        """Replace the held record with the durable result."""
        state = self._state(message.chat_id)
        index = self._index_of(state, message.id)
        if index is None:
            state.messages.append(message)
        else:
            state.messages[index] = message
        self._chat_by_message[message.id] = message.chat_id
        self._emit(MESSAGE_COMMITTED, state, message)

    def set_streaming(self, chat_id: str, streaming: bool, message_id: str | None = None) -> None:
        state = self._state(chat_id)
        state.streaming = streaming
        state.streaming_message_id = message_id if streaming else None
        self._emit(STREAMING_CHANGED, state)

    def forget(self, chat_id: str) -> None:
        """Drop a chat from memory."""
        state = self._chats.pop(chat_id, None)
        if state is None:
            return
        for message in state.messages:
            self._chat_by_message.pop(message.id, None)
