"""Chat services: persistence gateway, turn orchestration and in-memory state."""

from lampchat.services.chat_service import (
    ChatOrchestrator,
    StreamingTurn,
    TurnEvent,
    TurnState,
    TurnStream,
)
from lampchat.services.conversation_state import (
    ChatState,
    ConversationStateStore,
    StateEvent,
)
from lampchat.services.messages import (
    UNSET,
    MessageDraft,
    MessageGateway,
    MessagePage,
    MessagePatch,
    MessageRecord,
    PersistenceGateway,
)

__all__ = [
    "ChatOrchestrator",
    "StreamingTurn",
    "TurnEvent",
    "TurnState",
    "TurnStream",
    "ChatState",
    "ConversationStateStore",
    "StateEvent",
    "UNSET",
    "MessageDraft",
    "MessageGateway",
    "MessagePage",
    "MessagePatch",
    "MessageRecord",
    "PersistenceGateway",
]
