"""Turn orchestration: placeholder, in-memory streaming, single durable write."""

from __future__ import annotations

import asyncio
import json
import time
import uuid
from collections.abc import AsyncIterator, Callable
from contextlib import aclosing
from dataclasses import dataclass, field
from enum import Enum
from typing import Any

from lampchat.config import get_settings
from lampchat.core import (
    AppError,
    ErrorCode,
    InvalidArgumentError,
    NotFoundError,
    PersistenceError,
    StreamError,
    TurnInProgressError,
    get_logger,
    get_request_id,
)
from lampchat.core.metrics import metrics
from lampchat.providers.base import (
    ChatMessage,
    ChatRequest,
    GenerationStats,
    StreamCompleted,
    StreamFailed,
    TextChunk,
    TokenStreamSource,
)
from lampchat.services.conversation_state import ConversationStateStore
from lampchat.services.messages import (
    UNSET,
    MessageDraft,
    MessagePatch,
    MessageRecord,
    PersistenceGateway,
)

logger = get_logger(__name__)


class TurnState(str, Enum):
    IDLE = "idle"
    PLACING = "placing"
    STREAMING = "streaming"
    FINALIZING = "finalizing"
    COMMITTED = "committed"
    FAILED = "failed"


ACTIVE_STATES = frozenset({TurnState.PLACING, TurnState.STREAMING, TurnState.FINALIZING})

_CANCELLED = object()
_END = object()


@dataclass
class StreamingTurn:
    """Memory-only record of one generation turn."""

    chat_id: str
    user_id: str
    model: str
    message_id: str | None = None
    accumulated_content: str = ""
    state: TurnState = TurnState.IDLE
    regenerate: bool = False
    turn_id: str = field(default_factory=lambda: str(uuid.uuid4()))
    cancel_event: asyncio.Event = field(default_factory=asyncio.Event)
    started_at: float = field(default_factory=time.monotonic)
    first_chunk_at: float | None = None
    chunk_count: int = 0
    cancelled: bool = False
    error: AppError | None = None

    @property
    def active(self) -> bool:
        return self.state in ACTIVE_STATES


@dataclass
class TurnEvent:
    """One event of a turn as seen by the consumer."""

    event: str  # meta, delta, final, error
    data: dict[str, Any]

    def to_sse(self) -> str:
        """Serialize the event to SSE format."""
        payload = json.dumps(self.data, separators=(",", ":"), ensure_ascii=False)
        return f"event: {self.event}\ndata: {payload}\n\n"


@dataclass
class _SourceFailure:
    exc: Exception


class TurnStream:
    """Async iterator over the events of a turn running on its own task.

    The turn finalizes and releases its chat whether or not the stream is
    read. Closing the stream early cancels the turn, which then commits
    what it has.
    """

    def __init__(self, turn: StreamingTurn, task: asyncio.Task, events: asyncio.Queue):
        self._turn = turn
        self._task = task
        self._events = events
        self._exhausted = False

    @property
    def turn(self) -> StreamingTurn:
        return self._turn

    def __aiter__(self) -> TurnStream:
        return self

    async def __anext__(self) -> TurnEvent:
        if self._exhausted:
            raise StopAsyncIteration
        event = await self._events.get()
        if event is _END:
            self._exhausted = True
            raise StopAsyncIteration
        return event

    async def aclose(self) -> None:
        self._exhausted = True
        if not self._task.done():
            self._turn.cancel_event.set()
        # asyncio.wait does not cancel the task if the closer is cancelled.
        await asyncio.wait({self._task})


class ChatOrchestrator:
    """Drives streaming turns against the gateway, a token source and the state store.

    At most one turn per chat is active at a time. ``send`` and ``regenerate``
    raise ``TurnInProgressError`` while a turn is active for the same chat;
    ``is_turn_in_progress`` exposes the same flag to callers that prefer to
    check first.
    """

    def __init__(
        self,
        gateway: PersistenceGateway,
        source: TokenStreamSource,
        store: ConversationStateStore | None = None,
        *,
        system_prompt: str | None = None,
        default_model: str | None = None,
        idle_timeout_seconds: float | None = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        settings = get_settings()
        self.gateway = gateway
        self.source = source
        self.store = store or ConversationStateStore()
        self.system_prompt = settings.system_prompt if system_prompt is None else system_prompt
        self.default_model = default_model or settings.default_model
        self.idle_timeout_seconds = (
            settings.stream_idle_timeout_seconds
            if idle_timeout_seconds is None
            else idle_timeout_seconds
        )
        self._clock = clock
        self._turns: dict[str, StreamingTurn] = {}
        self._tasks: set[asyncio.Task] = set()

    # Coordination

    def is_turn_in_progress(self, chat_id: str) -> bool:
        return chat_id in self._turns

    def turn_state(self, chat_id: str) -> TurnState:
        turn = self._turns.get(chat_id)
        return turn.state if turn else TurnState.IDLE

    def turn_for(self, chat_id: str, user_id: str | None = None) -> StreamingTurn | None:
        """The active turn of a chat, hidden from users who do not own it."""
        turn = self._turns.get(chat_id)
        if turn is None or (user_id is not None and turn.user_id != user_id):
            return None
        return turn

    def cancel(self, chat_id: str, user_id: str | None = None) -> bool:
        """Ask the active turn of a chat to stop; it finalizes with what it has."""
        turn = self.turn_for(chat_id, user_id)
        if turn is None:
            return False
        turn.cancel_event.set()
        logger.info("Turn cancel requested", data={"chat_id": chat_id, "turn_id": turn.turn_id})
        return True

    def discard_chat(self, chat_id: str, user_id: str | None = None) -> None:
        """Drop a deleted chat: stop its turn and its in-memory state."""
        self.cancel(chat_id, user_id)
        if not self.is_turn_in_progress(chat_id):
            self.store.forget(chat_id)

    async def aclose(self) -> None:
        """Cancel every running turn and wait until each has finalized."""
        for turn in list(self._turns.values()):
            turn.cancel_event.set()
        if self._tasks:
            await asyncio.wait(set(self._tasks))

    def _acquire(self, user_id: str, chat_id: str, model: str, *, regenerate: bool) -> StreamingTurn:
        if self.is_turn_in_progress(chat_id):
            logger.info("Turn rejected, chat busy", data={"chat_id": chat_id})
            raise TurnInProgressError()
        turn = StreamingTurn(
            chat_id=chat_id,
            user_id=user_id,
            model=model,
            regenerate=regenerate,
            started_at=self._clock(),
        )
        self._turns[chat_id] = turn
        metrics.set_gauge("active_turns", float(len(self._turns)))
        return turn

    def _release(self, turn: StreamingTurn) -> None:
        if self._turns.get(turn.chat_id) is turn:
            del self._turns[turn.chat_id]
            self.store.forget(turn.chat_id)
        metrics.set_gauge("active_turns", float(len(self._turns)))

    # Entry points

    async def send(
        self,
        user_id: str,
        chat_id: str,
        content: str,
        model: str | None = None,
        attachments: list[dict[str, Any]] | None = None,
        message_id: str | None = None,
        created_at: Any = None,
    ) -> TurnStream:
        """Persist a user message and start a turn answering it.

        Returns:
            An async iterator of turn events. The turn runs on its own task
            and releases the chat when it finishes, read or not; closing the
            iterator cancels it.
        """
        if not isinstance(content, str):
            raise InvalidArgumentError("Message content must be a string")
        if not content.strip() and not attachments:
            raise InvalidArgumentError("Message content is required")

        history = self.gateway.history(user_id, chat_id)
        turn = self._acquire(user_id, chat_id, model or self.default_model, regenerate=False)
        try:
            user_record = self.gateway.append(
                user_id,
                chat_id,
                MessageDraft(
                    role="user",
                    content=content,
                    id=message_id,
                    created_at=created_at,
                    attachments=attachments,
                ),
            )
            self.store.load_chat(chat_id, history)
            self.store.add_message(user_record)
            context = self._build_context([*history, user_record], attachments)
            self._place(turn)
        except BaseException:
            self._release(turn)
            raise

        request = ChatRequest(messages=context, model=turn.model)
        return self._start(turn, request)

    async def regenerate(
        self,
        user_id: str,
        chat_id: str,
        message_id: str,
        model: str | None = None,
    ) -> TurnStream:
        """Redo an assistant message using only the history before it.

        The target keeps its id; no placeholder is created and no history is
        deleted.
        """
        history = self.gateway.history(user_id, chat_id)
        index = next((i for i, record in enumerate(history) if record.id == message_id), None)
        if index is None:
            raise NotFoundError("Message not found")
        target = history[index]
        if target.role != "assistant":
            raise InvalidArgumentError("Only assistant messages can be regenerated")

        preceding = history[:index]
        last_user = next((record for record in reversed(preceding) if record.role == "user"), None)
        attachments = (last_user.attachments or []) if last_user else []

        turn = self._acquire(
            user_id, chat_id, model or target.model or self.default_model, regenerate=True
        )
        turn.message_id = target.id
        self.store.load_chat(chat_id, history)
        request = ChatRequest(
            messages=self._build_context(preceding, attachments), model=turn.model
        )
        logger.info(
            "Regenerating message",
            data={"chat_id": chat_id, "message_id": target.id, "context_size": len(preceding)},
        )
        return self._start(turn, request)

    # Turn phases

    def _place(self, turn: StreamingTurn) -> None:
        turn.state = TurnState.PLACING
        try:
            placeholder = self.gateway.append(
                turn.user_id,
                turn.chat_id,
                MessageDraft(role="assistant", content="", model=turn.model),
            )
        except AppError as exc:
            turn.state = TurnState.FAILED
            turn.error = exc
            metrics.increment("turns_failed_total")
            logger.warning(
                "Placeholder write failed",
                data={"chat_id": turn.chat_id, "code": exc.code.value},
            )
            raise
        turn.message_id = placeholder.id
        self.store.add_message(placeholder)

    def _build_context(
        self, records: list[MessageRecord], attachments: list[dict[str, Any]] | None
    ) -> list[ChatMessage]:
        messages: list[ChatMessage] = []
        if self.system_prompt:
            messages.append(ChatMessage(role="system", content=self.system_prompt))
        last_user = max(
            (i for i, record in enumerate(records) if record.role == "user"), default=None
        )
        for i, record in enumerate(records):
            if record.role == "assistant" and not record.content:
                continue
            record_attachments = list(record.attachments or [])
            if i == last_user and attachments:
                record_attachments = list(attachments)
            messages.append(
                ChatMessage(role=record.role, content=record.content, attachments=record_attachments)
            )
        return messages

    async def _pump(self, request: ChatRequest, queue: asyncio.Queue) -> None:
        """Drain the source into ``queue`` from a single task."""
        try:
            async with aclosing(self.source.stream(request)) as events:
                async for event in events:
                    queue.put_nowait(event)
        except Exception as exc:
            queue.put_nowait(_SourceFailure(exc))
        queue.put_nowait(_END)

    async def _stop_pump(self, pump: asyncio.Task) -> None:
        if pump.done():
            return
        pump.cancel()
        try:
            await pump
        except asyncio.CancelledError:
            pass

    async def _next_event(self, queue: asyncio.Queue, turn: StreamingTurn) -> Any:
        """Wait for the next source event, a cancel request or the idle timeout."""
        if turn.cancel_event.is_set():
            return _CANCELLED
        get_task = asyncio.ensure_future(queue.get())
        cancel_task = asyncio.ensure_future(turn.cancel_event.wait())
        timeout = self.idle_timeout_seconds if self.idle_timeout_seconds > 0 else None
        try:
            done, _ = await asyncio.wait(
                {get_task, cancel_task}, timeout=timeout, return_when=asyncio.FIRST_COMPLETED
            )
        finally:
            cancel_task.cancel()
            if not get_task.done():
                get_task.cancel()

        if get_task in done:
            return get_task.result()
        if turn.cancel_event.is_set():
            return _CANCELLED
        raise TimeoutError

    def _start(self, turn: StreamingTurn, request: ChatRequest) -> TurnStream:
        outbox: asyncio.Queue = asyncio.Queue()
        task = asyncio.create_task(self._run(turn, request, outbox), name=f"turn-{turn.turn_id}")
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return TurnStream(turn, task, outbox)

    async def _run(self, turn: StreamingTurn, request: ChatRequest, outbox: asyncio.Queue) -> None:
        try:
            async for event in self._drive(turn, request):
                outbox.put_nowait(event)
        finally:
            outbox.put_nowait(_END)

    async def _drive(self, turn: StreamingTurn, request: ChatRequest) -> AsyncIterator[TurnEvent]:
        completed: StreamCompleted | None = None
        error: AppError | None = None
        try:
            turn.state = TurnState.STREAMING
            self.store.set_streaming(turn.chat_id, True, turn.message_id)
            if turn.regenerate:
                self.store.apply_streaming_delta(turn.message_id, "")
            logger.info(
                "Turn streaming",
                data={
                    "chat_id": turn.chat_id,
                    "message_id": turn.message_id,
                    "turn_id": turn.turn_id,
                    "model": turn.model,
                },
            )
            yield TurnEvent(
                "meta",
                {
                    "turn_id": turn.turn_id,
                    "chat_id": turn.chat_id,
                    "message_id": turn.message_id,
                    "model": turn.model,
                    "regenerate": turn.regenerate,
                    "request_id": get_request_id(),
                },
            )

            if turn.cancel_event.is_set():
                # Cancelled before the source was asked for anything.
                turn.cancelled = True
                completed = StreamCompleted(stats=self._fallback_stats(turn))
            else:
                async for event in self._stream(turn, request):
                    if isinstance(event, StreamCompleted):
                        completed = event
                    else:
                        yield event
        except asyncio.CancelledError:
            # Task cancelled, e.g. at shutdown; keep what was generated.
            turn.cancelled = True
            self._finalize(turn, None, None)
            raise
        except TimeoutError:
            error = StreamError(
                "The model stopped responding",
                details={"idle_timeout_seconds": self.idle_timeout_seconds},
            )
        except AppError as exc:
            error = exc
        except Exception as exc:
            logger.exception(
                "Unexpected error during turn",
                exc_info=exc,
                data={"chat_id": turn.chat_id, "turn_id": turn.turn_id},
            )
            error = AppError(ErrorCode.INTERNAL_ERROR, "An unexpected error occurred")

        record = self._finalize(turn, completed, error)
        if turn.error is not None:
            yield TurnEvent(
                "error",
                {
                    "code": turn.error.code.value,
                    "message": turn.error.message,
                    "message_id": turn.message_id,
                    "request_id": get_request_id(),
                },
            )
            return
        yield TurnEvent(
            "final",
            {
                "message_id": turn.message_id,
                "cancelled": turn.cancelled,
                "message": record.to_dict() if record else None,
            },
        )

    async def _stream(self, turn: StreamingTurn, request: ChatRequest) -> AsyncIterator[Any]:
        """Delta events, then the completion; raises on failure or idle timeout."""
        queue: asyncio.Queue = asyncio.Queue()
        pump = asyncio.create_task(self._pump(request, queue))
        try:
            while True:
                event = await self._next_event(queue, turn)
                if event is _CANCELLED:
                    turn.cancelled = True
                    yield StreamCompleted(stats=self._fallback_stats(turn))
                    return
                if event is _END:
                    yield StreamCompleted(stats=self._fallback_stats(turn))
                    return
                if isinstance(event, _SourceFailure):
                    raise event.exc
                if isinstance(event, TextChunk):
                    if not event.text:
                        continue
                    if turn.first_chunk_at is None:
                        turn.first_chunk_at = self._clock()
                    turn.chunk_count += 1
                    turn.accumulated_content += event.text
                    self.store.apply_streaming_delta(turn.message_id, turn.accumulated_content)
                    yield TurnEvent("delta", {"text": event.text})
                elif isinstance(event, StreamCompleted):
                    yield event
                    return
                elif isinstance(event, StreamFailed):
                    raise StreamError(event.message, details=event.details)
        finally:
            await self._stop_pump(pump)

    def _fallback_stats(self, turn: StreamingTurn) -> GenerationStats:
        now = self._clock()
        total = now - turn.started_at
        first = turn.first_chunk_at
        generation = (now - first) if first is not None else total
        return GenerationStats(
            completion_tokens=turn.chunk_count,
            time_to_first_token=(first - turn.started_at) if first is not None else total,
            tokens_per_second=(turn.chunk_count / generation) if generation > 0 else 0.0,
            total_time=total,
        )

    def _finalize(
        self,
        turn: StreamingTurn,
        completed: StreamCompleted | None,
        error: AppError | None,
    ) -> MessageRecord | None:
        """Issue the turn's single durable write. Never raises."""
        record: MessageRecord | None = None
        try:
            turn.state = TurnState.FINALIZING
            if error is None:
                stats = completed.stats if completed else self._fallback_stats(turn)
                images = completed.images if completed else []
                patch = MessagePatch(
                    content=turn.accumulated_content,
                    stats={"model": turn.model, **stats.to_dict()},
                )
                if images:
                    patch.generated_images = list(images)
                elif turn.regenerate:
                    patch.generated_images = None
                try:
                    record = self.gateway.update(
                        turn.user_id, turn.chat_id, turn.message_id, patch
                    )
                except AppError as exc:
                    error = exc
                except Exception as exc:
                    logger.exception(
                        "Unexpected error finalizing turn",
                        exc_info=exc,
                        data={"chat_id": turn.chat_id},
                    )
                    error = PersistenceError("Failed to update message")

            if error is None:
                turn.state = TurnState.COMMITTED
                self.store.apply_committed(record)
                if turn.cancelled:
                    metrics.increment("turns_cancelled_total")
                metrics.increment("turns_committed_total")
                logger.info(
                    "Turn committed",
                    data={
                        "chat_id": turn.chat_id,
                        "message_id": turn.message_id,
                        "cancelled": turn.cancelled,
                        "chars": len(turn.accumulated_content),
                    },
                )
                return record

            turn.state = TurnState.FAILED
            turn.error = error
            metrics.increment("turns_failed_total")
            logger.warning(
                "Turn failed",
                data={
                    "chat_id": turn.chat_id,
                    "message_id": turn.message_id,
                    "code": error.code.value,
                    "error": error.message,
                },
            )
            error_content = f"Error: {error.message}"
            try:
                record = self.gateway.update(
                    turn.user_id,
                    turn.chat_id,
                    turn.message_id,
                    MessagePatch(content=error_content, stats=UNSET),
                )
            except Exception as exc:
                logger.exception(
                    "Failed to persist turn error",
                    exc_info=exc,
                    data={"chat_id": turn.chat_id, "message_id": turn.message_id},
                )
                record = None
                self.store.apply_streaming_delta(turn.message_id, error_content)
            else:
                self.store.apply_committed(record)
            return record
        finally:
            self.store.set_streaming(turn.chat_id, False)
            metrics.observe("turn_duration_seconds", self._clock() - turn.started_at)
            self._release(turn)
