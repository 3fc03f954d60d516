"""Ownership-scoped message persistence.

``MessageGateway`` is the only component that decides what becomes
durable. Every call opens its own session, rechecks chat ownership, and
commits the message write together with the parent chat's ``updated_at``
touch. Storage faults are reported as ``PersistenceError`` with a generic
message; nothing is retried here.
"""

from __future__ import annotations

import json
import re
from collections.abc import Callable, Iterator
from contextlib import contextmanager
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Protocol

from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session

from lampchat.core import (
    AppError,
    InvalidArgumentError,
    NotFoundError,
    PersistenceError,
    get_logger,
)
from lampchat.core.time import isoformat_utc, parse_client_timestamp
from lampchat.db.models import Chat, Message
from lampchat.db.repositories import (
    count_chat_messages,
    create_chat,
    get_chat_messages,
    get_owned_message,
    get_recent_messages,
    get_user_chat,
    insert_message,
    touch_chat,
)

logger = get_logger(__name__)

DEFAULT_PAGE_SIZE = 50
MAX_PAGE_SIZE = 200
VALID_ROLES = frozenset({"user", "assistant", "system"})

_UUID_RE = re.compile(
    r"^[0-9a-f]{8}-[0-9a-f]{4}-[0-9a-f]{4}-[0-9a-f]{4}-[0-9a-f]{12}$", re.IGNORECASE
)


class _Unset:
    """Marker for a patch field the caller did not supply."""

    _instance: _Unset | None = None

    def __new__(cls) -> _Unset:
        if cls._instance is None:
            cls._instance = super().__new__(cls)
        return cls._instance

    def __bool__(self) -> bool:
        return False

    def __repr__(self) -> str:
        return "UNSET"


UNSET: Any = _Unset()


def is_valid_uuid(value: Any) -> bool:
    return isinstance(value, str) and bool(_UUID_RE.match(value))


@dataclass
class MessageRecord:
    """A persisted message as seen by callers of the gateway."""

    id: str
    chat_id: str
    role: str
    content: str
    created_at: datetime
    model: str | None = None
    stats: dict[str, Any] | None = None
    generated_images: list[Any] | None = None
    attachments: list[Any] | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "chatId": self.chat_id,
            "role": self.role,
            "content": self.content,
            "model": self.model,
            "stats": self.stats,
            "generatedImages": self.generated_images,
            "attachments": self.attachments,
            "createdAt": isoformat_utc(self.created_at),
        }


@dataclass
class MessageDraft:
    """Input for ``append``. ``id``/``created_at`` are optional client values."""

    role: str = "user"
    content: str = ""
    id: str | None = None
    created_at: int | float | str | datetime | None = None
    model: str | None = None
    attachments: list[Any] | None = None


@dataclass
class MessagePatch:
    """Field-level patch; fields left as ``UNSET`` keep their stored value.

    An explicit ``None`` clears a nullable field.
    """

    content: Any = UNSET
    model: Any = UNSET
    stats: Any = UNSET
    generated_images: Any = UNSET

    def supplied_fields(self) -> list[str]:
        return [name for name, value in vars(self).items() if value is not UNSET]


@dataclass
class MessagePage:
    messages: list[MessageRecord] = field(default_factory=list)
    has_more: bool = False
    total: int = 0


class PersistenceGateway(Protocol):
    """What the streaming orchestrator needs from the durable store."""

    def append(self, user_id: str, chat_id: str, draft: MessageDraft) -> MessageRecord: ...

    def update(
        self, user_id: str, chat_id: str, message_id: str, patch: MessagePatch
    ) -> MessageRecord: ...

    def history(self, user_id: str, chat_id: str) -> list[MessageRecord]: ...


def _load_json(raw: str | None) -> Any:
    if raw is None:
        return None
    try:
        return json.loads(raw)
    except json.JSONDecodeError:
        logger.warning("Stored JSON column is not valid JSON")
        return None


def _dump_json(value: Any) -> str | None:
    if value is None:
        return None
    try:
        return json.dumps(value, separators=(",", ":"), ensure_ascii=False)
    except (TypeError, ValueError) as exc:
        raise InvalidArgumentError("Value is not JSON serializable") from exc


def to_record(message: Message) -> MessageRecord:
    return MessageRecord(
        id=message.id,
        chat_id=message.chat_id,
        role=message.role,
        content=message.content,
        created_at=message.created_at,
        model=message.model,
        stats=_load_json(message.stats),
        generated_images=_load_json(message.generated_images),
        attachments=_load_json(message.attachments),
    )


def _coerce_int(value: Any, default: int) -> int:
    try:
        return int(value)
    except (TypeError, ValueError):
        return default


def clamp_page(limit: Any = None, offset: Any = None) -> tuple[int, int]:
    """Clamp pagination to limit in [1, 200] (default 50) and offset >= 0."""
    limit_value = _coerce_int(limit, DEFAULT_PAGE_SIZE) if limit is not None else DEFAULT_PAGE_SIZE
    offset_value = _coerce_int(offset, 0) if offset is not None else 0
    return min(max(limit_value, 1), MAX_PAGE_SIZE), max(offset_value, 0)


class MessageGateway:
    """Durable append/update/list of messages, scoped by chat ownership."""

    def __init__(self, session_factory: Callable[[], Session]):
        self._session_factory = session_factory

    @contextmanager
    def _session(self) -> Iterator[Session]:
        db = self._session_factory()
        try:
            yield db
        finally:
            db.close()

    @staticmethod
    def _require_uuid(value: Any, label: str) -> None:
        if not is_valid_uuid(value):
            raise InvalidArgumentError(f"Invalid {label} ID format")

    def create_chat(self, user_id: str, title: str | None = None) -> Chat:
        with self._session() as db:
            try:
                return create_chat(db, user_id, title)
            except SQLAlchemyError as exc:
                db.rollback()
                logger.exception("Create chat failed", exc_info=exc)
                raise PersistenceError("Failed to create chat") from exc

    def append(self, user_id: str, chat_id: str, draft: MessageDraft) -> MessageRecord:
        """Insert a message into an owned chat.

        Client-chosen ``id`` and ``created_at`` are honored when supplied so
        offline-authored messages keep their identity and ordering. Reusing
        an existing id fails; it never overwrites.
        """
        self._require_uuid(chat_id, "chat")
        if draft.id is not None:
            self._require_uuid(draft.id, "message")
        if draft.role not in VALID_ROLES:
            raise InvalidArgumentError("Invalid message role", details={"role": draft.role})
        if not isinstance(draft.content, str):
            raise InvalidArgumentError("Message content must be a string")

        created_at = None
        if draft.created_at is not None:
            try:
                created_at = parse_client_timestamp(draft.created_at)
            except (ValueError, OverflowError, OSError) as exc:
                raise InvalidArgumentError("Invalid createdAt timestamp") from exc

        attachments = _dump_json(draft.attachments) if draft.attachments else None

        with self._session() as db:
            try:
                if not get_user_chat(db, user_id, chat_id):
                    raise NotFoundError("Chat not found")
                message = insert_message(
                    db,
                    chat_id,
                    draft.role,
                    draft.content,
                    message_id=draft.id,
                    created_at=created_at,
                    model=draft.model,
                    attachments=attachments,
                )
                touch_chat(db, chat_id)
                db.commit()
            except AppError:
                db.rollback()
                raise
            except IntegrityError as exc:
                db.rollback()
                details = {"reason": "duplicate_id"} if draft.id else None
                logger.warning(
                    "Add message rejected by store",
                    data={"chat_id": chat_id, "message_id": draft.id},
                )
                raise PersistenceError("Failed to add message", details=details) from exc
            except SQLAlchemyError as exc:
                db.rollback()
                logger.exception("Add message failed", exc_info=exc, data={"chat_id": chat_id})
                raise PersistenceError("Failed to add message") from exc
            return to_record(message)

    def update(
        self, user_id: str, chat_id: str, message_id: str, patch: MessagePatch
    ) -> MessageRecord:
        """Apply a field-level patch to a message in an owned chat."""
        self._require_uuid(chat_id, "chat")
        self._require_uuid(message_id, "message")
        if patch.content is not UNSET and not isinstance(patch.content, str):
            raise InvalidArgumentError("Message content must be a string")

        stats_json = _dump_json(patch.stats) if patch.stats is not UNSET else UNSET
        images_json = (
            _dump_json(patch.generated_images) if patch.generated_images is not UNSET else UNSET
        )

        with self._session() as db:
            try:
                message = get_owned_message(db, user_id, chat_id, message_id)
                if message is None:
                    raise NotFoundError("Message not found")
                if patch.content is not UNSET:
                    message.content = patch.content
                if patch.model is not UNSET:
                    message.model = patch.model
                if stats_json is not UNSET:
                    message.stats = stats_json
                if images_json is not UNSET:
                    message.generated_images = images_json
                touch_chat(db, chat_id)
                db.commit()
            except AppError:
                db.rollback()
                raise
            except SQLAlchemyError as exc:
                db.rollback()
                logger.exception(
                    "Update message failed",
                    exc_info=exc,
                    data={"chat_id": chat_id, "message_id": message_id},
                )
                raise PersistenceError("Failed to update message") from exc
            return to_record(message)

    def list(
        self, user_id: str, chat_id: str, limit: Any = None, offset: Any = None
    ) -> MessagePage:
        """Page through a chat's messages; each page is chronological."""
        self._require_uuid(chat_id, "chat")
        limit_value, offset_value = clamp_page(limit, offset)

        with self._session() as db:
            try:
                if not get_user_chat(db, user_id, chat_id):
                    raise NotFoundError("Chat not found")
                total = count_chat_messages(db, chat_id)
                newest_first = get_recent_messages(db, chat_id, limit_value, offset_value)
            except AppError:
                raise
            except SQLAlchemyError as exc:
                logger.exception("Fetch messages failed", exc_info=exc, data={"chat_id": chat_id})
                raise PersistenceError("Failed to fetch messages") from exc

        messages = [to_record(message) for message in reversed(newest_first)]
        return MessagePage(
            messages=messages,
            has_more=offset_value + len(newest_first) < total,
            total=total,
        )

    def history(self, user_id: str, chat_id: str) -> list[MessageRecord]:
        """Every message of an owned chat in chronological order."""
        self._require_uuid(chat_id, "chat")
        with self._session() as db:
            try:
                if not get_user_chat(db, user_id, chat_id):
                    raise NotFoundError("Chat not found")
                messages = get_chat_messages(db, chat_id)
            except AppError:
                raise
            except SQLAlchemyError as exc:
                logger.exception("Fetch history failed", exc_info=exc, data={"chat_id": chat_id})
                raise PersistenceError("Failed to fetch messages") from exc
            return [to_record(message) for message in messages]
