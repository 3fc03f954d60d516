"""
Tests for ownership-scoped message persistence.
"""

from __future__ import annotations

import uuid
from datetime import datetime

import pytest
from sqlalchemy import select
from sqlalchemy.orm import Session

from lampchat.core import InvalidArgumentError, NotFoundError, PersistenceError
from lampchat.db.models import Chat, Message, User
from lampchat.db.repositories import delete_chat
from lampchat.services import MessageDraft, MessageGateway, MessagePatch
from lampchat.services.messages import clamp_page

BASE_MS = 1_700_000_000_000


def seed_messages(gateway: MessageGateway, user: User, chat: Chat, count: int) -> list[str]:
    ids = []
    for n in range(count):
        record = gateway.append(
            user.id,
            chat.id,
            MessageDraft(
                role="user" if n % 2 == 0 else "assistant",
                content=f"message {n}",
                created_at=BASE_MS + n * 1000,
            ),
        )
        ids.append(record.id)
    return ids


def test_append_generates_id_and_timestamp(gateway: MessageGateway, user: User, chat: Chat) -> None:
    record = gateway.append(user.id, chat.id, MessageDraft(role="user", content="Hi"))

    assert uuid.UUID(record.id)
    assert record.chat_id == chat.id
    assert record.content == "Hi"
    assert isinstance(record.created_at, datetime)


def test_append_keeps_client_id_without_timestamp(
    gateway: MessageGateway, user: User, chat: Chat
) -> None:
    client_id = str(uuid.uuid4())
    record = gateway.append(user.id, chat.id, MessageDraft(id=client_id, content="Offline"))

    assert record.id == client_id
    assert record.created_at is not None


def test_append_accepts_epoch_millis_and_iso(
    gateway: MessageGateway, user: User, chat: Chat
) -> None:
    from_millis = gateway.append(
        user.id, chat.id, MessageDraft(content="a", created_at=1_700_000_000_000)
    )
    from_iso = gateway.append(
        user.id, chat.id, MessageDraft(content="b", created_at="2024-01-02T03:04:05.678Z")
    )

    assert from_millis.created_at == datetime(2023, 11, 14, 22, 13, 20)
    assert from_iso.created_at == datetime(2024, 1, 2, 3, 4, 5, 678000)
    assert from_iso.to_dict()["createdAt"] == "2024-01-02T03:04:05.678Z"


def test_append_rejects_duplicate_client_id(
    gateway: MessageGateway, user: User, chat: Chat, db_session: Session
) -> None:
    client_id = str(uuid.uuid4())
    gateway.append(user.id, chat.id, MessageDraft(id=client_id, content="first"))

    with pytest.raises(PersistenceError) as exc_info:
        gateway.append(user.id, chat.id, MessageDraft(id=client_id, content="second"))

    assert exc_info.value.details == {"reason": "duplicate_id"}
    stored = db_session.execute(select(Message).where(Message.id == client_id)).scalar_one()
    assert stored.content == "first"


@pytest.mark.parametrize("created_at", ["yesterday", "2024-13-40T00:00:00Z", True])
def test_append_rejects_bad_timestamp(
    gateway: MessageGateway, user: User, chat: Chat, created_at
) -> None:
    with pytest.raises(InvalidArgumentError):
        gateway.append(user.id, chat.id, MessageDraft(content="x", created_at=created_at))


@pytest.mark.parametrize(
    "draft",
    [
        MessageDraft(role="robot", content="x"),
        MessageDraft(id="not-a-uuid", content="x"),
    ],
)
def test_append_rejects_invalid_fields(
    gateway: MessageGateway, user: User, chat: Chat, draft: MessageDraft
) -> None:
    with pytest.raises(InvalidArgumentError):
        gateway.append(user.id, chat.id, draft)


def test_append_rejects_malformed_chat_id(gateway: MessageGateway, user: User) -> None:
    with pytest.raises(InvalidArgumentError):
        gateway.append(user.id, "chat-1", MessageDraft(content="x"))


def test_append_to_foreign_chat_is_not_found(
    gateway: MessageGateway, other_user: User, chat: Chat, db_session: Session
) -> None:
    with pytest.raises(NotFoundError):
        gateway.append(other_user.id, chat.id, MessageDraft(content="intrusion"))

    count = db_session.execute(select(Message).where(Message.chat_id == chat.id)).all()
    assert count == []


def test_append_and_update_touch_chat(
    gateway: MessageGateway, user: User, chat: Chat, db_session: Session
) -> None:
    stale = datetime(2020, 1, 1)
    db_session.get(Chat, chat.id).updated_at = stale
    db_session.commit()

    record = gateway.append(user.id, chat.id, MessageDraft(content="bump"))
    db_session.expire_all()
    after_append = db_session.get(Chat, chat.id).updated_at
    assert after_append > stale

    db_session.get(Chat, chat.id).updated_at = stale
    db_session.commit()
    gateway.update(user.id, chat.id, record.id, MessagePatch(content="bumped"))
    db_session.expire_all()
    assert db_session.get(Chat, chat.id).updated_at > stale


def test_list_returns_latest_page_in_chronological_order(
    gateway: MessageGateway, user: User, chat: Chat
) -> None:
    ids = seed_messages(gateway, user, chat, 10)

    page = gateway.list(user.id, chat.id, limit=3, offset=0)

    assert [m.id for m in page.messages] == ids[7:]
    assert page.has_more is True
    assert page.total == 10


def test_list_last_page(gateway: MessageGateway, user: User, chat: Chat) -> None:
    ids = seed_messages(gateway, user, chat, 10)

    page = gateway.list(user.id, chat.id, limit=3, offset=9)

    assert [m.id for m in page.messages] == ids[:1]
    assert page.has_more is False


def test_list_empty_chat(gateway: MessageGateway, user: User, chat: Chat) -> None:
    page = gateway.list(user.id, chat.id)
    assert page.messages == []
    assert page.has_more is False
    assert page.total == 0


def test_list_foreign_chat_is_not_found(
    gateway: MessageGateway, other_user: User, chat: Chat
) -> None:
    with pytest.raises(NotFoundError):
        gateway.list(other_user.id, chat.id)


@pytest.mark.parametrize(
    ("limit", "offset", "expected"),
    [
        (None, None, (50, 0)),
        (0, -5, (1, 0)),
        (1000, 3, (200, 3)),
        ("25", "10", (25, 10)),
        ("abc", "xyz", (50, 0)),
    ],
)
def test_clamp_page(limit, offset, expected) -> None:
    assert clamp_page(limit, offset) == expected


def test_update_applies_only_supplied_fields(
    gateway: MessageGateway, user: User, chat: Chat
) -> None:
    record = gateway.append(
        user.id, chat.id, MessageDraft(role="assistant", content="", model="m-1")
    )

    gateway.update(user.id, chat.id, record.id, MessagePatch(content="Answer"))
    stats = {"completionTokens": 3, "promptTokens": 5}
    updated = gateway.update(user.id, chat.id, record.id, MessagePatch(stats=stats))

    assert updated.content == "Answer"
    assert updated.stats == stats
    assert updated.model == "m-1"


def test_update_none_clears_generated_images(
    gateway: MessageGateway, user: User, chat: Chat
) -> None:
    record = gateway.append(user.id, chat.id, MessageDraft(role="assistant", content=""))
    gateway.update(
        user.id, chat.id, record.id, MessagePatch(generated_images=["data:image/png;base64,AA"])
    )

    cleared = gateway.update(user.id, chat.id, record.id, MessagePatch(generated_images=None))

    assert cleared.generated_images is None
    assert gateway.history(user.id, chat.id)[0].generated_images is None


def test_update_missing_message_is_not_found(
    gateway: MessageGateway, user: User, chat: Chat
) -> None:
    with pytest.raises(NotFoundError):
        gateway.update(user.id, chat.id, str(uuid.uuid4()), MessagePatch(content="x"))


def test_update_foreign_message_is_not_found(
    gateway: MessageGateway, user: User, other_user: User, chat: Chat
) -> None:
    record = gateway.append(user.id, chat.id, MessageDraft(content="mine"))
    with pytest.raises(NotFoundError):
        gateway.update(other_user.id, chat.id, record.id, MessagePatch(content="theirs"))
    assert gateway.history(user.id, chat.id)[0].content == "mine"


def test_update_rejects_malformed_ids(gateway: MessageGateway, user: User, chat: Chat) -> None:
    with pytest.raises(InvalidArgumentError):
        gateway.update(user.id, chat.id, "nope", MessagePatch(content="x"))
    with pytest.raises(InvalidArgumentError):
        gateway.update(user.id, "nope", str(uuid.uuid4()), MessagePatch(content="x"))


def test_history_is_chronological(gateway: MessageGateway, user: User, chat: Chat) -> None:
    ids = seed_messages(gateway, user, chat, 4)
    assert [m.id for m in gateway.history(user.id, chat.id)] == ids


def test_deleting_chat_removes_messages(
    gateway: MessageGateway, user: User, chat: Chat, db_session: Session
) -> None:
    seed_messages(gateway, user, chat, 3)

    assert delete_chat(db_session, user.id, chat.id) is True

    remaining = db_session.execute(select(Message).where(Message.chat_id == chat.id)).all()
    assert remaining == []
    with pytest.raises(NotFoundError):
        gateway.list(user.id, chat.id)
