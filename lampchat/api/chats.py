"""Chat and message CRUD endpoints."""

from __future__ import annotations

from typing import Any

from fastapi import APIRouter, Body, Depends, Request
from pydantic import BaseModel, ConfigDict, Field
from sqlalchemy.orm import Session

from lampchat.api.dependencies import get_message_gateway
from lampchat.auth import RequireAuth
from lampchat.core import NotFoundError
from lampchat.core.time import isoformat_utc
from lampchat.db import get_db
from lampchat.db.models import Chat
from lampchat.db.repositories import delete_chat, list_user_chats
from lampchat.services import UNSET, MessageDraft, MessageGateway, MessagePatch

router = APIRouter(tags=["chats"])


class CreateChatRequest(BaseModel):
    title: str | None = Field(None, max_length=255)


class AppendMessageRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    id: str | None = None
    role: str = "user"
    content: str = ""
    created_at: int | float | str | None = Field(None, alias="createdAt")
    model: str | None = None
    attachments: list[dict[str, Any]] | None = None


class UpdateMessageRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    content: str | None = None
    model: str | None = None
    stats: dict[str, Any] | None = None
    generated_images: list[Any] | None = Field(None, alias="generatedImages")


def _chat_to_dict(chat: Chat) -> dict[str, Any]:
    return {
        "id": chat.id,
        "title": chat.title,
        "createdAt": isoformat_utc(chat.created_at),
        "updatedAt": isoformat_utc(chat.updated_at),
    }


@router.post("/chats")
def create_chat_route(
    user: RequireAuth,
    body: CreateChatRequest | None = None,
    gateway: MessageGateway = Depends(get_message_gateway),
) -> dict[str, Any]:
    chat = gateway.create_chat(user.id, body.title if body else None)
    return {"chat": _chat_to_dict(chat)}


@router.get("/chats")
def list_chats_route(
    user: RequireAuth,
    db: Session = Depends(get_db),
) -> dict[str, Any]:
    return {"chats": [_chat_to_dict(chat) for chat in list_user_chats(db, user.id)]}


@router.delete("/chats/{chat_id}")
async def delete_chat_route(
    chat_id: str,
    request: Request,
    user: RequireAuth,
    db: Session = Depends(get_db),
) -> dict[str, Any]:
    if not delete_chat(db, user.id, chat_id):
        raise NotFoundError("Chat not found")
    orchestrator = getattr(request.app.state, "orchestrator", None)
    if orchestrator is not None:
        orchestrator.discard_chat(chat_id, user.id)
    return {"status": "deleted", "chatId": chat_id}


@router.get("/chats/{chat_id}/messages")
def list_messages_route(
    chat_id: str,
    user: RequireAuth,
    limit: str | None = None,
    offset: str | None = None,
    gateway: MessageGateway = Depends(get_message_gateway),
) -> dict[str, Any]:
    page = gateway.list(user.id, chat_id, limit=limit, offset=offset)
    return {
        "messages": [message.to_dict() for message in page.messages],
        "hasMore": page.has_more,
        "total": page.total,
    }


@router.post("/chats/{chat_id}/messages")
def append_message_route(
    chat_id: str,
    user: RequireAuth,
    body: AppendMessageRequest = Body(...),
    gateway: MessageGateway = Depends(get_message_gateway),
) -> dict[str, Any]:
    record = gateway.append(
        user.id,
        chat_id,
        MessageDraft(
            role=body.role,
            content=body.content,
            id=body.id,
            created_at=body.created_at,
            model=body.model,
            attachments=body.attachments,
        ),
    )
    return {"message": record.to_dict()}


@router.patch("/chats/{chat_id}/messages/{message_id}")
def update_message_route(
    chat_id: str,
    message_id: str,
    user: RequireAuth,
    body: UpdateMessageRequest = Body(...),
    gateway: MessageGateway = Depends(get_message_gateway),
) -> dict[str, Any]:
    supplied = body.model_fields_set
    patch = MessagePatch(
        content=body.content if "content" in supplied else UNSET,
        model=body.model if "model" in supplied else UNSET,
        stats=body.stats if "stats" in supplied else UNSET,
        generated_images=body.generated_images if "generated_images" in supplied else UNSET,
    )
    record = gateway.update(user.id, chat_id, message_id, patch)
    return {"message": record.to_dict()}
