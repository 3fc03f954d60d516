"""Streaming chat endpoints."""

from __future__ import annotations

from collections.abc import AsyncIterator
from contextlib import aclosing
from typing import Any

from fastapi import APIRouter, Body, Depends
from fastapi.responses import StreamingResponse
from pydantic import BaseModel, ConfigDict, Field

from lampchat.api.dependencies import get_orchestrator
from lampchat.auth import RequireAuth
from lampchat.core import NotFoundError, get_request_id
from lampchat.services import ChatOrchestrator, TurnStream

router = APIRouter(tags=["chat"])


class ChatStreamRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    chat_id: str = Field(..., alias="chatId")
    content: str = ""
    model: str | None = None
    attachments: list[dict[str, Any]] | None = None
    message_id: str | None = Field(None, alias="messageId")
    created_at: int | float | str | None = Field(None, alias="createdAt")


class ChatRegenerateRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    chat_id: str = Field(..., alias="chatId")
    message_id: str = Field(..., alias="messageId")
    model: str | None = None


class ChatCancelRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    chat_id: str = Field(..., alias="chatId")


async def _sse(events: TurnStream) -> AsyncIterator[str]:
    async with aclosing(events):
        async for event in events:
            yield event.to_sse()


def _stream_response(events: TurnStream) -> StreamingResponse:
    headers = {"Cache-Control": "no-cache", "X-Accel-Buffering": "no"}
    request_id = get_request_id()
    if request_id:
        headers["X-Request-ID"] = request_id
    return StreamingResponse(_sse(events), media_type="text/event-stream", headers=headers)


@router.post("/chat/stream")
async def chat_stream_route(
    user: RequireAuth,
    body: ChatStreamRequest = Body(...),
    orchestrator: ChatOrchestrator = Depends(get_orchestrator),
) -> StreamingResponse:
    events = await orchestrator.send(
        user.id,
        body.chat_id,
        body.content,
        model=body.model,
        attachments=body.attachments,
        message_id=body.message_id,
        created_at=body.created_at,
    )
    return _stream_response(events)


@router.post("/chat/regenerate")
async def chat_regenerate_route(
    user: RequireAuth,
    body: ChatRegenerateRequest = Body(...),
    orchestrator: ChatOrchestrator = Depends(get_orchestrator),
) -> StreamingResponse:
    events = await orchestrator.regenerate(
        user.id, body.chat_id, body.message_id, model=body.model
    )
    return _stream_response(events)


@router.post("/chat/cancel")
async def chat_cancel_route(
    user: RequireAuth,
    body: ChatCancelRequest = Body(...),
    orchestrator: ChatOrchestrator = Depends(get_orchestrator),
) -> dict[str, Any]:
    if not orchestrator.cancel(body.chat_id, user.id):
        raise NotFoundError("No active response for this chat")
    return {"status": "cancelled", "chatId": body.chat_id}


@router.get("/chat/status/{chat_id}")
async def chat_status_route(
    chat_id: str,
    user: RequireAuth,
    orchestrator: ChatOrchestrator = Depends(get_orchestrator),
) -> dict[str, Any]:
    turn = orchestrator.turn_for(chat_id, user.id)
    return {
        "chatId": chat_id,
        "inProgress": turn is not None,
        "state": turn.state.value if turn else "idle",
    }
