"""Service accessors shared by the routers.

Services live on ``app.state`` so tests can install their own before the
first request.
"""

from fastapi import Request

from lampchat.config import get_settings
from lampchat.db import get_session_factory
from lampchat.providers import OpenRouterSource
from lampchat.services import ChatOrchestrator, ConversationStateStore, MessageGateway


def get_message_gateway(request: Request) -> MessageGateway:
    gateway = getattr(request.app.state, "message_gateway", None)
    if gateway is None:
        gateway = MessageGateway(get_session_factory())
        request.app.state.message_gateway = gateway
    return gateway


def get_orchestrator(request: Request) -> ChatOrchestrator:
    orchestrator = getattr(request.app.state, "orchestrator", None)
    if orchestrator:
        return orchestrator
    settings = get_settings()
    source = getattr(request.app.state, "stream_source", None)
    if source is None:
        source = OpenRouterSource(
            settings.openrouter_api_key,
            settings.openrouter_base_url,
            app_name=settings.openrouter_app_name,
            referer=settings.openrouter_referer,
            timeout_seconds=settings.provider_timeout_seconds,
            max_retries=settings.provider_max_retries,
            retry_base_delay=settings.provider_retry_base_delay_seconds,
        )
        request.app.state.stream_source = source
    orchestrator = ChatOrchestrator(
        get_message_gateway(request),
        source,
        ConversationStateStore(),
    )
    request.app.state.orchestrator = orchestrator
    return orchestrator
