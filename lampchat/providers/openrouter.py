"""
OpenRouter token stream source.

Talks to the OpenAI-compatible ``/chat/completions`` endpoint with
``stream: true`` and turns the ``data:`` lines into stream events. Requests
rejected with 429 or 5xx before any text arrives are retried with
exponential backoff; nothing is retried once text has been delivered.
"""

from __future__ import annotations

import asyncio
import json
import time
from collections.abc import AsyncIterator, Awaitable, Callable
from typing import Any

import httpx

from lampchat.core import ProviderUnavailableError, StreamError, get_logger, get_request_id
from lampchat.providers.base import (
    ChatMessage,
    ChatRequest,
    GenerationStats,
    StreamCompleted,
    StreamEvent,
    TextChunk,
    TokenStreamSource,
)

logger = get_logger(__name__)

IMAGE_GENERATION_MODELS = frozenset(
    {
        "openai/gpt-5-image",
        "openai/gpt-5-image-mini",
        "google/gemini-2.5-flash-preview-image-generation",
    }
)

MAX_LOGGED_PARSE_FAILURES = 10

_NETWORK_ERRORS = (
    httpx.ConnectError,
    httpx.ReadTimeout,
    httpx.WriteTimeout,
    httpx.NetworkError,
    httpx.TimeoutException,
)


def create_http_client(
    base_url: str,
    timeout_seconds: float,
    headers: dict[str, str] | None = None,
    transport: httpx.AsyncBaseTransport | None = None,
) -> httpx.AsyncClient:
    """Build an AsyncClient with consistent timeout settings."""
    timeout = httpx.Timeout(timeout_seconds, connect=timeout_seconds)
    return httpx.AsyncClient(
        base_url=base_url.rstrip("/"),
        timeout=timeout,
        headers=headers or {},
        transport=transport,
    )


def build_message_content(text: str, attachments: list[dict[str, Any]]) -> str | list[dict]:
    """Plain text, or a multimodal part list when there are attachments."""
    if not attachments:
        return text
    parts: list[dict[str, Any]] = []
    if text:
        parts.append({"type": "text", "text": text})
    for attachment in attachments:
        kind = attachment.get("type")
        data_url = attachment.get("dataUrl") or attachment.get("url")
        if kind == "image" and data_url:
            parts.append({"type": "image_url", "image_url": {"url": data_url}})
        elif kind == "pdf" and data_url:
            parts.append(
                {
                    "type": "file",
                    "file": {"filename": attachment.get("name", "document.pdf"), "file_data": data_url},
                }
            )
    return parts


def serialize_messages(messages: list[ChatMessage]) -> list[dict[str, Any]]:
    payload = []
    for message in messages:
        if message.role == "user" and message.attachments:
            content: Any = build_message_content(message.content, message.attachments)
        else:
            content = message.content
        payload.append({"role": message.role, "content": content})
    return payload


def extract_images(choice: dict[str, Any]) -> list[dict[str, str]]:
    """Collect generated image references from a streamed choice."""
    delta = choice.get("delta") or {}
    message = choice.get("message") or {}
    images = delta.get("images") or message.get("images") or []
    found = []
    for image in images:
        if not isinstance(image, dict):
            continue
        url = (
            (image.get("image_url") or {}).get("url")
            or (image.get("imageUrl") or {}).get("url")
            or image.get("url")
        )
        if url:
            found.append({"url": url})
    return found


def _error_message(response: httpx.Response) -> str:
    try:
        data = response.json()
    except (json.JSONDecodeError, ValueError):
        return f"API request failed: {response.status_code}"
    if isinstance(data, dict):
        error = data.get("error")
        if isinstance(error, dict) and error.get("message"):
            return str(error["message"])
    return f"API request failed: {response.status_code}"


class OpenRouterSource(TokenStreamSource):
    """Token stream source backed by OpenRouter."""

    def __init__(
        self,
        api_key: str,
        base_url: str = "https://openrouter.ai/api/v1",
        *,
        app_name: str = "LampChat",
        referer: str | None = None,
        timeout_seconds: float = 120,
        max_retries: int = 3,
        retry_base_delay: float = 1.0,
        transport: httpx.AsyncBaseTransport | None = None,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ):
        self.api_key = api_key
        self.app_name = app_name
        self.referer = referer
        self.max_retries = max(0, max_retries)
        self.retry_base_delay = retry_base_delay
        self._clock = clock
        self._sleep = sleep
        self._client = create_http_client(base_url, timeout_seconds, transport=transport)

    async def aclose(self) -> None:
        await self._client.aclose()

    def _headers(self) -> dict[str, str]:
        headers = {
            "Authorization": f"Bearer {self.api_key}",
            "Content-Type": "application/json",
            "X-Title": self.app_name,
        }
        if self.referer:
            headers["HTTP-Referer"] = self.referer
        request_id = get_request_id()
        if request_id:
            headers["X-Request-ID"] = request_id
        return headers

    def _build_body(self, request: ChatRequest) -> dict[str, Any]:
        body: dict[str, Any] = {
            "model": request.model,
            "messages": serialize_messages(request.messages),
            "stream": True,
            "usage": {"include": True},
        }
        if request.model in IMAGE_GENERATION_MODELS:
            body["modalities"] = ["image", "text"]
        return body

    async def _backoff(self, attempt: int, reason: str) -> None:
        delay = self.retry_base_delay * (2**attempt)
        logger.info(
            "Retrying provider request",
            data={"attempt": attempt + 1, "max_retries": self.max_retries, "reason": reason},
        )
        await self._sleep(delay)

    async def stream(self, request: ChatRequest) -> AsyncIterator[StreamEvent]:
        if not self.api_key:
            raise StreamError("API key not configured")

        body = self._build_body(request)
        attempt = 0
        while True:
            started = self._clock()
            delivered = False
            try:
                async with self._client.stream(
                    "POST", "/chat/completions", json=body, headers=self._headers()
                ) as response:
                    status = response.status_code
                    if status >= 400:
                        retryable = status == 429 or 500 <= status < 600
                        if retryable and attempt < self.max_retries:
                            await self._backoff(attempt, f"status {status}")
                            attempt += 1
                            continue
                        await response.aread()
                        message = _error_message(response)
                        logger.warning(
                            "Provider returned an error",
                            data={"status": status, "model": request.model},
                        )
                        if status == 429 or status >= 500:
                            raise ProviderUnavailableError(message, details={"status": status})
                        raise StreamError(message, details={"status": status})

                    first_token_at: float | None = None
                    token_count = 0
                    usage: dict[str, Any] | None = None
                    images: list[dict[str, str]] = []
                    parse_failures = 0

                    async for line in response.aiter_lines():
                        line = line.strip()
                        if not line.startswith("data: "):
                            continue
                        data = line[6:]
                        if data == "[DONE]":
                            continue
                        try:
                            parsed = json.loads(data)
                        except json.JSONDecodeError:
                            parse_failures += 1
                            if parse_failures <= MAX_LOGGED_PARSE_FAILURES:
                                logger.warning("Failed to parse stream data", data={"line": data[:200]})
                            continue
                        if not isinstance(parsed, dict):
                            continue
                        if isinstance(parsed.get("error"), dict):
                            raise StreamError(
                                str(parsed["error"].get("message") or "Provider stream error")
                            )
                        if isinstance(parsed.get("usage"), dict):
                            usage = parsed["usage"]
                        choices = parsed.get("choices") or []
                        if not choices or not isinstance(choices[0], dict):
                            continue
                        choice = choices[0]
                        text = (choice.get("delta") or {}).get("content") or ""
                        if text:
                            if first_token_at is None:
                                first_token_at = self._clock()
                            token_count += 1
                            delivered = True
                            yield TextChunk(text=text)
                        images.extend(extract_images(choice))

                    if parse_failures > MAX_LOGGED_PARSE_FAILURES:
                        logger.warning(
                            "Stream had parse failures", data={"count": parse_failures}
                        )

                    finished = self._clock()
                    yield StreamCompleted(
                        stats=self._build_stats(started, first_token_at, finished, token_count, usage),
                        images=images,
                    )
                    return
            except _NETWORK_ERRORS as exc:
                if not delivered and attempt < self.max_retries:
                    await self._backoff(attempt, type(exc).__name__)
                    attempt += 1
                    continue
                raise ProviderUnavailableError(
                    "Provider unavailable", details={"reason": str(exc)}
                ) from exc
            except httpx.HTTPError as exc:
                raise StreamError(
                    "Provider request failed", details={"reason": str(exc)}
                ) from exc

    @staticmethod
    def _build_stats(
        started: float,
        first_token_at: float | None,
        finished: float,
        token_count: int,
        usage: dict[str, Any] | None,
    ) -> GenerationStats:
        usage = usage or {}
        total_time = finished - started
        time_to_first = (first_token_at - started) if first_token_at is not None else total_time
        generation_time = (finished - first_token_at) if first_token_at is not None else total_time
        completion_tokens = usage.get("completion_tokens") or token_count
        return GenerationStats(
            completion_tokens=completion_tokens,
            prompt_tokens=usage.get("prompt_tokens") or 0,
            total_tokens=usage.get("total_tokens") or token_count,
            time_to_first_token=time_to_first,
            tokens_per_second=(completion_tokens / generation_time) if generation_time > 0 else 0.0,
            total_time=total_time,
        )
