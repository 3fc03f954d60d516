"""Fixed-window request limiting.

Counts requests per client identity in process memory. Each identity owns a
single window that starts with its first request and lasts
``window_seconds``; the first request after the window ends opens a new
one. A periodic sweep drops expired windows so memory is bounded by the
number of recently active clients.

State is volatile and local to this process.
"""

from __future__ import annotations

import asyncio
import math
import time
from collections.abc import Callable
from dataclasses import dataclass
from typing import Any

from lampchat.core.logging import get_logger
from lampchat.core.metrics import metrics

logger = get_logger(__name__)

UNKNOWN_CLIENT = "unknown"


@dataclass
class ClientWindow:
    """Request count for one identity within its current window."""

    identity: str
    count: int
    window_start: float
    window_end: float


@dataclass(frozen=True)
class RateLimitDecision:
    """Outcome of an admission check plus header metadata."""

    allowed: bool
    limit: int
    remaining: int
    reset_at: int  # epoch seconds
    retry_after_seconds: int | None = None

    def headers(self) -> dict[str, str]:
        headers = {
            "X-RateLimit-Limit": str(self.limit),
            "X-RateLimit-Remaining": str(self.remaining),
            "X-RateLimit-Reset": str(self.reset_at),
        }
        if self.retry_after_seconds is not None:
            headers["Retry-After"] = str(self.retry_after_seconds)
        return headers


class RateLimiter:
    """In-memory fixed-window rate limiter keyed by client identity."""

    def __init__(
        self,
        window_seconds: float = 60,
        max_requests: int = 5,
        sweep_interval_seconds: float = 300,
        clock: Callable[[], float] = time.time,
        name: str = "default",
    ):
        self.window_seconds = window_seconds
        self.max_requests = max_requests
        self.sweep_interval_seconds = sweep_interval_seconds
        self.name = name
        self._clock = clock
        self._windows: dict[str, ClientWindow] = {}
        self._sweep_task: asyncio.Task | None = None

    def __len__(self) -> int:
        return len(self._windows)

    def get_window(self, identity: str) -> ClientWindow | None:
        """Return the tracked window for an identity (tests/diagnostics)."""
        return self._windows.get(identity)

    def admit(self, identity: str) -> RateLimitDecision:
        """Count a request for ``identity`` and decide whether to admit it.

        Never raises; the decision and its header metadata are computed and
        stored in a single synchronous step.
        """
        now = self._clock()
        window = self._windows.get(identity)

        if window is None or now > window.window_end:
            window = ClientWindow(
                identity=identity,
                count=1,
                window_start=now,
                window_end=now + self.window_seconds,
            )
            self._windows[identity] = window
        else:
            window.count += 1

        remaining = max(0, self.max_requests - window.count)
        reset_at = math.ceil(window.window_end)

        if window.count <= self.max_requests:
            return RateLimitDecision(
                allowed=True,
                limit=self.max_requests,
                remaining=remaining,
                reset_at=reset_at,
            )

        retry_after = max(1, math.ceil(window.window_end - now))
        metrics.increment("rate_limit_denials_total")
        logger.warning(
            "Rate limit exceeded",
            data={
                "limiter": self.name,
                "identity": identity,
                "count": window.count,
                "retry_after": retry_after,
            },
        )
        return RateLimitDecision(
            allowed=False,
            limit=self.max_requests,
            remaining=remaining,
            reset_at=reset_at,
            retry_after_seconds=retry_after,
        )

    def reset(self, identity: str | None = None) -> None:
        """Forget one identity, or every identity when none is given."""
        if identity is None:
            self._windows.clear()
        else:
            self._windows.pop(identity, None)

    def sweep(self, now: float | None = None) -> int:
        """Remove every window whose end has passed. Returns the count removed."""
        now = self._clock() if now is None else now
        expired = [key for key, window in self._windows.items() if now > window.window_end]
        for key in expired:
            del self._windows[key]
        if expired:
            metrics.increment("rate_limit_windows_swept_total", len(expired))
            logger.debug(
                "Swept expired rate limit windows",
                data={"limiter": self.name, "removed": len(expired), "active": len(self._windows)},
            )
        return len(expired)

    async def _sweep_loop(self) -> None:
        while True:
            await asyncio.sleep(self.sweep_interval_seconds)
            self.sweep()

    def start(self) -> None:
        """Start the periodic sweep on the running event loop."""
        if self._sweep_task is None or self._sweep_task.done():
            self._sweep_task = asyncio.get_running_loop().create_task(self._sweep_loop())

    async def stop(self) -> None:
        """Cancel the periodic sweep task."""
        task = self._sweep_task
        self._sweep_task = None
        if task is None:
            return
        task.cancel()
        try:
            await task
        except asyncio.CancelledError:
            pass


def get_client_ip(headers: Any, peer: str | None = None) -> str:
    """Resolve the client identity used as the rate-limit key.

    Order: ``x-real-ip``; else the first hop of ``x-forwarded-for``; else the
    transport peer address; else ``"unknown"``. Only the first forwarded hop
    is used because later entries can be spoofed by the client. Failures
    fall back to ``"unknown"``, which pools such clients under one quota.
    """
    try:
        real_ip = (headers.get("x-real-ip") or "").strip()
        if real_ip:
            return real_ip

        forwarded_for = headers.get("x-forwarded-for") or ""
        if forwarded_for:
            first_hop = forwarded_for.split(",")[0].strip()
            if first_hop:
                return first_hop

        if peer:
            return peer
    except Exception:
        logger.debug("Client identity extraction failed", exc_info=True)
    return UNKNOWN_CLIENT
