"""Tests for the fixed-window rate limiter and client identity resolution."""

from __future__ import annotations

import asyncio

import pytest
from starlette.datastructures import Headers

from lampchat.core import ErrorCode, RateLimitError, RateLimiter, get_client_ip
from lampchat.core.metrics import metrics


class FakeClock:
    def __init__(self, now: float = 1_000.0):
        self.now = now

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def limiter(clock: FakeClock) -> RateLimiter:
    return RateLimiter(window_seconds=60, max_requests=5, clock=clock)


def test_requests_within_quota_report_remaining(limiter: RateLimiter) -> None:
    for n in range(1, 6):
        decision = limiter.admit("203.0.113.1")
        assert decision.allowed
        assert decision.limit == 5
        assert decision.remaining == 5 - n


def test_request_over_quota_denied_with_retry_after(
    limiter: RateLimiter, clock: FakeClock
) -> None:
    for _ in range(5):
        limiter.admit("203.0.113.1")
    clock.advance(20.5)

    decision = limiter.admit("203.0.113.1")

    assert not decision.allowed
    assert decision.remaining == 0
    assert decision.retry_after_seconds == 40
    assert decision.reset_at == 1060


def test_denial_increments_metric(limiter: RateLimiter) -> None:
    before = metrics.snapshot()["counters"]["rate_limit_denials_total"]
    for _ in range(7):
        limiter.admit("client")
    after = metrics.snapshot()["counters"]["rate_limit_denials_total"]
    assert after - before == 2


def test_retry_after_is_at_least_one_second(limiter: RateLimiter, clock: FakeClock) -> None:
    for _ in range(5):
        limiter.admit("client")
    clock.advance(59.9)
    decision = limiter.admit("client")
    assert not decision.allowed
    assert decision.retry_after_seconds == 1


def test_request_after_window_end_resets_count(limiter: RateLimiter, clock: FakeClock) -> None:
    for _ in range(9):
        limiter.admit("client")
    clock.advance(60.001)

    decision = limiter.admit("client")

    assert decision.allowed
    assert decision.remaining == 4
    window = limiter.get_window("client")
    assert window is not None
    assert window.count == 1
    assert window.window_start == clock.now
    assert window.window_end == clock.now + 60


def test_request_exactly_at_window_end_stays_in_window(
    limiter: RateLimiter, clock: FakeClock
) -> None:
    for _ in range(5):
        limiter.admit("client")
    clock.advance(60)
    assert not limiter.admit("client").allowed


def test_identities_are_counted_independently(limiter: RateLimiter) -> None:
    for _ in range(5):
        limiter.admit("a")
    assert not limiter.admit("a").allowed
    assert limiter.admit("b").allowed


def test_decision_headers() -> None:
    limiter = RateLimiter(window_seconds=60, max_requests=1, clock=lambda: 100.0)
    allowed = limiter.admit("client").headers()
    assert allowed == {
        "X-RateLimit-Limit": "1",
        "X-RateLimit-Remaining": "0",
        "X-RateLimit-Reset": "160",
    }
    denied = limiter.admit("client").headers()
    assert denied["Retry-After"] == "60"


def test_rate_limit_error_renders_flat_body() -> None:
    error = RateLimitError(42)

    assert error.status_code == 429
    assert error.code == ErrorCode.RATE_LIMITED
    assert error.details == {"retryAfter": 42}
    assert error.to_body() == {
        "error": "Too many requests",
        "message": "Rate limit exceeded. Try again in 42 seconds.",
        "retryAfter": 42,
    }


def test_sweep_removes_only_expired_windows(limiter: RateLimiter, clock: FakeClock) -> None:
    limiter.admit("old")
    clock.advance(30)
    limiter.admit("fresh")
    clock.advance(31)

    removed = limiter.sweep()

    assert removed == 1
    assert limiter.get_window("old") is None
    assert limiter.get_window("fresh") is not None
    assert len(limiter) == 1


def test_sweep_accepts_explicit_time(limiter: RateLimiter) -> None:
    limiter.admit("a")
    limiter.admit("b")
    assert limiter.sweep(now=10_000) == 2
    assert len(limiter) == 0


def test_reset_forgets_identity(limiter: RateLimiter) -> None:
    for _ in range(6):
        limiter.admit("client")
    limiter.reset("client")
    assert limiter.admit("client").allowed


@pytest.mark.asyncio
async def test_sweep_task_runs_periodically(clock: FakeClock) -> None:
    limiter = RateLimiter(window_seconds=1, max_requests=5, sweep_interval_seconds=0.01, clock=clock)
    limiter.admit("client")
    clock.advance(5)

    limiter.start()
    try:
        for _ in range(50):
            if len(limiter) == 0:
                break
            await asyncio.sleep(0.01)
    finally:
        await limiter.stop()

    assert len(limiter) == 0


@pytest.mark.asyncio
async def test_stop_without_start_is_noop(limiter: RateLimiter) -> None:
    await limiter.stop()


def test_real_ip_header_wins() -> None:
    headers = Headers({"x-real-ip": "203.0.113.1", "x-forwarded-for": "203.0.113.2, 10.0.0.2"})
    assert get_client_ip(headers, "10.0.0.9") == "203.0.113.1"


def test_first_forwarded_hop_used() -> None:
    headers = Headers({"x-forwarded-for": "203.0.113.2, 10.0.0.2"})
    assert get_client_ip(headers, "10.0.0.9") == "203.0.113.2"


def test_falls_back_to_peer_address() -> None:
    assert get_client_ip(Headers({}), "10.0.0.9") == "10.0.0.9"


def test_blank_headers_are_ignored() -> None:
    headers = Headers({"x-real-ip": "  ", "x-forwarded-for": " , 10.0.0.2"})
    assert get_client_ip(headers, "10.0.0.9") == "10.0.0.9"


def test_unknown_when_nothing_available() -> None:
    assert get_client_ip({}, None) == "unknown"


def test_extraction_failure_yields_unknown() -> None:
    class BrokenHeaders:
        def get(self, _name: str) -> str:
            raise RuntimeError("boom")

    assert get_client_ip(BrokenHeaders(), "10.0.0.9") == "unknown"
