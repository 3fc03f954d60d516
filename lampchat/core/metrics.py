"""
In-process counters, gauges and duration observations served by ``/metrics``.
"""

from __future__ import annotations

import threading

COUNTERS = (
    "turns_committed_total",
    "turns_failed_total",
    "turns_cancelled_total",
    "rate_limit_denials_total",
    "rate_limit_windows_swept_total",
)
GAUGES = ("active_turns",)
OBSERVATIONS = ("turn_duration_seconds",)


class MetricsRegistry:
    """Thread-safe registry.

    An observation is kept as two counters, ``<name>_sum`` and
    ``<name>_count``, so a scraper can derive the mean.
    """

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._counters: dict[str, float] = dict.fromkeys(COUNTERS, 0.0)
        for name in OBSERVATIONS:
            self._counters[f"{name}_sum"] = 0.0
            self._counters[f"{name}_count"] = 0.0
        self._gauges: dict[str, float] = dict.fromkeys(GAUGES, 0.0)

    def increment(self, name: str, amount: float = 1.0) -> None:
        with self._lock:
            self._counters[name] = self._counters.get(name, 0.0) + amount

    def observe(self, name: str, value: float) -> None:
        with self._lock:
            self._counters[f"{name}_sum"] = self._counters.get(f"{name}_sum", 0.0) + value
            self._counters[f"{name}_count"] = self._counters.get(f"{name}_count", 0.0) + 1

    def set_gauge(self, name: str, value: float) -> None:
        with self._lock:
            self._gauges[name] = value

    def snapshot(self) -> dict[str, dict[str, float]]:
        """Copies of the current counters and gauges."""
        with self._lock:
            return {
                "counters": dict(self._counters),
                "gauges": dict(self._gauges),
            }


metrics = MetricsRegistry()
