"""Process-wide usage statistics.

This module provides the UsageStats class that accumulates request outcome
counters, token usage and a rolling window of response latencies. Only the
orchestrator mutates it, and only when a request reaches a terminal outcome;
everything else reads ``snapshot()``.

Usage:
    >>> from metrics import UsageStats
    >>> stats = UsageStats()
    >>> stats.record_success(latency_ms=1200, input_tokens=100, output_tokens=50)
    >>> stats.record_error("first_token_timeout")
    >>> stats.snapshot().completed
    1
"""

import time
from collections import Counter, deque
from dataclasses import dataclass, field

import structlog

logger = structlog.get_logger(__name__)


@dataclass
class StatsSnapshot:
    """Read-only copy of the counters at one instant.

    Attributes:
        started_at: Unix timestamp when collection began.
        total_requests: Requests that reached any terminal outcome.
        completed_requests: Requests that produced a result.
        error_requests: Requests that ended in an error (timeouts included).
        errors_by_kind: Error counts keyed by machine-readable kind.
        total_input_tokens: Cumulative prompt tokens.
        total_output_tokens: Cumulative completion tokens.
        avg_response_ms: Mean of the latency window (0 if empty).
        sampled_requests: Number of latencies in the window.
    """

    started_at: float
    total_requests: int = 0
    completed_requests: int = 0
    error_requests: int = 0
    errors_by_kind: dict[str, int] = field(default_factory=dict)
    total_input_tokens: int = 0
    total_output_tokens: int = 0
    avg_response_ms: int = 0
    sampled_requests: int = 0

    @property
    def uptime_ms(self) -> int:
        return int((time.time() - self.started_at) * 1000)

    @property
    def total_tokens(self) -> int:
        return self.total_input_tokens + self.total_output_tokens


class UsageStats:
    """Aggregate counters for every request handled by this process.

    Attributes:
        window: Number of recent latencies kept for the rolling average.
    """

    def __init__(self, window: int = 100) -> None:
        """Initialize empty counters.

        Args:
            window: Size of the rolling latency window.
        """
        self.window = window
        self._started_at = time.time()
        self._total = 0
        self._completed = 0
        self._errors = 0
        self._errors_by_kind: Counter[str] = Counter()
        self._input_tokens = 0
        self._output_tokens = 0
        self._latencies: deque[int] = deque(maxlen=window)
        logger.info("usage_stats_initialized", window=window)

    def record_success(
        self,
        latency_ms: int,
        input_tokens: int = 0,
        output_tokens: int = 0,
    ) -> None:
        """Count a request that completed with an agent result."""
        self._total += 1
        self._completed += 1
        self._input_tokens += input_tokens
        self._output_tokens += output_tokens
        self._latencies.append(latency_ms)
        logger.debug(
            "usage_success_recorded",
            latency_ms=latency_ms,
            input_tokens=input_tokens,
            output_tokens=output_tokens,
        )

    def record_error(
        self,
        kind: str,
        input_tokens: int = 0,
        output_tokens: int = 0,
    ) -> None:
        """Count a request that ended in an error of the given kind."""
        self._total += 1
        self._errors += 1
        self._errors_by_kind[str(kind)] += 1
        self._input_tokens += input_tokens
        self._output_tokens += output_tokens

    def snapshot(self) -> StatsSnapshot:
        """Return a copy of the current counters."""
        sampled = len(self._latencies)
        avg = round(sum(self._latencies) / sampled) if sampled else 0
        return StatsSnapshot(
            started_at=self._started_at,
            total_requests=self._total,
            completed_requests=self._completed,
            error_requests=self._errors,
            errors_by_kind=dict(self._errors_by_kind),
            total_input_tokens=self._input_tokens,
            total_output_tokens=self._output_tokens,
            avg_response_ms=avg,
            sampled_requests=sampled,
        )


def format_uptime(ms: int) -> str:
    """Render a duration as the largest two units, e.g. ``3h 12m``."""
    s = ms // 1000
    m = s // 60
    h = m // 60
    d = h // 24
    if d > 0:
        return f"{d}d {h % 24}h"
    if h > 0:
        return f"{h}h {m % 60}m"
    if m > 0:
        return f"{m}m {s % 60}s"
    return f"{s}s"
