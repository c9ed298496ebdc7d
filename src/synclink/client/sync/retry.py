"""Retry timing and circuit breaking for outbound API calls.

This module provides:
- compute_backoff: Exponential backoff delay with jitter
- parse_retry_after: Read a server-supplied Retry-After hint
- CircuitBreaker: Client-wide consecutive-failure guard
"""

from __future__ import annotations

import logging
import random
import threading
import time
from collections.abc import Callable
from dataclasses import dataclass
from email.utils import parsedate_to_datetime

logger = logging.getLogger(__name__)

# Default retry configuration
DEFAULT_BASE_DELAY = 1.0  # seconds
DEFAULT_JITTER = 0.2  # +/- fraction of the computed delay
DEFAULT_CIRCUIT_THRESHOLD = 5
DEFAULT_CIRCUIT_COOLDOWN = 30.0  # seconds


def compute_backoff(
    attempt: int,
    base_delay: float = DEFAULT_BASE_DELAY,
    jitter: float = DEFAULT_JITTER,
    rng: Callable[[float, float], float] = random.uniform,
) -> float:
    """Compute the delay before retry number `attempt` (0-based).

    The delay is base_delay * 2**attempt, scaled by a random factor in
    [1 - jitter, 1 + jitter].

    Args:
        attempt: Index of the attempt that just failed, starting at 0.
        base_delay: Delay for the first retry in seconds.
        jitter: Relative jitter amplitude.
        rng: Random source taking (low, high); replaceable in tests.

    Returns:
        Delay in seconds, never negative.
    """
    delay = base_delay * (2**attempt)
    if jitter > 0:
        delay *= rng(1.0 - jitter, 1.0 + jitter)
    return max(0.0, delay)


def parse_retry_after(value: str | None, now: float | None = None) -> float | None:
    """Parse a Retry-After header into seconds.

    Accepts delta-seconds ("120") or an HTTP date. Returns None when the
    header is absent or unparsable.
    """
    if not value:
        return None
    value = value.strip()
    try:
        return max(0.0, float(value))
    except ValueError:
        pass
    try:
        when = parsedate_to_datetime(value)
    except (TypeError, ValueError):
        logger.debug("Ignoring unparsable Retry-After header: %s", value)
        return None
    now = time.time() if now is None else now
    return max(0.0, when.timestamp() - now)


@dataclass(frozen=True)
class CircuitState:
    """Snapshot of a circuit breaker."""

    failure_count: int
    open: bool
    opened_at: float | None


class CircuitBreaker:
    """Opens after consecutive failures and closes after a cool-down.

    Every failed attempt counts, whatever the endpoint. Any success
    resets the counter. Once open, the breaker closes on its own when the
    cool-down has elapsed, with a fresh counter.

    Thread-safe: all transitions happen under one lock.
    """

    def __init__(
        self,
        threshold: int = DEFAULT_CIRCUIT_THRESHOLD,
        cooldown: float = DEFAULT_CIRCUIT_COOLDOWN,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._threshold = threshold
        self._cooldown = cooldown
        self._clock = clock
        self._lock = threading.Lock()
        self._failure_count = 0
        self._opened_at: float | None = None

    def _maybe_close(self) -> None:
        if self._opened_at is not None and self._clock() - self._opened_at >= self._cooldown:
            logger.info("Circuit breaker cool-down elapsed, closing circuit")
            self._opened_at = None
            self._failure_count = 0

    def record_failure(self) -> None:
        """Count one failed attempt, opening the circuit at the threshold."""
        with self._lock:
            self._maybe_close()
            self._failure_count += 1
            if self._opened_at is None and self._failure_count >= self._threshold:
                self._opened_at = self._clock()
                logger.warning(
                    "Circuit breaker opened after %d consecutive failures (cool-down %.0fs)",
                    self._failure_count,
                    self._cooldown,
                )

    def record_success(self) -> None:
        """Reset the failure counter and close the circuit."""
        with self._lock:
            if self._opened_at is not None:
                logger.info("Circuit breaker closed after successful request")
            self._failure_count = 0
            self._opened_at = None

    def is_open(self) -> bool:
        """Check if calls should be short-circuited."""
        with self._lock:
            self._maybe_close()
            return self._opened_at is not None

    @property
    def state(self) -> CircuitState:
        """Current state snapshot."""
        with self._lock:
            self._maybe_close()
            return CircuitState(
                failure_count=self._failure_count,
                open=self._opened_at is not None,
                opened_at=self._opened_at,
            )
