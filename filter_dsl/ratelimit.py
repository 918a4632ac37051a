"""
Request pacing with exponential backoff.

The limiter enforces a minimum interval between search requests. The
interval starts at ``initial_delay``, grows by ``retry_multiplier`` every
time the backend reports throttling (capped at ``max_delay``) and returns
to ``initial_delay`` after a successful call.
"""

import logging
import threading
import time
from dataclasses import dataclass
from typing import Callable, Optional

from .models import ConfigError, WaitCancelled

logger = logging.getLogger(__name__)


@dataclass
class RateLimitConfig:
    """Backoff settings, in seconds.

    Attributes:
        initial_delay: Minimum interval after a successful request
        max_delay: Upper bound for the interval while throttled
        retry_multiplier: Growth factor applied on each throttling signal
    """
    initial_delay: float = 0.1
    max_delay: float = 5.0
    retry_multiplier: float = 2.0

    def __post_init__(self):
        if self.initial_delay <= 0:
            raise ConfigError(f"initial_delay must be > 0, got {self.initial_delay}")
        if self.max_delay <= 0:
            raise ConfigError(f"max_delay must be > 0, got {self.max_delay}")
        if self.retry_multiplier <= 1.0:
            raise ConfigError(f"retry_multiplier must be > 1.0, got {self.retry_multiplier}")
        if self.initial_delay > self.max_delay:
            raise ConfigError(
                f"initial_delay ({self.initial_delay}) must be <= max_delay ({self.max_delay})"
            )


class RateLimiter:
    """Minimum-interval throttle for outbound search requests."""

    def __init__(
        self,
        config: Optional[RateLimitConfig] = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        """Initialize the limiter.

        Args:
            config: Backoff settings, defaults to RateLimitConfig()
            clock: Monotonic time source in seconds
        """
        self.config = config or RateLimitConfig()
        self._clock = clock
        self._lock = threading.Lock()
        self._last_request: Optional[float] = None
        self._retry_after = self.config.initial_delay

    @property
    def retry_after(self) -> float:
        """Current minimum interval between requests, in seconds."""
        with self._lock:
            return self._retry_after

    @property
    def last_request(self) -> Optional[float]:
        with self._lock:
            return self._last_request

    def wait(self) -> None:
        """Block until the next request may be sent."""
        self.wait_for_slot()

    def wait_for_slot(
        self,
        cancel: Optional[threading.Event] = None,
        timeout: Optional[float] = None,
    ) -> None:
        """Block until the next request may be sent, or until cancelled.

        The slot is only claimed when the wait completes, so a cancelled
        wait leaves the limiter untouched.

        Args:
            cancel: Event that aborts the wait when set
            timeout: Maximum number of seconds to wait

        Raises:
            WaitCancelled: If the event is set or the timeout expires first
        """
        signal = cancel or threading.Event()
        deadline = None if timeout is None else self._clock() + timeout

        while True:
            if signal.is_set():
                raise WaitCancelled("rate limiter wait cancelled")

            with self._lock:
                now = self._clock()
                if self._last_request is None:
                    remaining = 0.0
                else:
                    remaining = self._last_request + self._retry_after - now
                if remaining <= 0:
                    self._last_request = now
                    return

            if deadline is not None:
                left = deadline - now
                if left <= 0 or left < remaining:
                    if left > 0:
                        signal.wait(left)
                    raise WaitCancelled(
                        f"rate limiter wait exceeded timeout of {timeout:.3f}s"
                    )

            signal.wait(remaining)

    def handle_too_many_requests(self) -> float:
        """Grow the interval after a throttling response.

        Returns:
            The new interval in seconds
        """
        with self._lock:
            self._retry_after = min(
                self._retry_after * self.config.retry_multiplier,
                self.config.max_delay,
            )
            logger.debug("Backoff increased to %.3fs", self._retry_after)
            return self._retry_after

    def reset(self) -> None:
        """Return to the initial interval after a successful request."""
        with self._lock:
            self._retry_after = self.config.initial_delay
