"""Rolling-window request and token limiter for the embedding provider."""

import asyncio
import logging
import time
from collections import deque
from typing import Awaitable, Callable, Deque, Optional, Tuple

logger = logging.getLogger(__name__)


class RollingWindowRateLimiter:
    """Admit requests so that no rolling window exceeds a request or token ceiling.

    Each admitted request is recorded as ``(timestamp, tokens)``. An entry
    stops counting once it is ``window`` seconds old, so over any half-open
    interval ``(t - window, t]`` at most ``max_requests`` requests and
    ``max_tokens`` tokens are admitted. A single request larger than the
    token ceiling is admitted only into an empty window.
    """

    def __init__(
        self,
        max_requests: int,
        max_tokens: int,
        window: float = 60.0,
        clock: Optional[Callable[[], float]] = None,
        sleep: Optional[Callable[[float], Awaitable[None]]] = None,
    ):
        """Initialize the limiter.

        Args:
            max_requests: Requests allowed per window
            max_tokens: Tokens allowed per window
            window: Window length in seconds
            clock: Monotonic time source (injectable for tests)
            sleep: Async sleep function (injectable for tests)
        """
        if max_requests < 1 or max_tokens < 1:
            raise ValueError("Rate limits must be positive")
        self.max_requests = max_requests
        self.max_tokens = max_tokens
        self.window = window
        self._clock = clock or time.monotonic
        self._sleep = sleep or asyncio.sleep
        self._entries: Deque[Tuple[float, int]] = deque()

    def _prune(self, now: float) -> None:
        while self._entries and self._entries[0][0] <= now - self.window:
            self._entries.popleft()

    @property
    def requests_in_window(self) -> int:
        self._prune(self._clock())
        return len(self._entries)

    @property
    def tokens_in_window(self) -> int:
        self._prune(self._clock())
        return sum(tokens for _, tokens in self._entries)

    def _admissible(self, tokens: int) -> bool:
        if not self._entries:
            return True
        if len(self._entries) >= self.max_requests:
            return False
        used = sum(t for _, t in self._entries)
        return used + tokens <= self.max_tokens

    async def acquire(self, tokens: int) -> float:
        """Wait until a request of ``tokens`` fits the window, then record it.

        Args:
            tokens: Estimated tokens the request will consume

        Returns:
            Seconds spent waiting
        """
        waited = 0.0
        while True:
            now = self._clock()
            self._prune(now)
            if self._admissible(tokens):
                self._entries.append((now, tokens))
                return waited

            # Sleep until the oldest entry leaves the window, then re-check
            delay = max(self._entries[0][0] + self.window - now, 0.0)
            logger.info(
                f"Rate limit reached ({len(self._entries)} requests, "
                f"{sum(t for _, t in self._entries)} tokens in window), waiting {delay:.1f}s"
            )
            await self._sleep(delay)
            waited += delay

    def reset(self) -> None:
        """Forget all recorded requests."""
        self._entries.clear()
