"""Per-client fixed-window rate limiting."""

import math
import threading
import time
from collections.abc import Callable
from dataclasses import dataclass
from typing import Protocol

from loguru import logger


class RateLimiter(Protocol):
    """Protocol for rate limit implementations."""

    async def admit(self, identifier: str) -> bool:
        """Count a request and report whether it may proceed."""
        ...

    async def reset_seconds(self, identifier: str) -> int:
        """Seconds until the identifier's current window ends."""
        ...


@dataclass
class RateLimitEntry:
    """Request counter of one identifier in its current window."""

    count: int
    window_reset_at: float


class InMemoryRateLimiter:
    """Process-local fixed window limiter.

    State lives in a plain dict and disappears on restart; it is not shared
    between workers.
    """

    def __init__(
        self,
        max_requests: int = 5,
        window_seconds: float = 60,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        """Initialize in-memory rate limiter."""
        self.max_requests = max_requests
        self.window_seconds = window_seconds
        self.clock = clock
        self.entries: dict[str, RateLimitEntry] = {}
        self._lock = threading.Lock()
        logger.info(
            f"In-memory rate limiter initialized: {max_requests} requests per {window_seconds}s"
        )

    def _purge_expired(self, now: float) -> None:
        expired = [key for key, entry in self.entries.items() if entry.window_reset_at <= now]
        for key in expired:
            del self.entries[key]

    async def admit(self, identifier: str) -> bool:
        """Admit the request unless the identifier used up its window."""
        with self._lock:
            now = self.clock()
            self._purge_expired(now)

            entry = self.entries.get(identifier)
            if entry is None:
                self.entries[identifier] = RateLimitEntry(
                    count=1, window_reset_at=now + self.window_seconds
                )
                return True

            if entry.count >= self.max_requests:
                logger.warning(
                    f"Rate limit exceeded for {identifier}: {entry.count}/{self.max_requests}"
                )
                return False

            entry.count += 1
            return True

    async def reset_seconds(self, identifier: str) -> int:
        """Remaining window time rounded up, or 0 when nothing is tracked."""
        with self._lock:
            entry = self.entries.get(identifier)
            if entry is None:
                return 0
            return max(0, math.ceil(entry.window_reset_at - self.clock()))

    async def reset(self, identifier: str) -> None:
        """Forget an identifier's window."""
        with self._lock:
            self.entries.pop(identifier, None)
