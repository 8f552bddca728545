"""
Per-identity rolling-window rate limiting.

The limiter keeps, for each identity, the timestamps of its accepted
requests inside the trailing window. State lives behind a RateLimitStore so
the process-local default can be replaced by a shared store.

Known limitation: InMemoryRateLimitStore is local to one process and is
reset whenever the process restarts.
"""

import logging
import math
import time
from abc import ABC, abstractmethod
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Callable, Dict, List, Optional

logger = logging.getLogger(__name__)

DEFAULT_LIMIT = 5
DEFAULT_WINDOW_SECONDS = 60.0
CLEANUP_INTERVAL_SECONDS = 5 * 60


@dataclass(frozen=True)
class RateLimitResult:
    """Outcome of a rate-limit check."""
    allowed: bool
    remaining: int
    reset_at: datetime
    retry_after: Optional[int] = None  # seconds, only set when rejected

    def headers(self, limit: int) -> Dict[str, str]:
        """Render the result as X-RateLimit-* response headers."""
        headers = {
            "X-RateLimit-Limit": str(limit),
            "X-RateLimit-Remaining": str(self.remaining),
            "X-RateLimit-Reset": self.reset_at.isoformat(),
        }
        if self.retry_after is not None:
            headers["Retry-After"] = str(self.retry_after)
        return headers


class RateLimitStore(ABC):
    """Storage for per-identity request timestamps."""

    @abstractmethod
    def get(self, identity: str) -> List[float]:
        """Return the stored timestamps for an identity (empty if none)."""

    @abstractmethod
    def set(self, identity: str, timestamps: List[float]) -> None:
        """Replace the stored timestamps for an identity."""

    @abstractmethod
    def delete(self, identity: str) -> None:
        """Forget an identity entirely."""

    def prune(self, cutoff: float) -> None:
        """Drop timestamps older than cutoff. Optional for shared stores."""


class InMemoryRateLimitStore(RateLimitStore):
    """Process-local store backed by a dict."""

    def __init__(self):
        self._entries: Dict[str, List[float]] = {}

    def get(self, identity: str) -> List[float]:
        return list(self._entries.get(identity, []))

    def set(self, identity: str, timestamps: List[float]) -> None:
        self._entries[identity] = list(timestamps)

    def delete(self, identity: str) -> None:
        self._entries.pop(identity, None)

    def prune(self, cutoff: float) -> None:
        for identity in list(self._entries):
            kept = [ts for ts in self._entries[identity] if ts > cutoff]
            if kept:
                self._entries[identity] = kept
            else:
                del self._entries[identity]

    def __len__(self) -> int:
        return len(self._entries)


class RateLimiter:
    """Rolling-window limiter over a RateLimitStore.

    Identities are fully independent: one identity exhausting its quota never
    changes the outcome for another.
    """

    def __init__(
        self,
        store: Optional[RateLimitStore] = None,
        clock: Callable[[], float] = time.time,
        cleanup_interval: float = CLEANUP_INTERVAL_SECONDS,
    ):
        self.store = store if store is not None else InMemoryRateLimitStore()
        self.clock = clock
        self.cleanup_interval = cleanup_interval
        self._last_cleanup = clock()

    def check(
        self,
        identity: str,
        limit: int = DEFAULT_LIMIT,
        window_seconds: float = DEFAULT_WINDOW_SECONDS
    ) -> RateLimitResult:
        """Consume one request slot for identity if available.

        Args:
            identity: Caller identity
            limit: Maximum accepted requests per window
            window_seconds: Length of the trailing window

        Returns:
            RateLimitResult; remaining reflects this call's own effect
        """
        now = self.clock()
        self._maybe_cleanup(now, window_seconds)

        timestamps = self._in_window(identity, now, window_seconds)
        allowed = len(timestamps) < limit

        if allowed:
            timestamps.append(now)
            self.store.set(identity, timestamps)
        else:
            logger.info("Rate limit hit for %s (%d/%d)", identity, len(timestamps), limit)

        return self._result(timestamps, allowed, limit, now, window_seconds)

    def peek(
        self,
        identity: str,
        limit: int = DEFAULT_LIMIT,
        window_seconds: float = DEFAULT_WINDOW_SECONDS
    ) -> RateLimitResult:
        """Report the current status without consuming a slot."""
        now = self.clock()
        timestamps = self._in_window(identity, now, window_seconds)
        allowed = len(timestamps) < limit
        return self._result(timestamps, allowed, limit, now, window_seconds)

    def reset(self, identity: str) -> None:
        """Clear an identity's history (admin override)."""
        self.store.delete(identity)

    def _in_window(self, identity: str, now: float, window_seconds: float) -> List[float]:
        cutoff = now - window_seconds
        return [ts for ts in self.store.get(identity) if ts > cutoff]

    def _result(
        self,
        timestamps: List[float],
        allowed: bool,
        limit: int,
        now: float,
        window_seconds: float
    ) -> RateLimitResult:
        if timestamps:
            oldest = min(timestamps)
            reset_at = oldest + window_seconds
        else:
            reset_at = now + window_seconds

        retry_after = None
        if not allowed:
            retry_after = max(1, math.ceil(reset_at - now))

        return RateLimitResult(
            allowed=allowed,
            remaining=max(0, limit - len(timestamps)),
            reset_at=datetime.fromtimestamp(reset_at, tz=timezone.utc),
            retry_after=retry_after,
        )

    def _maybe_cleanup(self, now: float, window_seconds: float) -> None:
        if now - self._last_cleanup < self.cleanup_interval:
            return
        self.store.prune(now - window_seconds)
        self._last_cleanup = now
