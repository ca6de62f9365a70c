"""
Per-User Rate Limiter

Fixed-window counter: each user gets max_requests per window_seconds.
The window starts on the first request and resets lazily on the first
request after it ends. Closed windows are evicted on every check.

IMPORTANT: State lives in this process. Behind several workers each one
counts separately; a shared deployment needs a shared counter store.
"""

import math
import threading
import time
from typing import Callable, Optional
from uuid import UUID

from pydantic import BaseModel

from ledger_assistant.config import get_settings


class RateLimitDecision(BaseModel):
    """Whether a request may proceed, and if not, when to retry."""

    allowed: bool
    retry_after: int = 0


class RateLimiter:
    """
    Lock-protected fixed-window limiter.

    Usage:
        limiter = RateLimiter(max_requests=10, window_seconds=60)
        decision = limiter.check(user_id)
        if not decision.allowed:
            ...  # respond 429 with decision.retry_after
    """

    def __init__(
        self,
        max_requests: Optional[int] = None,
        window_seconds: Optional[float] = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        settings = get_settings().rate_limit
        self._max_requests = max_requests if max_requests is not None else settings.max_requests
        self._window_seconds = window_seconds if window_seconds is not None else settings.window_seconds
        self._clock = clock
        # user_id -> (count, window reset time)
        self._windows: dict[UUID, tuple[int, float]] = {}
        self._lock = threading.Lock()

    def check(self, user_id: UUID) -> RateLimitDecision:
        """Count one request for user_id and decide whether it may proceed."""
        now = self._clock()
        with self._lock:
            self._evict_expired(now)
            count, reset_at = self._windows.get(user_id, (0, 0.0))
            if now >= reset_at:
                count, reset_at = 0, now + self._window_seconds

            if count >= self._max_requests:
                self._windows[user_id] = (count, reset_at)
                return RateLimitDecision(
                    allowed=False,
                    retry_after=max(1, math.ceil(reset_at - now)),
                )

            self._windows[user_id] = (count + 1, reset_at)
            return RateLimitDecision(allowed=True)

    def _evict_expired(self, now: float) -> None:
        # Caller holds self._lock
        expired = [uid for uid, (_, reset_at) in self._windows.items() if now >= reset_at]
        for uid in expired:
            del self._windows[uid]

    def tracked_users(self) -> int:
        """Number of users with an open window."""
        with self._lock:
            return len(self._windows)

    def reset(self, user_id: Optional[UUID] = None) -> None:
        """Forget one user's window, or every window when user_id is None."""
        with self._lock:
            if user_id is None:
                self._windows.clear()
            else:
                self._windows.pop(user_id, None)
