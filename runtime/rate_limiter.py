"""Fixed-window rate limiter keyed by requester identity.

Each ``sessionId:ipAddress`` key gets at most ``limit`` requests per
window.  Windows start at the first request after expiry, so bursts of
up to twice the limit are possible across a window boundary.
"""

from __future__ import annotations

import logging
import threading
import time
from dataclasses import dataclass
from typing import Callable

from contracts.policy import PolicyEvaluationContext, RateLimitStatus

logger = logging.getLogger(__name__)

DEFAULT_LIMIT = 100
DEFAULT_WINDOW_MS = 60_000


def _epoch_ms() -> int:
    return int(time.time() * 1000)


@dataclass
class RateLimitRecord:
    count: int
    reset_time: int  # epoch millis
    limit: int


class RateLimiter:
    """Thread-safe fixed-window counter store."""

    def __init__(
        self,
        default_limit: int = DEFAULT_LIMIT,
        default_window_ms: int = DEFAULT_WINDOW_MS,
        clock: Callable[[], int] | None = None,
    ) -> None:
        self._default_limit = default_limit
        self._default_window_ms = default_window_ms
        self._clock = clock or _epoch_ms
        self._records: dict[str, RateLimitRecord] = {}
        self._lock = threading.Lock()

    @property
    def default_limit(self) -> int:
        return self._default_limit

    @property
    def default_window_ms(self) -> int:
        return self._default_window_ms

    def is_allowed(
        self,
        context: PolicyEvaluationContext,
        limit: int | None = None,
        window_ms: int | None = None,
    ) -> bool:
        """Count one request for the context's identity; False if over budget."""
        limit = self._default_limit if limit is None else limit
        window_ms = self._default_window_ms if window_ms is None else window_ms
        key = context.rate_key
        now = self._clock()

        with self._lock:
            record = self._records.get(key)

            if record is None or now >= record.reset_time:
                self._records[key] = RateLimitRecord(
                    count=1, reset_time=now + window_ms, limit=limit
                )
                return True

            record.limit = limit
            if record.count >= limit:
                logger.warning("Rate limit exceeded for %s (%d/%d)", key, record.count, limit)
                return False

            record.count += 1
            return True

    def get_rate_limit_status(self, context: PolicyEvaluationContext) -> RateLimitStatus:
        """Read-only view of the remaining budget; never mutates state."""
        now = self._clock()
        with self._lock:
            record = self._records.get(context.rate_key)
            if record is None or now >= record.reset_time:
                return RateLimitStatus(
                    remaining=self._default_limit,
                    reset_time=now + self._default_window_ms,
                    limit=self._default_limit,
                )
            return RateLimitStatus(
                remaining=max(record.limit - record.count, 0),
                reset_time=record.reset_time,
                limit=record.limit,
            )

    def reset(self, context: PolicyEvaluationContext) -> None:
        """Drop the record for the context's identity, restoring full budget."""
        with self._lock:
            self._records.pop(context.rate_key, None)

    def cleanup(self) -> int:
        """Remove expired records; return how many were dropped."""
        now = self._clock()
        with self._lock:
            expired = [k for k, r in self._records.items() if now >= r.reset_time]
            for key in expired:
                del self._records[key]
        if expired:
            logger.debug("Rate limiter swept %d expired record(s)", len(expired))
        return len(expired)

    def __len__(self) -> int:
        with self._lock:
            return len(self._records)
