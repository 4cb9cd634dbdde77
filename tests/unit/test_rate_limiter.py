"""Unit tests for the fixed-window rate limiter."""

from __future__ import annotations

from contracts.policy import ActionType, PolicyEvaluationContext
from runtime.rate_limiter import RateLimiter


# ── helpers ─────────────────────────────────────────────────────────


class FakeClock:
    def __init__(self, now: int = 1_000_000) -> None:
        self.now = now

    def __call__(self) -> int:
        return self.now


def _ctx(session: str = "s1", ip: str = "10.0.0.1") -> PolicyEvaluationContext:
    return PolicyEvaluationContext(
        session_id=session,
        ip_address=ip,
        resource="/api/v1/execute",
        action=ActionType.RATE_LIMIT,
    )


# ── counting ─────────────────────────────────────────────────────────


class TestIsAllowed:
    def test_exactly_limit_calls_allowed(self) -> None:
        limiter = RateLimiter(clock=FakeClock())
        results = [limiter.is_allowed(_ctx(), limit=5, window_ms=1000) for _ in range(6)]
        assert results == [True] * 5 + [False]

    def test_denied_call_does_not_mutate(self) -> None:
        clock = FakeClock()
        limiter = RateLimiter(clock=clock)
        for _ in range(3):
            limiter.is_allowed(_ctx(), limit=2, window_ms=1000)
        status = limiter.get_rate_limit_status(_ctx())
        assert status.remaining == 0
        assert status.reset_time == clock.now + 1000

    def test_window_expiry_restarts_counter(self) -> None:
        clock = FakeClock()
        limiter = RateLimiter(clock=clock)
        for _ in range(2):
            assert limiter.is_allowed(_ctx(), limit=2, window_ms=1000)
        assert not limiter.is_allowed(_ctx(), limit=2, window_ms=1000)

        clock.now += 1000  # at reset time exactly
        assert limiter.is_allowed(_ctx(), limit=2, window_ms=1000)
        assert limiter.get_rate_limit_status(_ctx()).remaining == 1

    def test_burst_across_boundary(self) -> None:
        clock = FakeClock()
        limiter = RateLimiter(clock=clock)
        clock.now += 999
        # window starts at the first request, not on a wall-clock boundary
        assert all(limiter.is_allowed(_ctx(), limit=3, window_ms=1000) for _ in range(3))
        clock.now += 1000
        assert all(limiter.is_allowed(_ctx(), limit=3, window_ms=1000) for _ in range(3))

    def test_keys_are_independent(self) -> None:
        limiter = RateLimiter(clock=FakeClock())
        assert limiter.is_allowed(_ctx(session="a"), limit=1, window_ms=1000)
        assert not limiter.is_allowed(_ctx(session="a"), limit=1, window_ms=1000)
        assert limiter.is_allowed(_ctx(session="b"), limit=1, window_ms=1000)
        assert limiter.is_allowed(_ctx(session="a", ip="10.0.0.2"), limit=1, window_ms=1000)

    def test_defaults_apply(self) -> None:
        limiter = RateLimiter(default_limit=2, default_window_ms=500, clock=FakeClock())
        assert limiter.is_allowed(_ctx())
        assert limiter.is_allowed(_ctx())
        assert not limiter.is_allowed(_ctx())


# ── status / reset / cleanup ────────────────────────────────────────


class TestMaintenance:
    def test_status_for_unknown_key(self) -> None:
        clock = FakeClock()
        limiter = RateLimiter(default_limit=100, default_window_ms=60_000, clock=clock)
        status = limiter.get_rate_limit_status(_ctx())
        assert status.remaining == 100
        assert status.limit == 100
        assert status.reset_time == clock.now + 60_000
        assert len(limiter) == 0

    def test_status_is_read_only(self) -> None:
        limiter = RateLimiter(clock=FakeClock())
        limiter.is_allowed(_ctx(), limit=3, window_ms=1000)
        for _ in range(5):
            status = limiter.get_rate_limit_status(_ctx())
        assert status.remaining == 2
        assert status.limit == 3

    def test_reset_restores_budget(self) -> None:
        limiter = RateLimiter(clock=FakeClock())
        limiter.is_allowed(_ctx(), limit=1, window_ms=1000)
        assert not limiter.is_allowed(_ctx(), limit=1, window_ms=1000)
        limiter.reset(_ctx())
        assert limiter.is_allowed(_ctx(), limit=1, window_ms=1000)

    def test_cleanup_removes_only_expired(self) -> None:
        clock = FakeClock()
        limiter = RateLimiter(clock=clock)
        limiter.is_allowed(_ctx(session="old"), limit=5, window_ms=100)
        limiter.is_allowed(_ctx(session="new"), limit=5, window_ms=10_000)
        clock.now += 500
        assert limiter.cleanup() == 1
        assert len(limiter) == 1
        assert limiter.get_rate_limit_status(_ctx(session="new")).remaining == 4
