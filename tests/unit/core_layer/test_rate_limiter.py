"""
Unit Tests for the fixed-window RateLimiter

Covers per-key counting, window rollover, the MAX_ENTRIES cardinality
guard (sweep first, then refuse new keys), and the background sweeper.
"""

import asyncio

import pytest

from signbot.core.resilience.rate_limiter import RateLimiter


@pytest.fixture
def limiter(fake_clock):
    return RateLimiter(limit=100, window_seconds=60, max_entries=3, clock=fake_clock)


@pytest.mark.unit
class TestRateLimiterWindow:
    def test_first_request_admitted(self, limiter):
        decision = limiter.check_and_consume("10.0.0.1")

        assert decision.allowed
        assert decision.remaining == 99
        assert decision.limit == 100

    def test_request_over_limit_rejected(self, limiter):
        decisions = [limiter.check_and_consume("10.0.0.1") for _ in range(101)]

        assert all(d.allowed for d in decisions[:100])
        assert not decisions[100].allowed
        assert decisions[100].remaining == 0

    def test_keys_are_independent(self, limiter):
        for _ in range(100):
            limiter.check_and_consume("10.0.0.1")

        assert not limiter.check_and_consume("10.0.0.1").allowed
        assert limiter.check_and_consume("10.0.0.2").allowed

    def test_window_rollover_resets_count(self, limiter, fake_clock):
        for _ in range(101):
            limiter.check_and_consume("10.0.0.1")
        fake_clock.advance(60)

        decision = limiter.check_and_consume("10.0.0.1")

        assert decision.allowed
        assert decision.remaining == 99

    def test_reset_after_counts_down(self, limiter, fake_clock):
        limiter.check_and_consume("10.0.0.1")
        fake_clock.advance(45)

        decision = limiter.check_and_consume("10.0.0.1")

        assert decision.reset_after == pytest.approx(15)


@pytest.mark.unit
class TestRateLimiterCapacity:
    def test_new_key_rejected_at_capacity(self, limiter):
        for ip in ("a", "b", "c"):
            limiter.check_and_consume(ip)

        decision = limiter.check_and_consume("d")

        assert not decision.allowed
        assert decision.reset_after == 60
        assert len(limiter) == 3
        assert limiter.get_stats()["rejected_new_keys"] == 1

    def test_known_key_still_served_at_capacity(self, limiter):
        for ip in ("a", "b", "c"):
            limiter.check_and_consume(ip)

        assert limiter.check_and_consume("a").allowed

    def test_capacity_sweeps_expired_windows_first(self, limiter, fake_clock):
        for ip in ("a", "b", "c"):
            limiter.check_and_consume(ip)
        fake_clock.advance(61)

        assert limiter.check_and_consume("d").allowed
        assert len(limiter) == 1

    def test_sweep_removes_only_expired(self, limiter, fake_clock):
        limiter.check_and_consume("old")
        fake_clock.advance(30)
        limiter.check_and_consume("new")
        fake_clock.advance(30)

        assert limiter.sweep() == 1
        assert len(limiter) == 1

    def test_invalid_limits_rejected(self):
        with pytest.raises(ValueError):
            RateLimiter(limit=0)


@pytest.mark.unit
class TestRateLimiterLifecycle:
    async def test_background_sweeper_runs_and_stops(self, fake_clock):
        limiter = RateLimiter(limit=5, window_seconds=1, sweep_interval=0.01, clock=fake_clock)
        limiter.check_and_consume("a")
        fake_clock.advance(2)

        await limiter.start()
        assert limiter.get_stats()["sweeper_running"]
        for _ in range(50):
            if len(limiter) == 0:
                break
            await asyncio.sleep(0.01)
        await limiter.stop()

        assert len(limiter) == 0
        assert not limiter.get_stats()["sweeper_running"]

    async def test_stop_without_start_is_noop(self, limiter):
        await limiter.stop()

    def test_from_settings(self, settings):
        limiter = RateLimiter.from_settings(settings)

        assert limiter.limit == settings.RATE_LIMIT_REQUESTS
        assert limiter.max_entries == settings.RATE_LIMIT_MAX_ENTRIES
