"""
Unit tests for the budget circuit breaker state machine.
"""

from datetime import timedelta
from decimal import Decimal

from ai_budget_gateway.config.loader import BreakerConfig, BudgetConfig
from ai_budget_gateway.core.budget import BudgetLimit, BudgetTracker
from ai_budget_gateway.core.circuit_breaker import (
    RATE_LIMIT_REASON,
    BreakerState,
    CircuitBreaker,
)


class TestCircuitBreaker:
    """Test breaker transitions."""

    def make_breaker(self, clock, daily_units=1000):
        budget = BudgetConfig(
            daily_units=daily_units,
            weekly_units=10**6,
            monthly_units=10**7,
            daily_cost=Decimal("100"),
            weekly_cost=Decimal("1000"),
            monthly_cost=Decimal("10000"),
        )
        tracker = BudgetTracker(budget, clock=clock)
        transitions = []
        breaker = CircuitBreaker(
            BreakerConfig(),
            tracker,
            clock=clock,
            on_transition=lambda old, new: transitions.append((old.state, new.state)),
        )
        return breaker, tracker, transitions

    def test_starts_closed_and_admits(self, clock):
        breaker, _, _ = self.make_breaker(clock)
        decision = breaker.admit()
        assert decision.allowed
        assert decision.reason is None
        assert breaker.state.state == BreakerState.CLOSED

    def test_stays_closed_one_below_ceiling(self, clock):
        breaker, tracker, _ = self.make_breaker(clock)
        tracker.record("gpt-4", 999, 0, Decimal("0"))
        assert breaker.check_limits().state == BreakerState.CLOSED

    def test_opens_at_ceiling(self, clock):
        breaker, tracker, transitions = self.make_breaker(clock)
        tracker.record("gpt-4", 1000, 0, Decimal("0"))

        state = breaker.check_limits()
        assert state.state == BreakerState.OPEN
        assert state.open_reason == "daily quota"
        assert state.cooldown_until == clock.now + timedelta(hours=1)
        assert transitions == [(BreakerState.CLOSED, BreakerState.OPEN)]

        decision = breaker.admit()
        assert not decision.allowed
        assert decision.reason == "daily quota"
        assert decision.limit == BudgetLimit.DAILY_UNITS
        assert decision.retry_after == 3600

    def test_cooldowns_depend_on_trigger(self, clock):
        breaker, _, _ = self.make_breaker(clock)
        assert breaker.cooldown_for(BudgetLimit.DAILY_COST) == timedelta(hours=1)
        assert breaker.cooldown_for(BudgetLimit.WEEKLY_UNITS) == timedelta(hours=6)
        assert breaker.cooldown_for(BudgetLimit.MONTHLY_COST) == timedelta(hours=6)
        assert breaker.cooldown_for(None) == timedelta(minutes=1)

    def test_half_open_only_after_probe_interval(self, clock):
        breaker, _, _ = self.make_breaker(clock)
        breaker.trip(BudgetLimit.WEEKLY_UNITS)

        clock.advance(minutes=5)
        assert breaker.refresh().state == BreakerState.OPEN

        clock.advance(seconds=1)
        state = breaker.refresh()
        assert state.state == BreakerState.HALF_OPEN
        assert state.open_reason == "weekly quota"

    def test_probe_interval_ignores_trigger_cooldown(self, clock):
        """A 6h cooldown still probes after the breaker-wide interval."""
        breaker, _, _ = self.make_breaker(clock)
        breaker.trip(BudgetLimit.MONTHLY_COST)
        clock.advance(minutes=6)
        assert breaker.refresh().state == BreakerState.HALF_OPEN

    def test_half_open_closes_when_nothing_breached(self, clock):
        breaker, tracker, transitions = self.make_breaker(clock)
        tracker.record("gpt-4", 1000, 0, Decimal("0"))
        breaker.check_limits()

        clock.advance(days=1)  # daily window rolls over
        decision = breaker.admit()

        assert decision.allowed
        assert breaker.state.state == BreakerState.CLOSED
        assert breaker.state.open_reason is None
        assert transitions == [
            (BreakerState.CLOSED, BreakerState.OPEN),
            (BreakerState.OPEN, BreakerState.HALF_OPEN),
            (BreakerState.HALF_OPEN, BreakerState.CLOSED),
        ]

    def test_half_open_reopens_with_fresh_cooldown(self, clock):
        breaker, tracker, _ = self.make_breaker(clock)
        tracker.record("gpt-4", 1000, 0, Decimal("0"))
        breaker.check_limits()

        clock.advance(minutes=10)
        decision = breaker.admit()

        assert not decision.allowed
        state = breaker.state
        assert state.state == BreakerState.OPEN
        assert state.open_reason == "daily quota"
        assert state.last_transition_at == clock.now
        assert state.cooldown_until == clock.now + timedelta(hours=1)

    def test_rate_limit_trip(self, clock):
        breaker, _, _ = self.make_breaker(clock)
        state = breaker.trip_rate_limited()
        assert state.state == BreakerState.OPEN
        assert state.open_reason == RATE_LIMIT_REASON
        assert state.cooldown_until == clock.now + timedelta(minutes=1)

        decision = breaker.admit()
        assert not decision.allowed
        assert decision.limit is None

    def test_rate_limit_retry_after_extends_cooldown(self, clock):
        breaker, _, _ = self.make_breaker(clock)
        state = breaker.trip_rate_limited(retry_after=120)
        assert state.cooldown_until == clock.now + timedelta(seconds=120)

    def test_rate_limit_clears_after_probe(self, clock):
        breaker, _, _ = self.make_breaker(clock)
        breaker.trip_rate_limited()
        clock.advance(minutes=5, seconds=1)
        assert breaker.admit().allowed

    def test_manual_reset_ignores_timers(self, clock):
        breaker, tracker, _ = self.make_breaker(clock)
        breaker.trip(BudgetLimit.MONTHLY_UNITS)

        state = breaker.reset()
        assert state.state == BreakerState.CLOSED
        assert state.open_reason is None
        assert breaker.admit().allowed

    def test_listener_failure_does_not_block_transition(self, clock):
        breaker, _, _ = self.make_breaker(clock)

        def broken(old, new):
            raise RuntimeError("sink down")

        breaker.add_listener(broken)
        assert breaker.trip(BudgetLimit.DAILY_UNITS).state == BreakerState.OPEN

    def test_status_report(self, clock):
        breaker, tracker, _ = self.make_breaker(clock)
        tracker.record("gpt-4", 1000, 0, Decimal("0"))
        breaker.check_limits()
        clock.advance(minutes=2)

        status = breaker.status()
        assert status["state"] == "open"
        assert status["open_reason"] == "daily quota"
        assert status["seconds_until_probe"] == 180
        assert status["retry_after"] == 3480
        assert status["breached_limits"] == ["daily quota"]
