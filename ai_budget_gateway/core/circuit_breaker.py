"""
Budget circuit breaker.

States:
- CLOSED: normal operation, calls are admitted
- OPEN: a ceiling was breached or upstream throttled us, calls are refused
  (or routed to the fallback model)
- HALF_OPEN: the probe interval has elapsed; the next admission re-checks
  the ceilings and either closes or re-opens the breaker

Timers are evaluated lazily against the stored transition timestamp on the
next admission check; no background thread is involved.
"""

import logging
import threading
from dataclasses import dataclass
from datetime import datetime, timedelta
from enum import Enum
from typing import Callable, Dict, List, Optional

from ai_budget_gateway.config.loader import BreakerConfig

from .budget import BudgetLimit, BudgetTracker, Window

logger = logging.getLogger(__name__)

RATE_LIMIT_REASON = "rate limit"


class BreakerState(Enum):
    CLOSED = "closed"
    OPEN = "open"
    HALF_OPEN = "half_open"


@dataclass(frozen=True)
class CircuitState:
    """Breaker state as observed from outside."""
    state: BreakerState
    last_transition_at: datetime
    open_reason: Optional[str] = None
    cooldown_until: Optional[datetime] = None

    def to_dict(self) -> Dict:
        return {
            "state": self.state.value,
            "last_transition_at": self.last_transition_at.isoformat(),
            "open_reason": self.open_reason,
            "cooldown_until": self.cooldown_until.isoformat() if self.cooldown_until else None,
        }


@dataclass(frozen=True)
class AdmissionDecision:
    """Outcome of an admission check."""
    allowed: bool
    reason: Optional[str] = None
    suggested_fallback_model: Optional[str] = None
    limit: Optional[BudgetLimit] = None
    retry_after: Optional[float] = None


TransitionListener = Callable[[CircuitState, CircuitState], None]


class CircuitBreaker:
    """Three-state breaker driven by budget ceilings and upstream throttling."""

    def __init__(
        self,
        config: BreakerConfig,
        tracker: BudgetTracker,
        clock: Callable[[], datetime] = datetime.now,
        state: Optional[CircuitState] = None,
        on_transition: Optional[TransitionListener] = None,
    ):
        self.config = config
        self.tracker = tracker
        self._clock = clock
        self._lock = threading.RLock()
        self._state = state or CircuitState(BreakerState.CLOSED, clock())
        self._listeners: List[TransitionListener] = []
        if on_transition is not None:
            self._listeners.append(on_transition)

    def add_listener(self, listener: TransitionListener) -> None:
        self._listeners.append(listener)

    @property
    def state(self) -> CircuitState:
        return self._state

    def cooldown_for(self, limit: Optional[BudgetLimit]) -> timedelta:
        """Cooldown attached to a trigger; None means upstream rate limiting."""
        if limit is None:
            return self.config.rate_limit_cooldown
        return {
            Window.DAILY: self.config.daily_cooldown,
            Window.WEEKLY: self.config.weekly_cooldown,
            Window.MONTHLY: self.config.monthly_cooldown,
        }[limit.window]

    def _transition(self, new_state: BreakerState, reason: Optional[str] = None,
                    cooldown: Optional[timedelta] = None) -> CircuitState:
        """Swap in a new state and notify listeners. Lock must be held."""
        now = self._clock()
        old = self._state
        self._state = CircuitState(
            state=new_state,
            last_transition_at=now,
            open_reason=reason if new_state != BreakerState.CLOSED else None,
            cooldown_until=now + cooldown if cooldown is not None else None,
        )
        if new_state == BreakerState.OPEN:
            logger.warning("Circuit breaker opened: %s", reason)
        else:
            logger.info("Circuit breaker %s -> %s", old.state.value, new_state.value)

        for listener in list(self._listeners):
            try:
                listener(old, self._state)
            except Exception:
                logger.warning("Circuit breaker listener failed", exc_info=True)
        return self._state

    def trip(self, limit: Optional[BudgetLimit]) -> CircuitState:
        """Open the breaker for a budget limit, or for rate limiting if limit is None."""
        reason = limit.reason if limit is not None else RATE_LIMIT_REASON
        with self._lock:
            return self._transition(BreakerState.OPEN, reason, self.cooldown_for(limit))

    def trip_rate_limited(self, retry_after: Optional[float] = None) -> CircuitState:
        cooldown = self.cooldown_for(None)
        if retry_after is not None:
            cooldown = max(cooldown, timedelta(seconds=retry_after))
        with self._lock:
            return self._transition(BreakerState.OPEN, RATE_LIMIT_REASON, cooldown)

    def check_limits(self) -> CircuitState:
        """Post-hoc check: open a CLOSED breaker if recorded usage reached a ceiling."""
        with self._lock:
            if self._state.state == BreakerState.CLOSED:
                breached = self.tracker.breached_limits()
                if breached:
                    self.trip(breached[0])
            return self._state

    def reset(self) -> CircuitState:
        """Force CLOSED regardless of pending timers."""
        with self._lock:
            return self._transition(BreakerState.CLOSED)

    def _retry_after(self) -> Optional[float]:
        until = self._state.cooldown_until
        if until is None:
            return None
        return max(0.0, (until - self._clock()).total_seconds())

    def refresh(self) -> CircuitState:
        """Apply the OPEN -> HALF_OPEN probe timer if it has elapsed."""
        with self._lock:
            elapsed = self._clock() - self._state.last_transition_at
            if self._state.state == BreakerState.OPEN and elapsed > self.config.probe_interval:
                self._transition(BreakerState.HALF_OPEN, self._state.open_reason)
            return self._state

    def admit(self) -> AdmissionDecision:
        """Decide whether a call may proceed given the breaker state.

        OPEN moves to HALF_OPEN once the probe interval has elapsed since the
        last transition. HALF_OPEN re-checks every ceiling: if none is still
        breached the breaker closes, otherwise it re-opens with a fresh
        cooldown.
        """
        with self._lock:
            self.refresh()

            if self._state.state == BreakerState.HALF_OPEN:
                breached = self.tracker.breached_limits()
                if not breached:
                    self._transition(BreakerState.CLOSED)
                else:
                    self.trip(breached[0])

            if self._state.state == BreakerState.CLOSED:
                return AdmissionDecision(allowed=True)

            return AdmissionDecision(
                allowed=False,
                reason=self._state.open_reason,
                limit=_limit_for_reason(self._state.open_reason),
                retry_after=self._retry_after(),
            )

    def status(self) -> Dict:
        """Informational snapshot; not used for admission."""
        state = self._state
        until_probe = None
        if state.state == BreakerState.OPEN:
            elapsed = self._clock() - state.last_transition_at
            until_probe = max(0.0, (self.config.probe_interval - elapsed).total_seconds())
        status = state.to_dict()
        status.update({
            "seconds_until_probe": until_probe,
            "retry_after": self._retry_after(),
            "breached_limits": [limit.reason for limit in self.tracker.breached_limits()],
        })
        return status


def _limit_for_reason(reason: Optional[str]) -> Optional[BudgetLimit]:
    for limit in BudgetLimit:
        if limit.reason == reason:
            return limit
    return None
