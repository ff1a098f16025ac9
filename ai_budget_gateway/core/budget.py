"""
Rolling budget windows.

Tracks token and cost usage across daily, weekly and monthly windows. Each
window is an independent counter that is zeroed when its own calendar
boundary is crossed; the windows are not nested sums of each other.
"""

import threading
from dataclasses import dataclass, field, replace
from datetime import date, datetime, timedelta
from decimal import Decimal
from enum import Enum
from typing import Callable, Dict, List, Optional

from ai_budget_gateway.config.loader import BudgetConfig


class Window(Enum):
    """Accounting windows."""
    DAILY = "daily"
    WEEKLY = "weekly"
    MONTHLY = "monthly"


class BudgetLimit(Enum):
    """The six ceilings a window can breach."""
    DAILY_UNITS = (Window.DAILY, "units", "daily quota")
    WEEKLY_UNITS = (Window.WEEKLY, "units", "weekly quota")
    MONTHLY_UNITS = (Window.MONTHLY, "units", "monthly quota")
    DAILY_COST = (Window.DAILY, "cost", "daily cost limit")
    WEEKLY_COST = (Window.WEEKLY, "cost", "weekly cost limit")
    MONTHLY_COST = (Window.MONTHLY, "cost", "monthly cost limit")

    def __init__(self, window: Window, measure: str, reason: str):
        self.window = window
        self.measure = measure
        self.reason = reason

    def ceiling(self, config: BudgetConfig):
        return getattr(config, f"{self.window.value}_{self.measure}")


@dataclass
class ModelUsage:
    """Per-model totals since the tracker was created."""
    units: int = 0
    cost: Decimal = Decimal("0")
    calls: int = 0


@dataclass
class UsageMetrics:
    """Accumulated usage for each window plus a per-model breakdown."""
    daily_units: int = 0
    weekly_units: int = 0
    monthly_units: int = 0
    daily_cost: Decimal = Decimal("0")
    weekly_cost: Decimal = Decimal("0")
    monthly_cost: Decimal = Decimal("0")
    last_updated: Optional[datetime] = None
    per_model: Dict[str, ModelUsage] = field(default_factory=dict)

    def units(self, window: Window) -> int:
        return getattr(self, f"{window.value}_units")

    def cost(self, window: Window) -> Decimal:
        return getattr(self, f"{window.value}_cost")

    def value(self, limit: BudgetLimit):
        return getattr(self, f"{limit.window.value}_{limit.measure}")

    def copy(self) -> "UsageMetrics":
        return replace(self, per_model={name: replace(usage) for name, usage in self.per_model.items()})

    def to_dict(self) -> Dict:
        """Serializable form; Decimals become strings."""
        return {
            "daily_units": self.daily_units,
            "weekly_units": self.weekly_units,
            "monthly_units": self.monthly_units,
            "daily_cost": str(self.daily_cost),
            "weekly_cost": str(self.weekly_cost),
            "monthly_cost": str(self.monthly_cost),
            "last_updated": self.last_updated.isoformat() if self.last_updated else None,
            "per_model": {
                name: {"units": usage.units, "cost": str(usage.cost), "calls": usage.calls}
                for name, usage in self.per_model.items()
            },
        }

    @classmethod
    def from_dict(cls, data: Dict) -> "UsageMetrics":
        last_updated = data.get("last_updated")
        return cls(
            daily_units=int(data.get("daily_units", 0)),
            weekly_units=int(data.get("weekly_units", 0)),
            monthly_units=int(data.get("monthly_units", 0)),
            daily_cost=Decimal(data.get("daily_cost", "0")),
            weekly_cost=Decimal(data.get("weekly_cost", "0")),
            monthly_cost=Decimal(data.get("monthly_cost", "0")),
            last_updated=datetime.fromisoformat(last_updated) if last_updated else None,
            per_model={
                name: ModelUsage(
                    units=int(usage["units"]),
                    cost=Decimal(usage["cost"]),
                    calls=int(usage["calls"])
                )
                for name, usage in (data.get("per_model") or {}).items()
            },
        )


def same_day(a: datetime, b: datetime) -> bool:
    return a.date() == b.date()


def week_start_date(moment: datetime, week_start: int = 0) -> date:
    """First day of the week containing moment; week_start is a weekday number."""
    day = moment.date()
    return day - timedelta(days=(day.weekday() - week_start) % 7)


def same_week(a: datetime, b: datetime, week_start: int = 0) -> bool:
    return week_start_date(a, week_start) == week_start_date(b, week_start)


def same_month(a: datetime, b: datetime) -> bool:
    return (a.year, a.month) == (b.year, b.month)


@dataclass(frozen=True)
class Reservation:
    """Projected usage held for an admitted, in-flight call."""
    units: int
    cost: Decimal


class BudgetTracker:
    """Single owner of the rolling usage counters.

    Every mutation runs under one lock, so the boundary check, reset and
    accumulation of a single recording are never interleaved with another.
    Reservations hold projected usage of admitted in-flight calls so that
    concurrent dry-run checks see it.
    """

    def __init__(
        self,
        config: BudgetConfig,
        metrics: Optional[UsageMetrics] = None,
        clock: Callable[[], datetime] = datetime.now,
    ):
        self.config = config
        self._clock = clock
        self._lock = threading.RLock()
        self._metrics = metrics.copy() if metrics else UsageMetrics()
        self._reserved_units = 0
        self._reserved_cost = Decimal("0")
        with self._lock:
            self._roll_windows(self._clock())

    @property
    def lock(self) -> threading.RLock:
        return self._lock

    def _roll_windows(self, now: datetime) -> List[Window]:
        """Zero every window whose boundary was crossed since last_updated.

        Must be called with the lock held.
        """
        metrics = self._metrics
        last = metrics.last_updated
        if last is None:
            return []

        crossed = []
        if not same_day(last, now):
            metrics.daily_units, metrics.daily_cost = 0, Decimal("0")
            crossed.append(Window.DAILY)
        if not same_week(last, now, self.config.week_start):
            metrics.weekly_units, metrics.weekly_cost = 0, Decimal("0")
            crossed.append(Window.WEEKLY)
        if not same_month(last, now):
            metrics.monthly_units, metrics.monthly_cost = 0, Decimal("0")
            crossed.append(Window.MONTHLY)
        if crossed:
            metrics.last_updated = now
        return crossed

    def snapshot(self) -> UsageMetrics:
        """Copy of the current totals after applying any boundary resets."""
        with self._lock:
            self._roll_windows(self._clock())
            return self._metrics.copy()

    def peek(self) -> UsageMetrics:
        """Copy of the totals as stored, without applying boundary resets."""
        with self._lock:
            return self._metrics.copy()

    def breached_limits(self) -> List[BudgetLimit]:
        """Ceilings currently reached or exceeded by recorded usage."""
        with self._lock:
            self._roll_windows(self._clock())
            return [
                limit for limit in BudgetLimit
                if self._metrics.value(limit) >= limit.ceiling(self.config)
            ]

    def check(self, units: int, cost: Decimal) -> Optional[BudgetLimit]:
        """Dry run: the first ceiling that accepting units/cost would exceed.

        Counts recorded usage plus outstanding reservations. Does not mutate
        the counters beyond applying due boundary resets.
        """
        with self._lock:
            self._roll_windows(self._clock())
            for limit in BudgetLimit:
                pending = self._reserved_units + units if limit.measure == "units" else self._reserved_cost + cost
                if self._metrics.value(limit) + pending > limit.ceiling(self.config):
                    return limit
            return None

    def reserve(self, units: int, cost: Decimal) -> Reservation:
        with self._lock:
            self._reserved_units += units
            self._reserved_cost += cost
            return Reservation(units=units, cost=cost)

    def release(self, reservation: Reservation) -> None:
        with self._lock:
            self._reserved_units -= reservation.units
            self._reserved_cost -= reservation.cost

    def record(
        self,
        model: str,
        prompt_units: int,
        completion_units: int,
        cost: Decimal,
        reservation: Optional[Reservation] = None,
    ) -> UsageMetrics:
        """Add a completed call's usage to all three windows.

        If a reservation is given it is released in the same critical
        section, so admitted usage is never counted twice or dropped.

        Returns:
            Copy of the totals after recording
        """
        units = prompt_units + completion_units
        with self._lock:
            now = self._clock()
            self._roll_windows(now)
            if reservation is not None:
                self.release(reservation)

            metrics = self._metrics
            metrics.daily_units += units
            metrics.weekly_units += units
            metrics.monthly_units += units
            metrics.daily_cost += cost
            metrics.weekly_cost += cost
            metrics.monthly_cost += cost

            usage = metrics.per_model.setdefault(model, ModelUsage())
            usage.units += units
            usage.cost += cost
            usage.calls += 1

            metrics.last_updated = now
            return metrics.copy()

    def reset_window(self, window: Window) -> None:
        """Zero one window's counters, leaving the others untouched."""
        with self._lock:
            setattr(self._metrics, f"{window.value}_units", 0)
            setattr(self._metrics, f"{window.value}_cost", Decimal("0"))

    def usage_percentages(self, metrics: Optional[UsageMetrics] = None) -> Dict[BudgetLimit, float]:
        """Share of each ceiling consumed, in percent."""
        metrics = metrics or self.peek()
        return {
            limit: float(Decimal(metrics.value(limit)) / Decimal(limit.ceiling(self.config)) * 100)
            for limit in BudgetLimit
        }
