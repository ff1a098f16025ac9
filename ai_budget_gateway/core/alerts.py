"""
Threshold and breaker-transition alerts.

Delivery is fire-and-forget: a failing sink is logged and never fails the
governed call that triggered the alert.
"""

import logging
from dataclasses import dataclass
from typing import Any, Dict, List, Optional

from .budget import BudgetLimit
from .circuit_breaker import CircuitState

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ThresholdBreach:
    """A ceiling whose consumption crossed the alert threshold."""
    limit: BudgetLimit
    percent: float


class LoggingAlertSink:
    """Default sink: writes alerts to a logger at WARNING level."""

    def __init__(self, name: str = "ai_budget_gateway.alerts"):
        self.logger = logging.getLogger(name)

    def notify(self, message: str, context: Dict[str, Any]) -> None:
        self.logger.warning("%s %s", message, context)


class AlertNotifier:
    """Formats alerts and hands them to a sink."""

    def __init__(self, sink: Optional[Any] = None, enabled: bool = True):
        self.sink = sink if sink is not None else LoggingAlertSink()
        self.enabled = enabled

    def _deliver(self, message: str, context: Dict[str, Any]) -> bool:
        if not self.enabled:
            return False
        try:
            self.sink.notify(message, context)
            return True
        except Exception:
            logger.warning("Alert delivery failed: %s", message, exc_info=True)
            return False

    def check_thresholds(
        self,
        percentages: Dict[BudgetLimit, float],
        threshold_percent: float,
    ) -> List[ThresholdBreach]:
        """Emit one consolidated alert for every ceiling at or above the threshold.

        Args:
            percentages: Share of each ceiling consumed, in percent
            threshold_percent: Configured alert threshold

        Returns:
            The breaches included in the alert (empty if none)
        """
        breaches = [
            ThresholdBreach(limit=limit, percent=percent)
            for limit, percent in percentages.items()
            if percent >= threshold_percent
        ]
        if breaches:
            summary = ", ".join(f"{b.limit.reason} at {b.percent:.1f}%" for b in breaches)
            self._deliver(
                f"Budget alert: {summary}",
                {
                    "threshold_percent": threshold_percent,
                    "breaches": {b.limit.name.lower(): round(b.percent, 2) for b in breaches},
                },
            )
        return breaches

    def circuit_transition(self, old: CircuitState, new: CircuitState) -> None:
        """Listener for CircuitBreaker transitions."""
        message = f"Circuit breaker {old.state.value} -> {new.state.value}"
        if new.open_reason:
            message += f" ({new.open_reason})"
        self._deliver(message, new.to_dict())
