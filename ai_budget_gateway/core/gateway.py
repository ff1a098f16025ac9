"""
Budget-governed access to a metered inference API.

The gateway is the only entry point callers use. Per call it runs:
cache lookup -> breaker admission -> dry-run budget check (with fallback
substitution or rejection) -> upstream call -> usage recording -> cache
write -> alert evaluation.

Construct one gateway per process and pass it to every caller.
"""

import logging
import threading
from dataclasses import dataclass, field, replace
from datetime import datetime
from decimal import Decimal
from typing import Any, Callable, Dict, List, Mapping, Optional, Tuple

from ai_budget_gateway.config.loader import GatewayConfig
from ai_budget_gateway.storage.models import UsageRecord

from .alerts import AlertNotifier
from .budget import BudgetTracker, UsageMetrics, Window
from .cache import ResponseCache, fingerprint
from .circuit_breaker import AdmissionDecision, CircuitBreaker, CircuitState
from .errors import PersistenceError, QuotaExceeded, UpstreamRateLimited
from .pricing import PricingUpdate, calculate_cost
from .token_counter import TokenUsage, UsageEstimator

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class InferenceRequest:
    """Outbound request as the caller describes it."""
    model: str
    messages: List[Dict[str, Any]]
    system_prompt: Optional[str] = None
    functions: Optional[List[Dict[str, Any]]] = None
    temperature: Optional[float] = None
    max_output_units: Optional[int] = None
    extra: Dict[str, Any] = field(default_factory=dict)

    def __post_init__(self):
        if not self.model or not self.model.strip():
            raise ValueError("model is required and cannot be empty")
        if not self.messages:
            raise ValueError("messages is required and cannot be empty")


@dataclass(frozen=True)
class InferenceResponse:
    """What an inference client returns; usage is None if the API did not report it."""
    response: Any
    usage: Optional[TokenUsage] = None


@dataclass(frozen=True)
class GatewayResult:
    """Result handed back to the caller of a governed call."""
    response: Any
    model: str
    requested_model: str
    usage: TokenUsage
    cost: Decimal
    cached: bool = False
    fallback_used: bool = False
    usage_estimated: bool = False


class BudgetGateway:
    """Facade over the estimator, cache, budget tracker and circuit breaker.

    Args:
        config: Validated gateway configuration
        client: Inference client exposing ``invoke(model, request)``
        store: Optional persistence store (see storage.repository)
        alert_sink: Optional sink exposing ``notify(message, context)``
        clock: Time source shared by every time-dependent component
        token_counter: Override for the estimator's token counting function
    """

    def __init__(
        self,
        config: Optional[GatewayConfig] = None,
        client: Any = None,
        store: Any = None,
        alert_sink: Any = None,
        clock: Callable[[], datetime] = datetime.now,
        token_counter: Optional[Callable[[str], int]] = None,
    ):
        self.config = config or GatewayConfig()
        self.client = client
        self.store = store
        self._clock = clock
        self._persist_lock = threading.Lock()

        estimator_kwargs = {"safety_margin": self.config.safety_margin}
        if token_counter is not None:
            estimator_kwargs["counter"] = token_counter
        self.estimator = UsageEstimator(**estimator_kwargs)

        self.notifier = AlertNotifier(alert_sink, enabled=self.config.budget.enable_alerts)
        self.cache = ResponseCache(
            ttl_seconds=self.config.cache.ttl_seconds,
            sweep_interval_seconds=self.config.cache.sweep_interval_seconds,
            clock=clock
        )
        self.tracker = BudgetTracker(self.config.budget, self._load_metrics(), clock=clock)
        self.breaker = CircuitBreaker(
            self.config.breaker,
            self.tracker,
            clock=clock,
            state=self._load_circuit_state(),
        )
        self.breaker.add_listener(self.notifier.circuit_transition)
        self.breaker.add_listener(self._persist_circuit_state)

        self._admission_lock = threading.Lock()

    # -- persistence (best effort) ------------------------------------------

    def _best_effort(self, operation: str, *args):
        if self.store is None:
            return None
        try:
            return getattr(self.store, operation)(*args)
        except (PersistenceError, OSError) as e:
            logger.warning(
                "Persistence %s failed, continuing in memory: %s", operation, e, exc_info=True
            )
            return None

    def _load_metrics(self) -> Optional[UsageMetrics]:
        return self._best_effort("load_metrics")

    def _load_circuit_state(self) -> Optional[CircuitState]:
        if self.store is None or not hasattr(self.store, "load_circuit_state"):
            return None
        return self._best_effort("load_circuit_state")

    def _persist_circuit_state(self, old: CircuitState, new: CircuitState) -> None:
        if self.store is not None and hasattr(self.store, "save_circuit_state"):
            self._best_effort("save_circuit_state", new)

    def _persist_metrics(self) -> None:
        # Copy taken inside the lock, so saves land in recording order
        with self._persist_lock:
            self._best_effort("save_metrics", self.tracker.peek())

    # -- lifecycle ----------------------------------------------------------

    def start(self) -> None:
        if self.cache.enabled and self.config.budget.enable_cache:
            self.cache.start()

    def close(self) -> None:
        self.cache.stop()
        self.cache.clear()
        self._persist_metrics()

    def __enter__(self) -> "BudgetGateway":
        self.start()
        return self

    def __exit__(self, exc_type, exc_value, traceback) -> None:
        self.close()

    # -- governed call ------------------------------------------------------

    def _fingerprint(self, request: InferenceRequest, model: str) -> str:
        messages = list(request.messages)
        if request.system_prompt:
            messages.insert(0, {"role": "system", "content": request.system_prompt})
        return fingerprint(model, messages, request.temperature, request.max_output_units)

    def _projected_cost(self, model: str, units: int) -> Decimal:
        return calculate_cost(model, TokenUsage(units, 0), self.config.cost_table)

    def check_admission(self, model: str, units: int) -> AdmissionDecision:
        """Breaker admission plus dry-run budget check for a projected call.

        A dry-run breach opens the breaker. When the call is refused and a
        fallback model is configured, the decision carries it as a
        suggestion. Must be called with the admission lock held if the
        caller goes on to reserve.
        """
        decision = self.breaker.admit()
        if decision.allowed:
            limit = self.tracker.check(units, self._projected_cost(model, units))
            if limit is not None:
                self.breaker.trip(limit)
                decision = AdmissionDecision(
                    allowed=False,
                    reason=limit.reason,
                    limit=limit,
                    retry_after=self.breaker.cooldown_for(limit).total_seconds()
                )

        budget = self.config.budget
        if not decision.allowed and budget.enable_fallback and budget.fallback_model:
            decision = replace(decision, suggested_fallback_model=budget.fallback_model)
        return decision

    def _admit(self, model: str, units: int) -> Tuple[str, bool, Any]:
        """Admit a call or raise QuotaExceeded; reserves projected usage."""
        with self._admission_lock:
            decision = self.check_admission(model, units)
            fallback_used = False
            if not decision.allowed:
                if decision.suggested_fallback_model is None:
                    logger.warning("Rejected call to %s: %s", model, decision.reason)
                    raise QuotaExceeded(decision.reason, decision.limit, decision.retry_after)
                logger.info(
                    "Substituting %s for %s: %s",
                    decision.suggested_fallback_model, model, decision.reason
                )
                model = decision.suggested_fallback_model
                fallback_used = True
            reservation = self.tracker.reserve(units, self._projected_cost(model, units))
            return model, fallback_used, reservation

    def execute(self, request: InferenceRequest, client: Any = None) -> GatewayResult:
        """Execute one call under budget governance.

        Args:
            request: The outbound request
            client: Inference client overriding the gateway's default

        Returns:
            GatewayResult with the upstream response and the usage charged

        Raises:
            QuotaExceeded: If a ceiling would be breached and no fallback exists
            UpstreamRateLimited: If the API throttled the call (breaker opens)
            Exception: Any other upstream failure, unmodified
        """
        client = client or self.client
        if client is None:
            raise ValueError("No inference client configured")

        budget = self.config.budget
        use_cache = budget.enable_cache and self.cache.enabled
        if use_cache:
            entry = self.cache.get(self._fingerprint(request, request.model), request.model)
            if entry is not None:
                return GatewayResult(
                    response=entry.response,
                    model=entry.model,
                    requested_model=request.model,
                    usage=entry.recorded_usage,
                    cost=Decimal("0"),
                    cached=True
                )

        estimate = self.estimator.estimate(request.messages, request.system_prompt, request.functions)
        model, fallback_used, reservation = self._admit(request.model, estimate)

        settled = False
        try:
            try:
                reply = client.invoke(model, request)
            except UpstreamRateLimited as e:
                self.breaker.trip_rate_limited(e.retry_after)
                raise

            usage_estimated = reply.usage is None
            usage = reply.usage if reply.usage is not None else TokenUsage(estimate, 0)
            cost = calculate_cost(model, usage, self.config.cost_table)
            metrics = self.tracker.record(
                model, usage.prompt_tokens, usage.completion_tokens, cost, reservation=reservation
            )
            settled = True
        finally:
            if not settled:
                self.tracker.release(reservation)

        key = self._fingerprint(request, model)
        self._best_effort("append_usage_record", UsageRecord(
            timestamp=metrics.last_updated,
            model=model,
            requested_model=request.model,
            prompt_units=usage.prompt_tokens,
            completion_units=usage.completion_tokens,
            cost=cost,
            fallback_used=fallback_used,
            usage_estimated=usage_estimated,
            fingerprint=key
        ))
        self._persist_metrics()

        if use_cache:
            self.cache.put(key, model, reply.response, usage)

        self.breaker.check_limits()
        self.notifier.check_thresholds(
            self.tracker.usage_percentages(metrics), budget.alert_threshold_percent
        )

        return GatewayResult(
            response=reply.response,
            model=model,
            requested_model=request.model,
            usage=usage,
            cost=cost,
            fallback_used=fallback_used,
            usage_estimated=usage_estimated
        )

    # -- administrative interface -------------------------------------------

    def get_metrics(self) -> Dict[str, Any]:
        """Current totals, per-model breakdown and ceiling percentages."""
        metrics = self.tracker.snapshot()
        report = metrics.to_dict()
        report["percent_of_limits"] = {
            limit.name.lower(): round(percent, 2)
            for limit, percent in self.tracker.usage_percentages(metrics).items()
        }
        return report

    def get_circuit_status(self) -> Dict[str, Any]:
        return self.breaker.status()

    def reset_daily_metrics(self) -> None:
        self.tracker.reset_window(Window.DAILY)
        self._persist_metrics()

    def reset_circuit_breaker(self) -> CircuitState:
        return self.breaker.reset()

    def update_config(self, partial: Mapping[str, Any]) -> GatewayConfig:
        """Replace some budget settings at runtime.

        Raises:
            ConfigurationError: If the update is invalid; nothing changes then
        """
        self.config = self.config.with_budget_updates(partial)
        self.tracker.config = self.config.budget
        self.notifier.enabled = self.config.budget.enable_alerts
        return self.config

    def update_cost_table(self, partial: Mapping[str, PricingUpdate]) -> None:
        self.config.cost_table.update(partial)
