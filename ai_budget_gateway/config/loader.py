"""
Configuration management and loading.

Handles budget, breaker, cache and pricing settings for the gateway.
"""

from dataclasses import dataclass, field, fields, replace
from datetime import timedelta
from decimal import Decimal, InvalidOperation
from pathlib import Path
from typing import Any, Dict, Mapping, Optional

import yaml

from ai_budget_gateway.core.errors import ConfigurationError
from ai_budget_gateway.core.pricing import CostTable, ModelPricing, default_cost_table
from ai_budget_gateway.core.token_counter import DEFAULT_SAFETY_MARGIN


@dataclass(frozen=True)
class BudgetConfig:
    """Quotas and cost ceilings for the three accounting windows."""
    daily_units: int = 100_000
    weekly_units: int = 500_000
    monthly_units: int = 2_000_000
    daily_cost: Decimal = Decimal("10")
    weekly_cost: Decimal = Decimal("50")
    monthly_cost: Decimal = Decimal("200")
    alert_threshold_percent: float = 80.0
    enable_cache: bool = True
    enable_fallback: bool = True
    enable_alerts: bool = True
    fallback_model: Optional[str] = "gpt-3.5-turbo"
    week_start: int = 0  # Monday

    def __post_init__(self):
        """Validate quota and cost values."""
        for name in ("daily_units", "weekly_units", "monthly_units"):
            value = getattr(self, name)
            if isinstance(value, bool) or not isinstance(value, int) or value <= 0:
                raise ConfigurationError(f"{name} must be a positive integer")
        for name in ("daily_cost", "weekly_cost", "monthly_cost"):
            value = getattr(self, name)
            if not isinstance(value, Decimal) or not value.is_finite() or value <= 0:
                raise ConfigurationError(f"{name} must be a positive Decimal")
        if not 0 < self.alert_threshold_percent <= 100:
            raise ConfigurationError("alert_threshold_percent must be in (0, 100]")
        if self.enable_fallback and not self.fallback_model:
            raise ConfigurationError("fallback_model is required when fallback is enabled")
        if self.week_start not in range(7):
            raise ConfigurationError("week_start must be a weekday number 0-6")


@dataclass(frozen=True)
class BreakerConfig:
    """Circuit breaker timings."""
    probe_interval: timedelta = timedelta(minutes=5)
    daily_cooldown: timedelta = timedelta(hours=1)
    weekly_cooldown: timedelta = timedelta(hours=6)
    monthly_cooldown: timedelta = timedelta(hours=6)
    rate_limit_cooldown: timedelta = timedelta(minutes=1)

    def __post_init__(self):
        for f in fields(self):
            if getattr(self, f.name) <= timedelta(0):
                raise ConfigurationError(f"{f.name} must be positive")


@dataclass(frozen=True)
class CacheConfig:
    """Response cache settings. A TTL of 0 disables caching."""
    ttl_seconds: float = 3600.0
    sweep_interval_seconds: float = 60.0

    def __post_init__(self):
        if self.ttl_seconds < 0:
            raise ConfigurationError("ttl_seconds cannot be negative")
        if self.sweep_interval_seconds <= 0:
            raise ConfigurationError("sweep_interval_seconds must be > 0")


@dataclass(frozen=True)
class GatewayConfig:
    """Complete gateway configuration."""
    budget: BudgetConfig = field(default_factory=BudgetConfig)
    breaker: BreakerConfig = field(default_factory=BreakerConfig)
    cache: CacheConfig = field(default_factory=CacheConfig)
    safety_margin: float = DEFAULT_SAFETY_MARGIN
    cost_table: CostTable = field(default_factory=default_cost_table)

    def __post_init__(self):
        if not self.safety_margin >= 1.0:
            raise ConfigurationError("safety_margin must be >= 1.0")

    def with_budget_updates(self, partial: Mapping[str, Any]) -> "GatewayConfig":
        """Return a copy with some BudgetConfig fields replaced.

        Raises:
            ConfigurationError: If a key is unknown or a value is invalid
        """
        budget_fields = {f.name for f in fields(BudgetConfig)}
        unknown = set(partial) - budget_fields
        if unknown:
            raise ConfigurationError(f"Unknown budget keys: {unknown}")
        values = dict(partial)
        for name in ("daily_cost", "weekly_cost", "monthly_cost"):
            if name in values:
                values[name] = _to_decimal(values[name], name)
        return replace(self, budget=replace(self.budget, **values))


_BUDGET_KEYS = {f.name for f in fields(BudgetConfig)}
_BREAKER_KEYS = {
    "probe_interval_seconds": "probe_interval",
    "daily_cooldown_seconds": "daily_cooldown",
    "weekly_cooldown_seconds": "weekly_cooldown",
    "monthly_cooldown_seconds": "monthly_cooldown",
    "rate_limit_cooldown_seconds": "rate_limit_cooldown",
}
_CACHE_KEYS = {"ttl_seconds", "sweep_interval_seconds"}
_PRICING_KEYS = {"input_cost_per_1k", "output_cost_per_1k", "max_units"}


def load_gateway_config(path: str) -> GatewayConfig:
    """Load and validate gateway configuration from a YAML file.

    Every section is optional; missing sections use the built-in defaults.
    Unknown keys are rejected so that a typo cannot silently leave a
    budget unenforced.

    Args:
        path: Path to YAML configuration file

    Returns:
        Validated GatewayConfig object

    Raises:
        FileNotFoundError: If config file doesn't exist
        ConfigurationError: If the YAML or its content is invalid
    """
    config_path = Path(path)
    if not config_path.exists():
        raise FileNotFoundError(f"Gateway config file not found: {path}")

    with open(config_path, 'r', encoding='utf-8') as f:
        try:
            raw_config = yaml.safe_load(f)
        except yaml.YAMLError as e:
            raise ConfigurationError(f"Invalid YAML in config file {path}: {e}") from e

    if not raw_config:
        raise ConfigurationError("Configuration file is empty")
    if not isinstance(raw_config, dict):
        raise ConfigurationError("Configuration root must be a dictionary")

    allowed_top_keys = {'budget', 'breaker', 'cache', 'estimator', 'pricing'}
    unknown_keys = set(raw_config.keys()) - allowed_top_keys
    if unknown_keys:
        raise ConfigurationError(f"Unknown configuration keys: {unknown_keys}")

    budget = _parse_budget(_section(raw_config, 'budget'))
    breaker = _parse_breaker(_section(raw_config, 'breaker'))
    cache = _parse_cache(_section(raw_config, 'cache'))

    estimator_data = _section(raw_config, 'estimator')
    _reject_unknown(estimator_data, {'safety_margin'}, 'estimator')
    safety_margin = _to_float(
        estimator_data.get('safety_margin', DEFAULT_SAFETY_MARGIN), 'estimator.safety_margin'
    )

    pricing_data = raw_config.get('pricing')
    cost_table = _parse_pricing(pricing_data) if pricing_data is not None else default_cost_table()

    return GatewayConfig(
        budget=budget,
        breaker=breaker,
        cache=cache,
        safety_margin=safety_margin,
        cost_table=cost_table
    )


def _section(raw_config: Dict, name: str) -> Dict:
    data = raw_config.get(name) or {}
    if not isinstance(data, dict):
        raise ConfigurationError(f"'{name}' must be a dictionary")
    return data


def _reject_unknown(data: Dict, allowed: set, path: str) -> None:
    unknown = set(data.keys()) - set(allowed)
    if unknown:
        raise ConfigurationError(f"Unknown keys in {path}: {unknown}")


def _to_decimal(value: Any, name: str) -> Decimal:
    if isinstance(value, bool):
        raise ConfigurationError(f"'{name}' must be a number")
    try:
        result = Decimal(str(value))
    except InvalidOperation:
        raise ConfigurationError(f"'{name}' must be a number")
    if not result.is_finite():
        raise ConfigurationError(f"'{name}' must be a finite number")
    return result


def _to_float(value: Any, name: str) -> float:
    return float(_to_decimal(value, name))


def _to_int(value: Any, name: str) -> int:
    if isinstance(value, bool) or not isinstance(value, int):
        raise ConfigurationError(f"'{name}' must be an integer")
    return value


def _parse_budget(data: Dict) -> BudgetConfig:
    """Parse the budget section; costs become Decimals."""
    unknown_budget_keys = set(data.keys()) - _BUDGET_KEYS
    if unknown_budget_keys:
        raise ConfigurationError(f"Unknown budget keys: {unknown_budget_keys}")
    values = dict(data)
    for name in ("daily_cost", "weekly_cost", "monthly_cost"):
        if name in values:
            values[name] = _to_decimal(values[name], f"budget.{name}")
    if 'alert_threshold_percent' in values:
        values['alert_threshold_percent'] = _to_float(
            values['alert_threshold_percent'], 'budget.alert_threshold_percent'
        )
    return BudgetConfig(**values)


def _parse_breaker(data: Dict) -> BreakerConfig:
    """Parse the breaker section; durations are given in seconds."""
    _reject_unknown(data, set(_BREAKER_KEYS), 'breaker')
    values = {}
    for key, attr in _BREAKER_KEYS.items():
        if key in data:
            seconds = _to_float(data[key], f"breaker.{key}")
            try:
                values[attr] = timedelta(seconds=seconds)
            except OverflowError:
                raise ConfigurationError(f"'breaker.{key}' is out of range")
    return BreakerConfig(**values)


def _parse_cache(data: Dict) -> CacheConfig:
    _reject_unknown(data, _CACHE_KEYS, 'cache')
    return CacheConfig(**{key: _to_float(value, f"cache.{key}") for key, value in data.items()})


def _parse_pricing(data: Any) -> CostTable:
    """Parse the pricing section into a CostTable.

    Expected shape::

        pricing:
          default_model: gpt-4
          models:
            gpt-4: {input_cost_per_1k: 0.03, output_cost_per_1k: 0.06, max_units: 8192}
    """
    if not isinstance(data, dict):
        raise ConfigurationError("'pricing' must be a dictionary")
    _reject_unknown(data, {'default_model', 'models'}, 'pricing')

    models = data.get('models')
    if not isinstance(models, dict) or not models:
        raise ConfigurationError("'pricing.models' must be a non-empty dictionary")
    if 'default_model' not in data:
        raise ConfigurationError("Missing required 'default_model' in pricing")

    prices = {}
    for model, entry in models.items():
        path = f"pricing.models.{model}"
        if not isinstance(entry, dict):
            raise ConfigurationError(f"'{path}' must be a dictionary")
        _reject_unknown(entry, _PRICING_KEYS, path)
        for key in ("input_cost_per_1k", "output_cost_per_1k"):
            if key not in entry:
                raise ConfigurationError(f"Missing required '{key}' in {path}")
        prices[model] = ModelPricing(
            prompt_cost_per_1k=_to_decimal(entry['input_cost_per_1k'], f"{path}.input_cost_per_1k"),
            completion_cost_per_1k=_to_decimal(entry['output_cost_per_1k'], f"{path}.output_cost_per_1k"),
            max_units=_to_int(entry.get('max_units', 4096), f"{path}.max_units")
        )

    return CostTable(prices, default_model=str(data['default_model']))
