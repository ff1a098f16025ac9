"""
Pricing calculations and rate management.

Handles cost computations for the models the gateway routes to.
"""

import threading
from dataclasses import dataclass
from decimal import Decimal, ROUND_UP
from typing import Dict, Mapping, Optional, Union

from .errors import ConfigurationError
from .token_counter import TokenUsage

# Costs are kept to a micro-unit of currency, rounded UP
COST_PRECISION = Decimal("0.000001")


@dataclass(frozen=True)
class ModelPricing:
    """Per-token pricing and context size for a specific model."""
    prompt_cost_per_1k: Decimal  # Cost per 1K prompt tokens
    completion_cost_per_1k: Decimal  # Cost per 1K completion tokens
    max_units: int = 4096

    def __post_init__(self):
        if self.prompt_cost_per_1k < 0:
            raise ConfigurationError("prompt_cost_per_1k cannot be negative")
        if self.completion_cost_per_1k < 0:
            raise ConfigurationError("completion_cost_per_1k cannot be negative")
        if self.max_units <= 0:
            raise ConfigurationError("max_units must be > 0")


PricingUpdate = Union[ModelPricing, Mapping[str, object]]

_PRICING_KEYS = ("prompt_cost_per_1k", "completion_cost_per_1k", "max_units")


class CostTable:
    """Pricing table with a designated default entry.

    Lookups for unknown models fall back to the default model's pricing.
    The table only changes through an explicit update().
    """

    def __init__(self, prices: Mapping[str, ModelPricing], default_model: str):
        if default_model not in prices:
            raise ConfigurationError(
                f"default_model '{default_model}' is missing from the cost table"
            )
        self._prices: Dict[str, ModelPricing] = dict(prices)
        self.default_model = default_model
        self._lock = threading.Lock()

    def __contains__(self, model: str) -> bool:
        return model in self._prices

    @property
    def models(self):
        return sorted(self._prices)

    def get_pricing(self, model: str) -> ModelPricing:
        """Get pricing for a model, or the default model's pricing if unknown."""
        prices = self._prices
        return prices.get(model) or prices[self.default_model]

    def update(self, entries: Mapping[str, PricingUpdate]) -> None:
        """Add or replace entries.

        Mapping values may be ModelPricing instances or partial dicts; a
        partial dict is merged over the model's current entry.

        Raises:
            ConfigurationError: If an entry is invalid
        """
        with self._lock:
            updated = dict(self._prices)
            for model, entry in entries.items():
                if isinstance(entry, ModelPricing):
                    updated[model] = entry
                    continue
                unknown = set(entry) - set(_PRICING_KEYS)
                if unknown:
                    raise ConfigurationError(f"Unknown pricing keys for {model}: {unknown}")

                current = updated.get(model)
                if current is None:
                    missing = {"prompt_cost_per_1k", "completion_cost_per_1k"} - set(entry)
                    if missing:
                        raise ConfigurationError(f"New model {model} is missing {sorted(missing)}")
                    merged = {"max_units": 4096}
                else:
                    merged = {key: getattr(current, key) for key in _PRICING_KEYS}
                merged.update(entry)

                try:
                    updated[model] = ModelPricing(
                        prompt_cost_per_1k=Decimal(str(merged["prompt_cost_per_1k"])),
                        completion_cost_per_1k=Decimal(str(merged["completion_cost_per_1k"])),
                        max_units=int(merged["max_units"]),
                    )
                except (ArithmeticError, TypeError, ValueError) as e:
                    if isinstance(e, ConfigurationError):
                        raise
                    raise ConfigurationError(f"Invalid pricing for {model}: {e}") from e
            self._prices = updated


def default_cost_table() -> CostTable:
    """Built-in pricing used when no cost table is configured."""
    return CostTable({
        "gpt-4": ModelPricing(
            prompt_cost_per_1k=Decimal("0.03"),
            completion_cost_per_1k=Decimal("0.06"),
            max_units=8192
        ),
        "gpt-4-turbo": ModelPricing(
            prompt_cost_per_1k=Decimal("0.01"),
            completion_cost_per_1k=Decimal("0.03"),
            max_units=128000
        ),
        "gpt-3.5-turbo": ModelPricing(
            prompt_cost_per_1k=Decimal("0.0015"),
            completion_cost_per_1k=Decimal("0.002"),
            max_units=16385
        ),
    }, default_model="gpt-4")


def calculate_cost(
    model: str,
    usage: TokenUsage,
    table: Optional[CostTable] = None,
) -> Decimal:
    """Calculate total cost for model usage with conservative rounding.

    Args:
        model: Model identifier; unknown models use the default entry
        usage: Token usage data
        table: Cost table to price against (built-in table if omitted)

    Returns:
        Total cost rounded UP to COST_PRECISION
    """
    pricing = (table or _DEFAULT_TABLE).get_pricing(model)

    prompt_cost = (Decimal(usage.prompt_tokens) / Decimal("1000")) * pricing.prompt_cost_per_1k
    completion_cost = (Decimal(usage.completion_tokens) / Decimal("1000")) * pricing.completion_cost_per_1k

    total_cost = prompt_cost + completion_cost
    return total_cost.quantize(COST_PRECISION, rounding=ROUND_UP)


_DEFAULT_TABLE = default_cost_table()
