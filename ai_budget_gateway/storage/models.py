"""
Data models for storage layer.

Defines the append-only usage ledger entry.
"""

from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal
from typing import Optional


@dataclass(frozen=True)
class UsageRecord:
    """Immutable audit record of one governed call.

    Written once per successful, non-cached call and never modified.
    """
    timestamp: datetime
    model: str
    requested_model: str
    prompt_units: int
    completion_units: int
    cost: Decimal
    fallback_used: bool = False
    usage_estimated: bool = False
    fingerprint: Optional[str] = None

    @property
    def total_units(self) -> int:
        return self.prompt_units + self.completion_units
