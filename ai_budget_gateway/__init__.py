"""
AI budget gateway.

Budget-governed access to metered, pay-per-token inference APIs.
"""

from .core.errors import (
    ConfigurationError,
    GatewayError,
    PersistenceError,
    QuotaExceeded,
    UpstreamError,
    UpstreamRateLimited,
)
from .core.gateway import BudgetGateway, GatewayResult, InferenceRequest, InferenceResponse

__all__ = [
    "BudgetGateway",
    "ConfigurationError",
    "GatewayError",
    "GatewayResult",
    "InferenceRequest",
    "InferenceResponse",
    "PersistenceError",
    "QuotaExceeded",
    "UpstreamError",
    "UpstreamRateLimited",
]
