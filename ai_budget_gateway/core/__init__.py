"""
Core modules for the AI budget gateway.

This package contains usage estimation, pricing, rolling budget windows,
the circuit breaker, the response cache, alerting and the gateway facade.
"""
