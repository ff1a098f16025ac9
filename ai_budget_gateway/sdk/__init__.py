"""
SDK for the AI budget gateway.

Provides governed clients for metered inference APIs.
"""

from .openai_client import GovernedOpenAI

__all__ = ["GovernedOpenAI"]
