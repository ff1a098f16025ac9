"""
Token counting and usage estimation.

Computes a pre-flight unit estimate for an outbound request. Estimation is
local and never touches the network beyond tiktoken's one-time encoding load.
"""

import json
import math
from dataclasses import dataclass
from typing import Any, Callable, Dict, List, Optional

import tiktoken

DEFAULT_ENCODING = "cl100k_base"
DEFAULT_SAFETY_MARGIN = 1.10

# Rough ratio used when no encoding can be loaded
CHARS_PER_TOKEN = 4.0

_encoder: Optional[tiktoken.Encoding] = None


@dataclass(frozen=True)
class TokenUsage:
    """Token usage data for cost calculation."""
    prompt_tokens: int
    completion_tokens: int

    def __post_init__(self):
        if self.prompt_tokens < 0:
            raise ValueError("prompt_tokens cannot be negative")
        if self.completion_tokens < 0:
            raise ValueError("completion_tokens cannot be negative")

    @property
    def total_tokens(self) -> int:
        """Total tokens used (prompt + completion)."""
        return self.prompt_tokens + self.completion_tokens


def _get_encoder() -> tiktoken.Encoding:
    global _encoder
    if _encoder is None:
        _encoder = tiktoken.get_encoding(DEFAULT_ENCODING)
    return _encoder


def approximate_tokens(text: str) -> int:
    """Character-based token approximation."""
    if not text:
        return 0
    return max(1, math.ceil(len(text) / CHARS_PER_TOKEN))


def count_tokens(text: str) -> int:
    """Count tokens in text using tiktoken.

    Falls back to a character-based approximation if the encoding cannot
    be loaded (for example when running offline).
    """
    if not text:
        return 0
    try:
        return len(_get_encoder().encode(text))
    except Exception:
        return approximate_tokens(text)


class UsageEstimator:
    """Pre-flight unit estimate for an outbound request.

    The raw count is multiplied by a safety margin so that estimates err on
    the side of over-counting; under-estimating risks overshooting a budget.
    """

    def __init__(
        self,
        safety_margin: float = DEFAULT_SAFETY_MARGIN,
        counter: Callable[[str], int] = count_tokens,
    ):
        if safety_margin < 1.0:
            raise ValueError("safety_margin must be >= 1.0")
        self.safety_margin = safety_margin
        self.counter = counter

    def estimate(
        self,
        messages: List[Dict[str, Any]],
        system_prompt: Optional[str] = None,
        functions: Optional[List[Dict[str, Any]]] = None,
    ) -> int:
        """Estimate the prompt units a request will consume.

        Args:
            messages: Role-tagged messages; only their content is counted
            system_prompt: Optional system prompt
            functions: Optional function/tool schemas, counted in JSON form

        Returns:
            Integer unit estimate, rounded up after applying the margin
        """
        total = 0
        for message in messages:
            content = message.get("content") or ""
            if not isinstance(content, str):
                content = json.dumps(content, sort_keys=True)
            total += self.counter(content)

        if system_prompt:
            total += self.counter(system_prompt)

        for schema in functions or []:
            total += self.counter(json.dumps(schema, sort_keys=True))

        return math.ceil(total * self.safety_margin)
