"""
Unit tests for pre-flight usage estimation.
"""

from unittest.mock import patch

import pytest

from ai_budget_gateway.core import token_counter
from ai_budget_gateway.core.token_counter import (
    UsageEstimator,
    approximate_tokens,
    count_tokens,
)


class TestUsageEstimator:
    """Test the estimator sums every part of a request."""

    def test_messages_only(self, word_counter):
        estimator = UsageEstimator(safety_margin=1.0, counter=word_counter)
        messages = [
            {"role": "user", "content": "one two three"},
            {"role": "assistant", "content": "four five"},
        ]
        assert estimator.estimate(messages) == 5

    def test_system_prompt_and_functions_are_counted(self, word_counter):
        estimator = UsageEstimator(safety_margin=1.0, counter=word_counter)
        schema = {"name": "lookup", "description": "find a record"}
        with_extras = estimator.estimate(
            [{"role": "user", "content": "hi"}],
            system_prompt="be brief please",
            functions=[schema],
        )
        assert with_extras > estimator.estimate([{"role": "user", "content": "hi"}]) + 3

    def test_safety_margin_rounds_up(self, word_counter):
        estimator = UsageEstimator(safety_margin=1.1, counter=word_counter)
        messages = [{"role": "user", "content": " ".join(["w"] * 100)}]
        assert estimator.estimate(messages) == 110

        messages = [{"role": "user", "content": "a b c"}]
        # 3 * 1.1 = 3.3 -> 4
        assert estimator.estimate(messages) == 4

    def test_margin_below_one_rejected(self):
        with pytest.raises(ValueError, match="safety_margin"):
            UsageEstimator(safety_margin=0.9)

    def test_missing_content_counts_zero(self, word_counter):
        estimator = UsageEstimator(safety_margin=1.0, counter=word_counter)
        assert estimator.estimate([{"role": "assistant", "content": None}]) == 0


class TestCountTokens:
    """Test tiktoken counting and its offline fallback."""

    def test_empty_text(self):
        assert count_tokens("") == 0

    def test_falls_back_when_encoding_unavailable(self):
        with patch.object(token_counter, "_get_encoder", side_effect=OSError("offline")):
            assert count_tokens("a" * 40) == approximate_tokens("a" * 40) == 10

    def test_uses_encoder_when_available(self):
        class FakeEncoder:
            def encode(self, text):
                return text.split()

        with patch.object(token_counter, "_get_encoder", return_value=FakeEncoder()):
            assert count_tokens("three little words") == 3
