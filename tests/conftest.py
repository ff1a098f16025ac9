"""
Shared fixtures for gateway tests.

Time and token counting are injected so tests are deterministic and never
need to download tiktoken encodings.
"""

from datetime import datetime, timedelta

import pytest


class ManualClock:
    """Clock that only moves when a test advances it."""

    def __init__(self, start: datetime = datetime(2024, 1, 10, 12, 0, 0)):
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> datetime:
        self.now += timedelta(**kwargs)
        return self.now


def word_count(text: str) -> int:
    """One unit per whitespace-separated word."""
    return len(text.split())


@pytest.fixture
def clock():
    # 2024-01-10 is a Wednesday
    return ManualClock()


@pytest.fixture
def word_counter():
    return word_count
