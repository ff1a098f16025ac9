"""
Response cache keyed by request fingerprint.

A hit returns a previously computed response without calling the external
API and without charging any budget.
"""

import hashlib
import json
import logging
import threading
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any, Callable, Dict, List, Optional

from .token_counter import TokenUsage

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class CacheEntry:
    """Cached response with the usage it cost when first computed."""
    fingerprint: str
    model: str
    response: Any
    recorded_usage: TokenUsage
    created_at: datetime


def fingerprint(
    model: str,
    messages: List[Dict[str, Any]],
    temperature: Optional[float] = None,
    max_output_units: Optional[int] = None,
) -> str:
    """Canonical key for a request.

    Messages are reduced to role and content so that incidental metadata
    (names, ids, tool call annotations) does not defeat the cache.
    """
    normalized = [
        {"role": message.get("role"), "content": message.get("content")}
        for message in messages
    ]
    canonical = json.dumps(
        {
            "model": model,
            "messages": normalized,
            "temperature": temperature,
            "max_output_units": max_output_units,
        },
        sort_keys=True,
        separators=(",", ":"),
        default=str,
    )
    return hashlib.sha256(canonical.encode("utf-8")).hexdigest()


class ResponseCache:
    """TTL-bounded response store.

    Stale entries are dropped lazily on read and in bulk by sweep(), which
    can run on a daemon thread via start()/stop().
    """

    def __init__(
        self,
        ttl_seconds: float,
        sweep_interval_seconds: float = 60.0,
        clock: Callable[[], datetime] = datetime.now,
    ):
        self.ttl = timedelta(seconds=ttl_seconds)
        self.sweep_interval_seconds = sweep_interval_seconds
        self._clock = clock
        self._entries: Dict[str, CacheEntry] = {}
        self._lock = threading.Lock()
        self._stop = threading.Event()
        self._sweeper: Optional[threading.Thread] = None

    @property
    def enabled(self) -> bool:
        return self.ttl > timedelta(0)

    def __len__(self) -> int:
        return len(self._entries)

    def _fresh(self, entry: CacheEntry, now: datetime) -> bool:
        return now - entry.created_at < self.ttl

    def get(self, key: str, model: str) -> Optional[CacheEntry]:
        """Return a fresh entry for key and model, or None.

        A stale or mismatched entry is removed.
        """
        with self._lock:
            entry = self._entries.get(key)
            if entry is None:
                return None
            if entry.model == model and self._fresh(entry, self._clock()):
                return entry
            del self._entries[key]
            return None

    def put(self, key: str, model: str, response: Any, usage: TokenUsage) -> Optional[CacheEntry]:
        """Store a response; does nothing when caching is disabled."""
        if not self.enabled:
            return None
        entry = CacheEntry(
            fingerprint=key,
            model=model,
            response=response,
            recorded_usage=usage,
            created_at=self._clock()
        )
        with self._lock:
            self._entries[key] = entry
        return entry

    def clear(self) -> None:
        with self._lock:
            self._entries.clear()

    def sweep(self) -> int:
        """Remove every expired entry. Returns the number removed."""
        with self._lock:
            now = self._clock()
            stale = [key for key, entry in self._entries.items() if not self._fresh(entry, now)]
            for key in stale:
                del self._entries[key]
        if stale:
            logger.debug("Cache sweep removed %d entries", len(stale))
        return len(stale)

    def _run_sweeper(self) -> None:
        while not self._stop.wait(self.sweep_interval_seconds):
            try:
                self.sweep()
            except Exception:
                logger.warning("Cache sweep failed", exc_info=True)

    def start(self) -> None:
        """Start the background sweep thread (idempotent)."""
        if self._sweeper is not None and self._sweeper.is_alive():
            return
        self._stop.clear()
        self._sweeper = threading.Thread(
            target=self._run_sweeper, name="response-cache-sweeper", daemon=True
        )
        self._sweeper.start()

    def stop(self) -> None:
        self._stop.set()
        if self._sweeper is not None:
            self._sweeper.join(timeout=self.sweep_interval_seconds)
            self._sweeper = None
