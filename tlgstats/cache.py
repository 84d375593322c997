"""
Per-build model fit cache.

A table build creates one ModelFitCache and passes it to every cell callback,
so each covariate model is fitted once no matter how many rows and columns
display it. Instances are never shared between builds.
"""

from __future__ import annotations

import threading
from contextlib import nullcontext
from typing import Any, Callable, Dict, Optional

from config import CONFIG
from logger import get_logger

logger = get_logger(__name__)


class ModelFitCache:
    """
    Mapping from a covariate name (or a synthetic key) to a tidy model fit.
    """

    def __init__(self, thread_safe: Optional[bool] = None):
        """
        Parameters:
            thread_safe (bool | None): Guard get_or_fit with a lock. Defaults to
                CONFIG['performance.cache_thread_safe'].
        """
        if thread_safe is None:
            thread_safe = CONFIG.get("performance.cache_thread_safe", True)
        self._entries: Dict[str, Any] = {}
        self._lock = threading.RLock() if thread_safe else nullcontext()
        self.hits = 0
        self.misses = 0

    def get_or_fit(self, key: str, fit_fn: Callable[[], Any]) -> Any:
        """
        Return the cached value for ``key``, calling ``fit_fn`` and storing its
        result on the first request.
        """
        with self._lock:
            if key in self._entries:
                self.hits += 1
                logger.debug(f"Cache HIT for model '{key}'")
                return self._entries[key]

            self.misses += 1
            logger.debug(f"Cache MISS for model '{key}', fitting")
            value = fit_fn()
            self._entries[key] = value
            return value

    def __contains__(self, key: str) -> bool:
        return key in self._entries

    def __len__(self) -> int:
        return len(self._entries)

    def clear(self) -> None:
        """Remove all entries and reset the hit/miss counters."""
        with self._lock:
            count = len(self._entries)
            self._entries.clear()
            self.hits = 0
            self.misses = 0
            logger.debug(f"Cache cleared ({count} models removed)")

    def get_stats(self) -> dict:
        with self._lock:
            total = self.hits + self.misses
            return {
                "cached_items": len(self._entries),
                "hits": self.hits,
                "misses": self.misses,
                "total_requests": total,
                "hit_rate": f"{(self.hits / total * 100) if total else 0:.1f}%",
            }

    def __repr__(self) -> str:
        return f"ModelFitCache(cached={len(self._entries)}, hits={self.hits}, misses={self.misses})"
