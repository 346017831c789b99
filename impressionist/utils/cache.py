"""
Caching utilities for condition evaluation.

Condition results depend on nothing but the flag values they are evaluated
against, so entries never expire on their own; the owner clears the cache
whenever those values change.
"""

import json
from typing import Any, Dict, Optional

from impressionist.utils.logger import get_logger

logger = get_logger(__name__)


class ConditionCache:
    """
    In-memory cache of condition evaluation results.

    Keys are a canonical JSON serialization of the condition, so two
    conditions listing the same names in the same order share one entry.
    """

    def __init__(self):
        self.cache: Dict[str, bool] = {}
        self.hits = 0
        self.misses = 0
        self.invalidations = 0

    @staticmethod
    def make_key(condition: Any) -> str:
        """Generate a cache key from a condition payload."""
        return json.dumps(condition, sort_keys=True, default=str)

    def get(self, key: str) -> Optional[bool]:
        """
        Retrieve a cached result.

        Returns:
            Cached result or None if the condition has not been evaluated
            since the last invalidation
        """
        if key in self.cache:
            self.hits += 1
            return self.cache[key]
        self.misses += 1
        return None

    def set(self, key: str, value: bool) -> None:
        self.cache[key] = value

    def invalidate(self) -> None:
        """Drop every cached result."""
        self.cache.clear()
        self.invalidations += 1

    def stats(self) -> Dict[str, Any]:
        """Get cache statistics."""
        total_requests = self.hits + self.misses
        hit_rate = (self.hits / total_requests * 100) if total_requests > 0 else 0

        return {
            "size": len(self.cache),
            "hits": self.hits,
            "misses": self.misses,
            "invalidations": self.invalidations,
            "hit_rate_percent": round(hit_rate, 2),
        }
