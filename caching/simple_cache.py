"""
Loan Read Cache
In-process TTL cache for loan detail reads; never consulted by webhook reconciliation
"""

import threading
import time
import logging
from typing import Any, Dict, Optional, Tuple

logger = logging.getLogger(__name__)


class SimpleCache:
    """Thread-safe key/value store where every entry carries its own expiry"""

    def __init__(self, default_ttl: int = 300):
        self.default_ttl = default_ttl
        self._entries: Dict[str, Tuple[Any, float]] = {}
        self._lock = threading.Lock()
        self.stats = {"hits": 0, "misses": 0, "sets": 0, "deletes": 0, "evictions": 0}

    def get(self, key: str, default: Any = None) -> Any:
        with self._lock:
            found = self._entries.get(key)
            if found is None:
                self.stats["misses"] += 1
                return default

            value, expires_at = found
            if expires_at <= time.time():
                self._entries.pop(key, None)
                self.stats["evictions"] += 1
                self.stats["misses"] += 1
                return default

            self.stats["hits"] += 1
            return value

    def set(self, key: str, value: Any, ttl: Optional[int] = None) -> None:
        lifetime = self.default_ttl if ttl is None else ttl
        with self._lock:
            self._entries[key] = (value, time.time() + lifetime)
            self.stats["sets"] += 1

    def delete(self, key: str) -> bool:
        with self._lock:
            removed = self._entries.pop(key, None) is not None
            if removed:
                self.stats["deletes"] += 1
            return removed

    def delete_prefix(self, prefix: str) -> int:
        """Drop every key under ``prefix``; returns how many went"""
        with self._lock:
            doomed = [key for key in self._entries if key.startswith(prefix)]
            for key in doomed:
                del self._entries[key]
            self.stats["deletes"] += len(doomed)
        return len(doomed)

    def clear(self) -> None:
        with self._lock:
            self.stats["deletes"] += len(self._entries)
            self._entries.clear()

    def get_stats(self) -> Dict[str, Any]:
        lookups = self.stats["hits"] + self.stats["misses"]
        return {
            **self.stats,
            "total_requests": lookups,
            "hit_rate_percent": round(self.stats["hits"] * 100 / lookups, 2) if lookups else 0,
            "cache_size": len(self._entries),
        }


def loan_cache_key(loan_id: str) -> str:
    return f"loan:{loan_id}"


def borrower_loans_cache_key(borrower_id: str) -> str:
    return f"borrower_loans:{borrower_id}"
