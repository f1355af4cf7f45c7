"""
Fixed-window rate limiting

Stores share one operation, ``hit(key, now)``, which counts a request for
``key`` and reports whether it is allowed plus the seconds left in the window.
The in-memory store only sees the requests of its own process; run the Mongo
store when several instances sit behind one address.
"""
import math
import threading
from typing import Dict, List, Tuple

from pymongo import ReturnDocument


class RateLimitStore:
    def __init__(self, window_seconds: int = 900, max_requests: int = 100):
        self.window_seconds = window_seconds
        self.max_requests = max_requests

    def hit(self, key: str, now: float) -> Tuple[bool, int]:
        raise NotImplementedError

    def _verdict(self, count: int, reset_at: float, now: float) -> Tuple[bool, int]:
        retry_after = max(0, math.ceil(reset_at - now))
        return count <= self.max_requests, retry_after


class MemoryRateLimitStore(RateLimitStore):
    def __init__(self, window_seconds: int = 900, max_requests: int = 100):
        super().__init__(window_seconds, max_requests)
        self._lock = threading.Lock()
        self._hits: Dict[str, List[float]] = {}
        self._next_sweep = 0.0

    def hit(self, key: str, now: float) -> Tuple[bool, int]:
        with self._lock:
            if now >= self._next_sweep:
                self._sweep(now)
            entry = self._hits.get(key)
            if entry is None or now > entry[1]:
                entry = [0, now + self.window_seconds]
                self._hits[key] = entry
            # rejected requests do not extend the count
            if entry[0] < self.max_requests:
                entry[0] += 1
                return True, max(0, math.ceil(entry[1] - now))
            return self._verdict(entry[0] + 1, entry[1], now)

    def _sweep(self, now: float) -> None:
        expired = [k for k, (_, reset_at) in self._hits.items() if reset_at < now]
        for k in expired:
            del self._hits[k]
        self._next_sweep = now + self.window_seconds

    def __len__(self) -> int:
        return len(self._hits)

    def reset(self) -> None:
        with self._lock:
            self._hits.clear()


class MongoRateLimitStore(RateLimitStore):
    """Counters kept in a shared collection, one document per client key."""

    def __init__(self, collection, window_seconds: int = 900, max_requests: int = 100):
        super().__init__(window_seconds, max_requests)
        self.collection = collection

    def hit(self, key: str, now: float) -> Tuple[bool, int]:
        doc = self.collection.find_one_and_update(
            {"_id": key, "reset_at": {"$gt": now}},
            {"$inc": {"count": 1}},
            return_document=ReturnDocument.AFTER,
        )
        if doc is None:
            reset_at = now + self.window_seconds
            self.collection.update_one(
                {"_id": key},
                {"$set": {"count": 1, "reset_at": reset_at}},
                upsert=True,
            )
            return True, self.window_seconds
        return self._verdict(doc["count"], doc["reset_at"], now)
