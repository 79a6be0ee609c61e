"""In-process TTL cache holding the latest rollup and cost snapshots."""

from __future__ import annotations

import copy
import threading
import time
from typing import Any, Callable, Dict, Optional, Tuple


class MetricsCache:
    """Thread-safe key/value store whose entries expire after a TTL."""

    def __init__(self, *, clock: Optional[Callable[[], float]] = None) -> None:
        self._clock = clock or time.monotonic
        self._entries: Dict[str, Tuple[float, Dict[str, Any]]] = {}
        self._lock = threading.Lock()

    def put(self, key: str, value: Dict[str, Any], ttl_seconds: int) -> None:
        if ttl_seconds <= 0:
            raise ValueError("ttl_seconds must be greater than zero")
        expires_at = self._clock() + ttl_seconds
        with self._lock:
            self._entries[key] = (expires_at, copy.deepcopy(value))

    def get(self, key: str) -> Optional[Dict[str, Any]]:
        with self._lock:
            entry = self._entries.get(key)
            if entry is None:
                return None
            expires_at, value = entry
            if expires_at <= self._clock():
                del self._entries[key]
                return None
            return copy.deepcopy(value)

    def delete(self, key: str) -> None:
        with self._lock:
            self._entries.pop(key, None)

    def ping(self) -> bool:
        self.get("health_check")
        return True
