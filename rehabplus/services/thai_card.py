# rehabplus/services/thai_card.py
import threading
import time
from typing import Any, Callable, Dict, Optional

CARD_TTL_SECONDS = 30


class ThaiCardCache:
    """Single-slot cache for the last card read; each payload is handed out once."""

    def __init__(self, ttl_seconds: int = CARD_TTL_SECONDS, clock: Callable[[], float] = time.time):
        self.ttl_seconds = ttl_seconds
        self._clock = clock
        self._lock = threading.Lock()
        self._data: Optional[Dict[str, Any]] = None
        self._stored_at = 0.0

    def store(self, data: Dict[str, Any]) -> None:
        with self._lock:
            self._data = data
            self._stored_at = self._clock()

    def consume(self) -> Optional[Dict[str, Any]]:
        with self._lock:
            data, self._data = self._data, None
            if data is None or self._clock() - self._stored_at > self.ttl_seconds:
                return None
            return data

    def clear(self) -> None:
        with self._lock:
            self._data = None


thai_card_cache = ThaiCardCache()
