"""
Backoff Tracker - per-resource requeue delays.

Each request key owns one delay. New keys start at the base delay, every
failed attempt doubles it, a success resets it and a finished request is
forgotten entirely.
"""

import threading
from typing import Dict, Hashable, Optional


class BackoffTracker:
    """
    Thread-safe map of resource key to current requeue delay (seconds).

    All operations hold a single lock for a constant number of dict
    operations; no caller work runs under the lock.
    """

    def __init__(self, base_delay: float = 1.0, max_delay: Optional[float] = None):
        if base_delay <= 0:
            raise ValueError("base_delay must be positive")
        if max_delay is not None and max_delay < base_delay:
            raise ValueError("max_delay cannot be smaller than base_delay")
        self.base_delay = base_delay
        self.max_delay = max_delay
        self._delays: Dict[Hashable, float] = {}
        self._lock = threading.Lock()

    def get_or_init(self, key: Hashable) -> float:
        """Return the current delay for key, seeding it with the base delay."""
        with self._lock:
            return self._delays.setdefault(key, self.base_delay)

    def double(self, key: Hashable) -> float:
        """
        Double the delay for key and return the new value.

        An unseen key is seeded first, so the first doubling yields twice
        the base delay.
        """
        with self._lock:
            delay = self._delays.get(key, self.base_delay) * 2
            if self.max_delay is not None:
                delay = min(delay, self.max_delay)
            self._delays[key] = delay
            return delay

    def reset(self, key: Hashable) -> None:
        with self._lock:
            self._delays[key] = self.base_delay

    def forget(self, key: Hashable) -> None:
        with self._lock:
            self._delays.pop(key, None)

    def __contains__(self, key: Hashable) -> bool:
        with self._lock:
            return key in self._delays

    def __len__(self) -> int:
        with self._lock:
            return len(self._delays)
