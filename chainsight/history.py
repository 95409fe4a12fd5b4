"""
Fixed-capacity rolling history for metric observations.

Values and timestamps live in preallocated numpy arrays indexed by a moving
head; the oldest point is overwritten once the buffer is full.
"""

import threading
from typing import Dict, Iterator, Optional, Tuple

import numpy as np

DEFAULT_CAPACITY = 1000


class RingBuffer:
    """Bounded (timestamp, value) series, evicting oldest-first."""

    def __init__(self, capacity: int = DEFAULT_CAPACITY):
        if capacity <= 0:
            raise ValueError("Ring buffer capacity must be positive")
        self.capacity = capacity
        self._values = np.zeros(capacity, dtype=float)
        self._timestamps = np.zeros(capacity, dtype=float)
        self._head = 0
        self._size = 0

    def __len__(self) -> int:
        return self._size

    def append(self, value: float, timestamp: float):
        self._values[self._head] = value
        self._timestamps[self._head] = timestamp
        self._head = (self._head + 1) % self.capacity
        self._size = min(self._size + 1, self.capacity)

    def _order(self) -> np.ndarray:
        start = (self._head - self._size) % self.capacity
        return (start + np.arange(self._size)) % self.capacity

    def values(self) -> np.ndarray:
        """Values in chronological order."""
        return self._values[self._order()]

    def timestamps(self) -> np.ndarray:
        """Timestamps in chronological order."""
        return self._timestamps[self._order()]

    def values_before(self, timestamp: float) -> np.ndarray:
        """Chronological values strictly older than ``timestamp``."""
        order = self._order()
        mask = self._timestamps[order] < timestamp
        return self._values[order][mask]

    def latest(self) -> Optional[Tuple[float, float]]:
        """Most recent (timestamp, value), or None if empty."""
        if self._size == 0:
            return None
        index = (self._head - 1) % self.capacity
        return float(self._timestamps[index]), float(self._values[index])


class HistoryStore:
    """Ring buffers keyed by (asset, metric)."""

    def __init__(self, capacity: int = DEFAULT_CAPACITY):
        self.capacity = capacity
        self._buffers: Dict[Tuple[str, str], RingBuffer] = {}
        self.lock = threading.Lock()

    def buffer(self, asset_id: str, metric: str) -> RingBuffer:
        key = (asset_id, metric)
        with self.lock:
            if key not in self._buffers:
                self._buffers[key] = RingBuffer(self.capacity)
            return self._buffers[key]

    def get(self, asset_id: str, metric: str) -> Optional[RingBuffer]:
        return self._buffers.get((asset_id, metric))

    def record(self, asset_id: str, metric: str, value: float, timestamp: float) -> bool:
        """
        Append a point unless it repeats the latest timestamp.

        Returns:
            True if the point was appended
        """
        buffer = self.buffer(asset_id, metric)
        latest = buffer.latest()
        if latest is not None and latest[0] >= timestamp:
            return False
        buffer.append(value, timestamp)
        return True

    def metrics_for(self, asset_id: str) -> Iterator[str]:
        return (metric for (asset, metric) in list(self._buffers) if asset == asset_id)

    def __len__(self) -> int:
        return len(self._buffers)
