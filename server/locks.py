"""
In-process per-listing serialization for bid admission.
Bids on different listings never wait on each other.
"""
import threading
from contextlib import contextmanager
from typing import Dict, Hashable, List
import logging

logger = logging.getLogger(__name__)


class KeyedLocks:
    """
    Registry of one lock per key, created on first use and dropped once
    no thread holds or waits on it.
    """

    def __init__(self):
        # Maps key -> [lock, number of holders + waiters]
        self._locks: Dict[Hashable, List] = {}
        self._lock = threading.Lock()  # Protects the _locks dict

    @contextmanager
    def hold(self, key: Hashable):
        """
        Hold the lock for key for the duration of the with-block.

        Args:
            key: Resource identifier (e.g., vehicle id)
        """
        with self._lock:
            entry = self._locks.get(key)
            if entry is None:
                entry = [threading.Lock(), 0]
                self._locks[key] = entry
            entry[1] += 1

        lock = entry[0]
        lock.acquire()
        try:
            yield
        finally:
            lock.release()
            with self._lock:
                entry[1] -= 1
                if entry[1] == 0 and self._locks.get(key) is entry:
                    del self._locks[key]

    def active_keys(self) -> int:
        """Number of keys currently held or waited on."""
        with self._lock:
            return len(self._locks)


# Shared by every engine in this process
listing_locks = KeyedLocks()
