"""
Per-key mutual exclusion for in-process writers.

Billing events for the same subscriber must be applied one at a time; events
for different subscribers proceed in parallel. Locks are reference counted
and dropped once no thread holds or waits on them, so the registry does not
grow with the number of keys ever seen.

Cross-process safety comes from the compare-and-swap on Subscriber.version;
this lock only removes needless retries inside one worker.
"""

from contextlib import contextmanager
from threading import Lock
from typing import Dict, Iterator, List


class KeyedLock:
    """Registry of reference-counted locks, one per key."""

    def __init__(self):
        self._locks: Dict[str, List] = {}
        self._registry_lock = Lock()

    @contextmanager
    def hold(self, key: str) -> Iterator[None]:
        """Hold the lock for ``key`` for the duration of the block."""
        with self._registry_lock:
            entry = self._locks.get(key)
            if entry is None:
                entry = [Lock(), 0]
                self._locks[key] = entry
            entry[1] += 1

        lock = entry[0]
        lock.acquire()
        try:
            yield
        finally:
            lock.release()
            with self._registry_lock:
                entry[1] -= 1
                if entry[1] == 0:
                    self._locks.pop(key, None)

    def __len__(self) -> int:
        with self._registry_lock:
            return len(self._locks)
