"""
Keyed work queue with delayed and rate-limited re-adds.

A key is queued at most once. A key being processed is not handed to a
second worker; if it is re-added meanwhile it is queued again when the
first worker calls :meth:`WorkQueue.done`. Failures back off exponentially
per key until :meth:`WorkQueue.forget` is called.
"""

import heapq
import itertools
import threading
import time
from collections import deque
from typing import Callable, Deque, Dict, List, Optional, Set, Tuple

import structlog

log = structlog.get_logger(__name__)


class WorkQueue:
    """
    Deduplicating FIFO of object keys.

    Usage:
        queue = WorkQueue()
        queue.add("default/snap1")
        key = queue.get()
        try:
            ...
            queue.forget(key)
        except Exception:
            queue.add_rate_limited(key)
        finally:
            queue.done(key)
    """

    def __init__(
        self,
        base_delay: float = 0.005,
        max_delay: float = 300.0,
        time_fn: Callable[[], float] = time.monotonic,
    ):
        self.base_delay = base_delay
        self.max_delay = max_delay
        self._time = time_fn
        self._cond = threading.Condition()
        self._queue: Deque[str] = deque()
        self._dirty: Set[str] = set()
        self._processing: Set[str] = set()
        self._waiting: List[Tuple[float, int, str]] = []
        self._seq = itertools.count()
        self._failures: Dict[str, int] = {}
        self._shutting_down = False

    def __len__(self) -> int:
        with self._cond:
            return len(self._queue)

    @property
    def shutting_down(self) -> bool:
        with self._cond:
            return self._shutting_down

    def add(self, key: str) -> None:
        with self._cond:
            self._add(key)

    def _add(self, key: str) -> None:
        if self._shutting_down or key in self._dirty:
            return
        self._dirty.add(key)
        if key in self._processing:
            return
        self._queue.append(key)
        self._cond.notify()

    def add_after(self, key: str, delay: float) -> None:
        """Queue ``key`` once ``delay`` seconds have passed."""
        if delay <= 0:
            self.add(key)
            return
        with self._cond:
            if self._shutting_down:
                return
            heapq.heappush(self._waiting, (self._time() + delay, next(self._seq), key))
            self._cond.notify()

    def add_rate_limited(self, key: str) -> float:
        """Queue ``key`` after its current backoff. Returns the delay used."""
        with self._cond:
            failures = self._failures.get(key, 0)
            self._failures[key] = failures + 1
        delay = min(self.base_delay * (2 ** failures), self.max_delay)
        self.add_after(key, delay)
        return delay

    def forget(self, key: str) -> None:
        """Reset the backoff for ``key``."""
        with self._cond:
            self._failures.pop(key, None)

    def num_requeues(self, key: str) -> int:
        with self._cond:
            return self._failures.get(key, 0)

    def get(self, timeout: Optional[float] = None) -> Optional[str]:
        """Block until a key is ready. Returns None on shutdown or timeout."""
        deadline = None if timeout is None else self._time() + timeout
        with self._cond:
            while True:
                self._promote_due()
                if self._queue:
                    key = self._queue.popleft()
                    self._processing.add(key)
                    self._dirty.discard(key)
                    return key
                if self._shutting_down:
                    return None

                wait = None
                if self._waiting:
                    wait = max(self._waiting[0][0] - self._time(), 0)
                if deadline is not None:
                    remaining = deadline - self._time()
                    if remaining <= 0:
                        return None
                    wait = remaining if wait is None else min(wait, remaining)
                self._cond.wait(wait)

    def done(self, key: str) -> None:
        """Mark ``key`` processed; requeue it if it was re-added meanwhile."""
        with self._cond:
            self._processing.discard(key)
            if key in self._dirty:
                self._queue.append(key)
                self._cond.notify()

    def shutdown(self) -> None:
        with self._cond:
            self._shutting_down = True
            self._cond.notify_all()
        log.debug("workqueue.shutdown")

    def _promote_due(self) -> None:
        now = self._time()
        while self._waiting and self._waiting[0][0] <= now:
            _, _, key = heapq.heappop(self._waiting)
            self._add(key)
