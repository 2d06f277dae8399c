"""Keyed worker pool that drives reconcile functions."""

import heapq
import itertools
import threading
import time
from collections import Counter, deque
from typing import Callable, Deque, Hashable, List, Optional, Set, Tuple

from forgeprovisioner.models import ReconcileResult


class ReconcileQueue:
    """Runs ``reconcile(key)`` on a pool of worker threads.

    A key is never reconciled by two workers at once: adding a key that is
    being processed marks it dirty and it runs again once the current pass
    finishes. Distinct keys run in parallel up to ``workers``. A failing
    pass is retried with per-key exponential backoff; a result with
    ``requeue_after`` schedules the next pass.
    """

    def __init__(
        self,
        name: str,
        reconcile: Callable[[Hashable], ReconcileResult],
        logger,
        workers: int = 4,
        base_backoff_seconds: float = 1.0,
        max_backoff_seconds: float = 60.0,
    ):
        self.name = name
        self.reconcile = reconcile
        self.logger = logger
        self.workers = max(1, workers)
        self.base_backoff_seconds = base_backoff_seconds
        self.max_backoff_seconds = max_backoff_seconds

        self._cond = threading.Condition()
        self._ready: Deque[Hashable] = deque()
        self._queued: Set[Hashable] = set()
        self._processing: Set[Hashable] = set()
        self._dirty: Set[Hashable] = set()
        self._delayed: List[Tuple[float, int, Hashable]] = []
        self._sequence = itertools.count()
        self._failures: Counter = Counter()
        self._shutdown = False
        self._threads: List[threading.Thread] = []

    def add(self, key: Hashable):
        with self._cond:
            self._add_locked(key)

    def add_after(self, key: Hashable, delay: float):
        if delay <= 0:
            self.add(key)
            return
        with self._cond:
            heapq.heappush(self._delayed, (time.monotonic() + delay, next(self._sequence), key))
            self._cond.notify()

    def _add_locked(self, key: Hashable):
        if self._shutdown or key in self._queued:
            return
        if key in self._processing:
            self._dirty.add(key)
            return
        self._queued.add(key)
        self._ready.append(key)
        self._cond.notify()

    def start(self):
        for index in range(self.workers):
            thread = threading.Thread(target=self._worker, name=f"{self.name}-worker-{index}", daemon=True)
            thread.start()
            self._threads.append(thread)

    def shutdown(self, timeout: Optional[float] = None):
        with self._cond:
            self._shutdown = True
            self._cond.notify_all()
        for thread in self._threads:
            thread.join(timeout)

    def _next_key(self) -> Optional[Hashable]:
        with self._cond:
            while True:
                if self._shutdown:
                    return None

                now = time.monotonic()
                while self._delayed and self._delayed[0][0] <= now:
                    _, _, key = heapq.heappop(self._delayed)
                    self._add_locked(key)

                if self._ready:
                    key = self._ready.popleft()
                    self._queued.discard(key)
                    self._processing.add(key)
                    return key

                timeout = self._delayed[0][0] - now if self._delayed else None
                self._cond.wait(timeout)

    def _done(self, key: Hashable, backoff: Optional[float] = None):
        with self._cond:
            self._processing.discard(key)
            if backoff is not None:
                # A failed key waits out its backoff even if it changed meanwhile.
                self._dirty.discard(key)
                heapq.heappush(self._delayed, (time.monotonic() + backoff, next(self._sequence), key))
                self._cond.notify()
            elif key in self._dirty:
                self._dirty.discard(key)
                self._add_locked(key)

    def _record_failure(self, key: Hashable) -> float:
        with self._cond:
            self._failures[key] += 1
            return min(
                self.base_backoff_seconds * 2 ** (self._failures[key] - 1),
                self.max_backoff_seconds,
            )

    def _worker(self):
        while True:
            key = self._next_key()
            if key is None:
                return
            try:
                result = self.reconcile(key)
            except Exception:
                delay = self._record_failure(key)
                self.logger.exception("%s: reconcile of %s failed, retrying in %.1fs", self.name, key, delay)
                self._done(key, backoff=delay)
                continue

            with self._cond:
                self._failures.pop(key, None)
            if result is not None and result.requeue_after > 0:
                self.add_after(key, result.requeue_after)
            self._done(key)
