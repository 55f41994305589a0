from __future__ import annotations

import threading
import time
from collections import deque
from collections.abc import Callable, Hashable

from haegress.src.metrics import METRICS


class WorkQueue:
    """De-duplicating queue of reconcile keys with delayed requeue.

    A key is handed to at most one worker at a time.  Adding a key that is
    being processed marks it dirty; it is queued again once the worker calls
    :meth:`done`, so the latest state is always reconciled once more.

    Delayed keys are kept as monotonic due-at timestamps.  An earlier due-at
    replaces a later one, never the other way round.
    """

    def __init__(self, clock: Callable[[], float] = time.monotonic) -> None:
        self._clock = clock
        self._cond = threading.Condition()
        self._queue: deque[Hashable] = deque()
        self._queued: set[Hashable] = set()
        self._processing: set[Hashable] = set()
        self._dirty: set[Hashable] = set()
        self._delayed: dict[Hashable, float] = {}
        self._shutdown = False

    def __len__(self) -> int:
        with self._cond:
            return len(self._queue) + len(self._delayed) + len(self._dirty)

    def _update_depth(self) -> None:
        METRICS.queue_depth.set(len(self._queue) + len(self._delayed) + len(self._dirty))

    def _enqueue_locked(self, key: Hashable) -> None:
        if key in self._processing:
            self._dirty.add(key)
        elif key not in self._queued:
            self._queue.append(key)
            self._queued.add(key)
            self._cond.notify()
        self._update_depth()

    def _promote_due_locked(self, now: float) -> None:
        for key, due_at in list(self._delayed.items()):
            if due_at <= now:
                del self._delayed[key]
                self._enqueue_locked(key)

    def add(self, key: Hashable) -> None:
        with self._cond:
            if self._shutdown:
                return
            self._delayed.pop(key, None)
            self._enqueue_locked(key)

    def add_after(self, key: Hashable, delay_seconds: float) -> None:
        if delay_seconds <= 0:
            self.add(key)
            return
        with self._cond:
            if self._shutdown:
                return
            due_at = self._clock() + delay_seconds
            existing = self._delayed.get(key)
            if existing is None or due_at < existing:
                self._delayed[key] = due_at
                self._update_depth()
                self._cond.notify()

    def get(self, timeout: float | None = None) -> Hashable | None:
        """Return the next ready key, or None on timeout or shutdown."""
        with self._cond:
            deadline = None if timeout is None else self._clock() + timeout
            while not self._shutdown:
                now = self._clock()
                self._promote_due_locked(now)
                if self._queue:
                    key = self._queue.popleft()
                    self._queued.discard(key)
                    self._processing.add(key)
                    self._update_depth()
                    return key

                wait: float | None = None
                if self._delayed:
                    wait = max(0.0, min(self._delayed.values()) - now)
                if deadline is not None:
                    remaining = deadline - now
                    if remaining <= 0:
                        return None
                    wait = remaining if wait is None else min(wait, remaining)
                self._cond.wait(timeout=wait)
            return None

    def done(self, key: Hashable) -> None:
        with self._cond:
            self._processing.discard(key)
            if key in self._dirty:
                self._dirty.discard(key)
                self._enqueue_locked(key)

    def shutdown(self) -> None:
        with self._cond:
            self._shutdown = True
            self._cond.notify_all()

    @property
    def is_shutdown(self) -> bool:
        return self._shutdown
