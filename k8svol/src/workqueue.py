from __future__ import annotations

import heapq
import itertools
import threading
import time
from collections import deque
from collections.abc import Callable
from typing import Protocol


class RateLimiter(Protocol):
    def when(self, item: str) -> float: ...

    def forget(self, item: str) -> None: ...

    def num_requeues(self, item: str) -> int: ...


class ItemExponentialFailureRateLimiter:
    """Per-item exponential backoff: ``base * 2**failures``, capped at ``max_delay``."""

    def __init__(self, base_delay: float, max_delay: float) -> None:
        if base_delay <= 0:
            raise ValueError("base_delay must be > 0")
        if max_delay < base_delay:
            raise ValueError("max_delay must be >= base_delay")
        self.base_delay = base_delay
        self.max_delay = max_delay
        self._failures: dict[str, int] = {}
        self._lock = threading.Lock()

    def when(self, item: str) -> float:
        with self._lock:
            exponent = self._failures.get(item, 0)
            self._failures[item] = exponent + 1
        # 2**64 * base overflows any sane cap; short-circuit before computing it.
        if exponent >= 64:
            return self.max_delay
        return min(self.base_delay * (2**exponent), self.max_delay)

    def forget(self, item: str) -> None:
        with self._lock:
            self._failures.pop(item, None)

    def num_requeues(self, item: str) -> int:
        with self._lock:
            return self._failures.get(item, 0)


class BucketRateLimiter:
    """Overall token bucket shared by every item (``qps`` refill, ``burst`` capacity)."""

    def __init__(
        self,
        qps: float,
        burst: int,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        if qps <= 0:
            raise ValueError("qps must be > 0")
        if burst < 1:
            raise ValueError("burst must be >= 1")
        self.qps = qps
        self.burst = burst
        self._clock = clock
        self._tokens = float(burst)
        self._last = clock()
        self._lock = threading.Lock()

    def when(self, item: str) -> float:
        with self._lock:
            now = self._clock()
            self._tokens = min(float(self.burst), self._tokens + (now - self._last) * self.qps)
            self._last = now
            self._tokens -= 1
            if self._tokens >= 0:
                return 0.0
            return -self._tokens / self.qps

    def forget(self, item: str) -> None:
        return None

    def num_requeues(self, item: str) -> int:
        return 0


class MaxOfRateLimiter:
    """Return the longest delay of all wrapped limiters."""

    def __init__(self, *limiters: RateLimiter) -> None:
        if not limiters:
            raise ValueError("at least one rate limiter is required")
        self.limiters = limiters

    def when(self, item: str) -> float:
        return max(limiter.when(item) for limiter in self.limiters)

    def forget(self, item: str) -> None:
        for limiter in self.limiters:
            limiter.forget(item)

    def num_requeues(self, item: str) -> int:
        return max(limiter.num_requeues(item) for limiter in self.limiters)


def default_controller_rate_limiter(
    base_delay: float = 0.005,
    max_delay: float = 1000.0,
    qps: float = 10.0,
    burst: int = 100,
) -> MaxOfRateLimiter:
    return MaxOfRateLimiter(
        ItemExponentialFailureRateLimiter(base_delay=base_delay, max_delay=max_delay),
        BucketRateLimiter(qps=qps, burst=burst),
    )


class RateLimitingQueue:
    """Deduplicating, delay-capable work queue of string keys.

    Item states:

    ``dirty``
        Keys that need processing. A key is in ``dirty`` while it waits in the
        queue, and again if it is re-added while a worker holds it.
    ``processing``
        Keys handed out by :meth:`get` and not yet released with :meth:`done`.
        A key that is both dirty and processing is held back and re-queued by
        :meth:`done`, so no two workers ever process the same key at once.

    Delayed adds (:meth:`add_after`, :meth:`add_rate_limited`) sit in a heap
    and are promoted into the queue by :meth:`get` once they are due. After
    :meth:`shut_down`, :meth:`get` returns ``(None, True)`` immediately and no
    further items are handed out.
    """

    def __init__(
        self,
        rate_limiter: RateLimiter | None = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.rate_limiter = rate_limiter or default_controller_rate_limiter()
        self._clock = clock
        self._cond = threading.Condition()
        self._queue: deque[str] = deque()
        self._dirty: set[str] = set()
        self._processing: set[str] = set()
        self._waiting: list[tuple[float, int, str]] = []
        self._waiting_ready_at: dict[str, float] = {}
        self._sequence = itertools.count()
        self._shutting_down = False

    def __len__(self) -> int:
        with self._cond:
            return len(self._queue)

    @property
    def shutting_down(self) -> bool:
        with self._cond:
            return self._shutting_down

    def _add_locked(self, item: str) -> None:
        if item in self._dirty:
            return
        self._dirty.add(item)
        if item in self._processing:
            return
        self._queue.append(item)
        self._cond.notify()

    def add(self, item: str) -> None:
        with self._cond:
            if self._shutting_down:
                return
            self._add_locked(item)

    def add_after(self, item: str, delay_seconds: float) -> None:
        """Add *item* once *delay_seconds* have elapsed.

        A key already waiting keeps the earlier of its two due times.
        """
        with self._cond:
            if self._shutting_down:
                return
            if delay_seconds <= 0:
                self._add_locked(item)
                return
            ready_at = self._clock() + delay_seconds
            existing = self._waiting_ready_at.get(item)
            if existing is not None and existing <= ready_at:
                return
            self._waiting_ready_at[item] = ready_at
            heapq.heappush(self._waiting, (ready_at, next(self._sequence), item))
            self._cond.notify()

    def add_rate_limited(self, item: str) -> None:
        self.add_after(item, self.rate_limiter.when(item))

    def forget(self, item: str) -> None:
        self.rate_limiter.forget(item)

    def num_requeues(self, item: str) -> int:
        return self.rate_limiter.num_requeues(item)

    def _promote_due_locked(self) -> float | None:
        """Move due delayed items into the queue; return seconds until the next one."""
        now = self._clock()
        while self._waiting:
            ready_at, _, item = self._waiting[0]
            if ready_at > now:
                return ready_at - now
            heapq.heappop(self._waiting)
            # Stale heap entries are left behind when a key is re-added earlier.
            if self._waiting_ready_at.get(item) != ready_at:
                continue
            del self._waiting_ready_at[item]
            self._add_locked(item)
        return None

    def get(self, timeout: float | None = None) -> tuple[str | None, bool]:
        """Block until an item is available.

        Returns ``(item, False)``, ``(None, True)`` once the queue is shut
        down, or ``(None, False)`` when *timeout* elapses with nothing to do.
        """
        deadline = None if timeout is None else self._clock() + timeout
        with self._cond:
            while True:
                if self._shutting_down:
                    return None, True
                next_due = self._promote_due_locked()
                if self._queue:
                    break
                wait_for = next_due
                if deadline is not None:
                    remaining = deadline - self._clock()
                    if remaining <= 0:
                        return None, False
                    wait_for = remaining if wait_for is None else min(wait_for, remaining)
                self._cond.wait(timeout=wait_for)

            item = self._queue.popleft()
            self._processing.add(item)
            self._dirty.discard(item)
            return item, False

    def done(self, item: str) -> None:
        with self._cond:
            self._processing.discard(item)
            if item in self._dirty and not self._shutting_down:
                self._queue.append(item)
                self._cond.notify()

    def shut_down(self) -> None:
        with self._cond:
            self._shutting_down = True
            self._cond.notify_all()
