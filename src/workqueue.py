"""
Work Queue - Deduplicating, rate-limited asyncio queue of object keys.

A key is queued at most once, however many times it is added, and is never
handed to two workers at the same time: a key added while it is being
processed is queued again only once the worker calls :meth:`WorkQueue.done`.
"""

import asyncio
import logging
import random
from collections import deque
from typing import Deque, Dict, Generic, Hashable, Optional, Set, TypeVar

logger = logging.getLogger(__name__)

K = TypeVar("K", bound=Hashable)


class WorkQueue(Generic[K]):
    """
    Args:
        base_delay: Backoff delay for the first rate-limited requeue, seconds.
        max_delay: Upper bound for the backoff delay, seconds.
        jitter_factor: Jitter of ±X applied to the backoff delay.
    """

    def __init__(
        self,
        base_delay: float = 1.0,
        max_delay: float = 300.0,
        jitter_factor: float = 0.1,
    ):
        self.base_delay = base_delay
        self.max_delay = max_delay
        self.jitter_factor = jitter_factor

        self._queue: Deque[K] = deque()
        self._dirty: Set[K] = set()
        self._processing: Set[K] = set()
        self._waiters: Deque[asyncio.Future] = deque()
        self._timers: Dict[K, asyncio.TimerHandle] = {}
        self._failures: Dict[K, int] = {}
        self._shutting_down = False

    def __len__(self) -> int:
        return len(self._queue)

    @property
    def shutting_down(self) -> bool:
        return self._shutting_down

    def add(self, key: K) -> None:
        """Queue a key unless it is already queued."""
        if self._shutting_down or key in self._dirty:
            return

        self._dirty.add(key)
        if key in self._processing:
            # Picked up again by done()
            return

        self._queue.append(key)
        self._notify()

    def add_after(self, key: K, delay: float) -> None:
        """
        Queue a key once ``delay`` seconds have passed.

        When the key is already waiting, the earlier deadline wins.
        """
        if self._shutting_down:
            return
        if delay <= 0:
            self.add(key)
            return

        loop = asyncio.get_running_loop()
        when = loop.time() + delay
        timer = self._timers.get(key)
        if timer is not None:
            if timer.when() <= when:
                return
            timer.cancel()

        self._timers[key] = loop.call_at(when, self._fire, key)

    def add_rate_limited(self, key: K) -> float:
        """
        Queue a key after its exponential backoff delay.

        Returns:
            The delay applied, in seconds.
        """
        delay = self.backoff(key)
        self.add_after(key, delay)
        return delay

    def backoff(self, key: K) -> float:
        """Next backoff delay for ``key``; counts as one more failure."""
        failures = self._failures.get(key, 0)
        self._failures[key] = failures + 1

        delay = min(self.base_delay * (2 ** min(failures, 10)), self.max_delay)
        # Add jitter of ±jitter_factor to prevent thundering herd
        jitter = delay * self.jitter_factor * (random.random() * 2 - 1)
        return max(delay + jitter, 0.0)

    def forget(self, key: K) -> None:
        """Reset the failure count of a key."""
        self._failures.pop(key, None)

    def num_requeues(self, key: K) -> int:
        return self._failures.get(key, 0)

    async def get(self) -> Optional[K]:
        """
        Wait for the next key and mark it as being processed.

        Returns:
            The key, or ``None`` once the queue is shut down.
        """
        while not self._queue and not self._shutting_down:
            waiter = asyncio.get_running_loop().create_future()
            self._waiters.append(waiter)
            try:
                await waiter
            finally:
                if waiter in self._waiters:
                    self._waiters.remove(waiter)

        if self._shutting_down:
            return None

        key = self._queue.popleft()
        self._dirty.discard(key)
        self._processing.add(key)
        return key

    def done(self, key: K) -> None:
        """Mark a key as processed, requeueing it if it was added meanwhile."""
        self._processing.discard(key)
        if key in self._dirty and not self._shutting_down:
            self._queue.append(key)
            self._notify()

    def shut_down(self) -> None:
        """Stop handing out keys and drop every pending timer."""
        self._shutting_down = True
        for timer in self._timers.values():
            timer.cancel()
        self._timers.clear()
        self._notify(all_waiters=True)

    def _fire(self, key: K) -> None:
        self._timers.pop(key, None)
        self.add(key)

    def _notify(self, all_waiters: bool = False) -> None:
        while self._waiters:
            waiter = self._waiters.popleft()
            if not waiter.done():
                waiter.set_result(None)
                if not all_waiters:
                    return
