from __future__ import annotations

import threading
from contextlib import contextmanager
from typing import Iterator


class CountingSemaphore:
    """Unbounded counting semaphore built on a condition variable."""

    def __init__(self, count: int = 0) -> None:
        if count < 0:
            raise ValueError("count must be non-negative")
        self._count = count
        self._cond = threading.Condition(threading.Lock())

    @property
    def value(self) -> int:
        with self._cond:
            return self._count

    def post(self) -> None:
        with self._cond:
            self._count += 1
            self._cond.notify()

    def wait(self, timeout: float | None = None) -> bool:
        with self._cond:
            if not self._cond.wait_for(lambda: self._count > 0, timeout=timeout):
                return False
            self._count -= 1
            return True


class AdmissionSemaphore:
    """Permit pool with a fast path for uncontended acquisition.

    The signed counter holds free permits when non-negative and the number of
    parked waiters when negative. A waiter only parks on the inner semaphore
    when no permit was available at decrement time, and a poster only wakes
    the inner semaphore when it observed at least one parked waiter, so each
    parked ``wait()`` is paired with exactly one ``post()``.
    """

    def __init__(self, permits: int = 0) -> None:
        if permits < 0:
            raise ValueError("permits must be non-negative")
        self._count = permits
        self._count_lock = threading.Lock()
        self._parking = CountingSemaphore(0)

    @property
    def value(self) -> int:
        with self._count_lock:
            return self._count

    def _fetch_add(self, delta: int) -> int:
        with self._count_lock:
            previous = self._count
            self._count = previous + delta
        return previous

    def wait(self) -> None:
        if self._fetch_add(-1) < 1:
            self._parking.wait()

    def post(self) -> None:
        if self._fetch_add(1) < 0:
            self._parking.post()

    @contextmanager
    def slot(self) -> Iterator[None]:
        """Hold one permit for the duration of the block."""

        self.wait()
        try:
            yield
        finally:
            self.post()
