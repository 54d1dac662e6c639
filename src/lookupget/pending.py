from __future__ import annotations

import threading
from collections import deque
from typing import Iterable


class PendingQueue:
    """Shared FIFO of identifiers awaiting a request attempt.

    Every identifier handed out by ``dequeue_or_empty`` stays outstanding
    until the caller reports ``task_done``. The queue only reports empty once
    nothing is queued and nothing is outstanding; until then idle callers
    park, because an outstanding identifier may still be pushed back after a
    rate-limited attempt.
    """

    def __init__(self, identifiers: Iterable[str] = ()) -> None:
        self._items: deque[str] = deque(identifiers)
        self._outstanding = 0
        self._cond = threading.Condition(threading.Lock())

    def __len__(self) -> int:
        with self._cond:
            return len(self._items)

    @property
    def outstanding(self) -> int:
        with self._cond:
            return self._outstanding

    def extend(self, identifiers: Iterable[str]) -> None:
        with self._cond:
            self._items.extend(identifiers)
            self._cond.notify_all()

    def enqueue_back(self, identifier: str) -> None:
        with self._cond:
            self._items.append(identifier)
            self._cond.notify()

    def dequeue_or_empty(self) -> str | None:
        with self._cond:
            while not self._items and self._outstanding:
                self._cond.wait()
            if not self._items:
                return None
            self._outstanding += 1
            return self._items.popleft()

    def task_done(self) -> None:
        with self._cond:
            if self._outstanding <= 0:
                raise ValueError("task_done() called more times than dequeue_or_empty()")
            self._outstanding -= 1
            if not self._outstanding:
                self._cond.notify_all()
