"""
Thread-safe state shared by every task of a crawl run.
"""
from __future__ import annotations

import queue
import threading
from contextlib import contextmanager
from typing import Callable, Iterator, Optional, Set

from sitecrawler.core import LinkReport


class _ReadWriteLock:
    """Many concurrent readers or a single writer."""

    def __init__(self) -> None:
        self._cond = threading.Condition(threading.Lock())
        self._readers = 0
        self._writing = False

    @contextmanager
    def reading(self) -> Iterator[None]:
        with self._cond:
            while self._writing:
                self._cond.wait()
            self._readers += 1
        try:
            yield
        finally:
            with self._cond:
                self._readers -= 1
                if not self._readers:
                    self._cond.notify_all()

    @contextmanager
    def writing(self) -> Iterator[None]:
        with self._cond:
            while self._writing or self._readers:
                self._cond.wait()
            self._writing = True
        try:
            yield
        finally:
            with self._cond:
                self._writing = False
                self._cond.notify_all()


class SeenSet:
    """
    Set of normalized paths claimed during a run.

    Reads may run concurrently, writes are exclusive. Entries are never removed.
    """

    def __init__(self) -> None:
        self._lock = _ReadWriteLock()
        self._data: Set[str] = set()

    def has(self, key: str) -> bool:
        with self._lock.reading():
            return key in self._data

    def add(self, *keys: str) -> None:
        if not keys:
            return
        with self._lock.writing():
            self._data.update(keys)

    def claim(self, key: str) -> bool:
        """Add key unless present. Returns True if this call added it."""
        with self._lock.writing():
            if key in self._data:
                return False
            self._data.add(key)
            return True

    def __contains__(self, key: object) -> bool:
        return isinstance(key, str) and self.has(key)

    def __len__(self) -> int:
        with self._lock.reading():
            return len(self._data)


class WorkCounter:
    """
    Count of dispatched but unfinished tasks.

    The decrement that brings the count back to zero calls on_zero, once.
    """

    def __init__(self, on_zero: Optional[Callable[[], None]] = None) -> None:
        self._cond = threading.Condition()
        self._count = 0
        self._fired = False
        self._on_zero = on_zero

    @property
    def value(self) -> int:
        with self._cond:
            return self._count

    def add(self, n: int = 1) -> None:
        with self._cond:
            if self._fired:
                raise RuntimeError("work counter already reached zero")
            self._count += n

    def done(self) -> None:
        with self._cond:
            if self._count <= 0:
                raise ValueError("work counter decremented below zero")
            self._count -= 1
            if self._count or self._fired:
                return
            self._fired = True
            self._cond.notify_all()

        if self._on_zero is not None:
            self._on_zero()

    def wait(self, timeout: Optional[float] = None) -> bool:
        """Block until the count has returned to zero."""
        with self._cond:
            return self._cond.wait_for(lambda: self._fired, timeout)


_CLOSED = object()


class ReportStream:
    """
    Push-style stream of LinkReports, closed once at the end of a run.

    Iterating yields reports as they are produced and stops after close().
    """

    def __init__(self) -> None:
        self._queue: "queue.SimpleQueue[object]" = queue.SimpleQueue()
        self._lock = threading.Lock()
        self._closed = threading.Event()
        self._drained = False

    @property
    def closed(self) -> bool:
        return self._closed.is_set()

    def put(self, report: LinkReport) -> None:
        if self._closed.is_set():
            raise RuntimeError("report stream is closed")
        self._queue.put(report)

    def close(self) -> bool:
        """Close the stream. Returns False if it was already closed."""
        with self._lock:
            if self._closed.is_set():
                return False
            self._closed.set()
        self._queue.put(_CLOSED)
        return True

    def wait_closed(self, timeout: Optional[float] = None) -> bool:
        return self._closed.wait(timeout)

    def __iter__(self) -> Iterator[LinkReport]:
        while not self._drained:
            item = self._queue.get()
            if item is _CLOSED:
                self._drained = True
                return
            yield item  # type: ignore[misc]
