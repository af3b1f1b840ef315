"""
Bounded pool of worker threads executing no-argument tasks.
"""
from __future__ import annotations

import logging
import threading
from collections import deque
from typing import Callable, Deque, List, Optional

logger = logging.getLogger(__name__)

Task = Callable[[], None]

# How often blocked callers and idle workers re-check the cancellation event
POLL_INTERVAL: float = 0.05


class WorkerPool:
    """
    Runs tasks on at most max_workers threads.

    Workers are spawned lazily. add() hands a task directly to an idle worker,
    spawns a new one while under the limit, or otherwise blocks until a worker
    frees up. Tasks are never queued beyond the workers ready to take them.
    """

    def __init__(self, max_workers: int, cancel: Optional[threading.Event] = None) -> None:
        if max_workers < 1:
            raise ValueError(f"max_workers must be at least 1, got {max_workers}")

        self.max_workers = max_workers
        self._cancel = cancel
        self._cond = threading.Condition()
        self._handoff: Deque[Task] = deque()
        self._threads: List[threading.Thread] = []
        self._total = 0
        self._idle = 0
        self._stopping = False
        self._stopped = threading.Event()

    def __enter__(self) -> WorkerPool:
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.stop()

    @property
    def total_workers(self) -> int:
        with self._cond:
            return self._total

    @property
    def spawned_workers(self) -> int:
        with self._cond:
            return len(self._threads)

    def _cancelled(self) -> bool:
        return self._cancel is not None and self._cancel.is_set()

    def add(self, task: Task) -> bool:
        """
        Submit a task, blocking while every worker is busy.

        Returns:
            False if the task was dropped because the pool is stopping or its
            cancellation event fired. Callers must correct their own accounting.
        """
        with self._cond:
            while True:
                if self._stopping or self._cancelled():
                    return False

                # An idle worker not yet promised a task takes it directly
                if self._idle > len(self._handoff):
                    self._handoff.append(task)
                    self._cond.notify_all()
                    return True

                # Check and spawn under the same lock so max_workers holds
                if self._total < self.max_workers:
                    self._spawn(task)
                    return True

                self._cond.wait(POLL_INTERVAL)

    def stop(self) -> None:
        """
        Stop accepting tasks and block until every worker has exited.

        Raises:
            RuntimeError: if called from one of the pool's own workers, which
                would wait for itself forever.
        """
        with self._cond:
            if threading.current_thread() in self._threads:
                raise RuntimeError("WorkerPool.stop() called from one of its own workers")
            self._stopping = True
            self._cond.notify_all()
            while self._total:
                self._cond.wait(POLL_INTERVAL)
            threads = list(self._threads)

        for thread in threads:
            thread.join()

        self._stopped.set()

    def wait_on_stop(self, timeout: Optional[float] = None) -> bool:
        """Block until stop() has completed."""
        return self._stopped.wait(timeout)

    def _spawn(self, task: Task) -> None:
        # Caller holds self._cond
        self._total += 1
        thread = threading.Thread(
            target=self._work,
            args=(task,),
            name=f"sitecrawler-worker-{len(self._threads) + 1}",
            daemon=True,
        )
        self._threads.append(thread)
        thread.start()

    def _work(self, task: Optional[Task]) -> None:
        while task is not None:
            try:
                task()
            except Exception:
                logger.exception("Worker task failed")
            task = self._next_task()

    def _next_task(self) -> Optional[Task]:
        with self._cond:
            self._idle += 1
            self._cond.notify_all()
            try:
                while not self._handoff:
                    if self._stopping or self._cancelled():
                        self._total -= 1
                        self._cond.notify_all()
                        return None
                    self._cond.wait(POLL_INTERVAL)
                return self._handoff.popleft()
            finally:
                self._idle -= 1
