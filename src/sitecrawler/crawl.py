"""
Concurrent crawl of every page reachable from a root URL on the same host.
"""
from __future__ import annotations

import logging
import queue
import threading
from dataclasses import dataclass, replace
from typing import Iterable, List, Optional, Tuple
from urllib.parse import urlparse

import requests

from sitecrawler.core import (
    DEFAULT_TIMEOUT,
    CrawlCancelled,
    FetchError,
    LinkReport,
    Status,
    abort_requests,
    build_session,
    extract_links,
    fetch_body,
    normalize_path,
    probe_status,
    read_body,
    select_same_host,
)
from sitecrawler.pool import POLL_INTERVAL, WorkerPool
from sitecrawler.sync import ReportStream, SeenSet, WorkCounter

logger = logging.getLogger(__name__)


@dataclass(frozen=True, slots=True)
class PageTask:
    """
    One node of the crawl: probe, fetch, extract, report, dispatch children.

    A new instance is built for every dispatch. Only the run handles are shared.
    """
    run: CrawlRun
    target: str
    depth: int = 0
    status: Optional[Status] = None

    def __call__(self) -> None:
        try:
            self._visit()
        finally:
            self.run.counter.done()

    def _visit(self) -> None:
        run = self.run
        path = normalize_path(self.target)

        if run.seen.has(path):
            return

        if run.max_depth > 0 and self.depth >= run.max_depth:
            return

        # Claim before any network call so concurrent duplicates bail out early
        if not run.seen.claim(path):
            return

        if run.cancel.is_set():
            return

        logger.debug("Scanning %s (depth %d)", self.target, self.depth)

        status = self.status or probe_status(run.session, self.target, run.timeout)
        if run.cancel.is_set():
            return
        report = LinkReport(path=self.target, status=status)

        if not status.is_live or not status.is_crawlable:
            run.emit(report)
            return

        try:
            with fetch_body(run.session, self.target, run.timeout) as response:
                body = read_body(response, run.cancel)
                # Relative links resolve against the page after redirects
                base_url = response.url
        except FetchError as e:
            if run.cancel.is_set():
                return
            logger.debug("Fetch failed for %s: %s", self.target, e)
            run.emit(replace(report, status=status.downgrade(e.kind, e.detail, e.status_code)))
            return
        except CrawlCancelled:
            return

        children = self._probe_children(extract_links(body, base_url))
        if children is None:
            return

        report = replace(report, children=children)
        run.emit(report)

        for child in children:
            if run.seen.has(normalize_path(child.path)):
                continue
            run.counter.add()
            run.dispatch(PageTask(run, child.path, self.depth + 1, child.status))

    def _probe_children(self, links: Iterable[str]) -> Optional[Tuple[LinkReport, ...]]:
        """
        Probe each link on the target's host. Returns None if the run was
        cancelled meanwhile.
        """
        run = self.run
        children: List[LinkReport] = []
        for link in select_same_host(links, self.target):
            if run.cancel.is_set():
                return None
            children.append(LinkReport(path=link, status=probe_status(run.session, link, run.timeout)))
        # The last probe may have been aborted by the cancellation
        if run.cancel.is_set():
            return None
        return tuple(children)


class _Dispatcher:
    """
    Feeds tasks into the worker pool from its own thread.

    Workers hand children over here instead of calling pool.add() themselves,
    so a saturated pool blocks this thread rather than its own workers.
    Without a pool, tasks run here one after another.
    """

    def __init__(
        self,
        pool: Optional[WorkerPool],
        cancel: threading.Event,
        counter: WorkCounter,
    ) -> None:
        self._pool = pool
        self._cancel = cancel
        self._counter = counter
        self._queue: "queue.SimpleQueue[Optional[PageTask]]" = queue.SimpleQueue()
        self._thread = threading.Thread(target=self._run, name="sitecrawler-dispatch", daemon=True)

    def start(self) -> None:
        self._thread.start()

    def submit(self, task: PageTask) -> None:
        self._queue.put(task)

    def shutdown(self) -> None:
        self._queue.put(None)

    def _run(self) -> None:
        while True:
            task = self._queue.get()
            if task is None:
                return

            if self._cancel.is_set():
                self._counter.done()
                continue

            if self._pool is None:
                try:
                    task()
                except Exception:
                    logger.exception("Crawl task failed for %s", task.target)
                continue

            if not self._pool.add(task):
                logger.debug("Pool rejected %s", task.target)
                self._counter.done()


class CrawlRun:
    """Handles shared by every task of one crawl: seen paths, work counter, cancellation and output."""

    def __init__(
        self,
        session: requests.Session,
        root_url: str,
        timeout: float = DEFAULT_TIMEOUT,
        max_depth: int = -1,
        pool: Optional[WorkerPool] = None,
        cancel: Optional[threading.Event] = None,
        close_session: bool = False,
    ) -> None:
        self.session = session
        self.root_url = root_url
        self.timeout = timeout
        self.max_depth = max_depth
        self.cancel = cancel or threading.Event()
        self.seen = SeenSet()
        self.reports = ReportStream()
        self.counter = WorkCounter(on_zero=self._finish)
        self._close_session = close_session
        self._dispatcher = _Dispatcher(pool, self.cancel, self.counter)
        self._watcher = threading.Thread(target=self._watch_cancel, name="sitecrawler-cancel", daemon=True)
        self._started = False

    def start(self) -> ReportStream:
        """Dispatch the root task and return the stream of reports."""
        if self._started:
            raise RuntimeError("crawl run already started")
        self._started = True

        logger.info("Starting crawl from %s", self.root_url)
        self.counter.add()
        self._dispatcher.start()
        self._watcher.start()
        self.dispatch(PageTask(self, self.root_url))
        return self.reports

    def dispatch(self, task: PageTask) -> None:
        self._dispatcher.submit(task)

    def emit(self, report: LinkReport) -> None:
        self.reports.put(report)

    def _watch_cancel(self) -> None:
        """Abort the session's in-flight requests once the run is cancelled."""
        while not self.reports.wait_closed(POLL_INTERVAL):
            if not self.cancel.is_set():
                continue
            # Keep aborting until the stream closes: a request may start after the first pass
            aborted = abort_requests(self.session)
            if aborted:
                logger.debug("Crawl of %s cancelled, %d requests aborted", self.root_url, aborted)

    def _finish(self) -> None:
        self._dispatcher.shutdown()
        if self._close_session:
            self.session.close()
        self.reports.close()
        logger.info("Crawl of %s finished: %d paths claimed", self.root_url, len(self.seen))


def validate_root(root_url: str) -> str:
    """Check the start URL is an absolute http(s) URL."""
    parsed = urlparse(root_url)
    if parsed.scheme not in ("http", "https") or not parsed.netloc:
        raise ValueError(f"Invalid start URL: {root_url}")
    return root_url


def crawl(
    root_url: str,
    *,
    session: Optional[requests.Session] = None,
    timeout: float = DEFAULT_TIMEOUT,
    max_depth: int = -1,
    pool: Optional[WorkerPool] = None,
    cancel: Optional[threading.Event] = None,
) -> ReportStream:
    """
    Start crawling all pages on root_url's host.

    Args:
        root_url: Absolute http(s) URL to start from.
        session: HTTP session to use. When omitted, one is built for the run
                 and closed when the run finishes.
        timeout: Per-request timeout in seconds.
        max_depth: Number of levels to visit; 0 or less means unbounded.
        pool: Worker pool running the tasks. Without one, pages are
              crawled one at a time on a single background thread.
        cancel: Event that stops the run when set. Requests in flight on a
                session from build_session() are aborted.

    Returns:
        Stream of LinkReports, one per visited page, in no particular order.
        It is closed once every dispatched task has finished.
    """
    root_url = validate_root(root_url)
    own_session = session is None
    if own_session:
        session = build_session(pool_size=pool.max_workers if pool else 1)

    run = CrawlRun(
        session,
        root_url,
        timeout=timeout,
        max_depth=max_depth,
        pool=pool,
        cancel=cancel,
        close_session=own_session,
    )
    return run.start()


def crawl_all(
    root_url: str,
    *,
    session: Optional[requests.Session] = None,
    timeout: float = DEFAULT_TIMEOUT,
    max_depth: int = -1,
    pool: Optional[WorkerPool] = None,
    cancel: Optional[threading.Event] = None,
) -> List[LinkReport]:
    """Crawl and collect every report into a list."""
    stream = crawl(root_url, session=session, timeout=timeout,
                   max_depth=max_depth, pool=pool, cancel=cancel)
    return list(stream)
