"""
Core crawling primitives: page status, link reports, probing, fetching and link extraction.
"""
from __future__ import annotations

import logging
import socket
import threading
import weakref
from dataclasses import dataclass, field, replace
from datetime import datetime, timezone
from enum import Enum
from typing import IO, Iterable, List, Optional, Set, Tuple, Union
from urllib.parse import urljoin, urlparse

import requests
from bs4 import BeautifulSoup
from bs4.element import Tag
from requests.adapters import HTTPAdapter
from urllib3.connectionpool import HTTPConnectionPool, HTTPSConnectionPool
from urllib3.poolmanager import PoolManager

logger = logging.getLogger(__name__)

DEFAULT_TIMEOUT: float = 5.0
DEFAULT_USER_AGENT: str = "SiteCrawler/1.0"

# Content types worth downloading and scanning for links
HTML_CONTENT_TYPES: Tuple[str, ...] = ("text/html", "text/xhtml")

# Attributes that may carry a link (frozen set for O(1) lookup)
LINK_ATTRIBUTES: frozenset[str] = frozenset(("href", "src", "srcset"))

# Placeholder links used by scripted anchors
VOID_LINK = "javascript:void(0)"

# Recorded as last status when no response came back at all
TRANSPORT_FAILURE_STATUS = 500

READ_CHUNK_SIZE = 16 * 1024

Body = Union[bytes, str, IO[bytes]]


class FailureKind(str, Enum):
    """Why a page is not (fully) usable."""
    TRANSPORT = "transport error"
    PAGE_FAILED = "page failed"
    NON_HTML = "non-html"


class FetchError(Exception):
    """Raised when a page body cannot be retrieved for scanning."""

    def __init__(
        self,
        kind: FailureKind,
        url: str,
        detail: Optional[str] = None,
        status_code: Optional[int] = None,
    ) -> None:
        self.kind = kind
        self.url = url
        self.detail = detail
        self.status_code = status_code
        message = f"{kind.value}: {url}"
        if detail:
            message += f" ({detail})"
        super().__init__(message)


class CrawlCancelled(Exception):
    """Raised when the run's cancellation event fires during a download."""


def utc_now() -> datetime:
    """Return current UTC time."""
    return datetime.now(timezone.utc)


@dataclass(frozen=True, slots=True)
class Status:
    """Reachability of a single URL at the time it was observed."""
    is_live: bool = False
    is_crawlable: bool = False
    last_status: int = 0
    at: datetime = field(default_factory=utc_now)
    reason: Optional[FailureKind] = None
    detail: Optional[str] = None

    def downgrade(
        self,
        reason: FailureKind,
        detail: Optional[str] = None,
        last_status: Optional[int] = None,
    ) -> Status:
        """Return a copy marked not-live. The crawlable flag is left as is."""
        return replace(
            self,
            is_live=False,
            reason=reason,
            detail=detail,
            last_status=self.last_status if last_status is None else last_status,
            at=utc_now(),
        )


@dataclass(frozen=True, slots=True)
class LinkReport:
    """Report for one page and the same-host links found directly on it."""
    path: str
    status: Status
    children: Tuple[LinkReport, ...] = ()


def normalize_path(url: str) -> str:
    """Return the URL's path with one trailing slash removed; empty becomes '/'."""
    path = urlparse(url).path
    return path.removesuffix("/") or "/"


def host_of(url: str) -> str:
    """Return host[:port] of a URL, without any user info."""
    return urlparse(url).netloc.rpartition("@")[2]


def is_html(content_type: Optional[str]) -> bool:
    content_type = (content_type or "").lower()
    return any(kind in content_type for kind in HTML_CONTENT_TYPES)


class _ConnectionTracker:
    """Connections currently checked out of a session's pools."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._conns: weakref.WeakSet = weakref.WeakSet()

    def add(self, conn) -> None:
        with self._lock:
            self._conns.add(conn)

    def discard(self, conn) -> None:
        with self._lock:
            self._conns.discard(conn)

    def abort_all(self) -> int:
        """Shut down the socket of every checked-out connection."""
        with self._lock:
            conns = list(self._conns)

        aborted = 0
        for conn in conns:
            sock = getattr(conn, "sock", None)
            if sock is None:
                continue
            try:
                sock.shutdown(socket.SHUT_RDWR)
            except OSError as e:
                # Already closed by its owner
                logger.debug("Could not abort connection to %s: %s", getattr(conn, "host", "?"), e)
                continue
            aborted += 1
        return aborted


class _TrackingPoolMixin:
    tracker: Optional[_ConnectionTracker] = None

    def _get_conn(self, timeout=None):
        conn = super()._get_conn(timeout)
        if self.tracker is not None:
            self.tracker.add(conn)
        return conn

    def _put_conn(self, conn) -> None:
        if conn is not None and self.tracker is not None:
            self.tracker.discard(conn)
        super()._put_conn(conn)


class _TrackingHTTPConnectionPool(_TrackingPoolMixin, HTTPConnectionPool):
    pass


class _TrackingHTTPSConnectionPool(_TrackingPoolMixin, HTTPSConnectionPool):
    pass


class _TrackingPoolManager(PoolManager):
    def __init__(self, *args, tracker: _ConnectionTracker, **kwargs) -> None:
        super().__init__(*args, **kwargs)
        self.tracker = tracker
        self.pool_classes_by_scheme = {
            "http": _TrackingHTTPConnectionPool,
            "https": _TrackingHTTPSConnectionPool,
        }

    def _new_pool(self, scheme, host, port, request_context=None):
        pool = super()._new_pool(scheme, host, port, request_context)
        pool.tracker = self.tracker
        return pool


class AbortableAdapter(HTTPAdapter):
    """
    HTTPAdapter whose in-flight requests can be aborted from another thread.

    abort() shuts down the sockets of every connection currently in use, so a
    request blocked waiting for the server fails at once with a
    requests.ConnectionError instead of running into its timeout.
    """

    def __init__(self, *args, **kwargs) -> None:
        # HTTPAdapter.__init__ builds the pool manager, which needs the tracker
        self._tracker = _ConnectionTracker()
        super().__init__(*args, **kwargs)

    def init_poolmanager(self, connections, maxsize, block=False, **pool_kwargs) -> None:
        self._pool_connections = connections
        self._pool_maxsize = maxsize
        self._pool_block = block
        self.poolmanager = _TrackingPoolManager(
            num_pools=connections,
            maxsize=maxsize,
            block=block,
            tracker=self._tracker,
            **pool_kwargs,
        )

    def abort(self) -> int:
        return self._tracker.abort_all()


def build_session(
    user_agent: str = DEFAULT_USER_AGENT,
    pool_size: int = 10,
) -> requests.Session:
    """
    Create an HTTP session shared by every task of a run.

    The connection pool is sized to the number of workers so concurrent
    probes do not discard connections. Its requests can be cut short with
    abort_requests().
    """
    session = requests.Session()
    session.headers["User-Agent"] = user_agent
    adapter = AbortableAdapter(pool_connections=pool_size, pool_maxsize=pool_size)
    session.mount("http://", adapter)
    session.mount("https://", adapter)
    return session


def abort_requests(session: requests.Session) -> int:
    """
    Abort every request the session currently has in flight.

    Only adapters installed by build_session() can be aborted; other
    adapters are left alone. Returns the number of connections shut down.
    """
    adapters = {id(a): a for a in session.adapters.values() if isinstance(a, AbortableAdapter)}
    return sum(adapter.abort() for adapter in adapters.values())


def classify_response(response: requests.Response, at: Optional[datetime] = None) -> Status:
    """Turn an HTTP response into a Status."""
    at = at or utc_now()
    code = response.status_code

    if code < 200 or code > 299:
        return Status(last_status=code, at=at, reason=FailureKind.PAGE_FAILED)

    if not is_html(response.headers.get("Content-Type")):
        return Status(is_live=True, last_status=code, at=at, reason=FailureKind.NON_HTML)

    return Status(is_live=True, is_crawlable=True, last_status=code, at=at)


def probe_status(
    session: requests.Session,
    url: str,
    timeout: float = DEFAULT_TIMEOUT,
) -> Status:
    """Check whether a URL exists and is worth fetching, using a HEAD request."""
    at = utc_now()
    try:
        with session.head(url, timeout=timeout, allow_redirects=True) as response:
            status = classify_response(response, at)
    except requests.RequestException as e:
        logger.debug("Probe failed for %s: %s", url, e)
        return Status(
            last_status=TRANSPORT_FAILURE_STATUS,
            at=at,
            reason=FailureKind.TRANSPORT,
            detail=str(e),
        )

    logger.debug("Probed %s -> %d", url, status.last_status)
    return status


def fetch_body(
    session: requests.Session,
    url: str,
    timeout: float = DEFAULT_TIMEOUT,
) -> requests.Response:
    """
    Start downloading a page that is expected to be HTML.

    The status may have changed since the page was probed, so the response is
    classified again. Returns the open, streaming response; the caller must
    close it (it can be used as a context manager).

    Raises:
        FetchError: if the request fails or the page is not live HTML.
    """
    try:
        response = session.get(url, timeout=timeout, stream=True)
    except requests.RequestException as e:
        raise FetchError(FailureKind.TRANSPORT, url, str(e)) from e

    status = classify_response(response)
    if not status.is_live or not status.is_crawlable:
        response.close()
        raise FetchError(
            status.reason or FailureKind.PAGE_FAILED,
            url,
            f"HTTP {status.last_status}",
            status_code=status.last_status,
        )

    return response


def read_body(response: requests.Response, cancel: Optional[threading.Event] = None) -> bytes:
    """Read a streaming response chunk by chunk, stopping early on cancellation."""
    chunks: List[bytes] = []
    try:
        for chunk in response.iter_content(READ_CHUNK_SIZE):
            if cancel is not None and cancel.is_set():
                raise CrawlCancelled(response.url)
            chunks.append(chunk)
    except requests.RequestException as e:
        raise FetchError(FailureKind.TRANSPORT, response.url, str(e)) from e
    return b"".join(chunks)


def _has_link_attribute(tag: Tag) -> bool:
    return any(name.lower() in LINK_ATTRIBUTES for name in tag.attrs)


def _resolve(value: str, base_url: str) -> Optional[str]:
    """Resolve a raw attribute value against the base URL; None when malformed."""
    value = value.strip()
    if not value or VOID_LINK in value:
        return None
    try:
        resolved = urljoin(base_url, value)
        # Accessing the port validates it
        urlparse(resolved).port
    except ValueError:
        return None
    return resolved


def extract_links(body: Body, base_url: str) -> Set[str]:
    """
    Collect every link-like attribute value in an HTML document.

    Inspects href, src and srcset on every tag. srcset is split on commas and
    each candidate's width/density descriptor is dropped. Values are resolved
    against base_url; malformed ones are skipped. No host filtering is done.
    """
    soup = BeautifulSoup(body, "lxml")
    links: Set[str] = set()

    for tag in soup.find_all(_has_link_attribute):
        for name, value in tag.attrs.items():
            key = name.lower()
            if key not in LINK_ATTRIBUTES:
                continue
            if not isinstance(value, str):
                value = " ".join(value)

            if key == "srcset":
                candidates = [item.split()[0] for item in value.split(",") if item.strip()]
            else:
                candidates = [value]

            for candidate in candidates:
                resolved = _resolve(candidate, base_url)
                if resolved is not None:
                    links.add(resolved)

    return links


def select_same_host(links: Iterable[str], base_url: str) -> List[str]:
    """Keep links whose host matches base_url's host exactly, in sorted order."""
    host = host_of(base_url)
    return sorted(link for link in links if host_of(link) == host)
