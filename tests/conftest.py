from __future__ import annotations

import logging
import threading
import time
from dataclasses import dataclass
from http.server import BaseHTTPRequestHandler, ThreadingHTTPServer
from typing import Callable, Dict, Iterator, Optional

import pytest


@dataclass
class Route:
    """A page served by the test site."""
    body: bytes = b""
    content_type: str = "text/html"
    status: int = 200
    head_status: Optional[int] = None
    location: Optional[str] = None
    head_delay: float = 0.0


INDEX_PAGE = b"""
<!DOCTYPE html>
<html>
<head>
<meta charset="UTF-8">
    <title>Mumbo Jungle</title>
</head>
<body>
    <a href="/services"></a>
    <a href="/contacts"></a>
</body>
</html>
"""

CONTACT_PAGE = b"""
<!DOCTYPE html>
<html>
<head>
<meta charset="UTF-8">
    <title>Mumbo Jungle: Contact Page</title>
</head>
<body>
    <a href="/"></a>
    <a href="/services"></a>
    <a href="/jsoncard"></a>
    <a href="https://twitter.com/wombat"></a>
</body>
</html>
"""

SERVICE_PAGE = b"""
<!DOCTYPE html>
<html>
<head>
<meta charset="UTF-8">
    <title>Mumbo Jungle: Service Page</title>
</head>
<body>
    <a href="/services"></a>
</body>
</html>
"""

JSON_CARD = b"{}"

JUNGLE_SITE: Dict[str, Route] = {
    "/": Route(INDEX_PAGE),
    "/contacts": Route(CONTACT_PAGE),
    "/services": Route(SERVICE_PAGE),
    "/jsoncard": Route(JSON_CARD, content_type="application/json"),
}


def _handler_for(routes: Dict[str, Route]):
    class SiteHandler(BaseHTTPRequestHandler):
        def _route(self) -> Optional[Route]:
            return routes.get(self.path.split("?", 1)[0])

        def _respond(self, status: int, content_type: str, body: bytes, location: Optional[str] = None) -> None:
            self.send_response(status)
            self.send_header("Content-Type", content_type)
            if location:
                self.send_header("Location", location)
            self.send_header("Content-Length", str(len(body)))
            self.end_headers()
            if self.command != "HEAD":
                self.wfile.write(body)

        def do_HEAD(self) -> None:
            route = self._route()
            if route is None:
                self._respond(400, "text/plain", b"")
                return
            time.sleep(route.head_delay)
            status = route.head_status if route.head_status is not None else route.status
            self._respond(status, route.content_type, route.body, route.location)

        def do_GET(self) -> None:
            route = self._route()
            if route is None:
                self._respond(400, "text/plain", b"bad request")
                return
            self._respond(route.status, route.content_type, route.body, route.location)

        def log_message(self, format, *args) -> None:
            pass

    return SiteHandler


@pytest.fixture(autouse=True)
def reset_package_logger() -> Iterator[None]:
    """Undo handlers the CLI attaches so they do not outlive captured streams."""
    yield
    lg = logging.getLogger("sitecrawler")
    lg.handlers.clear()
    lg.setLevel(logging.NOTSET)
    lg.propagate = True


@pytest.fixture()
def serve_site() -> Iterator[Callable[[Dict[str, Route]], str]]:
    """Start a local HTTP server for the given routes and return its base URL."""
    servers = []

    def _serve(routes: Dict[str, Route]) -> str:
        server = ThreadingHTTPServer(("127.0.0.1", 0), _handler_for(routes))
        server.daemon_threads = True
        thread = threading.Thread(target=server.serve_forever, daemon=True)
        thread.start()
        servers.append(server)
        host, port = server.server_address[:2]
        return f"http://{host}:{port}"

    yield _serve

    for server in servers:
        server.shutdown()
        server.server_close()


@pytest.fixture()
def jungle_site(serve_site) -> str:
    return serve_site(JUNGLE_SITE)
