import socket
import threading
import time

import pytest
import requests
from conftest import Route

from sitecrawler.core import (
    CrawlCancelled,
    FailureKind,
    FetchError,
    Status,
    abort_requests,
    build_session,
    fetch_body,
    normalize_path,
    probe_status,
    read_body,
)


@pytest.fixture()
def session():
    with build_session() as s:
        yield s


def _closed_port_url() -> str:
    sock = socket.socket()
    sock.bind(("127.0.0.1", 0))
    port = sock.getsockname()[1]
    sock.close()
    return f"http://127.0.0.1:{port}/"


@pytest.mark.parametrize(
    "url, expected",
    [
        ("http://mombo.com", "/"),
        ("http://mombo.com/", "/"),
        ("http://mombo.com/services/", "/services"),
        ("http://mombo.com/services", "/services"),
        ("http://mombo.com/a/b/?q=1#top", "/a/b"),
    ],
)
def test_normalize_path(url, expected):
    assert normalize_path(url) == expected


def test_probe_html_page_is_crawlable(session, jungle_site):
    status = probe_status(session, jungle_site + "/contacts")
    assert status.is_live
    assert status.is_crawlable
    assert status.last_status == 200
    assert status.reason is None


def test_probe_json_page_is_live_but_not_crawlable(session, jungle_site):
    status = probe_status(session, jungle_site + "/jsoncard")
    assert status.is_live
    assert not status.is_crawlable
    assert status.reason is FailureKind.NON_HTML


def test_probe_error_status_is_not_live(session, jungle_site):
    status = probe_status(session, jungle_site + "/missing")
    assert not status.is_live
    assert status.last_status == 400
    assert status.reason is FailureKind.PAGE_FAILED


def test_probe_transport_failure(session):
    status = probe_status(session, _closed_port_url(), timeout=1.0)
    assert not status.is_live
    assert not status.is_crawlable
    assert status.last_status == 500
    assert status.reason is FailureKind.TRANSPORT
    assert status.detail


def test_probe_accepts_xhtml(serve_site, session):
    base = serve_site({"/": Route(b"<html></html>", content_type="text/xhtml; charset=utf-8")})
    assert probe_status(session, base + "/").is_crawlable


def test_fetch_body_returns_open_response(session, jungle_site):
    with fetch_body(session, jungle_site + "/services") as response:
        body = read_body(response)
    assert b'href="/services"' in body


def test_fetch_body_rejects_non_html(session, jungle_site):
    with pytest.raises(FetchError) as info:
        fetch_body(session, jungle_site + "/jsoncard")
    assert info.value.kind is FailureKind.NON_HTML
    assert info.value.status_code == 200


def test_fetch_body_rejects_failed_page(serve_site, session):
    base = serve_site({"/flaky": Route(b"boom", status=500, head_status=200)})
    with pytest.raises(FetchError) as info:
        fetch_body(session, base + "/flaky")
    assert info.value.kind is FailureKind.PAGE_FAILED
    assert info.value.status_code == 500


def test_fetch_body_transport_failure(session):
    with pytest.raises(FetchError) as info:
        fetch_body(session, _closed_port_url(), timeout=1.0)
    assert info.value.kind is FailureKind.TRANSPORT


def test_read_body_stops_when_cancelled(serve_site, session):
    base = serve_site({"/big": Route(b"<p>x</p>" * 10000)})
    cancel = threading.Event()
    cancel.set()
    with fetch_body(session, base + "/big") as response:
        with pytest.raises(CrawlCancelled):
            read_body(response, cancel)


def test_status_downgrade_keeps_crawlable_flag():
    status = Status(is_live=True, is_crawlable=True, last_status=200)
    downgraded = status.downgrade(FailureKind.PAGE_FAILED, "HTTP 500", 500)
    assert not downgraded.is_live
    assert downgraded.is_crawlable
    assert downgraded.last_status == 500
    assert status.is_live


def test_probe_uses_head_request(monkeypatch, session):
    calls = []

    def fake_head(url, **kwargs):
        calls.append((url, kwargs))
        raise requests.ConnectionError("refused")

    monkeypatch.setattr(session, "head", fake_head)
    status = probe_status(session, "http://mombo.com/", timeout=2.0)
    assert calls == [("http://mombo.com/", {"timeout": 2.0, "allow_redirects": True})]
    assert status.reason is FailureKind.TRANSPORT
    assert "refused" in status.detail


def test_abort_requests_interrupts_pending_probe(serve_site, session):
    base = serve_site({"/slow": Route(b"<p>slow</p>", head_delay=4.0)})
    timer = threading.Timer(0.2, abort_requests, args=(session,))

    started = time.monotonic()
    timer.start()
    status = probe_status(session, base + "/slow", timeout=10)
    elapsed = time.monotonic() - started
    timer.join()

    assert elapsed < 2.0
    assert status.reason is FailureKind.TRANSPORT


def test_abort_requests_ignores_foreign_adapters():
    with requests.Session() as plain:
        assert abort_requests(plain) == 0
