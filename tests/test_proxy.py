"""Tests for the caching proxy server."""

import socket
import time
import urllib.error
import urllib.request
from collections.abc import Iterator
from unittest.mock import MagicMock
from urllib.parse import urlsplit

import pytest

from sitecache.config import CacheConfig, OriginConfig, ProxyConfig
from sitecache.manager import LifecycleError, OfflineCacheManager
from sitecache.proxy import MAX_REQUEST_BODY, ProxyError, ProxyServer
from sitecache.registration import Registration
from sitecache.storage import MemoryCacheStorage

from .fakes import ORIGIN, FakeFetcher


def get_free_port() -> int:
    """Get a free port for testing."""
    with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as s:
        s.bind(("", 0))
        return s.getsockname()[1]


@pytest.fixture
def registration(site_fetcher: FakeFetcher, cache_config: CacheConfig) -> Iterator[Registration]:
    """A registration with generation v2 active."""
    reg = Registration(site_fetcher)
    manager = OfflineCacheManager(
        cache_config,
        MemoryCacheStorage(),
        site_fetcher,
        origin=OriginConfig(base_url=ORIGIN),
    )
    assert reg.update(manager)
    site_fetcher.calls.clear()
    yield reg
    reg.close()


def _proxy_config() -> ProxyConfig:
    return ProxyConfig(enabled=True, host="127.0.0.1", port=get_free_port())


class TestProxyServer:
    """Tests for ProxyServer lifecycle."""

    def test_starts_and_stops(self, registration: Registration) -> None:
        """Server starts and stops without errors."""
        server = ProxyServer(_proxy_config(), registration, OriginConfig(base_url=ORIGIN))

        server.start()
        assert server.is_running

        server.stop()
        assert not server.is_running

    def test_start_twice_is_safe(self, registration: Registration) -> None:
        """Calling start() twice doesn't cause errors."""
        server = ProxyServer(_proxy_config(), registration, OriginConfig(base_url=ORIGIN))
        try:
            server.start()
            server.start()  # Should not raise
            assert server.is_running
        finally:
            server.stop()

    def test_stop_without_start_is_safe(self, registration: Registration) -> None:
        """Calling stop() without start() doesn't cause errors."""
        ProxyServer(_proxy_config(), registration, OriginConfig(base_url=ORIGIN)).stop()

    def test_raises_on_port_conflict(self, registration: Registration) -> None:
        """Raises ProxyError when port is already in use."""
        config = _proxy_config()
        server1 = ProxyServer(config, registration, OriginConfig(base_url=ORIGIN))
        server2 = ProxyServer(config, registration, OriginConfig(base_url=ORIGIN))

        try:
            server1.start()
            with pytest.raises(ProxyError):
                server2.start()
        finally:
            server1.stop()
            server2.stop()


class TestProxyRequests:
    """Integration tests for proxied requests."""

    @pytest.fixture
    def proxy_url(self, registration: Registration) -> Iterator[str]:
        """Start a proxy and yield its base URL."""
        config = _proxy_config()
        server = ProxyServer(config, registration, OriginConfig(base_url=ORIGIN))
        server.start()
        # Give server time to start
        time.sleep(0.1)
        yield f"http://127.0.0.1:{config.port}"
        server.stop()

    def test_cache_hit_served_without_origin(self, proxy_url: str, site_fetcher: FakeFetcher) -> None:
        """A precached asset is served by the proxy with no origin fetch."""
        with urllib.request.urlopen(f"{proxy_url}/assets/icons/icon-192.png", timeout=5) as response:
            body = response.read()
            status = response.status

        assert status == 200
        assert body == b"\x89PNG\r\n\x1a\nicon"
        assert site_fetcher.calls == []

    def test_cache_hit_keeps_headers(self, proxy_url: str) -> None:
        """Stored response headers are sent to the client."""
        with urllib.request.urlopen(f"{proxy_url}/assets/css/main.css", timeout=5) as response:
            assert response.headers["Content-Type"] == "text/plain"
            assert response.headers["Content-Length"] == "6"

    def test_cache_miss_fetched_from_origin(self, proxy_url: str, site_fetcher: FakeFetcher) -> None:
        """A path outside the manifest is fetched from the origin once."""
        with urllib.request.urlopen(f"{proxy_url}/about", timeout=5) as response:
            assert response.read() == b"<html>about</html>"

        assert site_fetcher.urls == [f"{ORIGIN}/about"]

    def test_origin_error_status_passed_through(self, proxy_url: str) -> None:
        """A 404 from the origin reaches the client unchanged."""
        with pytest.raises(urllib.error.HTTPError) as exc_info:
            urllib.request.urlopen(f"{proxy_url}/api/nonexistent", timeout=5)

        assert exc_info.value.code == 404
        assert exc_info.value.read() == b"not found"

    def test_network_failure_closes_connection(self, proxy_url: str) -> None:
        """A network failure on a miss is seen as a network error, not a page."""
        with pytest.raises(OSError):
            urllib.request.urlopen(f"{proxy_url}/offline", timeout=5)

    def test_post_is_passed_through(self, proxy_url: str, site_fetcher: FakeFetcher) -> None:
        """Non-GET requests always go to the origin with their body."""
        request = urllib.request.Request(f"{proxy_url}/", data=b"hello", method="POST")
        with urllib.request.urlopen(request, timeout=5) as response:
            assert response.status == 200

        assert len(site_fetcher.calls) == 1
        assert site_fetcher.calls[0].method == "POST"
        assert site_fetcher.calls[0].body == b"hello"

    def test_query_string_kept(self, proxy_url: str, site_fetcher: FakeFetcher) -> None:
        """The query string is part of the forwarded URL."""
        with pytest.raises(urllib.error.HTTPError):
            urllib.request.urlopen(f"{proxy_url}/feed.xml?page=2", timeout=5)

        assert site_fetcher.urls == [f"{ORIGIN}/feed.xml?page=2"]

    def _send_raw(self, proxy_url: str, head: bytes) -> bytes:
        """Send a raw request head and read until the proxy closes the socket."""
        target = urlsplit(proxy_url)
        chunks = []
        with socket.create_connection((target.hostname, target.port), timeout=5) as sock:
            sock.sendall(head)
            while True:
                chunk = sock.recv(65536)
                if not chunk:
                    break
                chunks.append(chunk)
        return b"".join(chunks)

    def test_oversized_body_rejected(self, proxy_url: str, site_fetcher: FakeFetcher) -> None:
        """A body over the limit gets 413 and a closed connection, never a truncated forward."""
        head = (
            b"POST /upload HTTP/1.1\r\n"
            b"Host: localhost\r\n"
            b"Content-Length: " + str(MAX_REQUEST_BODY + 5).encode() + b"\r\n\r\n"
        )

        response = self._send_raw(proxy_url, head)

        assert response.startswith(b"HTTP/1.1 413")
        assert b"Connection: close" in response
        assert site_fetcher.calls == []

    def test_chunked_body_rejected(self, proxy_url: str, site_fetcher: FakeFetcher) -> None:
        """A chunked upload gets 411 and a closed connection."""
        head = b"POST /upload HTTP/1.1\r\nHost: localhost\r\nTransfer-Encoding: chunked\r\n\r\n"

        response = self._send_raw(proxy_url, head)

        assert response.startswith(b"HTTP/1.1 411")
        assert b"Connection: close" in response
        assert site_fetcher.calls == []

    def test_body_at_limit_forwarded_whole(self, proxy_url: str, site_fetcher: FakeFetcher) -> None:
        """A body of exactly the limit reaches the origin unchanged."""
        body = b"x" * MAX_REQUEST_BODY
        request = urllib.request.Request(f"{proxy_url}/upload", data=body, method="POST")

        with pytest.raises(urllib.error.HTTPError) as exc_info:
            urllib.request.urlopen(request, timeout=10)

        assert exc_info.value.code == 404
        assert len(site_fetcher.calls[0].body) == MAX_REQUEST_BODY


class TestProxyInternalErrors:
    """Tests for failures inside the registration."""

    def test_unexpected_error_logged_and_answered_500(self, caplog: pytest.LogCaptureFixture) -> None:
        """An unexpected error becomes a 500 and is logged with its traceback."""
        registration = MagicMock(spec=Registration)
        registration.fetch.side_effect = LifecycleError("Cache 'v2' is not active")
        config = _proxy_config()
        server = ProxyServer(config, registration, OriginConfig(base_url=ORIGIN))
        server.start()
        time.sleep(0.1)
        try:
            with caplog.at_level("ERROR", logger="sitecache.proxy"):
                with pytest.raises(urllib.error.HTTPError) as exc_info:
                    urllib.request.urlopen(f"http://127.0.0.1:{config.port}/", timeout=5)

            assert exc_info.value.code == 500
            assert b"Internal server error" in exc_info.value.read()
            assert any(record.exc_info for record in caplog.records)
        finally:
            server.stop()
