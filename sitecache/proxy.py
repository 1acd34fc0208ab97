"""Local caching proxy in front of the deployed site.

Every request received is treated as a request made from the controlled
scope: it is resolved against the origin and routed through the
registration, which answers cache-first.
"""

import json
import logging
import threading
from http.server import BaseHTTPRequestHandler, ThreadingHTTPServer
from typing import Any, Optional
from urllib.parse import urlsplit

from .config import OriginConfig, ProxyConfig
from .fetcher import HOP_BY_HOP_HEADERS, FetchError
from .models import CacheRequest, CachedResponse
from .registration import Registration

logger = logging.getLogger(__name__)

# Larger request bodies are rejected with 413 rather than forwarded.
MAX_REQUEST_BODY = 10 * 1024 * 1024  # 10MB

# Written by send_response() itself.
_GENERATED_HEADERS = frozenset({"server", "date"})


class ProxyError(Exception):
    """Raised when the proxy server cannot start."""

    pass


class ProxyHandler(BaseHTTPRequestHandler):
    """Forwards each request through the registration."""

    # Class-level references set by factory
    registration: Optional[Registration] = None
    origin: Optional[OriginConfig] = None

    protocol_version = "HTTP/1.1"

    def log_message(self, format: str, *args: Any) -> None:
        """Override to use Python logging instead of stderr."""
        logger.debug("Proxy %s - %s", self.address_string(), format % args)

    def _send_error_json(self, code: int, message: str) -> None:
        """Send a JSON error response and drop the connection."""
        body = json.dumps({"error": message}).encode("utf-8")
        self.close_connection = True
        self.send_response(code)
        self.send_header("Content-Type", "application/json")
        self.send_header("Content-Length", str(len(body)))
        self.send_header("Connection", "close")
        self.end_headers()
        if self.command != "HEAD":
            self.wfile.write(body)

    def _check_body(self) -> bool:
        """Reject request bodies that cannot be forwarded whole. Closes the connection on rejection."""
        if "chunked" in self.headers.get("Transfer-Encoding", "").lower():
            self._send_error_json(411, "Chunked request bodies are not supported; send Content-Length")
            return False
        length = self.headers.get("Content-Length")
        if length is None:
            return True
        try:
            size = int(length)
        except ValueError:
            self._send_error_json(400, "Invalid Content-Length")
            return False
        if size < 0:
            self._send_error_json(400, "Invalid Content-Length")
            return False
        if size > MAX_REQUEST_BODY:
            logger.warning("Rejected %d byte request body for %s", size, self.path)
            self._send_error_json(413, f"Request body exceeds {MAX_REQUEST_BODY} bytes")
            return False
        return True

    def _read_body(self) -> bytes | None:
        size = int(self.headers.get("Content-Length") or 0)
        if size == 0:
            return None
        return self.rfile.read(size)

    def _build_request(self) -> CacheRequest:
        # Absolute-form targets are narrowed to their path: one origin only.
        target = urlsplit(self.path)
        path = target.path or "/"
        if target.query:
            path = f"{path}?{target.query}"
        return CacheRequest(
            url=self.origin.resolve(path),
            method=self.command,
            headers=tuple(self.headers.items()),
            body=self._read_body(),
        )

    def _send_response(self, response: CachedResponse) -> None:
        self.send_response(response.status, response.reason or None)
        for name, value in response.headers:
            if name.lower() in HOP_BY_HOP_HEADERS or name.lower() in _GENERATED_HEADERS:
                continue
            self.send_header(name, value)
        self.send_header("Content-Length", str(len(response.body)))
        self.end_headers()
        if self.command != "HEAD":
            self.wfile.write(response.body)

    def _proxy(self) -> None:
        if self.registration is None or self.origin is None:
            self.close_connection = True
            return
        if not self._check_body():
            return

        request = self._build_request()
        try:
            response = self.registration.fetch(request)
        except FetchError as e:
            # Surface as a network error: no response at all.
            logger.info("Network error for %s %s: %s", request.method, request.url, e)
            self.close_connection = True
            return
        except Exception as e:
            logger.exception("Error proxying %s %s: %s", request.method, request.url, e)
            self._send_error_json(500, "Internal server error")
            return

        self._send_response(response)

    do_GET = _proxy
    do_HEAD = _proxy
    do_POST = _proxy
    do_PUT = _proxy
    do_PATCH = _proxy
    do_DELETE = _proxy
    do_OPTIONS = _proxy


def _create_handler_class(registration: Registration, origin: OriginConfig) -> type:
    """Create a handler class with the registration and origin bound."""

    class BoundProxyHandler(ProxyHandler):
        pass

    BoundProxyHandler.registration = registration
    BoundProxyHandler.origin = origin
    return BoundProxyHandler


class ProxyServer:
    """Threaded HTTP server answering requests cache-first."""

    def __init__(
        self,
        config: ProxyConfig,
        registration: Registration,
        origin: OriginConfig,
    ) -> None:
        """Initialize the proxy server.

        Args:
            config: Proxy bind address and port.
            registration: Registration routing requests to the active cache.
            origin: Deployed site the proxied paths are resolved against.
        """
        self.config = config
        self.registration = registration
        self.origin = origin
        self._server: Optional[ThreadingHTTPServer] = None
        self._thread: Optional[threading.Thread] = None
        self._shutdown_event = threading.Event()

    def start(self) -> None:
        """Start the proxy server in a background thread.

        Raises:
            ProxyError: If the server fails to start.
        """
        if self._thread is not None and self._thread.is_alive():
            logger.warning("Proxy server is already running")
            return

        try:
            handler_class = _create_handler_class(self.registration, self.origin)
            self._server = ThreadingHTTPServer((self.config.host, self.config.port), handler_class)
            self._server.daemon_threads = True
            self._server.timeout = 1.0  # Allow periodic shutdown checks

            self._shutdown_event.clear()
            self._thread = threading.Thread(
                target=self._serve_forever,
                name="proxy-server",
                daemon=True,
            )
            self._thread.start()

            logger.info("Proxy server started on %s:%d for %s", self.config.host, self.config.port, self.origin.base_url)

        except OSError as e:
            if e.errno == 98 or e.errno == 48:  # EADDRINUSE (Linux=98, macOS=48)
                raise ProxyError(
                    f"Port {self.config.port} is already in use. "
                    f"Another process may be using this port, or sitecache is already running."
                )
            elif e.errno == 13:  # EACCES - Permission denied
                raise ProxyError(
                    f"Permission denied for port {self.config.port}. "
                    f"Ports below 1024 require root privileges."
                )
            else:
                raise ProxyError(f"Failed to start proxy server on port {self.config.port}: {e}")

    def _serve_forever(self) -> None:
        """Server loop that checks for shutdown."""
        while not self._shutdown_event.is_set():
            if self._server:
                self._server.handle_request()

    def stop(self) -> None:
        """Stop the proxy server gracefully."""
        if self._thread is None:
            return

        logger.info("Stopping proxy server...")
        self._shutdown_event.set()

        if self._server:
            self._server.server_close()

        if self._thread.is_alive():
            self._thread.join(timeout=5.0)

        self._server = None
        self._thread = None
        logger.info("Proxy server stopped")

    @property
    def is_running(self) -> bool:
        """Check if the server is running."""
        return self._thread is not None and self._thread.is_alive()
