"""Network fetches for precaching and cache misses."""

import logging
import socket
import urllib.error
import urllib.request

from .config import DEFAULT_USER_AGENT
from .models import CacheRequest, CachedResponse

logger = logging.getLogger(__name__)

# Headers that describe a single connection and must not be forwarded.
HOP_BY_HOP_HEADERS = frozenset(
    {
        "connection",
        "keep-alive",
        "proxy-authenticate",
        "proxy-authorization",
        "te",
        "trailer",
        "transfer-encoding",
        "upgrade",
        "host",
        "content-length",
    }
)


class FetchError(Exception):
    """Raised when the network produces no response at all."""

    pass


class Fetcher:
    """Performs one network round trip per request.

    HTTP error statuses are not errors here: a 404 comes back as a response
    so callers can pass it through verbatim. Only connection failures,
    DNS failures and timeouts raise FetchError.
    """

    def __init__(
        self,
        timeout: int = 10,
        user_agent: str = DEFAULT_USER_AGENT,
        opener: urllib.request.OpenerDirector | None = None,
    ) -> None:
        self.timeout = timeout
        self.user_agent = user_agent
        self._opener = opener or urllib.request.build_opener()

    def _build_request(self, request: CacheRequest) -> urllib.request.Request:
        headers = {name: value for name, value in request.headers if name.lower() not in HOP_BY_HOP_HEADERS}
        if not any(name.lower() == "user-agent" for name in headers):
            headers["User-Agent"] = self.user_agent
        return urllib.request.Request(
            request.url,
            data=request.body,
            headers=headers,
            method=request.method,
        )

    def fetch(self, request: CacheRequest) -> CachedResponse:
        """Fetch request from the network.

        Args:
            request: The request to forward.

        Returns:
            The complete network response.

        Raises:
            FetchError: If no response could be obtained.
        """
        req = self._build_request(request)
        logger.debug("Fetching %s %s", request.method, request.url)

        try:
            with self._opener.open(req, timeout=self.timeout) as response:
                body = response.read()
                return CachedResponse(
                    url=request.url,
                    status=response.status,
                    reason=response.reason or "",
                    headers=tuple(response.headers.items()),
                    body=body,
                )
        except urllib.error.HTTPError as e:
            # HTTPError is itself a response; hand it back unchanged.
            try:
                body = e.read()
            finally:
                e.close()
            return CachedResponse(
                url=request.url,
                status=e.code,
                reason=str(e.reason or ""),
                headers=tuple(e.headers.items()) if e.headers is not None else (),
                body=body or b"",
            )
        except urllib.error.URLError as e:
            if isinstance(e.reason, socket.gaierror):
                raise FetchError(f"DNS resolution failed for {request.url}: {e.reason}")
            if isinstance(e.reason, (TimeoutError, socket.timeout)):
                raise FetchError(f"Timed out fetching {request.url}")
            raise FetchError(f"Failed to fetch {request.url}: {e.reason}")
        except TimeoutError:
            raise FetchError(f"Timed out fetching {request.url}")
        except OSError as e:
            raise FetchError(f"Failed to fetch {request.url}: {e}")
