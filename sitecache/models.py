"""Data models for cached requests, responses and worker lifecycle."""

from dataclasses import dataclass
from enum import Enum
from urllib.parse import urldefrag

Headers = tuple[tuple[str, str], ...]


class WorkerState(Enum):
    """Lifecycle states of an offline cache manager."""

    UNINSTALLED = "uninstalled"
    INSTALLING = "installing"
    INSTALLED = "installed"
    ACTIVATING = "activating"
    ACTIVE = "active"
    REDUNDANT = "redundant"


@dataclass(frozen=True)
class CacheRequest:
    """An intercepted request.

    Attributes:
        url: Absolute URL of the request.
        method: HTTP method (upper-cased on construction).
        headers: Request headers as (name, value) pairs. Never used for matching.
        body: Request body for methods that carry one, or None.
    """

    url: str
    method: str = "GET"
    headers: Headers = ()
    body: bytes | None = None

    def __post_init__(self) -> None:
        object.__setattr__(self, "method", self.method.upper())

    @property
    def cache_key(self) -> tuple[str, str]:
        """Key used to store and look up this request (method + URL, fragment dropped)."""
        return self.method, urldefrag(self.url).url

    @property
    def is_cacheable(self) -> bool:
        """Only GET requests can be stored in or answered from a bucket."""
        return self.method == "GET"


@dataclass(frozen=True)
class CachedResponse:
    """A full HTTP response, as served by the network or stored in a bucket.

    Attributes:
        url: URL the response was fetched from.
        status: HTTP status code.
        reason: HTTP reason phrase (e.g. "OK", "Not Found").
        headers: Response headers as (name, value) pairs.
        body: Raw response body.
    """

    url: str
    status: int
    reason: str
    headers: Headers
    body: bytes

    @property
    def ok(self) -> bool:
        """True for 2xx responses."""
        return 200 <= self.status < 300

    def header(self, name: str) -> str | None:
        """Return the first header value matching name (case-insensitive)."""
        lowered = name.lower()
        for key, value in self.headers:
            if key.lower() == lowered:
                return value
        return None
