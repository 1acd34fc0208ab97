"""Cache storage capability interface and in-memory implementation.

The offline cache manager only talks to storage through CacheStorage and
CacheBucket, so the lifecycle logic can run against the sqlite-backed storage
in production and against MemoryCacheStorage in tests.
"""

import threading
from abc import ABC, abstractmethod
from collections.abc import Iterable

from .models import CacheRequest, CachedResponse


class StorageError(Exception):
    """Raised when a cache storage operation fails."""

    pass


class CacheBucket(ABC):
    """A named store mapping requests to previously fetched responses."""

    def __init__(self, name: str) -> None:
        self.name = name

    @abstractmethod
    def match(self, request: CacheRequest) -> CachedResponse | None:
        """Return the stored response for request, or None on a miss."""

    @abstractmethod
    def put_all(self, entries: Iterable[tuple[CacheRequest, CachedResponse]]) -> None:
        """Store every (request, response) pair in a single batch."""

    @abstractmethod
    def keys(self) -> list[CacheRequest]:
        """Return the stored requests in insertion order."""

    def put(self, request: CacheRequest, response: CachedResponse) -> None:
        """Store a single response."""
        self.put_all([(request, response)])

    def __len__(self) -> int:
        return len(self.keys())

    def __repr__(self) -> str:
        return f"{type(self).__name__}({self.name!r})"


class CacheStorage(ABC):
    """Collection of named cache buckets."""

    @abstractmethod
    def keys(self) -> list[str]:
        """Return bucket names in creation order."""

    @abstractmethod
    def open(self, name: str) -> CacheBucket:
        """Return the bucket called name, creating it if absent."""

    @abstractmethod
    def has(self, name: str) -> bool:
        """Return True if a bucket called name exists."""

    @abstractmethod
    def delete(self, name: str) -> bool:
        """Delete a bucket and all its entries. Returns False if it did not exist."""

    @abstractmethod
    def match_in(self, name: str, request: CacheRequest) -> CachedResponse | None:
        """Look the request up in one bucket without creating it.

        A missing bucket, including one deleted since it was listed, is a miss.
        """

    def match(self, request: CacheRequest) -> CachedResponse | None:
        """Look the request up in every bucket, oldest first."""
        for name in self.keys():
            response = self.match_in(name, request)
            if response is not None:
                return response
        return None


def _check_storable(request: CacheRequest, response: CachedResponse) -> None:
    if not request.is_cacheable:
        raise StorageError(f"Cannot store a {request.method} request: {request.url}")
    if response.status == 206:
        raise StorageError(f"Cannot store a partial response: {request.url}")


class MemoryBucket(CacheBucket):
    """Bucket held in a dict. Shares its owner's lock."""

    def __init__(self, name: str, lock: threading.Lock) -> None:
        super().__init__(name)
        self._lock = lock
        self._entries: dict[tuple[str, str], tuple[CacheRequest, CachedResponse]] = {}

    def match(self, request: CacheRequest) -> CachedResponse | None:
        if not request.is_cacheable:
            return None
        with self._lock:
            entry = self._entries.get(request.cache_key)
        return entry[1] if entry is not None else None

    def put_all(self, entries: Iterable[tuple[CacheRequest, CachedResponse]]) -> None:
        batch = list(entries)
        for request, response in batch:
            _check_storable(request, response)
        with self._lock:
            for request, response in batch:
                self._entries[request.cache_key] = (request, response)

    def keys(self) -> list[CacheRequest]:
        with self._lock:
            return [request for request, _ in self._entries.values()]


class MemoryCacheStorage(CacheStorage):
    """Thread-safe in-memory cache storage.

    Nothing survives the process; used by tests and by one-shot tooling.
    """

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._buckets: dict[str, MemoryBucket] = {}

    def keys(self) -> list[str]:
        with self._lock:
            return list(self._buckets)

    def open(self, name: str) -> CacheBucket:
        with self._lock:
            bucket = self._buckets.get(name)
            if bucket is None:
                bucket = MemoryBucket(name, self._lock)
                self._buckets[name] = bucket
            return bucket

    def has(self, name: str) -> bool:
        with self._lock:
            return name in self._buckets

    def delete(self, name: str) -> bool:
        with self._lock:
            return self._buckets.pop(name, None) is not None

    def match_in(self, name: str, request: CacheRequest) -> CachedResponse | None:
        if not request.is_cacheable:
            return None
        with self._lock:
            bucket = self._buckets.get(name)
            if bucket is None:
                return None
            entry = bucket._entries.get(request.cache_key)
        return entry[1] if entry is not None else None
