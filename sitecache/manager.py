"""Offline cache manager: precache, cache-first fetch, generation sweep.

One manager owns one cache generation. The host drives it through three
lifecycle triggers, each of which returns a Future the host waits on before
advancing:

    UNINSTALLED --install--> INSTALLING --> INSTALLED --activate--> ACTIVATING --> ACTIVE
                                  |                                      |
                                  +--(precache failed)--> REDUNDANT      +--(listing failed)--> INSTALLED

An ACTIVE manager answers intercepted requests until the host retires it.
"""

import logging
import threading
from concurrent.futures import Future, ThreadPoolExecutor, as_completed

from .config import CacheConfig, OriginConfig
from .fetcher import Fetcher, FetchError
from .models import CacheRequest, CachedResponse, WorkerState
from .storage import CacheStorage, StorageError

logger = logging.getLogger(__name__)

# Concurrent network fetches during precache. Small: the manifest is a handful
# of static assets on a single origin.
MAX_PRECACHE_WORKERS = 4

# Threads serving lifecycle triggers and network fetches for cache misses.
MAX_WORKERS = 8


class LifecycleError(Exception):
    """Raised when a trigger arrives in a state that cannot accept it."""

    pass


class PrecacheError(Exception):
    """Raised when any manifest entry cannot be fetched and stored."""

    def __init__(self, message: str, url: str | None = None) -> None:
        super().__init__(message)
        self.url = url


class ActivationError(Exception):
    """Raised when the generation sweep cannot enumerate buckets."""

    pass


class OfflineCacheManager:
    """Cache-first offline support for a fixed asset manifest."""

    def __init__(
        self,
        cache: CacheConfig,
        storage: CacheStorage,
        fetcher: Fetcher,
        origin: OriginConfig | None = None,
    ) -> None:
        """Initialize the manager.

        Args:
            cache: Generation identifier, precache manifest and lookup scope.
            storage: Cache storage holding every generation's bucket.
            fetcher: Network access for precaching and cache misses.
            origin: Origin used to resolve relative manifest entries.
        """
        self.cache = cache
        self.origin = origin or OriginConfig()
        self._storage = storage
        self._fetcher = fetcher
        self._state = WorkerState.UNINSTALLED
        self._state_lock = threading.Lock()
        self._executor = ThreadPoolExecutor(max_workers=MAX_WORKERS, thread_name_prefix="sitecache")

    @property
    def name(self) -> str:
        """The cache generation this manager owns."""
        return self.cache.name

    @property
    def state(self) -> WorkerState:
        with self._state_lock:
            return self._state

    @property
    def precache_urls(self) -> list[str]:
        """Manifest entries resolved to absolute URLs, in manifest order."""
        return [self.origin.resolve(entry) for entry in self.cache.precache]

    def _transition(self, expected: WorkerState, new: WorkerState, trigger: str) -> None:
        with self._state_lock:
            if self._state is not expected:
                raise LifecycleError(f"Cannot {trigger} cache '{self.name}' in state {self._state.value}")
            self._state = new
        logger.debug("Cache %s: %s -> %s", self.name, expected.value, new.value)

    def _set_state(self, new: WorkerState) -> None:
        with self._state_lock:
            old = self._state
            self._state = new
        logger.debug("Cache %s: %s -> %s", self.name, old.value, new.value)

    # ------------------------------------------------------------------
    # Install
    # ------------------------------------------------------------------

    def install(self) -> "Future[None]":
        """Precache every manifest entry into the current generation's bucket.

        Returns:
            Future that resolves once the whole manifest is stored, or fails
            with PrecacheError if any single entry could not be fetched,
            returned a non-2xx status, or could not be stored.

        Raises:
            LifecycleError: If the manager was already installed.
        """
        self._transition(WorkerState.UNINSTALLED, WorkerState.INSTALLING, "install")
        return self._executor.submit(self._run_install)

    def _run_install(self) -> None:
        logger.info("Installing cache %s (%d assets)", self.name, len(self.cache.precache))
        try:
            bucket = self._storage.open(self.name)
            logger.debug("Opened cache %s", self.name)
            entries = self._fetch_manifest()
            bucket.put_all(entries)
        except StorageError as e:
            self._set_state(WorkerState.REDUNDANT)
            logger.error("Install of cache %s failed: %s", self.name, e)
            raise PrecacheError(f"Failed to store precached assets: {e}") from e
        except PrecacheError as e:
            self._set_state(WorkerState.REDUNDANT)
            logger.error("Install of cache %s failed: %s", self.name, e)
            raise
        except Exception:
            self._set_state(WorkerState.REDUNDANT)
            logger.exception("Install of cache %s failed unexpectedly", self.name)
            raise

        self._set_state(WorkerState.INSTALLED)
        logger.info("Installed cache %s", self.name)

    def _fetch_manifest(self) -> list[tuple[CacheRequest, CachedResponse]]:
        """Fetch all manifest entries; fail on the first entry that fails."""
        requests = [CacheRequest(url=url) for url in self.precache_urls]
        fetched: dict[str, CachedResponse] = {}

        with ThreadPoolExecutor(max_workers=MAX_PRECACHE_WORKERS) as executor:
            futures = {executor.submit(self._fetcher.fetch, request): request for request in requests}
            for future in as_completed(futures):
                request = futures[future]
                try:
                    response = future.result()
                except FetchError as e:
                    raise PrecacheError(f"Failed to fetch {request.url}: {e}", url=request.url) from e
                if not response.ok:
                    raise PrecacheError(
                        f"Failed to fetch {request.url}: HTTP {response.status} {response.reason}".rstrip(),
                        url=request.url,
                    )
                fetched[request.url] = response

        return [(request, fetched[request.url]) for request in requests]

    # ------------------------------------------------------------------
    # Activate
    # ------------------------------------------------------------------

    def activate(self) -> "Future[list[str]]":
        """Delete every cache bucket from a previous generation.

        Returns:
            Future resolving to the names of the deleted buckets. Fails with
            ActivationError only if the bucket names cannot be listed.

        Raises:
            LifecycleError: If the manager is not installed.
        """
        self._transition(WorkerState.INSTALLED, WorkerState.ACTIVATING, "activate")
        return self._executor.submit(self._run_activate)

    def _run_activate(self) -> list[str]:
        logger.info("Activating cache %s", self.name)
        try:
            deleted = self.sweep()
        except ActivationError as e:
            self._set_state(WorkerState.INSTALLED)
            logger.error("Activation of cache %s failed: %s", self.name, e)
            raise
        except Exception:
            self._set_state(WorkerState.INSTALLED)
            logger.exception("Activation of cache %s failed unexpectedly", self.name)
            raise

        self._set_state(WorkerState.ACTIVE)
        logger.info("Activated cache %s", self.name)
        return deleted

    def sweep(self) -> list[str]:
        """Delete every bucket whose name is not the current generation.

        A failed deletion is logged and skipped; the remaining stale buckets
        are still deleted. Running the sweep again deletes nothing.

        Returns:
            Names of the buckets actually deleted.

        Raises:
            ActivationError: If the bucket names cannot be listed.
        """
        try:
            names = self._storage.keys()
        except StorageError as e:
            raise ActivationError(f"Failed to list cache buckets: {e}") from e

        deleted: list[str] = []
        for bucket_name in names:
            if bucket_name == self.name:
                continue
            logger.info("Deleting old cache: %s", bucket_name)
            try:
                if self._storage.delete(bucket_name):
                    deleted.append(bucket_name)
            except StorageError as e:
                logger.warning("Failed to delete old cache %s: %s", bucket_name, e)
        return deleted

    # ------------------------------------------------------------------
    # Fetch interception
    # ------------------------------------------------------------------

    def handle_fetch(self, request: CacheRequest) -> "Future[CachedResponse]":
        """Answer an intercepted request cache-first.

        The lookup runs on the calling thread, so a hit is answered at once
        even while every worker is busy with slow network misses.

        Returns:
            Future resolving to the cached response on a hit, or to the
            network response on a miss. A network failure on a miss fails the
            future with the original FetchError.

        Raises:
            LifecycleError: If the manager is not the active controller.
        """
        state = self.state
        if state is not WorkerState.ACTIVE:
            raise LifecycleError(f"Cache '{self.name}' is not active (state {state.value})")

        cached = self.match(request)
        if cached is not None:
            logger.debug("Cache hit: %s %s", request.method, request.url)
            future: Future[CachedResponse] = Future()
            future.set_result(cached)
            return future

        logger.debug("Cache miss: %s %s", request.method, request.url)
        try:
            return self._executor.submit(self._fetcher.fetch, request)
        except RuntimeError as e:
            # Executor shut down between the state check and the submit.
            raise LifecycleError(f"Cache '{self.name}' was retired: {e}") from e

    def match(self, request: CacheRequest) -> CachedResponse | None:
        """Look the request up according to the configured match scope.

        Lookup never creates or modifies a bucket. A storage failure during
        lookup is treated as a miss.
        """
        try:
            if self.cache.match_scope == "all":
                return self._storage.match(request)
            return self._storage.match_in(self.name, request)
        except StorageError as e:
            logger.warning("Cache lookup failed for %s: %s", request.url, e)
            return None

    # ------------------------------------------------------------------
    # Teardown
    # ------------------------------------------------------------------

    def retire(self) -> None:
        """Stop controlling requests after a newer manager took over."""
        self._set_state(WorkerState.REDUNDANT)
        logger.info("Retired cache manager %s", self.name)

    def close(self) -> None:
        """Release the worker threads. Pending work finishes first."""
        self._executor.shutdown(wait=True)
