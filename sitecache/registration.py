"""Host side of the cache lifecycle.

The registration dispatches install and activate to a new manager, waits on
each, and only then routes requests to it. While an update is installing, the
previously active manager keeps answering requests.
"""

import logging
import threading

from .fetcher import Fetcher
from .manager import ActivationError, LifecycleError, OfflineCacheManager, PrecacheError
from .models import CacheRequest, CachedResponse

logger = logging.getLogger(__name__)


class Registration:
    """Holds the active cache manager for one scope."""

    def __init__(self, fetcher: Fetcher) -> None:
        self._fetcher = fetcher
        self._lock = threading.Lock()
        self._active: OfflineCacheManager | None = None

    @property
    def active(self) -> OfflineCacheManager | None:
        with self._lock:
            return self._active

    def update(self, manager: OfflineCacheManager) -> bool:
        """Install and activate manager, replacing the active one on success.

        Args:
            manager: A freshly constructed (uninstalled) manager.

        Returns:
            True if manager is now active. False if install or activation
            failed, in which case the previous manager (if any) keeps serving.
        """
        try:
            manager.install().result()
            deleted = manager.activate().result()
        except (PrecacheError, ActivationError) as e:
            logger.error("Update to cache %s not applied: %s", manager.name, e)
            manager.close()
            return False
        except Exception:
            manager.close()
            raise

        if deleted:
            logger.info("Swept %d stale cache(s): %s", len(deleted), ", ".join(deleted))

        with self._lock:
            previous = self._active
            self._active = manager

        if previous is not None and previous is not manager:
            previous.retire()
            previous.close()

        logger.info("Cache %s is now controlling requests", manager.name)
        return True

    def fetch(self, request: CacheRequest) -> CachedResponse:
        """Route a request to the active manager, or to the network if none.

        Raises:
            FetchError: If the request missed the cache and the network failed.
        """
        manager = self.active
        if manager is None:
            return self._fetcher.fetch(request)
        try:
            future = manager.handle_fetch(request)
        except LifecycleError:
            if self.active is manager:
                raise
            # Replaced by a newer manager since the lookup above.
            return self.fetch(request)
        return future.result()

    def close(self) -> None:
        """Retire and release the active manager."""
        with self._lock:
            manager = self._active
            self._active = None
        if manager is not None:
            manager.retire()
            manager.close()
