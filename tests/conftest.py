"""Shared fixtures for the sitecache tests."""

from pathlib import Path

import pytest

from sitecache.config import CacheConfig, OriginConfig
from sitecache.database import SqliteCacheStorage
from sitecache.fetcher import FetchError
from sitecache.storage import CacheStorage, MemoryCacheStorage

from .fakes import ORIGIN, FakeFetcher, make_response


@pytest.fixture
def origin() -> OriginConfig:
    """Origin every test resolves manifest entries against."""
    return OriginConfig(base_url=ORIGIN)


@pytest.fixture
def cache_config() -> CacheConfig:
    """A small manifest for the current generation v2."""
    return CacheConfig(
        name="v2",
        precache=("/", "/assets/css/main.css", "/assets/icons/icon-192.png"),
    )


@pytest.fixture
def site_fetcher() -> FakeFetcher:
    """Fetcher serving every asset of the cache_config manifest."""
    return FakeFetcher(
        {
            f"{ORIGIN}/": make_response(f"{ORIGIN}/", b"<html>home</html>"),
            f"{ORIGIN}/assets/css/main.css": make_response(f"{ORIGIN}/assets/css/main.css", b"body{}"),
            f"{ORIGIN}/assets/icons/icon-192.png": make_response(
                f"{ORIGIN}/assets/icons/icon-192.png", b"\x89PNG\r\n\x1a\nicon"
            ),
            f"{ORIGIN}/about": make_response(f"{ORIGIN}/about", b"<html>about</html>"),
            f"{ORIGIN}/offline": FetchError("connection refused"),
        }
    )


@pytest.fixture(params=["memory", "sqlite"])
def storage(request: pytest.FixtureRequest, tmp_path: Path) -> CacheStorage:
    """Every storage implementation."""
    if request.param == "memory":
        yield MemoryCacheStorage()
        return
    sqlite_storage = SqliteCacheStorage.from_path(str(tmp_path / "cache.db"))
    yield sqlite_storage
    sqlite_storage.close()
