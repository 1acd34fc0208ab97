"""Configuration loader with type-safe dataclasses."""

import os
from dataclasses import dataclass, field
from pathlib import Path

import yaml


class ConfigError(Exception):
    """Raised when configuration is invalid or cannot be loaded."""

    pass


DEFAULT_ORIGIN_URL = "https://juliocastillo.dev"
DEFAULT_USER_AGENT = "sitecache/0.1"

# Current cache generation. Bump the suffix whenever the precached assets change
# so that activation sweeps the previous bucket.
DEFAULT_CACHE_NAME = "juliocastillodev-cache-v1"

# Assets fetched eagerly at install time, relative to the deployed site root.
DEFAULT_PRECACHE = (
    "/",
    "/assets/css/main.css",
    "/assets/img/gentle.webp",
    "/assets/img/hero-lit-html.webp",
    "/assets/img/lit-html-web-components.webp",
    "/assets/img/litelement-depth.webp",
    "/assets/img/litelement.webp",
    "/assets/icons/icon-192.png",
    "/assets/icons/icon-512.png",
)

# current: lookups only read the current generation's bucket.
# all: lookups match across every bucket, oldest first.
MATCH_SCOPES = ("current", "all")


@dataclass(frozen=True)
class OriginConfig:
    """Where the deployed site lives and how to reach it."""

    base_url: str = DEFAULT_ORIGIN_URL
    timeout: int = 10  # seconds per network fetch
    user_agent: str = DEFAULT_USER_AGENT

    def __post_init__(self) -> None:
        if not self.base_url:
            raise ConfigError("Origin base_url cannot be empty")
        if not self.base_url.startswith(("http://", "https://")):
            raise ConfigError(f"Origin base_url must start with http:// or https://, got '{self.base_url}'")
        if self.timeout < 1:
            raise ConfigError(f"Origin timeout must be at least 1 second (got {self.timeout})")
        if not self.user_agent:
            raise ConfigError("Origin user_agent cannot be empty")

    def resolve(self, path: str) -> str:
        """Resolve a site-relative path (or absolute URL) against the origin."""
        if path.startswith(("http://", "https://")):
            return path
        return self.base_url.rstrip("/") + "/" + path.lstrip("/")


@dataclass(frozen=True)
class CacheConfig:
    """The cache generation and its precache manifest.

    - name: Cache Generation Identifier. Exactly one bucket name is current.
    - precache: ordered manifest of asset paths stored at install time.
    - match_scope: which buckets answer an intercepted request ("current" or "all").
    """

    name: str = DEFAULT_CACHE_NAME
    precache: tuple[str, ...] = DEFAULT_PRECACHE
    match_scope: str = "current"

    def __post_init__(self) -> None:
        if not self.name:
            raise ConfigError("Cache name cannot be empty")
        if any(not char.isprintable() for char in self.name):
            raise ConfigError(f"Cache name cannot contain control characters: {self.name!r}")
        if not isinstance(self.precache, tuple):
            raise ConfigError("Cache precache manifest must be a tuple")
        if not self.precache:
            raise ConfigError("Cache precache manifest cannot be empty")
        for entry in self.precache:
            if not entry:
                raise ConfigError("Precache entries cannot be empty")
        duplicates = {entry for entry in self.precache if self.precache.count(entry) > 1}
        if duplicates:
            raise ConfigError(f"Duplicate precache entries found: {sorted(duplicates)}")
        if self.match_scope not in MATCH_SCOPES:
            raise ConfigError(f"Invalid match_scope '{self.match_scope}'. Must be one of: {MATCH_SCOPES}")


def _get_default_storage_path() -> str:
    """Get the default cache database path (XDG user data directory)."""
    return str(Path.home() / ".local" / "share" / "sitecache" / "cache.db")


DEFAULT_STORAGE_PATH = _get_default_storage_path()


@dataclass(frozen=True)
class StorageConfig:
    """Configuration for the persistent cache storage."""

    path: str = DEFAULT_STORAGE_PATH

    def __post_init__(self) -> None:
        if not self.path:
            raise ConfigError("Storage path cannot be empty")


@dataclass(frozen=True)
class ProxyConfig:
    """Configuration for the local caching proxy."""

    enabled: bool = True
    host: str = "127.0.0.1"
    port: int = 8080

    def __post_init__(self) -> None:
        if self.port < 1 or self.port > 65535:
            raise ConfigError(f"Proxy port must be between 1 and 65535, got {self.port}")


@dataclass(frozen=True)
class Config:
    """Main configuration container."""

    origin: OriginConfig = field(default_factory=OriginConfig)
    cache: CacheConfig = field(default_factory=CacheConfig)
    storage: StorageConfig = field(default_factory=StorageConfig)
    proxy: ProxyConfig = field(default_factory=ProxyConfig)


def _parse_origin_config(data: dict | None) -> OriginConfig:
    """Parse origin configuration section."""
    if data is None:
        return OriginConfig()
    if not isinstance(data, dict):
        raise ConfigError("'origin' section must be a dictionary")

    return OriginConfig(
        base_url=str(data.get("base_url", DEFAULT_ORIGIN_URL)),
        timeout=int(data.get("timeout", 10)),
        user_agent=str(data.get("user_agent", DEFAULT_USER_AGENT)),
    )


def _parse_cache_config(data: dict | None) -> CacheConfig:
    """Parse cache configuration section."""
    if data is None:
        return CacheConfig()
    if not isinstance(data, dict):
        raise ConfigError("'cache' section must be a dictionary")

    precache_data = data.get("precache")
    if precache_data is None:
        precache = DEFAULT_PRECACHE
    elif not isinstance(precache_data, list):
        raise ConfigError("'cache.precache' must be a list")
    else:
        precache = tuple(str(entry) for entry in precache_data)

    return CacheConfig(
        name=str(data.get("name", DEFAULT_CACHE_NAME)),
        precache=precache,
        match_scope=str(data.get("match_scope", "current")),
    )


def _parse_storage_config(data: dict | None) -> StorageConfig:
    """Parse storage configuration section."""
    if data is None:
        return StorageConfig()
    if not isinstance(data, dict):
        raise ConfigError("'storage' section must be a dictionary")

    return StorageConfig(path=os.path.expanduser(str(data.get("path", DEFAULT_STORAGE_PATH))))


def _parse_proxy_config(data: dict | None) -> ProxyConfig:
    """Parse proxy configuration section."""
    if data is None:
        return ProxyConfig()
    if not isinstance(data, dict):
        raise ConfigError("'proxy' section must be a dictionary")

    return ProxyConfig(
        enabled=bool(data.get("enabled", True)),
        host=str(data.get("host", "127.0.0.1")),
        port=int(data.get("port", 8080)),
    )


def _apply_env_overrides(config_data: dict) -> dict:
    """Apply environment variable overrides to configuration.

    Supported overrides:
    - SITECACHE_ORIGIN_URL: Override origin.base_url
    - SITECACHE_CACHE_NAME: Override cache.name
    - SITECACHE_STORAGE_PATH: Override storage.path
    - SITECACHE_PROXY_PORT: Override proxy.port
    - SITECACHE_PROXY_ENABLED: Override proxy.enabled (true/false)
    """
    for section in ("origin", "cache", "storage", "proxy"):
        if config_data.get(section) is None:
            config_data[section] = {}

    origin_url = os.environ.get("SITECACHE_ORIGIN_URL")
    if origin_url is not None:
        config_data["origin"]["base_url"] = origin_url

    cache_name = os.environ.get("SITECACHE_CACHE_NAME")
    if cache_name is not None:
        config_data["cache"]["name"] = cache_name

    storage_path = os.environ.get("SITECACHE_STORAGE_PATH")
    if storage_path is not None:
        config_data["storage"]["path"] = storage_path

    proxy_port = os.environ.get("SITECACHE_PROXY_PORT")
    if proxy_port is not None:
        try:
            config_data["proxy"]["port"] = int(proxy_port)
        except ValueError:
            raise ConfigError(f"SITECACHE_PROXY_PORT must be an integer, got '{proxy_port}'")

    proxy_enabled = os.environ.get("SITECACHE_PROXY_ENABLED")
    if proxy_enabled is not None:
        config_data["proxy"]["enabled"] = proxy_enabled.lower() in ("true", "1", "yes")

    return config_data


def load_config(config_path: str) -> Config:
    """Load and validate configuration from a YAML file.

    A missing file is an error; every section inside the file is optional and
    falls back to the defaults for the juliocastillo.dev site.

    Args:
        config_path: Path to the YAML configuration file.

    Returns:
        Validated Config object.

    Raises:
        ConfigError: If the file cannot be read or configuration is invalid.
    """
    path = Path(config_path)

    if not path.exists():
        raise ConfigError(f"Configuration file not found: {config_path}")

    try:
        with open(path, encoding="utf-8") as f:
            data = yaml.safe_load(f)
    except yaml.YAMLError as e:
        raise ConfigError(f"Failed to parse YAML configuration: {e}")
    except OSError as e:
        raise ConfigError(f"Failed to read configuration file: {e}")

    if data is None:
        data = {}

    if not isinstance(data, dict):
        raise ConfigError("Configuration must be a YAML dictionary")

    try:
        data = _apply_env_overrides(data)
        return Config(
            origin=_parse_origin_config(data.get("origin")),
            cache=_parse_cache_config(data.get("cache")),
            storage=_parse_storage_config(data.get("storage")),
            proxy=_parse_proxy_config(data.get("proxy")),
        )
    except (TypeError, ValueError) as e:
        raise ConfigError(f"Invalid configuration value: {e}")
