"""sitecache - Offline cache-first layer for the juliocastillo.dev static blog."""

import argparse
import logging
import signal
import sys
from threading import Event
from typing import Optional

__version__ = "0.1.0"

# Global shutdown event for signal handlers
_shutdown_event: Optional[Event] = None

logger = logging.getLogger(__name__)


def _setup_logging(verbose: bool = False) -> None:
    """Configure logging for the application."""
    level = logging.DEBUG if verbose else logging.INFO
    logging.basicConfig(
        level=level,
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
        stream=sys.stdout,
    )


def _handle_shutdown(signum: int, frame: object) -> None:
    """Signal handler for graceful shutdown."""
    sig_name = signal.Signals(signum).name
    logger.info("Received %s, initiating shutdown...", sig_name)
    if _shutdown_event is not None:
        _shutdown_event.set()


def _load_config_or_exit(config_path: str):
    from .config import ConfigError, load_config

    try:
        return load_config(config_path)
    except ConfigError as e:
        logger.error("Configuration error: %s", e)
        sys.exit(1)


def _open_storage_or_exit(path: str):
    from .database import SqliteCacheStorage
    from .storage import StorageError

    try:
        storage = SqliteCacheStorage.from_path(path)
        logger.debug("Cache storage opened at %s", path)
        return storage
    except StorageError as e:
        logger.error("Storage error: %s", e)
        sys.exit(1)


def _build_manager(config, storage):
    from .fetcher import Fetcher
    from .manager import OfflineCacheManager

    fetcher = Fetcher(timeout=config.origin.timeout, user_agent=config.origin.user_agent)
    return OfflineCacheManager(config.cache, storage, fetcher, origin=config.origin), fetcher


def _cmd_run(args: argparse.Namespace) -> None:
    """Execute the run command - precache, activate and serve the proxy."""
    global _shutdown_event

    _setup_logging(args.verbose)

    logger.info("sitecache %s starting...", __version__)

    from .proxy import ProxyError, ProxyServer
    from .registration import Registration

    # 1. Load configuration
    config = _load_config_or_exit(args.config)
    logger.info("Configuration loaded from %s", args.config)
    logger.info(
        "Cache %s with %d precached assets from %s",
        config.cache.name,
        len(config.cache.precache),
        config.origin.base_url,
    )

    # 2. Open storage
    storage = _open_storage_or_exit(config.storage.path)

    # 3. Install and activate the current generation
    manager, fetcher = _build_manager(config, storage)
    registration = Registration(fetcher)
    if not registration.update(manager):
        logger.warning("Continuing without offline cache; requests go straight to the network")

    # 4. Setup shutdown handler
    _shutdown_event = Event()
    signal.signal(signal.SIGTERM, _handle_shutdown)
    signal.signal(signal.SIGINT, _handle_shutdown)

    proxy: Optional[ProxyServer] = None

    try:
        if config.proxy.enabled:
            proxy = ProxyServer(config.proxy, registration, config.origin)
            try:
                proxy.start()
            except ProxyError as e:
                logger.error("Failed to start proxy server: %s", e)
                sys.exit(1)

        logger.info("All components started, waiting for shutdown signal...")

        # 5. Wait for shutdown signal
        _shutdown_event.wait()

    except KeyboardInterrupt:
        # Backup handler if signal doesn't work
        logger.info("Keyboard interrupt received")
    finally:
        # 6. Cleanup
        logger.info("Shutting down components...")

        if proxy is not None:
            proxy.stop()

        registration.close()
        storage.close()
        logger.info("Shutdown complete")


def _cmd_install(args: argparse.Namespace) -> None:
    """Execute the install command - precache the manifest without serving."""
    _setup_logging(args.verbose)

    from .manager import PrecacheError

    config = _load_config_or_exit(args.config)
    storage = _open_storage_or_exit(config.storage.path)
    manager, _ = _build_manager(config, storage)

    try:
        manager.install().result()
        print(f"Installed {len(config.cache.precache)} assets into {config.cache.name}")
    except PrecacheError as e:
        print(f"Error: install failed: {e}")
        sys.exit(1)
    finally:
        manager.close()
        storage.close()


def _cmd_activate(args: argparse.Namespace) -> None:
    """Execute the activate command - sweep stale cache generations."""
    _setup_logging(args.verbose)

    from .manager import ActivationError

    config = _load_config_or_exit(args.config)
    storage = _open_storage_or_exit(config.storage.path)
    manager, _ = _build_manager(config, storage)

    try:
        deleted = manager.sweep()
        if deleted:
            print(f"Deleted {len(deleted)} stale cache(s): {', '.join(deleted)}")
        else:
            print("No stale caches to delete.")
    except ActivationError as e:
        print(f"Error: {e}")
        sys.exit(1)
    finally:
        manager.close()
        storage.close()


def _cmd_buckets(args: argparse.Namespace) -> None:
    """Execute the buckets command - list cache buckets in storage."""
    _setup_logging(args.verbose)

    from .storage import StorageError

    config = _load_config_or_exit(args.config)
    storage = _open_storage_or_exit(config.storage.path)

    try:
        names = storage.keys()
        if not names:
            print("No cache buckets.")
        for name in names:
            marker = "*" if name == config.cache.name else " "
            print(f"{marker} {name} ({len(storage.open(name))} entries)")
    except StorageError as e:
        print(f"Error: {e}")
        sys.exit(1)
    finally:
        storage.close()


def _cmd_generate_sw(args: argparse.Namespace) -> None:
    """Execute the generate-sw command - render the browser service worker."""
    from pathlib import Path

    from ._service_worker import render_service_worker

    config = _load_config_or_exit(args.config)
    script = render_service_worker(config.cache)

    if args.output == "-":
        sys.stdout.write(script)
        return

    try:
        Path(args.output).write_text(script, encoding="utf-8")
    except OSError as e:
        print(f"Error writing {args.output}: {e}")
        sys.exit(1)
    print(f"Service worker for {config.cache.name} written to {args.output}")


def _add_common_arguments(parser: argparse.ArgumentParser) -> None:
    parser.add_argument(
        "-c", "--config",
        default="config.yaml",
        help="Path to configuration file (default: config.yaml)",
    )
    parser.add_argument(
        "-v", "--verbose",
        action="store_true",
        help="Enable verbose (debug) logging",
    )


def main() -> None:
    """Main entry point for the sitecache package."""
    parser = argparse.ArgumentParser(
        description="sitecache - Offline cache-first layer for a static blog"
    )
    parser.add_argument(
        "--version",
        action="version",
        version=f"sitecache {__version__}",
    )

    subparsers = parser.add_subparsers(dest="command")

    # Run subcommand (default behavior)
    run_parser = subparsers.add_parser(
        "run",
        help="Precache, activate and serve the caching proxy (default)",
    )
    _add_common_arguments(run_parser)
    run_parser.set_defaults(func=_cmd_run)

    install_parser = subparsers.add_parser(
        "install",
        help="Fetch and store every precache manifest entry",
    )
    _add_common_arguments(install_parser)
    install_parser.set_defaults(func=_cmd_install)

    activate_parser = subparsers.add_parser(
        "activate",
        help="Delete cache buckets from previous generations",
    )
    _add_common_arguments(activate_parser)
    activate_parser.set_defaults(func=_cmd_activate)

    buckets_parser = subparsers.add_parser(
        "buckets",
        help="List cache buckets (current generation marked with *)",
    )
    _add_common_arguments(buckets_parser)
    buckets_parser.set_defaults(func=_cmd_buckets)

    sw_parser = subparsers.add_parser(
        "generate-sw",
        help="Render the browser service worker script",
    )
    sw_parser.add_argument(
        "-c", "--config",
        default="config.yaml",
        help="Path to configuration file (default: config.yaml)",
    )
    sw_parser.add_argument(
        "-o", "--output",
        default="sw.js",
        help="Output file, or - for stdout (default: sw.js)",
    )
    sw_parser.set_defaults(func=_cmd_generate_sw)

    args = parser.parse_args()

    # Default to 'run' if no command specified
    if args.command is None:
        args.config = "config.yaml"
        args.verbose = False
        args.func = _cmd_run

    args.func(args)
