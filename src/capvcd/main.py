"""Main entry point for the Cloud Director infrastructure provider.

The process authenticates against a single tenant organization, seeds the
object store from an optional manifest directory (re-read on every resync)
and then reconciles VCDCluster and VCDMachine objects until it receives SIGTERM or SIGINT.
"""

from __future__ import annotations

import asyncio
import logging
import signal
import sys
from collections.abc import Callable
from datetime import UTC
from pathlib import Path

from .adapter import TaskPollingAdapter
from .cluster_reconciler import ClusterReconciler
from .config import Config, ConfigurationError
from .machine_reconciler import MachineReconciler
from .manifest_loader import ManifestLoadError, load_into_store, sync_store
from .scheduler import Manager
from .security import CredentialsError, load_credentials
from .store import ResourceStore
from .vcd_client import VcdClient

# Attributes every LogRecord carries; anything else came in through extra=
_RESERVED_LOG_ATTRS = frozenset(
    (
        "name",
        "msg",
        "args",
        "created",
        "filename",
        "funcName",
        "levelname",
        "levelno",
        "lineno",
        "module",
        "msecs",
        "pathname",
        "process",
        "processName",
        "relativeCreated",
        "stack_info",
        "exc_info",
        "exc_text",
        "thread",
        "threadName",
        "taskName",
        "message",
    )
)


def setup_logging(level: int = logging.INFO) -> None:
    """Configure structured logging with JSON output for production."""
    import json
    from datetime import datetime

    class JsonFormatter(logging.Formatter):
        """Format logs as JSON for structured logging."""

        def format(self, record: logging.LogRecord) -> str:
            log_data = {
                "timestamp": datetime.now(UTC).isoformat().replace("+00:00", "Z"),
                "level": record.levelname,
                "message": record.getMessage(),
                "logger": record.name,
            }

            for key, value in record.__dict__.items():
                if key not in _RESERVED_LOG_ATTRS:
                    log_data[key] = value

            if record.exc_info:
                log_data["exception"] = self.formatException(record.exc_info)

            return json.dumps(log_data, default=str)

    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(JsonFormatter())

    root_logger = logging.getLogger()
    root_logger.addHandler(handler)
    root_logger.setLevel(level)

    # Request lines from the HTTP stack would drown the reconcile logs
    logging.getLogger("httpx").setLevel(logging.WARNING)
    logging.getLogger("httpcore").setLevel(logging.WARNING)


async def main() -> int:
    """Run the provider.

    Returns:
        Exit code (0 for success, 1 for configuration errors, 2 for
        credential policy violations).
    """
    setup_logging()
    logger = logging.getLogger(__name__)

    try:
        config = Config.from_env()
    except ConfigurationError as e:
        logger.error("Configuration error", extra={"error": str(e)})
        return 1

    logger.info(
        "Starting Cloud Director infrastructure provider",
        extra={
            "endpoint": config.vcd_endpoint,
            "org": config.vcd_org,
            "api_version": config.api_version,
            "max_concurrent_reconciles": config.max_concurrent_reconciles,
        },
    )

    try:
        credentials = load_credentials(config.credentials_dir)
    except CredentialsError as e:
        # SECURITY: refuse to start rather than fall back to weaker sources
        logger.critical("Credential policy violation", extra={"error": str(e)})
        return 2

    store = ResourceStore()
    if config.manifests_dir is not None:
        try:
            count = load_into_store(store, config.manifests_dir)
        except ManifestLoadError as e:
            logger.error(
                "Manifest loading failed",
                extra={"error": str(e), "manifests_dir": str(config.manifests_dir)},
            )
            return 1
        logger.info("Seeded store from manifests", extra={"objects": count})

    async with VcdClient(config, credentials) as client:
        return await run_manager(config, store, client, logger)


def manifest_refresher(
    store: ResourceStore, manifests_dir: Path | None, logger: logging.Logger
) -> Callable[[], None] | None:
    """Build the resync hook that re-reads the manifest directory."""
    if manifests_dir is None:
        return None

    def refresh() -> None:
        try:
            result = sync_store(store, manifests_dir)
        except ManifestLoadError as e:
            # Keep reconciling the last valid state until the manifests are fixed
            logger.error(
                "Manifest refresh failed",
                extra={"error": str(e), "manifests_dir": str(manifests_dir)},
            )
            return
        if result.deleted:
            logger.info(
                "Manifests refreshed",
                extra={"applied": result.applied, "deleted": result.deleted},
            )

    return refresh


async def run_manager(
    config: Config,
    store: ResourceStore,
    client: VcdClient,
    logger: logging.Logger,
) -> int:
    """Wire reconcilers to the scheduler and run until a shutdown signal."""
    adapter = TaskPollingAdapter(client, config)
    clusters = ClusterReconciler(store, adapter, config)
    machines = MachineReconciler(store, adapter, config)
    manager = Manager(
        store,
        clusters.reconcile,
        machines.reconcile,
        config,
        refresh=manifest_refresher(store, config.manifests_dir, logger),
    )

    loop = asyncio.get_running_loop()

    def signal_handler(sig: signal.Signals) -> None:
        logger.info("Received signal", extra={"signal": sig.name})
        manager.shutdown()

    for sig in (signal.SIGTERM, signal.SIGINT):
        loop.add_signal_handler(sig, lambda s=sig: signal_handler(s))

    try:
        await manager.run()
    except Exception as e:
        logger.exception("Unhandled exception", extra={"error": str(e)})
        return 1

    logger.info("Provider stopped")
    return 0


def run() -> None:
    """Entry point for the provider process."""
    sys.exit(asyncio.run(main()))


if __name__ == "__main__":
    run()
