"""Scan daemon main loop: run a scan on a timer until shutdown."""

import time

from session_meter.config import Config
from session_meter.logging import get_logger, setup_logging
from session_meter.processor.indexer import TypesenseIndexer
from session_meter.processor.pricing import PricingResolver
from session_meter.processor.scanner import ScanInProgressError, ScanOrchestrator
from session_meter.processor.store import SQLiteStore

logger = get_logger("processor")

# Global flag for graceful shutdown
_shutdown_requested = False

TYPESENSE_CONNECT_ATTEMPTS = 10
TYPESENSE_RETRY_SECONDS = 5


def request_shutdown() -> None:
    """Request graceful shutdown of the scan daemon."""
    global _shutdown_requested
    _shutdown_requested = True


def is_shutdown_requested() -> bool:
    """Check if shutdown has been requested."""
    return _shutdown_requested


def reset_shutdown() -> None:
    """Reset shutdown flag (useful for testing)."""
    global _shutdown_requested
    _shutdown_requested = False


def build_pricing(config: Config) -> PricingResolver:
    """Create a pricing resolver from configuration."""
    return PricingResolver(
        url=config.pricing.url if config.pricing.refresh else None,
        refresh_interval_seconds=config.pricing.refresh_hours * 60 * 60,
        cooldown_seconds=config.pricing.cooldown_seconds,
        timeout_seconds=config.pricing.timeout_seconds,
    )


def connect_indexer(
    config: Config,
    attempts: int = TYPESENSE_CONNECT_ATTEMPTS,
    retry_seconds: float = TYPESENSE_RETRY_SECONDS,
) -> TypesenseIndexer | None:
    """Connect to Typesense if enabled, retrying a few times.

    Returns:
        A ready indexer, or None when disabled or unreachable
    """
    if not config.typesense.enabled:
        return None

    for attempt in range(attempts):
        try:
            indexer = TypesenseIndexer(config.typesense)
            indexer.ensure_collections()
            logger.info(
                "Connected to Typesense: host=%s port=%d",
                config.typesense.host,
                config.typesense.port,
            )
            return indexer
        except Exception:
            if attempt < attempts - 1:
                logger.warning(
                    "Could not connect to Typesense (attempt %d/%d), retrying in %ds...",
                    attempt + 1,
                    attempts,
                    retry_seconds,
                )
                time.sleep(retry_seconds)
            else:
                logger.warning(
                    "Could not connect to Typesense after %d attempts, indexing disabled", attempts, exc_info=True
                )
    return None


def build_orchestrator(
    config: Config,
    store: SQLiteStore,
    indexer: TypesenseIndexer | None = None,
) -> ScanOrchestrator:
    """Create a scan orchestrator wired from configuration."""
    return ScanOrchestrator(
        store,
        pricing=build_pricing(config),
        max_workers=config.scan.max_workers,
        timezone_name=config.scan.timezone,
        sources=config.enabled_sources(),
        roots=config.source_roots(),
        indexer=indexer,
        refresh_pricing=config.pricing.refresh,
    )


def run_scan_cycle(orchestrator: ScanOrchestrator, full_scan: bool = False) -> bool:
    """Run one timer-triggered scan.

    Storage errors are logged and the daemon keeps running; the next cycle
    retries the same files because their scan state was never committed.

    Returns:
        True if the scan completed
    """
    try:
        result = orchestrator.run_scan(full_scan=full_scan)
    except ScanInProgressError:
        logger.info("Scan already in progress, skipping cycle")
        return False
    except Exception:
        logger.exception("Scan failed")
        return False

    if result.scanned > 0:
        logger.info("Cycle complete: scanned=%d total=%d errors=%d", result.scanned, result.total, result.errors)
    else:
        logger.debug("Cycle complete: no changed files")
    return True


def run_processor(config: Config, interval_seconds: int | None = None) -> None:
    """Run the scan daemon main loop.

    Scans once at startup, then every interval until shutdown is
    requested.

    Args:
        config: Application configuration
        interval_seconds: Seconds between scans (defaults to config)
    """
    reset_shutdown()

    setup_logging("processor")

    interval = interval_seconds if interval_seconds is not None else config.scan.interval_seconds

    logger.info(
        "Starting scan daemon: db=%s interval=%ds sources=%s",
        config.scan.db_path,
        interval,
        ",".join(config.enabled_sources()),
    )

    indexer = connect_indexer(config)

    with SQLiteStore(config.scan.db_path) as store:
        orchestrator = build_orchestrator(config, store, indexer)
        while not is_shutdown_requested():
            run_scan_cycle(orchestrator)

            if is_shutdown_requested():
                break

            logger.debug("Waiting %ds until next scan", interval)

            # Sleep in small increments to allow graceful shutdown
            sleep_remaining = float(interval)
            while sleep_remaining > 0 and not is_shutdown_requested():
                sleep_time = min(1.0, sleep_remaining)
                time.sleep(sleep_time)
                sleep_remaining -= sleep_time

    logger.info("Scan daemon stopped")
