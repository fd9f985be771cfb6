"""Entrypoint for the Tibbo barcode label service."""

from __future__ import annotations

import asyncio
import contextlib
import logging
import signal
from typing import Iterable, List, Optional

from .api import ApiService
from .config import Config, load_config
from .db import apply_migrations
from .discovery import TibboDiscovery
from .health import HealthMonitor
from .logging import configure_logging, get_logger
from .printer import LabelPrinter
from .reconciler import ScanReconciler
from .records import RecordStore
from .scanner import ScanService


async def _scan_loop(
    stop_event: asyncio.Event,
    config: Config,
    reconciler: ScanReconciler,
    health: HealthMonitor,
) -> None:
    logger = get_logger("tibbo.scanner")
    service = ScanService(config, TibboDiscovery(config), reconciler, health)
    await service.start()
    try:
        await stop_event.wait()
    finally:
        await service.stop()
        await reconciler.stop()
        logger.info("Scan loop shut down")


async def _api_loop(
    stop_event: asyncio.Event,
    config: Config,
    store: RecordStore,
    printer: LabelPrinter,
    health: HealthMonitor,
    reconciler: ScanReconciler,
) -> None:
    logger = get_logger("tibbo.api")
    service = ApiService(config, store, printer, health=health, reconciler=reconciler)
    await service.start()
    try:
        await stop_event.wait()
    finally:
        await service.stop()
        logger.info("API loop stopped")


async def _run_async(config: Config) -> None:
    logger = get_logger("tibbo")
    stop_event = asyncio.Event()
    store = RecordStore(config.db_path)
    await store.start()
    health = HealthMonitor.from_config(config)
    printer = LabelPrinter(config, health=health)
    reconciler = ScanReconciler.from_config(config, store, printer, health=health)

    def _request_shutdown(sig: Optional[str] = None) -> None:
        if not stop_event.is_set():
            logger.warning("Shutdown requested", extra={"signal": sig})
            stop_event.set()

    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        with contextlib.suppress(NotImplementedError):
            loop.add_signal_handler(sig, _request_shutdown, sig.name)

    tasks: List[asyncio.Task[None]] = [
        asyncio.create_task(_scan_loop(stop_event, config, reconciler, health)),
        asyncio.create_task(_api_loop(stop_event, config, store, printer, health, reconciler)),
    ]
    logger.info(
        "Label services started",
        extra={
            "api_port": config.api_port,
            "printer": config.printer,
            "db_path": str(config.db_path),
            "dry_run": config.dry_run,
        },
    )

    try:
        await stop_event.wait()
    finally:
        await _shutdown_tasks(tasks, logger)
        await store.stop()
        logger.info("Label service shutdown complete")


async def _shutdown_tasks(
    tasks: Iterable[asyncio.Task[None]], logger: logging.Logger
) -> None:
    # Loops finish their own cleanup once the stop event is set.
    tasks = list(tasks)
    done, pending = await asyncio.wait(tasks, timeout=30)
    for task in pending:
        logger.warning("Cancelling task that did not stop in time", extra={"task": task.get_name()})
        task.cancel()
    with contextlib.suppress(asyncio.CancelledError):
        await asyncio.gather(*tasks, return_exceptions=True)


def run(cli_args: Optional[Iterable[str]] = None) -> None:
    """CLI entrypoint used by setuptools."""

    config = load_config(cli_args)
    configure_logging(config)
    logger = get_logger("tibbo")
    logger.info("Loaded configuration", extra={"config": config.logging_dict()})

    apply_migrations(config.db_path)
    if config.migrate_only:
        logger.info("Migrations complete; exiting per configuration.")
        return
    try:
        asyncio.run(_run_async(config))
    except KeyboardInterrupt:
        logger.warning("Interrupted by user")


if __name__ == "__main__":
    run()
