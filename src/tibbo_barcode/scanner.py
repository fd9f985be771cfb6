"""Fixed-interval scan loop."""

from __future__ import annotations

import asyncio
import contextlib
import time
from typing import List, Optional, Protocol

from .config import Config
from .errors import DiscoveryTimeout
from .health import BackoffPolicy, HealthMonitor
from .identifiers import DiscoveredDevice
from .logging import get_logger
from .metrics import observe_scan_cycle, record_scan_tick_skipped
from .reconciler import ReconciliationReport, ScanReconciler


class DeviceDiscovery(Protocol):
    async def scan(self, timeout: Optional[float] = None) -> List[DiscoveredDevice]:
        ...


class ScanService:
    """Run a scan cycle on every tick of a fixed-interval timer.

    Ticks never queue up: a tick that fires while the previous cycle is still
    running is dropped. The first tick fires as soon as the service starts.
    """

    def __init__(
        self,
        config: Config,
        discovery: DeviceDiscovery,
        reconciler: ScanReconciler,
        health: Optional[HealthMonitor] = None,
    ) -> None:
        self.config = config
        self.discovery = discovery
        self.reconciler = reconciler
        self.logger = get_logger("tibbo.scanner")
        self._health = health or HealthMonitor.from_config(config, ("scanner", "store"))
        self._backoff = BackoffPolicy(
            base=config.discovery_backoff_base,
            factor=config.discovery_backoff_factor,
            maximum=config.discovery_backoff_max,
        )
        self._stop_event = asyncio.Event()
        self._task: Optional[asyncio.Task[None]] = None
        self._cycle: Optional[asyncio.Task[Optional[ReconciliationReport]]] = None
        self._failures = 0
        self._retry_at = 0.0
        self.last_report: Optional[ReconciliationReport] = None

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    @property
    def cycle_in_progress(self) -> bool:
        return self._cycle is not None and not self._cycle.done()

    async def start(self) -> None:
        if self._task:
            return
        self._stop_event.clear()
        self._task = asyncio.create_task(self._run())
        self.logger.info(
            "Scan loop started",
            extra={
                "interval_seconds": self.config.scan_interval,
                "timeout_seconds": self.config.scan_timeout,
            },
        )

    async def stop(self) -> None:
        self._stop_event.set()
        if self._task:
            self._task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await self._task
        self._task = None
        if self._cycle and not self._cycle.done():
            self._cycle.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await self._cycle
        self._cycle = None
        self.logger.info("Scan loop stopped")

    async def _run(self) -> None:
        next_tick = time.monotonic()
        while not self._stop_event.is_set():
            await self.tick()
            next_tick += self.config.scan_interval
            await self._sleep_with_stop(next_tick - time.monotonic())

    async def tick(self) -> bool:
        """Start a cycle unless one is running; return whether it started."""

        if self.cycle_in_progress:
            record_scan_tick_skipped()
            self.logger.warning("Previous scan still running; skipping tick")
            return False
        remaining = self._retry_at - time.monotonic()
        if remaining > 0:
            record_scan_tick_skipped()
            self.logger.debug(
                "Scan backing off after discovery errors",
                extra={"retry_in_seconds": round(remaining, 2)},
            )
            return False
        allowed, cooldown = await self._health.allow_attempt("scanner")
        if not allowed:
            record_scan_tick_skipped()
            self.logger.warning(
                "Scanner suppressed after failures",
                extra={"cooldown_seconds": round(cooldown, 2)},
            )
            return False
        self._cycle = asyncio.create_task(self._guarded_cycle())
        return True

    async def _guarded_cycle(self) -> Optional[ReconciliationReport]:
        try:
            return await self.run_cycle()
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            self._failures += 1
            self._retry_at = time.monotonic() + self._backoff.delay(self._failures)
            self.logger.exception("Scan cycle failed", extra={"failures": self._failures})
            await self._health.record_failure("scanner", exc)
            return None

    async def run_cycle(self) -> ReconciliationReport:
        """Discover devices and reconcile them once."""

        started = time.perf_counter()
        result = "error"
        try:
            devices = await self._discover()
            report = await self.reconciler.reconcile(devices)
            if report.flushed:
                await self._health.record_success("store")
                result = "ok"
            else:
                await self._health.record_failure("store")
                result = "store_error"
            await self._health.record_success("scanner")
            self._failures = 0
            self._retry_at = 0.0
            self.last_report = report
            return report
        finally:
            observe_scan_cycle(result, time.perf_counter() - started)

    async def _discover(self) -> List[DiscoveredDevice]:
        try:
            return await self.discovery.scan(self.config.scan_timeout)
        except DiscoveryTimeout as exc:
            self.logger.warning("Discovery timed out; nothing to reconcile", extra={"error": str(exc)})
            return []

    async def _sleep_with_stop(self, delay: float) -> None:
        if delay <= 0:
            return
        try:
            await asyncio.wait_for(self._stop_event.wait(), timeout=delay)
        except asyncio.TimeoutError:
            return
