import asyncio
from typing import List, Optional

import pytest

from tibbo_barcode.config import Config
from tibbo_barcode.errors import DiscoveryTimeout
from tibbo_barcode.health import HealthMonitor
from tibbo_barcode.identifiers import DiscoveredDevice
from tibbo_barcode.reconciler import OutcomeStatus, ReconciliationReport
from tibbo_barcode.scanner import ScanService

DEVICE = DiscoveredDevice(board="TPP2W(G2)-LUA", raw_id="[000.036.119.087.182.061]")


class FakeDiscovery:
    def __init__(self, devices: Optional[List[DiscoveredDevice]] = None, error: Optional[BaseException] = None) -> None:
        self.devices = devices or []
        self.error = error
        self.gate: Optional[asyncio.Event] = None
        self.timeouts: List[Optional[float]] = []

    async def scan(self, timeout: Optional[float] = None) -> List[DiscoveredDevice]:
        self.timeouts.append(timeout)
        if self.gate:
            await self.gate.wait()
        if self.error:
            raise self.error
        return list(self.devices)


class FakeReconciler:
    def __init__(self, flush_error: Optional[str] = None) -> None:
        self.batches: List[List[DiscoveredDevice]] = []
        self.flush_error = flush_error

    async def reconcile(self, discovered) -> ReconciliationReport:
        batch = list(discovered)
        self.batches.append(batch)
        return ReconciliationReport(flush_error=self.flush_error)


def _health() -> HealthMonitor:
    return HealthMonitor(("scanner", "store"), failure_threshold=3, cooldown_seconds=60.0)


@pytest.mark.asyncio
async def test_run_cycle_passes_discovered_devices_to_reconciler() -> None:
    config = Config(scan_timeout=0.5)
    discovery = FakeDiscovery([DEVICE])
    reconciler = FakeReconciler()
    service = ScanService(config, discovery, reconciler, _health())  # type: ignore[arg-type]

    report = await service.run_cycle()

    assert discovery.timeouts == [0.5]
    assert reconciler.batches == [[DEVICE]]
    assert service.last_report is report


@pytest.mark.asyncio
async def test_discovery_timeout_yields_empty_batch() -> None:
    discovery = FakeDiscovery(error=DiscoveryTimeout("slow network"))
    reconciler = FakeReconciler()
    health = _health()
    service = ScanService(Config(), discovery, reconciler, health)  # type: ignore[arg-type]

    await service.run_cycle()

    assert reconciler.batches == [[]]
    snapshot = await health.snapshot()
    assert snapshot["scanner"]["status"] == "ok"


@pytest.mark.asyncio
async def test_overlapping_tick_is_skipped() -> None:
    discovery = FakeDiscovery([DEVICE])
    discovery.gate = asyncio.Event()
    reconciler = FakeReconciler()
    service = ScanService(Config(), discovery, reconciler, _health())  # type: ignore[arg-type]

    assert await service.tick() is True
    await asyncio.sleep(0)
    assert service.cycle_in_progress
    assert await service.tick() is False

    discovery.gate.set()
    await service._cycle
    assert reconciler.batches == [[DEVICE]]
    assert await service.tick() is True
    await service._cycle
    assert len(reconciler.batches) == 2


@pytest.mark.asyncio
async def test_socket_error_backs_off_and_marks_scanner_degraded() -> None:
    config = Config(discovery_backoff_base=30.0, discovery_backoff_max=60.0)
    discovery = FakeDiscovery(error=OSError("network unreachable"))
    reconciler = FakeReconciler()
    health = _health()
    service = ScanService(config, discovery, reconciler, health)  # type: ignore[arg-type]

    assert await service.tick() is True
    assert await service._cycle is None
    assert reconciler.batches == []
    snapshot = await health.snapshot()
    assert snapshot["scanner"]["status"] == "degraded"
    assert "network unreachable" in snapshot["scanner"]["last_error"]
    assert await service.tick() is False


@pytest.mark.asyncio
async def test_store_flush_failure_marks_store_unhealthy() -> None:
    health = _health()
    service = ScanService(Config(), FakeDiscovery([DEVICE]), FakeReconciler(flush_error="disk full"), health)  # type: ignore[arg-type]

    report = await service.run_cycle()

    assert not report.flushed
    snapshot = await health.snapshot()
    assert snapshot["store"]["status"] == "degraded"
    assert snapshot["scanner"]["status"] == "ok"


@pytest.mark.asyncio
async def test_start_runs_first_cycle_immediately_and_stop_is_clean() -> None:
    discovery = FakeDiscovery([DEVICE])
    reconciler = FakeReconciler()
    service = ScanService(Config(scan_interval=60.0), discovery, reconciler, _health())  # type: ignore[arg-type]

    await service.start()
    for _ in range(20):
        if reconciler.batches:
            break
        await asyncio.sleep(0.01)
    await service.stop()

    assert reconciler.batches == [[DEVICE]]
    assert not service.running


def test_report_summary_counts_statuses() -> None:
    report = ReconciliationReport()
    assert report.summary() == {"discovered": 0, "queued": 0, "skipped": 0, "failed": 0}
    assert OutcomeStatus.QUEUED.value == "queued"
