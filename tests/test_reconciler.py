import asyncio
from typing import Dict, List, Optional, Tuple

import pytest

from tibbo_barcode.db import apply_migrations
from tibbo_barcode.errors import StoreIOFailure
from tibbo_barcode.health import HealthMonitor
from tibbo_barcode.identifiers import DiscoveredDevice
from tibbo_barcode.reconciler import (
    SKIP_ALREADY_KNOWN,
    SKIP_IN_FLIGHT,
    SKIP_PRINTER_SUPPRESSED,
    OutcomeStatus,
    ScanReconciler,
)
from tibbo_barcode.records import DeviceRecord, RecordStore

KNOWN = DiscoveredDevice(board="TPP2W(G2)-LUA", raw_id="[000.036.119.087.182.061]")
FRESH = DiscoveredDevice(board="EM1000-X", raw_id="[010.000.000.001]")
MALFORMED = DiscoveredDevice(board="EM1000-X", raw_id="[a.b.c]")


class FakePrinter:
    def __init__(self, results: Optional[Dict[str, bool]] = None, gate: Optional[asyncio.Event] = None) -> None:
        self.calls: List[Tuple[str, str]] = []
        self.results = results or {}
        self.gate = gate

    async def render_and_print(self, label_type: str, address: str) -> bool:
        self.calls.append((label_type, address))
        if self.gate:
            await self.gate.wait()
        return self.results.get(address, True)


class CountingStore(RecordStore):
    def __init__(self, *args, fail_save: bool = False, **kwargs) -> None:
        super().__init__(*args, **kwargs)
        self.saves = 0
        self.fail_save = fail_save

    async def save(self) -> None:
        self.saves += 1
        if self.fail_save:
            raise StoreIOFailure("disk full")
        await super().save()


@pytest.fixture
def db_path(tmp_path):
    path = tmp_path / "records.sqlite3"
    apply_migrations(path)
    return path


@pytest.mark.asyncio
async def test_known_address_is_skipped_and_store_unchanged(db_path) -> None:
    store = CountingStore(db_path)
    await store.create(DeviceRecord(key="0.36.119.87.182.61", address="0.36.119.87.182.61", label_type="TPP2W-G2"))
    await store.save()
    printer = FakePrinter()
    reconciler = ScanReconciler(store, printer)

    report = await reconciler.reconcile([KNOWN])
    await reconciler.wait_pending()

    assert [o.status for o in report.outcomes] == [OutcomeStatus.SKIPPED]
    assert report.outcomes[0].reason == SKIP_ALREADY_KNOWN
    assert printer.calls == []
    assert await store.count() == 1
    await store.stop()


@pytest.mark.asyncio
async def test_allow_duplicates_queues_known_devices(db_path) -> None:
    store = CountingStore(db_path)
    await store.create(DeviceRecord(key="0.36.119.87.182.61", address="0.36.119.87.182.61", label_type="TPP2W-G2"))
    printer = FakePrinter()
    reconciler = ScanReconciler(store, printer, allow_duplicates=True)

    report = await reconciler.reconcile([KNOWN])
    await reconciler.wait_pending()

    assert [o.status for o in report.outcomes] == [OutcomeStatus.QUEUED]
    assert printer.calls == [("TPP2W-G2", "0.36.119.87.182.61")]
    assert await store.count() == 2
    await store.stop()


@pytest.mark.asyncio
async def test_malformed_identifier_does_not_abort_batch(db_path) -> None:
    store = CountingStore(db_path)
    printer = FakePrinter()
    reconciler = ScanReconciler(store, printer)

    report = await reconciler.reconcile([MALFORMED, FRESH])
    await reconciler.wait_pending()

    assert [o.status for o in report.outcomes] == [OutcomeStatus.FAILED, OutcomeStatus.QUEUED]
    assert "malformed_identifier" in (report.failed[0].reason or "")
    assert printer.calls == [("EM1000", "10.0.0.1")]
    assert await store.has("10.0.0.1")
    await store.stop()


@pytest.mark.asyncio
async def test_oversized_identifier_is_labeled_and_batch_continues(db_path) -> None:
    store = CountingStore(db_path)
    printer = FakePrinter()
    reconciler = ScanReconciler(store, printer)
    huge = DiscoveredDevice(board="EM1000-X", raw_id="[" + "1" * 5000 + "]")

    report = await reconciler.reconcile([huge, FRESH])
    await reconciler.wait_pending()

    assert [o.status for o in report.outcomes] == [OutcomeStatus.QUEUED, OutcomeStatus.QUEUED]
    assert store.saves == 1
    assert await store.has("1" * 5000)
    assert await store.has("10.0.0.1")
    await store.stop()


@pytest.mark.asyncio
async def test_failed_print_leaves_no_record_and_retries(db_path) -> None:
    store = CountingStore(db_path)
    printer = FakePrinter(results={"10.0.0.1": False})
    reconciler = ScanReconciler(store, printer)

    first = await reconciler.reconcile([FRESH])
    assert await reconciler.wait_pending() == [False]
    assert not await store.has("10.0.0.1")

    second = await reconciler.reconcile([FRESH])
    await reconciler.wait_pending()

    assert first.outcomes[0].status is OutcomeStatus.QUEUED
    assert second.outcomes[0].status is OutcomeStatus.QUEUED
    assert len(printer.calls) == 2
    await store.stop()


@pytest.mark.asyncio
async def test_always_policy_records_at_dispatch(db_path) -> None:
    store = CountingStore(db_path)
    printer = FakePrinter(results={"10.0.0.1": False})
    reconciler = ScanReconciler(store, printer, record_policy="always")

    await reconciler.reconcile([FRESH])
    await reconciler.wait_pending()

    assert await store.has("10.0.0.1")
    second = await reconciler.reconcile([FRESH])
    assert second.outcomes[0].reason == SKIP_ALREADY_KNOWN
    await store.stop()


@pytest.mark.asyncio
async def test_in_flight_print_is_not_dispatched_twice(db_path) -> None:
    store = CountingStore(db_path)
    gate = asyncio.Event()
    printer = FakePrinter(gate=gate)
    reconciler = ScanReconciler(store, printer)

    first = await reconciler.reconcile([FRESH])
    second = await reconciler.reconcile([FRESH])
    assert reconciler.pending == 1
    gate.set()
    await reconciler.wait_pending()

    assert first.outcomes[0].status is OutcomeStatus.QUEUED
    assert second.outcomes[0].status is OutcomeStatus.SKIPPED
    assert second.outcomes[0].reason == SKIP_IN_FLIGHT
    assert len(printer.calls) == 1
    assert reconciler.pending == 0
    await store.stop()


@pytest.mark.asyncio
async def test_duplicate_replies_in_one_batch_print_once(db_path) -> None:
    store = CountingStore(db_path)
    printer = FakePrinter()
    reconciler = ScanReconciler(store, printer)

    report = await reconciler.reconcile([FRESH, FRESH])
    await reconciler.wait_pending()

    assert [o.status for o in report.outcomes] == [OutcomeStatus.QUEUED, OutcomeStatus.SKIPPED]
    assert len(printer.calls) == 1
    await store.stop()


@pytest.mark.asyncio
async def test_raw_id_dedup_key(db_path) -> None:
    store = CountingStore(db_path)
    printer = FakePrinter()
    reconciler = ScanReconciler(store, printer, dedup_key="raw_id")
    same_address = DiscoveredDevice(board="EM1000-X", raw_id="[10.0.0.1]")

    await reconciler.reconcile([FRESH])
    await reconciler.wait_pending()
    report = await reconciler.reconcile([FRESH, same_address])
    await reconciler.wait_pending()

    assert [o.status for o in report.outcomes] == [OutcomeStatus.SKIPPED, OutcomeStatus.QUEUED]
    assert await store.has("[010.000.000.001]")
    assert await store.has("[10.0.0.1]")
    await store.stop()


@pytest.mark.asyncio
async def test_store_flushed_once_even_when_every_device_fails(db_path) -> None:
    store = CountingStore(db_path)
    reconciler = ScanReconciler(store, FakePrinter())

    report = await reconciler.reconcile([MALFORMED, MALFORMED])

    assert store.saves == 1
    assert len(report.failed) == 2
    assert report.flushed
    await store.stop()


@pytest.mark.asyncio
async def test_flush_failure_is_reported_not_raised(db_path, caplog) -> None:
    store = CountingStore(db_path, fail_save=True)
    reconciler = ScanReconciler(store, FakePrinter())

    with caplog.at_level("ERROR", logger="tibbo.reconciler"):
        report = await reconciler.reconcile([FRESH])
    await reconciler.wait_pending()

    assert not report.flushed
    assert "disk full" in (report.flush_error or "")
    assert any("Failed to persist device records" in r.getMessage() for r in caplog.records)
    await store.stop()


@pytest.mark.asyncio
async def test_stop_flushes_records_created_after_batch_flush(db_path) -> None:
    store = CountingStore(db_path)
    gate = asyncio.Event()
    reconciler = ScanReconciler(store, FakePrinter(gate=gate))

    await reconciler.reconcile([FRESH])
    gate.set()
    await reconciler.stop()
    await store.stop()

    reopened = RecordStore(db_path)
    assert await reopened.has("10.0.0.1")
    await reopened.stop()


class ExplodingPrinter:
    async def render_and_print(self, label_type: str, address: str) -> bool:
        raise RuntimeError("cups socket closed")


@pytest.mark.asyncio
async def test_unexpected_print_error_is_logged_and_counts_as_failure(db_path, caplog) -> None:
    store = CountingStore(db_path)
    reconciler = ScanReconciler(store, ExplodingPrinter())

    with caplog.at_level("ERROR", logger="tibbo.reconciler"):
        await reconciler.reconcile([FRESH])
        results = await reconciler.wait_pending()

    assert results == [False]
    assert not await store.has("10.0.0.1")
    assert any("Print task failed unexpectedly" in r.getMessage() for r in caplog.records)
    assert reconciler.pending == 0
    await store.stop()


@pytest.mark.asyncio
async def test_removal_during_in_flight_print_keeps_new_record(db_path) -> None:
    store = CountingStore(db_path)
    gate = asyncio.Event()
    printer = FakePrinter(gate=gate)
    reconciler = ScanReconciler(store, printer)
    await store.create(DeviceRecord(key="0.36.119.87.182.61", address="0.36.119.87.182.61", label_type="TPP2W-G2"))
    await store.save()

    await reconciler.reconcile([FRESH])
    assert reconciler.pending == 1

    await store.remove(None)
    await store.save()
    assert await store.count() == 0

    gate.set()
    await reconciler.wait_pending()
    assert await store.has("10.0.0.1")

    await store.remove("0.36.119.87.182.61")
    await store.save()
    await store.stop()

    reopened = RecordStore(db_path)
    assert await reopened.has("10.0.0.1")
    assert await reopened.count() == 1
    await reopened.stop()


def test_invalid_policy_rejected() -> None:
    with pytest.raises(ValueError):
        ScanReconciler(store=None, printer=FakePrinter(), record_policy="sometimes")  # type: ignore[arg-type]


@pytest.mark.asyncio
async def test_suppressed_printer_defers_labels_until_it_recovers(db_path) -> None:
    store = CountingStore(db_path)
    printer = FakePrinter()
    health = HealthMonitor(("printer",), failure_threshold=1, cooldown_seconds=60.0)
    reconciler = ScanReconciler(store, printer, health=health)
    await health.record_failure("printer", RuntimeError("out of labels"))

    deferred = await reconciler.reconcile([FRESH])
    assert deferred.outcomes[0].status is OutcomeStatus.SKIPPED
    assert deferred.outcomes[0].reason == SKIP_PRINTER_SUPPRESSED
    assert printer.calls == []
    assert not await store.has("10.0.0.1")

    await health.record_success("printer")
    retried = await reconciler.reconcile([FRESH])
    await reconciler.wait_pending()

    assert retried.outcomes[0].status is OutcomeStatus.QUEUED
    assert await store.has("10.0.0.1")
    await store.stop()
