"""Decide which discovered devices need a label and dispatch their prints.

One call to :meth:`ScanReconciler.reconcile` handles one discovery batch:

* every device is normalized; malformed identifiers are reported as failed
  and the batch moves on;
* devices whose dedup key is already recorded (or whose print is still in
  flight) are skipped unless duplicates are allowed;
* while the printer breaker is open, remaining devices are skipped and
  picked up by a later scan;
* every other device gets a print task, and the batch does not wait for it;
* the store is flushed once after dispatch.

Print tasks perform their own store write when they finish. Under the
``on_success`` record policy a record exists only once the printer reported
success; under ``always`` it is created at dispatch. The batch flush does not
wait for print tasks, so a record created after it is made durable by the next
flush (next batch, an HTTP removal, or :meth:`ScanReconciler.stop`).
"""

from __future__ import annotations

import asyncio
import sqlite3
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, Iterable, List, Optional, Protocol, Set

from .config import Config
from .errors import MalformedIdentifier, StoreIOFailure
from .health import HealthMonitor
from .identifiers import DiscoveredDevice, NormalizedDevice, normalize_device
from .logging import get_logger
from .metrics import record_reconcile_outcome, set_prints_in_flight
from .records import DeviceRecord, RecordStore


class LabelPrinterLike(Protocol):
    async def render_and_print(self, label_type: str, address: str) -> bool:
        ...


class OutcomeStatus(str, Enum):
    SKIPPED = "skipped"
    QUEUED = "queued"
    FAILED = "failed"


SKIP_ALREADY_KNOWN = "already_known"
SKIP_IN_FLIGHT = "in_flight"
SKIP_PRINTER_SUPPRESSED = "printer_suppressed"


@dataclass(frozen=True)
class DeviceOutcome:
    """Reconciliation result for one discovered device."""

    raw_id: str
    board: str
    status: OutcomeStatus
    address: Optional[str] = None
    label_type: Optional[str] = None
    reason: Optional[str] = None

    def as_dict(self) -> Dict[str, Any]:
        return {
            "raw_id": self.raw_id,
            "board": self.board,
            "status": self.status.value,
            "address": self.address,
            "label_type": self.label_type,
            "reason": self.reason,
        }


@dataclass
class ReconciliationReport:
    """Outcomes of a reconciliation batch, in discovery order."""

    outcomes: List[DeviceOutcome] = field(default_factory=list)
    flush_error: Optional[str] = None

    def _with_status(self, status: OutcomeStatus) -> List[DeviceOutcome]:
        return [outcome for outcome in self.outcomes if outcome.status is status]

    @property
    def queued(self) -> List[DeviceOutcome]:
        return self._with_status(OutcomeStatus.QUEUED)

    @property
    def skipped(self) -> List[DeviceOutcome]:
        return self._with_status(OutcomeStatus.SKIPPED)

    @property
    def failed(self) -> List[DeviceOutcome]:
        return self._with_status(OutcomeStatus.FAILED)

    @property
    def flushed(self) -> bool:
        return self.flush_error is None

    def summary(self) -> Dict[str, int]:
        return {
            "discovered": len(self.outcomes),
            "queued": len(self.queued),
            "skipped": len(self.skipped),
            "failed": len(self.failed),
        }


class ScanReconciler:
    """Turn discovery batches into label prints and device records."""

    def __init__(
        self,
        store: RecordStore,
        printer: LabelPrinterLike,
        *,
        allow_duplicates: bool = False,
        dedup_key: str = "address",
        record_policy: str = "on_success",
        printer_name: Optional[str] = None,
        health: Optional[HealthMonitor] = None,
    ) -> None:
        if dedup_key not in ("address", "raw_id"):
            raise ValueError(f"Unsupported dedup key: {dedup_key}")
        if record_policy not in ("on_success", "always"):
            raise ValueError(f"Unsupported record policy: {record_policy}")
        self.store = store
        self.printer = printer
        self.allow_duplicates = allow_duplicates
        self.dedup_key = dedup_key
        self.record_policy = record_policy
        self.printer_name = printer_name
        self.health = health
        self.logger = get_logger("tibbo.reconciler")
        self._tasks: Set[asyncio.Task[bool]] = set()
        self._in_flight: Dict[str, int] = {}

    @classmethod
    def from_config(
        cls,
        config: Config,
        store: RecordStore,
        printer: LabelPrinterLike,
        health: Optional[HealthMonitor] = None,
    ) -> "ScanReconciler":
        return cls(
            store,
            printer,
            allow_duplicates=config.allow_duplicates,
            dedup_key=config.dedup_key,
            record_policy=config.record_policy,
            printer_name=config.printer,
            health=health,
        )

    @property
    def pending(self) -> int:
        """Number of dispatched prints that have not finished."""

        return len(self._tasks)

    def key_for(self, device: NormalizedDevice) -> str:
        return device.raw_id if self.dedup_key == "raw_id" else device.address

    async def reconcile(
        self,
        discovered: Iterable[DiscoveredDevice],
        *,
        allow_duplicates: Optional[bool] = None,
    ) -> ReconciliationReport:
        """Process one discovery batch and flush the store once."""

        allow = self.allow_duplicates if allow_duplicates is None else allow_duplicates
        report = ReconciliationReport()
        for device in discovered:
            outcome = await self._reconcile_device(device, allow)
            record_reconcile_outcome(outcome.status.value)
            report.outcomes.append(outcome)

        try:
            await self.store.save()
        except StoreIOFailure as exc:
            report.flush_error = str(exc)
            self.logger.exception(
                "Failed to persist device records; labeled devices may print again",
                extra=report.summary(),
            )

        if report.outcomes:
            self.logger.info("Reconciled discovery batch", extra=report.summary())
        return report

    async def _reconcile_device(self, device: DiscoveredDevice, allow_duplicates: bool) -> DeviceOutcome:
        try:
            normalized = normalize_device(device)
        except MalformedIdentifier as exc:
            self.logger.warning(
                "Skipping device with malformed identifier",
                extra={"raw_id": device.raw_id, "board": device.board, "error": str(exc)},
            )
            return DeviceOutcome(
                raw_id=device.raw_id,
                board=device.board,
                status=OutcomeStatus.FAILED,
                reason=f"malformed_identifier: {exc.segment!r}",
            )

        key = self.key_for(normalized)

        def _outcome(status: OutcomeStatus, reason: Optional[str] = None) -> DeviceOutcome:
            return DeviceOutcome(
                raw_id=device.raw_id,
                board=device.board,
                status=status,
                address=normalized.address,
                label_type=normalized.label_type,
                reason=reason,
            )

        if not allow_duplicates:
            if key in self._in_flight:
                self.logger.debug("Label already printing", extra={"key": key})
                return _outcome(OutcomeStatus.SKIPPED, SKIP_IN_FLIGHT)
            try:
                known = await self.store.has(key)
            except (sqlite3.Error, RuntimeError) as exc:
                self.logger.exception("Record lookup failed", extra={"key": key})
                return _outcome(OutcomeStatus.FAILED, f"store_error: {exc}")
            if known:
                self.logger.debug("Device already labeled", extra={"key": key})
                return _outcome(OutcomeStatus.SKIPPED, SKIP_ALREADY_KNOWN)

        if self.health is not None:
            allowed, cooldown = await self.health.allow_attempt("printer")
            if not allowed:
                self.logger.warning(
                    "Printer suppressed after failures; label deferred",
                    extra={"address": normalized.address, "cooldown_seconds": round(cooldown, 2)},
                )
                return _outcome(OutcomeStatus.SKIPPED, SKIP_PRINTER_SUPPRESSED)

        if self.record_policy == "always":
            try:
                await self._create_record(normalized, key, allow_duplicates)
            except (sqlite3.Error, RuntimeError) as exc:
                self.logger.exception("Failed to record device", extra={"key": key})
                return _outcome(OutcomeStatus.FAILED, f"store_error: {exc}")

        self.logger.info(
            "Printing label",
            extra={"address": normalized.address, "label_type": normalized.label_type},
        )
        self._dispatch(normalized, key, allow_duplicates)
        return _outcome(OutcomeStatus.QUEUED)

    def _dispatch(self, device: NormalizedDevice, key: str, allow_duplicates: bool) -> None:
        self._in_flight[key] = self._in_flight.get(key, 0) + 1
        task = asyncio.create_task(self._print_and_record(device, key, allow_duplicates))
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        set_prints_in_flight(len(self._tasks))

    async def _print_and_record(self, device: NormalizedDevice, key: str, allow_duplicates: bool) -> bool:
        try:
            try:
                success = await self.printer.render_and_print(device.label_type, device.address)
            except asyncio.CancelledError:
                raise
            except Exception:
                self.logger.exception(
                    "Print task failed unexpectedly",
                    extra={"address": device.address, "label_type": device.label_type},
                )
                return False
            if not success:
                if self.record_policy == "on_success":
                    self.logger.warning(
                        "Label not printed; device will be retried on the next scan",
                        extra={"address": device.address},
                    )
                return False
            if self.record_policy == "on_success":
                try:
                    await self._create_record(device, key, allow_duplicates)
                except (sqlite3.Error, RuntimeError):
                    self.logger.exception(
                        "Printed label but failed to record device", extra={"key": key}
                    )
            return True
        finally:
            remaining = self._in_flight.get(key, 1) - 1
            if remaining > 0:
                self._in_flight[key] = remaining
            else:
                self._in_flight.pop(key, None)
            set_prints_in_flight(max(0, len(self._tasks) - 1))

    async def _create_record(self, device: NormalizedDevice, key: str, allow_duplicates: bool) -> bool:
        return await self.store.create(
            DeviceRecord(
                key=key,
                address=device.address,
                label_type=device.label_type,
                raw_id=device.raw_id,
                printer=self.printer_name,
            ),
            allow_duplicates=allow_duplicates,
        )

    async def wait_pending(self) -> List[bool]:
        """Wait for every dispatched print; return their success flags."""

        if not self._tasks:
            return []
        results = await asyncio.gather(*list(self._tasks), return_exceptions=True)
        return [result is True for result in results]

    async def stop(self) -> None:
        """Wait for in-flight prints, then flush their records."""

        await self.wait_pending()
        try:
            await self.store.save()
        except StoreIOFailure:
            self.logger.exception("Final flush of device records failed")
