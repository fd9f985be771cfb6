"""Persistent set of devices that already received a label."""

from __future__ import annotations

import sqlite3
from dataclasses import dataclass
from pathlib import Path
from typing import List, Optional

from .db import DEFAULT_INTEGRITY_CHECK_INTERVAL, DatabaseManager
from .errors import StoreIOFailure
from .logging import get_logger
from .metrics import record_store_flush_failure, set_device_records


@dataclass(frozen=True)
class DeviceRecord:
    """A device that has been labeled.

    ``key`` is the value duplicate detection compares against: the canonical
    address, or the raw identifier when the store is keyed by raw id.
    """

    key: str
    address: str
    label_type: str
    raw_id: Optional[str] = None
    printer: Optional[str] = None


@dataclass(frozen=True)
class DeviceRecordRow:
    """Stored record with database metadata for API exposure."""

    id: int
    key: str
    address: str
    label_type: str
    raw_id: Optional[str]
    printer: Optional[str]
    created_at: str


class RecordStore:
    """SQLite-backed record store.

    Mutations are staged in the connection's open transaction and become
    durable on :meth:`save`. Reads see staged mutations, so ``has`` reflects
    records created since the last flush.
    """

    def __init__(
        self,
        db_path: Path,
        *,
        integrity_check_interval: float = DEFAULT_INTEGRITY_CHECK_INTERVAL,
    ) -> None:
        self.db = DatabaseManager(db_path, integrity_check_interval=integrity_check_interval)
        self.logger = get_logger("tibbo.records")

    async def start(self) -> None:
        await self.db.start_integrity_checks()
        set_device_records(await self.count())

    async def stop(self) -> None:
        await self.db.close()

    async def has(self, key: str) -> bool:
        return await self.db.run(lambda conn: self._has(conn, key))

    async def create(self, record: DeviceRecord, *, allow_duplicates: bool = False) -> bool:
        """Stage a new record.

        Returns ``False`` without writing when a record with the same key
        exists and duplicates are not allowed. The check and the insert run
        under the same connection lock.
        """

        created = await self.db.run(lambda conn: self._create(conn, record, allow_duplicates))
        if created:
            self.logger.info(
                "Recorded labeled device",
                extra={"key": record.key, "address": record.address, "label_type": record.label_type},
            )
        else:
            self.logger.debug("Device already recorded", extra={"key": record.key})
        return created

    async def remove(self, key: Optional[str] = None) -> int:
        """Stage removal of the records matching ``key``, or of every record."""

        removed = await self.db.run(lambda conn: self._remove(conn, "key", key))
        self._log_removal(removed, "key", key)
        return removed

    async def remove_by_address(self, address: str) -> int:
        removed = await self.db.run(lambda conn: self._remove(conn, "address", address))
        self._log_removal(removed, "address", address)
        return removed

    async def remove_by_raw_id(self, raw_id: str) -> int:
        removed = await self.db.run(lambda conn: self._remove(conn, "raw_id", raw_id))
        self._log_removal(removed, "raw_id", raw_id)
        return removed

    async def save(self) -> None:
        """Durably flush every staged mutation.

        Raises :class:`StoreIOFailure` when the flush fails.
        """

        try:
            await self.db.commit()
            count = await self.count()
        except (sqlite3.Error, OSError, RuntimeError) as exc:
            record_store_flush_failure()
            raise StoreIOFailure(f"Failed to flush device records to {self.db.db_path}: {exc}") from exc
        set_device_records(count)
        self.logger.debug("Flushed device records", extra={"records": count})

    async def records(self) -> List[DeviceRecordRow]:
        return await self.db.run(self._records)

    async def record(self, key: str) -> Optional[DeviceRecordRow]:
        rows = await self.db.run(lambda conn: self._records(conn, key))
        return rows[0] if rows else None

    async def count(self) -> int:
        return await self.db.run(
            lambda conn: int(conn.execute("SELECT COUNT(*) FROM devices").fetchone()[0])
        )

    def _log_removal(self, removed: int, column: str, value: Optional[str]) -> None:
        if value is None:
            self.logger.warning("Removed all device records", extra={"removed": removed})
        elif removed:
            self.logger.info("Removed device record", extra={column: value, "removed": removed})

    def _has(self, conn: sqlite3.Connection, key: str) -> bool:
        row = conn.execute("SELECT 1 FROM devices WHERE key = ? LIMIT 1", (key,)).fetchone()
        return row is not None

    def _create(self, conn: sqlite3.Connection, record: DeviceRecord, allow_duplicates: bool) -> bool:
        if not allow_duplicates and self._has(conn, record.key):
            return False
        conn.execute(
            """
            INSERT INTO devices (key, address, label_type, raw_id, printer)
            VALUES (?, ?, ?, ?, ?)
            """,
            (record.key, record.address, record.label_type, record.raw_id, record.printer),
        )
        return True

    def _remove(self, conn: sqlite3.Connection, column: str, value: Optional[str]) -> int:
        if value is None:
            cursor = conn.execute("DELETE FROM devices")
        else:
            cursor = conn.execute(f"DELETE FROM devices WHERE {column} = ?", (value,))
        return cursor.rowcount

    def _records(self, conn: sqlite3.Connection, key: Optional[str] = None) -> List[DeviceRecordRow]:
        query = """
            SELECT id, key, address, label_type, raw_id, printer, created_at
            FROM devices
        """
        params: tuple = ()
        if key is not None:
            query += " WHERE key = ?"
            params = (key,)
        query += " ORDER BY id"
        return [
            DeviceRecordRow(
                id=row["id"],
                key=row["key"],
                address=row["address"],
                label_type=row["label_type"],
                raw_id=row["raw_id"],
                printer=row["printer"],
                created_at=row["created_at"],
            )
            for row in conn.execute(query, params).fetchall()
        ]
