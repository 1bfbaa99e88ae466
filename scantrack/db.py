from __future__ import annotations

import json
import sqlite3
from collections.abc import Iterable, Iterator
from contextlib import contextmanager
from dataclasses import replace
from datetime import datetime, timezone
from pathlib import Path

from .errors import ConcurrencyConflict, PersistenceFailure, TerminalWorkOrder
from .models import (
    PauseWindow,
    ScanEvent,
    ScanKind,
    WorkOrder,
    WorkOrderStatus,
    WorkOrderSummary,
)


class Database:
    """Thin SQLite access layer for the scan-event log and work-order records."""

    def __init__(self, db_path: str | Path, timeout: float = 5.0) -> None:
        # Autocommit mode; multi-statement writes open their own BEGIN IMMEDIATE.
        self._conn = sqlite3.connect(str(db_path), timeout=timeout, isolation_level=None)
        self._conn.row_factory = sqlite3.Row
        self._closed = False

    def close(self) -> None:
        if self._closed:
            return
        self._conn.close()
        self._closed = True

    def initialize(self) -> None:
        # scan_events: append-only IN/OUT log, the only source of truth for sessions.
        # serial_versions: optimistic-concurrency counter per (work order, serial).
        # work_orders / pause_windows: timing configuration, status and the cached summary.
        with self._guard():
            self._conn.executescript(
                """
                CREATE TABLE IF NOT EXISTS scan_events (
                  id INTEGER PRIMARY KEY AUTOINCREMENT,
                  work_order_id TEXT NOT NULL,
                  line_id TEXT NOT NULL,
                  product_id TEXT NOT NULL,
                  serial_barcode TEXT NOT NULL,
                  kind TEXT NOT NULL CHECK (kind IN ('IN', 'OUT')),
                  employee_id TEXT,
                  occurred_at_utc TEXT NOT NULL,
                  cycle_seconds INTEGER
                );

                CREATE INDEX IF NOT EXISTS idx_scan_events_serial
                  ON scan_events (work_order_id, serial_barcode);

                CREATE TABLE IF NOT EXISTS serial_versions (
                  work_order_id TEXT NOT NULL,
                  serial_barcode TEXT NOT NULL,
                  version INTEGER NOT NULL DEFAULT 0,
                  PRIMARY KEY (work_order_id, serial_barcode)
                );

                CREATE TABLE IF NOT EXISTS work_orders (
                  id TEXT PRIMARY KEY,
                  line_id TEXT NOT NULL,
                  product_id TEXT NOT NULL,
                  status TEXT NOT NULL,
                  break_start_time TEXT,
                  break_end_time TEXT,
                  produced_from_scans INTEGER NOT NULL DEFAULT 0,
                  actual_workers_count INTEGER NOT NULL DEFAULT 0,
                  scan_summary TEXT,
                  completed_at_utc TEXT
                );

                CREATE TABLE IF NOT EXISTS pause_windows (
                  id INTEGER PRIMARY KEY AUTOINCREMENT,
                  work_order_id TEXT NOT NULL,
                  reason TEXT NOT NULL,
                  start_at_utc TEXT NOT NULL,
                  end_at_utc TEXT
                );
                """
            )

    def create_work_order(self, work_order: WorkOrder) -> None:
        with self._guard():
            self._conn.execute(
                """
                INSERT INTO work_orders (id, line_id, product_id, status, break_start_time, break_end_time)
                VALUES (?, ?, ?, ?, ?, ?)
                """,
                (
                    work_order.id,
                    work_order.line_id,
                    work_order.product_id,
                    work_order.status.value,
                    work_order.break_start_time,
                    work_order.break_end_time,
                ),
            )

    def get_work_order(self, work_order_id: str) -> WorkOrder | None:
        with self._guard():
            row = self._conn.execute("SELECT * FROM work_orders WHERE id = ?", (work_order_id,)).fetchone()
            if row is None:
                return None
            pauses = self._conn.execute(
                """
                SELECT id, reason, start_at_utc, end_at_utc
                FROM pause_windows
                WHERE work_order_id = ?
                ORDER BY start_at_utc ASC, id ASC
                """,
                (work_order_id,),
            ).fetchall()

        summary = WorkOrderSummary.from_dict(json.loads(row["scan_summary"])) if row["scan_summary"] else None
        return WorkOrder(
            id=row["id"],
            line_id=row["line_id"],
            product_id=row["product_id"],
            status=WorkOrderStatus(row["status"]),
            break_start_time=row["break_start_time"],
            break_end_time=row["break_end_time"],
            pause_windows=tuple(
                PauseWindow(
                    id=pause["id"],
                    reason=pause["reason"],
                    start_at=_from_iso(pause["start_at_utc"]),
                    end_at=_from_iso(pause["end_at_utc"]) if pause["end_at_utc"] else None,
                )
                for pause in pauses
            ),
            produced_from_scans=row["produced_from_scans"],
            actual_workers_count=row["actual_workers_count"],
            scan_summary=summary,
            completed_at=_from_iso(row["completed_at_utc"]) if row["completed_at_utc"] else None,
        )

    def set_work_order_status(
        self,
        work_order_id: str,
        status: WorkOrderStatus,
        completed_at_utc: datetime | None = None,
    ) -> None:
        completed = _to_utc(completed_at_utc).isoformat() if completed_at_utc else None
        with self._guard():
            self._conn.execute(
                "UPDATE work_orders SET status = ?, completed_at_utc = COALESCE(?, completed_at_utc) WHERE id = ?",
                (status.value, completed, work_order_id),
            )

    def save_summary(self, work_order_id: str, summary: WorkOrderSummary) -> None:
        # Cached copy only; every reader can rebuild it from scan_events.
        # Closed orders keep the figures confirmed at close time.
        with self._guard():
            self._conn.execute(
                """
                UPDATE work_orders
                SET scan_summary = ?, produced_from_scans = ?, actual_workers_count = ?
                WHERE id = ? AND status IN (?, ?)
                """,
                (
                    json.dumps(summary.to_dict()),
                    summary.completed_units,
                    summary.active_workers,
                    work_order_id,
                    WorkOrderStatus.PENDING.value,
                    WorkOrderStatus.IN_PROGRESS.value,
                ),
            )

    def add_pause_window(self, work_order_id: str, reason: str, start_at_utc: datetime) -> int:
        with self._guard():
            cursor = self._conn.execute(
                "INSERT INTO pause_windows (work_order_id, reason, start_at_utc) VALUES (?, ?, ?)",
                (work_order_id, reason, _to_utc(start_at_utc).isoformat()),
            )
        return int(cursor.lastrowid)

    def end_pause_window(self, pause_id: int, end_at_utc: datetime) -> None:
        with self._guard():
            self._conn.execute(
                "UPDATE pause_windows SET end_at_utc = ? WHERE id = ? AND end_at_utc IS NULL",
                (_to_utc(end_at_utc).isoformat(), pause_id),
            )

    def list_events(self, work_order_id: str) -> list[ScanEvent]:
        with self._guard():
            rows = self._conn.execute(
                "SELECT * FROM scan_events WHERE work_order_id = ? ORDER BY id ASC",
                (work_order_id,),
            ).fetchall()
        return [_event_from_row(row) for row in rows]

    def read_serial(self, work_order_id: str, serial_barcode: str) -> tuple[list[ScanEvent], int]:
        """Return one serial's events together with the version they were read at."""
        with self._transaction(immediate=False) as conn:
            rows = conn.execute(
                """
                SELECT * FROM scan_events
                WHERE work_order_id = ? AND serial_barcode = ?
                ORDER BY id ASC
                """,
                (work_order_id, serial_barcode),
            ).fetchall()
            version = self._serial_version(work_order_id, serial_barcode)
        return [_event_from_row(row) for row in rows], version

    def append_event(self, event: ScanEvent, expected_version: int) -> ScanEvent:
        """Append ``event`` only if the serial is still at ``expected_version``.

        The work order's status is read under the same write lock: a scan never
        lands on an order that another station has just closed, and the first
        scan of a pending order marks it in progress.
        """
        with self._transaction() as conn:
            row = conn.execute("SELECT status FROM work_orders WHERE id = ?", (event.work_order_id,)).fetchone()
            if row is not None and WorkOrderStatus(row["status"]).is_terminal:
                raise TerminalWorkOrder(f"Work order {event.work_order_id} is {row['status']}")

            current = self._serial_version(event.work_order_id, event.serial_barcode)
            if current != expected_version:
                raise ConcurrencyConflict(
                    f"Serial {event.serial_barcode} on {event.work_order_id} changed "
                    f"(expected version {expected_version}, found {current})"
                )

            cursor = conn.execute(
                """
                INSERT INTO scan_events (
                  work_order_id, line_id, product_id, serial_barcode, kind,
                  employee_id, occurred_at_utc, cycle_seconds
                )
                VALUES (?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    event.work_order_id,
                    event.line_id,
                    event.product_id,
                    event.serial_barcode,
                    event.kind.value,
                    event.employee_id,
                    _to_utc(event.occurred_at).isoformat(),
                    event.cycle_seconds,
                ),
            )
            event_id = int(cursor.lastrowid)
            self._bump_serial_version(event.work_order_id, event.serial_barcode)
            conn.execute(
                "UPDATE work_orders SET status = ? WHERE id = ? AND status = ?",
                (WorkOrderStatus.IN_PROGRESS.value, event.work_order_id, WorkOrderStatus.PENDING.value),
            )

        return replace(event, id=event_id)

    def delete_events(self, work_order_id: str, serial_barcode: str, event_ids: Iterable[int]) -> int:
        """Delete a session's events as one unit; returns how many were removed.

        Either every id is deleted or none is: when only part of the set still
        exists another station got there first, and the transaction is rolled back.
        """
        ids = sorted(set(event_ids))
        if not ids:
            return 0

        placeholders = ", ".join("?" for _ in ids)
        with self._transaction() as conn:
            cursor = conn.execute(
                f"DELETE FROM scan_events WHERE work_order_id = ? AND id IN ({placeholders})",
                (work_order_id, *ids),
            )
            deleted = cursor.rowcount
            if deleted == 0:
                return 0
            if deleted != len(ids):
                raise ConcurrencyConflict(
                    f"Only {deleted} of {len(ids)} events for serial {serial_barcode} were still present"
                )
            self._bump_serial_version(work_order_id, serial_barcode)
        return deleted

    def _serial_version(self, work_order_id: str, serial_barcode: str) -> int:
        row = self._conn.execute(
            "SELECT version FROM serial_versions WHERE work_order_id = ? AND serial_barcode = ?",
            (work_order_id, serial_barcode),
        ).fetchone()
        return 0 if row is None else int(row["version"])

    def _bump_serial_version(self, work_order_id: str, serial_barcode: str) -> None:
        self._conn.execute(
            """
            INSERT INTO serial_versions (work_order_id, serial_barcode, version)
            VALUES (?, ?, 1)
            ON CONFLICT(work_order_id, serial_barcode)
            DO UPDATE SET version = version + 1
            """,
            (work_order_id, serial_barcode),
        )

    @contextmanager
    def _guard(self) -> Iterator[None]:
        try:
            yield
        except sqlite3.Error as exc:
            raise PersistenceFailure(str(exc)) from exc

    @contextmanager
    def _transaction(self, immediate: bool = True) -> Iterator[sqlite3.Connection]:
        # IMMEDIATE takes the write lock up front so check-then-insert cannot interleave
        # with another connection doing the same.
        with self._guard():
            self._conn.execute("BEGIN IMMEDIATE" if immediate else "BEGIN")
            try:
                yield self._conn
            except BaseException:
                self._conn.execute("ROLLBACK")
                raise
            self._conn.execute("COMMIT")


def _event_from_row(row: sqlite3.Row) -> ScanEvent:
    return ScanEvent(
        id=row["id"],
        work_order_id=row["work_order_id"],
        line_id=row["line_id"],
        product_id=row["product_id"],
        serial_barcode=row["serial_barcode"],
        kind=ScanKind(row["kind"]),
        employee_id=row["employee_id"],
        occurred_at=_from_iso(row["occurred_at_utc"]),
        cycle_seconds=row["cycle_seconds"],
    )


def _from_iso(value: str) -> datetime:
    parsed = datetime.fromisoformat(value)
    if parsed.tzinfo is None:
        return parsed.replace(tzinfo=timezone.utc)
    return parsed.astimezone(timezone.utc)


def _to_utc(value: datetime) -> datetime:
    """Normalize a timezone-aware datetime to UTC for storage."""
    if value.tzinfo is None:
        raise ValueError("Datetime must be timezone-aware")
    return value.astimezone(timezone.utc)
