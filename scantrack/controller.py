from __future__ import annotations

import logging
from dataclasses import replace
from datetime import datetime, timedelta, timezone
from typing import Protocol
from zoneinfo import ZoneInfo

from .cooldown import last_scan_at, remaining_debounce_ms
from .cycle_time import effective_seconds, to_millis
from .db import Database
from .errors import (
    ConcurrencyConflict,
    DebouncedScan,
    InvalidTransition,
    OpenSessionsRemain,
    TerminalWorkOrder,
    WorkOrderNotFound,
)
from .models import (
    PauseWindow,
    ScanEvent,
    ScanKind,
    SummaryResult,
    TimingConfig,
    ToggleResult,
    WorkOrder,
    WorkOrderStatus,
    WorkOrderSummary,
)
from .sessions import find_session, open_session_for, reconstruct, session_id_for
from .summary import summarize

MANUAL_PAUSE_REASON = "manual"
DEFAULT_SCAN_DEBOUNCE_MS = 1200
DEFAULT_TOGGLE_MAX_RETRIES = 3
DEFAULT_BREAK = ("12:00", "12:30")


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


class RosterLike(Protocol):
    def count_for_line(self, line_id: str) -> int | None: ...


class ScanController:
    """Mutates the scan-event log for one store and rebuilds summaries from it.

    Every decision is taken from a fresh reconstruction of the log; nothing about
    open sessions is held in memory between calls.
    """

    def __init__(
        self,
        db: Database,
        tz: ZoneInfo | None = None,
        *,
        debounce_ms: int = DEFAULT_SCAN_DEBOUNCE_MS,
        max_retries: int = DEFAULT_TOGGLE_MAX_RETRIES,
        roster: RosterLike | None = None,
        default_break: tuple[str, str] | None = DEFAULT_BREAK,
        logger: logging.Logger | None = None,
    ) -> None:
        self.db = db
        self.tz = tz or ZoneInfo("UTC")
        self.debounce_ms = debounce_ms
        self.max_retries = max(0, max_retries)
        self.roster = roster
        self.default_break = default_break
        self.logger = logger or logging.getLogger(__name__)

    def toggle(
        self,
        work_order_id: str,
        serial_barcode: str,
        timing: TimingConfig | None = None,
        *,
        employee_id: str | None = None,
        now_utc: datetime | None = None,
    ) -> ToggleResult:
        """Open a session for the serial, or close the one that is open."""
        return self._scan(work_order_id, serial_barcode, None, timing, employee_id, now_utc)

    def record_scan(
        self,
        work_order_id: str,
        serial_barcode: str,
        kind: ScanKind,
        timing: TimingConfig | None = None,
        *,
        employee_id: str | None = None,
        now_utc: datetime | None = None,
    ) -> ToggleResult:
        """Like toggle, but for stations with separate IN and OUT scanners."""
        return self._scan(work_order_id, serial_barcode, kind, timing, employee_id, now_utc)

    def build_summary(
        self,
        work_order_id: str,
        *,
        roster_count: int | None = None,
        timing: TimingConfig | None = None,
    ) -> SummaryResult:
        work_order = self._require_work_order(work_order_id)
        return self._rebuild(work_order, roster_count=roster_count, timing=timing)

    def delete_session(self, work_order_id: str, session_id: str) -> bool:
        """Remove a session's IN and OUT events together, then rebuild the summary.

        Returns False when the id no longer resolves to any events; the session is
        absent either way.
        """
        work_order = self._require_work_order(work_order_id)

        for attempt in range(self.max_retries + 1):
            session = find_session(self.db.list_events(work_order_id), session_id)
            if session is None:
                self.logger.info("Session %s not found on %s; nothing to delete", session_id, work_order_id)
                return False

            try:
                deleted = self.db.delete_events(work_order_id, session.serial_barcode, session.event_ids)
            except ConcurrencyConflict:
                if attempt >= self.max_retries:
                    raise
                self.logger.warning("Delete of %s raced another station, retrying", session_id)
                continue

            if deleted == 0:
                self.logger.info("Session %s was already deleted", session_id)
                return False

            self.logger.info("Deleted session %s (%d events)", session_id, deleted)
            self._rebuild(work_order)
            return True

        return False

    def start_pause(
        self,
        work_order_id: str,
        reason: str = MANUAL_PAUSE_REASON,
        *,
        now_utc: datetime | None = None,
    ) -> PauseWindow:
        work_order = self._require_active(work_order_id)
        if _ongoing_pause(work_order, reason) is not None:
            raise InvalidTransition(f"A {reason} pause is already running on {work_order_id}")

        events = self.db.list_events(work_order_id)
        if not reconstruct(events).open_sessions:
            raise InvalidTransition("Cannot pause a work order with no units in progress")

        started = now_utc or utc_now()
        pause_id = self.db.add_pause_window(work_order_id, reason, started)
        self.logger.info("Pause started: work_order=%s reason=%s", work_order_id, reason)
        return PauseWindow(reason=reason, start_at=started, id=pause_id)

    def end_pause(
        self,
        work_order_id: str,
        reason: str = MANUAL_PAUSE_REASON,
        *,
        now_utc: datetime | None = None,
    ) -> PauseWindow:
        work_order = self._require_active(work_order_id)
        pause = _ongoing_pause(work_order, reason)
        if pause is None or pause.id is None:
            raise InvalidTransition(f"No {reason} pause is running on {work_order_id}")

        ended = now_utc or utc_now()
        self.db.end_pause_window(pause.id, ended)
        self.logger.info("Pause ended: work_order=%s reason=%s", work_order_id, reason)
        return replace(pause, end_at=ended)

    def close_work_order(
        self,
        work_order_id: str,
        *,
        confirmed_units: int | None = None,
        workers: int | None = None,
        now_utc: datetime | None = None,
    ) -> WorkOrderSummary:
        """Complete the work order once every unit has been scanned out.

        A confirmed quantity or workers count entered at close time replaces the
        scanned figure in the stored summary.
        """
        work_order = self._require_active(work_order_id)
        result = self._rebuild(work_order)
        if result.open_sessions:
            raise OpenSessionsRemain(
                f"{len(result.open_sessions)} unit(s) on {work_order_id} are still in progress"
            )

        summary = result.summary
        if confirmed_units is not None and confirmed_units >= 0:
            summary = replace(summary, completed_units=confirmed_units)
        if workers is not None and workers >= 0:
            summary = replace(summary, active_workers=workers)

        self.db.save_summary(work_order_id, summary)
        self.db.set_work_order_status(work_order_id, WorkOrderStatus.COMPLETED, now_utc or utc_now())
        self.logger.info(
            "Work order %s closed: scanned=%d recorded=%d",
            work_order_id,
            result.summary.completed_units,
            summary.completed_units,
        )
        return summary

    def _scan(
        self,
        work_order_id: str,
        serial_barcode: str,
        expected: ScanKind | None,
        timing: TimingConfig | None,
        employee_id: str | None,
        now_utc: datetime | None,
    ) -> ToggleResult:
        serial = (serial_barcode or "").strip()
        if not serial:
            raise ValueError("Serial barcode is required")

        work_order = self._require_active(work_order_id)
        timing = timing or self.timing_for(work_order)

        for attempt in range(self.max_retries + 1):
            # Read, decide and write again from scratch on every attempt; a stale read is never reused.
            now = now_utc or utc_now()
            events, version = self.db.read_serial(work_order_id, serial)

            last_scan = last_scan_at(events)
            remaining = remaining_debounce_ms(last_scan, self.debounce_ms, now)
            if remaining > 0:
                self.logger.debug("Ignoring repeat scan of %s (%d ms left)", serial, remaining)
                raise DebouncedScan(f"Serial {serial} was just scanned; try again in {remaining} ms")

            current = open_session_for(events, serial, timing)
            action = ScanKind.OUT if current is not None else ScanKind.IN
            if expected is not None and expected is not action:
                if expected is ScanKind.IN:
                    raise InvalidTransition(f"Serial {serial} already has an open session")
                raise InvalidTransition(f"Serial {serial} has no open session to close")

            # A station whose clock lags the serial's last scan still has to land after it.
            occurred_at = now
            if last_scan is not None and occurred_at <= last_scan:
                occurred_at = last_scan + timedelta(milliseconds=1)
                self.logger.warning(
                    "Clock at %s is behind the last scan of %s; stamping %s",
                    now.isoformat(),
                    serial,
                    occurred_at.isoformat(),
                )

            cycle_seconds = None
            if current is not None:
                cycle_seconds = effective_seconds(current.in_at, occurred_at, timing, min_seconds=1)

            event = ScanEvent(
                work_order_id=work_order_id,
                line_id=work_order.line_id,
                product_id=work_order.product_id,
                serial_barcode=serial,
                kind=action,
                occurred_at=occurred_at,
                employee_id=employee_id,
                cycle_seconds=cycle_seconds,
            )

            try:
                stored = self.db.append_event(event, expected_version=version)
            except ConcurrencyConflict:
                if attempt >= self.max_retries:
                    self.logger.error("Giving up on %s/%s after %d attempts", work_order_id, serial, attempt + 1)
                    raise
                self.logger.warning("Concurrent scan of %s on %s, retrying", serial, work_order_id)
                continue

            if current is not None:
                session_id = current.session_id
                self.logger.info("Session closed: serial=%s cycle=%ss", serial, cycle_seconds)
            else:
                session_id = session_id_for(work_order_id, serial, to_millis(stored.occurred_at))
                self.logger.info("Session opened: serial=%s", serial)

            self._rebuild(work_order, timing=timing)

            return ToggleResult(action=action, session_id=session_id, event_id=stored.id, cycle_seconds=cycle_seconds)

        raise ConcurrencyConflict(f"Could not record scan of {serial} on {work_order_id}")

    def _rebuild(
        self,
        work_order: WorkOrder,
        *,
        roster_count: int | None = None,
        timing: TimingConfig | None = None,
    ) -> SummaryResult:
        events = self.db.list_events(work_order.id)
        result = reconstruct(events, timing or self.timing_for(work_order))
        if result.anomalies:
            self.logger.warning("Work order %s has %d scan anomalies", work_order.id, len(result.anomalies))

        if roster_count is None and self.roster is not None:
            roster_count = self.roster.count_for_line(work_order.line_id)

        summary = summarize(result.sessions, roster_count=roster_count)
        # The stored summary of a closed order may carry confirmed figures; leave it alone.
        if not work_order.status.is_terminal:
            self.db.save_summary(work_order.id, summary)

        return SummaryResult(
            summary=summary,
            sessions=result.sessions,
            open_sessions=result.open_sessions,
            anomalies=result.anomalies,
        )

    def timing_for(self, work_order: WorkOrder) -> TimingConfig:
        return work_order.timing_config(self.tz, self.default_break)

    def _require_work_order(self, work_order_id: str) -> WorkOrder:
        work_order = self.db.get_work_order(work_order_id)
        if work_order is None:
            raise WorkOrderNotFound(f"Work order {work_order_id} does not exist")
        return work_order

    def _require_active(self, work_order_id: str) -> WorkOrder:
        work_order = self._require_work_order(work_order_id)
        if work_order.status.is_terminal:
            raise TerminalWorkOrder(f"Work order {work_order_id} is {work_order.status.value}")
        return work_order


def _ongoing_pause(work_order: WorkOrder, reason: str) -> PauseWindow | None:
    for pause in reversed(work_order.pause_windows):
        if pause.reason == reason and pause.ongoing:
            return pause
    return None
