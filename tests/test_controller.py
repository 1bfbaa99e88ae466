from dataclasses import replace
from datetime import datetime, timedelta, timezone

import pytest

from scantrack.controller import ScanController
from scantrack.db import Database
from scantrack.errors import (
    ConcurrencyConflict,
    DebouncedScan,
    InvalidTransition,
    OpenSessionsRemain,
    TerminalWorkOrder,
    WorkOrderNotFound,
)
from scantrack.models import ScanEvent, ScanKind, SessionStatus, WorkOrder, WorkOrderStatus
from scantrack.summary import live_elapsed_seconds


def at(hour: int, minute: int, second: int = 0) -> datetime:
    return datetime(2026, 2, 2, hour, minute, second, tzinfo=timezone.utc)


def make_controller(db: Database | None = None, **kwargs) -> ScanController:
    db = db or Database(":memory:")
    db.initialize()
    db.create_work_order(WorkOrder(id="WO-1", line_id="L1", product_id="P1", break_start_time="12:00", break_end_time="12:30"))
    return ScanController(db=db, **kwargs)


class RacingDatabase(Database):
    """Lets another station land a scan of the same serial just before ours."""

    def __init__(self, races: int) -> None:
        super().__init__(":memory:")
        self.races = races

    def append_event(self, event: ScanEvent, expected_version: int) -> ScanEvent:
        if self.races > 0:
            self.races -= 1
            rival = replace(event, occurred_at=event.occurred_at - timedelta(seconds=5), employee_id="rival")
            super().append_event(rival, expected_version)
        return super().append_event(event, expected_version)


class ClosingDatabase(Database):
    """Another station closes the order between our read and our write."""

    def __init__(self) -> None:
        super().__init__(":memory:")

    def append_event(self, event: ScanEvent, expected_version: int) -> ScanEvent:
        self.set_work_order_status(event.work_order_id, WorkOrderStatus.COMPLETED, at(10, 0))
        return super().append_event(event, expected_version)


def test_toggle_alternates_in_and_out() -> None:
    controller = make_controller()

    first = controller.toggle("WO-1", "SN-1", now_utc=at(10, 0))
    second = controller.toggle("WO-1", "SN-1", now_utc=at(10, 5))
    third = controller.toggle("WO-1", "SN-1", now_utc=at(10, 7))

    assert first.action is ScanKind.IN
    assert second.action is ScanKind.OUT
    assert second.cycle_seconds == 300
    assert second.session_id == first.session_id
    assert third.action is ScanKind.IN
    assert third.session_id != first.session_id

    result = controller.build_summary("WO-1")
    assert [session.status for session in result.sessions] == [SessionStatus.CLOSED, SessionStatus.OPEN]
    assert result.sessions[0].out_at > result.sessions[0].in_at
    assert result.summary.completed_units == 1
    assert result.summary.in_progress_units == 1


def test_toggle_uses_work_order_break_window() -> None:
    controller = make_controller()

    controller.toggle("WO-1", "SN-1", now_utc=at(11, 50))
    result = controller.toggle("WO-1", "SN-1", now_utc=at(12, 40))

    assert result.cycle_seconds == 1200


def test_closing_cycle_is_at_least_one_second() -> None:
    controller = make_controller(debounce_ms=0)

    controller.toggle("WO-1", "SN-1", now_utc=at(12, 5))
    result = controller.toggle("WO-1", "SN-1", now_utc=at(12, 25))

    assert result.cycle_seconds == 1


def test_serials_are_independent() -> None:
    controller = make_controller()

    controller.toggle("WO-1", "SN-1", now_utc=at(10, 0))
    result = controller.toggle("WO-1", "SN-2", now_utc=at(10, 0))

    assert result.action is ScanKind.IN
    assert len(controller.build_summary("WO-1").open_sessions) == 2


def test_first_scan_moves_pending_order_in_progress() -> None:
    controller = make_controller()

    controller.toggle("WO-1", "SN-1", now_utc=at(10, 0))

    assert controller.db.get_work_order("WO-1").status is WorkOrderStatus.IN_PROGRESS


def test_toggle_refreshes_cached_summary() -> None:
    controller = make_controller()

    controller.toggle("WO-1", "SN-1", employee_id="emp-1", now_utc=at(10, 0))

    cached = controller.db.get_work_order("WO-1").scan_summary
    assert cached.in_progress_units == 1
    assert cached.active_workers == 1


def test_blank_serial_is_rejected() -> None:
    controller = make_controller()

    with pytest.raises(ValueError):
        controller.toggle("WO-1", "   ", now_utc=at(10, 0))


def test_unknown_work_order_is_rejected() -> None:
    controller = make_controller()

    with pytest.raises(WorkOrderNotFound):
        controller.toggle("WO-404", "SN-1", now_utc=at(10, 0))


def test_terminal_work_order_rejects_toggle_without_writing() -> None:
    controller = make_controller()
    controller.db.set_work_order_status("WO-1", WorkOrderStatus.CANCELLED)

    with pytest.raises(TerminalWorkOrder):
        controller.toggle("WO-1", "SN-1", now_utc=at(10, 0))

    assert controller.db.list_events("WO-1") == []


def test_rapid_repeat_scan_is_debounced() -> None:
    controller = make_controller(debounce_ms=1200)

    controller.toggle("WO-1", "SN-1", now_utc=at(10, 0))
    with pytest.raises(DebouncedScan):
        controller.toggle("WO-1", "SN-1", now_utc=at(10, 0) + timedelta(milliseconds=800))

    result = controller.toggle("WO-1", "SN-1", now_utc=at(10, 0, 2))
    assert result.action is ScanKind.OUT
    assert len(controller.db.list_events("WO-1")) == 2


def test_losing_toggle_retries_with_fresh_read() -> None:
    controller = make_controller(RacingDatabase(races=1), debounce_ms=0)

    result = controller.toggle("WO-1", "SN-1", now_utc=at(10, 0))

    # The rival's IN landed first, so the retried decision closes it instead of opening a second session.
    assert result.action is ScanKind.OUT
    assert result.cycle_seconds == 5
    rebuilt = controller.build_summary("WO-1")
    assert rebuilt.anomalies == []
    assert rebuilt.summary.completed_units == 1
    assert rebuilt.summary.in_progress_units == 0


def test_losing_toggle_inside_debounce_window_is_rejected_not_dropped() -> None:
    db = RacingDatabase(races=1)
    controller = make_controller(db, debounce_ms=10_000)

    with pytest.raises(DebouncedScan):
        controller.toggle("WO-1", "SN-1", now_utc=at(10, 0))

    assert [event.employee_id for event in db.list_events("WO-1")] == ["rival"]


def test_conflict_retries_are_bounded() -> None:
    db = RacingDatabase(races=10)
    controller = make_controller(db, debounce_ms=0, max_retries=2)

    with pytest.raises(ConcurrencyConflict):
        controller.toggle("WO-1", "SN-1", now_utc=at(10, 0))

    assert all(event.employee_id == "rival" for event in db.list_events("WO-1"))
    assert len(db.list_events("WO-1")) == 3


def test_record_scan_rejects_invalid_transitions() -> None:
    controller = make_controller()

    with pytest.raises(InvalidTransition):
        controller.record_scan("WO-1", "SN-1", ScanKind.OUT, now_utc=at(10, 0))

    controller.record_scan("WO-1", "SN-1", ScanKind.IN, now_utc=at(10, 0))
    with pytest.raises(InvalidTransition):
        controller.record_scan("WO-1", "SN-1", ScanKind.IN, now_utc=at(10, 1))

    result = controller.record_scan("WO-1", "SN-1", ScanKind.OUT, now_utc=at(10, 2))
    assert result.cycle_seconds == 120
    assert len(controller.db.list_events("WO-1")) == 2


def test_delete_closed_session_removes_both_events() -> None:
    controller = make_controller()
    first = controller.toggle("WO-1", "SN-1", now_utc=at(10, 0))
    controller.toggle("WO-1", "SN-1", now_utc=at(10, 5))
    controller.toggle("WO-1", "SN-2", now_utc=at(10, 1))
    controller.toggle("WO-1", "SN-2", now_utc=at(10, 6))
    before = controller.build_summary("WO-1").summary.completed_units

    assert controller.delete_session("WO-1", first.session_id) is True

    after = controller.build_summary("WO-1")
    assert after.summary.completed_units == before - 1
    assert after.anomalies == []
    assert {event.serial_barcode for event in controller.db.list_events("WO-1")} == {"SN-2"}
    assert controller.db.get_work_order("WO-1").scan_summary.completed_units == 1


def test_delete_open_session_removes_its_in_event() -> None:
    controller = make_controller()
    opened = controller.toggle("WO-1", "SN-1", now_utc=at(10, 0))

    assert controller.delete_session("WO-1", opened.session_id) is True
    assert controller.db.list_events("WO-1") == []


def test_delete_unknown_session_is_a_no_op() -> None:
    controller = make_controller()
    controller.toggle("WO-1", "SN-1", now_utc=at(10, 0))

    assert controller.delete_session("WO-1", "WO-1_SN-9_0") is False
    assert len(controller.db.list_events("WO-1")) == 1


def test_delete_rebuilds_pairing_around_anomalies() -> None:
    controller = make_controller()
    db = controller.db
    db.append_event(_raw("SN-1", ScanKind.IN, at(10, 0)), expected_version=0)
    db.append_event(_raw("SN-1", ScanKind.IN, at(10, 2)), expected_version=1)
    db.append_event(_raw("SN-1", ScanKind.OUT, at(10, 5)), expected_version=2)
    result = controller.build_summary("WO-1")
    assert len(result.anomalies) == 1

    controller.delete_session("WO-1", result.sessions[0].session_id)

    rebuilt = controller.build_summary("WO-1")
    assert rebuilt.anomalies == []
    assert rebuilt.summary.completed_units == 0
    assert rebuilt.summary.in_progress_units == 1
    assert rebuilt.open_sessions[0].in_at == at(10, 2)


def test_live_preview_leaves_open_session_untouched() -> None:
    controller = make_controller()
    controller.toggle("WO-1", "SN-1", now_utc=at(10, 0))
    timing = controller.db.get_work_order("WO-1").timing_config()
    session = controller.build_summary("WO-1").open_sessions[0]

    first = live_elapsed_seconds(session, timing, at(10, 5))
    second = live_elapsed_seconds(session, timing, at(10, 8))

    assert first != second
    reread = controller.build_summary("WO-1").open_sessions[0]
    assert reread.out_at is None
    assert reread.cycle_seconds is None


def test_manual_pause_is_excluded_from_cycle() -> None:
    controller = make_controller()
    controller.toggle("WO-1", "SN-1", now_utc=at(10, 0))

    controller.start_pause("WO-1", now_utc=at(10, 10))
    controller.end_pause("WO-1", now_utc=at(10, 20))
    result = controller.toggle("WO-1", "SN-1", now_utc=at(10, 30))

    assert result.cycle_seconds == 1200


def test_ongoing_pause_counts_up_to_close() -> None:
    controller = make_controller()
    controller.toggle("WO-1", "SN-1", now_utc=at(10, 0))

    controller.start_pause("WO-1", now_utc=at(10, 10))
    result = controller.toggle("WO-1", "SN-1", now_utc=at(10, 30))

    assert result.cycle_seconds == 600
    assert controller.db.get_work_order("WO-1").pause_windows[0].end_at is None


def test_pause_transitions_are_validated() -> None:
    controller = make_controller()

    with pytest.raises(InvalidTransition):
        controller.start_pause("WO-1", now_utc=at(10, 0))
    with pytest.raises(InvalidTransition):
        controller.end_pause("WO-1", now_utc=at(10, 0))

    controller.toggle("WO-1", "SN-1", now_utc=at(10, 0))
    controller.start_pause("WO-1", now_utc=at(10, 1))
    with pytest.raises(InvalidTransition):
        controller.start_pause("WO-1", now_utc=at(10, 2))


def test_close_requires_all_units_scanned_out() -> None:
    controller = make_controller()
    controller.toggle("WO-1", "SN-1", now_utc=at(10, 0))

    with pytest.raises(OpenSessionsRemain):
        controller.close_work_order("WO-1", now_utc=at(11, 0))

    assert controller.db.get_work_order("WO-1").status is WorkOrderStatus.IN_PROGRESS


def test_close_stores_confirmed_figures_and_blocks_further_scans() -> None:
    controller = make_controller()
    controller.toggle("WO-1", "SN-1", now_utc=at(10, 0))
    controller.toggle("WO-1", "SN-1", now_utc=at(10, 5))

    summary = controller.close_work_order("WO-1", confirmed_units=5, workers=3, now_utc=at(11, 0))

    assert summary.completed_units == 5
    assert summary.active_workers == 3
    work_order = controller.db.get_work_order("WO-1")
    assert work_order.status is WorkOrderStatus.COMPLETED
    assert work_order.completed_at == at(11, 0)
    assert work_order.produced_from_scans == 5

    with pytest.raises(TerminalWorkOrder):
        controller.toggle("WO-1", "SN-2", now_utc=at(11, 5))
    with pytest.raises(TerminalWorkOrder):
        controller.close_work_order("WO-1")

    # Reading a closed order recomputes from the log without overwriting the confirmed figures.
    assert controller.build_summary("WO-1").summary.completed_units == 1
    assert controller.db.get_work_order("WO-1").scan_summary.completed_units == 5


def test_roster_supplies_workers_when_scans_are_unattributed() -> None:
    class Roster:
        def count_for_line(self, line_id: str) -> int | None:
            return 4 if line_id == "L1" else None

    controller = make_controller(roster=Roster())
    controller.toggle("WO-1", "SN-1", now_utc=at(10, 0))

    assert controller.build_summary("WO-1").summary.active_workers == 4
    assert controller.build_summary("WO-1", roster_count=2).summary.active_workers == 2


def _raw(serial: str, kind: ScanKind, occurred_at: datetime) -> ScanEvent:
    return ScanEvent(
        work_order_id="WO-1",
        line_id="L1",
        product_id="P1",
        serial_barcode=serial,
        kind=kind,
        occurred_at=occurred_at,
    )


def test_out_from_a_lagging_clock_still_closes_the_session() -> None:
    controller = make_controller()

    opened = controller.toggle("WO-1", "SN-1", now_utc=at(10, 0, 5))
    closed = controller.toggle("WO-1", "SN-1", now_utc=at(10, 0, 0))

    assert closed.action is ScanKind.OUT
    assert closed.session_id == opened.session_id
    assert closed.cycle_seconds == 1
    result = controller.build_summary("WO-1")
    assert result.anomalies == []
    assert result.summary.completed_units == 1
    assert result.summary.in_progress_units == 0
    assert result.sessions[0].out_at > result.sessions[0].in_at


def test_order_closed_mid_toggle_is_not_reopened() -> None:
    controller = make_controller(ClosingDatabase())

    with pytest.raises(TerminalWorkOrder):
        controller.toggle("WO-1", "SN-1", now_utc=at(10, 5))

    work_order = controller.db.get_work_order("WO-1")
    assert work_order.status is WorkOrderStatus.COMPLETED
    assert work_order.completed_at == at(10, 0)
    assert controller.db.list_events("WO-1") == []


def test_order_without_break_times_gets_default_break() -> None:
    controller = make_controller()
    controller.db.create_work_order(WorkOrder(id="WO-2", line_id="L1", product_id="P1"))

    controller.toggle("WO-2", "SN-1", now_utc=at(11, 50))
    result = controller.toggle("WO-2", "SN-1", now_utc=at(12, 40))

    assert result.cycle_seconds == 1200


def test_default_break_can_be_disabled() -> None:
    controller = make_controller(default_break=None)
    controller.db.create_work_order(WorkOrder(id="WO-2", line_id="L1", product_id="P1"))

    controller.toggle("WO-2", "SN-1", now_utc=at(11, 50))
    result = controller.toggle("WO-2", "SN-1", now_utc=at(12, 40))

    assert result.cycle_seconds == 3000


def test_delete_on_completed_order_keeps_confirmed_figures() -> None:
    controller = make_controller()
    first = controller.toggle("WO-1", "SN-1", now_utc=at(10, 0))
    controller.toggle("WO-1", "SN-1", now_utc=at(10, 5))
    controller.close_work_order("WO-1", confirmed_units=5, now_utc=at(11, 0))

    assert controller.delete_session("WO-1", first.session_id) is True

    assert controller.db.list_events("WO-1") == []
    assert controller.build_summary("WO-1").summary.completed_units == 0
    work_order = controller.db.get_work_order("WO-1")
    assert work_order.status is WorkOrderStatus.COMPLETED
    assert work_order.scan_summary.completed_units == 5
