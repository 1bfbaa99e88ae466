from __future__ import annotations

from collections.abc import Iterable

from .cycle_time import effective_seconds, to_millis
from .models import (
    Anomaly,
    AnomalyKind,
    Reconstruction,
    ScanEvent,
    ScanKind,
    Session,
    SessionStatus,
    TimingConfig,
)


def session_id_for(work_order_id: str, serial_barcode: str, in_at_ms: int) -> str:
    return f"{work_order_id}_{serial_barcode}_{in_at_ms}"


def sort_events(events: Iterable[ScanEvent]) -> list[ScanEvent]:
    # Stations do not share a clock, so insertion order means nothing; pair by time.
    return sorted(events, key=lambda event: (to_millis(event.occurred_at), event.id is None, event.id or 0))


def reconstruct(
    events: Iterable[ScanEvent],
    timing: TimingConfig | None = None,
    *,
    serial_barcode: str | None = None,
) -> Reconstruction:
    """Rebuild sessions for one work order from its raw scan events.

    A second IN while a serial already has an open session, and an OUT with no
    open session, are reported as anomalies and never produce or overwrite a
    session. The function has no side effects, so calling it twice on the same
    events yields equal results.
    """
    open_by_serial: dict[str, Session] = {}
    finished: list[Session] = []
    anomalies: list[Anomaly] = []

    for event in sort_events(events):
        serial = event.serial_barcode
        if serial_barcode is not None and serial != serial_barcode:
            continue

        current = open_by_serial.get(serial)

        if event.kind is ScanKind.IN:
            if current is not None:
                anomalies.append(Anomaly(AnomalyKind.DUPLICATE_IN, serial, event.occurred_at, event.id))
                continue
            open_by_serial[serial] = Session(
                session_id=session_id_for(event.work_order_id, serial, to_millis(event.occurred_at)),
                work_order_id=event.work_order_id,
                serial_barcode=serial,
                in_at=event.occurred_at,
                in_event_id=event.id,
                status=SessionStatus.OPEN,
                employee_id=event.employee_id,
                line_id=event.line_id,
                product_id=event.product_id,
            )
            continue

        if current is None:
            anomalies.append(Anomaly(AnomalyKind.ORPHAN_OUT, serial, event.occurred_at, event.id))
            continue

        cycle = event.cycle_seconds
        if cycle is None:
            cycle = effective_seconds(current.in_at, event.occurred_at, timing)

        finished.append(
            Session(
                session_id=current.session_id,
                work_order_id=current.work_order_id,
                serial_barcode=serial,
                in_at=current.in_at,
                in_event_id=current.in_event_id,
                status=SessionStatus.CLOSED,
                out_at=event.occurred_at,
                out_event_id=event.id,
                cycle_seconds=max(0, cycle),
                employee_id=current.employee_id or event.employee_id,
                line_id=current.line_id,
                product_id=current.product_id,
            )
        )
        del open_by_serial[serial]

    sessions = finished + list(open_by_serial.values())
    sessions.sort(key=lambda session: (to_millis(session.in_at), session.serial_barcode))
    return Reconstruction(sessions=sessions, anomalies=anomalies)


def open_session_for(
    events: Iterable[ScanEvent],
    serial_barcode: str,
    timing: TimingConfig | None = None,
) -> Session | None:
    result = reconstruct(events, timing, serial_barcode=serial_barcode)
    for session in result.open_sessions:
        return session
    return None


def find_session(events: Iterable[ScanEvent], session_id: str) -> Session | None:
    for session in reconstruct(events).sessions:
        if session.session_id == session_id:
            return session
    return None
