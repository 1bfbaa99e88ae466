from __future__ import annotations

from collections.abc import Sequence
from datetime import datetime

from .cycle_time import effective_seconds
from .models import Session, SessionStatus, TimingConfig, WorkOrderSummary


def summarize(sessions: Sequence[Session], roster_count: int | None = None) -> WorkOrderSummary:
    """Reduce reconstructed sessions to the live work-order counters."""
    closed = [session for session in sessions if session.status is SessionStatus.CLOSED]
    active = [session for session in sessions if session.status is SessionStatus.OPEN]

    workers = {
        session.employee_id.strip()
        for session in active
        if session.employee_id and session.employee_id.strip()
    }
    if workers:
        active_workers = len(workers)
    elif roster_count is not None:
        # Scans without attribution; trust the caller's roster instead.
        active_workers = max(0, roster_count)
    else:
        active_workers = len(active)

    avg_cycle = 0
    if closed:
        avg_cycle = round(sum(session.cycle_seconds or 0 for session in closed) / len(closed))

    return WorkOrderSummary(
        completed_units=len(closed),
        in_progress_units=len(active),
        active_workers=active_workers,
        avg_cycle_seconds=avg_cycle,
        last_scan_at=_last_scan_at(sessions),
    )


def live_elapsed_seconds(session: Session, timing: TimingConfig | None, now_utc: datetime) -> int:
    """Current effective elapsed time for a dashboard; closed sessions report their committed value."""
    if session.status is SessionStatus.CLOSED and session.cycle_seconds is not None:
        return session.cycle_seconds
    return effective_seconds(session.in_at, now_utc, timing)


def _last_scan_at(sessions: Sequence[Session]) -> datetime | None:
    instants = [session.out_at or session.in_at for session in sessions]
    if not instants:
        return None
    return max(instants)
