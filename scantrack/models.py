from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from zoneinfo import ZoneInfo


class ScanKind(str, Enum):
    IN = "IN"
    OUT = "OUT"


class SessionStatus(str, Enum):
    OPEN = "open"
    CLOSED = "closed"


class WorkOrderStatus(str, Enum):
    PENDING = "pending"
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"
    CANCELLED = "cancelled"

    @property
    def is_terminal(self) -> bool:
        return self in (WorkOrderStatus.COMPLETED, WorkOrderStatus.CANCELLED)


class AnomalyKind(str, Enum):
    DUPLICATE_IN = "duplicate_in"
    ORPHAN_OUT = "orphan_out"


@dataclass(frozen=True, slots=True)
class ScanEvent:
    work_order_id: str
    line_id: str
    product_id: str
    serial_barcode: str
    kind: ScanKind
    occurred_at: datetime
    employee_id: str | None = None
    # Only OUT events carry the cycle time committed when the session closed.
    cycle_seconds: int | None = None
    id: int | None = None


@dataclass(frozen=True, slots=True)
class PauseWindow:
    reason: str
    start_at: datetime
    end_at: datetime | None = None
    id: int | None = None

    @property
    def ongoing(self) -> bool:
        return self.end_at is None


@dataclass(frozen=True, slots=True)
class TimingConfig:
    break_start_time: str | None = None
    break_end_time: str | None = None
    pause_windows: tuple[PauseWindow, ...] = ()
    tz: ZoneInfo = field(default_factory=lambda: ZoneInfo("UTC"))


@dataclass(frozen=True, slots=True)
class Session:
    session_id: str
    work_order_id: str
    serial_barcode: str
    in_at: datetime
    in_event_id: int | None
    status: SessionStatus
    out_at: datetime | None = None
    out_event_id: int | None = None
    cycle_seconds: int | None = None
    employee_id: str | None = None
    line_id: str = ""
    product_id: str = ""

    @property
    def event_ids(self) -> list[int]:
        return [event_id for event_id in (self.in_event_id, self.out_event_id) if event_id is not None]


@dataclass(frozen=True, slots=True)
class Anomaly:
    kind: AnomalyKind
    serial_barcode: str
    occurred_at: datetime
    event_id: int | None = None


@dataclass(frozen=True, slots=True)
class WorkOrderSummary:
    completed_units: int = 0
    in_progress_units: int = 0
    active_workers: int = 0
    avg_cycle_seconds: int = 0
    last_scan_at: datetime | None = None

    def to_dict(self) -> dict[str, object]:
        return {
            "completed_units": self.completed_units,
            "in_progress_units": self.in_progress_units,
            "active_workers": self.active_workers,
            "avg_cycle_seconds": self.avg_cycle_seconds,
            "last_scan_at": self.last_scan_at.isoformat() if self.last_scan_at else None,
        }

    @classmethod
    def from_dict(cls, data: dict[str, object]) -> WorkOrderSummary:
        last_scan = data.get("last_scan_at")
        return cls(
            completed_units=int(data.get("completed_units", 0)),
            in_progress_units=int(data.get("in_progress_units", 0)),
            active_workers=int(data.get("active_workers", 0)),
            avg_cycle_seconds=int(data.get("avg_cycle_seconds", 0)),
            last_scan_at=datetime.fromisoformat(str(last_scan)).astimezone(timezone.utc) if last_scan else None,
        )


@dataclass(frozen=True, slots=True)
class WorkOrder:
    id: str
    line_id: str
    product_id: str
    status: WorkOrderStatus = WorkOrderStatus.PENDING
    break_start_time: str | None = None
    break_end_time: str | None = None
    pause_windows: tuple[PauseWindow, ...] = ()
    produced_from_scans: int = 0
    actual_workers_count: int = 0
    scan_summary: WorkOrderSummary | None = None
    completed_at: datetime | None = None

    def timing_config(
        self,
        tz: ZoneInfo | None = None,
        default_break: tuple[str, str] | None = None,
    ) -> TimingConfig:
        """Timing for this order; ``default_break`` fills in when no break was recorded."""
        break_start, break_end = self.break_start_time, self.break_end_time
        if default_break is not None and not break_start and not break_end:
            break_start, break_end = default_break
        return TimingConfig(
            break_start_time=break_start,
            break_end_time=break_end,
            pause_windows=self.pause_windows,
            tz=tz or ZoneInfo("UTC"),
        )


@dataclass(frozen=True, slots=True)
class Reconstruction:
    sessions: list[Session]
    anomalies: list[Anomaly]

    @property
    def open_sessions(self) -> list[Session]:
        return [session for session in self.sessions if session.status is SessionStatus.OPEN]


@dataclass(frozen=True, slots=True)
class ToggleResult:
    action: ScanKind
    session_id: str
    event_id: int | None = None
    cycle_seconds: int | None = None


@dataclass(frozen=True, slots=True)
class SummaryResult:
    summary: WorkOrderSummary
    sessions: list[Session]
    open_sessions: list[Session]
    anomalies: list[Anomaly]
