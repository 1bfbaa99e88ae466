from __future__ import annotations

from datetime import datetime
from typing import Protocol

import discord

from .controller import ScanController, utc_now
from .models import SummaryResult, ToggleResult, WorkOrder, WorkOrderSummary
from .summary import live_elapsed_seconds

MAX_OPEN_SESSION_LINES = 15


def format_seconds(total_seconds: int) -> str:
    """Render a duration as HH:MM:SS for consistent report output."""
    safe_seconds = max(0, int(total_seconds))
    hours, remainder = divmod(safe_seconds, 3600)
    minutes, seconds = divmod(remainder, 60)
    return f"{hours:02}:{minutes:02}:{seconds:02}"


class ReportChannelLike(Protocol):
    async def send(self, content: str, **kwargs): ...


def format_toggle(serial: str, result: ToggleResult) -> str:
    if result.cycle_seconds is None:
        return f"IN recorded for `{serial}`"
    return f"OUT recorded for `{serial}`, cycle time `{format_seconds(result.cycle_seconds)}`"


def summary_lines(summary: WorkOrderSummary) -> list[str]:
    last_scan = summary.last_scan_at.isoformat() if summary.last_scan_at else "never"
    return [
        f"Completed units: `{summary.completed_units}`",
        f"In progress: `{summary.in_progress_units}`",
        f"Active workers: `{summary.active_workers}`",
        f"Average cycle time: `{format_seconds(summary.avg_cycle_seconds)}`",
        f"Last scan: `{last_scan}`",
    ]


class Reporter:
    def __init__(self, controller: ScanController) -> None:
        self.controller = controller

    def build_summary_content(
        self,
        work_order: WorkOrder,
        result: SummaryResult,
        now_utc: datetime,
    ) -> str:
        timing = self.controller.timing_for(work_order)
        header = f"**Work order {work_order.id}** ({work_order.status.value})"
        lines = [header, f"Line `{work_order.line_id}` / product `{work_order.product_id}`"]
        summary = result.summary
        if work_order.status.is_terminal and work_order.scan_summary is not None:
            # Closed orders report the figures confirmed at close time.
            summary = work_order.scan_summary
        lines.extend(summary_lines(summary))

        if result.anomalies:
            lines.append(f"Scan anomalies: `{len(result.anomalies)}`")

        if result.open_sessions:
            lines.append("Open units:")
            # Live elapsed time is previewed only; sessions are not touched.
            for session in result.open_sessions[:MAX_OPEN_SESSION_LINES]:
                elapsed = live_elapsed_seconds(session, timing, now_utc)
                lines.append(f"- `{session.serial_barcode}`: `{format_seconds(elapsed)}` (`{session.session_id}`)")
            hidden = len(result.open_sessions) - MAX_OPEN_SESSION_LINES
            if hidden > 0:
                lines.append(f"...and {hidden} more")

        return "\n".join(lines)

    def build_for(self, work_order_id: str, now_utc: datetime | None = None) -> str:
        result = self.controller.build_summary(work_order_id)
        work_order = self.controller.db.get_work_order(work_order_id)
        return self.build_summary_content(work_order, result, now_utc or utc_now())

    async def post_summary(
        self,
        report_channel: ReportChannelLike,
        work_order_id: str,
        *,
        now_utc: datetime | None = None,
    ) -> bool:
        content = self.build_for(work_order_id, now_utc)
        # Never ping operators in automated summaries.
        await report_channel.send(content, allowed_mentions=discord.AllowedMentions.none())
        return True
