from __future__ import annotations

from collections.abc import Sequence
from datetime import datetime

from .cycle_time import to_millis
from .models import ScanEvent


def last_scan_at(events: Sequence[ScanEvent]) -> datetime | None:
    if not events:
        return None
    return max(events, key=lambda event: to_millis(event.occurred_at)).occurred_at


def remaining_debounce_ms(
    last_scan_utc: datetime | None,
    debounce_ms: int,
    now_utc: datetime,
) -> int:
    """Return how many milliseconds must still pass before the serial may be scanned again."""
    if debounce_ms <= 0 or last_scan_utc is None:
        return 0

    elapsed = to_millis(now_utc) - to_millis(last_scan_utc)
    if elapsed < 0:
        # Another station's clock is ahead of ours; do not block on skew.
        return 0
    return max(0, debounce_ms - elapsed)
