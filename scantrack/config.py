from __future__ import annotations

import os
from dataclasses import dataclass
from pathlib import Path
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from .cycle_time import parse_clock


@dataclass(frozen=True, slots=True)
class Config:
    discord_token: str
    guild_id: int
    report_channel_id: int
    timezone: ZoneInfo
    db_path: Path
    scan_debounce_ms: int
    toggle_max_retries: int
    default_break_start: str
    default_break_end: str


def _required_env(name: str) -> str:
    value = os.getenv(name)
    if not value:
        raise ValueError(f"Missing required environment variable: {name}")
    return value.strip()


def _required_int_env(name: str) -> int:
    value = _required_env(name)
    try:
        parsed = int(value)
    except ValueError as exc:
        raise ValueError(f"Environment variable {name} must be an integer") from exc

    if parsed <= 0:
        raise ValueError(f"Environment variable {name} must be positive")
    return parsed


def _optional_int_env(name: str, default: int) -> int:
    raw = os.getenv(name, str(default)).strip()
    try:
        parsed = int(raw)
    except ValueError as exc:
        raise ValueError(f"{name} must be an integer") from exc

    if parsed < 0:
        raise ValueError(f"{name} must not be negative")
    return parsed


def _clock_env(name: str, default: str) -> str:
    value = os.getenv(name, default).strip()
    if parse_clock(value) is None:
        raise ValueError(f"{name} must be a HH:MM clock time, got {value!r}")
    return value


def _timezone_from_env(name: str) -> ZoneInfo:
    tz_name = _required_env(name)
    try:
        return ZoneInfo(tz_name)
    except ZoneInfoNotFoundError as exc:
        raise ValueError(f"Invalid timezone in {name}: {tz_name}") from exc


def load_config() -> Config:
    break_start = _clock_env("DEFAULT_BREAK_START", "12:00")
    break_end = _clock_env("DEFAULT_BREAK_END", "12:30")
    if parse_clock(break_end) <= parse_clock(break_start):
        raise ValueError("DEFAULT_BREAK_END must be later than DEFAULT_BREAK_START")

    return Config(
        discord_token=_required_env("DISCORD_TOKEN"),
        guild_id=_required_int_env("GUILD_ID"),
        report_channel_id=_required_int_env("REPORT_CHANNEL_ID"),
        timezone=_timezone_from_env("TIMEZONE"),
        db_path=Path(os.getenv("SCAN_DB_PATH", "scan_events.db").strip() or "scan_events.db"),
        scan_debounce_ms=_optional_int_env("SCAN_DEBOUNCE_MS", 1200),
        toggle_max_retries=_optional_int_env("TOGGLE_MAX_RETRIES", 3),
        default_break_start=break_start,
        default_break_end=break_end,
    )
