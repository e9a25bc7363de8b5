from __future__ import annotations

from typing import Dict


TIME_INTERVALS = ("1m", "3m", "5m", "15m", "30m", "1h", "2h", "3h", "4h", "1d", "1w", "1mo")

INTRADAY_MS: Dict[str, int] = {
    "1m": 60_000,
    "3m": 180_000,
    "5m": 300_000,
    "15m": 900_000,
    "30m": 1_800_000,
    "1h": 3_600_000,
    "2h": 7_200_000,
    "3h": 10_800_000,
    "4h": 14_400_000,
}


def validate_interval(interval: str) -> str:
    iv = (interval or "").strip()
    if iv not in TIME_INTERVALS:
        raise ValueError(f"Unsupported interval: {interval!r} (expected one of {', '.join(TIME_INTERVALS)})")
    return iv


def is_intraday(interval: str) -> bool:
    return interval in INTRADAY_MS


def interval_minutes(interval: str) -> int:
    if not is_intraday(interval):
        raise ValueError(f"Not an intraday interval: {interval}")
    return INTRADAY_MS[interval] // 60_000


def display_time_ms(start_ms: int, interval: str) -> int:
    """Display timestamp for a bar that starts at ``start_ms``.

    Intraday bars are labelled by the END of their period, so the first 30m bar
    of the session (09:30-10:00) shows as 10:00 and the first 1m bar as 09:31.
    Daily and coarser bars keep their start time.
    """
    return int(start_ms) + INTRADAY_MS.get(interval, 0)
