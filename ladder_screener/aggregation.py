from __future__ import annotations

from datetime import datetime, timezone, timedelta
from typing import Callable, Dict, List, Sequence

from .models import Candle


SESSION_MINUTES = 390  # 09:30 -> 16:00 ET
_EDT = timezone(timedelta(hours=-4))
_EST = timezone(timedelta(hours=-5))


def _eastern(ts_ms: int) -> datetime:
    utc = datetime.fromtimestamp(ts_ms / 1000, tz=timezone.utc)
    # March..November treated as daylight time
    tz = _EDT if 3 <= utc.month <= 11 else _EST
    return utc.astimezone(tz)


def session_minute(ts_ms: int) -> int:
    """Minutes since the 09:30 ET open (negative before the open)."""
    et = _eastern(ts_ms)
    return (et.hour - 9) * 60 + (et.minute - 30)


def _merge(group: List[Candle]) -> Candle:
    return Candle(
        time_ms=group[0].time_ms,
        open=group[0].open,
        high=max(c.high for c in group),
        low=min(c.low for c in group),
        close=group[-1].close,
        volume=sum(c.volume for c in group),
    )


def _group_by(candles: Sequence[Candle], key_fn: Callable[[Candle], object]) -> List[Candle]:
    groups: Dict[object, List[Candle]] = {}
    for c in candles:
        key = key_fn(c)
        if key is None:
            continue
        groups.setdefault(key, []).append(c)
    out = [_merge(g) for g in groups.values() if g]
    out.sort(key=lambda c: c.time_ms)
    return out


def aggregate_intraday(candles: Sequence[Candle], minutes: int) -> List[Candle]:
    """Regular-session bars grouped into ``minutes``-wide blocks from the open."""
    if minutes <= 0:
        raise ValueError(f"minutes must be positive, got {minutes}")

    def _key(c: Candle):
        m = session_minute(c.time_ms)
        if m < 0 or m >= SESSION_MINUTES:
            return None
        return (_eastern(c.time_ms).date(), m // minutes)

    return _group_by(candles, _key)


def aggregate_weekly(candles: Sequence[Candle]) -> List[Candle]:
    """Daily bars rolled up into Monday-keyed weeks (UTC dates)."""
    def _key(c: Candle):
        d = datetime.fromtimestamp(c.time_ms / 1000, tz=timezone.utc).date()
        return d - timedelta(days=d.weekday())

    return _group_by(candles, _key)
