from __future__ import annotations
from typing import List, Optional, Sequence

from .models import Candle, LadderPoint, MacdSeries, PressurePoint, STRONG_DOWN, STRONG_UP


LADDER_WARMUP = 60
BLUE_LEN = 24
YELLOW_LEN = 89
BAND_MULT = 0.5
STRENGTH_WINDOW = 3

MACD_FAST = 12
MACD_SLOW = 26
MACD_SIGNAL = 9

PRESSURE_LEN = 3
PRESSURE_REF_BARS = 1
STRONG_MOVE_PCT = 10.0


def ema_next(prev_ema: Optional[float], x: float, length: int) -> float:
    if length <= 1:
        return x
    alpha = 2.0 / (length + 1.0)
    return x if prev_ema is None else (alpha * x + (1.0 - alpha) * prev_ema)


def ema_series(values: Sequence[float], length: int) -> List[float]:
    """EMA seeded with the first value, one output per input."""
    out: List[float] = []
    prev: Optional[float] = None
    for x in values:
        prev = ema_next(prev, float(x), length)
        out.append(prev)
    return out


def true_range(high: float, low: float, prev_close: Optional[float]) -> float:
    if prev_close is None:
        return abs(high - low)
    return max(high - low, abs(high - prev_close), abs(low - prev_close))


def pct_change(new: float, old: float) -> Optional[float]:
    if old == 0:
        return None
    return (new - old) / abs(old) * 100.0


# ---------------------------------------------------------------------------
# MACD
# ---------------------------------------------------------------------------

def calculate_macd(
    candles: Sequence[Candle],
    fast: int = MACD_FAST,
    slow: int = MACD_SLOW,
    signal: int = MACD_SIGNAL,
) -> MacdSeries:
    closes = [c.close for c in candles]
    ema_fast = ema_series(closes, fast)
    ema_slow = ema_series(closes, slow)
    diff = [f - s for f, s in zip(ema_fast, ema_slow)]
    dea = ema_series(diff, signal)
    macd = [2.0 * (d - e) for d, e in zip(diff, dea)]
    return MacdSeries(diff=diff, dea=dea, macd=macd)


# ---------------------------------------------------------------------------
# Ladder channels
# ---------------------------------------------------------------------------

def _channel(closes: List[float], ranges: List[float], length: int, band_mult: float):
    mid = ema_series(closes, length)
    band = ema_series(ranges, length)
    up = [m + band_mult * b for m, b in zip(mid, band)]
    dn = [m - band_mult * b for m, b in zip(mid, band)]
    return up, dn


def calculate_ladder(
    candles: Sequence[Candle],
    *,
    blue_len: int = BLUE_LEN,
    yellow_len: int = YELLOW_LEN,
    band_mult: float = BAND_MULT,
    warmup: int = LADDER_WARMUP,
) -> List[LadderPoint]:
    """Blue (fast) and yellow (slow) channels around an EMA of close.

    Each band is the channel EMA offset by ``band_mult`` times an EMA of the
    true range with the same length. Points start at index ``warmup - 1``.
    """
    if warmup < 1 or blue_len < 1 or yellow_len < 1:
        raise ValueError(f"warmup and channel lengths must be >= 1 (warmup={warmup}, blue={blue_len}, yellow={yellow_len})")
    n = len(candles)
    if n < warmup:
        return []

    closes = [c.close for c in candles]
    ranges: List[float] = []
    prev_close: Optional[float] = None
    for c in candles:
        ranges.append(true_range(c.high, c.low, prev_close))
        prev_close = c.close

    blue_up, blue_dn = _channel(closes, ranges, blue_len, band_mult)
    yellow_up, yellow_dn = _channel(closes, ranges, yellow_len, band_mult)

    return [
        LadderPoint(
            time_ms=candles[i].time_ms,
            blue_up=blue_up[i],
            blue_dn=blue_dn[i],
            yellow_up=yellow_up[i],
            yellow_dn=yellow_dn[i],
        )
        for i in range(warmup - 1, n)
    ]


def check_blue_ladder_strength(
    candles: Sequence[Candle],
    *,
    window: int = STRENGTH_WINDOW,
    warmup: int = LADDER_WARMUP,
    blue_len: int = BLUE_LEN,
    yellow_len: int = YELLOW_LEN,
    band_mult: float = BAND_MULT,
) -> bool:
    """Blue ladder rising, above the yellow ladder, and price holding above it."""
    if window < 1:
        raise ValueError(f"window must be >= 1, got {window}")
    if len(candles) < warmup:
        return False
    ladder = calculate_ladder(candles, blue_len=blue_len, yellow_len=yellow_len, band_mult=band_mult, warmup=warmup)
    if len(ladder) < window + 1:
        return False

    last = ladder[-1]
    prev = ladder[-2]
    ref = ladder[-1 - window]

    rising = (
        last.blue_up > ref.blue_up
        and last.blue_dn > ref.blue_dn
        and last.blue_up >= prev.blue_up
        and last.blue_dn >= prev.blue_dn
    )
    above_yellow = last.blue_up > last.yellow_up
    holding = candles[-1].close > last.blue_dn
    return rising and above_yellow and holding


# ---------------------------------------------------------------------------
# Buy/sell pressure
# ---------------------------------------------------------------------------

def classify_pressure(change_rate: float, threshold: float = STRONG_MOVE_PCT) -> Optional[str]:
    if change_rate >= threshold:
        return STRONG_UP
    if change_rate <= -threshold:
        return STRONG_DOWN
    return None


def _split_volume(c: Candle):
    rng = c.high - c.low
    if rng <= 0:
        half = c.volume / 2.0
        return half, half
    buy = c.volume * (c.close - c.low) / rng
    return buy, c.volume - buy


def calculate_buy_sell_pressure(
    candles: Sequence[Candle],
    *,
    length: int = PRESSURE_LEN,
    ref_bars: int = PRESSURE_REF_BARS,
    threshold: float = STRONG_MOVE_PCT,
) -> List[PressurePoint]:
    """Share of smoothed buying volume (0..100) with its percent change.

    ``change_rate`` compares each bar's pressure against the value ``ref_bars``
    earlier; the first bars (and zero references) get 0.0.
    """
    buys: List[float] = []
    sells: List[float] = []
    for c in candles:
        b, s = _split_volume(c)
        buys.append(b)
        sells.append(s)

    buy_ema = ema_series(buys, length)
    sell_ema = ema_series(sells, length)

    pressures: List[float] = []
    for b, s in zip(buy_ema, sell_ema):
        total = b + s
        pressures.append(50.0 if total == 0 else 100.0 * b / total)

    out: List[PressurePoint] = []
    for i, c in enumerate(candles):
        rate = 0.0
        if i >= ref_bars:
            ch = pct_change(pressures[i], pressures[i - ref_bars])
            rate = 0.0 if ch is None else ch
        out.append(PressurePoint(
            time_ms=c.time_ms,
            pressure=pressures[i],
            change_rate=rate,
            signal=classify_pressure(rate, threshold),
        ))
    return out
