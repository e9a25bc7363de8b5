from __future__ import annotations

from dataclasses import dataclass
from typing import List, Optional, Sequence

from .indicators import BAND_MULT, BLUE_LEN, LADDER_WARMUP, YELLOW_LEN, calculate_ladder, calculate_macd
from .models import BUY, SELL, Candle, MacdSeries, Signal


CD_CONFIRM_RATIO = 1.01

CD_BUY_LABEL = "CD Buy"
CD_SELL_LABEL = "CD Sell"
NX_BUY_LABEL = "NX Buy"
NX_SELL_LABEL = "NX Sell"


@dataclass
class SegmentMem:
    """Running extremes of the current MACD histogram segments."""
    cross_down_bar: Optional[int] = None  # last bar where histogram turned negative
    cross_up_bar: Optional[int] = None    # last bar where histogram turned positive

    low_close: Optional[float] = None   # CC1
    low_diff: Optional[float] = None    # DIFL1
    high_close: Optional[float] = None  # CH1
    high_diff: Optional[float] = None   # DIFH1


def _lt(a: Optional[float], b: Optional[float]) -> bool:
    return a is not None and b is not None and a < b


def _gt(a: Optional[float], b: Optional[float]) -> bool:
    return a is not None and b is not None and a > b


def _ref(series: List[Optional[float]], anchor: Optional[int]) -> Optional[float]:
    """Value of ``series`` on the bar just before ``anchor`` (a segment start)."""
    if anchor is None or anchor - 1 < 0:
        return None
    return series[anchor - 1]


def calculate_cd_signals(candles: Sequence[Candle], macd: Optional[MacdSeries] = None) -> List[Signal]:
    """MACD segment divergence: bottoms emit ``buy``, tops emit ``sell``.

    A bottom structure exists while the current negative histogram segment
    makes a lower close low than an earlier negative segment without a lower
    DIFF low. It fires on the first bar the DIFF pulls back toward zero by at
    least 1 %. Tops mirror this on positive segments. Every quantity on bar
    ``i`` reads bars ``<= i`` only.
    """
    n = len(candles)
    if n < 2:
        return []
    if macd is None:
        macd = calculate_macd(candles)
    diff, hist = macd.diff, macd.macd

    mem = SegmentMem()
    cc1: List[Optional[float]] = [None] * n
    difl1: List[Optional[float]] = [None] * n
    cc2: List[Optional[float]] = [None] * n
    difl2: List[Optional[float]] = [None] * n
    ch1: List[Optional[float]] = [None] * n
    difh1: List[Optional[float]] = [None] * n
    ch2: List[Optional[float]] = [None] * n
    difh2: List[Optional[float]] = [None] * n

    bottom = [False] * n
    bottom_confirm = [False] * n
    top = [False] * n
    top_confirm = [False] * n

    signals: List[Signal] = []

    for i in range(n):
        close = candles[i].close
        d = diff[i]

        if i >= 1 and hist[i - 1] >= 0 > hist[i]:
            mem.cross_down_bar = i
            mem.low_close, mem.low_diff = close, d
        if i >= 1 and hist[i - 1] <= 0 < hist[i]:
            mem.cross_up_bar = i
            mem.high_close, mem.high_diff = close, d

        if mem.cross_down_bar is not None:
            mem.low_close = min(mem.low_close, close)
            mem.low_diff = min(mem.low_diff, d)
            cc1[i], difl1[i] = mem.low_close, mem.low_diff
        if mem.cross_up_bar is not None:
            mem.high_close = max(mem.high_close, close)
            mem.high_diff = max(mem.high_diff, d)
            ch1[i], difh1[i] = mem.high_close, mem.high_diff

        # previous segment = value at the bar before the opposite cross
        cc2[i] = _ref(cc1, mem.cross_up_bar)
        difl2[i] = _ref(difl1, mem.cross_up_bar)
        cc3 = _ref(cc2, mem.cross_up_bar)
        difl3 = _ref(difl2, mem.cross_up_bar)

        ch2[i] = _ref(ch1, mem.cross_down_bar)
        difh2[i] = _ref(difh1, mem.cross_down_bar)
        ch3 = _ref(ch2, mem.cross_down_bar)
        difh3 = _ref(difh2, mem.cross_down_bar)

        if i == 0:
            continue

        if hist[i - 1] < 0 and d < 0:
            direct = _lt(cc1[i], cc2[i]) and _gt(difl1[i], difl2[i])
            skip = _lt(cc1[i], cc3) and _lt(difl1[i], difl2[i]) and _gt(difl1[i], difl3)
            bottom[i] = direct or skip

        if hist[i - 1] > 0 and d > 0:
            direct = _gt(ch1[i], ch2[i]) and _lt(difh1[i], difh2[i])
            skip = _gt(ch1[i], ch3) and _gt(difh1[i], difh2[i]) and _lt(difh1[i], difh3)
            top[i] = direct or skip

        bottom_confirm[i] = bottom[i - 1] and abs(diff[i - 1]) >= abs(d) * CD_CONFIRM_RATIO
        top_confirm[i] = top[i - 1] and diff[i - 1] >= d * CD_CONFIRM_RATIO

        if bottom_confirm[i] and not bottom_confirm[i - 1]:
            signals.append(Signal(time_ms=candles[i].time_ms, type=BUY, label=CD_BUY_LABEL))
        elif top_confirm[i] and not top_confirm[i - 1]:
            signals.append(Signal(time_ms=candles[i].time_ms, type=SELL, label=CD_SELL_LABEL))

    return signals


def calculate_nx_signals(
    candles: Sequence[Candle],
    *,
    blue_len: int = BLUE_LEN,
    yellow_len: int = YELLOW_LEN,
    band_mult: float = BAND_MULT,
    warmup: int = LADDER_WARMUP,
) -> List[Signal]:
    """Close breaking out of the blue channel.

    ``buy`` when the close crosses above the blue upper band while holding
    above the yellow lower band; ``sell`` when it crosses below the blue lower
    band.
    """
    ladder = calculate_ladder(candles, blue_len=blue_len, yellow_len=yellow_len, band_mult=band_mult, warmup=warmup)
    if len(ladder) < 2:
        return []

    offset = len(candles) - len(ladder)
    signals: List[Signal] = []
    for j in range(1, len(ladder)):
        i = j + offset
        prev_pt, pt = ladder[j - 1], ladder[j]
        prev_close, close = candles[i - 1].close, candles[i].close

        if prev_close <= prev_pt.blue_up and close > pt.blue_up and close > pt.yellow_dn:
            signals.append(Signal(time_ms=candles[i].time_ms, type=BUY, label=NX_BUY_LABEL))
        elif prev_close >= prev_pt.blue_dn and close < pt.blue_dn:
            signals.append(Signal(time_ms=candles[i].time_ms, type=SELL, label=NX_SELL_LABEL))
    return signals
