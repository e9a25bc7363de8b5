from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from typing import List, Optional, Sequence

from .config import IndicatorConfig
from .indicators import calculate_buy_sell_pressure, calculate_ladder, calculate_macd
from .intervals import validate_interval
from .models import Candle, LadderPoint, MacdSeries, MomentumSnapshot, PressurePoint, Quote, Signal
from .signals import calculate_cd_signals, calculate_nx_signals

log = logging.getLogger("analysis")


@dataclass(frozen=True)
class ChartBundle:
    symbol: str
    interval: str
    candles: List[Candle]
    ladder: List[LadderPoint]
    macd: MacdSeries
    cd_signals: List[Signal]
    pressure: List[PressurePoint]
    nx_signals: List[Signal]
    quote: Optional[Quote] = None
    momentum: Optional[MomentumSnapshot] = None  # present only when a snapshot was supplied


def compute_chart_bundle(
    symbol: str,
    interval: str,
    candles: Sequence[Candle],
    *,
    indicators: Optional[IndicatorConfig] = None,
    quote: Optional[Quote] = None,
    momentum: Optional[MomentumSnapshot] = None,
) -> ChartBundle:
    ind = indicators or IndicatorConfig()
    candles = list(candles)
    macd = calculate_macd(candles, ind.macd_fast, ind.macd_slow, ind.macd_signal)
    ladder_kw = dict(blue_len=ind.blue_len, yellow_len=ind.yellow_len, band_mult=ind.band_mult, warmup=ind.ladder_warmup)
    return ChartBundle(
        symbol=symbol,
        interval=interval,
        candles=candles,
        ladder=calculate_ladder(candles, **ladder_kw),
        macd=macd,
        cd_signals=calculate_cd_signals(candles, macd),
        pressure=calculate_buy_sell_pressure(
            candles, length=ind.pressure_len, ref_bars=ind.pressure_ref_bars, threshold=ind.strong_move_pct
        ),
        nx_signals=calculate_nx_signals(candles, **ladder_kw),
        quote=quote,
        momentum=momentum,
    )


class ChartSession:
    """One chart view: each (symbol, interval) change is a new request.

    A generation counter marks older requests as superseded; their results
    are dropped instead of replacing a newer bundle.
    """

    def __init__(self, source, *, indicators: Optional[IndicatorConfig] = None):
        self.source = source
        self.indicators = indicators or IndicatorConfig()
        self.current: Optional[ChartBundle] = None
        self._generation = 0

    @property
    def generation(self) -> int:
        return self._generation

    async def load(
        self,
        symbol: str,
        interval: str,
        *,
        momentum: Optional[MomentumSnapshot] = None,
    ) -> Optional[ChartBundle]:
        """Fetch and analyse; returns None if a newer ``load`` started meanwhile."""
        interval = validate_interval(interval)
        symbol = symbol.upper()
        self._generation += 1
        gen = self._generation

        candles, quote = await asyncio.gather(
            self.source.fetch_candles(symbol, interval),
            self.source.fetch_quote(symbol),
        )
        if gen != self._generation:
            log.debug("chart_superseded symbol=%s interval=%s gen=%d latest=%d", symbol, interval, gen, self._generation)
            return None

        bundle = compute_chart_bundle(
            symbol, interval, candles, indicators=self.indicators, quote=quote, momentum=momentum
        )
        self.current = bundle
        return bundle
