from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass
from typing import Callable, List, Optional, Sequence

from .config import Config, IndicatorConfig
from .indicators import calculate_buy_sell_pressure, calculate_macd, check_blue_ladder_strength
from .models import (
    BUY,
    KIND_CD_BOTTOM,
    KIND_LADDER_STRENGTH,
    KIND_PRESSURE,
    LOGIC_AND,
    LOGIC_OR,
    STRONG_DOWN,
    STRONG_UP,
    Candle,
    MatchedSignal,
    ScreeningCondition,
    ScreeningResult,
)
from .signals import calculate_cd_signals

log = logging.getLogger("screener")

IDLE = "idle"
SCANNING = "scanning"
COMPLETED = "completed"


@dataclass(frozen=True)
class ScanProgress:
    current: int
    total: int


ProgressCallback = Callable[[ScanProgress], None]


class RateLimiter:
    """Global minimum spacing between request starts, shared by all workers."""

    def __init__(self, min_spacing_s: float, clock: Callable[[], float] = time.monotonic) -> None:
        self.min_spacing_s = max(0.0, float(min_spacing_s))
        self._clock = clock
        self._lock = asyncio.Lock()
        self._last: Optional[float] = None

    async def wait(self) -> None:
        if self.min_spacing_s <= 0:
            return
        async with self._lock:
            now = self._clock()
            if self._last is not None:
                delay = self._last + self.min_spacing_s - now
                if delay > 0:
                    await asyncio.sleep(delay)
                    now = self._clock()
            self._last = now


# ---------------------------------------------------------------------------
# Per-condition evaluation on a fetched series
# ---------------------------------------------------------------------------

def match_pressure(
    candles: Sequence[Candle],
    timeframe: str,
    *,
    lookback: int = 5,
    min_candles: int = 30,
    indicators: Optional[IndicatorConfig] = None,
) -> Optional[MatchedSignal]:
    if lookback < 1:
        raise ValueError(f"lookback must be >= 1, got {lookback}")
    if len(candles) < min_candles:
        return None
    ind = indicators or IndicatorConfig()
    pressure = calculate_buy_sell_pressure(
        candles,
        length=ind.pressure_len,
        ref_bars=ind.pressure_ref_bars,
        threshold=ind.strong_move_pct,
    )
    recent = pressure[-lookback:]

    strong_up = next((p for p in recent if p.signal == STRONG_UP), None)
    if strong_up is not None:
        return MatchedSignal(KIND_PRESSURE, timeframe, f"Pressure surge ({timeframe})", f"+{strong_up.change_rate:.1f}%")
    strong_down = next((p for p in recent if p.signal == STRONG_DOWN), None)
    if strong_down is not None:
        return MatchedSignal(KIND_PRESSURE, timeframe, f"Pressure drop ({timeframe})", f"{strong_down.change_rate:.1f}%")
    return None


def match_cd_bottom(
    candles: Sequence[Candle],
    timeframe: str,
    *,
    lookback: int = 10,
    min_candles: int = 30,
    indicators: Optional[IndicatorConfig] = None,
) -> Optional[MatchedSignal]:
    if lookback < 1:
        raise ValueError(f"lookback must be >= 1, got {lookback}")
    if len(candles) < min_candles:
        return None
    ind = indicators or IndicatorConfig()
    macd = calculate_macd(candles, ind.macd_fast, ind.macd_slow, ind.macd_signal)
    recent_times = {c.time_ms for c in candles[-lookback:]}
    for sig in calculate_cd_signals(candles, macd):
        if sig.type == BUY and sig.time_ms in recent_times:
            return MatchedSignal(KIND_CD_BOTTOM, timeframe, f"CD bottom ({timeframe})", sig.label)
    return None


def match_ladder_strength(
    candles: Sequence[Candle],
    timeframe: str,
    *,
    indicators: Optional[IndicatorConfig] = None,
) -> Optional[MatchedSignal]:
    ind = indicators or IndicatorConfig()
    if len(candles) < ind.ladder_warmup:
        return None
    strong = check_blue_ladder_strength(
        candles,
        window=ind.strength_window,
        warmup=ind.ladder_warmup,
        blue_len=ind.blue_len,
        yellow_len=ind.yellow_len,
        band_mult=ind.band_mult,
    )
    if not strong:
        return None
    return MatchedSignal(KIND_LADDER_STRENGTH, timeframe, f"Blue ladder strong ({timeframe})", "trend strengthening")


def qualifies(result: ScreeningResult, enabled_count: int, logic: str) -> bool:
    met = result.kinds_met()
    if logic == LOGIC_AND:
        return enabled_count > 0 and met == enabled_count
    if logic == LOGIC_OR:
        return met > 0
    raise ValueError(f"Unknown logic mode: {logic!r}")


# ---------------------------------------------------------------------------
# Engine
# ---------------------------------------------------------------------------

class Screener:
    """Sweeps a symbol universe against a set of screening conditions.

    ``source`` is any object exposing ``async fetch_candles(symbol, interval)``.
    A failed fetch only costs the (symbol, timeframe) attempt it belongs to;
    ``run`` always finishes with a list.
    """

    def __init__(
        self,
        source,
        *,
        indicators: Optional[IndicatorConfig] = None,
        timeframe_delay_s: float = 0.05,
        symbol_delay_s: float = 0.1,
        concurrency: int = 1,
        min_request_spacing_s: float = 0.0,
        signal_lookback: int = 10,
        pressure_lookback: int = 5,
        min_candles: int = 30,
    ):
        if min(signal_lookback, pressure_lookback, min_candles) < 1:
            raise ValueError("signal_lookback, pressure_lookback and min_candles must be >= 1")
        self.source = source
        self.indicators = indicators or IndicatorConfig()
        self.timeframe_delay_s = timeframe_delay_s
        self.symbol_delay_s = symbol_delay_s
        self.concurrency = max(1, int(concurrency))
        self.min_request_spacing_s = min_request_spacing_s
        self.limiter = RateLimiter(min_request_spacing_s)
        self.signal_lookback = signal_lookback
        self.pressure_lookback = pressure_lookback
        self.min_candles = min_candles

        self.state = IDLE
        self.progress = ScanProgress(0, 0)
        self._cancel = asyncio.Event()

    @classmethod
    def from_config(cls, source, cfg: Config) -> "Screener":
        sc = cfg.screener
        return cls(
            source,
            indicators=cfg.indicators,
            timeframe_delay_s=sc.timeframe_delay_s,
            symbol_delay_s=sc.symbol_delay_s,
            concurrency=sc.concurrency,
            min_request_spacing_s=sc.min_request_spacing_s,
            signal_lookback=sc.signal_lookback,
            pressure_lookback=sc.pressure_lookback,
            min_candles=sc.min_candles,
        )

    def cancel(self) -> None:
        """Stop before the next symbol; the symbol in flight finishes."""
        self._cancel.set()

    @property
    def cancelled(self) -> bool:
        return self._cancel.is_set()

    def _set_progress(self, current: int, total: int, on_progress: Optional[ProgressCallback]) -> None:
        self.progress = ScanProgress(current, total)
        if on_progress is not None:
            on_progress(self.progress)

    async def run(
        self,
        universe: Sequence[str],
        conditions: Sequence[ScreeningCondition],
        logic: str = LOGIC_AND,
        on_progress: Optional[ProgressCallback] = None,
    ) -> List[ScreeningResult]:
        logic = (logic or "").upper()
        if logic not in (LOGIC_AND, LOGIC_OR):
            raise ValueError(f"Unknown logic mode: {logic!r}")

        self._cancel.clear()
        # asyncio primitives bind to the loop that first contends them
        self.limiter = RateLimiter(self.min_request_spacing_s)
        symbols = [s.upper() for s in universe]
        active = [c for c in conditions if c.active]
        enabled_count = sum(1 for c in conditions if c.enabled)

        if not active:
            log.info("scan_skipped reason=no_active_conditions")
            self.state = COMPLETED
            self._set_progress(0, 0, on_progress)
            return []

        log.info(
            "scan_start symbols=%d logic=%s conditions=%s concurrency=%d indicators_sig=%s",
            len(symbols),
            logic,
            ",".join(f"{c.kind}:{'/'.join(c.timeframes)}" for c in active),
            self.concurrency,
            self.indicators.signature()[:12],
        )
        self.state = SCANNING
        self._set_progress(0, len(symbols), on_progress)

        if self.concurrency == 1:
            found = await self._run_sequential(symbols, active, enabled_count, logic, on_progress)
        else:
            found = await self._run_parallel(symbols, active, enabled_count, logic, on_progress)

        if self.cancelled:
            log.info("scan_cancelled at=%d/%d found=%d", self.progress.current, self.progress.total, len(found))
            self.state = IDLE
        else:
            log.info("scan_done symbols=%d found=%d", len(symbols), len(found))
            self.state = COMPLETED
        return found

    async def _run_sequential(
        self,
        symbols: List[str],
        active: List[ScreeningCondition],
        enabled_count: int,
        logic: str,
        on_progress: Optional[ProgressCallback],
    ) -> List[ScreeningResult]:
        found: List[ScreeningResult] = []
        for i, sym in enumerate(symbols):
            if self.cancelled:
                break
            self._set_progress(i + 1, len(symbols), on_progress)
            res = await self._scan_symbol_safe(sym, active)
            if res is not None and qualifies(res, enabled_count, logic):
                found.append(res)
            await asyncio.sleep(self.symbol_delay_s)
        return found

    async def _run_parallel(
        self,
        symbols: List[str],
        active: List[ScreeningCondition],
        enabled_count: int,
        logic: str,
        on_progress: Optional[ProgressCallback],
    ) -> List[ScreeningResult]:
        sem = asyncio.Semaphore(self.concurrency)
        started = 0

        async def _one(sym: str) -> Optional[ScreeningResult]:
            nonlocal started
            async with sem:
                if self.cancelled:
                    return None
                started += 1
                self._set_progress(started, len(symbols), on_progress)
                res = await self._scan_symbol_safe(sym, active)
                await asyncio.sleep(self.symbol_delay_s)
                return res

        results = await asyncio.gather(*[_one(sym) for sym in symbols])
        return [r for r in results if r is not None and qualifies(r, enabled_count, logic)]

    async def _scan_symbol_safe(self, symbol: str, active: List[ScreeningCondition]) -> Optional[ScreeningResult]:
        try:
            return await self.scan_symbol(symbol, active)
        except Exception as e:
            log.warning("symbol_scan_failed symbol=%s err=%s", symbol, e)
            return None

    async def scan_symbol(self, symbol: str, conditions: Sequence[ScreeningCondition]) -> ScreeningResult:
        result = ScreeningResult(symbol=symbol)
        for cond in conditions:
            if not cond.active:
                continue
            matched = await self._check_condition(symbol, cond)
            if matched is not None:
                result.matched_signals.append(matched)
        return result

    async def _check_condition(self, symbol: str, cond: ScreeningCondition) -> Optional[MatchedSignal]:
        for tf in cond.timeframes:
            try:
                await self.limiter.wait()
                candles = await self.source.fetch_candles(symbol, tf)
                matched = self.evaluate(cond.kind, candles, tf)
            except Exception as e:
                log.warning("timeframe_failed symbol=%s kind=%s tf=%s err=%s", symbol, cond.kind, tf, e)
                matched = None
            if matched is not None:
                log.debug("condition_met symbol=%s kind=%s tf=%s detail=%s", symbol, cond.kind, tf, matched.detail)
                return matched
            await asyncio.sleep(self.timeframe_delay_s)
        return None

    def evaluate(self, kind: str, candles: Sequence[Candle], timeframe: str) -> Optional[MatchedSignal]:
        if kind == KIND_PRESSURE:
            return match_pressure(
                candles,
                timeframe,
                lookback=self.pressure_lookback,
                min_candles=self.min_candles,
                indicators=self.indicators,
            )
        if kind == KIND_CD_BOTTOM:
            return match_cd_bottom(
                candles,
                timeframe,
                lookback=self.signal_lookback,
                min_candles=self.min_candles,
                indicators=self.indicators,
            )
        if kind == KIND_LADDER_STRENGTH:
            return match_ladder_strength(candles, timeframe, indicators=self.indicators)
        raise ValueError(f"Unknown condition kind: {kind!r}")
