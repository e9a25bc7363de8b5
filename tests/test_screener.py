import asyncio

import pytest

from ladder_screener.config import IndicatorConfig
from ladder_screener.models import (
    KIND_CD_BOTTOM,
    KIND_LADDER_STRENGTH,
    KIND_PRESSURE,
    Candle,
    MatchedSignal,
    ScreeningCondition,
    ScreeningResult,
)
from ladder_screener.screener import (
    COMPLETED,
    IDLE,
    RateLimiter,
    ScanProgress,
    Screener,
    match_cd_bottom,
    match_ladder_strength,
    match_pressure,
    qualifies,
)

DAY_MS = 86_400_000
T0 = 1_600_000_000_000


def _c(idx, close, high=None, low=None, vol=1000.0):
    return Candle(
        time_ms=T0 + idx * DAY_MS,
        open=close,
        high=close + 0.5 if high is None else high,
        low=close - 0.5 if low is None else low,
        close=close,
        volume=vol,
    )


def _uptrend(n=120):
    return [_c(i, 100.0 + i) for i in range(n)]


def _pressure_surge(n=40):
    # flat 50% buy share, then a bar closing on its high
    bars = [_c(i, 100.0, high=200.0, low=0.0, vol=100.0) for i in range(n - 1)]
    bars.append(_c(n - 1, 200.0, high=200.0, low=0.0, vol=100.0))
    return bars


def _cd_bottom_series(n=88):
    closes = []
    for i in range(100):
        if i < 40:
            c = 100.0 + 2 * i
        elif i < 50:
            c = 178.0 - (i - 39)
        elif i < 80:
            c = 168.0 + 0.8 * (i - 49)
        else:
            c = 192.0 - 2 * (i - 79)
        closes.append(300.0 - c)
    return [_c(i, c) for i, c in enumerate(closes[:n])]


class FakeSource:
    """Serves canned candles keyed by (symbol, interval); values may be exceptions."""

    def __init__(self, data):
        self.data = data
        self.calls = []

    async def fetch_candles(self, symbol, interval):
        self.calls.append((symbol, interval))
        val = self.data.get((symbol, interval), [])
        if isinstance(val, Exception):
            raise val
        return val


def _screener(source, **kw):
    kw.setdefault("timeframe_delay_s", 0)
    kw.setdefault("symbol_delay_s", 0)
    return Screener(source, **kw)


def test_match_pressure_reports_surge():
    m = match_pressure(_pressure_surge(), "1d")
    assert m is not None
    assert m.kind == KIND_PRESSURE
    assert m.label == "Pressure surge (1d)"
    assert m.detail == "+50.0%"


def test_match_pressure_needs_min_candles():
    assert match_pressure(_pressure_surge(20), "1d") is None


def test_match_pressure_ignores_flat_series():
    assert match_pressure(_uptrend(60), "1d") is None


def test_match_cd_bottom_in_recent_bars():
    m = match_cd_bottom(_cd_bottom_series(), "4h")
    assert m is not None
    assert m.kind == KIND_CD_BOTTOM
    assert m.label == "CD bottom (4h)"
    assert m.detail == "CD Buy"


def test_match_cd_bottom_ignores_stale_buy():
    # buy lands around bar 80; 100 bars pushes it out of the last 10
    assert match_cd_bottom(_cd_bottom_series(100), "4h") is None


def test_match_ladder_strength():
    m = match_ladder_strength(_uptrend(), "1h")
    assert m == MatchedSignal(KIND_LADDER_STRENGTH, "1h", "Blue ladder strong (1h)", "trend strengthening")
    assert match_ladder_strength(_uptrend(50), "1h") is None


def test_qualifies_and_or():
    one = ScreeningResult("AAA", [MatchedSignal(KIND_PRESSURE, "1d", "x", "y")])
    assert qualifies(one, 1, "AND")
    assert not qualifies(one, 2, "AND")
    assert qualifies(one, 2, "OR")
    assert not qualifies(ScreeningResult("AAA"), 0, "AND")
    assert not qualifies(ScreeningResult("AAA"), 2, "OR")
    with pytest.raises(ValueError):
        qualifies(one, 1, "XOR")


def _two_conditions():
    return [
        ScreeningCondition(KIND_PRESSURE, True, ["1d"]),
        ScreeningCondition(KIND_LADDER_STRENGTH, True, ["1d"]),
    ]


def test_and_requires_every_enabled_condition():
    src = FakeSource({
        ("UP", "1d"): _uptrend(),            # ladder only
        ("SURGE", "1d"): _pressure_surge(),  # pressure only
    })
    sc = _screener(src)
    out = asyncio.run(sc.run(["UP", "SURGE"], _two_conditions(), "AND"))
    assert out == []
    assert sc.state == COMPLETED


def test_or_accepts_any_condition():
    src = FakeSource({
        ("UP", "1d"): _uptrend(),
        ("SURGE", "1d"): _pressure_surge(),
        ("FLAT", "1d"): [_c(i, 100.0) for i in range(40)],
    })
    out = asyncio.run(_screener(src).run(["UP", "FLAT", "SURGE"], _two_conditions(), "OR"))
    assert [r.symbol for r in out] == ["UP", "SURGE"]
    assert [m.kind for m in out[0].matched_signals] == [KIND_LADDER_STRENGTH]
    assert [m.kind for m in out[1].matched_signals] == [KIND_PRESSURE]


def test_enabled_condition_without_timeframes_blocks_and():
    conds = [
        ScreeningCondition(KIND_LADDER_STRENGTH, True, ["1d"]),
        ScreeningCondition(KIND_PRESSURE, True, []),
    ]
    src = FakeSource({("UP", "1d"): _uptrend()})
    assert asyncio.run(_screener(src).run(["UP"], conds, "AND")) == []
    assert len(asyncio.run(_screener(src).run(["UP"], conds, "OR"))) == 1


def test_first_matching_timeframe_wins():
    src = FakeSource({("UP", "1h"): _uptrend(), ("UP", "1d"): _uptrend()})
    conds = [ScreeningCondition(KIND_LADDER_STRENGTH, True, ["1h", "1d"])]
    out = asyncio.run(_screener(src).run(["UP"], conds, "AND"))
    assert out[0].matched_signals[0].timeframe == "1h"
    assert src.calls == [("UP", "1h")]


def test_failed_timeframe_falls_through_to_next():
    src = FakeSource({
        ("UP", "1h"): RuntimeError("HTTP 500"),
        ("UP", "1d"): _uptrend(),
        ("BAD", "1h"): RuntimeError("timeout"),
        ("BAD", "1d"): RuntimeError("timeout"),
    })
    conds = [ScreeningCondition(KIND_LADDER_STRENGTH, True, ["1h", "1d"])]
    sc = _screener(src)
    out = asyncio.run(sc.run(["BAD", "UP"], conds, "AND"))
    assert [r.symbol for r in out] == ["UP"]
    assert out[0].matched_signals[0].timeframe == "1d"
    assert sc.state == COMPLETED


def test_short_history_is_a_non_match():
    src = FakeSource({("NEW", "1d"): _uptrend(20)})
    conds = [ScreeningCondition(KIND_LADDER_STRENGTH, True, ["1d"])]
    assert asyncio.run(_screener(src).run(["NEW"], conds, "OR")) == []


def test_no_active_conditions_returns_empty():
    src = FakeSource({})
    conds = [
        ScreeningCondition(KIND_PRESSURE, False, ["1d"]),
        ScreeningCondition(KIND_CD_BOTTOM, True, []),
    ]
    sc = _screener(src)
    assert asyncio.run(sc.run(["AAA", "BBB"], conds, "AND")) == []
    assert sc.state == COMPLETED
    assert src.calls == []


def test_progress_is_reported_per_symbol():
    seen = []
    src = FakeSource({})
    conds = [ScreeningCondition(KIND_PRESSURE, True, ["1d"])]
    sc = _screener(src)
    asyncio.run(sc.run(["a", "b", "c"], conds, "OR", on_progress=seen.append))
    assert seen == [ScanProgress(0, 3), ScanProgress(1, 3), ScanProgress(2, 3), ScanProgress(3, 3)]
    assert sc.progress == ScanProgress(3, 3)


def test_cancel_stops_before_next_symbol():
    src = FakeSource({("A", "1d"): _uptrend(), ("B", "1d"): _uptrend(), ("C", "1d"): _uptrend()})
    conds = [ScreeningCondition(KIND_LADDER_STRENGTH, True, ["1d"])]
    sc = _screener(src)

    def _on_progress(p):
        if p.current == 1:
            sc.cancel()

    out = asyncio.run(sc.run(["A", "B", "C"], conds, "AND", on_progress=_on_progress))
    assert [r.symbol for r in out] == ["A"]
    assert sc.cancelled
    assert sc.state == IDLE
    assert src.calls == [("A", "1d")]


def test_rerun_after_cancel_starts_fresh():
    src = FakeSource({("A", "1d"): _uptrend()})
    conds = [ScreeningCondition(KIND_LADDER_STRENGTH, True, ["1d"])]
    sc = _screener(src)
    sc.cancel()
    out = asyncio.run(sc.run(["A"], conds, "AND"))
    assert [r.symbol for r in out] == ["A"]
    assert sc.state == COMPLETED


def test_parallel_keeps_universe_order():
    data = {(s, "1d"): _uptrend() for s in ("A", "C", "E")}
    data[("B", "1d")] = RuntimeError("boom")
    src = FakeSource(data)
    conds = [ScreeningCondition(KIND_LADDER_STRENGTH, True, ["1d"])]
    out = asyncio.run(_screener(src, concurrency=3).run(["A", "B", "C", "D", "E"], conds, "OR"))
    assert [r.symbol for r in out] == ["A", "C", "E"]


def test_unknown_logic_is_rejected():
    with pytest.raises(ValueError):
        asyncio.run(_screener(FakeSource({})).run(["A"], _two_conditions(), "XOR"))


def test_custom_indicator_config_is_used():
    # a 1-bar pressure EMA turns a 50% -> 55% buy share into an exact +10%
    bars = [_c(i, 100.0, high=200.0, low=0.0, vol=100.0) for i in range(39)]
    bars.append(_c(39, 110.0, high=200.0, low=0.0, vol=100.0))
    m = match_pressure(bars, "1d", indicators=IndicatorConfig(pressure_len=1))
    assert m is not None and m.detail == "+10.0%"


def test_rate_limiter_spaces_requests(monkeypatch):
    now = [0.0]
    slept = []

    async def _fake_sleep(delay):
        slept.append(delay)
        now[0] += delay

    monkeypatch.setattr("ladder_screener.screener.asyncio.sleep", _fake_sleep)

    async def _go():
        limiter = RateLimiter(0.5, clock=lambda: now[0])
        await limiter.wait()
        await limiter.wait()
        now[0] += 1.0
        await limiter.wait()

    asyncio.run(_go())
    assert slept == [0.5]


def test_parallel_screener_can_run_twice():
    data = {(s, "1d"): _uptrend() for s in ("A", "B", "C")}
    conds = [ScreeningCondition(KIND_LADDER_STRENGTH, True, ["1d"])]
    sc = _screener(FakeSource(data), concurrency=3, min_request_spacing_s=0.001)
    first = asyncio.run(sc.run(["A", "B", "C"], conds, "AND"))
    second = asyncio.run(sc.run(["A", "B", "C"], conds, "AND"))
    assert [r.symbol for r in first] == ["A", "B", "C"]
    assert [r.symbol for r in second] == ["A", "B", "C"]


def test_pacing_delays(monkeypatch):
    slept = []

    async def _fake_sleep(delay):
        slept.append(delay)

    monkeypatch.setattr("ladder_screener.screener.asyncio.sleep", _fake_sleep)

    src = FakeSource({
        ("A", "1h"): RuntimeError("HTTP 500"),  # failed
        ("A", "4h"): _uptrend(20),              # too short
        ("A", "1d"): _uptrend(),                # match, no delay after it
        ("B", "1h"): RuntimeError("timeout"),
    })
    conds = [ScreeningCondition(KIND_LADDER_STRENGTH, True, ["1h", "4h", "1d"])]
    sc = _screener(src, timeframe_delay_s=0.25, symbol_delay_s=1.5)
    out = asyncio.run(sc.run(["A", "B"], conds, "OR"))

    assert [r.symbol for r in out] == ["A"]
    assert slept == [0.25, 0.25, 1.5, 0.25, 0.25, 0.25, 1.5]


def test_non_positive_lookback_rejected():
    with pytest.raises(ValueError):
        match_pressure(_pressure_surge(), "1d", lookback=0)
    with pytest.raises(ValueError):
        match_cd_bottom(_cd_bottom_series(), "4h", lookback=0)
    with pytest.raises(ValueError):
        Screener(FakeSource({}), pressure_lookback=0)
