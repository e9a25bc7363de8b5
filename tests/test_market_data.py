from datetime import datetime, timezone

import pytest

from ladder_screener.aggregation import aggregate_intraday, aggregate_weekly, session_minute
from ladder_screener.cache import TtlCache
from ladder_screener.intervals import display_time_ms, interval_minutes, is_intraday, validate_interval
from ladder_screener.models import Candle
from ladder_screener.providers.momentum import parse_snapshot
from ladder_screener.providers.yahoo import FetchError, parse_chart, parse_quote

MIN_MS = 60_000
DAY_MS = 86_400_000


def _ms(*args) -> int:
    return int(datetime(*args, tzinfo=timezone.utc).timestamp() * 1000)


def _bar(t_ms, o, h, l, c, v=10.0):
    return Candle(t_ms, o, h, l, c, v)


def test_display_time_marks_intraday_bar_end():
    open_ms = _ms(2025, 6, 2, 13, 30)  # 09:30 ET
    assert display_time_ms(open_ms, "30m") == _ms(2025, 6, 2, 14, 0)
    assert display_time_ms(open_ms, "1m") == _ms(2025, 6, 2, 13, 31)
    assert display_time_ms(open_ms, "1d") == open_ms
    assert display_time_ms(open_ms, "1w") == open_ms


def test_interval_helpers():
    assert validate_interval(" 4h ") == "4h"
    with pytest.raises(ValueError):
        validate_interval("2d")
    assert is_intraday("4h") and not is_intraday("1d")
    assert interval_minutes("2h") == 120
    with pytest.raises(ValueError):
        interval_minutes("1mo")


def test_session_minute_handles_daylight_and_standard_time():
    assert session_minute(_ms(2025, 6, 2, 13, 30)) == 0
    assert session_minute(_ms(2025, 1, 6, 14, 30)) == 0
    assert session_minute(_ms(2025, 6, 2, 13, 0)) == -30


def test_aggregate_intraday_groups_from_the_open():
    start = _ms(2025, 6, 2, 13, 0)  # 30 min of pre-market first
    bars = [_bar(start + i * MIN_MS, 100 + i, 100.5 + i, 99.5 + i, 100 + i) for i in range(90)]
    out = aggregate_intraday(bars, 30)
    assert len(out) == 2
    first = out[0]
    assert first.time_ms == _ms(2025, 6, 2, 13, 30)
    assert first.open == 130
    assert first.high == 159.5
    assert first.low == 129.5
    assert first.close == 159
    assert first.volume == 300.0


def test_aggregate_intraday_drops_after_hours():
    bars = [_bar(_ms(2025, 6, 2, 20, 0), 1, 1, 1, 1), _bar(_ms(2025, 6, 2, 19, 59), 2, 2, 2, 2)]
    out = aggregate_intraday(bars, 60)
    assert [c.close for c in out] == [2]


def test_aggregate_intraday_rejects_bad_width():
    with pytest.raises(ValueError):
        aggregate_intraday([], 0)


def test_aggregate_weekly():
    monday = _ms(2025, 6, 2)
    days = [_bar(monday + d * DAY_MS, 10 + d, 11 + d, 9 + d, 10.5 + d) for d in (0, 1, 2, 3, 4, 7, 8)]
    weeks = aggregate_weekly(days)
    assert len(weeks) == 2
    assert weeks[0].time_ms == monday
    assert weeks[0].open == 10 and weeks[0].close == 14.5
    assert weeks[0].high == 15 and weeks[0].low == 9
    assert weeks[1].volume == 20.0


def _chart_payload():
    return {
        "chart": {
            "result": [{
                "meta": {"symbol": "AAPL", "longName": "Apple Inc.", "regularMarketPrice": 110.0,
                         "previousClose": 100.0, "regularMarketVolume": 12345},
                "timestamp": [1000, 1060, 1120, 1120],
                "indicators": {"quote": [{
                    "open": [1.0, None, 3.0, 4.0],
                    "high": [1.5, 2.5, 3.5, 4.5],
                    "low": [0.5, 1.5, 2.5, 3.5],
                    "close": [1.2, 2.2, 3.2, 4.2],
                    "volume": [10, 20, 30, 40],
                }]},
            }],
            "error": None,
        }
    }


def test_parse_chart_drops_incomplete_and_repeated_rows():
    candles = parse_chart(_chart_payload())
    assert [c.time_ms for c in candles] == [1_000_000, 1_120_000]
    assert candles[1].close == 3.2


def test_parse_chart_without_result():
    with pytest.raises(FetchError):
        parse_chart({"chart": {"result": None, "error": {"code": "Not Found"}}})


def test_parse_quote():
    q = parse_quote(_chart_payload(), "aapl")
    assert q.symbol == "AAPL"
    assert q.name == "Apple Inc."
    assert q.change == 10.0
    assert q.change_percent == 10.0
    assert q.volume == 12345.0


def test_parse_quote_incomplete():
    with pytest.raises(FetchError):
        parse_quote({"chart": {"result": [{"meta": {"symbol": "X"}}]}}, "X")


def test_parse_momentum_snapshot():
    snap = parse_snapshot({"buyLine": "1.5", "sellLine": 0.5, "diffBar": 1, "trend": "up", "time": 99}, "tsla")
    assert snap.symbol == "TSLA"
    assert snap.buy_line == 1.5 and snap.diff_bar == 1.0
    assert snap.time_ms == 99
    assert parse_snapshot({"error": "no data"}, "TSLA") is None
    assert parse_snapshot({"buyLine": 1.0}, "TSLA") is None


def test_ttl_cache_expiry_and_eviction():
    now = [0.0]
    cache = TtlCache(max_entries=2, clock=lambda: now[0])
    cache.set("a", 1, ttl_s=10)
    cache.set("b", 2, ttl_s=5)
    assert cache.get("a") == 1

    cache.set("c", 3, ttl_s=10)  # full: "b" expires soonest
    assert len(cache) == 2
    assert cache.get("b") is None

    now[0] = 10.0
    assert cache.get("a") is None
    assert cache.get("c") is None
