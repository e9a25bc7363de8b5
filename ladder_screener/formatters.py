from __future__ import annotations

from datetime import datetime, timezone, timedelta
from typing import Dict, List, Optional, Sequence

from .analysis import ChartBundle
from .intervals import display_time_ms, is_intraday
from .models import BUY, LOGIC_AND, STRONG_DOWN, STRONG_UP, Quote, ScreeningResult, Signal
from .screener import ScanProgress


ET = timezone(timedelta(hours=-4))  # display only; aggregation handles DST


def _fmt_ms(ts_ms: int, tz=ET) -> str:
    dt = datetime.fromtimestamp(ts_ms / 1000.0, tz=timezone.utc).astimezone(tz)
    return dt.strftime("%Y-%m-%d %H:%M")


def _fmt_bar_time(ts_ms: int, interval: str) -> str:
    shown = display_time_ms(ts_ms, interval)
    if is_intraday(interval):
        return _fmt_ms(shown)
    return datetime.fromtimestamp(shown / 1000.0, tz=timezone.utc).strftime("%Y-%m-%d")


def _fmt_price(val: Optional[float]) -> str:
    if val is None:
        return "-"
    return f"{val:,.2f}"


def format_progress(progress: ScanProgress) -> str:
    return f"Scanning ({progress.current}/{progress.total})"


def format_result(result: ScreeningResult) -> str:
    parts = [f"{m.label} | {m.detail}" for m in result.matched_signals]
    return f"{result.symbol:<6}  " + "  ".join(f"[{p}]" for p in parts)


def format_results(results: Sequence[ScreeningResult], logic: str) -> str:
    mode = "all conditions" if logic == LOGIC_AND else "any condition"
    if not results:
        hint = " Try OR logic or different timeframes." if logic == LOGIC_AND else ""
        return f"No symbols matched ({mode}).{hint}"
    lines = [f"Matched {len(results)} symbol(s) ({mode}):"]
    lines.extend(format_result(r) for r in results)
    return "\n".join(lines)


def _signal_summary(name: str, signals: List[Signal], interval: str) -> str:
    buys = sum(1 for s in signals if s.type == BUY)
    sells = len(signals) - buys
    line = f"{name}: buy={buys} sell={sells}"
    if signals:
        last = signals[-1]
        line += f" | last: {last.label} ({_fmt_bar_time(last.time_ms, interval)})"
    return line


def format_bundle(bundle: ChartBundle) -> str:
    """Plain-text snapshot of the latest values in a chart bundle."""
    lines = [f"{bundle.symbol} | {bundle.interval} | bars={len(bundle.candles)}"]

    q = bundle.quote
    if q is not None:
        lines.append(f"{q.name}: {_fmt_price(q.price)} ({q.change:+.2f}, {q.change_percent:+.2f}%) vol={q.volume:,.0f}")

    if not bundle.candles:
        lines.append("No candles for this request.")
        return "\n".join(lines)

    last = bundle.candles[-1]
    lines.append(
        f"Last bar {_fmt_bar_time(last.time_ms, bundle.interval)}: "
        f"O={_fmt_price(last.open)} H={_fmt_price(last.high)} L={_fmt_price(last.low)} C={_fmt_price(last.close)}"
    )

    if bundle.ladder:
        lp = bundle.ladder[-1]
        lines.append(
            f"Ladder: blue {_fmt_price(lp.blue_dn)}-{_fmt_price(lp.blue_up)} | "
            f"yellow {_fmt_price(lp.yellow_dn)}-{_fmt_price(lp.yellow_up)}"
        )
    else:
        lines.append("Ladder: not enough history")

    if bundle.macd.diff:
        lines.append(
            f"MACD: diff={bundle.macd.diff[-1]:.3f} dea={bundle.macd.dea[-1]:.3f} hist={bundle.macd.macd[-1]:.3f}"
        )

    lines.append(_signal_summary("CD", bundle.cd_signals, bundle.interval))
    lines.append(_signal_summary("NX", bundle.nx_signals, bundle.interval))

    if bundle.pressure:
        p = bundle.pressure[-1]
        strong_up = sum(1 for x in bundle.pressure if x.signal == STRONG_UP)
        strong_down = sum(1 for x in bundle.pressure if x.signal == STRONG_DOWN)
        lines.append(
            f"Pressure: {p.pressure:.2f} ({p.change_rate:+.1f}%) strong_up={strong_up} strong_down={strong_down}"
        )

    m = bundle.momentum
    if m is not None:
        lines.append(f"Momentum: buy={m.buy_line:.2f} sell={m.sell_line:.2f} diff={m.diff_bar:+.2f} trend={m.trend}")

    return "\n".join(lines)


def format_quote(q: Quote) -> str:
    return f"{q.symbol:<6}  {_fmt_price(q.price):>10}  {q.change:+8.2f}  {q.change_percent:+7.2f}%  vol={q.volume:,.0f}"


def format_quotes(quotes: Dict[str, Quote], requested: Sequence[str]) -> str:
    lines = [format_quote(quotes[s]) for s in requested if s in quotes]
    missing = [s for s in requested if s not in quotes]
    if missing:
        lines.append(f"No quote: {', '.join(missing)}")
    return "\n".join(lines) if lines else "No quotes."
