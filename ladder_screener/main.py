from __future__ import annotations

import argparse
import asyncio
import logging
import signal
import sys
from typing import Optional

from .analysis import ChartSession
from .cache import TtlCache
from .config import Config, build_config, load_config
from .formatters import format_bundle, format_progress, format_quotes, format_results
from .models import MomentumSnapshot
from .providers.momentum import MomentumFeed
from .providers.yahoo import YahooProvider
from .screener import Screener

log = logging.getLogger("main")


def _setup_logging(level: str) -> None:
    lvl = getattr(logging, (level or "INFO").upper(), logging.INFO)
    logging.basicConfig(
        level=lvl,
        format="%(asctime)s | %(levelname)s | %(name)s | %(message)s",
    )


def build_provider(cfg: Config) -> YahooProvider:
    p = cfg.provider
    if p.type != "yahoo":
        raise ValueError(f"Unsupported provider type: {p.type}")
    return YahooProvider(
        p.base_url,
        timeout_s=p.timeout_s,
        quote_timeout_s=p.quote_timeout_s,
        max_retries=p.max_retries,
        backoff_s=p.backoff_s,
        user_agent=p.user_agent,
        cache=TtlCache() if p.cache_enabled else None,
        intraday_ttl_s=p.intraday_ttl_s,
        daily_ttl_s=p.daily_ttl_s,
        quote_ttl_s=p.quote_ttl_s,
    )


async def _first_snapshot(cfg: Config, symbol: str, wait_s: float) -> Optional[MomentumSnapshot]:
    if not cfg.momentum.enabled or not cfg.momentum.ws_url:
        return None
    feed = MomentumFeed(cfg.momentum.ws_url, heartbeat_s=cfg.momentum.heartbeat_s)
    stream = feed.stream(symbol)
    try:
        return await asyncio.wait_for(stream.__anext__(), timeout=wait_s)
    except asyncio.TimeoutError:
        log.warning("momentum_timeout symbol=%s wait=%.1fs", symbol, wait_s)
        return None
    finally:
        await stream.aclose()


async def run_scan(cfg: Config) -> int:
    provider = build_provider(cfg)
    screener = Screener.from_config(provider, cfg)

    loop = asyncio.get_running_loop()
    try:
        loop.add_signal_handler(signal.SIGINT, screener.cancel)
    except (NotImplementedError, RuntimeError):
        pass  # platform without signal handlers; Ctrl-C aborts instead

    def _progress(p) -> None:
        print(f"\r{format_progress(p)}", end="", file=sys.stderr, flush=True)

    sc = cfg.screener
    universe = sc.universe[: sc.max_symbols] if sc.max_symbols > 0 else sc.universe
    try:
        results = await screener.run(universe, sc.conditions, sc.logic, on_progress=_progress)
    finally:
        print(file=sys.stderr)
        await provider.close()

    if screener.cancelled:
        print("Scan cancelled; partial results:")
    print(format_results(results, sc.logic))
    return 0


async def run_chart(cfg: Config, symbol: str, interval: str, momentum_wait_s: float) -> int:
    provider = build_provider(cfg)
    session = ChartSession(provider, indicators=cfg.indicators)
    try:
        momentum = await _first_snapshot(cfg, symbol, momentum_wait_s)
        bundle = await session.load(symbol, interval, momentum=momentum)
    finally:
        await provider.close()
    if bundle is not None:
        print(format_bundle(bundle))
    return 0


async def run_quotes(cfg: Config, symbols) -> int:
    provider = build_provider(cfg)
    wanted = [s.strip().upper() for s in symbols if s.strip()]
    try:
        quotes = await provider.fetch_quotes(wanted)
    finally:
        await provider.close()
    print(format_quotes(quotes, wanted))
    return 0


def main(argv=None) -> int:
    p = argparse.ArgumentParser(description="Ladder Screener - indicator charts and multi-timeframe stock screening")
    p.add_argument("--config", help="Path to YAML config (defaults apply when omitted)")
    sub = p.add_subparsers(dest="command")

    sub.add_parser("scan", help="Scan the configured universe against the configured conditions")

    chart = sub.add_parser("chart", help="Print the latest indicator snapshot for one symbol")
    chart.add_argument("symbol")
    chart.add_argument("--interval", default="1d")
    chart.add_argument("--momentum-wait", type=float, default=5.0, help="Seconds to wait for a momentum snapshot")

    quotes = sub.add_parser("quotes", help="Print quotes for symbols (defaults to the screener universe)")
    quotes.add_argument("symbols", nargs="*")

    args = p.parse_args(argv)

    cfg = load_config(args.config) if args.config else build_config()
    _setup_logging(cfg.app.log_level)

    try:
        if args.command == "chart":
            return asyncio.run(run_chart(cfg, args.symbol, args.interval, args.momentum_wait))
        if args.command == "quotes":
            return asyncio.run(run_quotes(cfg, args.symbols or cfg.screener.universe))
        return asyncio.run(run_scan(cfg))
    except KeyboardInterrupt:
        return 0
    except Exception as e:
        logging.getLogger("main").exception("fatal err=%s", e)
        return 1


if __name__ == "__main__":
    raise SystemExit(main())
