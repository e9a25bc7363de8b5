from __future__ import annotations

import asyncio
import json
import logging
from typing import Any, AsyncIterator, Dict, Optional

import websockets

from ..models import MomentumSnapshot

log = logging.getLogger("momentum")


def parse_snapshot(data: Dict[str, Any], symbol: str) -> Optional[MomentumSnapshot]:
    """Snapshot from a feed message, or None when it is not a momentum update."""
    if not isinstance(data, dict) or data.get("error"):
        return None
    try:
        return MomentumSnapshot(
            symbol=str(data.get("symbol") or symbol).upper(),
            buy_line=float(data["buyLine"]),
            sell_line=float(data["sellLine"]),
            diff_bar=float(data["diffBar"]),
            trend=str(data.get("trend", "")),
            time_ms=int(data["time"]) if data.get("time") is not None else None,
        )
    except (KeyError, TypeError, ValueError):
        return None


class MomentumFeed:
    """Live order-book momentum snapshots over a websocket. Auto-reconnects."""

    def __init__(self, ws_url: str, *, heartbeat_s: int = 20):
        self.ws_url = ws_url
        self.heartbeat_s = heartbeat_s

    async def stream(self, symbol: str) -> AsyncIterator[MomentumSnapshot]:
        if not self.ws_url:
            raise ValueError("momentum.ws_url is not configured")
        symbol = symbol.upper()
        sub_msg = {"action": "subscribe", "symbol": symbol}

        backoff = 1
        while True:
            try:
                async with websockets.connect(
                    self.ws_url,
                    ping_interval=self.heartbeat_s,
                    ping_timeout=self.heartbeat_s,
                    close_timeout=5,
                ) as ws:
                    backoff = 1
                    await ws.send(json.dumps(sub_msg))
                    log.info("ws_subscribed symbol=%s", symbol)

                    async for msg in ws:
                        try:
                            j = json.loads(msg)
                        except ValueError:
                            continue
                        snap = parse_snapshot(j.get("data", j) if isinstance(j, dict) else j, symbol)
                        if snap is None or snap.symbol != symbol:
                            continue
                        yield snap

            except (OSError, websockets.WebSocketException) as e:
                log.warning("ws_error symbol=%s err=%s reconnect_in=%ss", symbol, e, backoff)
                await asyncio.sleep(backoff)
                backoff = min(backoff * 2, 60)
