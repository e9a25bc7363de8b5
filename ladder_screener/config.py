from __future__ import annotations

from dataclasses import asdict, dataclass
import hashlib
import json
from typing import Any, Dict, List, Optional
import os
import yaml

from .intervals import validate_interval
from .models import CONDITION_KINDS, KIND_CD_BOTTOM, KIND_LADDER_STRENGTH, KIND_PRESSURE, LOGIC_AND, LOGIC_OR, ScreeningCondition


# First 50 names of the watch universe; the scanner walks them in order.
DEFAULT_UNIVERSE: List[str] = [
    "QQQ", "SPY", "GDXU", "TSLA", "TSLL", "OPEN", "OPEX", "DJT", "DJTU", "ONDS",
    "NVTS", "DXYZ", "UPST", "RDDT", "IWM", "UVXY", "RGTI", "ASTS", "ALAB", "OKLO",
    "CVNA", "CRWV", "CRCL", "SOXL", "BBAI", "SMCI", "SOFI", "HOOD", "COIN", "AMD",
    "DPST", "FIG", "SBET", "RXRX", "PLTR", "HIMS", "SMR", "SOUN", "UNH", "MRNA",
    "MSTR", "TEM", "MP", "MU", "RKLB", "U", "STX", "AGQ", "CRWD", "FMCC",
]


def _env_override(value: Any, env_key: str) -> Any:
    env_val = os.getenv(env_key)
    if env_val is None:
        return value
    # basic parsing
    if isinstance(value, bool):
        return env_val.strip().lower() in ("1", "true", "yes", "y", "on")
    if isinstance(value, int):
        try:
            return int(env_val)
        except ValueError:
            return value
    if isinstance(value, float):
        try:
            return float(env_val)
        except ValueError:
            return value
    return env_val


@dataclass
class AppConfig:
    name: str = "Ladder Screener"
    log_level: str = "INFO"


@dataclass
class ProviderConfig:
    type: str = "yahoo"
    base_url: str = "https://query1.finance.yahoo.com"
    timeout_s: int = 30
    quote_timeout_s: int = 15
    max_retries: int = 3
    backoff_s: float = 0.8
    user_agent: str = "Mozilla/5.0 (Windows NT 10.0; Win64; x64) AppleWebKit/537.36"
    cache_enabled: bool = True
    intraday_ttl_s: int = 120
    daily_ttl_s: int = 600
    quote_ttl_s: int = 120


@dataclass
class IndicatorConfig:
    # Ladder channels
    ladder_warmup: int = 60
    blue_len: int = 24
    yellow_len: int = 89
    band_mult: float = 0.5
    strength_window: int = 3

    # MACD
    macd_fast: int = 12
    macd_slow: int = 26
    macd_signal: int = 9

    # Buy/sell pressure
    pressure_len: int = 3
    pressure_ref_bars: int = 1
    strong_move_pct: float = 10.0

    def validate(self) -> None:
        for name in ("ladder_warmup", "blue_len", "yellow_len", "strength_window",
                     "macd_fast", "macd_slow", "macd_signal", "pressure_len", "pressure_ref_bars"):
            if int(getattr(self, name)) < 1:
                raise ValueError(f"indicators.{name} must be >= 1, got {getattr(self, name)}")
        if self.band_mult < 0:
            raise ValueError(f"indicators.band_mult must be >= 0, got {self.band_mult}")
        if self.strong_move_pct <= 0:
            raise ValueError(f"indicators.strong_move_pct must be > 0, got {self.strong_move_pct}")

    def signature(self) -> str:
        payload = json.dumps(asdict(self), sort_keys=True, separators=(",", ":"), ensure_ascii=True)
        return hashlib.sha256(payload.encode("utf-8")).hexdigest()


def default_conditions() -> List[ScreeningCondition]:
    return [
        ScreeningCondition(kind=KIND_PRESSURE, enabled=False, timeframes=["1d"]),
        ScreeningCondition(kind=KIND_CD_BOTTOM, enabled=True, timeframes=["4h"]),
        ScreeningCondition(kind=KIND_LADDER_STRENGTH, enabled=False, timeframes=["4h"]),
    ]


@dataclass
class ScreenerConfig:
    universe: List[str] = None
    max_symbols: int = 50
    logic: str = LOGIC_AND  # AND | OR
    conditions: List[ScreeningCondition] = None
    timeframe_delay_s: float = 0.05
    symbol_delay_s: float = 0.1
    concurrency: int = 1
    min_request_spacing_s: float = 0.05
    signal_lookback: int = 10
    pressure_lookback: int = 5
    min_candles: int = 30

    def validate(self) -> None:
        for name in ("concurrency", "signal_lookback", "pressure_lookback", "min_candles"):
            if int(getattr(self, name)) < 1:
                raise ValueError(f"screener.{name} must be >= 1, got {getattr(self, name)}")
        for name in ("max_symbols", "timeframe_delay_s", "symbol_delay_s", "min_request_spacing_s"):
            if getattr(self, name) < 0:
                raise ValueError(f"screener.{name} must be >= 0, got {getattr(self, name)}")
        if self.logic not in (LOGIC_AND, LOGIC_OR):
            raise ValueError(f"screener.logic must be AND or OR, got {self.logic!r}")


@dataclass
class MomentumConfig:
    enabled: bool = False
    ws_url: str = ""
    heartbeat_s: int = 20


@dataclass
class Config:
    app: AppConfig
    provider: ProviderConfig
    indicators: IndicatorConfig
    screener: ScreenerConfig
    momentum: MomentumConfig


def _parse_conditions(raw: Optional[List[Dict[str, Any]]]) -> List[ScreeningCondition]:
    if raw is None:
        return default_conditions()
    out: List[ScreeningCondition] = []
    seen = set()
    for item in raw:
        kind = str(item.get("kind", "")).strip().lower()
        if kind not in CONDITION_KINDS:
            raise ValueError(f"Unknown condition kind: {kind!r} (use one of {', '.join(CONDITION_KINDS)})")
        if kind in seen:
            raise ValueError(f"Duplicate condition kind: {kind}")
        seen.add(kind)
        tfs = [validate_interval(str(tf)) for tf in (item.get("timeframes") or [])]
        out.append(ScreeningCondition(kind=kind, enabled=bool(item.get("enabled", True)), timeframes=tfs))
    return out


def _split_csv(value: str) -> List[str]:
    return [x.strip().upper() for x in value.split(",") if x.strip()]


def build_config(raw: Optional[Dict[str, Any]] = None) -> Config:
    raw = raw or {}
    app = raw.get("app", {})
    provider = raw.get("provider", {})
    indicators = raw.get("indicators", {})
    screener = dict(raw.get("screener", {}))
    momentum = raw.get("momentum", {})

    conditions = _parse_conditions(screener.pop("conditions", None))

    cfg = Config(
        app=AppConfig(**app),
        provider=ProviderConfig(**provider),
        indicators=IndicatorConfig(**indicators),
        screener=ScreenerConfig(conditions=conditions, **screener),
        momentum=MomentumConfig(**momentum),
    )

    # env overrides (useful on servers)
    cfg.app.log_level = _env_override(cfg.app.log_level, "LOG_LEVEL")
    cfg.provider.base_url = _env_override(cfg.provider.base_url, "PROVIDER_BASE_URL")
    cfg.momentum.ws_url = _env_override(cfg.momentum.ws_url, "MOMENTUM_WS_URL")
    cfg.provider.cache_enabled = _env_override(cfg.provider.cache_enabled, "PROVIDER_CACHE_ENABLED")
    cfg.momentum.enabled = _env_override(cfg.momentum.enabled, "MOMENTUM_ENABLED")
    cfg.screener.logic = str(_env_override(cfg.screener.logic, "SCREENER_LOGIC")).strip().upper()
    cfg.screener.max_symbols = _env_override(cfg.screener.max_symbols, "SCREENER_MAX_SYMBOLS")
    cfg.screener.concurrency = _env_override(cfg.screener.concurrency, "SCREENER_CONCURRENCY")
    cfg.screener.timeframe_delay_s = _env_override(cfg.screener.timeframe_delay_s, "SCREENER_TIMEFRAME_DELAY_S")
    cfg.screener.symbol_delay_s = _env_override(cfg.screener.symbol_delay_s, "SCREENER_SYMBOL_DELAY_S")

    # Allow SCREENER_UNIVERSE="AAPL,MSFT"
    universe_env = os.getenv("SCREENER_UNIVERSE")
    if universe_env:
        cfg.screener.universe = _split_csv(universe_env)
    if cfg.screener.universe is None:
        cfg.screener.universe = list(DEFAULT_UNIVERSE)
    cfg.screener.universe = [str(s).strip().upper() for s in cfg.screener.universe if str(s).strip()]

    cfg.indicators.validate()
    cfg.screener.validate()

    return cfg


def load_config(path: str) -> Config:
    with open(path, "r", encoding="utf-8") as f:
        raw = yaml.safe_load(f) or {}
    return build_config(raw)
