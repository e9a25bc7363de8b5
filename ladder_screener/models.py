from __future__ import annotations
from dataclasses import dataclass, field
from typing import List, Optional


BUY = "buy"
SELL = "sell"

STRONG_UP = "strong_up"
STRONG_DOWN = "strong_down"

KIND_PRESSURE = "pressure"
KIND_CD_BOTTOM = "cd_bottom"
KIND_LADDER_STRENGTH = "ladder_strength"
CONDITION_KINDS = (KIND_PRESSURE, KIND_CD_BOTTOM, KIND_LADDER_STRENGTH)

LOGIC_AND = "AND"
LOGIC_OR = "OR"


@dataclass(frozen=True)
class Candle:
    time_ms: int  # bar start, epoch millis
    open: float
    high: float
    low: float
    close: float
    volume: float


@dataclass(frozen=True)
class Quote:
    symbol: str
    name: str
    price: float
    change: float
    change_percent: float
    volume: float


@dataclass(frozen=True)
class LadderPoint:
    time_ms: int
    blue_up: float
    blue_dn: float
    yellow_up: float
    yellow_dn: float


@dataclass(frozen=True)
class MacdSeries:
    diff: List[float]
    dea: List[float]
    macd: List[float]


@dataclass(frozen=True)
class Signal:
    time_ms: int
    type: str  # buy or sell
    label: str


@dataclass(frozen=True)
class PressurePoint:
    time_ms: int
    pressure: float
    change_rate: float  # percent
    signal: Optional[str] = None  # strong_up | strong_down


@dataclass(frozen=True)
class MomentumSnapshot:
    symbol: str
    buy_line: float
    sell_line: float
    diff_bar: float
    trend: str
    time_ms: Optional[int] = None


@dataclass
class ScreeningCondition:
    kind: str  # pressure | cd_bottom | ladder_strength
    enabled: bool = True
    timeframes: List[str] = field(default_factory=list)

    @property
    def active(self) -> bool:
        return self.enabled and bool(self.timeframes)


@dataclass(frozen=True)
class MatchedSignal:
    kind: str
    timeframe: str
    label: str
    detail: str


@dataclass
class ScreeningResult:
    symbol: str
    matched_signals: List[MatchedSignal] = field(default_factory=list)

    def kinds_met(self) -> int:
        return len({m.kind for m in self.matched_signals})
