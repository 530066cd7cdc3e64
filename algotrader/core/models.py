# algotrader/core/models.py
from __future__ import annotations

import uuid
from dataclasses import asdict, dataclass, field, fields
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional


def utc_now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


def new_id() -> str:
    return str(uuid.uuid4())


class Direction(str, Enum):
    BUY = "BUY"
    SELL = "SELL"


class SignalStatus(str, Enum):
    PENDING = "PENDING"
    EXECUTED = "EXECUTED"
    EXPIRED = "EXPIRED"


class Confidence(str, Enum):
    HIGH = "HIGH"
    MEDIUM = "MEDIUM"
    LOW = "LOW"


class PositionStatus(str, Enum):
    OPEN = "OPEN"
    CLOSED = "CLOSED"


class TradingMode(str, Enum):
    VIRTUAL = "virtual"
    REAL = "real"


def _known(cls, data: Dict[str, Any]) -> Dict[str, Any]:
    # ignore keys written by older versions
    names = {f.name for f in fields(cls)}
    return {k: v for k, v in data.items() if k in names}


@dataclass(frozen=True)
class OHLCV:
    """Candles for one symbol, oldest first."""

    closes: tuple
    highs: tuple
    lows: tuple
    volumes: tuple
    opens: tuple = ()

    def __len__(self) -> int:
        return len(self.closes)

    @classmethod
    def from_lists(cls, closes, highs, lows, volumes, opens=()) -> "OHLCV":
        return cls(
            closes=tuple(float(x) for x in closes),
            highs=tuple(float(x) for x in highs),
            lows=tuple(float(x) for x in lows),
            volumes=tuple(float(x) for x in volumes),
            opens=tuple(float(x) for x in opens),
        )


@dataclass
class Signal:
    symbol: str
    side: Direction
    score: float
    confidence: Confidence
    entry_price: float
    stop_loss: float
    take_profit: float
    liquidation_price: float
    trailing_stop: float
    leverage: int
    risk_reward: float
    atr_multiplier: float
    interval: str
    tags: List[str] = field(default_factory=list)
    indicators: Dict[str, float] = field(default_factory=dict)
    bb_slope: str = "Neutral"
    market: str = "Normal"
    status: SignalStatus = SignalStatus.PENDING
    executed_price: Optional[float] = None
    id: str = field(default_factory=new_id)
    created_at: str = field(default_factory=utc_now_iso)

    @property
    def is_pending(self) -> bool:
        return self.status == SignalStatus.PENDING

    def to_dict(self) -> Dict[str, Any]:
        d = asdict(self)
        d["side"] = self.side.value
        d["confidence"] = self.confidence.value
        d["status"] = self.status.value
        return d

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Signal":
        d = _known(cls, data)
        d["side"] = Direction(d["side"])
        d["confidence"] = Confidence(d.get("confidence", "MEDIUM"))
        d["status"] = SignalStatus(d.get("status", "PENDING"))
        d["tags"] = list(d.get("tags") or [])
        d["indicators"] = dict(d.get("indicators") or {})
        return cls(**d)


@dataclass
class Position:
    symbol: str
    side: Direction
    size: float
    leverage: int
    entry_price: float
    current_price: float
    stop_loss: Optional[float] = None
    take_profit: Optional[float] = None
    liquidation_price: Optional[float] = None
    trailing_stop: Optional[float] = None
    pnl: float = 0.0
    pnl_percent: float = 0.0
    status: PositionStatus = PositionStatus.OPEN
    exit_price: Optional[float] = None
    close_time: Optional[str] = None
    signal_id: Optional[str] = None
    id: str = field(default_factory=new_id)
    open_time: str = field(default_factory=utc_now_iso)

    @property
    def is_open(self) -> bool:
        return self.status == PositionStatus.OPEN

    def _pnl_at(self, price: float) -> float:
        if self.side == Direction.BUY:
            return (price - self.entry_price) * self.size
        return (self.entry_price - price) * self.size

    def mark(self, price: float) -> None:
        """Update current price and unrealised pnl. Only OPEN positions move."""
        if not self.is_open:
            raise ValueError(f"Position {self.id} is closed")
        self.current_price = float(price)
        self.pnl = self._pnl_at(self.current_price)
        notional = self.entry_price * self.size
        self.pnl_percent = (self.pnl / notional * 100.0) if notional > 0 else 0.0

    def close(self, price: float, at: Optional[str] = None) -> None:
        self.mark(price)
        self.exit_price = float(price)
        self.close_time = at or utc_now_iso()
        self.status = PositionStatus.CLOSED

    def to_dict(self) -> Dict[str, Any]:
        d = asdict(self)
        d["side"] = self.side.value
        d["status"] = self.status.value
        return d

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Position":
        d = _known(cls, data)
        d["side"] = Direction(d["side"])
        d["status"] = PositionStatus(d.get("status", "OPEN"))
        return cls(**d)


@dataclass
class TradingConfig:
    max_positions: int = 5
    risk_per_trade: float = 2.0  # percent of available balance
    leverage: int = 10
    stop_loss_percent: float = 5.0
    take_profit_percent: float = 15.0
    scan_interval_seconds: int = 300

    @classmethod
    def from_settings(cls, s) -> "TradingConfig":
        return cls(
            max_positions=int(s.MAX_POSITIONS),
            risk_per_trade=float(s.RISK_PER_TRADE_PCT),
            leverage=int(s.DEFAULT_LEVERAGE),
            stop_loss_percent=float(s.STOP_LOSS_PCT),
            take_profit_percent=float(s.TAKE_PROFIT_PCT),
            scan_interval_seconds=int(s.SCAN_INTERVAL_SECONDS),
        )

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "TradingConfig":
        return cls(**_known(cls, data))


@dataclass
class AppStatus:
    trading_mode: TradingMode = TradingMode.VIRTUAL
    is_automated_trading_enabled: bool = False

    def to_dict(self) -> Dict[str, Any]:
        return {
            "trading_mode": self.trading_mode.value,
            "is_automated_trading_enabled": self.is_automated_trading_enabled,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "AppStatus":
        return cls(
            trading_mode=TradingMode(data.get("trading_mode", "virtual")),
            is_automated_trading_enabled=bool(
                data.get("is_automated_trading_enabled", False)
            ),
        )


@dataclass
class Balance:
    capital: float = 0.0
    available: float = 0.0
    used: float = 0.0

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Balance":
        return cls(**_known(cls, data))


@dataclass
class MarketData:
    symbol: str
    price: float = 0.0
    change24h: float = 0.0
    change_percent_24h: float = 0.0
    volume24h: float = 0.0
    high24h: float = 0.0
    low24h: float = 0.0

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "MarketData":
        return cls(**_known(cls, data))


@dataclass
class OrderRequest:
    symbol: str
    side: Direction
    quantity: float
    order_type: str = "market"  # market/limit
    price: Optional[float] = None
    leverage: int = 1
    stop_loss: Optional[float] = None
    take_profit: Optional[float] = None
    # sent as orderLinkId; identical on every retry of the same order
    link_id: str = field(default_factory=lambda: uuid.uuid4().hex)


@dataclass
class OrderResult:
    order_id: str
    symbol: str
    side: Direction
    quantity: float
    avg_price: Optional[float]
    status: str
    raw: Dict[str, Any] = field(default_factory=dict)
