# algotrader/persistence/state_store.py
from __future__ import annotations

import asyncio
import copy
import logging
from typing import Any, Dict, Iterable, List, Optional

from algotrader.core.models import (
    AppStatus,
    Balance,
    MarketData,
    Position,
    PositionStatus,
    Signal,
    SignalStatus,
    TradingConfig,
    TradingMode,
)
from algotrader.persistence.backings import Backing, MemoryBacking

log = logging.getLogger("algotrader.state")

CONNECTED = "connected"
DISCONNECTED = "disconnected"


class StateStore:
    """
    Repository for positions, signals, market data, balance, trading config,
    app status and connection status.

    In-memory maps are authoritative. Every mutation runs under one asyncio.Lock
    and re-writes the touched collections in full through the backing.
    """

    def __init__(
        self,
        backing: Optional[Backing] = None,
        *,
        trading_config: Optional[TradingConfig] = None,
        start_capital: float = 1000.0,
        history_limit: int = 200,
    ):
        self.backing = backing if backing is not None else MemoryBacking()
        self.history_limit = max(0, int(history_limit))
        self._lock = asyncio.Lock()

        self._positions: Dict[str, Position] = {}
        self._signals: List[Signal] = []
        self._market_data: List[MarketData] = []
        self._balance = Balance(capital=start_capital, available=start_capital, used=0.0)
        self._trading_config = trading_config or TradingConfig()
        self._app_status = AppStatus()
        self._connection_status = DISCONNECTED

        self._load()

    # ---------- LOAD / PERSIST ----------

    def _load(self) -> None:
        try:
            data = self.backing.load()
        except Exception as e:
            log.error("state load failed, starting from defaults: %s: %s", type(e).__name__, e)
            return

        for p in data.get("positions") or []:
            pos = Position.from_dict(p)
            self._positions[pos.id] = pos
        self._signals = [Signal.from_dict(s) for s in data.get("signals") or []]
        self._market_data = [MarketData.from_dict(m) for m in data.get("market_data") or []]
        if data.get("balance"):
            self._balance = Balance.from_dict(data["balance"])
        if data.get("trading_config"):
            self._trading_config = TradingConfig.from_dict(data["trading_config"])
        if data.get("app_status"):
            self._app_status = AppStatus.from_dict(data["app_status"])
        if data.get("connection_status"):
            self._connection_status = str(data["connection_status"])

        log.info(
            "state loaded: %d positions, %d signals", len(self._positions), len(self._signals)
        )

    def _serialize(self, key: str) -> Any:
        if key == "positions":
            return [p.to_dict() for p in self._positions.values()]
        if key == "signals":
            return [s.to_dict() for s in self._signals]
        if key == "market_data":
            return [m.to_dict() for m in self._market_data]
        if key == "balance":
            return self._balance.to_dict()
        if key == "trading_config":
            return self._trading_config.to_dict()
        if key == "app_status":
            return self._app_status.to_dict()
        if key == "connection_status":
            return self._connection_status
        raise KeyError(key)

    async def _persist(self, *keys: str) -> None:
        # caller holds the lock
        snapshot = {k: self._serialize(k) for k in keys}
        try:
            await asyncio.to_thread(self.backing.save, snapshot)
        except Exception as e:
            log.error("persist %s failed: %s: %s", ",".join(keys), type(e).__name__, e)

    # ---------- POSITIONS ----------

    async def get_positions(self, status: Optional[PositionStatus] = None) -> List[Position]:
        async with self._lock:
            out = [
                copy.deepcopy(p)
                for p in self._positions.values()
                if status is None or p.status == status
            ]
        return out

    async def count_open_positions(self) -> int:
        async with self._lock:
            return sum(1 for p in self._positions.values() if p.is_open)

    async def set_positions(self, positions: Iterable[Position]) -> None:
        async with self._lock:
            self._positions = {p.id: copy.deepcopy(p) for p in positions}
            await self._persist("positions")

    async def add_position(self, position: Position) -> Position:
        async with self._lock:
            self._positions[position.id] = copy.deepcopy(position)
            await self._persist("positions")
        return position

    async def update_position(self, position_id: str, **changes: Any) -> Optional[Position]:
        async with self._lock:
            current = self._positions.get(position_id)
            if current is None:
                return None
            if not current.is_open:
                raise ValueError(f"Position {position_id} is closed")
            for k, v in changes.items():
                if not hasattr(current, k):
                    raise AttributeError(f"Position has no field {k!r}")
                setattr(current, k, v)
            await self._persist("positions")
            return copy.deepcopy(current)

    def _close(self, current: Position, exit_price: float) -> None:
        # caller holds the lock
        current.close(exit_price)
        margin = current.entry_price * current.size / max(1, current.leverage)
        self._balance.used = max(0.0, self._balance.used - margin)
        self._balance.available += margin + current.pnl
        self._balance.capital += current.pnl

    async def close_position(self, position_id: str, exit_price: float) -> Optional[Position]:
        async with self._lock:
            current = self._positions.get(position_id)
            if current is None:
                return None
            self._close(current, exit_price)
            await self._persist("positions", "balance")
            return copy.deepcopy(current)

    async def sync_positions(self, upstream: Iterable[Position]) -> List[Position]:
        """
        Make OPEN positions match the exchange's open positions, keyed by
        (symbol, side). Local ones missing upstream are closed at their last
        mark, matching ones take the exchange's mark price, unknown upstream
        ones are added. Returns the positions closed.
        """
        remote = {(p.symbol.upper(), p.side): p for p in upstream}
        closed: List[Position] = []
        async with self._lock:
            for p in self._positions.values():
                if not p.is_open:
                    continue
                match = remote.pop((p.symbol.upper(), p.side), None)
                if match is None:
                    self._close(p, p.current_price or p.entry_price)
                    closed.append(copy.deepcopy(p))
                    continue
                if match.current_price > 0:
                    p.mark(match.current_price)
                if match.liquidation_price:
                    p.liquidation_price = match.liquidation_price
            for p in remote.values():
                self._positions[p.id] = copy.deepcopy(p)

            keys = ("positions", "balance") if closed else ("positions",)
            await self._persist(*keys)
        return closed

    # ---------- SIGNALS ----------

    async def get_signals(self, status: Optional[SignalStatus] = None) -> List[Signal]:
        async with self._lock:
            return [
                copy.deepcopy(s) for s in self._signals if status is None or s.status == status
            ]

    async def get_pending_signals(self) -> List[Signal]:
        return await self.get_signals(SignalStatus.PENDING)

    async def set_signals(self, signals: Iterable[Signal]) -> None:
        async with self._lock:
            self._signals = [copy.deepcopy(s) for s in signals]
            await self._persist("signals")

    async def update_signal(self, signal_id: str, **changes: Any) -> Optional[Signal]:
        async with self._lock:
            for s in self._signals:
                if s.id != signal_id:
                    continue
                for k, v in changes.items():
                    if not hasattr(s, k):
                        raise AttributeError(f"Signal has no field {k!r}")
                    setattr(s, k, v)
                await self._persist("signals")
                return copy.deepcopy(s)
        return None

    async def replace_pending_signals(self, signals: Iterable[Signal]) -> List[Signal]:
        """
        New PENDING set first (in the given order), then the most recent
        EXECUTED / EXPIRED history up to history_limit.
        """
        fresh = [copy.deepcopy(s) for s in signals]
        async with self._lock:
            history = [s for s in self._signals if not s.is_pending]
            if self.history_limit and len(history) > self.history_limit:
                history = sorted(history, key=lambda s: s.created_at)[-self.history_limit:]
            self._signals = fresh + history
            await self._persist("signals")
        return [copy.deepcopy(s) for s in fresh]

    # ---------- MARKET DATA ----------

    async def get_market_data(self) -> List[MarketData]:
        async with self._lock:
            return [copy.deepcopy(m) for m in self._market_data]

    async def apply_market_data(self, data: Iterable[MarketData]) -> int:
        """Store tickers and mark OPEN positions to market. Returns positions marked."""
        data = list(data)
        prices = {m.symbol.upper(): m.price for m in data if m.price > 0}
        marked = 0
        async with self._lock:
            self._market_data = [copy.deepcopy(m) for m in data]
            for p in self._positions.values():
                px = prices.get(p.symbol.upper())
                if p.is_open and px:
                    p.mark(px)
                    marked += 1
            keys = ("market_data", "positions") if marked else ("market_data",)
            await self._persist(*keys)
        return marked

    # ---------- BALANCE ----------

    async def get_balance(self) -> Balance:
        async with self._lock:
            return copy.deepcopy(self._balance)

    async def set_balance(self, balance: Balance) -> None:
        async with self._lock:
            self._balance = copy.deepcopy(balance)
            await self._persist("balance")

    async def reserve_margin(self, amount: float) -> Balance:
        """Move `amount` from available to used."""
        if amount < 0:
            raise ValueError("margin must be >= 0")
        async with self._lock:
            self._balance.available -= amount
            self._balance.used += amount
            await self._persist("balance")
            return copy.deepcopy(self._balance)

    # ---------- CONFIG / STATUS ----------

    async def get_trading_config(self) -> TradingConfig:
        async with self._lock:
            return copy.deepcopy(self._trading_config)

    async def set_trading_config(self, config: TradingConfig) -> None:
        async with self._lock:
            self._trading_config = copy.deepcopy(config)
            await self._persist("trading_config")

    async def get_app_status(self) -> AppStatus:
        async with self._lock:
            return copy.deepcopy(self._app_status)

    async def set_app_status(self, status: AppStatus) -> None:
        async with self._lock:
            self._app_status = copy.deepcopy(status)
            await self._persist("app_status")

    async def set_automated_trading(
        self, enabled: bool, mode: Optional[TradingMode] = None
    ) -> AppStatus:
        async with self._lock:
            self._app_status.is_automated_trading_enabled = bool(enabled)
            if mode is not None:
                self._app_status.trading_mode = TradingMode(mode)
            await self._persist("app_status")
            return copy.deepcopy(self._app_status)

    async def get_connection_status(self) -> str:
        async with self._lock:
            return self._connection_status

    async def set_connection_status(self, status: str) -> None:
        if status not in (CONNECTED, DISCONNECTED):
            raise ValueError(f"Invalid connection status: {status}")
        async with self._lock:
            self._connection_status = status
            await self._persist("connection_status")
