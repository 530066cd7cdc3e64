from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Mapping, Optional

from algotrader.core.errors import (
    ExecutionError,
    FatalExchangeError,
    TransientExchangeError,
    is_fatal,
)
from algotrader.core.models import (
    Direction,
    OrderRequest,
    OrderResult,
    Position,
    Signal,
    SignalStatus,
    TradingConfig,
    TradingMode,
)
from algotrader.execution.gateway import ExecutionGateway
from algotrader.ops.retry import RetryPolicy, retry_async
from algotrader.persistence.audit import Audit
from algotrader.persistence.state_store import StateStore
from algotrader.strategy.enhancer import validate_sl_tp
from algotrader.symbols.sizing import margin_for_trade, size_from_margin

log = logging.getLogger("algotrader.executor")


@dataclass
class ExecResult:
    action: str
    details: Dict[str, Any] = field(default_factory=dict)
    position: Optional[Position] = None

    @property
    def ok(self) -> bool:
        return self.position is not None


class TradeExecutor:
    """
    Signal or manual trade -> order -> OPEN Position.

    Order submission goes through the gateway of the requested mode with retry.
    Fatal exchange errors propagate unchanged; anything else that stops an order
    from being placed is raised as ExecutionError.
    """

    def __init__(
        self,
        store: StateStore,
        gateways: Mapping[TradingMode, ExecutionGateway],
        *,
        policy: RetryPolicy,
        audit: Optional[Audit] = None,
        price_source: Optional[Callable[[str], float]] = None,
        sleep: Callable[[float], Any] = asyncio.sleep,
    ):
        self.store = store
        self.gateways = dict(gateways)
        self.policy = policy
        self.audit = audit
        self.price_source = price_source
        self._sleep = sleep

    def gateway_for(self, mode: TradingMode) -> ExecutionGateway:
        gw = self.gateways.get(TradingMode(mode))
        if gw is None:
            raise ExecutionError(f"No execution gateway configured for {mode} mode")
        return gw

    def _audit(self, event_type: str, symbol: str, action: str, details: dict) -> None:
        if self.audit is None:
            return
        self.audit.safe_event(event_type, symbol=symbol, action=action, details=details)

    async def _submit(self, mode: TradingMode, req: OrderRequest) -> OrderResult:
        # Only transport-level failures are retried; the same req (and link id)
        # is re-sent so the exchange can reject a duplicate.
        gw = self.gateway_for(mode)
        try:
            return await retry_async(
                lambda: asyncio.to_thread(gw.submit_order, req),
                policy=self.policy,
                label=f"submit_order {req.symbol}",
                sleep=self._sleep,
                retry_on=(TransientExchangeError,),
            )
        except FatalExchangeError:
            raise
        except ExecutionError:
            raise
        except TransientExchangeError as e:
            raise ExecutionError(
                f"Order for {req.symbol} failed after {self.policy.attempts} attempts: {e}"
            ) from e
        except Exception as e:
            raise ExecutionError(f"Order for {req.symbol} rejected: {e}") from e

    async def sync_positions(self, mode: TradingMode) -> List[Position]:
        """
        Reconcile stored positions with the exchange (REAL mode only).

        Returns the local positions closed because the exchange no longer
        holds them, e.g. after a stop-loss or take-profit fill.
        """
        if TradingMode(mode) != TradingMode.REAL:
            return []
        gw = self.gateway_for(mode)
        upstream = await retry_async(
            lambda: asyncio.to_thread(gw.get_open_positions),
            policy=self.policy,
            label="open positions",
            sleep=self._sleep,
        )
        closed = await self.store.sync_positions(upstream)
        for p in closed:
            log.info("position %s %s closed on exchange at %s", p.side.value, p.symbol, p.exit_price)
            self._audit(
                "POSITION_CLOSED",
                p.symbol,
                p.side.value,
                {"position_id": p.id, "exit_price": p.exit_price, "pnl": p.pnl},
            )
        return closed

    async def _current_price(self, symbol: str) -> float:
        if self.price_source is None:
            raise ExecutionError(f"No price available for {symbol}")
        price = await retry_async(
            lambda: asyncio.to_thread(self.price_source, symbol),
            policy=self.policy,
            label=f"price {symbol}",
            sleep=self._sleep,
        )
        return float(price)

    async def _open(
        self,
        *,
        mode: TradingMode,
        req: OrderRequest,
        ref_price: float,
        leverage: int,
        signal: Optional[Signal] = None,
    ) -> Position:
        result = await self._submit(mode, req)

        fill = float(result.avg_price or ref_price)
        position = Position(
            symbol=req.symbol.upper(),
            side=req.side,
            size=float(result.quantity),
            leverage=int(leverage),
            entry_price=fill,
            current_price=fill,
            stop_loss=req.stop_loss,
            take_profit=req.take_profit,
            liquidation_price=signal.liquidation_price if signal else None,
            trailing_stop=signal.trailing_stop if signal else None,
            signal_id=signal.id if signal else None,
        )
        await self.store.add_position(position)

        margin = fill * position.size / max(1, position.leverage)
        await self.store.reserve_margin(margin)

        if signal is not None:
            await self.store.update_signal(
                signal.id, status=SignalStatus.EXECUTED, executed_price=fill
            )

        log.info(
            "opened %s %s size=%s entry=%s (%s, order %s)",
            position.side.value,
            position.symbol,
            position.size,
            fill,
            TradingMode(mode).value,
            result.order_id,
        )
        self._audit(
            "TRADE_EXECUTED",
            position.symbol,
            position.side.value,
            {
                "mode": TradingMode(mode).value,
                "order_id": result.order_id,
                "size": position.size,
                "entry_price": fill,
                "margin": margin,
                "signal_id": position.signal_id,
            },
        )
        return position

    async def execute_signal(
        self, signal: Signal, mode: TradingMode, config: TradingConfig
    ) -> ExecResult:
        """Size from risk% of available balance and open a position for `signal`."""
        if not signal.is_pending:
            return ExecResult("SKIPPED_NOT_PENDING", {"signal_id": signal.id})

        balance = await self.store.get_balance()
        margin = margin_for_trade(balance.available, config.risk_per_trade)
        leverage = int(config.leverage)
        sizing = size_from_margin(
            symbol=signal.symbol,
            price=signal.entry_price,
            usdt_margin=margin,
            leverage=leverage,
        )
        if sizing.qty <= 0 or margin > balance.available:
            self._audit("TRADE_FAILED", signal.symbol, "SIZING", sizing.details)
            raise ExecutionError(
                f"Cannot size {signal.symbol}: {sizing.reason} (available={balance.available:.2f})"
            )

        req = OrderRequest(
            symbol=signal.symbol,
            side=signal.side,
            quantity=sizing.qty,
            order_type="market",
            price=signal.entry_price if TradingMode(mode) == TradingMode.VIRTUAL else None,
            stop_loss=signal.stop_loss,
            take_profit=signal.take_profit,
            leverage=leverage,
        )
        try:
            position = await self._open(
                mode=mode, req=req, ref_price=signal.entry_price, leverage=leverage, signal=signal
            )
        except Exception as e:
            self._audit(
                "TRADE_FAILED",
                signal.symbol,
                signal.side.value,
                {"error": f"{type(e).__name__}: {e}", "fatal": is_fatal(e)},
            )
            raise

        return ExecResult("EXECUTED", {"signal_id": signal.id, **sizing.details}, position)

    async def execute_trade(
        self,
        *,
        symbol: str,
        side: Direction,
        size: float,
        mode: TradingMode,
        order_type: str = "market",
        price: Optional[float] = None,
        stop_loss: Optional[float] = None,
        take_profit: Optional[float] = None,
        leverage: Optional[int] = None,
    ) -> Position:
        """Manual trade. Raises ExecutionError when the order cannot be placed."""
        if size <= 0:
            raise ExecutionError("size must be > 0")
        if order_type == "limit" and not price:
            raise ExecutionError("limit orders require a price")

        config = await self.store.get_trading_config()
        lev = int(leverage or config.leverage)

        ref_price = float(price) if price else await self._current_price(symbol)
        if stop_loss and take_profit:
            try:
                validate_sl_tp(side, ref_price, stop_loss, take_profit)
            except ValueError as e:
                raise ExecutionError(str(e)) from e

        balance = await self.store.get_balance()
        margin = ref_price * float(size) / max(1, lev)
        if margin > balance.available:
            raise ExecutionError(
                f"Insufficient balance for {symbol}: need {margin:.2f}, available {balance.available:.2f}"
            )

        req = OrderRequest(
            symbol=symbol.upper(),
            side=Direction(side),
            quantity=float(size),
            order_type=order_type,
            price=ref_price if (order_type == "limit" or TradingMode(mode) == TradingMode.VIRTUAL) else None,
            stop_loss=stop_loss,
            take_profit=take_profit,
            leverage=lev,
        )
        try:
            return await self._open(mode=mode, req=req, ref_price=ref_price, leverage=lev)
        except Exception as e:
            self._audit(
                "TRADE_FAILED",
                symbol.upper(),
                Direction(side).value,
                {"error": f"{type(e).__name__}: {e}", "manual": True},
            )
            raise
