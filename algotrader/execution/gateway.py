from __future__ import annotations

import logging
from typing import Any, Callable, Dict, List, Optional, Protocol

from algotrader.core.errors import ExchangeError, ExecutionError
from algotrader.core.models import (
    Balance,
    Direction,
    OrderRequest,
    OrderResult,
    Position,
    new_id,
)
from algotrader.exchange.bybit.client import (
    DUPLICATE_LINK_ID_RET_CODE,
    BybitClient,
    to_float,
)
from algotrader.exchange.bybit.filters import format_price, format_qty

log = logging.getLogger("algotrader.gateway")


class ExecutionGateway(Protocol):
    def submit_order(self, req: OrderRequest) -> OrderResult: ...

    def get_open_positions(self) -> List[Position]: ...

    def get_balance(self) -> Balance: ...


class PaperGateway:
    """
    Virtual fills. Market orders fill at the current price from `price_source`,
    limit orders at their own price. Keeps its own fill ledger.
    """

    def __init__(self, price_source: Callable[[str], float], start_capital: float = 1000.0):
        self.price_source = price_source
        self.start_capital = float(start_capital)
        self.fills: List[OrderResult] = []
        self._positions: Dict[str, Position] = {}

    def submit_order(self, req: OrderRequest) -> OrderResult:
        if req.quantity <= 0:
            raise ExecutionError(f"Invalid quantity for {req.symbol}: {req.quantity}")

        if req.order_type == "limit":
            if not req.price:
                raise ExecutionError("Limit order requires a price")
            fill = float(req.price)
        else:
            fill = float(req.price) if req.price else float(self.price_source(req.symbol))
        if fill <= 0:
            raise ExecutionError(f"No valid fill price for {req.symbol}")

        result = OrderResult(
            order_id=f"paper-{new_id()}",
            symbol=req.symbol.upper(),
            side=req.side,
            quantity=float(req.quantity),
            avg_price=fill,
            status="Filled",
        )
        self.fills.append(result)
        self._positions[result.order_id] = Position(
            symbol=result.symbol,
            side=req.side,
            size=result.quantity,
            leverage=max(1, int(req.leverage)),
            entry_price=fill,
            current_price=fill,
            stop_loss=req.stop_loss,
            take_profit=req.take_profit,
        )
        return result

    def get_open_positions(self) -> List[Position]:
        return [p for p in self._positions.values() if p.is_open]

    def get_balance(self) -> Balance:
        used = sum(p.entry_price * p.size / p.leverage for p in self.get_open_positions())
        return Balance(
            capital=self.start_capital,
            available=max(0.0, self.start_capital - used),
            used=used,
        )


def _bybit_side(side: Direction) -> str:
    return "Buy" if side == Direction.BUY else "Sell"


class BybitGateway:
    """Real-mode gateway over the Bybit v5 REST client."""

    def __init__(self, client: BybitClient):
        self.client = client

    def submit_order(self, req: OrderRequest) -> OrderResult:
        filters = self.client.symbol_filters(req.symbol)
        qty = format_qty(req.quantity, filters)
        if to_float(qty) <= 0:
            raise ExecutionError(f"Quantity {req.quantity} below lot step for {req.symbol}")

        if req.leverage > 1:
            self.client.set_leverage(req.symbol, req.leverage)

        params: Dict[str, Any] = {
            "symbol": req.symbol.upper(),
            "side": _bybit_side(req.side),
            "orderType": "Limit" if req.order_type == "limit" else "Market",
            "qty": qty,
            "orderLinkId": req.link_id,
        }
        if req.order_type == "limit" and req.price:
            params["price"] = format_price(req.price, filters)
        if req.stop_loss:
            params["stopLoss"] = format_price(req.stop_loss, filters)
        if req.take_profit:
            params["takeProfit"] = format_price(req.take_profit, filters)

        try:
            result = self.client.create_order(params)
        except ExchangeError as e:
            if e.code != DUPLICATE_LINK_ID_RET_CODE:
                raise
            log.warning("order %s already accepted by Bybit, not re-sent", req.link_id)
            result = {"orderLinkId": req.link_id}
        order_id = str(result.get("orderId", ""))

        avg_price: Optional[float] = None
        status = "New"
        try:
            rows = self.client.order_history(req.symbol, order_id, order_link_id=req.link_id)
        except ExchangeError as e:
            # the order is placed; a missing fill price is not a failure
            log.warning("order %s placed but history lookup failed: %s", order_id, e)
            rows = []
        if rows:
            avg_price = to_float(rows[0].get("avgPrice")) or None
            status = str(rows[0].get("orderStatus", status))
            order_id = order_id or str(rows[0].get("orderId", ""))

        return OrderResult(
            order_id=order_id,
            symbol=req.symbol.upper(),
            side=req.side,
            quantity=to_float(qty),
            avg_price=avg_price,
            status=status,
            raw=result,
        )

    def get_open_positions(self) -> List[Position]:
        out: List[Position] = []
        for p in self.client.position_list():
            size = to_float(p.get("size"))
            if size <= 0:
                continue
            value = to_float(p.get("positionValue"))
            pnl = to_float(p.get("unrealisedPnl"))
            out.append(
                Position(
                    symbol=str(p.get("symbol", "")).upper(),
                    side=Direction.BUY if p.get("side") == "Buy" else Direction.SELL,
                    size=size,
                    leverage=int(to_float(p.get("leverage"), 1) or 1),
                    entry_price=to_float(p.get("avgPrice")),
                    current_price=to_float(p.get("markPrice")),
                    liquidation_price=to_float(p.get("liqPrice")) or None,
                    stop_loss=to_float(p.get("stopLoss")) or None,
                    take_profit=to_float(p.get("takeProfit")) or None,
                    pnl=pnl,
                    pnl_percent=(pnl / value * 100) if value > 0 else 0.0,
                )
            )
        return out

    def get_balance(self) -> Balance:
        result = self.client.wallet_balance()
        accounts = result.get("list") or []
        coins = accounts[0].get("coin", []) if accounts else []
        usdt = next((c for c in coins if c.get("coin") == "USDT"), {})
        equity = to_float(usdt.get("equity"))
        used = to_float(usdt.get("totalPositionIM")) or to_float(usdt.get("locked"))
        available = to_float(usdt.get("availableToWithdraw")) or max(0.0, equity - used)
        return Balance(capital=equity, available=available, used=used)
