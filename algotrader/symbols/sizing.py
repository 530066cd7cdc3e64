# algotrader/symbols/sizing.py
from __future__ import annotations

from dataclasses import dataclass
from decimal import Decimal, ROUND_DOWN
from typing import Any, Dict

# Fallback lot step when the venue filters are unknown (paper trading)
DEFAULT_QTY_STEP = Decimal("0.000001")


def _d(x: Any) -> Decimal:
    return Decimal(str(x))


def _floor_to_step(x: Decimal, step: Decimal) -> Decimal:
    if step <= 0:
        return x
    return (x / step).to_integral_value(rounding=ROUND_DOWN) * step


def margin_for_trade(available: float, risk_per_trade_pct: float) -> float:
    """Margin (USDT) committed to one trade: risk% of the available balance."""
    if available <= 0 or risk_per_trade_pct <= 0:
        return 0.0
    return float(_d(available) * _d(risk_per_trade_pct) / Decimal(100))


@dataclass
class SizeResult:
    qty: float
    notional: float
    margin: float
    reason: str
    details: Dict[str, Any]


def size_from_margin(
    *,
    symbol: str,
    price: float,
    usdt_margin: float,
    leverage: int,
    qty_step: Any = DEFAULT_QTY_STEP,
    min_qty: Any = 0,
) -> SizeResult:
    """
    Input budget is MARGIN (USDT).
    Notional = margin * leverage, quantity = notional / price floored to qty_step.
    """
    px = _d(price)
    lev = max(1, int(leverage))
    budget = _d(usdt_margin)
    step = _d(qty_step)
    minq = _d(min_qty)

    if px <= 0:
        return SizeResult(
            qty=0.0,
            notional=0.0,
            margin=0.0,
            reason="invalid_price",
            details={"symbol": symbol, "price": float(price)},
        )

    if budget <= 0:
        return SizeResult(
            qty=0.0,
            notional=0.0,
            margin=0.0,
            reason="no_margin",
            details={"symbol": symbol, "usdt_margin": float(budget)},
        )

    target_notional = budget * _d(lev)
    raw_qty = target_notional / px
    qty_dec = _floor_to_step(raw_qty, step)

    if qty_dec <= 0 or (minq > 0 and qty_dec < minq):
        return SizeResult(
            qty=0.0,
            notional=0.0,
            margin=0.0,
            reason="qty_below_min_qty",
            details={
                "symbol": symbol,
                "price": float(px),
                "usdt_margin": float(budget),
                "leverage": lev,
                "raw_qty": str(raw_qty),
                "qty_rounded": str(qty_dec),
                "min_qty": str(minq),
                "step_size": str(step),
            },
        )

    notional = qty_dec * px
    return SizeResult(
        qty=float(qty_dec),
        notional=float(notional),
        margin=float(notional / _d(lev)),
        reason="ok",
        details={
            "symbol": symbol,
            "price": float(px),
            "usdt_margin": float(budget),
            "leverage": lev,
            "target_notional": float(target_notional),
            "raw_qty": str(raw_qty),
            "qty_rounded": str(qty_dec),
            "notional": float(notional),
            "step_size": str(step),
        },
    )
