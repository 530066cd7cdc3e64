from __future__ import annotations

from dataclasses import dataclass
from decimal import Decimal, ROUND_DOWN


@dataclass(frozen=True)
class SymbolFilters:
    symbol: str
    step_size: Decimal
    min_qty: Decimal
    tick_size: Decimal


def extract_filters(instruments: dict, symbol: str) -> SymbolFilters:
    """
    Bybit /v5/market/instruments-info result:
      {"list": [{"symbol": ..., "lotSizeFilter": {"qtyStep", "minOrderQty"},
                 "priceFilter": {"tickSize"}}]}
    """
    symbol = symbol.upper()

    for s in instruments.get("list", []):
        if (s.get("symbol") or "").upper() != symbol:
            continue

        lot = s.get("lotSizeFilter")
        if not lot:
            raise ValueError(f"lotSizeFilter not found for {symbol}")

        step = Decimal(str(lot["qtyStep"]))
        minq = Decimal(str(lot.get("minOrderQty", "0")))

        price_filter = s.get("priceFilter")
        if not price_filter:
            raise ValueError(f"priceFilter not found for {symbol}")

        tick = Decimal(str(price_filter["tickSize"]))

        return SymbolFilters(
            symbol=symbol,
            step_size=step,
            min_qty=minq,
            tick_size=tick,
        )

    raise ValueError(f"Symbol not found in instruments-info: {symbol}")


def _to_decimal(x) -> Decimal:
    return x if isinstance(x, Decimal) else Decimal(str(x))


def round_qty(qty: float, step_size) -> Decimal:
    """
    Round quantity DOWN to nearest valid qtyStep.
    step_size can be Decimal or float/string.
    """
    q = Decimal(str(qty))
    step = _to_decimal(step_size)
    if step <= 0:
        return q
    return (q / step).to_integral_value(rounding=ROUND_DOWN) * step


def round_price(px: float, tick_size) -> Decimal:
    """Round price DOWN to nearest valid tickSize."""
    p = Decimal(str(px))
    tick = _to_decimal(tick_size)
    if tick <= 0:
        return p
    return (p / tick).to_integral_value(rounding=ROUND_DOWN) * tick


def _float_quantize(value: Decimal, step) -> float:
    """
    Convert Decimal -> float but quantize to the step's decimal places
    so 0.30000000000000004 style artefacts never reach the exchange.
    """
    step_d = _to_decimal(step)
    places = max(0, -step_d.as_tuple().exponent)
    return float(value.quantize(Decimal("1").scaleb(-places)))


def round_qty_to_step(qty: float, step_size) -> float:
    return _float_quantize(round_qty(qty, step_size), step_size)


def round_price_to_tick(price: float, tick_size) -> float:
    return _float_quantize(round_price(price, tick_size), tick_size)


def format_qty(qty: float, filters: SymbolFilters) -> str:
    """Quantity as the decimal string Bybit expects in order bodies."""
    return format(round_qty(qty, filters.step_size).normalize(), "f")


def format_price(price: float, filters: SymbolFilters) -> str:
    return format(round_price(price, filters.tick_size).normalize(), "f")
