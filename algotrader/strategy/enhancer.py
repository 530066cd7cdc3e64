from __future__ import annotations

from typing import Optional, Tuple

from algotrader.core.models import Confidence, Direction, Signal
from algotrader.strategy.indicators import IndicatorSet
from algotrader.strategy.scoring import SignalScore, volatility_pct

PRICE_DECIMALS = 6

# bars between the two band-width samples compared for bb_slope
BB_SLOPE_LOOKBACK = 5


def _r(x: float) -> float:
    return round(float(x), PRICE_DECIMALS)


def validate_sl_tp(
    side: str,
    entry_price: float,
    stop_loss: float,
    take_profit: float,
) -> None:
    """
    Validate SL/TP invariants.
    BUY:  stop_loss < entry_price < take_profit
    SELL: take_profit < entry_price < stop_loss
    Raises ValueError if invalid.
    """
    side_u = (side.value if isinstance(side, Direction) else str(side or "")).upper()

    if side_u in ("BUY", "LONG"):
        if not (stop_loss < entry_price < take_profit):
            raise ValueError("Invalid SL/TP for BUY")
        return

    if side_u in ("SELL", "SHORT"):
        if not (take_profit < entry_price < stop_loss):
            raise ValueError("Invalid SL/TP for SELL")
        return

    raise ValueError(f"Invalid side: {side}")


def bb_slope(indicators: IndicatorSet, lookback: int = BB_SLOPE_LOOKBACK) -> str:
    """Expanding / Contracting / Neutral from band width relative to price."""
    upper = indicators.bollinger.upper
    lower = indicators.bollinger.lower
    middle = indicators.bollinger.middle
    if len(upper) <= lookback:
        return "Neutral"

    def width(i: int) -> float:
        mid = middle[i]
        if mid <= 0:
            return 0.0
        return (upper[i] - lower[i]) / mid

    now = width(-1)
    before = width(-1 - lookback)
    if before <= 0 or now == before:
        return "Neutral"
    return "Expanding" if now > before else "Contracting"


def market_bucket(volatility: float) -> str:
    if volatility < 1:
        return "Low"
    if volatility <= 3:
        return "Normal"
    if volatility <= 5:
        return "Elevated"
    return "High"


def compute_levels(
    side: Direction,
    price: float,
    atr_value: float,
    *,
    leverage: int,
    atr_multiplier: float = 2.0,
    risk_reward: float = 2.0,
    maintenance_margin: float = 0.1,
    trailing_fraction: float = 0.5,
    fallback_stop_percent: float = 5.0,
) -> Tuple[float, float, float, float]:
    """Returns (stop_loss, take_profit, liquidation_price, trailing_stop), rounded."""
    distance = atr_value * atr_multiplier
    if distance <= 0:
        # ATR still warming up or a flat market: percent stop
        distance = price * fallback_stop_percent / 100.0

    lev = max(1, int(leverage))
    liq_move = (1.0 - maintenance_margin) / lev

    if side == Direction.BUY:
        stop_loss = price - distance
        take_profit = price + distance * risk_reward
        liquidation = price * (1 - liq_move)
        trailing = stop_loss + abs(price - stop_loss) * trailing_fraction
    else:
        stop_loss = price + distance
        take_profit = price - distance * risk_reward
        liquidation = price * (1 + liq_move)
        trailing = stop_loss - abs(price - stop_loss) * trailing_fraction

    return _r(stop_loss), _r(take_profit), _r(liquidation), _r(trailing)


def build_signal(
    symbol: str,
    side: Direction,
    price: float,
    indicators: IndicatorSet,
    score: SignalScore,
    *,
    interval: str,
    leverage: int,
    atr_multiplier: float = 2.0,
    risk_reward: float = 2.0,
    maintenance_margin: float = 0.1,
    trailing_fraction: float = 0.5,
    fallback_stop_percent: float = 5.0,
    confidence: Optional[Confidence] = None,
) -> Signal:
    """Turn a scored candidate into a complete PENDING Signal."""
    atr_value = indicators.atr[-1] if indicators.atr else 0.0
    stop_loss, take_profit, liquidation, trailing = compute_levels(
        side,
        price,
        atr_value,
        leverage=leverage,
        atr_multiplier=atr_multiplier,
        risk_reward=risk_reward,
        maintenance_margin=maintenance_margin,
        trailing_fraction=trailing_fraction,
        fallback_stop_percent=fallback_stop_percent,
    )
    entry = _r(price)
    validate_sl_tp(side, entry, stop_loss, take_profit)

    return Signal(
        symbol=symbol,
        side=side,
        score=score.for_side(side.value),
        confidence=confidence or Confidence.MEDIUM,
        entry_price=entry,
        stop_loss=stop_loss,
        take_profit=take_profit,
        liquidation_price=liquidation,
        trailing_stop=trailing,
        leverage=int(leverage),
        risk_reward=float(risk_reward),
        atr_multiplier=float(atr_multiplier),
        interval=str(interval),
        tags=list(score.tags),
        indicators={k: _r(v) for k, v in indicators.latest().items()},
        bb_slope=bb_slope(indicators),
        market=market_bucket(volatility_pct(indicators, price)),
    )
