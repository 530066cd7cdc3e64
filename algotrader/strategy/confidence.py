"""
Confidence blending ("ML filter").

A fixed-weight heuristic: half the indicator score, half an adjustment factor
driven by the score's reason tags. There is no trained model here.
"""
from __future__ import annotations

from dataclasses import replace
from typing import Sequence

from algotrader.core.models import Confidence, Direction, Signal
from algotrader.strategy import scoring as sc
from algotrader.strategy.indicators import calculate_indicators

BASE_ADJUSTMENT = 0.9
HIGH_ABOVE = 70.0
MEDIUM_ABOVE = 40.0


def confidence_tier(score: float) -> Confidence:
    if score > HIGH_ABOVE:
        return Confidence.HIGH
    if score > MEDIUM_ABOVE:
        return Confidence.MEDIUM
    return Confidence.LOW


def adjustment_factor(
    tags: Sequence[str], side: Direction, macd_histogram: float, volatility: float
) -> float:
    adj = BASE_ADJUSTMENT

    if sc.RSI_OVERSOLD in tags or sc.BB_OVERSOLD in tags:
        adj += 0.1
    elif sc.RSI_OVERBOUGHT in tags or sc.BB_OVERBOUGHT in tags:
        adj -= 0.1

    if sc.MACD_BULLISH in tags and macd_histogram > sc.MACD_STRONG_THRESHOLD:
        adj += 0.05
    elif sc.MACD_BEARISH in tags and macd_histogram < -sc.MACD_STRONG_THRESHOLD:
        adj -= 0.05

    if sc.TREND_BULLISH in tags and side == Direction.BUY:
        adj += 0.1

    if volatility > 5:
        adj -= 0.15
    elif volatility < 1:
        adj += 0.05

    return min(max(adj, 0.0), 1.0)


def blend(base_score: float, adjustment: float) -> float:
    return 0.5 * base_score + 0.5 * adjustment * 100


def apply_confidence(
    signal: Signal,
    closes: Sequence[float],
    highs: Sequence[float],
    lows: Sequence[float],
    volumes: Sequence[float] = (),
) -> Signal:
    """Re-score `signal` against the given series and return the blended copy."""
    indicators = calculate_indicators(closes, highs, lows, volumes)
    if indicators.is_empty:
        score = sc.SignalScore()
        hist = 0.0
        volatility = 0.0
    else:
        price = closes[-1]
        score = sc.score_indicators(indicators, price, volumes)
        hist = indicators.macd.histogram[-1]
        volatility = sc.volatility_pct(indicators, price)

    base = score.for_side(signal.side.value)
    adj = adjustment_factor(score.tags, signal.side, hist, volatility)
    final = blend(base, adj)

    snapshot = dict(signal.indicators)
    snapshot.update({k: round(v, 6) for k, v in indicators.latest().items()})

    return replace(
        signal,
        score=final,
        confidence=confidence_tier(final),
        tags=list(score.tags),
        indicators=snapshot,
    )
