from __future__ import annotations

from dataclasses import dataclass, field
from typing import List, Sequence

from algotrader.strategy.indicators import (
    MIN_SAMPLES,
    IndicatorSet,
    calculate_indicators,
)

# Reason codes
RSI_OVERSOLD = "RSI_OVERSOLD"
RSI_OVERBOUGHT = "RSI_OVERBOUGHT"
RSI_NEAR_OVERSOLD = "RSI_NEAR_OVERSOLD"
RSI_NEAR_OVERBOUGHT = "RSI_NEAR_OVERBOUGHT"
RSI_EXTREME_OVERSOLD = "RSI_EXTREME_OVERSOLD"
RSI_EXTREME_OVERBOUGHT = "RSI_EXTREME_OVERBOUGHT"
MACD_BULLISH = "MACD_BULLISH"
MACD_BEARISH = "MACD_BEARISH"
MACD_STRONG = "MACD_STRONG"
BB_OVERSOLD = "BB_OVERSOLD"
BB_OVERBOUGHT = "BB_OVERBOUGHT"
VOLUME_VERY_HIGH = "VOLUME_VERY_HIGH"
VOLUME_HIGH = "VOLUME_HIGH"
SMA20_ABOVE_SMA50 = "SMA20_ABOVE_SMA50"
PRICE_ABOVE_SMA20 = "PRICE_ABOVE_SMA20"
SMA20_UPTREND = "SMA20_UPTREND"
TREND_BULLISH = "TREND_BULLISH"
VOLATILITY_NORMAL = "VOLATILITY_NORMAL"
VOLATILITY_HIGH = "VOLATILITY_HIGH"

MACD_STRONG_THRESHOLD = 0.01


@dataclass(frozen=True)
class SignalScore:
    buy_score: float = 0.0
    sell_score: float = 0.0
    tags: List[str] = field(default_factory=list)

    def for_side(self, side: str) -> float:
        return self.buy_score if str(side).upper() == "BUY" else self.sell_score


def _clamp(x: float, lo: float = 0.0, hi: float = 100.0) -> float:
    return min(max(x, lo), hi)


def volatility_pct(indicators: IndicatorSet, price: float) -> float:
    """Latest ATR as a percent of price."""
    if indicators.is_empty or price <= 0:
        return 0.0
    return indicators.atr[-1] / price * 100


def score_indicators(
    indicators: IndicatorSet, price: float, volumes: Sequence[float]
) -> SignalScore:
    """Additive buy/sell points from a computed IndicatorSet."""
    if indicators.is_empty:
        return SignalScore()

    buy = 0.0
    sell = 0.0
    tags: List[str] = []

    # RSI: first match wins, in this exact order
    r = indicators.rsi[-1]
    if r < 30:
        buy += 25
        tags.append(RSI_OVERSOLD)
    elif r > 70:
        sell += 25
        tags.append(RSI_OVERBOUGHT)
    elif 20 <= r <= 30:
        buy += 10
        tags.append(RSI_NEAR_OVERSOLD)
    elif 70 <= r <= 80:
        sell += 10
        tags.append(RSI_NEAR_OVERBOUGHT)
    elif r < 20:
        buy += 5
        tags.append(RSI_EXTREME_OVERSOLD)
    elif r > 80:
        sell += 5
        tags.append(RSI_EXTREME_OVERBOUGHT)

    # MACD
    line = indicators.macd.macd[-1]
    sig = indicators.macd.signal[-1]
    hist = indicators.macd.histogram[-1]
    if line > sig and hist > 0:
        buy += 20
        tags.append(MACD_BULLISH)
    elif line < sig and hist < 0:
        sell += 20
        tags.append(MACD_BEARISH)
    if abs(hist) > MACD_STRONG_THRESHOLD:
        buy += 8
        sell += 8
        tags.append(MACD_STRONG)

    # Bollinger; collapsed bands (zero width) carry no signal
    upper = indicators.bollinger.upper[-1]
    lower = indicators.bollinger.lower[-1]
    if upper > lower:
        if price <= lower:
            buy += 15
            tags.append(BB_OVERSOLD)
        elif price >= upper:
            sell += 15
            tags.append(BB_OVERBOUGHT)

    # Volume vs. the last 10 samples
    if volumes:
        recent = list(volumes[-10:])
        avg_volume = sum(recent) / len(recent) or 1.0
        ratio = volumes[-1] / avg_volume
        if ratio > 2:
            buy += 12
            sell += 12
            tags.append(VOLUME_VERY_HIGH)
        elif ratio > 1.5:
            buy += 6
            sell += 6
            tags.append(VOLUME_HIGH)

    # Trend points
    trend = 0
    sma20 = indicators.sma20
    sma50 = indicators.sma50
    if len(sma20) > 1 and len(sma50) > 1:
        # sma50 is still the warm-up sentinel below 50 samples
        if sma50[-1] > 0 and sma20[-1] > sma50[-1]:
            trend += 1
            tags.append(SMA20_ABOVE_SMA50)
        if price > sma20[-1]:
            trend += 1
            tags.append(PRICE_ABOVE_SMA20)
        if sma20[-1] > sma20[-2]:
            trend += 1
            tags.append(SMA20_UPTREND)
    buy += trend * 3
    sell += trend * 3
    if trend >= 2:
        buy += 15
        tags.append(TREND_BULLISH)

    # Volatility
    vol = volatility_pct(indicators, price)
    if 0.5 <= vol <= 3:
        buy += 5
        sell += 5
        tags.append(VOLATILITY_NORMAL)
    elif vol > 5:
        buy -= 10
        sell -= 10
        tags.append(VOLATILITY_HIGH)

    return SignalScore(buy_score=_clamp(buy), sell_score=_clamp(sell), tags=tags)


def score_signal(
    closes: Sequence[float],
    highs: Sequence[float],
    lows: Sequence[float],
    volumes: Sequence[float] = (),
) -> SignalScore:
    if len(closes) < MIN_SAMPLES:
        return SignalScore()
    indicators = calculate_indicators(closes, highs, lows, volumes)
    return score_indicators(indicators, closes[-1], volumes)
