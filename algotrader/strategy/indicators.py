from __future__ import annotations

import math
from dataclasses import dataclass, field
from typing import Dict, List, Sequence

# Series shorter than this produce an empty IndicatorSet
MIN_SAMPLES = 20


def sma(data: Sequence[float], period: int) -> List[float]:
    """Trailing simple moving average. Indices before period-1 are 0."""
    n = len(data)
    if n < period:
        return [0.0] * n
    out: List[float] = []
    for i in range(n):
        if i < period - 1:
            out.append(0.0)
        else:
            out.append(sum(data[i - period + 1 : i + 1]) / period)
    return out


def ema(data: Sequence[float], period: int) -> List[float]:
    """Exponential moving average seeded with data[0]; defined from index 0."""
    if not data:
        return []
    k = 2 / (period + 1)
    out = [float(data[0])]
    for v in data[1:]:
        out.append(v * k + out[-1] * (1 - k))
    return out


def rsi(data: Sequence[float], period: int = 14) -> List[float]:
    """
    RSI over trailing windows of the gain/loss series.

    Window i averages gains[i-period:i] (the latest delta is not part of the
    last window). Output is front-padded with 50 to the input length.
    """
    n = len(data)
    if n < period + 1:
        return [50.0] * n

    gains: List[float] = []
    losses: List[float] = []
    for i in range(1, n):
        change = data[i] - data[i - 1]
        gains.append(change if change > 0 else 0.0)
        losses.append(-change if change < 0 else 0.0)

    out = [50.0]
    for i in range(period, len(gains)):
        avg_gain = sum(gains[i - period : i]) / period
        avg_loss = sum(losses[i - period : i]) / period
        if avg_loss == 0:
            # no losses: straight up, or no movement at all
            out.append(100.0 if avg_gain > 0 else 50.0)
        else:
            rs = avg_gain / avg_loss
            out.append(100 - 100 / (1 + rs))

    return [50.0] * (n - len(out)) + out


@dataclass
class MACDResult:
    macd: List[float] = field(default_factory=list)
    signal: List[float] = field(default_factory=list)
    histogram: List[float] = field(default_factory=list)


def macd(
    data: Sequence[float], fast: int = 12, slow: int = 26, signal_period: int = 9
) -> MACDResult:
    n = len(data)
    if n < slow:
        return MACDResult([0.0] * n, [0.0] * n, [0.0] * n)
    ema_fast = ema(data, fast)
    ema_slow = ema(data, slow)
    line = [f - s for f, s in zip(ema_fast, ema_slow)]
    signal_line = ema(line, signal_period)
    hist = [m - s for m, s in zip(line, signal_line)]
    return MACDResult(line, signal_line, hist)


@dataclass
class BollingerResult:
    upper: List[float] = field(default_factory=list)
    middle: List[float] = field(default_factory=list)
    lower: List[float] = field(default_factory=list)


def bollinger_bands(
    data: Sequence[float], period: int = 20, multiplier: float = 2.0
) -> BollingerResult:
    n = len(data)
    if n < period:
        return BollingerResult([0.0] * n, [0.0] * n, [0.0] * n)
    middle = sma(data, period)
    upper: List[float] = []
    lower: List[float] = []
    for i in range(n):
        if i < period - 1:
            upper.append(0.0)
            lower.append(0.0)
            continue
        window = data[i - period + 1 : i + 1]
        mean = middle[i]
        # population variance
        variance = sum((v - mean) ** 2 for v in window) / period
        std = math.sqrt(variance)
        upper.append(mean + multiplier * std)
        lower.append(mean - multiplier * std)
    return BollingerResult(upper, middle, lower)


def atr(
    highs: Sequence[float],
    lows: Sequence[float],
    closes: Sequence[float],
    period: int = 14,
) -> List[float]:
    n = len(highs)
    if n < period + 1 or n != len(lows) or n != len(closes):
        return [0.0] * n

    trs: List[float] = []
    for i in range(1, n):
        trs.append(
            max(
                highs[i] - lows[i],
                abs(highs[i] - closes[i - 1]),
                abs(lows[i] - closes[i - 1]),
            )
        )

    out = [0.0]
    for i in range(period, len(trs) + 1):
        out.append(sum(trs[i - period : i]) / period)
    while len(out) < n:
        out.append(out[-1])
    return out


@dataclass
class IndicatorSet:
    sma20: List[float] = field(default_factory=list)
    sma50: List[float] = field(default_factory=list)
    ema20: List[float] = field(default_factory=list)
    rsi: List[float] = field(default_factory=list)
    macd: MACDResult = field(default_factory=MACDResult)
    bollinger: BollingerResult = field(default_factory=BollingerResult)
    atr: List[float] = field(default_factory=list)

    @classmethod
    def empty(cls) -> "IndicatorSet":
        return cls()

    @property
    def is_empty(self) -> bool:
        return not self.rsi

    def latest(self) -> Dict[str, float]:
        """Last value of every series (the snapshot stored on a Signal)."""
        if self.is_empty:
            return {}
        return {
            "sma20": self.sma20[-1],
            "sma50": self.sma50[-1],
            "ema20": self.ema20[-1],
            "rsi": self.rsi[-1],
            "macd": self.macd.macd[-1],
            "macd_signal": self.macd.signal[-1],
            "macd_histogram": self.macd.histogram[-1],
            "bb_upper": self.bollinger.upper[-1],
            "bb_middle": self.bollinger.middle[-1],
            "bb_lower": self.bollinger.lower[-1],
            "atr": self.atr[-1],
        }


def calculate_indicators(
    closes: Sequence[float],
    highs: Sequence[float],
    lows: Sequence[float],
    volumes: Sequence[float] = (),
) -> IndicatorSet:
    if len(closes) < MIN_SAMPLES:
        return IndicatorSet.empty()
    return IndicatorSet(
        sma20=sma(closes, 20),
        sma50=sma(closes, 50),
        ema20=ema(closes, 20),
        rsi=rsi(closes, 14),
        macd=macd(closes),
        bollinger=bollinger_bands(closes),
        atr=atr(highs, lows, closes, 14),
    )
