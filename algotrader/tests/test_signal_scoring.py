import pytest

from algotrader.strategy import scoring as sc
from algotrader.strategy.enhancer import bb_slope
from algotrader.strategy.indicators import (
    BollingerResult,
    IndicatorSet,
    MACDResult,
    calculate_indicators,
)
from algotrader.strategy.scoring import score_indicators, score_signal


def _falling(n, start=100.0):
    closes = [start - i for i in range(n)]
    highs = [c + 0.5 for c in closes]
    lows = [c - 0.5 for c in closes]
    return closes, highs, lows, [100.0] * n


def test_under_20_samples_scores_zero():
    closes, highs, lows, volumes = _falling(19)
    s = score_signal(closes, highs, lows, volumes)
    assert s.buy_score == 0
    assert s.sell_score == 0
    assert s.tags == []


def test_falling_series_fires_rsi_oversold():
    closes, highs, lows, volumes = _falling(25)
    s = score_signal(closes, highs, lows, volumes)
    assert sc.RSI_OVERSOLD in s.tags
    assert s.buy_score >= 25


def test_flat_market_has_no_signal():
    n = 30
    flat = [100.0] * n
    s = score_signal(flat, flat, flat, [10.0] * n)
    assert s.buy_score < 40
    assert s.sell_score < 40
    assert set(s.tags) <= {sc.VOLATILITY_NORMAL}


def test_scoring_is_deterministic():
    closes, highs, lows, volumes = _falling(60, start=300.0)
    a = score_signal(closes, highs, lows, volumes)
    b = score_signal(closes, highs, lows, volumes)
    assert a == b


def test_scores_are_clamped():
    closes, highs, lows, volumes = _falling(60, start=300.0)
    volumes[-1] = 10_000.0
    s = score_signal(closes, highs, lows, volumes)
    assert 0 <= s.buy_score <= 100
    assert 0 <= s.sell_score <= 100


def test_volume_spike_tags():
    closes, highs, lows, volumes = _falling(30)
    volumes[-1] = 1000.0
    s = score_signal(closes, highs, lows, volumes)
    assert sc.VOLUME_VERY_HIGH in s.tags
    assert sc.VOLUME_HIGH not in s.tags


def test_empty_volumes_skip_volume_points():
    closes, highs, lows, _ = _falling(30)
    ind = calculate_indicators(closes, highs, lows)
    s = score_indicators(ind, closes[-1], [])
    assert sc.VOLUME_VERY_HIGH not in s.tags
    assert sc.VOLUME_HIGH not in s.tags


def test_uptrend_adds_trend_points_and_bullish_tag():
    n = 60
    closes = [100 + i for i in range(n)]
    highs = [c + 0.5 for c in closes]
    lows = [c - 0.5 for c in closes]
    s = score_signal(closes, highs, lows, [100.0] * n)
    assert sc.SMA20_ABOVE_SMA50 in s.tags
    assert sc.PRICE_ABOVE_SMA20 in s.tags
    assert sc.SMA20_UPTREND in s.tags
    assert sc.TREND_BULLISH in s.tags
    assert sc.RSI_OVERBOUGHT in s.tags


def test_for_side():
    s = sc.SignalScore(buy_score=60, sell_score=20, tags=[])
    assert s.for_side("BUY") == 60
    assert s.for_side("sell") == 20


def _snapshot(rsi=50.0, upper=110.0, lower=90.0, atr=0.0):
    """Latest-bar indicators that score nothing at price 100 unless overridden."""
    return IndicatorSet(
        sma20=[100.0, 100.0],
        sma50=[0.0, 0.0],
        ema20=[100.0, 100.0],
        rsi=[rsi],
        macd=MACDResult(macd=[0.0], signal=[0.0], histogram=[0.0]),
        bollinger=BollingerResult(upper=[upper], middle=[(upper + lower) / 2], lower=[lower]),
        atr=[atr],
    )


def test_neutral_snapshot_scores_nothing():
    s = score_indicators(_snapshot(), 100.0, [])
    assert (s.buy_score, s.sell_score, s.tags) == (0, 0, [])


@pytest.mark.parametrize(
    "rsi,tag,buy,sell",
    [
        (15.0, sc.RSI_OVERSOLD, 25, 0),
        (20.0, sc.RSI_OVERSOLD, 25, 0),
        (29.9, sc.RSI_OVERSOLD, 25, 0),
        (30.0, sc.RSI_NEAR_OVERSOLD, 10, 0),
        (70.0, sc.RSI_NEAR_OVERBOUGHT, 0, 10),
        (75.0, sc.RSI_OVERBOUGHT, 0, 25),
        (85.0, sc.RSI_OVERBOUGHT, 0, 25),
    ],
)
def test_rsi_first_match_wins(rsi, tag, buy, sell):
    s = score_indicators(_snapshot(rsi=rsi), 100.0, [])
    assert s.tags == [tag]
    assert s.buy_score == buy
    assert s.sell_score == sell


@pytest.mark.parametrize("rsi", [10.0, 50.0, 90.0])
def test_extreme_rsi_tags_are_unreachable(rsi):
    s = score_indicators(_snapshot(rsi=rsi), 100.0, [])
    assert sc.RSI_EXTREME_OVERSOLD not in s.tags
    assert sc.RSI_EXTREME_OVERBOUGHT not in s.tags


@pytest.mark.parametrize(
    "upper,lower,tag,buy,sell",
    [
        (120.0, 100.0, sc.BB_OVERSOLD, 15, 0),
        (120.0, 101.0, sc.BB_OVERSOLD, 15, 0),
        (100.0, 80.0, sc.BB_OVERBOUGHT, 0, 15),
        (99.0, 80.0, sc.BB_OVERBOUGHT, 0, 15),
    ],
)
def test_bollinger_touch(upper, lower, tag, buy, sell):
    s = score_indicators(_snapshot(upper=upper, lower=lower), 100.0, [])
    assert s.tags == [tag]
    assert (s.buy_score, s.sell_score) == (buy, sell)


def test_collapsed_bands_carry_no_signal():
    s = score_indicators(_snapshot(upper=100.0, lower=100.0), 100.0, [])
    assert sc.BB_OVERSOLD not in s.tags
    assert sc.BB_OVERBOUGHT not in s.tags


@pytest.mark.parametrize(
    "atr,tag,delta",
    [(1.0, sc.VOLATILITY_NORMAL, 5), (4.0, None, 0), (6.0, sc.VOLATILITY_HIGH, -10)],
)
def test_volatility_points(atr, tag, delta):
    s = score_indicators(_snapshot(rsi=15.0, atr=atr), 100.0, [])
    assert s.buy_score == 25 + delta
    # sell side has nothing else, so a penalty clamps at zero
    assert s.sell_score == max(0, delta)
    if tag is None:
        assert s.tags == [sc.RSI_OVERSOLD]
    else:
        assert s.tags == [sc.RSI_OVERSOLD, tag]


def _bands(widths):
    return IndicatorSet(
        rsi=[50.0] * len(widths),
        bollinger=BollingerResult(
            upper=[100.0 + w / 2 for w in widths],
            middle=[100.0] * len(widths),
            lower=[100.0 - w / 2 for w in widths],
        ),
    )


@pytest.mark.parametrize(
    "widths,expected",
    [
        ([2.0, 2.0, 2.0, 2.0, 2.0, 4.0], "Expanding"),
        ([4.0, 4.0, 4.0, 4.0, 4.0, 2.0], "Contracting"),
        ([3.0] * 6, "Neutral"),
        ([2.0, 4.0], "Neutral"),
    ],
)
def test_bb_slope(widths, expected):
    assert bb_slope(_bands(widths)) == expected
