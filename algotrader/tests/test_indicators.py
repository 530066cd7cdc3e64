import math

import pytest

from algotrader.strategy.indicators import (
    MIN_SAMPLES,
    atr,
    bollinger_bands,
    calculate_indicators,
    ema,
    macd,
    rsi,
    sma,
)


def test_sma_warmup_zeros_and_values():
    out = sma([1, 2, 3, 4, 5], 3)
    assert out == [0.0, 0.0, 2.0, 3.0, 4.0]


def test_sma_short_input_is_all_zeros():
    assert sma([1, 2], 3) == [0.0, 0.0]


def test_ema_seeded_with_first_value():
    out = ema([10, 10, 10, 10], 5)
    assert out == [10.0, 10.0, 10.0, 10.0]

    out = ema([0, 3], 2)  # k = 2/3
    assert out[0] == 0.0
    assert out[1] == pytest.approx(2.0)


@pytest.mark.parametrize("n", [1, 5, 14, 15, 16, 40])
def test_rsi_length_matches_input(n):
    data = [100 + math.sin(i) for i in range(n)]
    assert len(rsi(data)) == n


def test_rsi_short_input_is_neutral():
    assert rsi([1, 2, 3], 14) == [50.0, 50.0, 50.0]


def test_rsi_constant_series_stays_neutral():
    out = rsi([100.0] * 30)
    assert all(v == 50.0 for v in out)


def test_rsi_falling_series_near_zero():
    data = [100 - i for i in range(25)]
    out = rsi(data)
    assert out[-1] == pytest.approx(0.0)


def test_rsi_rising_series_is_100():
    data = [100 + i for i in range(25)]
    assert rsi(data)[-1] == 100.0


def test_rsi_bounds():
    data = [100 + 5 * math.sin(i / 2.0) + (i % 3) for i in range(80)]
    out = rsi(data)
    assert all(0.0 <= v <= 100.0 for v in out)
    assert not any(math.isnan(v) for v in out)


def test_macd_short_input_is_zero():
    res = macd([1.0] * 20)
    assert res.macd == [0.0] * 20
    assert res.signal == [0.0] * 20
    assert res.histogram == [0.0] * 20


def test_macd_histogram_is_line_minus_signal():
    data = [100 + i * 0.5 for i in range(40)]
    res = macd(data)
    assert len(res.macd) == len(res.signal) == len(res.histogram) == 40
    for m, s, h in zip(res.macd, res.signal, res.histogram):
        assert h == pytest.approx(m - s)


def test_bollinger_population_std():
    data = list(range(1, 21))  # 1..20
    res = bollinger_bands(data, period=20, multiplier=2)
    mean = 10.5
    std = math.sqrt(sum((v - mean) ** 2 for v in data) / 20)
    assert res.middle[-1] == pytest.approx(mean)
    assert res.upper[-1] == pytest.approx(mean + 2 * std)
    assert res.lower[-1] == pytest.approx(mean - 2 * std)
    assert res.upper[0] == 0.0 and res.lower[0] == 0.0


def test_bollinger_flat_series_collapses():
    res = bollinger_bands([50.0] * 25)
    assert res.upper[-1] == res.lower[-1] == res.middle[-1] == 50.0


def test_atr_mismatched_lengths_zero():
    assert atr([1, 2, 3], [1, 2], [1, 2, 3], 2) == [0.0, 0.0, 0.0]


def test_atr_short_input_zero():
    assert atr([1.0] * 10, [1.0] * 10, [1.0] * 10, 14) == [0.0] * 10


def test_atr_constant_range():
    n = 30
    closes = [100.0] * n
    highs = [101.0] * n
    lows = [99.0] * n
    out = atr(highs, lows, closes, 14)
    assert len(out) == n
    assert out[0] == 0.0
    assert out[-1] == pytest.approx(2.0)


def test_calculate_indicators_empty_under_min_samples():
    data = [1.0] * (MIN_SAMPLES - 1)
    ind = calculate_indicators(data, data, data, data)
    assert ind.is_empty
    assert ind.latest() == {}


def test_calculate_indicators_lengths():
    n = 60
    closes = [100 + math.cos(i / 3.0) for i in range(n)]
    highs = [c + 1 for c in closes]
    lows = [c - 1 for c in closes]
    ind = calculate_indicators(closes, highs, lows, [1.0] * n)
    for series in (
        ind.sma20,
        ind.sma50,
        ind.ema20,
        ind.rsi,
        ind.macd.macd,
        ind.bollinger.upper,
        ind.atr,
    ):
        assert len(series) == n
    snap = ind.latest()
    assert set(snap) >= {"rsi", "atr", "macd_histogram", "bb_upper", "sma20", "sma50"}
