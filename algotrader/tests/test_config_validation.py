import pytest

from algotrader.core.config import BYBIT_MAINNET_URL, BYBIT_TESTNET_URL, Settings
from algotrader.core.models import TradingMode
from algotrader.scanner.scanner import ScanParams


def test_invalid_bybit_env_is_rejected():
    s = Settings(BYBIT_ENV="banana")
    with pytest.raises(ValueError):
        s.validate_runtime()


def test_mainnet_with_keys_warns_not_errors():
    s = Settings(BYBIT_ENV="mainnet", BYBIT_API_KEY="key", BYBIT_API_SECRET="secret")
    warnings = s.validate_runtime()
    assert any("REAL money" in w for w in warnings)
    assert s.BYBIT_BASE_URL == BYBIT_MAINNET_URL


def test_testnet_defaults_validate_cleanly():
    s = Settings()
    assert s.BYBIT_BASE_URL == BYBIT_TESTNET_URL
    assert s.STATE_BACKEND == "memory"
    assert s.validate_runtime() == []


def test_mainnet_url_with_testnet_env_is_rejected():
    s = Settings(BYBIT_ENV="testnet", BYBIT_BASE_URL=BYBIT_MAINNET_URL)
    with pytest.raises(ValueError, match="mismatch"):
        s.validate_runtime()


def test_errors_are_collected():
    s = Settings(MAX_POSITIONS=0, RISK_PER_TRADE_PCT=150, SCAN_KLINE_LIMIT=10)
    with pytest.raises(ValueError) as exc:
        s.validate_runtime()
    msg = str(exc.value)
    assert "MAX_POSITIONS" in msg
    assert "RISK_PER_TRADE_PCT" in msg
    assert "SCAN_KLINE_LIMIT" in msg


@pytest.mark.parametrize(
    "raw,expected",
    [
        ("btcusdt, ethusdt", ["BTCUSDT", "ETHUSDT"]),
        ('["solusdt"]', ["SOLUSDT"]),
        ("", []),
    ],
)
def test_fallback_symbols_parsing(monkeypatch, raw, expected):
    monkeypatch.setenv("FALLBACK_SYMBOLS", raw)
    assert Settings().FALLBACK_SYMBOLS == expected


def test_scan_params_min_score_per_mode():
    params = ScanParams.from_settings(Settings(MIN_SCORE_VIRTUAL=40, MIN_SCORE_REAL=50))
    assert params.min_score(TradingMode.REAL) == 50.0
    assert params.min_score(TradingMode.VIRTUAL) == 40.0
