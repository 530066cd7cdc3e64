import pytest


@pytest.fixture(autouse=True)
def _test_env(monkeypatch, tmp_path):
    """
    Ensure tests never talk to mainnet or write outside tmp_path.
    """
    monkeypatch.setenv("BYBIT_ENV", "testnet")
    monkeypatch.setenv("BYBIT_API_KEY", "")
    monkeypatch.setenv("BYBIT_API_SECRET", "")
    monkeypatch.setenv("STATE_BACKEND", "memory")
    monkeypatch.setenv("STATE_FILE", str(tmp_path / "state.json"))
    monkeypatch.setenv("DB_PATH", str(tmp_path / "algotrader.db"))
    monkeypatch.setenv("AUDIT_JSONL_PATH", str(tmp_path / "audit.jsonl"))
    monkeypatch.setenv("RETRY_BASE_DELAY", "0")
