# algotrader/core/config.py
from __future__ import annotations

import json
import logging
from typing import Any, List

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

log = logging.getLogger("algotrader.config")

BYBIT_MAINNET_URL = "https://api.bybit.com"
BYBIT_TESTNET_URL = "https://api-testnet.bybit.com"


def _parse_list(v: Any) -> List[str]:
    """
    Accepts:
      - list: ["BTCUSDT","ETHUSDT"]
      - csv:  "BTCUSDT,ETHUSDT"
      - json: '["BTCUSDT","ETHUSDT"]'
    Returns uppercase, trimmed symbols.
    """
    if v is None:
        return []
    if isinstance(v, list):
        return [str(x).strip().upper() for x in v if str(x).strip()]
    s = str(v).strip()
    if not s:
        return []
    if s.startswith("["):
        try:
            arr = json.loads(s)
            return [str(x).strip().upper() for x in arr if str(x).strip()]
        except ValueError:
            # fall back to csv parse
            pass
    return [p.strip().upper() for p in s.split(",") if p.strip()]


class Settings(BaseSettings):
    """Runtime configuration loaded from .env / environment variables."""

    # enable_decoding=False keeps pydantic-settings from json-decoding List fields.
    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=True,
        extra="ignore",
        enable_decoding=False,
    )

    # --- Exchange / API ---
    BYBIT_API_KEY: str = ""
    BYBIT_API_SECRET: str = ""
    BYBIT_ENV: str = "testnet"  # testnet/mainnet
    BYBIT_BASE_URL: str = ""
    BYBIT_RECV_WINDOW: int = 5000
    HTTP_TIMEOUT_SECONDS: float = 15.0

    # --- Persistence / logging ---
    STATE_BACKEND: str = "json"  # json/sqlite/memory
    STATE_FILE: str = "data/state.json"
    DB_PATH: str = "data/algotrader.db"
    AUDIT_JSONL_PATH: str = "logs/audit.jsonl"
    LOG_LEVEL: str = "INFO"
    SIGNAL_HISTORY_LIMIT: int = 200
    VIRTUAL_START_CAPITAL: float = 1000.0

    # --- Trading config defaults (mutable at runtime through the store) ---
    MAX_POSITIONS: int = 5
    RISK_PER_TRADE_PCT: float = 2.0
    DEFAULT_LEVERAGE: int = 10
    STOP_LOSS_PCT: float = 5.0
    TAKE_PROFIT_PCT: float = 15.0
    SCAN_INTERVAL_SECONDS: int = 300

    # --- Scanner ---
    SCAN_TOP_N: int = 10
    SCAN_UNIVERSE_SIZE: int = 30
    SCAN_KLINE_LIMIT: int = 100
    SCAN_CONCURRENCY: int = 8
    FALLBACK_SYMBOLS: List[str] = Field(
        default_factory=lambda: ["BTCUSDT", "ETHUSDT", "SOLUSDT", "XRPUSDT"]
    )
    MIN_SCORE_VIRTUAL: float = 40.0
    MIN_SCORE_REAL: float = 50.0

    # --- Signal levels ---
    ATR_MULTIPLIER: float = 2.0
    RISK_REWARD: float = 2.0
    MAINTENANCE_MARGIN: float = 0.1
    TRAILING_FRACTION: float = 0.5

    # --- Retry ---
    RETRY_ATTEMPTS: int = 3
    RETRY_BASE_DELAY: float = 1.0
    RETRY_MAX_DELAY: float = 8.0

    @field_validator("FALLBACK_SYMBOLS", mode="before")
    @classmethod
    def parse_fallback_symbols(cls, v: Any) -> List[str]:
        return _parse_list(v)

    def model_post_init(self, __context: Any) -> None:
        self.BYBIT_ENV = (self.BYBIT_ENV or "testnet").lower().strip()
        self.STATE_BACKEND = (self.STATE_BACKEND or "json").lower().strip()
        self.LOG_LEVEL = (self.LOG_LEVEL or "INFO").upper().strip()

        # Keep base URL consistent with BYBIT_ENV unless explicitly overridden
        if not self.BYBIT_BASE_URL.strip():
            self.BYBIT_BASE_URL = (
                BYBIT_MAINNET_URL if self.BYBIT_ENV == "mainnet" else BYBIT_TESTNET_URL
            )

    def validate_runtime(self) -> List[str]:
        """
        Fail-fast validation. Returns warnings (non-fatal).
        Raises ValueError for fatal misconfiguration.
        """
        errors: List[str] = []
        warnings: List[str] = []

        if self.BYBIT_ENV not in {"mainnet", "testnet"}:
            errors.append("BYBIT_ENV must be 'mainnet' or 'testnet'.")

        if self.STATE_BACKEND not in {"json", "sqlite", "memory"}:
            errors.append("STATE_BACKEND must be 'json', 'sqlite' or 'memory'.")

        if self.MAX_POSITIONS <= 0:
            errors.append("MAX_POSITIONS must be > 0.")
        if not (0 < self.RISK_PER_TRADE_PCT <= 100):
            errors.append("RISK_PER_TRADE_PCT must be in (0, 100].")
        if self.DEFAULT_LEVERAGE < 1:
            errors.append("DEFAULT_LEVERAGE must be >= 1.")
        if self.STOP_LOSS_PCT <= 0:
            errors.append("STOP_LOSS_PCT must be > 0.")
        if self.TAKE_PROFIT_PCT <= 0:
            errors.append("TAKE_PROFIT_PCT must be > 0.")
        if self.SCAN_INTERVAL_SECONDS <= 0:
            errors.append("SCAN_INTERVAL_SECONDS must be > 0.")

        if self.SCAN_TOP_N <= 0:
            errors.append("SCAN_TOP_N must be > 0.")
        if self.SCAN_KLINE_LIMIT < 20:
            errors.append("SCAN_KLINE_LIMIT must be >= 20 (indicator warm-up).")
        if self.SCAN_CONCURRENCY <= 0:
            errors.append("SCAN_CONCURRENCY must be > 0.")
        if not self.FALLBACK_SYMBOLS:
            warnings.append("FALLBACK_SYMBOLS is empty. Scans fail closed when the universe lookup fails.")

        if not (0 <= self.MAINTENANCE_MARGIN < 1):
            errors.append("MAINTENANCE_MARGIN must be in [0, 1).")
        if self.ATR_MULTIPLIER <= 0 or self.RISK_REWARD <= 0:
            errors.append("ATR_MULTIPLIER and RISK_REWARD must be > 0.")

        if self.RETRY_ATTEMPTS < 1:
            errors.append("RETRY_ATTEMPTS must be >= 1.")

        if self.MIN_SCORE_REAL < self.MIN_SCORE_VIRTUAL:
            warnings.append(
                "MIN_SCORE_REAL is below MIN_SCORE_VIRTUAL; real trading would accept weaker signals."
            )

        # Safety: mismatch guard
        if self.BYBIT_BASE_URL.rstrip("/") == BYBIT_MAINNET_URL and self.BYBIT_ENV != "mainnet":
            errors.append(
                "BYBIT_ENV mismatch: base URL is mainnet but BYBIT_ENV is not 'mainnet'."
            )

        if self.BYBIT_ENV == "mainnet" and self.BYBIT_API_KEY:
            warnings.append(
                "BYBIT_ENV=mainnet with API keys loaded will trade REAL money in real mode. "
                "If you meant demo/testnet, set BYBIT_ENV=testnet (recommended)."
            )

        if errors:
            msg = "Config validation failed:\n" + "\n".join([f"- {e}" for e in errors])
            raise ValueError(msg)

        return warnings


# Pydantic v2 + postponed annotations safety
Settings.model_rebuild()
settings = Settings()
