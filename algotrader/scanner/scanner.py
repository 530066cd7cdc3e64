from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from typing import Any, Callable, List, Optional, Protocol, Sequence, Tuple

from algotrader.core.errors import (
    FatalExchangeError,
    NetworkUnavailableError,
    TransientExchangeError,
)
from algotrader.core.models import OHLCV, Direction, Signal, TradingConfig, TradingMode
from algotrader.ops.retry import RetryPolicy, retry_async
from algotrader.persistence.state_store import StateStore
from algotrader.strategy.confidence import apply_confidence
from algotrader.strategy.enhancer import build_signal
from algotrader.strategy.indicators import MIN_SAMPLES, calculate_indicators
from algotrader.strategy.scoring import score_indicators
from algotrader.symbols.universe import resolve_universe

log = logging.getLogger("algotrader.scanner")

REBLEND_KLINE_LIMIT = 100


class MarketDataProvider(Protocol):
    def get_top_symbols(self, limit: int) -> List[str]: ...

    def get_ohlcv(self, symbol: str, interval: str, limit: int) -> OHLCV: ...

    def get_current_price(self, symbol: str) -> float: ...


@dataclass(frozen=True)
class ScanParams:
    universe_size: int = 30
    kline_limit: int = 100
    concurrency: int = 8
    fallback_symbols: Tuple[str, ...] = ("BTCUSDT", "ETHUSDT", "SOLUSDT", "XRPUSDT")
    min_score_virtual: float = 40.0
    min_score_real: float = 50.0
    atr_multiplier: float = 2.0
    risk_reward: float = 2.0
    maintenance_margin: float = 0.1
    trailing_fraction: float = 0.5

    @classmethod
    def from_settings(cls, s) -> "ScanParams":
        return cls(
            universe_size=int(s.SCAN_UNIVERSE_SIZE),
            kline_limit=int(s.SCAN_KLINE_LIMIT),
            concurrency=max(1, int(s.SCAN_CONCURRENCY)),
            fallback_symbols=tuple(s.FALLBACK_SYMBOLS),
            min_score_virtual=float(s.MIN_SCORE_VIRTUAL),
            min_score_real=float(s.MIN_SCORE_REAL),
            atr_multiplier=float(s.ATR_MULTIPLIER),
            risk_reward=float(s.RISK_REWARD),
            maintenance_margin=float(s.MAINTENANCE_MARGIN),
            trailing_fraction=float(s.TRAILING_FRACTION),
        )

    def min_score(self, mode: TradingMode) -> float:
        if TradingMode(mode) == TradingMode.REAL:
            return self.min_score_real
        return self.min_score_virtual


def rank(signals: Sequence[Signal], top_n: Optional[int] = None) -> List[Signal]:
    ordered = sorted(signals, key=lambda s: s.score, reverse=True)
    return ordered if top_n is None else ordered[: max(0, int(top_n))]


def evaluate_symbol(
    symbol: str,
    ohlcv: OHLCV,
    *,
    interval: str,
    min_score: float,
    config: TradingConfig,
    params: ScanParams,
) -> Optional[Signal]:
    """Score, enhance and blend one symbol. None when it does not qualify."""
    if len(ohlcv) < MIN_SAMPLES:
        log.warning("%s: insufficient data (%d candles)", symbol, len(ohlcv))
        return None

    indicators = calculate_indicators(ohlcv.closes, ohlcv.highs, ohlcv.lows, ohlcv.volumes)
    price = ohlcv.closes[-1]
    score = score_indicators(indicators, price, ohlcv.volumes)

    if score.buy_score < min_score and score.sell_score < min_score:
        return None
    if score.buy_score == score.sell_score:
        return None
    side = Direction.BUY if score.buy_score > score.sell_score else Direction.SELL

    try:
        signal = build_signal(
            symbol,
            side,
            price,
            indicators,
            score,
            interval=interval,
            leverage=config.leverage,
            atr_multiplier=params.atr_multiplier,
            risk_reward=params.risk_reward,
            maintenance_margin=params.maintenance_margin,
            trailing_fraction=params.trailing_fraction,
            fallback_stop_percent=config.stop_loss_percent,
        )
    except ValueError as e:
        log.warning("%s: rejected levels: %s", symbol, e)
        return None

    blended = apply_confidence(signal, ohlcv.closes, ohlcv.highs, ohlcv.lows, ohlcv.volumes)
    if blended.score < min_score:
        return None
    return blended


class SignalScanner:
    def __init__(
        self,
        provider: MarketDataProvider,
        store: StateStore,
        *,
        params: Optional[ScanParams] = None,
        policy: Optional[RetryPolicy] = None,
        sleep: Callable[[float], Any] = asyncio.sleep,
    ):
        self.provider = provider
        self.store = store
        self.params = params or ScanParams()
        self.policy = policy or RetryPolicy()
        self._sleep = sleep

    async def _fetch(self, symbol: str, interval: str, limit: int) -> OHLCV:
        return await retry_async(
            lambda: asyncio.to_thread(self.provider.get_ohlcv, symbol, interval, limit),
            policy=self.policy,
            label=f"ohlcv {symbol}",
            sleep=self._sleep,
        )

    async def _universe(self) -> Tuple[List[str], bool]:
        symbols = await retry_async(
            lambda: asyncio.to_thread(self.provider.get_top_symbols, self.params.universe_size),
            policy=self.policy,
            label="top symbols",
            default=[],
            sleep=self._sleep,
        )
        universe = resolve_universe(
            list(symbols or []), list(self.params.fallback_symbols), self.params.universe_size
        )
        if universe.fallback_used:
            log.warning("universe lookup empty or failed, using fallback %s", universe.symbols)
        return universe.symbols, universe.fallback_used

    async def scan(
        self,
        interval: str = "15",
        top_n: int = 10,
        mode: TradingMode = TradingMode.VIRTUAL,
    ) -> List[Signal]:
        """Fan out over the symbol universe, rank survivors, replace the PENDING set."""
        config = await self.store.get_trading_config()
        min_score = self.params.min_score(mode)
        symbols, fallback_used = await self._universe()
        sem = asyncio.Semaphore(self.params.concurrency)

        async def one(symbol: str) -> Optional[Signal]:
            async with sem:
                ohlcv = await self._fetch(symbol, interval, self.params.kline_limit)
            return evaluate_symbol(
                symbol,
                ohlcv,
                interval=interval,
                min_score=min_score,
                config=config,
                params=self.params,
            )

        results = await asyncio.gather(*(one(s) for s in symbols), return_exceptions=True)

        survivors: List[Signal] = []
        failures: List[BaseException] = []
        for symbol, res in zip(symbols, results):
            if isinstance(res, FatalExchangeError):
                raise res
            if isinstance(res, BaseException):
                failures.append(res)
                log.warning("%s: scan failed: %s: %s", symbol, type(res).__name__, res)
                continue
            if res is not None:
                survivors.append(res)

        if (
            symbols
            and fallback_used
            and len(failures) == len(symbols)
            and all(isinstance(f, TransientExchangeError) for f in failures)
        ):
            raise NetworkUnavailableError(
                f"Network error: universe lookup and all {len(symbols)} symbol fetches failed"
            )

        if len(survivors) < len(symbols):
            log.warning(
                "scan %s: %d/%d symbols produced signals (%d failed)",
                interval,
                len(survivors),
                len(symbols),
                len(failures),
            )

        ranked = rank(survivors, top_n)
        await self.store.replace_pending_signals(ranked)
        log.info("scan %s (%s): %d signals kept", interval, TradingMode(mode).value, len(ranked))
        return ranked

    async def process_signals(self, mode: TradingMode = TradingMode.VIRTUAL) -> List[Signal]:
        """Re-blend every PENDING signal on fresh candles; drop those under the mode minimum."""
        pending = await self.store.get_pending_signals()
        min_score = self.params.min_score(mode)
        sem = asyncio.Semaphore(self.params.concurrency)

        async def one(signal: Signal) -> Optional[Signal]:
            async with sem:
                ohlcv = await self._fetch(signal.symbol, signal.interval, REBLEND_KLINE_LIMIT)
            if len(ohlcv) < MIN_SAMPLES:
                log.warning("%s: insufficient data for re-blend", signal.symbol)
                return None
            blended = apply_confidence(
                signal, ohlcv.closes, ohlcv.highs, ohlcv.lows, ohlcv.volumes
            )
            return blended if blended.score >= min_score else None

        results = await asyncio.gather(*(one(s) for s in pending), return_exceptions=True)

        kept: List[Signal] = []
        for signal, res in zip(pending, results):
            if isinstance(res, FatalExchangeError):
                raise res
            if isinstance(res, BaseException):
                log.warning("%s: re-blend failed: %s: %s", signal.symbol, type(res).__name__, res)
                continue
            if res is not None:
                kept.append(res)

        ranked = rank(kept)
        await self.store.replace_pending_signals(ranked)
        return ranked
