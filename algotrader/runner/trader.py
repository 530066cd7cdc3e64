from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from enum import Enum
from typing import Any, Callable, Dict, List, Optional, Tuple

from algotrader.core.errors import FatalExchangeError, is_fatal
from algotrader.core.models import Signal, TradingConfig, TradingMode, utc_now_iso
from algotrader.execution.executor import TradeExecutor
from algotrader.ops.context import cycle_scope, new_id, set_run_id
from algotrader.persistence.audit import Audit
from algotrader.persistence.state_store import StateStore
from algotrader.scanner.scanner import SignalScanner

log = logging.getLogger("algotrader.trader")

# scan interval (seconds) -> Bybit kline interval
KLINE_INTERVALS = {
    60: "1",
    300: "5",
    900: "15",
    3600: "60",
    14400: "240",
    86400: "D",
}
DEFAULT_KLINE_INTERVAL = "15"


def kline_interval(scan_interval_seconds: int) -> str:
    return KLINE_INTERVALS.get(int(scan_interval_seconds), DEFAULT_KLINE_INTERVAL)


class TraderState(str, Enum):
    STOPPED = "STOPPED"
    SCANNING = "SCANNING"
    COOLDOWN = "COOLDOWN"


@dataclass
class IterationResult:
    action: str  # STOPPED / AT_CAPACITY / TRADED / ERROR / HALTED
    scanned: int = 0
    executed: int = 0
    failed: int = 0
    error: Optional[str] = None


class AutomatedTrader:
    """
    Automated trading loop.

    One iteration: status check, capacity check, scan + re-blend, execute.
    AppStatus.is_automated_trading_enabled is the cancellation flag and is read
    once per iteration; an iteration already executing trades runs to completion.
    """

    def __init__(
        self,
        store: StateStore,
        scanner: SignalScanner,
        executor: TradeExecutor,
        *,
        audit: Optional[Audit] = None,
        top_n: int = 10,
        sleep: Callable[[float], Any] = asyncio.sleep,
    ):
        self.store = store
        self.scanner = scanner
        self.executor = executor
        self.audit = audit
        self.top_n = top_n
        self._sleep = sleep
        self._start_lock = asyncio.Lock()

        self.state = TraderState.STOPPED
        self.task: Optional[asyncio.Task] = None
        self.run_id: Optional[str] = None
        self.started_at: Optional[str] = None
        self.last_cycle_at: Optional[str] = None
        self.cycle_count = 0
        self.last_error: Optional[str] = None

    @property
    def running(self) -> bool:
        return self.task is not None and not self.task.done()

    def _event(self, event_type: str, action: Optional[str] = None, **details: Any) -> None:
        if self.audit is None:
            return
        self.audit.safe_event(event_type, run_id=self.run_id, action=action, details=details)

    # ---------------- ONE ITERATION ----------------

    async def run_iteration(self) -> IterationResult:
        with cycle_scope() as cycle_id:
            status = await self.store.get_app_status()
            if not status.is_automated_trading_enabled:
                self.state = TraderState.STOPPED
                log.info("automated trading disabled, stopping")
                return IterationResult("STOPPED")

            config = await self.store.get_trading_config()
            mode = status.trading_mode
            self.last_cycle_at = utc_now_iso()
            self.cycle_count += 1
            self._event("CYCLE", "CYCLE_START", cycle_id=cycle_id, mode=mode.value)

            try:
                result = await self._cycle(config, mode)
            except Exception as e:
                if is_fatal(e):
                    await self._halt(e)
                    return IterationResult("HALTED", error=str(e))
                self.last_error = f"{type(e).__name__}: {e}"
                log.exception("trading iteration failed")
                self.state = TraderState.COOLDOWN
                self._event("CYCLE", "CYCLE_ERROR", error=self.last_error)
                return IterationResult("ERROR", error=self.last_error)

            self.last_error = None
            self.state = TraderState.COOLDOWN
            self._event(
                "CYCLE",
                "CYCLE_END",
                result=result.action,
                scanned=result.scanned,
                executed=result.executed,
                failed=result.failed,
            )
            return result

    async def _cycle(self, config: TradingConfig, mode: TradingMode) -> IterationResult:
        try:
            await self.executor.sync_positions(mode)
        except FatalExchangeError:
            raise
        except Exception as e:
            log.warning("position sync failed, using stored positions: %s: %s", type(e).__name__, e)

        open_count = await self.store.count_open_positions()
        if open_count >= config.max_positions:
            log.info("at capacity (%d/%d open), skipping scan", open_count, config.max_positions)
            return IterationResult("AT_CAPACITY")

        self.state = TraderState.SCANNING
        interval = kline_interval(config.scan_interval_seconds)
        scanned = await self.scanner.scan(interval=interval, top_n=self.top_n, mode=mode)

        try:
            signals = await self.scanner.process_signals(mode)
        except FatalExchangeError:
            raise
        except Exception as e:
            log.warning("re-blend pass failed, using scan result: %s: %s", type(e).__name__, e)
            signals = scanned

        executed, failed = await self._execute_batch(signals, mode, config)
        return IterationResult("TRADED", scanned=len(scanned), executed=executed, failed=failed)

    async def _execute_batch(
        self, signals: List[Signal], mode: TradingMode, config: TradingConfig
    ) -> Tuple[int, int]:
        executed = 0
        failed = 0
        for signal in signals:
            if not signal.is_pending:
                continue
            if await self.store.count_open_positions() >= config.max_positions:
                log.info("max positions reached, %d signals left unexecuted", len(signals) - executed - failed)
                break
            try:
                await self.executor.execute_signal(signal, mode, config)
                executed += 1
            except Exception as e:
                if is_fatal(e):
                    raise
                failed += 1
                log.warning("execution failed for %s: %s: %s", signal.symbol, type(e).__name__, e)
        return executed, failed

    async def _halt(self, err: BaseException) -> None:
        self.last_error = f"{type(err).__name__}: {err}"
        log.error("fatal error, halting automated trading: %s", self.last_error)
        try:
            await self.store.set_automated_trading(False)
        finally:
            self.state = TraderState.STOPPED
            self._event("FATAL", "RUNNER_HALTED", error=self.last_error)

    # ---------------- LOOP ----------------

    async def run(self) -> None:
        set_run_id(self.run_id)
        try:
            while True:
                await self.run_iteration()
                if self.state == TraderState.STOPPED:
                    break
                config = await self.store.get_trading_config()
                await self._sleep(config.scan_interval_seconds)
        finally:
            self.state = TraderState.STOPPED

    async def start(self, mode: TradingMode = TradingMode.VIRTUAL) -> bool:
        """
        Enable automated trading and launch the loop.

        The enabled flag is always persisted, so a loop still sleeping after a
        stop() keeps running. Returns False when no new task was launched.
        """
        async with self._start_lock:
            await self.store.set_automated_trading(True, TradingMode(mode))
            if self.running:
                log.info("automated trading re-enabled (%s), loop already running", TradingMode(mode).value)
                return False
            await self._launch(TradingMode(mode))
            return True

    async def _launch(self, mode: TradingMode) -> None:
        config = await self.store.get_trading_config()

        self.run_id = new_id()
        self.started_at = utc_now_iso()
        self.cycle_count = 0
        self.last_error = None
        if self.audit is not None:
            try:
                self.audit.start_run(
                    run_id=self.run_id,
                    mode=mode.value,
                    interval_seconds=config.scan_interval_seconds,
                    max_positions=config.max_positions,
                )
            except Exception as e:
                log.warning("audit start_run failed: %s", e)

        log.info("automated trading started (%s), run_id=%s", mode.value, self.run_id)
        self.task = asyncio.create_task(self.run())

    async def stop(self) -> None:
        """Disable automated trading; the loop exits at its next status check."""
        await self.store.set_automated_trading(False)
        log.info("automated trading disable requested")

    async def shutdown(self) -> None:
        """Cancel the loop task immediately (process shutdown)."""
        task = self.task
        if task is not None and not task.done():
            task.cancel()
            try:
                await task
            except asyncio.CancelledError:
                pass
        self.task = None
        self.state = TraderState.STOPPED
        if self.audit is not None and self.run_id:
            try:
                self.audit.stop_run(self.run_id)
            except Exception as e:
                log.warning("audit stop_run failed: %s", e)

    def status(self) -> Dict[str, Any]:
        return {
            "state": self.state.value,
            "running": self.running,
            "run_id": self.run_id,
            "started_at": self.started_at,
            "last_cycle_at": self.last_cycle_at,
            "cycle_count": self.cycle_count,
            "last_error": self.last_error,
        }
