from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Dict, List, Literal, Optional

from fastapi import FastAPI, HTTPException
from pydantic import BaseModel, Field

from algotrader.core.config import Settings, settings
from algotrader.core.errors import ExchangeError, ExecutionError, FatalExchangeError
from algotrader.core.models import Direction, TradingConfig, TradingMode
from algotrader.exchange.bybit.client import BybitClient, BybitMarketData
from algotrader.execution.executor import TradeExecutor
from algotrader.execution.gateway import BybitGateway, PaperGateway
from algotrader.ops.retry import RetryPolicy, retry_async
from algotrader.persistence.audit import Audit
from algotrader.persistence.backings import make_backing
from algotrader.persistence.db import DB
from algotrader.persistence.state_store import CONNECTED, DISCONNECTED, StateStore
from algotrader.runner.trader import AutomatedTrader
from algotrader.scanner.scanner import ScanParams, SignalScanner
from algotrader.symbols.universe import top_usdt_symbols

log = logging.getLogger("algotrader.api")

KLINE_INTERVALS = {"1", "3", "5", "15", "30", "60", "120", "240", "360", "720", "D", "W", "M"}


@dataclass
class Services:
    settings: Settings
    store: StateStore
    provider: Any
    scanner: SignalScanner
    executor: TradeExecutor
    trader: AutomatedTrader
    policy: RetryPolicy
    audit: Optional[Audit] = None


def build_services(s: Settings) -> Services:
    db = DB(s.DB_PATH)
    audit = Audit(db, s.AUDIT_JSONL_PATH)
    store = StateStore(
        make_backing(s.STATE_BACKEND, state_file=s.STATE_FILE, db=db),
        trading_config=TradingConfig.from_settings(s),
        start_capital=s.VIRTUAL_START_CAPITAL,
        history_limit=s.SIGNAL_HISTORY_LIMIT,
    )
    client = BybitClient(
        api_key=s.BYBIT_API_KEY,
        api_secret=s.BYBIT_API_SECRET,
        base_url=s.BYBIT_BASE_URL,
        recv_window=s.BYBIT_RECV_WINDOW,
        timeout=s.HTTP_TIMEOUT_SECONDS,
    )
    provider = BybitMarketData(client)
    policy = RetryPolicy.from_settings(s)

    gateways = {
        TradingMode.VIRTUAL: PaperGateway(provider.get_current_price, s.VIRTUAL_START_CAPITAL),
        TradingMode.REAL: BybitGateway(client),
    }
    executor = TradeExecutor(
        store, gateways, policy=policy, audit=audit, price_source=provider.get_current_price
    )
    scanner = SignalScanner(provider, store, params=ScanParams.from_settings(s), policy=policy)
    trader = AutomatedTrader(store, scanner, executor, audit=audit, top_n=s.SCAN_TOP_N)

    return Services(
        settings=s,
        store=store,
        provider=provider,
        scanner=scanner,
        executor=executor,
        trader=trader,
        policy=policy,
        audit=audit,
    )


app = FastAPI(title="AlgoTrader")
services: Optional[Services] = None


def get_services() -> Services:
    global services
    if services is None:
        services = build_services(settings)
    return services


# =========================
# Request models
# =========================
class ScanRequest(BaseModel):
    interval: str = "15"
    limit: int = Field(10, ge=1, le=100)


class TradeRequest(BaseModel):
    symbol: str = Field(..., min_length=1, max_length=32)
    side: Literal["BUY", "SELL"]
    size: float = Field(..., gt=0)
    type: Literal["market", "limit"] = "market"
    price: Optional[float] = Field(None, gt=0)
    stopLoss: Optional[float] = Field(None, gt=0)
    takeProfit: Optional[float] = Field(None, gt=0)


class AutomatedTradingRequest(BaseModel):
    enabled: bool
    mode: Literal["virtual", "real"] = "virtual"


class AppStatusUpdate(BaseModel):
    trading_mode: Optional[Literal["virtual", "real"]] = None
    is_automated_trading_enabled: Optional[bool] = None


class TradingConfigUpdate(BaseModel):
    max_positions: Optional[int] = Field(None, ge=1, le=100)
    risk_per_trade: Optional[float] = Field(None, gt=0, le=100)
    leverage: Optional[int] = Field(None, ge=1, le=125)
    stop_loss_percent: Optional[float] = Field(None, gt=0, le=100)
    take_profit_percent: Optional[float] = Field(None, gt=0, le=1000)
    scan_interval_seconds: Optional[int] = Field(None, ge=10)


# =========================
# Startup / shutdown
# =========================
@app.on_event("startup")
async def _startup_validate_config():
    """Fail-fast config validation at startup."""
    logging.basicConfig(
        level=getattr(logging, settings.LOG_LEVEL, logging.INFO),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    try:
        warnings = settings.validate_runtime()
    except ValueError as e:
        # Fail-closed: crash the service rather than running with a dangerous config
        log.error("%s", e)
        raise
    for w in warnings:
        log.warning("[CONFIG WARNING] %s", w)


@app.on_event("startup")
async def _startup_resume_trader():
    svc = get_services()
    status = await svc.store.get_app_status()
    if status.is_automated_trading_enabled:
        log.info("resuming automated trading in %s mode", status.trading_mode.value)
        await svc.trader.start(status.trading_mode)


@app.on_event("shutdown")
async def _shutdown_trader():
    if services is not None:
        await services.trader.shutdown()


def _exchange_http_error(e: Exception) -> HTTPException:
    if isinstance(e, FatalExchangeError):
        return HTTPException(status_code=502, detail=f"Exchange rejected credentials: {e}")
    return HTTPException(status_code=502, detail=f"Exchange error: {e}")


# =========================
# Positions / signals
# =========================
@app.get("/api/positions")
async def api_positions() -> List[Dict[str, Any]]:
    svc = get_services()
    status = await svc.store.get_app_status()
    try:
        await svc.executor.sync_positions(status.trading_mode)
    except FatalExchangeError as e:
        raise _exchange_http_error(e)
    except (ExchangeError, ExecutionError) as e:
        log.warning("position sync failed, serving stored positions: %s", e)
    return [p.to_dict() for p in await svc.store.get_positions()]


@app.get("/api/signals")
async def api_signals() -> List[Dict[str, Any]]:
    svc = get_services()
    return [s.to_dict() for s in await svc.store.get_signals()]


@app.post("/api/scan-signals")
async def api_scan_signals(req: ScanRequest) -> List[Dict[str, Any]]:
    if req.interval not in KLINE_INTERVALS:
        raise HTTPException(status_code=400, detail=f"Unsupported interval: {req.interval}")
    svc = get_services()
    status = await svc.store.get_app_status()
    try:
        signals = await svc.scanner.scan(interval=req.interval, top_n=req.limit, mode=status.trading_mode)
    except ExchangeError as e:
        raise _exchange_http_error(e)
    return [s.to_dict() for s in signals]


@app.post("/api/trade")
async def api_trade(req: TradeRequest) -> Dict[str, Any]:
    if req.type == "limit" and req.price is None:
        raise HTTPException(status_code=400, detail="Limit orders require a price")
    if (req.stopLoss is None) != (req.takeProfit is None):
        raise HTTPException(status_code=400, detail="stopLoss and takeProfit must be set together")

    svc = get_services()
    status = await svc.store.get_app_status()
    try:
        position = await svc.executor.execute_trade(
            symbol=req.symbol.strip().upper(),
            side=Direction(req.side),
            size=req.size,
            mode=status.trading_mode,
            order_type=req.type,
            price=req.price,
            stop_loss=req.stopLoss,
            take_profit=req.takeProfit,
        )
    except ExecutionError as e:
        raise HTTPException(status_code=400, detail=str(e))
    except ExchangeError as e:
        raise _exchange_http_error(e)
    return {"status": "executed", "position": position.to_dict()}


# =========================
# Market data / balance / connection
# =========================
@app.get("/api/market-data")
async def api_market_data() -> List[Dict[str, Any]]:
    svc = get_services()
    tickers = await retry_async(
        lambda: asyncio.to_thread(svc.provider.get_tickers),
        policy=svc.policy,
        label="tickers",
        default=None,
    )
    if tickers:
        top = set(top_usdt_symbols(tickers, svc.settings.SCAN_UNIVERSE_SIZE))
        data = sorted((t for t in tickers if t.symbol in top), key=lambda t: t.volume24h, reverse=True)
        await svc.store.apply_market_data(data)
    return [m.to_dict() for m in await svc.store.get_market_data()]


@app.get("/api/balance")
async def api_balance() -> Dict[str, Any]:
    svc = get_services()
    status = await svc.store.get_app_status()
    if status.trading_mode == TradingMode.REAL:
        gateway = svc.executor.gateway_for(TradingMode.REAL)
        try:
            balance = await retry_async(
                lambda: asyncio.to_thread(gateway.get_balance),
                policy=svc.policy,
                label="balance",
                default=None,
            )
        except FatalExchangeError as e:
            raise _exchange_http_error(e)
        if balance is not None:
            await svc.store.set_balance(balance)
    return (await svc.store.get_balance()).to_dict()


@app.post("/api/test-connection")
async def api_test_connection() -> Dict[str, Any]:
    svc = get_services()
    server_time = await retry_async(
        lambda: asyncio.to_thread(svc.provider.server_time),
        policy=svc.policy,
        label="server time",
        default=None,
    )
    connected = server_time is not None
    await svc.store.set_connection_status(CONNECTED if connected else DISCONNECTED)
    return {"connected": connected, "server_time": server_time}


@app.get("/api/connection-status")
async def api_connection_status() -> Dict[str, Any]:
    svc = get_services()
    return {"status": await svc.store.get_connection_status()}


# =========================
# Automation / status / config
# =========================
@app.post("/api/automated-trading")
async def api_automated_trading(req: AutomatedTradingRequest) -> Dict[str, Any]:
    svc = get_services()
    if req.enabled:
        started = await svc.trader.start(TradingMode(req.mode))
        result = "started" if started else "already_running"
    else:
        await svc.trader.stop()
        result = "stopping"
    status = await svc.store.get_app_status()
    return {"status": result, **status.to_dict()}


@app.get("/api/app-status")
async def api_app_status() -> Dict[str, Any]:
    svc = get_services()
    return (await svc.store.get_app_status()).to_dict()


@app.post("/api/app-status")
async def api_set_app_status(req: AppStatusUpdate) -> Dict[str, Any]:
    svc = get_services()
    current = await svc.store.get_app_status()
    mode = TradingMode(req.trading_mode) if req.trading_mode else current.trading_mode

    if req.is_automated_trading_enabled is True:
        await svc.trader.start(mode)
    elif req.is_automated_trading_enabled is False:
        await svc.store.set_automated_trading(False, mode)
    else:
        await svc.store.set_automated_trading(current.is_automated_trading_enabled, mode)
    return (await svc.store.get_app_status()).to_dict()


@app.get("/api/trading-config")
async def api_trading_config() -> Dict[str, Any]:
    svc = get_services()
    return (await svc.store.get_trading_config()).to_dict()


@app.post("/api/trading-config")
async def api_set_trading_config(req: TradingConfigUpdate) -> Dict[str, Any]:
    svc = get_services()
    current = await svc.store.get_trading_config()
    changes = req.model_dump(exclude_none=True)
    updated = TradingConfig.from_dict({**current.to_dict(), **changes})
    await svc.store.set_trading_config(updated)
    log.info("trading config updated: %s", changes)
    return updated.to_dict()


@app.get("/api/trader/status")
async def api_trader_status() -> Dict[str, Any]:
    svc = get_services()
    status = await svc.store.get_app_status()
    return {**svc.trader.status(), **status.to_dict()}


@app.get("/health")
async def health():
    s = get_services().settings
    return {
        "status": "ok",
        "time_utc": datetime.now(timezone.utc).isoformat(),
        "bybit_env": s.BYBIT_ENV,
        "bybit_base_url": s.BYBIT_BASE_URL,
        "api_key_loaded": bool(s.BYBIT_API_KEY),
        "api_secret_loaded": bool(s.BYBIT_API_SECRET),
        "state_backend": s.STATE_BACKEND,
    }
