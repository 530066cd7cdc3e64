import asyncio
import json

import pytest

from algotrader.core.models import (
    Balance,
    Confidence,
    Direction,
    MarketData,
    Position,
    PositionStatus,
    Signal,
    SignalStatus,
    TradingConfig,
    TradingMode,
)
from algotrader.ops.context import cycle_scope
from algotrader.persistence.audit import Audit
from algotrader.persistence.backings import (
    JsonFileBacking,
    MemoryBacking,
    SqliteBacking,
    make_backing,
)
from algotrader.persistence.db import DB
from algotrader.persistence.state_store import CONNECTED, StateStore


def _position(symbol="BTCUSDT", side=Direction.BUY, entry=100.0, size=2.0):
    return Position(
        symbol=symbol,
        side=side,
        size=size,
        leverage=10,
        entry_price=entry,
        current_price=entry,
    )


def _signal(symbol="BTCUSDT", status=SignalStatus.PENDING, created_at=None):
    sig = Signal(
        symbol=symbol,
        side=Direction.SELL,
        score=55.0,
        confidence=Confidence.MEDIUM,
        entry_price=100.0,
        stop_loss=104.0,
        take_profit=92.0,
        liquidation_price=109.0,
        trailing_stop=102.0,
        leverage=10,
        risk_reward=2.0,
        atr_multiplier=2.0,
        interval="15",
        status=status,
    )
    if created_at:
        sig.created_at = created_at
    return sig


class BrokenBacking(MemoryBacking):
    def save(self, collections):
        raise OSError("disk full")


def test_concurrent_margin_reservations_do_not_lose_updates():
    async def go():
        store = StateStore(start_capital=1000.0)
        await asyncio.gather(*(store.reserve_margin(1.0) for _ in range(100)))
        return await store.get_balance()

    balance = asyncio.run(go())
    assert balance.used == pytest.approx(100.0)
    assert balance.available == pytest.approx(900.0)
    assert balance.capital == pytest.approx(1000.0)


def test_negative_margin_rejected():
    with pytest.raises(ValueError):
        asyncio.run(StateStore().reserve_margin(-1))


def test_json_backing_survives_restart(tmp_path):
    path = tmp_path / "state" / "state.json"

    async def write():
        store = StateStore(JsonFileBacking(str(path)))
        await store.add_position(_position())
        await store.replace_pending_signals([_signal()])
        await store.set_trading_config(TradingConfig(max_positions=3, leverage=5))
        await store.set_automated_trading(True, TradingMode.REAL)
        await store.set_connection_status(CONNECTED)

    asyncio.run(write())
    doc = json.loads(path.read_text(encoding="utf-8"))
    assert set(doc) >= {"positions", "signals", "trading_config", "app_status"}

    async def read():
        store = StateStore(JsonFileBacking(str(path)))
        return (
            await store.get_positions(),
            await store.get_pending_signals(),
            await store.get_trading_config(),
            await store.get_app_status(),
            await store.get_connection_status(),
        )

    positions, signals, config, status, conn = asyncio.run(read())
    assert [p.symbol for p in positions] == ["BTCUSDT"]
    assert signals[0].side == Direction.SELL
    assert config.max_positions == 3 and config.leverage == 5
    assert status.trading_mode == TradingMode.REAL
    assert status.is_automated_trading_enabled
    assert conn == CONNECTED


def test_corrupt_json_file_starts_empty(tmp_path):
    path = tmp_path / "state.json"
    path.write_text("{not json", encoding="utf-8")
    store = StateStore(JsonFileBacking(str(path)))
    assert asyncio.run(store.get_positions()) == []


def test_sqlite_backing_round_trip(tmp_path):
    db = DB(str(tmp_path / "t.db"))

    async def write():
        store = StateStore(SqliteBacking(db))
        await store.set_balance(Balance(capital=500.0, available=400.0, used=100.0))

    asyncio.run(write())
    store = StateStore(SqliteBacking(db))
    balance = asyncio.run(store.get_balance())
    assert balance.available == 400.0
    assert db.read_key("balance") is not None


def test_make_backing_kinds(tmp_path):
    assert isinstance(make_backing("memory", state_file="x"), MemoryBacking)
    assert isinstance(
        make_backing("json", state_file=str(tmp_path / "s.json")), JsonFileBacking
    )
    with pytest.raises(ValueError):
        make_backing("sqlite", state_file="x")


def test_replace_pending_keeps_history():
    async def go():
        store = StateStore(history_limit=2)
        await store.set_signals(
            [
                _signal("OLD1USDT", SignalStatus.EXECUTED, "2024-01-01T00:00:00+00:00"),
                _signal("OLD2USDT", SignalStatus.EXPIRED, "2024-01-02T00:00:00+00:00"),
                _signal("OLD3USDT", SignalStatus.EXECUTED, "2024-01-03T00:00:00+00:00"),
                _signal("STALEUSDT"),
            ]
        )
        await store.replace_pending_signals([_signal("NEWUSDT")])
        return await store.get_signals()

    signals = asyncio.run(go())
    assert [s.symbol for s in signals] == ["NEWUSDT", "OLD2USDT", "OLD3USDT"]
    assert signals[0].status == SignalStatus.PENDING


def test_apply_market_data_marks_open_positions():
    async def go():
        store = StateStore()
        long = _position("BTCUSDT", Direction.BUY, entry=100.0, size=2.0)
        short = _position("ETHUSDT", Direction.SELL, entry=50.0, size=4.0)
        await store.set_positions([long, short])
        marked = await store.apply_market_data(
            [
                MarketData(symbol="BTCUSDT", price=110.0),
                MarketData(symbol="ETHUSDT", price=55.0),
                MarketData(symbol="XRPUSDT", price=0.5),
            ]
        )
        return marked, {p.symbol: p for p in await store.get_positions()}

    marked, positions = asyncio.run(go())
    assert marked == 2
    assert positions["BTCUSDT"].pnl == pytest.approx(20.0)
    assert positions["BTCUSDT"].pnl_percent == pytest.approx(10.0)
    assert positions["ETHUSDT"].pnl == pytest.approx(-20.0)
    assert positions["ETHUSDT"].current_price == 55.0


def test_closed_position_cannot_be_mutated():
    async def go():
        store = StateStore(start_capital=1000.0)
        pos = await store.add_position(_position())
        await store.reserve_margin(20.0)
        closed = await store.close_position(pos.id, 105.0)
        balance = await store.get_balance()
        with pytest.raises(ValueError):
            await store.update_position(pos.id, stop_loss=90.0)
        return closed, balance

    closed, balance = asyncio.run(go())
    assert closed.status == PositionStatus.CLOSED
    assert closed.exit_price == 105.0
    assert closed.pnl == pytest.approx(10.0)
    assert balance.used == pytest.approx(0.0)
    assert balance.available == pytest.approx(1010.0)
    assert balance.capital == pytest.approx(1010.0)


def test_unknown_field_rejected():
    async def go():
        store = StateStore()
        pos = await store.add_position(_position())
        await store.update_position(pos.id, nope=1)

    with pytest.raises(AttributeError):
        asyncio.run(go())


def test_failing_backing_keeps_memory_state():
    async def go():
        store = StateStore(BrokenBacking())
        await store.add_position(_position())
        return await store.count_open_positions()

    assert asyncio.run(go()) == 1


def test_sync_positions_follows_exchange():
    async def go():
        store = StateStore(start_capital=1000.0)
        held = await store.add_position(_position("BTCUSDT", Direction.BUY, entry=100.0, size=2.0))
        gone = await store.add_position(_position("ETHUSDT", Direction.SELL, entry=50.0, size=4.0))
        await store.update_position(gone.id, current_price=45.0)
        await store.reserve_margin(40.0)

        upstream = [
            Position(
                symbol="BTCUSDT", side=Direction.BUY, size=2.0, leverage=10,
                entry_price=100.0, current_price=105.0, liquidation_price=91.0,
            ),
            Position(
                symbol="XRPUSDT", side=Direction.BUY, size=10.0, leverage=5,
                entry_price=0.5, current_price=0.5,
            ),
        ]
        closed = await store.sync_positions(upstream)
        positions = {p.symbol: p for p in await store.get_positions()}
        return held, closed, positions, await store.get_balance(), await store.count_open_positions()

    held, closed, positions, balance, open_count = asyncio.run(go())
    assert [p.symbol for p in closed] == ["ETHUSDT"]
    assert positions["ETHUSDT"].status == PositionStatus.CLOSED
    assert positions["ETHUSDT"].exit_price == 45.0
    assert positions["ETHUSDT"].pnl == pytest.approx(20.0)
    assert positions["BTCUSDT"].id == held.id
    assert positions["BTCUSDT"].pnl == pytest.approx(10.0)
    assert positions["BTCUSDT"].liquidation_price == 91.0
    assert positions["XRPUSDT"].is_open
    assert open_count == 2
    # ETH margin 50 * 4 / 10 = 20 released plus 20 profit
    assert balance.used == pytest.approx(20.0)
    assert balance.capital == pytest.approx(1020.0)


def test_invalid_connection_status():
    with pytest.raises(ValueError):
        asyncio.run(StateStore().set_connection_status("maybe"))


def test_audit_writes_db_and_jsonl(tmp_path):
    db = DB(str(tmp_path / "audit.db"))
    jsonl = tmp_path / "logs" / "audit.jsonl"
    audit = Audit(db, str(jsonl))

    audit.start_run("run1", "virtual", 300, 5)
    with cycle_scope("cyc1"):
        audit.event(
            "TRADE_EXECUTED", run_id="run1", symbol="BTCUSDT", action="BUY", details={"size": 2.0}
        )
    audit.stop_run("run1")

    rows = audit.recent(10, run_id="run1")
    assert len(rows) == 1
    assert rows[0]["cycle_id"] == "cyc1"
    assert rows[0]["details"] == {"size": 2.0}

    lines = [json.loads(x) for x in jsonl.read_text(encoding="utf-8").splitlines()]
    assert [x["event_type"] for x in lines] == ["RUN_START", "TRADE_EXECUTED", "RUN_STOP"]
