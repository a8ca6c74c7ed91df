"""Tests for the processing cycle: exchange I/O around the state machine."""

import asyncio
from unittest.mock import AsyncMock, MagicMock

import pytest
from sqlmodel import Session

from goalreact.engine.order_sync import sync_open_orders_on_startup
from goalreact.engine.phases import BackLeg, Exiting, LayLeg, Live, Step
from goalreact.engine.trade_job import TradeEngine
from goalreact.models.strategy_settings import StrategySettings
from goalreact.services.betfair_transport import ErrorKind, ExchangeError
from goalreact.services.exchange import (
    MarketBook,
    MatchVerification,
    OrderDetails,
    OrderResult,
    RunnerBook,
)
from goalreact.utils import constants as c

MARKET_ID = "1.234"
UNDER_ID = 47972


def _book(back, lay, status="OPEN", total_matched=50000.0):
    return MarketBook(
        market_id=MARKET_ID,
        status=status,
        in_play=True,
        total_matched=total_matched,
        runners=[RunnerBook(selection_id=UNDER_ID, back_price=back, lay_price=lay)],
    )


def _exchange():
    exchange = MagicMock()
    exchange.get_market_book = AsyncMock()
    exchange.place_limit_order = AsyncMock()
    exchange.verify_order_matched = AsyncMock()
    exchange.cancel_order_and_confirm = AsyncMock()
    exchange.list_market_catalogue = AsyncMock(return_value=[{
        "marketId": MARKET_ID,
        "event": {"id": "31000001", "name": "Arsenal v Chelsea"},
        "runners": [
            {"selectionId": UNDER_ID, "runnerName": "Under 2.5 Goals"},
            {"selectionId": 47973, "runnerName": "Over 2.5 Goals"},
        ],
    }])
    return exchange


@pytest.fixture
def exchange():
    return _exchange()


@pytest.fixture
def engine(exchange, store, clock):
    fixture_source = MagicMock()
    fixture_source.upcoming = AsyncMock(return_value=[])
    return TradeEngine(exchange, store, clock=clock, fixture_source=fixture_source)


@pytest.fixture
def kicked_off(store, make_fixture):
    """A trade whose match started at the current fake time."""
    trade, _ = store.ensure_trade(make_fixture(kickoff_in_minutes=0))
    return trade


def _live_trade(store, trade, clock, matched_size=None):
    back = BackLeg(
        price=2.56,
        stake=200.0,
        order_ref="1001",
        placed_at=clock.now(),
        matched_size=matched_size,
        average_price=2.56 if matched_size else None,
    )
    store.update_trade(trade.id, market_id=MARKET_ID, selection_id=UNDER_ID)
    return store.apply_step(trade.id, Step(Live(back=back, last_stable_price=2.56)))


# ---------------------------------------------------------------------------
# 1. Full cycle
# ---------------------------------------------------------------------------

@pytest.mark.asyncio
async def test_goal_entry_and_take_profit(engine, exchange, store, clock, kicked_off):
    exchange.place_limit_order.side_effect = [
        OrderResult(success=True, order_ref="1001", price=2.56, size=200.0,
                    size_matched=200.0, average_price_matched=2.56),
        OrderResult(success=True, order_ref="1002", price=2.3, size=222.61,
                    size_matched=222.61, average_price_matched=2.3),
    ]

    clock.advance(minutes=5)
    exchange.get_market_book.return_value = _book(2.00, 2.02)
    await engine.run_cycle()
    trade = store.get_trade(kicked_off.id)
    assert trade.status == c.PHASE_WATCHING
    assert trade.market_id == MARKET_ID
    assert trade.selection_id == UNDER_ID

    clock.advance(minutes=15)
    exchange.get_market_book.return_value = _book(2.60, 2.62)
    await engine.run_cycle()
    assert store.get_trade(kicked_off.id).status == c.PHASE_GOAL_WAIT

    clock.advance(seconds=95)
    exchange.get_market_book.return_value = _book(2.55, 2.56)
    await engine.run_cycle()
    trade = store.get_trade(kicked_off.id)
    assert trade.status == c.PHASE_LIVE
    assert trade.back_order_ref == "1001"
    assert trade.back_matched_size == 200.0
    back_call = exchange.place_limit_order.await_args_list[0]
    assert back_call.args == (MARKET_ID, UNDER_ID, "BACK", 200.0, 2.56)

    clock.advance(minutes=40)
    exchange.get_market_book.return_value = _book(2.29, 2.30)
    await engine.run_cycle()
    trade = store.get_trade(kicked_off.id)
    assert trade.status == c.PHASE_COMPLETED
    assert trade.exit_reason == c.REASON_PROFIT_TARGET
    assert trade.realised_pnl == 22.21
    assert trade.lay_matched_size == 222.61
    lay_call = exchange.place_limit_order.await_args_list[1]
    assert lay_call.args == (MARKET_ID, UNDER_ID, "LAY", 222.61, 2.3)
    assert lay_call.kwargs == {"persistence": "PERSIST"}

    events = [e.event_type for e in store.list_events(kicked_off.id)]
    assert "GOAL_DETECTED" in events
    assert events[-2:] == ["TRADE_SETTLED", "PHASE_CHANGED"]


@pytest.mark.asyncio
async def test_rejected_back_order_counts_attempt(engine, exchange, store, clock, kicked_off):
    exchange.place_limit_order.return_value = OrderResult(success=False, error="INSUFFICIENT_FUNDS")
    for minutes, book in ((5, _book(2.0, 2.02)), (15, _book(2.6, 2.62)), (2, _book(2.55, 2.56))):
        clock.advance(minutes=minutes)
        exchange.get_market_book.return_value = book
        await engine.run_cycle()

    trade = store.get_trade(kicked_off.id)
    assert trade.status == c.PHASE_GOAL_WAIT
    assert trade.state_data["entry_attempts"] == 1
    assert "INSUFFICIENT_FUNDS" in trade.last_error


# ---------------------------------------------------------------------------
# 2. Settlement without a hedge
# ---------------------------------------------------------------------------

@pytest.mark.asyncio
async def test_game_end_completes_without_market_call(engine, exchange, store, clock, kicked_off):
    clock.advance(minutes=121)
    await engine.run_cycle()
    trade = store.get_trade(kicked_off.id)
    assert trade.status == c.PHASE_COMPLETED
    assert trade.exit_reason == c.REASON_GAME_ENDED
    exchange.get_market_book.assert_not_awaited()


@pytest.mark.asyncio
async def test_closed_market_completes(engine, exchange, store, clock, kicked_off):
    clock.advance(minutes=10)
    exchange.get_market_book.return_value = _book(None, None, status="CLOSED")
    await engine.run_cycle()
    assert store.get_trade(kicked_off.id).exit_reason == c.REASON_MARKET_CLOSED


@pytest.mark.asyncio
async def test_suspended_market_waits(engine, exchange, store, clock, kicked_off):
    clock.advance(minutes=10)
    exchange.get_market_book.return_value = _book(2.0, 2.02, status="SUSPENDED")
    await engine.run_cycle()
    assert store.get_trade(kicked_off.id).status == c.STATUS_SCHEDULED


# ---------------------------------------------------------------------------
# 3. Isolation and overlap
# ---------------------------------------------------------------------------

@pytest.mark.asyncio
async def test_one_failing_trade_does_not_stop_others(engine, exchange, store, clock, make_fixture):
    broken, _ = store.ensure_trade(make_fixture(event_id="1", name="Arsenal v Chelsea", kickoff_in_minutes=0))
    healthy, _ = store.ensure_trade(make_fixture(event_id="2", name="Spurs v Fulham", kickoff_in_minutes=1))
    store.update_trade(broken.id, market_id="1.111", selection_id=UNDER_ID)
    store.update_trade(healthy.id, market_id=MARKET_ID, selection_id=UNDER_ID)

    async def book(market_id):
        if market_id == "1.111":
            raise ExchangeError(ErrorKind.TRANSIENT, "timeout")
        return _book(2.0, 2.02)

    exchange.get_market_book.side_effect = book
    clock.advance(minutes=5)
    result = await engine.run_cycle()

    assert result.processed == 1
    assert result.errors == 1
    assert store.get_trade(healthy.id).status == c.PHASE_WATCHING
    assert "timeout" in store.get_trade(broken.id).last_error
    assert store.list_events(broken.id)[-1].event_type == "TICK_ERROR"


@pytest.mark.asyncio
async def test_overlapping_cycle_is_skipped(engine):
    async with engine._cycle_lock:
        result = await engine.run_cycle()
    assert result.skipped_overlap


@pytest.mark.asyncio
async def test_disabled_strategy_processes_nothing(engine, exchange, store, clock, kicked_off):
    settings_id = store.load_settings(engine.strategy_key).id
    with Session(store.engine) as session:
        params = session.get(StrategySettings, settings_id)
        params.enabled = False
        session.add(params)
        session.commit()

    clock.advance(minutes=5)
    result = await engine.run_cycle()
    assert result.processed == 0
    exchange.get_market_book.assert_not_awaited()


# ---------------------------------------------------------------------------
# 4. Back-leg reconciliation
# ---------------------------------------------------------------------------

@pytest.mark.asyncio
async def test_unmatched_back_cancelled_after_timeout(engine, exchange, store, clock, kicked_off):
    _live_trade(store, kicked_off, clock)
    exchange.get_market_book.return_value = _book(2.5, 2.52)
    exchange.verify_order_matched.return_value = MatchVerification(
        matched=False, details=OrderDetails(order_ref="1001", status="EXECUTABLE", size_remaining=200.0)
    )
    exchange.cancel_order_and_confirm.return_value = OrderDetails(
        order_ref="1001", status="EXECUTION_COMPLETE", size_cancelled=200.0
    )

    clock.advance(seconds=30)
    await engine.run_cycle()
    assert store.get_trade(kicked_off.id).status == c.PHASE_LIVE
    exchange.cancel_order_and_confirm.assert_not_awaited()

    clock.advance(seconds=40)
    await engine.run_cycle()
    trade = store.get_trade(kicked_off.id)
    assert trade.status == c.PHASE_SKIPPED
    assert trade.exit_reason == c.REASON_BACK_NOT_MATCHED


@pytest.mark.asyncio
async def test_back_still_working_after_cancel_keeps_trade_open(engine, exchange, store, clock, kicked_off):
    _live_trade(store, kicked_off, clock)
    exchange.get_market_book.return_value = _book(2.5, 2.52)
    exchange.verify_order_matched.return_value = MatchVerification(
        matched=False, details=OrderDetails(order_ref="1001", status="EXECUTABLE", size_remaining=200.0)
    )
    exchange.cancel_order_and_confirm.return_value = OrderDetails(
        order_ref="1001", status="EXECUTABLE", size_remaining=200.0
    )

    clock.advance(seconds=70)
    await engine.run_cycle()
    trade = store.get_trade(kicked_off.id)
    assert trade.status == c.PHASE_LIVE
    assert trade.exit_reason is None
    assert store.list_events(kicked_off.id)[-1].event_type == "BACK_CANCEL_NOT_CONFIRMED"

    # The cancel is retried on the next tick
    clock.advance(seconds=30)
    await engine.run_cycle()
    assert exchange.cancel_order_and_confirm.await_count == 2
    assert store.get_trade(kicked_off.id).status == c.PHASE_LIVE


@pytest.mark.asyncio
async def test_partially_matched_back_keeps_position(engine, exchange, store, clock, kicked_off):
    _live_trade(store, kicked_off, clock)
    exchange.get_market_book.return_value = _book(2.5, 2.52)
    exchange.verify_order_matched.return_value = MatchVerification(
        matched=False,
        size_matched=80.0,
        average_price_matched=2.56,
        details=OrderDetails(order_ref="1001", status="EXECUTION_COMPLETE", size_matched=80.0, size_lapsed=120.0),
    )

    clock.advance(seconds=10)
    await engine.run_cycle()
    trade = store.get_trade(kicked_off.id)
    assert trade.status == c.PHASE_LIVE
    assert trade.back_matched_size == 80.0


# ---------------------------------------------------------------------------
# 5. Hedge reconciliation
# ---------------------------------------------------------------------------

def _exiting_trade(store, trade, clock):
    live = _live_trade(store, trade, clock, matched_size=200.0)
    back = BackLeg(price=2.56, stake=200.0, order_ref="1001", placed_at=clock.now(),
                   matched_size=200.0, average_price=2.56)
    lay = LayLeg(price=2.3, stake=222.61, order_ref="1002", placed_at=clock.now())
    return store.apply_step(live.id, Step(
        Exiting(back=back, reason=c.REASON_PROFIT_TARGET, lay=lay),
        updates={"lay_order_ref": "1002", "lay_stake": 222.61, "lay_price": 2.3},
    ))


@pytest.mark.asyncio
async def test_resting_hedge_is_not_settled_until_matched(engine, exchange, store, clock, kicked_off):
    _live_trade(store, kicked_off, clock, matched_size=200.0)
    exchange.place_limit_order.return_value = OrderResult(
        success=True, order_ref="1002", price=2.3, size=222.61, size_matched=0.0
    )
    exchange.get_market_book.return_value = _book(2.29, 2.30)

    clock.advance(minutes=1)
    await engine.run_cycle()
    trade = store.get_trade(kicked_off.id)
    assert trade.status == c.PHASE_EXITING
    assert trade.lay_order_ref == "1002"
    assert trade.realised_pnl is None

    exchange.verify_order_matched.return_value = MatchVerification(
        matched=False,
        size_matched=50.0,
        partially_matched=True,
        details=OrderDetails(order_ref="1002", status="EXECUTABLE", size_matched=50.0, size_remaining=172.61),
    )
    clock.advance(seconds=30)
    await engine.run_cycle()
    assert store.get_trade(kicked_off.id).status == c.PHASE_EXITING
    assert exchange.place_limit_order.await_count == 1

    exchange.verify_order_matched.return_value = MatchVerification(
        matched=True,
        size_matched=222.61,
        average_price_matched=2.28,
        details=OrderDetails(order_ref="1002", status="EXECUTION_COMPLETE", size_matched=222.61),
    )
    clock.advance(seconds=30)
    await engine.run_cycle()
    trade = store.get_trade(kicked_off.id)
    assert trade.status == c.PHASE_COMPLETED
    assert trade.exit_reason == c.REASON_PROFIT_TARGET
    assert trade.lay_price == 2.28
    assert trade.lay_matched_size == 222.61
    assert trade.realised_pnl == 22.21
    exchange.verify_order_matched.assert_awaited_with("1002", 222.61)


@pytest.mark.asyncio
async def test_vanished_hedge_is_placed_again(engine, exchange, store, clock, kicked_off):
    _exiting_trade(store, kicked_off, clock)
    exchange.verify_order_matched.return_value = MatchVerification(
        matched=False, cancelled=True,
        details=OrderDetails(order_ref="1002", status="CANCELLED", source="missing"),
    )
    exchange.place_limit_order.return_value = OrderResult(
        success=True, order_ref="1003", price=2.3, size=222.61, size_matched=0.0
    )
    exchange.get_market_book.return_value = _book(2.29, 2.30)

    clock.advance(minutes=1)
    await engine.run_cycle()

    trade = store.get_trade(kicked_off.id)
    assert trade.status == c.PHASE_EXITING
    assert trade.lay_order_ref == "1003"
    assert trade.state_data["hedge_attempts"] == 2
    call = exchange.place_limit_order.await_args
    assert call.args == (MARKET_ID, UNDER_ID, "LAY", 222.61, 2.3)
    events = [e.event_type for e in store.list_events(kicked_off.id)]
    assert "LAY_NOT_MATCHED" in events


@pytest.mark.asyncio
async def test_partly_filled_hedge_settles_as_partial(engine, exchange, store, clock, kicked_off):
    _exiting_trade(store, kicked_off, clock)
    exchange.verify_order_matched.return_value = MatchVerification(
        matched=False,
        size_matched=100.0,
        average_price_matched=2.3,
        partially_matched=True,
        details=OrderDetails(order_ref="1002", status="EXECUTION_COMPLETE", size_matched=100.0,
                             size_cancelled=122.61),
    )

    clock.advance(minutes=1)
    await engine.run_cycle()
    trade = store.get_trade(kicked_off.id)
    assert trade.status == c.PHASE_COMPLETED
    assert trade.exit_reason == c.REASON_PARTIAL_LAY
    assert trade.realised_pnl == -100.0
    exchange.get_market_book.assert_not_awaited()


# ---------------------------------------------------------------------------
# 6. Fixtures, manual control, startup sync
# ---------------------------------------------------------------------------

@pytest.mark.asyncio
async def test_sync_fixtures_creates_each_trade_once(engine, store, make_fixture):
    engine.fixture_source.upcoming.return_value = [make_fixture(event_id="1"), make_fixture(event_id="2")]
    assert await engine.sync_fixtures() == 2
    assert await engine.sync_fixtures() == 0
    assert len(store.list_open_trades()) == 2


@pytest.mark.asyncio
async def test_sync_fixtures_survives_exchange_error(engine):
    engine.fixture_source.upcoming.side_effect = ExchangeError(ErrorKind.NO_SESSION, "no session")
    assert await engine.sync_fixtures() == 0


def test_cancel_trade(engine, store, kicked_off):
    trade = engine.cancel_trade(kicked_off.id)
    assert trade.status == c.PHASE_CANCELLED
    assert trade.exit_reason == c.REASON_MANUAL
    with pytest.raises(LookupError):
        engine.cancel_trade(9999)


@pytest.mark.asyncio
async def test_startup_sync_flags_unmatched_position(engine, exchange, store, clock, kicked_off):
    _live_trade(store, kicked_off, clock, matched_size=200.0)
    exchange.verify_order_matched.return_value = MatchVerification(
        matched=False, details=OrderDetails(order_ref="1001", status="CANCELLED", source="missing")
    )

    assert await sync_open_orders_on_startup(engine) == 1
    assert store.list_events(kicked_off.id)[-1].event_type == "ORDER_SYNC_WARNING"
    assert store.get_trade(kicked_off.id).status == c.PHASE_LIVE


@pytest.mark.asyncio
async def test_startup_sync_reconciles_unconfirmed_back(engine, exchange, store, clock, kicked_off):
    _live_trade(store, kicked_off, clock)
    exchange.verify_order_matched.return_value = MatchVerification(
        matched=True,
        size_matched=200.0,
        average_price_matched=2.58,
        details=OrderDetails(order_ref="1001", status="EXECUTION_COMPLETE", size_matched=200.0),
    )

    await sync_open_orders_on_startup(engine)
    trade = store.get_trade(kicked_off.id)
    assert trade.back_matched_size == 200.0
    assert trade.back_price == 2.58


@pytest.mark.asyncio
async def test_startup_sync_settles_hedge_filled_while_down(engine, exchange, store, clock, kicked_off):
    _exiting_trade(store, kicked_off, clock)
    exchange.verify_order_matched.return_value = MatchVerification(
        matched=True,
        size_matched=222.61,
        average_price_matched=2.3,
        details=OrderDetails(order_ref="1002", status="EXECUTION_COMPLETE", size_matched=222.61, source="cleared"),
    )

    assert await sync_open_orders_on_startup(engine) == 1
    trade = store.get_trade(kicked_off.id)
    assert trade.status == c.PHASE_COMPLETED
    assert trade.realised_pnl == 22.21


@pytest.mark.asyncio
async def test_cycles_do_not_run_concurrently(engine, exchange, store, clock, kicked_off):
    started = asyncio.Event()
    release = asyncio.Event()

    async def slow_book(market_id):
        started.set()
        await release.wait()
        return _book(2.0, 2.02)

    store.update_trade(kicked_off.id, market_id=MARKET_ID, selection_id=UNDER_ID)
    exchange.get_market_book.side_effect = slow_book
    clock.advance(minutes=5)

    first = asyncio.create_task(engine.run_cycle())
    await started.wait()
    assert engine.processing_active
    second = await engine.run_cycle()
    release.set()
    await first

    assert second.skipped_overlap
    assert exchange.get_market_book.await_count == 1


@pytest.mark.asyncio
async def test_due_trades_exclude_future_kickoffs(engine, exchange, store, clock, make_fixture):
    store.ensure_trade(make_fixture(kickoff_in_minutes=30))
    exchange.get_market_book.return_value = _book(2.0, 2.02)

    result = await engine.run_cycle()
    assert result.processed == 0

    clock.advance(minutes=31)
    result = await engine.run_cycle()
    assert result.processed == 1
