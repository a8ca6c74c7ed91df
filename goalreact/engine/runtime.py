"""Wiring of the long-lived service objects shared by the app and the CLI."""

from dataclasses import dataclass

from goalreact.engine.scheduler import StrategyScheduler
from goalreact.engine.trade_job import TradeEngine
from goalreact.services.betfair_session import SessionManager
from goalreact.services.betfair_transport import BetfairTransport
from goalreact.services.exchange import ExchangeClient
from goalreact.services.trade_store import TradeStore
from goalreact.utils.clock import SystemClock


@dataclass
class Runtime:
    transport: BetfairTransport
    session: SessionManager
    exchange: ExchangeClient
    store: TradeStore
    engine: TradeEngine
    scheduler: StrategyScheduler

    async def close(self):
        await self.transport.close()


def build_runtime(settings, db_engine, clock=None) -> Runtime:
    """Assemble the runtime. Credentials must already be validated."""
    clock = clock or SystemClock()
    transport = BetfairTransport.from_settings(settings)
    session = SessionManager.from_settings(settings, transport, clock=clock)
    exchange = ExchangeClient(session, clock=clock)
    store = TradeStore(db_engine, clock=clock)
    engine = TradeEngine(exchange, store, clock=clock)
    scheduler = StrategyScheduler(
        engine,
        session,
        clock=clock,
        keepalive_minutes=settings.keepalive_interval_minutes,
        fixture_sync_hours=settings.fixture_sync_hours,
    )
    session.on_retry_scheduled = scheduler.schedule_login_retry
    return Runtime(
        transport=transport,
        session=session,
        exchange=exchange,
        store=store,
        engine=engine,
        scheduler=scheduler,
    )
