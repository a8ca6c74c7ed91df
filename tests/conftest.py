"""Shared fixtures: in-memory database, fake clock, default strategy settings."""

from datetime import timedelta

import pytest
from sqlalchemy.pool import StaticPool
from sqlmodel import create_engine

from goalreact.database import create_db_and_tables
from goalreact.models.strategy_settings import StrategySettings
from goalreact.services.fixtures import Fixture
from goalreact.services.trade_store import TradeStore
from goalreact.utils.clock import FakeClock


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def db_engine():
    engine = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    create_db_and_tables(engine)
    yield engine
    engine.dispose()


@pytest.fixture
def store(db_engine, clock):
    return TradeStore(db_engine, clock=clock)


@pytest.fixture
def params():
    return StrategySettings(strategy_key="test")


@pytest.fixture
def make_fixture(clock):
    def _make(event_id="31000001", name="Arsenal v Chelsea", kickoff_in_minutes=60):
        home, away = name.split(" v ")
        return Fixture(
            event_id=event_id,
            event_name=name,
            home=home,
            away=away,
            kickoff_at=clock.now() + timedelta(minutes=kickoff_in_minutes),
            competition="English Premier League",
        )
    return _make
