"""Read/write contract between the strategy engine and the database.

Trades become immutable once terminal: any attempt to modify one raises
``TradeLockedError``. Trade events are only ever appended.
"""

import logging
from typing import Any

from sqlmodel import Session, select

from goalreact.engine.phases import Step, is_terminal, phase_to_dict, to_jsonable
from goalreact.models.strategy_settings import StrategySettings
from goalreact.models.trade import Trade
from goalreact.models.trade_event import TradeEvent
from goalreact.services.fixtures import Fixture
from goalreact.utils.clock import SystemClock
from goalreact.utils.constants import (
    PHASE_GOAL_WAIT,
    PHASE_RANK,
    PHASE_WATCHING,
    STATUS_SCHEDULED,
    STRATEGY_KEY,
    TERMINAL_STATUSES,
)

logger = logging.getLogger(__name__)


class TradeLockedError(RuntimeError):
    """Raised when a write targets a trade that has already reached a terminal status."""


class TradeStore:
    def __init__(self, engine, clock=None):
        self.engine = engine
        self.clock = clock or SystemClock()

    def _session(self) -> Session:
        return Session(self.engine, expire_on_commit=False)

    # ------------------------------------------------------------------
    # Settings
    # ------------------------------------------------------------------

    def load_settings(self, strategy_key: str = STRATEGY_KEY) -> StrategySettings:
        """Current tunables, creating the defaults row on first use."""
        with self._session() as session:
            row = session.exec(
                select(StrategySettings).where(StrategySettings.strategy_key == strategy_key)
            ).first()
            if row is None:
                row = StrategySettings(strategy_key=strategy_key)
                session.add(row)
                session.commit()
                session.refresh(row)
                logger.info(f"Created default settings for {strategy_key}")
            return row

    # ------------------------------------------------------------------
    # Trades
    # ------------------------------------------------------------------

    def get_trade(self, trade_id: int) -> Trade | None:
        with self._session() as session:
            return session.get(Trade, trade_id)

    def list_open_trades(self, strategy_key: str = STRATEGY_KEY) -> list[Trade]:
        with self._session() as session:
            return list(session.exec(
                select(Trade)
                .where(Trade.strategy_key == strategy_key)
                .where(Trade.status.notin_(TERMINAL_STATUSES))
                .order_by(Trade.kickoff_at)
            ).all())

    def ensure_trade(self, fixture: Fixture, strategy_key: str = STRATEGY_KEY) -> tuple[Trade, bool]:
        """Create the scheduled trade for a fixture if it does not exist yet.

        Returns the trade and whether it was created. Kickoff and names of an
        existing, still scheduled trade are refreshed from the fixture.
        """
        with self._session() as session:
            trade = session.exec(
                select(Trade)
                .where(Trade.strategy_key == strategy_key)
                .where(Trade.event_id == fixture.event_id)
            ).first()
            now = self.clock.now()

            if trade is not None:
                if trade.status == STATUS_SCHEDULED:
                    trade.kickoff_at = fixture.kickoff_at
                    trade.event_name = fixture.event_name or trade.event_name
                    trade.competition_name = fixture.competition or trade.competition_name
                    trade.updated_at = now
                    session.add(trade)
                    session.commit()
                    session.refresh(trade)
                return trade, False

            trade = Trade(
                strategy_key=strategy_key,
                event_id=fixture.event_id,
                event_name=fixture.event_name,
                competition_name=fixture.competition,
                home=fixture.home,
                away=fixture.away,
                kickoff_at=fixture.kickoff_at,
                status=STATUS_SCHEDULED,
                created_at=now,
                updated_at=now,
            )
            session.add(trade)
            session.flush()
            session.add(TradeEvent(
                trade_id=trade.id,
                event_type="TRADE_CREATED",
                payload={"event_id": fixture.event_id, "kickoff_at": fixture.kickoff_at.isoformat()},
                occurred_at=now,
            ))
            session.commit()
            session.refresh(trade)
            logger.info(f"[trade_{trade.id}] Created for {fixture.event_name} at {fixture.kickoff_at}")
            return trade, True

    def _load_mutable(self, session: Session, trade_id: int) -> Trade:
        trade = session.get(Trade, trade_id)
        if trade is None:
            raise LookupError(f"Trade {trade_id} not found")
        if trade.status in TERMINAL_STATUSES:
            raise TradeLockedError(f"Trade {trade_id} is {trade.status} and can no longer change")
        return trade

    def apply_step(self, trade_id: int, step: Step) -> Trade:
        """Persist a transition: phase, field updates and its events, atomically."""
        with self._session() as session:
            trade = self._load_mutable(session, trade_id)
            now = self.clock.now()
            previous = trade.status
            if (
                PHASE_RANK[step.phase.name] < PHASE_RANK.get(previous, 0)
                and not (previous == PHASE_GOAL_WAIT and step.phase.name == PHASE_WATCHING)
            ):
                raise ValueError(f"Trade {trade_id} cannot move back from {previous} to {step.phase.name}")

            trade.status = step.phase.name
            trade.state_data = phase_to_dict(step.phase)
            for key, value in step.updates.items():
                setattr(trade, key, value)
            trade.updated_at = now
            if is_terminal(step.phase):
                trade.completed_at = now

            for event_type, payload in step.events:
                session.add(TradeEvent(
                    trade_id=trade_id, event_type=event_type, payload=to_jsonable(payload), occurred_at=now
                ))
            if previous != trade.status:
                session.add(TradeEvent(
                    trade_id=trade_id,
                    event_type="PHASE_CHANGED",
                    payload={"from": previous, "to": trade.status},
                    occurred_at=now,
                ))
                logger.info(f"[trade_{trade_id}] {previous} -> {trade.status}")

            session.add(trade)
            session.commit()
            session.refresh(trade)
            return trade

    def update_trade(self, trade_id: int, **changes: Any) -> Trade:
        with self._session() as session:
            trade = self._load_mutable(session, trade_id)
            for key, value in changes.items():
                setattr(trade, key, value)
            trade.updated_at = self.clock.now()
            session.add(trade)
            session.commit()
            session.refresh(trade)
            return trade

    # ------------------------------------------------------------------
    # Events
    # ------------------------------------------------------------------

    def append_event(self, trade_id: int, event_type: str, payload: dict[str, Any] | None = None):
        with self._session() as session:
            session.add(TradeEvent(
                trade_id=trade_id,
                event_type=event_type,
                payload=to_jsonable(payload or {}),
                occurred_at=self.clock.now(),
            ))
            session.commit()

    def list_events(self, trade_id: int) -> list[TradeEvent]:
        with self._session() as session:
            return list(session.exec(
                select(TradeEvent).where(TradeEvent.trade_id == trade_id).order_by(TradeEvent.id)
            ).all())
