"""Trade model: one monitored event, market and selection per strategy."""

from datetime import datetime, timezone
from typing import Any

from sqlalchemy import JSON, UniqueConstraint
from sqlmodel import SQLModel, Field, Column

from goalreact.utils.constants import STATUS_SCHEDULED


class Trade(SQLModel, table=True):
    __tablename__ = "strategy_trade"
    __table_args__ = (UniqueConstraint("strategy_key", "event_id", name="uq_trade_strategy_event"),)

    id: int | None = Field(default=None, primary_key=True)
    strategy_key: str = Field(index=True)
    event_id: str
    event_name: str | None = None
    competition_name: str | None = None
    home: str | None = None
    away: str | None = None
    kickoff_at: datetime = Field(index=True)
    market_id: str | None = None
    selection_id: int | None = None

    status: str = Field(default=STATUS_SCHEDULED, index=True)
    state_data: dict[str, Any] | None = Field(default=None, sa_column=Column(JSON))

    # Price observations
    baseline_price: float | None = None
    spike_price: float | None = None
    settled_price: float | None = None
    stop_loss_baseline: float | None = None

    # Back leg
    back_price: float | None = None
    back_stake: float | None = None
    back_matched_size: float | None = None
    back_order_ref: str | None = None
    back_placed_at: datetime | None = None

    # Lay / hedge leg
    lay_price: float | None = None
    lay_stake: float | None = None
    lay_matched_size: float | None = None
    lay_order_ref: str | None = None
    lay_placed_at: datetime | None = None

    realised_pnl: float | None = None
    exit_reason: str | None = None
    last_error: str | None = None
    created_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
    updated_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
    completed_at: datetime | None = None
