"""TradeEvent model: append-only audit log of every decision on a trade."""

from datetime import datetime, timezone
from typing import Any

from sqlmodel import SQLModel, Field, Column
from sqlalchemy import JSON


class TradeEvent(SQLModel, table=True):
    __tablename__ = "strategy_trade_event"

    id: int | None = Field(default=None, primary_key=True)
    trade_id: int = Field(foreign_key="strategy_trade.id", index=True)
    event_type: str  # "GOAL_DETECTED", "POSITION_ENTERED", "TRADE_SETTLED", ...
    payload: dict[str, Any] | None = Field(default=None, sa_column=Column(JSON))
    occurred_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
