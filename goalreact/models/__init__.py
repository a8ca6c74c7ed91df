"""Database models."""

from goalreact.models.trade import Trade
from goalreact.models.trade_event import TradeEvent
from goalreact.models.strategy_settings import StrategySettings

__all__ = [
    "Trade",
    "TradeEvent",
    "StrategySettings",
]
