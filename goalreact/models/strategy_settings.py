"""StrategySettings model: tunables read by the engine every cycle."""

from datetime import datetime, timezone

from sqlmodel import SQLModel, Field


class StrategySettings(SQLModel, table=True):
    __tablename__ = "strategy_settings"

    id: int | None = Field(default=None, primary_key=True)
    strategy_key: str = Field(unique=True, index=True)
    enabled: bool = True

    default_stake: float = 200.0
    goal_detection_pct: float = 30.0
    wait_after_goal_seconds: int = 90
    goal_cutoff_minutes: int = 45
    min_entry_price: float = 2.5
    max_entry_price: float = 5.0
    profit_target_pct: float = 10.0
    stop_loss_pct: float = 15.0
    in_play_poll_interval_seconds: int = 30
    game_end_minutes: int = 120
    commission_rate: float = 0.0175

    min_market_liquidity: float = 1000.0
    baseline_stability_pct: float = 5.0
    baseline_stable_readings: int = 4
    fixture_lookahead_days: int = 7
    max_entry_attempts: int = 3
    back_match_timeout_seconds: int = 60

    updated_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
