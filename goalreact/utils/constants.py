"""Shared constants: price ladder, trade phases, exchange endpoints."""

STRATEGY_KEY = "under25_goalreact"

# Exchange price ladder as (band upper bound, tick size), ascending
PRICE_LADDER: list[tuple[str, str]] = [
    ("2.0", "0.01"),
    ("3.0", "0.02"),
    ("4.0", "0.05"),
    ("6.0", "0.1"),
    ("10.0", "0.2"),
    ("20.0", "0.5"),
    ("30.0", "1.0"),
    ("50.0", "2.0"),
    ("100.0", "5.0"),
    ("1000.0", "10.0"),
]
MIN_PRICE = "1.01"
MAX_PRICE = "1000.0"

# Trade statuses; phase names double as statuses once a trade is in-play
STATUS_SCHEDULED = "scheduled"
PHASE_WATCHING = "watching"
PHASE_GOAL_WAIT = "goal_wait"
PHASE_LIVE = "live"
PHASE_STOP_LOSS_WAIT = "stop_loss_wait"
PHASE_STOP_LOSS_ACTIVE = "stop_loss_active"
PHASE_EXITING = "exiting"  # hedge placed, waiting for it to match
PHASE_COMPLETED = "completed"
PHASE_SKIPPED = "skipped"
PHASE_CANCELLED = "cancelled"
PHASE_FAILED = "failed"

TERMINAL_STATUSES = frozenset({PHASE_COMPLETED, PHASE_SKIPPED, PHASE_CANCELLED, PHASE_FAILED})

# Forward order of phases. GOAL_WAIT -> WATCHING is the only allowed step back.
PHASE_RANK: dict[str, int] = {
    STATUS_SCHEDULED: 0,
    PHASE_WATCHING: 1,
    PHASE_GOAL_WAIT: 2,
    PHASE_LIVE: 3,
    PHASE_STOP_LOSS_WAIT: 4,
    PHASE_STOP_LOSS_ACTIVE: 5,
    PHASE_EXITING: 6,
    PHASE_COMPLETED: 7,
    PHASE_SKIPPED: 7,
    PHASE_CANCELLED: 7,
    PHASE_FAILED: 7,
}

# Exit / skip reasons
REASON_PROFIT_TARGET = "PROFIT_TARGET"
REASON_STOP_LOSS = "STOP_LOSS"
REASON_PARTIAL_LAY = "PARTIAL_LAY"
REASON_GAME_ENDED = "GAME_ENDED"
REASON_MARKET_CLOSED = "MARKET_CLOSED"
REASON_GOAL_AFTER_CUTOFF = "GOAL_AFTER_CUTOFF"
REASON_PRICE_OUT_OF_RANGE = "PRICE_OUT_OF_RANGE"
REASON_LIQUIDITY_TOO_LOW = "MARKET_LIQUIDITY_TOO_LOW"
REASON_BACK_NOT_MATCHED = "BACK_NOT_MATCHED"
REASON_ENTRY_FAILED = "ENTRY_FAILED"
REASON_MANUAL = "MANUAL"

# Exchange API
SOCCER_EVENT_TYPE_ID = "1"
UNDER_RUNNER_NAME = "Under 2.5 Goals"
TOTALS_MARKET_TYPE = "OVER_UNDER_25"
DRAW_RUNNER_NAME = "The Draw"
RPC_PREFIX = "SportsAPING/v1.0/"
INVALID_SESSION_CODES = frozenset({"INVALID_SESSION_INFORMATION", "ANGX-0003", "NO_SESSION"})
TRANSIENT_API_CODES = frozenset({"SERVICE_BUSY", "TIMEOUT_ERROR", "UNEXPECTED_ERROR", "TOO_MANY_REQUESTS"})
LOGIN_BAN_STATUSES = frozenset({"TEMPORARY_BAN_TOO_MANY_REQUESTS"})

# Region selector -> (certlogin host, keep-alive host)
AUTH_ENDPOINTS: dict[str, tuple[str, str]] = {
    "GLOBAL": ("identitysso-cert.betfair.com", "identitysso.betfair.com"),
    "AUS": ("identitysso-cert.betfair.com.au", "identitysso.betfair.com.au"),
    "IT": ("identitysso-cert.betfair.it", "identitysso.betfair.it"),
    "ES": ("identitysso-cert.betfair.es", "identitysso.betfair.es"),
    "RO": ("identitysso-cert.betfair.ro", "identitysso.betfair.ro"),
}
REGION_ALIASES = {"AU": "AUS", "ANZ": "AUS"}

COMPETITION_NAMES = [
    "English Premier League",
    "German Bundesliga",
    "Spanish La Liga",
    "Italian Serie A",
    "UEFA Champions League",
    "UEFA Europa League",
    "English Football League Cup",
]
# Used when listCompetitions returns none of the names above
COMPETITION_IDS: dict[str, str] = {
    "10932509": "English Premier League",
    "59": "German Bundesliga",
    "117": "Spanish La Liga",
    "81": "Italian Serie A",
    "228": "UEFA Champions League",
    "2005": "UEFA Europa League",
    "2134": "English Football League Cup",
}
