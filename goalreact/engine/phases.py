"""Trade phases, incoming signals and outgoing actions for the strategy engine.

Each phase is its own frozen dataclass holding only the data that phase
needs; a trade is always in exactly one of them. Phases serialise to the
JSON ``state_data`` column of the trade row.
"""

from dataclasses import asdict, dataclass, field, fields, replace
from datetime import datetime
from typing import Any, ClassVar, Union

from goalreact.utils.clock import ensure_utc
from goalreact.utils import constants as c


@dataclass(frozen=True)
class BackLeg:
    price: float
    stake: float
    order_ref: str
    placed_at: datetime
    matched_size: float | None = None  # None until the exchange confirms a match
    average_price: float | None = None

    @property
    def confirmed(self) -> bool:
        return self.matched_size is not None and self.matched_size > 0

    @property
    def effective_stake(self) -> float:
        return self.matched_size if self.confirmed else self.stake

    @property
    def effective_price(self) -> float:
        return self.average_price or self.price


@dataclass(frozen=True)
class LayLeg:
    price: float
    stake: float
    order_ref: str
    placed_at: datetime


# ---------------------------------------------------------------------------
# Phases
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class Scheduled:
    name: ClassVar[str] = c.STATUS_SCHEDULED


@dataclass(frozen=True)
class Watching:
    name: ClassVar[str] = c.PHASE_WATCHING
    baseline: float | None = None
    recent: tuple[float, ...] = ()


@dataclass(frozen=True)
class GoalWait:
    name: ClassVar[str] = c.PHASE_GOAL_WAIT
    baseline: float
    spike_price: float
    spike_at: datetime
    entry_attempts: int = 0


@dataclass(frozen=True)
class Live:
    name: ClassVar[str] = c.PHASE_LIVE
    back: BackLeg
    last_stable_price: float


@dataclass(frozen=True)
class StopLossWait:
    name: ClassVar[str] = c.PHASE_STOP_LOSS_WAIT
    back: BackLeg
    spike_price: float
    spike_at: datetime


@dataclass(frozen=True)
class StopLossActive:
    name: ClassVar[str] = c.PHASE_STOP_LOSS_ACTIVE
    back: BackLeg
    baseline: float


@dataclass(frozen=True)
class Exiting:
    name: ClassVar[str] = c.PHASE_EXITING
    back: BackLeg
    reason: str
    lay: LayLeg | None = None  # None once a hedge left the book unmatched
    hedge_attempts: int = 1


@dataclass(frozen=True)
class Completed:
    name: ClassVar[str] = c.PHASE_COMPLETED
    reason: str


@dataclass(frozen=True)
class Skipped:
    name: ClassVar[str] = c.PHASE_SKIPPED
    reason: str


@dataclass(frozen=True)
class Cancelled:
    name: ClassVar[str] = c.PHASE_CANCELLED
    reason: str


@dataclass(frozen=True)
class Failed:
    name: ClassVar[str] = c.PHASE_FAILED
    reason: str


Phase = Union[
    Scheduled, Watching, GoalWait, Live, StopLossWait, StopLossActive, Exiting,
    Completed, Skipped, Cancelled, Failed,
]
PositionPhase = Union[Live, StopLossWait, StopLossActive]
TERMINAL_PHASES = (Completed, Skipped, Cancelled, Failed)

_PHASES: dict[str, type] = {
    cls.name: cls
    for cls in (
        Scheduled, Watching, GoalWait, Live, StopLossWait, StopLossActive, Exiting,
        Completed, Skipped, Cancelled, Failed,
    )
}


def is_terminal(phase: Phase) -> bool:
    return isinstance(phase, TERMINAL_PHASES)


# ---------------------------------------------------------------------------
# Signals
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class PriceTick:
    """One market observation for the traded selection."""

    at: datetime
    minute: float  # minutes since kickoff
    back_price: float | None
    lay_price: float | None
    last_traded: float | None = None
    total_matched: float | None = None

    @property
    def price(self) -> float | None:
        return self.back_price or self.last_traded


@dataclass(frozen=True)
class EntryPlaced:
    order_ref: str
    price: float
    stake: float
    at: datetime


@dataclass(frozen=True)
class EntryRejected:
    error: str


@dataclass(frozen=True)
class BackLegUpdate:
    matched_size: float
    average_price: float | None = None


@dataclass(frozen=True)
class BackLegVoid:
    """The back order left the book with nothing matched."""


@dataclass(frozen=True)
class ExitPlaced:
    order_ref: str
    price: float
    stake: float
    reason: str
    at: datetime


@dataclass(frozen=True)
class ExitRejected:
    error: str
    reason: str


@dataclass(frozen=True)
class LayLegUpdate:
    """The hedge order is no longer working; this much of it matched."""

    matched_size: float
    average_price: float | None = None


@dataclass(frozen=True)
class LayLegVoid:
    """The hedge order left the book with nothing matched."""


@dataclass(frozen=True)
class MarketClosed:
    pass


@dataclass(frozen=True)
class GameEnded:
    minute: float


@dataclass(frozen=True)
class CancelRequested:
    reason: str = c.REASON_MANUAL


Signal = Union[
    PriceTick, EntryPlaced, EntryRejected, BackLegUpdate, BackLegVoid,
    ExitPlaced, ExitRejected, LayLegUpdate, LayLegVoid, MarketClosed, GameEnded,
    CancelRequested,
]


# ---------------------------------------------------------------------------
# Actions and transition results
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class PlaceBack:
    price: float
    stake: float


@dataclass(frozen=True)
class PlaceHedge:
    price: float
    stake: float
    reason: str


Action = Union[PlaceBack, PlaceHedge]


@dataclass
class Step:
    """Outcome of one transition: next phase, audit events, trade field updates."""

    phase: Phase
    events: list[tuple[str, dict[str, Any]]] = field(default_factory=list)
    updates: dict[str, Any] = field(default_factory=dict)
    action: Action | None = None

    @property
    def changed(self) -> bool:
        return bool(self.events or self.updates or self.action)


# ---------------------------------------------------------------------------
# Persistence
# ---------------------------------------------------------------------------

def to_jsonable(value: Any) -> Any:
    if isinstance(value, datetime):
        return value.isoformat()
    if isinstance(value, dict):
        return {k: to_jsonable(v) for k, v in value.items()}
    if isinstance(value, (list, tuple)):
        return [to_jsonable(v) for v in value]
    return value


def _decode_field(name: str, value: Any) -> Any:
    if value is None:
        return None
    if name == "back":
        return BackLeg(**{k: _decode_field(k, v) for k, v in value.items()})
    if name == "lay":
        return LayLeg(**{k: _decode_field(k, v) for k, v in value.items()})
    if name.endswith("_at"):
        return ensure_utc(datetime.fromisoformat(value))
    if name == "recent":
        return tuple(value)
    return value


def phase_to_dict(phase: Phase) -> dict[str, Any]:
    return {"phase": phase.name, **to_jsonable(asdict(phase))}


def phase_from_dict(data: dict[str, Any] | None, status: str, reason: str | None = None) -> Phase:
    """Rebuild a phase from stored state, falling back to the bare status."""
    cls = _PHASES.get(status, Scheduled)
    if not data or data.get("phase") != status:
        if cls in TERMINAL_PHASES:
            return cls(reason=reason or "")
        if cls in (Scheduled, Watching):
            return cls()
        raise ValueError(f"Trade in {status} has no stored phase data")
    kwargs = {f.name: _decode_field(f.name, data[f.name]) for f in fields(cls) if f.name in data}
    return cls(**kwargs)


def with_back(phase: PositionPhase, **changes) -> PositionPhase:
    return replace(phase, back=replace(phase.back, **changes))
