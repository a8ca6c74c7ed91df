"""Hedge and stake arithmetic on the exchange price ladder.

All functions are pure computation with no I/O. Arithmetic runs on
``Decimal`` built from the shortest float repr so results are exact to the
penny; public functions accept and return plain floats.
"""

from dataclasses import dataclass
from decimal import Decimal, ROUND_FLOOR, ROUND_HALF_UP

from goalreact.utils.constants import MAX_PRICE, MIN_PRICE, PRICE_LADDER

_LADDER = [(Decimal(upper), Decimal(step)) for upper, step in PRICE_LADDER]
_MIN = Decimal(MIN_PRICE)
_MAX = Decimal(MAX_PRICE)
_PENNY = Decimal("0.01")
_ONE = Decimal("1")


def _d(value: float | int | str | Decimal) -> Decimal:
    if isinstance(value, Decimal):
        return value
    return Decimal(str(value))


def round2(value: float | Decimal) -> float:
    """Round half-up to two decimal places."""
    return float(_d(value).quantize(_PENNY, rounding=ROUND_HALF_UP))


# ---------------------------------------------------------------------------
# Price ladder
# ---------------------------------------------------------------------------

def _clamp(price: Decimal) -> Decimal:
    return min(max(price, _MIN), _MAX)


def _floor_tick(price: Decimal) -> Decimal:
    price = _clamp(price)
    lower = _ONE
    for upper, step in _LADDER:
        if price <= upper:
            ticks = ((price - lower) / step).to_integral_value(rounding=ROUND_FLOOR)
            return max(lower + ticks * step, _MIN)
        lower = upper
    return _MAX


def _step_up(price: Decimal) -> Decimal:
    for upper, step in _LADDER:
        if price < upper:
            return step
    return Decimal(0)


def _step_down(price: Decimal) -> Decimal:
    for upper, step in _LADDER:
        if price <= upper:
            return step
    return _LADDER[-1][1]


def tick_size(price: float) -> float:
    """Increment to the next tick above ``price``."""
    return float(_step_up(_floor_tick(_d(price))))


def round_to_tick(price: float) -> float:
    """Snap a price to the nearest valid tick at or below it, clamped to the ladder."""
    return float(_floor_tick(_d(price)))


def ticks_above(price: float, n: int = 1) -> float:
    current = _floor_tick(_d(price))
    for _ in range(n):
        if current >= _MAX:
            break
        current += _step_up(current)
    return float(current)


def ticks_below(price: float, n: int = 1) -> float:
    current = _floor_tick(_d(price))
    for _ in range(n):
        if current <= _MIN:
            break
        current = max(current - _step_down(current), _MIN)
    return float(current)


def ticks_between(price_a: float, price_b: float) -> int:
    """Number of ladder steps separating two prices (after snapping)."""
    low = _floor_tick(_d(min(price_a, price_b)))
    high = _floor_tick(_d(max(price_a, price_b)))
    count = 0
    while low < high:
        low += _step_up(low)
        count += 1
    return count


def is_within_ticks(price_a: float, price_b: float, n: int) -> bool:
    return ticks_between(price_a, price_b) <= n


def middle_price(back_price: float, lay_price: float) -> float:
    return round_to_tick((_d(back_price) + _d(lay_price)) / 2)


def choose_entry_price(back_price: float | None, lay_price: float | None) -> float | None:
    """Entry price for a back order given the two-sided book.

    Takes the lay side when the spread is one tick or narrower, otherwise the
    mid-price snapped down to the ladder.
    """
    if back_price is None and lay_price is None:
        return None
    if lay_price is None:
        return round_to_tick(back_price)
    if back_price is None:
        return round_to_tick(lay_price)
    if is_within_ticks(back_price, lay_price, 1):
        return round_to_tick(lay_price)
    return middle_price(back_price, lay_price)


# ---------------------------------------------------------------------------
# Stakes and P&L
# ---------------------------------------------------------------------------

@dataclass
class HedgeOutcome:
    profit_if_wins: float
    profit_if_loses: float


def calculate_lay_stake(back_stake: float, back_price: float, lay_price: float) -> float:
    """Lay stake that balances a back leg: backStake * backPrice / layPrice."""
    lay = _d(lay_price)
    if lay <= 0:
        return 0.0
    stake = _d(back_stake) * _d(back_price) / lay
    return max(0.0, round2(stake))


def _outcomes(back_stake, back_price, lay_stake, lay_price) -> tuple[Decimal, Decimal]:
    bs, bp, ls, lp = _d(back_stake), _d(back_price), _d(lay_stake), _d(lay_price)
    profit_if_wins = bs * (bp - _ONE) - ls * (lp - _ONE)
    profit_if_loses = ls - bs
    return profit_if_wins, profit_if_loses


def calculate_outcomes(
    back_stake: float, back_price: float, lay_stake: float, lay_price: float
) -> HedgeOutcome:
    wins, loses = _outcomes(back_stake, back_price, lay_stake, lay_price)
    return HedgeOutcome(profit_if_wins=round2(wins), profit_if_loses=round2(loses))


def calculate_realised_pnl(
    back_stake: float | None,
    back_price: float | None,
    lay_stake: float | None,
    lay_price: float | None,
    commission_rate: float = 0.0,
) -> float | None:
    """Guaranteed result of a hedged position, or None without both legs.

    Commission is charged only on a non-negative result.
    """
    if None in (back_stake, back_price, lay_stake, lay_price):
        return None
    wins, loses = _outcomes(back_stake, back_price, lay_stake, lay_price)
    result = min(wins, loses)
    if result >= 0:
        result *= _ONE - _d(commission_rate)
    return round2(result)


def price_change_pct(reference: float, price: float) -> float:
    """Signed percentage move from ``reference`` to ``price``."""
    if not reference:
        return 0.0
    return float((_d(price) - _d(reference)) / _d(reference) * 100)
