"""Goal-reactive strategy transition function.

``advance(phase, signal, params)`` is pure and total: every (phase, signal)
pair yields a ``Step``; pairs with no meaning for a phase return it
unchanged. Exchange I/O happens in the caller, which feeds the outcome of
any requested action back in as a new signal.

The strategy backs "Under 2.5 Goals" after a goal-shaped price spike has
settled, then exits by laying the same selection either when the price
drifts down by the profit target or, after a second spike, when the price
recovers by the stop-loss margin from its post-spike level. A placed hedge
is held in the exiting phase until the exchange reports how much of it
matched; P&L is settled from that fill.
"""

import statistics
from dataclasses import replace

from goalreact.engine.phases import (
    BackLeg,
    BackLegUpdate,
    BackLegVoid,
    CancelRequested,
    Cancelled,
    Completed,
    EntryPlaced,
    EntryRejected,
    ExitPlaced,
    ExitRejected,
    Exiting,
    Failed,
    GameEnded,
    GoalWait,
    LayLeg,
    LayLegUpdate,
    LayLegVoid,
    Live,
    MarketClosed,
    Phase,
    PlaceBack,
    PlaceHedge,
    PriceTick,
    Scheduled,
    Signal,
    Skipped,
    Step,
    StopLossActive,
    StopLossWait,
    Watching,
    is_terminal,
    with_back,
)
from goalreact.models.strategy_settings import StrategySettings
from goalreact.services.hedge import (
    calculate_lay_stake,
    calculate_realised_pnl,
    choose_entry_price,
    price_change_pct,
    round_to_tick,
)
from goalreact.utils import constants as c

# Tolerance for percentage comparisons computed from two-decimal prices
_EPS = 1e-9


def advance(phase: Phase, signal: Signal, params: StrategySettings) -> Step:
    if is_terminal(phase):
        return Step(phase)

    if isinstance(signal, CancelRequested):
        return Step(
            Cancelled(signal.reason),
            events=[("TRADE_CANCELLED", {"reason": signal.reason, "from_phase": phase.name})],
            updates={"exit_reason": signal.reason},
        )
    if isinstance(signal, GameEnded):
        return _settle_without_hedge(phase, c.REASON_GAME_ENDED, {"minute": round(signal.minute, 1)})
    if isinstance(signal, MarketClosed):
        return _settle_without_hedge(phase, c.REASON_MARKET_CLOSED, {})

    if isinstance(phase, Scheduled):
        if isinstance(signal, PriceTick):
            return _watching(Watching(), signal, params)
    elif isinstance(phase, Watching):
        if isinstance(signal, PriceTick):
            return _watching(phase, signal, params)
    elif isinstance(phase, GoalWait):
        if isinstance(signal, PriceTick):
            return _goal_wait(phase, signal, params)
        if isinstance(signal, EntryPlaced):
            return _entered(phase, signal, params)
        if isinstance(signal, EntryRejected):
            return _entry_rejected(phase, signal, params)
    elif isinstance(phase, Live):
        if isinstance(signal, PriceTick):
            return _live(phase, signal, params)
        if isinstance(signal, BackLegUpdate):
            return _back_matched(phase, signal)
        if isinstance(signal, BackLegVoid):
            return Step(
                Skipped(c.REASON_BACK_NOT_MATCHED),
                events=[("TRADE_SKIPPED", {"reason": c.REASON_BACK_NOT_MATCHED,
                                           "order_ref": phase.back.order_ref})],
                updates={"exit_reason": c.REASON_BACK_NOT_MATCHED, "back_matched_size": 0.0},
            )
    elif isinstance(phase, StopLossWait):
        if isinstance(signal, PriceTick):
            return _stop_loss_wait(phase, signal, params)
    elif isinstance(phase, StopLossActive):
        if isinstance(signal, PriceTick):
            return _stop_loss_active(phase, signal, params)
    elif isinstance(phase, Exiting):
        if isinstance(signal, PriceTick):
            return _exiting(phase, signal)
        if isinstance(signal, LayLegUpdate):
            return _lay_settled(phase, signal, params)
        if isinstance(signal, LayLegVoid):
            return Step(
                replace(phase, lay=None),
                events=[("LAY_NOT_MATCHED", {"order_ref": phase.lay.order_ref if phase.lay else None,
                                             "reason": phase.reason})],
                updates={"last_error": "Hedge order left the book unmatched"},
            )

    if isinstance(phase, (Live, StopLossActive, Exiting)):
        if isinstance(signal, ExitPlaced):
            return _exited(phase, signal, params)
        if isinstance(signal, ExitRejected):
            return Step(
                phase,
                events=[("EXIT_FAILED", {"reason": signal.reason, "error": signal.error})],
                updates={"last_error": f"Hedge rejected: {signal.error}"},
            )
    return Step(phase)


# ---------------------------------------------------------------------------
# WATCHING
# ---------------------------------------------------------------------------

def _watching(phase: Watching, tick: PriceTick, params: StrategySettings) -> Step:
    price = tick.price
    if price is None:
        return Step(phase)

    if phase.baseline is None:
        if (
            params.min_market_liquidity
            and tick.total_matched is not None
            and tick.total_matched < params.min_market_liquidity
        ):
            return _skip(c.REASON_LIQUIDITY_TOO_LOW, {
                "total_matched": tick.total_matched,
                "required": params.min_market_liquidity,
            })
        return Step(
            Watching(baseline=price, recent=(price,)),
            events=[("WATCHING_STARTED", {"baseline": price, "minute": round(tick.minute, 1)})],
            updates={"baseline_price": price},
        )

    change = price_change_pct(phase.baseline, price)
    if change >= params.goal_detection_pct - _EPS:
        detected = {
            "baseline": phase.baseline,
            "spike_price": price,
            "change_pct": round(change, 2),
            "minute": round(tick.minute, 1),
        }
        if tick.minute > params.goal_cutoff_minutes:
            step = _skip(c.REASON_GOAL_AFTER_CUTOFF, {
                "minute": round(tick.minute, 1),
                "cutoff": params.goal_cutoff_minutes,
            })
            step.events.insert(0, ("GOAL_DETECTED", detected))
            step.updates["spike_price"] = price
            return step
        return Step(
            GoalWait(baseline=phase.baseline, spike_price=price, spike_at=tick.at),
            events=[("GOAL_DETECTED", detected)],
            updates={"spike_price": price},
        )

    window = max(params.baseline_stable_readings, 1)
    recent = (phase.recent + (price,))[-window:]
    baseline = phase.baseline
    events = []
    if len(recent) >= window:
        median = statistics.median(recent)
        stable = all(abs(price_change_pct(median, p)) <= params.baseline_stability_pct for p in recent)
        if stable and abs(price_change_pct(baseline, median)) > 1.0:
            events.append(("BASELINE_UPDATED", {"old_baseline": baseline, "new_baseline": median}))
            baseline = median

    updates = {"baseline_price": baseline} if baseline != phase.baseline else {}
    return Step(Watching(baseline=baseline, recent=recent), events=events, updates=updates)


# ---------------------------------------------------------------------------
# GOAL_WAIT
# ---------------------------------------------------------------------------

def _goal_wait(phase: GoalWait, tick: PriceTick, params: StrategySettings) -> Step:
    price = tick.price
    if price is None:
        return Step(phase)

    elapsed = (tick.at - phase.spike_at).total_seconds()
    if elapsed < params.wait_after_goal_seconds:
        change = price_change_pct(phase.baseline, price)
        if change < params.goal_detection_pct * 0.5:
            return Step(
                Watching(baseline=price, recent=(price,)),
                events=[("GOAL_DISALLOWED", {
                    "baseline": phase.baseline,
                    "spike_price": phase.spike_price,
                    "price": price,
                    "change_pct": round(change, 2),
                    "new_baseline": price,
                })],
                updates={"baseline_price": price, "spike_price": None},
            )
        return Step(phase)

    if price < params.min_entry_price or price > params.max_entry_price:
        step = _skip(c.REASON_PRICE_OUT_OF_RANGE, {
            "price": price,
            "min": params.min_entry_price,
            "max": params.max_entry_price,
        })
        step.updates["settled_price"] = price
        return step

    entry_price = choose_entry_price(tick.back_price, tick.lay_price)
    if entry_price is None:
        return Step(phase)
    return Step(
        phase,
        updates={"settled_price": price},
        action=PlaceBack(price=entry_price, stake=params.default_stake),
    )


def _entered(phase: GoalWait, placed: EntryPlaced, params: StrategySettings) -> Step:
    back = BackLeg(
        price=placed.price,
        stake=placed.stake,
        order_ref=placed.order_ref,
        placed_at=placed.at,
    )
    take_profit_at = round_to_tick(placed.price * (1 - params.profit_target_pct / 100))
    return Step(
        Live(back=back, last_stable_price=placed.price),
        events=[("POSITION_ENTERED", {
            "order_ref": placed.order_ref,
            "price": placed.price,
            "stake": placed.stake,
            "take_profit_price": take_profit_at,
        })],
        updates={
            "back_price": placed.price,
            "back_stake": placed.stake,
            "back_order_ref": placed.order_ref,
            "back_placed_at": placed.at,
            "last_error": None,
        },
    )


def _entry_rejected(phase: GoalWait, rejected: EntryRejected, params: StrategySettings) -> Step:
    attempts = phase.entry_attempts + 1
    payload = {"error": rejected.error, "attempt": attempts}
    updates = {"last_error": f"Back order rejected: {rejected.error}"}
    if attempts >= params.max_entry_attempts:
        updates["exit_reason"] = c.REASON_ENTRY_FAILED
        return Step(
            Failed(c.REASON_ENTRY_FAILED),
            events=[("ENTRY_FAILED", payload), ("TRADE_FAILED", {"reason": c.REASON_ENTRY_FAILED})],
            updates=updates,
        )
    return Step(
        GoalWait(
            baseline=phase.baseline,
            spike_price=phase.spike_price,
            spike_at=phase.spike_at,
            entry_attempts=attempts,
        ),
        events=[("ENTRY_FAILED", payload)],
        updates=updates,
    )


# ---------------------------------------------------------------------------
# LIVE and stop-loss
# ---------------------------------------------------------------------------

def _back_matched(phase: Live, update: BackLegUpdate) -> Step:
    if update.matched_size <= 0:
        return Step(phase)
    average = update.average_price or phase.back.price
    return Step(
        with_back(phase, matched_size=update.matched_size, average_price=average),
        events=[("BACK_MATCHED", {"size_matched": update.matched_size, "average_price": average})],
        updates={"back_matched_size": update.matched_size, "back_price": average},
    )


def _live(phase: Live, tick: PriceTick, params: StrategySettings) -> Step:
    price = tick.price
    if price is None or not phase.back.confirmed:
        return Step(phase)

    spike = price_change_pct(phase.last_stable_price, price)
    if spike >= params.goal_detection_pct - _EPS:
        return Step(
            StopLossWait(back=phase.back, spike_price=price, spike_at=tick.at),
            events=[("SECOND_GOAL_DETECTED", {
                "last_stable_price": phase.last_stable_price,
                "spike_price": price,
                "change_pct": round(spike, 2),
                "minute": round(tick.minute, 1),
            })],
            updates={"spike_price": price},
        )

    drop = -price_change_pct(phase.back.effective_price, price)
    if drop >= params.profit_target_pct - _EPS:
        hedge = _hedge(phase, tick, c.REASON_PROFIT_TARGET)
        if hedge is not None:
            return hedge

    if price == phase.last_stable_price:
        return Step(phase)
    return Step(Live(back=phase.back, last_stable_price=price))


def _stop_loss_wait(phase: StopLossWait, tick: PriceTick, params: StrategySettings) -> Step:
    price = tick.price
    if price is None:
        return Step(phase)
    if (tick.at - phase.spike_at).total_seconds() < params.wait_after_goal_seconds:
        return Step(phase)
    return Step(
        StopLossActive(back=phase.back, baseline=price),
        events=[("STOP_LOSS_BASELINE_SET", {"baseline": price, "minute": round(tick.minute, 1)})],
        updates={"stop_loss_baseline": price},
    )


def _stop_loss_active(phase: StopLossActive, tick: PriceTick, params: StrategySettings) -> Step:
    price = tick.price
    if price is None:
        return Step(phase)
    drop = -price_change_pct(phase.baseline, price)
    if drop >= params.stop_loss_pct - _EPS:
        hedge = _hedge(phase, tick, c.REASON_STOP_LOSS)
        if hedge is not None:
            return hedge
    return Step(phase)


def _hedge(phase: Live | StopLossActive | Exiting, tick: PriceTick, reason: str) -> Step | None:
    back = phase.back
    quote = tick.lay_price or tick.price
    if quote is None:
        return None
    lay_price = round_to_tick(quote)
    lay_stake = calculate_lay_stake(back.effective_stake, back.effective_price, lay_price)
    if lay_stake <= 0:
        return None
    return Step(
        phase,
        events=[("EXIT_TRIGGERED", {
            "reason": reason,
            "price": tick.price,
            "lay_price": lay_price,
            "lay_stake": lay_stake,
            "minute": round(tick.minute, 1),
        })],
        action=PlaceHedge(price=lay_price, stake=lay_stake, reason=reason),
    )


def _exited(phase: Live | StopLossActive | Exiting, placed: ExitPlaced, params: StrategySettings) -> Step:
    lay = LayLeg(price=placed.price, stake=placed.stake, order_ref=placed.order_ref, placed_at=placed.at)
    attempts = phase.hedge_attempts + 1 if isinstance(phase, Exiting) else 1
    return Step(
        Exiting(back=phase.back, reason=placed.reason, lay=lay, hedge_attempts=attempts),
        events=[("EXIT_PLACED", {
            "order_ref": placed.order_ref,
            "price": placed.price,
            "stake": placed.stake,
            "attempt": attempts,
        })],
        updates={
            "lay_price": placed.price,
            "lay_stake": placed.stake,
            "lay_matched_size": None,
            "lay_order_ref": placed.order_ref,
            "lay_placed_at": placed.at,
            "last_error": None,
        },
    )


# ---------------------------------------------------------------------------
# EXITING
# ---------------------------------------------------------------------------

def _exiting(phase: Exiting, tick: PriceTick) -> Step:
    # A working hedge is left alone; only a vanished one is replaced
    if phase.lay is not None:
        return Step(phase)
    hedge = _hedge(phase, tick, phase.reason)
    return hedge if hedge is not None else Step(phase)


def _lay_settled(phase: Exiting, update: LayLegUpdate, params: StrategySettings) -> Step:
    lay = phase.lay
    if lay is None or update.matched_size <= 0:
        return Step(phase)
    back = phase.back
    price = update.average_price or lay.price
    reason = phase.reason if update.matched_size >= lay.stake - 0.01 else c.REASON_PARTIAL_LAY
    pnl = calculate_realised_pnl(
        back.effective_stake, back.effective_price, update.matched_size, price, params.commission_rate
    )
    return Step(
        Completed(reason),
        events=[
            ("LAY_MATCHED", {"order_ref": lay.order_ref, "size_matched": update.matched_size,
                             "average_price": price, "requested": lay.stake}),
            ("TRADE_SETTLED", {"reason": reason, "realised_pnl": pnl}),
        ],
        updates={
            "lay_price": price,
            "lay_matched_size": update.matched_size,
            "realised_pnl": pnl,
            "exit_reason": reason,
            "last_error": None,
        },
    )


# ---------------------------------------------------------------------------
# Terminal helpers
# ---------------------------------------------------------------------------

def _skip(reason: str, payload: dict) -> Step:
    return Step(
        Skipped(reason),
        events=[("TRADE_SKIPPED", {"reason": reason, **payload})],
        updates={"exit_reason": reason},
    )


def _settle_without_hedge(phase: Phase, reason: str, payload: dict) -> Step:
    back = getattr(phase, "back", None)
    settled = {"reason": reason, "from_phase": phase.name, "realised_pnl": None, **payload}
    if back is not None:
        settled["back_stake"] = back.effective_stake
        settled["back_price"] = back.effective_price
    lay = getattr(phase, "lay", None)
    if lay is not None:
        settled["lay_order_ref"] = lay.order_ref
    return Step(
        Completed(reason),
        events=[("TRADE_SETTLED", settled)],
        updates={"exit_reason": reason},
    )
