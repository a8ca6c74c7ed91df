"""Processing cycle for goal-reactive trades.

This is what the scheduler calls on every poll. It orchestrates:
settings refresh → order reconciliation → market lookup → price tick →
state transition → order execution → persistence. The transition itself lives in
``state_machine.advance``; this module owns all exchange I/O.
"""

import asyncio
import logging
from dataclasses import dataclass

from goalreact.engine.phases import (
    BackLegUpdate,
    BackLegVoid,
    CancelRequested,
    EntryPlaced,
    EntryRejected,
    ExitPlaced,
    ExitRejected,
    Exiting,
    GameEnded,
    LayLegUpdate,
    LayLegVoid,
    Live,
    MarketClosed,
    Phase,
    PlaceBack,
    PlaceHedge,
    PriceTick,
    Step,
    is_terminal,
    phase_from_dict,
)
from goalreact.engine.state_machine import advance
from goalreact.models.strategy_settings import StrategySettings
from goalreact.models.trade import Trade
from goalreact.services.betfair_transport import ExchangeError
from goalreact.services.exchange import ExchangeClient
from goalreact.services.fixtures import ExchangeFixtureSource
from goalreact.services.market_locator import EventDescriptor, MarketDescriptor, resolve_market
from goalreact.services.trade_store import TradeLockedError, TradeStore
from goalreact.utils.clock import SystemClock, ensure_utc
from goalreact.utils.constants import STRATEGY_KEY, TOTALS_MARKET_TYPE, UNDER_RUNNER_NAME

logger = logging.getLogger(__name__)


@dataclass
class CycleResult:
    processed: int = 0
    errors: int = 0
    skipped_overlap: bool = False


class TradeEngine:
    """Drives every open trade through one state-machine tick per cycle."""

    def __init__(
        self,
        exchange: ExchangeClient,
        store: TradeStore,
        clock=None,
        fixture_source: ExchangeFixtureSource | None = None,
        strategy_key: str = STRATEGY_KEY,
    ):
        self.exchange = exchange
        self.store = store
        self.clock = clock or SystemClock()
        self.fixture_source = fixture_source or ExchangeFixtureSource(exchange)
        self.strategy_key = strategy_key
        self._cycle_lock = asyncio.Lock()
        self._sync_lock = asyncio.Lock()

    @property
    def processing_active(self) -> bool:
        return self._cycle_lock.locked()

    @property
    def syncing_fixtures(self) -> bool:
        return self._sync_lock.locked()

    # ------------------------------------------------------------------
    # Cycle
    # ------------------------------------------------------------------

    async def run_cycle(self) -> CycleResult:
        """Run one processing cycle, skipping if a prior cycle is still in-flight."""
        if self._cycle_lock.locked():
            logger.warning("Skipping overlapping processing cycle")
            return CycleResult(skipped_overlap=True)

        async with self._cycle_lock:
            return await self._run_cycle_once()

    async def _run_cycle_once(self) -> CycleResult:
        params = self.store.load_settings(self.strategy_key)
        result = CycleResult()
        if not params.enabled:
            logger.info(f"Strategy {self.strategy_key} disabled, nothing to process")
            return result

        now = self.clock.now()
        due = [t for t in self.store.list_open_trades(self.strategy_key) if ensure_utc(t.kickoff_at) <= now]
        for trade in due:
            try:
                await self.process_trade(trade, params)
                result.processed += 1
            except Exception as e:
                # One trade failing must never stop the others or the scheduler
                result.errors += 1
                logger.error(f"[trade_{trade.id}] Tick error: {e}", exc_info=True)
                self._record_error(trade, e)
        return result

    async def process_trade(self, trade: Trade, params: StrategySettings):
        tag = f"[trade_{trade.id}]"
        now = self.clock.now()
        phase = phase_from_dict(trade.state_data, trade.status, trade.exit_reason)
        minute = (now - ensure_utc(trade.kickoff_at)).total_seconds() / 60

        if isinstance(phase, Exiting) and phase.lay is not None:
            trade, phase = await self.reconcile_lay_leg(trade, phase, params)
            if is_terminal(phase):
                return

        if minute > params.game_end_minutes:
            logger.info(f"{tag} Abandoning at minute {minute:.0f} (game over)")
            self._apply(trade, phase, advance(phase, GameEnded(minute), params))
            return

        if not trade.market_id or trade.selection_id is None:
            trade = await self._resolve_market(trade)
            if trade is None:
                return

        book = await self.exchange.get_market_book(trade.market_id)
        if book is None:
            logger.warning(f"{tag} No market book for {trade.market_id}")
            return
        if book.is_closed:
            logger.info(f"{tag} Market {trade.market_id} closed, settling")
            self._apply(trade, phase, advance(phase, MarketClosed(), params))
            return
        if book.status == "SUSPENDED":
            logger.debug(f"{tag} Market suspended, waiting")
            return

        if isinstance(phase, Live) and not phase.back.confirmed:
            trade, phase = await self.reconcile_back_leg(trade, phase, params)
            if is_terminal(phase):
                return

        runner = book.runner(trade.selection_id)
        if runner is None:
            logger.warning(f"{tag} Selection {trade.selection_id} missing from book")
            return

        tick = PriceTick(
            at=now,
            minute=minute,
            back_price=runner.back_price,
            lay_price=runner.lay_price,
            last_traded=runner.last_traded,
            total_matched=book.total_matched,
        )
        step = advance(phase, tick, params)
        trade = self._apply(trade, phase, step)
        if step.action is not None:
            await self._execute(trade, step, params)

    # ------------------------------------------------------------------
    # Actions
    # ------------------------------------------------------------------

    async def _execute(self, trade: Trade, step: Step, params: StrategySettings):
        tag = f"[trade_{trade.id}]"
        action = step.action
        now = self.clock.now()

        if isinstance(action, PlaceBack):
            result = await self.exchange.place_limit_order(
                trade.market_id, trade.selection_id, "BACK", action.stake, action.price
            )
            if not result.success:
                logger.warning(f"{tag} Back order rejected: {result.error}")
                self._apply(trade, step.phase, advance(step.phase, EntryRejected(result.error or "UNKNOWN"), params))
                return
            logger.info(f"{tag} Backed {result.size}@{result.price} ref={result.order_ref}")
            entered = advance(
                step.phase, EntryPlaced(result.order_ref, result.price, result.size, now), params
            )
            trade = self._apply(trade, step.phase, entered)
            if result.size_matched and result.size_matched >= result.size - 0.01:
                confirmed = advance(
                    entered.phase, BackLegUpdate(result.size_matched, result.average_price_matched), params
                )
                self._apply(trade, entered.phase, confirmed)

        elif isinstance(action, PlaceHedge):
            result = await self.exchange.place_limit_order(
                trade.market_id, trade.selection_id, "LAY", action.stake, action.price, persistence="PERSIST"
            )
            if not result.success:
                logger.warning(f"{tag} Hedge ({action.reason}) rejected: {result.error}")
                signal = ExitRejected(result.error or "UNKNOWN", action.reason)
                self._apply(trade, step.phase, advance(step.phase, signal, params))
                return
            logger.info(f"{tag} Hedge placed {result.size}@{result.price} ({action.reason}) ref={result.order_ref}")
            exiting = advance(
                step.phase, ExitPlaced(result.order_ref, result.price, result.size, action.reason, now), params
            )
            trade = self._apply(trade, step.phase, exiting)
            if result.size_matched and result.size_matched >= result.size - 0.01:
                settled = advance(
                    exiting.phase, LayLegUpdate(result.size_matched, result.average_price_matched), params
                )
                self._apply(trade, exiting.phase, settled)

    async def reconcile_back_leg(
        self, trade: Trade, phase: Live, params: StrategySettings
    ) -> tuple[Trade, Phase]:
        """Confirm how much of the back order matched, cancelling stale remainders."""
        tag = f"[trade_{trade.id}]"
        back = phase.back
        check = await self.exchange.verify_order_matched(back.order_ref, back.stake)
        if not check.known:
            return trade, phase

        signal = None
        if check.matched:
            signal = BackLegUpdate(check.size_matched, check.average_price_matched)
        elif check.details is not None and check.details.status != "EXECUTABLE":
            # Order left the book (cancelled, lapsed or never found)
            if check.size_matched > 0:
                signal = BackLegUpdate(check.size_matched, check.average_price_matched)
            else:
                signal = BackLegVoid()
        else:
            age = (self.clock.now() - back.placed_at).total_seconds()
            if age < params.back_match_timeout_seconds:
                return trade, phase
            logger.info(f"{tag} Back order unmatched after {age:.0f}s, cancelling remainder")
            details = await self.exchange.cancel_order_and_confirm(back.order_ref, trade.market_id)
            if details is None:
                return trade, phase
            if details.size_remaining > 0:
                # Still working on the exchange; cancel again next tick
                logger.error(
                    f"{tag} Cancel not confirmed for back {back.order_ref} "
                    f"(remaining {details.size_remaining})"
                )
                trade = self.store.update_trade(trade.id, last_error="Back order cancel not confirmed")
                self.store.append_event(trade.id, "BACK_CANCEL_NOT_CONFIRMED", {
                    "order_ref": back.order_ref,
                    "status": details.status,
                    "size_remaining": details.size_remaining,
                    "size_matched": details.size_matched,
                })
                return trade, phase
            if details.size_matched > 0:
                signal = BackLegUpdate(details.size_matched, details.average_price_matched)
            else:
                signal = BackLegVoid()

        step = advance(phase, signal, params)
        return self._apply(trade, phase, step), step.phase

    async def reconcile_lay_leg(
        self, trade: Trade, phase: Exiting, params: StrategySettings
    ) -> tuple[Trade, Phase]:
        """Settle from the hedge's actual fill once it has stopped working."""
        tag = f"[trade_{trade.id}]"
        lay = phase.lay
        check = await self.exchange.verify_order_matched(lay.order_ref, lay.stake)
        if not check.known:
            return trade, phase

        if check.matched:
            signal = LayLegUpdate(check.size_matched, check.average_price_matched)
        elif check.details is not None and check.details.status != "EXECUTABLE":
            if check.size_matched > 0:
                logger.info(f"{tag} Hedge {lay.order_ref} partially matched {check.size_matched} before leaving the book")
                signal = LayLegUpdate(check.size_matched, check.average_price_matched)
            else:
                logger.warning(f"{tag} Hedge {lay.order_ref} left the book unmatched, position exposed")
                signal = LayLegVoid()
        else:
            return trade, phase

        step = advance(phase, signal, params)
        return self._apply(trade, phase, step), step.phase

    async def _resolve_market(self, trade: Trade) -> Trade | None:
        event = EventDescriptor(
            home=trade.home or "",
            away=trade.away or "",
            kickoff_at=ensure_utc(trade.kickoff_at),
            event_id=trade.event_id,
        )
        resolved = await resolve_market(
            self.exchange, event, MarketDescriptor(TOTALS_MARKET_TYPE, UNDER_RUNNER_NAME)
        )
        if resolved is None:
            logger.warning(f"[trade_{trade.id}] Market not resolved, retrying next tick")
            return None
        trade = self.store.update_trade(
            trade.id, market_id=resolved.market_id, selection_id=resolved.selection_id
        )
        self.store.append_event(trade.id, "MARKET_RESOLVED", {
            "market_id": resolved.market_id,
            "selection_id": resolved.selection_id,
            "runner_name": resolved.runner_name,
            "score": round(resolved.score, 3),
        })
        return trade

    def _apply(self, trade: Trade, before: Phase, step: Step) -> Trade:
        if step.phase == before and not step.events and not step.updates:
            return trade
        return self.store.apply_step(trade.id, step)

    def _record_error(self, trade: Trade, error: Exception):
        try:
            self.store.update_trade(trade.id, last_error=str(error)[:500])
            self.store.append_event(trade.id, "TICK_ERROR", {
                "error": str(error)[:500],
                "type": type(error).__name__,
            })
        except TradeLockedError:
            logger.warning(f"[trade_{trade.id}] Error after trade closed: {error}")

    # ------------------------------------------------------------------
    # Fixtures and manual control
    # ------------------------------------------------------------------

    async def sync_fixtures(self) -> int:
        """Ensure a scheduled trade exists for every upcoming fixture."""
        if self._sync_lock.locked():
            logger.warning("Fixture sync already running, skipping")
            return 0

        async with self._sync_lock:
            params = self.store.load_settings(self.strategy_key)
            if not params.enabled:
                return 0
            try:
                fixtures = await self.fixture_source.upcoming(
                    self.clock.now(), params.fixture_lookahead_days
                )
            except ExchangeError as e:
                logger.error(f"Fixture sync failed: {e}")
                return 0

            created = 0
            for fixture in fixtures:
                _, is_new = self.store.ensure_trade(fixture, self.strategy_key)
                created += int(is_new)
            logger.info(f"Fixture sync: {len(fixtures)} fixtures, {created} new trades")
            return created

    def cancel_trade(self, trade_id: int, reason: str = "MANUAL") -> Trade:
        trade = self.store.get_trade(trade_id)
        if trade is None:
            raise LookupError(f"Trade {trade_id} not found")
        params = self.store.load_settings(self.strategy_key)
        phase = phase_from_dict(trade.state_data, trade.status, trade.exit_reason)
        step = advance(phase, CancelRequested(reason), params)
        return self._apply(trade, phase, step)
