"""Startup reconciliation of open positions against exchange orders.

Called once before the scheduler starts. A restart can happen between an
order being placed and its outcome being recorded, so every trade holding
a back leg has that order re-read from the exchange, and a hedge awaiting
its fill is reconciled the same way the processing cycle does it.
"""

import logging

from goalreact.engine.phases import Exiting, Live, StopLossActive, StopLossWait, phase_from_dict
from goalreact.engine.trade_job import TradeEngine

logger = logging.getLogger(__name__)


async def sync_open_orders_on_startup(engine: TradeEngine) -> int:
    """Re-verify back orders of open positions. Returns the number of trades checked."""
    params = engine.store.load_settings(engine.strategy_key)
    checked = 0

    for trade in engine.store.list_open_trades(engine.strategy_key):
        phase = phase_from_dict(trade.state_data, trade.status, trade.exit_reason)
        if not isinstance(phase, (Live, StopLossWait, StopLossActive, Exiting)):
            continue
        checked += 1
        tag = f"[trade_{trade.id}]"

        if isinstance(phase, Live) and not phase.back.confirmed:
            trade, phase = await engine.reconcile_back_leg(trade, phase, params)
            logger.info(f"Order sync: {tag} back leg reconciled, now {phase.name}")
            continue

        if isinstance(phase, Exiting) and phase.lay is not None:
            trade, phase = await engine.reconcile_lay_leg(trade, phase, params)
            logger.info(f"Order sync: {tag} hedge reconciled, now {phase.name}")
            continue

        check = await engine.exchange.verify_order_matched(phase.back.order_ref, phase.back.stake)
        if not check.known:
            logger.warning(f"Order sync: {tag} could not read back order {phase.back.order_ref}")
            continue
        if check.size_matched <= 0:
            logger.warning(
                f"Order sync: {tag} holds a {phase.name} position but order "
                f"{phase.back.order_ref} shows nothing matched. Manual review recommended."
            )
            engine.store.append_event(trade.id, "ORDER_SYNC_WARNING", {
                "order_ref": phase.back.order_ref,
                "status": check.details.status if check.details else None,
                "message": "Back order shows no matched size on exchange",
            })
        else:
            logger.info(f"Order sync: {tag} {check.size_matched} matched on exchange, position confirmed")

    logger.info(f"Order sync complete ({checked} open positions)")
    return checked
