"""Resilient exchange client.

Every remote call goes through ``ExchangeClient.call``, which classifies a
failed attempt and retries exactly once: an invalid session is invalidated
and re-authenticated first, a transient failure is retried with the same
token. Anything else, or a second failure, propagates to the caller as an
``ExchangeError`` for that operation only.

Order operations wrap this into result dataclasses carrying the exchange
error code instead of raising.
"""

import asyncio
import logging
from dataclasses import dataclass, field
from typing import Any

from goalreact.services.betfair_session import SessionManager
from goalreact.services.betfair_transport import BetfairTransport, ErrorKind, ExchangeError
from goalreact.services.hedge import round2, round_to_tick
from goalreact.utils.clock import SystemClock

logger = logging.getLogger(__name__)


@dataclass
class OrderResult:
    success: bool
    order_ref: str | None = None
    error: str | None = None
    order_status: str | None = None
    price: float | None = None
    size: float | None = None
    size_matched: float | None = None
    average_price_matched: float | None = None
    raw_response: dict | None = None


@dataclass
class CancelResult:
    success: bool
    status: str | None = None
    error: str | None = None
    size_cancelled: float = 0.0


@dataclass
class OrderDetails:
    order_ref: str
    status: str  # EXECUTABLE, EXECUTION_COMPLETE, CANCELLED
    size_matched: float = 0.0
    size_remaining: float = 0.0
    size_cancelled: float = 0.0
    size_lapsed: float = 0.0
    average_price_matched: float | None = None
    price: float | None = None
    side: str | None = None
    market_id: str | None = None
    source: str = "current"  # "current", "cleared" or "missing"


@dataclass
class MatchVerification:
    matched: bool
    size_matched: float = 0.0
    average_price_matched: float | None = None
    size_remaining: float = 0.0
    partially_matched: bool = False
    cancelled: bool = False
    lapsed: bool = False
    known: bool = True
    details: OrderDetails | None = None


@dataclass
class RunnerBook:
    selection_id: int
    status: str | None = None
    back_price: float | None = None
    back_size: float | None = None
    lay_price: float | None = None
    lay_size: float | None = None
    last_traded: float | None = None


@dataclass
class MarketBook:
    market_id: str
    status: str
    in_play: bool = False
    total_matched: float | None = None
    runners: list[RunnerBook] = field(default_factory=list)

    @property
    def is_closed(self) -> bool:
        return self.status == "CLOSED"

    def runner(self, selection_id: int | None) -> RunnerBook | None:
        for r in self.runners:
            if r.selection_id == selection_id:
                return r
        return None


def _best(offers: list[dict] | None) -> tuple[float | None, float | None]:
    if not offers:
        return None, None
    top = offers[0]
    return top.get("price"), top.get("size")


def parse_market_book(raw: dict) -> MarketBook:
    runners = []
    for r in raw.get("runners") or []:
        ex = r.get("ex") or {}
        back_price, back_size = _best(ex.get("availableToBack"))
        lay_price, lay_size = _best(ex.get("availableToLay"))
        runners.append(RunnerBook(
            selection_id=r.get("selectionId"),
            status=r.get("status"),
            back_price=back_price,
            back_size=back_size,
            lay_price=lay_price,
            lay_size=lay_size,
            last_traded=r.get("lastPriceTraded"),
        ))
    return MarketBook(
        market_id=raw.get("marketId"),
        status=raw.get("status") or "UNKNOWN",
        in_play=bool(raw.get("inplay")),
        total_matched=raw.get("totalMatched"),
        runners=runners,
    )


class ExchangeClient:
    """Betting API operations on top of an owned ``SessionManager``."""

    def __init__(
        self,
        session: SessionManager,
        transport: BetfairTransport | None = None,
        clock=None,
        sleep=asyncio.sleep,
    ):
        self.session = session
        self.transport = transport or session.transport
        self.clock = clock or SystemClock()
        self._sleep = sleep

    async def call(self, method: str, params: dict, label: str | None = None) -> Any:
        """Invoke one RPC method with a single classified retry."""
        label = label or method
        token = await self.session.ensure_login(label)
        if not token:
            raise ExchangeError(ErrorKind.NO_SESSION, f"No session available for {label}")

        try:
            return await self.transport.rpc(token, method, params)
        except ExchangeError as e:
            if e.kind is ErrorKind.INVALID_SESSION:
                logger.warning(f"[exchange] {label}: session rejected ({e.code}), re-authenticating")
                self.session.invalidate(f"{label} returned {e.code}")
                token = await self.session.ensure_login(f"reauth-{label}")
                if not token:
                    raise ExchangeError(
                        ErrorKind.NO_SESSION, f"Re-authentication failed for {label}", code=e.code
                    ) from e
            elif e.kind is ErrorKind.TRANSIENT:
                logger.warning(f"[exchange] {label}: transient failure ({e}), retrying once")
            else:
                raise

        try:
            return await self.transport.rpc(token, method, params)
        except ExchangeError as e:
            if e.kind is ErrorKind.INVALID_SESSION:
                self.session.invalidate(f"{label} retry returned {e.code}")
            logger.error(f"[exchange] {label}: failed after retry: {e}")
            raise

    # ------------------------------------------------------------------
    # Catalogue and prices
    # ------------------------------------------------------------------

    async def list_event_types(self, text_query: str | None = None) -> list[dict]:
        market_filter = {"textQuery": text_query} if text_query else {}
        return await self.call("listEventTypes", {"filter": market_filter}) or []

    async def list_competitions(self, event_type_ids: list[str]) -> list[dict]:
        return await self.call("listCompetitions", {"filter": {"eventTypeIds": event_type_ids}}) or []

    async def list_events(self, market_filter: dict, max_results: int = 100) -> list[dict]:
        return await self.call(
            "listEvents", {"filter": market_filter, "maxResults": max_results}
        ) or []

    async def list_market_catalogue(
        self,
        market_filter: dict,
        projection: list[str] | None = None,
        max_results: int = 100,
    ) -> list[dict]:
        params = {
            "filter": market_filter,
            "marketProjection": projection or ["EVENT", "RUNNER_DESCRIPTION"],
            "maxResults": max_results,
        }
        return await self.call("listMarketCatalogue", params) or []

    async def list_market_book(self, market_ids: list[str]) -> list[MarketBook]:
        result = await self.call(
            "listMarketBook",
            {"marketIds": market_ids, "priceProjection": {"priceData": ["EX_BEST_OFFERS"]}},
        )
        return [parse_market_book(raw) for raw in result or []]

    async def get_market_book(self, market_id: str) -> MarketBook | None:
        books = await self.list_market_book([market_id])
        return books[0] if books else None

    # ------------------------------------------------------------------
    # Orders
    # ------------------------------------------------------------------

    async def place_limit_order(
        self,
        market_id: str,
        selection_id: int,
        side: str,
        size: float,
        price: float,
        persistence: str = "LAPSE",
    ) -> OrderResult:
        """Place a single LIMIT order. Prices are snapped down to the ladder."""
        size = round2(size)
        if size <= 0:
            return OrderResult(success=False, error="INVALID_BET_SIZE")
        price = round_to_tick(price)
        customer_ref = f"{side}-{int(self.clock.now().timestamp() * 1000)}"
        params = {
            "marketId": market_id,
            "instructions": [{
                "selectionId": selection_id,
                "handicap": 0,
                "side": side,
                "orderType": "LIMIT",
                "limitOrder": {"size": size, "price": price, "persistenceType": persistence},
            }],
            "customerRef": customer_ref,
        }
        logger.info(f"[exchange] placeOrders {side} {size}@{price} market={market_id} sel={selection_id}")
        try:
            result = await self.call("placeOrders", params, label=f"placeOrders-{side}")
        except ExchangeError as e:
            logger.error(f"[exchange] placeOrders {side} failed: {e}")
            return OrderResult(success=False, error=e.code or e.kind.value, price=price, size=size)

        result = result or {}
        reports = result.get("instructionReports") or [{}]
        report = reports[0]
        if result.get("status") == "SUCCESS" and report.get("status") == "SUCCESS":
            return OrderResult(
                success=True,
                order_ref=report.get("betId"),
                order_status=report.get("orderStatus"),
                price=price,
                size=size,
                size_matched=report.get("sizeMatched"),
                average_price_matched=report.get("averagePriceMatched"),
                raw_response=result,
            )
        error = report.get("errorCode") or result.get("errorCode") or "UNKNOWN"
        logger.warning(f"[exchange] placeOrders {side} rejected: {error}")
        return OrderResult(success=False, error=error, price=price, size=size, raw_response=result)

    async def cancel_order(self, order_ref: str | None, market_id: str | None) -> CancelResult:
        if not order_ref:
            return CancelResult(success=False, error="NO_BET_ID")
        if not market_id:
            return CancelResult(success=False, error="NO_MARKET_ID")
        params = {"marketId": market_id, "instructions": [{"betId": order_ref}]}
        try:
            result = await self.call("cancelOrders", params, label="cancelOrders")
        except ExchangeError as e:
            logger.error(f"[exchange] cancelOrders {order_ref} failed: {e}")
            return CancelResult(success=False, error=e.code or e.kind.value)

        result = result or {}
        report = (result.get("instructionReports") or [{}])[0]
        status = result.get("status")
        if status == "SUCCESS":
            return CancelResult(
                success=True, status=status, size_cancelled=report.get("sizeCancelled") or 0.0
            )
        return CancelResult(
            success=False,
            status=status,
            error=report.get("errorCode") or result.get("errorCode") or "UNKNOWN",
        )

    async def get_order_details(self, order_ref: str) -> OrderDetails | None:
        """Order state from working orders, falling back to settled orders.

        Returns None when the exchange could not be queried. An order absent
        from both views is reported as cancelled.
        """
        try:
            current = await self.call(
                "listCurrentOrders",
                {"betIds": [order_ref], "orderProjection": "ALL"},
                label="listCurrentOrders",
            )
            orders = (current or {}).get("currentOrders") or []
            if orders:
                o = orders[0]
                price_size = o.get("priceSize") or {}
                return OrderDetails(
                    order_ref=order_ref,
                    status=o.get("status") or "UNKNOWN",
                    size_matched=o.get("sizeMatched") or 0.0,
                    size_remaining=o.get("sizeRemaining") or 0.0,
                    size_cancelled=o.get("sizeCancelled") or 0.0,
                    size_lapsed=o.get("sizeLapsed") or 0.0,
                    average_price_matched=o.get("averagePriceMatched") or None,
                    price=price_size.get("price"),
                    side=o.get("side"),
                    market_id=o.get("marketId"),
                    source="current",
                )

            # Fully executed orders drop out of the working view once settled
            cleared = await self.call(
                "listClearedOrders",
                {"betStatus": "SETTLED", "betIds": [order_ref]},
                label="listClearedOrders",
            )
            cleared_orders = (cleared or {}).get("clearedOrders") or []
            if cleared_orders:
                o = cleared_orders[0]
                return OrderDetails(
                    order_ref=order_ref,
                    status="EXECUTION_COMPLETE",
                    size_matched=o.get("sizeSettled") or 0.0,
                    average_price_matched=o.get("priceMatched"),
                    price=o.get("priceRequested"),
                    side=o.get("side"),
                    market_id=o.get("marketId"),
                    source="cleared",
                )
        except ExchangeError as e:
            logger.error(f"[exchange] Order lookup {order_ref} failed: {e}")
            return None

        return OrderDetails(order_ref=order_ref, status="CANCELLED", source="missing")

    async def verify_order_matched(self, order_ref: str, expected_size: float) -> MatchVerification:
        details = await self.get_order_details(order_ref)
        if details is None:
            return MatchVerification(matched=False, known=False)

        matched_size = details.size_matched
        complete = details.status == "EXECUTION_COMPLETE"
        fully = complete and matched_size > 0 and matched_size >= round2(expected_size) - 0.01
        return MatchVerification(
            matched=fully,
            size_matched=matched_size,
            average_price_matched=details.average_price_matched,
            size_remaining=details.size_remaining,
            partially_matched=0 < matched_size and not fully,
            cancelled=details.source == "missing" or details.size_cancelled > 0,
            lapsed=details.size_lapsed > 0,
            details=details,
        )

    async def cancel_order_and_confirm(
        self,
        order_ref: str,
        market_id: str,
        attempts: int = 3,
        delay_seconds: float = 1.0,
    ) -> OrderDetails | None:
        """Cancel an order and poll until nothing of it remains unmatched."""
        result = await self.cancel_order(order_ref, market_id)
        if not result.success:
            logger.warning(f"[exchange] Cancel of {order_ref} returned {result.error}")

        details = None
        for attempt in range(attempts):
            details = await self.get_order_details(order_ref)
            if details is not None and details.size_remaining <= 0:
                return details
            if attempt < attempts - 1:
                await self._sleep(delay_seconds)
        logger.warning(f"[exchange] Order {order_ref} still has unmatched size after cancel")
        return details
