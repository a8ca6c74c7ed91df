"""Tests for the resilient exchange client and its order operations."""

from unittest.mock import AsyncMock, MagicMock

import pytest

from goalreact.services.betfair_transport import ErrorKind, ExchangeError
from goalreact.services.exchange import ExchangeClient, parse_market_book
from goalreact.utils.clock import FakeClock


def _client(tokens=None):
    session = MagicMock()
    if tokens is None:
        session.ensure_login = AsyncMock(return_value="tok-1")
    else:
        session.ensure_login = AsyncMock(side_effect=list(tokens))
    transport = MagicMock()
    transport.rpc = AsyncMock()
    sleep = AsyncMock()
    client = ExchangeClient(session, transport=transport, clock=FakeClock(), sleep=sleep)
    return client, session, transport


def _placed(bet_id="1001", size_matched=0.0, average=None):
    return {
        "status": "SUCCESS",
        "instructionReports": [{
            "status": "SUCCESS",
            "betId": bet_id,
            "orderStatus": "EXECUTABLE" if not size_matched else "EXECUTION_COMPLETE",
            "sizeMatched": size_matched,
            "averagePriceMatched": average,
        }],
    }


# ---------------------------------------------------------------------------
# 1. Retry policy
# ---------------------------------------------------------------------------

@pytest.mark.asyncio
async def test_call_without_session_raises_no_session():
    client, _, transport = _client(tokens=[None])
    with pytest.raises(ExchangeError) as exc:
        await client.call("listMarketBook", {})
    assert exc.value.kind is ErrorKind.NO_SESSION
    transport.rpc.assert_not_awaited()


@pytest.mark.asyncio
async def test_invalid_session_reauthenticates_once():
    client, session, transport = _client(tokens=["tok-1", "tok-2"])
    transport.rpc.side_effect = [
        ExchangeError(ErrorKind.INVALID_SESSION, "expired", code="INVALID_SESSION_INFORMATION"),
        ["ok"],
    ]
    assert await client.call("listMarketBook", {}) == ["ok"]
    session.invalidate.assert_called_once()
    assert transport.rpc.await_args_list[1].args[0] == "tok-2"


@pytest.mark.asyncio
async def test_transient_failure_retried_with_same_token():
    client, session, transport = _client()
    transport.rpc.side_effect = [ExchangeError(ErrorKind.TRANSIENT, "timeout"), ["ok"]]
    assert await client.call("listMarketBook", {}) == ["ok"]
    session.invalidate.assert_not_called()
    assert transport.rpc.await_args_list[1].args[0] == "tok-1"


@pytest.mark.asyncio
async def test_second_failure_propagates():
    client, _, transport = _client()
    transport.rpc.side_effect = [
        ExchangeError(ErrorKind.TRANSIENT, "timeout"),
        ExchangeError(ErrorKind.TRANSIENT, "timeout again"),
    ]
    with pytest.raises(ExchangeError, match="timeout again"):
        await client.call("listMarketBook", {})
    assert transport.rpc.await_count == 2


@pytest.mark.asyncio
async def test_api_error_not_retried():
    client, _, transport = _client()
    transport.rpc.side_effect = ExchangeError(ErrorKind.API, "bad input", code="INVALID_INPUT_DATA")
    with pytest.raises(ExchangeError):
        await client.call("listMarketBook", {})
    assert transport.rpc.await_count == 1


@pytest.mark.asyncio
async def test_failed_reauthentication_raises_no_session():
    client, _, transport = _client(tokens=["tok-1", None])
    transport.rpc.side_effect = ExchangeError(ErrorKind.INVALID_SESSION, "expired", code="NO_SESSION")
    with pytest.raises(ExchangeError) as exc:
        await client.call("listMarketBook", {})
    assert exc.value.kind is ErrorKind.NO_SESSION
    assert transport.rpc.await_count == 1


# ---------------------------------------------------------------------------
# 2. Market data
# ---------------------------------------------------------------------------

def test_parse_market_book_best_offers():
    book = parse_market_book({
        "marketId": "1.234",
        "status": "OPEN",
        "inplay": True,
        "totalMatched": 125000.5,
        "runners": [{
            "selectionId": 47973,
            "status": "ACTIVE",
            "lastPriceTraded": 2.56,
            "ex": {
                "availableToBack": [{"price": 2.54, "size": 120.0}, {"price": 2.52, "size": 80.0}],
                "availableToLay": [{"price": 2.56, "size": 95.0}],
            },
        }],
    })
    runner = book.runner(47973)
    assert book.in_play and not book.is_closed
    assert runner.back_price == 2.54
    assert runner.lay_price == 2.56
    assert book.runner(1) is None


# ---------------------------------------------------------------------------
# 3. Orders
# ---------------------------------------------------------------------------

@pytest.mark.asyncio
async def test_place_limit_order_snaps_price():
    client, _, transport = _client()
    transport.rpc.return_value = _placed(size_matched=200.0, average=2.56)

    result = await client.place_limit_order("1.234", 47973, "BACK", 200, 2.57)

    assert result.success
    assert result.order_ref == "1001"
    assert result.price == 2.56
    assert result.size_matched == 200.0
    method, params = transport.rpc.await_args.args[1:]
    assert method == "placeOrders"
    limit = params["instructions"][0]["limitOrder"]
    assert limit == {"size": 200.0, "price": 2.56, "persistenceType": "LAPSE"}


@pytest.mark.asyncio
async def test_place_limit_order_rejection_carries_code():
    client, _, transport = _client()
    transport.rpc.return_value = {
        "status": "FAILURE",
        "errorCode": "BET_ACTION_ERROR",
        "instructionReports": [{"status": "FAILURE", "errorCode": "INSUFFICIENT_FUNDS"}],
    }
    result = await client.place_limit_order("1.234", 47973, "LAY", 100, 2.3, persistence="PERSIST")
    assert not result.success
    assert result.error == "INSUFFICIENT_FUNDS"


@pytest.mark.asyncio
async def test_place_limit_order_exchange_error_is_result():
    client, _, transport = _client()
    transport.rpc.side_effect = ExchangeError(ErrorKind.API, "closed", code="MARKET_NOT_OPEN_FOR_BETTING")
    result = await client.place_limit_order("1.234", 47973, "BACK", 100, 2.5)
    assert not result.success
    assert result.error == "MARKET_NOT_OPEN_FOR_BETTING"


@pytest.mark.asyncio
async def test_cancel_order_requires_ids():
    client, _, transport = _client()
    assert (await client.cancel_order(None, "1.234")).error == "NO_BET_ID"
    assert (await client.cancel_order("1001", None)).error == "NO_MARKET_ID"
    transport.rpc.assert_not_awaited()


@pytest.mark.asyncio
async def test_order_details_falls_back_to_cleared_orders():
    client, _, transport = _client()
    transport.rpc.side_effect = [
        {"currentOrders": []},
        {"clearedOrders": [{"sizeSettled": 200.0, "priceMatched": 2.56, "side": "BACK"}]},
    ]
    details = await client.get_order_details("1001")
    assert details.source == "cleared"
    assert details.status == "EXECUTION_COMPLETE"
    assert details.size_matched == 200.0


@pytest.mark.asyncio
async def test_order_missing_everywhere_reported_cancelled():
    client, _, transport = _client()
    transport.rpc.side_effect = [{"currentOrders": []}, {"clearedOrders": []}]
    verification = await client.verify_order_matched("1001", 200)
    assert not verification.matched
    assert verification.cancelled
    assert verification.known


@pytest.mark.asyncio
async def test_verify_partial_match():
    client, _, transport = _client()
    transport.rpc.return_value = {"currentOrders": [{
        "status": "EXECUTABLE", "sizeMatched": 50.0, "sizeRemaining": 150.0, "averagePriceMatched": 2.56,
    }]}
    verification = await client.verify_order_matched("1001", 200)
    assert not verification.matched
    assert verification.partially_matched
    assert verification.size_remaining == 150.0


@pytest.mark.asyncio
async def test_verify_unknown_when_lookup_fails():
    client, _, transport = _client()
    transport.rpc.side_effect = ExchangeError(ErrorKind.API, "bad", code="INVALID_INPUT_DATA")
    verification = await client.verify_order_matched("1001", 200)
    assert not verification.known


@pytest.mark.asyncio
async def test_cancel_and_confirm_polls_until_done():
    client, _, transport = _client()
    transport.rpc.side_effect = [
        {"status": "SUCCESS", "instructionReports": [{"sizeCancelled": 150.0}]},
        {"currentOrders": [{"status": "EXECUTABLE", "sizeMatched": 50.0, "sizeRemaining": 150.0}]},
        {"currentOrders": [{"status": "EXECUTION_COMPLETE", "sizeMatched": 50.0, "sizeRemaining": 0.0,
                            "sizeCancelled": 150.0}]},
    ]
    details = await client.cancel_order_and_confirm("1001", "1.234", attempts=3, delay_seconds=0.5)
    assert details.size_remaining == 0
    assert details.size_matched == 50.0
    client._sleep.assert_awaited_once_with(0.5)
