"""Tests for the ccxt-backed live venues.

All tests use mocked ccxt exchange objects to avoid real API calls.
"""

from decimal import Decimal
from unittest.mock import AsyncMock, MagicMock

import pytest

from carrybot.models import PendingTransaction, PreparedTransaction
from carrybot.venues.ccxt_venues import (
    CcxtChainClient,
    CcxtExchanges,
    CcxtLendingVenue,
    CcxtPerpVenue,
    CcxtSpotVenue,
    CcxtWallet,
)

PERP_SYMBOL = "APT/USDC:USDC"

MOCK_MARKETS = {
    "APT/USDC": {
        "symbol": "APT/USDC",
        "type": "spot",
        "taker": 0.001,
    },
    PERP_SYMBOL: {
        "symbol": PERP_SYMBOL,
        "type": "swap",
        "linear": True,
        "taker": 0.00055,
        "limits": {
            "amount": {"min": 0.1, "max": 10000},
            "cost": {"min": 5, "max": None},
            "leverage": {"min": 1, "max": None},
        },
    },
}


@pytest.fixture
def exchange() -> MagicMock:
    """Mocked ccxt async exchange."""
    mock = MagicMock()
    mock.id = "bybit"
    mock.markets = MOCK_MARKETS
    mock.amount_to_precision = MagicMock(side_effect=lambda symbol, amount: str(amount))
    mock.fetch_ticker = AsyncMock(return_value={"bid": 9.9, "ask": 10, "last": 10, "markPrice": 10})
    mock.fetch_funding_rate = AsyncMock(return_value={"fundingRate": 0.0001, "interval": "8h"})
    mock.fetch_positions = AsyncMock(return_value=[])
    mock.fetch_balance = AsyncMock(return_value={"free": {}, "total": {}, "debt": {}})
    mock.fetch_cross_borrow_rate = AsyncMock(return_value={"rate": 0.0001, "period": 86400000})
    mock.set_leverage = AsyncMock()
    mock.create_order = AsyncMock(return_value={"id": "order-1"})
    mock.fetch_order = AsyncMock()
    mock.transfer = AsyncMock(return_value={"id": "transfer-1", "status": "ok"})
    mock.withdraw = AsyncMock(return_value={"id": "withdraw-1"})
    return mock


class TestSpotVenue:
    """Top-of-book quotes and market order transactions."""

    @pytest.mark.asyncio
    async def test_buy_quote_uses_ask_and_fee(self, exchange) -> None:
        venue = CcxtSpotVenue(exchange, "APT", "USDC")

        route = await venue.quote("USDC", "APT", Decimal("100"))

        # 100 / 10 * (1 - 0.001)
        assert route.amount_out == Decimal("9.99")
        assert route.path == ("APT/USDC",)

    @pytest.mark.asyncio
    async def test_sell_quote_uses_bid(self, exchange) -> None:
        venue = CcxtSpotVenue(exchange, "APT", "USDC")

        route = await venue.quote("APT", "USDC", Decimal("2"))

        assert route.amount_out == Decimal("19.7802")

    @pytest.mark.asyncio
    async def test_exact_out_quote(self, exchange) -> None:
        venue = CcxtSpotVenue(exchange, "APT", "USDC")

        route = await venue.quote("USDC", "APT", Decimal("9.99"), exact_out=True)

        assert route.amount_out == Decimal("9.99")
        assert route.amount_in == Decimal("100")

    @pytest.mark.asyncio
    async def test_unknown_pair_has_no_route(self, exchange) -> None:
        venue = CcxtSpotVenue(exchange, "APT", "USDC")

        assert await venue.quote("USDC", "BTC", Decimal("100")) is None
        exchange.fetch_ticker.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_buy_order_amount_is_base_output(self, exchange) -> None:
        venue = CcxtSpotVenue(exchange, "APT", "USDC")
        route = await venue.quote("USDC", "APT", Decimal("100"))

        tx = await venue.build_swap_tx(route, slippage_bps=50, recipient="0xc")

        assert tx.venue == "bybit"
        assert tx.action == "spot_order"
        assert tx.payload["side"] == "buy"
        assert tx.payload["amount"] == pytest.approx(9.99)


class TestPerpVenue:
    """Linear swap market queries and orders."""

    @pytest.mark.asyncio
    async def test_funding_is_converted_to_pct_per_hour(self, exchange) -> None:
        venue = CcxtPerpVenue(exchange, "APT", "USDC")

        funding = await venue.get_funding_rate("APT_USD")

        # 0.01% per 8h
        assert funding.rate_pct_per_hour == Decimal("0.00125")

    @pytest.mark.asyncio
    async def test_pair_limits_from_market(self, exchange) -> None:
        venue = CcxtPerpVenue(exchange, "APT", "USDC", default_max_leverage=Decimal("20"))

        limits = await venue.get_pair_limits("APT_USD")

        # max(0.1 APT * 10, 5 USDC)
        assert limits.min_size == Decimal("5")
        assert limits.max_leverage == Decimal("20")

    @pytest.mark.asyncio
    async def test_missing_market_raises(self, exchange) -> None:
        venue = CcxtPerpVenue(exchange, "BTC", "USDC")
        with pytest.raises(ValueError):
            await venue.round_trip_cost_bps("BTC_USD")

    @pytest.mark.asyncio
    async def test_position_from_notional(self, exchange) -> None:
        exchange.fetch_positions.return_value = [
            {"symbol": PERP_SYMBOL, "contracts": 0, "side": "long"},
            {
                "symbol": PERP_SYMBOL,
                "contracts": 6,
                "notional": -60,
                "side": "short",
                "collateral": 30,
                "entryPrice": 10,
            },
        ]
        venue = CcxtPerpVenue(exchange, "APT", "USDC")

        position = await venue.get_position("APT_USD")

        assert position.is_long is False
        assert position.size == Decimal("60")
        assert position.collateral == Decimal("30")

    @pytest.mark.asyncio
    async def test_no_position(self, exchange) -> None:
        venue = CcxtPerpVenue(exchange, "APT", "USDC")
        assert await venue.get_position("APT_USD") is None

    @pytest.mark.asyncio
    async def test_increase_sets_leverage_rounded_up(self, exchange) -> None:
        venue = CcxtPerpVenue(exchange, "APT", "USDC")

        tx = await venue.place_market_order(
            "APT_USD", Decimal("60"), Decimal("29.97"), is_long=False, is_increase=True
        )

        assert tx.action == "perp_order"
        assert tx.payload["side"] == "sell"
        assert tx.payload["amount"] == pytest.approx(6.0)
        assert tx.payload["leverage"] == 3
        assert tx.payload["params"] == {}

    @pytest.mark.asyncio
    async def test_increase_without_collateral_keeps_leverage(self, exchange) -> None:
        venue = CcxtPerpVenue(exchange, "APT", "USDC")

        tx = await venue.place_market_order(
            "APT_USD", Decimal("60"), Decimal("0"), is_long=True, is_increase=True
        )

        assert tx.payload["leverage"] is None

    @pytest.mark.asyncio
    async def test_decrease_is_reduce_only(self, exchange) -> None:
        venue = CcxtPerpVenue(exchange, "APT", "USDC")

        tx = await venue.place_market_order(
            "APT_USD", Decimal("60"), Decimal("0"), is_long=False, is_increase=False
        )

        assert tx.payload["side"] == "buy"
        assert tx.payload["params"] == {"reduceOnly": True}

    @pytest.mark.asyncio
    async def test_release_nothing_when_no_free_margin(self, exchange) -> None:
        venue = CcxtPerpVenue(exchange, "APT", "USDC")
        assert await venue.release_collateral() is None

    @pytest.mark.asyncio
    async def test_release_free_margin_to_spot(self, exchange) -> None:
        exchange.fetch_balance.return_value = {"free": {"USDC": 25.5}}
        venue = CcxtPerpVenue(exchange, "APT", "USDC")

        tx = await venue.release_collateral()

        assert tx.payload == {"code": "USDC", "amount": 25.5, "from": "swap", "to": "spot"}


class TestLendingVenue:
    """Cross margin account as the money market."""

    @pytest.mark.asyncio
    async def test_borrow_apr_annualizes_period_rate(self, exchange) -> None:
        venue = CcxtLendingVenue(exchange)

        # 0.01% per day
        assert await venue.get_borrow_apr("APT") == Decimal("0.0365")

    @pytest.mark.asyncio
    async def test_outstanding_loan_reads_debt(self, exchange) -> None:
        exchange.fetch_balance.return_value = {"debt": {"APT": 6.0001}, "total": {"USDC": 90}}
        venue = CcxtLendingVenue(exchange)

        assert await venue.get_outstanding_loan("APT", "main") == Decimal("6.0001")
        assert await venue.get_deposited_collateral("USDC", "main") == Decimal("90")
        exchange.fetch_balance.assert_awaited_with({"type": "margin", "marginMode": "cross"})

    @pytest.mark.asyncio
    async def test_collateral_moves_between_accounts(self, exchange) -> None:
        venue = CcxtLendingVenue(exchange)

        deposit = await venue.deposit_collateral("USDC", Decimal("90"), "main")
        withdraw = await venue.withdraw_collateral("USDC", Decimal("90"), "main")

        assert (deposit.payload["from"], deposit.payload["to"]) == ("spot", "margin")
        assert (withdraw.payload["from"], withdraw.payload["to"]) == ("margin", "spot")


class TestChainClient:
    """Submit/confirm through the shared exchange registry."""

    @pytest.fixture
    def client(self, exchange) -> CcxtChainClient:
        exchanges = MagicMock(spec=CcxtExchanges)
        exchanges.get.return_value = exchange
        return CcxtChainClient(exchanges)

    @pytest.mark.asyncio
    async def test_order_sets_leverage_and_confirms_fill(self, client, exchange) -> None:
        tx = PreparedTransaction(
            venue="bybit",
            action="perp_order",
            payload={"symbol": PERP_SYMBOL, "side": "sell", "amount": 6.0, "leverage": 3, "params": {}},
        )
        exchange.fetch_order.return_value = {
            "status": "closed",
            "side": "sell",
            "filled": 6,
            "cost": 59.9,
            "fee": {"cost": 0.03},
        }

        pending = await client.submit(tx)
        receipt = await client.confirm(pending)

        exchange.set_leverage.assert_awaited_once_with(3, PERP_SYMBOL)
        exchange.create_order.assert_awaited_once_with(PERP_SYMBOL, "market", "sell", 6.0, None, {})
        assert pending.reference == "order-1"
        assert receipt.success is True
        assert receipt.amount_in == Decimal("6")
        assert receipt.amount_out == Decimal("59.9")
        assert receipt.fee == Decimal("0.03")

    @pytest.mark.asyncio
    async def test_canceled_order_fails(self, client, exchange) -> None:
        tx = PreparedTransaction(
            venue="bybit",
            action="spot_order",
            payload={"symbol": "APT/USDC", "side": "buy", "amount": 9.99, "params": {}},
        )
        exchange.fetch_order.return_value = {"status": "canceled"}

        receipt = await client.confirm(await client.submit(tx))

        exchange.set_leverage.assert_not_awaited()
        assert receipt.success is False
        assert receipt.error == "order canceled"

    @pytest.mark.asyncio
    async def test_transfer_confirms_from_response(self, client) -> None:
        tx = PreparedTransaction(
            venue="bybit",
            action="transfer",
            payload={"code": "USDC", "amount": 30.0, "from": "spot", "to": "swap"},
        )

        receipt = await client.confirm(await client.submit(tx))

        assert receipt.success is True
        assert receipt.amount_in == Decimal("30.0")

    @pytest.mark.asyncio
    async def test_withdraw_uses_wallet_payload(self, client, exchange) -> None:
        wallet = CcxtWallet(exchange, "0xc", network="APT")
        tx = await wallet.build_transfer("USDC", Decimal("140"), "0xa")

        await client.submit(tx)

        exchange.withdraw.assert_awaited_once_with("USDC", 140.0, "0xa", None, {"network": "APT"})

    @pytest.mark.asyncio
    async def test_unsupported_action_raises(self, client) -> None:
        with pytest.raises(ValueError):
            await client.submit(PreparedTransaction(venue="bybit", action="stake"))

    @pytest.mark.asyncio
    async def test_failed_status_is_rejected(self, client, exchange) -> None:
        exchange.transfer.return_value = {"id": "transfer-2", "status": "failed"}
        tx = PreparedTransaction(
            venue="bybit",
            action="transfer",
            payload={"code": "USDC", "amount": 1.0, "from": "spot", "to": "swap"},
        )

        receipt = await client.confirm(await client.submit(tx))

        assert receipt.success is False
        assert receipt.error == "transfer failed"

    @pytest.mark.asyncio
    async def test_confirm_unknown_reference_still_succeeds_on_payload(self, client) -> None:
        pending = PendingTransaction(
            reference="x",
            tx=PreparedTransaction(venue="bybit", action="transfer", payload={"amount": 2.0}),
        )

        receipt = await client.confirm(pending)

        assert receipt.amount_out == Decimal("2.0")
