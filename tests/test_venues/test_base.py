"""Tests for execute_transaction: submit once, confirm once, no retry."""

from unittest.mock import AsyncMock

import pytest

from carrybot.exceptions import VenueRejectedError
from carrybot.models import PendingTransaction, PreparedTransaction, TxReceipt
from carrybot.venues.base import ChainClient, execute_transaction

TX = PreparedTransaction(venue="paper_perp", action="place_order", payload={"size_delta": 60})


@pytest.fixture
def chain() -> AsyncMock:
    mock = AsyncMock(spec=ChainClient)
    mock.submit.return_value = PendingTransaction(reference="tx1", tx=TX)
    return mock


class TestExecuteTransaction:

    @pytest.mark.asyncio
    async def test_success_returns_receipt(self, chain) -> None:
        chain.confirm.return_value = TxReceipt(reference="tx1", success=True)

        receipt = await execute_transaction(chain, TX, "perp_open")

        assert receipt.reference == "tx1"
        chain.submit.assert_awaited_once_with(TX)
        chain.confirm.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_failed_receipt_carries_upstream_error(self, chain) -> None:
        chain.confirm.return_value = TxReceipt(reference="tx1", success=False, error="E_SLIPPAGE")

        with pytest.raises(VenueRejectedError) as exc_info:
            await execute_transaction(chain, TX, "perp_open")

        assert exc_info.value.step == "perp_open"
        assert str(exc_info.value) == "E_SLIPPAGE"

    @pytest.mark.asyncio
    async def test_submit_exception_is_wrapped_without_retry(self, chain) -> None:
        chain.submit.side_effect = ConnectionError("node unreachable")

        with pytest.raises(VenueRejectedError, match="node unreachable") as exc_info:
            await execute_transaction(chain, TX, "spot_swap")

        assert exc_info.value.step == "spot_swap"
        assert chain.submit.await_count == 1
        chain.confirm.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_failed_receipt_without_message(self, chain) -> None:
        chain.confirm.return_value = TxReceipt(reference="tx1", success=False)

        with pytest.raises(VenueRejectedError, match="transaction failed"):
            await execute_transaction(chain, TX, "borrow")
