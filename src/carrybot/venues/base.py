"""Abstract venue interfaces.

Defines the contracts for every external collaborator: the deposit feed,
the spot, perp and lending venues, the custodial wallet and the chain client.
Sequencing and settlement code depends only on these interfaces, keeping
venue-specific details in the paper and ccxt implementations.

Venue write operations never execute anything themselves: they build a
PreparedTransaction that the ChainClient submits and confirms.
"""

from abc import ABC, abstractmethod
from decimal import Decimal

from carrybot.exceptions import VenueRejectedError
from carrybot.logging import get_logger
from carrybot.models import (
    DepositEvent,
    FundingRate,
    PairLimits,
    PerpPosition,
    PreparedTransaction,
    PendingTransaction,
    SwapRoute,
    TxReceipt,
)

logger = get_logger(__name__)


class DepositFeed(ABC):
    """Source of inbound transfers to the custodial wallet."""

    @abstractmethod
    async def poll(self) -> DepositEvent | None:
        """Return the most recent inbound transfer, or None if there is none.

        Raises:
            FeedUnavailableError: If the feed cannot be reached.
        """
        ...


class SpotVenue(ABC):
    """Spot swap venue."""

    @abstractmethod
    async def quote(
        self,
        from_asset: str,
        to_asset: str,
        amount: Decimal,
        exact_out: bool = False,
    ) -> SwapRoute | None:
        """Quote a swap. amount is the input, or the desired output when exact_out.

        Returns None when no viable route exists.
        """
        ...

    @abstractmethod
    async def build_swap_tx(
        self, route: SwapRoute, slippage_bps: int, recipient: str
    ) -> PreparedTransaction:
        """Build the swap transaction for a quoted route."""
        ...

    @abstractmethod
    async def round_trip_cost_bps(
        self, from_asset: str, to_asset: str, amount: Decimal
    ) -> Decimal:
        """Estimate the cost of swapping amount there and back, in bps."""
        ...


class PerpVenue(ABC):
    """Perpetual futures venue."""

    @abstractmethod
    async def get_pair_limits(self, pair: str) -> PairLimits:
        """Return minimum size, minimum collateral and max leverage for pair."""
        ...

    @abstractmethod
    async def get_funding_rate(self, pair: str) -> FundingRate:
        """Return the current signed funding rate in percent per hour."""
        ...

    @abstractmethod
    async def get_mark_price(self, pair: str) -> Decimal:
        """Return the current mark price for pair."""
        ...

    @abstractmethod
    async def get_position(self, pair: str) -> PerpPosition | None:
        """Return the open position for pair, or None."""
        ...

    @abstractmethod
    async def get_collateral_balance(self) -> Decimal:
        """Return free collateral available to new orders."""
        ...

    @abstractmethod
    async def deposit_collateral(self, amount: Decimal) -> PreparedTransaction:
        """Build a transfer of amount from the wallet into the perp account."""
        ...

    @abstractmethod
    async def release_collateral(self) -> PreparedTransaction | None:
        """Build a transfer of free collateral back to the wallet.

        Returns None when the venue settles closed positions to the wallet
        directly or nothing is free.
        """
        ...

    @abstractmethod
    async def place_market_order(
        self,
        pair: str,
        size_delta: Decimal,
        collateral_delta: Decimal,
        is_long: bool,
        is_increase: bool,
    ) -> PreparedTransaction:
        """Build a market order changing the position by size_delta notional."""
        ...

    @abstractmethod
    async def round_trip_cost_bps(self, pair: str) -> Decimal:
        """Estimate opening plus closing taker cost, in bps."""
        ...


class LendingVenue(ABC):
    """Collateralized borrow/lend money market."""

    @abstractmethod
    async def get_outstanding_loan(self, asset: str, profile: str) -> Decimal:
        """Return the outstanding borrow of asset, interest included."""
        ...

    @abstractmethod
    async def get_deposited_collateral(self, asset: str, profile: str) -> Decimal:
        """Return collateral of asset currently supplied."""
        ...

    @abstractmethod
    async def deposit_collateral(
        self, asset: str, amount: Decimal, profile: str
    ) -> PreparedTransaction:
        """Build a collateral supply transaction."""
        ...

    @abstractmethod
    async def withdraw_collateral(
        self, asset: str, amount: Decimal, profile: str
    ) -> PreparedTransaction:
        """Build a collateral withdrawal transaction."""
        ...

    @abstractmethod
    async def borrow(
        self, asset: str, amount: Decimal, profile: str
    ) -> PreparedTransaction:
        """Build a borrow transaction."""
        ...

    @abstractmethod
    async def repay(
        self, asset: str, amount: Decimal, profile: str
    ) -> PreparedTransaction:
        """Build a repay transaction."""
        ...

    @abstractmethod
    async def get_borrow_apr(self, asset: str) -> Decimal:
        """Return the current borrow APR for asset as a decimal fraction."""
        ...


class CustodialWallet(ABC):
    """The hot wallet that receives deposits and pays out settlements."""

    @property
    @abstractmethod
    def address(self) -> str:
        """Public address deposits are sent to."""
        ...

    @abstractmethod
    async def get_balance(self, asset: str) -> Decimal:
        """Return the wallet balance of asset."""
        ...

    @abstractmethod
    async def build_transfer(
        self, asset: str, amount: Decimal, recipient: str
    ) -> PreparedTransaction:
        """Build an outbound transfer."""
        ...


class ChainClient(ABC):
    """Signs, submits and confirms prepared transactions."""

    @abstractmethod
    async def submit(self, tx: PreparedTransaction) -> PendingTransaction:
        """Sign and submit tx."""
        ...

    @abstractmethod
    async def confirm(self, pending: PendingTransaction) -> TxReceipt:
        """Wait for the final status of a submitted transaction."""
        ...


async def execute_transaction(
    chain: ChainClient, tx: PreparedTransaction, step: str
) -> TxReceipt:
    """Submit and confirm tx once; raise VenueRejectedError on any failure.

    Args:
        chain: Chain client.
        tx: Prepared transaction.
        step: Step name reported on failure.

    Returns:
        Successful TxReceipt.

    Raises:
        VenueRejectedError: Carrying the upstream error message verbatim.
    """
    try:
        pending = await chain.submit(tx)
        receipt = await chain.confirm(pending)
    except VenueRejectedError:
        raise
    except Exception as e:
        logger.error(
            "transaction_failed",
            step=step,
            venue=tx.venue,
            action=tx.action,
            error=str(e),
        )
        raise VenueRejectedError(step, str(e)) from e

    if not receipt.success:
        logger.error(
            "transaction_rejected",
            step=step,
            venue=tx.venue,
            action=tx.action,
            reference=receipt.reference,
            error=receipt.error,
        )
        raise VenueRejectedError(step, receipt.error or "transaction failed")

    logger.info(
        "transaction_confirmed",
        step=step,
        venue=tx.venue,
        action=tx.action,
        reference=receipt.reference,
    )
    return receipt
