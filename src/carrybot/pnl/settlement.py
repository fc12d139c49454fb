"""Close-time performance fee and payout.

Profit is measured against the running total of matched deposits since the
last close. The fee stays in the custodial wallet; the rest is paid out.

All calculations use Decimal arithmetic exclusively.
"""

from dataclasses import dataclass
from decimal import ROUND_DOWN, Decimal

from carrybot.exceptions import InsufficientFundsError
from carrybot.logging import get_logger
from carrybot.models import TxReceipt
from carrybot.venues.base import ChainClient, CustodialWallet, execute_transaction

logger = get_logger(__name__)

BPS_DENOMINATOR = Decimal("10000")


@dataclass(frozen=True)
class SettlementQuote:
    """Fee breakdown for one close."""

    current_balance: Decimal
    tracked_deposit: Decimal
    profit: Decimal
    fee: Decimal
    payout: Decimal


@dataclass(frozen=True)
class Settlement:
    """A confirmed payout."""

    quote: SettlementQuote
    recipient: str
    receipt: TxReceipt


def compute_fee(
    current_balance: Decimal,
    tracked_deposit: Decimal,
    fee_bps: int,
    decimals: int | None = None,
) -> SettlementQuote:
    """Compute the performance fee and payout.

    profit = max(0, balance - tracked)
    fee    = profit * fee_bps / 10000
    payout = max(0, balance - fee)

    Args:
        current_balance: Custodial balance of the settlement asset.
        tracked_deposit: Matched deposits since the last close.
        fee_bps: Performance fee in basis points of profit.
        decimals: If given, the fee is rounded down to this many places.

    Returns:
        SettlementQuote.
    """
    profit = max(Decimal("0"), current_balance - tracked_deposit)
    fee = profit * Decimal(fee_bps) / BPS_DENOMINATOR
    if decimals is not None:
        fee = fee.quantize(Decimal(1).scaleb(-decimals), rounding=ROUND_DOWN)
    payout = max(Decimal("0"), current_balance - fee)
    return SettlementQuote(
        current_balance=current_balance,
        tracked_deposit=tracked_deposit,
        profit=profit,
        fee=fee,
        payout=payout,
    )


class SettlementEngine:
    """Pays out the custodial balance less the performance fee.

    Args:
        wallet: Custodial wallet holding the settlement asset.
        chain: Chain client used to submit the payout.
        asset: Settlement asset symbol.
        fee_bps: Performance fee in basis points of profit.
        decimals: Settlement asset precision.
    """

    def __init__(
        self,
        wallet: CustodialWallet,
        chain: ChainClient,
        asset: str,
        fee_bps: int = 2000,
        decimals: int | None = 6,
    ) -> None:
        self._wallet = wallet
        self._chain = chain
        self._asset = asset
        self._fee_bps = fee_bps
        self._decimals = decimals

    async def quote(self, tracked_deposit: Decimal) -> SettlementQuote:
        """Quote the fee and payout against the current wallet balance."""
        balance = await self._wallet.get_balance(self._asset)
        return compute_fee(balance, tracked_deposit, self._fee_bps, self._decimals)

    async def settle(self, recipient: str, tracked_deposit: Decimal) -> Settlement:
        """Transfer the payout to recipient.

        The caller resets its deposit baseline only after this returns.

        Raises:
            InsufficientFundsError: If the payout is zero; nothing is sent.
            VenueRejectedError: If the transfer fails.
        """
        quote = await self.quote(tracked_deposit)
        if quote.payout <= 0:
            logger.warning(
                "settlement_nothing_to_pay",
                balance=str(quote.current_balance),
                fee=str(quote.fee),
            )
            raise InsufficientFundsError("No funds available to send after fees")

        tx = await self._wallet.build_transfer(self._asset, quote.payout, recipient)
        receipt = await execute_transaction(self._chain, tx, "payout")

        logger.info(
            "settlement_paid",
            recipient=recipient,
            balance=str(quote.current_balance),
            tracked_deposit=str(quote.tracked_deposit),
            profit=str(quote.profit),
            fee=str(quote.fee),
            payout=str(quote.payout),
            reference=receipt.reference,
        )
        return Settlement(quote=quote, recipient=recipient, receipt=receipt)
