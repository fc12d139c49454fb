"""Paper trading venues backed by a single simulated ledger.

One PaperLedger holds the custodial wallet, the perp account, the lending
account and the mark price. The paper venues only build PreparedTransactions;
PaperChainClient applies them to the ledger at confirm time, so paper mode
goes through the same submit/confirm path as live mode.

Simulation:
  - Swaps fill at the mark price with slippage and a swap fee.
  - Perp orders pay a taker fee out of the posted collateral.
  - Funding accrues hourly on open positions (positive = longs pay shorts).
  - Loans accrue simple interest at the reserve borrow APR.
"""

import time
from collections.abc import Callable
from decimal import Decimal
from uuid import uuid4

from carrybot.logging import get_logger
from carrybot.models import (
    FundingRate,
    PairLimits,
    PendingTransaction,
    PerpPosition,
    PreparedTransaction,
    SwapRoute,
    TxReceipt,
)
from carrybot.pnl.interest import borrow_apr, utilization
from carrybot.venues.base import (
    ChainClient,
    CustodialWallet,
    LendingVenue,
    PerpVenue,
    SpotVenue,
)

logger = get_logger(__name__)

_ONE = Decimal("1")
_ZERO = Decimal("0")
_SECONDS_PER_HOUR = Decimal("3600")
_HOURS_PER_YEAR = Decimal(365 * 24)

# Paper money market refuses borrows and withdrawals below this health ratio
_MIN_HEALTH = Decimal("1.2")

# Size of the simulated reserve the custodial loan is added to
_RESERVE_SUPPLY = Decimal("1000000")


class PaperLedgerError(Exception):
    """A simulated transaction cannot be applied."""


class PaperLedger:
    """In-memory balances for every paper venue.

    Args:
        base_asset: Asset traded on spot and hedged on perp.
        quote_asset: Settlement and collateral asset.
        base_price: Initial mark price of base in quote.
        funding_pct_per_hour: Signed funding rate applied to positions.
        clock: Time source in seconds; accrual runs on elapsed time.
    """

    def __init__(
        self,
        base_asset: str,
        quote_asset: str,
        base_price: Decimal,
        funding_pct_per_hour: Decimal = _ZERO,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.base_asset = base_asset
        self.quote_asset = quote_asset
        self.price = base_price
        self.funding_pct_per_hour = funding_pct_per_hour
        self.borrow_apr = _ZERO
        self.wallet: dict[str, Decimal] = {}
        self.perp_free = _ZERO
        self.positions: dict[str, PerpPosition] = {}
        self.lending_collateral: dict[str, Decimal] = {}
        self.loans: dict[str, Decimal] = {}
        self._clock = clock
        self._last_accrual = clock()

    def balance(self, asset: str) -> Decimal:
        self.sync()
        return self.wallet.get(asset, _ZERO)

    def credit(self, asset: str, amount: Decimal) -> None:
        self.wallet[asset] = self.wallet.get(asset, _ZERO) + amount

    def debit(self, asset: str, amount: Decimal) -> None:
        available = self.wallet.get(asset, _ZERO)
        if amount > available:
            raise PaperLedgerError(
                f"insufficient {asset}: need {amount}, have {available}"
            )
        self.wallet[asset] = available - amount

    def set_price(self, price: Decimal) -> None:
        self.sync()
        self.price = price

    def value_in_quote(self, asset: str, amount: Decimal) -> Decimal:
        return amount * self.price if asset == self.base_asset else amount

    def sync(self) -> None:
        """Accrue funding and interest for the time elapsed since the last sync."""
        now = self._clock()
        elapsed = Decimal(str(now - self._last_accrual))
        self._last_accrual = now
        if elapsed > 0:
            self.accrue(elapsed / _SECONDS_PER_HOUR)

    def accrue(self, hours: Decimal) -> None:
        """Apply hours of funding to open positions and interest to loans."""
        rate = self.funding_pct_per_hour / Decimal("100")
        for position in self.positions.values():
            payment = position.size * rate * hours
            position.collateral += -payment if position.is_long else payment
        for asset, principal in self.loans.items():
            self.loans[asset] = principal + principal * self.borrow_apr * hours / _HOURS_PER_YEAR

    def health(self, extra_loan_value: Decimal = _ZERO, collateral_delta: Decimal = _ZERO) -> Decimal | None:
        """Collateral value / loan value after the given changes; None without loans."""
        loan_value = sum(
            (self.value_in_quote(a, v) for a, v in self.loans.items()), _ZERO
        ) + extra_loan_value
        if loan_value <= 0:
            return None
        collateral_value = sum(
            (self.value_in_quote(a, v) for a, v in self.lending_collateral.items()),
            _ZERO,
        ) + collateral_delta
        return collateral_value / loan_value


class PaperSpotVenue(SpotVenue):
    """Spot swaps between the base and quote asset at the ledger mark price.

    Args:
        ledger: Shared paper ledger.
        fee: Swap fee as a fraction of output.
        slippage: Price impact as a fraction of price.
    """

    name = "paper_spot"

    def __init__(self, ledger: PaperLedger, fee: Decimal, slippage: Decimal) -> None:
        self._ledger = ledger
        self._fee = fee
        self._slippage = slippage

    def _unit_rate(self, from_asset: str, to_asset: str) -> Decimal | None:
        """Units of to_asset received per unit of from_asset, after fee and slippage."""
        price = self._ledger.price
        if price <= 0:
            return None
        if from_asset == self._ledger.quote_asset and to_asset == self._ledger.base_asset:
            rate = _ONE / (price * (_ONE + self._slippage))
        elif from_asset == self._ledger.base_asset and to_asset == self._ledger.quote_asset:
            rate = price * (_ONE - self._slippage)
        else:
            return None
        return rate * (_ONE - self._fee)

    async def quote(
        self,
        from_asset: str,
        to_asset: str,
        amount: Decimal,
        exact_out: bool = False,
    ) -> SwapRoute | None:
        rate = self._unit_rate(from_asset, to_asset)
        if rate is None or amount <= 0:
            return None
        if exact_out:
            amount_in, amount_out = amount / rate, amount
        else:
            amount_in, amount_out = amount, amount * rate
        return SwapRoute(
            from_asset=from_asset,
            to_asset=to_asset,
            amount_in=amount_in,
            amount_out=amount_out,
            path=(from_asset, to_asset),
            exact_out=exact_out,
        )

    async def build_swap_tx(
        self, route: SwapRoute, slippage_bps: int, recipient: str
    ) -> PreparedTransaction:
        tolerance = Decimal(slippage_bps) / Decimal("10000")
        return PreparedTransaction(
            venue=self.name,
            action="swap",
            payload={
                "from_asset": route.from_asset,
                "to_asset": route.to_asset,
                "amount_in": route.amount_in,
                "amount_out": route.amount_out,
                "min_amount_out": route.amount_out * (_ONE - tolerance),
                "recipient": recipient,
            },
        )

    async def round_trip_cost_bps(
        self, from_asset: str, to_asset: str, amount: Decimal
    ) -> Decimal:
        there = await self.quote(from_asset, to_asset, amount)
        if there is None:
            return _ZERO
        back = await self.quote(to_asset, from_asset, there.amount_out)
        if back is None:
            return _ZERO
        cost = (amount - back.amount_out) / amount * Decimal("10000")
        return max(cost, _ZERO)


class PaperPerpVenue(PerpVenue):
    """Perp account on the paper ledger.

    Args:
        ledger: Shared paper ledger.
        limits: Pair limits reported for every pair.
        taker_fee: Fee fraction charged on order notional.
    """

    name = "paper_perp"

    def __init__(
        self, ledger: PaperLedger, limits: PairLimits, taker_fee: Decimal
    ) -> None:
        self._ledger = ledger
        self._limits = limits
        self._taker_fee = taker_fee

    @property
    def taker_fee(self) -> Decimal:
        return self._taker_fee

    async def get_pair_limits(self, pair: str) -> PairLimits:
        return self._limits

    async def get_funding_rate(self, pair: str) -> FundingRate:
        return FundingRate(pair=pair, rate_pct_per_hour=self._ledger.funding_pct_per_hour)

    async def get_mark_price(self, pair: str) -> Decimal:
        return self._ledger.price

    async def get_position(self, pair: str) -> PerpPosition | None:
        self._ledger.sync()
        return self._ledger.positions.get(pair)

    async def get_collateral_balance(self) -> Decimal:
        self._ledger.sync()
        return self._ledger.perp_free

    async def deposit_collateral(self, amount: Decimal) -> PreparedTransaction:
        return PreparedTransaction(
            venue=self.name, action="perp_deposit", payload={"amount": amount}
        )

    async def release_collateral(self) -> PreparedTransaction | None:
        free = await self.get_collateral_balance()
        if free <= 0:
            return None
        return PreparedTransaction(
            venue=self.name, action="perp_withdraw", payload={"amount": free}
        )

    async def place_market_order(
        self,
        pair: str,
        size_delta: Decimal,
        collateral_delta: Decimal,
        is_long: bool,
        is_increase: bool,
    ) -> PreparedTransaction:
        return PreparedTransaction(
            venue=self.name,
            action="place_order",
            payload={
                "pair": pair,
                "size_delta": size_delta,
                "collateral_delta": collateral_delta,
                "is_long": is_long,
                "is_increase": is_increase,
                "fee_rate": self._taker_fee,
                "limits": self._limits,
            },
        )

    async def round_trip_cost_bps(self, pair: str) -> Decimal:
        return self._taker_fee * 2 * Decimal("10000")


class PaperLendingVenue(LendingVenue):
    """Money market on the paper ledger with a kinked reserve rate curve.

    The simulated reserve sits at base_utilization before the custodial
    loan; the loan raises utilization and therefore the APR.
    """

    name = "paper_lending"

    def __init__(
        self,
        ledger: PaperLedger,
        base_utilization: Decimal,
        optimal_utilization: Decimal,
        base_rate: Decimal,
        slope1: Decimal,
        slope2: Decimal,
    ) -> None:
        self._ledger = ledger
        self._base_utilization = base_utilization
        self._optimal = optimal_utilization
        self._base_rate = base_rate
        self._slope1 = slope1
        self._slope2 = slope2
        self._ledger.borrow_apr = self.current_apr()

    def current_apr(self) -> Decimal:
        own_loan = self._ledger.loans.get(self._ledger.base_asset, _ZERO)
        borrowed = _RESERVE_SUPPLY * self._base_utilization + own_loan
        u = utilization(borrowed, _RESERVE_SUPPLY)
        return borrow_apr(u, self._optimal, self._base_rate, self._slope1, self._slope2)

    async def get_outstanding_loan(self, asset: str, profile: str) -> Decimal:
        self._ledger.sync()
        return self._ledger.loans.get(asset, _ZERO)

    async def get_deposited_collateral(self, asset: str, profile: str) -> Decimal:
        return self._ledger.lending_collateral.get(asset, _ZERO)

    def _tx(self, action: str, asset: str, amount: Decimal, profile: str) -> PreparedTransaction:
        return PreparedTransaction(
            venue=self.name,
            action=action,
            payload={"asset": asset, "amount": amount, "profile": profile},
        )

    async def deposit_collateral(
        self, asset: str, amount: Decimal, profile: str
    ) -> PreparedTransaction:
        return self._tx("lend_deposit", asset, amount, profile)

    async def withdraw_collateral(
        self, asset: str, amount: Decimal, profile: str
    ) -> PreparedTransaction:
        return self._tx("lend_withdraw", asset, amount, profile)

    async def borrow(
        self, asset: str, amount: Decimal, profile: str
    ) -> PreparedTransaction:
        return self._tx("borrow", asset, amount, profile)

    async def repay(
        self, asset: str, amount: Decimal, profile: str
    ) -> PreparedTransaction:
        return self._tx("repay", asset, amount, profile)

    async def get_borrow_apr(self, asset: str) -> Decimal:
        return self.current_apr()


class PaperWallet(CustodialWallet):
    """Custodial wallet view of the paper ledger."""

    name = "paper_wallet"

    def __init__(self, ledger: PaperLedger, address: str) -> None:
        self._ledger = ledger
        self._address = address

    @property
    def address(self) -> str:
        return self._address

    async def get_balance(self, asset: str) -> Decimal:
        return self._ledger.balance(asset)

    async def build_transfer(
        self, asset: str, amount: Decimal, recipient: str
    ) -> PreparedTransaction:
        return PreparedTransaction(
            venue=self.name,
            action="transfer",
            payload={"asset": asset, "amount": amount, "recipient": recipient},
        )


class PaperChainClient(ChainClient):
    """Applies prepared transactions to the paper ledger.

    Submission only queues; the ledger changes at confirm time. A transaction
    that cannot be applied confirms with success=False and the reason.
    """

    def __init__(self, ledger: PaperLedger, lending: PaperLendingVenue | None = None) -> None:
        self._ledger = ledger
        self._lending = lending
        self._handlers = {
            "swap": self._apply_swap,
            "perp_deposit": self._apply_perp_deposit,
            "perp_withdraw": self._apply_perp_withdraw,
            "place_order": self._apply_order,
            "lend_deposit": self._apply_lend_deposit,
            "lend_withdraw": self._apply_lend_withdraw,
            "borrow": self._apply_borrow,
            "repay": self._apply_repay,
            "transfer": self._apply_transfer,
        }

    async def submit(self, tx: PreparedTransaction) -> PendingTransaction:
        return PendingTransaction(reference=f"paper_{uuid4().hex[:12]}", tx=tx)

    async def confirm(self, pending: PendingTransaction) -> TxReceipt:
        tx = pending.tx
        handler = self._handlers.get(tx.action)
        if handler is None:
            return TxReceipt(
                reference=pending.reference,
                success=False,
                error=f"unsupported action {tx.action}",
            )

        self._ledger.sync()
        try:
            receipt = handler(pending.reference, tx.payload)
        except PaperLedgerError as e:
            logger.warning(
                "paper_tx_failed",
                reference=pending.reference,
                action=tx.action,
                error=str(e),
            )
            return TxReceipt(reference=pending.reference, success=False, error=str(e))

        if self._lending is not None:
            self._ledger.borrow_apr = self._lending.current_apr()

        logger.info(
            "paper_tx_confirmed",
            reference=pending.reference,
            action=tx.action,
            amount_in=str(receipt.amount_in),
            amount_out=str(receipt.amount_out),
            fee=str(receipt.fee),
        )
        return receipt

    def _apply_swap(self, reference: str, p: dict) -> TxReceipt:
        if p["amount_out"] < p["min_amount_out"]:
            raise PaperLedgerError("slippage tolerance exceeded")
        self._ledger.debit(p["from_asset"], p["amount_in"])
        self._ledger.credit(p["to_asset"], p["amount_out"])
        return TxReceipt(
            reference=reference,
            success=True,
            amount_in=p["amount_in"],
            amount_out=p["amount_out"],
        )

    def _apply_perp_deposit(self, reference: str, p: dict) -> TxReceipt:
        self._ledger.debit(self._ledger.quote_asset, p["amount"])
        self._ledger.perp_free += p["amount"]
        return TxReceipt(reference=reference, success=True, amount_in=p["amount"])

    def _apply_perp_withdraw(self, reference: str, p: dict) -> TxReceipt:
        amount = min(p["amount"], self._ledger.perp_free)
        self._ledger.perp_free -= amount
        self._ledger.credit(self._ledger.quote_asset, amount)
        return TxReceipt(reference=reference, success=True, amount_out=amount)

    def _apply_order(self, reference: str, p: dict) -> TxReceipt:
        ledger = self._ledger
        pair = p["pair"]
        size = p["size_delta"]
        fee = size * p["fee_rate"]
        limits: PairLimits = p["limits"]
        position = ledger.positions.get(pair)

        if p["is_increase"]:
            collateral = p["collateral_delta"]
            if size < limits.min_size:
                raise PaperLedgerError(f"size {size} below minimum {limits.min_size}")
            if collateral > ledger.perp_free:
                raise PaperLedgerError(
                    f"insufficient perp collateral: need {collateral}, have {ledger.perp_free}"
                )
            if position is not None and position.is_long != p["is_long"]:
                raise PaperLedgerError("opposite position already open")
            new_size = size + (position.size if position else _ZERO)
            new_collateral = collateral + (position.collateral if position else _ZERO)
            if new_collateral <= 0 or new_size / new_collateral > limits.max_leverage:
                raise PaperLedgerError("leverage exceeds maximum")

            ledger.perp_free -= collateral
            if position is None:
                ledger.positions[pair] = PerpPosition(
                    pair=pair,
                    is_long=p["is_long"],
                    size=size,
                    collateral=collateral - fee,
                    average_entry_price=ledger.price,
                )
            else:
                position.average_entry_price = (
                    position.average_entry_price * position.size + ledger.price * size
                ) / new_size
                position.size = new_size
                position.collateral = new_collateral - fee
            return TxReceipt(reference=reference, success=True, amount_in=collateral, fee=fee)

        if position is None:
            raise PaperLedgerError(f"no open position for {pair}")
        if position.is_long != p["is_long"]:
            raise PaperLedgerError("decrease direction does not match position")

        size = min(size, position.size)
        fraction = size / position.size
        move = (ledger.price - position.average_entry_price) / position.average_entry_price
        pnl = size * move if position.is_long else -size * move
        released = position.collateral * fraction + pnl - fee

        position.size -= size
        position.collateral -= position.collateral * fraction
        if position.size <= 0:
            del ledger.positions[pair]
        ledger.perp_free += max(released, _ZERO)
        return TxReceipt(reference=reference, success=True, amount_out=released, fee=fee)

    def _apply_lend_deposit(self, reference: str, p: dict) -> TxReceipt:
        self._ledger.debit(p["asset"], p["amount"])
        collateral = self._ledger.lending_collateral
        collateral[p["asset"]] = collateral.get(p["asset"], _ZERO) + p["amount"]
        return TxReceipt(reference=reference, success=True, amount_in=p["amount"])

    def _apply_lend_withdraw(self, reference: str, p: dict) -> TxReceipt:
        ledger = self._ledger
        held = ledger.lending_collateral.get(p["asset"], _ZERO)
        amount = p["amount"]
        if amount > held:
            raise PaperLedgerError(f"withdraw {amount} exceeds collateral {held}")
        health = ledger.health(collateral_delta=-ledger.value_in_quote(p["asset"], amount))
        if health is not None and health < _MIN_HEALTH:
            raise PaperLedgerError("withdrawal would breach collateral ratio")
        ledger.lending_collateral[p["asset"]] = held - amount
        ledger.credit(p["asset"], amount)
        return TxReceipt(reference=reference, success=True, amount_out=amount)

    def _apply_borrow(self, reference: str, p: dict) -> TxReceipt:
        ledger = self._ledger
        value = ledger.value_in_quote(p["asset"], p["amount"])
        health = ledger.health(extra_loan_value=value)
        if health is None or health < _MIN_HEALTH:
            raise PaperLedgerError("insufficient collateral for borrow")
        ledger.loans[p["asset"]] = ledger.loans.get(p["asset"], _ZERO) + p["amount"]
        ledger.credit(p["asset"], p["amount"])
        return TxReceipt(reference=reference, success=True, amount_out=p["amount"])

    def _apply_repay(self, reference: str, p: dict) -> TxReceipt:
        ledger = self._ledger
        owed = ledger.loans.get(p["asset"], _ZERO)
        amount = min(p["amount"], owed)
        ledger.debit(p["asset"], amount)
        ledger.loans[p["asset"]] = owed - amount
        if ledger.loans[p["asset"]] <= 0:
            del ledger.loans[p["asset"]]
        return TxReceipt(reference=reference, success=True, amount_in=amount)

    def _apply_transfer(self, reference: str, p: dict) -> TxReceipt:
        self._ledger.debit(p["asset"], p["amount"])
        return TxReceipt(reference=reference, success=True, amount_in=p["amount"])
