"""Order sizing for both hedge directions.

Pure functions, no I/O. All values are Decimal.

Long spot / short perp: a deposit D is split between the spot buy N and the
perp margin N/L, so N + N/L = D and the hedge is N notional at leverage L.

Short spot / long perp: the whole deposit backs a loan of D/ratio quote-worth
of the base asset; the perp hedge is sized from the swap proceeds.
"""

from dataclasses import dataclass
from decimal import ROUND_DOWN, ROUND_UP, Decimal

from carrybot.models import PairLimits

COLLATERAL_QUANTUM = Decimal("0.000001")


@dataclass(frozen=True)
class OrderSize:
    """Clamped perp order parameters."""

    size: Decimal
    collateral: Decimal

    @property
    def leverage(self) -> Decimal:
        return self.size / self.collateral if self.collateral > 0 else Decimal("0")


def quantize_down(amount: Decimal, decimals: int) -> Decimal:
    """Truncate amount to an asset's precision."""
    return amount.quantize(Decimal(1).scaleb(-decimals), rounding=ROUND_DOWN)


def quantize_up(amount: Decimal, decimals: int) -> Decimal:
    return amount.quantize(Decimal(1).scaleb(-decimals), rounding=ROUND_UP)


def clamp_order(
    size: Decimal,
    collateral: Decimal,
    limits: PairLimits,
) -> OrderSize:
    """Apply venue minimums, then raise collateral until leverage fits.

    size       = max(size, min_size)
    collateral = max(collateral, min_collateral)
    if size / collateral > max_leverage:
        collateral = size / max_leverage, rounded up to 6 decimals

    Size is never reduced to satisfy the leverage cap.
    """
    size = max(size, limits.min_size)
    collateral = max(collateral, limits.min_collateral)

    if limits.max_leverage > 0 and (
        collateral <= 0 or size / collateral > limits.max_leverage
    ):
        collateral = (size / limits.max_leverage).quantize(
            COLLATERAL_QUANTUM, rounding=ROUND_UP
        )

    return OrderSize(size=size, collateral=collateral)


def split_long_deposit(deposit: Decimal, leverage: Decimal) -> OrderSize:
    """Split a deposit into spot notional and perp collateral at leverage L.

    Returns an OrderSize whose size is the spot notional (also the hedge
    size) and whose collateral is notional / L.
    """
    if leverage <= 0:
        raise ValueError("leverage must be positive")
    notional = deposit * leverage / (leverage + Decimal("1"))
    return OrderSize(size=notional, collateral=notional / leverage)


def short_borrow_amount(
    deposit: Decimal, collateral_ratio: Decimal, price: Decimal
) -> Decimal:
    """Base units that a deposit can back as lending collateral."""
    if collateral_ratio <= 0 or price <= 0:
        raise ValueError("collateral_ratio and price must be positive")
    return deposit / collateral_ratio / price


def required_lending_collateral(
    borrow_amount: Decimal, price: Decimal, collateral_ratio: Decimal
) -> Decimal:
    """Quote-asset collateral needed to back borrow_amount base units."""
    return borrow_amount * price * collateral_ratio


def collateral_deficit(
    required: Decimal, existing: Decimal, dust_threshold: Decimal = Decimal("0")
) -> Decimal:
    """max(0, required - existing), or 0 when the shortfall is below dust."""
    deficit = required - existing
    if deficit <= 0 or deficit < dust_threshold:
        return Decimal("0")
    return deficit
