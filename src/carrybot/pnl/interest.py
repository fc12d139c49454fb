"""Money-market interest model for the borrow leg.

Rates are decimal fractions (0.12 = 12% APR) unless the name says pct.
"""

from dataclasses import dataclass
from decimal import Decimal

DAYS_PER_YEAR = Decimal("365")
HOURS_PER_YEAR = Decimal(365 * 24)


def borrow_apr(
    utilization: Decimal,
    optimal_utilization: Decimal,
    base_rate: Decimal,
    slope1: Decimal,
    slope2: Decimal,
) -> Decimal:
    """Aave-style kinked borrow rate.

    Linear from base_rate to base_rate + slope1 while utilization is below
    the kink, then rises by slope2 over the remaining (1 - kink) range.

    Args:
        utilization: Borrowed / supplied, in [0, 1].
        optimal_utilization: Kink point, in (0, 1).
        base_rate: Rate at zero utilization.
        slope1: Rate added between zero and the kink.
        slope2: Rate added between the kink and full utilization.

    Returns:
        Borrow APR as a decimal fraction.
    """
    if utilization < optimal_utilization:
        return base_rate + (utilization / optimal_utilization) * slope1
    over = (utilization - optimal_utilization) / (Decimal("1") - optimal_utilization)
    return base_rate + slope1 + over * slope2


def utilization(total_borrowed: Decimal, total_deposited: Decimal) -> Decimal:
    """Reserve utilization = borrowed / (cash + borrowed); 0 for an empty reserve."""
    cash = total_deposited - total_borrowed if total_deposited > total_borrowed else Decimal("0")
    denominator = cash + total_borrowed
    if denominator <= 0:
        return Decimal("0")
    return total_borrowed / denominator


@dataclass(frozen=True)
class InterestProjection:
    """Projected interest on a loan."""

    interest: Decimal
    end_debt: Decimal


def project_interest(
    principal: Decimal,
    apr: Decimal,
    days: Decimal,
    compound: bool = True,
) -> InterestProjection:
    """Project interest accrued on principal over days.

    Compounded continuously over the year fraction when compound is True,
    otherwise simple interest.
    """
    years = days / DAYS_PER_YEAR
    if compound:
        interest = principal * ((Decimal("1") + apr) ** years - Decimal("1"))
    else:
        interest = principal * apr * years
    return InterestProjection(interest=interest, end_debt=principal + interest)


def apr_to_pct_per_hour(apr: Decimal) -> Decimal:
    """Convert a decimal APR into percent per hour."""
    return apr / HOURS_PER_YEAR * Decimal("100")
