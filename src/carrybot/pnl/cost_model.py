"""Breakeven cost model for funding rate carry trades.

All calculations use Decimal arithmetic.

Units:
  - Round-trip costs are given in basis points of notional (1 bps = 0.01%).
  - Funding, carry and buffers are expressed in percent per hour.

The breakeven contract: a carry is worthwhile only if cumulative funding
income over the intended hold exceeds the one-time round-trip cost plus
time-prorated capital carry and a risk buffer of z_score standard deviations
of the observed funding rate. The z-score is a conservative buffer chosen by
the caller, not an estimate.

Inputs are normalized before use: missing, unparseable or non-finite values
fall back to defaults (0, or 1 for hold_hours). Nothing here raises on bad input.
"""

from dataclasses import dataclass
from decimal import Decimal, InvalidOperation

HOURS_PER_YEAR = Decimal(365 * 24)
BPS_PER_PCT = Decimal("100")


def _to_decimal(value: object) -> Decimal:
    """Coerce value to a Decimal; anything unparseable becomes NaN."""
    if value is None or isinstance(value, bool):
        return Decimal("NaN")
    try:
        result = value if isinstance(value, Decimal) else Decimal(str(value))
    except (InvalidOperation, ValueError, TypeError):
        return Decimal("NaN")
    # signaling NaN would raise on the first subtraction
    return Decimal("NaN") if result.is_snan() else result


def _finite_or(value: object, default: Decimal) -> Decimal:
    """Coerce value to a finite Decimal, or return default."""
    result = _to_decimal(value)
    if not result.is_finite():
        return default
    return result


@dataclass(frozen=True)
class CostInputs:
    """Raw cost assumptions. Any field may be None or non-finite."""

    spot_round_trip_bps: object = None
    perp_round_trip_bps: object = None
    gas_round_trip_bps: object = None
    capital_apr_pct: object = None
    hold_hours: object = None
    funding_std_pct_per_hr: object = None
    z_score: object = None
    extra_basis_premium_pct_per_hr: object = None


@dataclass(frozen=True)
class NormalizedCostInputs:
    """CostInputs with every field resolved to a finite Decimal."""

    spot_round_trip_bps: Decimal
    perp_round_trip_bps: Decimal
    gas_round_trip_bps: Decimal
    capital_apr_pct: Decimal
    hold_hours: Decimal
    funding_std_pct_per_hr: Decimal
    z_score: Decimal
    extra_basis_premium_pct_per_hr: Decimal

    @property
    def round_trip_cost_pct(self) -> Decimal:
        """One-time cost of entering and exiting every leg, in percent."""
        return (
            self.spot_round_trip_bps
            + self.perp_round_trip_bps
            + self.gas_round_trip_bps
        ) / BPS_PER_PCT


@dataclass(frozen=True)
class CostBreakdown:
    """Minimum funding rate needed to carry a position, split by component."""

    trading_cost_pct_per_hour: Decimal
    capital_cost_pct_per_hour: Decimal
    breakeven_pct_per_hour: Decimal
    risk_buffer_pct_per_hour: Decimal
    basis_premium_pct_per_hour: Decimal
    total_pct_per_hour: Decimal
    inputs: NormalizedCostInputs


@dataclass(frozen=True)
class BreakevenResult:
    """How long a position must be held for funding to repay its costs.

    hold_hours/hold_days are None when net funding never covers the carry.
    net_funding_per_hour is non-finite when funding was.
    """

    possible: bool
    trading_cost_pct: Decimal
    net_funding_per_hour: Decimal
    inputs: NormalizedCostInputs
    hold_hours: Decimal | None = None
    hold_days: Decimal | None = None

    @property
    def within_intended_hold(self) -> bool:
        """True when the required hold fits inside inputs.hold_hours."""
        return self.possible and self.hold_hours is not None and (
            self.hold_hours <= self.inputs.hold_hours
        )


def normalize_inputs(inputs: CostInputs) -> NormalizedCostInputs:
    """Resolve defaults: 0 for every field, 1 for a non-positive hold."""
    zero = Decimal("0")
    hold = _finite_or(inputs.hold_hours, Decimal("1"))
    if hold <= 0:
        hold = Decimal("1")
    return NormalizedCostInputs(
        spot_round_trip_bps=_finite_or(inputs.spot_round_trip_bps, zero),
        perp_round_trip_bps=_finite_or(inputs.perp_round_trip_bps, zero),
        gas_round_trip_bps=_finite_or(inputs.gas_round_trip_bps, zero),
        capital_apr_pct=_finite_or(inputs.capital_apr_pct, zero),
        hold_hours=hold,
        funding_std_pct_per_hr=_finite_or(inputs.funding_std_pct_per_hr, zero),
        z_score=_finite_or(inputs.z_score, zero),
        extra_basis_premium_pct_per_hr=_finite_or(
            inputs.extra_basis_premium_pct_per_hr, zero
        ),
    )


def capital_cost_pct_per_hour(inputs: NormalizedCostInputs) -> Decimal:
    """Opportunity cost of the deployed capital, prorated per hour."""
    return inputs.capital_apr_pct / BPS_PER_PCT / HOURS_PER_YEAR


def risk_buffer_pct_per_hour(inputs: NormalizedCostInputs) -> Decimal:
    """z_score standard deviations of hourly funding."""
    return inputs.z_score * inputs.funding_std_pct_per_hr


def compute_min_funding_breakdown(inputs: CostInputs) -> CostBreakdown:
    """Compute the minimum hourly funding rate that covers all costs.

    trading = round-trip cost amortized over hold_hours
    capital = capital APR prorated per hour
    total   = trading + capital + risk buffer + basis premium

    Args:
        inputs: Raw cost assumptions.

    Returns:
        CostBreakdown with every component in percent per hour.
    """
    normalized = normalize_inputs(inputs)

    trading = normalized.round_trip_cost_pct / normalized.hold_hours
    capital = capital_cost_pct_per_hour(normalized)
    breakeven = trading + capital
    risk_buffer = risk_buffer_pct_per_hour(normalized)
    basis_premium = normalized.extra_basis_premium_pct_per_hr

    return CostBreakdown(
        trading_cost_pct_per_hour=trading,
        capital_cost_pct_per_hour=capital,
        breakeven_pct_per_hour=breakeven,
        risk_buffer_pct_per_hour=risk_buffer,
        basis_premium_pct_per_hour=basis_premium,
        total_pct_per_hour=breakeven + risk_buffer + basis_premium,
        inputs=normalized,
    )


def compute_min_funding_pct_per_hour(inputs: CostInputs) -> Decimal:
    """Shortcut for compute_min_funding_breakdown(inputs).total_pct_per_hour."""
    return compute_min_funding_breakdown(inputs).total_pct_per_hour


def compute_breakeven_hold_duration(
    inputs: CostInputs,
    funding_pct_per_hour: object,
) -> BreakevenResult:
    """Compute how long funding must be collected to repay the round trip.

    net = funding - capital - risk buffer - basis premium
    hold_hours = round-trip cost pct / net

    Not possible when funding is non-finite or net funding is not positive.
    Whether the hold fits the intended hold_hours is left to the caller
    (see BreakevenResult.within_intended_hold).

    Args:
        inputs: Raw cost assumptions.
        funding_pct_per_hour: Expected funding income, percent per hour.

    Returns:
        BreakevenResult.
    """
    normalized = normalize_inputs(inputs)
    trading_cost_pct = normalized.round_trip_cost_pct

    funding = _to_decimal(funding_pct_per_hour)
    net = (
        funding
        - capital_cost_pct_per_hour(normalized)
        - risk_buffer_pct_per_hour(normalized)
        - normalized.extra_basis_premium_pct_per_hr
    )
    if not funding.is_finite() or net <= 0:
        return BreakevenResult(
            possible=False,
            trading_cost_pct=trading_cost_pct,
            net_funding_per_hour=net,
            inputs=normalized,
        )

    hold_hours = trading_cost_pct / net
    if not hold_hours.is_finite() or hold_hours < 0:
        return BreakevenResult(
            possible=False,
            trading_cost_pct=trading_cost_pct,
            net_funding_per_hour=net,
            inputs=normalized,
        )

    return BreakevenResult(
        possible=True,
        trading_cost_pct=trading_cost_pct,
        net_funding_per_hour=net,
        inputs=normalized,
        hold_hours=hold_hours,
        hold_days=hold_hours / Decimal("24"),
    )
