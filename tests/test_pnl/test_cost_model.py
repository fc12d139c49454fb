"""Tests for the breakeven cost model.

All test cases use exact Decimal values where the arithmetic terminates.
Covers the minimum-funding breakdown, breakeven hold duration, input
normalization, and the sign and monotonicity properties.
"""

from decimal import Decimal

import pytest

from carrybot.pnl.cost_model import (
    CostInputs,
    capital_cost_pct_per_hour,
    compute_breakeven_hold_duration,
    compute_min_funding_breakdown,
    compute_min_funding_pct_per_hour,
    normalize_inputs,
)


@pytest.fixture
def day_hold_inputs() -> CostInputs:
    """~0.65% round trip, 6% capital APR, 24h intended hold."""
    return CostInputs(
        spot_round_trip_bps=Decimal("50"),
        perp_round_trip_bps=Decimal("10"),
        gas_round_trip_bps=Decimal("5"),
        capital_apr_pct=Decimal("6"),
        hold_hours=Decimal("24"),
    )


class TestBreakdown:
    """compute_min_funding_breakdown component arithmetic."""

    def test_components_sum_to_total(self) -> None:
        inputs = CostInputs(
            spot_round_trip_bps=Decimal("50"),
            perp_round_trip_bps=Decimal("10"),
            gas_round_trip_bps=Decimal("5"),
            hold_hours=Decimal("65"),
            funding_std_pct_per_hr=Decimal("0.001"),
            z_score=Decimal("2"),
            extra_basis_premium_pct_per_hr=Decimal("0.003"),
        )

        breakdown = compute_min_funding_breakdown(inputs)

        # 0.65% amortized over 65h
        assert breakdown.trading_cost_pct_per_hour == Decimal("0.01")
        assert breakdown.capital_cost_pct_per_hour == Decimal("0")
        assert breakdown.breakeven_pct_per_hour == Decimal("0.01")
        assert breakdown.risk_buffer_pct_per_hour == Decimal("0.002")
        assert breakdown.basis_premium_pct_per_hour == Decimal("0.003")
        assert breakdown.total_pct_per_hour == Decimal("0.015")
        assert compute_min_funding_pct_per_hour(inputs) == Decimal("0.015")

    def test_capital_cost_is_apr_prorated_per_hour(self) -> None:
        normalized = normalize_inputs(CostInputs(capital_apr_pct=Decimal("8760")))
        assert capital_cost_pct_per_hour(normalized) == Decimal("0.01")

    def test_empty_inputs_cost_nothing(self) -> None:
        breakdown = compute_min_funding_breakdown(CostInputs())
        assert breakdown.total_pct_per_hour == Decimal("0")
        assert breakdown.inputs.hold_hours == Decimal("1")


class TestBreakevenHold:
    """compute_breakeven_hold_duration outcomes."""

    def test_hold_reported_regardless_of_intended_hold(self) -> None:
        # 0.1% round trip at 0.01%/hr; intended hold defaults to 1h
        result = compute_breakeven_hold_duration(
            CostInputs(spot_round_trip_bps=Decimal("10")), Decimal("0.01")
        )

        assert result.possible is True
        assert result.hold_hours == Decimal("10")
        assert result.within_intended_hold is False

    def test_small_funding_needs_a_long_hold(self, day_hold_inputs: CostInputs) -> None:
        result = compute_breakeven_hold_duration(day_hold_inputs, Decimal("0.0001"))

        assert result.trading_cost_pct == Decimal("0.65")
        # net is positive, so a hold exists, but it is far beyond 24h
        assert result.possible is True
        assert result.hold_hours > Decimal("6900")
        assert result.within_intended_hold is False

    def test_large_funding_repays_within_hold(self, day_hold_inputs: CostInputs) -> None:
        result = compute_breakeven_hold_duration(day_hold_inputs, Decimal("0.05"))

        assert result.possible is True
        assert result.within_intended_hold is True
        assert Decimal("13") < result.hold_hours < Decimal("13.1")
        assert result.hold_days == result.hold_hours / Decimal("24")

    def test_negative_net_has_no_hold(self, day_hold_inputs: CostInputs) -> None:
        result = compute_breakeven_hold_duration(day_hold_inputs, Decimal("-0.01"))

        assert result.possible is False
        assert result.within_intended_hold is False
        assert result.hold_hours is None
        assert result.hold_days is None
        assert result.net_funding_per_hour < 0

    @pytest.mark.parametrize("funding", [None, "abc", Decimal("NaN"), Decimal("sNaN")])
    def test_unusable_funding_reports_nan_net(self, day_hold_inputs: CostInputs, funding: object) -> None:
        result = compute_breakeven_hold_duration(day_hold_inputs, funding)

        assert result.possible is False
        assert result.hold_hours is None
        assert result.net_funding_per_hour.is_nan()

    def test_infinite_funding_carries_infinite_net(self, day_hold_inputs: CostInputs) -> None:
        result = compute_breakeven_hold_duration(day_hold_inputs, Decimal("Infinity"))

        assert result.possible is False
        assert result.net_funding_per_hour == Decimal("Infinity")

    def test_free_round_trip_breaks_even_immediately(self) -> None:
        result = compute_breakeven_hold_duration(CostInputs(hold_hours=24), Decimal("0.01"))

        assert result.possible is True
        assert result.hold_hours == Decimal("0")


class TestNormalization:
    """normalize_inputs fallbacks."""

    def test_bad_values_fall_back_to_zero(self) -> None:
        normalized = normalize_inputs(
            CostInputs(
                spot_round_trip_bps="not a number",
                perp_round_trip_bps=Decimal("Infinity"),
                gas_round_trip_bps=True,
                capital_apr_pct=None,
            )
        )

        assert normalized.spot_round_trip_bps == Decimal("0")
        assert normalized.perp_round_trip_bps == Decimal("0")
        assert normalized.gas_round_trip_bps == Decimal("0")
        assert normalized.capital_apr_pct == Decimal("0")

    @pytest.mark.parametrize("hold", [None, 0, -5, "x", Decimal("NaN")])
    def test_non_positive_hold_becomes_one(self, hold: object) -> None:
        assert normalize_inputs(CostInputs(hold_hours=hold)).hold_hours == Decimal("1")

    def test_numeric_strings_and_floats_are_accepted(self) -> None:
        normalized = normalize_inputs(CostInputs(spot_round_trip_bps="12.5", z_score=1.5))

        assert normalized.spot_round_trip_bps == Decimal("12.5")
        assert normalized.z_score == Decimal("1.5")


class TestProperties:
    """Sign and monotonicity properties."""

    @pytest.mark.parametrize("hold", [Decimal("1"), Decimal("24"), Decimal("10000")])
    def test_funding_at_carry_is_never_possible(self, hold: Decimal) -> None:
        inputs = CostInputs(
            # 0.0001%/hr exactly
            capital_apr_pct=Decimal("87.6"),
            hold_hours=hold,
            funding_std_pct_per_hr=Decimal("0.001"),
            z_score=Decimal("2"),
            extra_basis_premium_pct_per_hr=Decimal("0.0005"),
        )
        breakdown = compute_min_funding_breakdown(inputs)
        carry = (
            breakdown.capital_cost_pct_per_hour
            + breakdown.risk_buffer_pct_per_hour
            + breakdown.basis_premium_pct_per_hour
        )

        assert compute_breakeven_hold_duration(inputs, carry).possible is False
        assert compute_breakeven_hold_duration(inputs, carry / 2).possible is False

    @pytest.mark.parametrize("field", ["spot_round_trip_bps", "perp_round_trip_bps", "gas_round_trip_bps"])
    def test_trading_cost_is_monotonic_in_round_trip(self, field: str) -> None:
        costs = [
            compute_min_funding_breakdown(
                CostInputs(hold_hours=Decimal("24"), **{field: Decimal(bps)})
            ).trading_cost_pct_per_hour
            for bps in ("0", "5", "50", "500")
        ]
        assert costs == sorted(costs)

    def test_capital_cost_is_monotonic_in_apr(self) -> None:
        costs = [
            compute_min_funding_breakdown(
                CostInputs(capital_apr_pct=Decimal(apr))
            ).capital_cost_pct_per_hour
            for apr in ("0", "1", "6", "40")
        ]
        assert costs == sorted(costs)
