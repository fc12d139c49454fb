"""Pre-trade profitability gate.

Assembles CostInputs from configured overrides and venue estimates, then
checks that the direction-adjusted funding income repays the round trip
within the intended hold. For the short-spot direction the borrow APR is
added to the capital carry.
"""

from dataclasses import dataclass
from decimal import Decimal

from carrybot.config import CostSettings, TradingSettings
from carrybot.exceptions import NotProfitableError
from carrybot.logging import get_logger
from carrybot.pnl.cost_model import (
    BreakevenResult,
    CostBreakdown,
    CostInputs,
    compute_breakeven_hold_duration,
    compute_min_funding_breakdown,
)
from carrybot.pnl.interest import project_interest
from carrybot.strategy.selector import StrategyPlan, StrategySelector
from carrybot.venues.base import LendingVenue, PerpVenue, SpotVenue

logger = get_logger(__name__)


@dataclass(frozen=True)
class ProfitabilityReport:
    """Everything the gate looked at for one candidate plan."""

    plan: StrategyPlan
    funding_pct_per_hour: Decimal | None
    income_pct_per_hour: Decimal
    borrow_apr: Decimal
    projected_borrow_interest: Decimal
    breakdown: CostBreakdown
    breakeven: BreakevenResult

    @property
    def is_profitable(self) -> bool:
        return self.breakeven.within_intended_hold


class ProfitabilityAnalyzer:
    """Builds cost assumptions and gates open attempts.

    Args:
        spot: Spot venue for swap round-trip estimates.
        perp: Perp venue for taker fee estimates.
        lending: Lending venue for the borrow APR.
        cost_settings: Cost overrides and hold assumptions.
        trading_settings: Pair and minimum net funding.
        base_asset: Asset borrowed and traded.
        quote_asset: Settlement asset.
    """

    def __init__(
        self,
        spot: SpotVenue,
        perp: PerpVenue,
        lending: LendingVenue,
        cost_settings: CostSettings,
        trading_settings: TradingSettings,
        base_asset: str,
        quote_asset: str,
    ) -> None:
        self._spot = spot
        self._perp = perp
        self._lending = lending
        self._costs = cost_settings
        self._trading = trading_settings
        self._base = base_asset
        self._quote = quote_asset

    async def _spot_bps(self, notional: Decimal) -> Decimal | None:
        if self._costs.spot_round_trip_bps is not None:
            return self._costs.spot_round_trip_bps
        try:
            return await self._spot.round_trip_cost_bps(self._quote, self._base, notional)
        except Exception as e:
            logger.warning("spot_cost_estimate_failed", error=str(e))
            return None

    async def _perp_bps(self) -> Decimal | None:
        if self._costs.perp_round_trip_bps is not None:
            return self._costs.perp_round_trip_bps
        try:
            return await self._perp.round_trip_cost_bps(self._trading.pair)
        except Exception as e:
            logger.warning("perp_cost_estimate_failed", error=str(e))
            return None

    async def _borrow_apr(self, plan: StrategyPlan) -> Decimal:
        if not plan.borrows:
            return Decimal("0")
        try:
            return await self._lending.get_borrow_apr(self._base)
        except Exception as e:
            logger.warning("borrow_apr_unavailable", error=str(e))
            return Decimal("0")

    async def build_inputs(
        self, plan: StrategyPlan, notional: Decimal
    ) -> tuple[CostInputs, Decimal]:
        """Return the cost inputs for plan and the borrow APR folded into them."""
        borrow_apr = await self._borrow_apr(plan)
        inputs = CostInputs(
            spot_round_trip_bps=await self._spot_bps(notional),
            perp_round_trip_bps=await self._perp_bps(),
            gas_round_trip_bps=self._costs.gas_round_trip_bps,
            capital_apr_pct=self._costs.capital_apr_pct + borrow_apr * Decimal("100"),
            hold_hours=self._costs.hold_hours,
            funding_std_pct_per_hr=self._costs.funding_std_pct_per_hr,
            z_score=self._costs.z_score,
            extra_basis_premium_pct_per_hr=self._costs.basis_premium_pct_per_hr,
        )
        return inputs, borrow_apr

    async def analyze(
        self,
        plan: StrategyPlan,
        funding_pct_per_hour: Decimal | None,
        notional: Decimal,
    ) -> ProfitabilityReport:
        """Evaluate plan for a deployment of notional quote units."""
        inputs, borrow_apr = await self.build_inputs(plan, notional)
        income = (
            StrategySelector.income_pct_per_hour(plan.direction, funding_pct_per_hour)
            if funding_pct_per_hour is not None
            else Decimal("0")
        )
        breakdown = compute_min_funding_breakdown(inputs)
        breakeven = compute_breakeven_hold_duration(inputs, income)

        projected = Decimal("0")
        if borrow_apr > 0:
            projected = project_interest(
                principal=notional,
                apr=borrow_apr,
                days=breakdown.inputs.hold_hours / Decimal("24"),
            ).interest

        return ProfitabilityReport(
            plan=plan,
            funding_pct_per_hour=funding_pct_per_hour,
            income_pct_per_hour=income,
            borrow_apr=borrow_apr,
            projected_borrow_interest=projected,
            breakdown=breakdown,
            breakeven=breakeven,
        )

    async def ensure_profitable(
        self,
        plan: StrategyPlan,
        funding_pct_per_hour: Decimal | None,
        notional: Decimal,
    ) -> ProfitabilityReport:
        """Analyze plan and raise unless it clears breakeven and the funding floor.

        Raises:
            NotProfitableError: Before any transaction is built.
        """
        report = await self.analyze(plan, funding_pct_per_hour, notional)
        breakeven = report.breakeven

        if not breakeven.within_intended_hold:
            logger.info(
                "plan_not_profitable",
                direction=plan.direction.value,
                income_pct_per_hour=str(report.income_pct_per_hour),
                net_funding_per_hour=str(breakeven.net_funding_per_hour),
                required_hold_hours=str(breakeven.hold_hours),
                intended_hold_hours=str(breakeven.inputs.hold_hours),
            )
            raise NotProfitableError(
                f"{plan.direction.value}: funding {report.income_pct_per_hour}%/hr "
                f"does not cover {breakeven.trading_cost_pct}% round trip "
                f"within {breakeven.inputs.hold_hours}h"
            )

        floor = self._trading.min_net_funding_pct_per_hour
        if breakeven.net_funding_per_hour < floor:
            raise NotProfitableError(
                f"{plan.direction.value}: net funding "
                f"{breakeven.net_funding_per_hour}%/hr below minimum {floor}%/hr"
            )

        logger.info(
            "plan_profitable",
            direction=plan.direction.value,
            income_pct_per_hour=str(report.income_pct_per_hour),
            hold_hours=str(breakeven.hold_hours),
            hold_days=str(breakeven.hold_days),
        )
        return report
