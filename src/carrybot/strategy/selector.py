"""Funding sign to hedge direction mapping.

Convention: positive funding = longs pay shorts.
  - funding > 0: buy spot, short perp (the short collects funding)
  - funding < 0: borrow and sell spot, long perp (the long collects funding)
  - funding == 0 or unknown: no signal, try long-spot first, then short-spot

At close time the direction is read back from the open perp position rather
than re-derived from the current funding rate.
"""

from dataclasses import dataclass
from decimal import Decimal

from carrybot.models import CloseStep, Direction, OpenStep, PerpPosition

_LONG_SPOT_OPEN = (OpenStep.SPOT_SWAP, OpenStep.PERP_COLLATERAL, OpenStep.PERP_OPEN)
_SHORT_SPOT_OPEN = (
    OpenStep.LENDING_COLLATERAL,
    OpenStep.BORROW,
    OpenStep.SPOT_SWAP,
    OpenStep.PERP_COLLATERAL,
    OpenStep.PERP_OPEN,
)
_LONG_SPOT_CLOSE = (
    CloseStep.PERP_CLOSE,
    CloseStep.PERP_COLLATERAL_RELEASE,
    CloseStep.SPOT_UNWIND,
)
_SHORT_SPOT_CLOSE = (
    CloseStep.PERP_CLOSE,
    CloseStep.PERP_COLLATERAL_RELEASE,
    CloseStep.SPOT_UNWIND,
    CloseStep.REPAY,
    CloseStep.LENDING_COLLATERAL_RELEASE,
)


@dataclass(frozen=True)
class StrategyPlan:
    """A direction with its ordered open and close steps."""

    direction: Direction
    open_sequence: tuple[OpenStep, ...]
    close_sequence: tuple[CloseStep, ...]

    @property
    def perp_is_long(self) -> bool:
        return self.direction == Direction.SHORT_SPOT_LONG_PERP

    @property
    def borrows(self) -> bool:
        return OpenStep.BORROW in self.open_sequence


LONG_SPOT_SHORT_PERP = StrategyPlan(
    direction=Direction.LONG_SPOT_SHORT_PERP,
    open_sequence=_LONG_SPOT_OPEN,
    close_sequence=_LONG_SPOT_CLOSE,
)
SHORT_SPOT_LONG_PERP = StrategyPlan(
    direction=Direction.SHORT_SPOT_LONG_PERP,
    open_sequence=_SHORT_SPOT_OPEN,
    close_sequence=_SHORT_SPOT_CLOSE,
)

_PLANS = {
    Direction.LONG_SPOT_SHORT_PERP: LONG_SPOT_SHORT_PERP,
    Direction.SHORT_SPOT_LONG_PERP: SHORT_SPOT_LONG_PERP,
}


class StrategySelector:
    """Maps funding observations and open positions to strategy plans."""

    def select(self, funding_pct_per_hour: Decimal | None) -> list[StrategyPlan]:
        """Return candidate plans in the order they should be attempted."""
        if funding_pct_per_hour is None or not funding_pct_per_hour.is_finite():
            return [LONG_SPOT_SHORT_PERP, SHORT_SPOT_LONG_PERP]
        if funding_pct_per_hour > 0:
            return [LONG_SPOT_SHORT_PERP]
        if funding_pct_per_hour < 0:
            return [SHORT_SPOT_LONG_PERP]
        return [LONG_SPOT_SHORT_PERP, SHORT_SPOT_LONG_PERP]

    def plan_for(self, direction: Direction) -> StrategyPlan:
        return _PLANS[direction]

    def plan_for_position(self, position: PerpPosition) -> StrategyPlan:
        """A short perp hedges long spot; a long perp hedges short spot."""
        if position.is_long:
            return SHORT_SPOT_LONG_PERP
        return LONG_SPOT_SHORT_PERP

    @staticmethod
    def income_pct_per_hour(direction: Direction, funding_pct_per_hour: Decimal) -> Decimal:
        """Funding collected by the hedge, in percent per hour. Negative means it pays."""
        if direction == Direction.LONG_SPOT_SHORT_PERP:
            return funding_pct_per_hour
        return -funding_pct_per_hour
