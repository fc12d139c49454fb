"""Funding sign to hedge direction mapping."""

from carrybot.strategy.selector import (
    LONG_SPOT_SHORT_PERP,
    SHORT_SPOT_LONG_PERP,
    StrategyPlan,
    StrategySelector,
)

__all__ = ["LONG_SPOT_SHORT_PERP", "SHORT_SPOT_LONG_PERP", "StrategyPlan", "StrategySelector"]
