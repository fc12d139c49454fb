"""Shared data models for the carry arbitrage bot.

CRITICAL: All monetary values use Decimal. Never use float for prices, sizes, or fees.
"""

import time
from dataclasses import dataclass, field
from decimal import Decimal
from enum import Enum
from typing import Any


class Direction(str, Enum):
    """Hedge direction of a strategy run."""

    LONG_SPOT_SHORT_PERP = "long_spot_short_perp"
    SHORT_SPOT_LONG_PERP = "short_spot_long_perp"


class RunPhase(str, Enum):
    """Lifecycle phase of a strategy run."""

    IDLE = "idle"
    OPENING = "opening"
    OPEN = "open"
    CLOSING = "closing"
    FAILED = "failed"


class DepositClass(str, Enum):
    """Classification of a single deposit feed observation."""

    NO_NEW = "no_new"
    NEW_IRRELEVANT = "new_irrelevant"
    NEW_MATCHING = "new_matching"


class OpenStep(str, Enum):
    """Open-sequence steps, in execution order."""

    LENDING_COLLATERAL = "lending_collateral"
    BORROW = "borrow"
    SPOT_SWAP = "spot_swap"
    PERP_COLLATERAL = "perp_collateral"
    PERP_OPEN = "perp_open"


class CloseStep(str, Enum):
    """Close-sequence steps, in execution order."""

    PERP_CLOSE = "perp_close"
    PERP_COLLATERAL_RELEASE = "perp_collateral_release"
    SPOT_UNWIND = "spot_unwind"
    REPAY = "repay"
    LENDING_COLLATERAL_RELEASE = "lending_collateral_release"


@dataclass(frozen=True)
class DepositEvent:
    """One observed inbound transfer. Versions are opaque strings."""

    version: str
    from_address: str
    to_address: str
    amount: Decimal


@dataclass(frozen=True)
class PairLimits:
    """Venue minimums and leverage cap for a perp pair."""

    min_size: Decimal
    min_collateral: Decimal
    max_leverage: Decimal


@dataclass
class FundingRate:
    """Signed funding rate observation. Positive = longs pay shorts."""

    pair: str
    rate_pct_per_hour: Decimal
    observed_at: float = field(default_factory=time.time)


@dataclass
class PerpPosition:
    """Open perpetual position as reported by the perp venue."""

    pair: str
    is_long: bool
    size: Decimal  # notional, quote units
    collateral: Decimal
    average_entry_price: Decimal = Decimal("0")


@dataclass(frozen=True)
class SwapRoute:
    """A quoted spot swap."""

    from_asset: str
    to_asset: str
    amount_in: Decimal
    amount_out: Decimal
    path: tuple[str, ...] = ()
    exact_out: bool = False


@dataclass
class PreparedTransaction:
    """A signable unit built by a venue and submitted by the chain client.

    action names the venue operation (e.g. "swap", "place_order");
    payload carries its arguments.
    """

    venue: str
    action: str
    payload: dict[str, Any] = field(default_factory=dict)


@dataclass
class PendingTransaction:
    """Submission handle for a PreparedTransaction."""

    reference: str
    tx: PreparedTransaction
    submitted_at: float = field(default_factory=time.time)


@dataclass
class TxReceipt:
    """Final status of a submitted transaction."""

    reference: str
    success: bool
    error: str | None = None
    amount_in: Decimal = Decimal("0")
    amount_out: Decimal = Decimal("0")
    fee: Decimal = Decimal("0")


@dataclass
class StrategyRun:
    """Persisted state of the single active strategy run.

    tracked_deposit_total is the profit baseline for the performance fee.
    active_batch/active_amount identify the deposit currently being deployed
    so a failed open can be retried against the same saga journal.
    """

    run_id: str
    direction: Direction | None = None
    phase: RunPhase = RunPhase.IDLE
    tracked_deposit_total: Decimal = Decimal("0")
    active_batch: str | None = None
    active_amount: Decimal = Decimal("0")
    spot_holdings: Decimal = Decimal("0")
    depositor_address: str | None = None
    last_error: str | None = None
    updated_at: float = field(default_factory=time.time)


@dataclass
class StepRecord:
    """Saga journal entry for one completed leg step."""

    run_id: str
    batch: str
    step: str
    detail: dict[str, str] = field(default_factory=dict)
    completed_at: float = field(default_factory=time.time)
