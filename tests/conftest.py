"""Shared test fixtures for the carry arbitrage bot."""

from decimal import Decimal

import pytest

from carrybot.config import (
    AppSettings,
    LendingSettings,
    TradingSettings,
    VenueSettings,
)
from carrybot.models import DepositClass, DepositEvent, PairLimits, StepRecord, StrategyRun
from carrybot.storage.store import StrategyRunStore, WatermarkStore, new_run
from carrybot.venues.paper import (
    PaperChainClient,
    PaperLedger,
    PaperLendingVenue,
    PaperPerpVenue,
    PaperSpotVenue,
    PaperWallet,
)

CUSTODIAL = "0x" + "c" * 64
DEPOSITOR = "0xa665defb" + "0" * 48 + "d6a608d5"


class InMemoryWatermarkStore(WatermarkStore):
    """WatermarkStore kept in a dict."""

    def __init__(self) -> None:
        self.seen: dict[str, DepositClass] = {}

    async def record(self, version: str, classification: DepositClass) -> bool:
        if version in self.seen:
            return False
        self.seen[version] = classification
        return True

    async def has_seen(self, version: str) -> bool:
        return version in self.seen

    async def count(self) -> int:
        return len(self.seen)


class InMemoryRunStore(StrategyRunStore):
    """StrategyRunStore kept in memory."""

    def __init__(self) -> None:
        self.run: StrategyRun | None = None
        self.steps: dict[tuple[str, str, str], StepRecord] = {}
        self.deposits: list[dict] = []

    async def load(self) -> StrategyRun:
        if self.run is None:
            self.run = new_run()
        return self.run

    async def save(self, run: StrategyRun) -> None:
        self.run = run

    async def record_step(self, record: StepRecord) -> None:
        self.steps[(record.run_id, record.batch, record.step)] = record

    async def completed_steps(self, run_id: str, batch: str) -> dict[str, StepRecord]:
        return {
            step: record
            for (r, b, step), record in self.steps.items()
            if r == run_id and b == batch
        }

    async def record_deposit(self, run_id: str, event: DepositEvent) -> None:
        self.deposits.insert(
            0,
            {
                "version": event.version,
                "run_id": run_id,
                "from_address": event.from_address,
                "amount": event.amount,
            },
        )

    async def list_deposits(self, limit: int = 50) -> list[dict]:
        return self.deposits[:limit]


@pytest.fixture
def mock_settings() -> AppSettings:
    """Return AppSettings with test defaults (paper mode, profitability gate off)."""
    return AppSettings(
        log_level="DEBUG",
        venue=VenueSettings(mode="paper"),
        trading=TradingSettings(check_profitability=False, poll_interval=0.01),
        lending=LendingSettings(),
    )


@pytest.fixture
def custodial_address() -> str:
    return CUSTODIAL


@pytest.fixture
def depositor_address() -> str:
    return DEPOSITOR


@pytest.fixture
def watermark_store() -> InMemoryWatermarkStore:
    return InMemoryWatermarkStore()


@pytest.fixture
def run_store() -> InMemoryRunStore:
    return InMemoryRunStore()


@pytest.fixture
def pair_limits() -> PairLimits:
    return PairLimits(
        min_size=Decimal("2"),
        min_collateral=Decimal("2"),
        max_leverage=Decimal("150"),
    )


@pytest.fixture
def ledger() -> PaperLedger:
    """Ledger at price 10 with a frozen clock, so nothing accrues between calls."""
    return PaperLedger(
        base_asset="APT",
        quote_asset="USDC",
        base_price=Decimal("10"),
        funding_pct_per_hour=Decimal("0.002"),
        clock=lambda: 0.0,
    )


@pytest.fixture
def spot(ledger: PaperLedger) -> PaperSpotVenue:
    return PaperSpotVenue(ledger, fee=Decimal("0.003"), slippage=Decimal("0.0005"))


@pytest.fixture
def perp(ledger: PaperLedger, pair_limits: PairLimits) -> PaperPerpVenue:
    return PaperPerpVenue(ledger, limits=pair_limits, taker_fee=Decimal("0.0005"))


@pytest.fixture
def lending(ledger: PaperLedger) -> PaperLendingVenue:
    return PaperLendingVenue(
        ledger,
        base_utilization=Decimal("0.6"),
        optimal_utilization=Decimal("0.8"),
        base_rate=Decimal("0"),
        slope1=Decimal("0.07"),
        slope2=Decimal("3"),
    )


@pytest.fixture
def wallet(ledger: PaperLedger) -> PaperWallet:
    return PaperWallet(ledger, CUSTODIAL)


@pytest.fixture
def chain(ledger: PaperLedger, lending: PaperLendingVenue) -> PaperChainClient:
    return PaperChainClient(ledger, lending)
