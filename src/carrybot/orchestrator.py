"""Main bot orchestrator -- wires the watermark, sequencer and settlement into one loop.

Each tick:
  1. DETECT: poll the deposit feed and classify the newest transfer
  2. TRACK: add a matching deposit to the run's deposit baseline
  3. DECIDE: read funding, pick candidate plans, gate on profitability
  4. EXECUTE: run the open sequence for the first viable candidate

Detection and execution run under one asyncio.Lock that close and retry
requests also take, so a slow leg sequence never overlaps the next tick and
a close never interleaves with an open.
"""

import asyncio
from dataclasses import dataclass
from decimal import Decimal

from carrybot.config import AppSettings
from carrybot.deposits.feed import PaperDepositFeed
from carrybot.deposits.watermark import DepositWatermark, to_long_address
from carrybot.exceptions import (
    InsufficientFundsError,
    InvalidPhaseError,
    NotProfitableError,
    StepError,
)
from carrybot.execution.sequencer import LegSequencer, SequenceResult
from carrybot.logging import bound_run, get_logger
from carrybot.models import DepositClass, DepositEvent, Direction, RunPhase, StrategyRun
from carrybot.pnl.profitability import ProfitabilityAnalyzer, ProfitabilityReport
from carrybot.pnl.settlement import Settlement, SettlementEngine
from carrybot.storage.store import StrategyRunStore, new_run, next_run_id
from carrybot.strategy.selector import LONG_SPOT_SHORT_PERP, SHORT_SPOT_LONG_PERP, StrategySelector
from carrybot.venues.base import CustodialWallet, DepositFeed, PerpVenue

logger = get_logger(__name__)

# Notional used for breakeven estimates before any deposit is tracked
_DEFAULT_NOTIONAL = Decimal("100")

_IN_FLIGHT = (RunPhase.OPENING, RunPhase.CLOSING)
_CLOSABLE = (RunPhase.IDLE, RunPhase.OPEN, RunPhase.FAILED)


@dataclass
class CloseOutcome:
    """Result of a close request: the unwind and the payout."""

    close: SequenceResult
    settlement: Settlement


class Orchestrator:
    """Deposit-driven strategy loop plus the operator requests.

    Args:
        settings: Application-wide settings.
        feed: Deposit feed for the custodial wallet.
        watermark: Deposit classifier backed by the seen-version store.
        run_store: Strategy run store.
        sequencer: Leg sequencer for open and close.
        perp: Perp venue, for funding observations.
        wallet: Custodial wallet.
        profitability: Pre-trade profitability gate.
        settlement: Payout engine.
    """

    def __init__(
        self,
        settings: AppSettings,
        feed: DepositFeed,
        watermark: DepositWatermark,
        run_store: StrategyRunStore,
        sequencer: LegSequencer,
        perp: PerpVenue,
        wallet: CustodialWallet,
        profitability: ProfitabilityAnalyzer,
        settlement: SettlementEngine,
    ) -> None:
        self._settings = settings
        self._feed = feed
        self._watermark = watermark
        self._store = run_store
        self._sequencer = sequencer
        self._perp = perp
        self._wallet = wallet
        self._profitability = profitability
        self._settlement = settlement
        self._selector = StrategySelector()
        self._running = False
        self._lock = asyncio.Lock()

    async def start(self) -> None:
        """Recover persisted state, then run the poll loop until stopped."""
        logger.info(
            "orchestrator_starting",
            mode=self._settings.venue.mode,
            custodial_address=self._wallet.address,
        )
        await self.recover()
        self._running = True
        try:
            await self._run_loop()
        finally:
            logger.info("orchestrator_stopped")

    async def stop(self) -> None:
        """Signal the loop to exit after the current tick. Open legs stay open."""
        logger.info("orchestrator_stopping_gracefully")
        self._running = False

    async def recover(self) -> StrategyRun:
        """Restore the depositor and fail any run interrupted mid-sequence."""
        run = await self._store.load()
        if run.depositor_address and not self._watermark.depositor_address:
            self._watermark.set_depositor(run.depositor_address)
        if run.phase in _IN_FLIGHT:
            logger.warning(
                "interrupted_run_marked_failed",
                run_id=run.run_id,
                phase=run.phase.value,
            )
            run.last_error = f"interrupted while {run.phase.value}"
            run.phase = RunPhase.FAILED
            await self._store.save(run)
        return run

    async def _run_loop(self) -> None:
        while self._running:
            try:
                await self.tick()
                await asyncio.sleep(self._settings.trading.poll_interval)
            except asyncio.CancelledError:
                break
            except Exception as e:
                logger.error("orchestrator_tick_error", error=str(e), exc_info=True)
                await asyncio.sleep(self._settings.trading.poll_interval)

    async def tick(self) -> DepositClass:
        """Run one detect -> execute cycle under the lock."""
        async with self._lock:
            classification, event = await self._watermark.check(self._feed)
            if classification != DepositClass.NEW_MATCHING or event is None:
                return classification
            run_id = (await self._store.load()).run_id
            with bound_run(run_id, batch=event.version):
                await self._on_deposit(event)
            return classification

    async def _on_deposit(self, event: DepositEvent) -> None:
        run = await self._store.load()
        await self._store.record_deposit(run.run_id, event)
        run.tracked_deposit_total += event.amount
        await self._store.save(run)
        logger.info(
            "deposit_detected",
            version=event.version,
            amount=str(event.amount),
            tracked_deposit_total=str(run.tracked_deposit_total),
            phase=run.phase.value,
        )

        if run.phase not in (RunPhase.IDLE, RunPhase.OPEN):
            logger.warning(
                "deposit_tracked_not_deployed",
                version=event.version,
                phase=run.phase.value,
            )
            return

        try:
            await self._deploy(run, event.version, event.amount)
        except StepError as e:
            logger.error(
                "deposit_deploy_failed",
                version=event.version,
                step=e.step,
                error=str(e),
            )

    async def _current_funding(self) -> Decimal | None:
        try:
            funding = await self._perp.get_funding_rate(self._settings.trading.pair)
        except Exception as e:
            logger.warning("funding_rate_unavailable", error=str(e))
            return None
        return funding.rate_pct_per_hour

    async def _deploy(
        self, run: StrategyRun, batch: str, amount: Decimal
    ) -> SequenceResult | None:
        """Try candidate plans in order; return the completed open, or None.

        An open position scales in with its own direction. Otherwise the
        selector's candidates are tried in turn: unprofitable ones are
        skipped, and a failed candidate falls through to the next only when
        it completed no step.
        """
        funding = await self._current_funding()
        prior_phase = run.phase
        prior_direction = run.direction
        if run.phase == RunPhase.OPEN and run.direction is not None:
            candidates = [self._selector.plan_for(run.direction)]
        else:
            candidates = self._selector.select(funding)

        run.active_batch = batch
        run.active_amount = amount
        await self._store.save(run)

        for index, plan in enumerate(candidates):
            is_last = index == len(candidates) - 1
            if self._settings.trading.check_profitability:
                try:
                    await self._profitability.ensure_profitable(plan, funding, amount)
                except NotProfitableError as e:
                    logger.info(
                        "candidate_skipped",
                        direction=plan.direction.value,
                        reason=str(e),
                    )
                    continue

            try:
                return await self._sequencer.open(run, plan, batch, amount)
            except StepError as e:
                done = await self._store.completed_steps(run.run_id, batch)
                if done or is_last:
                    raise
                logger.warning(
                    "candidate_failed_trying_next",
                    direction=plan.direction.value,
                    step=e.step,
                    error=str(e),
                )
                run.phase = prior_phase
                run.direction = prior_direction
                run.last_error = None
                await self._store.save(run)

        logger.info(
            "deposit_held_no_viable_plan",
            batch=batch,
            amount=str(amount),
            funding_pct_per_hour=str(funding) if funding is not None else None,
        )
        run.active_batch = None
        run.active_amount = Decimal("0")
        await self._store.save(run)
        return None

    # ──────────────────────────────────────────────
    # Operator requests
    # ──────────────────────────────────────────────

    async def register_depositor(self, address: str) -> str:
        """Register the expected sender of deposits; returns the normalized address.

        Raises:
            ValueError: If address is not a valid hex account address.
        """
        normalized = to_long_address(address)
        async with self._lock:
            run = await self._store.load()
            run.depositor_address = normalized
            await self._store.save(run)
            self._watermark.set_depositor(normalized)
        return normalized

    async def request_close(
        self,
        payout_address: str | None = None,
        spot_amount: Decimal | None = None,
        expected_direction: Direction | None = None,
    ) -> CloseOutcome:
        """Unwind every leg and pay the balance less the fee to the depositor.

        The run is reset only after the payout confirms. When nothing is
        left to pay, the run keeps its deposit baseline but moves to a new
        run_id so the finished close steps are never replayed.

        Raises:
            ValueError: If payout_address or spot_amount is malformed.
            InvalidPhaseError: If a sequence is in flight or no payout address is known.
            StepError: If a close step fails; the run is left FAILED.
            InsufficientFundsError: If nothing is left to pay out.
        """
        if payout_address:
            payout_address = to_long_address(payout_address)
        if spot_amount is not None and (not spot_amount.is_finite() or spot_amount <= 0):
            raise ValueError(f"spot_amount must be a positive number, got {spot_amount}")

        async with self._lock:
            run = await self._store.load()
            if run.phase not in _CLOSABLE:
                raise InvalidPhaseError(f"cannot close while {run.phase.value}")
            recipient = payout_address or run.depositor_address
            if not recipient:
                raise InvalidPhaseError("no payout address: register a depositor first")

            with bound_run(run.run_id, batch="close"):
                close = await self._sequencer.close(run, expected_direction, spot_amount)

                try:
                    settlement = await self._settlement.settle(recipient, run.tracked_deposit_total)
                except InsufficientFundsError:
                    retired_run_id = run.run_id
                    run.run_id = next_run_id()
                    run.phase = RunPhase.IDLE
                    run.direction = None
                    await self._store.save(run)
                    logger.warning(
                        "close_without_payout",
                        retired_run_id=retired_run_id,
                        tracked_deposit_total=str(run.tracked_deposit_total),
                    )
                    raise
                except Exception as e:
                    run.phase = RunPhase.FAILED
                    run.last_error = str(e)
                    await self._store.save(run)
                    raise

            fresh = new_run(run.depositor_address)
            await self._store.save(fresh)
            logger.info(
                "run_settled",
                closed_run_id=run.run_id,
                new_run_id=fresh.run_id,
                payout=str(settlement.quote.payout),
                fee=str(settlement.quote.fee),
            )
            return CloseOutcome(close=close, settlement=settlement)

    async def retry(self) -> SequenceResult:
        """Resume a failed open at its failed step.

        Raises:
            InvalidPhaseError: If the run is not FAILED during an open.
        """
        async with self._lock:
            run = await self._store.load()
            if run.phase != RunPhase.FAILED:
                raise InvalidPhaseError(f"nothing to retry while {run.phase.value}")
            if run.active_batch is None or run.direction is None:
                raise InvalidPhaseError("failed run has no open to resume; request a close")
            plan = self._selector.plan_for(run.direction)
            with bound_run(run.run_id, batch=run.active_batch):
                logger.info("retrying_open", direction=run.direction.value)
                return await self._sequencer.open(run, plan, run.active_batch, run.active_amount)

    async def simulate_deposit(self, amount: Decimal) -> DepositEvent:
        """Paper mode only: push a transfer from the registered depositor.

        Raises:
            InvalidPhaseError: Outside paper mode or without a depositor.
        """
        if not isinstance(self._feed, PaperDepositFeed):
            raise InvalidPhaseError("simulated deposits are only available in paper mode")
        depositor = self._watermark.depositor_address
        if not depositor:
            raise InvalidPhaseError("no depositor registered")
        if amount <= 0:
            raise ValueError("amount must be positive")
        return self._feed.push(depositor, amount)

    # ──────────────────────────────────────────────
    # Read-only views
    # ──────────────────────────────────────────────

    async def breakeven(self, notional: Decimal | None = None) -> list[ProfitabilityReport]:
        """Profitability of both directions at the current funding rate."""
        run = await self._store.load()
        if notional is None:
            notional = run.tracked_deposit_total or _DEFAULT_NOTIONAL
        funding = await self._current_funding()
        return [
            await self._profitability.analyze(plan, funding, notional)
            for plan in (LONG_SPOT_SHORT_PERP, SHORT_SPOT_LONG_PERP)
        ]

    async def list_deposits(self, limit: int = 50) -> list[dict]:
        return await self._store.list_deposits(limit)

    async def get_status(self) -> dict:
        """Return the run record plus live balances where available."""
        run = await self._store.load()
        status: dict = {
            "running": self._running,
            "mode": self._settings.venue.mode,
            "custodial_address": self._wallet.address,
            "run_id": run.run_id,
            "phase": run.phase.value,
            "direction": run.direction.value if run.direction else None,
            "tracked_deposit_total": run.tracked_deposit_total,
            "active_batch": run.active_batch,
            "spot_holdings": run.spot_holdings,
            "depositor_address": run.depositor_address,
            "last_error": run.last_error,
            "balance": None,
            "settlement_preview": None,
            "position": None,
        }
        try:
            quote = await self._settlement.quote(run.tracked_deposit_total)
            status["balance"] = quote.current_balance
            status["settlement_preview"] = {
                "profit": quote.profit,
                "fee": quote.fee,
                "payout": quote.payout,
            }
            position = await self._perp.get_position(self._settings.trading.pair)
            if position is not None:
                status["position"] = {
                    "pair": position.pair,
                    "is_long": position.is_long,
                    "size": position.size,
                    "collateral": position.collateral,
                }
        except Exception as e:
            logger.warning("status_balances_unavailable", error=str(e))
        return status

    @property
    def is_running(self) -> bool:
        """Whether the poll loop is active."""
        return self._running

    @property
    def custodial_address(self) -> str:
        return self._wallet.address
