"""Multi-leg open/close execution across the spot, perp and lending venues.

Run phases: IDLE -> OPENING -> OPEN -> CLOSING -> IDLE, or FAILED from any
in-flight phase. Every step is journaled in the StrategyRunStore as soon as
its transaction confirms, keyed by (run, batch, step). Re-running the same
batch skips journaled steps and reuses their recorded outputs, so a retry
after a failure resumes at the failed step.

Each venue call is a single attempt. A failure stops the sequence at the
current step, marks the run FAILED and re-raises with the step name and the
upstream message. Nothing is rolled back.
"""

from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from decimal import Decimal

from carrybot.config import LendingSettings, TradingSettings
from carrybot.exceptions import (
    CarryBotError,
    NoRouteError,
    VenueRejectedError,
    WrongPositionDirectionError,
)
from carrybot.execution.sizing import (
    OrderSize,
    clamp_order,
    collateral_deficit,
    quantize_down,
    quantize_up,
    required_lending_collateral,
    short_borrow_amount,
    split_long_deposit,
)
from carrybot.logging import get_logger
from carrybot.models import (
    CloseStep,
    Direction,
    OpenStep,
    PairLimits,
    PerpPosition,
    PreparedTransaction,
    RunPhase,
    StepRecord,
    StrategyRun,
    SwapRoute,
    TxReceipt,
)
from carrybot.storage.store import StrategyRunStore
from carrybot.strategy.selector import StrategyPlan, StrategySelector
from carrybot.venues.base import (
    ChainClient,
    CustodialWallet,
    LendingVenue,
    PerpVenue,
    SpotVenue,
    execute_transaction,
)

logger = get_logger(__name__)

_ZERO = Decimal("0")

CLOSE_BATCH = "close"

StepDetail = dict[str, str]


@dataclass
class SequenceResult:
    """Outcome of one open or close sequence."""

    run_id: str
    batch: str
    direction: Direction | None
    executed: list[str] = field(default_factory=list)
    skipped: list[str] = field(default_factory=list)
    outputs: StepDetail = field(default_factory=dict)

    def amount(self, key: str) -> Decimal:
        return Decimal(self.outputs.get(key, "0"))


class _Context:
    """Per-sequence scratch state shared between steps."""

    def __init__(
        self, run: StrategyRun, plan: StrategyPlan | None, limits: PairLimits | None
    ) -> None:
        self.run = run
        self.plan = plan
        self.limits = limits
        self.values: StepDetail = {}

    def get(self, key: str) -> Decimal:
        return Decimal(self.values.get(key, "0"))


class LegSequencer:
    """Executes strategy plans against venue collaborators.

    Args:
        spot: Spot venue.
        perp: Perp venue.
        lending: Lending venue.
        wallet: Custodial wallet (swap recipient, balances).
        chain: Chain client that submits and confirms transactions.
        store: Strategy run store for phases and the step journal.
        trading: Pair, slippage and leverage settings.
        lending_settings: Collateral ratio and dust threshold.
        base_asset: Asset borrowed and traded.
        quote_asset: Settlement and collateral asset.
        base_decimals: Precision of the base asset.
        quote_decimals: Precision of the quote asset.
        profile: Lending account profile name.
    """

    def __init__(
        self,
        spot: SpotVenue,
        perp: PerpVenue,
        lending: LendingVenue,
        wallet: CustodialWallet,
        chain: ChainClient,
        store: StrategyRunStore,
        trading: TradingSettings,
        lending_settings: LendingSettings,
        base_asset: str,
        quote_asset: str,
        base_decimals: int = 8,
        quote_decimals: int = 6,
        profile: str = "main",
    ) -> None:
        self._spot = spot
        self._perp = perp
        self._lending = lending
        self._wallet = wallet
        self._chain = chain
        self._store = store
        self._trading = trading
        self._lending_settings = lending_settings
        self._base = base_asset
        self._quote = quote_asset
        self._base_decimals = base_decimals
        self._quote_decimals = quote_decimals
        self._profile = profile
        self._selector = StrategySelector()

        self._open_handlers: dict[OpenStep, Callable[[_Context, Decimal], Awaitable[StepDetail]]] = {
            OpenStep.LENDING_COLLATERAL: self._lending_collateral,
            OpenStep.BORROW: self._borrow,
            OpenStep.SPOT_SWAP: self._open_swap,
            OpenStep.PERP_COLLATERAL: self._perp_collateral,
            OpenStep.PERP_OPEN: self._perp_open,
        }

    # ──────────────────────────────────────────────
    # Journal helpers
    # ──────────────────────────────────────────────

    async def _run_step(
        self,
        ctx: _Context,
        result: SequenceResult,
        done: dict[str, StepRecord],
        step: str,
        action: Callable[[], Awaitable[StepDetail]],
    ) -> None:
        """Run one step unless journaled; journal it on success."""
        if step in done:
            ctx.values.update(done[step].detail)
            result.skipped.append(step)
            logger.info("leg_step_skipped", step=step, batch=result.batch, reason="journaled")
            return

        try:
            detail = await action()
        except CarryBotError:
            raise
        except Exception as e:
            raise VenueRejectedError(step, str(e)) from e

        await self._store.record_step(
            StepRecord(run_id=ctx.run.run_id, batch=result.batch, step=step, detail=detail)
        )
        ctx.values.update(detail)
        result.executed.append(step)
        logger.info("leg_step_completed", step=step, batch=result.batch, **detail)

    async def _fail(self, run: StrategyRun, error: Exception) -> None:
        run.phase = RunPhase.FAILED
        run.last_error = str(error)
        await self._store.save(run)
        logger.error(
            "leg_sequence_failed",
            run_id=run.run_id,
            step=getattr(error, "step", None),
            error=str(error),
        )

    async def _execute(self, step: str, tx: PreparedTransaction) -> TxReceipt:
        return await execute_transaction(self._chain, tx, step)

    async def _swap(self, step: str, route: SwapRoute | None) -> TxReceipt:
        if route is None or route.amount_out <= 0:
            raise NoRouteError(step, "spot venue returned no route")
        tx = await self._spot.build_swap_tx(
            route, self._trading.slippage_bps, self._wallet.address
        )
        receipt = await self._execute(step, tx)
        if receipt.amount_out <= 0:
            receipt.amount_out = route.amount_out
        if receipt.amount_in <= 0:
            receipt.amount_in = route.amount_in
        return receipt

    # ──────────────────────────────────────────────
    # Open sequence
    # ──────────────────────────────────────────────

    async def open(
        self,
        run: StrategyRun,
        plan: StrategyPlan,
        batch: str,
        amount: Decimal,
    ) -> SequenceResult:
        """Deploy amount of the quote asset into plan.

        Args:
            run: Current strategy run; mutated and saved.
            plan: Direction and open steps.
            batch: Journal key, normally the deposit version.
            amount: Quote amount to deploy.

        Returns:
            SequenceResult with executed and skipped steps.

        Raises:
            StepError: NoRouteError or VenueRejectedError at the failing step.
        """
        run.phase = RunPhase.OPENING
        run.direction = plan.direction
        run.last_error = None
        await self._store.save(run)

        result = SequenceResult(run_id=run.run_id, batch=batch, direction=plan.direction)
        logger.info(
            "open_sequence_started",
            run_id=run.run_id,
            batch=batch,
            direction=plan.direction.value,
            amount=str(amount),
        )

        try:
            limits = await self._perp.get_pair_limits(self._trading.pair)
            ctx = _Context(run, plan, limits)
            done = await self._store.completed_steps(run.run_id, batch)
            for step in plan.open_sequence:
                handler = self._open_handlers[step]
                await self._run_step(
                    ctx, result, done, step.value, lambda h=handler: h(ctx, amount)
                )
        except CarryBotError as e:
            await self._fail(run, e)
            raise
        except Exception as e:
            error = VenueRejectedError("prepare", str(e))
            await self._fail(run, error)
            raise error from e

        if plan.direction == Direction.LONG_SPOT_SHORT_PERP:
            run.spot_holdings += ctx.get("spot_amount_out")
        run.phase = RunPhase.OPEN
        await self._store.save(run)

        result.outputs = dict(ctx.values)
        logger.info(
            "open_sequence_completed",
            run_id=run.run_id,
            batch=batch,
            executed=result.executed,
            skipped=result.skipped,
        )
        return result

    async def _lending_collateral(self, ctx: _Context, amount: Decimal) -> StepDetail:
        """Size the borrow and top up lending collateral to cover it."""
        price = await self._perp.get_mark_price(self._trading.pair)
        ratio = self._lending_settings.collateral_ratio
        borrow_amount = quantize_down(
            short_borrow_amount(amount, ratio, price), self._base_decimals
        )
        outstanding = await self._lending.get_outstanding_loan(self._base, self._profile)
        existing = await self._lending.get_deposited_collateral(self._quote, self._profile)
        required = required_lending_collateral(outstanding + borrow_amount, price, ratio)
        deficit = collateral_deficit(
            required, existing, self._lending_settings.dust_threshold
        )

        if deficit > 0:
            tx = await self._lending.deposit_collateral(self._quote, deficit, self._profile)
            await self._execute(OpenStep.LENDING_COLLATERAL.value, tx)
        else:
            logger.info(
                "lending_collateral_sufficient",
                required=str(required),
                existing=str(existing),
            )

        return {
            "borrow_amount": str(borrow_amount),
            "lending_deposited": str(deficit),
            "price": str(price),
        }

    async def _borrow(self, ctx: _Context, amount: Decimal) -> StepDetail:
        borrow_amount = ctx.get("borrow_amount")
        tx = await self._lending.borrow(self._base, borrow_amount, self._profile)
        await self._execute(OpenStep.BORROW.value, tx)
        return {"borrowed": str(borrow_amount)}

    async def _open_swap(self, ctx: _Context, amount: Decimal) -> StepDetail:
        """Long: buy base with the spot share of the deposit. Short: sell the borrowed base."""
        step = OpenStep.SPOT_SWAP.value
        if ctx.plan is not None and ctx.plan.direction == Direction.LONG_SPOT_SHORT_PERP:
            split = split_long_deposit(amount, self._trading.target_leverage)
            notional = quantize_down(split.size, self._quote_decimals)
            route = await self._spot.quote(self._quote, self._base, notional)
        else:
            route = await self._spot.quote(self._base, self._quote, ctx.get("borrowed"))

        receipt = await self._swap(step, route)
        return {
            "spot_amount_in": str(receipt.amount_in),
            "spot_amount_out": str(receipt.amount_out),
        }

    def _order_size(self, ctx: _Context) -> OrderSize:
        """Hedge size from the swap, collateral at target leverage, then clamped."""
        assert ctx.limits is not None
        if ctx.plan is not None and ctx.plan.direction == Direction.LONG_SPOT_SHORT_PERP:
            size = ctx.get("spot_amount_in")
        else:
            size = ctx.get("spot_amount_out")
        size = quantize_down(size, self._quote_decimals)
        collateral = quantize_down(
            size / self._trading.target_leverage, self._quote_decimals
        )
        return clamp_order(size, collateral, ctx.limits)

    async def _perp_collateral(self, ctx: _Context, amount: Decimal) -> StepDetail:
        """Deposit exactly the shortfall between free perp collateral and the order's."""
        order = self._order_size(ctx)
        balance = await self._perp.get_collateral_balance()
        deficit = collateral_deficit(order.collateral, balance)
        if deficit > 0:
            tx = await self._perp.deposit_collateral(deficit)
            await self._execute(OpenStep.PERP_COLLATERAL.value, tx)
        else:
            logger.info(
                "perp_collateral_sufficient",
                balance=str(balance),
                required=str(order.collateral),
            )
        return {
            "order_size": str(order.size),
            "order_collateral": str(order.collateral),
            "perp_deposited": str(deficit),
        }

    async def _perp_open(self, ctx: _Context, amount: Decimal) -> StepDetail:
        assert ctx.plan is not None
        size = ctx.get("order_size")
        collateral = ctx.get("order_collateral")
        tx = await self._perp.place_market_order(
            pair=self._trading.pair,
            size_delta=size,
            collateral_delta=collateral,
            is_long=ctx.plan.perp_is_long,
            is_increase=True,
        )
        receipt = await self._execute(OpenStep.PERP_OPEN.value, tx)
        return {
            "perp_size": str(size),
            "perp_collateral": str(collateral),
            "perp_fee": str(receipt.fee),
        }

    # ──────────────────────────────────────────────
    # Close sequence
    # ──────────────────────────────────────────────

    async def close(
        self,
        run: StrategyRun,
        expected_direction: Direction | None = None,
        spot_amount: Decimal | None = None,
    ) -> SequenceResult:
        """Unwind every leg in mirror order.

        The direction comes from the open perp position when there is one,
        otherwise from the run. Without either, only an explicitly sized
        spot sale runs.

        Args:
            run: Current strategy run; mutated and saved.
            expected_direction: Abort if the open position has the other direction.
            spot_amount: Base amount to sell instead of the run's holdings.

        Raises:
            WrongPositionDirectionError: Before any transaction.
            StepError: NoRouteError or VenueRejectedError at the failing step.
        """
        try:
            position = await self._perp.get_position(self._trading.pair)
        except Exception as e:
            raise VenueRejectedError(CloseStep.PERP_CLOSE.value, str(e)) from e

        if position is not None:
            plan: StrategyPlan | None = self._selector.plan_for_position(position)
        elif run.direction is not None:
            plan = self._selector.plan_for(run.direction)
        elif expected_direction is not None:
            plan = self._selector.plan_for(expected_direction)
        else:
            plan = None

        if (
            expected_direction is not None
            and position is not None
            and plan is not None
            and plan.direction != expected_direction
        ):
            raise WrongPositionDirectionError(
                CloseStep.PERP_CLOSE.value,
                f"open position is {'long' if position.is_long else 'short'} perp, "
                f"cannot close {expected_direction.value}",
            )

        run.phase = RunPhase.CLOSING
        run.active_batch = None
        run.active_amount = _ZERO
        run.last_error = None
        await self._store.save(run)

        direction = plan.direction if plan else None
        result = SequenceResult(run_id=run.run_id, batch=CLOSE_BATCH, direction=direction)
        ctx = _Context(run, plan, None)
        logger.info(
            "close_sequence_started",
            run_id=run.run_id,
            direction=direction.value if direction else None,
            has_position=position is not None,
        )

        steps = plan.close_sequence if plan else (CloseStep.SPOT_UNWIND,)
        handlers: dict[CloseStep, Callable[[], Awaitable[StepDetail]]] = {
            CloseStep.PERP_CLOSE: lambda: self._perp_close(position),
            CloseStep.PERP_COLLATERAL_RELEASE: self._perp_release,
            CloseStep.SPOT_UNWIND: lambda: self._spot_unwind(ctx, spot_amount),
            CloseStep.REPAY: self._repay,
            CloseStep.LENDING_COLLATERAL_RELEASE: self._lending_release,
        }

        try:
            done = await self._store.completed_steps(run.run_id, CLOSE_BATCH)
            for step in steps:
                await self._run_step(ctx, result, done, step.value, handlers[step])
        except CarryBotError as e:
            await self._fail(run, e)
            raise

        sold = ctx.get("spot_sold")
        run.spot_holdings = max(_ZERO, run.spot_holdings - sold)
        await self._store.save(run)

        result.outputs = dict(ctx.values)
        logger.info(
            "close_sequence_completed",
            run_id=run.run_id,
            executed=result.executed,
            skipped=result.skipped,
        )
        return result

    async def _perp_close(self, position: PerpPosition | None) -> StepDetail:
        if position is None:
            return {"perp_closed": "0"}
        tx = await self._perp.place_market_order(
            pair=self._trading.pair,
            size_delta=position.size,
            collateral_delta=_ZERO,
            is_long=position.is_long,
            is_increase=False,
        )
        receipt = await self._execute(CloseStep.PERP_CLOSE.value, tx)
        return {"perp_closed": str(position.size), "perp_returned": str(receipt.amount_out)}

    async def _perp_release(self) -> StepDetail:
        tx = await self._perp.release_collateral()
        if tx is None:
            return {"perp_released": "0"}
        receipt = await self._execute(CloseStep.PERP_COLLATERAL_RELEASE.value, tx)
        return {"perp_released": str(receipt.amount_out)}

    async def _spot_unwind(self, ctx: _Context, spot_amount: Decimal | None) -> StepDetail:
        """Long: sell spot holdings. Short: buy back exactly the outstanding loan."""
        step = CloseStep.SPOT_UNWIND.value
        if ctx.plan is not None and ctx.plan.direction == Direction.SHORT_SPOT_LONG_PERP:
            outstanding = await self._lending.get_outstanding_loan(self._base, self._profile)
            held = await self._wallet.get_balance(self._base)
            to_buy = quantize_up(outstanding - held, self._base_decimals)
            if to_buy <= 0:
                return {"spot_bought": "0", "spot_spent": "0"}
            route = await self._spot.quote(self._quote, self._base, to_buy, exact_out=True)
            if route is not None:
                await self._fund_buyback(route.amount_in)
            receipt = await self._swap(step, route)
            return {
                "spot_bought": str(receipt.amount_out),
                "spot_spent": str(receipt.amount_in),
            }

        amount = spot_amount if spot_amount is not None else ctx.run.spot_holdings
        if amount <= 0:
            return {"spot_sold": "0", "spot_received": "0"}
        route = await self._spot.quote(self._base, self._quote, amount)
        receipt = await self._swap(step, route)
        return {
            "spot_sold": str(receipt.amount_in),
            "spot_received": str(receipt.amount_out),
        }

    async def _fund_buyback(self, cost: Decimal) -> None:
        """Withdraw lending collateral if the wallet cannot pay for the buy-back."""
        balance = await self._wallet.get_balance(self._quote)
        shortfall = cost - balance
        if shortfall <= 0:
            return
        tx = await self._lending.withdraw_collateral(self._quote, shortfall, self._profile)
        await self._execute(CloseStep.SPOT_UNWIND.value, tx)
        logger.info("buyback_funded_from_lending", shortfall=str(shortfall))

    async def _repay(self) -> StepDetail:
        outstanding = await self._lending.get_outstanding_loan(self._base, self._profile)
        if outstanding <= 0:
            return {"repaid": "0"}
        held = await self._wallet.get_balance(self._base)
        amount = min(outstanding, held)
        tx = await self._lending.repay(self._base, amount, self._profile)
        await self._execute(CloseStep.REPAY.value, tx)
        return {"repaid": str(amount)}

    async def _lending_release(self) -> StepDetail:
        deposited = await self._lending.get_deposited_collateral(self._quote, self._profile)
        if deposited <= 0:
            return {"lending_released": "0"}
        tx = await self._lending.withdraw_collateral(self._quote, deposited, self._profile)
        await self._execute(CloseStep.LENDING_COLLATERAL_RELEASE.value, tx)
        return {"lending_released": str(deposited)}
