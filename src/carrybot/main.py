"""Entry point for the carry arbitrage bot.

Wires all components together, optionally embeds the FastAPI control API,
and starts the orchestrator. When the API is enabled (default), the bot and
the API share a single asyncio event loop via uvicorn's programmatic API and
FastAPI's lifespan context manager.

Handles SIGINT/SIGTERM for graceful shutdown.

Component wiring order (in _build_components):
1. StateDatabase + SQLite stores
2. Venues (paper ledger or ccxt exchanges) and the chain client
3. Deposit feed (paper queue or Aptos indexer)
4. DepositWatermark
5. ProfitabilityAnalyzer
6. LegSequencer
7. SettlementEngine
8. Orchestrator
"""

import asyncio
import signal
from contextlib import asynccontextmanager
from typing import Any

import uvicorn
from fastapi import FastAPI

from carrybot.config import AppSettings
from carrybot.deposits.feed import IndexerDepositFeed, PaperDepositFeed
from carrybot.deposits.watermark import DepositWatermark
from carrybot.execution.sequencer import LegSequencer
from carrybot.logging import get_logger, setup_logging
from carrybot.models import PairLimits
from carrybot.orchestrator import Orchestrator
from carrybot.pnl.profitability import ProfitabilityAnalyzer
from carrybot.pnl.settlement import SettlementEngine
from carrybot.storage.database import StateDatabase
from carrybot.storage.store import SqliteStrategyRunStore, SqliteWatermarkStore


def _build_paper_venues(settings: AppSettings) -> dict[str, Any]:
    from carrybot.venues.paper import (
        PaperChainClient,
        PaperLedger,
        PaperLendingVenue,
        PaperPerpVenue,
        PaperSpotVenue,
        PaperWallet,
    )

    paper = settings.paper
    wallet_settings = settings.wallet
    ledger = PaperLedger(
        base_asset=wallet_settings.base_asset,
        quote_asset=wallet_settings.settlement_asset,
        base_price=paper.base_price,
        funding_pct_per_hour=paper.funding_pct_per_hour,
    )
    lending = PaperLendingVenue(
        ledger,
        base_utilization=paper.reserve_utilization,
        optimal_utilization=paper.reserve_optimal_utilization,
        base_rate=paper.reserve_base_rate,
        slope1=paper.reserve_slope1,
        slope2=paper.reserve_slope2,
    )
    return {
        "ledger": ledger,
        "spot": PaperSpotVenue(ledger, fee=paper.spot_fee, slippage=paper.slippage),
        "perp": PaperPerpVenue(
            ledger,
            limits=PairLimits(
                min_size=paper.min_size,
                min_collateral=paper.min_collateral,
                max_leverage=paper.max_leverage,
            ),
            taker_fee=paper.perp_taker_fee,
        ),
        "lending": lending,
        "wallet": PaperWallet(ledger, wallet_settings.custodial_address),
        "chain": PaperChainClient(ledger, lending),
        "feed": PaperDepositFeed(
            ledger, wallet_settings.custodial_address, wallet_settings.settlement_asset
        ),
        "exchanges": None,
    }


def _build_live_venues(settings: AppSettings) -> dict[str, Any]:
    from carrybot.venues.ccxt_venues import (
        CcxtChainClient,
        CcxtExchanges,
        CcxtLendingVenue,
        CcxtPerpVenue,
        CcxtSpotVenue,
        CcxtWallet,
    )

    venue = settings.venue
    wallet_settings = settings.wallet
    exchanges = CcxtExchanges(venue)
    spot_exchange = exchanges.get(venue.spot_exchange)
    return {
        "ledger": None,
        "spot": CcxtSpotVenue(
            spot_exchange, wallet_settings.base_asset, wallet_settings.settlement_asset
        ),
        "perp": CcxtPerpVenue(
            exchanges.get(venue.perp_exchange),
            wallet_settings.base_asset,
            wallet_settings.settlement_asset,
            default_max_leverage=settings.trading.default_max_leverage,
        ),
        "lending": CcxtLendingVenue(exchanges.get(venue.lending_exchange)),
        "wallet": CcxtWallet(spot_exchange, wallet_settings.custodial_address),
        "chain": CcxtChainClient(exchanges),
        "feed": IndexerDepositFeed(
            indexer_url=settings.feed.indexer_url,
            owner_address=wallet_settings.custodial_address,
            asset_type=settings.feed.asset_type,
            decimals=wallet_settings.settlement_decimals,
            api_key=settings.feed.api_key.get_secret_value() or None,
            timeout=settings.feed.timeout_seconds,
        ),
        "exchanges": exchanges,
    }


async def _build_components(settings: AppSettings) -> dict[str, Any]:
    """Build all bot components from settings.

    Connects the state database. Does NOT connect ccxt exchanges -- that
    happens in the lifespan (API mode) or run() (headless mode).

    Args:
        settings: Application-wide settings.

    Returns:
        Dict mapping component names to instances.
    """
    logger = get_logger("carrybot.main")
    wallet_settings = settings.wallet

    # 1. State database and stores
    database = StateDatabase(settings.storage.db_path)
    await database.connect()
    watermark_store = SqliteWatermarkStore(database)
    run_store = SqliteStrategyRunStore(database)

    # 2-3. Venues, chain client and deposit feed
    if settings.venue.mode == "paper":
        venues = _build_paper_venues(settings)
    else:
        if not settings.venue.api_key.get_secret_value():
            logger.warning(
                "no_api_keys_configured",
                mode="live",
                note="Private endpoints (balance, orders, borrow) will fail.",
            )
        venues = _build_live_venues(settings)

    # 4. Deposit watermark
    watermark = DepositWatermark(
        watermark_store,
        custodial_address=wallet_settings.custodial_address,
        depositor_address=wallet_settings.depositor_address or None,
    )

    # 5. Profitability gate
    profitability = ProfitabilityAnalyzer(
        spot=venues["spot"],
        perp=venues["perp"],
        lending=venues["lending"],
        cost_settings=settings.cost,
        trading_settings=settings.trading,
        base_asset=wallet_settings.base_asset,
        quote_asset=wallet_settings.settlement_asset,
    )

    # 6. Leg sequencer
    sequencer = LegSequencer(
        spot=venues["spot"],
        perp=venues["perp"],
        lending=venues["lending"],
        wallet=venues["wallet"],
        chain=venues["chain"],
        store=run_store,
        trading=settings.trading,
        lending_settings=settings.lending,
        base_asset=wallet_settings.base_asset,
        quote_asset=wallet_settings.settlement_asset,
        base_decimals=wallet_settings.base_decimals,
        quote_decimals=wallet_settings.settlement_decimals,
        profile=settings.venue.lending_profile,
    )

    # 7. Settlement
    settlement = SettlementEngine(
        wallet=venues["wallet"],
        chain=venues["chain"],
        asset=wallet_settings.settlement_asset,
        fee_bps=settings.settlement.fee_bps,
        decimals=wallet_settings.settlement_decimals,
    )

    # 8. Orchestrator
    orchestrator = Orchestrator(
        settings=settings,
        feed=venues["feed"],
        watermark=watermark,
        run_store=run_store,
        sequencer=sequencer,
        perp=venues["perp"],
        wallet=venues["wallet"],
        profitability=profitability,
        settlement=settlement,
    )

    return {
        "database": database,
        "exchanges": venues["exchanges"],
        "ledger": venues["ledger"],
        "orchestrator": orchestrator,
    }


def _setup_signal_handlers(orchestrator: Orchestrator) -> None:
    """Register SIGINT/SIGTERM to stop the orchestrator gracefully.

    Must be called after the asyncio event loop is running.
    """
    logger = get_logger("carrybot.main")
    loop = asyncio.get_running_loop()

    def _graceful_handler() -> None:
        logger.info("graceful_shutdown_signal")
        asyncio.create_task(orchestrator.stop())

    for sig in (signal.SIGINT, signal.SIGTERM):
        loop.add_signal_handler(sig, _graceful_handler)


async def _connect(components: dict[str, Any]) -> None:
    if components["exchanges"] is not None:
        await components["exchanges"].connect()


async def _shutdown(components: dict[str, Any]) -> None:
    if components["exchanges"] is not None:
        await components["exchanges"].close()
    await components["database"].close()


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Manage bot component lifecycle within the FastAPI application.

    On startup: stores the orchestrator on app.state, connects venues and
    starts the orchestrator as a background task.

    On shutdown: stops the orchestrator, cancels its task and disconnects.
    """
    logger = get_logger("carrybot.main")
    settings = app.state.settings
    components = app.state.components

    app.state.orchestrator = components["orchestrator"]
    app.state.paper_mode = settings.venue.mode == "paper"

    _setup_signal_handlers(components["orchestrator"])

    await _connect(components)

    bot_task = asyncio.create_task(components["orchestrator"].start())

    logger.info("lifespan_started", mode=settings.venue.mode)

    yield

    await components["orchestrator"].stop()

    bot_task.cancel()
    try:
        await bot_task
    except asyncio.CancelledError:
        pass

    await _shutdown(components)

    logger.info("carrybot_stopped")


async def run() -> None:
    """Run the carry arbitrage bot.

    When the API is enabled (API_ENABLED=true, the default), the control API
    and the bot run in one event loop via uvicorn and the lifespan manages
    startup and shutdown. Otherwise the bot runs headless.
    """
    settings = AppSettings()

    setup_logging(settings.log_level, settings.log_format)
    logger = get_logger("carrybot.main")

    components = await _build_components(settings)

    if settings.api.enabled:
        from carrybot.api.app import create_api_app

        app = create_api_app(lifespan=lifespan)
        app.state.settings = settings
        app.state.components = components

        logger.info(
            "starting_with_api",
            host=settings.api.host,
            port=settings.api.port,
            mode=settings.venue.mode,
        )

        config = uvicorn.Config(
            app,
            host=settings.api.host,
            port=settings.api.port,
            log_level="warning",  # Suppress uvicorn access logs
        )
        server = uvicorn.Server(config)
        await server.serve()
    else:
        _setup_signal_handlers(components["orchestrator"])

        logger.info(
            "starting_without_api",
            mode=settings.venue.mode,
            pair=settings.trading.pair,
            poll_interval=settings.trading.poll_interval,
        )

        try:
            await _connect(components)
            await components["orchestrator"].start()
        finally:
            await _shutdown(components)
            logger.info("carrybot_stopped")


def main() -> None:
    """Synchronous entry point."""
    asyncio.run(run())


if __name__ == "__main__":
    main()
