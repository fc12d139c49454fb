"""Live venues over ccxt async.

Spot swaps are spot market orders, the perp venue is the exchange's linear
swap market, and the money market is the exchange's cross margin account
(borrow/repay plus spot<->margin transfers). Payouts are exchange withdrawals.

Every venue builds a PreparedTransaction whose action names the ccxt call;
CcxtChainClient performs the call at submit time and checks order status at
confirm time. All amounts read from ccxt go through Decimal(str(value)).
"""

import time
from decimal import ROUND_UP, Decimal

import ccxt.async_support as ccxt_async

from carrybot.config import VenueSettings
from carrybot.logging import get_logger
from carrybot.models import (
    FundingRate,
    PairLimits,
    PendingTransaction,
    PerpPosition,
    PreparedTransaction,
    SwapRoute,
    TxReceipt,
)
from carrybot.venues.base import (
    ChainClient,
    CustodialWallet,
    LendingVenue,
    PerpVenue,
    SpotVenue,
)

logger = get_logger(__name__)

_ZERO = Decimal("0")
_ONE = Decimal("1")
_MS_PER_YEAR = Decimal(365 * 24 * 3600 * 1000)


def _dec(value: object) -> Decimal:
    """Convert a ccxt numeric (float, str or None) to Decimal."""
    if value is None or value == "":
        return _ZERO
    return Decimal(str(value))


def create_exchange(exchange_id: str, settings: VenueSettings) -> ccxt_async.Exchange:
    """Instantiate a ccxt async exchange with credentials and rate limiting."""
    exchange_class = getattr(ccxt_async, exchange_id)
    exchange = exchange_class(
        {
            "apiKey": settings.api_key.get_secret_value(),
            "secret": settings.api_secret.get_secret_value(),
            "enableRateLimit": True,
        }
    )
    if settings.sandbox:
        exchange.set_sandbox_mode(True)
    return exchange


class CcxtExchanges:
    """Shares one ccxt instance per exchange id across venues.

    Usage:
        exchanges = CcxtExchanges(settings)
        await exchanges.connect()
        try:
            ...
        finally:
            await exchanges.close()
    """

    def __init__(self, settings: VenueSettings) -> None:
        self._settings = settings
        self._exchanges: dict[str, ccxt_async.Exchange] = {}

    def get(self, exchange_id: str) -> ccxt_async.Exchange:
        if exchange_id not in self._exchanges:
            self._exchanges[exchange_id] = create_exchange(exchange_id, self._settings)
        return self._exchanges[exchange_id]

    @property
    def by_id(self) -> dict[str, ccxt_async.Exchange]:
        return dict(self._exchanges)

    async def connect(self) -> None:
        """Load markets on every exchange in use."""
        for exchange_id, exchange in self._exchanges.items():
            markets = await exchange.load_markets()
            logger.info("exchange_connected", exchange=exchange_id, market_count=len(markets))

    async def close(self) -> None:
        """Clean up ccxt async resources. CRITICAL: must be called to avoid resource leaks."""
        for exchange_id, exchange in self._exchanges.items():
            await exchange.close()
            logger.info("exchange_closed", exchange=exchange_id)


class CcxtSpotVenue(SpotVenue):
    """Spot market orders priced from the top of book.

    Args:
        exchange: ccxt exchange with a spot market for base/quote.
        base_asset: Traded asset.
        quote_asset: Settlement asset.
    """

    def __init__(
        self, exchange: ccxt_async.Exchange, base_asset: str, quote_asset: str
    ) -> None:
        self._exchange = exchange
        self._base = base_asset
        self._quote = quote_asset
        self._symbol = f"{base_asset}/{quote_asset}"

    def _taker_fee(self) -> Decimal:
        market = self._exchange.markets.get(self._symbol) if self._exchange.markets else None
        return _dec(market.get("taker")) if market else _ZERO

    async def quote(
        self,
        from_asset: str,
        to_asset: str,
        amount: Decimal,
        exact_out: bool = False,
    ) -> SwapRoute | None:
        if amount <= 0 or {from_asset, to_asset} != {self._base, self._quote}:
            return None
        ticker = await self._exchange.fetch_ticker(self._symbol)
        fee = self._taker_fee()
        buying = from_asset == self._quote
        price = _dec(ticker.get("ask") if buying else ticker.get("bid"))
        if price <= 0:
            return None

        rate = (_ONE / price if buying else price) * (_ONE - fee)
        if exact_out:
            amount_in, amount_out = amount / rate, amount
        else:
            amount_in, amount_out = amount, amount * rate
        return SwapRoute(
            from_asset=from_asset,
            to_asset=to_asset,
            amount_in=amount_in,
            amount_out=amount_out,
            path=(self._symbol,),
            exact_out=exact_out,
        )

    async def build_swap_tx(
        self, route: SwapRoute, slippage_bps: int, recipient: str
    ) -> PreparedTransaction:
        buying = route.from_asset == self._quote
        base_amount = route.amount_out if buying else route.amount_in
        return PreparedTransaction(
            venue=self._exchange.id,
            action="spot_order",
            payload={
                "symbol": self._symbol,
                "side": "buy" if buying else "sell",
                "amount": float(self._exchange.amount_to_precision(self._symbol, float(base_amount))),
                "params": {"slippageBps": slippage_bps},
            },
        )

    async def round_trip_cost_bps(
        self, from_asset: str, to_asset: str, amount: Decimal
    ) -> Decimal:
        there = await self.quote(from_asset, to_asset, amount)
        if there is None:
            return _ZERO
        back = await self.quote(to_asset, from_asset, there.amount_out)
        if back is None:
            return _ZERO
        return max((amount - back.amount_out) / amount * Decimal("10000"), _ZERO)


class CcxtPerpVenue(PerpVenue):
    """Linear perpetual swap market.

    Args:
        exchange: ccxt exchange with a linear swap market.
        base_asset: Hedged asset.
        quote_asset: Margin asset.
        default_max_leverage: Used when the market reports no leverage limit.
    """

    def __init__(
        self,
        exchange: ccxt_async.Exchange,
        base_asset: str,
        quote_asset: str,
        default_max_leverage: Decimal = Decimal("20"),
    ) -> None:
        self._exchange = exchange
        self._quote = quote_asset
        self._symbol = f"{base_asset}/{quote_asset}:{quote_asset}"
        self._default_max_leverage = default_max_leverage

    def _market(self) -> dict:
        market = (self._exchange.markets or {}).get(self._symbol)
        if not market:
            raise ValueError(f"Symbol {self._symbol} not found in loaded markets")
        return market

    async def get_pair_limits(self, pair: str) -> PairLimits:
        market = self._market()
        limits = market.get("limits", {})
        price = await self.get_mark_price(pair)
        min_amount = _dec(limits.get("amount", {}).get("min"))
        min_cost = _dec(limits.get("cost", {}).get("min"))
        max_leverage = _dec(limits.get("leverage", {}).get("max")) or self._default_max_leverage
        return PairLimits(
            min_size=max(min_amount * price, min_cost),
            min_collateral=_ZERO,
            max_leverage=max_leverage,
        )

    async def get_funding_rate(self, pair: str) -> FundingRate:
        data = await self._exchange.fetch_funding_rate(self._symbol)
        rate = _dec(data.get("fundingRate"))
        interval = str(data.get("interval") or "8h")
        hours = Decimal(interval.rstrip("h")) if interval.endswith("h") else Decimal("8")
        ts = data.get("timestamp")
        return FundingRate(
            pair=pair,
            rate_pct_per_hour=rate * Decimal("100") / hours,
            observed_at=float(ts) / 1000.0 if ts else time.time(),
        )

    async def get_mark_price(self, pair: str) -> Decimal:
        ticker = await self._exchange.fetch_ticker(self._symbol)
        return _dec(ticker.get("markPrice") or ticker.get("last"))

    async def get_position(self, pair: str) -> PerpPosition | None:
        positions = await self._exchange.fetch_positions([self._symbol])
        for position in positions:
            contracts = _dec(position.get("contracts"))
            if position.get("symbol") != self._symbol or contracts <= 0:
                continue
            notional = _dec(position.get("notional")).copy_abs()
            return PerpPosition(
                pair=pair,
                is_long=position.get("side") == "long",
                size=notional,
                collateral=_dec(position.get("collateral") or position.get("initialMargin")),
                average_entry_price=_dec(position.get("entryPrice")),
            )
        return None

    async def get_collateral_balance(self) -> Decimal:
        balance = await self._exchange.fetch_balance({"type": "swap"})
        return _dec(balance.get("free", {}).get(self._quote))

    async def deposit_collateral(self, amount: Decimal) -> PreparedTransaction:
        return PreparedTransaction(
            venue=self._exchange.id,
            action="transfer",
            payload={"code": self._quote, "amount": float(amount), "from": "spot", "to": "swap"},
        )

    async def release_collateral(self) -> PreparedTransaction | None:
        free = await self.get_collateral_balance()
        if free <= 0:
            return None
        return PreparedTransaction(
            venue=self._exchange.id,
            action="transfer",
            payload={"code": self._quote, "amount": float(free), "from": "swap", "to": "spot"},
        )

    async def place_market_order(
        self,
        pair: str,
        size_delta: Decimal,
        collateral_delta: Decimal,
        is_long: bool,
        is_increase: bool,
    ) -> PreparedTransaction:
        price = await self.get_mark_price(pair)
        amount = size_delta / price if price > 0 else _ZERO
        if is_increase:
            side = "buy" if is_long else "sell"
            leverage = (
                (size_delta / collateral_delta).to_integral_value(rounding=ROUND_UP)
                if collateral_delta > 0
                else None
            )
            params: dict = {}
        else:
            side = "sell" if is_long else "buy"
            leverage = None
            params = {"reduceOnly": True}
        return PreparedTransaction(
            venue=self._exchange.id,
            action="perp_order",
            payload={
                "symbol": self._symbol,
                "side": side,
                "amount": float(self._exchange.amount_to_precision(self._symbol, float(amount))),
                "leverage": int(leverage) if leverage else None,
                "params": params,
            },
        )

    async def round_trip_cost_bps(self, pair: str) -> Decimal:
        return _dec(self._market().get("taker")) * 2 * Decimal("10000")


class CcxtLendingVenue(LendingVenue):
    """Cross margin account used as the money market.

    Collateral is whatever quote balance sits in the cross margin account;
    loans are the account's debt in the base asset.
    """

    def __init__(self, exchange: ccxt_async.Exchange) -> None:
        self._exchange = exchange

    async def _margin_balance(self) -> dict:
        return await self._exchange.fetch_balance({"type": "margin", "marginMode": "cross"})

    async def get_outstanding_loan(self, asset: str, profile: str) -> Decimal:
        balance = await self._margin_balance()
        return _dec(balance.get("debt", {}).get(asset))

    async def get_deposited_collateral(self, asset: str, profile: str) -> Decimal:
        balance = await self._margin_balance()
        return _dec(balance.get("total", {}).get(asset))

    def _transfer(self, asset: str, amount: Decimal, source: str, target: str) -> PreparedTransaction:
        return PreparedTransaction(
            venue=self._exchange.id,
            action="transfer",
            payload={"code": asset, "amount": float(amount), "from": source, "to": target},
        )

    async def deposit_collateral(
        self, asset: str, amount: Decimal, profile: str
    ) -> PreparedTransaction:
        return self._transfer(asset, amount, "spot", "margin")

    async def withdraw_collateral(
        self, asset: str, amount: Decimal, profile: str
    ) -> PreparedTransaction:
        return self._transfer(asset, amount, "margin", "spot")

    async def borrow(
        self, asset: str, amount: Decimal, profile: str
    ) -> PreparedTransaction:
        return PreparedTransaction(
            venue=self._exchange.id,
            action="borrow_cross_margin",
            payload={"code": asset, "amount": float(amount)},
        )

    async def repay(
        self, asset: str, amount: Decimal, profile: str
    ) -> PreparedTransaction:
        return PreparedTransaction(
            venue=self._exchange.id,
            action="repay_cross_margin",
            payload={"code": asset, "amount": float(amount)},
        )

    async def get_borrow_apr(self, asset: str) -> Decimal:
        data = await self._exchange.fetch_cross_borrow_rate(asset)
        rate = _dec(data.get("rate"))
        period = _dec(data.get("period")) or Decimal(86400000)
        return rate * _MS_PER_YEAR / period


class CcxtWallet(CustodialWallet):
    """Exchange spot account; payouts are on-chain withdrawals."""

    def __init__(
        self, exchange: ccxt_async.Exchange, address: str, network: str | None = None
    ) -> None:
        self._exchange = exchange
        self._address = address
        self._network = network

    @property
    def address(self) -> str:
        return self._address

    async def get_balance(self, asset: str) -> Decimal:
        balance = await self._exchange.fetch_balance()
        return _dec(balance.get("free", {}).get(asset))

    async def build_transfer(
        self, asset: str, amount: Decimal, recipient: str
    ) -> PreparedTransaction:
        params = {"network": self._network} if self._network else {}
        return PreparedTransaction(
            venue=self._exchange.id,
            action="withdraw",
            payload={
                "code": asset,
                "amount": float(amount),
                "address": recipient,
                "params": params,
            },
        )


class CcxtChainClient(ChainClient):
    """Executes prepared transactions through the matching ccxt exchange.

    Orders are confirmed by re-fetching their status; transfers, borrows,
    repays and withdrawals are confirmed by the call's own response.
    """

    def __init__(self, exchanges: CcxtExchanges) -> None:
        self._exchanges = exchanges
        self._results: dict[str, dict] = {}

    async def submit(self, tx: PreparedTransaction) -> PendingTransaction:
        exchange = self._exchanges.get(tx.venue)
        p = tx.payload

        if tx.action in ("spot_order", "perp_order"):
            if p.get("leverage"):
                await exchange.set_leverage(p["leverage"], p["symbol"])
            result = await exchange.create_order(
                p["symbol"], "market", p["side"], p["amount"], None, p.get("params") or {}
            )
        elif tx.action == "transfer":
            result = await exchange.transfer(p["code"], p["amount"], p["from"], p["to"])
        elif tx.action == "borrow_cross_margin":
            result = await exchange.borrow_cross_margin(p["code"], p["amount"])
        elif tx.action == "repay_cross_margin":
            result = await exchange.repay_cross_margin(p["code"], p["amount"])
        elif tx.action == "withdraw":
            result = await exchange.withdraw(
                p["code"], p["amount"], p["address"], None, p.get("params") or {}
            )
        else:
            raise ValueError(f"Unsupported action {tx.action}")

        reference = str(result.get("id") or result.get("txid") or f"{tx.action}-{len(self._results)}")
        self._results[reference] = result
        logger.info("ccxt_tx_submitted", venue=tx.venue, action=tx.action, reference=reference)
        return PendingTransaction(reference=reference, tx=tx)

    async def confirm(self, pending: PendingTransaction) -> TxReceipt:
        tx = pending.tx
        result = self._results.pop(pending.reference, {})

        if tx.action in ("spot_order", "perp_order"):
            exchange = self._exchanges.get(tx.venue)
            order = await exchange.fetch_order(pending.reference, tx.payload["symbol"])
            status = order.get("status")
            if status in ("canceled", "rejected", "expired"):
                return TxReceipt(
                    reference=pending.reference,
                    success=False,
                    error=f"order {status}",
                )
            fee_info = order.get("fee") or {}
            filled = _dec(order.get("filled"))
            cost = _dec(order.get("cost"))
            buying = order.get("side") == "buy"
            return TxReceipt(
                reference=pending.reference,
                success=True,
                amount_in=cost if buying else filled,
                amount_out=filled if buying else cost,
                fee=_dec(fee_info.get("cost")),
            )

        status = result.get("status")
        if status in ("failed", "canceled", "rejected"):
            return TxReceipt(reference=pending.reference, success=False, error=f"{tx.action} {status}")
        amount = _dec(result.get("amount") or tx.payload.get("amount"))
        return TxReceipt(
            reference=pending.reference,
            success=True,
            amount_in=amount,
            amount_out=amount,
        )
