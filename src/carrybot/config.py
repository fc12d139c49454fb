"""Configuration system using pydantic-settings with environment variable loading."""

from decimal import Decimal
from typing import Literal

from pydantic import SecretStr
from pydantic_settings import BaseSettings, SettingsConfigDict


class VenueSettings(BaseSettings):
    """Venue connection settings.

    In paper mode every venue is simulated in-process. In live mode the spot,
    perp and lending venues are ccxt exchanges (the same exchange id may be
    used for all three).
    """

    model_config = SettingsConfigDict(env_prefix="VENUE_")

    mode: Literal["paper", "live"] = "paper"
    spot_exchange: str = "bybit"
    perp_exchange: str = "bybit"
    lending_exchange: str = "bybit"
    api_key: SecretStr = SecretStr("")
    api_secret: SecretStr = SecretStr("")
    sandbox: bool = False
    lending_profile: str = "main"


class WalletSettings(BaseSettings):
    """Custodial wallet and asset identities."""

    model_config = SettingsConfigDict(env_prefix="WALLET_")

    custodial_address: str = "0x" + "0" * 64
    depositor_address: str = ""  # may also be registered at runtime
    settlement_asset: str = "USDC"
    base_asset: str = "APT"
    settlement_decimals: int = 6
    base_decimals: int = 8


class TradingSettings(BaseSettings):
    """Strategy execution parameters."""

    model_config = SettingsConfigDict(env_prefix="TRADING_")

    pair: str = "APT_USD"
    poll_interval: float = 10.0  # seconds between deposit checks
    slippage_bps: int = 50
    target_leverage: Decimal = Decimal("2")
    default_max_leverage: Decimal = Decimal("20")  # when the venue reports none
    check_profitability: bool = True
    min_net_funding_pct_per_hour: Decimal = Decimal("0")


class CostSettings(BaseSettings):
    """Breakeven cost assumptions.

    Round-trip bps left as None are estimated from the venues at decision time.
    """

    model_config = SettingsConfigDict(env_prefix="COST_")

    spot_round_trip_bps: Decimal | None = None
    perp_round_trip_bps: Decimal | None = None
    gas_round_trip_bps: Decimal = Decimal("5")
    capital_apr_pct: Decimal = Decimal("6")
    hold_hours: Decimal = Decimal("168")
    funding_std_pct_per_hr: Decimal = Decimal("0")
    z_score: Decimal = Decimal("0")
    basis_premium_pct_per_hr: Decimal = Decimal("0")


class LendingSettings(BaseSettings):
    """Money-market parameters for the borrow leg."""

    model_config = SettingsConfigDict(env_prefix="LENDING_")

    collateral_ratio: Decimal = Decimal("1.5")  # $1.50 collateral per $1 borrowed
    dust_threshold: Decimal = Decimal("0.01")  # in collateral asset units


class SettlementSettings(BaseSettings):
    """Performance fee policy."""

    model_config = SettingsConfigDict(env_prefix="SETTLEMENT_")

    fee_bps: int = 2000  # 20% of profit


class FeedSettings(BaseSettings):
    """Aptos indexer deposit feed."""

    model_config = SettingsConfigDict(env_prefix="FEED_")

    indexer_url: str = "https://indexer.mainnet.aptoslabs.com/v1/graphql"
    api_key: SecretStr = SecretStr("")
    asset_type: str = (
        "0xbae207659db88bea0cbead6da0ed00aac12edcdda169e591cd41c94180b46f3b"
    )  # native USDC metadata object (mainnet)
    timeout_seconds: float = 10.0


class StorageSettings(BaseSettings):
    """Persistent state location."""

    model_config = SettingsConfigDict(env_prefix="STORAGE_")

    db_path: str = "data/carrybot.db"


class ApiSettings(BaseSettings):
    """Control API server configuration."""

    model_config = SettingsConfigDict(env_prefix="API_")

    host: str = "127.0.0.1"
    port: int = 8080
    enabled: bool = True


class PaperSettings(BaseSettings):
    """Simulated venue parameters for paper mode."""

    model_config = SettingsConfigDict(env_prefix="PAPER_")

    base_price: Decimal = Decimal("10")
    funding_pct_per_hour: Decimal = Decimal("0.002")
    spot_fee: Decimal = Decimal("0.003")  # 0.3% swap fee
    perp_taker_fee: Decimal = Decimal("0.0005")
    slippage: Decimal = Decimal("0.0005")
    min_size: Decimal = Decimal("2")
    min_collateral: Decimal = Decimal("2")
    max_leverage: Decimal = Decimal("150")
    reserve_utilization: Decimal = Decimal("0.6")
    reserve_optimal_utilization: Decimal = Decimal("0.8")
    reserve_base_rate: Decimal = Decimal("0")
    reserve_slope1: Decimal = Decimal("0.07")
    reserve_slope2: Decimal = Decimal("3")


class AppSettings(BaseSettings):
    """Root application settings, composing all sub-settings."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        env_nested_delimiter="__",
    )

    log_level: str = "INFO"
    log_format: Literal["console", "json"] = "console"
    venue: VenueSettings = VenueSettings()
    wallet: WalletSettings = WalletSettings()
    trading: TradingSettings = TradingSettings()
    cost: CostSettings = CostSettings()
    lending: LendingSettings = LendingSettings()
    settlement: SettlementSettings = SettlementSettings()
    feed: FeedSettings = FeedSettings()
    storage: StorageSettings = StorageSettings()
    api: ApiSettings = ApiSettings()
    paper: PaperSettings = PaperSettings()
