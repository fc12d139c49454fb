"""Venue layer -- abstract interfaces, paper simulation and ccxt exchanges."""

from carrybot.venues.base import (
    ChainClient,
    CustodialWallet,
    DepositFeed,
    LendingVenue,
    PerpVenue,
    SpotVenue,
    execute_transaction,
)

__all__ = [
    "ChainClient",
    "CustodialWallet",
    "DepositFeed",
    "LendingVenue",
    "PerpVenue",
    "SpotVenue",
    "execute_transaction",
]
