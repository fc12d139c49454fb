"""Deposit detection -- indexer and paper feeds plus the exactly-once watermark."""

from carrybot.deposits.feed import IndexerDepositFeed, PaperDepositFeed
from carrybot.deposits.watermark import DepositWatermark, same_address, to_long_address

__all__ = [
    "DepositWatermark",
    "IndexerDepositFeed",
    "PaperDepositFeed",
    "same_address",
    "to_long_address",
]
