"""State persistence layer.

Provides the SQLite connection manager and the watermark and strategy run
stores the orchestrator depends on.
"""

from carrybot.storage.database import StateDatabase
from carrybot.storage.store import (
    SqliteStrategyRunStore,
    SqliteWatermarkStore,
    StrategyRunStore,
    WatermarkStore,
    new_run,
)

__all__ = [
    "SqliteStrategyRunStore",
    "SqliteWatermarkStore",
    "StateDatabase",
    "StrategyRunStore",
    "WatermarkStore",
    "new_run",
]
