"""Persistent stores for the watermark, the strategy run and the saga journal.

The orchestrator depends only on the WatermarkStore and StrategyRunStore
interfaces; the SQLite implementations keep all SQL behind them.

CRITICAL: All monetary values stored as TEXT in SQLite, restored as Decimal on read.
"""

import json
import time
import uuid
from abc import ABC, abstractmethod
from decimal import Decimal

from carrybot.logging import get_logger
from carrybot.models import (
    DepositClass,
    DepositEvent,
    Direction,
    RunPhase,
    StepRecord,
    StrategyRun,
)
from carrybot.storage.database import StateDatabase

logger = get_logger(__name__)


def next_run_id() -> str:
    return uuid.uuid4().hex[:12]


def new_run(depositor_address: str | None = None) -> StrategyRun:
    """Fresh zero-deposit run. Only the depositor registration carries over."""
    return StrategyRun(
        run_id=next_run_id(),
        depositor_address=depositor_address,
    )


class WatermarkStore(ABC):
    """Grow-only set of deposit versions already classified."""

    @abstractmethod
    async def record(self, version: str, classification: DepositClass) -> bool:
        """Record version. Returns False if it was already present."""
        ...

    @abstractmethod
    async def has_seen(self, version: str) -> bool:
        ...

    @abstractmethod
    async def count(self) -> int:
        ...


class StrategyRunStore(ABC):
    """The single strategy run, its saga journal and the matched-deposit ledger."""

    @abstractmethod
    async def load(self) -> StrategyRun:
        """Return the current run, creating an idle one if none exists."""
        ...

    @abstractmethod
    async def save(self, run: StrategyRun) -> None:
        ...

    @abstractmethod
    async def record_step(self, record: StepRecord) -> None:
        """Journal a completed step. Re-recording the same step overwrites it."""
        ...

    @abstractmethod
    async def completed_steps(self, run_id: str, batch: str) -> dict[str, StepRecord]:
        """Return journaled steps for one batch, keyed by step name."""
        ...

    @abstractmethod
    async def record_deposit(self, run_id: str, event: DepositEvent) -> None:
        """Append a matched deposit to the reconciliation ledger."""
        ...

    @abstractmethod
    async def list_deposits(self, limit: int = 50) -> list[dict]:
        """Return recent matched deposits, newest first."""
        ...


class SqliteWatermarkStore(WatermarkStore):
    """WatermarkStore backed by the seen_versions table.

    Usage:
        async with StateDatabase("data/carrybot.db") as database:
            store = SqliteWatermarkStore(database)
            is_new = await store.record("12345", DepositClass.NEW_MATCHING)
    """

    def __init__(self, database: StateDatabase) -> None:
        self._database = database

    async def record(self, version: str, classification: DepositClass) -> bool:
        cursor = await self._database.db.execute(
            "INSERT OR IGNORE INTO seen_versions (version, classification, seen_at) "
            "VALUES (?, ?, ?)",
            (version, classification.value, time.time()),
        )
        await self._database.db.commit()
        return cursor.rowcount == 1

    async def has_seen(self, version: str) -> bool:
        cursor = await self._database.db.execute(
            "SELECT 1 FROM seen_versions WHERE version = ?", (version,)
        )
        return await cursor.fetchone() is not None

    async def count(self) -> int:
        cursor = await self._database.db.execute("SELECT COUNT(*) FROM seen_versions")
        row = await cursor.fetchone()
        return int(row[0]) if row else 0


class SqliteStrategyRunStore(StrategyRunStore):
    """StrategyRunStore backed by the strategy_run, saga_steps and deposits tables."""

    def __init__(self, database: StateDatabase) -> None:
        self._database = database

    async def load(self) -> StrategyRun:
        cursor = await self._database.db.execute(
            "SELECT run_id, direction, phase, tracked_deposit_total, active_batch, "
            "active_amount, spot_holdings, depositor_address, last_error, updated_at "
            "FROM strategy_run WHERE id = 1"
        )
        row = await cursor.fetchone()
        if row is None:
            run = new_run()
            await self.save(run)
            return run

        return StrategyRun(
            run_id=row[0],
            direction=Direction(row[1]) if row[1] else None,
            phase=RunPhase(row[2]),
            tracked_deposit_total=Decimal(row[3]),
            active_batch=row[4],
            active_amount=Decimal(row[5]),
            spot_holdings=Decimal(row[6]),
            depositor_address=row[7],
            last_error=row[8],
            updated_at=row[9],
        )

    async def save(self, run: StrategyRun) -> None:
        run.updated_at = time.time()
        await self._database.db.execute(
            "INSERT OR REPLACE INTO strategy_run "
            "(id, run_id, direction, phase, tracked_deposit_total, active_batch, "
            "active_amount, spot_holdings, depositor_address, last_error, updated_at) "
            "VALUES (1, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)",
            (
                run.run_id,
                run.direction.value if run.direction else None,
                run.phase.value,
                str(run.tracked_deposit_total),
                run.active_batch,
                str(run.active_amount),
                str(run.spot_holdings),
                run.depositor_address,
                run.last_error,
                run.updated_at,
            ),
        )
        await self._database.db.commit()
        logger.debug(
            "strategy_run_saved",
            run_id=run.run_id,
            phase=run.phase.value,
            tracked_deposit_total=str(run.tracked_deposit_total),
        )

    async def record_step(self, record: StepRecord) -> None:
        await self._database.db.execute(
            "INSERT OR REPLACE INTO saga_steps "
            "(run_id, batch, step, detail, completed_at) VALUES (?, ?, ?, ?, ?)",
            (
                record.run_id,
                record.batch,
                record.step,
                json.dumps(record.detail, sort_keys=True),
                record.completed_at,
            ),
        )
        await self._database.db.commit()

    async def completed_steps(self, run_id: str, batch: str) -> dict[str, StepRecord]:
        cursor = await self._database.db.execute(
            "SELECT step, detail, completed_at FROM saga_steps "
            "WHERE run_id = ? AND batch = ? ORDER BY completed_at ASC",
            (run_id, batch),
        )
        rows = await cursor.fetchall()
        return {
            row[0]: StepRecord(
                run_id=run_id,
                batch=batch,
                step=row[0],
                detail=json.loads(row[1]),
                completed_at=row[2],
            )
            for row in rows
        }

    async def record_deposit(self, run_id: str, event: DepositEvent) -> None:
        await self._database.db.execute(
            "INSERT OR IGNORE INTO deposits "
            "(version, run_id, from_address, amount, recorded_at) VALUES (?, ?, ?, ?, ?)",
            (event.version, run_id, event.from_address, str(event.amount), time.time()),
        )
        await self._database.db.commit()

    async def list_deposits(self, limit: int = 50) -> list[dict]:
        cursor = await self._database.db.execute(
            "SELECT version, run_id, from_address, amount, recorded_at FROM deposits "
            "ORDER BY recorded_at DESC, rowid DESC LIMIT ?",
            (limit,),
        )
        rows = await cursor.fetchall()
        return [
            {
                "version": row[0],
                "run_id": row[1],
                "from_address": row[2],
                "amount": Decimal(row[3]),
                "recorded_at": row[4],
            }
            for row in rows
        ]
