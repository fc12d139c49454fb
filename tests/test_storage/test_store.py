"""Tests for the SQLite state stores.

Each test opens a fresh database file under tmp_path.

Verifies:
- Schema creation and the single-row strategy run
- Decimal values survive the TEXT round trip exactly
- The watermark set is grow-only and persists across connections
- Saga steps are keyed by (run, batch, step) and re-recording overwrites
- Matched deposits are listed newest first
"""

from decimal import Decimal
from pathlib import Path

import pytest

from carrybot.models import DepositClass, DepositEvent, Direction, RunPhase, StepRecord
from carrybot.storage.database import StateDatabase
from carrybot.storage.store import SqliteStrategyRunStore, SqliteWatermarkStore, new_run


class TestStateDatabase:
    """Connection lifecycle."""

    @pytest.mark.asyncio
    async def test_creates_parent_directory(self, tmp_path: Path) -> None:
        path = tmp_path / "nested" / "state.db"

        async with StateDatabase(str(path)) as database:
            cursor = await database.db.execute("SELECT version FROM schema_version")
            row = await cursor.fetchone()

        assert path.exists()
        assert row[0] == 1

    def test_db_before_connect_raises(self, tmp_path: Path) -> None:
        with pytest.raises(RuntimeError):
            StateDatabase(str(tmp_path / "state.db")).db


class TestWatermarkStore:
    """seen_versions table."""

    @pytest.mark.asyncio
    async def test_record_once(self, tmp_path: Path) -> None:
        async with StateDatabase(str(tmp_path / "state.db")) as database:
            store = SqliteWatermarkStore(database)

            assert await store.record("100", DepositClass.NEW_MATCHING) is True
            assert await store.record("100", DepositClass.NEW_IRRELEVANT) is False
            assert await store.has_seen("100") is True
            assert await store.has_seen("101") is False
            assert await store.count() == 1

    @pytest.mark.asyncio
    async def test_survives_reconnect(self, tmp_path: Path) -> None:
        path = str(tmp_path / "state.db")
        async with StateDatabase(path) as database:
            await SqliteWatermarkStore(database).record("7", DepositClass.NEW_IRRELEVANT)

        async with StateDatabase(path) as database:
            store = SqliteWatermarkStore(database)
            assert await store.has_seen("7") is True
            assert await store.record("7", DepositClass.NEW_MATCHING) is False


class TestStrategyRunStore:
    """strategy_run, saga_steps and deposits tables."""

    @pytest.mark.asyncio
    async def test_load_creates_idle_run(self, tmp_path: Path) -> None:
        async with StateDatabase(str(tmp_path / "state.db")) as database:
            store = SqliteStrategyRunStore(database)

            run = await store.load()
            again = await store.load()

        assert run.phase == RunPhase.IDLE
        assert run.tracked_deposit_total == Decimal("0")
        assert again.run_id == run.run_id

    @pytest.mark.asyncio
    async def test_round_trip_preserves_decimals(self, tmp_path: Path) -> None:
        path = str(tmp_path / "state.db")
        run = new_run("0x" + "a" * 64)
        run.direction = Direction.SHORT_SPOT_LONG_PERP
        run.phase = RunPhase.FAILED
        run.tracked_deposit_total = Decimal("150.123456")
        run.active_batch = "987654"
        run.active_amount = Decimal("90.000001")
        run.spot_holdings = Decimal("5.98765432")
        run.last_error = "venue busy"

        async with StateDatabase(path) as database:
            await SqliteStrategyRunStore(database).save(run)

        async with StateDatabase(path) as database:
            loaded = await SqliteStrategyRunStore(database).load()

        assert loaded.run_id == run.run_id
        assert loaded.direction == Direction.SHORT_SPOT_LONG_PERP
        assert loaded.phase == RunPhase.FAILED
        assert loaded.tracked_deposit_total == Decimal("150.123456")
        assert loaded.active_batch == "987654"
        assert loaded.active_amount == Decimal("90.000001")
        assert loaded.spot_holdings == Decimal("5.98765432")
        assert loaded.depositor_address == "0x" + "a" * 64
        assert loaded.last_error == "venue busy"

    @pytest.mark.asyncio
    async def test_save_replaces_single_row(self, tmp_path: Path) -> None:
        async with StateDatabase(str(tmp_path / "state.db")) as database:
            store = SqliteStrategyRunStore(database)
            await store.save(new_run())
            fresh = new_run()
            await store.save(fresh)

            cursor = await database.db.execute("SELECT COUNT(*) FROM strategy_run")
            row = await cursor.fetchone()
            loaded = await store.load()

        assert row[0] == 1
        assert loaded.run_id == fresh.run_id

    @pytest.mark.asyncio
    async def test_steps_are_scoped_by_run_and_batch(self, tmp_path: Path) -> None:
        async with StateDatabase(str(tmp_path / "state.db")) as database:
            store = SqliteStrategyRunStore(database)
            await store.record_step(
                StepRecord(run_id="r1", batch="b1", step="spot_swap", detail={"spot_amount_out": "5.9"})
            )
            await store.record_step(StepRecord(run_id="r1", batch="b2", step="spot_swap"))
            await store.record_step(StepRecord(run_id="r2", batch="b1", step="perp_open"))

            steps = await store.completed_steps("r1", "b1")

        assert list(steps) == ["spot_swap"]
        assert steps["spot_swap"].detail == {"spot_amount_out": "5.9"}

    @pytest.mark.asyncio
    async def test_rerecording_a_step_overwrites(self, tmp_path: Path) -> None:
        async with StateDatabase(str(tmp_path / "state.db")) as database:
            store = SqliteStrategyRunStore(database)
            await store.record_step(StepRecord(run_id="r1", batch="b1", step="borrow", detail={"borrowed": "1"}))
            await store.record_step(StepRecord(run_id="r1", batch="b1", step="borrow", detail={"borrowed": "2"}))

            steps = await store.completed_steps("r1", "b1")

        assert steps["borrow"].detail == {"borrowed": "2"}

    @pytest.mark.asyncio
    async def test_deposits_newest_first(self, tmp_path: Path) -> None:
        async with StateDatabase(str(tmp_path / "state.db")) as database:
            store = SqliteStrategyRunStore(database)
            for version, amount in (("1", "10"), ("2", "20"), ("3", "30")):
                await store.record_deposit(
                    "r1",
                    DepositEvent(version=version, from_address="0xa", to_address="0xc", amount=Decimal(amount)),
                )
            # duplicate versions are ignored
            await store.record_deposit(
                "r1", DepositEvent(version="1", from_address="0xa", to_address="0xc", amount=Decimal("99"))
            )

            deposits = await store.list_deposits()
            latest = await store.list_deposits(limit=1)

        assert [d["version"] for d in deposits] == ["3", "2", "1"]
        assert deposits[2]["amount"] == Decimal("10")
        assert [d["version"] for d in latest] == ["3"]
