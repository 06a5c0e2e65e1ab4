"""Tests for tidemark.checkpoint.sqlite_storage.SQLiteStorage

Behaviour shared with the other backends lives in test_storage_contract.py.
"""

import sqlite3
import pytest
from datetime import datetime, timedelta, timezone

from tidemark.checkpoint.errors import CheckpointSerializationError
from tidemark.checkpoint.models import Checkpoint
from tidemark.checkpoint.sqlite_storage import SQLiteStorage

BASE_TIME = datetime(2025, 1, 15, 10, 0, 0, tzinfo=timezone.utc)


def _make_checkpoint(checkpoint_id="ckpt_001", session_id="session_1", step_number=1, timestamp=None):
    return Checkpoint(
        checkpoint_id=checkpoint_id,
        session_id=session_id,
        agent_name="test_agent",
        step_number=step_number,
        timestamp=timestamp or BASE_TIME,
        state={"counter": step_number},
    )


@pytest.fixture
def db_path(tmp_path):
    return str(tmp_path / "checkpoints.db")


@pytest.fixture
def storage(db_path):
    return SQLiteStorage(db_path)


class TestSQLiteStorage:
    async def test_persists_across_instances(self, db_path, storage):
        await storage.save(_make_checkpoint())
        reopened = SQLiteStorage(db_path)
        loaded = await reopened.load("ckpt_001")
        assert loaded is not None
        assert loaded.state == {"counter": 1}

    async def test_row_columns(self, db_path, storage):
        await storage.save(_make_checkpoint(step_number=4))
        with sqlite3.connect(db_path) as conn:
            row = conn.execute(
                "SELECT id, session_id, agent_name, step_number FROM checkpoints"
            ).fetchone()
        assert row == ("ckpt_001", "session_1", "test_agent", 4)

    async def test_orders_by_instant_across_offsets(self, storage):
        plus_two = timezone(timedelta(hours=2))
        # 11:30+02:00 is 09:30 UTC, earlier than BASE_TIME
        await storage.save(_make_checkpoint(
            checkpoint_id="earlier", timestamp=datetime(2025, 1, 15, 11, 30, tzinfo=plus_two),
        ))
        await storage.save(_make_checkpoint(checkpoint_id="later", step_number=2))
        result = await storage.list_checkpoints("session_1")
        assert [c.checkpoint_id for c in result] == ["later", "earlier"]

    async def test_list_skips_malformed_rows(self, db_path, storage):
        await storage.save(_make_checkpoint(checkpoint_id="good"))
        with sqlite3.connect(db_path) as conn:
            conn.execute(
                "INSERT INTO checkpoints (id, session_id, agent_name, step_number, data, timestamp) "
                "VALUES (?, ?, ?, ?, ?, ?)",
                ("bad", "session_1", "test_agent", 9, "{not json", "2099-01-01T00:00:00.000000+00:00"),
            )
        result = await storage.list_checkpoints("session_1")
        assert [c.checkpoint_id for c in result] == ["good"]

    async def test_load_malformed_row_raises(self, db_path, storage):
        await storage.save(_make_checkpoint())
        with sqlite3.connect(db_path) as conn:
            conn.execute("UPDATE checkpoints SET data = ? WHERE id = ?", ("[]", "ckpt_001"))
        with pytest.raises(CheckpointSerializationError):
            await storage.load("ckpt_001")

    async def test_stats_include_db_path(self, db_path, storage):
        await storage.save(_make_checkpoint())
        stats = await storage.get_stats()
        assert stats["db_path"] == db_path
        assert stats["total_checkpoints"] == 1
