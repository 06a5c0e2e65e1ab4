"""
Tidemark SQLite Storage - Local database backend

Each checkpoint is one row. The full JSON document lives in the ``data``
column; the other columns exist for filtering and ordering.
"""

from datetime import datetime, timezone
from typing import Dict, Any, List, Optional
import logging
import sqlite3

import aiosqlite

from .errors import CheckpointSerializationError, CheckpointStorageError
from .models import Checkpoint
from .storage import CheckpointStorage

logger = logging.getLogger(__name__)


def _sortable_timestamp(timestamp: datetime) -> str:
    """Fixed-width UTC text so ORDER BY on the column matches time order"""
    if timestamp.tzinfo is None:
        timestamp = timestamp.replace(tzinfo=timezone.utc)
    return timestamp.astimezone(timezone.utc).strftime("%Y-%m-%dT%H:%M:%S.%f+00:00")


class SQLiteStorage(CheckpointStorage):
    """
    SQLite checkpoint storage for local development and single-host services.

    The table is created on first use. Every operation opens its own
    connection, so one instance can be shared across sessions.
    """

    def __init__(self, db_path: str = "checkpoints.db"):
        self.db_path = db_path
        self._initialized = False

    async def _ensure_initialized(self):
        """Initialize database tables if needed"""
        if self._initialized:
            return

        try:
            async with aiosqlite.connect(self.db_path) as db:
                await db.execute("""
                    CREATE TABLE IF NOT EXISTS checkpoints (
                        id TEXT PRIMARY KEY,
                        session_id TEXT NOT NULL,
                        agent_name TEXT NOT NULL,
                        step_number INTEGER NOT NULL,
                        data TEXT NOT NULL,
                        parent_checkpoint_id TEXT,
                        timestamp TEXT NOT NULL,
                        created_at TEXT DEFAULT CURRENT_TIMESTAMP
                    )
                """)
                await db.execute(
                    "CREATE INDEX IF NOT EXISTS idx_session_id ON checkpoints(session_id)"
                )
                await db.execute(
                    "CREATE INDEX IF NOT EXISTS idx_timestamp ON checkpoints(timestamp)"
                )
                await db.commit()
        except sqlite3.Error as e:
            raise CheckpointStorageError(f"Failed to initialize database {self.db_path}: {e}") from e

        self._initialized = True

    async def save(self, checkpoint: Checkpoint) -> str:
        """Save checkpoint to SQLite"""
        await self._ensure_initialized()
        data = checkpoint.to_json()

        try:
            async with aiosqlite.connect(self.db_path) as db:
                await db.execute(
                    """
                    INSERT OR REPLACE INTO checkpoints
                    (id, session_id, agent_name, step_number, data, parent_checkpoint_id, timestamp)
                    VALUES (?, ?, ?, ?, ?, ?, ?)
                    """,
                    (
                        checkpoint.checkpoint_id,
                        checkpoint.session_id,
                        checkpoint.agent_name,
                        checkpoint.step_number,
                        data,
                        checkpoint.parent_checkpoint_id,
                        _sortable_timestamp(checkpoint.timestamp),
                    )
                )
                await db.commit()
        except sqlite3.Error as e:
            raise CheckpointStorageError(
                f"Failed to save checkpoint {checkpoint.checkpoint_id}: {e}"
            ) from e

        logger.debug(f"Saved checkpoint {checkpoint.checkpoint_id} to {self.db_path}")
        return checkpoint.checkpoint_id

    async def load(self, checkpoint_id: str) -> Optional[Checkpoint]:
        """Load checkpoint from SQLite"""
        await self._ensure_initialized()

        try:
            async with aiosqlite.connect(self.db_path) as db:
                async with db.execute(
                    "SELECT data FROM checkpoints WHERE id = ?",
                    (checkpoint_id,)
                ) as cursor:
                    row = await cursor.fetchone()
        except sqlite3.Error as e:
            raise CheckpointStorageError(f"Failed to load checkpoint {checkpoint_id}: {e}") from e

        if row is None:
            return None
        return Checkpoint.from_json(row[0])

    async def list_checkpoints(self, session_id: str, limit: int = 0) -> List[Checkpoint]:
        """List checkpoints for session from SQLite, skipping malformed rows"""
        await self._ensure_initialized()

        query = """
            SELECT id, data FROM checkpoints
            WHERE session_id = ?
            ORDER BY timestamp DESC, step_number DESC
        """
        params: tuple = (session_id,)
        if limit > 0:
            query += " LIMIT ?"
            params = (session_id, limit)

        try:
            async with aiosqlite.connect(self.db_path) as db:
                async with db.execute(query, params) as cursor:
                    rows = await cursor.fetchall()
        except sqlite3.Error as e:
            raise CheckpointStorageError(f"Failed to list session {session_id}: {e}") from e

        checkpoints = []
        for row_id, data in rows:
            try:
                checkpoints.append(Checkpoint.from_json(data))
            except CheckpointSerializationError as e:
                logger.warning(f"Skipping malformed checkpoint row {row_id}: {e}")
        return checkpoints

    async def delete(self, checkpoint_id: str) -> bool:
        """Delete checkpoint from SQLite"""
        await self._ensure_initialized()

        try:
            async with aiosqlite.connect(self.db_path) as db:
                cursor = await db.execute(
                    "DELETE FROM checkpoints WHERE id = ?",
                    (checkpoint_id,)
                )
                await db.commit()
                return cursor.rowcount > 0
        except sqlite3.Error as e:
            raise CheckpointStorageError(f"Failed to delete checkpoint {checkpoint_id}: {e}") from e

    async def delete_session(self, session_id: str) -> int:
        """Delete all checkpoints for session"""
        await self._ensure_initialized()

        try:
            async with aiosqlite.connect(self.db_path) as db:
                cursor = await db.execute(
                    "DELETE FROM checkpoints WHERE session_id = ?",
                    (session_id,)
                )
                await db.commit()
                return cursor.rowcount
        except sqlite3.Error as e:
            raise CheckpointStorageError(f"Failed to delete session {session_id}: {e}") from e

    async def get_stats(self) -> Dict[str, Any]:
        """Return storage statistics"""
        await self._ensure_initialized()

        try:
            async with aiosqlite.connect(self.db_path) as db:
                async with db.execute(
                    "SELECT session_id, COUNT(*) FROM checkpoints GROUP BY session_id"
                ) as cursor:
                    rows = await cursor.fetchall()
        except sqlite3.Error as e:
            raise CheckpointStorageError(f"Failed to collect storage stats: {e}") from e

        per_session = {session_id: count for session_id, count in rows}
        return {
            "total_checkpoints": sum(per_session.values()),
            "total_sessions": len(per_session),
            "checkpoints_per_session": per_session,
            "db_path": self.db_path,
        }
