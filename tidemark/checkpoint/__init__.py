"""
Tidemark Checkpoint System - Durable checkpoints, resume and replay

This module captures a session's state at discrete steps, persists it, and
rebuilds the session after a restart or a failure.

Key Features:
- Parent-linked history per session
- Auto-checkpoint every N steps
- Resume from the latest (or any) checkpoint
- Rollback of in-memory state when the wrapped agent fails
- Replay of a session's history through a callback
- Retention pruning

Storage Backends:
- Memory (testing/development)
- File (one JSON document per checkpoint)
- SQLite (local development)

Example usage:
    from tidemark.checkpoint import DurableAgent, FileStorage

    durable = DurableAgent(my_agent, storage=FileStorage("./checkpoints"), checkpoint_interval=5)
    response = await durable.process(message, session_id="session-1")

    # Replay the session's history
    results = await durable.manager.replay_from_checkpoint(checkpoint_id, replay_fn)
"""

from .errors import (
    CheckpointError,
    CheckpointStorageError,
    CheckpointSerializationError,
    CheckpointConfigError,
    InvalidParentError,
    ReplayError,
)

from .models import (
    Checkpoint,
    CheckpointMetadata,
    CheckpointTree,
    CheckpointDiff,
    SessionStats,
)

from .storage import (
    CheckpointStorage,
    MemoryStorage,
)

from .file_storage import FileStorage
from .sqlite_storage import SQLiteStorage

from .manager import CheckpointManager

from .durable import (
    DurableAgent,
    make_durable,
)

__all__ = [
    # Errors
    "CheckpointError",
    "CheckpointStorageError",
    "CheckpointSerializationError",
    "CheckpointConfigError",
    "InvalidParentError",
    "ReplayError",
    # Models
    "Checkpoint",
    "CheckpointMetadata",
    "CheckpointTree",
    "CheckpointDiff",
    "SessionStats",
    # Storage
    "CheckpointStorage",
    "MemoryStorage",
    "FileStorage",
    "SQLiteStorage",
    # Manager
    "CheckpointManager",
    # Durable execution
    "DurableAgent",
    "make_durable",
]
