"""
Tidemark - Durable checkpoint and replay engine for stateful agents

Tidemark wraps any object with an async ``process(message)`` method so that
its per-session state is checkpointed, survives restarts, and can be replayed.

Quick Start:
    from tidemark import make_durable, Message

    durable = make_durable(my_agent, "./checkpoints", checkpoint_interval=5)
    response = await durable.process(Message(role="user", content="hi"), session_id="s1")

From a config file:
    from tidemark import DurableAgent, load_config

    durable = DurableAgent.from_config(my_agent, load_config("checkpointing.yaml"))
"""

__version__ = "0.1.0"

from .message import Message
from .protocols import AgentProtocol

from .checkpoint import (
    # Errors
    CheckpointError,
    CheckpointStorageError,
    CheckpointSerializationError,
    CheckpointConfigError,
    InvalidParentError,
    ReplayError,
    # Models
    Checkpoint,
    CheckpointMetadata,
    CheckpointTree,
    CheckpointDiff,
    SessionStats,
    # Storage
    CheckpointStorage,
    MemoryStorage,
    FileStorage,
    SQLiteStorage,
    # Manager
    CheckpointManager,
    # Durable execution
    DurableAgent,
    make_durable,
)

from .config import CheckpointConfig, load_config, create_storage

__all__ = [
    "__version__",
    "Message",
    "AgentProtocol",
    "CheckpointError",
    "CheckpointStorageError",
    "CheckpointSerializationError",
    "CheckpointConfigError",
    "InvalidParentError",
    "ReplayError",
    "Checkpoint",
    "CheckpointMetadata",
    "CheckpointTree",
    "CheckpointDiff",
    "SessionStats",
    "CheckpointStorage",
    "MemoryStorage",
    "FileStorage",
    "SQLiteStorage",
    "CheckpointManager",
    "DurableAgent",
    "make_durable",
    "CheckpointConfig",
    "load_config",
    "create_storage",
]
