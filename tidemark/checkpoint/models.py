"""
Tidemark Checkpoint Models - Data structures for checkpoint system

This module defines:
- Checkpoint: Full session snapshot at a point in time
- CheckpointMetadata: Lightweight metadata for listing
- CheckpointTree: Tree structure for branching sessions
- CheckpointDiff: What changed between two checkpoints
- SessionStats: Summary of a session's checkpoint history
"""

from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Dict, Any, List, Optional
import uuid
import json

from dateutil import parser as date_parser

from ..message import Message
from .errors import CheckpointSerializationError


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _parse_timestamp(value: Any) -> datetime:
    """Parse an ISO-8601 timestamp, treating naive values as UTC."""
    if isinstance(value, datetime):
        parsed = value
    elif isinstance(value, str):
        try:
            parsed = date_parser.isoparse(value)
        except (ValueError, OverflowError) as e:
            raise CheckpointSerializationError(f"Invalid timestamp {value!r}: {e}") from e
    else:
        raise CheckpointSerializationError(f"Invalid timestamp {value!r}")

    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def _require_str(data: Dict[str, Any], key: str) -> str:
    value = data.get(key)
    if not isinstance(value, str) or not value:
        raise CheckpointSerializationError(f"Checkpoint field '{key}' is missing or not a string")
    return value


def _require_int(data: Dict[str, Any], key: str) -> int:
    value = data.get(key)
    # bool is an int subclass; reject it explicitly
    if isinstance(value, bool):
        raise CheckpointSerializationError(f"Checkpoint field '{key}' must be an integer")
    if isinstance(value, int):
        return value
    if isinstance(value, float) and value.is_integer():
        return int(value)
    raise CheckpointSerializationError(f"Checkpoint field '{key}' must be an integer")


def _parse_message(value: Any) -> Message:
    if not isinstance(value, dict):
        raise CheckpointSerializationError(f"Message entry must be an object, got {value!r}")
    try:
        return Message.from_dict(value)
    except ValueError as e:
        raise CheckpointSerializationError(f"Invalid message entry: {e}") from e


def _optional_dict(data: Dict[str, Any], key: str) -> Dict[str, Any]:
    value = data.get(key)
    if value is None:
        return {}
    if not isinstance(value, dict):
        raise CheckpointSerializationError(f"Checkpoint field '{key}' must be an object")
    return value


@dataclass
class Checkpoint:
    """
    Complete session snapshot at a point in time.

    Captures:
    - The agent's working state
    - Every input/output exchanged so far
    - Auxiliary metadata (cost, tokens, tags)
    - Link to the previous checkpoint of the same session

    Checkpoints are never mutated after they are saved. Storage backends
    hand out copies.
    """
    # Identity
    checkpoint_id: str
    session_id: str
    agent_name: str

    # Position in the session
    step_number: int = 0
    timestamp: datetime = field(default_factory=_utcnow)

    # Snapshot
    state: Dict[str, Any] = field(default_factory=dict)
    messages: List[Message] = field(default_factory=list)
    metadata: Dict[str, Any] = field(default_factory=dict)

    # History link
    parent_checkpoint_id: Optional[str] = None

    def __post_init__(self):
        # Naive timestamps are UTC so every backend orders them the same way
        if self.timestamp.tzinfo is None:
            self.timestamp = self.timestamp.replace(tzinfo=timezone.utc)

    @classmethod
    def generate_id(cls) -> str:
        """Generate a unique checkpoint ID"""
        return f"ckpt_{uuid.uuid4().hex}"

    def to_dict(self) -> Dict[str, Any]:
        """Serialize checkpoint to the on-disk document shape"""
        data = {
            "checkpoint_id": self.checkpoint_id,
            "session_id": self.session_id,
            "agent_name": self.agent_name,
            "timestamp": self.timestamp.isoformat(),
            "step_number": self.step_number,
            "state": self.state,
            "messages": [m.to_dict() for m in self.messages],
            "metadata": self.metadata,
        }
        if self.parent_checkpoint_id is not None:
            data["parent_checkpoint_id"] = self.parent_checkpoint_id
        return data

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Checkpoint":
        """
        Deserialize checkpoint from dictionary

        Raises:
            CheckpointSerializationError: If a required field is missing or malformed
        """
        if not isinstance(data, dict):
            raise CheckpointSerializationError("Checkpoint document must be an object")

        raw_messages = data.get("messages") or []
        if not isinstance(raw_messages, list):
            raise CheckpointSerializationError("Checkpoint field 'messages' must be a list")

        parent_id = data.get("parent_checkpoint_id")
        if parent_id is not None and not isinstance(parent_id, str):
            raise CheckpointSerializationError("Checkpoint field 'parent_checkpoint_id' must be a string")

        return cls(
            checkpoint_id=_require_str(data, "checkpoint_id"),
            session_id=_require_str(data, "session_id"),
            agent_name=data.get("agent_name") or "",
            step_number=_require_int(data, "step_number"),
            timestamp=_parse_timestamp(data.get("timestamp")),
            state=_optional_dict(data, "state"),
            messages=[_parse_message(m) for m in raw_messages],
            metadata=_optional_dict(data, "metadata"),
            parent_checkpoint_id=parent_id or None,
        )

    def to_json(self) -> str:
        """Serialize to JSON string"""
        try:
            return json.dumps(self.to_dict(), indent=2)
        except (TypeError, ValueError) as e:
            raise CheckpointSerializationError(
                f"Checkpoint {self.checkpoint_id} is not JSON serializable: {e}"
            ) from e

    @classmethod
    def from_json(cls, json_str: str) -> "Checkpoint":
        """Deserialize from JSON string"""
        try:
            data = json.loads(json_str)
        except ValueError as e:
            raise CheckpointSerializationError(f"Invalid checkpoint JSON: {e}") from e
        return cls.from_dict(data)


@dataclass
class CheckpointMetadata:
    """
    Lightweight metadata for checkpoint listing.

    Used for displaying checkpoint lists and trees without carrying full state.
    """
    checkpoint_id: str
    session_id: str
    agent_name: str
    step_number: int
    timestamp: datetime
    parent_checkpoint_id: Optional[str] = None

    # Summary info
    state_keys: int = 0
    message_count: int = 0
    message_preview: Optional[str] = None  # First 100 chars of the last message

    @classmethod
    def from_checkpoint(cls, checkpoint: Checkpoint) -> "CheckpointMetadata":
        """Create metadata from full checkpoint"""
        message_preview = None
        if checkpoint.messages:
            content = checkpoint.messages[-1].content
            if isinstance(content, str):
                message_preview = content[:100]

        return cls(
            checkpoint_id=checkpoint.checkpoint_id,
            session_id=checkpoint.session_id,
            agent_name=checkpoint.agent_name,
            step_number=checkpoint.step_number,
            timestamp=checkpoint.timestamp,
            parent_checkpoint_id=checkpoint.parent_checkpoint_id,
            state_keys=len(checkpoint.state),
            message_count=len(checkpoint.messages),
            message_preview=message_preview,
        )

    def to_dict(self) -> Dict[str, Any]:
        """Serialize to dictionary"""
        return {
            "checkpoint_id": self.checkpoint_id,
            "session_id": self.session_id,
            "agent_name": self.agent_name,
            "step_number": self.step_number,
            "timestamp": self.timestamp.isoformat(),
            "parent_checkpoint_id": self.parent_checkpoint_id,
            "state_keys": self.state_keys,
            "message_count": self.message_count,
            "message_preview": self.message_preview,
        }


@dataclass
class CheckpointTree:
    """
    Tree structure for branching sessions.

    History walks follow a single lineage. The tree shows every branch
    created by explicit re-parenting.
    """
    root_id: str
    nodes: Dict[str, CheckpointMetadata] = field(default_factory=dict)
    children: Dict[str, List[str]] = field(default_factory=dict)  # parent_id -> child_ids

    def add_checkpoint(self, checkpoint: Checkpoint) -> None:
        """Add a checkpoint to the tree"""
        metadata = CheckpointMetadata.from_checkpoint(checkpoint)
        self.nodes[checkpoint.checkpoint_id] = metadata

        if checkpoint.parent_checkpoint_id:
            if checkpoint.parent_checkpoint_id not in self.children:
                self.children[checkpoint.parent_checkpoint_id] = []
            self.children[checkpoint.parent_checkpoint_id].append(checkpoint.checkpoint_id)

    def get_path_to_root(self, checkpoint_id: str) -> List[str]:
        """Get the path from a checkpoint to the root"""
        path = []
        current_id = checkpoint_id

        while current_id and current_id not in path:
            path.append(current_id)
            metadata = self.nodes.get(current_id)
            if metadata:
                current_id = metadata.parent_checkpoint_id
            else:
                break

        return path

    def get_branches(self, checkpoint_id: str) -> List[str]:
        """Get all branches from a checkpoint"""
        return list(self.children.get(checkpoint_id, []))

    def get_leaf_nodes(self) -> List[str]:
        """Get all leaf nodes (checkpoints with no children)"""
        all_parents = set(self.children.keys())
        return [cid for cid in self.nodes if cid not in all_parents]

    def get_depth(self, checkpoint_id: str) -> int:
        """Get depth of a checkpoint in the tree"""
        return len(self.get_path_to_root(checkpoint_id)) - 1

    def to_dict(self) -> Dict[str, Any]:
        """Serialize tree to dictionary"""
        return {
            "root_id": self.root_id,
            "nodes": {k: v.to_dict() for k, v in self.nodes.items()},
            "children": self.children,
        }


@dataclass
class CheckpointDiff:
    """
    Difference between two checkpoints.

    Useful for understanding what changed between states.
    """
    from_checkpoint_id: str
    to_checkpoint_id: str

    steps_advanced: int = 0

    # State changes
    state_added: Dict[str, Any] = field(default_factory=dict)
    state_removed: List[str] = field(default_factory=list)
    state_modified: Dict[str, Dict[str, Any]] = field(default_factory=dict)  # key -> {old, new}

    messages_appended: int = 0

    @classmethod
    def compute(
        cls,
        from_checkpoint: Checkpoint,
        to_checkpoint: Checkpoint
    ) -> "CheckpointDiff":
        """Compute diff between two checkpoints"""
        diff = cls(
            from_checkpoint_id=from_checkpoint.checkpoint_id,
            to_checkpoint_id=to_checkpoint.checkpoint_id,
            steps_advanced=to_checkpoint.step_number - from_checkpoint.step_number,
            messages_appended=len(to_checkpoint.messages) - len(from_checkpoint.messages),
        )

        from_keys = set(from_checkpoint.state.keys())
        to_keys = set(to_checkpoint.state.keys())

        for key in to_keys - from_keys:
            diff.state_added[key] = to_checkpoint.state[key]

        diff.state_removed = sorted(from_keys - to_keys)

        for key in from_keys & to_keys:
            old_value = from_checkpoint.state[key]
            new_value = to_checkpoint.state[key]
            if old_value != new_value:
                diff.state_modified[key] = {"old": old_value, "new": new_value}

        return diff

    def has_changes(self) -> bool:
        """Check if there are any state changes"""
        return (
            bool(self.state_added) or
            bool(self.state_removed) or
            bool(self.state_modified)
        )


@dataclass
class SessionStats:
    """Summary of a session's checkpoint history"""
    total_checkpoints: int = 0
    first_checkpoint: Optional[str] = None
    latest_checkpoint: Optional[str] = None
    first_step: int = 0
    latest_step: int = 0
    steps_covered: int = 0
    time_span: float = 0.0  # seconds between first and latest

    @classmethod
    def from_checkpoints(cls, checkpoints: List[Checkpoint]) -> "SessionStats":
        """Build stats from a most-recent-first list"""
        if not checkpoints:
            return cls()

        latest = checkpoints[0]
        first = checkpoints[-1]
        return cls(
            total_checkpoints=len(checkpoints),
            first_checkpoint=first.checkpoint_id,
            latest_checkpoint=latest.checkpoint_id,
            first_step=first.step_number,
            latest_step=latest.step_number,
            steps_covered=latest.step_number - first.step_number,
            time_span=(latest.timestamp - first.timestamp).total_seconds(),
        )

    def to_dict(self) -> Dict[str, Any]:
        """Serialize to dictionary"""
        return {
            "total_checkpoints": self.total_checkpoints,
            "first_checkpoint": self.first_checkpoint,
            "latest_checkpoint": self.latest_checkpoint,
            "first_step": self.first_step,
            "latest_step": self.latest_step,
            "steps_covered": self.steps_covered,
            "time_span": self.time_span,
        }
