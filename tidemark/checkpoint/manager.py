"""
Tidemark Checkpoint Manager - High-level checkpoint operations

This module provides the main CheckpointManager class for:
- Creating checkpoints chained to the session's previous one
- Deciding when an auto-checkpoint is due
- Walking and replaying checkpoint history
- Retention pruning, stats and comparison
"""

from dataclasses import dataclass
from typing import Any, Callable, Dict, List, Optional
import asyncio
import copy
import inspect
import logging

from ..message import Message
from .errors import CheckpointConfigError, CheckpointError, InvalidParentError, ReplayError
from .models import Checkpoint, CheckpointDiff, CheckpointTree, SessionStats
from .storage import CheckpointStorage, MemoryStorage

logger = logging.getLogger(__name__)

# replay_fn(checkpoint, state) -> result, sync or async
ReplayFn = Callable[[Checkpoint, Dict[str, Any]], Any]


@dataclass
class _SessionTracking:
    last_step: int = 0
    last_checkpoint_id: Optional[str] = None


class CheckpointManager:
    """
    Manages checkpoint operations for sessions.

    Provides:
    - Checkpoint creation with automatic parent chaining
    - Auto-checkpoint cadence
    - History walks and replay
    - Pruning, stats, trees and diffs

    Session tracking (last step, last checkpoint) lives on the instance and is
    rebuilt from storage the first time a session is touched after a restart.

    Example usage:
        manager = CheckpointManager(storage=MemoryStorage(), auto_checkpoint_interval=5)

        checkpoint_id = await manager.create_checkpoint(
            session_id="session-1",
            agent_name="assistant",
            step_number=5,
            state={"count": 5},
            messages=messages,
        )

        history = await manager.get_checkpoint_history(checkpoint_id)
        deleted = await manager.prune_old_checkpoints("session-1", keep_last=10)
    """

    def __init__(
        self,
        storage: Optional[CheckpointStorage] = None,
        auto_checkpoint_interval: int = 0,
        replay_max_depth: int = 100,
    ):
        """
        Initialize checkpoint manager.

        Args:
            storage: Storage backend (defaults to MemoryStorage)
            auto_checkpoint_interval: Steps between auto-checkpoints (0 = disabled)
            replay_max_depth: History depth loaded by replay_from_checkpoint

        Raises:
            CheckpointConfigError: If an interval or depth is out of range
        """
        if auto_checkpoint_interval < 0:
            raise CheckpointConfigError(
                f"auto_checkpoint_interval must be >= 0, got {auto_checkpoint_interval}"
            )
        if replay_max_depth < 1:
            raise CheckpointConfigError(f"replay_max_depth must be >= 1, got {replay_max_depth}")

        self.storage = storage if storage is not None else MemoryStorage()
        self.auto_checkpoint_interval = auto_checkpoint_interval
        self.replay_max_depth = replay_max_depth
        self._sessions: Dict[str, _SessionTracking] = {}
        self._lock = asyncio.Lock()

    async def _track(self, checkpoint: Checkpoint) -> None:
        async with self._lock:
            self._sessions[checkpoint.session_id] = _SessionTracking(
                last_step=checkpoint.step_number,
                last_checkpoint_id=checkpoint.checkpoint_id,
            )

    async def _forget_if_tracked(self, checkpoint_id: str) -> None:
        async with self._lock:
            for session_id, tracking in list(self._sessions.items()):
                if tracking.last_checkpoint_id == checkpoint_id:
                    del self._sessions[session_id]

    async def _last_checkpoint_id(self, session_id: str) -> Optional[str]:
        async with self._lock:
            tracking = self._sessions.get(session_id)
        if tracking is not None:
            return tracking.last_checkpoint_id

        latest = await self.storage.get_latest(session_id)
        if latest is None:
            return None
        await self._track(latest)
        return latest.checkpoint_id

    async def create_checkpoint(
        self,
        session_id: str,
        agent_name: str,
        step_number: int,
        state: Dict[str, Any],
        messages: List[Message],
        metadata: Optional[Dict[str, Any]] = None,
        parent_checkpoint_id: Optional[str] = None,
    ) -> str:
        """
        Create and persist a checkpoint.

        Args:
            session_id: Session the checkpoint belongs to
            agent_name: Name of the agent that produced it
            step_number: Caller-supplied step counter
            state: State to snapshot (deep-copied)
            messages: Message log to snapshot (deep-copied)
            metadata: Auxiliary data (deep-copied)
            parent_checkpoint_id: Explicit parent; defaults to the session's last checkpoint

        Returns:
            Checkpoint ID

        Raises:
            InvalidParentError: If the explicit parent is missing or from another session
            CheckpointStorageError: If the save fails
        """
        if parent_checkpoint_id is None:
            parent_checkpoint_id = await self._last_checkpoint_id(session_id)
        else:
            parent = await self.storage.load(parent_checkpoint_id)
            if parent is None:
                raise InvalidParentError(f"Parent checkpoint not found: {parent_checkpoint_id}")
            if parent.session_id != session_id:
                raise InvalidParentError(
                    f"Parent checkpoint {parent_checkpoint_id} belongs to session "
                    f"{parent.session_id}, not {session_id}"
                )

        checkpoint = Checkpoint(
            checkpoint_id=Checkpoint.generate_id(),
            session_id=session_id,
            agent_name=agent_name,
            step_number=step_number,
            state=copy.deepcopy(state),
            messages=copy.deepcopy(list(messages)),
            metadata=copy.deepcopy(metadata) if metadata else {},
            parent_checkpoint_id=parent_checkpoint_id,
        )

        await self.storage.save(checkpoint)
        await self._track(checkpoint)

        logger.info(
            f"Created checkpoint {checkpoint.checkpoint_id} for {session_id} at step {step_number}"
        )
        return checkpoint.checkpoint_id

    def should_checkpoint(self, session_id: str, step_number: int) -> bool:
        """
        Determine whether an auto-checkpoint is due.

        Args:
            session_id: Session ID
            step_number: Current step number

        Returns:
            True if at least auto_checkpoint_interval steps passed since the last checkpoint
        """
        if self.auto_checkpoint_interval <= 0:
            return False

        tracking = self._sessions.get(session_id)
        last_step = tracking.last_step if tracking is not None else 0
        return step_number - last_step >= self.auto_checkpoint_interval

    async def get_latest(self, session_id: str) -> Optional[Checkpoint]:
        """
        Get the most recent checkpoint for a session.

        Also seeds session tracking when this manager has none yet, so the
        auto-checkpoint cadence continues from the restored step.
        """
        latest = await self.storage.get_latest(session_id)
        if latest is not None:
            async with self._lock:
                known = session_id in self._sessions
            if not known:
                await self._track(latest)
        return latest

    async def load_checkpoint(self, checkpoint_id: str) -> Optional[Checkpoint]:
        """Load a checkpoint by ID"""
        return await self.storage.load(checkpoint_id)

    async def list_checkpoints(self, session_id: str, limit: int = 0) -> List[Checkpoint]:
        """List checkpoints for a session, most recent first"""
        return await self.storage.list_checkpoints(session_id, limit)

    def restore_state(self, checkpoint: Checkpoint) -> Dict[str, Any]:
        """Return an independent copy of a checkpoint's state"""
        return copy.deepcopy(checkpoint.state)

    async def get_checkpoint_history(
        self,
        checkpoint_id: str,
        max_depth: int = 100
    ) -> List[Checkpoint]:
        """
        Get checkpoint history by following parent links.

        Args:
            checkpoint_id: Starting checkpoint
            max_depth: Maximum number of checkpoints to return

        Returns:
            Checkpoints from most recent to oldest
        """
        return await self.storage.get_checkpoint_history(checkpoint_id, max_depth)

    async def replay_from_checkpoint(
        self,
        checkpoint_id: str,
        replay_fn: ReplayFn,
        up_to_step: int = 0,
    ) -> List[Any]:
        """
        Replay a session's history up to a checkpoint.

        replay_fn is called once per checkpoint, oldest first, with the
        checkpoint and a copy of its state. It may be a plain function or a
        coroutine function.

        Args:
            checkpoint_id: Last checkpoint of the lineage to replay
            replay_fn: Callback invoked per checkpoint
            up_to_step: Skip checkpoints past this step (0 = no limit)

        Returns:
            Callback results, oldest first

        Raises:
            ReplayError: If replay_fn fails; remaining steps are not replayed
        """
        history = await self.get_checkpoint_history(checkpoint_id, self.replay_max_depth)
        history.reverse()

        results = []
        for checkpoint in history:
            if up_to_step > 0 and checkpoint.step_number > up_to_step:
                continue

            try:
                result = replay_fn(checkpoint, self.restore_state(checkpoint))
                if inspect.isawaitable(result):
                    result = await result
            except Exception as e:
                raise ReplayError(
                    f"Replay failed at step {checkpoint.step_number}: {e}",
                    step_number=checkpoint.step_number,
                    checkpoint_id=checkpoint.checkpoint_id,
                ) from e

            results.append(result)
            logger.debug(f"Replayed step {checkpoint.step_number}")

        return results

    async def delete_checkpoint(self, checkpoint_id: str) -> bool:
        """
        Delete a checkpoint.

        Args:
            checkpoint_id: Checkpoint to delete

        Returns:
            True if deleted
        """
        deleted = await self.storage.delete(checkpoint_id)
        if deleted:
            await self._forget_if_tracked(checkpoint_id)
        return deleted

    async def delete_session(self, session_id: str) -> int:
        """
        Delete all checkpoints for a session.

        Args:
            session_id: Session ID

        Returns:
            Number of checkpoints deleted
        """
        count = await self.storage.delete_session(session_id)
        async with self._lock:
            self._sessions.pop(session_id, None)
        return count

    async def prune_old_checkpoints(self, session_id: str, keep_last: int) -> int:
        """
        Delete all but the most recent keep_last checkpoints of a session.

        Individual delete failures are logged and skipped.

        Args:
            session_id: Session ID
            keep_last: Number of most recent checkpoints to keep

        Returns:
            Number of checkpoints actually deleted

        Raises:
            ValueError: If keep_last is negative
        """
        if keep_last < 0:
            raise ValueError(f"keep_last must be >= 0, got {keep_last}")

        checkpoints = await self.list_checkpoints(session_id)
        if len(checkpoints) <= keep_last:
            return 0

        deleted_count = 0
        for checkpoint in checkpoints[keep_last:]:
            try:
                if await self.delete_checkpoint(checkpoint.checkpoint_id):
                    deleted_count += 1
            except CheckpointError as e:
                logger.warning(f"Failed to prune checkpoint {checkpoint.checkpoint_id}: {e}")

        logger.info(
            f"Pruned {deleted_count} old checkpoints for {session_id}, kept {keep_last} most recent"
        )
        return deleted_count

    async def get_session_stats(self, session_id: str) -> SessionStats:
        """
        Get statistics for a session's checkpoints.

        Args:
            session_id: Session ID

        Returns:
            SessionStats (zero counts when the session has no checkpoints)
        """
        checkpoints = await self.list_checkpoints(session_id)
        return SessionStats.from_checkpoints(checkpoints)

    async def get_checkpoint_tree(self, session_id: str) -> Optional[CheckpointTree]:
        """
        Get the full checkpoint tree for a session.

        Args:
            session_id: Session ID

        Returns:
            CheckpointTree rooted at the oldest checkpoint, or None
        """
        checkpoints = await self.list_checkpoints(session_id)
        if not checkpoints:
            return None

        checkpoints.reverse()
        tree = CheckpointTree(root_id=checkpoints[0].checkpoint_id)
        for checkpoint in checkpoints:
            tree.add_checkpoint(checkpoint)
        return tree

    async def set_parent_checkpoint(self, checkpoint: Checkpoint) -> None:
        """
        Make checkpoint the session's last checkpoint.

        The next create_checkpoint without an explicit parent chains to it and
        the auto-checkpoint cadence counts from its step. Used after resuming
        from an older checkpoint.
        """
        await self._track(checkpoint)

    def get_parent_checkpoint(self, session_id: str) -> Optional[str]:
        """
        Get the checkpoint the next save will chain to, as currently tracked.

        Args:
            session_id: Session ID

        Returns:
            Parent checkpoint ID or None
        """
        tracking = self._sessions.get(session_id)
        return tracking.last_checkpoint_id if tracking is not None else None

    async def compare_checkpoints(
        self,
        from_id: str,
        to_id: str
    ) -> Optional[CheckpointDiff]:
        """
        Compare two checkpoints.

        Args:
            from_id: First checkpoint ID
            to_id: Second checkpoint ID

        Returns:
            CheckpointDiff or None if either checkpoint not found
        """
        from_checkpoint = await self.storage.load(from_id)
        to_checkpoint = await self.storage.load(to_id)

        if not from_checkpoint or not to_checkpoint:
            return None

        return CheckpointDiff.compute(from_checkpoint, to_checkpoint)
