"""
Tidemark Checkpoint Storage - Backend storage contract

This module provides the storage contract and the in-memory backend:
- CheckpointStorage: Abstract base class every backend implements
- MemoryStorage: In-memory storage for testing and short-lived sessions

Durable backends live next to it:
- FileStorage (file_storage.py): one JSON document per checkpoint
- SQLiteStorage (sqlite_storage.py): local SQLite database
"""

from abc import ABC, abstractmethod
from datetime import timezone
from typing import Dict, Any, List, Optional
import asyncio
import copy
import logging

from .errors import CheckpointError
from .models import Checkpoint

logger = logging.getLogger(__name__)


class CheckpointStorage(ABC):
    """
    Abstract base class for checkpoint storage backends.

    All storage backends must implement the abstract methods. Absence is
    reported as None (load, get_latest) or False/0 (delete, delete_session),
    never as an exception.
    """

    @abstractmethod
    async def save(self, checkpoint: Checkpoint) -> str:
        """
        Save a checkpoint. Saving the same ID again replaces it.

        Args:
            checkpoint: Checkpoint to save

        Returns:
            Checkpoint ID
        """
        pass

    @abstractmethod
    async def load(self, checkpoint_id: str) -> Optional[Checkpoint]:
        """
        Load a checkpoint by ID.

        Args:
            checkpoint_id: ID of checkpoint to retrieve

        Returns:
            Checkpoint or None if not found

        Raises:
            CheckpointSerializationError: If the stored record is malformed
        """
        pass

    @abstractmethod
    async def list_checkpoints(self, session_id: str, limit: int = 0) -> List[Checkpoint]:
        """
        List checkpoints for a session.

        Args:
            session_id: Session to list
            limit: Maximum number of results (0 or less = no limit)

        Returns:
            Checkpoints, most recent first
        """
        pass

    @abstractmethod
    async def delete(self, checkpoint_id: str) -> bool:
        """
        Delete a checkpoint.

        Args:
            checkpoint_id: ID of checkpoint to delete

        Returns:
            True if deleted, False if not found
        """
        pass

    @abstractmethod
    async def delete_session(self, session_id: str) -> int:
        """
        Delete all checkpoints for a session.

        Args:
            session_id: Session ID

        Returns:
            Number of checkpoints deleted
        """
        pass

    @abstractmethod
    async def get_stats(self) -> Dict[str, Any]:
        """Return backend statistics"""
        pass

    async def get_latest(self, session_id: str) -> Optional[Checkpoint]:
        """
        Get the most recent checkpoint for a session.

        Args:
            session_id: Session ID

        Returns:
            Latest checkpoint or None
        """
        checkpoints = await self.list_checkpoints(session_id, 1)
        if not checkpoints:
            return None
        return checkpoints[0]

    async def get_checkpoint_history(
        self,
        checkpoint_id: str,
        max_depth: int = 100
    ) -> List[Checkpoint]:
        """
        Get checkpoint history by following parent links.

        The walk stops after max_depth checkpoints, at a missing parent, at a
        parent that fails to load, at a parent from another session, or when
        an ID repeats.

        Args:
            checkpoint_id: Starting checkpoint
            max_depth: Maximum number of checkpoints to return

        Returns:
            Checkpoints from most recent to oldest

        Raises:
            CheckpointError: If the starting checkpoint itself cannot be loaded
        """
        history: List[Checkpoint] = []
        visited = set()
        current_id = checkpoint_id

        for _ in range(max_depth):
            if current_id in visited:
                logger.warning(f"Cycle in checkpoint history at {current_id}, stopping walk")
                break

            try:
                checkpoint = await self.load(current_id)
            except CheckpointError as e:
                if not history:
                    raise
                logger.warning(f"Stopping history walk at {current_id}: {e}")
                break

            if checkpoint is None:
                break

            if history and checkpoint.session_id != history[0].session_id:
                logger.warning(
                    f"Parent {current_id} belongs to session {checkpoint.session_id}, "
                    f"not {history[0].session_id}; stopping walk"
                )
                break

            history.append(checkpoint)
            visited.add(current_id)

            if not checkpoint.parent_checkpoint_id:
                break
            current_id = checkpoint.parent_checkpoint_id

        return history


class MemoryStorage(CheckpointStorage):
    """
    In-memory checkpoint storage for testing and development.

    All data is lost when the process exits. The checkpoint table and the
    per-session index share one lock so they never disagree.
    """

    def __init__(self):
        self._checkpoints: Dict[str, Checkpoint] = {}
        self._by_session: Dict[str, List[str]] = {}  # session_id -> ids, newest first
        self._sequence: Dict[str, int] = {}  # checkpoint_id -> insertion order
        self._counter = 0
        self._lock = asyncio.Lock()

    def _sort_key(self, checkpoint_id: str):
        checkpoint = self._checkpoints[checkpoint_id]
        timestamp = checkpoint.timestamp
        if timestamp.tzinfo is None:
            timestamp = timestamp.replace(tzinfo=timezone.utc)
        return (timestamp, self._sequence[checkpoint_id])

    def _unindex(self, checkpoint_id: str, session_id: str) -> None:
        ids = self._by_session.get(session_id)
        if ids is None:
            return
        if checkpoint_id in ids:
            ids.remove(checkpoint_id)
        if not ids:
            del self._by_session[session_id]

    async def save(self, checkpoint: Checkpoint) -> str:
        """Save checkpoint to memory"""
        stored = copy.deepcopy(checkpoint)

        async with self._lock:
            previous = self._checkpoints.get(stored.checkpoint_id)
            if previous is not None and previous.session_id != stored.session_id:
                self._unindex(stored.checkpoint_id, previous.session_id)

            self._checkpoints[stored.checkpoint_id] = stored
            if stored.checkpoint_id not in self._sequence:
                self._counter += 1
                self._sequence[stored.checkpoint_id] = self._counter

            ids = self._by_session.setdefault(stored.session_id, [])
            if stored.checkpoint_id not in ids:
                ids.append(stored.checkpoint_id)
            # Sort by timestamp (newest first), ties by insertion order
            ids.sort(key=self._sort_key, reverse=True)

        return stored.checkpoint_id

    async def load(self, checkpoint_id: str) -> Optional[Checkpoint]:
        """Load checkpoint from memory"""
        async with self._lock:
            checkpoint = self._checkpoints.get(checkpoint_id)
            if checkpoint is None:
                return None
            return copy.deepcopy(checkpoint)

    async def list_checkpoints(self, session_id: str, limit: int = 0) -> List[Checkpoint]:
        """List checkpoints for session"""
        async with self._lock:
            ids = self._by_session.get(session_id, [])
            if limit > 0:
                ids = ids[:limit]
            return [
                copy.deepcopy(self._checkpoints[cid])
                for cid in ids
                if cid in self._checkpoints
            ]

    async def delete(self, checkpoint_id: str) -> bool:
        """Delete checkpoint from memory"""
        async with self._lock:
            checkpoint = self._checkpoints.pop(checkpoint_id, None)
            if checkpoint is None:
                return False
            self._sequence.pop(checkpoint_id, None)
            self._unindex(checkpoint_id, checkpoint.session_id)
            return True

    async def delete_session(self, session_id: str) -> int:
        """Delete all checkpoints for session"""
        async with self._lock:
            ids = self._by_session.pop(session_id, [])
            for cid in ids:
                self._checkpoints.pop(cid, None)
                self._sequence.pop(cid, None)
            return len(ids)

    async def get_stats(self) -> Dict[str, Any]:
        """Return storage statistics"""
        async with self._lock:
            return {
                "total_checkpoints": len(self._checkpoints),
                "total_sessions": len(self._by_session),
                "checkpoints_per_session": {
                    sid: len(ids) for sid, ids in self._by_session.items()
                },
            }

    def clear_all(self) -> None:
        """Clear all checkpoints (for testing)"""
        self._checkpoints.clear()
        self._by_session.clear()
        self._sequence.clear()
