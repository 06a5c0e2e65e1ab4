"""
Tidemark File Storage - One JSON document per checkpoint

Directory structure:
    checkpoint_dir/
        {session_id}/
            {checkpoint_id}.json
            {checkpoint_id}.json
            ...

The document layout is the durable wire format read by recovery and replay
tooling; see Checkpoint.to_dict for the exact fields.

Suitable for:
- Single-machine deployments
- Development with persistence

Limitations:
- Single writer per session (no cross-process locking)
- A write already handed to a worker thread runs to completion even if the
  calling task is cancelled
"""

import asyncio
import logging
import os
import tempfile
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional, Union

from .errors import CheckpointConfigError, CheckpointSerializationError, CheckpointStorageError
from .models import Checkpoint
from .storage import CheckpointStorage

logger = logging.getLogger(__name__)


def _is_safe_name(name: str) -> bool:
    """Session and checkpoint IDs become path components; reject anything that could escape."""
    if not name or name in (".", ".."):
        return False
    return not any(sep in name for sep in ("/", "\\", "\x00"))


class FileStorage(CheckpointStorage):
    """
    File-based checkpoint storage.

    Usage:
        storage = FileStorage("./checkpoints")
        await storage.save(checkpoint)
        latest = await storage.get_latest("session-1")
    """

    def __init__(self, checkpoint_dir: Union[str, Path] = "./checkpoints"):
        """
        Initialize file storage, creating the directory if needed.

        Args:
            checkpoint_dir: Directory to store checkpoints

        Raises:
            CheckpointConfigError: If checkpoint_dir is empty
            CheckpointStorageError: If the directory cannot be created
        """
        if not str(checkpoint_dir).strip():
            raise CheckpointConfigError("checkpoint_dir must not be empty")

        self.checkpoint_dir = Path(checkpoint_dir)
        try:
            self.checkpoint_dir.mkdir(parents=True, exist_ok=True)
        except OSError as e:
            raise CheckpointStorageError(
                f"Failed to create checkpoint directory {self.checkpoint_dir}: {e}"
            ) from e

        # checkpoint_id -> session_id, so load/delete can skip the directory scan
        self._locations: Dict[str, str] = {}
        self._lock = asyncio.Lock()

    # -- helpers --------------------------------------------------------------

    def _session_dir(self, session_id: str) -> Path:
        return self.checkpoint_dir / session_id

    def _checkpoint_path(self, session_id: str, checkpoint_id: str) -> Path:
        return self._session_dir(session_id) / f"{checkpoint_id}.json"

    async def _run(self, func: Callable[..., Any], *args: Any) -> Any:
        # Yield once so a pending cancellation lands before any I/O starts
        await asyncio.sleep(0)
        return await asyncio.to_thread(func, *args)

    @staticmethod
    def _atomic_write(path: Path, data: bytes) -> None:
        path.parent.mkdir(parents=True, exist_ok=True)
        fd, tmp = tempfile.mkstemp(dir=path.parent, suffix=".tmp")
        try:
            os.write(fd, data)
            os.fsync(fd)
            os.close(fd)
            fd = -1
            os.replace(tmp, path)
        except BaseException:
            if fd >= 0:
                try:
                    os.close(fd)
                except OSError:
                    pass
            if os.path.exists(tmp):
                os.unlink(tmp)
            raise

    def _scan_for(self, checkpoint_id: str) -> Optional[Path]:
        if not self.checkpoint_dir.is_dir():
            return None
        filename = f"{checkpoint_id}.json"
        for entry in sorted(self.checkpoint_dir.iterdir()):
            if not entry.is_dir():
                continue
            candidate = entry / filename
            if candidate.is_file():
                return candidate
        return None

    @staticmethod
    def _read_session(session_dir: Path) -> List[Checkpoint]:
        if not session_dir.is_dir():
            return []

        checkpoints = []
        for path in session_dir.glob("*.json"):
            if not path.is_file():
                continue
            try:
                checkpoints.append(Checkpoint.from_json(path.read_text(encoding="utf-8")))
            except (OSError, UnicodeDecodeError, CheckpointSerializationError) as e:
                logger.warning(f"Skipping unreadable checkpoint file {path}: {e}")
        return checkpoints

    @staticmethod
    def _remove_session(session_dir: Path) -> List[str]:
        if not session_dir.is_dir():
            return []

        removed = []
        for path in session_dir.glob("*.json"):
            if not path.is_file():
                continue
            try:
                path.unlink()
            except OSError as e:
                logger.warning(f"Failed to delete checkpoint file {path}: {e}")
                continue
            removed.append(path.stem)

        # Only succeeds once the directory is empty
        try:
            session_dir.rmdir()
        except OSError:
            pass
        return removed

    def _collect_stats(self) -> Dict[str, Any]:
        stats: Dict[str, Any] = {
            "total_sessions": 0,
            "total_checkpoints": 0,
            "checkpoints_per_session": {},
            "checkpoint_dir": str(self.checkpoint_dir),
            "disk_usage_bytes": 0,
        }
        if not self.checkpoint_dir.is_dir():
            return stats

        for session_dir in self.checkpoint_dir.iterdir():
            if not session_dir.is_dir():
                continue
            count = 0
            for path in session_dir.glob("*.json"):
                try:
                    stats["disk_usage_bytes"] += path.stat().st_size
                except OSError:
                    continue
                count += 1
            stats["total_sessions"] += 1
            stats["total_checkpoints"] += count
            stats["checkpoints_per_session"][session_dir.name] = count
        return stats

    async def _locate(self, checkpoint_id: str) -> Optional[Path]:
        session_id = self._locations.get(checkpoint_id)
        if session_id is not None:
            path = self._checkpoint_path(session_id, checkpoint_id)
            if await self._run(path.is_file):
                return path
            async with self._lock:
                self._locations.pop(checkpoint_id, None)

        try:
            path = await self._run(self._scan_for, checkpoint_id)
        except OSError as e:
            raise CheckpointStorageError(
                f"Failed to search for checkpoint {checkpoint_id}: {e}"
            ) from e

        if path is not None:
            async with self._lock:
                self._locations[checkpoint_id] = path.parent.name
        return path

    # -- CheckpointStorage interface ------------------------------------------

    async def save(self, checkpoint: Checkpoint) -> str:
        """Write checkpoint atomically to its session directory"""
        if not _is_safe_name(checkpoint.session_id):
            raise CheckpointStorageError(f"Invalid session id for file storage: {checkpoint.session_id!r}")
        if not _is_safe_name(checkpoint.checkpoint_id):
            raise CheckpointStorageError(f"Invalid checkpoint id for file storage: {checkpoint.checkpoint_id!r}")

        data = checkpoint.to_json().encode("utf-8")
        path = self._checkpoint_path(checkpoint.session_id, checkpoint.checkpoint_id)

        try:
            await self._run(self._atomic_write, path, data)
        except OSError as e:
            raise CheckpointStorageError(
                f"Failed to write checkpoint {checkpoint.checkpoint_id}: {e}"
            ) from e

        async with self._lock:
            previous = self._locations.get(checkpoint.checkpoint_id)
            self._locations[checkpoint.checkpoint_id] = checkpoint.session_id

        if previous is not None and previous != checkpoint.session_id:
            old_path = self._checkpoint_path(previous, checkpoint.checkpoint_id)
            try:
                await self._run(old_path.unlink, True)
            except OSError as e:
                raise CheckpointStorageError(
                    f"Failed to remove moved checkpoint {old_path}: {e}"
                ) from e

        logger.debug(f"Saved checkpoint {checkpoint.checkpoint_id} to {path}")
        return checkpoint.checkpoint_id

    async def load(self, checkpoint_id: str) -> Optional[Checkpoint]:
        """Load checkpoint from file"""
        if not _is_safe_name(checkpoint_id):
            return None

        path = await self._locate(checkpoint_id)
        if path is None:
            return None

        try:
            text = await self._run(path.read_text, "utf-8")
        except FileNotFoundError:
            async with self._lock:
                self._locations.pop(checkpoint_id, None)
            return None
        except (OSError, UnicodeDecodeError) as e:
            raise CheckpointStorageError(f"Failed to read checkpoint {checkpoint_id}: {e}") from e

        return Checkpoint.from_json(text)

    async def list_checkpoints(self, session_id: str, limit: int = 0) -> List[Checkpoint]:
        """List checkpoints for session, skipping malformed files"""
        if not _is_safe_name(session_id):
            return []

        try:
            checkpoints = await self._run(self._read_session, self._session_dir(session_id))
        except OSError as e:
            raise CheckpointStorageError(f"Failed to list session {session_id}: {e}") from e

        # Most recent first; step number breaks timestamp ties
        checkpoints.sort(key=lambda c: (c.timestamp, c.step_number), reverse=True)
        if limit > 0:
            checkpoints = checkpoints[:limit]

        async with self._lock:
            for checkpoint in checkpoints:
                self._locations[checkpoint.checkpoint_id] = session_id

        return checkpoints

    async def delete(self, checkpoint_id: str) -> bool:
        """Delete checkpoint file"""
        if not _is_safe_name(checkpoint_id):
            return False

        path = await self._locate(checkpoint_id)
        if path is None:
            return False

        try:
            await self._run(path.unlink)
        except FileNotFoundError:
            return False
        except OSError as e:
            raise CheckpointStorageError(f"Failed to delete checkpoint {checkpoint_id}: {e}") from e
        finally:
            async with self._lock:
                self._locations.pop(checkpoint_id, None)

        return True

    async def delete_session(self, session_id: str) -> int:
        """Delete all checkpoint files for session and its directory"""
        if not _is_safe_name(session_id):
            return 0

        try:
            removed = await self._run(self._remove_session, self._session_dir(session_id))
        except OSError as e:
            raise CheckpointStorageError(f"Failed to delete session {session_id}: {e}") from e

        async with self._lock:
            for checkpoint_id in removed:
                self._locations.pop(checkpoint_id, None)

        return len(removed)

    async def get_stats(self) -> Dict[str, Any]:
        """Return storage statistics including disk usage"""
        try:
            return await self._run(self._collect_stats)
        except OSError as e:
            raise CheckpointStorageError(f"Failed to collect storage stats: {e}") from e
