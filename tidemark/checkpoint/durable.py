"""
Tidemark Durable Agent - Automatic checkpointing and resume for any agent

Wraps an agent so that its per-session state survives restarts:
- Checkpoints every N steps (or on demand)
- Resumes from the latest checkpoint on the first call for a session
- Rolls in-memory state back to the last checkpoint when the agent fails

Callers must serialize process() calls for the same session.
"""

from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any, Dict, List, Optional, Union
from pathlib import Path
import asyncio
import copy
import inspect
import logging

from ..message import Message
from .errors import CheckpointConfigError, CheckpointError
from .file_storage import FileStorage
from .manager import CheckpointManager
from .models import Checkpoint
from .storage import CheckpointStorage

if TYPE_CHECKING:
    from ..config import CheckpointConfig

logger = logging.getLogger(__name__)


@dataclass
class _SessionState:
    state: Dict[str, Any] = field(default_factory=dict)
    step: int = 0
    messages: List[Message] = field(default_factory=list)
    resumed: bool = False


class DurableAgent:
    """
    Agent wrapper with automatic checkpointing and resume.

    Example:
        storage = FileStorage("./checkpoints")
        durable = DurableAgent(my_agent, storage=storage, checkpoint_interval=10)

        # Use like the wrapped agent (checkpoints every 10 steps)
        response = await durable.process(message, session_id="session-1")

        # Resume explicitly from a specific checkpoint
        state = await durable.resume("session-1", checkpoint_id)
    """

    def __init__(
        self,
        agent: Any,
        storage: Optional[CheckpointStorage] = None,
        checkpoint_interval: int = 0,
        auto_resume: bool = True,
        agent_name: Optional[str] = None,
        raise_on_checkpoint_error: bool = False,
        keep_last: Optional[int] = None,
        history_max_depth: int = 100,
    ):
        """
        Initialize durable agent.

        Args:
            agent: Agent to wrap; must have an async process(message) method
            storage: Checkpoint storage (None = in-memory)
            checkpoint_interval: Checkpoint every N steps (0 = manual only)
            auto_resume: Resume from the latest checkpoint on a session's first call
            agent_name: Override agent name (default: agent.name)
            raise_on_checkpoint_error: Re-raise auto-checkpoint failures from process()
            keep_last: Prune each session to this many checkpoints after every write
            history_max_depth: History depth used for replay

        Raises:
            CheckpointConfigError: If the agent or a parameter is invalid
        """
        process = getattr(agent, "process", None)
        if process is None or not inspect.iscoroutinefunction(process):
            raise CheckpointConfigError(
                f"{agent.__class__.__name__} must define an async process(message) method"
            )
        if keep_last is not None and keep_last < 0:
            raise CheckpointConfigError(f"keep_last must be >= 0, got {keep_last}")

        self.agent = agent
        self.agent_name = agent_name or getattr(agent, "name", None) or agent.__class__.__name__
        self.checkpoint_interval = checkpoint_interval
        self.auto_resume = auto_resume
        self.raise_on_checkpoint_error = raise_on_checkpoint_error
        self.keep_last = keep_last
        self._manager = CheckpointManager(
            storage=storage,
            auto_checkpoint_interval=checkpoint_interval,
            replay_max_depth=history_max_depth,
        )
        self._sessions: Dict[str, _SessionState] = {}

    @classmethod
    def from_config(
        cls,
        agent: Any,
        config: "CheckpointConfig",
        storage: Optional[CheckpointStorage] = None,
    ) -> "DurableAgent":
        """
        Build a durable agent from a CheckpointConfig.

        Args:
            agent: Agent to wrap
            config: Checkpoint configuration
            storage: Storage to use instead of the one the config describes
        """
        from ..config import create_storage

        return cls(
            agent,
            storage=storage if storage is not None else create_storage(config),
            checkpoint_interval=config.checkpoint_interval,
            auto_resume=config.auto_resume,
            agent_name=config.agent_name,
            keep_last=config.keep_last,
            history_max_depth=config.history_max_depth,
        )

    @property
    def name(self) -> str:
        return self.agent_name

    @property
    def manager(self) -> CheckpointManager:
        return self._manager

    def _session(self, session_id: str) -> _SessionState:
        session = self._sessions.get(session_id)
        if session is None:
            session = _SessionState()
            self._sessions[session_id] = session
        return session

    async def _restore(self, session_id: str, checkpoint: Checkpoint) -> _SessionState:
        session = self._session(session_id)
        session.state = self._manager.restore_state(checkpoint)
        session.step = checkpoint.step_number
        session.messages = copy.deepcopy(checkpoint.messages)

        # Next checkpoint chains to the one just restored
        if checkpoint.session_id == session_id:
            await self._manager.set_parent_checkpoint(checkpoint)
        return session

    async def process(self, message: Message, session_id: str) -> Message:
        """
        Process a message with automatic checkpointing.

        Args:
            message: Input message
            session_id: Session identifier

        Returns:
            Response from the wrapped agent

        Raises:
            Exception: Whatever the wrapped agent raised, after rollback
            asyncio.CancelledError: If the step was cancelled, after rollback
        """
        session = self._sessions.get(session_id)
        if self.auto_resume and (session is None or not session.resumed):
            try:
                await self.resume(session_id)
            except Exception as e:
                logger.warning(f"Failed to auto-resume session {session_id}: {e}")
            self._session(session_id).resumed = True

        session = self._session(session_id)
        session.step += 1
        current_step = session.step
        session.messages.append(message)

        try:
            response = await self.agent.process(message)
        except Exception as e:
            logger.error(f"Error processing message at step {current_step} of {session_id}: {e}")
            await self._rollback(session_id)
            raise
        except asyncio.CancelledError:
            logger.warning(f"Step {current_step} of {session_id} was cancelled, rolling back")
            await asyncio.shield(self._rollback(session_id))
            raise

        session.messages.append(response)
        self.update_state(session.state, message, response)

        if self._manager.should_checkpoint(session_id, current_step):
            try:
                await self.checkpoint(session_id)
            except CheckpointError as e:
                logger.error(f"Failed to create checkpoint for {session_id} at step {current_step}: {e}")
                if self.raise_on_checkpoint_error:
                    raise

        return response

    async def _rollback(self, session_id: str) -> None:
        """Best-effort restore of the latest checkpoint; never raises"""
        try:
            latest = await self._manager.get_latest(session_id)
            if latest is None:
                return
            logger.info(f"Rolling back {session_id} to checkpoint at step {latest.step_number}")
            await self._restore(session_id, latest)
        except Exception as e:
            logger.warning(f"Failed to roll back {session_id}: {e}")

    def update_state(
        self,
        state: Dict[str, Any],
        input_message: Message,
        output_message: Message
    ) -> None:
        """
        Update session state after a successful step.

        Override for custom state tracking. The default tracks the message
        count and the last exchange.

        Args:
            state: Session state to update in place
            input_message: Message passed to the agent
            output_message: Agent's response
        """
        message_count = state.get("message_count")
        if not isinstance(message_count, int):
            message_count = 0
        state["message_count"] = message_count + 1
        state["last_input"] = input_message.content
        state["last_output"] = output_message.content

        if output_message.metadata is not None:
            state["last_metadata"] = copy.deepcopy(output_message.metadata)

    async def checkpoint(
        self,
        session_id: str,
        metadata: Optional[Dict[str, Any]] = None
    ) -> str:
        """
        Create a checkpoint of the session's current state.

        Args:
            session_id: Session identifier
            metadata: Optional metadata to attach

        Returns:
            Checkpoint ID
        """
        session = self._sessions.get(session_id) or _SessionState()

        checkpoint_id = await self._manager.create_checkpoint(
            session_id=session_id,
            agent_name=self.agent_name,
            step_number=session.step,
            state=session.state,
            messages=session.messages,
            metadata=metadata,
        )
        logger.info(f"Checkpointed session {session_id} at step {session.step}")

        if self.keep_last is not None:
            try:
                await self._manager.prune_old_checkpoints(session_id, self.keep_last)
            except CheckpointError as e:
                logger.warning(f"Failed to prune checkpoints for {session_id}: {e}")

        return checkpoint_id

    async def resume(
        self,
        session_id: str,
        checkpoint_id: Optional[str] = None
    ) -> Optional[Dict[str, Any]]:
        """
        Resume a session from a checkpoint.

        Args:
            session_id: Session identifier
            checkpoint_id: Checkpoint to resume from (None = latest)

        Returns:
            Copy of the restored state, or None if no checkpoint was found
        """
        if checkpoint_id:
            checkpoint = await self._manager.load_checkpoint(checkpoint_id)
        else:
            checkpoint = await self._manager.get_latest(session_id)

        if checkpoint is None:
            logger.info(f"No checkpoint found for {session_id}, starting fresh")
            return None

        session = await self._restore(session_id, checkpoint)
        logger.info(f"Resumed session {session_id} from checkpoint at step {checkpoint.step_number}")
        return copy.deepcopy(session.state)

    def get_state(self, session_id: str) -> Dict[str, Any]:
        """Get a copy of the session's current state"""
        session = self._sessions.get(session_id)
        if session is None:
            return {}
        return copy.deepcopy(session.state)

    def set_state(self, session_id: str, state: Dict[str, Any]) -> None:
        """Replace the session's state with a copy of state"""
        self._session(session_id).state = copy.deepcopy(state)

    def get_messages(self, session_id: str) -> List[Message]:
        """Get a copy of the session's message history"""
        session = self._sessions.get(session_id)
        if session is None:
            return []
        return copy.deepcopy(session.messages)

    def reset_session(self, session_id: str) -> None:
        """Forget the session's in-memory state; persisted checkpoints are kept"""
        self._sessions.pop(session_id, None)

    async def list_checkpoints(self, session_id: str, limit: int = 0) -> List[Checkpoint]:
        """List checkpoints for session, most recent first"""
        return await self._manager.list_checkpoints(session_id, limit)

    async def delete_checkpoints(self, session_id: str) -> int:
        """
        Delete all checkpoints for session and reset its in-memory state.

        Returns:
            Number of checkpoints deleted
        """
        count = await self._manager.delete_session(session_id)
        self.reset_session(session_id)
        return count

    async def get_session_stats(self, session_id: str) -> Dict[str, Any]:
        """Checkpoint stats merged with the session's live counters"""
        stats = (await self._manager.get_session_stats(session_id)).to_dict()

        session = self._sessions.get(session_id) or _SessionState()
        stats["current_step"] = session.step
        stats["message_count"] = len(session.messages)
        stats["state_size"] = len(session.state)
        return stats


def make_durable(
    agent: Any,
    checkpoint_dir: Union[str, Path] = "./checkpoints",
    checkpoint_interval: int = 5,
    agent_name: Optional[str] = None,
) -> DurableAgent:
    """
    Convenience function to make an agent durable with file storage.

    Example:
        durable_agent = make_durable(my_agent, "./checkpoints", checkpoint_interval=5)
        response = await durable_agent.process(message, session_id="session-1")

    Args:
        agent: Agent to make durable
        checkpoint_dir: Directory for checkpoints
        checkpoint_interval: Checkpoint every N steps
        agent_name: Override agent name

    Returns:
        DurableAgent wrapping the agent, with auto-resume enabled
    """
    return DurableAgent(
        agent,
        storage=FileStorage(checkpoint_dir),
        checkpoint_interval=checkpoint_interval,
        auto_resume=True,
        agent_name=agent_name,
    )
