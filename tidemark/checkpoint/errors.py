"""
Tidemark Checkpoint Errors

Absence is not an error: load/get_latest return None when nothing is found.
Everything below is a real failure.
"""

from typing import Optional


class CheckpointError(Exception):
    """Base class for checkpoint failures"""
    pass


class CheckpointStorageError(CheckpointError):
    """Raised when a storage backend cannot read or write"""
    pass


class CheckpointSerializationError(CheckpointError):
    """Raised when a persisted checkpoint is malformed"""
    pass


class CheckpointConfigError(CheckpointError, ValueError):
    """Raised at construction time for invalid parameters"""
    pass


class InvalidParentError(CheckpointError, ValueError):
    """Raised when an explicit parent is missing or belongs to another session"""
    pass


class ReplayError(CheckpointError):
    """
    Raised when a replay callback fails.

    The remaining steps are not replayed. The callback's exception is
    chained as ``__cause__``.
    """

    def __init__(
        self,
        message: str,
        step_number: int,
        checkpoint_id: Optional[str] = None,
    ):
        super().__init__(message)
        self.step_number = step_number
        self.checkpoint_id = checkpoint_id
