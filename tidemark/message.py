"""
Tidemark Message - The record exchanged with a wrapped agent

Every input handed to an agent and every output it returns is kept in the
session's message log as a Message, and written to checkpoints as
``{role, content, metadata}``.
"""

from dataclasses import dataclass
from typing import Any, Dict, Optional


@dataclass
class Message:
    """
    A single input or output in a session's message log.

    Example:
        msg = Message(role="user", content="Summarize the report")
        reply = Message(role="assistant", content="Done.", metadata={"tokens": 42})
    """
    role: str
    content: str
    metadata: Optional[Dict[str, Any]] = None

    def to_dict(self) -> Dict[str, Any]:
        """Serialize to dictionary"""
        return {
            "role": self.role,
            "content": self.content,
            "metadata": self.metadata,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Message":
        """
        Deserialize from dictionary. Missing keys fall back to empty values.

        Raises:
            ValueError: If role or content is present but not a string
        """
        role = data.get("role")
        content = data.get("content")
        for key, value in (("role", role), ("content", content)):
            if value is not None and not isinstance(value, str):
                raise ValueError(f"Message {key} must be a string, got {type(value).__name__}")

        metadata = data.get("metadata")
        return cls(
            role=role or "",
            content=content or "",
            metadata=metadata if isinstance(metadata, dict) else None,
        )
