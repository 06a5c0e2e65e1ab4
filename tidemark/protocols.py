"""
Tidemark Protocols - Contract for the unit of work wrapped by DurableAgent

The checkpoint engine never looks inside the agent it wraps. Anything with a
``name`` and an async ``process`` method can be made durable.
"""

from typing import Protocol, runtime_checkable

from .message import Message


@runtime_checkable
class AgentProtocol(Protocol):
    """
    Abstract interface for a stateful unit of work

    Example:
        class EchoAgent:
            name = "echo"

            async def process(self, message: Message) -> Message:
                return Message(role="assistant", content=message.content)
    """

    name: str

    async def process(self, message: Message) -> Message:
        """
        Consume one input and produce one output

        Args:
            message: Input message

        Returns:
            Output message. Raising signals a failed step.
        """
        ...
