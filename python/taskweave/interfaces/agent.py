"""Interface for agents invoked by the execution engine.

An agent is anything that can take a task's config mapping plus an optional
trigger payload and produce a result. Local agents run in-process; remote
agents are reached through the real-time channel.
"""

from typing import Any, Dict, Optional, Protocol


class IAgent(Protocol):
    """Interface for a unit of work executed on behalf of a task."""

    async def run(self, config: Dict[str, Any], payload: Optional[Any] = None) -> Any:
        """Execute the agent.

        Args:
            config: The task's opaque config mapping
            payload: Trigger payload, when the task was fired by an event

        Returns:
            The agent's result, stored on the execution and in the envelope

        Raises:
            Exception: Any failure; the engine records it and applies retries
        """
        ...
