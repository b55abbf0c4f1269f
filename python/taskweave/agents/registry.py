"""Agent registry: resolves a task's agent reference at execution time.

Local agents are registered by id. Resolvers act as a fallback, so the
real-time channel can supply remote agents for ids that have no local
registration.
"""

from __future__ import annotations

import inspect
import logging
from datetime import datetime, timezone
from typing import Any, Callable, Dict, List, Optional, Union

from taskweave.exceptions import AgentNotFoundError
from taskweave.interfaces.agent import IAgent

logger = logging.getLogger(__name__)

AgentResolver = Callable[[str], Optional[IAgent]]


class CallableAgent:
    """Adapts a plain ``fn(config, payload)`` (sync or async) to IAgent."""

    def __init__(self, fn: Callable[..., Any], name: Optional[str] = None) -> None:
        self._fn = fn
        self.name = name or getattr(fn, "__name__", "agent")

    async def run(self, config: Dict[str, Any], payload: Optional[Any] = None) -> Any:
        result = self._fn(config, payload)
        if inspect.isawaitable(result):
            result = await result
        return result

    def __repr__(self) -> str:
        return f"CallableAgent({self.name!r})"


class EchoAgent:
    """Returns its inputs; handy as a placeholder while wiring real agents."""

    def __init__(self, name: str = "echo") -> None:
        self.name = name

    async def run(self, config: Dict[str, Any], payload: Optional[Any] = None) -> Any:
        return {
            "agent": self.name,
            "status": "success",
            "config": dict(config),
            "trigger_data": payload,
            "timestamp": datetime.now(timezone.utc).isoformat(),
        }


class AgentRegistry:
    """Maps agent ids to IAgent implementations."""

    def __init__(self) -> None:
        self._agents: Dict[str, IAgent] = {}
        self._resolvers: List[AgentResolver] = []

    def register(self, agent_id: str, agent: Union[IAgent, Callable[..., Any]]) -> None:
        """Register a local agent, replacing any previous one under *agent_id*.

        Args:
            agent_id: The id task definitions refer to in ``agent``
            agent: An object with an async ``run(config, payload)`` or a
                plain callable taking ``(config, payload)``
        """
        if not hasattr(agent, "run"):
            if not callable(agent):
                raise TypeError(f"Agent {agent_id!r} must define run() or be callable")
            agent = CallableAgent(agent, name=agent_id)
        if agent_id in self._agents:
            logger.info("Replacing agent %s", agent_id)
        self._agents[agent_id] = agent

    def unregister(self, agent_id: str) -> bool:
        return self._agents.pop(agent_id, None) is not None

    def add_resolver(self, resolver: AgentResolver) -> None:
        self._resolvers.append(resolver)

    def resolve(self, agent_id: str) -> IAgent:
        """Find the agent for *agent_id*.

        Raises:
            AgentNotFoundError: if neither a local registration nor any
                resolver can supply it.
        """
        agent = self._agents.get(agent_id)
        if agent is not None:
            return agent
        for resolver in self._resolvers:
            agent = resolver(agent_id)
            if agent is not None:
                return agent
        raise AgentNotFoundError(agent_id)

    def __contains__(self, agent_id: object) -> bool:
        return agent_id in self._agents

    @property
    def agent_ids(self) -> List[str]:
        return sorted(self._agents)
