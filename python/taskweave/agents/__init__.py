"""Agent resolution for task execution."""

from taskweave.agents.registry import AgentRegistry, CallableAgent, EchoAgent

__all__ = ["AgentRegistry", "CallableAgent", "EchoAgent"]
