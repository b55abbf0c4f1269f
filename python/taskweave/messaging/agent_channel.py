"""Real-time channel to out-of-process agents over WebSockets.

Agents connect to ``/ws/agents`` and exchange AgentMessage JSON frames:

- ``heartbeat``: the first one registers the agent (``data.type`` names its
  type); later ones refresh its liveness and status
- ``task_request``: the agent asks the orchestrator for work; published on
  the bus as ``task_requested``
- ``task_completion`` / ``error_report``: replies to a dispatched task,
  matched by ``correlation_id``
- ``status_update``: the agent reports active / idle / busy / error

RemoteAgent adapts a connected agent to the IAgent protocol, so the
execution engine can run tasks on remote workers without knowing it.
"""

from __future__ import annotations

import asyncio
import logging
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional, Tuple

from fastapi import WebSocket, WebSocketDisconnect
from pydantic import BaseModel, ConfigDict, Field, ValidationError

from taskweave.config.settings import Settings, get_settings
from taskweave.exceptions import (
    AgentUnavailableError,
    ExecutionError,
    ExecutionTimeoutError,
    NetworkError,
)
from taskweave.interfaces.event_bus import EventType, IEventBus
from taskweave.scheduling.execution_history import current_execution

logger = logging.getLogger(__name__)

SERVER_ID = "server"


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


# ── Wire frames ──────────────────────────────────────────────────────


class AgentMessageType(str, Enum):
    TASK_REQUEST = "task_request"
    TASK_COMPLETION = "task_completion"
    STATUS_UPDATE = "status_update"
    ERROR_REPORT = "error_report"
    HEARTBEAT = "heartbeat"


class AgentStatus(str, Enum):
    ACTIVE = "active"
    IDLE = "idle"
    BUSY = "busy"
    ERROR = "error"


class AgentMessage(BaseModel):
    """One frame on the agent channel."""

    model_config = ConfigDict(extra="ignore")

    type: AgentMessageType
    agent_id: str = Field(min_length=1)
    task_id: Optional[str] = None
    data: Optional[Any] = None
    priority: str = Field(default="medium", pattern="^(high|medium|low)$")
    requires_response: bool = False
    timestamp: datetime = Field(default_factory=utcnow)
    correlation_id: Optional[str] = None


def server_message(
    message_type: AgentMessageType,
    data: Dict[str, Any],
    *,
    priority: str = "medium",
    task_id: Optional[str] = None,
    requires_response: bool = False,
    correlation_id: Optional[str] = None,
) -> AgentMessage:
    return AgentMessage(
        type=message_type,
        agent_id=SERVER_ID,
        task_id=task_id,
        data=data,
        priority=priority,
        requires_response=requires_response,
        correlation_id=correlation_id,
    )


@dataclass
class ConnectedAgent:
    id: str
    type: str
    socket: Any
    last_heartbeat: datetime = field(default_factory=utcnow)
    status: AgentStatus = AgentStatus.ACTIVE

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "type": self.type,
            "status": self.status.value,
            "last_heartbeat": self.last_heartbeat.isoformat(),
        }


# ── Channel ──────────────────────────────────────────────────────────


class AgentChannel:
    """Registry and message router for connected remote agents."""

    def __init__(
        self,
        event_bus: Optional[IEventBus] = None,
        settings: Optional[Settings] = None,
    ) -> None:
        self._bus = event_bus
        self._settings = settings or get_settings()
        self._agents: Dict[str, ConnectedAgent] = {}
        # correlation_id → (agent_id, task_id, future)
        self._pending: Dict[str, Tuple[str, Optional[str], asyncio.Future]] = {}
        self._monitor: Optional[asyncio.Task] = None

    @property
    def agents(self) -> Dict[str, ConnectedAgent]:
        return dict(self._agents)

    # ── Connection lifecycle ─────────────────────────────────────────

    async def handle_connection(self, websocket: WebSocket) -> None:
        """Serve one agent connection until it closes."""
        await websocket.accept()
        await self._send(websocket, server_message(
            AgentMessageType.STATUS_UPDATE,
            {"status": "connected", "message": "Please identify yourself"},
            priority="high",
            requires_response=True,
        ))

        agent_id: Optional[str] = None
        try:
            while True:
                raw = await websocket.receive_text()
                try:
                    message = AgentMessage.model_validate_json(raw)
                except ValidationError:
                    logger.warning("Invalid frame from %s", agent_id or "unidentified agent")
                    await self._send_error(websocket, "Invalid message format")
                    continue
                registered = await self._handle_message(websocket, message)
                if registered:
                    agent_id = message.agent_id
        except WebSocketDisconnect as exc:
            logger.info("Agent %s disconnected (code %s)", agent_id or "unidentified", exc.code)
        finally:
            if agent_id is not None:
                await self._drop_agent(agent_id, websocket, reason="disconnected")

    async def shutdown(self) -> None:
        if self._monitor is not None:
            self._monitor.cancel()
            await asyncio.gather(self._monitor, return_exceptions=True)
            self._monitor = None
        await self.broadcast(server_message(
            AgentMessageType.STATUS_UPDATE,
            {"status": "server_shutdown", "message": "Server is shutting down"},
            priority="high",
        ))
        for agent in list(self._agents.values()):
            try:
                await agent.socket.close(code=1001)
            except Exception:
                logger.debug("Socket for %s already closed", agent.id)
        self._fail_pending(None, NetworkError("Agent channel shut down"))
        self._agents.clear()
        logger.info("Agent channel shut down")

    # ── Dispatch ─────────────────────────────────────────────────────

    def find_agent(self, agent_ref: str) -> Optional[ConnectedAgent]:
        """Connected agent by id, else an agent of that type (idle first)."""
        agent = self._agents.get(agent_ref)
        if agent is not None:
            return agent
        candidates = [a for a in self._agents.values() if a.type == agent_ref]
        candidates.sort(key=lambda a: (a.status is not AgentStatus.IDLE, a.status is AgentStatus.ERROR))
        return candidates[0] if candidates else None

    async def dispatch(
        self,
        agent_id: str,
        task_id: str,
        data: Any = None,
        priority: str = "medium",
        timeout: Optional[float] = None,
    ) -> Any:
        """Send a task to a remote agent and wait for its correlated reply.

        Returns:
            The ``data`` of the agent's ``task_completion`` frame

        Raises:
            AgentUnavailableError: no matching agent is connected
            ExecutionError: the agent replied with ``error_report``
            ExecutionTimeoutError: no reply within *timeout*
            NetworkError: the agent disconnected before replying
        """
        agent = self.find_agent(agent_id)
        if agent is None:
            raise AgentUnavailableError(f"Agent {agent_id} not available via WebSocket")

        correlation_id = uuid.uuid4().hex
        future: asyncio.Future = asyncio.get_running_loop().create_future()
        self._pending[correlation_id] = (agent.id, task_id, future)
        try:
            sent = await self._send(agent.socket, server_message(
                AgentMessageType.TASK_REQUEST,
                data if isinstance(data, dict) else {"payload": data},
                priority=priority,
                task_id=task_id,
                requires_response=True,
                correlation_id=correlation_id,
            ))
            if not sent:
                raise AgentUnavailableError(f"Could not send task {task_id} to agent {agent.id}")
            agent.status = AgentStatus.BUSY
            wait = timeout if timeout is not None else self._settings.agent_dispatch_timeout_seconds
            try:
                return await asyncio.wait_for(future, wait)
            except asyncio.TimeoutError as exc:
                raise ExecutionTimeoutError(
                    f"Agent {agent.id} did not answer task {task_id} within {wait}s"
                ) from exc
        finally:
            self._pending.pop(correlation_id, None)

    async def send_to_agent(self, agent_id: str, message: AgentMessage) -> bool:
        agent = self._agents.get(agent_id)
        if agent is None:
            logger.warning("Cannot send to %s: not connected", agent_id)
            return False
        return await self._send(agent.socket, message)

    async def broadcast(self, message: AgentMessage, exclude: Optional[List[str]] = None) -> int:
        """Send *message* to every connected agent; returns the number reached."""
        excluded = set(exclude or [])
        sent = 0
        for agent in list(self._agents.values()):
            if agent.id in excluded:
                continue
            if await self._send(agent.socket, message):
                sent += 1
        return sent

    # ── Liveness ─────────────────────────────────────────────────────

    async def check_heartbeats(self) -> List[str]:
        """Drop agents silent for longer than the heartbeat timeout."""
        timeout = self._settings.agent_heartbeat_timeout_seconds
        now = utcnow()
        stale = [
            agent for agent in self._agents.values()
            if (now - agent.last_heartbeat).total_seconds() > timeout
        ]
        for agent in stale:
            logger.warning("Agent %s heartbeat timeout", agent.id)
            try:
                await agent.socket.close(code=1000)
            except Exception:
                logger.debug("Socket for %s already closed", agent.id)
            await self._drop_agent(agent.id, agent.socket, reason="heartbeat_timeout")
        return [agent.id for agent in stale]

    def start_heartbeat_monitor(self) -> None:
        if self._monitor is None:
            self._monitor = asyncio.create_task(self._heartbeat_loop())

    async def _heartbeat_loop(self) -> None:
        while True:
            await asyncio.sleep(self._settings.heartbeat_check_interval_seconds)
            await self.check_heartbeats()

    def get_status(self) -> Dict[str, Any]:
        by_status = {s.value: 0 for s in AgentStatus}
        for agent in self._agents.values():
            by_status[agent.status.value] += 1
        return {
            "connected_agents": len(self._agents),
            **by_status,
            "pending_dispatches": len(self._pending),
            "agents": [a.to_dict() for a in self._agents.values()],
        }

    def resolver(self, agent_id: str) -> Optional["RemoteAgent"]:
        """AgentRegistry fallback: a RemoteAgent when *agent_id* is connected."""
        if self.find_agent(agent_id) is None:
            return None
        return RemoteAgent(self, agent_id)

    # ── Message handling ─────────────────────────────────────────────

    async def _handle_message(self, socket: Any, message: AgentMessage) -> bool:
        """Route one frame. Returns True when it registered a new agent."""
        handler = {
            AgentMessageType.HEARTBEAT: self._on_heartbeat,
            AgentMessageType.TASK_REQUEST: self._on_task_request,
            AgentMessageType.TASK_COMPLETION: self._on_task_completion,
            AgentMessageType.STATUS_UPDATE: self._on_status_update,
            AgentMessageType.ERROR_REPORT: self._on_error_report,
        }[message.type]
        return bool(await handler(socket, message))

    async def _on_heartbeat(self, socket: Any, message: AgentMessage) -> bool:
        data = message.data if isinstance(message.data, dict) else {}
        agent = self._agents.get(message.agent_id)
        registered = False
        if agent is None:
            agent = ConnectedAgent(
                id=message.agent_id,
                type=str(data.get("type", "unknown")),
                socket=socket,
            )
            self._apply_status(agent, data.get("status"))
            self._agents[agent.id] = agent
            registered = True
            logger.info("Registered agent %s (%s)", agent.id, agent.type)
            await self._send(socket, server_message(
                AgentMessageType.STATUS_UPDATE,
                {
                    "status": "registered",
                    "message": f"Agent {agent.id} registered successfully",
                    "agent_count": len(self._agents),
                },
                priority="high",
            ))
            await self._publish(EventType.AGENT_REGISTERED, {"agent": agent.to_dict()})
        else:
            agent.last_heartbeat = utcnow()
            self._apply_status(agent, data.get("status"))

        await self._send(socket, server_message(
            AgentMessageType.HEARTBEAT,
            {"status": "acknowledged", "server_time": utcnow().isoformat()},
            priority="low",
            correlation_id=message.correlation_id,
        ))
        return registered

    async def _on_task_request(self, socket: Any, message: AgentMessage) -> None:
        logger.info("Task request from %s: %s", message.agent_id, message.task_id)
        agent = self._agents.get(message.agent_id)
        if agent is not None:
            agent.status = AgentStatus.BUSY
        await self._publish(EventType.TASK_REQUESTED, {
            "agent_id": message.agent_id,
            "agent_type": agent.type if agent else None,
            "task_id": message.task_id,
            "data": message.data,
            "priority": message.priority,
            "correlation_id": message.correlation_id,
        })
        if message.requires_response:
            await self._acknowledge(socket, message, "task_acknowledged")

    async def _on_task_completion(self, socket: Any, message: AgentMessage) -> None:
        logger.info("Task completion from %s: %s", message.agent_id, message.task_id)
        agent = self._agents.get(message.agent_id)
        if agent is not None:
            agent.status = AgentStatus.IDLE
        future = self._match_pending(message)
        if future is not None and not future.done():
            future.set_result(message.data)
        await self._publish(EventType.AGENT_TASK_COMPLETED, {
            "agent_id": message.agent_id,
            "task_id": message.task_id,
            "result": message.data,
            "completion_time": message.timestamp.isoformat(),
        })
        if message.requires_response:
            await self._acknowledge(socket, message, "completion_acknowledged")

    async def _on_status_update(self, socket: Any, message: AgentMessage) -> None:
        agent = self._agents.get(message.agent_id)
        data = message.data if isinstance(message.data, dict) else {}
        if agent is not None:
            self._apply_status(agent, data.get("status"))

    async def _on_error_report(self, socket: Any, message: AgentMessage) -> None:
        logger.error("Error report from %s: %s", message.agent_id, message.data)
        agent = self._agents.get(message.agent_id)
        if agent is not None:
            agent.status = AgentStatus.ERROR
        future = self._match_pending(message)
        if future is not None and not future.done():
            future.set_exception(ExecutionError(
                f"Agent {message.agent_id} reported an error: {_error_text(message.data)}",
                details={"agent_id": message.agent_id, "task_id": message.task_id},
            ))
        await self._publish(EventType.AGENT_ERROR, {
            "agent_id": message.agent_id,
            "task_id": message.task_id,
            "error": message.data,
        })
        await self._acknowledge(socket, message, "error_acknowledged")

    # ── Internal helpers ─────────────────────────────────────────────

    def _match_pending(self, message: AgentMessage) -> Optional[asyncio.Future]:
        if message.correlation_id and message.correlation_id in self._pending:
            return self._pending[message.correlation_id][2]
        for agent_id, task_id, future in self._pending.values():
            if agent_id == message.agent_id and task_id == message.task_id and not future.done():
                return future
        return None

    def _fail_pending(self, agent_id: Optional[str], error: Exception) -> None:
        for owner, _task_id, future in list(self._pending.values()):
            if (agent_id is None or owner == agent_id) and not future.done():
                future.set_exception(error)

    async def _drop_agent(self, agent_id: str, socket: Any, reason: str) -> None:
        agent = self._agents.get(agent_id)
        if agent is None or agent.socket is not socket:
            return
        del self._agents[agent_id]
        self._fail_pending(agent_id, NetworkError(f"Agent {agent_id} disconnected"))
        await self._publish(EventType.AGENT_DISCONNECTED, {"agent": agent.to_dict(), "reason": reason})

    def _apply_status(self, agent: ConnectedAgent, status: Any) -> None:
        if not status:
            return
        try:
            agent.status = AgentStatus(status)
        except ValueError:
            logger.debug("Ignoring unknown status %r from %s", status, agent.id)

    async def _acknowledge(self, socket: Any, message: AgentMessage, status: str) -> None:
        await self._send(socket, server_message(
            AgentMessageType.STATUS_UPDATE,
            {"status": status, "task_id": message.task_id},
            task_id=message.task_id,
            correlation_id=message.correlation_id,
        ))

    async def _send_error(self, socket: Any, text: str) -> None:
        await self._send(socket, server_message(
            AgentMessageType.ERROR_REPORT, {"error": text}, priority="high"
        ))

    async def _send(self, socket: Any, message: AgentMessage) -> bool:
        try:
            await socket.send_text(message.model_dump_json())
        except Exception as exc:
            logger.warning("Failed to send %s frame: %s", message.type.value, exc)
            return False
        return True

    async def _publish(self, event: EventType, data: Dict[str, Any]) -> None:
        if self._bus is not None:
            await self._bus.publish(event, data, source="agent_channel")


def _error_text(data: Any) -> str:
    if isinstance(data, dict):
        return str(data.get("error") or data.get("message") or data)
    return str(data)


class RemoteAgent:
    """IAgent adapter that runs a task on a connected remote agent."""

    def __init__(self, channel: AgentChannel, agent_id: str) -> None:
        self._channel = channel
        self.agent_id = agent_id

    async def run(self, config: Dict[str, Any], payload: Optional[Any] = None) -> Any:
        execution = current_execution.get()
        data: Dict[str, Any] = {"config": config, "payload": payload}
        if execution is not None:
            task_id = execution.task_id
            data.update(
                execution_id=execution.id,
                lineage_id=execution.lineage_id,
                attempt=execution.attempt,
            )
        else:
            task_id = str(config.get("task_id") or uuid.uuid4().hex[:8])
        return await self._channel.dispatch(self.agent_id, task_id, data)
