"""
taskweave: FastAPI application entry point.

Provides the HTTP and WebSocket surface of the orchestrator:
- /health: liveness
- /api/status: orchestrator, engine, queue and agent status
- /api/tasks, /api/executions, /api/decisions, /api/analysis: inspection
- /api/tasks/{task_id}/trigger: run a task on demand
- /api/events/{event_name}: publish a trigger event
- /api/tasks/{task_id}/recommendation, /api/scheduling/patterns: adaptive scheduling
- /api/queues/{topic}: queue statistics and purge
- /ws/agents: real-time channel for remote agents

Serve with ``uvicorn --factory taskweave.api.app:create_app`` or the
``taskweave`` console script.
"""

import logging
from contextlib import asynccontextmanager
from typing import Any, Dict, Optional

import uvicorn
from fastapi import FastAPI, HTTPException, Query, WebSocket
from fastapi.middleware.cors import CORSMiddleware
from pydantic import BaseModel, Field

from taskweave.config.settings import get_settings
from taskweave.exceptions import QueueError
from taskweave.enhanced_logging import configure_logging
from taskweave.orchestrator import Orchestrator

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Request models
# ---------------------------------------------------------------------------


class TriggerRequest(BaseModel):
    payload: Dict[str, Any] = Field(default_factory=dict)


class EventRequest(BaseModel):
    data: Dict[str, Any] = Field(default_factory=dict)


# ---------------------------------------------------------------------------
# Application factory
# ---------------------------------------------------------------------------


def create_app(orchestrator: Optional[Orchestrator] = None) -> FastAPI:
    """Build the FastAPI app around *orchestrator* (a default one if omitted)."""
    if orchestrator is None:
        orchestrator = Orchestrator()
    settings = orchestrator.settings

    @asynccontextmanager
    async def lifespan(application: FastAPI):
        configure_logging(settings.log_level, settings.log_format, settings.log_file)
        logger.info("%s %s starting up", settings.app_name, settings.app_version)
        await orchestrator.start()
        yield
        await orchestrator.stop()
        logger.info("%s shutting down", settings.app_name)

    app = FastAPI(
        title=settings.app_name,
        version=settings.app_version,
        description="Adaptive task orchestration",
        lifespan=lifespan,
    )
    app.state.orchestrator = orchestrator
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"] if settings.debug else settings.cors_origins,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    # -----------------------------------------------------------------------
    # Routes
    # -----------------------------------------------------------------------

    @app.get("/health")
    async def health():
        return {
            "status": "healthy" if orchestrator.is_running else "starting",
            "version": settings.app_version,
        }

    @app.get("/api/status")
    async def status():
        return orchestrator.get_status()

    @app.get("/api/tasks")
    async def list_tasks():
        task_set = orchestrator.task_set
        if task_set is None:
            return {"version": None, "tasks": []}
        return {
            "version": task_set.version,
            "tasks": [task.model_dump(mode="json") for task in task_set],
            "execution_order": task_set.execution_order(),
        }

    @app.get("/api/executions")
    async def list_executions(
        task_id: Optional[str] = None,
        limit: int = Query(default=100, ge=1, le=10000),
    ):
        records = orchestrator.engine.get_history(task_id)
        return {
            "total": len(records),
            "executions": [r.to_dict() for r in records[-limit:]],
        }

    @app.get("/api/decisions")
    async def list_decisions():
        active = orchestrator.decisions.active_decisions
        return {"decisions": [d.to_dict() for d in active.values()]}

    @app.get("/api/analysis")
    async def analysis():
        latest = orchestrator.analyzer.latest or orchestrator.analyzer.analyze()
        return latest.to_dict()

    @app.post("/api/tasks/{task_id}/trigger", status_code=202)
    async def trigger_task(task_id: str, req: Optional[TriggerRequest] = None):
        payload = req.payload if req is not None else {}
        try:
            triggered = await orchestrator.trigger_task(task_id, payload)
        except KeyError:
            raise HTTPException(status_code=404, detail=f"Unknown task: {task_id}")
        if not triggered:
            raise HTTPException(status_code=409, detail=f"Task {task_id} is disabled")
        return {"task_id": task_id, "triggered": True}

    @app.post("/api/events/{event_name}", status_code=202)
    async def publish_event(event_name: str, req: Optional[EventRequest] = None):
        data = req.data if req is not None else {}
        listeners = await orchestrator.publish_event(event_name, data)
        return {"event": event_name, "subscribers": listeners}

    @app.get("/api/tasks/{task_id}/recommendation")
    async def recommendation(task_id: str, urgency: str = Query(default="medium", pattern="^(high|medium|low)$")):
        try:
            return orchestrator.recommend(task_id, urgency).to_dict()
        except KeyError:
            raise HTTPException(status_code=404, detail=f"Unknown task: {task_id}")

    @app.get("/api/scheduling/patterns")
    async def scheduling_patterns():
        return orchestrator.learner.analytics()

    @app.get("/api/queues/{topic}")
    async def queue_stats(topic: str):
        try:
            return await orchestrator.get_queue_stats(topic)
        except QueueError as exc:
            raise HTTPException(status_code=503, detail=exc.message)

    @app.delete("/api/queues/{topic}/messages")
    async def purge_queue(topic: str):
        try:
            purged = await orchestrator.purge_queue(topic)
        except QueueError as exc:
            raise HTTPException(status_code=503, detail=exc.message)
        return {"topic": topic, "purged": purged}

    @app.websocket("/ws/agents")
    async def agent_socket(websocket: WebSocket):
        await orchestrator.channel.handle_connection(websocket)

    return app


def main() -> None:
    settings = get_settings()
    uvicorn.run("taskweave.api.app:create_app", factory=True, host=settings.api_host, port=settings.api_port)
