"""FastAPI backend for the workflow editor.

This module provides:
- REST API to start, inspect and cancel runs
- WebSocket for real-time execution updates

Architecture Notes:
- Every run gets its own ExecutionStateStore, so runs may overlap. Store
  events are broadcast to WebSocket clients watching that run.
- Run state lives in process memory only. Restarting the server forgets
  all runs.
"""

from __future__ import annotations

import asyncio
import logging
import os
import uuid
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from datetime import UTC, datetime, timedelta
from typing import Any

import pydantic
import uvicorn
from fastapi import FastAPI, HTTPException, WebSocket, WebSocketDisconnect
from fastapi.middleware.cors import CORSMiddleware
from pydantic import BaseModel, Field

from agentflow.core.config import EngineConfig, load_config
from agentflow.core.graph_engine import RunResult, WorkflowScheduler
from agentflow.core.graph_schema import WorkflowGraph, parse_workflow
from agentflow.core.state import Event, ExecutionStateStore
from agentflow.integrations.base import Collaborators
from agentflow.integrations.defaults import build_collaborators

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Close shared collaborator clients on shutdown."""
    global _collaborators
    yield
    if _collaborators is not None:
        await _collaborators.aclose()
        _collaborators = None


app = FastAPI(
    title="Agentflow Studio API",
    description="API for running and observing workflow graphs",
    version="1.0.0",
    lifespan=lifespan,
)


def _get_allowed_origins() -> list[str]:
    """Local development origins, plus the configured port."""
    origins = [
        "http://localhost:3000",
        "http://localhost:5173",
        "http://127.0.0.1:3000",
        "http://127.0.0.1:5173",
    ]
    configured_port = os.environ.get("AGENTFLOW_STUDIO_PORT")
    if configured_port and configured_port not in ("3000", "5173"):
        origins.extend(
            [
                f"http://localhost:{configured_port}",
                f"http://127.0.0.1:{configured_port}",
            ]
        )
    return origins


ALLOWED_ORIGINS = _get_allowed_origins()

app.add_middleware(
    CORSMiddleware,
    allow_origins=ALLOWED_ORIGINS,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


# Global instances - initialized lazily
_config: EngineConfig | None = None
_collaborators: Collaborators | None = None


def get_config() -> EngineConfig:
    """Get or load engine config (``AGENTFLOW_CONFIG`` names an explicit file)."""
    global _config
    if _config is None:
        _config = load_config(os.environ.get("AGENTFLOW_CONFIG"))
    return _config


def get_collaborators() -> Collaborators:
    """Get or create the shared collaborator clients."""
    global _collaborators
    if _collaborators is None:
        _collaborators = build_collaborators(get_config())
    return _collaborators


# ========== Run registry ==========


# Finished runs are forgotten after this long, or once there are more of them
FINISHED_EXECUTION_TTL = timedelta(hours=1)
MAX_FINISHED_EXECUTIONS = 100


@dataclass
class ExecutionRecord:
    """One run started by this server.

    Store events are queued on ``events`` and forwarded to WebSocket clients
    by a single ``sender`` task, so clients see them in store order.
    """

    execution_id: str
    graph: WorkflowGraph
    store: ExecutionStateStore
    cancel_event: asyncio.Event
    started_at: datetime = field(default_factory=lambda: datetime.now(UTC))
    finished_at: datetime | None = None
    task: asyncio.Task | None = None
    result: RunResult | None = None
    events: asyncio.Queue = field(default_factory=asyncio.Queue)
    sender: asyncio.Task | None = None

    @property
    def status(self) -> str:
        if self.result is not None:
            return self.result.status.value
        return "running"

    def publish(self, message: dict[str, Any]) -> None:
        self.events.put_nowait(message)

    def start_sender(self) -> None:
        self.sender = asyncio.create_task(_send_events(self))

    async def close(self) -> None:
        """Flush queued events, then stop the sender."""
        self.events.put_nowait(None)
        if self.sender is not None:
            await self.sender


async def _send_events(record: ExecutionRecord) -> None:
    while True:
        message = await record.events.get()
        if message is None:
            return
        await manager.broadcast(record.execution_id, message)


_executions: dict[str, ExecutionRecord] = {}


def _evict_finished(now: datetime | None = None) -> list[str]:
    """Drop finished runs past the TTL, then the oldest beyond the cap."""
    now = now or datetime.now(UTC)
    finished = sorted(
        (r for r in _executions.values() if r.finished_at is not None),
        key=lambda r: r.finished_at,
    )
    expired = sum(1 for r in finished if now - r.finished_at > FINISHED_EXECUTION_TTL)
    cutoff = max(expired, len(finished) - MAX_FINISHED_EXECUTIONS)

    evicted = [r.execution_id for r in finished[:cutoff]]
    for execution_id in evicted:
        del _executions[execution_id]
    if evicted:
        logger.debug(f"Evicted {len(evicted)} finished execution(s)")
    return evicted


def _get_record(execution_id: str) -> ExecutionRecord:
    record = _executions.get(execution_id)
    if record is None:
        raise HTTPException(status_code=404, detail="Execution not found")
    return record


# ========== API Models ==========


class ExecutionRequest(BaseModel):
    """Request to execute a workflow"""

    graph: dict[str, Any]  # Native schema or editor export
    start_node_id: str | None = None
    trigger_payload: dict[str, Any] | None = None


class ExecutionResponse(BaseModel):
    """Execution status response"""

    execution_id: str
    graph_id: str
    status: str
    started_at: str
    warnings: list[str] = Field(default_factory=list)


def _parse_graph(data: dict[str, Any]) -> WorkflowGraph:
    try:
        return parse_workflow(data)
    except pydantic.ValidationError as e:
        errors = [
            f"{'.'.join(str(x) for x in err['loc'])}: {err['msg']}" for err in e.errors()
        ]
        raise HTTPException(status_code=400, detail={"validation_errors": errors}) from None


# ========== Endpoints ==========


@app.post("/api/execute")
async def execute_workflow(request: ExecutionRequest) -> ExecutionResponse:
    """Start a run in the background and return its id."""
    graph = _parse_graph(request.graph)
    errors = graph.validate_graph()
    if errors:
        raise HTTPException(status_code=400, detail={"validation_errors": errors})
    if request.start_node_id and graph.get_node(request.start_node_id) is None:
        raise HTTPException(
            status_code=400, detail=f"Start node '{request.start_node_id}' not found"
        )

    _evict_finished()
    execution_id = uuid.uuid4().hex[:12]
    record = ExecutionRecord(
        execution_id=execution_id,
        graph=graph,
        store=ExecutionStateStore(),
        cancel_event=asyncio.Event(),
    )
    _executions[execution_id] = record

    def on_event(event: Event) -> None:
        # Store callbacks are synchronous; the sender task does the sending
        record.publish({"type": event.event_type.value, **event.model_dump(mode="json")})

    record.store.subscribe(on_event)
    record.start_sender()
    record.task = asyncio.create_task(_run_execution(record, request))

    return ExecutionResponse(
        execution_id=execution_id,
        graph_id=graph.id,
        status="running",
        started_at=record.started_at.isoformat(),
        warnings=graph.config_warnings(),
    )


async def _run_execution(record: ExecutionRecord, request: ExecutionRequest) -> None:
    """Background task: run the graph, then broadcast completion."""
    scheduler = WorkflowScheduler(
        store=record.store,
        collaborators=get_collaborators(),
        config=get_config(),
    )
    try:
        try:
            record.result = await scheduler.run(
                record.graph,
                request.start_node_id,
                trigger_payload=request.trigger_payload,
                cancel_event=record.cancel_event,
                run_id=record.execution_id,
            )
        except Exception as e:
            logger.error(f"Execution {record.execution_id} crashed: {e}")
            record.result = RunResult(
                run_id=record.execution_id, error=str(e), finished_at=datetime.now(UTC)
            )

        record.publish(
            {
                "type": "execution_complete",
                "status": record.result.status.value,
                "error": record.result.error,
            }
        )
    finally:
        record.finished_at = datetime.now(UTC)
        await record.close()


@app.get("/api/executions/{execution_id}")
def get_execution(execution_id: str) -> dict[str, Any]:
    """Statuses, outputs, logs and (once finished) the run result."""
    record = _get_record(execution_id)
    snapshot = record.store.snapshot()
    return {
        "execution_id": execution_id,
        "graph_id": record.graph.id,
        "status": record.status,
        "started_at": record.started_at.isoformat(),
        "statuses": snapshot["statuses"],
        "outputs": snapshot["outputs"],
        "logs": snapshot["logs"],
        "result": record.result.model_dump(mode="json") if record.result else None,
    }


@app.post("/api/executions/{execution_id}/cancel")
async def cancel_execution(execution_id: str) -> dict[str, str]:
    """
    Request cancellation of a running execution.

    The in-flight node is torn down at once; the run then finishes with
    status 'cancelled'.
    """
    record = _get_record(execution_id)
    if record.result is not None:
        raise HTTPException(
            status_code=400, detail=f"Cannot cancel execution in '{record.status}' state"
        )
    record.cancel_event.set()
    return {"status": "cancelling", "execution_id": execution_id}


# ========== WebSocket for Live Updates ==========


class ConnectionManager:
    """
    Manage WebSocket connections with event-driven broadcasting.

    - Clients connect and receive the initial state
    - Store events are broadcast as they happen
    - All connected clients receive updates simultaneously
    """

    def __init__(self):
        self.active_connections: dict[str, list[WebSocket]] = {}

    async def connect(self, websocket: WebSocket, execution_id: str):
        await websocket.accept()
        if execution_id not in self.active_connections:
            self.active_connections[execution_id] = []
        self.active_connections[execution_id].append(websocket)

    def disconnect(self, websocket: WebSocket, execution_id: str):
        if execution_id in self.active_connections:
            try:
                self.active_connections[execution_id].remove(websocket)
            except ValueError:
                pass
            if not self.active_connections[execution_id]:
                del self.active_connections[execution_id]

    async def broadcast(self, execution_id: str, message: dict):
        """Broadcast message to all clients watching this execution."""
        if execution_id not in self.active_connections:
            return

        connections = self.active_connections[execution_id][:]

        async def safe_send(conn: WebSocket):
            try:
                await conn.send_json(message)
            except Exception:
                self.disconnect(conn, execution_id)

        await asyncio.gather(*[safe_send(c) for c in connections], return_exceptions=True)


manager = ConnectionManager()


@app.websocket("/ws/executions/{execution_id}")
async def execution_websocket(websocket: WebSocket, execution_id: str):
    """
    WebSocket for live execution updates.

    Protocol:
    1. On connect: send the initial state (store snapshot)
    2. During execution: receive broadcast store events and execution_complete
    3. Client can send "ping", server responds with "pong"
    """
    await manager.connect(websocket, execution_id)

    try:
        record = _executions.get(execution_id)
        if record is None:
            await websocket.send_json({"type": "error", "code": 404, "detail": "Execution not found"})
            await websocket.close(code=4004, reason="Execution not found")
            return

        await websocket.send_json(
            {"type": "initial_state", "status": record.status, **record.store.snapshot()}
        )

        if record.result is not None:
            await websocket.send_json({"type": "execution_complete", "status": record.status})
            await websocket.close(code=1000, reason="Execution already complete")
            return

        while True:
            try:
                msg = await asyncio.wait_for(websocket.receive_text(), timeout=30.0)
                if msg == "ping":
                    await websocket.send_json({"type": "pong"})
            except TimeoutError:
                # Heartbeat to detect dead connections
                try:
                    await websocket.send_json({"type": "heartbeat"})
                except Exception:
                    break

    except WebSocketDisconnect:
        pass
    except Exception as e:
        logger.error(f"WebSocket error: {e}")
    finally:
        manager.disconnect(websocket, execution_id)


def run_server(host: str = "127.0.0.1", port: int = 8000, reload: bool = False) -> None:
    """Serve the studio API with uvicorn."""
    os.environ["AGENTFLOW_STUDIO_PORT"] = str(port)
    uvicorn.run("agentflow.studio.server:app", host=host, port=port, reload=reload)
