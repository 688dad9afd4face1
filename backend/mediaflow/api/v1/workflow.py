"""
Workflow engine endpoints.

Commands (run, stop, regenerate, concurrency) go to the app's single
WorkflowScheduler; progress is observable through GET /state or the
GET /events Server-Sent Events stream.
"""

import asyncio
import json
import logging
from typing import Optional

from fastapi import APIRouter, Depends, HTTPException
from fastapi.responses import StreamingResponse
from pydantic import BaseModel, ConfigDict, Field

from mediaflow.models.execution import RunState, ValidationResult, WorkflowRunResult
from mediaflow.models.graph import GraphSnapshot
from mediaflow.services.errors import WorkflowValidationError
from mediaflow.services.scheduler import WorkflowScheduler
from mediaflow.services.validator import ensure_valid
from mediaflow.services.workflow_store import InMemoryWorkflowStore

from ..dependencies import get_scheduler, get_store

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/workflow")

KEEPALIVE_SECONDS = 15.0


class RunRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    resume_node_id: Optional[str] = Field(None, alias="resumeNodeId")
    validate_first: bool = Field(False, alias="validate")


class ConcurrencyRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    max_concurrent_calls: int = Field(..., alias="maxConcurrentCalls")


class GraphLoadResponse(BaseModel):
    nodes: int
    edges: int
    groups: int


@router.get("/state", response_model=RunState)
async def get_state(scheduler: WorkflowScheduler = Depends(get_scheduler)):
    return scheduler.state


@router.get("/graph")
async def get_graph(store: InMemoryWorkflowStore = Depends(get_store)):
    return store.snapshot().model_dump(mode="json", by_alias=True)


@router.put("/graph", response_model=GraphLoadResponse)
async def put_graph(
    snapshot: GraphSnapshot,
    scheduler: WorkflowScheduler = Depends(get_scheduler),
    store: InMemoryWorkflowStore = Depends(get_store),
):
    """Replace the workflow graph. Not allowed while a run is active."""
    if scheduler.is_running:
        raise HTTPException(status_code=409, detail="Cannot replace the graph while a workflow is running")
    try:
        store.load(snapshot)
    except ValueError as e:
        raise HTTPException(status_code=422, detail=str(e))
    return GraphLoadResponse(
        nodes=len(snapshot.nodes), edges=len(snapshot.edges), groups=len(snapshot.groups)
    )


@router.post("/run", status_code=202, response_model=RunState)
async def run_workflow(
    request: Optional[RunRequest] = None,
    scheduler: WorkflowScheduler = Depends(get_scheduler),
):
    """
    Start (or resume) a run in the background.

    Returns 409 when a run is already active; runs are never queued.
    """
    request = request or RunRequest()
    if request.validate_first:
        snapshot = scheduler.store.snapshot()
        try:
            ensure_valid(snapshot.nodes, snapshot.edges)
        except WorkflowValidationError as e:
            raise HTTPException(
                status_code=422,
                detail={"message": "Workflow validation failed", "errors": e.errors},
            )

    task = scheduler.launch(resume_node_id=request.resume_node_id)
    if task is None:
        raise HTTPException(status_code=409, detail="Workflow already running")
    return scheduler.state


@router.post("/stop", response_model=RunState)
async def stop_workflow(scheduler: WorkflowScheduler = Depends(get_scheduler)):
    scheduler.stop()
    return scheduler.state


@router.put("/concurrency", response_model=RunState)
async def set_concurrency(
    request: ConcurrencyRequest,
    scheduler: WorkflowScheduler = Depends(get_scheduler),
):
    scheduler.set_concurrency_limit(request.max_concurrent_calls)
    return scheduler.state


@router.get("/validate", response_model=ValidationResult)
async def validate_workflow(scheduler: WorkflowScheduler = Depends(get_scheduler)):
    return scheduler.validate()


@router.post("/nodes/{node_id}/regenerate", response_model=WorkflowRunResult)
async def regenerate_node(
    node_id: str,
    scheduler: WorkflowScheduler = Depends(get_scheduler),
):
    try:
        result = await scheduler.regenerate_node(node_id)
    except KeyError:
        raise HTTPException(status_code=404, detail=f"Node {node_id} not found")
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))
    if result is None:
        raise HTTPException(status_code=409, detail="Workflow already running")
    return result


@router.get("/events")
async def stream_events(scheduler: WorkflowScheduler = Depends(get_scheduler)):
    """
    Stream progress as Server-Sent Events.

    The first event is a `state` snapshot; after that every scheduler event
    is forwarded as it happens, with keep-alive comments in between.
    """
    queue = scheduler.subscribe()

    async def event_generator():
        try:
            state = scheduler.state.model_dump(mode="json")
            yield f"data: {json.dumps({'event': 'state', **state})}\n\n"
            while True:
                try:
                    event = await asyncio.wait_for(queue.get(), timeout=KEEPALIVE_SECONDS)
                except asyncio.TimeoutError:
                    yield ": keep-alive\n\n"
                    continue
                yield event.to_sse()
        finally:
            scheduler.unsubscribe(queue)
            logger.debug("SSE listener disconnected")

    return StreamingResponse(
        event_generator(),
        media_type="text/event-stream",
        headers={
            "Cache-Control": "no-cache",
            "Connection": "keep-alive",
            "X-Accel-Buffering": "no",  # Disable nginx buffering
        },
    )
