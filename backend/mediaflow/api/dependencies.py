"""
FastAPI dependencies for the workflow service.

The scheduler and store are created once in the app lifespan and kept on
`app.state`; tests swap them through `app.dependency_overrides`.
"""

from fastapi import HTTPException, Request

from mediaflow.services.scheduler import WorkflowScheduler
from mediaflow.services.workflow_store import InMemoryWorkflowStore


def get_scheduler(request: Request) -> WorkflowScheduler:
    scheduler = getattr(request.app.state, "scheduler", None)
    if scheduler is None:
        raise HTTPException(status_code=503, detail="Workflow engine not initialised")
    return scheduler


def get_store(request: Request) -> InMemoryWorkflowStore:
    store = getattr(request.app.state, "store", None)
    if store is None:
        raise HTTPException(status_code=503, detail="Workflow engine not initialised")
    return store
