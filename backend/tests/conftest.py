"""
Shared fixtures: an in-memory store builder and a scripted generation client.
"""

import asyncio
import sys
from pathlib import Path

import pytest

backend_root = Path(__file__).resolve().parent.parent
sys.path.insert(0, str(backend_root))

from mediaflow.models.graph import Edge, EdgeData, Group, Node
from mediaflow.services.cancellation import CancelToken
from mediaflow.services.generation_client import (
    GenerationClient,
    GenerationRequest,
    GenerationResult,
)
from mediaflow.services.output_persistence import OutputPersistence, SavedOutput
from mediaflow.services.workflow_store import InMemoryWorkflowStore


class FakeGenerationClient(GenerationClient):
    """
    Records requests and answers from a per-node script.

    `responses[node_id]` is a GenerationResult, an exception to raise, or a
    callable taking the request. `delays[node_id]` sleeps before answering.
    """

    def __init__(self, responses=None, delays=None, default=None):
        self.responses = responses or {}
        self.delays = delays or {}
        self.default = default or GenerationResult(success=True, image="data:image/png;base64,OUT")
        self.requests: list[GenerationRequest] = []
        self.in_flight = 0
        self.max_in_flight = 0

    async def _answer(self, request: GenerationRequest) -> GenerationResult:
        self.in_flight += 1
        self.max_in_flight = max(self.max_in_flight, self.in_flight)
        try:
            await asyncio.sleep(self.delays.get(request.node_id, 0))
            response = self.responses.get(request.node_id, self.default)
            if isinstance(response, BaseException):
                raise response
            if callable(response):
                return response(request)
            return response
        finally:
            self.in_flight -= 1

    async def generate(self, request: GenerationRequest, cancel_token: CancelToken | None = None):
        self.requests.append(request)
        if cancel_token is None:
            return await self._answer(request)
        return await cancel_token.run(self._answer(request))


class RecordingPersistence(OutputPersistence):
    def __init__(self):
        self.saved: list[SavedOutput] = []

    async def save(self, output: SavedOutput) -> None:
        self.saved.append(output)


def make_node(node_id: str, node_type: str, group_id: str | None = None, **data) -> Node:
    return Node(id=node_id, type=node_type, data=data, group_id=group_id)


def make_edge(
    source: str,
    target: str,
    target_handle: str | None = None,
    source_handle: str | None = None,
    has_pause: bool = False,
    edge_id: str | None = None,
    **extra,
) -> Edge:
    data = EdgeData(has_pause=has_pause, **extra) if (has_pause or extra) else None
    return Edge(
        id=edge_id or f"{source}->{target}:{target_handle}",
        source=source,
        target=target,
        source_handle=source_handle,
        target_handle=target_handle,
        data=data,
    )


def make_store(nodes, edges=None, groups=None) -> InMemoryWorkflowStore:
    return InMemoryWorkflowStore(
        nodes=nodes,
        edges=edges or [],
        groups={g.id: g for g in (groups or [])},
    )


@pytest.fixture
def fake_client():
    return FakeGenerationClient()


@pytest.fixture
def persistence():
    return RecordingPersistence()


__all__ = [
    "FakeGenerationClient",
    "Group",
    "RecordingPersistence",
    "make_edge",
    "make_node",
    "make_store",
]
