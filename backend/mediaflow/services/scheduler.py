"""
Workflow scheduler: runs a graph level by level with bounded concurrency.

Run lifecycle:
    IDLE -> RUNNING -> COMPLETED | FAILED | CANCELLED | PAUSED

- Levels run strictly in order. Each level is cut into batches of at most
  `max_concurrent_calls` nodes; the nodes of a batch run concurrently and the
  next batch starts only when the whole batch has settled.
- An edge marked `hasPause` stops the run before its target executes. Starting
  again with `resume_node_id` resumes from that node's level.
- Nodes in a locked group are skipped.
- The first node failure in a batch cancels the run's token and fails the run.
- `stop()` cancels the token and bumps the run version, so results of the
  aborted run that land afterwards are discarded instead of written.

At most one run (or regeneration) is active per scheduler; a second start is
rejected, never queued.
"""

from __future__ import annotations

import asyncio
import logging
import time
from typing import Any

from mediaflow.config import EngineConfig
from mediaflow.models.execution import (
    NodeExecutionResult,
    RunState,
    RunStatus,
    ValidationResult,
    WorkflowEvent,
    WorkflowRunResult,
)
from mediaflow.models.graph import GraphSnapshot, Node
from mediaflow.models.node_registry import is_regenerable
from mediaflow.services.cancellation import CancelToken
from mediaflow.services.errors import AbortError, AbortReason, CycleError, NodeExecutionError
from mediaflow.services.generation_client import GenerationClient, ProviderSettings
from mediaflow.services.level_planner import chunk, find_level_index, plan_execution
from mediaflow.services.node_executor import NodeExecutionContext, execute_node
from mediaflow.services.output_persistence import OutputPersistence
from mediaflow.services.validator import validate_workflow
from mediaflow.services.workflow_store import WorkflowStore

logger = logging.getLogger(__name__)


def _elapsed_ms(start: float) -> int:
    return int((time.perf_counter() - start) * 1000)


class WorkflowScheduler:
    def __init__(
        self,
        store: WorkflowStore,
        client: GenerationClient | None = None,
        *,
        provider_settings: ProviderSettings | None = None,
        persistence: OutputPersistence | None = None,
        max_concurrent_calls: int | None = None,
        history_limit: int | None = None,
    ):
        self._store = store
        self._client = client
        self._provider_settings = provider_settings or ProviderSettings()
        self._persistence = persistence
        self._history_limit = history_limit

        limit = (
            EngineConfig.clamp_concurrency(max_concurrent_calls)
            if max_concurrent_calls is not None
            else EngineConfig.default_max_concurrent_calls()
        )
        self._state = RunState(max_concurrent_calls=limit)
        self._cancel_token: CancelToken | None = None
        self._run_version = 0
        self._task: asyncio.Task | None = None
        self._listeners: set[asyncio.Queue] = set()

    # ------------------------------------------------------------------
    # Observable state
    # ------------------------------------------------------------------

    @property
    def state(self) -> RunState:
        return self._state.model_copy(deep=True)

    @property
    def is_running(self) -> bool:
        return self._state.is_running

    @property
    def max_concurrent_calls(self) -> int:
        return self._state.max_concurrent_calls

    @property
    def cancel_token(self) -> CancelToken | None:
        return self._cancel_token

    @property
    def store(self) -> WorkflowStore:
        return self._store

    def subscribe(self) -> asyncio.Queue:
        """Register a listener queue that receives every WorkflowEvent."""
        queue: asyncio.Queue = asyncio.Queue()
        self._listeners.add(queue)
        return queue

    def unsubscribe(self, queue: asyncio.Queue) -> None:
        self._listeners.discard(queue)

    def _emit(self, event: str, **payload: Any) -> None:
        message = WorkflowEvent(event=event, payload=payload)
        for queue in list(self._listeners):
            queue.put_nowait(message)

    # ------------------------------------------------------------------
    # Commands
    # ------------------------------------------------------------------

    def set_concurrency_limit(self, value: int) -> int:
        """Clamp to 1..10. Takes effect from the next level that is batched."""
        clamped = EngineConfig.clamp_concurrency(value)
        self._state.max_concurrent_calls = clamped
        logger.info("Max concurrent calls set to %d", clamped)
        return clamped

    def validate(self) -> ValidationResult:
        snapshot = self._store.snapshot()
        return validate_workflow(snapshot.nodes, snapshot.edges)

    def stop(self) -> None:
        was_running = self._state.is_running
        if self._cancel_token is not None:
            self._cancel_token.cancel(AbortReason.USER_CANCELLED)
        self._run_version += 1
        self._state = RunState(
            status=RunStatus.CANCELLED if was_running else RunStatus.IDLE,
            max_concurrent_calls=self._state.max_concurrent_calls,
        )
        self._reset_loading_nodes()
        if was_running:
            logger.info("Workflow stopped by user")
            self._emit("workflow_cancelled")

    async def start(self, resume_node_id: str | None = None) -> WorkflowRunResult | None:
        """
        Run the whole graph, or resume from `resume_node_id`'s level.

        Returns None without doing anything if a run is already active.
        """
        claim = self._claim()
        if claim is None:
            return None
        version, token = claim
        return await self._run(version, token, resume_node_id)

    def launch(self, resume_node_id: str | None = None) -> asyncio.Task | None:
        """Claim the run gate now and execute in a background task."""
        claim = self._claim()
        if claim is None:
            return None
        version, token = claim
        self._task = asyncio.create_task(self._run(version, token, resume_node_id))
        return self._task

    async def regenerate_node(self, node_id: str) -> WorkflowRunResult | None:
        """
        Re-run a single generator or fan-out node.

        Shares the run gate with `start`. Stored inputs from the node's last
        run stand in for inputs that are no longer connected.
        """
        node = self._store.get_node(node_id)
        if node is None:
            raise KeyError(node_id)
        if not is_regenerable(node.type):
            raise ValueError(f"Node type '{node.type}' cannot be regenerated")

        claim = self._claim()
        if claim is None:
            return None
        version, token = claim

        start_time = time.perf_counter()
        try:
            self._set_current(version, [node_id])
            logger.info("Regenerating node %s (%s)", node_id, node.type)
            self._emit("workflow_start", total_nodes=1, regenerate=node_id)

            result = await self._execute(node, token, version, use_stored_fallback=True)
            if result.status == "error":
                return self._finish(
                    version, RunStatus.FAILED, [result], start_time, error=result.error
                )
            if result.status == "cancelled":
                return self._finish(version, RunStatus.CANCELLED, [result], start_time)
            return self._finish(version, RunStatus.COMPLETED, [result], start_time)
        finally:
            self._release(version, token)

    # ------------------------------------------------------------------
    # Run internals
    # ------------------------------------------------------------------

    def _claim(self) -> tuple[int, CancelToken] | None:
        if self._state.is_running:
            logger.warning("Workflow already running; start ignored")
            return None
        self._run_version += 1
        token = CancelToken()
        self._cancel_token = token
        self._state = RunState(
            is_running=True,
            status=RunStatus.RUNNING,
            max_concurrent_calls=self._state.max_concurrent_calls,
        )
        return self._run_version, token

    def _is_current(self, version: int) -> bool:
        return version == self._run_version

    def _reset_loading_nodes(self) -> None:
        # In-flight nodes of an aborted run would otherwise stay `loading`
        for node in self._store.snapshot().nodes:
            if node.status == "loading":
                self._store.update_node_data(node.id, {"status": "idle"})

    def _release(self, version: int, token: CancelToken) -> None:
        """
        Free the run gate if the run ended without reaching `_finish`.

        This happens when the task driving the run is cancelled or an
        unexpected error escapes it.
        """
        if not (self._is_current(version) and self._state.is_running):
            return
        token.cancel(AbortReason.USER_CANCELLED)
        self._state = RunState(
            status=RunStatus.CANCELLED,
            max_concurrent_calls=self._state.max_concurrent_calls,
        )
        self._reset_loading_nodes()
        logger.warning("Run %d ended without finishing; run gate released", version)
        self._emit("workflow_cancelled")

    def _set_current(self, version: int, node_ids: list[str]) -> None:
        if self._is_current(version):
            self._state.current_node_ids = list(node_ids)

    def _finish(
        self,
        version: int,
        status: RunStatus,
        node_results: list[NodeExecutionResult],
        start_time: float,
        error: str | None = None,
        paused_at_node_id: str | None = None,
    ) -> WorkflowRunResult:
        result = WorkflowRunResult(
            status=status,
            node_results=node_results,
            total_execution_time_ms=_elapsed_ms(start_time),
            error=error,
            paused_at_node_id=paused_at_node_id,
        )
        if not self._is_current(version):
            logger.info("Run %d was superseded; its outcome is discarded", version)
            return result

        self._state = RunState(
            status=status,
            paused_at_node_id=paused_at_node_id,
            max_concurrent_calls=self._state.max_concurrent_calls,
        )
        if status == RunStatus.COMPLETED:
            logger.info("Workflow completed in %d ms", result.total_execution_time_ms)
            self._emit("workflow_complete", total_execution_time_ms=result.total_execution_time_ms)
        elif status == RunStatus.PAUSED:
            logger.info("Workflow paused at node %s", paused_at_node_id)
            self._emit("workflow_paused", node_id=paused_at_node_id)
        elif status == RunStatus.FAILED:
            logger.error("Workflow failed: %s", error)
            self._emit("workflow_error", error=error)
        elif status == RunStatus.CANCELLED:
            self._emit("workflow_cancelled")
        return result

    def _has_pause_edge(self, snapshot: GraphSnapshot, node_id: str) -> bool:
        return any(e.has_pause for e in snapshot.incoming_edges(node_id))

    def _is_locked(self, snapshot: GraphSnapshot, node: Node) -> bool:
        if not node.group_id:
            return False
        group = snapshot.groups.get(node.group_id)
        return group is not None and group.locked

    async def _execute(
        self,
        node: Node,
        token: CancelToken,
        version: int,
        use_stored_fallback: bool = False,
    ) -> NodeExecutionResult:
        ctx = NodeExecutionContext(
            node=node,
            store=self._store,
            cancel_token=token,
            client=self._client,
            provider_settings=self._provider_settings,
            persistence=self._persistence,
            use_stored_fallback=use_stored_fallback,
            history_limit=self._history_limit,
            is_current=lambda: self._is_current(version),
        )
        node_start = time.perf_counter()
        try:
            await execute_node(ctx)
        except AbortError as e:
            logger.debug("Node %s aborted (%s)", node.id, e.reason.value)
            return NodeExecutionResult(
                node_id=node.id,
                node_type=node.type,
                status="cancelled",
                execution_time_ms=_elapsed_ms(node_start),
            )
        except NodeExecutionError as e:
            logger.error("Node %s (%s) failed: %s", node.id, node.type, e.message)
            if self._is_current(version):
                self._emit("node_error", node_id=node.id, error=e.message)
            return NodeExecutionResult(
                node_id=node.id,
                node_type=node.type,
                status="error",
                error=e.message,
                execution_time_ms=_elapsed_ms(node_start),
            )

        elapsed = _elapsed_ms(node_start)
        if self._is_current(version):
            self._emit("node_complete", node_id=node.id, execution_time_ms=elapsed)
        return NodeExecutionResult(
            node_id=node.id,
            node_type=node.type,
            status="completed",
            execution_time_ms=elapsed,
        )

    async def _run_node(
        self,
        node: Node,
        snapshot: GraphSnapshot,
        token: CancelToken,
        version: int,
        resume_node_id: str | None,
    ) -> NodeExecutionResult:
        if token.cancelled:
            return NodeExecutionResult(node_id=node.id, node_type=node.type, status="cancelled")

        # The node being resumed from is not paused again
        if node.id != resume_node_id and self._has_pause_edge(snapshot, node.id):
            if self._is_current(version):
                self._state.paused_at_node_id = node.id
            token.cancel(AbortReason.PAUSED)
            return NodeExecutionResult(node_id=node.id, node_type=node.type, status="paused")

        if self._is_locked(snapshot, node):
            logger.info("Skipping node %s in locked group %s", node.id, node.group_id)
            self._emit("node_skipped", node_id=node.id, group_id=node.group_id)
            return NodeExecutionResult(node_id=node.id, node_type=node.type, status="skipped")

        return await self._execute(node, token, version)

    async def _run(
        self,
        version: int,
        token: CancelToken,
        resume_node_id: str | None,
    ) -> WorkflowRunResult:
        try:
            return await self._run_levels(version, token, resume_node_id)
        finally:
            self._release(version, token)

    async def _run_levels(
        self,
        version: int,
        token: CancelToken,
        resume_node_id: str | None,
    ) -> WorkflowRunResult:
        start_time = time.perf_counter()
        snapshot = self._store.snapshot()
        node_map = snapshot.node_map()
        node_results: list[NodeExecutionResult] = []

        try:
            levels = plan_execution(snapshot.nodes, snapshot.edges)
        except CycleError as e:
            return self._finish(version, RunStatus.FAILED, node_results, start_time, error=str(e))

        start_level = 0
        if resume_node_id is not None:
            resume_level = find_level_index(levels, resume_node_id)
            if resume_level is None:
                logger.warning("Resume node %s not found; starting from the beginning", resume_node_id)
            else:
                start_level = resume_level

        logger.info(
            "Starting workflow: %d nodes in %d levels (from level %d)",
            len(snapshot.nodes),
            len(levels),
            start_level,
        )
        self._emit(
            "workflow_start",
            total_nodes=len(snapshot.nodes),
            levels=levels,
            resume_node_id=resume_node_id,
        )

        for level_index in range(start_level, len(levels)):
            for batch in chunk(levels[level_index], self._state.max_concurrent_calls):
                if token.cancelled:
                    break

                self._set_current(version, batch)
                self._emit("batch_start", level=level_index, node_ids=batch)
                outcomes = await asyncio.gather(
                    *(
                        self._run_node(node_map[node_id], snapshot, token, version, resume_node_id)
                        for node_id in batch
                    ),
                    return_exceptions=True,
                )

                for node_id, outcome in zip(batch, outcomes):
                    if isinstance(outcome, BaseException):
                        logger.error("Node %s raised outside the executor: %r", node_id, outcome)
                        outcome = NodeExecutionResult(
                            node_id=node_id,
                            node_type=node_map[node_id].type,
                            status="error",
                            error=str(outcome) or type(outcome).__name__,
                        )
                    node_results.append(outcome)

                failure = next((r for r in node_results if r.status == "error"), None)
                if failure is not None:
                    token.cancel(AbortReason.RUN_FAILED)
                    return self._finish(
                        version, RunStatus.FAILED, node_results, start_time, error=failure.error
                    )

                if token.reason == AbortReason.PAUSED:
                    paused_at = next(r.node_id for r in node_results if r.status == "paused")
                    return self._finish(
                        version,
                        RunStatus.PAUSED,
                        node_results,
                        start_time,
                        paused_at_node_id=paused_at,
                    )

            if token.cancelled:
                break

        if token.cancelled:
            return self._finish(version, RunStatus.CANCELLED, node_results, start_time)
        return self._finish(version, RunStatus.COMPLETED, node_results, start_time)
