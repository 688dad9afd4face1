"""
Error taxonomy for workflow execution.

Anything deriving from NodeExecutionError is fatal to the run that raised it.
AbortError is the one intentional interruption (stop or pause) and is never
reported as a run failure.
"""

from __future__ import annotations

from enum import Enum


class WorkflowError(Exception):
    """Base class for engine errors."""


class WorkflowValidationError(WorkflowError):
    """Raised when a graph fails the structural required-input checks."""

    def __init__(self, errors: list[str]):
        self.errors = errors
        super().__init__(f"Workflow validation failed: {'; '.join(errors)}")


class CycleError(WorkflowError):
    """Raised when some nodes can never be scheduled because they form a cycle."""

    def __init__(self, node_ids: list[str]):
        self.node_ids = node_ids
        super().__init__(f"Cycle detected involving nodes: {', '.join(node_ids)}")


class NodeExecutionError(WorkflowError):
    """A node failed. The message is what ends up in the node's `error` field."""

    def __init__(self, message: str, node_id: str | None = None):
        self.node_id = node_id
        super().__init__(message)

    @property
    def message(self) -> str:
        return str(self)


class MissingInputError(NodeExecutionError):
    pass


class NoModelSelectedError(NodeExecutionError):
    def __init__(self, node_id: str | None = None):
        super().__init__("No model selected", node_id=node_id)


class UnconfiguredNodeError(NodeExecutionError):
    pass


class GenerationError(NodeExecutionError):
    """A provider call failed."""


class NetworkError(GenerationError):
    """Transport-level failure, including timeouts."""


class HttpError(GenerationError):
    def __init__(self, status_code: int, message: str, node_id: str | None = None):
        self.status_code = status_code
        super().__init__(message, node_id=node_id)


class GenerationFailedError(GenerationError):
    """The provider answered but reported that generation did not succeed."""


class AbortReason(str, Enum):
    USER_CANCELLED = "user-cancelled"
    PAUSED = "paused"
    RUN_FAILED = "run-failed"


class AbortError(WorkflowError):
    def __init__(self, reason: AbortReason | None = None):
        self.reason = reason or AbortReason.USER_CANCELLED
        super().__init__(f"Aborted ({self.reason.value})")
