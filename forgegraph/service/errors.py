from __future__ import annotations

from typing import Optional


class GraphError(Exception):
    """Base class for engine exceptions.

    Every error carries a stable ``error_code`` so callers can branch on the
    failure category without string matching:
    - configuration_error: the graph itself is invalid; never retry
    - step_execution_error: a step's execute raised
    - timeout: a wait or a timeout race expired
    - infrastructure_error: the checkpoint store could not be reached; the
      whole run may be retried
    - not_found: an unknown checkpoint or execution id
    - circuit_open: a circuit breaker rejected the call
    """

    error_code: str = "graph_error"

    def __init__(
        self,
        message: str,
        *,
        detail: Optional[dict] = None,
        error_code: Optional[str] = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        if error_code is not None:
            self.error_code = error_code
        self.detail = detail or {}


class ConfigurationError(GraphError):
    """The graph definition cannot be executed as declared."""
    error_code = "configuration_error"


class UnknownToolError(ConfigurationError):
    """A Tool-Call step references a name missing from the tool registry."""

    def __init__(self, tool_name: str) -> None:
        super().__init__(f"unknown tool: {tool_name}", detail={"tool": tool_name})
        self.tool_name = tool_name


class StepExecutionError(GraphError):
    """A step's execute raised; the original exception is chained."""
    error_code = "step_execution_error"

    def __init__(self, step_id: str, message: str, *, detail: Optional[dict] = None):
        super().__init__(message, detail={"step_id": step_id, **(detail or {})})
        self.step_id = step_id


class StepTimeoutError(GraphError, TimeoutError):
    """An operation did not finish within its time budget."""
    error_code = "timeout"


class InfrastructureError(GraphError):
    """Checkpoint persistence failed; distinct from step logic failures."""
    error_code = "infrastructure_error"


class NotFoundError(GraphError):
    """Requested checkpoint or execution record does not exist."""
    error_code = "not_found"


class CircuitOpenError(GraphError):
    """The circuit for a downstream dependency is open."""
    error_code = "circuit_open"

    def __init__(self, circuit_id: str, *, detail: Optional[dict] = None) -> None:
        super().__init__(
            f"Circuit '{circuit_id}' is open, request rejected",
            detail={"circuit_id": circuit_id, **(detail or {})},
        )
        self.circuit_id = circuit_id


__all__ = [
    "GraphError",
    "ConfigurationError",
    "UnknownToolError",
    "StepExecutionError",
    "StepTimeoutError",
    "InfrastructureError",
    "NotFoundError",
    "CircuitOpenError",
]
