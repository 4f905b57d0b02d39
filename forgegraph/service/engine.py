from __future__ import annotations

import asyncio
import time
import uuid
from collections import deque
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Deque, Dict, List, Mapping, Optional, Set

from forgegraph.logging import (
    get_logger,
    log_workflow_trace,
    run_id_var,
    sanitize_error_message,
)
from forgegraph.service.checkpoint import CheckpointOptions, CheckpointStore
from forgegraph.service.errors import (
    ConfigurationError,
    GraphError,
    InfrastructureError,
    StepExecutionError,
)
from forgegraph.service.graph import GraphDefinition, StepDefinition, validate_graph
from forgegraph.service.resilience import ResilienceWrapper
from forgegraph.service.state import RunState
from forgegraph.service.steps import call_collaborator
from forgegraph.storage.models import (
    CheckpointStatus,
    NodeExecutionRecord,
    NodeExecutionStatus,
)

logger = get_logger(__name__)

_INTERRUPTED_ERROR = "step interrupted before completion; re-run on resume"


@dataclass
class ExecutionOptions:
    """Per-run knobs. ``None`` falls back to the engine's settings."""

    max_steps: Optional[int] = None
    checkpoint_interval: Optional[int] = None
    name: Optional[str] = None
    initial_state: Optional[Mapping[str, Any]] = None
    user_id: Optional[str] = None
    workflow_id: Optional[str] = None
    execution_id: Optional[str] = None
    expires_in_days: Optional[int] = None
    metadata: Optional[Dict[str, Any]] = None
    # checked only between steps; a running step is never interrupted
    cancel_event: Optional[asyncio.Event] = None


@dataclass
class NodeExecutionResult:
    execution_id: str
    step_id: str
    status: NodeExecutionStatus
    input: Dict[str, Any]
    output: Optional[Dict[str, Any]]
    error: Optional[str]
    started_at: datetime
    completed_at: Optional[datetime]
    duration_ms: Optional[int]

    @classmethod
    def from_record(cls, record: NodeExecutionRecord) -> "NodeExecutionResult":
        return cls(
            execution_id=record.id,
            step_id=record.step_id,
            status=record.status,
            input=record.input,
            output=record.output,
            error=record.error,
            started_at=record.started_at,
            completed_at=record.completed_at,
            duration_ms=record.duration_ms,
        )


@dataclass
class ExecutionResult:
    status: CheckpointStatus
    final_state: Dict[str, Any]
    node_executions: List[NodeExecutionResult]
    duration_ms: int
    checkpoint_id: Optional[str] = None
    error: Optional[str] = None
    error_code: Optional[str] = None
    failed_step: Optional[str] = None
    max_steps_reached: bool = False
    skipped_steps: List[str] = field(default_factory=list)

    @property
    def is_infrastructure_failure(self) -> bool:
        """True when persistence failed; the whole run can be retried."""
        return self.error_code == InfrastructureError.error_code

    @property
    def steps_executed(self) -> int:
        return sum(
            1 for e in self.node_executions if e.status == NodeExecutionStatus.COMPLETED
        )


@dataclass
class _Run:
    graph: GraphDefinition
    checkpoint_id: str
    state: RunState
    queue: Deque[str]
    visited: Set[str] = field(default_factory=set)
    executions: List[NodeExecutionResult] = field(default_factory=list)
    started: float = field(default_factory=time.perf_counter)


class ExecutionEngine:
    """Runs a GraphDefinition step by step, persisting a checkpoint as it goes.

    Steps are dequeued FIFO starting from the graph's start steps. A step
    runs at most once per run: targets may be enqueued several times (one
    per satisfied incoming edge) and duplicates are dropped at dequeue.
    After a step succeeds every outgoing edge is evaluated against the new
    state and each satisfied edge enqueues its target. The first failing
    step ends the run as Failed.

    Steps of one run never overlap; concurrent runs are independent tasks
    sharing only the circuit-breaker state of the resilience wrapper.
    """

    def __init__(
        self,
        checkpoints: CheckpointStore,
        *,
        resilience: Optional[ResilienceWrapper] = None,
        default_max_steps: int = 100,
        default_checkpoint_interval: int = 1,
        default_expires_in_days: Optional[int] = None,
    ) -> None:
        self.checkpoints = checkpoints
        self.resilience = resilience or ResilienceWrapper()
        self.default_max_steps = default_max_steps
        self.default_checkpoint_interval = default_checkpoint_interval
        self.default_expires_in_days = default_expires_in_days

    @classmethod
    def from_settings(
        cls,
        checkpoints: CheckpointStore,
        settings: Any,
        *,
        resilience: Optional[ResilienceWrapper] = None,
    ) -> "ExecutionEngine":
        return cls(
            checkpoints,
            resilience=resilience,
            default_max_steps=settings.default_max_steps,
            default_checkpoint_interval=settings.default_checkpoint_interval,
            default_expires_in_days=settings.checkpoint_expires_in_days,
        )

    def _limits(self, options: ExecutionOptions) -> tuple[int, int]:
        max_steps = (
            options.max_steps if options.max_steps is not None else self.default_max_steps
        )
        interval = (
            options.checkpoint_interval
            if options.checkpoint_interval is not None
            else self.default_checkpoint_interval
        )
        if max_steps < 1 or interval < 1:
            raise ConfigurationError(
                "max_steps and checkpoint_interval must be at least 1",
                detail={"max_steps": max_steps, "checkpoint_interval": interval},
            )
        return max_steps, interval

    # -- public surface ----------------------------------------------------

    async def execute_graph(
        self, graph: GraphDefinition, options: Optional[ExecutionOptions] = None
    ) -> ExecutionResult:
        """Run ``graph`` from its start steps to a terminal status.

        Only ConfigurationError escapes, and only before anything is
        persisted. Every other failure is reported on the returned result.
        """
        opts = options or ExecutionOptions()
        start_steps = validate_graph(graph)
        max_steps, interval = self._limits(opts)

        token = run_id_var.set(opts.execution_id or str(uuid.uuid4()))
        started = time.perf_counter()
        try:
            state = (
                RunState(graph.initial_state)
                .merge(opts.initial_state)
                .merge({"graph_id": graph.graph_id})
            )
            logger.info(
                "graph_run_started",
                graph_id=graph.graph_id,
                graph_name=graph.name,
                start_steps=start_steps,
                max_steps=max_steps,
            )
            checkpointer = self.checkpoints.checkpointer(
                graph.graph_id,
                CheckpointOptions(
                    user_id=opts.user_id,
                    workflow_id=opts.workflow_id,
                    execution_id=opts.execution_id,
                    expires_in_days=(
                        opts.expires_in_days
                        if opts.expires_in_days is not None
                        else self.default_expires_in_days
                    ),
                    metadata=opts.metadata,
                ),
            )
            try:
                checkpoint_id = await checkpointer.persist(
                    opts.name or graph.name, state.to_dict()
                )
            except InfrastructureError as exc:
                logger.error("graph_run_not_started", graph_id=graph.graph_id)
                return ExecutionResult(
                    status=CheckpointStatus.FAILED,
                    final_state=state.to_dict(),
                    node_executions=[],
                    duration_ms=int((time.perf_counter() - started) * 1000),
                    error=exc.message,
                    error_code=exc.error_code,
                )

            run = _Run(
                graph=graph,
                checkpoint_id=checkpoint_id,
                state=state.merge({"checkpoint_id": checkpoint_id}),
                queue=deque(start_steps),
                started=started,
            )
            return await self._drive(run, max_steps, interval, opts.cancel_event)
        finally:
            run_id_var.reset(token)

    async def resume(
        self,
        graph: GraphDefinition,
        checkpoint_id: str,
        options: Optional[ExecutionOptions] = None,
    ) -> ExecutionResult:
        """Continue a Paused, Failed or crashed (still Active) run.

        Steps with a Completed record are not executed again. The state
        resumes from whichever is newer: the checkpoint snapshot or the
        output of the last completed step. Records left Running by a crash
        are closed as Failed and their steps run again. An unknown
        ``checkpoint_id`` raises NotFoundError.
        """
        opts = options or ExecutionOptions()
        start_steps = validate_graph(graph)
        max_steps, interval = self._limits(opts)

        record = await self.checkpoints.get_checkpoint(checkpoint_id)
        if record.graph_id != graph.graph_id:
            raise ConfigurationError(
                "checkpoint belongs to a different graph",
                detail={"checkpoint_id": checkpoint_id, "graph_id": record.graph_id},
            )

        token = run_id_var.set(opts.execution_id or record.execution_id or checkpoint_id)
        started = time.perf_counter()
        try:
            history = await self.checkpoints.list_node_executions(checkpoint_id)
            executions: List[NodeExecutionResult] = []
            for item in history:
                if item.status == NodeExecutionStatus.RUNNING:
                    item = await self.checkpoints.record_step_end(
                        item.id, None, _INTERRUPTED_ERROR
                    )
                executions.append(NodeExecutionResult.from_record(item))

            completed = [
                e for e in executions if e.status == NodeExecutionStatus.COMPLETED
            ]
            if record.status == CheckpointStatus.COMPLETED:
                return ExecutionResult(
                    status=CheckpointStatus.COMPLETED,
                    final_state=record.state,
                    node_executions=executions,
                    duration_ms=0,
                    checkpoint_id=checkpoint_id,
                )

            state_data = record.state
            if completed and completed[-1].completed_at and (
                completed[-1].completed_at > record.checkpointed_at
            ):
                state_data = completed[-1].output or state_data
            state = RunState(state_data).merge({"checkpoint_id": checkpoint_id})

            visited = {e.step_id for e in completed}
            queue: Deque[str] = deque(s for s in start_steps if s not in visited)
            for execution in completed:
                step_state = RunState(execution.output or {})
                for edge in graph.outgoing(execution.step_id):
                    if edge.target not in visited and edge.is_satisfied(step_state):
                        queue.append(edge.target)

            await self.checkpoints.update(
                checkpoint_id, state.to_dict(), CheckpointStatus.ACTIVE
            )
            logger.info(
                "graph_run_resumed",
                graph_id=graph.graph_id,
                checkpoint_id=checkpoint_id,
                completed_steps=sorted(visited),
                pending=list(queue),
            )
            run = _Run(
                graph=graph,
                checkpoint_id=checkpoint_id,
                state=state,
                queue=queue,
                visited=visited,
                executions=executions,
                started=started,
            )
            return await self._drive(run, max_steps, interval, opts.cancel_event)
        except InfrastructureError as exc:
            return ExecutionResult(
                status=CheckpointStatus.FAILED,
                final_state=record.state,
                node_executions=[],
                duration_ms=int((time.perf_counter() - started) * 1000),
                checkpoint_id=checkpoint_id,
                error=exc.message,
                error_code=exc.error_code,
            )
        finally:
            run_id_var.reset(token)

    # -- run loop ----------------------------------------------------------

    async def _invoke(self, step: StepDefinition, state: RunState) -> Mapping[str, Any]:
        async def operation() -> Any:
            return await call_collaborator(step.execute, state)

        update = await self.resilience.run(
            operation, step.resilience, operation_name=f"step:{step.id}"
        )
        if update is None:
            return {}
        if not isinstance(update, Mapping):
            raise TypeError(
                f"step {step.id} returned {type(update).__name__}, expected a mapping"
            )
        return update

    async def _drive(
        self,
        run: _Run,
        max_steps: int,
        interval: int,
        cancel_event: Optional[asyncio.Event],
    ) -> ExecutionResult:
        graph = run.graph
        steps_executed = 0
        since_checkpoint = 0
        max_steps_reached = False
        cancelled = False
        failure: Optional[GraphError] = None
        failed_step: Optional[str] = None

        while run.queue:
            if steps_executed >= max_steps:
                max_steps_reached = True
                logger.warning(
                    "graph_max_steps_reached",
                    graph_id=graph.graph_id,
                    max_steps=max_steps,
                    pending=list(run.queue),
                )
                break
            if cancel_event is not None and cancel_event.is_set():
                cancelled = True
                logger.info("graph_run_cancelled", graph_id=graph.graph_id)
                break

            step_id = run.queue.popleft()
            if step_id in run.visited:
                continue
            step = graph.get_step(step_id)
            if step is None:
                failure = ConfigurationError(
                    f"step {step_id} is not defined", detail={"step_id": step_id}
                )
                failed_step = step_id
                break

            try:
                execution_id = await self.checkpoints.record_step_start(
                    run.checkpoint_id, step_id, run.state.to_dict()
                )
            except InfrastructureError as exc:
                failure, failed_step = exc, step_id
                break

            logger.debug("graph_step_started", step_id=step_id, kind=step.kind.value)
            try:
                update = await self._invoke(step, run.state)
                # an update that cannot be copied fails the step, not the run loop
                merged = run.state.merge(update)
                snapshot = merged.to_dict()
            except Exception as exc:
                error_text = sanitize_error_message(exc)
                logger.error(
                    "graph_step_failed",
                    step_id=step_id,
                    error_type=type(exc).__name__,
                    error=error_text,
                )
                if isinstance(exc, GraphError):
                    failure = exc
                else:
                    failure = StepExecutionError(step_id, error_text)
                    failure.__cause__ = exc
                failed_step = step_id
                try:
                    record = await self.checkpoints.record_step_end(
                        execution_id, None, error_text
                    )
                    run.executions.append(NodeExecutionResult.from_record(record))
                except InfrastructureError as infra:
                    failure = infra
                break

            run.state = merged
            try:
                record = await self.checkpoints.record_step_end(execution_id, snapshot)
            except InfrastructureError as exc:
                failure, failed_step = exc, step_id
                break
            run.executions.append(NodeExecutionResult.from_record(record))
            run.visited.add(step_id)
            steps_executed += 1
            since_checkpoint += 1
            logger.info(
                "graph_step_completed", step_id=step_id, duration_ms=record.duration_ms
            )

            try:
                for edge in graph.outgoing(step_id):
                    if edge.is_satisfied(run.state):
                        run.queue.append(edge.target)
            except Exception as exc:
                logger.error(
                    "graph_edge_condition_failed",
                    step_id=step_id,
                    error_type=type(exc).__name__,
                    error=sanitize_error_message(exc),
                )
                failure = StepExecutionError(
                    step_id, f"edge condition after {step_id} raised: {sanitize_error_message(exc)}"
                )
                failure.__cause__ = exc
                failed_step = step_id
                break

            if since_checkpoint >= interval:
                try:
                    await self.checkpoints.update(run.checkpoint_id, run.state.to_dict())
                except InfrastructureError as exc:
                    failure, failed_step = exc, step_id
                    break
                since_checkpoint = 0

        if failure is not None:
            status = CheckpointStatus.FAILED
        elif cancelled:
            status = CheckpointStatus.PAUSED
        else:
            status = CheckpointStatus.COMPLETED

        try:
            await self.checkpoints.update(run.checkpoint_id, run.state.to_dict(), status)
        except InfrastructureError as exc:
            # an earlier failure stays the reported error
            if failure is None:
                failure = exc
                status = CheckpointStatus.FAILED
            logger.error(
                "graph_final_checkpoint_failed",
                checkpoint_id=run.checkpoint_id,
                status=status.value,
            )

        skipped: List[str] = []
        if status == CheckpointStatus.COMPLETED and not max_steps_reached:
            skipped = [s for s in graph.step_ids if s not in run.visited]

        result = ExecutionResult(
            status=status,
            final_state=run.state.to_dict(),
            node_executions=run.executions,
            duration_ms=int((time.perf_counter() - run.started) * 1000),
            checkpoint_id=run.checkpoint_id,
            error=failure.message if failure is not None else None,
            error_code=failure.error_code if failure is not None else None,
            failed_step=failed_step,
            max_steps_reached=max_steps_reached,
            skipped_steps=skipped,
        )
        logger.info(
            "graph_run_finished",
            graph_id=graph.graph_id,
            checkpoint_id=run.checkpoint_id,
            status=status.value,
            steps_executed=steps_executed,
            duration_ms=result.duration_ms,
            max_steps_reached=max_steps_reached,
            skipped_steps=skipped,
        )
        log_workflow_trace(
            [
                {
                    "step_id": e.step_id,
                    "status": e.status.value,
                    "duration_ms": e.duration_ms,
                    "error": e.error,
                }
                for e in run.executions
            ]
        )
        return result
