from __future__ import annotations

import asyncio
import functools
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Callable, Dict, List, Optional, TypeVar
import uuid

from forgegraph.logging import get_logger, sanitize_error_message
from forgegraph.service.errors import InfrastructureError, NotFoundError
from forgegraph.storage.errors import RecordNotFound
from forgegraph.storage.models import (
    CheckpointRecord,
    CheckpointStatus,
    NodeExecutionRecord,
    NodeExecutionStatus,
    utcnow,
)

logger = get_logger(__name__)

T = TypeVar("T")


@dataclass
class CheckpointOptions:
    """Ownership and retention attributes stored on a CheckpointRecord."""

    user_id: Optional[str] = None
    workflow_id: Optional[str] = None
    execution_id: Optional[str] = None
    expires_in_days: Optional[int] = None
    metadata: Optional[Dict[str, Any]] = None


class CheckpointStore:
    """Async facade over a blocking checkpoint backend.

    ``backend`` is a MemoryStore or PostgresStore. Calls run on a private
    thread pool so a slow database never stalls the event loop that drives
    concurrent runs. Backend failures surface as InfrastructureError, unknown
    ids as NotFoundError.
    """

    def __init__(
        self,
        backend: Any,
        *,
        max_workers: int = 4,
        executor: Optional[ThreadPoolExecutor] = None,
    ) -> None:
        self.backend = backend
        self._owns_executor = executor is None
        self._executor = executor or ThreadPoolExecutor(
            max_workers=max_workers, thread_name_prefix="checkpoint"
        )

    async def _call(self, operation: str, fn: Callable[..., T], *args, **kwargs) -> T:
        loop = asyncio.get_running_loop()
        try:
            return await loop.run_in_executor(
                self._executor, functools.partial(fn, *args, **kwargs)
            )
        except RecordNotFound as exc:
            raise NotFoundError(exc.message, detail=exc.detail) from exc
        except Exception as exc:
            logger.error(
                "checkpoint_store_unavailable",
                operation=operation,
                error_type=type(exc).__name__,
                error=sanitize_error_message(exc),
            )
            raise InfrastructureError(
                f"checkpoint store {operation} failed",
                detail={"operation": operation, "error_type": type(exc).__name__},
            ) from exc

    async def create(
        self,
        graph_id: str,
        name: str,
        initial_state: Dict[str, Any],
        options: Optional[CheckpointOptions] = None,
    ) -> str:
        opts = options or CheckpointOptions()
        record = CheckpointRecord.new(
            graph_id,
            name,
            initial_state,
            expires_in_days=opts.expires_in_days,
            user_id=opts.user_id,
            workflow_id=opts.workflow_id,
            execution_id=opts.execution_id,
            metadata=opts.metadata,
        )
        created = await self._call("create", self.backend.create_checkpoint, record)
        logger.info(
            "checkpoint_created",
            checkpoint_id=created.id,
            graph_id=graph_id,
            expires_at=created.expires_at.isoformat() if created.expires_at else None,
        )
        return created.id

    async def update(
        self,
        checkpoint_id: str,
        state: Dict[str, Any],
        status: Optional[CheckpointStatus] = None,
    ) -> None:
        await self._call(
            "update",
            self.backend.update_checkpoint,
            checkpoint_id,
            state=state,
            status=status,
            checkpointed_at=utcnow(),
        )
        logger.debug(
            "checkpoint_updated",
            checkpoint_id=checkpoint_id,
            status=status.value if status else None,
        )

    async def get_checkpoint(self, checkpoint_id: str) -> CheckpointRecord:
        record = await self._call("load", self.backend.get_checkpoint, checkpoint_id)
        if record is None:
            raise NotFoundError(
                f"checkpoint {checkpoint_id} not found",
                detail={"checkpoint_id": checkpoint_id},
            )
        return record

    async def load(self, checkpoint_id: str) -> Dict[str, Any]:
        record = await self.get_checkpoint(checkpoint_id)
        return record.state

    async def record_step_start(
        self, checkpoint_id: str, step_id: str, input_state: Dict[str, Any]
    ) -> str:
        record = NodeExecutionRecord(
            id=str(uuid.uuid4()),
            checkpoint_id=checkpoint_id,
            step_id=step_id,
            status=NodeExecutionStatus.RUNNING,
            input=input_state,
            started_at=utcnow(),
        )
        created = await self._call(
            "record_step_start", self.backend.create_node_execution, record
        )
        return created.id

    async def record_step_end(
        self,
        execution_id: str,
        output: Optional[Dict[str, Any]],
        error: Optional[str] = None,
    ) -> NodeExecutionRecord:
        started = await self._call(
            "record_step_end", self.backend.get_node_execution, execution_id
        )
        if started is None:
            raise NotFoundError(
                f"node execution {execution_id} not found",
                detail={"execution_id": execution_id},
            )
        completed_at = utcnow()
        duration_ms = max(
            0, int((completed_at - started.started_at).total_seconds() * 1000)
        )
        return await self._call(
            "record_step_end",
            self.backend.complete_node_execution,
            execution_id,
            status=(
                NodeExecutionStatus.FAILED
                if error is not None
                else NodeExecutionStatus.COMPLETED
            ),
            output=output,
            error=error,
            completed_at=completed_at,
            duration_ms=duration_ms,
        )

    async def list_node_executions(self, checkpoint_id: str) -> List[NodeExecutionRecord]:
        return await self._call(
            "list_node_executions", self.backend.list_node_executions, checkpoint_id
        )

    async def list_expired(self, now: Optional[datetime] = None) -> List[CheckpointRecord]:
        """Checkpoints past ``expires_at``; deleting them is the caller's job."""
        return await self._call(
            "list_expired", self.backend.list_expired_checkpoints, now or utcnow()
        )

    async def delete(self, checkpoint_id: str) -> bool:
        deleted = await self._call("delete", self.backend.delete_checkpoint, checkpoint_id)
        if deleted:
            logger.info("checkpoint_deleted", checkpoint_id=checkpoint_id)
        return deleted

    def checkpointer(
        self, graph_id: str, options: Optional[CheckpointOptions] = None
    ) -> "Checkpointer":
        return Checkpointer(self, graph_id, options)

    def close(self) -> None:
        if self._owns_executor:
            self._executor.shutdown(wait=False)


class Checkpointer:
    """Per-run helper: the first ``persist`` creates the checkpoint, later ones update it."""

    def __init__(
        self,
        store: CheckpointStore,
        graph_id: str,
        options: Optional[CheckpointOptions] = None,
    ) -> None:
        self.store = store
        self.graph_id = graph_id
        self.options = options
        self.checkpoint_id: Optional[str] = None

    async def persist(
        self,
        name: str,
        state: Dict[str, Any],
        status: Optional[CheckpointStatus] = None,
    ) -> str:
        if self.checkpoint_id is None:
            self.checkpoint_id = await self.store.create(
                self.graph_id, name, state, self.options
            )
            if status is not None and status != CheckpointStatus.ACTIVE:
                await self.store.update(self.checkpoint_id, state, status)
        else:
            await self.store.update(self.checkpoint_id, state, status)
        return self.checkpoint_id

    async def load(self, checkpoint_id: Optional[str] = None) -> Dict[str, Any]:
        target = checkpoint_id or self.checkpoint_id
        if target is None:
            raise NotFoundError("no checkpoint has been persisted yet")
        return await self.store.load(target)
