from __future__ import annotations

import asyncio
import copy
import dataclasses
import json
import os
import threading
import uuid
from datetime import datetime
from pathlib import Path
from typing import Any, Dict, List, Optional, Tuple

from forgegraph.logging import get_logger
from forgegraph.service.bm25 import rank_entries
from forgegraph.storage.errors import ConstraintViolation, RecordNotFound, StorageError
from forgegraph.storage.models import (
    ApprovalRecord,
    ApprovalStatus,
    CheckpointRecord,
    CheckpointStatus,
    MemoryEntry,
    MemoryQuery,
    NodeExecutionRecord,
    NodeExecutionStatus,
    utcnow,
)


_ABSENT = object()


class MemoryStore:
    """In-process backing store for checkpoints, approvals and memories.

    When ``fs_root`` is given every mutation is flushed to
    ``<fs_root>/state/forgegraph_store.json`` with an atomic rename, so a
    restarted process can load the checkpoints and execution history of
    runs that were in flight when it died.
    """

    def __init__(self, fs_root: Optional[str] = None) -> None:
        self.logger = get_logger(__name__)
        self.checkpoints: Dict[str, CheckpointRecord] = {}
        self.node_executions: Dict[str, NodeExecutionRecord] = {}
        self._executions_by_checkpoint: Dict[str, List[str]] = {}
        self.approvals: Dict[str, ApprovalRecord] = {}
        self.memories: Dict[str, MemoryEntry] = {}
        # RLock so helpers can re-acquire inside public methods
        self._data_lock = threading.RLock()
        self._approval_waiters: Dict[
            str, List[Tuple[asyncio.AbstractEventLoop, asyncio.Event]]
        ] = {}
        self.fs_root = Path(fs_root) if fs_root else None
        if self.fs_root is not None:
            self.fs_root.mkdir(parents=True, exist_ok=True)
            self._load_state()

    def _state_path(self) -> Path:
        assert self.fs_root is not None
        state_dir = self.fs_root / "state"
        state_dir.mkdir(parents=True, exist_ok=True)
        return state_dir / "forgegraph_store.json"

    def _put(self, table: Dict[str, Any], key: str, value: Any) -> None:
        """Install ``value`` under ``key`` and flush; undone if the flush fails.

        Callers hold ``_data_lock``.
        """
        previous = table.get(key, _ABSENT)
        table[key] = value
        try:
            self._persist_state()
        except StorageError:
            if previous is _ABSENT:
                table.pop(key, None)
            else:
                table[key] = previous
            raise

    # -- checkpoints -------------------------------------------------------

    def create_checkpoint(self, record: CheckpointRecord) -> CheckpointRecord:
        with self._data_lock:
            if record.id in self.checkpoints:
                raise ConstraintViolation(
                    "checkpoint already exists", {"checkpoint_id": record.id}
                )
            stored = copy.deepcopy(record)
            self._put(self.checkpoints, stored.id, stored)
            self._executions_by_checkpoint.setdefault(stored.id, [])
            return copy.deepcopy(stored)

    def get_checkpoint(self, checkpoint_id: str) -> Optional[CheckpointRecord]:
        with self._data_lock:
            record = self.checkpoints.get(checkpoint_id)
            return copy.deepcopy(record) if record else None

    def update_checkpoint(
        self,
        checkpoint_id: str,
        *,
        state: Dict[str, Any],
        status: Optional[CheckpointStatus] = None,
        checkpointed_at: Optional[datetime] = None,
    ) -> CheckpointRecord:
        with self._data_lock:
            record = self.checkpoints.get(checkpoint_id)
            if record is None:
                raise RecordNotFound(
                    "checkpoint not found", {"checkpoint_id": checkpoint_id}
                )
            now = utcnow()
            updated = dataclasses.replace(
                record,
                state=copy.deepcopy(state),
                status=CheckpointStatus(status) if status is not None else record.status,
                checkpointed_at=checkpointed_at or now,
                updated_at=now,
            )
            self._put(self.checkpoints, checkpoint_id, updated)
            return copy.deepcopy(updated)

    def list_checkpoints(
        self,
        *,
        graph_id: Optional[str] = None,
        status: Optional[CheckpointStatus] = None,
        user_id: Optional[str] = None,
    ) -> List[CheckpointRecord]:
        with self._data_lock:
            records = [
                r
                for r in self.checkpoints.values()
                if (graph_id is None or r.graph_id == graph_id)
                and (status is None or r.status == status)
                and (user_id is None or r.user_id == user_id)
            ]
            records.sort(key=lambda r: r.created_at)
            return [copy.deepcopy(r) for r in records]

    def list_expired_checkpoints(self, now: datetime) -> List[CheckpointRecord]:
        with self._data_lock:
            return [
                copy.deepcopy(r) for r in self.checkpoints.values() if r.is_expired(now)
            ]

    def delete_checkpoint(self, checkpoint_id: str) -> bool:
        with self._data_lock:
            record = self.checkpoints.pop(checkpoint_id, None)
            if record is None:
                return False
            execution_ids = self._executions_by_checkpoint.pop(checkpoint_id, [])
            executions = {
                i: self.node_executions.pop(i)
                for i in execution_ids
                if i in self.node_executions
            }
            try:
                self._persist_state()
            except StorageError:
                self.checkpoints[checkpoint_id] = record
                self._executions_by_checkpoint[checkpoint_id] = execution_ids
                self.node_executions.update(executions)
                raise
            return True

    # -- node executions ---------------------------------------------------

    def create_node_execution(self, record: NodeExecutionRecord) -> NodeExecutionRecord:
        with self._data_lock:
            if record.checkpoint_id not in self.checkpoints:
                raise ConstraintViolation(
                    "node execution references unknown checkpoint",
                    {"checkpoint_id": record.checkpoint_id},
                )
            if record.id in self.node_executions:
                raise ConstraintViolation(
                    "node execution already exists", {"execution_id": record.id}
                )
            stored = copy.deepcopy(record)
            index = self._executions_by_checkpoint.setdefault(stored.checkpoint_id, [])
            self.node_executions[stored.id] = stored
            index.append(stored.id)
            try:
                self._persist_state()
            except StorageError:
                index.remove(stored.id)
                self.node_executions.pop(stored.id, None)
                raise
            return copy.deepcopy(stored)

    def get_node_execution(self, execution_id: str) -> Optional[NodeExecutionRecord]:
        with self._data_lock:
            record = self.node_executions.get(execution_id)
            return copy.deepcopy(record) if record else None

    def complete_node_execution(
        self,
        execution_id: str,
        *,
        status: NodeExecutionStatus,
        output: Optional[Dict[str, Any]],
        error: Optional[str],
        completed_at: datetime,
        duration_ms: int,
    ) -> NodeExecutionRecord:
        with self._data_lock:
            record = self.node_executions.get(execution_id)
            if record is None:
                raise RecordNotFound(
                    "node execution not found", {"execution_id": execution_id}
                )
            if record.is_terminal:
                raise ConstraintViolation(
                    "node execution already finished",
                    {"execution_id": execution_id, "status": record.status.value},
                )
            finished = dataclasses.replace(
                record,
                status=NodeExecutionStatus(status),
                output=copy.deepcopy(output),
                error=error,
                completed_at=completed_at,
                duration_ms=duration_ms,
            )
            self._put(self.node_executions, execution_id, finished)
            return copy.deepcopy(finished)

    def list_node_executions(self, checkpoint_id: str) -> List[NodeExecutionRecord]:
        with self._data_lock:
            ids = self._executions_by_checkpoint.get(checkpoint_id, [])
            return [copy.deepcopy(self.node_executions[i]) for i in ids]

    # -- approvals ---------------------------------------------------------

    def create_approval(
        self,
        prompt: str,
        options: Optional[List[str]],
        expires_at: datetime,
        *,
        user_id: Optional[str] = None,
        metadata: Optional[dict] = None,
    ) -> str:
        approval = ApprovalRecord(
            id=str(uuid.uuid4()),
            prompt=prompt,
            status=ApprovalStatus.PENDING,
            created_at=utcnow(),
            expires_at=expires_at,
            options=list(options) if options else None,
            user_id=user_id,
            metadata=metadata,
        )
        with self._data_lock:
            self._put(self.approvals, approval.id, approval)
        return approval.id

    def get_approval(self, approval_id: str) -> Optional[ApprovalRecord]:
        with self._data_lock:
            approval = self.approvals.get(approval_id)
            return copy.deepcopy(approval) if approval else None

    def list_pending_approvals(self, user_id: Optional[str] = None) -> List[ApprovalRecord]:
        with self._data_lock:
            return [
                copy.deepcopy(a)
                for a in self.approvals.values()
                if a.is_pending and (user_id is None or a.user_id == user_id)
            ]

    def resolve_approval(
        self,
        approval_id: str,
        response: Any,
        *,
        status: ApprovalStatus = ApprovalStatus.APPROVED,
    ) -> ApprovalRecord:
        """Record a human decision and wake any step waiting on it."""
        with self._data_lock:
            approval = self.approvals.get(approval_id)
            if approval is None:
                raise RecordNotFound("approval not found", {"approval_id": approval_id})
            if not approval.is_pending:
                raise ConstraintViolation(
                    "approval already processed",
                    {"approval_id": approval_id, "status": approval.status.value},
                )
            resolved = dataclasses.replace(
                approval,
                status=ApprovalStatus(status),
                response=response,
                processed_at=utcnow(),
            )
            self._put(self.approvals, approval_id, resolved)
            resolved = copy.deepcopy(resolved)
        self._notify_approval_waiters(approval_id)
        return resolved

    def mark_approval_timed_out(
        self, approval_id: str, response: Any = None
    ) -> Optional[ApprovalRecord]:
        with self._data_lock:
            approval = self.approvals.get(approval_id)
            if approval is None:
                return None
            if not approval.is_pending:
                # a decision that landed first wins over the timeout
                return copy.deepcopy(approval)
            timed_out = dataclasses.replace(
                approval,
                status=ApprovalStatus.TIMEOUT,
                response=response,
                processed_at=utcnow(),
            )
            self._put(self.approvals, approval_id, timed_out)
            timed_out = copy.deepcopy(timed_out)
        self._notify_approval_waiters(approval_id)
        return timed_out

    async def wait_for_approval_update(self, approval_id: str, timeout: float) -> bool:
        """Block (without polling) until the approval leaves ``pending``.

        Returns False when ``timeout`` seconds pass first.
        """
        loop = asyncio.get_running_loop()
        event = asyncio.Event()
        waiter = (loop, event)
        with self._data_lock:
            approval = self.approvals.get(approval_id)
            if approval is None or not approval.is_pending:
                return True
            self._approval_waiters.setdefault(approval_id, []).append(waiter)
        try:
            await asyncio.wait_for(event.wait(), timeout=max(0.0, timeout))
            return True
        except asyncio.TimeoutError:
            return False
        finally:
            with self._data_lock:
                waiters = self._approval_waiters.get(approval_id, [])
                if waiter in waiters:
                    waiters.remove(waiter)
                if not waiters:
                    self._approval_waiters.pop(approval_id, None)

    def _notify_approval_waiters(self, approval_id: str) -> None:
        with self._data_lock:
            waiters = list(self._approval_waiters.get(approval_id, []))
        for loop, event in waiters:
            try:
                loop.call_soon_threadsafe(event.set)
            except RuntimeError:
                # loop already closed; its waiter is gone with it
                self.logger.debug("approval_waiter_loop_closed", approval_id=approval_id)

    # -- memories ----------------------------------------------------------

    def store_memory(self, entry: MemoryEntry) -> str:
        with self._data_lock:
            stored = copy.deepcopy(entry)
            if not stored.id:
                stored.id = str(uuid.uuid4())
            self._put(self.memories, stored.id, stored)
            return stored.id

    def retrieve_memories(self, query: MemoryQuery) -> List[MemoryEntry]:
        now = utcnow()
        with self._data_lock:
            matches = [
                e
                for e in self.memories.values()
                if not e.is_expired(now) and query.matches(e)
            ]
            matches.sort(key=lambda e: (e.importance, e.created_at), reverse=True)
            return [copy.deepcopy(e) for e in matches[: query.limit]]

    def search_memories(
        self, text: str, filters: Optional[MemoryQuery] = None
    ) -> List[MemoryEntry]:
        query = filters or MemoryQuery()
        now = utcnow()
        with self._data_lock:
            candidates = [
                e
                for e in self.memories.values()
                if not e.is_expired(now) and query.matches(e)
            ]
            return [copy.deepcopy(e) for e in rank_entries(text, candidates, query.limit)]

    # -- durability --------------------------------------------------------

    def _persist_state(self) -> None:
        if self.fs_root is None:
            return
        state = {
            "checkpoints": [
                self._serialize_checkpoint(c) for c in self.checkpoints.values()
            ],
            "node_executions": [
                self._serialize_node_execution(self.node_executions[i])
                for ids in self._executions_by_checkpoint.values()
                for i in ids
            ],
            "approvals": [self._serialize_approval(a) for a in self.approvals.values()],
            "memories": [self._serialize_memory(m) for m in self.memories.values()],
        }
        path = self._state_path()
        tmp_path = path.with_suffix(".json.tmp")
        try:
            tmp_path.write_text(json.dumps(state, indent=2, default=str))
            os.replace(tmp_path, path)
        except (OSError, TypeError, ValueError) as exc:
            raise StorageError(f"failed to persist in-memory state: {exc}") from exc

    def _load_state(self) -> bool:
        path = self._state_path()
        try:
            data = json.loads(path.read_text())
        except FileNotFoundError:
            return False
        except (OSError, ValueError) as exc:
            raise StorageError(f"failed to load persisted state: {exc}") from exc
        self.checkpoints = {
            c["id"]: self._deserialize_checkpoint(c) for c in data.get("checkpoints", [])
        }
        self.node_executions = {}
        self._executions_by_checkpoint = {cid: [] for cid in self.checkpoints}
        for raw in data.get("node_executions", []):
            record = self._deserialize_node_execution(raw)
            self.node_executions[record.id] = record
            self._executions_by_checkpoint.setdefault(record.checkpoint_id, []).append(
                record.id
            )
        self.approvals = {
            a["id"]: self._deserialize_approval(a) for a in data.get("approvals", [])
        }
        self.memories = {
            m["id"]: self._deserialize_memory(m) for m in data.get("memories", [])
        }
        self.logger.info(
            "memory_store_state_loaded",
            checkpoints=len(self.checkpoints),
            node_executions=len(self.node_executions),
        )
        return True

    @staticmethod
    def _dt(value: Optional[datetime]) -> Optional[str]:
        return value.isoformat() if value else None

    @staticmethod
    def _parse_dt(raw: Optional[str]) -> Optional[datetime]:
        return datetime.fromisoformat(raw) if raw else None

    def _serialize_checkpoint(self, record: CheckpointRecord) -> dict:
        return {
            "id": record.id,
            "graph_id": record.graph_id,
            "name": record.name,
            "status": record.status.value,
            "state": record.state,
            "checkpointed_at": self._dt(record.checkpointed_at),
            "created_at": self._dt(record.created_at),
            "updated_at": self._dt(record.updated_at),
            "expires_at": self._dt(record.expires_at),
            "user_id": record.user_id,
            "workflow_id": record.workflow_id,
            "execution_id": record.execution_id,
            "metadata": record.metadata,
        }

    def _deserialize_checkpoint(self, raw: dict) -> CheckpointRecord:
        return CheckpointRecord(
            id=raw["id"],
            graph_id=raw["graph_id"],
            name=raw.get("name", ""),
            status=CheckpointStatus(raw.get("status", "active")),
            state=raw.get("state") or {},
            checkpointed_at=self._parse_dt(raw.get("checkpointed_at")) or utcnow(),
            created_at=self._parse_dt(raw.get("created_at")) or utcnow(),
            updated_at=self._parse_dt(raw.get("updated_at")) or utcnow(),
            expires_at=self._parse_dt(raw.get("expires_at")),
            user_id=raw.get("user_id"),
            workflow_id=raw.get("workflow_id"),
            execution_id=raw.get("execution_id"),
            metadata=raw.get("metadata"),
        )

    def _serialize_node_execution(self, record: NodeExecutionRecord) -> dict:
        return {
            "id": record.id,
            "checkpoint_id": record.checkpoint_id,
            "step_id": record.step_id,
            "status": record.status.value,
            "input": record.input,
            "output": record.output,
            "error": record.error,
            "started_at": self._dt(record.started_at),
            "completed_at": self._dt(record.completed_at),
            "duration_ms": record.duration_ms,
        }

    def _deserialize_node_execution(self, raw: dict) -> NodeExecutionRecord:
        return NodeExecutionRecord(
            id=raw["id"],
            checkpoint_id=raw["checkpoint_id"],
            step_id=raw["step_id"],
            status=NodeExecutionStatus(raw.get("status", "running")),
            input=raw.get("input") or {},
            output=raw.get("output"),
            error=raw.get("error"),
            started_at=self._parse_dt(raw.get("started_at")) or utcnow(),
            completed_at=self._parse_dt(raw.get("completed_at")),
            duration_ms=raw.get("duration_ms"),
        )

    def _serialize_approval(self, approval: ApprovalRecord) -> dict:
        return {
            "id": approval.id,
            "prompt": approval.prompt,
            "status": approval.status.value,
            "created_at": self._dt(approval.created_at),
            "expires_at": self._dt(approval.expires_at),
            "options": approval.options,
            "response": approval.response,
            "user_id": approval.user_id,
            "processed_at": self._dt(approval.processed_at),
            "metadata": approval.metadata,
        }

    def _deserialize_approval(self, raw: dict) -> ApprovalRecord:
        return ApprovalRecord(
            id=raw["id"],
            prompt=raw.get("prompt", ""),
            status=ApprovalStatus(raw.get("status", "pending")),
            created_at=self._parse_dt(raw.get("created_at")) or utcnow(),
            expires_at=self._parse_dt(raw.get("expires_at")) or utcnow(),
            options=raw.get("options"),
            response=raw.get("response"),
            user_id=raw.get("user_id"),
            processed_at=self._parse_dt(raw.get("processed_at")),
            metadata=raw.get("metadata"),
        )

    def _serialize_memory(self, entry: MemoryEntry) -> dict:
        return {
            "id": entry.id,
            "content": entry.content,
            "memory_type": entry.memory_type,
            "content_type": entry.content_type,
            "context": entry.context,
            "importance": entry.importance,
            "user_id": entry.user_id,
            "agent_id": entry.agent_id,
            "session_id": entry.session_id,
            "created_at": self._dt(entry.created_at),
            "expires_at": self._dt(entry.expires_at),
            "metadata": entry.metadata,
        }

    def _deserialize_memory(self, raw: dict) -> MemoryEntry:
        return MemoryEntry(
            id=raw["id"],
            content=raw.get("content"),
            memory_type=raw.get("memory_type", "short_term"),
            content_type=raw.get("content_type", "fact"),
            context=raw.get("context", "default"),
            importance=float(raw.get("importance", 1.0)),
            user_id=raw.get("user_id"),
            agent_id=raw.get("agent_id"),
            session_id=raw.get("session_id"),
            created_at=self._parse_dt(raw.get("created_at")) or utcnow(),
            expires_at=self._parse_dt(raw.get("expires_at")),
            metadata=raw.get("metadata"),
        )
