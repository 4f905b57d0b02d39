from __future__ import annotations

import json
import uuid
from datetime import datetime
from typing import Any, Dict, List, Optional

from psycopg import errors
from psycopg.rows import dict_row
from psycopg_pool import ConnectionPool

from forgegraph.logging import get_logger
from forgegraph.service.bm25 import rank_entries
from forgegraph.storage.errors import ConstraintViolation, RecordNotFound
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

# Upper bound on rows pulled into Python for BM25 ranking
_SEARCH_CANDIDATE_LIMIT = 500

_SCHEMA = (
    """
    CREATE TABLE IF NOT EXISTS graph_checkpoint (
        id TEXT PRIMARY KEY,
        graph_id TEXT NOT NULL,
        name TEXT NOT NULL,
        status TEXT NOT NULL,
        state JSONB NOT NULL,
        checkpointed_at TIMESTAMPTZ NOT NULL,
        created_at TIMESTAMPTZ NOT NULL DEFAULT now(),
        updated_at TIMESTAMPTZ NOT NULL DEFAULT now(),
        expires_at TIMESTAMPTZ,
        user_id TEXT,
        workflow_id TEXT,
        execution_id TEXT,
        meta JSONB
    )
    """,
    "CREATE INDEX IF NOT EXISTS graph_checkpoint_expires_idx ON graph_checkpoint (expires_at)",
    """
    CREATE TABLE IF NOT EXISTS graph_node_execution (
        id TEXT PRIMARY KEY,
        checkpoint_id TEXT NOT NULL REFERENCES graph_checkpoint(id) ON DELETE CASCADE,
        step_id TEXT NOT NULL,
        status TEXT NOT NULL,
        input JSONB NOT NULL,
        output JSONB,
        error TEXT,
        started_at TIMESTAMPTZ NOT NULL,
        completed_at TIMESTAMPTZ,
        duration_ms INTEGER
    )
    """,
    "CREATE INDEX IF NOT EXISTS graph_node_execution_checkpoint_idx ON graph_node_execution (checkpoint_id, started_at)",
    """
    CREATE TABLE IF NOT EXISTS approval_request (
        id TEXT PRIMARY KEY,
        prompt TEXT NOT NULL,
        status TEXT NOT NULL,
        options JSONB,
        response JSONB,
        user_id TEXT,
        created_at TIMESTAMPTZ NOT NULL DEFAULT now(),
        expires_at TIMESTAMPTZ NOT NULL,
        processed_at TIMESTAMPTZ,
        meta JSONB
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS memory_entry (
        id TEXT PRIMARY KEY,
        content JSONB,
        memory_type TEXT NOT NULL,
        content_type TEXT NOT NULL,
        context TEXT NOT NULL,
        importance DOUBLE PRECISION NOT NULL DEFAULT 1.0,
        user_id TEXT,
        agent_id TEXT,
        session_id TEXT,
        created_at TIMESTAMPTZ NOT NULL DEFAULT now(),
        expires_at TIMESTAMPTZ,
        meta JSONB
    )
    """,
)


def _dumps(value: Any) -> Optional[str]:
    if value is None:
        return None
    return json.dumps(value, default=str)


class PostgresStore:
    """Postgres-backed checkpoint, approval and memory persistence."""

    def __init__(self, dsn: str, *, min_size: int = 2, max_size: int = 10) -> None:
        self.dsn = dsn
        self.logger = get_logger(__name__)
        self.pool = ConnectionPool(
            self.dsn,
            min_size=min_size,
            max_size=max_size,
            kwargs={"row_factory": dict_row, "autocommit": False},
        )
        self._ensure_schema()

    def _connect(self):
        return self.pool.connection()

    def _ensure_schema(self) -> None:
        with self._connect() as conn:
            for statement in _SCHEMA:
                conn.execute(statement)
        self.logger.info("postgres_schema_ready")

    def close(self) -> None:
        self.pool.close()

    # -- checkpoints -------------------------------------------------------

    def create_checkpoint(self, record: CheckpointRecord) -> CheckpointRecord:
        try:
            with self._connect() as conn:
                row = conn.execute(
                    """
                    INSERT INTO graph_checkpoint (
                        id, graph_id, name, status, state, checkpointed_at, created_at,
                        updated_at, expires_at, user_id, workflow_id, execution_id, meta
                    ) VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s)
                    RETURNING *
                    """,
                    (
                        record.id,
                        record.graph_id,
                        record.name,
                        record.status.value,
                        _dumps(record.state),
                        record.checkpointed_at,
                        record.created_at,
                        record.updated_at,
                        record.expires_at,
                        record.user_id,
                        record.workflow_id,
                        record.execution_id,
                        _dumps(record.metadata),
                    ),
                ).fetchone()
        except errors.UniqueViolation:
            raise ConstraintViolation(
                "checkpoint already exists", {"checkpoint_id": record.id}
            )
        return self._checkpoint_from_row(row)

    def get_checkpoint(self, checkpoint_id: str) -> Optional[CheckpointRecord]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM graph_checkpoint WHERE id = %s", (checkpoint_id,)
            ).fetchone()
        return self._checkpoint_from_row(row) if row else None

    def update_checkpoint(
        self,
        checkpoint_id: str,
        *,
        state: Dict[str, Any],
        status: Optional[CheckpointStatus] = None,
        checkpointed_at: Optional[datetime] = None,
    ) -> CheckpointRecord:
        now = utcnow()
        with self._connect() as conn:
            row = conn.execute(
                """
                UPDATE graph_checkpoint
                SET state = %s,
                    status = COALESCE(%s, status),
                    checkpointed_at = %s,
                    updated_at = %s
                WHERE id = %s
                RETURNING *
                """,
                (
                    _dumps(state),
                    CheckpointStatus(status).value if status is not None else None,
                    checkpointed_at or now,
                    now,
                    checkpoint_id,
                ),
            ).fetchone()
        if not row:
            raise RecordNotFound("checkpoint not found", {"checkpoint_id": checkpoint_id})
        return self._checkpoint_from_row(row)

    def list_checkpoints(
        self,
        *,
        graph_id: Optional[str] = None,
        status: Optional[CheckpointStatus] = None,
        user_id: Optional[str] = None,
    ) -> List[CheckpointRecord]:
        query = "SELECT * FROM graph_checkpoint WHERE 1=1"
        params: list[Any] = []
        if graph_id is not None:
            query += " AND graph_id = %s"
            params.append(graph_id)
        if status is not None:
            query += " AND status = %s"
            params.append(CheckpointStatus(status).value)
        if user_id is not None:
            query += " AND user_id = %s"
            params.append(user_id)
        query += " ORDER BY created_at"
        with self._connect() as conn:
            rows = conn.execute(query, tuple(params)).fetchall()
        return [self._checkpoint_from_row(r) for r in rows]

    def list_expired_checkpoints(self, now: datetime) -> List[CheckpointRecord]:
        with self._connect() as conn:
            rows = conn.execute(
                "SELECT * FROM graph_checkpoint WHERE expires_at IS NOT NULL AND expires_at <= %s ORDER BY expires_at",
                (now,),
            ).fetchall()
        return [self._checkpoint_from_row(r) for r in rows]

    def delete_checkpoint(self, checkpoint_id: str) -> bool:
        with self._connect() as conn:
            row = conn.execute(
                "DELETE FROM graph_checkpoint WHERE id = %s RETURNING id", (checkpoint_id,)
            ).fetchone()
        return row is not None

    # -- node executions ---------------------------------------------------

    def create_node_execution(self, record: NodeExecutionRecord) -> NodeExecutionRecord:
        try:
            with self._connect() as conn:
                row = conn.execute(
                    """
                    INSERT INTO graph_node_execution (
                        id, checkpoint_id, step_id, status, input, started_at
                    ) VALUES (%s, %s, %s, %s, %s, %s)
                    RETURNING *
                    """,
                    (
                        record.id,
                        record.checkpoint_id,
                        record.step_id,
                        record.status.value,
                        _dumps(record.input),
                        record.started_at,
                    ),
                ).fetchone()
        except errors.ForeignKeyViolation:
            raise ConstraintViolation(
                "node execution references unknown checkpoint",
                {"checkpoint_id": record.checkpoint_id},
            )
        except errors.UniqueViolation:
            raise ConstraintViolation(
                "node execution already exists", {"execution_id": record.id}
            )
        return self._node_execution_from_row(row)

    def get_node_execution(self, execution_id: str) -> Optional[NodeExecutionRecord]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM graph_node_execution WHERE id = %s", (execution_id,)
            ).fetchone()
        return self._node_execution_from_row(row) if row else None

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
        with self._connect() as conn:
            # only running rows transition; finished rows stay frozen
            row = conn.execute(
                """
                UPDATE graph_node_execution
                SET status = %s, output = %s, error = %s, completed_at = %s, duration_ms = %s
                WHERE id = %s AND status = %s
                RETURNING *
                """,
                (
                    NodeExecutionStatus(status).value,
                    _dumps(output),
                    error,
                    completed_at,
                    duration_ms,
                    execution_id,
                    NodeExecutionStatus.RUNNING.value,
                ),
            ).fetchone()
            if row:
                return self._node_execution_from_row(row)
            existing = conn.execute(
                "SELECT status FROM graph_node_execution WHERE id = %s", (execution_id,)
            ).fetchone()
        if existing:
            raise ConstraintViolation(
                "node execution already finished",
                {"execution_id": execution_id, "status": existing["status"]},
            )
        raise RecordNotFound("node execution not found", {"execution_id": execution_id})

    def list_node_executions(self, checkpoint_id: str) -> List[NodeExecutionRecord]:
        with self._connect() as conn:
            rows = conn.execute(
                "SELECT * FROM graph_node_execution WHERE checkpoint_id = %s ORDER BY started_at, id",
                (checkpoint_id,),
            ).fetchall()
        return [self._node_execution_from_row(r) for r in rows]

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
        approval_id = str(uuid.uuid4())
        with self._connect() as conn:
            conn.execute(
                """
                INSERT INTO approval_request (id, prompt, status, options, user_id, created_at, expires_at, meta)
                VALUES (%s, %s, %s, %s, %s, %s, %s, %s)
                """,
                (
                    approval_id,
                    prompt,
                    ApprovalStatus.PENDING.value,
                    _dumps(list(options) if options else None),
                    user_id,
                    utcnow(),
                    expires_at,
                    _dumps(metadata),
                ),
            )
        return approval_id

    def get_approval(self, approval_id: str) -> Optional[ApprovalRecord]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM approval_request WHERE id = %s", (approval_id,)
            ).fetchone()
        return self._approval_from_row(row) if row else None

    def list_pending_approvals(self, user_id: Optional[str] = None) -> List[ApprovalRecord]:
        query = "SELECT * FROM approval_request WHERE status = %s"
        params: list[Any] = [ApprovalStatus.PENDING.value]
        if user_id is not None:
            query += " AND user_id = %s"
            params.append(user_id)
        with self._connect() as conn:
            rows = conn.execute(query + " ORDER BY created_at", tuple(params)).fetchall()
        return [self._approval_from_row(r) for r in rows]

    def resolve_approval(
        self,
        approval_id: str,
        response: Any,
        *,
        status: ApprovalStatus = ApprovalStatus.APPROVED,
    ) -> ApprovalRecord:
        with self._connect() as conn:
            row = conn.execute(
                """
                UPDATE approval_request
                SET status = %s, response = %s, processed_at = %s
                WHERE id = %s AND status = %s
                RETURNING *
                """,
                (
                    ApprovalStatus(status).value,
                    _dumps(response),
                    utcnow(),
                    approval_id,
                    ApprovalStatus.PENDING.value,
                ),
            ).fetchone()
            if row:
                return self._approval_from_row(row)
            existing = conn.execute(
                "SELECT status FROM approval_request WHERE id = %s", (approval_id,)
            ).fetchone()
        if existing:
            raise ConstraintViolation(
                "approval already processed",
                {"approval_id": approval_id, "status": existing["status"]},
            )
        raise RecordNotFound("approval not found", {"approval_id": approval_id})

    def mark_approval_timed_out(
        self, approval_id: str, response: Any = None
    ) -> Optional[ApprovalRecord]:
        with self._connect() as conn:
            row = conn.execute(
                """
                UPDATE approval_request
                SET status = %s, response = %s, processed_at = %s
                WHERE id = %s AND status = %s
                RETURNING *
                """,
                (
                    ApprovalStatus.TIMEOUT.value,
                    _dumps(response),
                    utcnow(),
                    approval_id,
                    ApprovalStatus.PENDING.value,
                ),
            ).fetchone()
            if row is None:
                # already decided (or unknown); report the stored record
                row = conn.execute(
                    "SELECT * FROM approval_request WHERE id = %s", (approval_id,)
                ).fetchone()
        return self._approval_from_row(row) if row else None

    # -- memories ----------------------------------------------------------

    def store_memory(self, entry: MemoryEntry) -> str:
        entry_id = entry.id or str(uuid.uuid4())
        with self._connect() as conn:
            conn.execute(
                """
                INSERT INTO memory_entry (
                    id, content, memory_type, content_type, context, importance,
                    user_id, agent_id, session_id, created_at, expires_at, meta
                ) VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s)
                ON CONFLICT (id) DO UPDATE
                SET content = EXCLUDED.content,
                    importance = EXCLUDED.importance,
                    expires_at = EXCLUDED.expires_at,
                    meta = EXCLUDED.meta
                """,
                (
                    entry_id,
                    _dumps(entry.content),
                    entry.memory_type,
                    entry.content_type,
                    entry.context,
                    entry.importance,
                    entry.user_id,
                    entry.agent_id,
                    entry.session_id,
                    entry.created_at,
                    entry.expires_at,
                    _dumps(entry.metadata),
                ),
            )
        return entry_id

    def _select_memories(self, query: MemoryQuery, limit: int) -> List[MemoryEntry]:
        sql = "SELECT * FROM memory_entry WHERE (expires_at IS NULL OR expires_at > %s)"
        params: list[Any] = [utcnow()]
        for column in (
            "user_id",
            "agent_id",
            "session_id",
            "memory_type",
            "content_type",
            "context",
        ):
            value = getattr(query, column)
            if value is not None:
                sql += f" AND {column} = %s"
                params.append(value)
        if query.min_importance is not None:
            sql += " AND importance >= %s"
            params.append(query.min_importance)
        sql += " ORDER BY importance DESC, created_at DESC LIMIT %s"
        params.append(limit)
        with self._connect() as conn:
            rows = conn.execute(sql, tuple(params)).fetchall()
        return [self._memory_from_row(r) for r in rows]

    def retrieve_memories(self, query: MemoryQuery) -> List[MemoryEntry]:
        return self._select_memories(query, query.limit)

    def search_memories(
        self, text: str, filters: Optional[MemoryQuery] = None
    ) -> List[MemoryEntry]:
        query = filters or MemoryQuery()
        candidates = self._select_memories(query, _SEARCH_CANDIDATE_LIMIT)
        return rank_entries(text, candidates, query.limit)

    # -- row mapping -------------------------------------------------------

    @staticmethod
    def _checkpoint_from_row(row: dict) -> CheckpointRecord:
        return CheckpointRecord(
            id=row["id"],
            graph_id=row["graph_id"],
            name=row["name"],
            status=CheckpointStatus(row["status"]),
            state=row.get("state") or {},
            checkpointed_at=row["checkpointed_at"],
            created_at=row["created_at"],
            updated_at=row["updated_at"],
            expires_at=row.get("expires_at"),
            user_id=row.get("user_id"),
            workflow_id=row.get("workflow_id"),
            execution_id=row.get("execution_id"),
            metadata=row.get("meta"),
        )

    @staticmethod
    def _node_execution_from_row(row: dict) -> NodeExecutionRecord:
        return NodeExecutionRecord(
            id=row["id"],
            checkpoint_id=row["checkpoint_id"],
            step_id=row["step_id"],
            status=NodeExecutionStatus(row["status"]),
            input=row.get("input") or {},
            output=row.get("output"),
            error=row.get("error"),
            started_at=row["started_at"],
            completed_at=row.get("completed_at"),
            duration_ms=row.get("duration_ms"),
        )

    @staticmethod
    def _approval_from_row(row: dict) -> ApprovalRecord:
        return ApprovalRecord(
            id=row["id"],
            prompt=row["prompt"],
            status=ApprovalStatus(row["status"]),
            created_at=row["created_at"],
            expires_at=row["expires_at"],
            options=row.get("options"),
            response=row.get("response"),
            user_id=row.get("user_id"),
            processed_at=row.get("processed_at"),
            metadata=row.get("meta"),
        )

    @staticmethod
    def _memory_from_row(row: dict) -> MemoryEntry:
        return MemoryEntry(
            id=row["id"],
            content=row.get("content"),
            memory_type=row["memory_type"],
            content_type=row["content_type"],
            context=row["context"],
            importance=float(row.get("importance") or 0.0),
            user_id=row.get("user_id"),
            agent_id=row.get("agent_id"),
            session_id=row.get("session_id"),
            created_at=row["created_at"],
            expires_at=row.get("expires_at"),
            metadata=row.get("meta"),
        )
