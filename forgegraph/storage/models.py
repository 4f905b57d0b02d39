from __future__ import annotations

import uuid
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Any, Dict, List, Optional


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class CheckpointStatus(str, Enum):
    ACTIVE = "active"
    COMPLETED = "completed"
    FAILED = "failed"
    PAUSED = "paused"


class NodeExecutionStatus(str, Enum):
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"


class ApprovalStatus(str, Enum):
    PENDING = "pending"
    APPROVED = "approved"
    REJECTED = "rejected"
    TIMEOUT = "timeout"


@dataclass
class CheckpointRecord:
    id: str
    graph_id: str
    name: str
    status: CheckpointStatus
    state: Dict[str, Any]
    checkpointed_at: datetime
    created_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)
    expires_at: Optional[datetime] = None
    user_id: Optional[str] = None
    workflow_id: Optional[str] = None
    execution_id: Optional[str] = None
    metadata: Dict | None = None

    @classmethod
    def new(
        cls,
        graph_id: str,
        name: str,
        state: Dict[str, Any],
        *,
        expires_in_days: Optional[int] = None,
        user_id: Optional[str] = None,
        workflow_id: Optional[str] = None,
        execution_id: Optional[str] = None,
        metadata: Dict | None = None,
    ) -> "CheckpointRecord":
        now = utcnow()
        return cls(
            id=str(uuid.uuid4()),
            graph_id=graph_id,
            name=name,
            status=CheckpointStatus.ACTIVE,
            state=state,
            checkpointed_at=now,
            created_at=now,
            updated_at=now,
            expires_at=(
                now + timedelta(days=expires_in_days) if expires_in_days else None
            ),
            user_id=user_id,
            workflow_id=workflow_id,
            execution_id=execution_id,
            metadata=metadata,
        )

    def is_expired(self, now: Optional[datetime] = None) -> bool:
        if self.expires_at is None:
            return False
        return self.expires_at <= (now or utcnow())


@dataclass
class NodeExecutionRecord:
    """One step invocation; frozen once it leaves ``running``."""

    id: str
    checkpoint_id: str
    step_id: str
    status: NodeExecutionStatus
    input: Dict[str, Any]
    started_at: datetime
    output: Optional[Dict[str, Any]] = None
    error: Optional[str] = None
    completed_at: Optional[datetime] = None
    duration_ms: Optional[int] = None

    @property
    def is_terminal(self) -> bool:
        return self.status != NodeExecutionStatus.RUNNING


@dataclass
class ApprovalRecord:
    id: str
    prompt: str
    status: ApprovalStatus
    created_at: datetime
    expires_at: datetime
    options: Optional[List[str]] = None
    response: Any = None
    user_id: Optional[str] = None
    processed_at: Optional[datetime] = None
    metadata: Dict | None = None

    @property
    def is_pending(self) -> bool:
        return self.status == ApprovalStatus.PENDING


@dataclass
class MemoryEntry:
    id: str
    content: Any
    memory_type: str = "short_term"
    content_type: str = "fact"
    context: str = "default"
    importance: float = 1.0
    user_id: Optional[str] = None
    agent_id: Optional[str] = None
    session_id: Optional[str] = None
    created_at: datetime = field(default_factory=utcnow)
    expires_at: Optional[datetime] = None
    metadata: Dict | None = None

    def is_expired(self, now: Optional[datetime] = None) -> bool:
        if self.expires_at is None:
            return False
        return self.expires_at <= (now or utcnow())


@dataclass
class MemoryQuery:
    """Filters for retrieving memory entries; ``None`` means unconstrained."""

    user_id: Optional[str] = None
    agent_id: Optional[str] = None
    session_id: Optional[str] = None
    memory_type: Optional[str] = None
    content_type: Optional[str] = None
    context: Optional[str] = None
    min_importance: Optional[float] = None
    limit: int = 20

    def matches(self, entry: MemoryEntry) -> bool:
        for attr in (
            "user_id",
            "agent_id",
            "session_id",
            "memory_type",
            "content_type",
            "context",
        ):
            wanted = getattr(self, attr)
            if wanted is not None and getattr(entry, attr) != wanted:
                return False
        if self.min_importance is not None and entry.importance < self.min_importance:
            return False
        return True
