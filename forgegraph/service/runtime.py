from __future__ import annotations

import asyncio
import threading
from typing import Any, Awaitable, Callable, Dict, Optional
from urllib.parse import urlparse, urlunparse

from forgegraph.config import get_settings, reset_settings_cache
from forgegraph.logging import get_logger
from forgegraph.service.checkpoint import CheckpointStore
from forgegraph.service.completion import OpenAICompatibleProvider
from forgegraph.service.engine import ExecutionEngine
from forgegraph.service.graph import StepKind
from forgegraph.service.resilience import (
    CircuitBreaker,
    CircuitStateStore,
    ResilienceWrapper,
)
from forgegraph.service.steps import (
    CompletionProvider,
    PollSettings,
    ToolRegistry,
    build_step_factories,
    call_collaborator,
)
from forgegraph.storage.memory import MemoryStore
from forgegraph.storage.models import ApprovalRecord, ApprovalStatus
from forgegraph.storage.postgres import PostgresStore
from forgegraph.storage.redis_cache import RedisApprovalNotifier

logger = get_logger(__name__)


def _mask_url_password(url: Optional[str]) -> Optional[str]:
    """Mask the password component of a URL for logging."""
    if not url:
        return url
    try:
        parsed = urlparse(url)
    except ValueError:
        return "***url_parse_error***"
    if not parsed.password:
        return url
    netloc = parsed.hostname or ""
    if parsed.port:
        netloc = f"{netloc}:{parsed.port}"
    netloc = f"{parsed.username or ''}:***@{netloc}"
    return urlunparse(
        (parsed.scheme, netloc, parsed.path, parsed.params, parsed.query, parsed.fragment)
    )


class Runtime:
    """Holds the process-wide store, engine and collaborator wiring."""

    def __init__(self):
        self.settings = get_settings()
        logger.info(
            "runtime_init_started",
            use_memory_store=self.settings.use_memory_store,
            test_mode=self.settings.test_mode,
        )

        store_type = "memory" if self.settings.use_memory_store else "postgres"
        try:
            self.store = (
                MemoryStore(fs_root=self.settings.state_fs_root)
                if self.settings.use_memory_store
                else PostgresStore(self.settings.database_url)
            )
        except Exception as exc:
            logger.error(
                "runtime_store_init_failed",
                store_type=store_type,
                error_type=type(exc).__name__,
                error=str(exc),
            )
            raise
        logger.info("runtime_store_initialized", store_type=store_type)

        self.notifier: Optional[RedisApprovalNotifier] = None
        if self.settings.redis_url and not self.settings.test_mode:
            try:
                notifier = RedisApprovalNotifier(self.settings.redis_url)
                notifier.verify_connection()
                self.notifier = notifier
            except Exception as exc:
                logger.warning(
                    "redis_disabled_fallback",
                    redis_url=_mask_url_password(self.settings.redis_url),
                    error=str(exc),
                    message="Human-Input steps fall back to polling the approval store.",
                )

        self.checkpoints = CheckpointStore(
            self.store, max_workers=self.settings.checkpoint_workers
        )
        self.circuits = CircuitStateStore()
        self.breaker = CircuitBreaker(self.circuits)
        self.resilience = ResilienceWrapper(self.breaker)
        self.engine = ExecutionEngine.from_settings(
            self.checkpoints, self.settings, resilience=self.resilience
        )
        self.tools = ToolRegistry()
        self.poll_settings = PollSettings.from_settings(self.settings)
        self.completion = OpenAICompatibleProvider.from_settings(self.settings)
        logger.info(
            "runtime_init_completed",
            notifier=self.notifier is not None,
            completion_provider=self.completion is not None,
        )

    def step_factories(self, provider: Optional[CompletionProvider] = None) -> Dict[StepKind, Any]:
        """Declarative step factories bound to this runtime's collaborators."""
        return build_step_factories(
            provider=provider or self.completion,
            tools=self.tools,
            memory=self.store,
            approvals=self.store,
            notifier=self.notifier,
            poll=self.poll_settings,
            default_model=self.settings.default_model,
            default_temperature=self.settings.default_temperature,
        )

    async def resolve_approval(
        self,
        approval_id: str,
        response: Any,
        *,
        status: ApprovalStatus = ApprovalStatus.APPROVED,
    ) -> ApprovalRecord:
        """Record a human decision and wake the step waiting on it."""
        approval = await call_collaborator(
            self.store.resolve_approval, approval_id, response, status=status
        )
        if self.notifier is not None:
            await self.notifier.publish_resolution(approval_id, approval.status.value)
        logger.info(
            "approval_resolved", approval_id=approval_id, status=approval.status.value
        )
        return approval

    def circuit_health(self) -> Dict[str, Dict[str, Any]]:
        return {
            circuit_id: {
                "status": state.status.value,
                "failure_count": state.failure_count,
            }
            for circuit_id, state in self.breaker.get_all_states().items()
        }


runtime: Runtime | None = None
_runtime_lock = threading.Lock()


def get_runtime() -> Runtime:
    """Get or create the Runtime singleton (double-checked locking)."""
    global runtime
    if runtime is not None:
        return runtime
    with _runtime_lock:
        if runtime is None:
            runtime = Runtime()
        return runtime


def _close_async(closer: Callable[[], Awaitable[Any]]) -> None:
    try:
        loop = asyncio.get_running_loop()
    except RuntimeError:
        asyncio.run(closer())
    else:
        loop.create_task(closer())


def reset_runtime_for_tests() -> Runtime:
    """Reinitialize the runtime singleton for isolated test runs."""
    global runtime

    with _runtime_lock:
        if runtime is not None:
            runtime.checkpoints.close()
            if isinstance(runtime.store, PostgresStore):
                runtime.store.close()
            for client in (runtime.notifier, runtime.completion):
                if client is None:
                    continue
                try:
                    _close_async(client.close)
                except (OSError, RuntimeError) as exc:
                    logger.debug("runtime_client_close_failed", error=str(exc))
        reset_settings_cache()
        runtime = Runtime()
        return runtime
