"""Built-in step variants.

Each step is an async callable ``step(state) -> mapping``; the engine merges
the returned mapping on top of the run state. Inputs and outputs are named
by the step's config (``input_key``/``output_key``) so steps stay decoupled
and only meet through state keys.
"""
from __future__ import annotations

import asyncio
import dataclasses
import functools
import inspect
from datetime import timedelta
from enum import Enum
from typing import (
    Any,
    Callable,
    Dict,
    List,
    Mapping,
    Optional,
    Protocol,
    Union,
    runtime_checkable,
)

from forgegraph.logging import get_logger, sanitize_error_message
from forgegraph.service.errors import (
    ConfigurationError,
    NotFoundError,
    StepTimeoutError,
    UnknownToolError,
)
from forgegraph.service.expressions import safe_eval_expr
from forgegraph.service.graph import StepFactory, StepKind
from forgegraph.service.resilience import (
    CircuitBreakerConfig,
    ResiliencePolicy,
    RetryPolicy,
)
from forgegraph.service.state import RunState
from forgegraph.storage.models import (
    ApprovalRecord,
    ApprovalStatus,
    MemoryEntry,
    MemoryQuery,
    utcnow,
)

logger = get_logger(__name__)

_MISSING = object()

DEFAULT_MODEL = "llama3-8b-8192"
DEFAULT_TEMPERATURE = 0.7


async def call_collaborator(fn: Callable[..., Any], *args, **kwargs) -> Any:
    """Invoke a sync or async collaborator without blocking the event loop.

    Coroutine functions are awaited directly; plain callables run on the
    default thread pool.
    """
    target_call = getattr(fn, "__call__", None)
    if inspect.iscoroutinefunction(fn) or inspect.iscoroutinefunction(target_call):
        return await fn(*args, **kwargs)
    loop = asyncio.get_running_loop()
    result = await loop.run_in_executor(None, functools.partial(fn, *args, **kwargs))
    if inspect.isawaitable(result):
        result = await result
    return result


def _resolve_template(value: Any, state: RunState) -> Any:
    return value(state) if callable(value) else value


# =========================================================================
# Collaborator contracts
# =========================================================================


@runtime_checkable
class CompletionProvider(Protocol):
    def complete(self, prompt: str, model: str, temperature: float) -> Any:
        """Return the completion text (sync or awaitable)."""


class MemoryBackend(Protocol):
    def store_memory(self, entry: MemoryEntry) -> str: ...

    def retrieve_memories(self, query: MemoryQuery) -> List[MemoryEntry]: ...

    def search_memories(
        self, text: str, filters: Optional[MemoryQuery] = None
    ) -> List[MemoryEntry]: ...


class ApprovalBackend(Protocol):
    def create_approval(
        self,
        prompt: str,
        options: Optional[List[str]],
        expires_at: Any,
        *,
        user_id: Optional[str] = None,
        metadata: Optional[dict] = None,
    ) -> str: ...

    def get_approval(self, approval_id: str) -> Optional[ApprovalRecord]: ...

    def mark_approval_timed_out(
        self, approval_id: str, response: Any = None
    ) -> Optional[ApprovalRecord]: ...


class ApprovalNotifier(Protocol):
    async def wait_for_approval_update(self, approval_id: str, timeout: float) -> bool: ...


# =========================================================================
# Tool registry
# =========================================================================


class ToolRegistry:
    """Named tool functions populated at startup and looked up by Tool-Call steps."""

    def __init__(self, tools: Optional[Mapping[str, Callable[..., Any]]] = None) -> None:
        self._tools: Dict[str, Callable[..., Any]] = {}
        for name, fn in (tools or {}).items():
            self.register(name, fn)

    def register(self, name: str, fn: Callable[..., Any]) -> None:
        if not callable(fn):
            raise ConfigurationError(f"tool {name} is not callable", detail={"tool": name})
        self._tools[name] = fn

    def get(self, name: str) -> Callable[..., Any]:
        try:
            return self._tools[name]
        except KeyError:
            raise UnknownToolError(name) from None

    def __contains__(self, name: object) -> bool:
        return name in self._tools

    def names(self) -> List[str]:
        return sorted(self._tools)


# =========================================================================
# Steps
# =========================================================================


class Step:
    kind: StepKind = StepKind.FUNCTION

    def __init__(self, *, resilience: Optional[ResiliencePolicy] = None) -> None:
        self.resilience = resilience

    @property
    def config(self) -> Dict[str, Any]:
        return {}

    async def __call__(self, state: RunState) -> Mapping[str, Any]:
        raise NotImplementedError


class ModelCallStep(Step):
    kind = StepKind.MODEL_CALL

    def __init__(
        self,
        provider: CompletionProvider,
        prompt_template: Union[str, Callable[[RunState], str]],
        output_key: str,
        *,
        model: str = DEFAULT_MODEL,
        temperature: float = DEFAULT_TEMPERATURE,
        resilience: Optional[ResiliencePolicy] = None,
    ) -> None:
        super().__init__(resilience=resilience)
        self.provider = provider
        self.prompt_template = prompt_template
        self.output_key = output_key
        self.model = model
        self.temperature = temperature

    @property
    def config(self) -> Dict[str, Any]:
        return {
            "model": self.model,
            "temperature": self.temperature,
            "output_key": self.output_key,
            "prompt_template": (
                self.prompt_template if isinstance(self.prompt_template, str) else "<callable>"
            ),
        }

    async def __call__(self, state: RunState) -> Mapping[str, Any]:
        prompt = _resolve_template(self.prompt_template, state)
        response = await call_collaborator(
            self.provider.complete, prompt, self.model, self.temperature
        )
        if not isinstance(response, str):
            response = "" if response is None else str(response)
        return {self.output_key: response}


class ToolCallStep(Step):
    """Run a registered or injected tool on ``state[input_key]`` (or the whole state).

    ``on_error(error, state)`` may return a mapping to merge instead of
    failing; returning None re-raises the tool's error.
    """

    kind = StepKind.TOOL_CALL

    def __init__(
        self,
        tool: Union[str, Callable[..., Any]],
        output_key: str,
        *,
        registry: Optional[ToolRegistry] = None,
        input_key: Optional[str] = None,
        on_error: Optional[Callable[[Exception, RunState], Any]] = None,
        resilience: Optional[ResiliencePolicy] = None,
    ) -> None:
        super().__init__(resilience=resilience)
        if isinstance(tool, str):
            if registry is None:
                raise UnknownToolError(tool)
            self.tool_name = tool
            self.tool = registry.get(tool)
        else:
            self.tool_name = getattr(tool, "__name__", type(tool).__name__)
            self.tool = tool
        self.output_key = output_key
        self.input_key = input_key
        self.on_error = on_error

    @property
    def config(self) -> Dict[str, Any]:
        return {
            "tool": self.tool_name,
            "input_key": self.input_key,
            "output_key": self.output_key,
            "has_on_error": self.on_error is not None,
        }

    async def __call__(self, state: RunState) -> Mapping[str, Any]:
        tool_input: Any = state
        if self.input_key is not None:
            tool_input = state.get(self.input_key)
        try:
            result = await call_collaborator(self.tool, tool_input)
        except Exception as exc:
            if self.on_error is None:
                raise
            logger.warning(
                "tool_call_recovering",
                tool=self.tool_name,
                error_type=type(exc).__name__,
                error=sanitize_error_message(exc),
            )
            recovered = await call_collaborator(self.on_error, exc, state)
            if recovered is None:
                raise
            return recovered
        return {self.output_key: result}


class MemoryOperation(str, Enum):
    STORE = "store"
    RETRIEVE = "retrieve"
    SEARCH = "search"


_MEMORY_DEFAULT_OUTPUT_KEYS = {
    MemoryOperation.STORE: "stored_memory_id",
    MemoryOperation.RETRIEVE: "retrieved_memories",
    MemoryOperation.SEARCH: "search_results",
}


def memory_entry_to_dict(entry: MemoryEntry) -> Dict[str, Any]:
    data = dataclasses.asdict(entry)
    data["created_at"] = entry.created_at.isoformat()
    data["expires_at"] = entry.expires_at.isoformat() if entry.expires_at else None
    return data


class MemoryOpStep(Step):
    kind = StepKind.MEMORY_OP

    def __init__(
        self,
        memory: MemoryBackend,
        operation: Union[MemoryOperation, str],
        *,
        input_key: Optional[str] = None,
        output_key: Optional[str] = None,
        memory_type: str = "short_term",
        content_type: str = "fact",
        context: str = "default",
        importance: float = 1.0,
        expires_in_hours: Optional[float] = None,
        limit: int = 20,
        step_id: Optional[str] = None,
        resilience: Optional[ResiliencePolicy] = None,
    ) -> None:
        super().__init__(resilience=resilience)
        try:
            self.operation = MemoryOperation(operation)
        except ValueError:
            raise ConfigurationError(
                f"unknown memory operation: {operation}",
                detail={"operation": str(operation)},
            ) from None
        self.memory = memory
        self.input_key = input_key
        self.output_key = output_key or _MEMORY_DEFAULT_OUTPUT_KEYS[self.operation]
        self.memory_type = memory_type
        self.content_type = content_type
        self.context = context
        self.importance = importance
        self.expires_in_hours = expires_in_hours
        self.limit = limit
        self.step_id = step_id

    @property
    def config(self) -> Dict[str, Any]:
        return {
            "operation": self.operation.value,
            "input_key": self.input_key,
            "output_key": self.output_key,
            "memory_type": self.memory_type,
            "content_type": self.content_type,
            "context": self.context,
            "importance": self.importance,
            "expires_in_hours": self.expires_in_hours,
        }

    def _query(self, state: RunState, *, with_type: bool) -> MemoryQuery:
        return MemoryQuery(
            user_id=state.get("user_id"),
            agent_id=state.get("agent_id"),
            session_id=state.get("session_id"),
            memory_type=self.memory_type if with_type else None,
            content_type=self.content_type,
            context=self.context if with_type else None,
            limit=self.limit,
        )

    async def __call__(self, state: RunState) -> Mapping[str, Any]:
        if self.operation == MemoryOperation.STORE:
            content = state.get(self.input_key) if self.input_key else dict(state)
            now = utcnow()
            entry = MemoryEntry(
                id="",
                content=content,
                memory_type=self.memory_type,
                content_type=self.content_type,
                context=self.context,
                importance=self.importance,
                user_id=state.get("user_id"),
                agent_id=state.get("agent_id"),
                session_id=state.get("session_id"),
                created_at=now,
                expires_at=(
                    now + timedelta(hours=self.expires_in_hours)
                    if self.expires_in_hours
                    else None
                ),
                metadata={
                    "graph_id": state.get("graph_id"),
                    "checkpoint_id": state.get("checkpoint_id"),
                    "step_id": self.step_id,
                },
            )
            memory_id = await call_collaborator(self.memory.store_memory, entry)
            return {self.output_key: memory_id}

        if self.operation == MemoryOperation.RETRIEVE:
            entries = await call_collaborator(
                self.memory.retrieve_memories, self._query(state, with_type=True)
            )
            return {self.output_key: [memory_entry_to_dict(e) for e in entries]}

        query_text = state.get(self.input_key or "query")
        if not query_text:
            raise ValueError(f"search query not found in state key {self.input_key or 'query'!r}")
        entries = await call_collaborator(
            self.memory.search_memories,
            str(query_text),
            self._query(state, with_type=False),
        )
        return {self.output_key: [memory_entry_to_dict(e) for e in entries]}


@dataclasses.dataclass
class PollSettings:
    """Fallback polling for Human-Input when no push notification arrives."""

    interval_seconds: float = 2.0
    backoff_factor: float = 1.5
    max_interval_seconds: float = 10.0
    max_wakeups: int = 600

    @classmethod
    def from_settings(cls, settings: Any) -> "PollSettings":
        return cls(
            interval_seconds=settings.human_input_poll_interval_seconds,
            backoff_factor=settings.human_input_poll_backoff_factor,
            max_interval_seconds=settings.human_input_max_poll_interval_seconds,
            max_wakeups=settings.human_input_max_wakeups,
        )


def _approval_response(approval: ApprovalRecord) -> Any:
    if approval.response is None:
        return approval.status.value
    return approval.response


class HumanInputStep(Step):
    """Create a pending approval and suspend until it is resolved or times out.

    With a notifier the step sleeps until the approval changes (re-checking
    at most every ``max_interval_seconds``); without one it polls with
    backoff. Either way the number of wake-ups is capped.
    """

    kind = StepKind.HUMAN_INPUT

    def __init__(
        self,
        approvals: ApprovalBackend,
        prompt: Union[str, Callable[[RunState], str]],
        *,
        options: Union[None, List[str], Callable[[RunState], List[str]]] = None,
        timeout_seconds: float = 300,
        default_value: Any = _MISSING,
        output_key: str = "humanInput",
        notifier: Optional[ApprovalNotifier] = None,
        poll: Optional[PollSettings] = None,
        metadata: Optional[Dict[str, Any]] = None,
        step_id: Optional[str] = None,
        resilience: Optional[ResiliencePolicy] = None,
    ) -> None:
        super().__init__(resilience=resilience)
        if timeout_seconds <= 0:
            raise ConfigurationError(
                "timeout_seconds must be positive",
                detail={"timeout_seconds": timeout_seconds},
            )
        self.approvals = approvals
        self.prompt = prompt
        self.options = options
        self.timeout_seconds = timeout_seconds
        self.default_value = default_value
        self.output_key = output_key
        if notifier is None and hasattr(approvals, "wait_for_approval_update"):
            notifier = approvals  # type: ignore[assignment]
        self.notifier = notifier
        self.poll = poll or PollSettings()
        self.metadata = metadata or {}
        self.step_id = step_id

    @property
    def config(self) -> Dict[str, Any]:
        return {
            "prompt": self.prompt if isinstance(self.prompt, str) else "<callable>",
            "timeout_seconds": self.timeout_seconds,
            "has_default": self.default_value is not _MISSING,
            "output_key": self.output_key,
        }

    async def _await_resolution(self, approval_id: str) -> tuple[bool, Any]:
        loop = asyncio.get_running_loop()
        deadline = loop.time() + self.timeout_seconds
        interval = self.poll.interval_seconds
        wakeups = 0
        while True:
            approval = await call_collaborator(self.approvals.get_approval, approval_id)
            if approval is None:
                raise NotFoundError(
                    f"approval {approval_id} not found",
                    detail={"approval_id": approval_id},
                )
            if approval.status == ApprovalStatus.TIMEOUT:
                return False, None
            if approval.status != ApprovalStatus.PENDING:
                return True, _approval_response(approval)

            remaining = deadline - loop.time()
            if remaining <= 0 or wakeups >= self.poll.max_wakeups:
                return False, None
            wakeups += 1
            if self.notifier is not None:
                await self.notifier.wait_for_approval_update(
                    approval_id, min(remaining, self.poll.max_interval_seconds)
                )
            else:
                await asyncio.sleep(min(interval, remaining))
                interval = min(
                    interval * self.poll.backoff_factor, self.poll.max_interval_seconds
                )

    async def __call__(self, state: RunState) -> Mapping[str, Any]:
        prompt_text = _resolve_template(self.prompt, state)
        options = _resolve_template(self.options, state)
        expires_at = utcnow() + timedelta(seconds=self.timeout_seconds)
        approval_id = await call_collaborator(
            self.approvals.create_approval,
            prompt_text,
            options,
            expires_at,
            user_id=state.get("user_id"),
            metadata={
                **self.metadata,
                "graph_id": state.get("graph_id"),
                "checkpoint_id": state.get("checkpoint_id"),
                "step_id": self.step_id,
            },
        )
        logger.info(
            "human_input_requested",
            approval_id=approval_id,
            step_id=self.step_id,
            expires_at=expires_at.isoformat(),
        )

        resolved, response = await self._await_resolution(approval_id)
        if resolved:
            logger.info("human_input_received", approval_id=approval_id)
            return {self.output_key: response, "humanApprovalId": approval_id}

        has_default = self.default_value is not _MISSING
        marked = await call_collaborator(
            self.approvals.mark_approval_timed_out,
            approval_id,
            self.default_value if has_default else None,
        )
        if marked is not None and marked.status not in (
            ApprovalStatus.PENDING,
            ApprovalStatus.TIMEOUT,
        ):
            # decided between the last check and the timeout write
            logger.info("human_input_received_at_deadline", approval_id=approval_id)
            return {
                self.output_key: _approval_response(marked),
                "humanApprovalId": approval_id,
            }

        if has_default:
            logger.warning(
                "human_input_timed_out_using_default",
                approval_id=approval_id,
                timeout_seconds=self.timeout_seconds,
            )
            return {self.output_key: self.default_value, "humanApprovalId": approval_id}

        raise StepTimeoutError(
            f"human input timed out after {self.timeout_seconds} seconds",
            detail={"approval_id": approval_id, "timeout_seconds": self.timeout_seconds},
        )


class ConditionRouterStep(Step):
    """Evaluate a predicate (callable or expression over ``state``) into ``output_key``."""

    kind = StepKind.CONDITION_ROUTER

    def __init__(
        self,
        predicate: Union[str, Callable[[RunState], Any]],
        *,
        output_key: str = "route",
        resilience: Optional[ResiliencePolicy] = None,
    ) -> None:
        super().__init__(resilience=resilience)
        self.predicate = predicate
        self.output_key = output_key

    @property
    def config(self) -> Dict[str, Any]:
        return {
            "expression": self.predicate if isinstance(self.predicate, str) else "<callable>",
            "output_key": self.output_key,
        }

    async def __call__(self, state: RunState) -> Mapping[str, Any]:
        if isinstance(self.predicate, str):
            value = safe_eval_expr(self.predicate, {"state": state})
        else:
            value = self.predicate(state)
            if inspect.isawaitable(value):
                value = await value
        return {self.output_key: value}


# =========================================================================
# Declarative construction
# =========================================================================


def resilience_from_config(config: Mapping[str, Any], step_id: str) -> Optional[ResiliencePolicy]:
    """Read optional ``retry``/``timeout_ms``/``circuit`` keys of a step config."""
    retry_raw = config.get("retry")
    circuit_raw = config.get("circuit")
    timeout_ms = config.get("timeout_ms")
    if retry_raw is None and circuit_raw is None and timeout_ms is None:
        return None
    retry = None
    if retry_raw is not None:
        retry = RetryPolicy(**retry_raw) if isinstance(retry_raw, Mapping) else RetryPolicy()
    circuit = None
    if circuit_raw is not None:
        circuit_cfg = dict(circuit_raw) if isinstance(circuit_raw, Mapping) else {}
        circuit_cfg.setdefault("circuit_id", step_id)
        circuit = CircuitBreakerConfig(**circuit_cfg)
    return ResiliencePolicy(retry=retry, timeout_ms=timeout_ms, circuit=circuit)


def build_step_factories(
    *,
    provider: Optional[CompletionProvider] = None,
    tools: Optional[ToolRegistry] = None,
    memory: Optional[MemoryBackend] = None,
    approvals: Optional[ApprovalBackend] = None,
    notifier: Optional[ApprovalNotifier] = None,
    poll: Optional[PollSettings] = None,
    default_model: str = DEFAULT_MODEL,
    default_temperature: float = DEFAULT_TEMPERATURE,
) -> Dict[StepKind, StepFactory]:
    """Factories turning declarative step configs into step objects."""

    def _require(collaborator: Any, name: str, step_id: str) -> Any:
        if collaborator is None:
            raise ConfigurationError(
                f"step {step_id} has no {name} collaborator configured",
                detail={"step_id": step_id},
            )
        return collaborator

    def model_call(step_id: str, config: Dict[str, Any]) -> Step:
        return ModelCallStep(
            _require(provider, "completion provider", step_id),
            config["prompt_template"],
            config.get("output_key", "response"),
            model=config.get("model", default_model),
            temperature=config.get("temperature", default_temperature),
            resilience=resilience_from_config(config, step_id),
        )

    def tool_call(step_id: str, config: Dict[str, Any]) -> Step:
        return ToolCallStep(
            config["tool"],
            config.get("output_key", "result"),
            registry=_require(tools, "tool registry", step_id),
            input_key=config.get("input_key"),
            resilience=resilience_from_config(config, step_id),
        )

    def memory_op(step_id: str, config: Dict[str, Any]) -> Step:
        return MemoryOpStep(
            _require(memory, "memory", step_id),
            config.get("operation", ""),
            input_key=config.get("input_key"),
            output_key=config.get("output_key"),
            memory_type=config.get("memory_type", "short_term"),
            content_type=config.get("content_type", "fact"),
            context=config.get("context", "default"),
            importance=config.get("importance", 1.0),
            expires_in_hours=config.get("expires_in_hours"),
            step_id=step_id,
            resilience=resilience_from_config(config, step_id),
        )

    def human_input(step_id: str, config: Dict[str, Any]) -> Step:
        return HumanInputStep(
            _require(approvals, "approval", step_id),
            config.get("prompt", ""),
            options=config.get("options"),
            timeout_seconds=config.get("timeout_seconds", 300),
            default_value=config.get("default_value", _MISSING),
            output_key=config.get("output_key", "humanInput"),
            notifier=notifier,
            poll=poll,
            step_id=step_id,
        )

    def condition_router(step_id: str, config: Dict[str, Any]) -> Step:
        if "expression" not in config:
            raise ConfigurationError(
                f"condition router {step_id} needs an expression",
                detail={"step_id": step_id},
            )
        return ConditionRouterStep(
            config["expression"], output_key=config.get("output_key", "route")
        )

    return {
        StepKind.MODEL_CALL: model_call,
        StepKind.TOOL_CALL: tool_call,
        StepKind.MEMORY_OP: memory_op,
        StepKind.HUMAN_INPUT: human_input,
        StepKind.CONDITION_ROUTER: condition_router,
    }
