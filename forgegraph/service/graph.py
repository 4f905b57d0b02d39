from __future__ import annotations

import dataclasses
import uuid
from dataclasses import dataclass, field
from enum import Enum
from types import MappingProxyType
from typing import Any, Callable, Dict, List, Mapping, Optional, Tuple, Union

from jsonschema import Draft202012Validator

from forgegraph.logging import get_logger
from forgegraph.service.errors import ConfigurationError
from forgegraph.service.expressions import evaluate_condition
from forgegraph.service.resilience import ResiliencePolicy
from forgegraph.service.state import RunState

logger = get_logger(__name__)


class StepKind(str, Enum):
    MODEL_CALL = "model_call"
    TOOL_CALL = "tool_call"
    MEMORY_OP = "memory_op"
    HUMAN_INPUT = "human_input"
    CONDITION_ROUTER = "condition_router"
    # plain state -> state callables registered with add_node
    FUNCTION = "function"


StepCallable = Callable[[RunState], Any]
Condition = Union[Callable[[RunState], Any], str, None]


@dataclass(frozen=True)
class StepDefinition:
    id: str
    kind: StepKind
    execute: StepCallable
    config: Mapping[str, Any] = field(default_factory=dict)
    resilience: Optional[ResiliencePolicy] = None


@dataclass(frozen=True)
class EdgeDefinition:
    """Directed transition; ``condition`` is a predicate, an expression string or None."""

    source: str
    target: str
    condition: Condition = None

    def is_satisfied(self, state: RunState) -> bool:
        if self.condition is None:
            return True
        if isinstance(self.condition, str):
            return evaluate_condition(self.condition, state)
        return bool(self.condition(state))


@dataclass(frozen=True)
class GraphDefinition:
    graph_id: str
    name: str
    steps: Tuple[StepDefinition, ...] = ()
    edges: Tuple[EdgeDefinition, ...] = ()
    initial_state: Mapping[str, Any] = field(default_factory=dict)
    metadata: Optional[Mapping[str, Any]] = None

    def get_step(self, step_id: str) -> Optional[StepDefinition]:
        for step in self.steps:
            if step.id == step_id:
                return step
        return None

    def outgoing(self, step_id: str) -> List[EdgeDefinition]:
        return [edge for edge in self.edges if edge.source == step_id]

    @property
    def step_ids(self) -> List[str]:
        return [step.id for step in self.steps]


def create_graph(
    initial_state: Optional[Mapping[str, Any]] = None,
    name: str = "Unnamed Graph",
    metadata: Optional[Mapping[str, Any]] = None,
    *,
    graph_id: Optional[str] = None,
) -> GraphDefinition:
    return GraphDefinition(
        graph_id=graph_id or str(uuid.uuid4()),
        name=name,
        initial_state=MappingProxyType(dict(initial_state or {})),
        metadata=dict(metadata) if metadata else None,
    )


def add_node(
    graph: GraphDefinition,
    step_id: str,
    step: StepCallable,
    *,
    kind: Optional[StepKind] = None,
    config: Optional[Mapping[str, Any]] = None,
    resilience: Optional[ResiliencePolicy] = None,
) -> GraphDefinition:
    """Return a copy of ``graph`` with one more step.

    ``step`` is either a built-in step object (which carries its own kind,
    config and resilience policy) or a plain callable taking the RunState
    and returning the keys to merge.
    """
    if graph.get_step(step_id) is not None:
        raise ConfigurationError(
            f"duplicate step id: {step_id}", detail={"step_id": step_id}
        )
    definition = StepDefinition(
        id=step_id,
        kind=kind or getattr(step, "kind", StepKind.FUNCTION),
        execute=step,
        config=MappingProxyType(dict(config or getattr(step, "config", {}) or {})),
        resilience=resilience or getattr(step, "resilience", None),
    )
    return dataclasses.replace(graph, steps=graph.steps + (definition,))


def add_edge(
    graph: GraphDefinition,
    source: str,
    target: str,
    condition: Condition = None,
) -> GraphDefinition:
    edge = EdgeDefinition(source=source, target=target, condition=condition)
    return dataclasses.replace(graph, edges=graph.edges + (edge,))


def find_start_steps(graph: GraphDefinition) -> List[str]:
    """Step ids with no incoming edge, in declaration order."""
    targets = {edge.target for edge in graph.edges}
    return [step.id for step in graph.steps if step.id not in targets]


def validate_graph(graph: GraphDefinition) -> List[str]:
    """Raise ConfigurationError for an unrunnable graph; return its start steps."""
    seen: set[str] = set()
    for step in graph.steps:
        if step.id in seen:
            raise ConfigurationError(
                f"duplicate step id: {step.id}", detail={"step_id": step.id}
            )
        seen.add(step.id)

    for edge in graph.edges:
        for endpoint in (edge.source, edge.target):
            if endpoint not in seen:
                raise ConfigurationError(
                    f"edge {edge.source} -> {edge.target} references missing step {endpoint}",
                    detail={"source": edge.source, "target": edge.target},
                )

    start_steps = find_start_steps(graph)
    if not start_steps:
        raise ConfigurationError(
            "graph has no start step (every step has an incoming edge)",
            detail={"graph_id": graph.graph_id},
        )
    return start_steps


# =========================================================================
# Declarative graphs
# =========================================================================

GRAPH_SPEC_SCHEMA: Dict[str, Any] = {
    "type": "object",
    "required": ["steps"],
    "additionalProperties": False,
    "properties": {
        "graph_id": {"type": "string", "minLength": 1},
        "name": {"type": "string"},
        "initial_state": {"type": "object"},
        "metadata": {"type": "object"},
        "steps": {
            "type": "array",
            "minItems": 1,
            "items": {
                "type": "object",
                "required": ["id", "kind"],
                "additionalProperties": False,
                "properties": {
                    "id": {"type": "string", "minLength": 1},
                    "kind": {"enum": [k.value for k in StepKind if k != StepKind.FUNCTION]},
                    "config": {"type": "object"},
                },
            },
        },
        "edges": {
            "type": "array",
            "items": {
                "type": "object",
                "required": ["source", "target"],
                "additionalProperties": False,
                "properties": {
                    "source": {"type": "string", "minLength": 1},
                    "target": {"type": "string", "minLength": 1},
                    "condition": {"type": ["string", "null"]},
                },
            },
        },
    },
}

StepFactory = Callable[[str, Dict[str, Any]], StepCallable]


def load_graph_spec(
    spec: Mapping[str, Any],
    step_factories: Mapping[StepKind, StepFactory],
) -> GraphDefinition:
    """Build a GraphDefinition from a JSON-compatible description.

    Edge conditions are expression strings evaluated against
    ``{"state": <RunState>}``, e.g. ``"state['severity'] >= 7"``.
    """
    validator = Draft202012Validator(GRAPH_SPEC_SCHEMA)
    errors = sorted(validator.iter_errors(spec), key=lambda e: e.json_path)
    if errors:
        raise ConfigurationError(
            "graph spec validation failed",
            detail={"errors": [f"{e.json_path}: {e.message}" for e in errors]},
        )

    graph = create_graph(
        spec.get("initial_state"),
        spec.get("name", "Unnamed Graph"),
        spec.get("metadata"),
        graph_id=spec.get("graph_id"),
    )
    for raw in spec["steps"]:
        kind = StepKind(raw["kind"])
        factory = step_factories.get(kind)
        if factory is None:
            raise ConfigurationError(
                f"no factory registered for step kind {kind.value}",
                detail={"step_id": raw["id"], "kind": kind.value},
            )
        config = dict(raw.get("config") or {})
        try:
            step = factory(raw["id"], config)
        except (KeyError, TypeError) as exc:
            raise ConfigurationError(
                f"invalid config for step {raw['id']}: {exc}",
                detail={"step_id": raw["id"], "kind": kind.value},
            ) from exc
        graph = add_node(graph, raw["id"], step, kind=kind)
    for raw in spec.get("edges", []):
        graph = add_edge(graph, raw["source"], raw["target"], raw.get("condition"))
    validate_graph(graph)
    logger.info(
        "graph_spec_loaded",
        graph_id=graph.graph_id,
        steps=len(graph.steps),
        edges=len(graph.edges),
    )
    return graph
