"""Graph construction, validation and declarative loading."""

import pytest

from forgegraph.service.errors import ConfigurationError
from forgegraph.service.graph import (
    StepKind,
    add_edge,
    add_node,
    create_graph,
    find_start_steps,
    load_graph_spec,
    validate_graph,
)
from forgegraph.service.resilience import ResiliencePolicy, RetryPolicy
from forgegraph.service.steps import ModelCallStep, ToolRegistry, build_step_factories
from forgegraph.storage.models import CheckpointStatus


def noop(state):
    return {}


class EchoProvider:
    async def complete(self, prompt, model, temperature):
        return f"[{model}] {prompt}"


class TestConstruction:
    def test_create_graph_defaults(self):
        graph = create_graph()

        assert graph.name == "Unnamed Graph"
        assert graph.steps == ()
        assert graph.edges == ()
        assert graph.graph_id

    def test_initial_state_is_read_only(self):
        graph = create_graph({"a": 1})

        with pytest.raises(TypeError):
            graph.initial_state["a"] = 2

    def test_add_node_returns_new_graph(self):
        empty = create_graph({}, "g")
        one = add_node(empty, "A", noop)

        assert empty.steps == ()
        assert one.step_ids == ["A"]
        assert one.graph_id == empty.graph_id
        assert one.get_step("A").kind == StepKind.FUNCTION

    def test_add_edge_returns_new_graph(self):
        graph = add_node(add_node(create_graph(), "A", noop), "B", noop)
        linked = add_edge(graph, "A", "B")

        assert graph.edges == ()
        assert [(e.source, e.target) for e in linked.outgoing("A")] == [("A", "B")]

    def test_duplicate_step_id_rejected(self):
        graph = add_node(create_graph(), "A", noop)

        with pytest.raises(ConfigurationError):
            add_node(graph, "A", noop)

    def test_step_objects_carry_kind_and_policy(self):
        policy = ResiliencePolicy(retry=RetryPolicy(max_retries=1))
        step = ModelCallStep(EchoProvider(), "hi", "out", resilience=policy)

        graph = add_node(create_graph(), "model", step)

        definition = graph.get_step("model")
        assert definition.kind == StepKind.MODEL_CALL
        assert definition.resilience is policy
        assert definition.config["output_key"] == "out"

    def test_explicit_policy_overrides_step_policy(self):
        explicit = ResiliencePolicy(timeout_ms=10)
        step = ModelCallStep(
            EchoProvider(), "hi", "out", resilience=ResiliencePolicy(timeout_ms=99)
        )

        graph = add_node(create_graph(), "model", step, resilience=explicit)

        assert graph.get_step("model").resilience is explicit


class TestValidation:
    def test_start_steps_have_no_incoming_edges(self):
        graph = create_graph()
        for step_id in ("A", "B", "C", "D"):
            graph = add_node(graph, step_id, noop)
        graph = add_edge(add_edge(graph, "A", "C"), "B", "C")

        assert find_start_steps(graph) == ["A", "B", "D"]
        assert validate_graph(graph) == ["A", "B", "D"]

    def test_edge_from_unknown_step(self):
        graph = add_edge(add_node(create_graph(), "A", noop), "ghost", "A")

        with pytest.raises(ConfigurationError) as excinfo:
            validate_graph(graph)

        assert excinfo.value.detail == {"source": "ghost", "target": "A"}

    def test_cycle_without_entry_has_no_start(self):
        graph = add_node(add_node(create_graph(), "A", noop), "B", noop)
        graph = add_edge(add_edge(graph, "A", "B"), "B", "A")

        with pytest.raises(ConfigurationError, match="no start step"):
            validate_graph(graph)

    def test_cycle_with_entry_is_valid(self):
        graph = create_graph()
        for step_id in ("start", "A", "B"):
            graph = add_node(graph, step_id, noop)
        graph = add_edge(graph, "start", "A")
        graph = add_edge(graph, "A", "B")
        graph = add_edge(graph, "B", "A", "state['again']")

        assert validate_graph(graph) == ["start"]


class TestConditions:
    def test_missing_condition_always_holds(self):
        graph = add_edge(add_node(add_node(create_graph(), "A", noop), "B", noop), "A", "B")

        assert graph.edges[0].is_satisfied({}) is True

    def test_callable_condition(self):
        graph = add_node(add_node(create_graph(), "A", noop), "B", noop)
        graph = add_edge(graph, "A", "B", lambda state: state["n"] > 1)

        assert graph.edges[0].is_satisfied({"n": 2}) is True
        assert graph.edges[0].is_satisfied({"n": 0}) is False

    def test_expression_condition(self):
        graph = add_node(add_node(create_graph(), "A", noop), "B", noop)
        graph = add_edge(graph, "A", "B", "state['severity'] >= 7 and not state['muted']")

        assert graph.edges[0].is_satisfied({"severity": 8, "muted": False}) is True
        assert graph.edges[0].is_satisfied({"severity": 8, "muted": True}) is False
        assert graph.edges[0].is_satisfied({}) is False


SPEC = {
    "graph_id": "triage",
    "name": "Alert triage",
    "initial_state": {"alert": "Suspicious login from 203.0.113.9"},
    "steps": [
        {
            "id": "enrich",
            "kind": "tool_call",
            "config": {"tool": "geoip", "input_key": "alert", "output_key": "geo"},
        },
        {
            "id": "classify",
            "kind": "condition_router",
            "config": {"expression": "'foreign' if state['geo'] != 'home' else 'local'"},
        },
        {
            "id": "summarize",
            "kind": "model_call",
            "config": {
                "prompt_template": "Summarize the alert",
                "output_key": "summary",
                "retry": {"max_retries": 1, "delay_ms": 0},
            },
        },
        {"id": "remember", "kind": "memory_op", "config": {"operation": "store", "input_key": "summary"}},
    ],
    "edges": [
        {"source": "enrich", "target": "classify"},
        {"source": "classify", "target": "summarize", "condition": "state['route'] == 'foreign'"},
        {"source": "summarize", "target": "remember"},
    ],
}


class TestLoadGraphSpec:
    def factories(self, memory_store):
        tools = ToolRegistry({"geoip": lambda alert: "abroad"})
        return build_step_factories(provider=EchoProvider(), tools=tools, memory=memory_store)

    def test_builds_steps_and_edges(self, memory_store):
        graph = load_graph_spec(SPEC, self.factories(memory_store))

        assert graph.graph_id == "triage"
        assert graph.step_ids == ["enrich", "classify", "summarize", "remember"]
        assert graph.get_step("summarize").kind == StepKind.MODEL_CALL
        assert graph.get_step("summarize").resilience.retry.max_retries == 1
        assert graph.edges[1].condition == "state['route'] == 'foreign'"

    @pytest.mark.asyncio
    async def test_loaded_graph_runs(self, memory_store, engine):
        graph = load_graph_spec(SPEC, self.factories(memory_store))

        result = await engine.execute_graph(graph)

        assert result.status == CheckpointStatus.COMPLETED
        assert result.final_state["geo"] == "abroad"
        assert result.final_state["route"] == "foreign"
        assert result.final_state["summary"].startswith("[llama3-8b-8192]")
        assert result.final_state["stored_memory_id"] in memory_store.memories

    def test_schema_errors_are_collected(self, memory_store):
        bad = {"steps": [{"id": "", "kind": "teleport"}], "extra": 1}

        with pytest.raises(ConfigurationError) as excinfo:
            load_graph_spec(bad, self.factories(memory_store))

        errors = excinfo.value.detail["errors"]
        assert len(errors) >= 3
        assert errors[0].startswith("$: ")
        assert any(e.startswith("$.steps[0].kind") for e in errors)

    def test_missing_required_config_key(self, memory_store):
        spec = {"steps": [{"id": "summarize", "kind": "model_call", "config": {}}]}

        with pytest.raises(ConfigurationError, match="invalid config for step summarize"):
            load_graph_spec(spec, self.factories(memory_store))

    def test_unknown_tool_name(self, memory_store):
        spec = {"steps": [{"id": "t", "kind": "tool_call", "config": {"tool": "nmap"}}]}

        with pytest.raises(ConfigurationError, match="unknown tool: nmap"):
            load_graph_spec(spec, self.factories(memory_store))

    def test_missing_collaborator(self):
        spec = {"steps": [{"id": "ask", "kind": "human_input", "config": {"prompt": "ok?"}}]}

        with pytest.raises(ConfigurationError, match="has no approval collaborator"):
            load_graph_spec(spec, build_step_factories())

    def test_edges_must_reference_declared_steps(self, memory_store):
        spec = {
            "steps": [{"id": "a", "kind": "condition_router", "config": {"expression": "1"}}],
            "edges": [{"source": "a", "target": "b"}],
        }

        with pytest.raises(ConfigurationError):
            load_graph_spec(spec, self.factories(memory_store))
