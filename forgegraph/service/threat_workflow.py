"""Two-step threat research and drafting workflow.

``research`` (Tool-Call) hands the threat description to an analysis
function and stores its report as ``research_result``; ``draft``
(Model-Call) turns that report into an executive summary stored as
``draft_summary``.
"""
from __future__ import annotations

import json
from typing import Any, Callable, List, Optional

from forgegraph.logging import get_logger
from forgegraph.service.engine import ExecutionEngine, ExecutionOptions, ExecutionResult
from forgegraph.service.graph import GraphDefinition, add_edge, add_node, create_graph
from forgegraph.service.resilience import ResiliencePolicy
from forgegraph.service.state import RunState
from forgegraph.service.steps import (
    DEFAULT_MODEL,
    CompletionProvider,
    ModelCallStep,
    ToolCallStep,
    call_collaborator,
)

logger = get_logger(__name__)

THREAT_CHECKPOINT_EXPIRY_DAYS = 30

ThreatAnalyzer = Callable[[str, List[str]], Any]


def extract_indicators(threat: str) -> List[str]:
    return [word for word in threat.split() if len(word) > 5]


def build_draft_prompt(state: RunState) -> str:
    research = json.dumps(state.get("research_result"), indent=2, default=str)
    return (
        f"You are a cybersecurity analyst working on the {state.get('project_name')} project.\n"
        "You need to create a concise summary of a security threat based on the research results.\n\n"
        f"Research Results:\n{research}\n\n"
        "Please write a professional, clear, and actionable summary of this threat.\n"
        "Include:\n"
        "1. A brief description of the threat\n"
        "2. The potential impact\n"
        "3. Recommended mitigation steps\n"
        "4. Any relevant references\n\n"
        "Format your response as a well-structured report that could be presented to executives.\n"
    )


def build_threat_workflow(
    input_threat: str,
    project_name: str,
    analyze: ThreatAnalyzer,
    provider: CompletionProvider,
    *,
    model: str = DEFAULT_MODEL,
    temperature: float = 0.7,
    research_resilience: Optional[ResiliencePolicy] = None,
    draft_resilience: Optional[ResiliencePolicy] = None,
) -> GraphDefinition:
    async def research(state: RunState) -> Any:
        threat = state["input_threat"]
        logger.info(
            "threat_research_started",
            input_threat=threat,
            project_name=state.get("project_name"),
        )
        result = await call_collaborator(analyze, threat, extract_indicators(threat))
        logger.info("threat_research_completed", project_name=state.get("project_name"))
        return result

    graph = create_graph(
        {"input_threat": input_threat, "project_name": project_name},
        f"Threat Analysis: {project_name}",
        {"workflow": "threat_research"},
    )
    graph = add_node(
        graph,
        "research",
        ToolCallStep(research, "research_result", resilience=research_resilience),
    )
    graph = add_node(
        graph,
        "draft",
        ModelCallStep(
            provider,
            build_draft_prompt,
            "draft_summary",
            model=model,
            temperature=temperature,
            resilience=draft_resilience,
        ),
    )
    return add_edge(graph, "research", "draft")


async def run_threat_workflow(
    engine: ExecutionEngine,
    input_threat: str,
    project_name: str,
    analyze: ThreatAnalyzer,
    provider: CompletionProvider,
    *,
    user_id: Optional[str] = None,
    workflow_id: Optional[str] = None,
    execution_id: Optional[str] = None,
) -> ExecutionResult:
    graph = build_threat_workflow(input_threat, project_name, analyze, provider)
    logger.info(
        "threat_workflow_started",
        graph_id=graph.graph_id,
        project_name=project_name,
        workflow_id=workflow_id,
    )
    result = await engine.execute_graph(
        graph,
        ExecutionOptions(
            user_id=user_id,
            workflow_id=workflow_id,
            execution_id=execution_id,
            expires_in_days=THREAT_CHECKPOINT_EXPIRY_DAYS,
        ),
    )
    log = logger.info if result.error is None else logger.error
    log(
        "threat_workflow_finished",
        graph_id=graph.graph_id,
        status=result.status.value,
        has_research="research_result" in result.final_state,
        has_draft=bool(result.final_state.get("draft_summary")),
        error=result.error,
    )
    return result
