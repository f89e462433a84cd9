"""
In-process trace model of the host's execution semantics, built on LangGraph.

Only for verification: steps are replayed one at a time, each step's outbound
edges are evaluated once after it completes, the first matching edge wins and
a step with no matching edge (or no edges) ends the run. Remote actions are
not performed; command results come from a scripted list of health outputs.
"""

from __future__ import annotations

import logging
from typing import Any, Callable, Dict, List, Optional, Sequence, TypedDict

from langgraph.errors import GraphRecursionError
from langgraph.graph import END, START, StateGraph
from pydantic import BaseModel, Field

from wgc.compiler.decision import DEFAULT_OUTPUT_FIELD, decide, extract_decision_spec
from wgc.compiler.dependency_resolver import DependencyResolver
from wgc.ir.actions import ActionKind
from wgc.ir.conditions import evaluate_condition
from wgc.ir.spec_schema import Step, WorkflowGraph

LOGGER = logging.getLogger(__name__)


class SimulationState(TypedDict, total=False):
    wgc_visited: List[str]
    wgc_outputs: Dict[str, Any]
    wgc_fetches: int


class SimulationReport(BaseModel):
    path: List[str] = Field(default_factory=list)
    terminal: Optional[str] = None
    outputs: Dict[str, Any] = Field(default_factory=dict)
    decide_visits: int = 0
    final_state: Optional[Dict[str, Any]] = None
    completed: bool = False
    error: Optional[str] = None


class GraphSimulator:
    def __init__(self, recursion_limit: Optional[int] = None) -> None:
        self.recursion_limit = recursion_limit
        self.resolver = DependencyResolver()

    def simulate(
        self,
        graph: WorkflowGraph,
        start: str,
        health_outputs: Sequence[str] = (),
    ) -> SimulationReport:
        graph.require(start, "simulation start")
        app = self.compile(graph, start, list(health_outputs))
        limit = self.recursion_limit or 4 * len(graph.steps) + 10

        state: Dict[str, Any] = {"wgc_visited": [], "wgc_outputs": {}, "wgc_fetches": 0}
        error: Optional[str] = None
        try:
            for snapshot in app.stream(
                state, config={"recursion_limit": limit}, stream_mode="values"
            ):
                state = snapshot
        except GraphRecursionError as exc:
            error = f"Run did not finish within {limit} steps: {exc}"
            LOGGER.warning("Simulation from %s stopped: %s", start, error)

        return self._report(graph, state, error)

    def compile(self, graph: WorkflowGraph, start: str, health_outputs: List[str]) -> Any:
        steps = graph.step_map()
        reach = self.resolver.reachable(graph, start)
        builder = StateGraph(SimulationState)
        for name in steps:
            if name in reach:
                builder.add_node(name, self._node(steps[name], health_outputs))
        builder.add_edge(START, start)

        for name in reach:
            step = steps[name]
            if step.is_terminal():
                builder.add_edge(name, END)
                continue
            path_map: Dict[str, str] = {
                edge.next_step_name: edge.next_step_name
                for edge in step.outbound_edges
                if edge.next_step_name in reach
            }
            path_map[END] = END
            builder.add_conditional_edges(name, self._router(step, path_map), path_map)
        return builder.compile()

    @staticmethod
    def _router(step: Step, path_map: Dict[str, str]) -> Callable[[SimulationState], str]:
        def route(state: SimulationState) -> str:
            outputs = state.get("wgc_outputs") or {}
            for edge in step.outbound_edges:
                if edge.is_main() or evaluate_condition(edge.condition, outputs):
                    return edge.next_step_name if edge.next_step_name in path_map else END
            return END

        return route

    @staticmethod
    def _node(step: Step, health_outputs: List[str]) -> Callable[[SimulationState], Dict[str, Any]]:
        kind = ActionKind.from_action_id(step.action_id)
        decision = extract_decision_spec(step)

        def run(state: SimulationState) -> Dict[str, Any]:
            visited = list(state.get("wgc_visited") or [])
            outputs = dict(state.get("wgc_outputs") or {})
            fetches = state.get("wgc_fetches", 0)
            record: Dict[str, Any] = {"data": {}}

            if decision is not None:
                fetched = (outputs.get(decision.output_step) or {}).get("data") or {}
                prior = None
                if decision.prior_step:
                    prior = (outputs.get(decision.prior_step) or {}).get("data")
                verdict = decide(
                    fetched.get(decision.output_field),
                    prior,
                    max_retries=decision.max_retries,
                    healthy_marker=decision.healthy_marker,
                    service_label=decision.service_label,
                )
                record["data"] = verdict.to_payload()
            elif kind is ActionKind.GET_COMMAND:
                text = health_outputs[min(fetches, len(health_outputs) - 1)] if health_outputs else ""
                record["data"] = {DEFAULT_OUTPUT_FIELD: text, "Status": "Success"}
                fetches += 1
            elif kind is ActionKind.SEND_COMMAND:
                record["command"] = {"CommandId": f"{step.name}-{len(visited)}"}

            outputs[step.name] = record
            visited.append(step.name)
            return {"wgc_visited": visited, "wgc_outputs": outputs, "wgc_fetches": fetches}

        return run

    @staticmethod
    def _report(
        graph: WorkflowGraph, state: Dict[str, Any], error: Optional[str]
    ) -> SimulationReport:
        path = list(state.get("wgc_visited") or [])
        outputs = dict(state.get("wgc_outputs") or {})
        steps = graph.step_map()
        decide_steps = {
            name for name, step in steps.items() if extract_decision_spec(step) is not None
        }
        final_state = None
        for name in reversed(path):
            if name in decide_steps:
                final_state = (outputs.get(name) or {}).get("data")
                break
        terminal = path[-1] if path and steps[path[-1]].is_terminal() else None
        return SimulationReport(
            path=path,
            terminal=terminal,
            outputs=outputs,
            decide_visits=sum(1 for name in path if name in decide_steps),
            final_state=final_state,
            completed=error is None,
            error=error,
        )
