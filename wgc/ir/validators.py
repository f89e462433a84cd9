"""
Structural validation for composed workflow graphs.
"""

from __future__ import annotations

import logging
from collections import Counter
from typing import Dict, Iterable, List, Optional, Sequence, Set, Union

from pydantic import Field

from wgc.compiler.decision import extract_decision_spec, retry_condition
from wgc.compiler.dependency_resolver import DependencyResolver
from wgc.ir.actions import validate_step_parameters
from wgc.ir.conditions import referenced_steps
from wgc.ir.spec_schema import Step, StrictModel, WorkflowGraph

LOGGER = logging.getLogger(__name__)

ERROR_BRANCHES = ("error", "failure")
ERROR_STEP_PREFIXES = ("Error_Notification_", "Error_Email_")


class Violation(StrictModel):
    code: str
    step: Optional[str] = None
    detail: str = ""


class ValidationReport(StrictModel):
    violations: List[Violation] = Field(default_factory=list)
    warnings: List[Violation] = Field(default_factory=list)
    cycles: List[List[str]] = Field(default_factory=list)
    max_depth: Optional[int] = None

    @property
    def ok(self) -> bool:
        return not self.violations

    def codes(self) -> Set[str]:
        return {item.code for item in self.violations}

    def warning_codes(self) -> Set[str]:
        return {item.code for item in self.warnings}


def entry_step_names(graph: WorkflowGraph) -> List[str]:
    """Steps the platform starts from: ``startStepNames`` or trigger entries, else the first step."""

    extra = graph.model_extra or {}
    names: List[str] = []
    declared = extra.get("startStepNames")
    if isinstance(declared, list):
        names.extend(str(item) for item in declared)
    triggers = extra.get("triggers")
    if isinstance(triggers, list):
        for trigger in triggers:
            if isinstance(trigger, dict) and isinstance(trigger.get("startStepNames"), list):
                names.extend(str(item) for item in trigger["startStepNames"])
    if not names and graph.steps:
        names.append(graph.steps[0].name)
    return list(dict.fromkeys(names))


class InvariantValidator:
    def __init__(self, allow_guarded_back_edges: bool = False) -> None:
        self.allow_guarded_back_edges = allow_guarded_back_edges
        self.resolver = DependencyResolver()

    def validate(
        self, graph: WorkflowGraph, anchor: Union[str, Sequence[str], None] = None
    ) -> ValidationReport:
        """Check every structural invariant. Terminal reachability is checked from
        ``anchor`` (one name or several) when given, otherwise from every step."""

        report = ValidationReport()
        names = graph.step_names()
        known = set(names)

        for name, count in Counter(names).items():
            if count > 1:
                report.violations.append(
                    Violation(code="duplicate_name", step=name, detail=f"defined {count} times")
                )

        for step in graph.steps:
            for edge in step.outbound_edges:
                if edge.next_step_name not in known:
                    report.violations.append(
                        Violation(
                            code="dangling_edge",
                            step=step.name,
                            detail=f"edge '{edge.branch_name}' targets missing step "
                            f"'{edge.next_step_name}'",
                        )
                    )
            handler = step.on_failure_step()
            if handler is not None and handler not in known:
                report.violations.append(
                    Violation(
                        code="dangling_edge",
                        step=step.name,
                        detail=f"onFailure targets missing step '{handler}'",
                    )
                )

        cycles = self.resolver.cyclic_components(graph)
        report.cycles = [sorted(component) for component in cycles]
        guards = self._check_cycles(graph, cycles, report)
        self._check_producers(graph, cycles, guards, report)

        anchors = [anchor] if isinstance(anchor, str) else list(anchor or [])
        if anchors:
            reach: Set[str] = set()
            for name in anchors:
                graph.require(name, "validation anchor")
                reach |= self.resolver.reachable(graph, name)
        else:
            reach = set(names)
        finishing = self.resolver.reaching_terminal(graph)
        for name in names:
            if name in reach and name not in finishing:
                report.violations.append(
                    Violation(code="no_terminal", step=name, detail="no terminal step is reachable")
                )

        if anchors and not any(set(component) & reach for component in cycles):
            report.max_depth = max(self.resolver.longest_path(graph, name) for name in anchors)

        self._lint(graph, report)
        if not report.ok:
            LOGGER.info("Validation found %d violation(s)", len(report.violations))
        return report

    def _check_cycles(
        self, graph: WorkflowGraph, cycles: List[List[str]], report: ValidationReport
    ) -> Dict[str, Set[str]]:
        """Report unguarded cycles; return the guard step of each guarded cycle's members."""

        steps = graph.step_map()
        guards: Dict[str, Set[str]] = {}
        for component in cycles:
            members = set(component)
            guard_steps = set()
            for name in component:
                if self._guards_cycle(steps[name], members):
                    guard_steps.add(name)
            if not guard_steps:
                report.violations.append(
                    Violation(
                        code="unbounded_cycle",
                        step=sorted(component)[0],
                        detail="cycle through "
                        + ", ".join(sorted(component))
                        + " has no bounded retry counter",
                    )
                )
                continue
            for name in component:
                guards[name] = guard_steps
        return guards

    @staticmethod
    def _guards_cycle(step: Step, members: Set[str]) -> bool:
        """A Decide step bounds a cycle when it counts its own previous run and
        re-enters the cycle only on its retry condition."""

        spec = extract_decision_spec(step)
        if spec is None or spec.prior_step not in members:
            return False
        inside = [edge for edge in step.outbound_edges if edge.next_step_name in members]
        expected = retry_condition(step.name)
        return bool(inside) and all(
            (edge.condition or "").strip() == expected for edge in inside
        )

    def _check_producers(
        self,
        graph: WorkflowGraph,
        cycles: List[List[str]],
        guards: Dict[str, Set[str]],
        report: ValidationReport,
    ) -> None:
        component_of: Dict[str, int] = {}
        for index, component in enumerate(cycles):
            for name in component:
                component_of[name] = index

        for target, sources in self.resolver.producers(graph).items():
            counted = set()
            for source in sources:
                if (
                    self.allow_guarded_back_edges
                    and source in guards.get(target, set())
                    and component_of.get(source) == component_of.get(target)
                ):
                    continue
                counted.add(source)
            if len(counted) > 1:
                report.violations.append(
                    Violation(
                        code="multiple_producers",
                        step=target,
                        detail="produced by " + ", ".join(sorted(counted)),
                    )
                )

    def _lint(self, graph: WorkflowGraph, report: ValidationReport) -> None:
        known = set(graph.step_names())
        entries = set(entry_step_names(graph))
        handlers = {step.on_failure_step() for step in graph.steps}
        for root in self.resolver.roots(graph):
            if root not in entries and root not in handlers:
                report.warnings.append(
                    Violation(code="orphan_step", step=root, detail="no step leads here")
                )

        for step in graph.steps:
            references: Set[str] = set()
            for parameter in step.parameters:
                references |= referenced_steps(parameter.value)
            for edge in step.outbound_edges:
                references |= referenced_steps(edge.condition or "")
            for missing in sorted(references - known):
                report.warnings.append(
                    Violation(
                        code="unresolved_reference",
                        step=step.name,
                        detail=f"references unknown step '{missing}'",
                    )
                )
            for problem in validate_step_parameters(step):
                report.warnings.append(
                    Violation(code="invalid_parameters", step=step.name, detail=problem)
                )

        for warning in report.warnings:
            LOGGER.warning("%s [%s]: %s", warning.code, warning.step, warning.detail)


class ErrorHandlingCoverage(StrictModel):
    covered: Dict[str, List[str]] = Field(default_factory=dict)
    uncovered: List[str] = Field(default_factory=list)
    missing: List[str] = Field(default_factory=list)
    notification_steps: List[str] = Field(default_factory=list)

    @property
    def complete(self) -> bool:
        return not self.uncovered and not self.missing


def error_handling_coverage(
    graph: WorkflowGraph, critical_steps: Iterable[str]
) -> ErrorHandlingCoverage:
    """Which critical steps route failures somewhere: an error/failure branch or ``onFailure``."""

    coverage = ErrorHandlingCoverage(
        notification_steps=[
            step.name for step in graph.steps if step.name.startswith(ERROR_STEP_PREFIXES)
        ]
    )
    for name in critical_steps:
        step = graph.get(name)
        if step is None:
            coverage.missing.append(name)
            continue
        handlers = [
            edge.next_step_name
            for edge in step.outbound_edges
            if edge.branch_name in ERROR_BRANCHES
        ]
        on_failure = step.on_failure_step()
        if on_failure is not None:
            handlers.append(on_failure)
        elif (step.model_extra or {}).get("onFailure"):
            handlers.append("onFailure")
        if handlers:
            coverage.covered[name] = handlers
        else:
            coverage.uncovered.append(name)
    return coverage
