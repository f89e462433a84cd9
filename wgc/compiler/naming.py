"""
Step-name standardization (``Pascal_Snake``) with reference rewriting.
"""

from __future__ import annotations

import logging
import re
from typing import Any, Dict, Iterable, List, Tuple

from wgc.ir.conditions import rewrite_step_references
from wgc.ir.errors import CompositionError
from wgc.ir.spec_schema import WorkflowGraph

LOGGER = logging.getLogger(__name__)

PROPER_NOUNS = ("JavaScript", "EC2", "AWS", "API", "JSON", "HTML", "Tomcat", "Teams")
_CAMEL_BOUNDARY = re.compile(r"([a-z])([A-Z])")


def standardize_step_name(name: str) -> str:
    """
    ``List_EC2_instances`` -> ``List_EC2_Instances``,
    ``GetCommandInvocation`` -> ``Get_Command_Invocation``.
    """

    if name in PROPER_NOUNS:
        return name
    parts = [part for part in _CAMEL_BOUNDARY.sub(r"\1_\2", name).split("_") if part]
    standardized: List[str] = []
    for part in parts:
        if part in PROPER_NOUNS or part.upper() in PROPER_NOUNS:
            standardized.append(part)
        else:
            standardized.append(part[0].upper() + part[1:].lower())
    return "_".join(standardized) or name


def _rename_entries(value: Any, mapping: Dict[str, str]) -> Any:
    if isinstance(value, list):
        return [mapping.get(item, item) if isinstance(item, str) else item for item in value]
    return value


def rename_steps(
    graph: WorkflowGraph, keep: Iterable[str] = ()
) -> Tuple[WorkflowGraph, Dict[str, str]]:
    """Rename steps to their standard form; edges, triggers and templates follow.

    Names in ``keep`` (generated chain steps) are left alone.
    """

    kept = set(keep)
    mapping = {
        step.name: standardize_step_name(step.name)
        for step in graph.steps
        if step.name not in kept and standardize_step_name(step.name) != step.name
    }
    if not mapping:
        return graph.copy_graph(), {}

    final_names = [mapping.get(name, name) for name in graph.step_names()]
    collisions = sorted({name for name in mapping.values() if final_names.count(name) > 1})
    if collisions:
        raise CompositionError(
            "Standardized step names would collide: " + ", ".join(collisions)
        )

    payload = graph.to_payload()
    for step in payload["steps"]:
        step["name"] = mapping.get(step["name"], step["name"])
        for edge in step.get("outboundEdges", []):
            edge["nextStepName"] = mapping.get(edge["nextStepName"], edge["nextStepName"])
            if edge.get("condition"):
                edge["condition"] = rewrite_step_references(edge["condition"], mapping)
        for parameter in step.get("parameters", []):
            parameter["value"] = rewrite_step_references(parameter["value"], mapping)
        on_failure = step.get("onFailure")
        if isinstance(on_failure, dict) and on_failure.get("stepName") in mapping:
            on_failure["stepName"] = mapping[on_failure["stepName"]]

    if "startStepNames" in payload:
        payload["startStepNames"] = _rename_entries(payload["startStepNames"], mapping)
    for trigger in payload.get("triggers") or []:
        if isinstance(trigger, dict) and "startStepNames" in trigger:
            trigger["startStepNames"] = _rename_entries(trigger["startStepNames"], mapping)

    for old, new in mapping.items():
        LOGGER.info("Renamed step %s -> %s", old, new)
    return WorkflowGraph.from_payload(payload), mapping
