"""
Typed intermediate representation of an automation workflow step graph.
"""

from __future__ import annotations

import json
from typing import Any, Dict, List, Optional, Sequence, Tuple

from pydantic import BaseModel, ConfigDict, Field, ValidationError

from wgc.ir.errors import GraphDocumentError, MissingDependency

MAIN_BRANCH = "main"

# Where the platform nests the step graph inside the documents it returns.
SPEC_PATHS: Tuple[Tuple[str, ...], ...] = (
    ("data", "attributes", "spec"),
    ("attributes", "spec"),
    ("spec",),
    (),
)


class StrictModel(BaseModel):
    """Base model that rejects undeclared fields."""

    model_config = ConfigDict(extra="forbid", populate_by_name=True)


class WireModel(BaseModel):
    """Base model for platform documents: camelCase on the wire, unknown keys kept."""

    model_config = ConfigDict(populate_by_name=True, extra="allow")


class Parameter(WireModel):
    name: str
    value: Any = None

    def to_payload(self) -> Dict[str, Any]:
        return self.model_dump(by_alias=True)


class Edge(WireModel):
    next_step_name: str = Field(alias="nextStepName", min_length=1)
    branch_name: str = Field(default=MAIN_BRANCH, alias="branchName")
    condition: Optional[str] = None

    def is_main(self) -> bool:
        return not (self.condition or "").strip()

    def to_payload(self) -> Dict[str, Any]:
        payload = self.model_dump(by_alias=True)
        if payload.get("condition") is None:
            payload.pop("condition", None)
        return payload


class Step(WireModel):
    name: str = Field(min_length=1)
    action_id: str = Field(alias="actionId", min_length=1)
    parameters: List[Parameter] = Field(default_factory=list)
    outbound_edges: List[Edge] = Field(default_factory=list, alias="outboundEdges")

    def parameter(self, name: str, default: Any = None) -> Any:
        for item in self.parameters:
            if item.name == name:
                return item.value
        return default

    def parameter_map(self) -> Dict[str, Any]:
        return {item.name: item.value for item in self.parameters}

    def targets(self) -> List[str]:
        return [edge.next_step_name for edge in self.outbound_edges]

    def main_edge(self) -> Optional[Edge]:
        for edge in self.outbound_edges:
            if edge.is_main():
                return edge
        return None

    def is_terminal(self) -> bool:
        return not self.outbound_edges

    def with_edges(self, edges: Sequence[Edge]) -> "Step":
        updated = self.model_copy(deep=True)
        updated.outbound_edges = [edge.model_copy() for edge in edges]
        return updated

    def on_failure_step(self) -> Optional[str]:
        handler = (self.model_extra or {}).get("onFailure")
        if isinstance(handler, dict) and handler.get("stepName"):
            return str(handler["stepName"])
        return None

    def with_on_failure(self, step_name: Optional[str]) -> "Step":
        payload = self.to_payload()
        if step_name is None:
            payload.pop("onFailure", None)
        else:
            payload["onFailure"] = {"stepName": step_name}
        return Step.model_validate(payload)

    def bounds(self) -> Optional[Tuple[float, float]]:
        """Canvas position from ``display.bounds``, if the step has one."""

        display = (self.model_extra or {}).get("display")
        bounds = display.get("bounds") if isinstance(display, dict) else None
        if not isinstance(bounds, dict):
            return None
        x, y = bounds.get("x"), bounds.get("y")
        if isinstance(x, (int, float)) and isinstance(y, (int, float)):
            return x, y
        return None

    def placed_at(self, x: float, y: float) -> "Step":
        payload = self.to_payload()
        display = payload.get("display")
        display = dict(display) if isinstance(display, dict) else {}
        display["bounds"] = {"x": x, "y": y}
        payload["display"] = display
        return Step.model_validate(payload)

    def to_payload(self) -> Dict[str, Any]:
        payload = self.model_dump(by_alias=True, exclude={"parameters", "outbound_edges"})
        payload["parameters"] = [item.to_payload() for item in self.parameters]
        if self.outbound_edges:
            payload["outboundEdges"] = [edge.to_payload() for edge in self.outbound_edges]
        return payload


class WorkflowGraph(WireModel):
    steps: List[Step] = Field(default_factory=list)

    def get(self, name: str) -> Optional[Step]:
        for step in self.steps:
            if step.name == name:
                return step
        return None

    def require(self, name: str, context: Optional[str] = None) -> Step:
        step = self.get(name)
        if step is None:
            raise MissingDependency(name, context)
        return step

    def upsert(self, step: Step) -> None:
        for index, existing in enumerate(self.steps):
            if existing.name == step.name:
                self.steps[index] = step
                return
        self.steps.append(step)

    def remove(self, name: str) -> bool:
        retained = [step for step in self.steps if step.name != name]
        removed = len(retained) != len(self.steps)
        self.steps = retained
        return removed

    def all(self) -> List[Step]:
        return list(self.steps)

    def step_names(self) -> List[str]:
        return [step.name for step in self.steps]

    def step_map(self) -> Dict[str, Step]:
        mapping: Dict[str, Step] = {}
        for step in self.steps:
            mapping.setdefault(step.name, step)
        return mapping

    def content_map(self) -> Dict[str, Dict[str, Any]]:
        return {step.name: step.to_payload() for step in self.steps}

    def copy_graph(self) -> "WorkflowGraph":
        return self.model_copy(deep=True)

    def to_payload(self) -> Dict[str, Any]:
        payload = self.model_dump(by_alias=True, exclude={"steps"})
        payload["steps"] = [step.to_payload() for step in self.steps]
        return payload

    def to_json(self, indent: int = 2) -> str:
        return json.dumps(self.to_payload(), indent=indent, sort_keys=True)

    @classmethod
    def from_payload(cls, raw: Any) -> "WorkflowGraph":
        spec, _ = locate_spec(raw)
        try:
            return cls.model_validate(spec)
        except ValidationError as exc:
            raise GraphDocumentError(f"Invalid workflow graph document: {exc}") from exc


def locate_spec(raw: Any) -> Tuple[Dict[str, Any], Tuple[str, ...]]:
    """Return the step-graph mapping inside a platform document and its key path."""

    if not isinstance(raw, dict):
        raise GraphDocumentError(
            f"Workflow document must be a JSON object, got {type(raw).__name__}"
        )
    for path in SPEC_PATHS:
        node: Any = raw
        for key in path:
            node = node.get(key) if isinstance(node, dict) else None
        if isinstance(node, dict) and isinstance(node.get("steps"), list):
            return node, path
    raise GraphDocumentError("Workflow document has no 'steps' list.")
