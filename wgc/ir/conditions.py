"""
Edge condition expressions and ``Steps.<name>`` template references.

The platform evaluates conditions such as
``{{ Steps.Decide_0.data.shouldRetry }} === true && {{ Steps.Decide_0.data.success }} === false``
once, after the source step completes.
"""

from __future__ import annotations

import json
import logging
import re
from typing import Any, Dict, List, Mapping, Optional, Sequence, Set, Union

from wgc.ir.spec_schema import StrictModel

LOGGER = logging.getLogger(__name__)

STEP_REFERENCE = re.compile(r"Steps\.([A-Za-z0-9_]+)")
CLAUSE_PATTERN = re.compile(
    r"^\{\{\s*Steps\.([A-Za-z0-9_]+)\.data\.([A-Za-z0-9_]+)\s*\}\}\s*===\s*(.+)$"
)

ConditionLiteral = Union[bool, int, str]


class Clause(StrictModel):
    step: str
    key: str
    equals: ConditionLiteral


def step_ref(step_name: str, *path: str) -> str:
    return "{{ Steps." + ".".join((step_name,) + path) + " }}"


def _render_literal(value: ConditionLiteral) -> str:
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, int):
        return str(value)
    return json.dumps(value)


def _parse_literal(text: str) -> ConditionLiteral:
    text = text.strip()
    if text == "true":
        return True
    if text == "false":
        return False
    if re.fullmatch(r"-?\d+", text):
        return int(text)
    if len(text) >= 2 and text[0] == text[-1] and text[0] in "'\"":
        return text[1:-1]
    raise ValueError(f"Unsupported literal in condition: {text}")


def render_condition(clauses: Sequence[Clause]) -> str:
    if not clauses:
        raise ValueError("A condition needs at least one clause.")
    return " && ".join(
        f"{step_ref(clause.step, 'data', clause.key)} === {_render_literal(clause.equals)}"
        for clause in clauses
    )


def parse_condition(text: Optional[str]) -> Optional[List[Clause]]:
    """Parse a condition into clauses; ``None`` when it is not in the supported form."""

    if not text or not text.strip():
        return None
    clauses: List[Clause] = []
    for part in text.split("&&"):
        match = CLAUSE_PATTERN.match(part.strip())
        if not match:
            return None
        try:
            literal = _parse_literal(match.group(3))
        except ValueError:
            return None
        clauses.append(Clause(step=match.group(1), key=match.group(2), equals=literal))
    return clauses


def _strict_equals(actual: Any, expected: ConditionLiteral) -> bool:
    if isinstance(expected, bool) or isinstance(actual, bool):
        return isinstance(actual, bool) and isinstance(expected, bool) and actual is expected
    return type(actual) is type(expected) and actual == expected


def evaluate_condition(text: Optional[str], outputs: Mapping[str, Mapping[str, Any]]) -> bool:
    """Evaluate ``text`` against recorded step outputs (``{step: {"data": ...}}``)."""

    clauses = parse_condition(text)
    if clauses is None:
        LOGGER.warning("Condition could not be parsed and never matches: %s", text)
        return False
    for clause in clauses:
        recorded = outputs.get(clause.step) or {}
        data = recorded.get("data")
        if not isinstance(data, Mapping):
            return False
        if not _strict_equals(data.get(clause.key), clause.equals):
            return False
    return True


def referenced_steps(value: Any) -> Set[str]:
    """Collect every ``Steps.<name>`` referenced anywhere inside ``value``."""

    found: Set[str] = set()
    if isinstance(value, str):
        found.update(STEP_REFERENCE.findall(value))
    elif isinstance(value, Mapping):
        for item in value.values():
            found.update(referenced_steps(item))
    elif isinstance(value, (list, tuple)):
        for item in value:
            found.update(referenced_steps(item))
    return found


def rewrite_step_references(value: Any, mapping: Dict[str, str]) -> Any:
    if isinstance(value, str):
        return STEP_REFERENCE.sub(
            lambda match: "Steps." + mapping.get(match.group(1), match.group(1)), value
        )
    if isinstance(value, Mapping):
        return {key: rewrite_step_references(item, mapping) for key, item in value.items()}
    if isinstance(value, list):
        return [rewrite_step_references(item, mapping) for item in value]
    return value
