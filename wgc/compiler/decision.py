"""
Decide steps: the health predicate, the retry decision and the step that runs it.
"""

from __future__ import annotations

import json
import logging
import re
from typing import Any, Mapping, Optional, Sequence, Union

from pydantic import Field, ValidationError

from wgc.compiler.script_codegen import DECISION_HEADER, render_decision_script
from wgc.ir.actions import ActionKind, FunctionParams, build_step
from wgc.ir.conditions import Clause, render_condition
from wgc.ir.policy import CamelModel, RetryState
from wgc.ir.spec_schema import Edge, Step

LOGGER = logging.getLogger(__name__)

DEFAULT_OUTPUT_FIELD = "StandardOutputContent"

# Line breaks and surrounding whitespace exactly as the generated script sees them
# (JavaScript `split(/\r?\n/)` and `String.prototype.trim`).
LINE_BREAK = re.compile(r"\r?\n")
JS_WHITESPACE = "\t\n\x0b\x0c\r \u00a0\u1680\u2000-\u200a\u2028\u2029\u202f\u205f\u3000\ufeff"
JS_TRIM = re.compile(rf"\A[{JS_WHITESPACE}]+|[{JS_WHITESPACE}]+\Z")

PriorState = Union[RetryState, Mapping[str, Any], None]


class DecisionSpec(CamelModel):
    step_name: str = Field(min_length=1)
    output_step: str = Field(min_length=1)
    output_field: str = DEFAULT_OUTPUT_FIELD
    prior_step: Optional[str] = None
    max_retries: int = Field(ge=0)
    healthy_marker: str = Field(default="active", min_length=1)
    service_label: str = "service"


def health_verdict(raw_output: Any, healthy_marker: str = "active") -> bool:
    """True when the last non-empty line of ``raw_output`` is exactly the marker."""

    if not isinstance(raw_output, str):
        return False
    lines = [JS_TRIM.sub("", line) for line in LINE_BREAK.split(raw_output)]
    lines = [line for line in lines if line]
    return bool(lines) and lines[-1] == healthy_marker


def _prior_count(prior: PriorState) -> int:
    if prior is None:
        return 0
    if isinstance(prior, RetryState):
        return prior.retry_count
    if not isinstance(prior, Mapping):
        return 0
    value = prior.get("retryCount", prior.get("retry_count"))
    if isinstance(value, bool) or not isinstance(value, int):
        return 0
    return value


def decide(
    raw_output: Any,
    prior: PriorState = None,
    *,
    max_retries: int,
    healthy_marker: str = "active",
    service_label: str = "service",
) -> RetryState:
    """Classify one health-check result. Defined for every output and prior state."""

    ceiling = max(max_retries, 0)
    retry_count = min(max(_prior_count(prior), 0), ceiling)

    if health_verdict(raw_output, healthy_marker):
        return RetryState(
            success=True,
            health_status="active",
            retry_count=retry_count,
            max_retries=ceiling,
            should_retry=False,
            message=f"{service_label} is healthy after {retry_count} retry attempt(s)",
        )
    if retry_count < ceiling:
        retry_count += 1
        return RetryState(
            success=False,
            health_status="inactive",
            retry_count=retry_count,
            max_retries=ceiling,
            should_retry=True,
            message=f"{service_label} is not healthy. Attempt {retry_count}/{ceiling}",
        )
    return RetryState(
        success=False,
        health_status="inactive",
        retry_count=retry_count,
        max_retries=ceiling,
        should_retry=False,
        message=f"{service_label} did not recover after {retry_count} retry attempt(s)",
    )


def success_condition(step_name: str) -> str:
    return render_condition([Clause(step=step_name, key="success", equals=True)])


def retry_condition(step_name: str) -> str:
    return render_condition([Clause(step=step_name, key="shouldRetry", equals=True)])


def failure_condition(step_name: str) -> str:
    return render_condition(
        [
            Clause(step=step_name, key="success", equals=False),
            Clause(step=step_name, key="shouldRetry", equals=False),
        ]
    )


def synthesize_decide_step(spec: DecisionSpec, edges: Sequence[Edge]) -> Step:
    params = FunctionParams(
        description=f"Check {spec.service_label} health and decide whether to retry",
        script=render_decision_script(spec),
    )
    return build_step(spec.step_name, ActionKind.FUNCTION, params, edges=edges)


def extract_decision_spec(step: Step) -> Optional[DecisionSpec]:
    """Recover the decision parameters of a generated Decide step, if any."""

    if step.action_id != ActionKind.FUNCTION.value:
        return None
    script = step.parameter("script")
    if not isinstance(script, str) or not script.startswith(DECISION_HEADER):
        return None
    header = script.splitlines()[0][len(DECISION_HEADER):]
    try:
        return DecisionSpec.model_validate(json.loads(header))
    except (json.JSONDecodeError, ValidationError) as exc:
        LOGGER.warning("Ignoring malformed decision header on step %s: %s", step.name, exc)
        return None
