"""
Platform JavaScript generation for Decide steps.
"""

from __future__ import annotations

import json
from typing import TYPE_CHECKING

if TYPE_CHECKING:  # pragma: no cover
    from wgc.compiler.decision import DecisionSpec

DECISION_HEADER = "// wgc:decision "


def _js(value: object) -> str:
    return json.dumps(value)


def render_header(spec: "DecisionSpec") -> str:
    return DECISION_HEADER + spec.model_dump_json(by_alias=True)


def render_decision_script(spec: "DecisionSpec") -> str:
    """
    Render the script of a Decide step.

    The first line carries the decision parameters as JSON so the step can be
    read back without interpreting JavaScript. The returned object has the
    same fields and messages as ``wgc.compiler.decision.decide``.
    """

    if spec.prior_step:
        prior_lines = [
            f"const prior = ($.Steps[{_js(spec.prior_step)}] || {{}}).data || {{}};",
            "let retryCount = Number.isInteger(prior.retryCount) ? prior.retryCount : 0;",
        ]
    else:
        prior_lines = ["let retryCount = 0;"]

    lines = [
        render_header(spec),
        f"const maxRetries = {spec.max_retries};",
        f"const label = {_js(spec.service_label)};",
        f"const fetched = ($.Steps[{_js(spec.output_step)}] || {{}}).data || {{}};",
        f"const raw = fetched[{_js(spec.output_field)}];",
        "const lines = typeof raw === 'string'",
        "  ? raw.split(/\\r?\\n/).map((line) => line.trim()).filter((line) => line.length > 0)",
        "  : [];",
        f"const healthy = lines.length > 0 && lines[lines.length - 1] === {_js(spec.healthy_marker)};",
        *prior_lines,
        "retryCount = Math.min(Math.max(retryCount, 0), maxRetries);",
        "",
        "if (healthy) {",
        "  return {",
        "    success: true,",
        "    healthStatus: 'active',",
        "    retryCount: retryCount,",
        "    maxRetries: maxRetries,",
        "    shouldRetry: false,",
        "    message: `${label} is healthy after ${retryCount} retry attempt(s)`",
        "  };",
        "}",
        "",
        "if (retryCount < maxRetries) {",
        "  retryCount++;",
        "  return {",
        "    success: false,",
        "    healthStatus: 'inactive',",
        "    retryCount: retryCount,",
        "    maxRetries: maxRetries,",
        "    shouldRetry: true,",
        "    message: `${label} is not healthy. Attempt ${retryCount}/${maxRetries}`",
        "  };",
        "}",
        "",
        "return {",
        "  success: false,",
        "  healthStatus: 'inactive',",
        "  retryCount: retryCount,",
        "  maxRetries: maxRetries,",
        "  shouldRetry: false,",
        "  message: `${label} did not recover after ${retryCount} retry attempt(s)`",
        "};",
    ]
    return "\n".join(lines)
