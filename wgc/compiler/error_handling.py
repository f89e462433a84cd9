"""
Failure notifications for critical steps.

Every critical step gets an ``Error_Notification_<step>`` Teams message, wired
as the step's ``onFailure`` handler or as an ``error`` branch, followed by an
``Error_Email_<step>`` email when a recipient is configured.
"""

from __future__ import annotations

import logging
from typing import Dict, List, Optional, Tuple

from pydantic import BaseModel, Field

from wgc.ir.actions import ActionKind, EmailParams, TeamsMessageParams, build_step
from wgc.ir.conditions import step_ref
from wgc.ir.errors import CompositionError
from wgc.ir.manifest import ERROR_HANDLING, INFERRED_VERSION, GenerationManifest
from wgc.ir.policy import ErrorHandlingPolicy, ErrorWiring
from wgc.ir.spec_schema import Edge, Step, WorkflowGraph
from wgc.ir.validators import ERROR_STEP_PREFIXES

LOGGER = logging.getLogger(__name__)

NOTIFICATION_PREFIX, EMAIL_PREFIX = ERROR_STEP_PREFIXES
ERROR_BRANCH = "error"

# Handlers sit in a staggered column left of the main flow.
ORIGIN_X = -400
ORIGIN_Y = 600
STEP_X = 50
STEP_Y = 100
EMAIL_DROP = 100


def error_condition(step_name: str) -> str:
    return step_ref(step_name, "status") + ' === "error"'


def handler_position(index: int) -> Tuple[int, int]:
    return ORIGIN_X + index * STEP_X, ORIGIN_Y + index * STEP_Y


class ErrorHandlers(BaseModel):
    chain_id: str
    wiring: ErrorWiring
    handlers: Dict[str, str] = Field(default_factory=dict)
    steps: List[Step] = Field(default_factory=list)
    manifest: GenerationManifest

    @property
    def critical_steps(self) -> List[str]:
        return list(self.handlers)

    def step_names(self) -> List[str]:
        return [step.name for step in self.steps]


class ErrorHandlingGenerator:
    def generate(self, graph: WorkflowGraph, policy: ErrorHandlingPolicy) -> ErrorHandlers:
        names = graph.step_names()
        handlers: Dict[str, str] = {}
        steps: List[Step] = []
        for critical in dict.fromkeys(policy.critical_steps):
            graph.require(critical, "critical step")
            if critical.startswith(ERROR_STEP_PREFIXES):
                raise CompositionError(
                    f"Step '{critical}' is an error handler and cannot itself be critical."
                )
            index = names.index(critical)
            notification = f"{NOTIFICATION_PREFIX}{critical}"
            email = f"{EMAIL_PREFIX}{critical}" if policy.email_to else None
            steps.append(self.notification_step(policy, critical, notification, email, index))
            if email is not None:
                steps.append(self.email_step(policy, critical, email, index))
            handlers[critical] = notification

        manifest = GenerationManifest(
            chain_id=policy.chain_id,
            kind=ERROR_HANDLING,
            policy_fingerprint=policy.fingerprint(),
            step_names=[step.name for step in steps],
            covered_steps=list(handlers),
        )
        LOGGER.info("Generated error handlers for %d critical step(s)", len(handlers))
        return ErrorHandlers(
            chain_id=policy.chain_id,
            wiring=policy.wiring,
            handlers=handlers,
            steps=steps,
            manifest=manifest,
        )

    @staticmethod
    def notification_step(
        policy: ErrorHandlingPolicy,
        critical: str,
        name: str,
        email: Optional[str],
        index: int,
    ) -> Step:
        message = "\n\n".join(
            [
                f"**Error in {policy.workflow_label}**",
                f"**Failed step:** {critical}",
                "The workflow stopped because this step failed. Check the step "
                "configuration, service connectivity and the Datadog logs.",
                f"**Error details:** {step_ref(critical, 'error')}",
            ]
        )
        params = TeamsMessageParams(
            channel_or_user=policy.notification.channel_or_user(),
            message=message,
            team_id=policy.notification.team_id,
            tenant_id=policy.notification.tenant_id,
        )
        edges = [Edge(next_step_name=email)] if email else []
        step = build_step(name, ActionKind.TEAMS_MESSAGE, params, edges=edges)
        return step.placed_at(*handler_position(index))

    @staticmethod
    def email_step(policy: ErrorHandlingPolicy, critical: str, name: str, index: int) -> Step:
        message = "\n".join(
            [
                f"The {policy.workflow_label} workflow stopped because a step failed.",
                "",
                f"- Step: {critical}",
                f"- Error: {step_ref(critical, 'error')}",
                "- Started: {{ Workflow.startedAt }}",
                "",
                "Check the step configuration and the Datadog logs.",
            ]
        )
        params = EmailParams(
            subject=f"ERROR: {policy.workflow_label} failed at {critical}",
            to=policy.email_to or "",
            message=message,
        )
        x, y = handler_position(index)
        return build_step(name, ActionKind.EMAIL, params).placed_at(x, y + EMAIL_DROP)


def infer_error_manifest(graph: WorkflowGraph, chain_id: str) -> Optional[GenerationManifest]:
    """Rebuild the error-handling manifest from handler step names."""

    names = [step.name for step in graph.steps if step.name.startswith(ERROR_STEP_PREFIXES)]
    if not names:
        return None
    owned = set(names)
    covered = [
        step.name
        for step in graph.steps
        if step.on_failure_step() in owned
        or any(
            edge.branch_name == ERROR_BRANCH and edge.next_step_name in owned
            for edge in step.outbound_edges
        )
    ]
    LOGGER.info("Inferred %d error handler step(s)", len(names))
    return GenerationManifest(
        chain_id=chain_id,
        kind=ERROR_HANDLING,
        policy_fingerprint="",
        step_names=names,
        covered_steps=covered,
        version=INFERRED_VERSION,
    )
