"""
Bounded-retry sub-graph generation.

A chain checks a service after the anchor step has remediated it, and on an
unhealthy result remediates and checks again, at most ``max_retries`` times.
Each attempt ends in exactly one of three branches: success, retry or
permanent failure.
"""

from __future__ import annotations

import logging
from abc import ABC, abstractmethod
from typing import Dict, List, Optional, Tuple, Union

from pydantic import BaseModel, Field

from wgc.compiler.decision import (
    DecisionSpec,
    failure_condition,
    retry_condition,
    success_condition,
    synthesize_decide_step,
)
from wgc.ir.actions import (
    ActionKind,
    CommandList,
    GetCommandParams,
    SendCommandParams,
    TeamsMessageParams,
    build_step,
)
from wgc.ir.conditions import step_ref
from wgc.ir.errors import CompositionError
from wgc.ir.manifest import ChainNaming, GenerationManifest
from wgc.ir.policy import ComposerPolicy, LoopStrategy
from wgc.ir.spec_schema import Edge, Step, WorkflowGraph

LOGGER = logging.getLogger(__name__)

InstanceIds = Union[List[str], str]

ROW_HEIGHT = 150
BRANCH_OFFSETS = {"success": 300, "failure": -300}


class ChainContext:
    def __init__(
        self,
        policy: ComposerPolicy,
        naming: ChainNaming,
        instance_ids: InstanceIds,
        instance_label: str,
    ) -> None:
        self.policy = policy
        self.naming = naming
        self.instance_ids = instance_ids
        self.instance_label = instance_label


class GeneratedChain(BaseModel):
    anchor_step_name: str
    chain_id: str
    strategy: LoopStrategy
    entry_step: str
    steps: List[Step] = Field(default_factory=list)
    decide_steps: List[str] = Field(default_factory=list)
    manifest: GenerationManifest

    def step_names(self) -> List[str]:
        return [step.name for step in self.steps]


class RetryChainStrategy(ABC):
    strategy = LoopStrategy.UNROLLED

    @abstractmethod
    def build(self, context: ChainContext) -> Tuple[List[Step], List[str]]:
        """Return the chain's steps, entry step first, and its Decide step names."""
        raise NotImplementedError

    @staticmethod
    def check_command(policy: ComposerPolicy) -> str:
        return policy.health_check_command

    @staticmethod
    def remediate_and_check_command(policy: ComposerPolicy) -> str:
        check = policy.health_check_command
        return (
            f"{check} || ({policy.remediation_command} && sleep {policy.settle_seconds}"
            f" && {check})"
        )

    def issue_step(self, context: ChainContext, name: str, command: str, next_step: str) -> Step:
        policy = context.policy
        params = SendCommandParams(
            region=policy.region,
            instance_ids=context.instance_ids,
            parameters=CommandList(commands=[command]),
        )
        return build_step(
            name,
            ActionKind.SEND_COMMAND,
            params,
            edges=[Edge(next_step_name=next_step)],
            connection_label=policy.connection_label,
        )

    def fetch_step(self, context: ChainContext, name: str, issue_step: str, next_step: str) -> Step:
        policy = context.policy
        params = GetCommandParams(
            region=policy.region,
            command_id=step_ref(issue_step, "command", "CommandId"),
        )
        return build_step(
            name,
            ActionKind.GET_COMMAND,
            params,
            edges=[Edge(next_step_name=next_step)],
            connection_label=policy.connection_label,
        )

    def decide_step(
        self,
        context: ChainContext,
        name: str,
        fetch_step: str,
        prior_step: Optional[str],
        success_step: str,
        retry_step: Optional[str],
        failure_step: str,
    ) -> Step:
        policy = context.policy
        spec = DecisionSpec(
            step_name=name,
            output_step=fetch_step,
            prior_step=prior_step,
            max_retries=policy.max_retries,
            healthy_marker=policy.healthy_marker,
            service_label=policy.service_label,
        )
        edges = [
            Edge(next_step_name=success_step, branch_name="success", condition=success_condition(name))
        ]
        if retry_step is not None:
            edges.append(
                Edge(next_step_name=retry_step, branch_name="retry", condition=retry_condition(name))
            )
        edges.append(
            Edge(next_step_name=failure_step, branch_name="failure", condition=failure_condition(name))
        )
        return synthesize_decide_step(spec, edges)

    def notify_step(self, context: ChainContext, name: str, decide_step: str, recovered: bool) -> Step:
        policy = context.policy

        def data(field: str) -> str:
            return step_ref(decide_step, "data", field)

        title = (
            f"**{policy.service_label} recovered**"
            if recovered
            else f"**{policy.service_label} did not recover**"
        )
        message = "\n\n".join(
            [
                title,
                f"**Instances:** {context.instance_label}",
                f"**Retry attempts:** {data('retryCount')}/{data('maxRetries')}",
                f"**Status:** {data('healthStatus')}",
                f"**Message:** {data('message')}",
                "**Workflow started:** {{ Workflow.startedAt }}",
            ]
        )
        params = TeamsMessageParams(
            channel_or_user=policy.notification.channel_or_user(),
            message=message,
            team_id=policy.notification.team_id,
            tenant_id=policy.notification.tenant_id,
        )
        return build_step(name, ActionKind.TEAMS_MESSAGE, params)


class UnrolledStrategy(RetryChainStrategy):
    """One suffixed copy of the chain per attempt; the result is acyclic."""

    strategy = LoopStrategy.UNROLLED

    def build(self, context: ChainContext) -> Tuple[List[Step], List[str]]:
        policy = context.policy
        naming = context.naming
        steps: List[Step] = []
        decide_steps: List[str] = []
        previous_decide: Optional[str] = None

        for n in range(policy.max_retries + 1):
            issue = naming.name(ChainNaming.ISSUE, n)
            fetch = naming.name(ChainNaming.FETCH, n)
            decide = naming.name(ChainNaming.DECIDE, n)
            success = naming.name(ChainNaming.SUCCESS, n)
            failure = naming.name(ChainNaming.FAILURE, n)
            retry = naming.name(ChainNaming.ISSUE, n + 1) if n < policy.max_retries else None

            # The anchor has just remediated, so the first attempt only checks.
            command = (
                self.check_command(policy) if n == 0 else self.remediate_and_check_command(policy)
            )
            steps.extend(
                [
                    self.issue_step(context, issue, command, fetch),
                    self.fetch_step(context, fetch, issue, decide),
                    self.decide_step(
                        context, decide, fetch, previous_decide, success, retry, failure
                    ),
                    self.notify_step(context, success, decide, recovered=True),
                    self.notify_step(context, failure, decide, recovered=False),
                ]
            )
            decide_steps.append(decide)
            previous_decide = decide
        return steps, decide_steps


class CyclicStrategy(RetryChainStrategy):
    """A single chain whose Decide step loops back to the command step."""

    strategy = LoopStrategy.CYCLIC

    def build(self, context: ChainContext) -> Tuple[List[Step], List[str]]:
        policy = context.policy
        naming = context.naming
        issue = naming.name(ChainNaming.ISSUE)
        fetch = naming.name(ChainNaming.FETCH)
        decide = naming.name(ChainNaming.DECIDE)
        success = naming.name(ChainNaming.SUCCESS)
        failure = naming.name(ChainNaming.FAILURE)
        retry = issue if policy.max_retries > 0 else None

        steps = [
            self.issue_step(context, issue, self.remediate_and_check_command(policy), fetch),
            self.fetch_step(context, fetch, issue, decide),
            # Counter is read from this step's own previous traversal.
            self.decide_step(context, decide, fetch, decide, success, retry, failure),
            self.notify_step(context, success, decide, recovered=True),
            self.notify_step(context, failure, decide, recovered=False),
        ]
        return steps, [decide]


def lay_out_chain(steps: List[Step], anchor: Step) -> List[Step]:
    """Stack command, fetch and Decide steps in a column below the anchor; each
    Decide step's success and failure notifications flank it."""

    x, y = anchor.bounds() or (0, 0)
    beside: Dict[str, Tuple[str, str]] = {}
    for step in steps:
        for edge in step.outbound_edges:
            if edge.branch_name in BRANCH_OFFSETS:
                beside[edge.next_step_name] = (step.name, edge.branch_name)

    placed: Dict[str, Tuple[float, float]] = {}
    row = 0
    for step in steps:
        flank = beside.get(step.name)
        if flank is not None and flank[0] in placed:
            source_x, source_y = placed[flank[0]]
            placed[step.name] = (source_x + BRANCH_OFFSETS[flank[1]], source_y)
        else:
            row += 1
            placed[step.name] = (x, y + row * ROW_HEIGHT)
    return [step.placed_at(*placed[step.name]) for step in steps]


class RetrySubgraphGenerator:
    def __init__(self) -> None:
        self.strategies: Dict[LoopStrategy, RetryChainStrategy] = {
            LoopStrategy.UNROLLED: UnrolledStrategy(),
            LoopStrategy.CYCLIC: CyclicStrategy(),
        }

    def generate(self, graph: WorkflowGraph, policy: ComposerPolicy) -> GeneratedChain:
        anchor = graph.require(policy.anchor_step_name, "anchor step")
        instance_ids, instance_label = self._instance_target(graph, policy, anchor)
        context = ChainContext(
            policy=policy,
            naming=ChainNaming(policy.step_prefix),
            instance_ids=instance_ids,
            instance_label=instance_label,
        )
        steps, decide_steps = self.strategies[policy.loop_strategy].build(context)
        names = [step.name for step in steps]
        if policy.anchor_step_name in names:
            raise CompositionError(
                f"Anchor step '{policy.anchor_step_name}' collides with a generated step name; "
                "set a step prefix."
            )

        steps = lay_out_chain(steps, anchor)
        entry_step = names[0]
        manifest = GenerationManifest(
            chain_id=policy.chain_id,
            anchor_step_name=policy.anchor_step_name,
            loop_strategy=policy.loop_strategy.value,
            max_retries=policy.max_retries,
            policy_fingerprint=policy.fingerprint(),
            entry_step=entry_step,
            step_names=names,
        )
        LOGGER.info(
            "Generated %s chain of %d step(s) after %s",
            policy.loop_strategy.value,
            len(steps),
            policy.anchor_step_name,
        )
        return GeneratedChain(
            anchor_step_name=policy.anchor_step_name,
            chain_id=policy.chain_id,
            strategy=policy.loop_strategy,
            entry_step=entry_step,
            steps=steps,
            decide_steps=decide_steps,
            manifest=manifest,
        )

    @staticmethod
    def _instance_target(
        graph: WorkflowGraph, policy: ComposerPolicy, anchor: Step
    ) -> Tuple[InstanceIds, str]:
        if policy.target_step_name:
            graph.require(policy.target_step_name, "remediation target step")
            reference = step_ref(policy.target_step_name, "data")
            return [reference], reference

        instance_ids = anchor.parameter("instanceIds")
        if not instance_ids:
            raise CompositionError(
                f"Anchor step '{anchor.name}' has no instanceIds parameter; "
                "set targetStepName to the step that lists the instances."
            )
        if isinstance(instance_ids, list):
            label = ", ".join(str(item) for item in instance_ids)
        else:
            label = str(instance_ids)
        return instance_ids, label
