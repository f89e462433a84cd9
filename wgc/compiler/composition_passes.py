"""
Composition pass pipeline: generate chains, merge them, validate the result.
"""

from __future__ import annotations

import logging
from abc import ABC, abstractmethod
from typing import Dict, List, Optional, Tuple

from pydantic import BaseModel, Field

from wgc.compiler.error_handling import (
    ErrorHandlers,
    ErrorHandlingGenerator,
    infer_error_manifest,
)
from wgc.compiler.graph_merger import GraphMerger, MergeResult
from wgc.compiler.retry_generator import GeneratedChain, RetrySubgraphGenerator
from wgc.ir.errors import CompositionError, StructuralViolation
from wgc.ir.manifest import GenerationManifest, infer_manifest
from wgc.ir.policy import ComposerPolicy, ErrorHandlingPolicy, LoopStrategy
from wgc.ir.spec_schema import WorkflowGraph
from wgc.ir.validators import InvariantValidator, ValidationReport

LOGGER = logging.getLogger(__name__)


class CompositionState(BaseModel):
    graph: WorkflowGraph
    policies: List[ComposerPolicy] = Field(default_factory=list)
    error_handling: Optional[ErrorHandlingPolicy] = None
    previous_manifests: Dict[str, GenerationManifest] = Field(default_factory=dict)
    chains: List[GeneratedChain] = Field(default_factory=list)
    merges: List[MergeResult] = Field(default_factory=list)
    error_handlers: Optional[ErrorHandlers] = None
    report: Optional[ValidationReport] = None


class CompositionPass(ABC):
    name = "base"

    def applies(self, state: CompositionState) -> bool:
        return True

    @abstractmethod
    def apply(self, state: CompositionState) -> CompositionState:
        raise NotImplementedError


class GenerateChainsPass(CompositionPass):
    name = "generate_chains"

    def __init__(self) -> None:
        self.generator = RetrySubgraphGenerator()
        self.merger = GraphMerger()

    def applies(self, state: CompositionState) -> bool:
        return bool(state.policies)

    def apply(self, state: CompositionState) -> CompositionState:
        chains = [self.generator.generate(state.graph, policy) for policy in state.policies]
        state.chains = self.merger.combine(chains)
        return state


class MergeChainsPass(CompositionPass):
    name = "merge_chains"

    def __init__(self) -> None:
        self.merger = GraphMerger()

    def applies(self, state: CompositionState) -> bool:
        return bool(state.chains)

    def apply(self, state: CompositionState) -> CompositionState:
        graph = state.graph
        merges: List[MergeResult] = []
        for chain, policy in zip(state.chains, state.policies):
            previous = state.previous_manifests.get(chain.chain_id)
            if previous is None:
                previous = infer_manifest(
                    graph,
                    chain_id=chain.chain_id,
                    anchor_step_name=chain.anchor_step_name,
                    step_prefix=policy.step_prefix,
                )
            result = self.merger.merge(graph, chain, previous, policy.obsolete_steps)
            merges.append(result)
            graph = result.graph
        state.graph = graph
        state.merges = merges
        return state


class ErrorHandlingPass(CompositionPass):
    name = "error_handling"

    def __init__(self) -> None:
        self.generator = ErrorHandlingGenerator()
        self.merger = GraphMerger()

    def applies(self, state: CompositionState) -> bool:
        return state.error_handling is not None

    def apply(self, state: CompositionState) -> CompositionState:
        policy = state.error_handling
        handlers = self.generator.generate(state.graph, policy)
        previous = state.previous_manifests.get(handlers.chain_id)
        if previous is None:
            previous = infer_error_manifest(state.graph, handlers.chain_id)
        result = self.merger.attach_error_handlers(state.graph, handlers, previous)
        state.graph = result.graph
        state.merges = state.merges + [result]
        state.error_handlers = handlers
        return state


class ValidatePass(CompositionPass):
    name = "validate"

    def apply(self, state: CompositionState) -> CompositionState:
        cyclic = any(policy.loop_strategy == LoopStrategy.CYCLIC for policy in state.policies)
        validator = InvariantValidator(allow_guarded_back_edges=cyclic)
        anchors = [policy.anchor_step_name for policy in state.policies]
        report = validator.validate(state.graph, anchors or None)
        state.report = report
        if not report.ok:
            raise StructuralViolation(report)
        return state


class Composer:
    def __init__(self, passes: Optional[List[CompositionPass]] = None) -> None:
        self.passes = passes or [
            GenerateChainsPass(),
            MergeChainsPass(),
            ErrorHandlingPass(),
            ValidatePass(),
        ]

    def run(self, state: CompositionState) -> Tuple[CompositionState, List[str]]:
        current = state
        trace: List[str] = []
        for composition_pass in self.passes:
            if not composition_pass.applies(current):
                continue
            try:
                current = composition_pass.apply(current)
                trace.append(composition_pass.name)
            except CompositionError:
                raise
            except Exception as exc:
                raise RuntimeError(
                    f"Composition pass '{composition_pass.name}' failed: {exc}"
                ) from exc
            LOGGER.debug("Composition pass %s complete", composition_pass.name)
        return current, trace
