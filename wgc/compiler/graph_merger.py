"""
Merge generated chains into an existing workflow graph.
"""

from __future__ import annotations

import logging
from typing import Dict, Iterable, List, Optional, Sequence, Set

from pydantic import BaseModel, Field

from wgc.compiler.error_handling import ERROR_BRANCH, ErrorHandlers, error_condition
from wgc.compiler.retry_generator import GeneratedChain
from wgc.ir.errors import DuplicatePolicyConflict
from wgc.ir.manifest import GenerationManifest
from wgc.ir.policy import ErrorWiring
from wgc.ir.spec_schema import Edge, Step, WorkflowGraph

LOGGER = logging.getLogger(__name__)


class PrunedEdge(BaseModel):
    source: str
    target: str
    branch_name: str


class MergeResult(BaseModel):
    graph: WorkflowGraph
    added: List[str] = Field(default_factory=list)
    replaced: List[str] = Field(default_factory=list)
    removed: List[str] = Field(default_factory=list)
    displaced: Optional[str] = None
    pruned_edges: List[PrunedEdge] = Field(default_factory=list)


class GraphMerger:
    def combine(self, chains: Sequence[GeneratedChain]) -> List[GeneratedChain]:
        """Reject chains that disagree about a step; return them in merge order."""

        seen: Dict[str, dict] = {}
        owner: Dict[str, str] = {}
        anchors: Dict[str, str] = {}
        for chain in chains:
            previous_chain = anchors.get(chain.anchor_step_name)
            if previous_chain is not None and previous_chain != chain.chain_id:
                raise DuplicatePolicyConflict(
                    chain.anchor_step_name,
                    f"anchored by both '{previous_chain}' and '{chain.chain_id}'",
                )
            anchors[chain.anchor_step_name] = chain.chain_id
            for step in chain.steps:
                payload = step.to_payload()
                if step.name in seen and seen[step.name] != payload:
                    raise DuplicatePolicyConflict(
                        step.name,
                        f"generated by '{owner[step.name]}' and '{chain.chain_id}'",
                    )
                seen[step.name] = payload
                owner[step.name] = chain.chain_id
        return list(chains)

    def merge(
        self,
        graph: WorkflowGraph,
        chain: GeneratedChain,
        previous: Optional[GenerationManifest] = None,
        obsolete: Iterable[str] = (),
    ) -> MergeResult:
        merged = graph.copy_graph()
        generated: Set[str] = set(chain.step_names())

        stale: Set[str] = set(obsolete)
        if previous is not None:
            stale.update(name for name in previous.step_names if name not in generated)
        stale -= generated
        stale.discard(chain.anchor_step_name)

        removed = list(dict.fromkeys(name for name in merged.step_names() if name in stale))
        merged.steps = [step for step in merged.steps if step.name not in stale]

        anchor = merged.require(chain.anchor_step_name, "anchor step")
        edges = [edge.model_copy() for edge in anchor.outbound_edges]
        displaced: Optional[str] = None
        main_index = next((i for i, edge in enumerate(edges) if edge.is_main()), None)
        if main_index is None:
            edges.append(Edge(next_step_name=chain.entry_step))
        elif edges[main_index].next_step_name != chain.entry_step:
            former = edges[main_index].next_step_name
            if former not in stale and former not in generated:
                displaced = former
            edges[main_index] = edges[main_index].model_copy(
                update={"next_step_name": chain.entry_step}
            )
        merged.upsert(anchor.with_edges(edges))

        added: List[str] = []
        replaced: List[str] = []
        for step in chain.steps:
            if merged.get(step.name) is None:
                added.append(step.name)
            else:
                replaced.append(step.name)
            merged.upsert(step)

        pruned = self._prune(merged, removed)

        if displaced:
            LOGGER.warning(
                "Step %s no longer follows %s and may be unreachable",
                displaced,
                chain.anchor_step_name,
            )
        LOGGER.info(
            "Merged chain %s: %d added, %d replaced, %d removed",
            chain.chain_id,
            len(added),
            len(replaced),
            len(removed),
        )
        return MergeResult(
            graph=merged,
            added=added,
            replaced=replaced,
            removed=removed,
            displaced=displaced,
            pruned_edges=pruned,
        )

    def attach_error_handlers(
        self,
        graph: WorkflowGraph,
        handlers: ErrorHandlers,
        previous: Optional[GenerationManifest] = None,
    ) -> MergeResult:
        """Add or replace handler steps by name and wire each critical step to its handler."""

        merged = graph.copy_graph()
        generated: Set[str] = set(handlers.step_names())

        stale: Set[str] = set()
        if previous is not None:
            stale.update(name for name in previous.step_names if name not in generated)
        stale -= set(handlers.critical_steps)

        removed = list(dict.fromkeys(name for name in merged.step_names() if name in stale))
        merged.steps = [step for step in merged.steps if step.name not in stale]

        added: List[str] = []
        replaced: List[str] = []
        for step in handlers.steps:
            if merged.get(step.name) is None:
                added.append(step.name)
            else:
                replaced.append(step.name)
            merged.upsert(step)

        for critical, notification in handlers.handlers.items():
            step = merged.require(critical, "critical step")
            merged.upsert(self._wire_handler(step, notification, handlers.wiring))

        pruned = self._prune(merged, removed)
        LOGGER.info(
            "Attached error handlers to %d step(s): %d added, %d replaced, %d removed",
            len(handlers.handlers),
            len(added),
            len(replaced),
            len(removed),
        )
        return MergeResult(
            graph=merged,
            added=added,
            replaced=replaced,
            removed=removed,
            pruned_edges=pruned,
        )

    @staticmethod
    def _wire_handler(step: Step, notification: str, wiring: ErrorWiring) -> Step:
        edges = [edge for edge in step.outbound_edges if edge.next_step_name != notification]
        if wiring == ErrorWiring.ERROR_BRANCH:
            edges.append(
                Edge(
                    next_step_name=notification,
                    branch_name=ERROR_BRANCH,
                    condition=error_condition(step.name),
                )
            )
            wired = step.with_edges(edges)
            if wired.on_failure_step() == notification:
                wired = wired.with_on_failure(None)
            return wired

        current = step.on_failure_step()
        if current is not None and current != notification:
            LOGGER.warning("Replacing onFailure handler %s of step %s", current, step.name)
        return step.with_edges(edges).with_on_failure(notification)

    @staticmethod
    def _prune(graph: WorkflowGraph, removed: Sequence[str]) -> List[PrunedEdge]:
        """Drop edges and ``onFailure`` handlers that point at removed steps."""

        pruned: List[PrunedEdge] = []
        removed_set = set(removed)
        if not removed_set:
            return pruned
        for step in list(graph.steps):
            kept = [edge for edge in step.outbound_edges if edge.next_step_name not in removed_set]
            for edge in step.outbound_edges:
                if edge.next_step_name in removed_set:
                    pruned.append(
                        PrunedEdge(
                            source=step.name,
                            target=edge.next_step_name,
                            branch_name=edge.branch_name,
                        )
                    )
            updated = step.with_edges(kept) if len(kept) != len(step.outbound_edges) else step
            handler = step.on_failure_step()
            if handler in removed_set:
                pruned.append(PrunedEdge(source=step.name, target=handler, branch_name="onFailure"))
                updated = updated.with_on_failure(None)
            if updated is not step:
                graph.upsert(updated)
        for edge in pruned:
            LOGGER.warning("Pruned edge %s -> %s (target removed)", edge.source, edge.target)
        return pruned
