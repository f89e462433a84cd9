"""
Workflow Graph Composer (WGC) orchestration entrypoint.
"""

from __future__ import annotations

import argparse
import json
import logging
import sys
from datetime import datetime, timezone
from typing import Any, Dict, List, Mapping, Optional, Sequence, Tuple, Union

from pydantic import BaseModel, Field, ValidationError

from wgc import settings
from wgc.compiler.composition_passes import Composer, CompositionState
from wgc.compiler.naming import rename_steps
from wgc.ir.errors import CompositionError, StructuralViolation
from wgc.ir.manifest import ChainNaming, GenerationManifest, ManifestStore
from wgc.ir.policy import ComposerPolicy, ErrorHandlingPolicy
from wgc.ir.spec_schema import WorkflowGraph
from wgc.ir.validators import ERROR_STEP_PREFIXES, Violation
from wgc.runtime.telemetry import TelemetryCollector
from wgc.services.workflow_document import WorkflowDocumentService

LOGGER = logging.getLogger(__name__)

PolicyInput = Union[ComposerPolicy, Mapping[str, Any]]
ErrorHandlingInput = Union[ErrorHandlingPolicy, Mapping[str, Any], None]
ManifestInput = Union[Mapping[str, GenerationManifest], Sequence[GenerationManifest], None]


class CompositionArtifact(BaseModel):
    workflow_name: str
    created_at: str
    graph: Dict[str, Any]
    manifests: List[GenerationManifest] = Field(default_factory=list)
    added: List[str] = Field(default_factory=list)
    replaced: List[str] = Field(default_factory=list)
    removed: List[str] = Field(default_factory=list)
    displaced: List[str] = Field(default_factory=list)
    pruned_edges: List[Dict[str, str]] = Field(default_factory=list)
    renamed: Dict[str, str] = Field(default_factory=dict)
    warnings: List[Violation] = Field(default_factory=list)
    max_depth: Optional[int] = None
    trace: List[str] = Field(default_factory=list)
    trace_id: Optional[str] = None

    def workflow_graph(self) -> WorkflowGraph:
        return WorkflowGraph.from_payload(self.graph)


def _as_policies(policies: Union[PolicyInput, Sequence[PolicyInput]]) -> List[ComposerPolicy]:
    items = [policies] if isinstance(policies, (ComposerPolicy, Mapping)) else list(policies)
    return [
        item if isinstance(item, ComposerPolicy) else ComposerPolicy.model_validate(item)
        for item in items
    ]


def _as_manifest_map(manifests: ManifestInput) -> Dict[str, GenerationManifest]:
    if manifests is None:
        return {}
    if isinstance(manifests, Mapping):
        return dict(manifests)
    return {item.chain_id: item for item in manifests}


class WorkflowComposer:
    def __init__(
        self,
        *,
        manifest_store: Optional[ManifestStore] = None,
        telemetry: Optional[TelemetryCollector] = None,
        composer: Optional[Composer] = None,
    ) -> None:
        self.manifest_store = manifest_store
        self.telemetry = telemetry or TelemetryCollector()
        self.composer = composer or Composer()

    def standardize(
        self, graph: WorkflowGraph, policies: Sequence[ComposerPolicy] = ()
    ) -> Tuple[WorkflowGraph, Dict[str, str]]:
        """Rename steps to ``Pascal_Snake``; generated chain steps keep their names."""

        patterns = [ChainNaming(policy.step_prefix).pattern() for policy in policies]
        if not patterns:
            patterns = [ChainNaming().pattern()]
        keep = [
            name
            for name in graph.step_names()
            if any(p.match(name) for p in patterns) or name.startswith(ERROR_STEP_PREFIXES)
        ]
        return rename_steps(graph, keep=keep)

    def compose(
        self,
        graph: WorkflowGraph,
        policies: Union[PolicyInput, Sequence[PolicyInput]],
        previous_manifests: ManifestInput = None,
        *,
        error_handling: ErrorHandlingInput = None,
        standardize_names: bool = False,
    ) -> CompositionArtifact:
        resolved = _as_policies(policies)
        handling = (
            ErrorHandlingPolicy.model_validate(error_handling)
            if isinstance(error_handling, Mapping)
            else error_handling
        )
        if not resolved and handling is None:
            raise CompositionError(
                "At least one composer policy or an error-handling policy is required."
            )
        workflow_name = resolved[0].workflow_name if resolved else handling.workflow_name

        working = graph.copy_graph()
        renamed: Dict[str, str] = {}
        if standardize_names:
            working, renamed = self.standardize(working, resolved)
            resolved = [self._follow_renames(policy, renamed) for policy in resolved]
            if handling is not None:
                handling = handling.model_copy(
                    update={
                        "critical_steps": [
                            renamed.get(name, name) for name in handling.critical_steps
                        ]
                    }
                )

        previous = _as_manifest_map(previous_manifests)
        if self.manifest_store is not None:
            chain_ids = [policy.chain_id for policy in resolved]
            if handling is not None:
                chain_ids.append(handling.chain_id)
            for chain_id in chain_ids:
                if chain_id not in previous:
                    stored = self.manifest_store.latest(workflow_name, chain_id)
                    if stored is not None:
                        previous[chain_id] = stored

        trace_id = self.telemetry.start_trace(workflow_name)
        self.telemetry.log(
            trace_id,
            "composition_started",
            policies=[policy.chain_id for policy in resolved],
            critical_steps=handling.critical_steps if handling else [],
            step_count=len(working.steps),
        )
        state = CompositionState(
            graph=working,
            policies=resolved,
            error_handling=handling,
            previous_manifests=previous,
        )
        try:
            state, trace = self.composer.run(state)
        except StructuralViolation as exc:
            self.telemetry.log(
                trace_id,
                "composition_rejected",
                violations=[item.model_dump() for item in exc.violations],
            )
            raise
        except CompositionError as exc:
            self.telemetry.log(trace_id, "composition_failed", error=str(exc))
            raise

        manifests = [chain.manifest for chain in state.chains]
        if state.error_handlers is not None:
            manifests.append(state.error_handlers.manifest)
        if self.manifest_store is not None:
            manifests = [
                self.manifest_store.register(workflow_name, manifest) for manifest in manifests
            ]

        artifact = CompositionArtifact(
            workflow_name=workflow_name,
            created_at=datetime.now(timezone.utc).isoformat(),
            graph=state.graph.to_payload(),
            manifests=manifests,
            added=[name for merge in state.merges for name in merge.added],
            replaced=[name for merge in state.merges for name in merge.replaced],
            removed=[name for merge in state.merges for name in merge.removed],
            displaced=[merge.displaced for merge in state.merges if merge.displaced],
            pruned_edges=[
                edge.model_dump() for merge in state.merges for edge in merge.pruned_edges
            ],
            renamed=renamed,
            warnings=list(state.report.warnings) if state.report else [],
            max_depth=state.report.max_depth if state.report else None,
            trace=trace,
            trace_id=trace_id,
        )
        self.telemetry.log(
            trace_id,
            "composition_completed",
            added=len(artifact.added),
            removed=len(artifact.removed),
            warnings=len(artifact.warnings),
        )
        return artifact

    def compose_payload(
        self,
        payload: Dict[str, Any],
        policy: Union[PolicyInput, Sequence[PolicyInput]],
        previous_manifests: ManifestInput = None,
        *,
        error_handling: ErrorHandlingInput = None,
    ) -> Dict[str, Any]:
        """Compose a platform document and return it with the merged graph in place."""

        graph = WorkflowGraph.from_payload(payload)
        artifact = self.compose(
            graph, policy, previous_manifests, error_handling=error_handling
        )
        return WorkflowDocumentService.with_graph(payload, artifact.workflow_graph())

    @staticmethod
    def _follow_renames(policy: ComposerPolicy, renamed: Mapping[str, str]) -> ComposerPolicy:
        update: Dict[str, Any] = {
            "anchor_step_name": renamed.get(policy.anchor_step_name, policy.anchor_step_name),
            "obsolete_steps": [renamed.get(name, name) for name in policy.obsolete_steps],
        }
        if policy.target_step_name:
            update["target_step_name"] = renamed.get(
                policy.target_step_name, policy.target_step_name
            )
        return policy.model_copy(update=update)


def _load_policies(args: argparse.Namespace, parser: argparse.ArgumentParser) -> List[ComposerPolicy]:
    overrides: Dict[str, Any] = {}
    if args.max_retries is not None:
        overrides["max_retries"] = args.max_retries
    if args.loop_strategy is not None:
        overrides["loop_strategy"] = args.loop_strategy
    if args.target_step is not None:
        overrides["target_step_name"] = args.target_step
    if args.step_prefix is not None:
        overrides["step_prefix"] = args.step_prefix

    if args.policy_file:
        with open(args.policy_file, encoding="utf-8") as handle:
            try:
                raw = json.load(handle)
            except json.JSONDecodeError as exc:
                raise CompositionError(
                    f"Policy file {args.policy_file} is not valid JSON: {exc}"
                ) from exc
        rows = raw if isinstance(raw, list) else [raw]
        return [
            ComposerPolicy.model_validate(
                {**ComposerPolicy.model_validate(row).model_dump(), **overrides}
            )
            for row in rows
        ]

    if args.critical_step and not (args.anchor or args.health_check or args.remediation):
        return []
    if not (args.anchor and args.health_check and args.remediation):
        parser.error("Provide --policy-file or all of --anchor, --health-check, --remediation.")
    return [
        ComposerPolicy.model_validate(
            {
                "anchor_step_name": args.anchor,
                "health_check_command": args.health_check,
                "remediation_command": args.remediation,
                **overrides,
            }
        )
    ]


def _error_handling_policy(args: argparse.Namespace) -> Optional[ErrorHandlingPolicy]:
    if not args.critical_step:
        return None
    values: Dict[str, Any] = {"critical_steps": args.critical_step}
    if args.error_email is not None:
        values["email_to"] = args.error_email
    if args.error_wiring is not None:
        values["wiring"] = args.error_wiring
    return ErrorHandlingPolicy.model_validate(values)


def main(argv: Optional[Sequence[str]] = None) -> int:
    parser = argparse.ArgumentParser(description="Workflow Graph Composer (WGC)")
    parser.add_argument("--workflow-file", type=str, required=True)
    parser.add_argument("--policy-file", type=str, default=None)
    parser.add_argument("--anchor", type=str, default=None)
    parser.add_argument("--health-check", type=str, default=None)
    parser.add_argument("--remediation", type=str, default=None)
    parser.add_argument("--max-retries", type=int, default=None)
    parser.add_argument("--loop-strategy", choices=["unrolled", "cyclic"], default=None)
    parser.add_argument("--target-step", type=str, default=None)
    parser.add_argument("--step-prefix", type=str, default=None)
    parser.add_argument("--critical-step", action="append", default=None)
    parser.add_argument("--error-email", type=str, default=None)
    parser.add_argument("--error-wiring", choices=["on_failure", "error_branch"], default=None)
    parser.add_argument("--standardize-names", action="store_true")
    parser.add_argument("--manifest-dir", type=str, default=None)
    parser.add_argument("--output-file", type=str, default=None)
    parser.add_argument("--log-level", type=str, default=None)
    args = parser.parse_args(argv)

    settings.configure_logging(args.log_level)
    documents = WorkflowDocumentService()
    try:
        policies = _load_policies(args, parser)
        document, graph = documents.load_graph(args.workflow_file)
        composer = WorkflowComposer(
            manifest_store=ManifestStore(args.manifest_dir) if args.manifest_dir else None
        )
        artifact = composer.compose(
            graph,
            policies,
            error_handling=_error_handling_policy(args),
            standardize_names=args.standardize_names,
        )
        if args.output_file:
            documents.write(
                args.output_file, documents.with_graph(document, artifact.workflow_graph())
            )
    except StructuralViolation as exc:
        print(json.dumps(exc.report.model_dump(), indent=2, sort_keys=True), file=sys.stderr)
        return 1
    except (CompositionError, ValidationError) as exc:
        print(str(exc), file=sys.stderr)
        return 1
    except json.JSONDecodeError as exc:
        print(f"Invalid JSON input: {exc}", file=sys.stderr)
        return 1
    except OSError as exc:
        print(f"Cannot access {exc.filename}: {exc.strerror or exc}", file=sys.stderr)
        return 1

    print(json.dumps(artifact.model_dump(mode="json"), indent=2, sort_keys=True))
    return 0


if __name__ == "__main__":
    sys.exit(main())
