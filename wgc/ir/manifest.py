"""
Generation manifests: which step names belong to which generated chain.

A manifest replaces a hand-maintained list of "steps to remove". When a chain
is regenerated, every step owned by the previous manifest that the new chain
no longer produces is removed from the graph.
"""

from __future__ import annotations

import json
import logging
import os
import re
from datetime import datetime, timezone
from pathlib import Path
from typing import List, Optional, Pattern, Tuple

from pydantic import BaseModel, Field

from wgc import settings
from wgc.ir.spec_schema import WorkflowGraph

LOGGER = logging.getLogger(__name__)

SEMVER_PATTERN = re.compile(r"^(\d+)\.(\d+)\.(\d+)$")
INFERRED_VERSION = "0.0.0"


def parse_semver(version: str) -> Tuple[int, int, int]:
    match = SEMVER_PATTERN.match(version.strip())
    if not match:
        raise ValueError(f"Invalid semantic version: {version}")
    return int(match.group(1)), int(match.group(2)), int(match.group(3))


def bump_semver(version: str, part: str = "patch") -> str:
    major, minor, patch = parse_semver(version)
    if part == "major":
        return f"{major + 1}.0.0"
    if part == "minor":
        return f"{major}.{minor + 1}.0"
    if part == "patch":
        return f"{major}.{minor}.{patch + 1}"
    raise ValueError(f"Unknown version part '{part}'. Use major/minor/patch.")


def normalize_workflow_name(name: str) -> str:
    sanitized = re.sub(r"[^a-zA-Z0-9_-]+", "_", name.strip()).strip("_")
    return sanitized or "workflow"


class ChainNaming:
    """Names of generated steps. Unrolled chains suffix every step with ``_<n>``."""

    ISSUE = "IssueCommand"
    FETCH = "FetchResult"
    DECIDE = "Decide"
    SUCCESS = "Notify_Success"
    FAILURE = "Notify_Failure"
    KINDS = (ISSUE, FETCH, DECIDE, SUCCESS, FAILURE)

    def __init__(self, prefix: str = "") -> None:
        self.prefix = prefix

    def name(self, kind: str, iteration: Optional[int] = None) -> str:
        base = f"{self.prefix}{kind}"
        return base if iteration is None else f"{base}_{iteration}"

    def pattern(self) -> Pattern[str]:
        kinds = "|".join(re.escape(kind) for kind in self.KINDS)
        return re.compile(rf"^{re.escape(self.prefix)}({kinds})(?:_(\d+))?$")


RETRY_CHAIN = "retry_chain"
ERROR_HANDLING = "error_handling"


class GenerationManifest(BaseModel):
    chain_id: str
    kind: str = RETRY_CHAIN
    anchor_step_name: str = ""
    loop_strategy: str = ""
    max_retries: int = -1
    policy_fingerprint: str
    entry_step: str = ""
    step_names: List[str] = Field(default_factory=list)
    covered_steps: List[str] = Field(default_factory=list)
    version: str = "1.0.0"
    created_at: str = Field(default_factory=lambda: datetime.now(timezone.utc).isoformat())

    def same_generation(self, other: "GenerationManifest") -> bool:
        return (
            self.chain_id == other.chain_id
            and self.policy_fingerprint == other.policy_fingerprint
            and self.step_names == other.step_names
        )


def infer_manifest(
    graph: WorkflowGraph, *, chain_id: str, anchor_step_name: str, step_prefix: str = ""
) -> Optional[GenerationManifest]:
    """Rebuild a manifest from step names when no recorded manifest is available."""

    pattern = ChainNaming(step_prefix).pattern()
    names: List[str] = []
    iterations: List[int] = []
    cyclic = False
    for step in graph.steps:
        match = pattern.match(step.name)
        if not match:
            continue
        names.append(step.name)
        if match.group(2) is None:
            cyclic = True
        else:
            iterations.append(int(match.group(2)))
    if not names:
        return None

    entry_step = names[0]
    anchor = graph.get(anchor_step_name)
    main_edge = anchor.main_edge() if anchor is not None else None
    if main_edge is not None and main_edge.next_step_name in names:
        entry_step = main_edge.next_step_name

    LOGGER.info("Inferred %d generated step(s) for chain %s", len(names), chain_id)
    return GenerationManifest(
        chain_id=chain_id,
        anchor_step_name=anchor_step_name,
        loop_strategy="cyclic" if cyclic and not iterations else "unrolled",
        max_retries=max(iterations) if iterations else -1,
        policy_fingerprint="",
        entry_step=entry_step,
        step_names=names,
        version=INFERRED_VERSION,
    )


class ManifestStore:
    """
    JSON-backed manifest registry.

    Stored at:
      <WGC_ROOT>/manifests/<workflow_name>.json
    """

    def __init__(self, root_dir: Optional[str] = None) -> None:
        self.root_dir = Path(root_dir or os.path.join(settings.wgc_root(), "manifests"))
        self.root_dir.mkdir(parents=True, exist_ok=True)

    def _registry_path(self, workflow_name: str) -> Path:
        safe_name = normalize_workflow_name(workflow_name)
        return self.root_dir / f"{safe_name}.json"

    def _read_all(self, workflow_name: str) -> List[GenerationManifest]:
        path = self._registry_path(workflow_name)
        if not path.exists():
            return []
        raw = json.loads(path.read_text(encoding="utf-8"))
        return [GenerationManifest(**row) for row in raw]

    def list_versions(self, workflow_name: str, chain_id: str) -> List[GenerationManifest]:
        records = [item for item in self._read_all(workflow_name) if item.chain_id == chain_id]
        return sorted(records, key=lambda item: parse_semver(item.version))

    def latest(self, workflow_name: str, chain_id: str) -> Optional[GenerationManifest]:
        records = self.list_versions(workflow_name, chain_id)
        if not records:
            return None
        return records[-1]

    def next_version(self, workflow_name: str, chain_id: str, part: str = "patch") -> str:
        latest = self.latest(workflow_name, chain_id)
        if latest is None:
            return "1.0.0"
        return bump_semver(latest.version, part=part)

    def register(
        self,
        workflow_name: str,
        manifest: GenerationManifest,
        *,
        bump_part: str = "patch",
    ) -> GenerationManifest:
        latest = self.latest(workflow_name, manifest.chain_id)
        if latest is not None and latest.same_generation(manifest):
            return latest

        record = manifest.model_copy(
            update={
                "version": self.next_version(workflow_name, manifest.chain_id, part=bump_part),
                "created_at": datetime.now(timezone.utc).isoformat(),
            }
        )
        records = self._read_all(workflow_name)
        records.append(record)
        self._registry_path(workflow_name).write_text(
            json.dumps([row.model_dump() for row in records], indent=2, sort_keys=True),
            encoding="utf-8",
        )
        LOGGER.info(
            "Registered manifest %s@%s for workflow %s",
            record.chain_id,
            record.version,
            workflow_name,
        )
        return record

    def rollback_to(self, workflow_name: str, chain_id: str, version: str) -> GenerationManifest:
        for item in self.list_versions(workflow_name, chain_id):
            if item.version == version:
                return item
        raise ValueError(
            f"Version '{version}' not found for chain '{chain_id}' in workflow '{workflow_name}'."
        )
