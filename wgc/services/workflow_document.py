"""
Workflow document I/O. A JSON file stands in for the automation platform's API.
"""

from __future__ import annotations

import copy
import json
import logging
from pathlib import Path
from typing import Any, Dict, Tuple

from wgc.ir.errors import GraphDocumentError
from wgc.ir.spec_schema import WorkflowGraph, locate_spec

LOGGER = logging.getLogger(__name__)


class WorkflowDocumentService:
    @staticmethod
    def load(path: str) -> Dict[str, Any]:
        try:
            raw = json.loads(Path(path).read_text(encoding="utf-8"))
        except json.JSONDecodeError as exc:
            raise GraphDocumentError(f"Workflow file {path} is not valid JSON: {exc}") from exc
        locate_spec(raw)
        LOGGER.info("Loaded workflow document %s", path)
        return raw

    @staticmethod
    def graph_of(document: Dict[str, Any]) -> WorkflowGraph:
        return WorkflowGraph.from_payload(document)

    @staticmethod
    def with_graph(document: Dict[str, Any], graph: WorkflowGraph) -> Dict[str, Any]:
        """Return a copy of ``document`` whose step graph is replaced, envelope kept."""

        _, spec_path = locate_spec(document)
        updated = copy.deepcopy(document)
        if not spec_path:
            return graph.to_payload()
        node = updated
        for key in spec_path[:-1]:
            node = node[key]
        node[spec_path[-1]] = graph.to_payload()
        return updated

    def load_graph(self, path: str) -> Tuple[Dict[str, Any], WorkflowGraph]:
        document = self.load(path)
        return document, self.graph_of(document)

    @staticmethod
    def write(path: str, document: Dict[str, Any]) -> None:
        target = Path(path)
        target.parent.mkdir(parents=True, exist_ok=True)
        target.write_text(json.dumps(document, indent=2, sort_keys=True), encoding="utf-8")
        LOGGER.info("Wrote workflow document %s", path)
