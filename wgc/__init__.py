"""Workflow Graph Composer package."""

from wgc.main import CompositionArtifact, WorkflowComposer

__all__ = ["WorkflowComposer", "CompositionArtifact"]
