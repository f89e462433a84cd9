"""
Error taxonomy for workflow graph composition.
"""

from __future__ import annotations

from typing import TYPE_CHECKING, Optional

if TYPE_CHECKING:  # pragma: no cover
    from wgc.ir.validators import ValidationReport


class CompositionError(ValueError):
    """Base class for every error raised while composing a workflow graph."""


class GraphDocumentError(CompositionError):
    """Raised when an input document does not have the expected graph shape."""


class MissingDependency(CompositionError):
    """An anchor or upstream step the composer depends on is absent."""

    def __init__(self, step_name: str, context: Optional[str] = None) -> None:
        self.step_name = step_name
        self.context = context
        message = f"Required step not found in graph: {step_name}"
        if context:
            message = f"{message} ({context})"
        super().__init__(message)


class DuplicatePolicyConflict(CompositionError):
    """Two generations produced the same step name with different content."""

    def __init__(self, step_name: str, detail: str = "") -> None:
        self.step_name = step_name
        self.detail = detail
        message = f"Conflicting generated definitions for step '{step_name}'"
        if detail:
            message = f"{message}: {detail}"
        super().__init__(message)


class StructuralViolation(CompositionError):
    """The merged graph breaks one or more structural invariants."""

    def __init__(self, report: "ValidationReport") -> None:
        self.report = report
        self.violations = list(report.violations)
        lines = [f"{item.code} [{item.step}]: {item.detail}" for item in self.violations]
        super().__init__(
            f"Graph failed validation with {len(self.violations)} violation(s):\n"
            + "\n".join(lines)
        )
