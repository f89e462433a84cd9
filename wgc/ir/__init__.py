from wgc.ir.actions import ActionKind, build_step
from wgc.ir.errors import (
    CompositionError,
    DuplicatePolicyConflict,
    GraphDocumentError,
    MissingDependency,
    StructuralViolation,
)
from wgc.ir.manifest import GenerationManifest, ManifestStore
from wgc.ir.policy import (
    ComposerPolicy,
    ErrorHandlingPolicy,
    ErrorWiring,
    LoopStrategy,
    RetryState,
)
from wgc.ir.spec_schema import Edge, Parameter, Step, WorkflowGraph

__all__ = [
    "ActionKind",
    "build_step",
    "CompositionError",
    "DuplicatePolicyConflict",
    "GraphDocumentError",
    "MissingDependency",
    "StructuralViolation",
    "GenerationManifest",
    "ManifestStore",
    "ComposerPolicy",
    "ErrorHandlingPolicy",
    "ErrorWiring",
    "LoopStrategy",
    "RetryState",
    "Edge",
    "Parameter",
    "Step",
    "WorkflowGraph",
]
