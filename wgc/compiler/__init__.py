from wgc.compiler.decision import DecisionSpec, decide, extract_decision_spec, synthesize_decide_step
from wgc.compiler.dependency_resolver import DependencyResolver
from wgc.compiler.script_codegen import render_decision_script

__all__ = [
    "DecisionSpec",
    "DependencyResolver",
    "decide",
    "extract_decision_spec",
    "render_decision_script",
    "synthesize_decide_step",
]
