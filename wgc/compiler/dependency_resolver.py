"""
Dependency resolution utilities for workflow step-graph analysis.
"""

from __future__ import annotations

from collections import deque
from typing import Dict, Iterable, Iterator, List, Optional, Set, Tuple

from wgc.ir.spec_schema import WorkflowGraph


class DependencyResolver:
    def adjacency(self, graph: WorkflowGraph) -> Dict[str, List[str]]:
        """Edge targets per step, in edge order, restricted to steps that exist."""

        known = set(graph.step_names())
        mapping: Dict[str, List[str]] = {}
        for step in graph.steps:
            targets = mapping.setdefault(step.name, [])
            for target in step.targets():
                if target in known and target not in targets:
                    targets.append(target)
        return mapping

    def producers(self, graph: WorkflowGraph) -> Dict[str, Set[str]]:
        """Distinct source steps per edge target, dangling targets included."""

        reverse: Dict[str, Set[str]] = {name: set() for name in graph.step_names()}
        for step in graph.steps:
            for target in step.targets():
                reverse.setdefault(target, set()).add(step.name)
        return reverse

    def roots(self, graph: WorkflowGraph) -> List[str]:
        producers = self.producers(graph)
        return [name for name in graph.step_names() if not producers.get(name)]

    def sinks(self, graph: WorkflowGraph) -> List[str]:
        return [step.name for step in graph.steps if step.is_terminal()]

    def reachable(self, graph: WorkflowGraph, start: str) -> Set[str]:
        adjacency = self.adjacency(graph)
        if start not in adjacency:
            return set()
        seen: Set[str] = {start}
        queue = deque([start])
        while queue:
            current = queue.popleft()
            for nxt in adjacency[current]:
                if nxt not in seen:
                    seen.add(nxt)
                    queue.append(nxt)
        return seen

    def reaching_terminal(self, graph: WorkflowGraph) -> Set[str]:
        """Steps from which at least one terminal step can be reached."""

        reverse: Dict[str, Set[str]] = {name: set() for name in graph.step_names()}
        for source, targets in self.adjacency(graph).items():
            for target in targets:
                reverse[target].add(source)
        found: Set[str] = set(self.sinks(graph))
        queue = deque(found)
        while queue:
            current = queue.popleft()
            for parent in reverse.get(current, set()):
                if parent not in found:
                    found.add(parent)
                    queue.append(parent)
        return found

    def strongly_connected_components(self, graph: WorkflowGraph) -> List[List[str]]:
        """Tarjan's algorithm, iterative so deep chains cannot hit the recursion limit."""

        adjacency = self.adjacency(graph)
        index_of: Dict[str, int] = {}
        lowlink: Dict[str, int] = {}
        on_stack: Set[str] = set()
        stack: List[str] = []
        components: List[List[str]] = []
        counter = 0

        for root in adjacency:
            if root in index_of:
                continue
            index_of[root] = lowlink[root] = counter
            counter += 1
            stack.append(root)
            on_stack.add(root)
            work: List[Tuple[str, Iterator[str]]] = [(root, iter(adjacency[root]))]
            while work:
                node, children = work[-1]
                advanced = False
                for child in children:
                    if child not in index_of:
                        index_of[child] = lowlink[child] = counter
                        counter += 1
                        stack.append(child)
                        on_stack.add(child)
                        work.append((child, iter(adjacency[child])))
                        advanced = True
                        break
                    if child in on_stack:
                        lowlink[node] = min(lowlink[node], index_of[child])
                if advanced:
                    continue
                work.pop()
                if work:
                    parent = work[-1][0]
                    lowlink[parent] = min(lowlink[parent], lowlink[node])
                if lowlink[node] == index_of[node]:
                    component: List[str] = []
                    while True:
                        member = stack.pop()
                        on_stack.discard(member)
                        component.append(member)
                        if member == node:
                            break
                    components.append(component)
        return components

    def cyclic_components(self, graph: WorkflowGraph) -> List[List[str]]:
        adjacency = self.adjacency(graph)
        return [
            component
            for component in self.strongly_connected_components(graph)
            if len(component) > 1 or component[0] in adjacency[component[0]]
        ]

    def topological_order(
        self, graph: WorkflowGraph, nodes: Optional[Iterable[str]] = None
    ) -> List[str]:
        adjacency = self.adjacency(graph)
        selected = set(nodes) if nodes is not None else set(adjacency)
        in_degree: Dict[str, int] = {node: 0 for node in selected}
        for source in selected:
            for target in adjacency[source]:
                if target in selected:
                    in_degree[target] += 1

        queue = deque(sorted(node for node, degree in in_degree.items() if degree == 0))
        order: List[str] = []
        while queue:
            node = queue.popleft()
            order.append(node)
            for target in sorted(adjacency[node]):
                if target not in selected:
                    continue
                in_degree[target] -= 1
                if in_degree[target] == 0:
                    queue.append(target)
        if len(order) != len(selected):
            raise ValueError("Workflow graph contains a cycle and cannot be sorted.")
        return order

    def longest_path(self, graph: WorkflowGraph, start: str) -> int:
        """Maximum number of hops from ``start`` to any terminal on an acyclic reach."""

        adjacency = self.adjacency(graph)
        reach = self.reachable(graph, start)
        order = self.topological_order(graph, reach)
        depth: Dict[str, int] = {node: 0 for node in reach}
        for node in reversed(order):
            for target in adjacency[node]:
                depth[node] = max(depth[node], depth[target] + 1)
        return depth.get(start, 0)
