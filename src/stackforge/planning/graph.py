#!/usr/bin/env python3
"""
STACKFORGE GRAPH BUILDER - The Cartographer
-------------------------------------------
Discovers references between instances and builds the directed acyclic
graph that is the single source of truth for apply ordering.

Edge rules:
1. `type.name[i]...`     -> edge to instance i only (i evaluated per instance)
2. `type.name...`        -> edge to every instance of the declaration
3. `type.name[*]...`     -> same as 2 (splat semantics)
4. depends_on: [addr]    -> same as 2

Cycles are found with an iterative depth-first search that keeps the
current path on a stack; any back-edge is reported with the whole chain.

Author: Stackforge Team
Date: 2026-10-18
"""

import logging
from dataclasses import dataclass, field
from typing import Dict, Iterable, List, Mapping, Optional, Set, Tuple

from stackforge.core.errors import ConfigurationError, CycleError, NotReady
from stackforge.core.models import CommandBatch, FileTransfer, Instance
from stackforge.expressions import ast
from stackforge.expressions.evaluator import evaluate
from stackforge.expressions.functions import is_whole, type_name
from stackforge.planning.references import discover

logger = logging.getLogger("stackforge.graph")


def _order_key(instance: Instance) -> Tuple[str, int]:
    return instance.declaration.address, -1 if instance.index is None else instance.index


@dataclass
class DependencyGraph:
    """
    Instances plus `dependencies[a] = {b, ...}` meaning "a reads b, so b
    is applied first". Read-only once built.
    """
    nodes: Dict[str, Instance] = field(default_factory=dict)
    dependencies: Dict[str, Set[str]] = field(default_factory=dict)
    dependents: Dict[str, Set[str]] = field(default_factory=dict)
    # (from, to) -> where the reference was found, for reporting
    reasons: Dict[Tuple[str, str], str] = field(default_factory=dict)

    def add_node(self, instance: Instance) -> None:
        self.nodes[instance.address] = instance
        self.dependencies.setdefault(instance.address, set())
        self.dependents.setdefault(instance.address, set())

    def add_edge(self, source: str, target: str, reason: str) -> None:
        self.dependencies[source].add(target)
        self.dependents[target].add(source)
        self.reasons.setdefault((source, target), reason)

    @property
    def edges(self) -> List[Tuple[str, str]]:
        return sorted((s, t) for s, targets in self.dependencies.items() for t in targets)

    def _sorted(self, addresses: Iterable[str]) -> List[str]:
        return sorted(addresses, key=lambda a: _order_key(self.nodes[a]))

    def roots(self) -> List[str]:
        return self._sorted(a for a, deps in self.dependencies.items() if not deps)

    def topological_order(self) -> List[str]:
        """Kahn's algorithm; ready nodes are taken in (declaration, index) order."""
        remaining = {a: len(deps) for a, deps in self.dependencies.items()}
        ready = self.roots()
        order: List[str] = []
        while ready:
            current = ready.pop(0)
            order.append(current)
            released = []
            for dependent in self.dependents[current]:
                remaining[dependent] -= 1
                if remaining[dependent] == 0:
                    released.append(dependent)
            ready = self._sorted(ready + released)
        return order

    def levels(self) -> Dict[str, int]:
        """1-based depth: roots are level 1, everything else is 1 + deepest dependency."""
        depth: Dict[str, int] = {}
        for address in self.topological_order():
            deps = self.dependencies[address]
            depth[address] = 1 + max((depth[d] for d in deps), default=0)
        return depth

    def depth(self) -> int:
        return max(self.levels().values(), default=0)

    def transitive_dependencies(self, addresses: Iterable[str]) -> Set[str]:
        seen: Set[str] = set()
        stack = list(addresses)
        while stack:
            current = stack.pop()
            for dep in self.dependencies.get(current, ()):
                if dep not in seen:
                    seen.add(dep)
                    stack.append(dep)
        return seen

    def transitive_dependents(self, address: str) -> Set[str]:
        seen: Set[str] = set()
        stack = [address]
        while stack:
            current = stack.pop()
            for dependent in self.dependents.get(current, ()):
                if dependent not in seen:
                    seen.add(dependent)
                    stack.append(dependent)
        return seen


class GraphBuilder:
    """build(instances) -> DependencyGraph, or CycleError naming the loop."""

    def __init__(self, locals: Optional[Mapping[str, ast.Expr]] = None):
        self.locals = locals or {}

    def build(self, instances: List[Instance]) -> DependencyGraph:
        graph = DependencyGraph()
        by_declaration: Dict[str, List[Instance]] = {}
        for instance in sorted(instances, key=_order_key):
            graph.add_node(instance)
            by_declaration.setdefault(instance.declaration.address, []).append(instance)

        for instance in graph.nodes.values():
            for path, expr in self._expressions(instance):
                for reference in discover(expr, self.locals):
                    targets = self._targets(instance, reference, by_declaration, path)
                    for target in targets:
                        graph.add_edge(instance.address, target.address, path)
            for dependency in instance.declaration.depends_on:
                for target in by_declaration.get(dependency, []):
                    graph.add_edge(instance.address, target.address,
                                   f"{instance.declaration.address}.depends_on")

        self._check_acyclic(graph)
        logger.info(f"Built graph: {len(graph.nodes)} instances, {len(graph.edges)} edges")
        return graph

    def _expressions(self, instance: Instance) -> Iterable[Tuple[str, ast.Expr]]:
        declaration = instance.declaration
        base = declaration.address
        for key, expr in declaration.attributes.items():
            yield f"{base}.attributes.{key}", expr
        for key, expr in declaration.connection.items():
            yield f"{base}.connection.{key}", expr
        for i, action in enumerate(declaration.bootstrap):
            if isinstance(action, FileTransfer):
                yield f"{base}.bootstrap[{i}]", action.source
                yield f"{base}.bootstrap[{i}]", action.destination
            elif isinstance(action, CommandBatch):
                for command in action.commands:
                    yield f"{base}.bootstrap[{i}]", command

    def _targets(self, instance: Instance, reference, by_declaration: Dict[str, List[Instance]],
                 path: str) -> List[Instance]:
        candidates = by_declaration.get(reference.address, [])
        if reference.fans_out:
            # Cardinality 0 makes this an empty collection, not an error
            return candidates
        if candidates and not candidates[0].declaration.has_count:
            return candidates
        try:
            key = evaluate(reference.index, instance.context)
        except NotReady:
            if not candidates:
                raise ConfigurationError(f"cannot index {reference.address}: it has 0 instances", path)
            # Index computed from resource state: depend on every candidate
            return candidates
        except ConfigurationError as e:
            raise e.at(path)
        if not is_whole(key):
            raise ConfigurationError(f"index into {reference.address} must be a whole number, "
                                     f"got {type_name(key)}", path)
        position = int(key)
        if not 0 <= position < len(candidates):
            raise ConfigurationError(f"index {position} out of range for {reference.address} "
                                     f"with {len(candidates)} instance(s)", path)
        return [candidates[position]]

    def _check_acyclic(self, graph: DependencyGraph) -> None:
        WHITE, GREY, BLACK = 0, 1, 2
        color = {address: WHITE for address in graph.nodes}
        for start in graph.nodes:
            if color[start] != WHITE:
                continue
            path: List[str] = [start]
            iterators = [iter(graph._sorted(graph.dependencies[start]))]
            color[start] = GREY
            while iterators:
                advanced = False
                for target in iterators[-1]:
                    if color[target] == GREY:
                        cycle = path[path.index(target):] + [target]
                        raise CycleError(cycle, graph.reasons.get((path[-1], target)))
                    if color[target] == WHITE:
                        color[target] = GREY
                        path.append(target)
                        iterators.append(iter(graph._sorted(graph.dependencies[target])))
                        advanced = True
                        break
                if not advanced:
                    color[path.pop()] = BLACK
                    iterators.pop()
