"""
Dependency Graph - Ordering of interdependent resources.

Builds a directed graph from explicit depends-on references plus implicit
edges (namespaced objects follow their Namespace, custom resources follow
their CustomResourceDefinition) and sorts it into layers: every resource in
a layer depends only on resources in earlier layers.

Cycles do not fail the whole graph. Members of a cycle, and anything that
depends on them, are excluded and reported; the acyclic remainder is
ordered normally.
"""

import logging
from dataclasses import dataclass, field
from typing import Any, Dict, Iterable, List, Optional, Set, Tuple

from errors import DependencyError, GraphCycleError, SyncError
from resources import DeclaredResource, LiveResource, ResourceID

logger = logging.getLogger(__name__)

CRD_GROUP = "apiextensions.k8s.io"
CRD_KIND = "CustomResourceDefinition"

Key = Tuple[str, str, str, str]


@dataclass
class GraphOrder:
    """Result of ordering a dependency graph."""

    layers: List[List[ResourceID]] = field(default_factory=list)
    errors: List[SyncError] = field(default_factory=list)
    excluded: Set[ResourceID] = field(default_factory=set)

    def ordered(self) -> List[ResourceID]:
        return [rid for layer in self.layers for rid in layer]

    def reverse_layers(self) -> List[List[ResourceID]]:
        """Layers in deletion order: dependents before their dependencies."""
        return [list(reversed(layer)) for layer in reversed(self.layers)]

    def layer_of(self, resource_id: ResourceID) -> Optional[int]:
        for index, layer in enumerate(self.layers):
            if resource_id in layer:
                return index
        return None


class DependencyGraph:
    """
    Directed graph over resource identities.

    An edge ``a -> b`` means ``a`` depends on ``b``: ``b`` is applied
    before ``a`` and deleted after it.
    """

    def __init__(self):
        self._nodes: Dict[Key, ResourceID] = {}
        self._edges: Dict[Key, Set[Key]] = {}
        self._invalid: Dict[Key, SyncError] = {}

    @property
    def nodes(self) -> List[ResourceID]:
        return sorted(self._nodes.values(), key=lambda r: r.sort_key)

    def add_node(self, resource_id: ResourceID) -> None:
        self._nodes.setdefault(resource_id.key, resource_id)
        self._edges.setdefault(resource_id.key, set())

    def add_edge(self, source: ResourceID, target: ResourceID) -> None:
        """Record that ``source`` depends on ``target``."""
        logger.debug(f"adding edge from: {source}, to: {target}")
        self._edges.setdefault(source.key, set()).add(target.key)

    def has_node(self, resource_id: ResourceID) -> bool:
        return resource_id.key in self._nodes

    def dependencies(self, resource_id: ResourceID) -> List[ResourceID]:
        return sorted(
            (self._nodes[k] for k in self._edges.get(resource_id.key, ())),
            key=lambda r: r.sort_key,
        )

    def mark_invalid(self, resource_id: ResourceID, error: SyncError) -> None:
        self._invalid[resource_id.key] = error

    @classmethod
    def for_declared(cls, resources: Iterable[DeclaredResource]) -> "DependencyGraph":
        """
        Build the graph for a declared set.

        A depends-on reference to an object outside the set is an error for
        the referencing object, which is then excluded from the order.
        """
        resources = list(resources)
        graph = cls()
        for resource in resources:
            graph.add_node(resource.id)
        graph._add_implicit_edges([(r.id, r.payload) for r in resources])

        for resource in resources:
            missing = []
            for dep in sorted(resource.depends_on, key=lambda r: r.sort_key):
                if dep.key not in graph._nodes:
                    missing.append(dep)
                    continue
                graph.add_edge(resource.id, graph._nodes[dep.key])
            if missing:
                graph.mark_invalid(
                    resource.id,
                    DependencyError(
                        f"{resource.id} depends on objects that are not declared: "
                        + ", ".join(str(m) for m in missing),
                        [resource.id],
                    ),
                )
        return graph

    @classmethod
    def for_live(cls, objects: Iterable[Dict[str, Any]]) -> "DependencyGraph":
        """
        Build the graph for live objects about to be pruned.

        Dependencies come from the depends-on annotations the objects carry
        on the cluster; references outside the set are ignored.
        """
        objects = list(objects)
        graph = cls()
        live = [LiveResource(obj) for obj in objects]
        for resource in live:
            graph.add_node(resource.id)
        graph._add_implicit_edges([(r.id, r.object) for r in live])
        for resource in live:
            for dep in resource.depends_on():
                if dep.key in graph._nodes and dep.key != resource.id.key:
                    graph.add_edge(resource.id, graph._nodes[dep.key])
        return graph

    def _add_implicit_edges(self, items: List[Tuple[ResourceID, Dict[str, Any]]]) -> None:
        namespaces: Dict[str, ResourceID] = {}
        crds: Dict[Tuple[str, str], ResourceID] = {}
        for rid, payload in items:
            if rid.is_namespace:
                namespaces[rid.name] = rid
            elif rid.group == CRD_GROUP and rid.kind == CRD_KIND:
                spec = payload.get("spec") or {}
                group = spec.get("group")
                kind = (spec.get("names") or {}).get("kind")
                if group and kind:
                    crds[(group, kind)] = rid

        for rid, _ in items:
            if rid.namespace and rid.namespace in namespaces:
                self.add_edge(rid, namespaces[rid.namespace])
            crd = crds.get((rid.group, rid.kind))
            if crd is not None and crd != rid:
                self.add_edge(rid, crd)

    def _strongly_connected(self) -> List[List[Key]]:
        """Tarjan's algorithm, iterative to avoid recursion limits."""
        index_of: Dict[Key, int] = {}
        lowlink: Dict[Key, int] = {}
        on_stack: Set[Key] = set()
        stack: List[Key] = []
        components: List[List[Key]] = []
        counter = 0

        for root in sorted(self._nodes):
            if root in index_of:
                continue
            work = [(root, iter(sorted(self._edges.get(root, ()))))]
            index_of[root] = lowlink[root] = counter
            counter += 1
            stack.append(root)
            on_stack.add(root)
            while work:
                node, children = work[-1]
                advanced = False
                for child in children:
                    if child not in self._nodes:
                        continue
                    if child not in index_of:
                        index_of[child] = lowlink[child] = counter
                        counter += 1
                        stack.append(child)
                        on_stack.add(child)
                        work.append((child, iter(sorted(self._edges.get(child, ())))))
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
                    component = []
                    while True:
                        member = stack.pop()
                        on_stack.discard(member)
                        component.append(member)
                        if member == node:
                            break
                    components.append(component)
        return components

    def _dependents_of(self, keys: Iterable[Key]) -> Set[Key]:
        """All nodes that transitively depend on any of ``keys``."""
        reverse: Dict[Key, Set[Key]] = {k: set() for k in self._nodes}
        for source, targets in self._edges.items():
            for target in targets:
                if target in reverse and source in self._nodes:
                    reverse[target].add(source)
        seen: Set[Key] = set()
        frontier = list(keys)
        while frontier:
            node = frontier.pop()
            for dependent in reverse.get(node, ()):
                if dependent not in seen:
                    seen.add(dependent)
                    frontier.append(dependent)
        return seen

    def order(self) -> GraphOrder:
        """
        Sort the graph into dependency layers.

        Ties within a layer are broken by (kind, namespace, name, group) so
        repeated runs produce the same order.
        """
        result = GraphOrder()

        cycles = [
            sorted(component)
            for component in self._strongly_connected()
            if len(component) > 1 or component[0] in self._edges.get(component[0], ())
        ]
        cycle_members: Set[Key] = {k for c in cycles for k in c}
        bad: Set[Key] = cycle_members | set(self._invalid)
        excluded: Set[Key] = set(bad) | self._dependents_of(bad)

        for cycle in sorted(cycles):
            dependents = self._dependents_of(cycle) - cycle_members
            result.errors.append(
                GraphCycleError(
                    [self._nodes[k] for k in cycle],
                    [self._nodes[k] for k in dependents],
                )
            )
        for key in sorted(self._invalid):
            if key in cycle_members:
                continue
            result.errors.append(self._invalid[key])
            for dependent in sorted(self._dependents_of([key]) - bad):
                result.errors.append(
                    DependencyError(
                        f"{self._nodes[dependent]} skipped: its dependency "
                        f"{self._nodes[key]} is invalid",
                        [self._nodes[dependent]],
                    )
                )
        for error in result.errors:
            logger.error(f"Dependency graph error: {error.message}")

        remaining = {k for k in self._nodes if k not in excluded}
        pending = {
            k: {t for t in self._edges.get(k, ()) if t in remaining} for k in remaining
        }
        while pending:
            ready = [k for k, deps in pending.items() if not deps]
            if not ready:
                # Unreachable: every cycle was excluded above.
                raise RuntimeError("dependency graph still contains a cycle")
            layer = sorted((self._nodes[k] for k in ready), key=lambda r: r.sort_key)
            result.layers.append(layer)
            for k in ready:
                del pending[k]
            for deps in pending.values():
                deps.difference_update(ready)

        result.excluded = {self._nodes[k] for k in excluded}
        return result
