"""Immutable, validated workflow graph."""

from collections import defaultdict
from typing import Dict, Iterable, List, Optional, Set, Tuple

from ..models.core import Edge, NodeSpec, ValidationIssue, ValidationResult, WorkflowDefinition
from .exceptions import GraphValidationError
from .logging import get_logger

logger = get_logger(__name__)

WHITE, GREY, BLACK = 0, 1, 2


class WorkflowGraph:
    """Read-only view of a validated workflow definition.

    Built once per run by ``WorkflowGraph.build``. Holds adjacency in both
    directions and the topological layering; never mutated afterwards, so it
    can be shared by the scheduling loop and any reader thread.
    """

    def __init__(self, definition: WorkflowDefinition, layers: List[List[str]]):
        self.definition = definition
        self._nodes: Dict[str, NodeSpec] = {node.id: node for node in definition.nodes}
        self._order: Tuple[str, ...] = tuple(node.id for node in definition.nodes)
        outgoing: Dict[str, List[Edge]] = defaultdict(list)
        incoming: Dict[str, List[Edge]] = defaultdict(list)
        for edge in definition.edges:
            outgoing[edge.source].append(edge)
            incoming[edge.target].append(edge)
        self._outgoing: Dict[str, Tuple[Edge, ...]] = {nid: tuple(outgoing[nid]) for nid in self._order}
        self._incoming: Dict[str, Tuple[Edge, ...]] = {nid: tuple(incoming[nid]) for nid in self._order}
        self._layers: Tuple[Tuple[str, ...], ...] = tuple(tuple(layer) for layer in layers)
        self._layer_index = {nid: index for index, layer in enumerate(layers) for nid in layer}
        self._by_name: Dict[str, str] = {}
        for node in definition.nodes:
            if node.name and node.name not in self._by_name:
                self._by_name[node.name] = node.id

    # Construction

    @classmethod
    def validate(cls, definition: WorkflowDefinition,
                 known_node_types: Optional[Iterable[str]] = None) -> ValidationResult:
        """
        Validate a workflow definition for structural correctness.

        Args:
            definition: The workflow definition to validate
            known_node_types: Registered node types; type checks are skipped when None

        Returns:
            ValidationResult: Validation results with errors and warnings
        """
        errors: List[ValidationIssue] = []
        warnings: List[ValidationIssue] = []

        if not definition.nodes:
            errors.append(ValidationIssue(code="EMPTY_WORKFLOW", message="Workflow must contain at least one node"))
            return ValidationResult(is_valid=False, errors=errors, warnings=warnings)

        node_ids: Set[str] = set()
        for node in definition.nodes:
            if node.id in node_ids:
                errors.append(ValidationIssue(
                    code="DUPLICATE_NODE_ID", message=f"Duplicate node id: '{node.id}'", node_id=node.id
                ))
            node_ids.add(node.id)

        if known_node_types is not None:
            known = set(known_node_types)
            for node in definition.nodes:
                if node.type not in known:
                    errors.append(ValidationIssue(
                        code="UNKNOWN_NODE_TYPE",
                        message=f"Node '{node.id}' has unknown type '{node.type}'",
                        node_id=node.id
                    ))

        valid_edges: List[Edge] = []
        seen_edges: Set[Tuple[str, str, Optional[str]]] = set()
        for edge in definition.edges:
            missing = [end for end in (edge.source, edge.target) if end not in node_ids]
            if missing:
                errors.append(ValidationIssue(
                    code="DANGLING_EDGE",
                    message=f"Edge '{edge.key}' references non-existent node(s): {', '.join(missing)}",
                    edge_id=edge.id
                ))
                continue
            identity = (edge.source, edge.target, edge.source_handle)
            if identity in seen_edges:
                warnings.append(ValidationIssue(
                    code="DUPLICATE_EDGE", message=f"Duplicate edge '{edge.key}'", edge_id=edge.id
                ))
            seen_edges.add(identity)
            valid_edges.append(edge)

        ordered_ids = list(dict.fromkeys(node.id for node in definition.nodes))
        cycle = cls._find_cycle(ordered_ids, valid_edges)
        if cycle:
            errors.append(ValidationIssue(
                code="CYCLE",
                message=f"Workflow contains a cycle: {' -> '.join(cycle)}",
                node_id=cycle[0]
            ))

        components = cls._count_components(ordered_ids, valid_edges)
        if components > 1:
            warnings.append(ValidationIssue(
                code="DISCONNECTED_GRAPH",
                message=f"Workflow has {components} disconnected parts"
            ))

        result = ValidationResult(is_valid=not errors, errors=errors, warnings=warnings)
        logger.debug(f"Workflow validation completed. Valid: {result.is_valid}, "
                     f"Errors: {len(errors)}, Warnings: {len(warnings)}")
        return result

    @classmethod
    def build(cls, definition: WorkflowDefinition,
              known_node_types: Optional[Iterable[str]] = None,
              workflow_id: Optional[str] = None) -> "WorkflowGraph":
        """Validate ``definition`` and build the graph.

        Raises:
            GraphValidationError: kind is the code of the first error
        """
        result = cls.validate(definition, known_node_types)
        if not result.is_valid:
            first = result.errors[0]
            message = f"Workflow validation failed: {'; '.join(issue.message for issue in result.errors)}"
            logger.warning(message)
            raise GraphValidationError(
                message,
                kind=first.code,
                validation_errors=[issue.model_dump() for issue in result.errors],
                warnings=[issue.model_dump() for issue in result.warnings],
                workflow_id=workflow_id
            )
        if result.warnings:
            logger.info(f"Workflow validation warnings: {'; '.join(w.message for w in result.warnings)}")
        return cls(definition, cls._compute_layers([n.id for n in definition.nodes], definition.edges))

    @staticmethod
    def _find_cycle(node_ids: List[str], edges: List[Edge]) -> Optional[List[str]]:
        """Three-colour depth-first search; returns the cycle path or None."""
        adjacency: Dict[str, List[str]] = defaultdict(list)
        for edge in edges:
            adjacency[edge.source].append(edge.target)

        color = {nid: WHITE for nid in node_ids}
        for start in node_ids:
            if color[start] != WHITE:
                continue
            color[start] = GREY
            path = [start]
            stack = [iter(adjacency[start])]
            while stack:
                advanced = False
                for child in stack[-1]:
                    if color[child] == GREY:
                        return path[path.index(child):] + [child]
                    if color[child] == WHITE:
                        color[child] = GREY
                        path.append(child)
                        stack.append(iter(adjacency[child]))
                        advanced = True
                        break
                if not advanced:
                    color[path.pop()] = BLACK
                    stack.pop()
        return None

    @staticmethod
    def _count_components(node_ids: List[str], edges: List[Edge]) -> int:
        neighbours: Dict[str, Set[str]] = defaultdict(set)
        for edge in edges:
            neighbours[edge.source].add(edge.target)
            neighbours[edge.target].add(edge.source)
        seen: Set[str] = set()
        components = 0
        for nid in node_ids:
            if nid in seen:
                continue
            components += 1
            frontier = [nid]
            seen.add(nid)
            while frontier:
                current = frontier.pop()
                for other in neighbours[current]:
                    if other not in seen:
                        seen.add(other)
                        frontier.append(other)
        return components

    @staticmethod
    def _compute_layers(node_ids: List[str], edges: List[Edge]) -> List[List[str]]:
        """Layer 0 holds nodes without incoming edges; layer k nodes whose predecessors sit below k."""
        indegree = {nid: 0 for nid in node_ids}
        children: Dict[str, List[str]] = defaultdict(list)
        for edge in edges:
            indegree[edge.target] += 1
            children[edge.source].append(edge.target)

        layer_of = {nid: 0 for nid in node_ids}
        frontier = [nid for nid in node_ids if indegree[nid] == 0]
        while frontier:
            next_frontier = []
            for nid in frontier:
                for child in children[nid]:
                    layer_of[child] = max(layer_of[child], layer_of[nid] + 1)
                    indegree[child] -= 1
                    if indegree[child] == 0:
                        next_frontier.append(child)
            frontier = next_frontier

        depth = max(layer_of.values()) + 1 if layer_of else 0
        layers: List[List[str]] = [[] for _ in range(depth)]
        for nid in node_ids:
            layers[layer_of[nid]].append(nid)
        return layers

    # Queries

    @property
    def node_ids(self) -> List[str]:
        return list(self._order)

    @property
    def nodes(self) -> List[NodeSpec]:
        return [self._nodes[nid] for nid in self._order]

    @property
    def edges(self) -> List[Edge]:
        return list(self.definition.edges)

    @property
    def layers(self) -> List[List[str]]:
        return [list(layer) for layer in self._layers]

    def __contains__(self, node_id: str) -> bool:
        return node_id in self._nodes

    def __len__(self) -> int:
        return len(self._order)

    def node(self, node_id: str) -> NodeSpec:
        return self._nodes[node_id]

    def node_label(self, node_id: str) -> str:
        return self._nodes[node_id].label

    def find_node(self, reference: str) -> Optional[str]:
        """Resolve a node name or id to a node id."""
        if reference in self._by_name:
            return self._by_name[reference]
        if reference in self._nodes:
            return reference
        return None

    def incoming(self, node_id: str) -> List[Edge]:
        return list(self._incoming[node_id])

    def outgoing(self, node_id: str) -> List[Edge]:
        return list(self._outgoing[node_id])

    def predecessors(self, node_id: str) -> List[str]:
        return list(dict.fromkeys(edge.source for edge in self._incoming[node_id]))

    def successors(self, node_id: str, chosen_handle: Optional[str] = None) -> List[Edge]:
        """Return the live outgoing edges of a node.

        Without a discriminator every outgoing edge is live. With one, only
        edges whose ``source_handle`` equals it or is unset are live.
        """
        edges = self._outgoing[node_id]
        if chosen_handle is None:
            return list(edges)
        return [e for e in edges if e.source_handle is None or e.source_handle == chosen_handle]

    def ancestors(self, node_id: str) -> Set[str]:
        return self._walk(node_id, lambda nid: (e.source for e in self._incoming[nid]))

    def descendants(self, node_id: str) -> Set[str]:
        return self._walk(node_id, lambda nid: (e.target for e in self._outgoing[nid]))

    def _walk(self, start: str, step) -> Set[str]:
        seen: Set[str] = set()
        frontier = [start]
        while frontier:
            for other in step(frontier.pop()):
                if other not in seen:
                    seen.add(other)
                    frontier.append(other)
        seen.discard(start)
        return seen

    def exclusive_descendants(self, node_id: str, chosen_handle: Optional[str]) -> Set[str]:
        """Nodes reachable from ``node_id`` only through its non-live edges."""
        live = {id(edge) for edge in self.successors(node_id, chosen_handle)}
        reachable = self.descendants(node_id)
        dead_nodes: Set[str] = set()
        for nid in self.topological_order():
            if nid not in reachable:
                continue
            incoming = self._incoming[nid]
            if incoming and all(
                (edge.source == node_id and id(edge) not in live) or edge.source in dead_nodes
                for edge in incoming
            ):
                dead_nodes.add(nid)
        return dead_nodes

    def roots(self) -> List[str]:
        return [nid for nid in self._order if not self._incoming[nid]]

    def terminal_nodes(self) -> List[str]:
        return [nid for nid in self._order if not self._outgoing[nid]]

    def layer_of(self, node_id: str) -> int:
        return self._layer_index[node_id]

    def topological_order(self) -> List[str]:
        return [nid for layer in self._layers for nid in layer]
