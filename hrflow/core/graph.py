"""
Graph compilation and validation.

`validate_definition` inspects a raw definition and returns every defect it
finds (it never raises). `compile_definition` turns a valid definition into
a `CompiledGraph`, the immutable runtime form the executor walks.

Checks performed:
1. The definition has `nodes` and `edges` lists and valid metadata
2. Every node parses into its typed model (config included)
3. Node keys are unique
4. Every edge references existing nodes
5. At least one trigger node exists; triggers have no incoming edges
6. The graph is acyclic
7. Every non-trigger node is reachable from a trigger
8. Every logic node has an edge for both outcomes, its edge conditions
   name an outcome, and its expression parses
9. Trigger conditions parse
"""

import logging
from collections import defaultdict, deque
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Tuple

from pydantic import ValidationError as PydanticValidationError

from .exceptions import ValidationError
from .expressions import check_expression
from .nodes import (
    DefinitionMetadata,
    EdgeDefinition,
    LogicNode,
    NodeType,
    TriggerNode,
    create_node_from_dict,
    normalize_event_type,
)
from .task_payloads import pydantic_defects

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class CompiledEdge:
    source: str
    target: str
    position: int
    condition: Optional[str] = None
    # For logic sources: the outcome this edge is taken on
    outcome: Optional[bool] = None

    @property
    def key(self) -> str:
        return f"{self.source}->{self.target}"


@dataclass(frozen=True)
class CompiledGraph:
    """
    Immutable runtime form of a published version.

    Safe to cache forever keyed by version id: published versions never change.
    """

    nodes: Dict[str, NodeType]
    edges: Tuple[CompiledEdge, ...]
    metadata: DefinitionMetadata
    workflow_id: Optional[str] = None
    version_id: Optional[str] = None
    version_number: Optional[int] = None
    _outgoing: Dict[str, Tuple[CompiledEdge, ...]] = field(default_factory=dict, repr=False)

    def node(self, node_key: str) -> NodeType:
        try:
            return self.nodes[node_key]
        except KeyError:
            raise ValidationError(f"Node '{node_key}' is not part of this version")

    @property
    def trigger_keys(self) -> List[str]:
        return [key for key, node in self.nodes.items() if isinstance(node, TriggerNode)]

    def triggers_for(self, event_type: str) -> List[TriggerNode]:
        event_type = normalize_event_type(event_type)
        return [
            node for node in self.nodes.values()
            if isinstance(node, TriggerNode) and node.config.event_type == event_type
        ]

    def outgoing(self, node_key: str) -> Tuple[CompiledEdge, ...]:
        """Outgoing edges sorted by position."""
        return self._outgoing.get(node_key, ())

    def select_logic_edge(self, node_key: str, outcome: bool) -> Optional[CompiledEdge]:
        """The single edge a logic node takes for `outcome` (lowest position wins)."""
        for edge in self.outgoing(node_key):
            if edge.outcome is outcome:
                return edge
        return None

    @property
    def completion(self) -> str:
        return self.metadata.completion


def _parse_structure(definition: Any, defects: List[str]):
    if not isinstance(definition, dict):
        defects.append("definition must be an object with 'nodes' and 'edges'")
        return [], [], None

    raw_nodes = definition.get("nodes")
    raw_edges = definition.get("edges", [])
    if not isinstance(raw_nodes, list):
        defects.append("definition.nodes must be a list")
        raw_nodes = []
    if not isinstance(raw_edges, list):
        defects.append("definition.edges must be a list")
        raw_edges = []

    metadata = None
    try:
        metadata = DefinitionMetadata.model_validate(definition.get("metadata") or {})
    except PydanticValidationError as e:
        defects.extend(pydantic_defects(e, prefix="metadata"))
    return raw_nodes, raw_edges, metadata


def _parse_nodes(raw_nodes: List[Any], defects: List[str]) -> Dict[str, NodeType]:
    nodes: Dict[str, NodeType] = {}
    seen = set()
    for index, raw in enumerate(raw_nodes):
        if not isinstance(raw, dict):
            defects.append(f"nodes[{index}] must be an object")
            continue
        key = raw.get("id")
        if key in seen:
            defects.append(f"duplicate node key '{key}'")
            continue
        if key is not None:
            seen.add(key)
        try:
            node = create_node_from_dict(raw)
        except ValidationError as e:
            defects.extend(e.defects or [e.message])
            continue
        nodes[node.id] = node
    return nodes


def _parse_edges(raw_edges: List[Any], known_keys: set, defects: List[str]) -> List[CompiledEdge]:
    edges: List[CompiledEdge] = []
    seen = set()
    for index, raw in enumerate(raw_edges):
        if not isinstance(raw, dict):
            defects.append(f"edges[{index}] must be an object")
            continue
        try:
            edge = EdgeDefinition.model_validate(raw)
        except PydanticValidationError as e:
            defects.extend(pydantic_defects(e, prefix=f"edges[{index}]"))
            continue

        missing = [k for k in (edge.source, edge.target) if k not in known_keys]
        if missing:
            for key in missing:
                defects.append(f"edge {edge.source}->{edge.target} references missing node '{key}'")
            continue
        if (edge.source, edge.target) in seen:
            defects.append(f"duplicate edge {edge.source}->{edge.target}")
            continue
        seen.add((edge.source, edge.target))

        edges.append(CompiledEdge(
            source=edge.source,
            target=edge.target,
            position=edge.position if edge.position is not None else index,
            condition=edge.condition,
        ))
    return edges


def _find_cycle_nodes(nodes: Dict[str, NodeType], edges: List[CompiledEdge]) -> List[str]:
    """Kahn's algorithm: nodes left over after peeling sources sit on (or behind) a cycle."""
    indegree = {key: 0 for key in nodes}
    adjacency = defaultdict(list)
    for edge in edges:
        adjacency[edge.source].append(edge.target)
        indegree[edge.target] += 1

    queue = deque(key for key, degree in indegree.items() if degree == 0)
    visited = 0
    while queue:
        key = queue.popleft()
        visited += 1
        for target in adjacency[key]:
            indegree[target] -= 1
            if indegree[target] == 0:
                queue.append(target)

    if visited == len(nodes):
        return []
    return sorted(key for key, degree in indegree.items() if degree > 0)


def _reachable_from(starts: List[str], edges: List[CompiledEdge]) -> set:
    adjacency = defaultdict(list)
    for edge in edges:
        adjacency[edge.source].append(edge.target)
    seen = set(starts)
    queue = deque(starts)
    while queue:
        key = queue.popleft()
        for target in adjacency[key]:
            if target not in seen:
                seen.add(target)
                queue.append(target)
    return seen


def _attach_outcomes(
    nodes: Dict[str, NodeType], edges: List[CompiledEdge], defects: List[str]
) -> List[CompiledEdge]:
    """Resolve logic-edge conditions to outcomes and check both outcomes are wired."""
    resolved = []
    outcomes_by_node = defaultdict(set)
    for edge in edges:
        source = nodes[edge.source]
        if isinstance(source, LogicNode):
            outcome = source.outcome_for(edge.condition)
            if outcome is None:
                defects.append(
                    f"logic node '{source.id}': edge to '{edge.target}' has condition "
                    f"{edge.condition!r} which names neither outcome "
                    f"('{source.config.positive_label}' / '{source.config.negative_label}')"
                )
            else:
                outcomes_by_node[source.id].add(outcome)
            edge = CompiledEdge(edge.source, edge.target, edge.position, edge.condition, outcome)
        resolved.append(edge)

    for node in nodes.values():
        if not isinstance(node, LogicNode):
            continue
        wired = outcomes_by_node[node.id]
        if True not in wired:
            defects.append(f"logic node '{node.id}' is missing a branch target for '{node.config.positive_label}'")
        if False not in wired:
            defects.append(f"logic node '{node.id}' is missing a branch target for '{node.config.negative_label}'")
        for problem in check_expression(node.config.expression):
            defects.append(f"logic node '{node.id}': {problem}")
    return resolved


def _analyse(definition: Any) -> Tuple[List[str], Optional[CompiledGraph]]:
    defects: List[str] = []
    raw_nodes, raw_edges, metadata = _parse_structure(definition, defects)
    nodes = _parse_nodes(raw_nodes, defects)
    declared_keys = {raw.get("id") for raw in raw_nodes if isinstance(raw, dict)}
    edges = _parse_edges(raw_edges, declared_keys, defects)

    # Edges touching nodes that failed to parse were already reported via the node
    edges = [e for e in edges if e.source in nodes and e.target in nodes]

    triggers = [key for key, node in nodes.items() if isinstance(node, TriggerNode)]
    if not triggers and not any(
        isinstance(raw, dict) and raw.get("type") == "trigger" for raw in raw_nodes
    ):
        defects.append("workflow must have at least one trigger node")

    for edge in edges:
        if edge.target in triggers:
            defects.append(f"trigger node '{edge.target}' cannot have incoming edges (from '{edge.source}')")
        if edge.source == edge.target:
            defects.append(f"node '{edge.source}' has an edge to itself")

    cycle_nodes = _find_cycle_nodes(nodes, edges)
    if cycle_nodes:
        defects.append(f"cycle detected involving nodes: {', '.join(cycle_nodes)}")

    if triggers:
        reachable = _reachable_from(triggers, edges)
        for key in nodes:
            if key not in reachable:
                defects.append(f"orphan node '{key}' is not reachable from any trigger")

    for key in triggers:
        for index, condition in enumerate(nodes[key].config.conditions):
            for problem in check_expression(condition):
                defects.append(f"trigger node '{key}' condition {index}: {problem}")

    edges = _attach_outcomes(nodes, edges, defects)

    if defects or metadata is None:
        return defects, None

    outgoing = defaultdict(list)
    for edge in sorted(edges, key=lambda e: e.position):
        outgoing[edge.source].append(edge)

    graph = CompiledGraph(
        nodes=dict(nodes),
        edges=tuple(sorted(edges, key=lambda e: e.position)),
        metadata=metadata,
        _outgoing={key: tuple(value) for key, value in outgoing.items()},
    )
    return [], graph


def validate_definition(definition: Any) -> List[str]:
    """Return every defect in `definition` (empty list when publishable)."""
    defects, _ = _analyse(definition)
    return defects


def compile_definition(
    definition: Any,
    workflow_id: Optional[str] = None,
    version_id: Optional[str] = None,
    version_number: Optional[int] = None,
) -> CompiledGraph:
    """
    Validate and compile a definition.

    Raises:
        ValidationError: with the full list of defects
    """
    defects, graph = _analyse(definition)
    if defects:
        raise ValidationError("Workflow definition is invalid", defects)

    logger.debug(
        "Compiled workflow definition",
        extra={"version_id": version_id, "nodes": len(graph.nodes), "edges": len(graph.edges)},
    )
    return CompiledGraph(
        nodes=graph.nodes,
        edges=graph.edges,
        metadata=graph.metadata,
        workflow_id=workflow_id,
        version_id=version_id,
        version_number=version_number,
        _outgoing=graph._outgoing,
    )
