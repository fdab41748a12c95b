"""Static graph validation.

Runs once before a run is created. Errors make the graph unrunnable;
warnings are reported but do not block execution.
"""

from collections import defaultdict, deque
from dataclasses import dataclass, field

import structlog

from stepflow.core.constants import INPUT_SLOT
from stepflow.core.exceptions import ValidationError
from stepflow.workflow.graph import Graph

logger = structlog.get_logger(__name__)


@dataclass
class ValidationResult:
    """Validator verdict for one graph."""

    valid: bool
    errors: list[str] = field(default_factory=list)
    warnings: list[str] = field(default_factory=list)

    def to_dict(self) -> dict:
        return {"valid": self.valid, "errors": list(self.errors), "warnings": list(self.warnings)}


def validate(graph: Graph) -> ValidationResult:
    """Check structure, references, fan-in, reachability and control-flow cycles."""
    errors: list[str] = []
    warnings: list[str] = []

    if not graph.nodes:
        errors.append("Workflow must contain at least one node")

    entries = graph.entry_nodes
    if not entries:
        errors.append("Workflow must contain a start node")
    elif len(entries) > 1:
        errors.append("Workflow must contain exactly one start node")

    node_ids: set[str] = set()
    for node in graph.nodes:
        if not node.id:
            errors.append("All nodes must have an id")
        elif node.id in node_ids:
            errors.append(f"Duplicate node id: {node.id}")
        else:
            node_ids.add(node.id)
        if not node.type:
            errors.append(f"Node {node.id} must have a type")

    edge_ids: set[str] = set()
    fed_slots: dict[tuple[str, str], str] = {}
    for edge in graph.edges:
        if not edge.id:
            errors.append("All edges must have an id")
        elif edge.id in edge_ids:
            errors.append(f"Duplicate edge id: {edge.id}")
        else:
            edge_ids.add(edge.id)

        if edge.source not in node_ids:
            errors.append(f"Edge {edge.id} references non-existent source node: {edge.source}")
        if edge.target not in node_ids:
            errors.append(f"Edge {edge.id} references non-existent target node: {edge.target}")

        slot = (edge.target, edge.target_slot)
        if slot in fed_slots:
            errors.append(
                f"Node {edge.target} has multiple inputs on slot '{edge.target_slot}' "
                f"(edges {fed_slots[slot]} and {edge.id})"
            )
        else:
            fed_slots[slot] = edge.id

    connected = {e.source for e in graph.edges} | {e.target for e in graph.edges}
    isolated = set()
    for node in graph.nodes:
        if not node.is_entry and node.id not in connected:
            isolated.add(node.id)
            warnings.append(f"Node {node.id} ({node.type}) is not connected to any other node")

    if len(entries) == 1:
        reachable = _reachable_from(graph, entries[0].id)
        for node in graph.nodes:
            if node.id not in reachable and node.id not in isolated:
                warnings.append(f"Node {node.id} ({node.type}) is not reachable from the start node")

    for node_id in _self_reachable_nodes(graph):
        warnings.append(f"Node {node_id} is part of a control-flow cycle")

    result = ValidationResult(valid=not errors, errors=errors, warnings=warnings)
    if not result.valid:
        logger.info("Workflow validation failed", errors=errors)
    elif warnings:
        logger.debug("Workflow validation warnings", warnings=warnings)
    return result


def validate_or_raise(graph: Graph) -> ValidationResult:
    """Validate and raise ValidationError when the graph has errors."""
    result = validate(graph)
    if not result.valid:
        raise ValidationError(result.errors, result.warnings)
    return result


def _reachable_from(graph: Graph, entry_id: str) -> set[str]:
    """Nodes reachable from the entry.

    Control edges are followed forward; a property-input edge makes its
    source reachable once the node it feeds is.
    """
    forward: dict[str, list[str]] = defaultdict(list)
    feeders: dict[str, list[str]] = defaultdict(list)
    for edge in graph.edges:
        if edge.target_slot == INPUT_SLOT:
            forward[edge.source].append(edge.target)
        else:
            feeders[edge.target].append(edge.source)

    seen = {entry_id}
    queue = deque([entry_id])
    while queue:
        current = queue.popleft()
        for nxt in forward[current] + feeders[current]:
            if nxt not in seen:
                seen.add(nxt)
                queue.append(nxt)
    return seen


def _self_reachable_nodes(graph: Graph) -> list[str]:
    """Nodes that can reach themselves over control-flow edges."""
    adjacency: dict[str, list[str]] = defaultdict(list)
    for edge in graph.edges:
        if edge.is_control_flow:
            adjacency[edge.source].append(edge.target)

    cyclic = []
    for start in adjacency:
        if _has_path(adjacency, start, start):
            cyclic.append(start)
    return cyclic


def _has_path(adjacency: dict[str, list[str]], start: str, target: str) -> bool:
    visited: set[str] = set()
    stack = [start]
    while stack:
        current = stack.pop()
        if current in visited:
            continue
        visited.add(current)
        for neighbor in adjacency.get(current, ()):
            if neighbor == target:
                return True
            stack.append(neighbor)
    return False
