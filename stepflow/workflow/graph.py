"""Graph model — typed representation of workflow nodes and edges.

Workflow Definition Schema:
{
    "nodes": [
        {"id": "start", "type": "start"},
        {
            "id": "fetch",
            "type": "http.request",
            "config": {"url": "https://example.test/items", "method": "GET"},
            "failSilently": false,
            "breakpoint": true,
            "timeout": 30000,
            "retry": {"strategy": "count", "count": 3, "delay": 500}
        },
        {
            "id": "check",
            "type": "switch",
            "config": {
                "cases": [
                    {"id": "ok", "condition": {"type": "responseStatus", "statusCode": 200}}
                ]
            }
        }
    ],
    "edges": [
        {"id": "e1", "source": "start", "target": "fetch"},
        {"id": "e2", "source": "fetch", "target": "check"},
        {"id": "e3", "source": "check", "sourceSlot": "ok", "target": "..."}
    ]
}

The model accepts graphs that break invariants (duplicate ids, dangling
edges) so the validator can report them; nothing here raises on structure.
"""

from typing import Any, Optional

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel

from stepflow.core.constants import INPUT_SLOT, NodeType, OUTPUT_SLOT
from stepflow.workflow.retry_strategies import RetryPolicy


class GraphModel(BaseModel):
    """Base for graph models: camelCase aliases, snake_case attributes."""

    model_config = ConfigDict(
        alias_generator=to_camel,
        populate_by_name=True,
        frozen=True,
    )


class Node(GraphModel):
    """A typed unit of work in the graph."""

    id: str
    type: str
    label: Optional[str] = None
    config: dict[str, Any] = Field(default_factory=dict)
    bypass: bool = False
    fail_silently: bool = False
    breakpoint: bool = False
    retry: Optional[RetryPolicy] = None
    timeout: Optional[float] = Field(default=None, gt=0, description="Per-step budget in ms")

    @property
    def is_entry(self) -> bool:
        return self.type == NodeType.START.value

    @property
    def display_name(self) -> str:
        return self.label or self.id


class Edge(GraphModel):
    """Directed connection from a source slot to a target slot."""

    id: str
    source: str
    target: str
    source_slot: str = OUTPUT_SLOT
    target_slot: str = INPUT_SLOT

    @property
    def is_control_flow(self) -> bool:
        """Control wiring, as opposed to property-input wiring."""
        return self.target_slot == INPUT_SLOT

    @property
    def is_property_input(self) -> bool:
        return self.target_slot != INPUT_SLOT


class Graph(GraphModel):
    """Nodes plus ordered edges."""

    nodes: list[Node] = Field(default_factory=list)
    edges: list[Edge] = Field(default_factory=list)

    def get_node(self, node_id: str) -> Optional[Node]:
        for node in self.nodes:
            if node.id == node_id:
                return node
        return None

    @property
    def entry_nodes(self) -> list[Node]:
        return [n for n in self.nodes if n.is_entry]

    @property
    def entry_node(self) -> Optional[Node]:
        entries = self.entry_nodes
        return entries[0] if len(entries) == 1 else None

    def outgoing(self, node_id: str, slot: Optional[str] = None) -> list[Edge]:
        """Control-flow edges leaving a node, in declaration order."""
        return [
            e for e in self.edges
            if e.source == node_id
            and e.target_slot == INPUT_SLOT
            and (slot is None or e.source_slot == slot)
        ]

    def property_inputs(self, node_id: str) -> list[Edge]:
        """Property-input edges feeding a node."""
        return [e for e in self.edges if e.target == node_id and e.is_property_input]

    @classmethod
    def from_workflow(cls, document: dict[str, Any]) -> "Graph":
        """Build a graph from the editor's document shape.

        Editor nodes carry their config and flags together under ``data``;
        edges use ``sourceHandle``/``targetHandle`` for slots.
        """
        flag_keys = {"bypass", "failSilently", "breakpoint", "retry", "timeout", "label"}
        nodes = []
        for raw in document.get("nodes", []):
            data = dict(raw.get("data") or {})
            flags = {k: data.pop(k) for k in list(data) if k in flag_keys}
            nodes.append(
                Node(
                    id=raw.get("id", ""),
                    type=raw.get("type", ""),
                    config=data,
                    **flags,
                )
            )

        edges = []
        for index, raw in enumerate(document.get("edges", [])):
            edges.append(
                Edge(
                    id=raw.get("id") or f"edge-{index}",
                    source=raw.get("source", ""),
                    target=raw.get("target", ""),
                    source_slot=raw.get("sourceHandle") or OUTPUT_SLOT,
                    target_slot=raw.get("targetHandle") or INPUT_SLOT,
                )
            )
        return cls(nodes=nodes, edges=edges)
