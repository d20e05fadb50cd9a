"""
Graph Store - Nodes and edges of a workflow.

This module defines the graph the resolution engine reads:
- Node: A unit of work with an id, a kind and a data record
- Edge: A port-labeled link from one node to another
- GraphStore: The complete graph, owned by the UI layer

Unlike an execution DAG, the store accepts cycles; consumers that walk it
must guard against revisiting nodes.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any, Callable
from uuid import uuid4

from bananaflow.core.node_data import NodeData, NodeKind, data_type_for


logger = logging.getLogger(__name__)

NodeId = str
PortId = str

# Conventional handle names
IMAGE_PORT: PortId = "image"
PROMPT_PORT: PortId = "prompt"
MODEL_PORT: PortId = "model"
GARMENT_PORT: PortId = "garment"


def new_node_id() -> NodeId:
    """Generate a new unique node ID."""
    return f"node_{uuid4().hex[:12]}"


def new_edge_id() -> str:
    """Generate a new unique edge ID."""
    return f"edge_{uuid4().hex[:12]}"


@dataclass
class Edge:
    """
    A directed connection between two nodes.

    ``source_handle`` and ``target_handle`` are free-form port names
    interpreted by convention ("image", "prompt", "model", "garment").
    Either may be None for edges drawn without a specific port.
    """
    id: str
    source: NodeId
    target: NodeId
    source_handle: PortId | None = None
    target_handle: PortId | None = None
    extra: dict[str, Any] = field(default_factory=dict, repr=False)

    @classmethod
    def create(
        cls,
        source: NodeId,
        target: NodeId,
        target_handle: PortId | None = None,
        source_handle: PortId | None = None,
    ) -> Edge:
        """Factory method to create a new edge."""
        return cls(
            id=new_edge_id(),
            source=source,
            target=target,
            source_handle=source_handle,
            target_handle=target_handle,
        )

    def to_dict(self) -> dict[str, Any]:
        out = dict(self.extra)
        out.update({"id": self.id, "source": self.source, "target": self.target})
        if self.source_handle is not None:
            out["sourceHandle"] = self.source_handle
        if self.target_handle is not None:
            out["targetHandle"] = self.target_handle
        return out

    @classmethod
    def from_dict(cls, raw: dict[str, Any]) -> Edge:
        known = {"id", "source", "target", "sourceHandle", "targetHandle"}
        return cls(
            id=str(raw.get("id") or new_edge_id()),
            source=str(raw["source"]),
            target=str(raw["target"]),
            source_handle=raw.get("sourceHandle"),
            target_handle=raw.get("targetHandle"),
            extra={k: v for k, v in raw.items() if k not in known and not callable(v)},
        )


@dataclass
class Node:
    """
    A single node in the workflow graph.

    Nodes never own other nodes; every relationship is an Edge.
    """
    id: NodeId
    kind: NodeKind
    data: NodeData
    extra: dict[str, Any] = field(default_factory=dict, repr=False)  # position, size, ...

    @classmethod
    def create(cls, kind: NodeKind, node_id: NodeId | None = None, **data: Any) -> Node:
        """Factory method to create a node with a fresh data record."""
        record = data_type_for(kind)()
        record.apply(data)
        return cls(id=node_id or new_node_id(), kind=kind, data=record)

    def to_dict(self) -> dict[str, Any]:
        out = dict(self.extra)
        out.update({"id": self.id, "type": self.kind.value, "data": self.data.to_dict()})
        return out

    @classmethod
    def from_dict(cls, raw: dict[str, Any]) -> Node:
        kind = NodeKind(raw["type"])
        known = {"id", "type", "data"}
        return cls(
            id=str(raw["id"]),
            kind=kind,
            data=data_type_for(kind).from_dict(raw.get("data")),
            extra={k: v for k, v in raw.items() if k not in known and not callable(v)},
        )


class GraphStore:
    """
    The node graph of a workflow.

    Holds nodes and edges and exposes the narrow read/patch interface the
    dispatcher uses (``get_node``/``update_node_data``). Listeners are told
    the id of every node whose data changes.
    """

    def __init__(self, nodes: list[Node] | None = None, edges: list[Edge] | None = None):
        self._nodes: dict[NodeId, Node] = {}
        self._edges: list[Edge] = []
        self._listeners: list[Callable[[NodeId], None]] = []
        for node in nodes or []:
            self.add_node(node)
        for edge in edges or []:
            self.add_edge(edge)

    # --- Node operations ---

    @property
    def nodes(self) -> list[Node]:
        """Get all nodes (read-only copy)."""
        return list(self._nodes.values())

    def add_node(self, node: Node) -> None:
        """Add a node to the graph."""
        self._nodes[node.id] = node

    def remove_node(self, node_id: NodeId) -> Node | None:
        """
        Remove a node and all its edges.

        Returns the removed node, or None if not found.
        """
        node = self._nodes.pop(node_id, None)
        if node:
            self._edges = [
                e for e in self._edges
                if e.source != node_id and e.target != node_id
            ]
        return node

    def get_node(self, node_id: NodeId) -> Node | None:
        """Get a node by ID."""
        return self._nodes.get(node_id)

    def update_node_data(self, node_id: NodeId, **patch: Any) -> bool:
        """
        Merge a partial update into a node's data record.

        Returns False if the node no longer exists.
        """
        node = self._nodes.get(node_id)
        if node is None:
            return False
        node.data.apply(patch)
        self._notify(node_id)
        return True

    def set_disabled(self, node_id: NodeId, disabled: bool) -> bool:
        return self.update_node_data(node_id, disabled=disabled)

    def add_reference_image(self, node_id: NodeId, image: str) -> bool:
        node = self._nodes.get(node_id)
        if node is None:
            return False
        images = list(node.data.reference_images or [])
        images.append(image)
        return self.update_node_data(node_id, reference_images=images)

    def remove_reference_image(self, node_id: NodeId, index: int) -> bool:
        node = self._nodes.get(node_id)
        if node is None:
            return False
        images = [img for i, img in enumerate(node.data.reference_images or []) if i != index]
        return self.update_node_data(node_id, reference_images=images)

    # --- Edge operations ---

    @property
    def edges(self) -> list[Edge]:
        """Get all edges (read-only copy)."""
        return list(self._edges)

    def add_edge(self, edge: Edge) -> bool:
        """
        Add an edge to the graph.

        Returns False if either endpoint is missing. Several edges may
        target the same port.
        """
        if edge.source not in self._nodes or edge.target not in self._nodes:
            logger.debug("Rejected edge %s: missing endpoint", edge.id)
            return False
        self._edges.append(edge)
        return True

    def connect(
        self,
        source: NodeId,
        target: NodeId,
        target_handle: PortId | None = None,
        source_handle: PortId | None = None,
    ) -> Edge | None:
        """Create and add an edge, returning it on success."""
        edge = Edge.create(source, target, target_handle, source_handle)
        return edge if self.add_edge(edge) else None

    def remove_edge(self, edge_id: str) -> Edge | None:
        """Remove an edge by ID."""
        for i, edge in enumerate(self._edges):
            if edge.id == edge_id:
                return self._edges.pop(i)
        return None

    def incoming(self, node_id: NodeId, handle: PortId | None = None) -> list[Edge]:
        """Get edges into a node, optionally restricted to one port."""
        return [
            e for e in self._edges
            if e.target == node_id and (handle is None or e.target_handle == handle)
        ]

    # --- Listeners ---

    def subscribe(self, listener: Callable[[NodeId], None]) -> Callable[[], None]:
        """Register a change listener. Returns a function that removes it."""
        self._listeners.append(listener)
        return lambda: self._listeners.remove(listener)

    def _notify(self, node_id: NodeId) -> None:
        for listener in list(self._listeners):
            listener(node_id)

    # --- Utility ---

    def clear(self) -> None:
        """Remove all nodes and edges."""
        self._nodes.clear()
        self._edges.clear()

    def __len__(self) -> int:
        """Return the number of nodes."""
        return len(self._nodes)

    def __contains__(self, node_id: NodeId) -> bool:
        """Check if a node exists in the graph."""
        return node_id in self._nodes
