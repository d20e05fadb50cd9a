"""
Input Resolution - Compute the effective inputs of a node from the graph.

All functions here are synchronous and never mutate the graph. Missing
optional data resolves to None; only a wholly missing required input raises
MissingInputError.

Image precedence on any node is fixed: a node's own result (``image``)
beats its ``uploaded_image``, then ``reference_images[0]``, then ``sketch``,
and only then is the upstream "image" edge followed.
"""

from __future__ import annotations

from collections.abc import Iterable, Mapping
from dataclasses import dataclass, field

from bananaflow.core.graph import IMAGE_PORT, PROMPT_PORT, Edge, Node, NodeId, PortId


NodesLike = Mapping[NodeId, Node] | Iterable[Node]


class MissingInputError(Exception):
    """A required prompt or image is absent."""
    pass


@dataclass
class ResolvedInputs:
    """Effective inputs of a generate run."""
    prompts: list[str] = field(default_factory=list)
    images: list[str] = field(default_factory=list)


def index_nodes(nodes: NodesLike) -> Mapping[NodeId, Node]:
    """Return nodes as an id -> node mapping."""
    if isinstance(nodes, Mapping):
        return nodes
    return {n.id: n for n in nodes}


def incoming_edges(
    node_id: NodeId,
    edges: Iterable[Edge],
    handle: PortId | None = None,
) -> list[Edge]:
    """Edges targeting ``node_id``, optionally only on ``handle``."""
    return [
        e for e in edges
        if e.target == node_id and (handle is None or e.target_handle == handle)
    ]


def _is_active(node: Node | None) -> bool:
    return node is not None and not node.data.disabled


def resolve_image(
    node: Node | None,
    nodes: NodesLike,
    edges: list[Edge],
    visited: set[NodeId] | None = None,
) -> str | None:
    """
    Find the image a node offers downstream.

    Walks upstream along "image" edges until a node with a materialized
    image is found. ``visited`` is shared across the walk so cycles end.
    """
    if visited is None:
        visited = set()
    if node is None or node.id in visited:
        return None
    visited.add(node.id)

    data = node.data
    if data.image:
        return data.image
    if data.uploaded_image:
        return data.uploaded_image
    if data.reference_images:
        return data.reference_images[0]
    if data.sketch:
        return data.sketch

    lookup = index_nodes(nodes)
    for edge in edges:
        if edge.target == node.id and edge.target_handle == IMAGE_PORT:
            return resolve_image(lookup.get(edge.source), lookup, edges, visited)
    return None


def resolve_run_inputs(target: Node, nodes: NodesLike, edges: list[Edge]) -> ResolvedInputs:
    """
    Resolve prompts and reference images for a generate node.

    Raises:
        MissingInputError: No prompt source, or every source is empty or
            disabled.
    """
    lookup = index_nodes(nodes)
    inbound = incoming_edges(target.id, edges)

    prompt_edges = [e for e in inbound if e.target_handle == PROMPT_PORT]
    if not prompt_edges:
        prompt_edges = [
            e for e in inbound
            if e.source in lookup and lookup[e.source].kind.produces_text
        ]
    if not prompt_edges:
        raise MissingInputError("Connect at least one prompt node.")

    # A source wired twice still contributes its text once.
    prompt_sources = list(dict.fromkeys(e.source for e in prompt_edges))
    prompts = []
    for source_id in prompt_sources:
        source = lookup.get(source_id)
        if _is_active(source) and source.data.text:
            prompts.append(source.data.text)
    if not prompts:
        raise MissingInputError("Prompt sources have no text or are disabled.")

    images: list[str] = []
    for edge in inbound:
        source = lookup.get(edge.source)
        if source is None:
            continue
        # Untagged edges from non-text nodes are treated as image edges.
        inferred = edge.source not in prompt_sources and not source.kind.produces_text
        if edge.target_handle != IMAGE_PORT and not inferred:
            continue
        if source.data.disabled:
            continue
        image = resolve_image(source, lookup, edges)
        if image:
            images.append(image)

    data = target.data
    if data.reference_images:
        images.extend(data.reference_images)
    if data.uploaded_image and data.reference_images is None:
        images.append(data.uploaded_image)
    if data.sketch:
        images.append(data.sketch)

    return ResolvedInputs(prompts=prompts, images=images)


def resolve_port_image(
    node: Node,
    nodes: NodesLike,
    edges: list[Edge],
    handle: PortId = IMAGE_PORT,
    use_uploaded: bool = True,
) -> str | None:
    """
    Resolve the single input image of a node on ``handle``.

    The node's own upload wins; otherwise the first active source on the
    port is resolved upstream.
    """
    if use_uploaded and node.data.uploaded_image:
        return node.data.uploaded_image
    lookup = index_nodes(nodes)
    for edge in incoming_edges(node.id, edges, handle):
        source = lookup.get(edge.source)
        if _is_active(source):
            return resolve_image(source, lookup, edges)
    return None


def resolve_port_text(
    node: Node,
    nodes: NodesLike,
    edges: list[Edge],
    handle: PortId = PROMPT_PORT,
) -> str | None:
    """Text of the first active source on ``handle`` that has any."""
    lookup = index_nodes(nodes)
    for edge in incoming_edges(node.id, edges, handle):
        source = lookup.get(edge.source)
        if _is_active(source) and source.data.text:
            return source.data.text
    return None
