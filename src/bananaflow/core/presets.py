"""
Presets - Built-in workflow templates.

Each preset returns a fresh GraphStore laid out left to right. When a
source image is given, the root is a generate node holding it as an upload;
otherwise it is an empty prompt node to fill in.
"""

from __future__ import annotations

from bananaflow.core.graph import IMAGE_PORT, PROMPT_PORT, Edge, GraphStore, Node
from bananaflow.core.node_data import NodeKind


SOURCE_LAYER_PROMPTS = {
    "lyr_main": "Keep only main subject, remove background, transparent bg",
    "lyr_bg": "Remove subject, clean background plate",
    "lyr_line": "Black and white line art, vector outlines",
    "lyr_color": "Flat color blocks, posterize, no details",
}

VECTOR_STYLE_PROMPT = "Vector art style, flat colors, sharp edges"

VECTOR_LAYER_PROMPTS = {
    "l_outline": "Black outlines only, white background",
    "l_primary": "Primary colors only",
    "l_secondary": "Secondary shading colors",
}


def _node(kind: NodeKind, node_id: str, x: float, y: float, **data) -> Node:
    node = Node.create(kind, node_id=node_id, **data)
    node.extra["position"] = {"x": x, "y": y}
    return node


def _root(node_id: str, image: str | None, text: str | None = None) -> Node:
    if image:
        return _node(NodeKind.GENERATE, node_id, 0, 200, uploaded_image=image)
    return _node(NodeKind.PROMPT, node_id, 0, 200, text=text)


def _edge(edge_id: str, source: str, target: str, target_handle: str, source_handle: str | None = None) -> Edge:
    return Edge(
        id=edge_id,
        source=source,
        target=target,
        source_handle=source_handle,
        target_handle=target_handle,
    )


def source_layers_workflow(image: str | None = None) -> GraphStore:
    """
    Split an image into editable layers.

    root -> enhance -> four edit nodes (subject, background, line art,
    color blocks), each driven by its own prompt node.
    """
    nodes = [
        _root("src_root", image, text=None if image else "Describe your subject"),
        _node(NodeKind.ENHANCE, "src_enhance", 400, 200),
    ]
    edges = [
        _edge("e1", "src_root", "src_enhance", IMAGE_PORT, "image" if image else "text"),
    ]

    for i, (layer_id, text) in enumerate(SOURCE_LAYER_PROMPTS.items()):
        prompt_id = "p_" + layer_id.removeprefix("lyr_")
        nodes.append(_node(NodeKind.EDIT, layer_id, 800, i * 200, text=text))
        nodes.append(_node(NodeKind.PROMPT, prompt_id, 600, i * 200 - 50, text=text))
        edges.append(_edge(f"e{i + 2}", "src_enhance", layer_id, IMAGE_PORT, "image"))
        edges.append(_edge(f"ep{i + 1}", prompt_id, layer_id, PROMPT_PORT, "text"))

    return GraphStore(nodes=nodes, edges=edges)


def vector_separation_workflow(image: str | None = None) -> GraphStore:
    """
    Vectorize an image and separate it into color layers.

    root -> enhance -> vector restyle -> outline/primary/secondary layers.
    """
    nodes = [
        _root("v_root", image),
        _node(NodeKind.ENHANCE, "v_enhance", 350, 200),
        _node(NodeKind.EDIT, "v_vector", 700, 200, text=VECTOR_STYLE_PROMPT),
        _node(NodeKind.PROMPT, "p_vector", 500, 50, text=VECTOR_STYLE_PROMPT),
    ]
    edges = [
        _edge("e_v1", "v_root", "v_enhance", IMAGE_PORT),
        _edge("e_v2", "v_enhance", "v_vector", IMAGE_PORT),
        _edge("e_p_v", "p_vector", "v_vector", PROMPT_PORT),
    ]

    for i, (layer_id, text) in enumerate(VECTOR_LAYER_PROMPTS.items(), start=1):
        prompt_id = "p_" + layer_id.removeprefix("l_")
        y = (i - 1) * 200
        nodes.append(_node(NodeKind.EDIT, layer_id, 1100, y))
        nodes.append(_node(NodeKind.PROMPT, prompt_id, 900, y, text=text))
        edges.append(_edge(f"e_l{i}", "v_vector", layer_id, IMAGE_PORT))
        edges.append(_edge(f"e_p{i}", prompt_id, layer_id, PROMPT_PORT))

    return GraphStore(nodes=nodes, edges=edges)


PRESETS = {
    "source-layers": source_layers_workflow,
    "vector-separation": vector_separation_workflow,
}
