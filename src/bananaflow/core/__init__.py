"""
Core module - Graph, input resolution, scheduling and dispatch.

This module provides the building blocks of a BananaFlow workflow:
- Graph: Nodes, edges and the graph store
- Node Data: Per-kind data records
- Resolution: Effective inputs of a node
- Scheduler: Serialized, rate-limited service access
- Dispatcher: Running nodes and writing their results back
- Workflow: JSON files, snapshots and presets
- Planner: Workflows designed by the service from a request
"""

from bananaflow.core.graph import (
    GARMENT_PORT,
    IMAGE_PORT,
    MODEL_PORT,
    PROMPT_PORT,
    Edge,
    GraphStore,
    Node,
    NodeId,
    PortId,
    new_edge_id,
    new_node_id,
)

from bananaflow.core.node_data import (
    NodeData,
    NodeKind,
    data_type_for,
)

from bananaflow.core.resolution import (
    MissingInputError,
    ResolvedInputs,
    resolve_image,
    resolve_port_image,
    resolve_port_text,
    resolve_run_inputs,
)

from bananaflow.core.scheduler import (
    QueueStatus,
    RequestScheduler,
    RetryPolicy,
    configure_scheduler,
    get_queue_status,
    get_scheduler,
    is_transient,
)

from bananaflow.core.dispatcher import (
    NodeDispatcher,
    RunState,
)

from bananaflow.core.workflow import (
    SnapshotStore,
    WorkflowFormatError,
    load_workflow,
    parse_workflow,
    save_workflow,
)

from bananaflow.core.presets import (
    PRESETS,
    source_layers_workflow,
    vector_separation_workflow,
)

from bananaflow.core.planner import (
    WorkflowPlan,
    plan_workflow,
)


__all__ = [
    # graph.py
    "GARMENT_PORT",
    "IMAGE_PORT",
    "MODEL_PORT",
    "PROMPT_PORT",
    "Edge",
    "GraphStore",
    "Node",
    "NodeId",
    "PortId",
    "new_edge_id",
    "new_node_id",
    # node_data.py
    "NodeData",
    "NodeKind",
    "data_type_for",
    # resolution.py
    "MissingInputError",
    "ResolvedInputs",
    "resolve_image",
    "resolve_port_image",
    "resolve_port_text",
    "resolve_run_inputs",
    # scheduler.py
    "QueueStatus",
    "RequestScheduler",
    "RetryPolicy",
    "configure_scheduler",
    "get_queue_status",
    "get_scheduler",
    "is_transient",
    # dispatcher.py
    "NodeDispatcher",
    "RunState",
    # workflow.py
    "SnapshotStore",
    "WorkflowFormatError",
    "load_workflow",
    "parse_workflow",
    "save_workflow",
    # presets.py
    "PRESETS",
    "source_layers_workflow",
    "vector_separation_workflow",
    # planner.py
    "WorkflowPlan",
    "plan_workflow",
]
