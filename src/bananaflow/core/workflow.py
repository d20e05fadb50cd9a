"""
Workflow Files - Save and load workflow graphs as JSON.

A workflow file is ``{"nodes": [...], "edges": [...]}``. Function-valued
entries a UI layer may have attached to node data are stripped on save and
ignored on load; transient run flags (``isLoading``, ``error``) are never
restored.

Rolling snapshots keep the last few autosaves of a session.
"""

from __future__ import annotations

import json
import logging
import time
from dataclasses import dataclass
from datetime import datetime
from pathlib import Path
from typing import Any, Callable

from bananaflow.core.graph import Edge, GraphStore, Node
from bananaflow.core.node_data import TRANSIENT_KEYS


logger = logging.getLogger(__name__)

MAX_SNAPSHOTS = 3


class WorkflowFormatError(ValueError):
    """A workflow document is missing its nodes or edges."""
    pass


def _sanitize(value: Any) -> Any:
    """Drop callables from nested dicts and lists."""
    if isinstance(value, dict):
        return {k: _sanitize(v) for k, v in value.items() if not callable(v)}
    if isinstance(value, list):
        return [_sanitize(v) for v in value if not callable(v)]
    return value


def dump_workflow(store: GraphStore) -> dict[str, Any]:
    """Serialize a graph to plain JSON-compatible data."""
    nodes = []
    for node in store.nodes:
        raw = node.to_dict()
        raw["data"] = {k: v for k, v in raw["data"].items() if k not in TRANSIENT_KEYS}
        nodes.append(_sanitize(raw))
    return {
        "nodes": nodes,
        "edges": [_sanitize(e.to_dict()) for e in store.edges],
    }


def parse_workflow(data: Any) -> GraphStore:
    """
    Build a graph from workflow data.

    Raises:
        WorkflowFormatError: If nodes or edges are missing or malformed.
    """
    if not isinstance(data, dict) or not isinstance(data.get("nodes"), list) \
            or not isinstance(data.get("edges"), list):
        raise WorkflowFormatError("Invalid workflow format: missing nodes or edges array")

    try:
        nodes = [Node.from_dict(raw) for raw in data["nodes"]]
        edges = [Edge.from_dict(raw) for raw in data["edges"]]
    except (KeyError, TypeError, ValueError) as e:
        raise WorkflowFormatError(f"Invalid workflow entry: {e}") from e

    for node in nodes:
        node.data.clear_run_state()

    store = GraphStore(nodes=nodes)
    for edge in edges:
        if not store.add_edge(edge):
            logger.warning("Dropping edge %s with a missing endpoint", edge.id)
    return store


def save_workflow(path: Path, store: GraphStore) -> Path:
    """Save a graph to a JSON file."""
    with open(path, "w", encoding="utf-8") as f:
        json.dump(dump_workflow(store), f, indent=2, ensure_ascii=False)
    return path


def load_workflow(path: Path) -> GraphStore:
    """
    Load a graph from a JSON file.

    Raises:
        WorkflowFormatError: If the file is not a valid workflow.
    """
    try:
        with open(path, encoding="utf-8") as f:
            data = json.load(f)
    except json.JSONDecodeError as e:
        raise WorkflowFormatError(f"Failed to parse workflow: {path}: {e}") from e
    return parse_workflow(data)


@dataclass
class WorkflowSnapshot:
    """An autosaved workflow."""
    id: str
    timestamp: float
    path: Path

    @property
    def date_str(self) -> str:
        return datetime.fromtimestamp(self.timestamp).strftime("%Y-%m-%d %H:%M:%S")

    def load(self) -> GraphStore:
        return load_workflow(self.path)


class SnapshotStore:
    """
    Rolling autosave directory.

    Keeps at most ``max_snapshots`` files, named by millisecond timestamp,
    dropping the oldest first.
    """

    def __init__(
        self,
        directory: Path,
        max_snapshots: int = MAX_SNAPSHOTS,
        clock: Callable[[], float] = time.time,
    ):
        self.directory = Path(directory)
        self.max_snapshots = max_snapshots
        self._clock = clock

    def save(self, store: GraphStore) -> WorkflowSnapshot:
        """Write a snapshot and prune old ones."""
        self.directory.mkdir(parents=True, exist_ok=True)
        now = self._clock()
        snapshot_id = str(int(now * 1000))
        path = self.directory / f"{snapshot_id}.json"
        save_workflow(path, store)

        for old in self.list()[self.max_snapshots:]:
            try:
                old.path.unlink()
            except OSError as e:
                logger.warning("Failed to delete snapshot %s: %s", old.path, e)

        return WorkflowSnapshot(id=snapshot_id, timestamp=now, path=path)

    def list(self) -> list[WorkflowSnapshot]:
        """All snapshots, newest first."""
        if not self.directory.exists():
            return []
        snapshots = []
        for path in self.directory.glob("*.json"):
            if not path.stem.isdigit():
                continue
            snapshots.append(WorkflowSnapshot(
                id=path.stem,
                timestamp=int(path.stem) / 1000,
                path=path,
            ))
        snapshots.sort(key=lambda s: int(s.id), reverse=True)
        return snapshots

    def clear(self) -> None:
        """Delete every snapshot."""
        for snapshot in self.list():
            snapshot.path.unlink(missing_ok=True)
