"""Graph-editing core: model, change folds, store, placement and renderer adapter.

Public surface:
    NodeKind, GraphNode, GraphEdge, Position, Viewport, Connection — graph model
    node_change_from_dict / edge_change_from_dict                   — renderer change parsing
    apply_node_changes / apply_edge_changes                         — pure change folds
    GraphStore                — single source of truth for one editing session
    PlacementStateMachine     — click-to-add (idle / armed(kind))
    FlowEditor                — routes renderer events into the store
    ViewportRenderer          — store-backed coordinate transform and zoom

The palette lives in graph.palette and is imported from there directly.
"""

from devops_flow.graph.changes import (
    DuplicateIdError,
    apply_edge_changes,
    apply_node_changes,
    edge_change_from_dict,
    node_change_from_dict,
)
from devops_flow.graph.editor import FlowEditor, ViewportRenderer
from devops_flow.graph.model import (
    Connection,
    GraphEdge,
    GraphNode,
    NodeKind,
    Position,
    Viewport,
)
from devops_flow.graph.placement import PlacementStateMachine
from devops_flow.graph.store import GraphStore

__all__ = [
    "Connection",
    "DuplicateIdError",
    "FlowEditor",
    "GraphEdge",
    "GraphNode",
    "GraphStore",
    "NodeKind",
    "PlacementStateMachine",
    "Position",
    "Viewport",
    "ViewportRenderer",
    "apply_edge_changes",
    "apply_node_changes",
    "edge_change_from_dict",
    "node_change_from_dict",
]
