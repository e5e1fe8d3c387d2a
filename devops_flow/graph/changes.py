"""Change records — typed mutation events emitted by the rendering collaborator.

Each record describes one atomic change to the node or edge collection:

  Node changes:  add | remove | position | dimensions | select | replace
  Edge changes:  add | remove | select | replace

A batch of records is folded against the current collection in array order by
apply_node_changes() / apply_edge_changes(). Both functions are pure: they
never mutate their inputs and return a new list.

Invalid records are dropped from the batch, never raised: the renderer may
emit transiently inconsistent batches within a single UI tick (e.g. an edge
add racing the node add it depends on).
"""

from __future__ import annotations

import dataclasses
import logging
from dataclasses import dataclass
from typing import Any, Collection, Union

from devops_flow.graph.model import GraphEdge, GraphNode, Position

logger = logging.getLogger("devops_flow.graph.changes")


class DuplicateIdError(Exception):
    """An add change collided with a node ID already in the collection, or
    with one deleted earlier in the session.

    Non-fatal: the store logs it and drops the change from the batch.
    """

    def __init__(self, node_id: str, retired: bool = False) -> None:
        if retired:
            super().__init__(f"node id {node_id!r} was deleted and cannot be reused")
        else:
            super().__init__(f"node id {node_id!r} already exists")
        self.node_id = node_id
        self.retired = retired


# ---------------------------------------------------------------------------
# Node change records
# ---------------------------------------------------------------------------


@dataclass
class NodeAddChange:
    """Insert `item`. Rejected when item.id is already present."""

    type: str = "add"
    item: GraphNode | None = None


@dataclass
class NodeRemoveChange:
    """Delete node `id`. No-op when absent."""

    type: str = "remove"
    id: str = ""


@dataclass
class NodePositionChange:
    """Move node `id` to `position` (None while a drag starts without a delta)."""

    type: str = "position"
    id: str = ""
    position: Position | None = None
    dragging: bool | None = None


@dataclass
class NodeDimensionsChange:
    """Renderer-measured size of node `id`."""

    type: str = "dimensions"
    id: str = ""
    width: float | None = None
    height: float | None = None


@dataclass
class NodeSelectChange:
    """Set the selection flag of node `id`."""

    type: str = "select"
    id: str = ""
    selected: bool = False


@dataclass
class NodeReplaceChange:
    """Swap node `id` for `item` wholesale."""

    type: str = "replace"
    id: str = ""
    item: GraphNode | None = None


NodeChange = Union[
    NodeAddChange,
    NodeRemoveChange,
    NodePositionChange,
    NodeDimensionsChange,
    NodeSelectChange,
    NodeReplaceChange,
]


# ---------------------------------------------------------------------------
# Edge change records
# ---------------------------------------------------------------------------


@dataclass
class EdgeAddChange:
    """Append `item`. Dropped when its source or target node does not exist."""

    type: str = "add"
    item: GraphEdge | None = None


@dataclass
class EdgeRemoveChange:
    type: str = "remove"
    id: str = ""


@dataclass
class EdgeSelectChange:
    type: str = "select"
    id: str = ""
    selected: bool = False


@dataclass
class EdgeReplaceChange:
    type: str = "replace"
    id: str = ""
    item: GraphEdge | None = None


EdgeChange = Union[EdgeAddChange, EdgeRemoveChange, EdgeSelectChange, EdgeReplaceChange]


# ---------------------------------------------------------------------------
# Wire parsing
# ---------------------------------------------------------------------------


def node_change_from_dict(d: dict[str, Any]) -> NodeChange:
    """Parse a renderer node-change dict into a typed record.

    Raises ValueError for an unknown change type.
    """
    change_type = d.get("type")
    match change_type:
        case "add":
            item = d.get("item")
            return NodeAddChange(item=GraphNode.from_dict(item) if isinstance(item, dict) else None)
        case "remove":
            return NodeRemoveChange(id=str(d.get("id", "")))
        case "position":
            raw_pos = d.get("position")
            return NodePositionChange(
                id=str(d.get("id", "")),
                position=Position.from_dict(raw_pos) if isinstance(raw_pos, dict) else None,
                dragging=d.get("dragging"),
            )
        case "dimensions":
            dims = d.get("dimensions") or {}
            return NodeDimensionsChange(
                id=str(d.get("id", "")),
                width=dims.get("width"),
                height=dims.get("height"),
            )
        case "select":
            return NodeSelectChange(id=str(d.get("id", "")), selected=bool(d.get("selected")))
        case "replace":
            item = d.get("item")
            return NodeReplaceChange(
                id=str(d.get("id", "")),
                item=GraphNode.from_dict(item) if isinstance(item, dict) else None,
            )
    raise ValueError(
        f"Unknown node change type: {change_type!r}. "
        "Valid types: ['add', 'remove', 'position', 'dimensions', 'select', 'replace']"
    )


def edge_change_from_dict(d: dict[str, Any]) -> EdgeChange:
    """Parse a renderer edge-change dict into a typed record.

    Raises ValueError for an unknown change type.
    """
    change_type = d.get("type")
    match change_type:
        case "add":
            item = d.get("item")
            return EdgeAddChange(item=GraphEdge.from_dict(item) if isinstance(item, dict) else None)
        case "remove":
            return EdgeRemoveChange(id=str(d.get("id", "")))
        case "select":
            return EdgeSelectChange(id=str(d.get("id", "")), selected=bool(d.get("selected")))
        case "replace":
            item = d.get("item")
            return EdgeReplaceChange(
                id=str(d.get("id", "")),
                item=GraphEdge.from_dict(item) if isinstance(item, dict) else None,
            )
    raise ValueError(
        f"Unknown edge change type: {change_type!r}. "
        "Valid types: ['add', 'remove', 'select', 'replace']"
    )


# ---------------------------------------------------------------------------
# Folds
# ---------------------------------------------------------------------------


def apply_node_changes(
    changes: list[NodeChange],
    nodes: list[GraphNode],
    rejected: list[DuplicateIdError] | None = None,
    retired: Collection[str] = (),
) -> list[GraphNode]:
    """Fold `changes` over `nodes` in order and return the new node list.

    The fold runs over an id → node arena (insertion ordered) so every point
    lookup is O(1). Nodes touched by a change are copied with
    dataclasses.replace; untouched nodes are shared with the input list.

    rejected: optional sink collecting DuplicateIdError for dropped adds.
    retired:  ids deleted earlier in the session. Adds reusing one of them,
              or an id removed earlier in the same batch, are dropped.
    """
    arena: dict[str, GraphNode] = {n.id: n for n in nodes}
    removed: set[str] = set()

    for change in changes:
        if isinstance(change, NodeAddChange):
            item = change.item
            if item is None or not item.id:
                logger.debug("onNodesChange: dropping add without a node id")
                continue
            if item.id in arena or item.id in retired or item.id in removed:
                err = DuplicateIdError(item.id, retired=item.id not in arena)
                logger.debug("onNodesChange: dropping add: %s", err)
                if rejected is not None:
                    rejected.append(err)
                continue
            arena[item.id] = item

        elif isinstance(change, NodeRemoveChange):
            if arena.pop(change.id, None) is not None:
                removed.add(change.id)

        elif isinstance(change, NodePositionChange):
            node = arena.get(change.id)
            if node is None:
                continue
            updates: dict[str, Any] = {}
            if change.position is not None:
                updates["position"] = change.position
            if change.dragging is not None:
                extra = dict(node.extra)
                extra["dragging"] = change.dragging
                updates["extra"] = extra
            if updates:
                arena[change.id] = dataclasses.replace(node, **updates)

        elif isinstance(change, NodeDimensionsChange):
            node = arena.get(change.id)
            if node is None:
                continue
            arena[change.id] = dataclasses.replace(
                node,
                width=change.width if change.width is not None else node.width,
                height=change.height if change.height is not None else node.height,
            )

        elif isinstance(change, NodeSelectChange):
            node = arena.get(change.id)
            if node is None or node.selected == change.selected:
                continue
            arena[change.id] = dataclasses.replace(node, selected=change.selected)

        elif isinstance(change, NodeReplaceChange):
            if change.item is None or change.id not in arena:
                continue
            new_id = change.item.id
            if new_id != change.id and (new_id in arena or new_id in retired or new_id in removed):
                logger.debug(
                    "onNodesChange: dropping replace of %s, id %s already used",
                    change.id, new_id,
                )
                continue
            if new_id != change.id:
                removed.add(change.id)
            # Rebuild to keep the replaced node at the same position in order
            arena = {
                (change.item.id if k == change.id else k): (change.item if k == change.id else v)
                for k, v in arena.items()
            }

    return list(arena.values())


def apply_edge_changes(
    changes: list[EdgeChange],
    edges: list[GraphEdge],
    node_ids: set[str],
) -> list[GraphEdge]:
    """Fold `changes` over `edges` in order and return the new edge list.

    Edges are kept in a list, not an id arena: connect() may legitimately
    produce several edges with the same derived id.

    node_ids: IDs of the live node list. Adds and replaces whose endpoints
              are missing from it are dropped.
    """
    result = list(edges)

    for change in changes:
        if isinstance(change, EdgeAddChange):
            item = change.item
            if item is None or not item.id:
                continue
            if item.source not in node_ids or item.target not in node_ids:
                logger.debug(
                    "onEdgesChange: dropping dangling edge %s (%s -> %s)",
                    item.id, item.source, item.target,
                )
                continue
            result.append(item)

        elif isinstance(change, EdgeRemoveChange):
            result = [e for e in result if e.id != change.id]

        elif isinstance(change, EdgeSelectChange):
            result = [
                dataclasses.replace(e, selected=change.selected) if e.id == change.id else e
                for e in result
            ]

        elif isinstance(change, EdgeReplaceChange):
            item = change.item
            if item is None:
                continue
            if item.source not in node_ids or item.target not in node_ids:
                logger.debug("onEdgesChange: dropping dangling replace of %s", change.id)
                continue
            result = [item if e.id == change.id else e for e in result]

    return result
