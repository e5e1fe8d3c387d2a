"""GraphStore — the single writer of the canonical flow graph.

Owns:
  nodes              — id → GraphNode arena (insertion ordered)
  edges              — list of GraphEdge (duplicate ids allowed, see connect())
  viewport           — pan/zoom state mirrored to/from the renderer
  selected_node_id   — the one selected node, or None
  pending_node_type  — the armed placement kind, or None
  is_dirty           — unsaved-changes flag
  current_graph_id   — id of the saved document the graph was loaded from

Every other component reads derived views or issues intents through the
methods below. All methods are synchronous reducers over in-memory state:
there is no I/O and no failure path. Structurally invalid input (duplicate
node id, dangling edge, connect without an endpoint) is dropped and logged
at debug level, never raised.

Invariants maintained after every action:
  - node ids are unique across the live node list
  - a node id deleted in this session is never accepted again
  - every edge's source and target reference a live node
  - at most one node has selected=True, and it is selected_node_id

Observers registered with subscribe() are called after every action with the
action name ("onNodesChange", "updateNode", ...).
"""

from __future__ import annotations

import dataclasses
import logging
import time
from typing import Any, Callable

from devops_flow.graph.changes import (
    DuplicateIdError,
    EdgeChange,
    NodeAddChange,
    NodeChange,
    NodeSelectChange,
    apply_edge_changes,
    apply_node_changes,
)
from devops_flow.graph.model import (
    DEFAULT_VIEWPORT,
    Connection,
    GraphEdge,
    GraphNode,
    NodeKind,
    Viewport,
)

logger = logging.getLogger("devops_flow.graph.store")

StoreListener = Callable[[str], None]


class GraphStore:
    """Explicitly owned, single-writer graph state container.

    Create one per editing session and pass it by reference to the editor,
    placement machine and property editor.

    clock: returns wall-clock seconds; used only by next_node_id(). Tests
           inject a fixed clock to get deterministic ids.
    """

    def __init__(self, clock: Callable[[], float] | None = None) -> None:
        self._clock = clock or time.time
        self._nodes: dict[str, GraphNode] = {}
        self._edges: list[GraphEdge] = []
        self._viewport: Viewport = DEFAULT_VIEWPORT
        self._selected_node_id: str | None = None
        self._pending_node_type: NodeKind | None = None
        self._is_dirty = False
        self._current_graph_id: str | None = None
        self._issued_ids: set[str] = set()
        self._retired_ids: set[str] = set()
        self._listeners: list[StoreListener] = []

    # ------------------------------------------------------------------
    # Read views
    # ------------------------------------------------------------------

    @property
    def nodes(self) -> list[GraphNode]:
        return list(self._nodes.values())

    @property
    def edges(self) -> list[GraphEdge]:
        return list(self._edges)

    @property
    def viewport(self) -> Viewport:
        return self._viewport

    @property
    def selected_node_id(self) -> str | None:
        return self._selected_node_id

    @property
    def pending_node_type(self) -> NodeKind | None:
        return self._pending_node_type

    @property
    def is_dirty(self) -> bool:
        return self._is_dirty

    @property
    def current_graph_id(self) -> str | None:
        return self._current_graph_id

    @property
    def selected_node(self) -> GraphNode | None:
        if self._selected_node_id is None:
            return None
        return self._nodes.get(self._selected_node_id)

    def get_node(self, node_id: str) -> GraphNode | None:
        return self._nodes.get(node_id)

    def connected_edges(self, node_id: str) -> list[GraphEdge]:
        """Edges whose source or target is node_id."""
        return [e for e in self._edges if e.touches(node_id)]

    def snapshot(self) -> dict[str, Any]:
        """Wire-shaped dump of the whole store, used by the HTTP bridge."""
        return {
            "nodes": [n.to_dict() for n in self._nodes.values()],
            "edges": [e.to_dict() for e in self._edges],
            "viewport": self._viewport.to_dict(),
            "selectedNodeId": self._selected_node_id,
            "pendingNodeType": self._pending_node_type.value if self._pending_node_type else None,
            "isDirty": self._is_dirty,
            "currentFlowId": self._current_graph_id,
        }

    # ------------------------------------------------------------------
    # Observers
    # ------------------------------------------------------------------

    def subscribe(self, listener: StoreListener) -> Callable[[], None]:
        """Register listener; returns a callable that unregisters it."""
        self._listeners.append(listener)

        def unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return unsubscribe

    def _emit(self, action: str) -> None:
        for listener in list(self._listeners):
            listener(action)

    # ------------------------------------------------------------------
    # Id generation
    # ------------------------------------------------------------------

    def next_node_id(self, kind: NodeKind | str) -> str:
        """Return a fresh "<kind>-<millis>" id never issued in this session.

        If the clock yields an id already issued (two placements within the
        same millisecond, or a clock that went backwards past a deleted node)
        the millisecond part is bumped until the id is unused.
        """
        prefix = NodeKind.parse(kind).value
        millis = int(self._clock() * 1000)
        candidate = f"{prefix}-{millis}"
        while candidate in self._issued_ids or candidate in self._nodes:
            millis += 1
            candidate = f"{prefix}-{millis}"
        self._issued_ids.add(candidate)
        return candidate

    # ------------------------------------------------------------------
    # Change batches
    # ------------------------------------------------------------------

    def apply_node_changes(self, changes: list[NodeChange]) -> list[DuplicateIdError]:
        """Fold a batch of node changes into the node list.

        Selection is resolved after the fold:
          - a select:true change in the batch makes its node the sole
            selected node (the last one wins when there are several)
          - otherwise, a select:false change clears the selection only if no
            node is still flagged selected
          - otherwise the current selection is kept while its node exists

        Returns the DuplicateIdError for every add that was dropped, whether
        the id is live or was deleted earlier in the session. The errors are
        informational; the rest of the batch is still applied.
        """
        rejected: list[DuplicateIdError] = []
        folded = apply_node_changes(changes, self.nodes, rejected, self._retired_ids)
        self._retire(self._nodes.keys() - {n.id for n in folded})
        self._nodes = {n.id: n for n in folded}
        self._issued_ids.update(self._nodes)

        selects = [c for c in changes if isinstance(c, NodeSelectChange)]
        chosen = [c.id for c in selects if c.selected and c.id in self._nodes]
        if chosen:
            self._selected_node_id = chosen[-1]
        elif selects:
            flagged = [n.id for n in self._nodes.values() if n.selected]
            if not flagged:
                self._selected_node_id = None
            elif self._selected_node_id not in flagged:
                self._selected_node_id = flagged[0]
        elif self._selected_node_id not in self._nodes:
            self._selected_node_id = None

        self._sync_selection_flags()
        self._drop_dangling_edges()
        self._is_dirty = True
        logger.debug(
            "onNodesChange: %d change(s), %d rejected, %d node(s)",
            len(changes), len(rejected), len(self._nodes),
        )
        self._emit("onNodesChange")
        return rejected

    def apply_edge_changes(self, changes: list[EdgeChange]) -> None:
        """Fold a batch of edge changes into the edge list.

        Adds whose source or target is not a live node are dropped silently.
        """
        self._edges = apply_edge_changes(changes, self._edges, set(self._nodes))
        self._is_dirty = True
        logger.debug("onEdgesChange: %d change(s), %d edge(s)", len(changes), len(self._edges))
        self._emit("onEdgesChange")

    # ------------------------------------------------------------------
    # Graph mutations
    # ------------------------------------------------------------------

    def connect(self, connection: Connection) -> GraphEdge | None:
        """Append an edge "edge-<source>-<target>" for a connect gesture.

        No-op (returns None) when source or target is empty or is not a
        live node. Repeated connects between the same pair append another
        edge with the same id.
        """
        source, target = connection.source, connection.target
        if not source or not target:
            logger.debug("onConnect: ignored, missing endpoint (%r -> %r)", source, target)
            return None
        if source not in self._nodes or target not in self._nodes:
            logger.debug("onConnect: ignored, dangling endpoint (%s -> %s)", source, target)
            return None

        edge = GraphEdge(
            id=f"edge-{source}-{target}",
            source=source,
            target=target,
            source_handle=connection.source_handle,
            target_handle=connection.target_handle,
        )
        self._edges.append(edge)
        self._is_dirty = True
        logger.debug("onConnect: %s", edge.id)
        self._emit("onConnect")
        return edge

    def add_node(self, node: GraphNode) -> bool:
        """Append node directly. Returns False when its id is live or was deleted."""
        rejected: list[DuplicateIdError] = []
        folded = apply_node_changes([NodeAddChange(item=node)], self.nodes, rejected, self._retired_ids)
        if rejected:
            logger.debug("addNode: %s", rejected[0])
            return False
        self._nodes = {n.id: n for n in folded}
        self._issued_ids.add(node.id)
        self._sync_selection_flags()
        self._is_dirty = True
        logger.debug("addNode: %s (%s)", node.id, node.kind.value)
        self._emit("addNode")
        return True

    def update_node(self, node_id: str, partial_data: dict[str, Any]) -> bool:
        """Shallow-merge partial_data into the node's data bag.

        Key names are not validated. A value of None removes the key, which
        is how dependent fields are cleared. Returns False for an unknown id.
        """
        node = self._nodes.get(node_id)
        if node is None:
            logger.debug("updateNode: unknown node %s", node_id)
            return False

        data = dict(node.data)
        for key, value in partial_data.items():
            if value is None:
                data.pop(key, None)
            else:
                data[key] = value
        self._nodes[node_id] = dataclasses.replace(node, data=data)
        self._is_dirty = True
        logger.debug("updateNode: %s keys=%s", node_id, sorted(partial_data))
        self._emit("updateNode")
        return True

    def delete_node(self, node_id: str) -> bool:
        """Remove the node and every edge touching it. Clears selection if it
        was the selected node. Returns False for an unknown id."""
        if node_id not in self._nodes:
            logger.debug("deleteNode: unknown node %s", node_id)
            return False
        del self._nodes[node_id]
        self._retire({node_id})
        before = len(self._edges)
        self._edges = [e for e in self._edges if not e.touches(node_id)]
        if self._selected_node_id == node_id:
            self._selected_node_id = None
        self._is_dirty = True
        logger.debug("deleteNode: %s (cascaded %d edge(s))", node_id, before - len(self._edges))
        self._emit("deleteNode")
        return True

    def delete_edge(self, edge_id: str) -> None:
        self._edges = [e for e in self._edges if e.id != edge_id]
        self._is_dirty = True
        logger.debug("deleteEdge: %s", edge_id)
        self._emit("deleteEdge")

    def set_nodes(self, nodes: list[GraphNode]) -> None:
        """Replace the node list wholesale. Edges left dangling are removed."""
        kept = self._dedupe(nodes)
        self._retire(self._nodes.keys() - kept.keys())
        self._nodes = kept
        self._issued_ids.update(self._nodes)
        if self._selected_node_id not in self._nodes:
            self._selected_node_id = None
        self._sync_selection_flags()
        self._drop_dangling_edges()
        self._is_dirty = True
        logger.debug("setNodes: %d node(s)", len(self._nodes))
        self._emit("setNodes")

    def set_edges(self, edges: list[GraphEdge]) -> None:
        """Replace the edge list wholesale. Dangling edges are dropped."""
        self._edges = list(edges)
        self._drop_dangling_edges()
        self._is_dirty = True
        logger.debug("setEdges: %d edge(s)", len(self._edges))
        self._emit("setEdges")

    # ------------------------------------------------------------------
    # Selection, placement and viewport
    # ------------------------------------------------------------------

    def set_selected_node_id(self, node_id: str | None) -> None:
        """Authoritative single-selection setter.

        Every node's selected flag is recomputed from node_id. An id that is
        not a live node is treated as None.
        """
        if node_id is not None and node_id not in self._nodes:
            logger.debug("setSelectedNodeId: unknown node %s, clearing selection", node_id)
            node_id = None
        self._selected_node_id = node_id
        self._sync_selection_flags()
        logger.debug("setSelectedNodeId: %s", node_id)
        self._emit("setSelectedNodeId")

    def clear_selection(self) -> None:
        self._selected_node_id = None
        self._sync_selection_flags()
        logger.debug("clearSelection")
        self._emit("clearSelection")

    def set_pending_node_type(self, kind: NodeKind | str | None) -> None:
        """Arm (kind) or disarm (None) click-to-add placement."""
        self._pending_node_type = None if kind is None else NodeKind.parse(kind)
        logger.debug(
            "setPendingNodeType: %s",
            self._pending_node_type.value if self._pending_node_type else None,
        )
        self._emit("setPendingNodeType")

    def set_viewport(self, viewport: Viewport) -> None:
        self._viewport = viewport
        logger.debug("setViewport: %s", viewport)
        self._emit("setViewport")

    # ------------------------------------------------------------------
    # Document lifecycle
    # ------------------------------------------------------------------

    def load_graph(
        self,
        nodes: list[GraphNode],
        edges: list[GraphEdge],
        viewport: Viewport | None = None,
    ) -> None:
        """Replace the whole graph from a saved document.

        Duplicate node ids keep their first occurrence, dangling edges are
        dropped, selection is cleared and the graph is marked clean.
        """
        self._nodes = self._dedupe(nodes)
        self._issued_ids.update(self._nodes)
        self._edges = list(edges)
        self._drop_dangling_edges()
        self._viewport = viewport or DEFAULT_VIEWPORT
        self._selected_node_id = None
        self._sync_selection_flags()
        self._is_dirty = False
        logger.debug("loadFlow: %d node(s), %d edge(s)", len(self._nodes), len(self._edges))
        self._emit("loadFlow")

    def reset_graph(self) -> None:
        """Empty graph, default viewport, no current document."""
        self._nodes = {}
        self._edges = []
        self._viewport = DEFAULT_VIEWPORT
        self._selected_node_id = None
        self._is_dirty = False
        self._current_graph_id = None
        logger.debug("resetFlow")
        self._emit("resetFlow")

    def set_current_graph_id(self, graph_id: str | None) -> None:
        self._current_graph_id = graph_id
        logger.debug("setCurrentFlowId: %s", graph_id)
        self._emit("setCurrentFlowId")

    def mark_dirty(self, dirty: bool) -> None:
        self._is_dirty = dirty
        logger.debug("markDirty: %s", dirty)
        self._emit("markDirty")

    # ------------------------------------------------------------------
    # Internal helpers
    # ------------------------------------------------------------------

    def _retire(self, node_ids: set[str]) -> None:
        self._retired_ids.update(node_ids)
        self._issued_ids.update(node_ids)

    @staticmethod
    def _dedupe(nodes: list[GraphNode]) -> dict[str, GraphNode]:
        arena: dict[str, GraphNode] = {}
        for node in nodes:
            if not node.id or node.id in arena:
                logger.debug("dropping node with empty or duplicate id %r", node.id)
                continue
            arena[node.id] = node
        return arena

    def _sync_selection_flags(self) -> None:
        selected = self._selected_node_id
        for node_id, node in list(self._nodes.items()):
            flag = node_id == selected
            if node.selected != flag:
                self._nodes[node_id] = dataclasses.replace(node, selected=flag)

    def _drop_dangling_edges(self) -> None:
        live = self._nodes
        kept = [e for e in self._edges if e.source in live and e.target in live]
        if len(kept) != len(self._edges):
            logger.debug("dropping %d dangling edge(s)", len(self._edges) - len(kept))
            self._edges = kept
