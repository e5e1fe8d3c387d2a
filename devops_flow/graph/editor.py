"""Rendering-collaborator adapter.

The canvas (a webview running the node-link renderer) delivers raw events;
FlowEditor routes each one into the GraphStore or the placement machine:

  nodes_changed(changes)        → store.apply_node_changes
  edges_changed(changes)        → store.apply_edge_changes
  connected(connection)         → store.connect
  node_clicked(node_id)         → store.set_selected_node_id
  pane_clicked(screen_pos)      → store.clear_selection, then placement.commit
  viewport_moved(viewport)      → store.set_viewport
  key_pressed(key)              → placement.handle_key (Escape cancels)

The renderer, in turn, exposes a coordinate transform and imperative zoom
calls (the Renderer protocol). ViewportRenderer implements that protocol
against the store's own viewport for hosts that only forward raw events.
"""

from __future__ import annotations

import logging
from typing import Protocol

from devops_flow.graph.changes import DuplicateIdError, EdgeChange, NodeChange
from devops_flow.graph.model import Connection, GraphNode, Position, Viewport
from devops_flow.graph.placement import PlacementStateMachine
from devops_flow.graph.store import GraphStore

logger = logging.getLogger("devops_flow.graph.editor")

FIT_VIEW_PADDING = 0.2
MIN_ZOOM = 0.5
MAX_ZOOM = 2.0
ZOOM_STEP = 1.2

# Size assumed for nodes the renderer has not measured yet.
_DEFAULT_NODE_WIDTH = 200.0
_DEFAULT_NODE_HEIGHT = 80.0


class Renderer(Protocol):
    """What the core needs from the rendering collaborator."""

    def screen_to_canvas_position(self, position: Position) -> Position: ...

    def zoom_in(self) -> None: ...

    def zoom_out(self) -> None: ...

    def fit_view(self, padding: float = FIT_VIEW_PADDING) -> None: ...


class ViewportRenderer:
    """Renderer backed by the GraphStore viewport.

    width/height: size of the visible canvas in screen pixels.
    """

    def __init__(self, store: GraphStore, width: float = 1280.0, height: float = 800.0) -> None:
        self._store = store
        self.width = width
        self.height = height

    def screen_to_canvas_position(self, position: Position) -> Position:
        vp = self._store.viewport
        return Position(x=(position.x - vp.x) / vp.zoom, y=(position.y - vp.y) / vp.zoom)

    def zoom_in(self) -> None:
        self._zoom_by(ZOOM_STEP)

    def zoom_out(self) -> None:
        self._zoom_by(1 / ZOOM_STEP)

    def fit_view(self, padding: float = FIT_VIEW_PADDING) -> None:
        nodes = self._store.nodes
        if not nodes:
            return
        left = min(n.position.x for n in nodes)
        top = min(n.position.y for n in nodes)
        right = max(n.position.x + (n.width or _DEFAULT_NODE_WIDTH) for n in nodes)
        bottom = max(n.position.y + (n.height or _DEFAULT_NODE_HEIGHT) for n in nodes)
        bounds_w = max(right - left, 1.0)
        bounds_h = max(bottom - top, 1.0)

        zoom = min(
            self.width / (bounds_w * (1 + padding)),
            self.height / (bounds_h * (1 + padding)),
        )
        zoom = _clamp_zoom(zoom)
        center_x = left + bounds_w / 2
        center_y = top + bounds_h / 2
        self._store.set_viewport(
            Viewport(x=self.width / 2 - center_x * zoom, y=self.height / 2 - center_y * zoom, zoom=zoom)
        )

    def _zoom_by(self, factor: float) -> None:
        vp = self._store.viewport
        zoom = _clamp_zoom(vp.zoom * factor)
        if zoom == vp.zoom:
            return
        # Keep the canvas point under the screen center fixed.
        cx, cy = self.width / 2, self.height / 2
        scale = zoom / vp.zoom
        self._store.set_viewport(
            Viewport(x=cx - (cx - vp.x) * scale, y=cy - (cy - vp.y) * scale, zoom=zoom)
        )


def _clamp_zoom(zoom: float) -> float:
    return max(MIN_ZOOM, min(MAX_ZOOM, zoom))


class FlowEditor:
    """Routes renderer events into the store and the placement machine."""

    def __init__(
        self,
        store: GraphStore,
        renderer: Renderer,
        placement: PlacementStateMachine | None = None,
    ) -> None:
        self._store = store
        self._renderer = renderer
        self._placement = placement or PlacementStateMachine(store, renderer.screen_to_canvas_position)

    @property
    def store(self) -> GraphStore:
        return self._store

    @property
    def placement(self) -> PlacementStateMachine:
        return self._placement

    # ------------------------------------------------------------------
    # Renderer events
    # ------------------------------------------------------------------

    def nodes_changed(self, changes: list[NodeChange]) -> list[DuplicateIdError]:
        return self._store.apply_node_changes(changes)

    def edges_changed(self, changes: list[EdgeChange]) -> None:
        self._store.apply_edge_changes(changes)

    def connected(self, connection: Connection) -> None:
        self._store.connect(connection)

    def node_clicked(self, node_id: str) -> None:
        self._store.set_selected_node_id(node_id)

    def pane_clicked(self, screen_position: Position) -> GraphNode | None:
        """Clear selection; if a template is armed, place it here."""
        self._store.clear_selection()
        return self._placement.commit(screen_position)

    def viewport_moved(self, viewport: Viewport) -> None:
        self._store.set_viewport(viewport)

    def key_pressed(self, key: str) -> bool:
        return self._placement.handle_key(key)

    # ------------------------------------------------------------------
    # Imperative view controls
    # ------------------------------------------------------------------

    def zoom_in(self) -> None:
        self._renderer.zoom_in()

    def zoom_out(self) -> None:
        self._renderer.zoom_out()

    def fit_view(self, padding: float = FIT_VIEW_PADDING) -> None:
        self._renderer.fit_view(padding)

    # ------------------------------------------------------------------
    # Derived UI state
    # ------------------------------------------------------------------

    @property
    def cursor(self) -> str:
        return "crosshair" if self._placement.is_armed else ""

    @property
    def placement_hint(self) -> str | None:
        kind = self._placement.armed_kind
        if kind is None:
            return None
        return f"Click on canvas to add {kind.display_name} node"
