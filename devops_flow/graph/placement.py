"""Click-to-add placement state machine.

Two states:

  idle          — store.pending_node_type is None
  armed(kind)   — store.pending_node_type == kind

Triggers:

  arm(kind)         idle → armed(kind)
                    armed(kind) → idle            (re-activating cancels)
                    armed(other) → armed(kind)    (switching replaces)
  commit(screen)    armed(kind) → idle, adds exactly one node
                    idle → idle, no-op
  cancel() / Escape armed → idle, no graph mutation

The armed kind is stored on the GraphStore (pending_node_type) so there is a
single process-wide token. Commit is atomic: nothing is written to the graph
until the canvas position is known, and the node goes through the store's
`add` change path like any other renderer-originated insert.
"""

from __future__ import annotations

import logging
from typing import Callable

from devops_flow.graph.changes import NodeAddChange
from devops_flow.graph.model import PLACEABLE_KINDS, GraphNode, NodeKind, Position
from devops_flow.graph.store import GraphStore

logger = logging.getLogger("devops_flow.graph.placement")

# Screen → canvas coordinate transform supplied by the rendering collaborator.
ScreenToCanvas = Callable[[Position], Position]


def _identity(position: Position) -> Position:
    return position


class PlacementStateMachine:
    """Turns "template chosen" + "canvas clicked" into one node insert."""

    def __init__(
        self,
        store: GraphStore,
        screen_to_canvas: ScreenToCanvas | None = None,
    ) -> None:
        self._store = store
        self._screen_to_canvas = screen_to_canvas or _identity

    @property
    def armed_kind(self) -> NodeKind | None:
        return self._store.pending_node_type

    @property
    def is_armed(self) -> bool:
        return self._store.pending_node_type is not None

    @property
    def state(self) -> str:
        kind = self._store.pending_node_type
        return "idle" if kind is None else f"armed({kind.value})"

    def arm(self, kind: NodeKind | str) -> NodeKind | None:
        """Activate a template. Returns the armed kind after the transition.

        Kinds outside the placeable set are ignored.
        """
        parsed = NodeKind.parse(kind)
        if parsed not in PLACEABLE_KINDS:
            logger.debug("arm: %r is not placeable, ignored", kind)
            return self.armed_kind

        if self._store.pending_node_type == parsed:
            self._store.set_pending_node_type(None)
            logger.debug("arm: %s toggled off", parsed.value)
            return None

        self._store.set_pending_node_type(parsed)
        logger.debug("arm: %s", parsed.value)
        return parsed

    def commit(self, screen_position: Position) -> GraphNode | None:
        """Place the armed kind at screen_position.

        Returns the new node, or None when idle.
        """
        kind = self._store.pending_node_type
        if kind is None or kind not in PLACEABLE_KINDS:
            return None

        position = self._screen_to_canvas(screen_position)
        node = GraphNode(
            id=self._store.next_node_id(kind),
            kind=kind,
            position=position,
            data={"label": kind.display_name, "integrationType": kind.value},
        )
        rejected = self._store.apply_node_changes([NodeAddChange(item=node)])
        self._store.set_pending_node_type(None)
        if rejected:
            return None
        logger.debug("commit: %s at (%.1f, %.1f)", node.id, position.x, position.y)
        return node

    def cancel(self) -> None:
        if self._store.pending_node_type is not None:
            self._store.set_pending_node_type(None)
            logger.debug("cancel: placement disarmed")

    def handle_key(self, key: str) -> bool:
        """Route a key press. Returns True when the key was consumed."""
        if key == "Escape" and self.is_armed:
            self.cancel()
            return True
        return False
