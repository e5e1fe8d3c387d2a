"""Canonical graph data model for the DevOps flow editor.

A flow is a node-link diagram of external DevOps systems:

  GraphNode  — one external system (GitLab, Jenkins, ...) placed on the canvas
  GraphEdge  — a directed relationship between two nodes
  Viewport   — pan/zoom state of the canvas

Wire format (what the rendering collaborator emits and the persistence
collaborator stores) uses the canvas library's camelCase keys:

  {
    "nodes": [
      {
        "id": "gitlab-1700000000000",
        "type": "gitlab",
        "position": {"x": 120, "y": 80},
        "data": {"label": "Gitlab", "integrationType": "gitlab",
                 "integrationId": "int-1", "selectedProjectId": 42},
        "selected": false
      }
    ],
    "edges": [
      {"id": "edge-a-b", "source": "a", "target": "b",
       "sourceHandle": null, "targetHandle": null}
    ],
    "viewport": {"x": 0, "y": 0, "zoom": 1}
  }

Keys the model does not know about are kept in ``extra`` so that a
load → save cycle is lossless.
"""

from __future__ import annotations

import copy
from dataclasses import dataclass, field
from enum import Enum
from typing import Any


# ---------------------------------------------------------------------------
# Node kinds
# ---------------------------------------------------------------------------


class NodeKind(str, Enum):
    """Closed set of node kinds. Every kind except DEFAULT binds to one
    external integration type."""

    GITLAB = "gitlab"
    JENKINS = "jenkins"
    KUBERNETES = "kubernetes"
    SONARQUBE = "sonarqube"
    KEYCLOAK = "keycloak"
    DEFAULT = "default"

    @classmethod
    def parse(cls, value: "NodeKind | str | None") -> "NodeKind":
        """Map a raw type string to a NodeKind. Unknown or empty → DEFAULT."""
        if isinstance(value, NodeKind):
            return value
        if not value:
            return cls.DEFAULT
        try:
            return cls(str(value).lower())
        except ValueError:
            return cls.DEFAULT

    @property
    def display_name(self) -> str:
        """Capitalized kind name used as the default label of a new node."""
        return self.value[:1].upper() + self.value[1:]


# Kinds that can be placed from the palette. DEFAULT nodes only arrive via load.
PLACEABLE_KINDS: frozenset[NodeKind] = frozenset({
    NodeKind.GITLAB,
    NodeKind.JENKINS,
    NodeKind.KUBERNETES,
    NodeKind.SONARQUBE,
    NodeKind.KEYCLOAK,
})


# ---------------------------------------------------------------------------
# Value types
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class Position:
    """Floating-point coordinates, either in screen or canvas space."""

    x: float = 0.0
    y: float = 0.0

    def to_dict(self) -> dict[str, float]:
        return {"x": self.x, "y": self.y}

    @classmethod
    def from_dict(cls, raw: dict[str, Any] | None) -> "Position":
        if not raw:
            return cls()
        return cls(x=float(raw.get("x", 0.0) or 0.0), y=float(raw.get("y", 0.0) or 0.0))


@dataclass(frozen=True)
class Viewport:
    """Pan/zoom state of the canvas."""

    x: float = 0.0
    y: float = 0.0
    zoom: float = 1.0

    def to_dict(self) -> dict[str, float]:
        return {"x": self.x, "y": self.y, "zoom": self.zoom}

    @classmethod
    def from_dict(cls, raw: dict[str, Any] | None) -> "Viewport":
        if not raw:
            return cls()
        return cls(
            x=float(raw.get("x", 0.0) or 0.0),
            y=float(raw.get("y", 0.0) or 0.0),
            zoom=float(raw.get("zoom", 1.0) or 1.0),
        )


DEFAULT_VIEWPORT = Viewport()


# ---------------------------------------------------------------------------
# Nodes and edges
# ---------------------------------------------------------------------------

_NODE_KEYS = frozenset({"id", "type", "position", "data", "selected", "width", "height"})
_EDGE_KEYS = frozenset({"id", "source", "target", "sourceHandle", "targetHandle", "selected"})


@dataclass
class GraphNode:
    """A node on the canvas.

    id:        Unique, caller-generated, opaque (e.g. "jenkins-1700000000000").
    kind:      NodeKind discriminator (wire key: "type").
    position:  Canvas coordinates of the node's top-left corner.
    data:      Open key → value bag: label, description, integrationId,
               integrationType and the kind-specific selected<X> field.
    selected:  Selection flag. Exclusivity is enforced by the GraphStore.
    width/height: Measured dimensions reported by the renderer, if any.
    extra:     Unknown wire keys, preserved for lossless round-trips.
    """

    id: str
    kind: NodeKind = NodeKind.DEFAULT
    position: Position = field(default_factory=Position)
    data: dict[str, Any] = field(default_factory=dict)
    selected: bool = False
    width: float | None = None
    height: float | None = None
    extra: dict[str, Any] = field(default_factory=dict)

    @property
    def label(self) -> str:
        label = self.data.get("label")
        return label if isinstance(label, str) else ""

    def to_dict(self) -> dict[str, Any]:
        out: dict[str, Any] = copy.deepcopy(self.extra)
        out.update({
            "id": self.id,
            "type": self.kind.value,
            "position": self.position.to_dict(),
            "data": copy.deepcopy(self.data),
            "selected": self.selected,
        })
        if self.width is not None:
            out["width"] = self.width
        if self.height is not None:
            out["height"] = self.height
        return out

    @classmethod
    def from_dict(cls, raw: dict[str, Any]) -> "GraphNode":
        return cls(
            id=str(raw.get("id", "")),
            kind=NodeKind.parse(raw.get("type")),
            position=Position.from_dict(raw.get("position")),
            data=copy.deepcopy(raw.get("data") or {}),
            selected=bool(raw.get("selected", False)),
            width=raw.get("width"),
            height=raw.get("height"),
            extra={k: copy.deepcopy(v) for k, v in raw.items() if k not in _NODE_KEYS},
        )


@dataclass
class GraphEdge:
    """A directed edge between two nodes.

    id:            Edge ID. Edges created by connect() use "edge-<source>-<target>".
    source/target: Node IDs. Both must exist in the node list.
    source_handle/target_handle: Opaque sub-anchor identifiers on the nodes.
    """

    id: str
    source: str
    target: str
    source_handle: str | None = None
    target_handle: str | None = None
    selected: bool = False
    extra: dict[str, Any] = field(default_factory=dict)

    def touches(self, node_id: str) -> bool:
        return self.source == node_id or self.target == node_id

    def to_dict(self) -> dict[str, Any]:
        out: dict[str, Any] = copy.deepcopy(self.extra)
        out.update({
            "id": self.id,
            "source": self.source,
            "target": self.target,
            "sourceHandle": self.source_handle,
            "targetHandle": self.target_handle,
        })
        if self.selected:
            out["selected"] = True
        return out

    @classmethod
    def from_dict(cls, raw: dict[str, Any]) -> "GraphEdge":
        return cls(
            id=str(raw.get("id", "")),
            source=str(raw.get("source", "") or ""),
            target=str(raw.get("target", "") or ""),
            source_handle=raw.get("sourceHandle"),
            target_handle=raw.get("targetHandle"),
            selected=bool(raw.get("selected", False)),
            extra={k: copy.deepcopy(v) for k, v in raw.items() if k not in _EDGE_KEYS},
        )


@dataclass(frozen=True)
class Connection:
    """A connect gesture from the renderer: drag from one handle to another."""

    source: str | None
    target: str | None
    source_handle: str | None = None
    target_handle: str | None = None

    @classmethod
    def from_dict(cls, raw: dict[str, Any]) -> "Connection":
        return cls(
            source=raw.get("source"),
            target=raw.get("target"),
            source_handle=raw.get("sourceHandle"),
            target_handle=raw.get("targetHandle"),
        )


def nodes_from_dicts(raw_nodes: list[dict[str, Any]] | None) -> list[GraphNode]:
    """Parse a wire node list. Tolerates None and non-dict entries."""
    return [GraphNode.from_dict(n) for n in raw_nodes or [] if isinstance(n, dict)]


def edges_from_dicts(raw_edges: list[dict[str, Any]] | None) -> list[GraphEdge]:
    """Parse a wire edge list. Tolerates None and non-dict entries."""
    return [GraphEdge.from_dict(e) for e in raw_edges or [] if isinstance(e, dict)]
