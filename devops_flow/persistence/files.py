"""File-backed graph repository.

One JSON document per saved graph under <data_dir>/flows/<id>.json:

    {
      "id": "flow-1700000000000",
      "name": "Flow 2023-11-14",
      "created_at": "2023-11-14T22:13:20Z",
      "updated_at": "2023-11-14T22:15:02Z",
      "nodes": [...],          # wire-format nodes, stored verbatim
      "edges": [...],          # wire-format edges, stored verbatim
      "viewport": {"x": 0, "y": 0, "zoom": 1}
    }

Writes are atomic: the document goes to <id>.tmp first and is renamed over
the target. Flow ids are restricted to [A-Za-z0-9_-] before touching the
filesystem; an id with nothing left after that is rejected.
"""

from __future__ import annotations

import datetime
import json
import logging
import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Callable

logger = logging.getLogger("devops_flow.persistence.files")

MAX_ID_LENGTH = 100
MAX_NAME_LENGTH = 200


class GraphStorageError(Exception):
    """Base class for repository failures."""


class GraphNotFoundError(GraphStorageError):
    def __init__(self, flow_id: str) -> None:
        super().__init__(f"Flow not found: {flow_id}")
        self.flow_id = flow_id


class InvalidGraphIdError(GraphStorageError):
    """Flow id or name failed validation."""


@dataclass(frozen=True)
class GraphMetadata:
    id: str
    name: str
    created_at: str
    updated_at: str

    def to_dict(self) -> dict[str, str]:
        return {
            "id": self.id,
            "name": self.name,
            "created_at": self.created_at,
            "updated_at": self.updated_at,
        }


@dataclass
class SavedGraph:
    id: str
    name: str
    created_at: str
    updated_at: str
    nodes: list[dict[str, Any]] = field(default_factory=list)
    edges: list[dict[str, Any]] = field(default_factory=list)
    viewport: dict[str, Any] | None = None

    @property
    def metadata(self) -> GraphMetadata:
        return GraphMetadata(self.id, self.name, self.created_at, self.updated_at)

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "name": self.name,
            "created_at": self.created_at,
            "updated_at": self.updated_at,
            "nodes": self.nodes,
            "edges": self.edges,
            "viewport": self.viewport,
        }

    @classmethod
    def from_dict(cls, raw: dict[str, Any]) -> "SavedGraph":
        """Raises ValueError when a required field is missing or mistyped."""
        for key in ("id", "name", "created_at", "updated_at"):
            if not isinstance(raw.get(key), str):
                raise ValueError(f"missing or invalid field {key!r}")
        nodes = raw.get("nodes") or []
        edges = raw.get("edges") or []
        viewport = raw.get("viewport")
        if not isinstance(nodes, list) or not isinstance(edges, list):
            raise ValueError("'nodes' and 'edges' must be arrays")
        if viewport is not None and not isinstance(viewport, dict):
            raise ValueError("'viewport' must be an object")
        return cls(
            id=raw["id"],
            name=raw["name"],
            created_at=raw["created_at"],
            updated_at=raw["updated_at"],
            nodes=nodes,
            edges=edges,
            viewport=viewport,
        )


def _utc_now() -> str:
    now = datetime.datetime.now(datetime.timezone.utc).replace(microsecond=0)
    return now.isoformat().replace("+00:00", "Z")


def sanitize_flow_id(flow_id: str) -> str:
    """Validate flow_id and strip every character outside [A-Za-z0-9_-].

    Raises InvalidGraphIdError for an empty, too long or fully stripped id.
    """
    if not flow_id or not flow_id.strip():
        raise InvalidGraphIdError("Flow ID cannot be empty")
    if len(flow_id) > MAX_ID_LENGTH:
        raise InvalidGraphIdError(f"Flow ID exceeds {MAX_ID_LENGTH} characters")
    sanitized = "".join(c for c in flow_id if (c.isascii() and c.isalnum()) or c in "-_")
    if not sanitized:
        raise InvalidGraphIdError("Flow ID cannot be empty")
    return sanitized


class GraphRepository:
    """Saved graphs under <data_dir>/flows.

    now: returns the timestamp string written to created_at / updated_at.
    """

    def __init__(self, data_dir: Path | str, now: Callable[[], str] | None = None) -> None:
        self._flows_dir = Path(data_dir).expanduser() / "flows"
        self._now = now or _utc_now

    @property
    def flows_dir(self) -> Path:
        return self._flows_dir

    def _path(self, flow_id: str) -> Path:
        return self._flows_dir / f"{sanitize_flow_id(flow_id)}.json"

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    def list_graphs(self) -> list[GraphMetadata]:
        """Metadata of every readable graph, most recently updated first."""
        if not self._flows_dir.exists():
            return []
        graphs: list[GraphMetadata] = []
        for path in self._flows_dir.glob("*.json"):
            try:
                raw = json.loads(path.read_text(encoding="utf-8"))
                graphs.append(SavedGraph.from_dict(raw).metadata)
            except (OSError, ValueError, AttributeError) as e:
                logger.warning("Skipping unreadable flow file %s: %s", path, e)
        graphs.sort(key=lambda g: g.updated_at, reverse=True)
        logger.debug("Listed %d flow(s)", len(graphs))
        return graphs

    def load_graph(self, flow_id: str) -> SavedGraph:
        path = self._path(flow_id)
        if not path.exists():
            raise GraphNotFoundError(flow_id)
        try:
            graph = SavedGraph.from_dict(json.loads(path.read_text(encoding="utf-8")))
        except (OSError, ValueError, AttributeError) as e:
            logger.error("Failed to read flow %s: %s", flow_id, e)
            raise GraphStorageError(f"Failed to read flow {flow_id}: {e}") from e
        logger.info("Loaded flow %s", flow_id)
        return graph

    # ------------------------------------------------------------------
    # Mutations
    # ------------------------------------------------------------------

    def save_graph(
        self,
        flow_id: str,
        name: str,
        nodes: list[dict[str, Any]],
        edges: list[dict[str, Any]],
        viewport: dict[str, Any] | None,
    ) -> SavedGraph:
        """Create or overwrite a graph document. created_at survives overwrites."""
        if not name or not name.strip():
            raise InvalidGraphIdError("Flow name cannot be empty")
        if len(name) > MAX_NAME_LENGTH:
            raise InvalidGraphIdError(f"Flow name exceeds {MAX_NAME_LENGTH} characters")
        path = self._path(flow_id)

        now = self._now()
        created_at = now
        if path.exists():
            try:
                created_at = SavedGraph.from_dict(
                    json.loads(path.read_text(encoding="utf-8"))
                ).created_at
            except (OSError, ValueError, AttributeError) as e:
                logger.warning("Existing flow file %s unreadable, overwriting: %s", path, e)

        graph = SavedGraph(
            id=flow_id,
            name=name,
            created_at=created_at,
            updated_at=now,
            nodes=nodes,
            edges=edges,
            viewport=viewport,
        )

        self._flows_dir.mkdir(parents=True, exist_ok=True)
        tmp_path = path.with_suffix(".tmp")
        try:
            tmp_path.write_text(json.dumps(graph.to_dict(), indent=2), encoding="utf-8")
            os.replace(tmp_path, path)
        except OSError as e:
            logger.error("Failed to write flow %s: %s", flow_id, e)
            try:
                tmp_path.unlink(missing_ok=True)
            except OSError as cleanup_err:
                logger.warning("Failed to remove temp file %s: %s", tmp_path, cleanup_err)
            raise GraphStorageError(f"Failed to write flow {flow_id}: {e}") from e

        logger.info("Saved flow %s (%s) to %s", flow_id, name, path)
        return graph

    def delete_graph(self, flow_id: str) -> None:
        path = self._path(flow_id)
        if not path.exists():
            raise GraphNotFoundError(flow_id)
        try:
            path.unlink()
        except OSError as e:
            logger.error("Failed to delete flow %s: %s", flow_id, e)
            raise GraphStorageError(f"Failed to delete flow {flow_id}: {e}") from e
        logger.info("Deleted flow %s", flow_id)
