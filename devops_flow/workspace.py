"""Document workspace — toolbar actions over the GraphStore and GraphRepository.

  new_graph()          reset the store to an empty, clean, unsaved graph
  open(flow_id)        load a saved graph and make it the current document
  save(name=None)      save under the current id, or a new "flow-<millis>" id
  delete_current()     delete the current document and reset the store
  list_graphs()        saved graph metadata, most recent first
"""

from __future__ import annotations

import datetime
import logging
import time
from typing import Callable

from devops_flow.graph.model import Viewport, edges_from_dicts, nodes_from_dicts
from devops_flow.graph.store import GraphStore
from devops_flow.persistence.files import GraphMetadata, GraphRepository, SavedGraph

logger = logging.getLogger("devops_flow.workspace")


class Workspace:
    def __init__(
        self,
        store: GraphStore,
        repository: GraphRepository,
        clock: Callable[[], float] | None = None,
    ) -> None:
        self._store = store
        self._repository = repository
        self._clock = clock or time.time
        self._current_name: str | None = None

    @property
    def store(self) -> GraphStore:
        return self._store

    @property
    def repository(self) -> GraphRepository:
        return self._repository

    @property
    def current_name(self) -> str | None:
        return self._current_name if self._store.current_graph_id else None

    def list_graphs(self) -> list[GraphMetadata]:
        return self._repository.list_graphs()

    def new_graph(self) -> None:
        self._store.reset_graph()
        self._current_name = None

    def open(self, flow_id: str) -> SavedGraph:
        """Raises GraphNotFoundError / GraphStorageError from the repository."""
        graph = self._repository.load_graph(flow_id)
        self._store.load_graph(
            nodes_from_dicts(graph.nodes),
            edges_from_dicts(graph.edges),
            Viewport.from_dict(graph.viewport) if graph.viewport else None,
        )
        self._store.set_current_graph_id(graph.id)
        self._current_name = graph.name
        return graph

    def save(self, name: str | None = None) -> SavedGraph:
        """Persist the store. Clears the dirty flag and sets the current id."""
        flow_id = self._store.current_graph_id or f"flow-{int(self._clock() * 1000)}"
        if not name:
            name = self.current_name or self._default_name()

        snapshot = self._store.snapshot()
        graph = self._repository.save_graph(
            flow_id,
            name,
            snapshot["nodes"],
            snapshot["edges"],
            snapshot["viewport"],
        )
        self._store.set_current_graph_id(flow_id)
        self._store.mark_dirty(False)
        self._current_name = name
        return graph

    def delete_current(self) -> bool:
        """Delete the current document. Returns False when the graph was never saved."""
        flow_id = self._store.current_graph_id
        if flow_id is None:
            return False
        self._repository.delete_graph(flow_id)
        self.new_graph()
        return True

    def _default_name(self) -> str:
        day = datetime.datetime.fromtimestamp(self._clock()).date()
        return f"Flow {day.isoformat()}"
