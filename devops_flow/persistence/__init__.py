"""Persistence layer: file-backed saved graphs.

Exports:
  GraphRepository(data_dir) — list / load / save / delete under <data_dir>/flows
  SavedGraph, GraphMetadata — document and listing records
  GraphStorageError         — base error; GraphNotFoundError, InvalidGraphIdError
"""

from devops_flow.persistence.files import (
    GraphMetadata,
    GraphNotFoundError,
    GraphRepository,
    GraphStorageError,
    InvalidGraphIdError,
    SavedGraph,
)

__all__ = [
    "GraphMetadata",
    "GraphNotFoundError",
    "GraphRepository",
    "GraphStorageError",
    "InvalidGraphIdError",
    "SavedGraph",
]
