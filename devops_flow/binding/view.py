"""Node binding layer — resolve a node to its integration listing view.

Given a node's kind and data.integrationId, pick the one cache query that
serves it and expose a normalized view:

    NodeDataView(status, items, selected_item, error)

selected_item is found by matching the node's kind-specific selected<X>
field against the listing's natural key:

  kind         selected field        natural key   value type
  ----------   -------------------   -----------   ----------
  gitlab       selectedProjectId     id            int
  jenkins      selectedJobName       name          str
  kubernetes   selectedNamespace     name          str
  sonarqube    selectedProjectKey    key           str
  keycloak     selectedRealm         realm         str
  default      —                     —             always empty / initial

This module performs no I/O. resolve_node_view() takes a lookup callable
(normally IntegrationDataCache.peek or .read) and only composes its result.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Callable

from devops_flow.graph.model import GraphNode, NodeKind
from devops_flow.integrations.cache import INITIAL_SNAPSHOT, ListingSnapshot, ListingStatus
from devops_flow.integrations.errors import IntegrationError

ListingLookup = Callable[[NodeKind, str | None], ListingSnapshot]


# ---------------------------------------------------------------------------
# Typed extractors over the open data bag
# ---------------------------------------------------------------------------


def _non_empty_str(data: dict[str, Any], key: str) -> str | None:
    value = data.get(key)
    return value if isinstance(value, str) and value else None


def integration_id(data: dict[str, Any]) -> str | None:
    return _non_empty_str(data, "integrationId")


def selected_project_id(data: dict[str, Any]) -> int | None:
    """GitLab project id; None unless the stored value is a real int."""
    value = data.get("selectedProjectId")
    if isinstance(value, bool) or not isinstance(value, int):
        return None
    return value


def selected_job_name(data: dict[str, Any]) -> str | None:
    return _non_empty_str(data, "selectedJobName")


def selected_namespace(data: dict[str, Any]) -> str | None:
    return _non_empty_str(data, "selectedNamespace")


def selected_project_key(data: dict[str, Any]) -> str | None:
    return _non_empty_str(data, "selectedProjectKey")


def selected_realm(data: dict[str, Any]) -> str | None:
    return _non_empty_str(data, "selectedRealm")


def _parse_int(raw: Any) -> int | None:
    if isinstance(raw, bool):
        return None
    if isinstance(raw, int):
        return raw
    if isinstance(raw, str):
        try:
            return int(raw.strip())
        except ValueError:
            return None
    return None


def _parse_str(raw: Any) -> str | None:
    if isinstance(raw, str) and raw:
        return raw
    return None


# ---------------------------------------------------------------------------
# Source bindings
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class SourceBinding:
    """How one node kind binds to its integration listing.

    selected_field: data key holding the chosen item's natural key.
    key_field:      natural key attribute on listing items.
    extract:        typed read of selected_field from a data bag.
    coerce:         parse a raw form value into the key type (None if invalid).
    """

    kind: NodeKind
    selected_field: str
    key_field: str
    extract: Callable[[dict[str, Any]], Any]
    coerce: Callable[[Any], Any]


_GITLAB = SourceBinding(NodeKind.GITLAB, "selectedProjectId", "id", selected_project_id, _parse_int)
_JENKINS = SourceBinding(NodeKind.JENKINS, "selectedJobName", "name", selected_job_name, _parse_str)
_KUBERNETES = SourceBinding(NodeKind.KUBERNETES, "selectedNamespace", "name", selected_namespace, _parse_str)
_SONARQUBE = SourceBinding(NodeKind.SONARQUBE, "selectedProjectKey", "key", selected_project_key, _parse_str)
_KEYCLOAK = SourceBinding(NodeKind.KEYCLOAK, "selectedRealm", "realm", selected_realm, _parse_str)


def binding_for(kind: NodeKind) -> SourceBinding | None:
    """The source binding for kind; None for DEFAULT."""
    match kind:
        case NodeKind.GITLAB:
            return _GITLAB
        case NodeKind.JENKINS:
            return _JENKINS
        case NodeKind.KUBERNETES:
            return _KUBERNETES
        case NodeKind.SONARQUBE:
            return _SONARQUBE
        case NodeKind.KEYCLOAK:
            return _KEYCLOAK
        case NodeKind.DEFAULT:
            return None


def item_key(item: Any, key_field: str) -> Any:
    """Natural key of a listing item (pydantic record or plain dict)."""
    if isinstance(item, dict):
        return item.get(key_field)
    return getattr(item, key_field, None)


# ---------------------------------------------------------------------------
# View
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class NodeDataView:
    status: ListingStatus = ListingStatus.INITIAL
    items: tuple[Any, ...] = ()
    selected_item: Any | None = None
    error: IntegrationError | None = None
    is_fetching: bool = False

    @property
    def indicator(self) -> str:
        """Node status badge: loading, error, success (has items) or initial."""
        if self.status == ListingStatus.LOADING:
            return "loading"
        if self.status == ListingStatus.ERROR:
            return "error"
        if self.items:
            return "success"
        return "initial"

    def to_dict(self) -> dict[str, Any]:
        def dump(item: Any) -> Any:
            return item.model_dump() if hasattr(item, "model_dump") else item

        return {
            "status": self.status.value,
            "indicator": self.indicator,
            "items": [dump(i) for i in self.items],
            "selectedItem": dump(self.selected_item) if self.selected_item is not None else None,
            "error": self.error.to_dict() if self.error is not None else None,
            "isFetching": self.is_fetching,
        }


EMPTY_VIEW = NodeDataView()


def resolve_node_view(node: GraphNode, lookup: ListingLookup) -> NodeDataView:
    """Compose the node's listing view from the cache lookup."""
    binding = binding_for(node.kind)
    if binding is None:
        return EMPTY_VIEW

    integration = integration_id(node.data)
    snapshot = lookup(node.kind, integration) if integration else INITIAL_SNAPSHOT

    selected_item = None
    wanted = binding.extract(node.data)
    if wanted is not None:
        selected_item = next(
            (item for item in snapshot.items if item_key(item, binding.key_field) == wanted),
            None,
        )

    return NodeDataView(
        status=snapshot.status,
        items=snapshot.items,
        selected_item=selected_item,
        error=snapshot.error,
        is_fetching=snapshot.is_fetching,
    )
