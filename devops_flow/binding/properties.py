"""Property editor binding — two-way sync between the selected node and a form.

The form mirrors the selected node's data:

  label            data.label
  description      data.description
  integration_id   data.integrationId
  selected_item    data.<selected field of the node kind>  (see binding.view)

Rules:
  - The form is rebuilt from the store after every store action, so
    selecting another node never carries values over from the previous one.
  - Every setter writes through to GraphStore.update_node immediately;
    the store stays the single source of truth.
  - Changing integration_id clears the kind's selected field in the same
    update_node call. The old item belongs to the old integration.
  - Item options are exactly the binding view's items for the node; a chosen
    value is coerced to the key type (int for gitlab, str otherwise) and
    must match one of the options.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any

from devops_flow.binding.view import (
    EMPTY_VIEW,
    ListingLookup,
    NodeDataView,
    binding_for,
    integration_id,
    item_key,
    resolve_node_view,
)
from devops_flow.graph.model import GraphNode
from devops_flow.graph.store import GraphStore
from devops_flow.integrations.config import Integration, IntegrationRegistry

logger = logging.getLogger("devops_flow.binding.properties")


@dataclass(frozen=True)
class PropertyForm:
    node_id: str | None = None
    label: str = ""
    description: str = ""
    integration_id: str = ""
    selected_item: Any | None = None

    @classmethod
    def from_node(cls, node: GraphNode | None) -> "PropertyForm":
        if node is None:
            return cls()
        binding = binding_for(node.kind)
        description = node.data.get("description")
        return cls(
            node_id=node.id,
            label=node.label,
            description=description if isinstance(description, str) else "",
            integration_id=integration_id(node.data) or "",
            selected_item=binding.extract(node.data) if binding else None,
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "nodeId": self.node_id,
            "label": self.label,
            "description": self.description,
            "integrationId": self.integration_id,
            "selectedItem": self.selected_item,
        }


@dataclass(frozen=True)
class ItemOption:
    value: Any
    label: str


class PropertyEditor:
    """Form state bound to the store's selected node.

    lookup:       cache lookup used for item options (normally cache.peek).
    integrations: optional registry used to list integration choices.
    """

    def __init__(
        self,
        store: GraphStore,
        lookup: ListingLookup,
        integrations: IntegrationRegistry | None = None,
    ) -> None:
        self._store = store
        self._lookup = lookup
        self._integrations = integrations
        self._form = PropertyForm.from_node(store.selected_node)
        self._unsubscribe = store.subscribe(self._on_store_action)

    def close(self) -> None:
        self._unsubscribe()

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    @property
    def form(self) -> PropertyForm:
        return self._form

    @property
    def node(self) -> GraphNode | None:
        return self._store.selected_node

    def view(self) -> NodeDataView:
        node = self.node
        return resolve_node_view(node, self._lookup) if node is not None else EMPTY_VIEW

    def item_options(self) -> list[ItemOption]:
        node = self.node
        binding = binding_for(node.kind) if node is not None else None
        if binding is None:
            return []
        options = []
        for item in self.view().items:
            key = item_key(item, binding.key_field)
            label = item_key(item, "name") or str(key)
            options.append(ItemOption(value=key, label=label))
        return options

    def integration_choices(self) -> list[Integration]:
        node = self.node
        if node is None or self._integrations is None or binding_for(node.kind) is None:
            return []
        return self._integrations.by_type(node.kind)

    def node_details(self) -> dict[str, Any] | None:
        """Read-only summary for the details panel."""
        node = self.node
        if node is None:
            return None
        return {
            "id": node.id,
            "type": node.kind.value,
            "position": {"x": round(node.position.x), "y": round(node.position.y)},
            "connections": len(self._store.connected_edges(node.id)),
        }

    # ------------------------------------------------------------------
    # Writes
    # ------------------------------------------------------------------

    def set_label(self, value: str | None) -> bool:
        """Write the label through. None removes it from the node data."""
        return self._write({"label": value})

    def set_description(self, value: str | None) -> bool:
        return self._write({"description": value})

    def set_integration_id(self, value: str | None) -> bool:
        """Change the node's integration and clear its selected item.

        Returns False when nothing is selected or the value is unchanged.
        An empty value unsets the integration.
        """
        node = self.node
        if node is None:
            return False
        new_id = (value or "").strip() or None
        if new_id == integration_id(node.data):
            return False

        patch: dict[str, Any] = {"integrationId": new_id}
        binding = binding_for(node.kind)
        if binding is not None:
            patch[binding.selected_field] = None
        logger.debug("integration of %s -> %s, clearing selected item", node.id, new_id)
        return self._write(patch)

    def select_item(self, raw_value: Any) -> bool:
        """Choose an item from item_options(). Invalid values are ignored."""
        node = self.node
        binding = binding_for(node.kind) if node is not None else None
        if binding is None:
            return False
        value = binding.coerce(raw_value)
        if value is None:
            logger.debug("select_item: %r is not a valid %s key", raw_value, binding.key_field)
            return False
        if value not in {option.value for option in self.item_options()}:
            logger.debug("select_item: %r is not among the listed items", value)
            return False
        return self._write({binding.selected_field: value})

    def clear_item(self) -> bool:
        node = self.node
        binding = binding_for(node.kind) if node is not None else None
        if binding is None:
            return False
        return self._write({binding.selected_field: None})

    # ------------------------------------------------------------------
    # Internal helpers
    # ------------------------------------------------------------------

    def _write(self, patch: dict[str, Any]) -> bool:
        node = self.node
        if node is None:
            return False
        return self._store.update_node(node.id, patch)

    def _on_store_action(self, action: str) -> None:
        self._form = PropertyForm.from_node(self._store.selected_node)
