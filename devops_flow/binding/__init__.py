"""Node ↔ listing binding: per-node data view and the property editor."""

from devops_flow.binding.properties import PropertyEditor, PropertyForm
from devops_flow.binding.view import NodeDataView, binding_for, resolve_node_view

__all__ = ["NodeDataView", "PropertyEditor", "PropertyForm", "binding_for", "resolve_node_view"]
