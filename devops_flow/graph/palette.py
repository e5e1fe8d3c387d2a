"""Node palette — the templates a user can arm for click-to-add placement."""

from __future__ import annotations

from dataclasses import dataclass
from typing import TYPE_CHECKING, Any, Iterable

from devops_flow.graph.model import NodeKind
from devops_flow.graph.placement import PlacementStateMachine

if TYPE_CHECKING:
    from devops_flow.integrations.config import Integration


@dataclass(frozen=True)
class NodeTemplate:
    kind: NodeKind
    label: str
    description: str


NODE_TEMPLATES: tuple[NodeTemplate, ...] = (
    NodeTemplate(NodeKind.GITLAB, "GitLab", "Git repository and CI/CD"),
    NodeTemplate(NodeKind.JENKINS, "Jenkins", "CI/CD automation server"),
    NodeTemplate(NodeKind.KUBERNETES, "Kubernetes", "Container orchestration"),
    NodeTemplate(NodeKind.SONARQUBE, "SonarQube", "Code quality analysis"),
    NodeTemplate(NodeKind.KEYCLOAK, "Keycloak", "Identity and access management"),
)


@dataclass(frozen=True)
class PaletteEntry:
    template: NodeTemplate
    available_integrations: tuple[Integration, ...]
    is_armed: bool

    @property
    def has_integrations(self) -> bool:
        return bool(self.available_integrations)

    def to_dict(self) -> dict[str, Any]:
        return {
            "type": self.template.kind.value,
            "label": self.template.label,
            "description": self.template.description,
            "availableIntegrations": [i.public_dict() for i in self.available_integrations],
            "hasIntegrations": self.has_integrations,
            "isArmed": self.is_armed,
        }


def palette_entries(
    integrations: Iterable[Integration],
    pending: NodeKind | None,
) -> list[PaletteEntry]:
    """Annotate every template with its configured integrations and armed state."""
    configured = list(integrations)
    return [
        PaletteEntry(
            template=t,
            available_integrations=tuple(i for i in configured if i.type == t.kind),
            is_armed=pending == t.kind,
        )
        for t in NODE_TEMPLATES
    ]


def activate(placement: PlacementStateMachine, kind: NodeKind | str) -> NodeKind | None:
    """Palette click: arm kind, or disarm it when it is already armed."""
    return placement.arm(kind)
