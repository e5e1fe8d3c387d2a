"""Configured external integrations.

Integrations are read from a JSON file (default: <data_dir>/integrations.json,
override with DEVOPS_FLOW_INTEGRATIONS_FILE):

    [
      {"id": "gl-main", "name": "GitLab", "type": "gitlab",
       "base_url": "https://gitlab.example.com", "token": "glpat-..."},
      {"id": "ci", "name": "Jenkins", "type": "jenkins",
       "base_url": "https://ci.example.com", "username": "bot", "token": "..."},
      {"id": "k8s-dev", "name": "Dev cluster", "type": "kubernetes",
       "base_url": "https://k8s.example.com:6443", "kubeconfig_token": "..."}
    ]

Credentials are held as SecretStr and never appear in logs or reprs.
A missing file yields an empty registry; a malformed one raises ValueError.

Usage:
    registry = IntegrationRegistry.from_file(settings.integrations_path)
    registry.get("gl-main")           # Integration | None
    registry.by_type(NodeKind.GITLAB) # list[Integration]
"""

from __future__ import annotations

import json
import logging
from pathlib import Path
from typing import Any, Iterator

from pydantic import BaseModel, Field, SecretStr, ValidationError, field_validator

from devops_flow.graph.model import PLACEABLE_KINDS, NodeKind

logger = logging.getLogger("devops_flow.integrations.config")


class Integration(BaseModel):
    """One configured external system."""

    id: str = Field(..., min_length=1)
    name: str = ""
    type: NodeKind
    base_url: str
    token: SecretStr | None = Field(default=None, repr=False)
    username: str | None = None
    password: SecretStr | None = Field(default=None, repr=False)
    kubeconfig_token: SecretStr | None = Field(default=None, repr=False)

    @field_validator("type")
    @classmethod
    def placeable_type(cls, v: NodeKind) -> NodeKind:
        if v not in PLACEABLE_KINDS:
            raise ValueError(f"integration type must be one of {sorted(k.value for k in PLACEABLE_KINDS)}")
        return v

    @field_validator("base_url")
    @classmethod
    def strip_trailing_slash(cls, v: str) -> str:
        v = v.strip().rstrip("/")
        if not v.startswith(("http://", "https://")):
            raise ValueError(f"base_url must be an http(s) URL, got {v!r}")
        return v

    def secret(self, name: str) -> str:
        """Plain value of a credential field, or "" when unset."""
        value = getattr(self, name)
        return value.get_secret_value() if value is not None else ""

    def public_dict(self) -> dict[str, Any]:
        """Credential-free view for UI listings."""
        return {"id": self.id, "name": self.name or self.id, "type": self.type.value, "base_url": self.base_url}


class IntegrationRegistry:
    """Integrations keyed by id."""

    def __init__(self, integrations: list[Integration] | None = None) -> None:
        self._integrations: dict[str, Integration] = {}
        for integration in integrations or []:
            if integration.id in self._integrations:
                raise ValueError(f"Duplicate integration id: {integration.id!r}")
            self._integrations[integration.id] = integration

    # ------------------------------------------------------------------
    # Factory
    # ------------------------------------------------------------------

    @classmethod
    def from_specs(cls, specs: list[dict[str, Any]]) -> "IntegrationRegistry":
        try:
            integrations = [Integration.model_validate(spec) for spec in specs]
        except ValidationError as e:
            raise ValueError(f"Invalid integration entry: {e}") from e
        return cls(integrations)

    @classmethod
    def from_file(cls, path: Path | str) -> "IntegrationRegistry":
        path = Path(path)
        if not path.exists():
            logger.info("Integrations file not found: %s, starting with none", path)
            return cls()
        try:
            specs = json.loads(path.read_text(encoding="utf-8"))
        except json.JSONDecodeError as e:
            raise ValueError(f"{path} must contain a valid JSON array: {e}") from e
        if not isinstance(specs, list):
            raise ValueError(f"{path} must contain a JSON array of integrations")
        registry = cls.from_specs(specs)
        logger.info("Loaded %d integration(s) from %s", len(registry), path)
        return registry

    # ------------------------------------------------------------------
    # Access
    # ------------------------------------------------------------------

    def get(self, integration_id: str | None) -> Integration | None:
        if not integration_id:
            return None
        return self._integrations.get(integration_id)

    def by_type(self, kind: NodeKind | str) -> list[Integration]:
        parsed = NodeKind.parse(kind)
        return [i for i in self._integrations.values() if i.type == parsed]

    @property
    def integration_ids(self) -> list[str]:
        return list(self._integrations)

    def __iter__(self) -> Iterator[Integration]:
        return iter(self._integrations.values())

    def __len__(self) -> int:
        return len(self._integrations)
