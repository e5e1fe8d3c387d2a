"""Listing item records returned by the integration fetchers.

One flat record type per source. Each has a stable natural key used by the
node binding layer to match a node's selected<X> field against a listing:

  GitLabProject      id      (int)
  JenkinsJob         name
  K8sNamespace       name
  SonarQubeProject   key
  KeycloakRealm      realm
"""

from __future__ import annotations

from typing import Any, ClassVar, Union

from pydantic import BaseModel, ConfigDict, Field


class ListingItem(BaseModel):
    """Base for listing records. Immutable; extra upstream fields are ignored."""

    model_config = ConfigDict(frozen=True, extra="ignore")

    key_field: ClassVar[str] = ""

    @property
    def natural_key(self) -> Any:
        return getattr(self, self.key_field)


class GitLabProject(ListingItem):
    key_field: ClassVar[str] = "id"

    id: int
    name: str
    path: str = ""
    web_url: str = ""


class JenkinsJob(ListingItem):
    key_field: ClassVar[str] = "name"

    name: str = Field(..., description="Full job path, e.g. 'folder/sub/job'.")
    url: str = ""
    color: str = "notbuilt"


class K8sNamespace(ListingItem):
    key_field: ClassVar[str] = "name"

    name: str
    status: str = "Unknown"
    created_at: str = ""


class SonarQubeProject(ListingItem):
    key_field: ClassVar[str] = "key"

    key: str
    name: str
    qualifier: str = "TRK"


class KeycloakRealm(ListingItem):
    key_field: ClassVar[str] = "realm"

    realm: str
    enabled: bool = True


Item = Union[GitLabProject, JenkinsJob, K8sNamespace, SonarQubeProject, KeycloakRealm]
