"""Async fetchers for the five external DevOps systems, using httpx.

Each fetcher lists one resource type from one configured integration:

  GitLabFetcher      GET {base}/api/v4/projects              PRIVATE-TOKEN header
  JenkinsFetcher     GET {base}/api/json?tree=jobs[...]      basic auth, folder walk
  KubernetesFetcher  GET {base}/api/v1/namespaces            bearer token
  SonarQubeFetcher   GET {base}/api/projects/search?ps=100   token as basic-auth user
  KeycloakFetcher    GET {base}/admin/realms                 basic auth

Failures are raised as IntegrationError subclasses (see errors.py); retries
are the cache's job, not the fetcher's.

FetcherRegistry resolves (kind, integration_id) to a fetcher and owns the
shared httpx.AsyncClient:

    fetchers = FetcherRegistry(IntegrationRegistry.from_file(path))
    items = await fetchers.fetch(NodeKind.JENKINS, "ci")
    ...
    await fetchers.aclose()
"""

from __future__ import annotations

import logging
from abc import ABC, abstractmethod
from collections import deque
from typing import Any, ClassVar
from urllib.parse import quote

import httpx
from pydantic import ValidationError

from devops_flow.graph.model import NodeKind
from devops_flow.integrations.config import Integration, IntegrationRegistry
from devops_flow.integrations.errors import (
    AuthError,
    ConfigError,
    IntegrationError,
    NetworkError,
    status_to_error,
)
from devops_flow.integrations.models import (
    GitLabProject,
    Item,
    JenkinsJob,
    K8sNamespace,
    KeycloakRealm,
    SonarQubeProject,
)

logger = logging.getLogger("devops_flow.integrations.fetchers")

_JENKINS_TREE = "jobs[name,url,color,_class]"


class IntegrationFetcher(ABC):
    """Lists the items of one integration. Subclasses set `kind`."""

    kind: ClassVar[NodeKind]

    def __init__(self, integration: Integration, client: httpx.AsyncClient) -> None:
        self._integration = integration
        self._client = client

    @property
    def integration(self) -> Integration:
        return self._integration

    # ------------------------------------------------------------------
    # Internal helpers
    # ------------------------------------------------------------------

    def _auth(self) -> httpx.Auth | tuple[str, str] | None:
        return None

    def _headers(self) -> dict[str, str]:
        return {"Accept": "application/json"}

    async def _get(self, path: str, params: dict[str, Any] | None = None) -> Any:
        url = f"{self._integration.base_url}{path}"
        logger.debug("%s GET %s", self.kind.value, url)
        try:
            r = await self._client.get(url, params=params, headers=self._headers(), auth=self._auth())
        except httpx.TimeoutException as e:
            logger.error("GET %s timed out", url)
            raise NetworkError("Request timed out") from e
        except httpx.HTTPError as e:
            logger.error("GET %s failed: %s", url, e)
            raise NetworkError(str(e) or "Failed to connect to server") from e

        if not r.is_success:
            logger.error("GET %s -> %s", url, r.status_code)
            raise status_to_error(r.status_code, r.text.strip() or None)

        try:
            return r.json()
        except ValueError as e:
            raise ConfigError(f"Failed to parse response: {e}") from e

    @staticmethod
    def _expect_list(payload: Any, key: str | None = None) -> list[Any]:
        if key is not None:
            payload = payload.get(key) if isinstance(payload, dict) else None
        if not isinstance(payload, list):
            where = f"'{key}' array" if key else "JSON array"
            raise ConfigError(f"Invalid response format: missing {where}")
        return payload

    @abstractmethod
    async def fetch(self) -> list[Item]:
        """Return the full listing. Raises IntegrationError on failure."""


# ---------------------------------------------------------------------------
# Concrete fetchers
# ---------------------------------------------------------------------------


class GitLabFetcher(IntegrationFetcher):
    kind = NodeKind.GITLAB

    def _headers(self) -> dict[str, str]:
        h = super()._headers()
        token = self._integration.secret("token")
        if token:
            h["PRIVATE-TOKEN"] = token
        return h

    async def fetch(self) -> list[Item]:
        payload = await self._get("/api/v4/projects", {"membership": "true", "per_page": 100})
        try:
            return [GitLabProject.model_validate(p) for p in self._expect_list(payload)]
        except ValidationError as e:
            raise ConfigError(f"Invalid project format: {e}") from e


class JenkinsFetcher(IntegrationFetcher):
    """Walks the folder tree breadth-first and returns every leaf job.

    Job names are full paths ("team/service/build"). A sub-folder that fails
    to load is skipped with a warning; a failure at the root is raised.
    """

    kind = NodeKind.JENKINS

    def _auth(self) -> tuple[str, str] | None:
        username = self._integration.username or ""
        secret = self._integration.secret("password") or self._integration.secret("token")
        if not username and not secret:
            return None
        return (username, secret)

    @staticmethod
    def _folder_path(path: str) -> str:
        if not path:
            return "/api/json"
        segments = "/job/".join(quote(s, safe="") for s in path.split("/"))
        return f"/job/{segments}/api/json"

    async def fetch(self) -> list[Item]:
        jobs: list[Item] = []
        pending: deque[str] = deque([""])

        while pending:
            path = pending.popleft()
            try:
                payload = await self._get(self._folder_path(path), {"tree": _JENKINS_TREE})
                entries = self._expect_list(payload, "jobs")
            except IntegrationError as e:
                if not path:
                    raise
                logger.warning("Skipping Jenkins folder %s: %s", path, e)
                continue

            for entry in entries:
                if not isinstance(entry, dict):
                    continue
                name, url = entry.get("name"), entry.get("url")
                if not isinstance(name, str) or not isinstance(url, str):
                    continue
                color = entry.get("color") or "notbuilt"
                full_path = f"{path}/{name}" if path else name
                if "Folder" in str(entry.get("_class") or "") or color == "folder":
                    pending.append(full_path)
                else:
                    jobs.append(JenkinsJob(name=full_path, url=url, color=color))

        return jobs


class KubernetesFetcher(IntegrationFetcher):
    kind = NodeKind.KUBERNETES

    def _headers(self) -> dict[str, str]:
        h = super()._headers()
        token = self._integration.secret("kubeconfig_token") or self._integration.secret("token")
        if token:
            h["Authorization"] = f"Bearer {token}"
        return h

    async def fetch(self) -> list[Item]:
        payload = await self._get("/api/v1/namespaces")
        namespaces: list[Item] = []
        for ns in self._expect_list(payload, "items"):
            if not isinstance(ns, dict):
                continue
            metadata = ns.get("metadata") or {}
            status = ns.get("status") or {}
            namespaces.append(
                K8sNamespace(
                    name=metadata.get("name") or "",
                    status=status.get("phase") or "Unknown",
                    created_at=metadata.get("creationTimestamp") or "Unknown",
                )
            )
        return namespaces


class SonarQubeFetcher(IntegrationFetcher):
    kind = NodeKind.SONARQUBE

    def _auth(self) -> tuple[str, str] | None:
        token = self._integration.secret("token")
        return (token, "") if token else None

    async def fetch(self) -> list[Item]:
        payload = await self._get("/api/projects/search", {"ps": 100})
        try:
            return [
                SonarQubeProject.model_validate(c)
                for c in self._expect_list(payload, "components")
            ]
        except ValidationError as e:
            raise ConfigError(f"Invalid project format: {e}") from e


class KeycloakFetcher(IntegrationFetcher):
    """Lists realms through the admin API.

    Without admin rights the endpoint answers 401/403; that is reported as
    an empty listing rather than an error.
    """

    kind = NodeKind.KEYCLOAK

    def _auth(self) -> tuple[str, str] | None:
        username = self._integration.username or ""
        password = self._integration.secret("password")
        return (username, password) if username else None

    async def fetch(self) -> list[Item]:
        try:
            payload = await self._get("/admin/realms")
        except AuthError:
            logger.warning(
                "Admin access not available on %s, returning no realms", self._integration.id
            )
            return []
        realms: list[Item] = []
        for raw in self._expect_list(payload):
            if not isinstance(raw, dict) or not isinstance(raw.get("realm"), str):
                raise ConfigError("Invalid realm format: missing 'realm'")
            enabled = raw.get("enabled")
            realms.append(KeycloakRealm(realm=raw["realm"], enabled=enabled if isinstance(enabled, bool) else True))
        return realms


_FETCHER_TYPES: dict[NodeKind, type[IntegrationFetcher]] = {
    cls.kind: cls
    for cls in (GitLabFetcher, JenkinsFetcher, KubernetesFetcher, SonarQubeFetcher, KeycloakFetcher)
}


# ---------------------------------------------------------------------------
# Registry
# ---------------------------------------------------------------------------


class FetcherRegistry:
    """Resolves (kind, integration_id) to a fetcher over one shared client.

    Lifecycle:
        fetchers = FetcherRegistry(integrations, timeout=30)
        items = await fetchers.fetch(NodeKind.GITLAB, "gl-main")
        await fetchers.aclose()
    """

    def __init__(
        self,
        integrations: IntegrationRegistry,
        client: httpx.AsyncClient | None = None,
        timeout: float = 30.0,
    ) -> None:
        self._integrations = integrations
        self._owns_client = client is None
        self._client = client or httpx.AsyncClient(
            timeout=httpx.Timeout(timeout, connect=10.0),
            follow_redirects=True,
        )

    @property
    def integrations(self) -> IntegrationRegistry:
        return self._integrations

    def fetcher_for(self, kind: NodeKind | str, integration_id: str) -> IntegrationFetcher:
        """Raises ConfigError for an unknown integration or a kind mismatch."""
        parsed = NodeKind.parse(kind)
        fetcher_type = _FETCHER_TYPES.get(parsed)
        if fetcher_type is None:
            raise ConfigError(f"No fetcher for node kind {parsed.value!r}")
        integration = self._integrations.get(integration_id)
        if integration is None:
            raise ConfigError(f"Unknown integration: {integration_id!r}")
        if integration.type != parsed:
            raise ConfigError(
                f"Integration {integration_id!r} is of type {integration.type.value!r}, "
                f"not {parsed.value!r}"
            )
        return fetcher_type(integration, self._client)

    async def fetch(self, kind: NodeKind | str, integration_id: str) -> list[Item]:
        items = await self.fetcher_for(kind, integration_id).fetch()
        logger.info(
            "Fetched %d %s item(s) from integration %s",
            len(items), NodeKind.parse(kind).value, integration_id,
        )
        return items

    async def aclose(self) -> None:
        if self._owns_client:
            await self._client.aclose()
