"""Session runtime — wires one editing session's components together.

    runtime = build_runtime(AppSettings())
    runtime.editor.pane_clicked(Position(120, 80))
    ...
    await runtime.aclose()

Every component holds the same GraphStore by reference; there is no module
level graph state.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass

from devops_flow.binding.properties import PropertyEditor
from devops_flow.config import AppSettings
from devops_flow.graph.editor import FlowEditor, ViewportRenderer
from devops_flow.graph.store import GraphStore
from devops_flow.integrations.cache import FetchFn, IntegrationDataCache
from devops_flow.integrations.config import IntegrationRegistry
from devops_flow.integrations.fetchers import FetcherRegistry
from devops_flow.persistence.files import GraphRepository
from devops_flow.workspace import Workspace

logger = logging.getLogger("devops_flow.runtime")


@dataclass
class Runtime:
    settings: AppSettings
    store: GraphStore
    integrations: IntegrationRegistry
    fetchers: FetcherRegistry
    cache: IntegrationDataCache
    editor: FlowEditor
    properties: PropertyEditor
    workspace: Workspace

    async def aclose(self) -> None:
        self.properties.close()
        await self.cache.aclose()
        await self.fetchers.aclose()


def build_runtime(
    settings: AppSettings | None = None,
    *,
    integrations: IntegrationRegistry | None = None,
    fetch: FetchFn | None = None,
) -> Runtime:
    """Build a runtime from settings.

    integrations: override the registry read from settings.integrations_path.
    fetch:        override the cache's fetch function (defaults to the
                  FetcherRegistry over real HTTP).
    """
    settings = settings or AppSettings()
    if integrations is None:
        integrations = IntegrationRegistry.from_file(settings.integrations_path)

    store = GraphStore()
    fetchers = FetcherRegistry(integrations, timeout=settings.http_timeout)
    cache = IntegrationDataCache(fetch or fetchers.fetch, retry_base_delay=settings.retry_delay)
    renderer = ViewportRenderer(store)
    editor = FlowEditor(store, renderer)
    properties = PropertyEditor(store, cache.peek, integrations)
    workspace = Workspace(store, GraphRepository(settings.resolved_data_dir))

    logger.info(
        "Runtime ready | data dir: %s | integrations: %d",
        settings.resolved_data_dir, len(integrations),
    )
    return Runtime(
        settings=settings,
        store=store,
        integrations=integrations,
        fetchers=fetchers,
        cache=cache,
        editor=editor,
        properties=properties,
        workspace=workspace,
    )
