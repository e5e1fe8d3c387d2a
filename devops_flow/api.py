"""FastAPI bridge between the canvas webview and the graph-editing engine.

The webview renders the graph and forwards raw interaction events here; each
response carries the state the webview needs to re-render.

  Graph & events
    GET    /graph                       current graph, selection, placement, dirty flag
    POST   /events/nodes                node change batch
    POST   /events/edges                edge change batch
    POST   /events/connect              connect gesture
    POST   /events/node-click           select a node
    POST   /events/pane-click           clear selection / commit armed placement
    POST   /events/viewport             pan/zoom moved
    POST   /events/key                  key press (Escape cancels placement)
    POST   /view/{action}               zoom-in | zoom-out | fit

  Palette
    GET    /palette                     templates + configured integrations
    POST   /palette/{kind}              arm / toggle placement

  Nodes
    GET    /nodes/{node_id}/view        node binding view (starts a cache read)
    GET    /nodes/{node_id}/properties  property form, item options, details
    PATCH  /nodes/{node_id}/properties  property writes
    POST   /nodes/{node_id}/refresh     force-refresh the node's listing
    DELETE /nodes/{node_id}             delete node and its edges

  Documents
    GET    /graphs                      saved graphs, most recent first
    POST   /graphs/save                 save current graph
    POST   /graphs/{flow_id}/open       load a saved graph
    DELETE /graphs/current              delete current graph and reset
    POST   /graphs/new                  reset to an empty graph

Authentication is optional: when DEVOPS_FLOW_API_KEY is set every request
must carry 'Authorization: Bearer <key>'.
"""

import logging
import os
from contextlib import asynccontextmanager
from typing import Any

from dotenv import load_dotenv
from fastapi import APIRouter, Depends, FastAPI, HTTPException, Request, Security
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from pydantic import BaseModel, Field
from slowapi import Limiter, _rate_limit_exceeded_handler
from slowapi.errors import RateLimitExceeded
from slowapi.util import get_remote_address

from devops_flow.binding.view import integration_id, resolve_node_view
from devops_flow.config import AppSettings
from devops_flow.graph.changes import edge_change_from_dict, node_change_from_dict
from devops_flow.graph.model import Connection, GraphNode, NodeKind, Position, Viewport
from devops_flow.graph.palette import activate, palette_entries
from devops_flow.persistence.files import GraphNotFoundError, GraphStorageError, InvalidGraphIdError
from devops_flow.runtime import Runtime, build_runtime

logger = logging.getLogger("devops_flow.api")

# ---------------------------------------------------------------------------
# API key authentication (enabled when DEVOPS_FLOW_API_KEY is set)
# ---------------------------------------------------------------------------

_bearer = HTTPBearer(auto_error=False)


def _verify_api_key(
    request: Request,
    credentials: HTTPAuthorizationCredentials | None = Security(_bearer),
) -> None:
    """Verify the Bearer token matches the configured API key.

    If no key is configured, all requests are allowed (local desktop mode).
    """
    api_key = _runtime(request).settings.api_key.get_secret_value()
    if not api_key:
        return
    if not credentials or credentials.credentials != api_key:
        raise HTTPException(status_code=401, detail="Invalid or missing API key")


def _runtime(request: Request) -> Runtime:
    runtime = getattr(request.app.state, "runtime", None)
    if runtime is None:
        raise HTTPException(status_code=503, detail="Editor runtime not initialized.")
    return runtime


def _node_or_404(runtime: Runtime, node_id: str) -> GraphNode:
    node = runtime.store.get_node(node_id)
    if node is None:
        raise HTTPException(status_code=404, detail=f"Node '{node_id}' not found.")
    return node


def _graph_state(runtime: Runtime) -> dict[str, Any]:
    state = runtime.store.snapshot()
    state["placementHint"] = runtime.editor.placement_hint
    state["cursor"] = runtime.editor.cursor
    return state


# ---------------------------------------------------------------------------
# Rate limiting (refresh hits the external systems directly)
# ---------------------------------------------------------------------------

_refresh_rate = os.getenv("DEVOPS_FLOW_REFRESH_PER_MIN", "30")
limiter = Limiter(key_func=get_remote_address)


# ---------------------------------------------------------------------------
# Pydantic models
# ---------------------------------------------------------------------------


class ChangeBatch(BaseModel):
    """Request body for POST /events/nodes and /events/edges."""

    changes: list[dict[str, Any]] = Field(
        ...,
        description="Renderer change records, applied in order.",
        examples=[[{"type": "position", "id": "gitlab-1700000000000", "position": {"x": 10, "y": 20}}]],
    )


class ConnectRequest(BaseModel):
    source: str | None = None
    target: str | None = None
    sourceHandle: str | None = None
    targetHandle: str | None = None


class NodeClickRequest(BaseModel):
    node_id: str = Field(..., description="ID of the clicked node.")


class ScreenPosition(BaseModel):
    x: float
    y: float


class ViewportRequest(BaseModel):
    x: float = 0.0
    y: float = 0.0
    zoom: float = Field(1.0, gt=0)


class KeyRequest(BaseModel):
    key: str = Field(..., examples=["Escape"])


class PropertiesPatch(BaseModel):
    """Request body for PATCH /nodes/{node_id}/properties.

    Omitted fields are untouched. An explicit null clears label, description
    or selected_item.
    """

    label: str | None = Field(None, description="Node label. null removes it.")
    description: str | None = Field(None, description="Free-text description. null removes it.")
    integration_id: str | None = Field(
        None, description="New integration. Clears the selected item. Empty string unsets it."
    )
    selected_item: Any = Field(
        None, description="Natural key of an item from the node's listing. null clears the selection."
    )
    clear_selected_item: bool = False


class SaveRequest(BaseModel):
    name: str | None = Field(None, max_length=200, description="Defaults to the current name or 'Flow <date>'.")


# ---------------------------------------------------------------------------
# Routes
# ---------------------------------------------------------------------------

router = APIRouter()


@router.get("/health", tags=["system"])
async def health(request: Request) -> dict:
    runtime = _runtime(request)
    return {"status": "ok", "integrations": len(runtime.integrations)}


@router.get("/integrations", tags=["system"])
async def list_integrations(request: Request) -> list[dict]:
    return [i.public_dict() for i in _runtime(request).integrations]


@router.get("/graph", tags=["graph"])
async def get_graph(request: Request) -> dict:
    return _graph_state(_runtime(request))


@router.post("/events/nodes", tags=["events"])
async def nodes_changed(request: Request, body: ChangeBatch) -> dict:
    runtime = _runtime(request)
    try:
        changes = [node_change_from_dict(c) for c in body.changes]
    except ValueError as e:
        raise HTTPException(status_code=422, detail=str(e))
    rejected = runtime.editor.nodes_changed(changes)
    return {"rejected": [e.node_id for e in rejected], "graph": _graph_state(runtime)}


@router.post("/events/edges", tags=["events"])
async def edges_changed(request: Request, body: ChangeBatch) -> dict:
    runtime = _runtime(request)
    try:
        changes = [edge_change_from_dict(c) for c in body.changes]
    except ValueError as e:
        raise HTTPException(status_code=422, detail=str(e))
    runtime.editor.edges_changed(changes)
    return _graph_state(runtime)


@router.post("/events/connect", tags=["events"])
async def connected(request: Request, body: ConnectRequest) -> dict:
    runtime = _runtime(request)
    runtime.editor.connected(Connection.from_dict(body.model_dump()))
    return _graph_state(runtime)


@router.post("/events/node-click", tags=["events"])
async def node_clicked(request: Request, body: NodeClickRequest) -> dict:
    runtime = _runtime(request)
    runtime.editor.node_clicked(body.node_id)
    return _graph_state(runtime)


@router.post("/events/pane-click", tags=["events"])
async def pane_clicked(request: Request, body: ScreenPosition) -> dict:
    runtime = _runtime(request)
    node = runtime.editor.pane_clicked(Position(x=body.x, y=body.y))
    return {"node": node.to_dict() if node else None, "graph": _graph_state(runtime)}


@router.post("/events/viewport", tags=["events"])
async def viewport_moved(request: Request, body: ViewportRequest) -> dict:
    runtime = _runtime(request)
    runtime.editor.viewport_moved(Viewport(x=body.x, y=body.y, zoom=body.zoom))
    return _graph_state(runtime)


@router.post("/events/key", tags=["events"])
async def key_pressed(request: Request, body: KeyRequest) -> dict:
    runtime = _runtime(request)
    consumed = runtime.editor.key_pressed(body.key)
    return {"consumed": consumed, "graph": _graph_state(runtime)}


@router.post("/view/{action}", tags=["events"])
async def view_action(request: Request, action: str) -> dict:
    runtime = _runtime(request)
    match action:
        case "zoom-in":
            runtime.editor.zoom_in()
        case "zoom-out":
            runtime.editor.zoom_out()
        case "fit":
            runtime.editor.fit_view()
        case _:
            raise HTTPException(status_code=404, detail=f"Unknown view action '{action}'.")
    return _graph_state(runtime)


@router.get("/palette", tags=["palette"])
async def get_palette(request: Request) -> list[dict]:
    runtime = _runtime(request)
    return [e.to_dict() for e in palette_entries(runtime.integrations, runtime.store.pending_node_type)]


@router.post("/palette/{kind}", tags=["palette"])
async def arm_template(request: Request, kind: str) -> dict:
    runtime = _runtime(request)
    if NodeKind.parse(kind) == NodeKind.DEFAULT:
        raise HTTPException(status_code=404, detail=f"Unknown node template '{kind}'.")
    activate(runtime.editor.placement, kind)
    return _graph_state(runtime)


@router.get("/nodes/{node_id}/view", tags=["nodes"])
async def node_view(request: Request, node_id: str, wait: bool = False) -> dict:
    """Node binding view. With ?wait=true, waits for a fetch the read started."""
    runtime = _runtime(request)
    node = _node_or_404(runtime, node_id)
    if wait:
        await runtime.cache.ensure(node.kind, integration_id(node.data))
    return resolve_node_view(node, runtime.cache.read).to_dict()


def _properties_payload(runtime: Runtime) -> dict:
    editor = runtime.properties
    return {
        "form": editor.form.to_dict(),
        "itemOptions": [{"value": o.value, "label": o.label} for o in editor.item_options()],
        "integrationChoices": [i.public_dict() for i in editor.integration_choices()],
        "details": editor.node_details(),
    }


@router.get("/nodes/{node_id}/properties", tags=["nodes"])
async def get_properties(request: Request, node_id: str) -> dict:
    runtime = _runtime(request)
    _node_or_404(runtime, node_id)
    if runtime.store.selected_node_id != node_id:
        runtime.store.set_selected_node_id(node_id)
    return _properties_payload(runtime)


@router.patch("/nodes/{node_id}/properties", tags=["nodes"])
async def patch_properties(request: Request, node_id: str, body: PropertiesPatch) -> dict:
    runtime = _runtime(request)
    _node_or_404(runtime, node_id)
    if runtime.store.selected_node_id != node_id:
        runtime.store.set_selected_node_id(node_id)

    editor = runtime.properties
    provided = body.model_fields_set
    if "label" in provided:
        editor.set_label(body.label)
    if "description" in provided:
        editor.set_description(body.description)
    if "integration_id" in provided:
        editor.set_integration_id(body.integration_id)
    if body.clear_selected_item or ("selected_item" in provided and body.selected_item is None):
        editor.clear_item()
    elif "selected_item" in provided:
        if not editor.select_item(body.selected_item):
            raise HTTPException(
                status_code=422,
                detail=f"{body.selected_item!r} is not an item of this node's integration.",
            )
    return _properties_payload(runtime)


@router.post("/nodes/{node_id}/refresh", tags=["nodes"])
@limiter.limit(f"{_refresh_rate}/minute")
async def refresh_node(request: Request, node_id: str) -> dict:
    runtime = _runtime(request)
    node = _node_or_404(runtime, node_id)
    integration = integration_id(node.data)
    if not integration:
        raise HTTPException(status_code=409, detail="Node has no integration to refresh.")
    await runtime.cache.refresh(node.kind, integration)
    return resolve_node_view(node, runtime.cache.peek).to_dict()


@router.delete("/nodes/{node_id}", tags=["nodes"])
async def delete_node(request: Request, node_id: str) -> dict:
    runtime = _runtime(request)
    _node_or_404(runtime, node_id)
    runtime.store.delete_node(node_id)
    return _graph_state(runtime)


@router.get("/graphs", tags=["graphs"])
async def list_graphs(request: Request) -> list[dict]:
    return [g.to_dict() for g in _runtime(request).workspace.list_graphs()]


@router.post("/graphs/save", tags=["graphs"])
async def save_graph(request: Request, body: SaveRequest) -> dict:
    runtime = _runtime(request)
    graph = runtime.workspace.save(body.name)
    return {"saved": graph.metadata.to_dict(), "graph": _graph_state(runtime)}


@router.post("/graphs/new", tags=["graphs"])
async def new_graph(request: Request) -> dict:
    runtime = _runtime(request)
    runtime.workspace.new_graph()
    return _graph_state(runtime)


@router.delete("/graphs/current", tags=["graphs"])
async def delete_current_graph(request: Request) -> dict:
    runtime = _runtime(request)
    if not runtime.workspace.delete_current():
        raise HTTPException(status_code=409, detail="Current graph has not been saved.")
    return _graph_state(runtime)


@router.post("/graphs/{flow_id}/open", tags=["graphs"])
async def open_graph(request: Request, flow_id: str) -> dict:
    runtime = _runtime(request)
    runtime.workspace.open(flow_id)
    return _graph_state(runtime)


# ---------------------------------------------------------------------------
# Error mapping
# ---------------------------------------------------------------------------


async def _not_found_handler(request: Request, exc: GraphNotFoundError) -> JSONResponse:
    return JSONResponse(status_code=404, content={"detail": str(exc)})


async def _invalid_id_handler(request: Request, exc: InvalidGraphIdError) -> JSONResponse:
    return JSONResponse(status_code=400, content={"detail": str(exc)})


async def _storage_error_handler(request: Request, exc: GraphStorageError) -> JSONResponse:
    logger.error("Graph storage failure on %s: %s", request.url.path, exc)
    return JSONResponse(status_code=500, content={"detail": str(exc)})


# ---------------------------------------------------------------------------
# App
# ---------------------------------------------------------------------------


def create_app(runtime: Runtime | None = None) -> FastAPI:
    """Build the FastAPI app.

    runtime: pre-built runtime (tests). When None, the lifespan builds one
             from AppSettings on startup and closes it on shutdown.
    """

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        owned = False
        if getattr(app.state, "runtime", None) is None:
            load_dotenv()
            settings = AppSettings.from_env()
            app.state.runtime = build_runtime(settings)
            owned = True
        logger.info("Starting DevOps flow bridge")

        yield

        if owned:
            await app.state.runtime.aclose()
        logger.info("Shutting down DevOps flow bridge")

    app = FastAPI(
        title="DevOps Flow Editor API",
        description=(
            "Graph-editing engine for the DevOps flow dashboard. "
            "The canvas webview forwards interaction events; the engine owns the graph, "
            "click-to-add placement and the per-integration listing cache."
        ),
        version="0.1.0",
        lifespan=lifespan,
    )
    app.state.runtime = runtime
    app.state.limiter = limiter
    app.add_exception_handler(RateLimitExceeded, _rate_limit_exceeded_handler)
    app.add_exception_handler(GraphNotFoundError, _not_found_handler)
    app.add_exception_handler(InvalidGraphIdError, _invalid_id_handler)
    app.add_exception_handler(GraphStorageError, _storage_error_handler)

    cors_origins = [
        o.strip()
        for o in os.environ.get("CORS_ORIGINS", "http://localhost:1420,tauri://localhost").split(",")
        if o.strip()
    ]
    app.add_middleware(
        CORSMiddleware,
        allow_origins=cors_origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )
    app.include_router(router, dependencies=[Depends(_verify_api_key)])
    return app


app = create_app()


# ---------------------------------------------------------------------------
# Entry point (for uvicorn programmatic launch)
# ---------------------------------------------------------------------------


def serve(host: str = "127.0.0.1", port: int = 8765, reload: bool = False) -> None:
    """Launch the FastAPI server via uvicorn."""
    import uvicorn

    load_dotenv()
    AppSettings.from_env().configure_logging()
    uvicorn.run(
        "devops_flow.api:app",
        host=host,
        port=port,
        reload=reload,
        log_level="info",
    )


if __name__ == "__main__":
    serve()
