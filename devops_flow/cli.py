"""Command-line entry point for the DevOps flow editor.

Usage:
    devops-flow serve [--host 127.0.0.1] [--port 8765] [--reload]
    devops-flow graphs list
    devops-flow graphs show flow-1700000000000
    devops-flow graphs delete flow-1700000000000
    devops-flow integrations
    devops-flow fetch gitlab-main
"""

from __future__ import annotations

import asyncio
import json
import sys
from argparse import ArgumentParser

from dotenv import load_dotenv

from devops_flow.config import AppSettings
from devops_flow.integrations.config import IntegrationRegistry
from devops_flow.integrations.errors import IntegrationError
from devops_flow.integrations.fetchers import FetcherRegistry
from devops_flow.persistence.files import GraphRepository, GraphStorageError


# ---------------------------------------------------------------------------
# Commands
# ---------------------------------------------------------------------------


def _graphs(settings: AppSettings, action: str, flow_id: str | None) -> int:
    repo = GraphRepository(settings.resolved_data_dir)
    try:
        if action == "list":
            graphs = repo.list_graphs()
            if not graphs:
                print("No saved flows.")
            for g in graphs:
                print(f"{g.id:<28} {g.updated_at:<22} {g.name}")
        elif action == "show":
            print(json.dumps(repo.load_graph(flow_id).to_dict(), indent=2))
        elif action == "delete":
            repo.delete_graph(flow_id)
            print(f"Deleted {flow_id}")
    except GraphStorageError as e:
        print(f"Error: {e}", file=sys.stderr)
        return 1
    return 0


def _integrations(settings: AppSettings) -> int:
    try:
        registry = IntegrationRegistry.from_file(settings.integrations_path)
    except ValueError as e:
        print(f"Error: {e}", file=sys.stderr)
        return 1
    if not len(registry):
        print(f"No integrations configured in {settings.integrations_path}")
    for i in registry:
        print(f"{i.id:<24} {i.type.value:<12} {i.base_url}")
    return 0


async def _fetch(settings: AppSettings, integration_id: str) -> int:
    """Fetch one integration's listing directly (no cache) and print it as JSON."""
    try:
        registry = IntegrationRegistry.from_file(settings.integrations_path)
    except ValueError as e:
        print(f"Error: {e}", file=sys.stderr)
        return 1
    integration = registry.get(integration_id)
    if integration is None:
        print(f"Error: unknown integration '{integration_id}'", file=sys.stderr)
        return 1

    fetchers = FetcherRegistry(registry, timeout=settings.http_timeout)
    try:
        items = await fetchers.fetch(integration.type, integration_id)
    except IntegrationError as e:
        print(f"Error: {e}", file=sys.stderr)
        return 1
    finally:
        await fetchers.aclose()

    print(json.dumps([item.model_dump() for item in items], indent=2))
    return 0


# ---------------------------------------------------------------------------
# CLI entry point
# ---------------------------------------------------------------------------


def main() -> None:
    load_dotenv()
    settings = AppSettings.from_env()
    settings.configure_logging()

    parser = ArgumentParser(
        prog="devops-flow",
        description="DevOps flow editor: HTTP bridge and saved-flow tools",
    )
    sub = parser.add_subparsers(dest="command", metavar="COMMAND")

    serve_p = sub.add_parser("serve", help="Run the HTTP bridge for the canvas webview")
    serve_p.add_argument("--host", default="127.0.0.1")
    serve_p.add_argument("--port", type=int, default=8765)
    serve_p.add_argument("--reload", action="store_true", help="Auto-reload on code changes")

    graphs_p = sub.add_parser("graphs", help="Inspect or delete saved flows")
    graphs_sub = graphs_p.add_subparsers(dest="action", metavar="ACTION", required=True)
    graphs_sub.add_parser("list", help="List saved flows, most recent first")
    show_p = graphs_sub.add_parser("show", help="Print a saved flow as JSON")
    show_p.add_argument("flow_id")
    delete_p = graphs_sub.add_parser("delete", help="Delete a saved flow")
    delete_p.add_argument("flow_id")

    sub.add_parser("integrations", help="List configured integrations")

    fetch_p = sub.add_parser("fetch", help="Fetch an integration's listing and print it")
    fetch_p.add_argument("integration_id")

    args = parser.parse_args()

    if args.command == "serve":
        from devops_flow.api import serve

        serve(host=args.host, port=args.port, reload=args.reload)
    elif args.command == "graphs":
        sys.exit(_graphs(settings, args.action, getattr(args, "flow_id", None)))
    elif args.command == "integrations":
        sys.exit(_integrations(settings))
    elif args.command == "fetch":
        sys.exit(asyncio.run(_fetch(settings, args.integration_id)))
    else:
        parser.print_help()
        sys.exit(1)


if __name__ == "__main__":
    main()
