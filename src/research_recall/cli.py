from __future__ import annotations

import argparse
import asyncio
import logging
import sys


def main():
    """Entry point for research-recall CLI."""
    if len(sys.argv) > 1 and sys.argv[1] in ("tools", "insights", "metrics"):
        return _run_admin_cli(sys.argv[1:])

    # Default: run MCP server
    logging.basicConfig(level=logging.INFO, stream=sys.stderr)
    from .server import main as server_main
    server_main()


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="research-recall")
    parser.add_argument("-v", "--verbose", action="store_true", help="Debug logging")
    groups = parser.add_subparsers(dest="group", required=True)

    tools = groups.add_parser("tools", help="Manage the tool catalog")
    tools_sub = tools.add_subparsers(dest="command", required=True)
    load_p = tools_sub.add_parser("load", help="Load tools from a JSON file")
    load_p.add_argument("path", help="JSON file with a 'tools' list")
    search_p = tools_sub.add_parser("search", help="Search the tool catalog")
    search_p.add_argument("query")
    search_p.add_argument("--mode", choices=["semantic", "keyword", "hybrid"], default="hybrid")
    search_p.add_argument("--limit", type=int, default=5)
    search_p.add_argument("--threshold", type=float, default=0.1)
    search_p.add_argument("--type", default="")
    search_p.add_argument("--pricing", default="")
    search_p.add_argument("--tags", default="", help="Comma-separated tags")

    insights = groups.add_parser("insights", help="Inspect stored insights")
    insights_sub = insights.add_subparsers(dest="command", required=True)
    list_p = insights_sub.add_parser("list", help="List insights")
    list_p.add_argument("--type", default="")
    list_p.add_argument("--limit", type=int, default=0)

    metrics = groups.add_parser("metrics", help="Learning metrics")
    metrics_sub = metrics.add_subparsers(dest="command", required=True)
    metrics_sub.add_parser("rebuild", help="Recompute metrics from the insight collection")
    return parser


def _run_admin_cli(argv: list[str]):
    args = _build_parser().parse_args(argv)
    logging.basicConfig(level=logging.DEBUG if args.verbose else logging.WARNING, stream=sys.stderr)
    asyncio.run(_dispatch(args))


async def _dispatch(args):
    from .server import create_app

    app = await create_app()
    handlers = {
        ("tools", "load"): _cmd_load,
        ("tools", "search"): _cmd_search,
        ("insights", "list"): _cmd_list,
        ("metrics", "rebuild"): _cmd_rebuild,
    }
    await handlers[(args.group, args.command)](app, args)


async def _cmd_load(app, args):
    from .ingest import load_tools

    def on_progress(current, total, tool_id):
        print(f"  [{current}/{total}] {tool_id}", file=sys.stderr)

    count = await load_tools(app.catalog, app.embeddings, args.path, on_progress=on_progress)
    print(f"Loaded {count} tools from {args.path}", file=sys.stderr)


async def _cmd_search(app, args):
    print(await app.search_tools(
        query=args.query,
        search_type=args.mode,
        type=args.type,
        pricing=args.pricing,
        tags=args.tags,
        limit=args.limit,
        threshold=args.threshold,
    ))


async def _cmd_list(app, args):
    print(await app.list_insights(type=args.type, limit=args.limit))


async def _cmd_rebuild(app, args):
    count = await app.memory.rebuild_metrics()
    print(f"Rebuilt metrics from {count} insights.", file=sys.stderr)
