#!/usr/bin/env python3
"""
chatrelay CLI.

Every command has a short name and standard aliases:

    COMMAND         ALIASES         WHAT IT DOES
    -------         -------         ----------------------------------
    serve           start, up       Start the chatrelay API server
    models          ls, list        List every routable model id
    usage           costs           Print a user's usage summary
    cleanup         purge           Delete old anonymous conversations
"""

import argparse
import json

from chatrelay import __version__


# ---------------------------------------------------------------------------
# Commands
# ---------------------------------------------------------------------------

def cmd_serve(args):
    """Start the chatrelay API server."""
    import uvicorn
    from chatrelay.config import get_config

    cfg = get_config()
    host = args.host or cfg["server"]["host"]
    port = args.port or cfg["server"]["port"]

    print(f"  chatrelay v{__version__} on {host}:{port}")
    print(f"  Default model: {cfg.get('chat', {}).get('default_model', 'gpt-4o')}")
    print()

    uvicorn.run(
        "chatrelay.main:app",
        host=host,
        port=port,
        reload=args.reload,
        log_level="info",
    )


def cmd_models(args):
    """List model ids and the provider that serves each."""
    from chatrelay.config import get_config
    from chatrelay.providers.registry import ProviderRegistry

    registry = ProviderRegistry.from_config(get_config().get("providers", []))
    listing = registry.list_models()["data"]
    if not listing:
        print("  No providers configured.")
        return
    width = max(len(m["id"]) for m in listing)
    for m in listing:
        print(f"  {m['id']:<{width}}  {m['owned_by']}")
    for provider in registry.providers:
        if provider.patterns:
            print(f"  {provider.name} also claims: {', '.join(provider.patterns)}")


def cmd_usage(args):
    """Print a user's usage summary."""
    from chatrelay.config import get_config
    from chatrelay.costs import CostTracker
    from chatrelay.storage.sqlite_store import SQLiteStore

    cfg = get_config()
    store = SQLiteStore(cfg["storage"]["sqlite_path"])
    summary = CostTracker(store, pricing=cfg.get("pricing")).get_user_summary(args.user)

    if args.json:
        print(json.dumps(summary, indent=2))
        return

    print(f"  User: {summary['user_id']}")
    print(f"  Requests: {summary['requests']}")
    print(f"  Tokens: {summary['total_tokens']}")
    print(f"  Cost: ${summary['total_cost_usd']:.6f}")
    for model, entry in sorted(summary["by_model"].items()):
        print(f"    {model}: {entry['tokens']} tokens, ${entry['cost_usd']:.6f} ({entry['requests']} req)")


def cmd_cleanup(args):
    """Delete anonymous conversations older than --hours."""
    from chatrelay.config import get_config
    from chatrelay.storage.models import ANONYMOUS_USER_ID
    from chatrelay.storage.sqlite_store import SQLiteStore

    cfg = get_config()
    hours = args.hours if args.hours is not None else cfg.get("anonymous", {}).get("max_age_hours", 24)
    store = SQLiteStore(cfg["storage"]["sqlite_path"])
    deleted = store.cleanup_conversations(ANONYMOUS_USER_ID, hours)
    print(f"  Deleted {deleted} anonymous conversation(s) older than {hours}h")


# ---------------------------------------------------------------------------
# Parser with aliases
# ---------------------------------------------------------------------------

def _add_command(subparsers, names, help_text, func, setup_fn=None):
    """Register a command under multiple names."""
    p = subparsers.add_parser(names[0], help=help_text, aliases=names[1:])
    p.set_defaults(func=func)
    if setup_fn:
        setup_fn(p)
    return p


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="chatrelay",
        description="chatrelay: multi-provider streaming chat backend.",
        epilog="Run 'chatrelay <command> --help' for command-specific options.",
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )
    parser.add_argument(
        "--version", "-V", action="version",
        version=f"chatrelay {__version__}",
    )

    sub = parser.add_subparsers(dest="command", metavar="<command>")

    # serve / start / up
    def setup_serve(p):
        p.add_argument("--host", default=None, help="Bind host (default: from config)")
        p.add_argument("--port", "-p", type=int, default=None, help="Bind port (default: from config)")
        p.add_argument("--reload", action="store_true", help="Auto-reload on code changes")

    _add_command(sub, ["serve", "start", "up"],
                 "Start the chatrelay API server", cmd_serve, setup_serve)

    # models / ls / list
    _add_command(sub, ["models", "ls", "list"],
                 "List every routable model id", cmd_models)

    # usage / costs
    def setup_usage(p):
        p.add_argument("user", help="User id")
        p.add_argument("--json", action="store_true", help="Raw JSON output")

    _add_command(sub, ["usage", "costs"],
                 "Print a user's usage summary", cmd_usage, setup_usage)

    # cleanup / purge
    def setup_cleanup(p):
        p.add_argument("--hours", type=int, default=None,
                       help="Age threshold in hours (default: anonymous.max_age_hours)")

    _add_command(sub, ["cleanup", "purge"],
                 "Delete old anonymous conversations", cmd_cleanup, setup_cleanup)

    return parser


def main(argv=None):
    parser = build_parser()
    args = parser.parse_args(argv)
    if not args.command:
        parser.print_help()
        return

    args.func(args)


if __name__ == "__main__":
    main()
