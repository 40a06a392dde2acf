#!/usr/bin/env python3
"""
StepSync CLI.

Every command has a short name and standard aliases:

    COMMAND         ALIASES         WHAT IT DOES
    -------         -------         ----------------------------------
    serve           start, up       Start the StepSync service
    status          ping, health    Ping a running instance
    scrub           sanitize        Show what the sanitizer does to some text
    count           tokens          Estimate tokens for some text
    show            sessions        List or print persisted sessions
"""

import argparse
import json
import sys

from stepsync import __version__


# ---------------------------------------------------------------------------
# Commands
# ---------------------------------------------------------------------------

def cmd_serve(args):
    """Start the StepSync service."""
    import uvicorn
    from stepsync.config import get_config

    cfg = get_config()
    server = cfg.get("server", {})
    provider = cfg.get("provider", {})
    host = args.host or server.get("host", "0.0.0.0")
    port = args.port or server.get("port", 8000)

    print(f"  StepSync v{__version__} on {host}:{port}")
    print(f"  Provider: {provider.get('name', '?')} ({provider.get('model', '?')})")
    print()

    uvicorn.run(
        "stepsync.main:app",
        host=host,
        port=port,
        reload=args.reload,
        log_level="info",
    )


def cmd_status(args):
    """Ping a running StepSync instance."""
    import httpx

    url = (args.url or "http://localhost:8000").rstrip("/")
    try:
        resp = httpx.get(f"{url}/health", timeout=5)
        if resp.status_code != 200:
            print(f"  ✗  No answer, got HTTP {resp.status_code}")
            return 1
        print(f"  ✓  {url} is UP")

        status = httpx.get(f"{url}/api/v1/status", timeout=10).json()
        provider = status.get("provider", {})
        breaker = status.get("breaker", {})
        memory = status.get("memory", {})
        outcomes = status.get("outcomes", {})

        print(f"  Provider: {provider.get('name', '?')} ({provider.get('model', '?')}), "
              f"{'reachable' if provider.get('available') else 'unreachable'}")
        print(f"  Breaker: {breaker.get('state', '?')} "
              f"({breaker.get('failed_calls', 0)} failed / {breaker.get('total_calls', 0)} calls, "
              f"{breaker.get('rejected_calls', 0)} rejected)")
        print(f"  Sessions: {memory.get('active_sessions', 0)} active, "
              f"{memory.get('total_messages', 0)} messages")
        if outcomes:
            print("  Turns: " + ", ".join(f"{k}={v}" for k, v in sorted(outcomes.items())))
    except httpx.ConnectError:
        print(f"  ✗  Nothing listening at {url}")
        return 1
    except httpx.HTTPError as e:
        print(f"  ✗  Error: {e}")
        return 1
    return 0


def cmd_scrub(args):
    """Run text through the sanitizer and show the result."""
    from stepsync.privacy import Blocked, Sanitizer

    text = " ".join(args.text) if args.text else sys.stdin.read()
    sanitizer = Sanitizer(strict_mode=not args.lenient)
    result = sanitizer.screen(text)

    if isinstance(result, Blocked):
        print(f"  ✗  Blocked: {result.category}")
        return 2

    print(result.sanitized_text)
    if result.replacements:
        print()
        for r in result.replacements:
            print(f"  - {r}")
    return 0


def cmd_count(args):
    """Estimate token count for text."""
    from stepsync.tokens import TokenCounter

    text = " ".join(args.text) if args.text else sys.stdin.read()
    counter = TokenCounter(model=args.model)
    tokens = counter.count_tokens(text)
    print(f"  {tokens} tokens ({args.model}), {len(text)} chars")
    return 0


def cmd_show(args):
    """List persisted sessions, or print one as JSON."""
    from stepsync.config import get_section
    from stepsync.storage.sqlite_store import SQLiteStore

    path = args.db or get_section("storage").get("sqlite_path", "./data/sessions.db")
    store = SQLiteStore(path)

    if args.session_id:
        record = store.load_session(args.session_id)
        if record is None:
            print(f"  ✗  No session '{args.session_id}' in {path}")
            return 1
        print(json.dumps(record, indent=2 if args.pretty else None))
        return 0

    sessions = store.list_sessions(limit=args.limit)
    if not sessions:
        print(f"  No sessions in {path}")
        return 0
    for s in sessions:
        print(f"  {s['id']:<36}  {s['message_count']:>3} msgs  last active {s['last_activity_time']}")
    return 0


# ---------------------------------------------------------------------------
# Parser
# ---------------------------------------------------------------------------

def _add_command(subparsers, names, help_text, func, setup_fn=None):
    """Register a command under its name and aliases."""
    p = subparsers.add_parser(names[0], help=help_text, aliases=names[1:])
    p.set_defaults(func=func)
    if setup_fn:
        setup_fn(p)
    return p


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="stepsync",
        description="StepSync — privacy-preserving step tracking assistant.",
        epilog="Run 'stepsync <command> --help' for command-specific options.",
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )
    parser.add_argument(
        "--version", "-V", action="version",
        version=f"stepsync {__version__}",
    )

    sub = parser.add_subparsers(dest="command", metavar="<command>")

    def setup_serve(p):
        p.add_argument("--host", default=None, help="Override listen host")
        p.add_argument("--port", "-p", type=int, default=None, help="Override listen port")
        p.add_argument("--reload", action="store_true", help="Auto-reload on code changes (dev)")

    _add_command(sub, ["serve", "start", "up"],
                 "Start the StepSync service", cmd_serve, setup_serve)

    def setup_status(p):
        p.add_argument("--url", "-u", default=None, help="StepSync URL (default: http://localhost:8000)")

    _add_command(sub, ["status", "ping", "health"],
                 "Ping a running StepSync instance", cmd_status, setup_status)

    def setup_scrub(p):
        p.add_argument("text", nargs="*", help="Text to sanitize (default: stdin)")
        p.add_argument("--lenient", action="store_true",
                       help="Non-strict mode: redact emails/phones instead of blocking")

    _add_command(sub, ["scrub", "sanitize"],
                 "Show what the sanitizer does to some text", cmd_scrub, setup_scrub)

    def setup_count(p):
        p.add_argument("text", nargs="*", help="Text to count (default: stdin)")
        p.add_argument("--model", "-m", choices=["llama3", "gpt4", "generic"], default="llama3",
                       help="Tokenizer profile")

    _add_command(sub, ["count", "tokens"],
                 "Estimate tokens for some text", cmd_count, setup_count)

    def setup_show(p):
        p.add_argument("session_id", nargs="?", default=None, help="Session to print (omit to list)")
        p.add_argument("--db", default=None, help="SQLite path (default: from config)")
        p.add_argument("--limit", "-n", type=int, default=50, help="Max sessions to list")
        p.add_argument("--pretty", action="store_true", help="Pretty-print JSON")

    _add_command(sub, ["show", "sessions"],
                 "List or print persisted sessions", cmd_show, setup_show)

    return parser


def main(argv=None):
    parser = build_parser()
    args = parser.parse_args(argv)
    if not args.command:
        parser.print_help()
        return 0
    return args.func(args) or 0


if __name__ == "__main__":
    sys.exit(main())
