"""CLI entry point for sessionsync.

Usage:
    sessionsync                              # Demo mode
    sessionsync --demo                       # Explicit demo mode

    # Pipe an event stream (SSE or JSONL):
    curl -N http://localhost:4096/event | sessionsync --stdin sse
    some_tool | sessionsync --stdin auto      # Auto-detect format

    # Run a command and reconcile its stdout:
    sessionsync --exec jsonl "replay-events session.jsonl"

    # Tail a log file:
    sessionsync --file jsonl /tmp/events.jsonl

    # No UI, print transitions:
    sessionsync --headless --demo --debug
"""

import argparse
import asyncio
import dataclasses
import logging
import sys

from rich.logging import RichHandler

from sessionsync.config import DEFAULT_SETTINGS

__version__ = "0.1.0"

_FORMATS = ["sse", "jsonl", "auto"]


def _configure_logging(level: str) -> None:
    logging.basicConfig(
        level=level,
        format="%(message)s",
        datefmt="[%X]",
        handlers=[RichHandler(rich_tracebacks=True, show_path=False)],
    )


def main() -> None:
    parser = argparse.ArgumentParser(
        prog="sessionsync",
        description="Reconcile a live session event stream into local state",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""\
examples:
  sessionsync                                     Demo mode
  curl -N $URL/event | sessionsync --stdin sse    Pipe an SSE stream
  sessionsync --file jsonl /tmp/events.jsonl      Tail a JSONL log
  sessionsync --headless --demo                   Print transitions, no UI
""",
    )

    source = parser.add_mutually_exclusive_group()
    source.add_argument(
        "--demo", action="store_true",
        help="Run with a simulated session (default when no input)",
    )
    source.add_argument(
        "--stdin", choices=_FORMATS,
        help="Read events from stdin (sse, jsonl or auto-detect)",
    )
    source.add_argument(
        "--file", nargs=2, metavar=("FMT", "PATH"),
        help="Tail an event log file. FMT is sse|jsonl|auto",
    )
    source.add_argument(
        "--exec", nargs=2, metavar=("FMT", "CMD"),
        help="Run a command and read events from its stdout. FMT is sse|jsonl|auto",
    )

    parser.add_argument("--headless", action="store_true", help="Print status transitions instead of the TUI")
    parser.add_argument("--session", metavar="ID", help="Treat ID as the active session")
    parser.add_argument(
        "--log-level", default="WARNING",
        choices=["DEBUG", "INFO", "WARNING", "ERROR"],
        help="Logging level (default: WARNING)",
    )
    parser.add_argument("--debug", action="store_true", help="Shortcut for --log-level DEBUG")
    parser.add_argument(
        "--message-limit", type=int, default=DEFAULT_SETTINGS.message_limit,
        help="History window used for resync (default: %(default)s)",
    )
    parser.add_argument(
        "--stale-after", type=float, default=DEFAULT_SETTINGS.stream_stale_after,
        help="Seconds of silence before the stream counts as stalled (default: %(default)s)",
    )
    parser.add_argument(
        "--stall-timeout", type=float, default=DEFAULT_SETTINGS.stall_timeout,
        help="Seconds a busy session may go without messages (default: %(default)s)",
    )
    parser.add_argument(
        "--version", action="version", version=f"%(prog)s {__version__}",
    )

    args = parser.parse_args()

    if args.stdin:
        selected = ("stdin", args.stdin)
    elif args.file:
        fmt, path = args.file
        selected = ("file", {"format": fmt, "path": path})
    elif getattr(args, "exec"):
        fmt, cmd = getattr(args, "exec")
        selected = ("exec", {"format": fmt, "cmd": cmd})
    elif args.demo or sys.stdin.isatty():
        # Default behavior: demo if tty, auto-detect stdin if piped
        selected = ("demo", None)
    else:
        selected = ("stdin", "auto")

    settings = dataclasses.replace(
        DEFAULT_SETTINGS,
        message_limit=args.message_limit,
        stream_stale_after=args.stale_after,
        stall_timeout=args.stall_timeout,
    )
    _configure_logging("DEBUG" if args.debug else args.log_level)

    try:
        if args.headless:
            from sessionsync.app import run_headless
            asyncio.run(run_headless(selected, settings, args.session))
        else:
            from sessionsync.app import SessionSyncApp
            SessionSyncApp(source=selected, settings=settings, session_id=args.session).run()
    except ImportError as e:
        print(f"Missing dependency: {e}", file=sys.stderr)
        print("Install with: pip install -e .", file=sys.stderr)
        sys.exit(1)
    except KeyboardInterrupt:
        pass


if __name__ == "__main__":
    main()
