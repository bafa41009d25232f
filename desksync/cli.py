#!/usr/bin/env python3
"""
dsync — desksync CLI

Usage:
    dsync init                          Initialize config and storage
    dsync status                        Config and storage diagnostics
    dsync sessions [--limit N]          List persisted sessions
    dsync show <session_id>             Show a stored session record
    dsync events <session_id> [--limit N]  Show a session's event log
    dsync delete <session_id>           Delete a session
    dsync clear                         Delete all sessions
    dsync config <key> <value>          Set a config value

Options:
    --verbose                           Log debug output to stderr
"""

from __future__ import annotations

import json
import logging
import sys


def _json_out(data):
    print(json.dumps(data, indent=2, ensure_ascii=False, default=str))


def cmd_init(args):
    from desksync.api import init
    result = init()
    for item in result["created"]:
        print(f"  created: {item}")
    for item in result["existing"]:
        print(f"  exists:  {item}")
    print("\ndesksync initialized.")
    print("Next: edit ~/.desksync/config.yaml to set your api_key")


def cmd_status(args):
    from desksync.api import status
    result = status()
    print(f"  model:    {result['llm_model']}")
    if result.get("api_key_ok"):
        print("  api_key:  OK")
    else:
        print(f"  api_key:  MISSING ({result.get('api_key_error', '')})")
    if "storage_error" in result:
        print(f"  storage:  {result['storage_error']}")
    else:
        print(f"  storage:  {result.get('storage_path', '?')}")
        print(
            f"  data:     {result.get('sessions', 0)} sessions, "
            f"{result.get('used_bytes', 0)}/{result.get('capacity_bytes', 0)} bytes"
        )


def cmd_sessions(args):
    from desksync.api import sessions
    limit_str = _get_opt(args, "--limit") or "100"
    _json_out(sessions(limit=int(limit_str)))


def cmd_show(args):
    from desksync.api import show
    if not args:
        _err("Usage: dsync show <session_id>")
    _json_out(show(args[0]))


def cmd_events(args):
    from desksync.api import events
    positional = _positional(args)
    if not positional:
        _err("Usage: dsync events <session_id> [--limit N]")
    limit_str = _get_opt(args, "--limit")
    _json_out(events(positional[0], limit=int(limit_str) if limit_str else None))


def cmd_delete(args):
    from desksync.api import delete
    if not args:
        _err("Usage: dsync delete <session_id>")
    _json_out(delete(args[0]))


def cmd_clear(args):
    from desksync.api import clear
    _json_out(clear())


def cmd_config(args):
    from desksync.api import set_config
    if len(args) < 2:
        _err("Usage: dsync config <key> <value>")
    try:
        _json_out(set_config(args[0], args[1]))
    except KeyError as e:
        _err(str(e))


COMMANDS = {
    "init": cmd_init,
    "status": cmd_status,
    "sessions": cmd_sessions,
    "show": cmd_show,
    "events": cmd_events,
    "delete": cmd_delete,
    "clear": cmd_clear,
    "config": cmd_config,
}


def _get_opt(args, flag):
    """Extract value after a flag from args list."""
    if flag in args:
        idx = args.index(flag)
        if idx + 1 < len(args):
            return args[idx + 1]
    return None


def _positional(args):
    out = []
    skip = False
    for a in args:
        if skip:
            skip = False
            continue
        if a == "--limit":
            skip = True
            continue
        if not a.startswith("-"):
            out.append(a)
    return out


def _err(msg):
    print(msg, file=sys.stderr)
    sys.exit(1)


def main(argv=None):
    argv = list(sys.argv[1:] if argv is None else argv)
    if "--verbose" in argv:
        argv.remove("--verbose")
        logging.basicConfig(level=logging.DEBUG, format="%(levelname)s %(name)s: %(message)s")

    if not argv or argv[0] in ("-h", "--help", "help"):
        print(__doc__.strip())
        sys.exit(0)

    cmd = argv[0]
    handler = COMMANDS.get(cmd)
    if not handler:
        print(f"Unknown command: {cmd}", file=sys.stderr)
        print(f"Available: {', '.join(COMMANDS.keys())}", file=sys.stderr)
        sys.exit(1)

    handler(argv[1:])


if __name__ == "__main__":
    main()
