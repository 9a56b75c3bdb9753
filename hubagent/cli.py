"""CLI interface for the session hub agent.

Entry point: hub-agent <subcommand> [args...]

  hub-agent run          run the agent (reads SESSION_HUB_URL, WORKSPACE_ID, AGENT_TOKEN)
  hub-agent status       show the running agent's status
  hub-agent reload-env   print `export` lines for the workspace env
                         usage: eval "$(hub-agent reload-env)"
"""

import argparse
import json
import os
import shlex
import sys
from pathlib import Path

from . import __version__


def _socket_path(args) -> Path:
    if args.socket:
        return Path(args.socket)
    workspace_id = os.environ.get("WORKSPACE_ID")
    if not workspace_id:
        print("Error: WORKSPACE_ID is not set (or pass --socket)", file=sys.stderr)
        sys.exit(2)
    return Path(f"/tmp/session-hub-agent-{workspace_id}.sock")


def _call(args, method: str, path: str) -> dict:
    import asyncio

    from .errors import AgentError
    from .ipc import ipc_request

    try:
        return asyncio.run(ipc_request(_socket_path(args), method, path))
    except AgentError as e:
        print(f"Error: {e}", file=sys.stderr)
        sys.exit(1)
    except OSError as e:
        print(f"Error: could not reach the agent: {e}", file=sys.stderr)
        sys.exit(1)


# --- Subcommands ---


def cmd_run(args):
    """Run the agent until SIGINT/SIGTERM."""
    import asyncio
    import logging

    from .agent import run_agent
    from .config import AgentConfig
    from .errors import ConfigError
    from .logging_config import setup_process_logging

    try:
        cfg = AgentConfig.from_env()
    except ConfigError as e:
        print(f"Error: {e}", file=sys.stderr)
        sys.exit(2)

    setup_process_logging("agent", level=logging.DEBUG if args.verbose else logging.INFO, log_dir=cfg.log_dir)
    sys.exit(asyncio.run(run_agent(cfg)))


def cmd_status(args):
    """Show the running agent's status."""
    status = _call(args, "GET", "/status")
    if args.json:
        print(json.dumps(status, indent=2))
        return

    print(f"Agent v{status.get('version')}, workspace {status.get('workspaceId')}")
    print(f"Hub: {status.get('sessionHubUrl')} ({status.get('phase')})")
    tabs = status.get("tabs", [])
    if not tabs:
        print("No tabs.")
        return
    print(f"{'TAB':<38} {'WINDOW':<8} STATUS")
    for tab in tabs:
        print(f"{tab['tabId']:<38} {tab['tmuxWindow']:<8} {tab['status']}")


def cmd_reload_env(args):
    """Print export statements for the workspace environment."""
    if args.apply:
        result = _call(args, "POST", "/refresh-env-vars")
    else:
        result = _call(args, "GET", "/env-vars")
    for key, value in sorted(result.get("envVars", {}).items()):
        print(f"export {key}={shlex.quote(value)}")


def main():
    parser = argparse.ArgumentParser(
        prog="hub-agent",
        description="Session Hub sidecar agent",
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )
    parser.add_argument("--version", action="version", version=__version__)
    subparsers = parser.add_subparsers(dest="command", required=True)

    run_parser = subparsers.add_parser("run", help="Run the agent")
    run_parser.add_argument("--verbose", "-v", action="store_true", help="Debug logging")
    run_parser.set_defaults(func=cmd_run)

    status_parser = subparsers.add_parser("status", help="Show the running agent's status")
    status_parser.add_argument("--socket", "-s", help="IPC socket path (default: from WORKSPACE_ID)")
    status_parser.add_argument("--json", action="store_true", help="Raw JSON output")
    status_parser.set_defaults(func=cmd_status)

    reload_parser = subparsers.add_parser("reload-env", help="Print export lines for the workspace env")
    reload_parser.add_argument("--socket", "-s", help="IPC socket path (default: from WORKSPACE_ID)")
    reload_parser.add_argument(
        "--apply", action="store_true", help="Also apply the env to the agent and new tabs"
    )
    reload_parser.set_defaults(func=cmd_reload_env)

    args = parser.parse_args()
    args.func(args)


if __name__ == "__main__":
    main()
