"""sandbox-relay CLI entry point."""

from __future__ import annotations

import argparse
import logging
import sys
from pathlib import Path


# ── Default config for `sandbox-relay init` ──────────────────────────────────

_DEFAULT_CONFIG = """\
# sandbox-relay.yaml — sandbox-relay configuration
#
# Secrets are never stored here. Set them in the environment:
#   E2B_API_KEY                 sandbox provider
#   VERCEL_AI_GATEWAY_API_KEY   agent credentials exported into each sandbox
#   GITHUB_TOKEN                optional, for cloning private repositories

sandbox:
  provider: e2b
  template: anthropic-claude-code
  base_url: https://ai-gateway.vercel.sh
  create_timeout: 300

sessions:
  idle_timeout: 600
  sweep_interval: 60
  shutdown_deadline: 10

execution:
  home_dir: /home/user
  agent_command: claude
  skip_permissions: true
  serialize_commands: true

artifacts:
  window_minutes: 5
  max_files: 50

git:
  project_dir: /home/user/project
  clone_depth: 50
  clone_timeout: 180

activity:
  enabled: true
  retention_hours: 72

server:
  host: 0.0.0.0
  port: 8000
  data_dir: .sandbox-relay
"""


def _init_config(path: Path, force: bool = False) -> None:
    """Write a starter config file."""
    if path.exists() and not force:
        print(f"Error: {path} already exists (use --force to overwrite)", file=sys.stderr)
        sys.exit(1)

    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(_DEFAULT_CONFIG)
    print(f"Wrote sandbox-relay config to {path}")
    print()
    print("Next steps:")
    print(f"  1. Review {path}")
    print("  2. Set environment variables (E2B_API_KEY, VERCEL_AI_GATEWAY_API_KEY)")
    print(f"  3. Run: sandbox-relay serve --config {path}")


def main():
    parser = argparse.ArgumentParser(
        prog="sandbox-relay",
        description="sandbox-relay — ephemeral sandbox sessions for coding agents",
    )

    subparsers = parser.add_subparsers(dest="command")

    # sandbox-relay init
    init_parser = subparsers.add_parser("init", help="Write a starter config file")
    init_parser.add_argument(
        "--config",
        type=Path,
        default=Path("sandbox-relay.yaml"),
        help="Where to write the config (default: ./sandbox-relay.yaml)",
    )
    init_parser.add_argument(
        "--force",
        action="store_true",
        help="Overwrite an existing file",
    )

    # sandbox-relay serve
    serve_parser = subparsers.add_parser("serve", help="Start the sandbox-relay HTTP server")
    serve_parser.add_argument(
        "--config",
        type=Path,
        default=None,
        help="Config file (default: $SANDBOX_RELAY_CONFIG, else built-in defaults)",
    )
    serve_parser.add_argument(
        "--host",
        default=None,
        help="Host to bind to (default: server.host from config)",
    )
    serve_parser.add_argument(
        "--port",
        type=int,
        default=None,
        help="Port to bind to (default: server.port from config)",
    )
    serve_parser.add_argument(
        "--log-level",
        default="INFO",
        choices=["DEBUG", "INFO", "WARNING", "ERROR"],
        help="Logging level (default: INFO)",
    )

    args = parser.parse_args()

    if args.command == "init":
        _init_config(args.config, force=args.force)
        return

    if args.command is None:
        parser.print_help()
        sys.exit(1)

    logging.basicConfig(
        level=getattr(logging, args.log_level),
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
    )

    from sandbox_relay.config import load_config

    try:
        config = load_config(args.config)
    except FileNotFoundError as e:
        print(f"Error: {e}", file=sys.stderr)
        print("Run 'sandbox-relay init' to create one, or omit --config", file=sys.stderr)
        sys.exit(1)

    # Create and run app
    import uvicorn

    from sandbox_relay.server import create_app

    app = create_app(config=config)
    uvicorn.run(
        app,
        host=args.host or config.server.host,
        port=args.port or config.server.port,
        log_level=args.log_level.lower(),
    )


if __name__ == "__main__":
    main()
