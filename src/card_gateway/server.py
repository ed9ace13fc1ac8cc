"""Command line entry point for running the gateway."""

from __future__ import annotations

import argparse
import sys
from typing import TextIO

from aiohttp import web
from dotenv import load_dotenv

from .config import load_config_from_env
from .http_transport import create_app
from .logging_setup import configure_logging
from .oauth import authorize_url


def _run_serve(args: argparse.Namespace) -> int:
    config = load_config_from_env()
    configure_logging(config)
    app = create_app(config, db_path=args.db)
    web.run_app(app, host=args.host, port=args.port)
    return 0


def _run_config(output: TextIO) -> int:
    config = load_config_from_env()
    output.write(f"{config!r}\n")
    output.write(f"login redirects to {authorize_url(config).split('?')[0]}\n")
    return 0


def main(argv: list[str] | None = None, output: TextIO | None = None) -> int:
    if argv is None:
        argv = sys.argv[1:]

    parser = argparse.ArgumentParser(description="Webex card gateway")
    parser.add_argument("--env-file", default=".env", help="Path to a .env file to load first")
    subparsers = parser.add_subparsers(dest="command", required=True)

    serve_parser = subparsers.add_parser("serve", help="Run the aiohttp gateway server")
    serve_parser.add_argument("--host", default="127.0.0.1", help="Host to bind")
    serve_parser.add_argument("--port", type=int, default=3000, help="Port to bind")
    serve_parser.add_argument("--db", type=str, default=None, help="Path to SQLite database for durability")

    subparsers.add_parser("config", help="Print the effective configuration without secrets")

    args = parser.parse_args(argv)
    load_dotenv(args.env_file)

    try:
        if args.command == "config":
            return _run_config(output or sys.stdout)
        return _run_serve(args)
    except ValueError as exc:
        sys.stderr.write(f"configuration error: {exc}\n")
        return 2


if __name__ == "__main__":  # pragma: no cover - convenience execution
    raise SystemExit(main())
