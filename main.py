"""Command-line interface for the identity service."""

from __future__ import annotations
import argparse
import logging
import sys
from pathlib import Path
from typing import Sequence

from identity_service.config import Settings, load_settings
from identity_service.database import RecordStore
from identity_service.directory import DirectoryError, DirectoryGateway
from identity_service.errors import IdentityError

logger = logging.getLogger("identity.main")


def _parse_args(argv: Sequence[str] | None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Identity service utilities")
    parser.add_argument(
        "--config",
        default=None,
        help="Path to a YAML configuration file (defaults to IDENTITY_CONFIG)",
    )
    subparsers = parser.add_subparsers(dest="command")

    parser.set_defaults(command="serve")

    subparsers.add_parser("init-db", help="Create the user and password reset tables")
    subparsers.add_parser("check", help="Verify the database and directory are reachable")

    serve_parser = subparsers.add_parser("serve", help="Start the HTTP identity service")
    serve_parser.add_argument("--host", default="0.0.0.0", help="Bind address for the API")
    serve_parser.add_argument(
        "--port",
        type=int,
        default=5000,
        help="Port for the HTTP API (default: 5000)",
    )
    serve_parser.add_argument(
        "--ssl-certfile",
        default=None,
        help="Path to the TLS certificate chain in PEM format",
    )
    serve_parser.add_argument(
        "--ssl-keyfile",
        default=None,
        help="Path to the TLS private key in PEM format",
    )

    args_list = list(argv) if argv is not None else sys.argv[1:]
    known_commands = {"serve", "init-db", "check"}

    # Global options come first, so find the first positional word.
    index = 0
    while index < len(args_list) and args_list[index] == "--config":
        index += 2

    if index >= len(args_list):
        args_list = [*args_list, "serve"]
    else:
        first = args_list[index]
        if first in ("-h", "--help"):
            return parser.parse_args(args_list)
        if first not in known_commands:
            if any(flag in args_list for flag in ("-h", "--help")):
                return parser.parse_args(args_list)
            args_list = [*args_list[:index], "serve", *args_list[index:]]

    return parser.parse_args(args_list)


def _load_settings(config: str | None) -> Settings:
    return load_settings(Path(config).expanduser() if config else None)


def _initialise_database(settings: Settings) -> RecordStore:
    store = RecordStore(settings.database)
    store.initialize()
    logger.info("Database initialised at %s", settings.database.path)
    return store


def _check(settings: Settings) -> int:
    failures = 0

    try:
        _initialise_database(settings).ping()
    except IdentityError as exc:
        failures += 1
        print(f"database: FAILED ({exc.message})")
    else:
        print(f"database: ok ({settings.database.path})")

    try:
        DirectoryGateway(settings.directory).bind_as_service()
    except (DirectoryError, IdentityError) as exc:
        failures += 1
        print(f"directory: FAILED ({exc})")
    else:
        print(f"directory: ok ({settings.directory.url})")

    return 1 if failures else 0


def _serve(
    *,
    settings: Settings,
    store: RecordStore,
    host: str,
    port: int,
    ssl_certfile: str | None,
    ssl_keyfile: str | None,
) -> None:
    from identity_service.service import create_app
    import uvicorn

    if bool(ssl_certfile) ^ bool(ssl_keyfile):
        raise SystemExit("Both --ssl-certfile and --ssl-keyfile must be provided together.")

    protocol = "https" if ssl_certfile and ssl_keyfile else "http"
    logger.info("Starting identity API on %s://%s:%s", protocol, host, port)

    app = create_app(settings=settings, store=store)
    uvicorn.run(
        app,
        host=host,
        port=port,
        log_level="info",
        ssl_certfile=ssl_certfile,
        ssl_keyfile=ssl_keyfile,
    )


def main(argv: Sequence[str] | None = None) -> int:
    """Entry point for CLI usage."""

    logging.basicConfig(level=logging.INFO, format="%(asctime)s [%(levelname)s] %(message)s")

    args = _parse_args(argv)
    try:
        settings = _load_settings(args.config)
    except (OSError, ValueError) as exc:
        logger.error("Invalid configuration: %s", exc)
        return 2

    if args.command == "check":
        return _check(settings)

    store = _initialise_database(settings)

    if args.command == "serve":
        _serve(
            settings=settings,
            store=store,
            host=args.host,
            port=args.port,
            ssl_certfile=args.ssl_certfile,
            ssl_keyfile=args.ssl_keyfile,
        )
    elif args.command == "init-db":
        print("Database initialisation complete.")
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
