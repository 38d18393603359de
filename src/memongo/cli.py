"""Entry point for the `memongo` CLI."""

from __future__ import annotations

import argparse
import logging
import signal
import sys
import threading
from pathlib import Path
from typing import Any

from memongo.cache import ArtifactCache, CacheError
from memongo.config import ConfigError, load_options, resolve_options
from memongo.readiness import StartupError
from memongo.spec import UnsupportedMongoVersionError, UnsupportedSystemError

logger = logging.getLogger(__name__)

_EXPECTED_ERRORS = (
    CacheError,
    ConfigError,
    StartupError,
    UnsupportedMongoVersionError,
    UnsupportedSystemError,
)


def main(argv: list[str] | None = None) -> None:
    """Parse CLI arguments and dispatch to a subcommand."""
    parser = argparse.ArgumentParser(
        prog="memongo",
        description="Download and run throwaway MongoDB servers for tests.",
    )
    parser.add_argument(
        "--version",
        action="version",
        version=f"%(prog)s {_get_version()}",
    )
    parser.add_argument(
        "--log-level",
        default=None,
        choices=["debug", "info", "warn", "silent"],
        help="Log verbosity (default: info).",
    )

    subparsers = parser.add_subparsers(dest="command", help="Available commands")

    run_parser = subparsers.add_parser("run", help="Start a server and block until interrupted")
    _add_version_args(run_parser)
    run_parser.add_argument("--port", type=int, default=None, help="Port (default: a free port).")
    run_parser.add_argument("--replica", action="store_true", help="Start a one-node replica set.")
    run_parser.add_argument("--auth", action="store_true", help="Pass --auth to mongod.")
    run_parser.add_argument(
        "--timeout",
        type=float,
        default=None,
        metavar="SECONDS",
        help="How long to wait for mongod to start (default: 10).",
    )

    download_parser = subparsers.add_parser("download", help="Download binaries into the cache")
    _add_version_args(download_parser)
    download_parser.add_argument("--shell", action="store_true", help="Also download mongosh.")

    url_parser = subparsers.add_parser("url", help="Print the download URL for this host")
    url_parser.add_argument("--mongo-version", required=True, metavar="X.Y.Z")

    args = parser.parse_args(argv)

    if args.command is None:
        parser.print_help()
        sys.exit(0)

    logging.basicConfig(
        level=logging.INFO,
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
        stream=sys.stderr,
    )

    try:
        if args.command == "run":
            _run(args)
        elif args.command == "download":
            _download(args)
        elif args.command == "url":
            _url(args)
    except _EXPECTED_ERRORS as exc:
        print(f"memongo: {exc}", file=sys.stderr)
        sys.exit(1)


def _add_version_args(parser: argparse.ArgumentParser) -> None:
    parser.add_argument("--mongo-version", default=None, metavar="X.Y.Z")
    parser.add_argument("--download-url", default=None, metavar="URL")
    parser.add_argument("--cache-path", default=None, metavar="PATH")


def _overrides(args: argparse.Namespace) -> dict[str, Any]:
    """Map parsed arguments onto Options field overrides."""
    overrides: dict[str, Any] = {
        "mongo_version": args.mongo_version,
        "download_url": args.download_url,
        "cache_path": args.cache_path,
        "log_level": args.log_level,
    }
    if getattr(args, "port", None):
        overrides["port"] = args.port
    if getattr(args, "timeout", None) is not None:
        overrides["startup_timeout"] = args.timeout
    if getattr(args, "replica", False):
        overrides["use_replica"] = True
    if getattr(args, "auth", False):
        overrides["auth"] = True
    if getattr(args, "shell", False):
        overrides["fetch_shell"] = True
    return overrides


def _run(args: argparse.Namespace) -> None:
    """Start a server, print its URI, and stop it on SIGINT/SIGTERM."""
    from memongo.server import start_with_options

    options = load_options(Path.cwd(), _overrides(args))
    stop_event = threading.Event()
    for sig in (signal.SIGTERM, signal.SIGINT):
        signal.signal(sig, lambda *_: stop_event.set())

    with start_with_options(options) as server:
        print(server.uri, flush=True)
        logger.info("mongod running at %s (pid %d); Ctrl-C to stop", server.uri, server.pid)
        while not stop_event.wait(1.0):
            pass
        logger.info("Shutting down...")


def _download(args: argparse.Namespace) -> None:
    """Fetch the server (and optionally mongosh) into the cache and print the paths."""
    options = resolve_options(load_options(Path.cwd(), _overrides(args)))
    if options.cache_path is None:
        print("Local binaries are configured; nothing to download.")
        return
    paths = ArtifactCache(options.cache_path).get_or_download(
        options.download_url, options.shell_download_url
    )
    if paths.mongod is not None:
        print(f"mongod: {paths.mongod}")
    if paths.mongosh is not None:
        print(f"mongosh: {paths.mongosh}")


def _url(args: argparse.Namespace) -> None:
    from memongo.download_url import download_url
    from memongo.spec import make_download_spec

    print(download_url(make_download_spec(args.mongo_version)))


def _get_version() -> str:
    from memongo import __version__

    return __version__


if __name__ == "__main__":
    main()
