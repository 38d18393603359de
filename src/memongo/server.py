"""Start and stop an ephemeral mongod.

:func:`start_with_options` resolves and caches the binary, launches mongod on a
scratch data directory, starts the watchdog, and waits for mongod to report the
port it listens on.  Every failure after the data directory exists tears down
whatever was started before the error propagates.
"""

from __future__ import annotations

import logging
import os
import secrets
import shutil
import string
import subprocess
import tempfile
import time
from pathlib import Path
from types import TracebackType

from pymongo import MongoClient
from pymongo.errors import PyMongoError

from memongo import monitor
from memongo.cache import ArtifactCache, MongoPaths
from memongo.config import ConfigError, Options, resolve_options
from memongo.launcher import build_mongod_args, launch
from memongo.readiness import Failed, ReadinessMonitor, StartupError, StartupFailure

logger = logging.getLogger(__name__)

DB_NAME_CHARS = string.ascii_lowercase + string.digits
DB_NAME_LEN = 32

_LOG_LEVELS = {
    "debug": logging.DEBUG,
    "info": logging.INFO,
    "warn": logging.WARNING,
    "warning": logging.WARNING,
    "silent": logging.CRITICAL + 1,
}


def random_database() -> str:
    """Return a random database name for isolating a test."""
    return "".join(secrets.choice(DB_NAME_CHARS) for _ in range(DB_NAME_LEN))


class Server:
    """A running mongod, its watchdog, and its scratch data directory.

    Call :meth:`stop` (or use the server as a context manager) when done.
    """

    def __init__(
        self,
        process: subprocess.Popen[bytes],
        watcher: subprocess.Popen[bytes],
        db_dir: Path,
        port: int,
        readiness: ReadinessMonitor | None = None,
    ) -> None:
        self._process = process
        self._watcher = watcher
        self._db_dir = db_dir
        self._port = port
        self._readiness = readiness
        self._stopped = False

    @property
    def port(self) -> int:
        """Port the server is listening on."""
        return self._port

    @property
    def uri(self) -> str:
        """``mongodb://`` URI to connect to."""
        return f"mongodb://localhost:{self._port}"

    @property
    def db_dir(self) -> Path:
        return self._db_dir

    @property
    def pid(self) -> int:
        return self._process.pid

    @property
    def watcher_pid(self) -> int:
        return self._watcher.pid

    def uri_with_random_db(self) -> str:
        """URI with a random database name, e.g. ``mongodb://localhost:1234/xk3...``."""
        return f"{self.uri}/{random_database()}"

    def stop(self) -> None:
        """Kill mongod and the watchdog, then remove the data directory.

        Best effort: each failure is logged and the remaining steps still run.
        Only the first call does anything.
        """
        if self._stopped:
            return
        self._stopped = True
        _teardown(self._process, self._watcher, self._db_dir, self._readiness)

    def __enter__(self) -> Server:
        return self

    def __exit__(
        self,
        exc_type: type[BaseException] | None,
        exc: BaseException | None,
        tb: TracebackType | None,
    ) -> None:
        self.stop()

    def __repr__(self) -> str:
        return f"Server(uri={self.uri!r}, pid={self._process.pid})"


def start(version: str) -> Server:
    """Start mongod *version* with default options."""
    return start_with_options(Options(mongo_version=version))


def start_with_options(options: Options) -> Server:
    """Start an ephemeral mongod.

    Args:
        options: Launch options; unset fields are filled from the environment.

    Returns:
        The running Server.

    Raises:
        ConfigError: If the options cannot describe a launch.
        UnsupportedMongoVersionError: If the version cannot be downloaded.
        UnsupportedSystemError: If there is no build for this host.
        CacheError: If downloading or extracting the binary fails.
        StartupError: If mongod fails to start, times out, or the replica set
            cannot be initiated.
    """
    _apply_log_level(options.log_level)
    options = resolve_options(options)
    logger.info("Starting MongoDB with options %r", options)

    mongod_bin = _binary_path(options)
    logger.debug("Using binary %s", mongod_bin)

    # Even the ephemeralForTest engine needs a dbpath
    db_dir = Path(tempfile.mkdtemp(prefix="memongo-"))
    process: subprocess.Popen[bytes] | None = None
    watcher: subprocess.Popen[bytes] | None = None
    readiness: ReadinessMonitor | None = None
    try:
        args = build_mongod_args(options, db_dir)
        process = launch(mongod_bin, args)

        readiness = ReadinessMonitor(process.stdout, process.stderr)
        readiness.start()

        logger.debug("Started mongod; starting watcher")
        watcher = monitor.spawn(os.getpid(), process.pid)

        logger.debug("Started watcher; waiting for mongod to report port number")
        started = time.monotonic()
        event = readiness.wait(timeout=options.startup_timeout)
        if event is None:
            raise StartupError(
                StartupFailure.TIMEOUT, f"no port reported after {options.startup_timeout}s"
            )
        if isinstance(event, Failed):
            raise event.to_error()
        port = event.port
        logger.debug("mongod reported port %d after %.2fs", port, time.monotonic() - started)

        if options.use_replica:
            initiate_replica_set(port)
    except BaseException:
        _teardown(process, watcher, db_dir, readiness)
        raise

    return Server(process, watcher, db_dir, port, readiness)


def initiate_replica_set(port: int, timeout_ms: int = 10_000) -> None:
    """Turn a freshly started ``--replSet`` member into a one-node replica set.

    Raises:
        StartupError: If any step of the handshake fails.
    """
    uri = f"mongodb://localhost:{port}/?directConnection=true"
    client: MongoClient | None = None
    try:
        client = MongoClient(uri, serverSelectionTimeoutMS=timeout_ms)
        client.admin.command("ping")
        client.admin.command("replSetInitiate")
    except PyMongoError as exc:
        logger.warning("Error while initiating replica set on port %d: %s", port, exc)
        raise StartupError(StartupFailure.REPLICA_SET_INIT, str(exc)) from exc
    finally:
        if client is not None:
            client.close()
    logger.debug("Initiated replica set on port %d", port)


def _binary_path(options: Options) -> str:
    """Return the mongod to run, downloading whatever the options still need."""
    mongod_url = None if options.mongod_bin else options.download_url
    paths = MongoPaths()
    if mongod_url or options.shell_download_url:
        if options.cache_path is None:
            raise ConfigError("cache_path must be set to download binaries")
        cache = ArtifactCache(options.cache_path)
        paths = cache.get_or_download(mongod_url, options.shell_download_url)

    mongod_bin = options.mongod_bin or paths.mongod
    if mongod_bin is None:
        raise ConfigError("one of mongo_version, download_url, or mongod_bin must be given")
    return str(mongod_bin)


def _teardown(
    process: subprocess.Popen[bytes] | None,
    watcher: subprocess.Popen[bytes] | None,
    db_dir: Path,
    readiness: ReadinessMonitor | None = None,
) -> None:
    if process is not None:
        try:
            process.kill()
            process.wait(timeout=10)
        except (OSError, subprocess.TimeoutExpired) as exc:
            logger.warning("Error stopping mongod process: %s", exc)

        try:
            if readiness is not None:
                readiness.close()
            else:
                for pipe in (process.stdout, process.stderr):
                    if pipe is not None:
                        pipe.close()
        except OSError as exc:
            logger.warning("Error closing mongod output pipes: %s", exc)

    if watcher is not None:
        try:
            monitor.terminate(watcher)
        except (OSError, subprocess.TimeoutExpired) as exc:
            logger.warning("Error stopping watcher process: %s", exc)

    try:
        shutil.rmtree(db_dir)
    except OSError as exc:
        logger.warning("Error removing data directory %s: %s", db_dir, exc)


def _apply_log_level(level: str) -> None:
    try:
        logging.getLogger("memongo").setLevel(_LOG_LEVELS[level.lower()])
    except KeyError:
        logger.warning("Unknown log level %r, keeping current level", level)
