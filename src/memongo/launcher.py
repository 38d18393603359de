"""Build the mongod command line and start the process."""

from __future__ import annotations

import logging
import os
import subprocess
from pathlib import Path

from memongo.config import Options
from memongo.spec import UnsupportedMongoVersionError, parse_version

logger = logging.getLogger(__name__)

EPHEMERAL_ENGINE = "ephemeralForTest"
DURABLE_ENGINE = "wiredTiger"
REPLICA_SET_NAME = "rs0"
KEYFILE_NAME = "keyfile"

# ephemeralForTest is gone from 7.0 servers
_DURABLE_ONLY_SINCE = (7, 0)


def storage_engine(options: Options) -> str:
    """Pick the storage engine for a launch."""
    if options.use_replica:
        return DURABLE_ENGINE
    if options.mongo_version:
        try:
            version = parse_version(options.mongo_version)
        except UnsupportedMongoVersionError:
            return EPHEMERAL_ENGINE
        if version[:2] >= _DURABLE_ONLY_SINCE:
            return DURABLE_ENGINE
    return EPHEMERAL_ENGINE


def build_mongod_args(options: Options, db_dir: Path) -> list[str]:
    """Build mongod's arguments.

    With auth and replica mode together, a keyfile is written into *db_dir*.

    Args:
        options: Resolved launch options (``port`` must be set).
        db_dir: Scratch data directory owned by this launch.

    Returns:
        Argument list, without the binary itself.
    """
    engine = storage_engine(options)
    args = ["--dbpath", str(db_dir), "--port", str(options.port)]

    if options.use_replica:
        args += ["--replSet", REPLICA_SET_NAME]
    if engine == DURABLE_ENGINE:
        args += ["--bind_ip", "localhost"]

    if options.auth:
        args.append("--auth")
        # Replica set members must authenticate to each other once auth is on
        if options.use_replica:
            args += ["--keyFile", str(write_insecure_keyfile(db_dir))]

    args += ["--storageEngine", engine]
    return args


def write_insecure_keyfile(directory: Path) -> Path:
    """Write a fixed replica-set keyfile.

    The key is a constant string.  It is fine for a throwaway local server and
    must never be used for a real deployment; see the MongoDB docs on keyfile
    authentication for generating a proper one.
    """
    path = directory / KEYFILE_NAME
    fd = os.open(path, os.O_CREAT | os.O_EXCL | os.O_WRONLY, 0o600)
    with os.fdopen(fd, "w") as f:
        f.write("insecurekeyfile")
    return path


def launch(mongod_bin: str | Path, args: list[str]) -> subprocess.Popen[bytes]:
    """Start mongod with piped stdout and stderr."""
    logger.debug("Starting mongod: %s %s", mongod_bin, " ".join(args))
    return subprocess.Popen(
        [str(mongod_bin), *args],
        stdin=subprocess.DEVNULL,
        stdout=subprocess.PIPE,
        stderr=subprocess.PIPE,
    )
