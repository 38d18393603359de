"""Launch options: loading, layering and default resolution."""

from __future__ import annotations

import dataclasses
import os
import socket
import sys
from collections.abc import Mapping
from dataclasses import dataclass
from pathlib import Path
from typing import Any

if sys.version_info >= (3, 11):
    import tomllib
else:
    import tomli as tomllib

from memongo.download_url import download_url, shell_download_url
from memongo.spec import HostInfo, make_download_spec

DEFAULT_STARTUP_TIMEOUT = 10.0

ENV_CACHE_PATH = "MEMONGO_CACHE_PATH"
ENV_DOWNLOAD_URL = "MEMONGO_DOWNLOAD_URL"
ENV_MONGOD_BIN = "MEMONGO_MONGOD_BIN"
ENV_MONGOSH_BIN = "MEMONGO_MONGOSH_BIN"
ENV_MONGOD_PORT = "MEMONGO_MONGOD_PORT"


class ConfigError(ValueError):
    """Raised when the options cannot describe a launch."""


@dataclass(frozen=True)
class Options:
    """Options for launching one ephemeral mongod."""

    # Version to download when no download URL or binary is given
    mongo_version: str | None = None
    # Overrides the URL derived from mongo_version
    download_url: str | None = None
    shell_download_url: str | None = None
    # Local binaries; skip downloading entirely
    mongod_bin: str | None = None
    mongosh_bin: str | None = None
    cache_path: Path | None = None
    # 0 picks a free port
    port: int = 0
    # Seconds to wait for mongod to report readiness, excluding download time
    startup_timeout: float | None = None
    use_replica: bool = False
    auth: bool = False
    # Also fetch mongosh into the cache
    fetch_shell: bool = False
    log_level: str = "info"


_FIELDS = {f.name for f in dataclasses.fields(Options)}


def load_options(
    project_path: Path | None = None, overrides: dict[str, Any] | None = None
) -> Options:
    """
    Load options with priority order (highest to lowest):
    1. Explicit overrides (e.g. from the CLI)
    2. .memongo.toml in project root
    3. ~/.config/memongo/config.toml (user-global)
    4. Built-in defaults

    Environment variables are applied later by :func:`resolve_options`, and only
    to fields still unset.

    Args:
        project_path: Directory containing .memongo.toml
        overrides: Field values that win over every file

    Returns:
        Options with file and override values applied
    """
    values: dict[str, Any] = {}

    user_config_path = Path.home() / ".config" / "memongo" / "config.toml"
    if user_config_path.exists():
        values.update(_read_config_file(user_config_path))

    if project_path:
        project_config_path = project_path / ".memongo.toml"
        if project_config_path.exists():
            values.update(_read_config_file(project_config_path))

    if overrides:
        values.update({k: v for k, v in overrides.items() if v is not None})

    return options_from_dict(values)


def options_from_dict(data: Mapping[str, Any]) -> Options:
    """Build Options from plain values, rejecting unknown keys."""
    unknown = set(data) - _FIELDS
    if unknown:
        raise ConfigError(f"Unknown memongo option(s): {', '.join(sorted(unknown))}")

    values = dict(data)
    if values.get("cache_path") is not None:
        values["cache_path"] = Path(values["cache_path"]).expanduser()
    return Options(**values)


def _read_config_file(path: Path) -> dict[str, Any]:
    """Read the ``[memongo]`` table of a TOML file."""
    with path.open("rb") as f:
        data = tomllib.load(f)
    section = data.get("memongo", {})
    if not isinstance(section, dict):
        raise ConfigError(f"[memongo] in {path} must be a table")
    return section


def resolve_options(
    options: Options,
    env: Mapping[str, str] | None = None,
    host: HostInfo | None = None,
) -> Options:
    """Fill in everything a launch needs.

    Binary paths and the download URL come from the environment when unset; the
    download URL is otherwise derived from ``mongo_version``.  A free port is
    picked when none is configured.

    Args:
        options: Caller-supplied options
        env: Environment to read overrides from. Defaults to ``os.environ``.
        host: Host used to resolve the download URL. Defaults to the real host.

    Returns:
        A new Options with defaults filled in

    Raises:
        ConfigError: If no version, URL or binary is given, or the port is invalid.
        UnsupportedMongoVersionError: If the version cannot be downloaded.
        UnsupportedSystemError: If there is no build for this host.
    """
    env = os.environ if env is None else env
    updates: dict[str, Any] = {}

    mongod_bin = options.mongod_bin or env.get(ENV_MONGOD_BIN) or None
    mongosh_bin = options.mongosh_bin or env.get(ENV_MONGOSH_BIN) or None
    updates["mongod_bin"] = mongod_bin
    updates["mongosh_bin"] = mongosh_bin

    wants_shell = not mongosh_bin and (options.fetch_shell or bool(options.shell_download_url))
    if not mongod_bin or wants_shell:
        host = host or HostInfo.detect()
        updates["cache_path"] = options.cache_path or default_cache_path(env, host)

        if not mongod_bin:
            url = options.download_url or env.get(ENV_DOWNLOAD_URL) or None
            if not url:
                if not options.mongo_version:
                    raise ConfigError("one of mongo_version, download_url, or mongod_bin must be given")
                url = download_url(make_download_spec(options.mongo_version, host))
            updates["download_url"] = url

    # A local mongosh means no shell archive, whatever URL was passed
    updates["shell_download_url"] = (
        (options.shell_download_url or shell_download_url()) if wants_shell else None
    )

    port = options.port
    if not port and env.get(ENV_MONGOD_PORT):
        try:
            port = int(env[ENV_MONGOD_PORT])
        except ValueError as exc:
            raise ConfigError(f"error parsing {ENV_MONGOD_PORT}: {exc}") from exc
    updates["port"] = port or find_free_port()

    if options.startup_timeout is None:
        updates["startup_timeout"] = DEFAULT_STARTUP_TIMEOUT

    return dataclasses.replace(options, **updates)


def default_cache_path(env: Mapping[str, str], host: HostInfo) -> Path:
    """Cache root: $MEMONGO_CACHE_PATH, $XDG_CACHE_HOME/memongo, or the platform cache dir."""
    if env.get(ENV_CACHE_PATH):
        return Path(env[ENV_CACHE_PATH])
    if env.get("XDG_CACHE_HOME"):
        return Path(env["XDG_CACHE_HOME"]) / "memongo"
    if host.system == "darwin":
        return Path.home() / "Library" / "Caches" / "memongo"
    return Path.home() / ".cache" / "memongo"


def find_free_port() -> int:
    """Ask the OS for an unused localhost port."""
    with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as sock:
        sock.bind(("localhost", 0))
        return sock.getsockname()[1]
