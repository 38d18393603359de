"""Tests for config.py - option loading and resolution."""

from __future__ import annotations

from pathlib import Path

import pytest

from memongo.config import (
    DEFAULT_STARTUP_TIMEOUT,
    ConfigError,
    Options,
    default_cache_path,
    find_free_port,
    load_options,
    options_from_dict,
    resolve_options,
)
from memongo.spec import HostInfo, UnsupportedMongoVersionError


@pytest.fixture(autouse=True)
def isolated_home(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> Path:
    """Point HOME at an empty directory so no real user config leaks in."""
    home = tmp_path / "home"
    home.mkdir()
    monkeypatch.setenv("HOME", str(home))
    return home


@pytest.fixture
def project_dir(tmp_path: Path) -> Path:
    project = tmp_path / "project"
    project.mkdir()
    return project


@pytest.fixture
def ubuntu_host(tmp_path: Path) -> HostInfo:
    os_release = tmp_path / "os-release"
    os_release.write_text('ID=ubuntu\nVERSION_ID="22.04"\n')
    return HostInfo(
        system="linux",
        machine="x86_64",
        os_release_path=os_release,
        redhat_release_path=tmp_path / "redhat-release",
    )


# ---------------------------------------------------------------------------
# load_options
# ---------------------------------------------------------------------------


class TestLoadOptions:
    """Tests for load_options()."""

    def test_defaults(self, project_dir: Path) -> None:
        options = load_options(project_dir)

        assert options == Options()
        assert options.port == 0
        assert options.log_level == "info"
        assert options.startup_timeout is None

    def test_project_config(self, project_dir: Path) -> None:
        (project_dir / ".memongo.toml").write_text(
            '[memongo]\nmongo_version = "6.0.4"\nuse_replica = true\ncache_path = "~/mongo-cache"\n'
        )

        options = load_options(project_dir)

        assert options.mongo_version == "6.0.4"
        assert options.use_replica is True
        assert options.cache_path == Path.home() / "mongo-cache"

    def test_project_overrides_user_config(self, project_dir: Path, isolated_home: Path) -> None:
        user_config = isolated_home / ".config" / "memongo" / "config.toml"
        user_config.parent.mkdir(parents=True)
        user_config.write_text('[memongo]\nmongo_version = "4.0.5"\nauth = true\n')
        (project_dir / ".memongo.toml").write_text('[memongo]\nmongo_version = "6.0.4"\n')

        options = load_options(project_dir)

        assert options.mongo_version == "6.0.4"
        assert options.auth is True

    def test_overrides_win_and_none_is_ignored(self, project_dir: Path) -> None:
        (project_dir / ".memongo.toml").write_text('[memongo]\nmongo_version = "6.0.4"\nport = 30000\n')

        options = load_options(project_dir, {"mongo_version": "7.0.2", "port": None})

        assert options.mongo_version == "7.0.2"
        assert options.port == 30000

    def test_file_without_section(self, project_dir: Path) -> None:
        (project_dir / ".memongo.toml").write_text('[tool.other]\nkey = "value"\n')
        assert load_options(project_dir) == Options()

    def test_section_must_be_table(self, project_dir: Path) -> None:
        (project_dir / ".memongo.toml").write_text('memongo = "6.0.4"\n')
        with pytest.raises(ConfigError, match="must be a table"):
            load_options(project_dir)

    def test_unknown_key(self, project_dir: Path) -> None:
        (project_dir / ".memongo.toml").write_text('[memongo]\nversion = "6.0.4"\n')
        with pytest.raises(ConfigError, match="version"):
            load_options(project_dir)


def test_options_from_dict() -> None:
    options = options_from_dict({"mongod_bin": "/opt/mongod", "startup_timeout": 2.5})
    assert options.mongod_bin == "/opt/mongod"
    assert options.startup_timeout == 2.5


# ---------------------------------------------------------------------------
# resolve_options
# ---------------------------------------------------------------------------


class TestResolveOptions:
    """Tests for resolve_options()."""

    def test_download_url_from_version(self, ubuntu_host: HostInfo, tmp_path: Path) -> None:
        options = resolve_options(Options(mongo_version="6.0.4"), env={}, host=ubuntu_host)

        assert options.download_url == "https://fastdl.mongodb.org/linux/mongodb-linux-x86_64-ubuntu2204-6.0.4.tgz"
        assert options.cache_path == Path.home() / ".cache" / "memongo"
        assert options.shell_download_url is None
        assert options.startup_timeout == DEFAULT_STARTUP_TIMEOUT
        assert 0 < options.port < 65536

    def test_explicit_values_are_kept(self, ubuntu_host: HostInfo, tmp_path: Path) -> None:
        options = resolve_options(
            Options(download_url="https://example.com/m.tgz", cache_path=tmp_path, port=31000, startup_timeout=3.0),
            env={},
            host=ubuntu_host,
        )

        assert options.download_url == "https://example.com/m.tgz"
        assert options.cache_path == tmp_path
        assert options.port == 31000
        assert options.startup_timeout == 3.0

    def test_env_download_url(self, ubuntu_host: HostInfo) -> None:
        options = resolve_options(
            Options(mongo_version="6.0.4"),
            env={"MEMONGO_DOWNLOAD_URL": "https://mirror.example.com/m.tgz"},
            host=ubuntu_host,
        )
        assert options.download_url == "https://mirror.example.com/m.tgz"

    def test_env_binaries_skip_download(self) -> None:
        options = resolve_options(
            Options(),
            env={"MEMONGO_MONGOD_BIN": "/opt/mongod", "MEMONGO_MONGOSH_BIN": "/opt/mongosh"},
            host=HostInfo(system="windows", machine="sparc"),
        )

        assert options.mongod_bin == "/opt/mongod"
        assert options.mongosh_bin == "/opt/mongosh"
        assert options.download_url is None
        assert options.cache_path is None

    def test_explicit_binary_beats_env(self) -> None:
        options = resolve_options(Options(mongod_bin="/mine/mongod"), env={"MEMONGO_MONGOD_BIN": "/opt/mongod"})
        assert options.mongod_bin == "/mine/mongod"

    def test_nothing_to_run(self, ubuntu_host: HostInfo) -> None:
        with pytest.raises(ConfigError, match="one of mongo_version, download_url, or mongod_bin"):
            resolve_options(Options(), env={}, host=ubuntu_host)

    def test_bad_version_propagates(self, ubuntu_host: HostInfo) -> None:
        with pytest.raises(UnsupportedMongoVersionError):
            resolve_options(Options(mongo_version="3.0.2"), env={}, host=ubuntu_host)

    def test_fetch_shell(self, ubuntu_host: HostInfo) -> None:
        options = resolve_options(Options(mongo_version="6.0.4", fetch_shell=True), env={}, host=ubuntu_host)
        assert options.shell_download_url == "https://downloads.mongodb.com/compass/mongosh-1.1.8-linux-x64.tgz"

    def test_shell_with_local_mongod(self, ubuntu_host: HostInfo) -> None:
        options = resolve_options(
            Options(mongod_bin="/opt/mongod", shell_download_url="https://example.com/sh.tgz"),
            env={},
            host=ubuntu_host,
        )

        assert options.download_url is None
        assert options.shell_download_url == "https://example.com/sh.tgz"
        assert options.cache_path is not None

    def test_local_mongosh_disables_shell_download(self, ubuntu_host: HostInfo) -> None:
        options = resolve_options(
            Options(mongo_version="6.0.4", fetch_shell=True, mongosh_bin="/opt/mongosh"),
            env={},
            host=ubuntu_host,
        )
        assert options.shell_download_url is None

    def test_port_from_env(self) -> None:
        options = resolve_options(Options(mongod_bin="/opt/mongod"), env={"MEMONGO_MONGOD_PORT": "27999"})
        assert options.port == 27999

    def test_explicit_port_beats_env(self) -> None:
        options = resolve_options(
            Options(mongod_bin="/opt/mongod", port=28000), env={"MEMONGO_MONGOD_PORT": "27999"}
        )
        assert options.port == 28000

    def test_bad_port_in_env(self) -> None:
        with pytest.raises(ConfigError, match="MEMONGO_MONGOD_PORT"):
            resolve_options(Options(mongod_bin="/opt/mongod"), env={"MEMONGO_MONGOD_PORT": "mongo"})

    def test_input_is_not_mutated(self) -> None:
        options = Options(mongod_bin="/opt/mongod")
        resolve_options(options, env={})
        assert options.port == 0
        assert options.startup_timeout is None


class TestDefaultCachePath:
    """Tests for default_cache_path()."""

    def test_env_override(self, tmp_path: Path) -> None:
        env = {"MEMONGO_CACHE_PATH": str(tmp_path), "XDG_CACHE_HOME": "/xdg"}
        assert default_cache_path(env, HostInfo("linux", "x86_64")) == tmp_path

    def test_xdg(self) -> None:
        assert default_cache_path({"XDG_CACHE_HOME": "/xdg"}, HostInfo("linux", "x86_64")) == Path("/xdg/memongo")

    def test_linux_default(self) -> None:
        assert default_cache_path({}, HostInfo("linux", "x86_64")) == Path.home() / ".cache" / "memongo"

    def test_macos_default(self) -> None:
        assert default_cache_path({}, HostInfo("darwin", "arm64")) == Path.home() / "Library" / "Caches" / "memongo"


def test_find_free_port() -> None:
    port = find_free_port()
    assert 0 < port < 65536


class TestLocalShellBinary:
    """A local mongosh always wins over a shell archive URL."""

    def test_both_binaries_drop_shell_url(self) -> None:
        options = resolve_options(
            Options(shell_download_url="https://example.com/mongosh.tgz"),
            env={"MEMONGO_MONGOD_BIN": "/opt/mongod", "MEMONGO_MONGOSH_BIN": "/opt/mongosh"},
        )

        assert options.shell_download_url is None
        assert options.download_url is None
        assert options.cache_path is None

    def test_local_shell_with_download(self, ubuntu_host: HostInfo) -> None:
        options = resolve_options(
            Options(mongo_version="6.0.4", mongosh_bin="/opt/mongosh", shell_download_url="https://example.com/sh.tgz"),
            env={},
            host=ubuntu_host,
        )

        assert options.shell_download_url is None
        assert options.download_url is not None
