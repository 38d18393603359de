"""Tests for download_url.py."""

from __future__ import annotations

import pytest

from memongo.download_url import archive_name, download_url, shell_download_url
from memongo.spec import DownloadSpec


def _spec(version: str, platform: str, arch: str = "x86_64", distro: str = "", ssl: bool = False) -> DownloadSpec:
    version_info = tuple(int(part) for part in version.split("."))
    return DownloadSpec(version, version_info, platform, arch, distro, ssl)  # type: ignore[arg-type]


@pytest.mark.parametrize(
    ("spec", "url"),
    [
        (
            _spec("4.0.5", "osx", ssl=True),
            "https://fastdl.mongodb.org/osx/mongodb-osx-ssl-x86_64-4.0.5.tgz",
        ),
        (
            _spec("4.2.1", "osx"),
            "https://fastdl.mongodb.org/osx/mongodb-macos-x86_64-4.2.1.tgz",
        ),
        (
            _spec("6.0.1", "osx", arch="arm64"),
            "https://fastdl.mongodb.org/osx/mongodb-macos-arm64-6.0.1.tgz",
        ),
        (
            _spec("3.6.1", "linux"),
            "https://fastdl.mongodb.org/linux/mongodb-linux-x86_64-3.6.1.tgz",
        ),
        (
            _spec("6.0.4", "linux", distro="ubuntu2204"),
            "https://fastdl.mongodb.org/linux/mongodb-linux-x86_64-ubuntu2204-6.0.4.tgz",
        ),
        (
            _spec("4.4.0", "linux", arch="aarch64", distro="ubuntu2004"),
            "https://fastdl.mongodb.org/linux/mongodb-linux-aarch64-ubuntu2004-4.4.0.tgz",
        ),
        (
            _spec("3.6.5", "linux", arch="arm64", distro="ubuntu1604"),
            "https://fastdl.mongodb.org/linux/mongodb-linux-arm64-ubuntu1604-3.6.5.tgz",
        ),
    ],
)
def test_download_url(spec: DownloadSpec, url: str) -> None:
    assert download_url(spec) == url


def test_archive_name_has_no_directory() -> None:
    assert archive_name(_spec("4.0.13", "linux", distro="rhel70")) == "mongodb-linux-x86_64-rhel70-4.0.13.tgz"


def test_shell_download_url() -> None:
    assert shell_download_url() == "https://downloads.mongodb.com/compass/mongosh-1.1.8-linux-x64.tgz"
