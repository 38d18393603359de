"""Download URLs for MongoDB server and shell archives."""

from __future__ import annotations

from memongo.spec import DownloadSpec

DOWNLOAD_HOST = "https://fastdl.mongodb.org"
SHELL_DOWNLOAD_URL = "https://downloads.mongodb.com/compass/mongosh-1.1.8-linux-x64.tgz"


def archive_name(spec: DownloadSpec) -> str:
    """Build the archive basename, e.g. ``mongodb-linux-x86_64-ubuntu2204-6.0.4.tgz``."""
    if spec.platform == "linux":
        parts = ["mongodb", "linux", spec.arch]
        if spec.distro:
            parts.append(spec.distro)
    elif spec.ssl:
        parts = ["mongodb", "osx", "ssl", spec.arch]
    else:
        parts = ["mongodb", "macos", spec.arch]

    parts.append(spec.version)
    return "-".join(parts) + ".tgz"


def download_url(spec: DownloadSpec) -> str:
    """Return the fastdl URL of the server archive for *spec*."""
    return f"{DOWNLOAD_HOST}/{spec.platform}/{archive_name(spec)}"


def shell_download_url() -> str:
    """Return the URL of the mongosh archive (a single linux build)."""
    return SHELL_DOWNLOAD_URL
