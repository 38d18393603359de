"""Download cache for MongoDB binaries.

Each archive URL gets its own directory under the cache root, named after the
archive plus a hash of the full URL, so mirrors serving the same basename never
collide:

    ~/.cache/memongo/
        mongodb-linux-x86_64-ubuntu2204-6_0_4_tgz_1a2b3c4d5e/
            mongod
        mongosh-1_1_8-linux-x64_tgz_0f9e8d7c6b/
            mongosh
            mongocryptd-mongosh

Entries are written once and never evicted.  No lock is taken: two processes
racing on a cold cache both download, and whichever rename lands last wins.
The bytes for a given URL never change, so that is only wasted work.
"""

from __future__ import annotations

import errno
import hashlib
import logging
import os
import re
import shutil
import tarfile
import tempfile
import time
import zlib
from dataclasses import dataclass
from pathlib import Path, PurePosixPath
from typing import IO
from urllib.parse import urlparse

import requests

logger = logging.getLogger(__name__)

MONGOD_FILES = ("mongod",)
SHELL_FILES = ("mongosh", "mongocryptd-mongosh")

_CHUNK_SIZE = 1024 * 1024
_UNSAFE_CHARS = re.compile(r"[^a-zA-Z0-9_-]")


class CacheError(Exception):
    """Base exception for cache errors."""


class DownloadError(CacheError):
    """Raised when an archive cannot be fetched."""


class ArchiveError(CacheError):
    """Raised when an archive is malformed or lacks a requested file."""


class ExtractionError(CacheError):
    """Raised when an extracted file cannot be written into the cache."""


@dataclass(frozen=True)
class MongoPaths:
    """Local paths of the cached binaries; None where nothing was requested."""

    mongod: Path | None = None
    mongosh: Path | None = None


class ArtifactCache:
    """Resolves archive URLs to extracted binaries under a cache root."""

    def __init__(self, cache_root: Path, session: requests.Session | None = None) -> None:
        """Initialize the cache.

        Args:
            cache_root: Directory holding one subdirectory per archive URL.
            session: HTTP session used for downloads. Defaults to a new one.
        """
        self.cache_root = Path(cache_root)
        self.session = session or requests.Session()

    def get_or_download(self, mongod_url: str | None, shell_url: str | None = None) -> MongoPaths:
        """Return local paths for the binaries in the given archives.

        An empty URL means that archive is not needed.

        Args:
            mongod_url: URL of the server archive.
            shell_url: URL of the mongosh archive.

        Returns:
            MongoPaths with ``mongod`` and ``mongosh`` set for each requested URL.

        Raises:
            CacheError: If a download or extraction fails.
        """
        mongod = self.get_or_download_files(mongod_url, MONGOD_FILES)[0] if mongod_url else None
        mongosh = self.get_or_download_files(shell_url, SHELL_FILES)[0] if shell_url else None
        return MongoPaths(mongod=mongod, mongosh=mongosh)

    def get_or_download_files(self, url: str, names: tuple[str, ...]) -> list[Path]:
        """Return paths for *names* extracted from the archive at *url*.

        Only downloads when at least one of the files is missing from the cache.
        """
        dir_path = self.cache_root / directory_name_for_url(url)
        paths = [dir_path / name for name in names]

        missing = {path.name for path in paths if not path.exists()}
        if not missing:
            logger.debug("%s from %s exists in cache at %s", ", ".join(names), url, dir_path)
            return paths

        logger.info("%s from %s not in cache, downloading to %s", ", ".join(sorted(missing)), url, dir_path)
        start = time.monotonic()

        with tempfile.TemporaryFile() as archive:
            self._download(url, archive)
            archive.seek(0)
            _extract(archive, url, dir_path, missing)

        logger.info("Finished downloading %s in %.1fs", url, time.monotonic() - start)
        return paths

    def _download(self, url: str, out: IO[bytes]) -> None:
        try:
            with self.session.get(url, stream=True, timeout=60) as response:
                response.raise_for_status()
                for chunk in response.iter_content(chunk_size=_CHUNK_SIZE):
                    out.write(chunk)
        except requests.RequestException as exc:
            raise DownloadError(f"error downloading archive from {url}: {exc}") from exc


def _extract(archive: IO[bytes], url: str, dir_path: Path, missing: set[str]) -> None:
    """Stream through the tarball, saving every member named in *missing*."""
    remaining = set(missing)
    try:
        with tarfile.open(fileobj=archive, mode="r|gz") as tar:
            for member in tar:
                if not remaining:
                    break
                if not member.isfile():
                    continue
                name = _wanted_name(member.name, remaining)
                if name is None:
                    continue
                source = tar.extractfile(member)
                if source is None:
                    continue
                save_file(source, dir_path / name)
                remaining.discard(name)
    except (tarfile.TarError, EOFError, OSError, zlib.error) as exc:
        raise ArchiveError(f"error reading archive from {url}: {exc}") from exc

    if remaining:
        raise ArchiveError(f"did not find {', '.join(sorted(remaining))} in the archive from {url}")


def _wanted_name(member_name: str, names: set[str]) -> str | None:
    for name in names:
        if member_name.endswith(f"bin/{name}"):
            return name
    return None


def save_file(source: IO[bytes], dest: Path) -> None:
    """Write *source* to *dest* atomically and mark it executable.

    The file is written to a scratch file first and renamed into place.  When
    the scratch directory is on another filesystem the rename fails with EXDEV
    and the bytes are copied instead.

    Raises:
        ExtractionError: On any filesystem failure.
    """
    try:
        dest.parent.mkdir(parents=True, exist_ok=True)
        tmp = tempfile.NamedTemporaryFile(delete=False, prefix=f"{dest.name}-")
    except OSError as exc:
        raise ExtractionError(f"error creating a scratch file for {dest.name}: {exc}") from exc

    try:
        with tmp:
            shutil.copyfileobj(source, tmp)
        os.chmod(tmp.name, 0o755)
    except OSError as exc:
        _remove_quietly(tmp.name)
        raise ExtractionError(f"error writing {dest.name} to a scratch file: {exc}") from exc
    except BaseException:
        _remove_quietly(tmp.name)
        raise

    try:
        os.replace(tmp.name, dest)
    except OSError as exc:
        if exc.errno != errno.EXDEV:
            _remove_quietly(tmp.name)
            raise ExtractionError(f"error moving {tmp.name} to {dest}: {exc}") from exc
        logger.debug("Unable to move %s to %s, copying instead", tmp.name, dest)
        _copy_across_devices(Path(tmp.name), dest)


def _copy_across_devices(tmp: Path, dest: Path) -> None:
    try:
        dest.write_bytes(tmp.read_bytes())
        os.chmod(dest, 0o755)
    except OSError as exc:
        raise ExtractionError(f"error copying {tmp} to {dest}: {exc}") from exc
    finally:
        _remove_quietly(str(tmp))


def _remove_quietly(path: str) -> None:
    try:
        os.unlink(path)
    except OSError as exc:
        logger.warning("Could not remove scratch file %s: %s", path, exc)


def directory_name_for_url(url: str) -> str:
    """Name the cache directory for *url*: ``<sanitized basename>_<10 hex of sha256(url)>``.

    Args:
        url: Archive URL.

    Returns:
        A directory name that is readable and unique per URL.
    """
    digest = hashlib.sha256(url.encode()).hexdigest()[:10]
    # An empty path still yields a non-empty name
    basename = PurePosixPath(urlparse(url).path).name or "_"
    return f"{sanitize_filename(basename)}_{digest}"


def sanitize_filename(name: str) -> str:
    return _UNSAFE_CHARS.sub("_", name)
