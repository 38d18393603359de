"""Resolve which MongoDB build to download for a host.

The resolver maps ``(version, host)`` to a :class:`DownloadSpec`: platform,
architecture tag, distro tag and whether the legacy macOS SSL build is needed.
All host probing goes through a :class:`HostInfo`, so tests can describe a fake
host without touching module state.

Distro and ARM support are table-driven.  The boundaries come from MongoDB's
release archive and cannot be derived, so they live in literal tables below:
https://www.mongodb.com/download-center/community/releases/archive
"""

from __future__ import annotations

import platform
from dataclasses import dataclass
from pathlib import Path
from typing import NamedTuple

Version = tuple[int, int, int]

# Generic (non-distro) linux tarballs stop at 4.2.0; so do the macOS ssl builds.
GENERIC_LINUX_DROPPED = (4, 2, 0)
MIN_ARM_VERSION = (3, 4, 0)
MIN_VERSION = (3, 2, 0)


class UnsupportedMongoVersionError(ValueError):
    """Raised when a version string is malformed or too old."""

    def __init__(self, version: str, cause: str) -> None:
        self.version = version
        self.cause = cause
        super().__init__(f'memongo does not support MongoDB version "{version}": {cause}')


class UnsupportedSystemError(ValueError):
    """Raised when no MongoDB build exists for the host OS, distro or architecture."""

    def __init__(self, cause: str) -> None:
        self.cause = cause
        super().__init__(f"memongo does not support automatic downloading on your system: {cause}")


@dataclass(frozen=True)
class HostInfo:
    """Host probes consulted during resolution."""

    system: str
    machine: str
    os_release_path: Path = Path("/etc/os-release")
    redhat_release_path: Path = Path("/etc/redhat-release")

    @classmethod
    def detect(cls) -> HostInfo:
        """Describe the machine we are running on."""
        return cls(system=platform.system().lower(), machine=platform.machine().lower())


@dataclass(frozen=True)
class DownloadSpec:
    """Which MongoDB archive to download."""

    version: str
    version_info: Version
    platform: str  # "osx" or "linux"
    arch: str  # "x86_64", "arm64" or "aarch64"
    distro: str = ""  # e.g. "ubuntu2204"; empty on macOS and generic linux
    ssl: bool = False  # macOS builds before 4.2 carry an "ssl" marker


class DistroRelease(NamedTuple):
    """One row of a distro table: a host release range and the tag it maps to."""

    min_release: int
    max_release: int | None
    min_version: Version
    tag: str


class ArmBuild(NamedTuple):
    """One row of the ARM table: which arch tag a distro gets for a version range."""

    distro: str
    min_version: Version
    max_version: Version | None
    arch: str


# Keyed by the os-release ID.  Rows are ordered newest first; the first row whose
# release range contains the host's major release and whose minimum MongoDB
# version is met wins, so a host too new for the requested version degrades to
# the newest older release that version was built for.
DISTRO_RELEASES: dict[str, tuple[DistroRelease, ...]] = {
    "ubuntu": (
        DistroRelease(22, None, (6, 0, 4), "ubuntu2204"),
        DistroRelease(20, None, (4, 4, 0), "ubuntu2004"),
        DistroRelease(18, None, (4, 0, 1), "ubuntu1804"),
        DistroRelease(16, None, (3, 2, 7), "ubuntu1604"),
        DistroRelease(14, None, (0, 0, 0), "ubuntu1404"),
    ),
    "debian": (
        DistroRelease(11, None, (5, 0, 8), "debian11"),
        DistroRelease(10, None, (4, 2, 1), "debian10"),
        DistroRelease(9, None, (3, 6, 5), "debian92"),
        DistroRelease(8, None, (3, 2, 8), "debian81"),
    ),
    "sles": (DistroRelease(12, None, (0, 0, 0), "suse12"),),
    "centos": (
        DistroRelease(8, None, (0, 0, 0), "rhel80"),
        DistroRelease(7, 7, (0, 0, 0), "rhel70"),
    ),
    "rhel": (
        DistroRelease(8, None, (0, 0, 0), "rhel80"),
        DistroRelease(7, 7, (0, 0, 0), "rhel70"),
    ),
    # Amazon Linux 1 versions are release dates (2018.03), not small integers.
    "amzn": (
        DistroRelease(2, 2, (4, 0, 0), "amazon2"),
        DistroRelease(0, None, (0, 0, 0), "amazon"),
    ),
}

# First match wins.  The distro column holds the platform name on macOS.
ARM_BUILDS: tuple[ArmBuild, ...] = (
    ArmBuild("ubuntu1604", (3, 4, 0), (4, 0, 27), "arm64"),
    ArmBuild("ubuntu1804", (4, 2, 0), None, "aarch64"),
    ArmBuild("ubuntu2004", (4, 4, 0), None, "aarch64"),
    ArmBuild("ubuntu2204", (6, 0, 4), None, "aarch64"),
    ArmBuild("amazon2", (4, 2, 13), None, "aarch64"),
    ArmBuild("rhel82", (4, 4, 4), None, "aarch64"),
    ArmBuild("osx", (6, 0, 0), None, "arm64"),
)

_PLATFORMS = {"darwin": "osx", "linux": "linux"}
_X86_64 = {"x86_64", "amd64"}
_ARM64 = {"arm64", "aarch64"}


def make_download_spec(version: str, host: HostInfo | None = None) -> DownloadSpec:
    """Resolve the MongoDB build for *version* on *host*.

    Args:
        version: MongoDB version in ``x.y.z`` form.
        host: Host description. Defaults to :meth:`HostInfo.detect`.

    Returns:
        The resolved DownloadSpec.

    Raises:
        UnsupportedMongoVersionError: If the version is malformed or below 3.2.0.
        UnsupportedSystemError: If no build exists for the host.
    """
    host = host or HostInfo.detect()
    version_info = parse_version(version)
    platform_name = detect_platform(host)

    ssl = platform_name == "osx" and version_info < GENERIC_LINUX_DROPPED

    distro = detect_distro(host, version_info) if platform_name == "linux" else ""
    if platform_name == "linux" and not distro and version_info >= GENERIC_LINUX_DROPPED:
        raise UnsupportedSystemError(
            "MongoDB 4.2 removed support for generic linux tarballs. Specify the "
            "download URL manually or use a supported distro. See: "
            "https://www.mongodb.com/blog/post/a-proposal-to-endoflife-our-generic-linux-tar-packages"
        )

    arch = detect_arch(host, platform_name, distro, version_info)

    return DownloadSpec(
        version=version,
        version_info=version_info,
        platform=platform_name,
        arch=arch,
        distro=distro,
        ssl=ssl,
    )


def parse_version(version: str) -> Version:
    """Parse ``x.y.z`` into a tuple, rejecting anything older than 3.2.0."""
    parts = version.split(".")
    if len(parts) < 3:
        raise UnsupportedMongoVersionError(version, "MongoDB version number must be in the form x.y.z")

    numbers = []
    for part, name in zip(parts, ("major", "minor", "patch")):
        # int() would also take "1_0", " 5" and non-ASCII digits
        if not (part.isascii() and part.isdigit()):
            raise UnsupportedMongoVersionError(version, f"Could not parse {name} version")
        numbers.append(int(part))

    parsed = (numbers[0], numbers[1], numbers[2])
    if parsed < MIN_VERSION:
        raise UnsupportedMongoVersionError(version, "Only Mongo version 3.2 and above are supported")

    return parsed


def detect_platform(host: HostInfo) -> str:
    try:
        return _PLATFORMS[host.system]
    except KeyError:
        raise UnsupportedSystemError(f"your platform, {host.system}, is not supported") from None


def detect_arch(host: HostInfo, platform_name: str, distro: str, version: Version) -> str:
    """Map the host CPU to the architecture tag used in archive names."""
    if host.machine in _X86_64:
        return "x86_64"
    if host.machine in _ARM64:
        return _arm_arch(platform_name, distro, version)
    raise UnsupportedSystemError(f"your architecture, {host.machine}, is not supported")


def _arm_arch(platform_name: str, distro: str, version: Version) -> str:
    if version < MIN_ARM_VERSION:
        raise UnsupportedSystemError("arm64 support was introduced in Mongo 3.4.0")

    target = distro or platform_name
    for build in ARM_BUILDS:
        if build.distro != target or version < build.min_version:
            continue
        if build.max_version is not None and version >= build.max_version:
            continue
        return build.arch

    version_string = ".".join(str(n) for n in version)
    raise UnsupportedSystemError(
        f"Mongo doesn't support your environment, {target}/arm64, on version {version_string}"
    )


def detect_distro(host: HostInfo, version: Version) -> str:
    """Return the distro tag for a linux host, or ``""`` if it is not identifiable.

    ``os-release`` is authoritative when readable.  Only when it is missing do
    we look at the legacy ``redhat-release`` file, which identifies RHEL 6.
    """
    try:
        os_release = parse_os_release(host.os_release_path.read_text())
    except (OSError, UnicodeDecodeError):
        pass
    else:
        return distro_from_os_release(os_release, version)

    try:
        redhat_release = host.redhat_release_path.read_text()
    except (OSError, UnicodeDecodeError):
        return ""
    return distro_from_redhat_release(redhat_release)


def parse_os_release(text: str) -> dict[str, str]:
    """Parse the ``KEY=value`` lines of an os-release file."""
    fields: dict[str, str] = {}
    for raw_line in text.splitlines():
        line = raw_line.strip()
        if not line or line.startswith("#") or "=" not in line:
            continue
        key, _, value = line.partition("=")
        value = value.strip()
        if len(value) >= 2 and value[0] == value[-1] and value[0] in "\"'":
            value = value[1:-1]
        fields[key.strip()] = value
    return fields


def distro_from_os_release(os_release: dict[str, str], version: Version) -> str:
    """Pick the distro tag from parsed os-release fields using DISTRO_RELEASES."""
    releases = DISTRO_RELEASES.get(os_release.get("ID", ""))
    if releases is None:
        return ""

    try:
        major_release = int(os_release.get("VERSION_ID", "").split(".")[0])
    except ValueError:
        return ""

    for release in releases:
        if major_release < release.min_release:
            continue
        if release.max_release is not None and major_release > release.max_release:
            continue
        if version >= release.min_version:
            return release.tag
    return ""


def distro_from_redhat_release(redhat_release: str) -> str:
    # RHEL 7+ ships os-release, so the legacy file only matters for RHEL 6
    if "release 6" in redhat_release:
        return "rhel62"
    return ""
