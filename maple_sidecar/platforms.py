"""
Platform detection and release URL construction.

Maps the running OS and CPU architecture to the published maple-proxy
artifact and computes where a given version lives in the local cache.
"""

import platform
from dataclasses import dataclass
from pathlib import Path

from .config import settings
from .errors import UnsupportedPlatformError

_MACHINE_ALIASES = {
    "x86_64": "x86_64",
    "amd64": "x86_64",
    "x64": "x86_64",
    "x86-64": "x86_64",
    "aarch64": "aarch64",
    "arm64": "aarch64",
}

# (system, machine) -> (artifact name, archive type)
_ARTIFACTS = {
    ("linux", "x86_64"): ("maple-proxy-linux-x86_64", "tar.gz"),
    ("linux", "aarch64"): ("maple-proxy-linux-aarch64", "tar.gz"),
    ("darwin", "aarch64"): ("maple-proxy-macos-aarch64", "tar.gz"),
    ("windows", "x86_64"): ("maple-proxy-windows-x86_64", "zip"),
}

SUPPORTED_PLATFORMS = "linux/x86_64, linux/aarch64, darwin/arm64, windows/x86_64"


@dataclass(frozen=True)
class PlatformArtifact:
    """A release asset for one OS/architecture pair."""

    name: str
    archive_type: str  # "tar.gz" or "zip"

    @property
    def filename(self) -> str:
        return f"{self.name}.{self.archive_type}"


def get_artifact(system: str = None, machine: str = None) -> PlatformArtifact:
    """Return the artifact for the given (or running) platform."""
    system = (system or platform.system()).lower()
    raw_machine = machine or platform.machine()
    arch = _MACHINE_ALIASES.get(raw_machine.lower())

    entry = _ARTIFACTS.get((system, arch))
    if entry is None:
        raise UnsupportedPlatformError(
            f"Unsupported platform: {system}/{raw_machine}. Supported: {SUPPORTED_PLATFORMS}"
        )
    name, archive_type = entry
    return PlatformArtifact(name=name, archive_type=archive_type)


def get_release_url(version: str, artifact: PlatformArtifact) -> str:
    return f"{settings.release_base_url.rstrip('/')}/{version}/{artifact.filename}"


def get_checksum_url(version: str, artifact: PlatformArtifact) -> str:
    return f"{get_release_url(version, artifact)}.sha256"


def get_cache_dir() -> Path:
    return Path(settings.cache_dir)


def get_binary_name() -> str:
    return "maple-proxy.exe" if platform.system() == "Windows" else "maple-proxy"


def get_binary_path(version: str) -> Path:
    return get_cache_dir() / version / get_binary_name()
