"""Tests for platform detection and release URLs."""

import pytest

from maple_sidecar.errors import ConfigurationError, UnsupportedPlatformError
from maple_sidecar.platforms import (
    PlatformArtifact,
    get_artifact,
    get_binary_name,
    get_binary_path,
    get_checksum_url,
    get_release_url,
)


class TestGetArtifact:
    """Test OS/architecture to artifact mapping."""

    @pytest.mark.parametrize(
        "system,machine,expected",
        [
            ("Linux", "x86_64", PlatformArtifact("maple-proxy-linux-x86_64", "tar.gz")),
            ("Linux", "aarch64", PlatformArtifact("maple-proxy-linux-aarch64", "tar.gz")),
            ("Linux", "arm64", PlatformArtifact("maple-proxy-linux-aarch64", "tar.gz")),
            ("Darwin", "arm64", PlatformArtifact("maple-proxy-macos-aarch64", "tar.gz")),
            ("Windows", "AMD64", PlatformArtifact("maple-proxy-windows-x86_64", "zip")),
        ],
    )
    def test_supported_platforms(self, system, machine, expected):
        assert get_artifact(system, machine) == expected

    @pytest.mark.parametrize(
        "system,machine",
        [("Darwin", "x86_64"), ("Windows", "ARM64"), ("FreeBSD", "amd64"), ("Linux", "riscv64")],
    )
    def test_unsupported_platform_names_the_pair(self, system, machine):
        with pytest.raises(UnsupportedPlatformError) as exc_info:
            get_artifact(system, machine)
        message = str(exc_info.value)
        assert f"{system.lower()}/{machine}" in message
        assert "Supported:" in message

    def test_unsupported_platform_is_configuration_error(self):
        with pytest.raises(ConfigurationError):
            get_artifact("SunOS", "sparc")

    def test_artifact_filename(self):
        assert PlatformArtifact("maple-proxy-windows-x86_64", "zip").filename == "maple-proxy-windows-x86_64.zip"


class TestUrlsAndPaths:
    """Test URL and cache path construction."""

    def test_release_and_checksum_urls(self, sidecar_settings):
        artifact = PlatformArtifact("maple-proxy-linux-x86_64", "tar.gz")
        assert get_release_url("v0.1.6", artifact) == (
            "https://releases.test/download/v0.1.6/maple-proxy-linux-x86_64.tar.gz"
        )
        assert get_checksum_url("v0.1.6", artifact) == (
            "https://releases.test/download/v0.1.6/maple-proxy-linux-x86_64.tar.gz.sha256"
        )

    def test_binary_path_is_version_scoped(self, cache_dir):
        assert get_binary_path("v1.2.3") == cache_dir / "v1.2.3" / get_binary_name()
