"""Exceptions raised by the sidecar."""


class SidecarError(Exception):
    pass


class ConfigurationError(SidecarError):
    """Invalid configuration. Not retryable; the message names the fix."""


class UnsupportedPlatformError(ConfigurationError):
    pass


class PortInUseError(ConfigurationError):
    def __init__(self, port: int, setting: str = "SIDECAR_PORT"):
        super().__init__(
            f"Port {port} is already in use. "
            f"Set a different port with {setting} (ProxyConfig.port)"
        )
        self.port = port


class DownloadError(SidecarError):
    """A remote fetch failed. The caller may retry later."""

    def __init__(self, message: str, url: str = None, status_code: int = None):
        super().__init__(message)
        self.url = url
        self.status_code = status_code


class VersionLookupError(DownloadError):
    pass


class ChecksumMismatchError(SidecarError):
    def __init__(self, filename: str, expected: str, actual: str):
        super().__init__(
            f"Checksum mismatch for {filename}: expected {expected}, got {actual}"
        )
        self.expected = expected
        self.actual = actual


class ExtractionError(SidecarError):
    pass


class StartupError(SidecarError):
    """The child failed to spawn, exited early, or never became healthy."""

    def __init__(self, message: str, exit_code: int = None):
        super().__init__(message)
        self.exit_code = exit_code
