"""
Configuration for the sidecar.

Loads settings from environment variables with sensible defaults. The
downloaded maple-proxy releases live in ~/.openclaw/tools/maple-proxy/ and
the sidecar's own log in ~/.maple-sidecar/.
"""

import os
from dataclasses import dataclass
from pathlib import Path
from urllib.parse import urlparse

from dotenv import load_dotenv

from .errors import ConfigurationError

load_dotenv()

GITHUB_REPO = "OpenSecretCloud/maple-proxy"
DEFAULT_PORT = 8000


def _env_bool(name: str, default: str) -> bool:
    return os.environ.get(name, default).strip().lower() in ("1", "true", "yes", "on")


@dataclass
class Settings:
    """Sidecar settings."""

    # Paths
    data_dir: Path = Path.home() / ".maple-sidecar"
    cache_dir: Path = Path(
        os.environ.get("SIDECAR_CACHE_DIR", str(Path.home() / ".openclaw" / "tools" / "maple-proxy"))
    ).expanduser()
    log_file: Path = None

    # Logging
    log_max_bytes: int = int(os.environ.get("LOG_MAX_BYTES", str(10 * 1024 * 1024)))  # 10MB
    log_backup_count: int = int(os.environ.get("LOG_BACKUP_COUNT", "5"))

    # Releases
    release_base_url: str = os.environ.get(
        "SIDECAR_RELEASE_BASE_URL", f"https://github.com/{GITHUB_REPO}/releases/download"
    )
    release_index_url: str = os.environ.get(
        "SIDECAR_RELEASE_INDEX_URL", f"https://api.github.com/repos/{GITHUB_REPO}/releases/latest"
    )
    version_check_ttl: float = float(os.environ.get("SIDECAR_VERSION_TTL", str(24 * 60 * 60)))
    max_kept_versions: int = 2  # current + one previous
    download_timeout: float = float(os.environ.get("SIDECAR_DOWNLOAD_TIMEOUT", "120"))

    # Process management
    health_timeout: float = float(os.environ.get("SIDECAR_HEALTH_TIMEOUT", "10"))
    health_interval: float = float(os.environ.get("SIDECAR_HEALTH_INTERVAL", "0.2"))
    max_restart_attempts: int = int(os.environ.get("SIDECAR_MAX_RESTART_ATTEMPTS", "3"))
    restart_backoff: float = float(os.environ.get("SIDECAR_RESTART_BACKOFF", "2"))
    shutdown_grace: float = float(os.environ.get("SIDECAR_SHUTDOWN_GRACE", "3"))

    # Control API
    api_host: str = os.environ.get("SIDECAR_API_HOST", "127.0.0.1")
    api_port: int = int(os.environ.get("SIDECAR_API_PORT", "9901"))
    auto_start: bool = _env_bool("SIDECAR_AUTO_START", "true")

    def __post_init__(self):
        """Initialize derived paths and create the data directory."""
        if self.log_file is None:
            self.log_file = Path(os.environ.get("SIDECAR_LOG_FILE", str(self.data_dir / "sidecar.log")))
        self.log_file.parent.mkdir(parents=True, exist_ok=True)


@dataclass
class ProxyConfig:
    """
    Configuration handed to the maple-proxy child.

    Recognized keys and their effect on the child environment:
        api_key     -> MAPLE_API_KEY (required)
        port        -> MAPLE_PORT; MAPLE_HOST is always 127.0.0.1
        backend_url -> MAPLE_BACKEND_URL, only when set
        debug       -> MAPLE_DEBUG=true, only when enabled
    `version` pins the release to download and is not passed to the child.
    """

    api_key: str
    port: int = DEFAULT_PORT
    backend_url: str | None = None
    debug: bool = False
    version: str | None = None

    host = "127.0.0.1"

    def __post_init__(self):
        if not self.api_key or not self.api_key.strip():
            raise ConfigurationError("No API key configured. Set MAPLE_API_KEY (ProxyConfig.api_key)")
        if isinstance(self.port, bool) or not isinstance(self.port, int) or not 0 < self.port < 65536:
            raise ConfigurationError(
                f"Invalid port {self.port!r}: must be an integer between 1 and 65535 (SIDECAR_PORT)"
            )
        if self.backend_url:
            parsed = urlparse(self.backend_url)
            if parsed.scheme not in ("http", "https") or not parsed.netloc:
                raise ConfigurationError(
                    f"Invalid backend URL {self.backend_url!r}: expected http(s)://host[:port] (MAPLE_BACKEND_URL)"
                )
        else:
            self.backend_url = None
        if self.version is not None:
            self.version = self.version.strip() or None

    @classmethod
    def from_env(cls, environ=None) -> "ProxyConfig":
        """Build a config from MAPLE_* / SIDECAR_* environment variables."""
        environ = os.environ if environ is None else environ
        raw_port = environ.get("SIDECAR_PORT", str(DEFAULT_PORT))
        try:
            port = int(raw_port)
        except ValueError:
            raise ConfigurationError(f"Invalid port {raw_port!r} in SIDECAR_PORT") from None
        return cls(
            api_key=environ.get("MAPLE_API_KEY", ""),
            port=port,
            backend_url=environ.get("MAPLE_BACKEND_URL") or None,
            debug=environ.get("MAPLE_DEBUG", "false").strip().lower() in ("1", "true", "yes", "on"),
            version=environ.get("SIDECAR_VERSION") or None,
        )

    def child_env(self, base: dict = None) -> dict:
        """Environment for the child: inherited variables plus the MAPLE_* overlay."""
        env = dict(os.environ if base is None else base)
        env["MAPLE_HOST"] = self.host
        env["MAPLE_PORT"] = str(self.port)
        env["MAPLE_API_KEY"] = self.api_key
        if self.backend_url:
            env["MAPLE_BACKEND_URL"] = self.backend_url
        if self.debug:
            env["MAPLE_DEBUG"] = "true"
        return env


settings = Settings()
