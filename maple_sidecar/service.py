"""
Host-facing sidecar service.

Ties the pieces together for an embedding host: resolve and download the
binary, start it under a Supervisor, stop it, and report its status. Start
calls are serialized by an in-flight guard.
"""

import logging
import threading

import httpx

from .config import ProxyConfig, settings
from .downloader import ensure_binary
from .errors import SidecarError
from .net import is_healthy
from .process import ProxyState, Supervisor

logger = logging.getLogger(__name__)

SETUP_STEPS = {
    "step1": "Set your Maple API key: MAPLE_API_KEY",
    "step2": "Point your OpenAI-compatible client at http://127.0.0.1:<SIDECAR_PORT>/v1 with your Maple API key",
    "step3": "Optionally pin a release with SIDECAR_VERSION",
    "step4": "Restart the sidecar",
}


class SidecarService:
    """Owns at most one supervised maple-proxy for the host."""

    def __init__(self, config: ProxyConfig | None, http: httpx.Client = None):
        self.config = config
        self._http = http
        self._supervisor: Supervisor | None = None
        self._starting = False
        self._guard = threading.Lock()

    @property
    def supervisor(self) -> Supervisor | None:
        return self._supervisor

    def start(self) -> bool:
        """Download (if needed) and start maple-proxy. Returns True on success."""
        with self._guard:
            if self._starting:
                logger.info("maple-proxy start already in progress, skipping")
                return False
            self._starting = True

        try:
            if self._supervisor is not None:
                logger.info("Stopping existing maple-proxy before restart...")
                self._supervisor.stop()
                self._supervisor = None

            if self.config is None:
                logger.error("maple-sidecar: no API key configured. Set MAPLE_API_KEY in the environment or .env")
                return False

            result = ensure_binary(self.config.version, client=self._http)
            logger.info(f"maple-proxy binary: {result.version} at {result.binary_path}")

            supervisor = Supervisor(self.config, result.binary_path, result.version)
            self._supervisor = supervisor
            supervisor.start()

            logger.info(
                f"maple-proxy is OpenAI-compatible at http://127.0.0.1:{supervisor.port}/v1 "
                f"-- configure as maple provider or use directly"
            )
            return True
        except (SidecarError, OSError) as e:
            logger.error(f"maple-sidecar: failed to start: {e}")
            self._supervisor = None
            return False
        finally:
            with self._guard:
                self._starting = False

    def stop(self) -> bool:
        """Stop maple-proxy. Returns False if nothing was running."""
        supervisor = self._supervisor
        if supervisor is None:
            return False
        logger.info("Stopping maple-proxy...")
        supervisor.stop()
        self._supervisor = None
        return True

    def status(self) -> dict:
        """Status report for the running proxy, including a live health probe."""
        if self.config is None:
            return {
                "running": False,
                "error": "maple-proxy is not configured",
                "setup": SETUP_STEPS,
            }

        supervisor = self._supervisor
        if supervisor is None or not supervisor.is_running():
            state = supervisor.state if supervisor is not None else None
            if state is ProxyState.RESTARTING:
                error = (
                    f"maple-proxy crashed and is being restarted "
                    f"(attempt {supervisor.restart_attempts}/{settings.max_restart_attempts})."
                )
            elif state is ProxyState.FAILED:
                error = "maple-proxy failed and will not be restarted. Check sidecar logs, then start it again."
            else:
                error = (
                    "maple-proxy is not running. The API key is configured but the service "
                    "failed to start. Check sidecar logs for details."
                )
            status = {"running": False, "error": error}
            if state is not None:
                status["state"] = state.value
            return status

        port = supervisor.port
        with httpx.Client(timeout=2.0, trust_env=False) as client:
            healthy = is_healthy(port, client)

        base = f"http://127.0.0.1:{port}"
        return {
            "running": True,
            "healthy": healthy,
            "state": supervisor.state.value,
            "port": port,
            "version": supervisor.version,
            "pid": supervisor.get_pid(),
            "endpoint": f"{base}/v1",
            "models_url": f"{base}/v1/models",
            "chat_url": f"{base}/v1/chat/completions",
            "metrics": supervisor.get_metrics(),
        }
