"""
Sidecar control API.

A small FastAPI app around SidecarService: maple-proxy is started when the
app starts (unless SIDECAR_AUTO_START is off) and stopped on shutdown.
Status, start and stop are exposed under /api.
"""

import asyncio
import logging
from contextlib import asynccontextmanager
from logging.handlers import RotatingFileHandler
from typing import Optional

from fastapi import FastAPI, HTTPException, Query
from pydantic import BaseModel, Field

from . import __version__
from .config import ProxyConfig, settings
from .errors import ConfigurationError
from .service import SidecarService

# Configure logging with rotation
log_formatter = logging.Formatter("%(asctime)s - %(name)s - %(levelname)s - %(message)s")

file_handler = RotatingFileHandler(
    settings.log_file,
    maxBytes=settings.log_max_bytes,
    backupCount=settings.log_backup_count,
)
file_handler.setFormatter(log_formatter)

console_handler = logging.StreamHandler()
console_handler.setFormatter(log_formatter)

logging.basicConfig(
    level=logging.INFO,
    handlers=[file_handler, console_handler],
)
logger = logging.getLogger(__name__)


def load_proxy_config() -> ProxyConfig | None:
    """Read the proxy configuration from the environment, or None if unusable."""
    try:
        return ProxyConfig.from_env()
    except ConfigurationError as e:
        logger.error(f"maple-sidecar: {e}")
        return None


sidecar = SidecarService(load_proxy_config())


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan handler for startup/shutdown."""
    if settings.auto_start:
        logger.info("Starting maple-proxy...")
        await asyncio.to_thread(sidecar.start)

    yield

    logger.info("Shutting down maple-sidecar...")
    await asyncio.to_thread(sidecar.stop)


app = FastAPI(
    title="Maple Sidecar",
    description="Supervisor for a local maple-proxy",
    version=__version__,
    lifespan=lifespan,
)


class StartResponse(BaseModel):
    status: str = Field(..., description="Always 'started'")
    port: int = Field(..., description="Port maple-proxy listens on (127.0.0.1)")
    version: str = Field(..., description="Running maple-proxy release")
    pid: Optional[int] = Field(None, description="Process ID of the child")
    endpoint: str = Field(..., description="OpenAI-compatible base URL")


@app.get("/api/status")
async def get_status():
    """Get the status of the local maple-proxy."""
    return await asyncio.to_thread(sidecar.status)


@app.post("/api/start", response_model=StartResponse)
async def start_proxy():
    """Start (or restart) maple-proxy."""
    started = await asyncio.to_thread(sidecar.start)
    supervisor = sidecar.supervisor
    if not started or supervisor is None:
        raise HTTPException(status_code=500, detail="Failed to start maple-proxy; check sidecar logs")

    return StartResponse(
        status="started",
        port=supervisor.port,
        version=supervisor.version,
        pid=supervisor.get_pid(),
        endpoint=f"http://127.0.0.1:{supervisor.port}/v1",
    )


@app.post("/api/stop")
async def stop_proxy():
    """Stop maple-proxy."""
    stopped = await asyncio.to_thread(sidecar.stop)
    return {"status": "stopped" if stopped else "not_running"}


@app.get("/api/logs")
async def get_sidecar_logs(lines: int = Query(100, ge=1, le=1000)):
    """Get recent sidecar log entries."""
    try:
        with open(settings.log_file, "r") as f:
            all_lines = f.readlines()
            return {"lines": all_lines[-lines:], "total": len(all_lines)}
    except FileNotFoundError:
        return {"lines": [], "total": 0}
