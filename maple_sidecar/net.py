"""Small network helpers shared by the downloader and the process supervisor."""

import contextlib
import errno
import logging
import socket
import sys

import httpx

from .config import settings

logger = logging.getLogger(__name__)

USER_AGENT = "maple-sidecar"


def http_client(client: httpx.Client = None, timeout: float = None):
    """
    Context manager yielding an HTTP client.

    A caller-supplied client is yielded as-is and left open; otherwise a new
    redirect-following client is created and closed on exit.
    """
    if client is not None:
        return contextlib.nullcontext(client)
    return httpx.Client(
        follow_redirects=True,
        timeout=timeout if timeout is not None else settings.download_timeout,
        headers={"User-Agent": USER_AGENT},
    )


def check_port_available(port: int, host: str = "127.0.0.1") -> bool:
    """Return True if `port` can be bound on `host`, False if it is taken."""
    sock = socket.socket(socket.AF_INET, socket.SOCK_STREAM)
    try:
        if sys.platform == "win32":
            sock.setsockopt(socket.SOL_SOCKET, socket.SO_EXCLUSIVEADDRUSE, 1)
        else:
            # Ignore TIME_WAIT leftovers from a child that just exited
            sock.setsockopt(socket.SOL_SOCKET, socket.SO_REUSEADDR, 1)
        sock.bind((host, port))
        sock.listen(1)
        return True
    except OSError as e:
        if e.errno == errno.EADDRINUSE or getattr(e, "winerror", None) == 10048:
            return False
        raise
    finally:
        sock.close()


def is_healthy(port: int, client: httpx.Client, host: str = "127.0.0.1") -> bool:
    """Probe the child's health endpoint once."""
    try:
        response = client.get(f"http://{host}:{port}/health")
        return response.is_success
    except httpx.HTTPError:
        return False
