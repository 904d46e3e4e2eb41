"""
Entry point for running the sidecar via `python -m maple_sidecar`.

Starts the control API with uvicorn; maple-proxy itself is started from the
app lifespan.
"""

import uvicorn

from .config import settings


def main():
    """Run the sidecar control API."""
    uvicorn.run(
        "maple_sidecar.main:app",
        host=settings.api_host,
        port=settings.api_port,
        reload=False,
    )


if __name__ == "__main__":
    main()
